import numpy as np
import numpy.typing as npt
from typing import Tuple
from scipy.sparse import csr_matrix, coo_matrix

# Marquardt damping clamps the scaled diagonal into this range
MIN_DIAGONAL = 1e-6
MAX_DIAGONAL = 1e32


def _segment_sum(values, owner, ptr, order, start: int, stop: int, out) -> None:
    """Sum per-projection values into the blocks of owners [start, stop)."""
    projections = order[ptr[start]:ptr[stop]]
    out[start:stop] = 0.0
    np.add.at(out[start:stop], owner[projections] - start, values(projections))


def evaluate_jc_jc(problem) -> None:
    """Accumulate Jc^T Jc into one 6x6 block per pose."""
    maps = problem.maps

    def outer(projections):
        J = problem.pose_jacobian[projections]
        return np.einsum('mki,mkj->mij', J, J)

    def work(start: int, stop: int) -> None:
        _segment_sum(outer, maps.pose_index, maps.pose_ptr, maps.pose_projections,
                     start, stop, problem.jc_jc)

    problem.parallel.run(work, problem.pose_num)


def evaluate_jp_jp(problem) -> None:
    """Accumulate Jp^T Jp into one 3x3 block per point."""
    maps = problem.maps

    def outer(projections):
        J = problem.point_jacobian[projections]
        return np.einsum('mki,mkj->mij', J, J)

    def work(start: int, stop: int) -> None:
        _segment_sum(outer, maps.point_index, maps.point_ptr, maps.point_projections,
                     start, stop, problem.jp_jp)

    problem.parallel.run(work, problem.point_num)


def evaluate_jc_jp(problem) -> None:
    """Store Jc^T Jp (6x3) for every projection."""

    def work(start: int, stop: int) -> None:
        problem.jc_jp[start:stop] = np.einsum(
            'mki,mkj->mij', problem.pose_jacobian[start:stop], problem.point_jacobian[start:stop])

    problem.parallel.run(work, problem.projection_num)


def evaluate_jce(problem) -> None:
    """Accumulate the pose gradient Jc^T e per pose."""
    maps = problem.maps

    def product(projections):
        return np.einsum('mki,mk->mi', problem.pose_jacobian[projections], problem.weighted_residual[projections])

    def work(start: int, stop: int) -> None:
        _segment_sum(product, maps.pose_index, maps.pose_ptr, maps.pose_projections,
                     start, stop, problem.jce)

    problem.parallel.run(work, problem.pose_num)


def evaluate_jpe(problem) -> None:
    """Accumulate the point gradient Jp^T e per point."""
    maps = problem.maps

    def product(projections):
        return np.einsum('mki,mk->mi', problem.point_jacobian[projections], problem.weighted_residual[projections])

    def work(start: int, stop: int) -> None:
        _segment_sum(product, maps.point_index, maps.point_ptr, maps.point_projections,
                     start, stop, problem.jpe)

    problem.parallel.run(work, problem.point_num)


def get_diagonal(blocks: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """Copy of the diagonals of a stack of square blocks, shape (N, k)."""
    return np.einsum('nii->ni', blocks).copy()


def set_diagonal(blocks: npt.NDArray[np.float64], diagonal: npt.NDArray[np.float64]) -> None:
    k = blocks.shape[1]
    blocks[:, np.arange(k), np.arange(k)] = diagonal


def damp_diagonal(diagonal: npt.NDArray[np.float64], damping: float) -> npt.NDArray[np.float64]:
    """Marquardt damping: D + damping * clip(D)."""
    return diagonal + damping * np.clip(diagonal, MIN_DIAGONAL, MAX_DIAGONAL)


def _block_coo(blocks, rows, cols, shape) -> coo_matrix:
    n, h, w = blocks.shape
    r = (h * rows)[:, None, None] + np.arange(h)[None, :, None]
    c = (w * cols)[:, None, None] + np.arange(w)[None, None, :]
    r, c = np.broadcast_arrays(r, c)
    return coo_matrix((blocks.reshape(-1), (r.reshape(-1), c.reshape(-1))), shape=shape)


def build_normal_equations(problem) -> Tuple[csr_matrix, csr_matrix, csr_matrix,
                                              npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Assemble the full (unreduced) normal equations from the accumulated blocks.

    The normal equations are structured as:
    [A  B] [delta_cam]   [rhs_cam]
    [B^T C] [delta_points] = [rhs_points]

    where A holds the (possibly damped) JcJc blocks, B the JcJp blocks
    and C the JpJp blocks.

    Returns:
        Tuple of (A, B, C, rhs_cam, rhs_points) where:
        - A: Block-diagonal matrix for cameras (6*num_cameras, 6*num_cameras)
        - B: Cross-term matrix (6*num_cameras, 3*num_points)
        - C: Block-diagonal matrix for points (3*num_points, 3*num_points)
        - rhs_cam: Right-hand side for cameras (6*num_cameras,)
        - rhs_points: Right-hand side for points (3*num_points,)
    """
    num_cam_params = 6 * problem.pose_num
    num_point_params = 3 * problem.point_num

    poses = np.arange(problem.pose_num)
    points = np.arange(problem.point_num)
    A = _block_coo(problem.jc_jc, poses, poses, (num_cam_params, num_cam_params)).tocsr()
    C = _block_coo(problem.jp_jp, points, points, (num_point_params, num_point_params)).tocsr()
    B = _block_coo(problem.jc_jp, problem.projection_block.pose_index, problem.projection_block.point_index,
                   (num_cam_params, num_point_params)).tocsr()

    return A, B, C, problem.jce.reshape(-1).copy(), problem.jpe.reshape(-1).copy()
