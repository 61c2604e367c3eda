import numpy as np
import numpy.typing as npt
from typing import Optional, Sequence, Tuple
from scipy.sparse import coo_matrix, csr_matrix

# Point blocks with a larger condition number are treated as singular
MAX_POINT_CONDITION = 1e12

# Projection pairs whose couplings are formed at once
PAIR_CHUNK_SIZE = 1 << 16


def invert_point_blocks(
    jp_jp: npt.NDArray[np.float64],
    max_condition: float = MAX_POINT_CONDITION
) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.bool_]]:
    """
    Invert every 3x3 point block once.

    Blocks that are non-finite or too badly conditioned are reported as
    singular and get a zero inverse, which removes the point from the
    elimination and leaves its update at zero.

    Args:
        jp_jp: (P, 3, 3) point blocks, damping included
        max_condition: Largest accepted condition number

    Returns:
        Tuple of (inverse, singular) where:
        - inverse: (P, 3, 3) inverses, zero for singular blocks
        - singular: (P,) mask of skipped points
    """
    num_points = jp_jp.shape[0]
    finite = np.all(np.isfinite(jp_jp), axis=(1, 2))
    condition = np.full(num_points, np.inf)
    if finite.any():
        with np.errstate(divide='ignore', invalid='ignore'):
            condition[finite] = np.linalg.cond(jp_jp[finite])

    invertible = np.isfinite(condition) & (condition < max_condition)
    inverse = np.zeros_like(jp_jp)
    if invertible.any():
        inverse[invertible] = np.linalg.inv(jp_jp[invertible])
    return inverse, ~invertible


def evaluate_ec_cinv(problem) -> None:
    """
    Per-projection products JcJp * JpJp^-1 (6x3), stored in problem.ec_cinv.

    Requires problem.jp_jp_inverse to hold the point inverses.
    """
    point_index = problem.projection_block.point_index

    def work(start: int, stop: int) -> None:
        problem.ec_cinv[start:stop] = np.einsum(
            'mij,mjk->mik', problem.jc_jp[start:stop], problem.jp_jp_inverse[point_index[start:stop]])

    problem.parallel.run(work, problem.projection_num)


def _local_pose_map(pose_num: int, pose_indexes: Optional[Sequence[int]]) -> Tuple[npt.NDArray[np.int64], npt.NDArray[np.int64]]:
    if pose_indexes is None:
        subset = np.arange(pose_num, dtype=np.int64)
    else:
        subset = np.asarray(pose_indexes, dtype=np.int64)
        if np.unique(subset).size != subset.size:
            raise ValueError("Pose indexes of a partial solve must be unique")
        if subset.size and (subset.min() < 0 or subset.max() >= pose_num):
            raise ValueError(f"Pose indexes of a partial solve must lie in [0, {pose_num - 1}]")
    local = np.full(pose_num, -1, dtype=np.int64)
    local[subset] = np.arange(subset.size)
    return subset, local


def evaluate_ec_ec_blocks(
    problem,
    pose_indexes: Optional[Sequence[int]] = None,
    chunk_size: int = PAIR_CHUNK_SIZE
) -> Tuple[npt.NDArray[np.int64], npt.NDArray[np.int64], npt.NDArray[np.float64], int]:
    """
    6x6 blocks of the reduced camera matrix in coordinate form.

    Every ordered pair of projections (k, l) that observe the same point p
    contributes -JcJp(k) JpJp(p)^-1 JcJp(l)^T at block (pose(k), pose(l));
    the JcJc blocks are added on the diagonal. Couplings are formed
    chunk_size pairs at a time and summed into one block per ordered pose
    pair. The diagonal coordinates repeat and are meant to be summed.

    Args:
        problem: Optimization problem with ec_cinv evaluated
        pose_indexes: Optional subset of poses; couplings to other poses
            are dropped, which holds those poses fixed
        chunk_size: Number of projection pairs per coupling batch

    Returns:
        Tuple of (rows, cols, blocks, size) with block coordinates local to
        the subset and the number of poses in the subset
    """
    maps = problem.maps
    subset, local = _local_pose_map(problem.pose_num, pose_indexes)

    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    rows = local[maps.block_rows]
    cols = local[maps.block_cols]
    keep = (rows >= 0) & (cols >= 0)

    coupling = np.zeros((rows.size, 6, 6))
    for start in range(0, maps.pair_block.size, chunk_size):
        block = maps.pair_block[start:start + chunk_size]
        kept = keep[block]
        first = maps.pair_first[start:start + chunk_size][kept]
        second = maps.pair_second[start:start + chunk_size][kept]
        np.subtract.at(coupling, block[kept],
                       np.einsum('nij,nkj->nik', problem.ec_cinv[first], problem.jc_jp[second]))

    diagonal = np.arange(subset.size, dtype=np.int64)
    rows = np.concatenate([diagonal, rows[keep]])
    cols = np.concatenate([diagonal, cols[keep]])
    blocks = np.concatenate([problem.jc_jc[subset], coupling[keep]])
    return rows, cols, blocks, int(subset.size)


def evaluate_schur_complement_dense(problem, pose_indexes: Optional[Sequence[int]] = None) -> npt.NDArray[np.float64]:
    """Reduced camera matrix as a dense symmetric array of size 6k x 6k."""
    rows, cols, blocks, size = evaluate_ec_ec_blocks(problem, pose_indexes)
    S = np.zeros((size, size, 6, 6))
    np.add.at(S, (rows, cols), blocks)
    S = S.transpose(0, 2, 1, 3).reshape(6 * size, 6 * size)
    return 0.5 * (S + S.T)


def evaluate_schur_complement_sparse(problem, pose_indexes: Optional[Sequence[int]] = None) -> csr_matrix:
    """Reduced camera matrix as a symmetric CSR matrix of size 6k x 6k."""
    rows, cols, blocks, size = evaluate_ec_ec_blocks(problem, pose_indexes)
    r = (6 * rows)[:, None, None] + np.arange(6)[None, :, None]
    c = (6 * cols)[:, None, None] + np.arange(6)[None, None, :]
    r, c = np.broadcast_arrays(r, c)
    S = coo_matrix((blocks.reshape(-1), (r.reshape(-1), c.reshape(-1))), shape=(6 * size, 6 * size)).tocsr()
    return ((S + S.T) * 0.5).tocsr()


def evaluate_ecw(problem, pose_indexes: Optional[Sequence[int]] = None) -> npt.NDArray[np.float64]:
    """
    Reduced right-hand side Ecw(i) = Jce(i) - sum_p JcJp(i,p) JpJp(p)^-1 Jpe(p).

    The full per-pose result is stored in problem.ecw; the returned vector
    is restricted to pose_indexes and flattened.
    """
    projections = problem.projection_block
    correction = np.einsum('mij,mj->mi', problem.ec_cinv, problem.jpe[projections.point_index])
    problem.ecw[:] = problem.jce
    np.add.at(problem.ecw, projections.pose_index, -correction)

    subset, _ = _local_pose_map(problem.pose_num, pose_indexes)
    return problem.ecw[subset].reshape(-1)


def evaluate_delta_point(problem) -> None:
    """
    Back-substitute point updates from the pose updates.

    dz(p) = JpJp(p)^-1 (Jpe(p) - sum_i JcJp(i,p)^T dy(i)), written to
    problem.point_update. Singular points receive a zero update.
    """
    projections = problem.projection_block
    pose_term = np.einsum('mji,mj->mi', problem.jc_jp, problem.pose_update[projections.pose_index])
    summed = np.zeros((problem.point_num, 3))
    np.add.at(summed, projections.point_index, pose_term)
    problem.point_update[:] = np.einsum('pij,pj->pi', problem.jp_jp_inverse, problem.jpe - summed)
