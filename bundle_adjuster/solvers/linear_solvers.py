from enum import IntEnum
from typing import Optional, Tuple, Union

import numpy as np
import numpy.typing as npt
from scipy.linalg import cho_factor, cho_solve, LinAlgError
from scipy.sparse import coo_matrix, csr_matrix, issparse
from scipy.sparse.linalg import cg, splu

Matrix = Union[npt.NDArray[np.float64], csr_matrix]
SolveResult = Tuple[bool, Optional[npt.NDArray[np.float64]]]


class LinearSolverType(IntEnum):
    SPARSE = 0
    DENSE = 1
    ITERATIVE = 2
    ADAPTIVE = 3


class LinearSolverOptions:
    """
    Tuning of the reduced camera system solvers.

    Attributes:
        dense_pose_threshold: Adaptive choice uses the dense solver up to this many poses
        max_dense_pose_num: Dense factorization is never chosen adaptively above this size
        iterative_pose_threshold: Adaptive choice uses conjugate gradients above this many poses
        cg_rtol: Relative residual tolerance of conjugate gradients
        cg_max_iterations: Iteration cap of conjugate gradients, None for 10 * system size
    """

    def __init__(
        self,
        dense_pose_threshold: int = 200,
        max_dense_pose_num: int = 2000,
        iterative_pose_threshold: int = 5000,
        cg_rtol: float = 1e-10,
        cg_max_iterations: Optional[int] = None
    ) -> None:
        if cg_rtol <= 0:
            raise ValueError(f"cg_rtol must be positive, got {cg_rtol}")
        self.dense_pose_threshold = dense_pose_threshold
        self.max_dense_pose_num = max_dense_pose_num
        self.iterative_pose_threshold = iterative_pose_threshold
        self.cg_rtol = cg_rtol
        self.cg_max_iterations = cg_max_iterations


def select_solver_type(pose_num: int, max_degree: int, options: LinearSolverOptions) -> LinearSolverType:
    """
    Adaptive solver choice from problem size and camera-graph connectivity.

    Small systems, and graphs where some camera is connected to at least
    half of the others, factor densely; very large systems use conjugate
    gradients; everything else uses the sparse factorization.
    """
    if pose_num <= options.dense_pose_threshold:
        return LinearSolverType.DENSE
    if 2 * max_degree >= pose_num and pose_num <= options.max_dense_pose_num:
        return LinearSolverType.DENSE
    if pose_num > options.iterative_pose_threshold:
        return LinearSolverType.ITERATIVE
    return LinearSolverType.SPARSE


def solve_linear_system_sparse(A: Matrix, b: npt.NDArray[np.float64]) -> SolveResult:
    """
    Sparse symmetric factorization.

    SuperLU runs in symmetric mode without threshold pivoting, which makes
    the factorization an LDL^T; a non-positive pivot means the matrix is
    not positive definite.
    """
    A = csr_matrix(A) if not issparse(A) else A
    try:
        lu = splu(A.tocsc(), permc_spec='MMD_AT_PLUS_A', diag_pivot_thresh=0.0,
                  options={'SymmetricMode': True})
    except RuntimeError:
        # exactly singular
        return False, None

    pivots = lu.U.diagonal()
    if not np.all(np.isfinite(pivots)) or np.any(pivots <= 0.0):
        return False, None

    x = lu.solve(b)
    if not np.all(np.isfinite(x)):
        return False, None
    return True, x


def solve_linear_system_dense(A: Matrix, b: npt.NDArray[np.float64]) -> SolveResult:
    """Dense Cholesky factorization."""
    A = A.toarray() if issparse(A) else np.asarray(A)
    try:
        factor = cho_factor(A, lower=True)
    except (LinAlgError, ValueError):
        return False, None

    x = cho_solve(factor, b)
    if not np.all(np.isfinite(x)):
        return False, None
    return True, x


def block_jacobi_preconditioner(A: Matrix) -> csr_matrix:
    """Inverse of the 6x6 diagonal blocks of A as a sparse matrix."""
    n = A.shape[0] // 6
    blocks = np.zeros((n, 6, 6))
    coo = coo_matrix(A)
    on_block = coo.row // 6 == coo.col // 6
    np.add.at(blocks, (coo.row[on_block] // 6, coo.row[on_block] % 6, coo.col[on_block] % 6),
              coo.data[on_block])

    try:
        inverse = np.linalg.inv(blocks)
    except np.linalg.LinAlgError:
        inverse = np.linalg.pinv(blocks)

    rows = (6 * np.arange(n))[:, None, None] + np.arange(6)[None, :, None]
    cols = (6 * np.arange(n))[:, None, None] + np.arange(6)[None, None, :]
    rows, cols = np.broadcast_arrays(rows, cols)
    return coo_matrix((inverse.reshape(-1), (rows.reshape(-1), cols.reshape(-1))),
                      shape=A.shape).tocsr()


def solve_linear_system_iterative(
    A: Matrix,
    b: npt.NDArray[np.float64],
    options: Optional[LinearSolverOptions] = None
) -> SolveResult:
    """
    Preconditioned conjugate gradients.

    Fails when the iteration cap is reached before the relative residual
    drops below options.cg_rtol.
    """
    if options is None:
        options = LinearSolverOptions()
    A = csr_matrix(A) if not issparse(A) else A.tocsr()
    max_iterations = options.cg_max_iterations
    if max_iterations is None:
        max_iterations = 10 * A.shape[0]

    M = block_jacobi_preconditioner(A)
    x, info = cg(A, b, rtol=options.cg_rtol, atol=0.0, maxiter=max_iterations, M=M)
    if info != 0 or not np.all(np.isfinite(x)):
        return False, None
    return True, x


def solve_linear_system(
    A: Matrix,
    b: npt.NDArray[np.float64],
    solver_type: LinearSolverType = LinearSolverType.ADAPTIVE,
    options: Optional[LinearSolverOptions] = None,
    max_degree: int = 0
) -> SolveResult:
    """
    Solve the reduced camera system A x = b.

    Args:
        A: Symmetric reduced matrix, dense or sparse, of size 6k x 6k
        b: Right-hand side of length 6k
        solver_type: Strategy to use
        options: Solver tuning, defaults to LinearSolverOptions()
        max_degree: Maximum camera-graph degree, used by the adaptive choice

    Returns:
        Tuple of (success, x); x is None when the solve failed and must
        not be applied
    """
    if options is None:
        options = LinearSolverOptions()
    assert A.shape[0] == A.shape[1] == b.shape[0], \
        f"System shape {A.shape} does not match right-hand side {b.shape}"

    if b.shape[0] == 0:
        return True, np.zeros(0)

    if solver_type == LinearSolverType.ADAPTIVE:
        solver_type = select_solver_type(b.shape[0] // 6, max_degree, options)

    if solver_type == LinearSolverType.SPARSE:
        return solve_linear_system_sparse(A, b)
    if solver_type == LinearSolverType.DENSE:
        return solve_linear_system_dense(A, b)
    if solver_type == LinearSolverType.ITERATIVE:
        return solve_linear_system_iterative(A, b, options)
    raise ValueError(f"Unknown linear solver type: {solver_type}")
