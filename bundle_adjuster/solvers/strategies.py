import numpy as np
import numpy.typing as npt
from typing import Optional, Sequence, Union
from scipy.sparse import csr_matrix

from ..core import normal_equations
from .linear_solvers import LinearSolverType, select_solver_type, solve_linear_system
from .schur_complement import (
    MAX_POINT_CONDITION,
    evaluate_delta_point,
    evaluate_ec_cinv,
    evaluate_ecw,
    evaluate_schur_complement_dense,
    evaluate_schur_complement_sparse,
    invert_point_blocks,
)


class SchurStrategy:
    """
    Point elimination by the Schur complement.

    The update loop calls these hooks in a fixed order: evaluate_jp_jp and
    evaluate_jpe while accumulating, then evaluate_delta_pose (which
    inverts the point blocks and builds and solves the reduced system) and
    evaluate_delta_point. Variants override only the hooks that differ.
    Singular point blocks are skipped.
    """

    def __init__(self, max_point_condition: float = MAX_POINT_CONDITION) -> None:
        self.max_point_condition = max_point_condition

    def evaluate_jp_jp(self, problem) -> None:
        normal_equations.evaluate_jp_jp(problem)

    def evaluate_jpe(self, problem) -> None:
        normal_equations.evaluate_jpe(problem)

    def evaluate_point_inverse(self, problem) -> None:
        inverse, singular = invert_point_blocks(problem.jp_jp, self.max_point_condition)
        problem.jp_jp_inverse[:] = inverse
        problem.point_singular[:] = singular
        evaluate_ec_cinv(problem)

    def evaluate_ec_ec(
        self,
        problem,
        pose_indexes: Optional[Sequence[int]] = None,
        dense: bool = False
    ) -> Union[npt.NDArray[np.float64], csr_matrix]:
        if dense:
            return evaluate_schur_complement_dense(problem, pose_indexes)
        return evaluate_schur_complement_sparse(problem, pose_indexes)

    def evaluate_ecw(self, problem, pose_indexes: Optional[Sequence[int]] = None) -> npt.NDArray[np.float64]:
        return evaluate_ecw(problem, pose_indexes)

    def evaluate_delta_pose(self, problem, pose_indexes: Optional[Sequence[int]] = None) -> bool:
        """
        Solve the reduced camera system into problem.pose_update.

        Poses outside pose_indexes keep a zero update.

        Returns:
            False when the linear solve failed; pose_update is then zero
            and must not be applied
        """
        self.evaluate_point_inverse(problem)

        subset_size = problem.pose_num if pose_indexes is None else len(pose_indexes)
        solver_type = problem.linear_solver_type
        if solver_type == LinearSolverType.ADAPTIVE:
            solver_type = select_solver_type(subset_size, problem.maps.max_degree, problem.solver_options)

        S = self.evaluate_ec_ec(problem, pose_indexes, dense=solver_type == LinearSolverType.DENSE)
        b = self.evaluate_ecw(problem, pose_indexes)

        problem.pose_update[:] = 0.0
        success, x = solve_linear_system(S, b, solver_type, problem.solver_options, problem.maps.max_degree)
        if not success:
            return False

        if pose_indexes is None:
            problem.pose_update[:] = x.reshape(-1, 6)
        else:
            problem.pose_update[np.asarray(pose_indexes, dtype=np.int64)] = x.reshape(-1, 6)
        return True

    def evaluate_delta_point(self, problem) -> None:
        evaluate_delta_point(problem)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(max_point_condition={self.max_point_condition:g})"


class RegularizedSchurStrategy(SchurStrategy):
    """
    Schur elimination that regularizes degenerate points instead of skipping them.

    A ridge proportional to the mean diagonal of each point block (or an
    absolute ridge for empty blocks) is added after accumulation, so points seen by a single camera (depth
    ambiguity) still receive a bounded update.
    """

    def __init__(self, ridge: float = 1e-6, max_point_condition: float = MAX_POINT_CONDITION) -> None:
        super().__init__(max_point_condition)
        if ridge <= 0:
            raise ValueError(f"Ridge must be positive, got {ridge}")
        self.ridge = ridge

    def evaluate_jp_jp(self, problem) -> None:
        super().evaluate_jp_jp(problem)
        diagonal = normal_equations.get_diagonal(problem.jp_jp)
        mean = diagonal.mean(axis=1)
        scale = np.where(mean > 0.0, mean, 1.0)
        normal_equations.set_diagonal(problem.jp_jp, diagonal + self.ridge * scale[:, None])

    def __repr__(self) -> str:
        return f"RegularizedSchurStrategy(ridge={self.ridge:g})"
