import numpy as np
import numpy.typing as npt
from typing import Tuple

from ..data.camera_models import project_points, project_with_jacobians


def _projection_inputs(problem, start: int, stop: int):
    projections = problem.projection_block
    pose_idx = projections.pose_index[start:stop]
    point_idx = projections.point_index[start:stop]
    poses = problem.pose_block
    return (
        problem.intrinsic_block.intrinsics[poses.group[pose_idx]],
        poses.angle_axis[pose_idx],
        poses.translation[pose_idx],
        problem.point_block.points[point_idx],
    )


def evaluate_residual(problem) -> None:
    """
    Compute residual = observed - predicted for every projection.

    Writes problem.residual, one row per projection.
    """
    observations = problem.projection_block.observations

    def work(start: int, stop: int) -> None:
        predicted = project_points(*_projection_inputs(problem, start, stop))
        problem.residual[start:stop] = observations[start:stop] - predicted

    problem.parallel.run(work, problem.projection_num)


def evaluate_jacobian(problem) -> None:
    """
    Compute the loss-weighted Jacobians of the projection for every projection.

    The rows of problem.pose_jacobian (2x6) and problem.point_jacobian (2x3)
    hold the derivatives of the predicted projection, which are the
    negated derivatives of the residual. Both the Jacobians and
    problem.weighted_residual are scaled by sqrt(rho'(|e|^2)) so that the
    normal equations of the weighted system are the IRLS equations of the
    robust cost. Requires evaluate_residual to have run on the current
    parameters.
    """
    observations = problem.projection_block.observations
    loss = problem.loss_function

    def work(start: int, stop: int) -> None:
        predicted, J_pose, J_point, valid = project_with_jacobians(*_projection_inputs(problem, start, stop))
        residual = observations[start:stop] - predicted
        scale = np.sqrt(loss.weights(np.sum(residual * residual, axis=1)))

        problem.residual[start:stop] = residual
        problem.weighted_residual[start:stop] = residual * scale[:, None]
        problem.pose_jacobian[start:stop] = J_pose * scale[:, None, None]
        problem.point_jacobian[start:stop] = J_point * scale[:, None, None]
        problem.valid_projection[start:stop] = valid

    problem.parallel.run(work, problem.projection_num)


def evaluate_square_residual(problem, update: bool = True) -> float:
    """
    Robust cost sum(rho(|e|^2)) over all projections.

    Args:
        problem: Optimization problem
        update: Recompute residuals from the current parameters first
    """
    if update:
        evaluate_residual(problem)
    return problem.loss_function.cost(np.sum(problem.residual ** 2, axis=1))


def evaluate_square_error(problem, update: bool = True) -> float:
    """Plain sum of squared residual norms, ignoring the loss function."""
    if update:
        evaluate_residual(problem)
    return float(np.sum(problem.residual ** 2))


def compute_reprojection_error(residual: npt.NDArray[np.float64]) -> Tuple[float, float, float]:
    """
    Summary statistics of reprojection errors.

    Args:
        residual: (M, 2) residual rows

    Returns:
        Tuple of (mean, median, max) residual magnitudes in pixels, all
        zero when there are no residuals
    """
    if residual.shape[0] == 0:
        return 0.0, 0.0, 0.0
    errors = np.linalg.norm(residual, axis=1)
    return float(np.mean(errors)), float(np.median(errors)), float(np.max(errors))
