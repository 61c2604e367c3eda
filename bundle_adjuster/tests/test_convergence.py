import numpy as np
import pytest

from bundle_adjuster.core.loss_functions import HuberLoss
from bundle_adjuster.core.parallel import ParallelConfig
from bundle_adjuster.core.problem import BAProblem
from bundle_adjuster.data.camera_models import CameraModel, compose_angle_axis
from bundle_adjuster.data.observations import BundleBlock, CameraPose, Observation
from bundle_adjuster.data.synthetic import create_synthetic_scene, perturb_bundle_block
from bundle_adjuster.solvers.linear_solvers import LinearSolverType
from bundle_adjuster.solvers.sparse_lm_solver import SolverState, SparseLMSolver
from bundle_adjuster.solvers.strategies import SchurStrategy


def create_two_view_scene() -> BundleBlock:
    """
    Two cameras observing three points, every point seen by both cameras.

    Observations are exact, so the ground truth has zero reprojection error.
    """
    camera_model = CameraModel(500.0, (320.0, 240.0))
    poses = {
        0: CameraPose(np.zeros(3), np.zeros(3)),
        1: CameraPose(np.array([0.0, -0.15, 0.0]), np.array([-1.0, 0.0, 0.2])),
    }
    points = {0: np.array([0.0, 0.0, 5.0]), 1: np.array([1.0, -0.5, 6.0]), 2: np.array([-0.8, 0.6, 4.5])}
    observations = []
    for pose_id, pose in poses.items():
        for point_id, point in points.items():
            image_point = camera_model.project(point[None, :], (pose.angle_axis, pose.translation))[0]
            observations.append(Observation(pose_id, point_id, image_point))
    return BundleBlock({0: camera_model}, poses, points, observations)


def create_perturbed_problem(
    num_cameras: int = 5,
    num_points: int = 40,
    noise_std: float = 0.5,
    **problem_kwargs
) -> BAProblem:
    scene = create_synthetic_scene(num_cameras=num_cameras, num_points=num_points, noise_std=noise_std,
                                   random_seed=11)
    problem = BAProblem(**problem_kwargs)
    problem.initialize(perturb_bundle_block(scene, random_seed=5, fixed_pose_ids=(0,)))
    return problem


def test_two_view_scenario_converges_to_zero_error() -> None:
    scene = create_two_view_scene()
    scene.poses[1].angle_axis = compose_angle_axis(np.array([0.02, -0.01, 0.015]), scene.poses[1].angle_axis)
    scene.poses[1].translation = scene.poses[1].translation + np.array([0.05, -0.03, 0.04])

    problem = BAProblem()
    problem.initialize(scene)
    assert problem.projection_num == 6

    summary = SparseLMSolver(problem, max_iterations=100, verbose=False).run()
    print(summary)

    assert summary.converged, summary.message
    assert summary.initial_cost > 1.0
    assert summary.reprojection_error[0] < 1e-3
    assert problem.parameters_finite()


def test_synthetic_convergence_is_monotone() -> None:
    problem = create_perturbed_problem()
    initial_error = problem.reprojection_error(update=True)

    summary = SparseLMSolver(problem, max_iterations=50).run()

    assert summary.state == SolverState.CONVERGED, summary.message
    assert summary.final_cost < summary.initial_cost
    assert summary.cost_history[0] == summary.initial_cost
    assert np.all(np.diff(summary.cost_history) <= 0.0), "accepted steps must never increase the cost"
    assert summary.iterations == len(summary.cost_history) - 1
    assert summary.reprojection_error[0] < initial_error[0]
    assert summary.reprojection_error[0] < 1.0

    # the residual buffer reflects the parameters left in the problem
    final_error = problem.reprojection_error(update=True)
    np.testing.assert_allclose(final_error, summary.reprojection_error)


@pytest.mark.parametrize("solver_type", [LinearSolverType.SPARSE, LinearSolverType.DENSE,
                                         LinearSolverType.ITERATIVE, LinearSolverType.ADAPTIVE])
def test_solver_types_reach_the_same_cost(solver_type) -> None:
    reference = create_perturbed_problem(linear_solver_type=LinearSolverType.DENSE)
    reference_summary = SparseLMSolver(reference, verbose=False).run()

    problem = create_perturbed_problem(linear_solver_type=solver_type)
    summary = SparseLMSolver(problem, verbose=False).run()

    assert summary.converged, summary.message
    assert summary.final_cost == pytest.approx(reference_summary.final_cost, rel=1e-3)


def test_thread_count_does_not_change_the_result() -> None:
    single = create_perturbed_problem(parallel=ParallelConfig(1))
    multi = create_perturbed_problem(parallel=ParallelConfig(4))

    single_summary = SparseLMSolver(single, verbose=False).run()
    multi_summary = SparseLMSolver(multi, verbose=False).run()

    assert single_summary.iterations == multi_summary.iterations
    np.testing.assert_allclose(single_summary.cost_history, multi_summary.cost_history, rtol=1e-10)
    np.testing.assert_allclose(single.point_block.points, multi.point_block.points, rtol=1e-9, atol=1e-12)


def test_partial_solve_keeps_other_poses_fixed() -> None:
    problem = create_perturbed_problem()
    fixed = [0, 3, 4]
    before = problem.snapshot()

    summary = SparseLMSolver(problem, pose_indexes=[1, 2], verbose=False).run()

    assert summary.converged, summary.message
    assert summary.final_cost < summary.initial_cost
    np.testing.assert_array_equal(problem.pose_block.angle_axis[fixed], before[0][fixed])
    np.testing.assert_array_equal(problem.pose_block.translation[fixed], before[1][fixed])
    assert np.any(problem.pose_block.translation[[1, 2]] != before[1][[1, 2]])


def test_zero_projection_problem_fails_cleanly() -> None:
    problem = BAProblem()
    problem.create(pose_num=1, group_num=1, point_num=1, proj_num=0)
    problem.set_intrinsic(0, [500.0, 500.0, 320.0, 240.0, 0.0, 0.0])
    problem.set_pose_group(0, 0)

    summary = SparseLMSolver(problem, verbose=False).run()

    assert summary.state == SolverState.FAILED
    assert "no projections" in summary.message
    assert summary.iterations == 0
    assert problem.parameters_finite()

    empty_summary = SparseLMSolver(BAProblem(), verbose=False).run()
    assert empty_summary.state == SolverState.FAILED


def test_non_finite_initial_cost_fails() -> None:
    problem = BAProblem()
    problem.initialize(create_two_view_scene())
    problem.set_point(0, [np.nan, 0.0, 5.0])

    summary = SparseLMSolver(problem, verbose=False).run()
    assert summary.state == SolverState.FAILED
    assert "not finite" in summary.message


class FailingSchurStrategy(SchurStrategy):
    """Strategy whose reduced solve always fails."""

    def evaluate_delta_pose(self, problem, pose_indexes=None) -> bool:
        super().evaluate_delta_pose(problem, pose_indexes)
        return False


def test_repeated_solver_failures_fail_and_keep_parameters() -> None:
    problem = create_perturbed_problem(strategy=FailingSchurStrategy())
    before = problem.snapshot()

    summary = SparseLMSolver(problem, max_consecutive_failures=3, verbose=False).run()

    assert summary.state == SolverState.FAILED
    assert "linear solver failed 4 consecutive times" in summary.message
    assert len(summary.records) == 4 and not any(record.accepted for record in summary.records)
    for current, previous in zip(problem.snapshot(), before):
        np.testing.assert_array_equal(current, previous)
    assert summary.final_cost == summary.initial_cost


class OvershootingSchurStrategy(SchurStrategy):
    """Strategy whose point step always lands far from the solution."""

    def evaluate_delta_point(self, problem) -> None:
        super().evaluate_delta_point(problem)
        problem.point_update += 5.0


def test_repeated_rejections_fail_instead_of_converging() -> None:
    problem = create_perturbed_problem(strategy=OvershootingSchurStrategy())
    before = problem.snapshot()

    summary = SparseLMSolver(problem, max_consecutive_failures=3, verbose=False).run()
    print(summary)

    assert summary.state == SolverState.FAILED
    assert not summary.converged
    assert "4 consecutive rejected steps" in summary.message
    assert summary.iterations == 0
    assert len(summary.records) == 4 and not any(record.accepted for record in summary.records)
    assert summary.final_cost == summary.initial_cost
    for current, previous in zip(problem.snapshot(), before):
        np.testing.assert_array_equal(current, previous)


def test_iteration_budget_is_respected() -> None:
    problem = create_perturbed_problem()
    summary = SparseLMSolver(problem, max_iterations=1, verbose=False).run()

    assert summary.converged
    assert summary.iterations <= 1
    if summary.iterations == 1:
        assert "maximum number of iterations" in summary.message


def test_robust_loss_limits_outlier_influence() -> None:
    scene = create_synthetic_scene(num_cameras=5, num_points=40, noise_std=0.3, random_seed=21)
    rng = np.random.default_rng(4)
    outliers = rng.choice(len(scene.observations), size=len(scene.observations) // 10, replace=False)
    for idx in outliers:
        scene.observations[idx].image_point = scene.observations[idx].image_point + rng.normal(0.0, 30.0, 2)
    inliers = np.setdiff1d(np.arange(len(scene.observations)), outliers)
    start = perturb_bundle_block(scene, random_seed=6, fixed_pose_ids=(0,))

    results = {}
    for name, loss in (("trivial", None), ("huber", HuberLoss(scale=1.0))):
        problem = BAProblem(loss_function=loss)
        problem.initialize(start)
        summary = SparseLMSolver(problem, verbose=False).run()
        assert summary.converged, summary.message
        results[name] = np.median(np.linalg.norm(problem.residual[inliers], axis=1))

    print(f"Median inlier error: trivial {results['trivial']:.4f} px, huber {results['huber']:.4f} px")
    assert results["huber"] < results["trivial"]


def test_single_view_point_does_not_break_the_solve() -> None:
    scene = create_synthetic_scene(num_cameras=4, num_points=20, noise_std=0.3, random_seed=8)
    scene.points[500] = np.array([0.3, -0.2, 0.1])
    pose = scene.poses[2]
    image_point = scene.groups[0].project(scene.points[500][None, :], (pose.angle_axis, pose.translation))[0]
    scene.observations.append(Observation(2, 500, image_point + np.array([1.0, -1.0])))

    problem = BAProblem()
    problem.initialize(perturb_bundle_block(scene, random_seed=9, fixed_pose_ids=(0,)))
    summary = SparseLMSolver(problem, verbose=False).run()

    assert summary.converged, summary.message
    assert summary.final_cost < summary.initial_cost
    assert problem.parameters_finite()


def test_report_is_written(tmp_path) -> None:
    problem = BAProblem()
    problem.initialize(create_two_view_scene())
    problem.set_point(1, [1.1, -0.5, 6.0])

    summary = SparseLMSolver(problem, verbose=False).run()
    report_path = tmp_path / "reports" / "ba_report.txt"
    problem.save_report(report_path)

    report = report_path.read_text()
    assert "Starting sparse LM optimization with 2 cameras, 3 points, 6 observations" in report
    assert "Iteration 0: Cost" in report
    assert f"Optimization {summary.state.value}" in report
    assert "Reprojection error (mean / median / max)" in report
    assert "accepted" in report


def test_invalid_solver_settings() -> None:
    problem = BAProblem()
    with pytest.raises(ValueError):
        SparseLMSolver(problem, max_iterations=-1)
    with pytest.raises(ValueError):
        SparseLMSolver(problem, damping_factor=1.0)


def test_debug_folder_receives_report_and_cost_history(tmp_path) -> None:
    problem = create_perturbed_problem(num_cameras=4, num_points=25, debug_folder=tmp_path / "debug")
    assert problem.get_debug_folder() == tmp_path / "debug"

    summary = SparseLMSolver(problem, verbose=False).run()

    folder = problem.get_debug_folder()
    np.testing.assert_allclose(np.atleast_1d(np.loadtxt(folder / "cost_history.txt")), summary.cost_history,
                               rtol=1e-15)
    lines = (folder / "iterations.csv").read_text().splitlines()
    assert lines[0] == "iteration,cost,damping,accepted,step_norm,elapsed"
    assert len(lines) == 1 + len(summary.records)
    assert f"Optimization {summary.state.value}" in (folder / "report.txt").read_text()

    problem.set_debug_folder(None)
    assert problem.save_debug(summary.cost_history, summary.records) is None
