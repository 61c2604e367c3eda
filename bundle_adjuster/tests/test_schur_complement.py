import numpy as np
import pytest

from bundle_adjuster.core import normal_equations
from bundle_adjuster.core.parallel import ParallelConfig
from bundle_adjuster.core.problem import BAProblem
from bundle_adjuster.core.residuals import evaluate_jacobian
from bundle_adjuster.data.observations import Observation
from bundle_adjuster.data.synthetic import create_synthetic_scene, perturb_bundle_block
from bundle_adjuster.solvers.linear_solvers import LinearSolverType
from bundle_adjuster.solvers.schur_complement import (
    evaluate_ec_ec_blocks,
    evaluate_schur_complement_dense,
    evaluate_schur_complement_sparse,
    invert_point_blocks,
)
from bundle_adjuster.solvers.strategies import RegularizedSchurStrategy, SchurStrategy


def create_scene_problem(num_cameras: int = 4, num_points: int = 20, **problem_kwargs) -> BAProblem:
    scene = create_synthetic_scene(num_cameras=num_cameras, num_points=num_points, noise_std=0.5, random_seed=7)
    problem = BAProblem(**problem_kwargs)
    problem.initialize(perturb_bundle_block(scene, random_seed=1))
    return problem


def accumulate(problem: BAProblem, pose_damping: float = 1e-3, point_damping: float = 1e-3) -> None:
    """Evaluate and accumulate the damped normal equations of the current parameters."""
    problem.ensure_associations()
    evaluate_jacobian(problem)
    normal_equations.evaluate_jc_jc(problem)
    problem.strategy.evaluate_jp_jp(problem)
    normal_equations.evaluate_jc_jp(problem)
    normal_equations.evaluate_jce(problem)
    problem.strategy.evaluate_jpe(problem)
    normal_equations.set_diagonal(
        problem.jc_jc, normal_equations.damp_diagonal(normal_equations.get_diagonal(problem.jc_jc), pose_damping))
    normal_equations.set_diagonal(
        problem.jp_jp, normal_equations.damp_diagonal(normal_equations.get_diagonal(problem.jp_jp), point_damping))


def test_invert_point_blocks_flags_singular_blocks() -> None:
    blocks = np.zeros((4, 3, 3))
    blocks[0] = np.diag([2.0, 3.0, 4.0])
    blocks[1] = np.diag([1.0, 1.0, 0.0])
    blocks[3] = np.nan

    inverse, singular = invert_point_blocks(blocks)
    assert singular.tolist() == [False, True, True, True]
    np.testing.assert_allclose(inverse[0], np.diag([0.5, 1.0 / 3.0, 0.25]))
    assert np.all(inverse[1:] == 0.0)


def test_accumulated_blocks_match_direct_products() -> None:
    problem = create_scene_problem()
    accumulate(problem, pose_damping=0.0, point_damping=0.0)

    pose = 2
    projections = problem.maps.get_pose_projections(pose)
    J = problem.pose_jacobian[projections]
    expected = np.einsum('mki,mkj->ij', J, J)
    np.testing.assert_allclose(problem.jc_jc[pose], expected, rtol=1e-10)

    point = 5
    projections = problem.maps.get_point_projections(point)
    J = problem.point_jacobian[projections]
    np.testing.assert_allclose(problem.jpe[point], np.einsum('mki,mk->i', J, problem.weighted_residual[projections]),
                               rtol=1e-10)


def test_damping_scales_diagonal() -> None:
    diagonal = np.array([[4.0, 0.0, 1e40]])
    damped = normal_equations.damp_diagonal(diagonal, 0.5)
    np.testing.assert_allclose(damped, [[6.0, 0.5 * normal_equations.MIN_DIAGONAL, 1e40 + 0.5 * normal_equations.MAX_DIAGONAL]])


def test_schur_round_trip_matches_full_normal_equations() -> None:
    problem = create_scene_problem(linear_solver_type=LinearSolverType.DENSE)
    accumulate(problem)

    A, B, C, rhs_cam, rhs_points = normal_equations.build_normal_equations(problem)
    H = np.block([[A.toarray(), B.toarray()], [B.T.toarray(), C.toarray()]])
    full = np.linalg.solve(H, np.concatenate([rhs_cam, rhs_points]))

    assert problem.strategy.evaluate_delta_pose(problem)
    problem.strategy.evaluate_delta_point(problem)
    assert not problem.point_singular.any()

    n = 6 * problem.pose_num
    tolerance = 1e-6 * np.abs(full).max()
    np.testing.assert_allclose(problem.pose_update.reshape(-1), full[:n], rtol=1e-6, atol=tolerance)
    np.testing.assert_allclose(problem.point_update.reshape(-1), full[n:], rtol=1e-6, atol=tolerance)


def test_dense_and_sparse_reduced_matrices_agree() -> None:
    problem = create_scene_problem()
    accumulate(problem)
    problem.strategy.evaluate_point_inverse(problem)

    dense = evaluate_schur_complement_dense(problem)
    sparse = evaluate_schur_complement_sparse(problem).toarray()
    np.testing.assert_allclose(dense, sparse, rtol=1e-10, atol=1e-8)
    np.testing.assert_allclose(dense, dense.T)
    assert np.all(np.linalg.eigvalsh(dense) > 0.0)


def test_couplings_are_summed_per_pose_pair() -> None:
    problem = create_scene_problem(num_cameras=5, num_points=30)
    accumulate(problem)
    problem.strategy.evaluate_point_inverse(problem)
    maps = problem.maps

    rows, cols, blocks, size = evaluate_ec_ec_blocks(problem)
    # one diagonal JcJc block per pose plus one coupling block per ordered pose pair
    assert size == problem.pose_num
    assert blocks.shape == (problem.pose_num + maps.block_rows.size, 6, 6)
    assert maps.block_rows.size == problem.pose_num + 2 * maps.edge_num
    assert maps.pair_block.size == maps.pair_first.size

    # the pair-by-pair sum matches the coupling of every projection pair
    expected = np.zeros((size, size, 6, 6))
    np.add.at(expected, (np.arange(size), np.arange(size)), problem.jc_jc)
    first, second = maps.pair_first, maps.pair_second
    np.subtract.at(expected, (maps.pose_index[first], maps.pose_index[second]),
                   np.einsum('nij,nkj->nik', problem.ec_cinv[first], problem.jc_jp[second]))
    expected = expected.transpose(0, 2, 1, 3).reshape(6 * size, 6 * size)
    np.testing.assert_allclose(evaluate_schur_complement_dense(problem), 0.5 * (expected + expected.T),
                               rtol=1e-10, atol=1e-8)

    for chunk_size in (1, 7, 10 ** 6):
        _, _, chunked, _ = evaluate_ec_ec_blocks(problem, chunk_size=chunk_size)
        np.testing.assert_allclose(chunked, blocks, rtol=1e-12, atol=1e-9)
    with pytest.raises(ValueError):
        evaluate_ec_ec_blocks(problem, chunk_size=0)


def test_partial_reduced_system_is_a_submatrix() -> None:
    problem = create_scene_problem(num_cameras=5)
    accumulate(problem)
    problem.strategy.evaluate_point_inverse(problem)

    subset = [1, 3]
    full = evaluate_schur_complement_dense(problem)
    partial = evaluate_schur_complement_dense(problem, subset)
    rows = np.concatenate([np.arange(6 * i, 6 * i + 6) for i in subset])
    np.testing.assert_allclose(partial, full[np.ix_(rows, rows)], rtol=1e-10, atol=1e-8)

    rhs = problem.strategy.evaluate_ecw(problem, subset)
    np.testing.assert_allclose(rhs, problem.ecw[subset].reshape(-1))

    assert problem.strategy.evaluate_delta_pose(problem, subset)
    fixed = [0, 2, 4]
    assert np.all(problem.pose_update[fixed] == 0.0)
    assert np.any(problem.pose_update[subset] != 0.0)

    with pytest.raises(ValueError):
        evaluate_schur_complement_dense(problem, [1, 1])
    with pytest.raises(ValueError):
        evaluate_schur_complement_dense(problem, [7])


def test_accumulation_is_independent_of_thread_count() -> None:
    single = create_scene_problem(num_cameras=6, num_points=40, parallel=ParallelConfig(1))
    multi = create_scene_problem(num_cameras=6, num_points=40, parallel=ParallelConfig(4))
    for problem in (single, multi):
        accumulate(problem)
        assert problem.strategy.evaluate_delta_pose(problem)
        problem.strategy.evaluate_delta_point(problem)

    for name in ("residual", "jc_jc", "jp_jp", "jc_jp", "jce", "jpe", "ecw", "pose_update", "point_update"):
        np.testing.assert_allclose(getattr(single, name), getattr(multi, name), rtol=1e-12, atol=1e-12,
                                   err_msg=name)


def add_single_view_point(problem_strategy) -> BAProblem:
    scene = create_synthetic_scene(num_cameras=3, num_points=10, noise_std=0.5, random_seed=3)
    scene.points[999] = np.array([0.1, 0.2, 0.3])
    model = scene.groups[0]
    pose = scene.poses[0]
    image_point = model.project(scene.points[999][None, :], (pose.angle_axis, pose.translation))[0]
    scene.observations.append(Observation(0, 999, image_point + 0.5))

    problem = BAProblem(strategy=problem_strategy, linear_solver_type=LinearSolverType.DENSE)
    problem.initialize(perturb_bundle_block(scene, random_seed=2))
    return problem


def test_single_view_point_is_skipped() -> None:
    problem = add_single_view_point(SchurStrategy())
    accumulate(problem, pose_damping=1e-3, point_damping=0.0)

    assert problem.strategy.evaluate_delta_pose(problem)
    problem.strategy.evaluate_delta_point(problem)

    single_view = problem.maps.point_local[999]
    assert problem.point_singular[single_view]
    assert problem.point_singular.sum() == 1
    assert np.all(problem.point_update[single_view] == 0.0)
    assert np.all(np.isfinite(problem.pose_update)) and np.all(np.isfinite(problem.point_update))


def test_single_view_point_is_regularized() -> None:
    problem = add_single_view_point(RegularizedSchurStrategy(ridge=1e-6))
    accumulate(problem, pose_damping=1e-3, point_damping=0.0)

    assert problem.strategy.evaluate_delta_pose(problem)
    problem.strategy.evaluate_delta_point(problem)

    single_view = problem.maps.point_local[999]
    assert not problem.point_singular.any()
    assert np.all(np.isfinite(problem.point_update[single_view]))
    assert np.any(problem.point_update[single_view] != 0.0)


def test_regularized_strategy_rejects_non_positive_ridge() -> None:
    with pytest.raises(ValueError):
        RegularizedSchurStrategy(ridge=0.0)
