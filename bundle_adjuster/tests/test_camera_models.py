import numpy as np
import pytest

from bundle_adjuster.data.camera_models import (
    CameraModel,
    angle_axis_to_rotation,
    compose_angle_axis,
    project_points,
    project_with_jacobians,
    rotation_to_angle_axis,
)


def random_projection_inputs(num: int = 8, seed: int = 3):
    """Row-aligned intrinsics, poses and points with every point in front of its camera."""
    rng = np.random.default_rng(seed)
    intrinsics = np.tile([800.0, 820.0, 320.0, 240.0, -0.05, 0.01], (num, 1))
    angle_axis = rng.normal(0.0, 0.2, (num, 3))
    translation = rng.normal(0.0, 0.3, (num, 3)) + np.array([0.0, 0.0, 6.0])
    points = rng.uniform(-1.0, 1.0, (num, 3))
    return intrinsics, angle_axis, translation, points


def test_project_points_matches_pinhole_formula() -> None:
    intrinsics = np.array([[1000.0, 900.0, 640.0, 480.0, 0.0, 0.0]])
    projected = project_points(intrinsics, np.zeros((1, 3)), np.zeros((1, 3)), np.array([[1.0, -2.0, 10.0]]))
    np.testing.assert_allclose(projected, [[740.0, 300.0]])


def test_radial_distortion_scales_normalized_coordinates() -> None:
    intrinsics = np.array([[100.0, 100.0, 0.0, 0.0, 0.1, 0.01]])
    point = np.array([[0.5, 0.0, 1.0]])
    projected = project_points(intrinsics, np.zeros((1, 3)), np.zeros((1, 3)), point)
    r2 = 0.25
    np.testing.assert_allclose(projected, [[100.0 * 0.5 * (1 + 0.1 * r2 + 0.01 * r2 * r2), 0.0]])


def test_camera_model_project_agrees_with_stacked_projection() -> None:
    model = CameraModel(800.0, (320.0, 240.0), np.array([-0.05, 0.01]), focal_length_y=820.0)
    intrinsics, angle_axis, translation, points = random_projection_inputs()
    expected = project_points(intrinsics, np.tile(angle_axis[0], (8, 1)), np.tile(translation[0], (8, 1)), points)
    np.testing.assert_allclose(model.project(points, (angle_axis[0], translation[0])), expected)


def test_camera_model_vector_round_trip() -> None:
    model = CameraModel(800.0, (320.0, 240.0), np.array([-0.05, 0.01]), focal_length_y=820.0)
    np.testing.assert_allclose(CameraModel.from_vector(model.to_vector()).to_vector(), model.to_vector())
    with pytest.raises(ValueError):
        CameraModel.from_vector(np.zeros(4))
    with pytest.raises(ValueError):
        CameraModel(800.0, (0.0, 0.0), np.zeros(3))


def test_compose_angle_axis_left_multiplies() -> None:
    delta = np.array([0.1, -0.2, 0.05])
    angle_axis = np.array([0.3, 0.1, -0.4])
    composed = angle_axis_to_rotation(compose_angle_axis(delta, angle_axis))
    np.testing.assert_allclose(composed, angle_axis_to_rotation(delta) @ angle_axis_to_rotation(angle_axis), atol=1e-12)
    np.testing.assert_allclose(rotation_to_angle_axis(angle_axis_to_rotation(angle_axis)), angle_axis, atol=1e-12)


def test_jacobians_match_finite_differences() -> None:
    intrinsics, angle_axis, translation, points = random_projection_inputs()
    predicted, J_pose, J_point, valid = project_with_jacobians(intrinsics, angle_axis, translation, points)
    assert valid.all()
    np.testing.assert_allclose(predicted, project_points(intrinsics, angle_axis, translation, points))

    eps = 1e-6
    for k in range(3):
        step = np.zeros((8, 3))
        step[:, k] = eps

        # rotation increments compose on the left
        plus = project_points(intrinsics, compose_angle_axis(step, angle_axis), translation, points)
        minus = project_points(intrinsics, compose_angle_axis(-step, angle_axis), translation, points)
        np.testing.assert_allclose(J_pose[:, :, k], (plus - minus) / (2 * eps), rtol=1e-5, atol=1e-4)

        plus = project_points(intrinsics, angle_axis, translation + step, points)
        minus = project_points(intrinsics, angle_axis, translation - step, points)
        np.testing.assert_allclose(J_pose[:, :, 3 + k], (plus - minus) / (2 * eps), rtol=1e-5, atol=1e-4)

        plus = project_points(intrinsics, angle_axis, translation, points + step)
        minus = project_points(intrinsics, angle_axis, translation, points - step)
        np.testing.assert_allclose(J_point[:, :, k], (plus - minus) / (2 * eps), rtol=1e-5, atol=1e-4)


def test_points_behind_camera_get_zero_jacobian_rows() -> None:
    intrinsics, angle_axis, translation, points = random_projection_inputs(num=2)
    angle_axis[:] = 0.0
    translation[:] = [0.0, 0.0, 0.0]
    points[0] = [0.1, 0.2, -3.0]
    points[1] = [0.1, 0.2, 3.0]

    _, J_pose, J_point, valid = project_with_jacobians(intrinsics, angle_axis, translation, points)
    assert valid.tolist() == [False, True]
    assert np.all(J_pose[0] == 0.0) and np.all(J_point[0] == 0.0)
    assert np.any(J_pose[1] != 0.0)
