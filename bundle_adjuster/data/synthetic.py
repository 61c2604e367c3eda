import numpy as np
import numpy.typing as npt
from typing import Optional, Tuple

from .camera_models import CameraModel, compose_angle_axis, rotation_to_angle_axis
from .observations import BundleBlock, CameraPose, Observation


def look_at_pose(center: npt.NDArray[np.float64], target: npt.NDArray[np.float64]) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    World-to-camera pose of a camera at center looking at target, z up.

    Returns:
        Tuple of (angle_axis, translation)
    """
    forward = target - center
    forward = forward / np.linalg.norm(forward)
    right = np.cross(forward, np.array([0.0, 0.0, 1.0]))
    right = right / np.linalg.norm(right)
    down = np.cross(forward, right)

    rotation = np.stack([right, down, forward])
    return rotation_to_angle_axis(rotation), -rotation @ center


def create_synthetic_scene(
    num_cameras: int = 5,
    num_points: int = 50,
    noise_std: float = 1.0,
    random_seed: int = 42,
    num_groups: int = 1,
    radius: float = 10.0
) -> BundleBlock:
    """
    Create a synthetic bundle adjustment scene with known ground truth.

    Cameras sit on a ring around a box of points and look at its center.
    Only points that land in front of a camera and inside its image are
    observed.

    Args:
        num_cameras: Number of cameras to create
        num_points: Number of 3D points to create
        noise_std: Standard deviation of Gaussian noise for observations
        random_seed: Random seed for reproducibility
        num_groups: Number of intrinsic groups; cameras are assigned round-robin
        radius: Distance of the cameras from the scene center

    Returns:
        Ground-truth BundleBlock with noisy observations
    """
    if num_cameras < 1 or num_groups < 1 or num_groups > num_cameras:
        raise ValueError(f"Need at least one camera and 1 <= num_groups <= num_cameras, "
                         f"got {num_cameras} cameras and {num_groups} groups")

    rng = np.random.default_rng(random_seed)

    groups = {}
    for g in range(num_groups):
        focal_length = 1000.0 + 50.0 * g
        groups[g] = CameraModel(focal_length, (640.0, 480.0), np.array([-0.01, 0.001]))

    poses = {}
    for i in range(num_cameras):
        angle = 2.0 * np.pi * i / num_cameras
        center = np.array([radius * np.cos(angle), radius * np.sin(angle), 2.0 + np.sin(i)])
        angle_axis, translation = look_at_pose(center, np.zeros(3))
        poses[i] = CameraPose(angle_axis, translation, group_id=i % num_groups, name=f"image_{i:04d}")

    points_3d = rng.uniform(low=[-2.0, -2.0, -1.0], high=[2.0, 2.0, 1.0], size=(num_points, 3))
    points = {j: points_3d[j] for j in range(num_points)}
    colors = {j: rng.integers(0, 256, size=3).astype(np.float64) for j in range(num_points)}

    observations = []
    for i, pose in poses.items():
        camera_model = groups[pose.group_id]
        projected = camera_model.project(points_3d, (pose.angle_axis, pose.translation))
        depth = (points_3d @ pose.rotation.T + pose.translation)[:, 2]
        width, height = 2 * camera_model.principal_point[0], 2 * camera_model.principal_point[1]

        for j in range(num_points):
            u, v = projected[j]
            if depth[j] > 0 and 0 <= u < width and 0 <= v < height:
                noisy_point = projected[j] + rng.normal(0.0, noise_std, 2)
                observations.append(Observation(i, j, noisy_point))

    return BundleBlock(groups, poses, points, observations, colors)


def perturb_bundle_block(
    bundle_block: BundleBlock,
    rotation_perturbation: float = 0.01,
    translation_perturbation: float = 0.1,
    point_perturbation: float = 0.1,
    random_seed: int = 0,
    fixed_pose_ids: Optional[Tuple[int, ...]] = None
) -> BundleBlock:
    """
    Add perturbations to camera poses and 3D points for testing optimization.

    Args:
        bundle_block: Original model, left untouched
        rotation_perturbation: Standard deviation of rotation perturbation (radians)
        translation_perturbation: Standard deviation of translation perturbation
        point_perturbation: Standard deviation of point perturbation
        random_seed: Random seed for reproducibility
        fixed_pose_ids: Poses to leave unperturbed

    Returns:
        Perturbed copy of the model
    """
    rng = np.random.default_rng(random_seed)
    fixed = set(fixed_pose_ids or ())
    perturbed = bundle_block.copy()

    for pose_id in sorted(perturbed.poses):
        if pose_id in fixed:
            continue
        pose = perturbed.poses[pose_id]
        delta = rng.normal(0.0, rotation_perturbation, 3)
        pose.angle_axis = compose_angle_axis(delta, pose.angle_axis)
        pose.translation = pose.translation + rng.normal(0.0, translation_perturbation, 3)

    for point_id in sorted(perturbed.points):
        perturbed.points[point_id] = perturbed.points[point_id] + rng.normal(0.0, point_perturbation, 3)

    return perturbed
