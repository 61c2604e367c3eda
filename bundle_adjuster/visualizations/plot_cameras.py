import numpy as np
import numpy.typing as npt
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
from mpl_toolkits.mplot3d import Axes3D
from typing import Dict, List, Optional

from ..data.camera_models import CameraModel
from ..data.observations import BundleBlock, CameraPose


def plot_bundle_block(
    bundle_block: BundleBlock,
    title: Optional[str] = None,
    camera_scale: Optional[float] = None,
    show: bool = True
) -> Figure:
    """Plot every pose and point of a bundle block, cameras colored by intrinsic group."""
    point_ids, points_3d = bundle_block.points_array()
    colors = np.array([bundle_block.colors[pid] for pid in point_ids]) if point_ids and bundle_block.colors else None
    poses = [bundle_block.poses[pid] for pid in sorted(bundle_block.poses)]
    return plot_cameras_and_points(poses, points_3d, title, camera_scale=camera_scale, point_colors=colors,
                                   camera_models=bundle_block.groups, show=show)


def plot_cameras_and_points(
    camera_poses: List[CameraPose],
    points_3d: npt.NDArray[np.float64],
    title: Optional[str] = None,
    camera_scale: Optional[float] = None,
    point_size: float = 4.0,
    point_colors: Optional[npt.NDArray[np.float64]] = None,
    camera_models: Optional[Dict[int, CameraModel]] = None,
    show: bool = True
) -> Figure:
    """
    Plot camera frusta and the sparse point cloud.

    Args:
        camera_poses: World-to-camera poses
        points_3d: (N, 3) world points
        title: Plot title, defaults to a camera/point count
        camera_scale: Frustum depth in world units; defaults to a tenth of
            the spread of the camera centers
        point_size: Size of point markers
        point_colors: Optional (N, 3) RGB colors in [0, 255]
        camera_models: Intrinsics keyed by group id, used for the frustum aspect ratio
        show: Display the figure

    Returns:
        The matplotlib figure
    """
    assert len(camera_poses) > 0, "At least one camera pose must be provided"
    assert points_3d.ndim == 2 and points_3d.shape[1] == 3, \
        f"points_3d must be Nx3 array, got shape {points_3d.shape}"

    centers = np.array([pose.center for pose in camera_poses])
    if camera_scale is None:
        spread = float(np.ptp(centers, axis=0).max()) if len(centers) > 1 else 0.0
        camera_scale = 0.1 * spread if spread > 0.0 else 1.0

    fig = plt.figure(figsize=(12, 10))
    ax = fig.add_subplot(111, projection='3d')

    if len(points_3d) > 0:
        color = 'gray' if point_colors is None else np.clip(point_colors / 255.0, 0.0, 1.0)
        ax.scatter(points_3d[:, 0], points_3d[:, 1], points_3d[:, 2], c=color, s=point_size, alpha=0.6,
                   depthshade=False)

    group_ids = sorted({pose.group_id for pose in camera_poses})
    palette = plt.cm.tab10(np.arange(len(group_ids)) % 10)
    group_color = dict(zip(group_ids, palette))

    labelled = set()
    for pose, center in zip(camera_poses, centers):
        color = group_color[pose.group_id]
        label = None
        if pose.group_id not in labelled:
            label = f'Group {pose.group_id}'
            labelled.add(pose.group_id)
        ax.scatter(*center, color=color, s=30, marker='o', label=label)
        model = camera_models.get(pose.group_id) if camera_models else None
        plot_camera_frustum(ax, pose, camera_scale, color, model)

    ax.set_xlabel('X')
    ax.set_ylabel('Y')
    ax.set_zlabel('Z')
    if title is None:
        title = f"Cameras: {len(camera_poses)}, Points: {len(points_3d)}"
    ax.set_title(title, fontsize=14, fontweight='bold')
    if len(group_ids) <= 10:
        ax.legend(fontsize=10)

    ax.set_box_aspect([1, 1, 1])
    fig.tight_layout()

    if show:
        plt.show()
    return fig


def frustum_corners(
    pose: CameraPose,
    depth: float,
    camera_model: Optional[CameraModel] = None
) -> npt.NDArray[np.float64]:
    """
    World coordinates of the image plane corners at the given depth, followed by the center.

    With a camera model the corners are the back-projected image corners,
    taking the image size as twice the principal point.
    """
    if camera_model is None:
        half_width, half_height = 0.6, 0.4
    else:
        cx, cy = camera_model.principal_point
        half_width = cx / camera_model.focal_length
        half_height = cy / camera_model.focal_length_y
    corners_cam = depth * np.array([
        [-half_width, -half_height, 1.0],
        [half_width, -half_height, 1.0],
        [half_width, half_height, 1.0],
        [-half_width, half_height, 1.0],
        [0.0, 0.0, 0.0],
    ])
    return pose.center + corners_cam @ pose.rotation


def plot_camera_frustum(
    ax: Axes3D,
    pose: CameraPose,
    scale: float = 1.0,
    color=(1.0, 0.0, 0.0, 1.0),
    camera_model: Optional[CameraModel] = None
) -> None:
    """Draw a pyramid opening along the camera's +Z viewing axis."""
    corners = frustum_corners(pose, scale, camera_model)
    apex = corners[4]
    for i in range(4):
        edge = np.stack([corners[i], corners[(i + 1) % 4]])
        ax.plot(edge[:, 0], edge[:, 1], edge[:, 2], color=color, linewidth=1.5)
        ray = np.stack([apex, corners[i]])
        ax.plot(ray[:, 0], ray[:, 1], ray[:, 2], color=color, linewidth=0.8, alpha=0.7)
