import numpy as np
import numpy.typing as npt
from typing import Dict, List, Optional, Tuple

from .camera_models import CameraModel, angle_axis_to_rotation


class CameraPose:
    """
    Represents a camera pose in angle-axis form.

    A world point X maps to camera coordinates as R(angle_axis) @ X + translation.

    Attributes:
        angle_axis: 3D rotation vector
        translation: 3D translation vector
        group_id: Id of the intrinsic group shared with other cameras
        name: Optional image name
    """

    def __init__(
        self,
        angle_axis: npt.NDArray[np.float64],
        translation: npt.NDArray[np.float64],
        group_id: int = 0,
        name: str = ""
    ) -> None:
        self.angle_axis = np.asarray(angle_axis, dtype=np.float64)
        self.translation = np.asarray(translation, dtype=np.float64)
        self.group_id = group_id
        self.name = name

    @property
    def rotation(self) -> npt.NDArray[np.float64]:
        return angle_axis_to_rotation(self.angle_axis)

    @property
    def center(self) -> npt.NDArray[np.float64]:
        """Camera center in world coordinates."""
        return -self.rotation.T @ self.translation

    def copy(self) -> "CameraPose":
        return CameraPose(self.angle_axis.copy(), self.translation.copy(), self.group_id, self.name)

    def __repr__(self) -> str:
        return (f"CameraPose(angle_axis={np.round(self.angle_axis, 4).tolist()}, "
                f"translation={np.round(self.translation, 4).tolist()}, group={self.group_id})")


class Observation:
    """
    Represents a single observation of a 3D point in an image.

    Attributes:
        pose_id: Id of the camera pose that made this observation
        point_id: Id of the 3D point being observed
        image_point: 2D image coordinates of the observation
    """

    def __init__(
        self,
        pose_id: int,
        point_id: int,
        image_point: npt.NDArray[np.float64]
    ) -> None:
        self.pose_id = pose_id
        self.point_id = point_id
        self.image_point = np.asarray(image_point, dtype=np.float64)

    def __repr__(self) -> str:
        return f"Observation(pose={self.pose_id}, point={self.point_id}, coords={self.image_point})"


class BundleBlock:
    """
    External bundle adjustment model keyed by origin ids.

    Ids need not be contiguous; the optimization problem maps them to local
    indices on initialization and back on update.

    Attributes:
        groups: Intrinsic groups by group id
        poses: Camera poses by pose id
        points: 3D points by point id
        colors: RGB colors by point id
        observations: List of observations
    """

    def __init__(
        self,
        groups: Dict[int, CameraModel],
        poses: Dict[int, CameraPose],
        points: Dict[int, npt.NDArray[np.float64]],
        observations: List[Observation],
        colors: Optional[Dict[int, npt.NDArray[np.float64]]] = None
    ) -> None:
        self.groups = groups
        self.poses = poses
        self.points = {point_id: np.asarray(point, dtype=np.float64) for point_id, point in points.items()}
        self.observations = observations
        if colors is None:
            colors = {}
        self.colors = {point_id: np.asarray(colors.get(point_id, np.zeros(3)), dtype=np.float64)
                       for point_id in self.points}

    def copy(self) -> "BundleBlock":
        return BundleBlock(
            groups={gid: CameraModel.from_vector(group.to_vector()) for gid, group in self.groups.items()},
            poses={pid: pose.copy() for pid, pose in self.poses.items()},
            points={pid: point.copy() for pid, point in self.points.items()},
            observations=[Observation(o.pose_id, o.point_id, o.image_point.copy()) for o in self.observations],
            colors={pid: color.copy() for pid, color in self.colors.items()}
        )

    def points_array(self) -> Tuple[List[int], npt.NDArray[np.float64]]:
        """Point ids in ascending order and the matching (N, 3) positions."""
        point_ids = sorted(self.points)
        if not point_ids:
            return point_ids, np.zeros((0, 3))
        return point_ids, np.array([self.points[pid] for pid in point_ids])

    def validate(self) -> None:
        """
        Validate the model for structural consistency.

        Raises:
            ValueError: If data is inconsistent or invalid
        """
        if len(self.poses) == 0:
            raise ValueError("At least one camera pose must be provided")

        for pose_id, pose in self.poses.items():
            if pose.angle_axis.shape != (3,):
                raise ValueError(f"Camera pose {pose_id}: angle_axis must be (3,), got {pose.angle_axis.shape}")
            if pose.translation.shape != (3,):
                raise ValueError(f"Camera pose {pose_id}: translation must be (3,), got {pose.translation.shape}")
            if pose.group_id not in self.groups:
                raise ValueError(f"Camera pose {pose_id}: unknown intrinsic group {pose.group_id}")

        used_groups = {pose.group_id for pose in self.poses.values()}
        for group_id in self.groups:
            if group_id not in used_groups:
                raise ValueError(f"Intrinsic group {group_id} has no associated pose")

        for point_id, point in self.points.items():
            if point.shape != (3,):
                raise ValueError(f"Point {point_id}: position must be (3,), got {point.shape}")

        seen = set()
        for i, obs in enumerate(self.observations):
            if obs.pose_id not in self.poses:
                raise ValueError(f"Observation {i}: unknown pose id {obs.pose_id}")
            if obs.point_id not in self.points:
                raise ValueError(f"Observation {i}: unknown point id {obs.point_id}")
            if obs.image_point.shape != (2,):
                raise ValueError(f"Observation {i}: image_point must be (2,), got {obs.image_point.shape}")
            key = (obs.pose_id, obs.point_id)
            if key in seen:
                raise ValueError(f"Observation {i}: pose {obs.pose_id} observes point {obs.point_id} twice")
            seen.add(key)

    def __repr__(self) -> str:
        return (f"BundleBlock("
                f"groups={len(self.groups)}, "
                f"cameras={len(self.poses)}, "
                f"points={len(self.points)}, "
                f"observations={len(self.observations)})")
