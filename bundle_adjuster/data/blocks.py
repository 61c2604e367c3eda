import numpy as np
import numpy.typing as npt
from typing import Tuple


def _check_index(idx: int, size: int, kind: str) -> None:
    if idx < 0 or idx >= size:
        raise IndexError(f"{kind} index {idx} out of range [0, {size - 1}]")


def _as_vector(value: npt.ArrayLike, length: int, name: str) -> npt.NDArray[np.float64]:
    array = np.asarray(value, dtype=np.float64).reshape(-1)
    if array.shape != (length,):
        raise ValueError(f"{name} must have {length} entries, got shape {array.shape}")
    return array


class PoseBlock:
    """
    Contiguous storage for camera poses.

    Attributes:
        angle_axis: (N, 3) world-to-camera rotations
        translation: (N, 3) world-to-camera translations
        group: (N,) intrinsic group of every pose, -1 while unassigned
    """

    def __init__(self, pose_num: int = 0) -> None:
        self.create(pose_num)

    def create(self, pose_num: int) -> None:
        self.angle_axis = np.zeros((pose_num, 3))
        self.translation = np.zeros((pose_num, 3))
        self.group = np.full(pose_num, -1, dtype=np.int64)

    def pose_num(self) -> int:
        return self.angle_axis.shape[0]

    def get_pose(self, idx: int) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        _check_index(idx, self.pose_num(), "Pose")
        return self.angle_axis[idx].copy(), self.translation[idx].copy()

    def set_pose(self, idx: int, angle_axis: npt.ArrayLike, translation: npt.ArrayLike) -> None:
        _check_index(idx, self.pose_num(), "Pose")
        self.angle_axis[idx] = _as_vector(angle_axis, 3, "angle_axis")
        self.translation[idx] = _as_vector(translation, 3, "translation")


class PointBlock:
    """Contiguous storage for 3D point positions and display colors."""

    def __init__(self, point_num: int = 0) -> None:
        self.create(point_num)

    def create(self, point_num: int) -> None:
        self.points = np.zeros((point_num, 3))
        self.colors = np.zeros((point_num, 3))

    def point_num(self) -> int:
        return self.points.shape[0]

    def get_point(self, idx: int) -> npt.NDArray[np.float64]:
        _check_index(idx, self.point_num(), "Point")
        return self.points[idx].copy()

    def set_point(self, idx: int, point: npt.ArrayLike) -> None:
        _check_index(idx, self.point_num(), "Point")
        self.points[idx] = _as_vector(point, 3, "point")

    def get_color(self, idx: int) -> npt.NDArray[np.float64]:
        _check_index(idx, self.point_num(), "Point")
        return self.colors[idx].copy()

    def set_color(self, idx: int, color: npt.ArrayLike) -> None:
        _check_index(idx, self.point_num(), "Point")
        self.colors[idx] = _as_vector(color, 3, "color")


class IntrinsicBlock:
    """Contiguous storage for intrinsic groups, one (fx, fy, cx, cy, k1, k2) row per group."""

    def __init__(self, group_num: int = 0) -> None:
        self.create(group_num)

    def create(self, group_num: int) -> None:
        self.intrinsics = np.zeros((group_num, 6))

    def group_num(self) -> int:
        return self.intrinsics.shape[0]

    def get_intrinsic(self, idx: int) -> npt.NDArray[np.float64]:
        _check_index(idx, self.group_num(), "Group")
        return self.intrinsics[idx].copy()

    def set_intrinsic(self, idx: int, intrinsic: npt.ArrayLike) -> None:
        _check_index(idx, self.group_num(), "Group")
        self.intrinsics[idx] = _as_vector(intrinsic, 6, "intrinsic")


class ProjectionBlock:
    """
    Contiguous storage for observations.

    Attributes:
        pose_index: (M,) pose observing each projection, -1 while unset
        point_index: (M,) observed point of each projection, -1 while unset
        observations: (M, 2) measured image coordinates
    """

    def __init__(self, projection_num: int = 0) -> None:
        self.create(projection_num)

    def create(self, projection_num: int) -> None:
        self.pose_index = np.full(projection_num, -1, dtype=np.int64)
        self.point_index = np.full(projection_num, -1, dtype=np.int64)
        self.observations = np.zeros((projection_num, 2))

    def projection_num(self) -> int:
        return self.observations.shape[0]

    def get_projection(self, idx: int) -> Tuple[int, int, npt.NDArray[np.float64]]:
        _check_index(idx, self.projection_num(), "Projection")
        return int(self.pose_index[idx]), int(self.point_index[idx]), self.observations[idx].copy()

    def set_projection(self, idx: int, pose_index: int, point_index: int, observation: npt.ArrayLike) -> None:
        _check_index(idx, self.projection_num(), "Projection")
        self.pose_index[idx] = pose_index
        self.point_index[idx] = point_index
        self.observations[idx] = _as_vector(observation, 2, "observation")
