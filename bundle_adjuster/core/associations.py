import numpy as np
import numpy.typing as npt
from typing import Dict, Optional, Sequence, Tuple


def _group_by(keys: npt.NDArray[np.int64], order: npt.NDArray[np.int64], size: int) -> npt.NDArray[np.int64]:
    """CSR row pointer for entries sorted by key."""
    counts = np.bincount(keys[order], minlength=size) if order.size else np.zeros(size, dtype=np.int64)
    ptr = np.zeros(size + 1, dtype=np.int64)
    np.cumsum(counts, out=ptr[1:])
    return ptr


def _origin_map(origin: Optional[Sequence[int]], size: int, kind: str) -> Tuple[npt.NDArray[np.int64], Dict[int, int]]:
    if origin is None:
        origin = np.arange(size, dtype=np.int64)
    origin = np.asarray(origin, dtype=np.int64)
    if origin.shape != (size,):
        raise ValueError(f"{kind} origin ids must have length {size}, got {origin.shape}")
    local = {int(oid): idx for idx, oid in enumerate(origin)}
    if len(local) != size:
        raise ValueError(f"{kind} origin ids must be unique")
    return origin, local


class AssociationMaps:
    """
    Read-only adjacency between poses, points, groups and projections.

    Built once per problem. Adjacency lists are stored CSR-style: the
    projections of pose i are pose_projections[pose_ptr[i]:pose_ptr[i + 1]],
    sorted by point index, and the projections of point p are
    point_projections[point_ptr[p]:point_ptr[p + 1]], sorted by pose index.

    Every ordered pair of projections that observe the same point is listed
    in (pair_first, pair_second), grouped by point. pair_block maps each
    pair to one 6x6 block (block_rows, block_cols) of the reduced camera
    system, one block per distinct ordered pose pair. Blocks with
    different poses form the edges of the camera graph.
    """

    def __init__(
        self,
        pose_index: npt.NDArray[np.int64],
        point_index: npt.NDArray[np.int64],
        pose_group: npt.NDArray[np.int64],
        pose_num: int,
        point_num: int,
        group_num: int,
        pose_origin: Optional[Sequence[int]] = None,
        point_origin: Optional[Sequence[int]] = None,
        group_origin: Optional[Sequence[int]] = None
    ) -> None:
        """
        Build the maps.

        Args:
            pose_index: (M,) pose of each projection
            point_index: (M,) point of each projection
            pose_group: (N,) intrinsic group of each pose
            pose_num: Number of poses
            point_num: Number of points
            group_num: Number of intrinsic groups
            pose_origin: Origin id of each local pose, identity by default
            point_origin: Origin id of each local point, identity by default
            group_origin: Origin id of each local group, identity by default

        Raises:
            ValueError: On invalid references, duplicate projections, or
                groups without poses
        """
        pose_index = np.asarray(pose_index, dtype=np.int64)
        point_index = np.asarray(point_index, dtype=np.int64)
        pose_group = np.asarray(pose_group, dtype=np.int64)

        if pose_index.shape != point_index.shape:
            raise ValueError("pose_index and point_index must have the same length")
        if np.any((pose_index < 0) | (pose_index >= pose_num)):
            bad = int(np.flatnonzero((pose_index < 0) | (pose_index >= pose_num))[0])
            raise ValueError(f"Projection {bad}: pose index {pose_index[bad]} out of range [0, {pose_num - 1}]")
        if np.any((point_index < 0) | (point_index >= point_num)):
            bad = int(np.flatnonzero((point_index < 0) | (point_index >= point_num))[0])
            raise ValueError(f"Projection {bad}: point index {point_index[bad]} out of range [0, {point_num - 1}]")
        if pose_group.shape != (pose_num,):
            raise ValueError(f"pose_group must have length {pose_num}, got {pose_group.shape}")
        if np.any((pose_group < 0) | (pose_group >= group_num)):
            bad = int(np.flatnonzero((pose_group < 0) | (pose_group >= group_num))[0])
            raise ValueError(f"Pose {bad}: group index {pose_group[bad]} out of range [0, {group_num - 1}]")

        self.pose_num = pose_num
        self.point_num = point_num
        self.group_num = group_num
        self.pose_index = pose_index
        self.point_index = point_index
        self.pose_group = pose_group

        # pose -> projections
        self.pose_projections = np.lexsort((point_index, pose_index)).astype(np.int64)
        self.pose_ptr = _group_by(pose_index, self.pose_projections, pose_num)

        # point -> projections
        self.point_projections = np.lexsort((pose_index, point_index)).astype(np.int64)
        self.point_ptr = _group_by(point_index, self.point_projections, point_num)

        # (pose, point) -> projection
        self.projection_lookup: Dict[Tuple[int, int], int] = {}
        for proj, (pose, point) in enumerate(zip(pose_index.tolist(), point_index.tolist())):
            if (pose, point) in self.projection_lookup:
                raise ValueError(f"Projection {proj}: pose {pose} observes point {point} more than once")
            self.projection_lookup[(pose, point)] = proj

        # group -> poses
        self.group_poses = np.argsort(pose_group, kind='stable').astype(np.int64)
        self.group_ptr = _group_by(pose_group, self.group_poses, group_num)
        empty = np.flatnonzero(np.diff(self.group_ptr) == 0)
        if empty.size:
            raise ValueError(f"Intrinsic group {int(empty[0])} has no associated pose")

        self._build_pairs()

        self.pose_origin, self.pose_local = _origin_map(pose_origin, pose_num, "Pose")
        self.point_origin, self.point_local = _origin_map(point_origin, point_num, "Point")
        self.group_origin, self.group_local = _origin_map(group_origin, group_num, "Group")

    def _build_pairs(self) -> None:
        track_length = np.diff(self.point_ptr)
        sorted_points = self.point_index[self.point_projections]
        repeats = track_length[sorted_points]

        self.pair_first = np.repeat(self.point_projections, repeats)
        block_start = np.repeat(np.cumsum(repeats) - repeats, repeats)
        within = np.arange(self.pair_first.size, dtype=np.int64) - block_start
        self.pair_second = self.point_projections[np.repeat(self.point_ptr[sorted_points], repeats) + within]
        self.pair_point = self.point_index[self.pair_first]

        # pose-pair blocks of the reduced system, each pair mapped to its block
        pair_key = self.pose_index[self.pair_first] * self.pose_num + self.pose_index[self.pair_second]
        block_key, pair_block = np.unique(pair_key, return_inverse=True)
        self.pair_block = pair_block.reshape(-1).astype(np.int64)
        self.block_rows = (block_key // max(self.pose_num, 1)).astype(np.int64)
        self.block_cols = (block_key % max(self.pose_num, 1)).astype(np.int64)

        off_diagonal = self.block_rows != self.block_cols
        self.pose_degree = np.bincount(self.block_rows[off_diagonal], minlength=self.pose_num).astype(np.int64)
        self.edge_num = int(off_diagonal.sum()) // 2
        self.max_degree = int(self.pose_degree.max()) if self.pose_num else 0

    @property
    def projection_num(self) -> int:
        return self.pose_index.shape[0]

    def get_pose_projections(self, pose: int) -> npt.NDArray[np.int64]:
        return self.pose_projections[self.pose_ptr[pose]:self.pose_ptr[pose + 1]]

    def get_point_projections(self, point: int) -> npt.NDArray[np.int64]:
        return self.point_projections[self.point_ptr[point]:self.point_ptr[point + 1]]

    def get_pose_points(self, pose: int) -> npt.NDArray[np.int64]:
        return self.point_index[self.get_pose_projections(pose)]

    def get_group_poses(self, group: int) -> npt.NDArray[np.int64]:
        return self.group_poses[self.group_ptr[group]:self.group_ptr[group + 1]]

    def get_projection_index(self, pose: int, point: int) -> int:
        """
        Projection of a point in a pose.

        Raises:
            KeyError: If the pose does not observe the point
        """
        return self.projection_lookup[(pose, point)]

    def get_common_points(self, pose1: int, pose2: int) -> npt.NDArray[np.int64]:
        """Points observed by both poses, in ascending order."""
        return np.intersect1d(self.get_pose_points(pose1), self.get_pose_points(pose2), assume_unique=True)

    def __repr__(self) -> str:
        return (f"AssociationMaps(poses={self.pose_num}, points={self.point_num}, "
                f"projections={self.projection_num}, edges={self.edge_num}, max_degree={self.max_degree})")
