import io
import numpy as np
import numpy.typing as npt
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from ..data.blocks import IntrinsicBlock, PointBlock, PoseBlock, ProjectionBlock
from ..data.camera_models import CameraModel, angle_axis_to_rotation, compose_angle_axis
from ..data.observations import BundleBlock
from ..solvers.linear_solvers import LinearSolverOptions, LinearSolverType
from ..solvers.strategies import SchurStrategy
from .associations import AssociationMaps
from .loss_functions import LossFunction
from .parallel import ParallelConfig
from .residuals import compute_reprojection_error, evaluate_residual


class BAProblem:
    """
    Bundle adjustment problem state.

    Holds the indexed data blocks (poses, points, intrinsic groups,
    projections), the association maps built from them, and the
    per-iteration algebraic buffers (residuals, Jacobians, normal-equation
    blocks, updates) as contiguous arrays indexed by local ids.

    A problem is filled either with initialize() from a BundleBlock, or
    with create() followed by the set_* methods; association maps are
    built on demand before the first evaluation. The problem is not
    reentrant: one solver at a time.
    """

    def __init__(
        self,
        loss_function: Optional[LossFunction] = None,
        parallel: Optional[ParallelConfig] = None,
        strategy: Optional[SchurStrategy] = None,
        linear_solver_type: LinearSolverType = LinearSolverType.ADAPTIVE,
        solver_options: Optional[LinearSolverOptions] = None,
        debug_folder: Optional[Union[str, Path]] = None
    ) -> None:
        """
        Initialize an empty problem.

        Args:
            loss_function: Robust loss applied to residuals, squared loss by default
            parallel: Thread configuration, single-threaded by default
            strategy: Elimination strategy, SchurStrategy by default
            linear_solver_type: Reduced camera system solver
            solver_options: Linear solver tuning
            debug_folder: Folder receiving the report and cost history after each solve
        """
        self.loss_function = loss_function if loss_function is not None else LossFunction()
        self.parallel = parallel if parallel is not None else ParallelConfig(1)
        self.strategy = strategy if strategy is not None else SchurStrategy()
        self.linear_solver_type = LinearSolverType(linear_solver_type)
        self.solver_options = solver_options if solver_options is not None else LinearSolverOptions()
        self.report_stream = io.StringIO()
        self.debug_folder = None
        self.set_debug_folder(debug_folder)
        self.create(0, 0, 0, 0)

    # Construction

    def create(self, pose_num: int, group_num: int, point_num: int, proj_num: int) -> None:
        """
        Preallocate storage for a problem of the given size.

        Raises:
            ValueError: If any count is negative
        """
        for name, value in (("pose", pose_num), ("group", group_num), ("point", point_num), ("projection", proj_num)):
            if value < 0:
                raise ValueError(f"{name} count must be non-negative, got {value}")

        self.pose_block = PoseBlock(pose_num)
        self.point_block = PointBlock(point_num)
        self.intrinsic_block = IntrinsicBlock(group_num)
        self.projection_block = ProjectionBlock(proj_num)
        self.maps: Optional[AssociationMaps] = None
        self._allocate_state()

    def initialize(self, bundle_block: BundleBlock, pose_ids: Optional[Iterable[int]] = None) -> None:
        """
        Fill the problem from an external model.

        Args:
            bundle_block: Model keyed by origin ids
            pose_ids: Optional subset of pose ids; only those poses, their
                intrinsic groups, their observations and the points they
                observe enter the problem

        Raises:
            ValueError: If the model is structurally invalid
        """
        bundle_block.validate()

        if pose_ids is None:
            selected_poses = sorted(bundle_block.poses)
            observations = list(bundle_block.observations)
            selected_points = sorted(bundle_block.points)
        else:
            selected_poses = sorted(set(pose_ids))
            for pose_id in selected_poses:
                if pose_id not in bundle_block.poses:
                    raise ValueError(f"Unknown pose id {pose_id}")
            pose_set = set(selected_poses)
            observations = [obs for obs in bundle_block.observations if obs.pose_id in pose_set]
            selected_points = sorted({obs.point_id for obs in observations})

        selected_groups = sorted({bundle_block.poses[pid].group_id for pid in selected_poses})
        group_local = {gid: idx for idx, gid in enumerate(selected_groups)}
        pose_local = {pid: idx for idx, pid in enumerate(selected_poses)}
        point_local = {pid: idx for idx, pid in enumerate(selected_points)}

        self.create(len(selected_poses), len(selected_groups), len(selected_points), len(observations))

        for gid, idx in group_local.items():
            self.set_intrinsic(idx, bundle_block.groups[gid].to_vector())
        for pid, idx in pose_local.items():
            pose = bundle_block.poses[pid]
            self.set_pose(idx, pose.angle_axis, pose.translation)
            self.set_pose_group(idx, group_local[pose.group_id])
        for pid, idx in point_local.items():
            self.set_point(idx, bundle_block.points[pid])
            self.set_color(idx, bundle_block.colors[pid])
        for idx, obs in enumerate(observations):
            self.set_projection(idx, pose_local[obs.pose_id], point_local[obs.point_id], obs.image_point)

        self.build_associations(selected_poses, selected_points, selected_groups)

    def build_associations(
        self,
        pose_origin: Optional[Iterable[int]] = None,
        point_origin: Optional[Iterable[int]] = None,
        group_origin: Optional[Iterable[int]] = None
    ) -> AssociationMaps:
        """
        Build the association maps from the current projections.

        Origin ids default to the local indices.

        Raises:
            ValueError: On invalid references or groups without poses
        """
        self.maps = AssociationMaps(
            self.projection_block.pose_index,
            self.projection_block.point_index,
            self.pose_block.group,
            self.pose_num,
            self.point_num,
            self.group_num,
            pose_origin=None if pose_origin is None else list(pose_origin),
            point_origin=None if point_origin is None else list(point_origin),
            group_origin=None if group_origin is None else list(group_origin),
        )
        return self.maps

    def ensure_associations(self) -> AssociationMaps:
        if self.maps is None:
            self.build_associations()
        return self.maps

    def _allocate_state(self) -> None:
        n, p, m = self.pose_num, self.point_num, self.projection_num
        self.residual = np.zeros((m, 2))
        self.weighted_residual = np.zeros((m, 2))
        self.pose_jacobian = np.zeros((m, 2, 6))
        self.point_jacobian = np.zeros((m, 2, 3))
        self.valid_projection = np.zeros(m, dtype=bool)
        self.jc_jc = np.zeros((n, 6, 6))
        self.jp_jp = np.zeros((p, 3, 3))
        self.jp_jp_inverse = np.zeros((p, 3, 3))
        self.point_singular = np.zeros(p, dtype=bool)
        self.jc_jp = np.zeros((m, 6, 3))
        self.ec_cinv = np.zeros((m, 6, 3))
        self.jce = np.zeros((n, 6))
        self.jpe = np.zeros((p, 3))
        self.ecw = np.zeros((n, 6))
        self.pose_update = np.zeros((n, 6))
        self.point_update = np.zeros((p, 3))

    def clear_state(self) -> None:
        """Reset every per-iteration buffer to zero."""
        for buffer in (self.residual, self.weighted_residual, self.pose_jacobian, self.point_jacobian,
                       self.valid_projection, self.jc_jc, self.jp_jp, self.jp_jp_inverse,
                       self.point_singular, self.jc_jp, self.ec_cinv, self.jce, self.jpe, self.ecw,
                       self.pose_update, self.point_update):
            buffer.fill(0)

    # Configuration

    def set_thread_num(self, thread_num: int) -> None:
        self.parallel = ParallelConfig(thread_num)
        print(f"[set_thread_num] thread number: {self.parallel.thread_num}")

    def set_linear_solver_type(self, solver_type: Union[LinearSolverType, int]) -> None:
        self.linear_solver_type = LinearSolverType(solver_type)

    def set_debug_folder(self, debug_folder: Optional[Union[str, Path]]) -> None:
        self.debug_folder = None if debug_folder is None else Path(debug_folder)

    def get_debug_folder(self) -> Optional[Path]:
        return self.debug_folder

    # Counts and data access

    @property
    def pose_num(self) -> int:
        return self.pose_block.pose_num()

    @property
    def point_num(self) -> int:
        return self.point_block.point_num()

    @property
    def group_num(self) -> int:
        return self.intrinsic_block.group_num()

    @property
    def projection_num(self) -> int:
        return self.projection_block.projection_num()

    def get_pose(self, idx: int) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        return self.pose_block.get_pose(idx)

    def set_pose(self, idx: int, angle_axis: npt.ArrayLike, translation: npt.ArrayLike) -> None:
        self.pose_block.set_pose(idx, angle_axis, translation)

    def get_point(self, idx: int) -> npt.NDArray[np.float64]:
        return self.point_block.get_point(idx)

    def set_point(self, idx: int, point: npt.ArrayLike) -> None:
        self.point_block.set_point(idx, point)

    def get_color(self, idx: int) -> npt.NDArray[np.float64]:
        return self.point_block.get_color(idx)

    def set_color(self, idx: int, color: npt.ArrayLike) -> None:
        self.point_block.set_color(idx, color)

    def get_intrinsic(self, idx: int) -> npt.NDArray[np.float64]:
        return self.intrinsic_block.get_intrinsic(idx)

    def set_intrinsic(self, idx: int, intrinsic: npt.ArrayLike) -> None:
        self.intrinsic_block.set_intrinsic(idx, intrinsic)

    def get_pose_group(self, pose_idx: int) -> int:
        self.pose_block.get_pose(pose_idx)
        return int(self.pose_block.group[pose_idx])

    def set_pose_group(self, pose_idx: int, group_idx: int) -> None:
        """
        Assign a pose to an intrinsic group.

        Raises:
            ValueError: If the group index is out of range
        """
        self.pose_block.get_pose(pose_idx)
        if group_idx < 0 or group_idx >= self.group_num:
            raise ValueError(f"Group index {group_idx} out of range [0, {self.group_num - 1}]")
        self.pose_block.group[pose_idx] = group_idx
        self.maps = None

    def get_pose_intrinsic(self, pose_idx: int) -> npt.NDArray[np.float64]:
        return self.get_intrinsic(self.get_pose_group(pose_idx))

    def get_camera_model(self, pose_idx: int) -> CameraModel:
        return CameraModel.from_vector(self.get_pose_intrinsic(pose_idx))

    def set_projection(self, idx: int, pose_idx: int, point_idx: int, observation: npt.ArrayLike) -> None:
        """
        Store an observation of point point_idx in pose pose_idx.

        Raises:
            ValueError: If the pose or point index is out of range
        """
        if pose_idx < 0 or pose_idx >= self.pose_num:
            raise ValueError(f"Projection {idx}: pose index {pose_idx} out of range [0, {self.pose_num - 1}]")
        if point_idx < 0 or point_idx >= self.point_num:
            raise ValueError(f"Projection {idx}: point index {point_idx} out of range [0, {self.point_num - 1}]")
        self.projection_block.set_projection(idx, pose_idx, point_idx, observation)
        self.maps = None

    def get_projection_index(self, pose_idx: int, point_idx: int) -> int:
        return self.ensure_associations().get_projection_index(pose_idx, point_idx)

    def get_common_points(self, pose_idx1: int, pose_idx2: int) -> npt.NDArray[np.int64]:
        return self.ensure_associations().get_common_points(pose_idx1, pose_idx2)

    # Parameter updates

    def snapshot(self) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        """Copy of the optimized parameters, for reverting a rejected step."""
        return (self.pose_block.angle_axis.copy(), self.pose_block.translation.copy(),
                self.point_block.points.copy())

    def restore(self, snapshot) -> None:
        angle_axis, translation, points = snapshot
        self.pose_block.angle_axis[:] = angle_axis
        self.pose_block.translation[:] = translation
        self.point_block.points[:] = points

    def update_param(self) -> None:
        """Apply pose_update and point_update to the data blocks."""
        if self.pose_num:
            self.pose_block.angle_axis[:] = compose_angle_axis(
                self.pose_update[:, :3], self.pose_block.angle_axis)
            self.pose_block.translation += self.pose_update[:, 3:]
        self.point_block.points += self.point_update

    def parameters_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.pose_block.angle_axis))
                    and np.all(np.isfinite(self.pose_block.translation))
                    and np.all(np.isfinite(self.point_block.points)))

    # Diagnostics and export

    def reprojection_error(self, update: bool = False) -> Tuple[float, float, float]:
        """
        (mean, median, max) reprojection error in pixels.

        Args:
            update: Recompute residuals from the current parameters first
        """
        if update and self.projection_num:
            evaluate_residual(self)
        return compute_reprojection_error(self.residual)

    def update(self, bundle_block: BundleBlock) -> None:
        """
        Write current poses, points and intrinsics back into the external model.

        Raises:
            ValueError: If the problem was not built with origin ids known to the model
        """
        maps = self.ensure_associations()
        for idx, pose_id in enumerate(maps.pose_origin.tolist()):
            if pose_id not in bundle_block.poses:
                raise ValueError(f"Pose id {pose_id} is not part of the model")
            angle_axis, translation = self.get_pose(idx)
            bundle_block.poses[pose_id].angle_axis = angle_axis
            bundle_block.poses[pose_id].translation = translation
        for idx, point_id in enumerate(maps.point_origin.tolist()):
            if point_id not in bundle_block.points:
                raise ValueError(f"Point id {point_id} is not part of the model")
            bundle_block.points[point_id] = self.get_point(idx)
            bundle_block.colors[point_id] = self.get_color(idx)
        for idx, group_id in enumerate(maps.group_origin.tolist()):
            if group_id not in bundle_block.groups:
                raise ValueError(f"Group id {group_id} is not part of the model")
            bundle_block.groups[group_id] = CameraModel.from_vector(self.get_intrinsic(idx))

    def save_report(self, report_path: Union[str, Path]) -> None:
        """Write the accumulated solver report to a text file."""
        path = Path(report_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            f.write(self.report_stream.getvalue())

    def save_debug(self, cost_history: Sequence[float], records: Sequence = ()) -> Optional[Path]:
        """
        Dump the report and the per-iteration costs into the debug folder.

        Writes report.txt, cost_history.txt (one cost per accepted step,
        initial cost first) and iterations.csv (every attempted step).
        Does nothing without a debug folder.

        Returns:
            The debug folder, or None when unset
        """
        if self.debug_folder is None:
            return None
        self.debug_folder.mkdir(parents=True, exist_ok=True)
        self.save_report(self.debug_folder / "report.txt")
        np.savetxt(self.debug_folder / "cost_history.txt", np.asarray(cost_history, dtype=np.float64))
        with open(self.debug_folder / "iterations.csv", 'w') as f:
            f.write("iteration,cost,damping,accepted,step_norm,elapsed\n")
            for record in records:
                f.write(f"{record.iteration},{float(record.cost)!r},{float(record.damping)!r},{int(record.accepted)},"
                        f"{float(record.step_norm)!r},{float(record.elapsed)!r}\n")
        return self.debug_folder

    def pose_centers(self) -> List[npt.NDArray[np.float64]]:
        if not self.pose_num:
            return []
        R = angle_axis_to_rotation(self.pose_block.angle_axis).reshape(-1, 3, 3)
        centers = -np.einsum('nji,nj->ni', R, self.pose_block.translation)
        return list(centers)

    def __repr__(self) -> str:
        return (f"BAProblem(poses={self.pose_num}, groups={self.group_num}, "
                f"points={self.point_num}, projections={self.projection_num})")
