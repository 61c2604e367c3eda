import numpy as np
import numpy.typing as npt
from typing import Tuple, Optional
from scipy.spatial.transform import Rotation


# Points closer than this to the image plane are treated as behind the camera
MIN_DEPTH = 1e-8


def angle_axis_to_rotation(angle_axis: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """
    Convert angle-axis vectors to rotation matrices.

    Args:
        angle_axis: Rotation vector of shape (3,) or stack of shape (N, 3)

    Returns:
        Rotation matrix of shape (3, 3) or stack of shape (N, 3, 3)
    """
    return Rotation.from_rotvec(angle_axis).as_matrix()


def rotation_to_angle_axis(rotation_matrix: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """
    Convert rotation matrices to angle-axis vectors.

    Args:
        rotation_matrix: Matrix of shape (3, 3) or stack of shape (N, 3, 3)

    Returns:
        Rotation vector of shape (3,) or stack of shape (N, 3)
    """
    return Rotation.from_matrix(rotation_matrix).as_rotvec()


def compose_angle_axis(
    delta: npt.NDArray[np.float64],
    angle_axis: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    """Left-multiply rotations: R(result) = exp([delta]x) R(angle_axis)."""
    return (Rotation.from_rotvec(delta) * Rotation.from_rotvec(angle_axis)).as_rotvec()


def skew(vectors: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """Stack of cross-product matrices for vectors of shape (N, 3)."""
    n = vectors.shape[0]
    K = np.zeros((n, 3, 3))
    K[:, 0, 1] = -vectors[:, 2]
    K[:, 0, 2] = vectors[:, 1]
    K[:, 1, 0] = vectors[:, 2]
    K[:, 1, 2] = -vectors[:, 0]
    K[:, 2, 0] = -vectors[:, 1]
    K[:, 2, 1] = vectors[:, 0]
    return K


def _distort(
    intrinsics: npt.NDArray[np.float64],
    points_cam: npt.NDArray[np.float64]
) -> Tuple[npt.NDArray[np.float64], ...]:
    # Shared by projection and its derivatives
    with np.errstate(divide='ignore', invalid='ignore'):
        x_norm = points_cam[:, 0] / points_cam[:, 2]
        y_norm = points_cam[:, 1] / points_cam[:, 2]
    k1 = intrinsics[:, 4]
    k2 = intrinsics[:, 5]
    r2 = x_norm * x_norm + y_norm * y_norm
    distortion = 1.0 + k1 * r2 + k2 * r2 * r2
    return x_norm, y_norm, r2, distortion


def project_points(
    intrinsics: npt.NDArray[np.float64],
    angle_axis: npt.NDArray[np.float64],
    translation: npt.NDArray[np.float64],
    points_3d: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    """
    Project world points through posed cameras.

    All inputs are row-aligned stacks: row k of every array belongs to the
    same observation.

    Args:
        intrinsics: (N, 6) rows of (fx, fy, cx, cy, k1, k2)
        angle_axis: (N, 3) world-to-camera rotations
        translation: (N, 3) world-to-camera translations
        points_3d: (N, 3) world points

    Returns:
        (N, 2) image coordinates
    """
    R = angle_axis_to_rotation(angle_axis)
    points_cam = np.einsum('nij,nj->ni', R, points_3d) + translation
    x_norm, y_norm, _, distortion = _distort(intrinsics, points_cam)

    projected = np.empty((points_3d.shape[0], 2))
    projected[:, 0] = intrinsics[:, 0] * distortion * x_norm + intrinsics[:, 2]
    projected[:, 1] = intrinsics[:, 1] * distortion * y_norm + intrinsics[:, 3]
    return projected


def project_with_jacobians(
    intrinsics: npt.NDArray[np.float64],
    angle_axis: npt.NDArray[np.float64],
    translation: npt.NDArray[np.float64],
    points_3d: npt.NDArray[np.float64]
) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.bool_]]:
    """
    Project world points and differentiate the projection.

    The pose derivative is taken with respect to a left rotation increment
    w (R <- exp([w]x) R) followed by an additive translation increment, in
    the column order (w, t).

    Args:
        intrinsics: (N, 6) rows of (fx, fy, cx, cy, k1, k2)
        angle_axis: (N, 3) world-to-camera rotations
        translation: (N, 3) world-to-camera translations
        points_3d: (N, 3) world points

    Returns:
        Tuple of (projected, J_pose, J_point, valid) where:
        - projected: (N, 2) image coordinates
        - J_pose: (N, 2, 6) derivative with respect to the pose increment
        - J_point: (N, 2, 3) derivative with respect to the world point
        - valid: (N,) mask of points in front of the camera; rows outside
          the mask carry zero derivatives
    """
    n = points_3d.shape[0]
    R = angle_axis_to_rotation(angle_axis).reshape(n, 3, 3)
    rotated = np.einsum('nij,nj->ni', R, points_3d)
    points_cam = rotated + translation

    valid = points_cam[:, 2] > MIN_DEPTH
    x_norm, y_norm, r2, distortion = _distort(intrinsics, points_cam)

    fx, fy = intrinsics[:, 0], intrinsics[:, 1]
    k1, k2 = intrinsics[:, 4], intrinsics[:, 5]

    projected = np.empty((n, 2))
    projected[:, 0] = fx * distortion * x_norm + intrinsics[:, 2]
    projected[:, 1] = fy * distortion * y_norm + intrinsics[:, 3]

    # d(u, v) / d(x_norm, y_norm)
    d_distortion = k1 + 2.0 * k2 * r2
    d_uv_d_norm = np.empty((n, 2, 2))
    d_uv_d_norm[:, 0, 0] = fx * (distortion + 2.0 * x_norm * x_norm * d_distortion)
    d_uv_d_norm[:, 0, 1] = fx * 2.0 * x_norm * y_norm * d_distortion
    d_uv_d_norm[:, 1, 0] = fy * 2.0 * x_norm * y_norm * d_distortion
    d_uv_d_norm[:, 1, 1] = fy * (distortion + 2.0 * y_norm * y_norm * d_distortion)

    # d(x_norm, y_norm) / d(camera point)
    d_norm_d_cam = np.zeros((n, 2, 3))
    depth = np.where(valid, points_cam[:, 2], 1.0)
    d_norm_d_cam[:, 0, 0] = 1.0 / depth
    d_norm_d_cam[:, 0, 2] = -points_cam[:, 0] / (depth * depth)
    d_norm_d_cam[:, 1, 1] = 1.0 / depth
    d_norm_d_cam[:, 1, 2] = -points_cam[:, 1] / (depth * depth)

    d_uv_d_cam = np.einsum('nij,njk->nik', d_uv_d_norm, d_norm_d_cam)
    d_uv_d_cam[~valid] = 0.0

    J_pose = np.empty((n, 2, 6))
    J_pose[:, :, :3] = -np.einsum('nij,njk->nik', d_uv_d_cam, skew(rotated))
    J_pose[:, :, 3:] = d_uv_d_cam
    J_point = np.einsum('nij,njk->nik', d_uv_d_cam, R)

    return projected, J_pose, J_point, valid


class CameraModel:
    """
    Pinhole camera model with two-coefficient radial distortion.

    One instance describes an intrinsic group: the calibration shared by
    every pose assigned to that group.
    """

    def __init__(
        self,
        focal_length: float,
        principal_point: Tuple[float, float],
        distortion_coeffs: Optional[npt.NDArray[np.float64]] = None,
        focal_length_y: Optional[float] = None
    ) -> None:
        """
        Initialize camera model.

        Args:
            focal_length: Focal length along x in pixels
            principal_point: Principal point (cx, cy) in pixels
            distortion_coeffs: Optional radial distortion coefficients (k1, k2)
            focal_length_y: Focal length along y, defaults to focal_length
        """
        self.focal_length = float(focal_length)
        self.focal_length_y = float(focal_length if focal_length_y is None else focal_length_y)
        self.principal_point = (float(principal_point[0]), float(principal_point[1]))
        if distortion_coeffs is None:
            distortion_coeffs = np.zeros(2)
        self.distortion_coeffs = np.asarray(distortion_coeffs, dtype=np.float64)
        if self.distortion_coeffs.shape != (2,):
            raise ValueError(f"Expected two radial distortion coefficients, got {self.distortion_coeffs.shape}")

    @classmethod
    def from_vector(cls, intrinsic: npt.NDArray[np.float64]) -> "CameraModel":
        """Build from a (fx, fy, cx, cy, k1, k2) vector."""
        intrinsic = np.asarray(intrinsic, dtype=np.float64)
        if intrinsic.shape != (6,):
            raise ValueError(f"Intrinsic vector must have shape (6,), got {intrinsic.shape}")
        return cls(intrinsic[0], (intrinsic[2], intrinsic[3]), intrinsic[4:6], focal_length_y=intrinsic[1])

    def to_vector(self) -> npt.NDArray[np.float64]:
        return np.array([
            self.focal_length, self.focal_length_y,
            self.principal_point[0], self.principal_point[1],
            self.distortion_coeffs[0], self.distortion_coeffs[1]
        ])

    def project(
        self,
        points_3d: npt.NDArray[np.float64],
        pose: Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]
    ) -> npt.NDArray[np.float64]:
        """
        Project 3D points to 2D image coordinates.

        Args:
            points_3d: 3D points in world coordinates (Nx3 array)
            pose: Camera pose as (angle_axis, translation), world to camera

        Returns:
            2D points in image coordinates (Nx2 array)
        """
        angle_axis, translation = pose
        assert points_3d.ndim == 2 and points_3d.shape[1] == 3, \
            f"points_3d must be Nx3 array, got shape {points_3d.shape}"

        n = points_3d.shape[0]
        return project_points(
            np.tile(self.to_vector(), (n, 1)),
            np.tile(np.asarray(angle_axis, dtype=np.float64), (n, 1)),
            np.tile(np.asarray(translation, dtype=np.float64), (n, 1)),
            points_3d
        )

    def __repr__(self) -> str:
        return (f"CameraModel(f=({self.focal_length:.2f}, {self.focal_length_y:.2f}), "
                f"c=({self.principal_point[0]:.2f}, {self.principal_point[1]:.2f}), "
                f"k={self.distortion_coeffs.tolist()})")
