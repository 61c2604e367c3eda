import numpy as np
import numpy.typing as npt
from typing import Dict, List, Tuple, Union
from pathlib import Path
from scipy.spatial.transform import Rotation

from .observations import CameraPose, Observation, BundleBlock
from .camera_models import CameraModel

PathLike = Union[str, Path]

# Parameter count of each supported COLMAP camera model
COLMAP_CAMERA_MODELS = {
    'SIMPLE_PINHOLE': 3,
    'PINHOLE': 4,
    'SIMPLE_RADIAL': 4,
    'RADIAL': 5,
    'OPENCV': 8,
}


def _data_lines(path: Path) -> List[str]:
    with open(path, 'r') as f:
        lines = f.readlines()
    return [line.strip() for line in lines if not line.startswith('#') and line.strip()]


def _require_file(path_to_file: PathLike, kind: str) -> Path:
    path = Path(path_to_file)
    if not path.exists():
        raise FileNotFoundError(f"COLMAP {kind} file not found: {path_to_file}")
    return path


def colmap_params_to_camera_model(model: str, params: List[float]) -> CameraModel:
    """
    Convert COLMAP camera parameters to a CameraModel.

    OPENCV tangential terms (p1, p2) are dropped.

    Raises:
        ValueError: If the model is unsupported or the parameter count is wrong
    """
    if model not in COLMAP_CAMERA_MODELS:
        raise ValueError(f"Unsupported COLMAP camera model: {model}")
    if len(params) != COLMAP_CAMERA_MODELS[model]:
        raise ValueError(f"COLMAP camera model {model} expects {COLMAP_CAMERA_MODELS[model]} "
                         f"parameters, got {len(params)}")

    if model == 'SIMPLE_PINHOLE':
        f, cx, cy = params
        return CameraModel(f, (cx, cy))
    if model == 'PINHOLE':
        fx, fy, cx, cy = params
        return CameraModel(fx, (cx, cy), focal_length_y=fy)
    if model == 'SIMPLE_RADIAL':
        f, cx, cy, k1 = params
        return CameraModel(f, (cx, cy), np.array([k1, 0.0]))
    if model == 'RADIAL':
        f, cx, cy, k1, k2 = params
        return CameraModel(f, (cx, cy), np.array([k1, k2]))
    fx, fy, cx, cy, k1, k2 = params[:6]
    return CameraModel(fx, (cx, cy), np.array([k1, k2]), focal_length_y=fy)


def load_colmap_intrinsics(path_to_cameras_txt: PathLike) -> Dict[int, CameraModel]:
    """
    Load intrinsic groups from COLMAP cameras.txt file.

    COLMAP cameras.txt format:
    # Camera list with one line of data per camera:
    #   CAMERA_ID, MODEL, WIDTH, HEIGHT, PARAMS[]

    Args:
        path_to_cameras_txt: Path to COLMAP cameras.txt file

    Returns:
        Dictionary mapping camera id to CameraModel

    Raises:
        FileNotFoundError: If cameras.txt file doesn't exist
        ValueError: If file format is invalid
    """
    path = _require_file(path_to_cameras_txt, "cameras.txt")

    groups = {}
    for line in _data_lines(path):
        parts = line.split()
        if len(parts) < 5:
            raise ValueError(f"Invalid camera line: {line}")
        camera_id = int(parts[0])
        groups[camera_id] = colmap_params_to_camera_model(parts[1], [float(p) for p in parts[4:]])
    return groups


def load_colmap_cameras(path_to_images_txt: PathLike) -> Tuple[Dict[int, CameraPose], List[Observation]]:
    """
    Load camera poses and observations from COLMAP images.txt file.

    COLMAP images.txt format:
    # Image list with two lines of data per image:
    #   IMAGE_ID, QW, QX, QY, QZ, TX, TY, TZ, CAMERA_ID, NAME
    #   POINTS2D[] as (X, Y, POINT3D_ID)

    Args:
        path_to_images_txt: Path to COLMAP images.txt file

    Returns:
        Tuple of (camera_poses, observations) where:
        - camera_poses: CameraPose objects keyed by image id
        - observations: Observation objects referencing image and point ids

    Raises:
        FileNotFoundError: If images.txt file doesn't exist
        ValueError: If file format is invalid
    """
    path = _require_file(path_to_images_txt, "images.txt")

    camera_poses = {}
    observations = []

    # Lines are read raw here since an image without keypoints has an empty second line
    with open(path, 'r') as f:
        lines = [line.rstrip('\n') for line in f if not line.startswith('#')]

    i = 0
    while i < len(lines):
        pose_parts = lines[i].split()
        if not pose_parts:
            i += 1
            continue
        if len(pose_parts) < 9:
            raise ValueError(f"Invalid camera pose line: {lines[i]}")

        image_id = int(pose_parts[0])
        qw, qx, qy, qz = map(float, pose_parts[1:5])  # Quaternion
        tx, ty, tz = map(float, pose_parts[5:8])      # Translation
        camera_id = int(pose_parts[8])
        name = pose_parts[9] if len(pose_parts) > 9 else ""

        angle_axis = Rotation.from_quat([qx, qy, qz, qw]).as_rotvec()
        camera_poses[image_id] = CameraPose(angle_axis, np.array([tx, ty, tz]), group_id=camera_id, name=name)

        obs_parts = lines[i + 1].split() if i + 1 < len(lines) else []
        if len(obs_parts) % 3 != 0:
            raise ValueError(f"Invalid observation line for image {image_id}")

        # Observations come in groups of 3: (X, Y, POINT3D_ID)
        for j in range(0, len(obs_parts), 3):
            x, y = map(float, obs_parts[j:j + 2])
            point3d_id = int(obs_parts[j + 2])
            # Keypoints without a triangulated point carry id -1
            if point3d_id != -1:
                observations.append(Observation(image_id, point3d_id, np.array([x, y])))

        i += 2  # Skip to next camera (2 lines per camera)

    return camera_poses, observations


def load_colmap_points3D(
    path_to_points3D_txt: PathLike
) -> Tuple[Dict[int, npt.NDArray[np.float64]], Dict[int, npt.NDArray[np.float64]]]:
    """
    Load 3D points from COLMAP points3D.txt file.

    COLMAP points3D.txt format:
    # 3D point list with one line of data per point:
    #   POINT3D_ID, X, Y, Z, R, G, B, ERROR, TRACK[] as (IMAGE_ID, POINT2D_IDX)

    Args:
        path_to_points3D_txt: Path to COLMAP points3D.txt file

    Returns:
        Tuple of (points, colors) keyed by point id; colors are RGB in [0, 255]

    Raises:
        FileNotFoundError: If points3D.txt file doesn't exist
        ValueError: If file format is invalid
    """
    path = _require_file(path_to_points3D_txt, "points3D.txt")

    points = {}
    colors = {}
    for line in _data_lines(path):
        parts = line.split()
        if len(parts) < 4:
            raise ValueError(f"Invalid 3D point line: {line}")

        point3d_id = int(parts[0])
        points[point3d_id] = np.array([float(v) for v in parts[1:4]])
        if len(parts) >= 7:
            colors[point3d_id] = np.array([float(v) for v in parts[4:7]])
    return points, colors


def load_colmap_model(
    path_to_cameras_txt: PathLike,
    path_to_images_txt: PathLike,
    path_to_points3D_txt: PathLike
) -> BundleBlock:
    """
    Load a complete bundle adjustment model from COLMAP text exports.

    Observations of points missing from points3D.txt are dropped.

    Args:
        path_to_cameras_txt: Path to COLMAP cameras.txt file
        path_to_images_txt: Path to COLMAP images.txt file
        path_to_points3D_txt: Path to COLMAP points3D.txt file

    Returns:
        BundleBlock keyed by COLMAP camera, image and point ids

    Raises:
        FileNotFoundError: If any file doesn't exist
        ValueError: If data is inconsistent or invalid
    """
    groups = load_colmap_intrinsics(path_to_cameras_txt)
    camera_poses, observations = load_colmap_cameras(path_to_images_txt)
    points, colors = load_colmap_points3D(path_to_points3D_txt)

    if len(camera_poses) == 0:
        raise ValueError("No camera poses loaded from images.txt")
    if len(points) == 0:
        raise ValueError("No 3D points loaded from points3D.txt")

    valid_observations = [obs for obs in observations if obs.point_id in points]
    if len(valid_observations) == 0:
        raise ValueError("No valid observations found after point id matching")

    # COLMAP may list cameras that no registered image uses
    used_groups = {pose.group_id for pose in camera_poses.values()}
    groups = {gid: model for gid, model in groups.items() if gid in used_groups}

    bundle_block = BundleBlock(groups, camera_poses, points, valid_observations, colors)
    bundle_block.validate()
    return bundle_block


def write_colmap_model(bundle_block: BundleBlock, output_dir: PathLike) -> None:
    """
    Write a model as COLMAP text files (cameras.txt, images.txt, points3D.txt).

    Every intrinsic group is written as a RADIAL camera when fx == fy and as
    OPENCV otherwise. Image sizes are not tracked and are estimated as twice
    the principal point.

    Args:
        bundle_block: Model to export
        output_dir: Directory to write into, created if missing
    """
    output = Path(output_dir)
    output.mkdir(parents=True, exist_ok=True)

    with open(output / "cameras.txt", 'w') as f:
        f.write("# Camera list with one line of data per camera:\n")
        f.write("#   CAMERA_ID, MODEL, WIDTH, HEIGHT, PARAMS[]\n")
        for camera_id in sorted(bundle_block.groups):
            model = bundle_block.groups[camera_id]
            fx, fy, cx, cy, k1, k2 = model.to_vector()
            width, height = int(round(2 * cx)), int(round(2 * cy))
            if fx == fy:
                params = [fx, cx, cy, k1, k2]
                name = 'RADIAL'
            else:
                params = [fx, fy, cx, cy, k1, k2, 0.0, 0.0]
                name = 'OPENCV'
            f.write(f"{camera_id} {name} {width} {height} " + " ".join(repr(float(p)) for p in params) + "\n")

    # Keypoint index of every observation within its image, needed by the point tracks
    image_observations: Dict[int, List[Observation]] = {pose_id: [] for pose_id in bundle_block.poses}
    tracks: Dict[int, List[Tuple[int, int]]] = {point_id: [] for point_id in bundle_block.points}
    for obs in bundle_block.observations:
        tracks[obs.point_id].append((obs.pose_id, len(image_observations[obs.pose_id])))
        image_observations[obs.pose_id].append(obs)

    with open(output / "images.txt", 'w') as f:
        f.write("# Image list with two lines of data per image:\n")
        f.write("#   IMAGE_ID, QW, QX, QY, QZ, TX, TY, TZ, CAMERA_ID, NAME\n")
        f.write("#   POINTS2D[] as (X, Y, POINT3D_ID)\n")
        for image_id in sorted(bundle_block.poses):
            pose = bundle_block.poses[image_id]
            qx, qy, qz, qw = Rotation.from_rotvec(pose.angle_axis).as_quat()
            tx, ty, tz = pose.translation
            name = pose.name or f"image_{image_id}"
            values = [qw, qx, qy, qz, tx, ty, tz]
            f.write(f"{image_id} " + " ".join(repr(float(v)) for v in values) + f" {pose.group_id} {name}\n")
            f.write(" ".join(f"{float(obs.image_point[0])!r} {float(obs.image_point[1])!r} {obs.point_id}"
                             for obs in image_observations[image_id]) + "\n")

    with open(output / "points3D.txt", 'w') as f:
        f.write("# 3D point list with one line of data per point:\n")
        f.write("#   POINT3D_ID, X, Y, Z, R, G, B, ERROR, TRACK[] as (IMAGE_ID, POINT2D_IDX)\n")
        for point_id in sorted(bundle_block.points):
            x, y, z = bundle_block.points[point_id]
            r, g, b = np.clip(np.round(bundle_block.colors[point_id]), 0, 255).astype(int)
            track = " ".join(f"{image_id} {idx}" for image_id, idx in tracks[point_id])
            f.write(f"{point_id} {float(x)!r} {float(y)!r} {float(z)!r} {r} {g} {b} 0.0 {track}".rstrip() + "\n")


def print_colmap_summary(bundle_block: BundleBlock) -> None:
    """
    Print a summary of loaded COLMAP data.

    Args:
        bundle_block: BundleBlock loaded from COLMAP
    """
    print("=" * 60)
    print("COLMAP Dataset Summary")
    print("=" * 60)

    print(f"Intrinsic groups: {len(bundle_block.groups)}")
    print(f"Cameras: {len(bundle_block.poses)}")
    print(f"3D Points: {len(bundle_block.points)}")
    print(f"Observations: {len(bundle_block.observations)}")

    translations = np.array([pose.translation for pose in bundle_block.poses.values()])
    print(f"\nCamera Statistics:")
    print(f"  Translation range: X[{translations[:, 0].min():.2f}, {translations[:, 0].max():.2f}]")
    print(f"                    Y[{translations[:, 1].min():.2f}, {translations[:, 1].max():.2f}]")
    print(f"                    Z[{translations[:, 2].min():.2f}, {translations[:, 2].max():.2f}]")

    _, points_3d = bundle_block.points_array()
    print(f"\n3D Point Statistics:")
    print(f"  Position range: X[{points_3d[:, 0].min():.2f}, {points_3d[:, 0].max():.2f}]")
    print(f"                  Y[{points_3d[:, 1].min():.2f}, {points_3d[:, 1].max():.2f}]")
    print(f"                  Z[{points_3d[:, 2].min():.2f}, {points_3d[:, 2].max():.2f}]")

    image_coords = np.array([obs.image_point for obs in bundle_block.observations])
    print(f"\nObservation Statistics:")
    print(f"  Image coordinates: X[{image_coords[:, 0].min():.1f}, {image_coords[:, 0].max():.1f}]")
    print(f"                    Y[{image_coords[:, 1].min():.1f}, {image_coords[:, 1].max():.1f}]")

    print(f"\nCamera Models:")
    for group_id, model in sorted(bundle_block.groups.items()):
        print(f"  {group_id}: {model}")

    print("=" * 60)
