"""
Dense Folder Input
==================

Reads the MVSNet-style dense folder layout::

    <dense>/images/%08d.jpg
    <dense>/cams/%08d_cam.txt
    <dense>/pair.txt
    <dense>/<result_dir>/%08d/{depths,normals,costs,confidence,depths_geom}.dmb

and assembles the images, cameras and optional depth maps of one problem,
downscaled to the problem's working size.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from ..config import PatchMatchConfig
from ..core.camera import Camera
from ..core.problem import Problem
from ..logger import get_logger
from .dmb import read_depth_dmb

logger = get_logger("io.cameras")


def image_path(dense_folder: Union[str, Path], image_id: int) -> Path:
    return Path(dense_folder) / "images" / f"{image_id:08d}.jpg"


def camera_path(dense_folder: Union[str, Path], image_id: int) -> Path:
    return Path(dense_folder) / "cams" / f"{image_id:08d}_cam.txt"


def result_folder(dense_folder: Union[str, Path], image_id: int,
                  result_dir_name: str = "HierarchicalMVS") -> Path:
    """Folder holding the dmb outputs of one reference image"""
    return Path(dense_folder) / result_dir_name / f"{image_id:08d}"


def read_camera(path: Union[str, Path]) -> Optional[Camera]:
    """
    Read an MVSNet camera file.

    Format::

        extrinsic
        R00 R01 R02 t0
        R10 R11 R12 t1
        R20 R21 R22 t2
        0 0 0 1

        intrinsic
        fx 0 cx
        0 fy cy
        0 0 1

        depth_min depth_interval depth_num depth_max

    Width and height are left at 0; they are set from the image.

    Returns:
        Camera, or None when the file is missing or malformed
    """
    path = Path(path)
    try:
        tokens = path.read_text().split()
    except OSError as e:
        logger.error(f"Error opening camera file {path}: {e}")
        return None

    try:
        pos = tokens.index("extrinsic") + 1
        extrinsic = np.array([float(v) for v in tokens[pos:pos + 16]]).reshape(4, 4)
        pos = tokens.index("intrinsic") + 1
        K = np.array([float(v) for v in tokens[pos:pos + 9]]).reshape(3, 3)
        pos += 9
        depth_min = float(tokens[pos])
        depth_max = float(tokens[pos + 3])
    except (ValueError, IndexError) as e:
        logger.error(f"Malformed camera file {path}: {e}")
        return None

    return Camera(R=extrinsic[:3, :3], t=extrinsic[:3, 3], K=K,
                  depth_min=depth_min, depth_max=depth_max)


def load_grayscale(path: Union[str, Path]) -> Optional[np.ndarray]:
    """8-bit grayscale image as float32, None if it cannot be read"""
    image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if image is None:
        logger.error(f"Could not read image {path}")
        return None
    return image.astype(np.float32)


def fit_to_size(image: np.ndarray, camera: Camera, max_image_size: int) -> Tuple[np.ndarray, Camera]:
    """
    Downscale so neither side exceeds ``max_image_size``.

    Images already small enough are returned unchanged; the camera is
    rescaled with the image.
    """
    height, width = image.shape[:2]
    if width <= max_image_size and height <= max_image_size:
        return image, camera

    factor = min(max_image_size / float(width), max_image_size / float(height))
    new_width = int(round(width * factor))
    new_height = int(round(height * factor))
    scaled = cv2.resize(image, (new_width, new_height), interpolation=cv2.INTER_LINEAR)
    return scaled, camera.rescaled(new_width, new_height)


def rescale_image_and_camera(image: np.ndarray, camera: Camera,
                             width: int, height: int) -> Tuple[np.ndarray, Camera]:
    """Resample ``image`` to exactly ``width`` x ``height`` and rescale the camera"""
    if image.shape[1] == width and image.shape[0] == height:
        return image.copy(), camera
    scaled = cv2.resize(image, (width, height), interpolation=cv2.INTER_LINEAR)
    return scaled, camera.rescaled(width, height)


@dataclass
class ProblemInputs:
    """Images, cameras and optional depth maps of one problem, reference first"""
    problem: Problem
    images: List[np.ndarray] = field(default_factory=list)
    cameras: List[Camera] = field(default_factory=list)
    view_ids: List[int] = field(default_factory=list)
    depths: Optional[List[Optional[np.ndarray]]] = None
    disparity_min: float = 0.0
    disparity_max: float = 0.0

    @property
    def reference_image(self) -> np.ndarray:
        return self.images[0]

    @property
    def reference_camera(self) -> Camera:
        return self.cameras[0]


def load_problem_inputs(dense_folder: Union[str, Path], problems: Sequence[Problem], idx: int,
                        config: Optional[PatchMatchConfig] = None,
                        load_depths: bool = False) -> Optional[ProblemInputs]:
    """
    Load everything one problem needs.

    The reference uses its problem's ``cur_image_size``, each source the size
    of its own problem (when it has one). The reference depth range is widened
    by ``depth_min_factor`` / ``depth_max_factor``.

    Args:
        dense_folder: Dense folder root
        problems: All problems, indexed by reference id
        idx: Index of the problem to load
        config: Supplies depth factors, baseline and the result folder name
        load_depths: Also read stored depth maps for geometric consistency

    Returns:
        ProblemInputs, or None when the reference image or camera is missing
    """
    config = config or PatchMatchConfig()
    problem = problems[idx]
    by_id = {p.ref_image_id: p for p in problems}

    images, cameras, view_ids = [], [], []
    for i, image_id in enumerate([problem.ref_image_id] + list(problem.src_image_ids)):
        image = load_grayscale(image_path(dense_folder, image_id))
        camera = read_camera(camera_path(dense_folder, image_id))
        if image is None or camera is None:
            if i == 0:
                return None
            logger.warning(f"Skipping source view {image_id} of problem {problem.ref_image_id}")
            continue
        camera = camera.with_size(image.shape[1], image.shape[0])

        size = problem.cur_image_size
        if i > 0 and image_id in by_id:
            size = by_id[image_id].cur_image_size
        image, camera = fit_to_size(image, camera, size)
        images.append(image)
        cameras.append(camera)
        view_ids.append(image_id)

    ref = cameras[0]
    cameras[0] = replace(ref, depth_min=ref.depth_min * config.depth_min_factor,
                         depth_max=ref.depth_max * config.depth_max_factor)
    logger.debug(f"Depth range: {cameras[0].depth_min:.4f} {cameras[0].depth_max:.4f}")
    logger.debug(f"Num images: {len(images)}")

    inputs = ProblemInputs(problem=problem, images=images, cameras=cameras, view_ids=view_ids)
    if cameras[0].depth_max > 0 and cameras[0].depth_min > 0:
        inputs.disparity_min = cameras[0].fx * config.baseline / cameras[0].depth_max
        inputs.disparity_max = cameras[0].fx * config.baseline / cameras[0].depth_min

    if load_depths:
        inputs.depths = load_depth_maps(dense_folder, view_ids, cameras, config)
    return inputs


def load_depth_maps(dense_folder: Union[str, Path], view_ids: Sequence[int], cameras: Sequence[Camera],
                    config: PatchMatchConfig) -> List[Optional[np.ndarray]]:
    """
    Read stored depth maps of the reference and its sources.

    ``depths_geom.dmb`` is used in multi-geometry mode, ``depths.dmb``
    otherwise. Maps stored at another resolution are resampled (nearest) to
    the camera size; missing maps are None.
    """
    name = "depths_geom.dmb" if config.multi_geometry else "depths.dmb"
    depths = []
    for image_id, camera in zip(view_ids, cameras):
        depth = read_depth_dmb(result_folder(dense_folder, image_id, config.result_dir_name) / name)
        if depth is not None and depth.shape != (camera.height, camera.width):
            depth = cv2.resize(depth, (camera.width, camera.height), interpolation=cv2.INTER_NEAREST)
        depths.append(depth)
    return depths
