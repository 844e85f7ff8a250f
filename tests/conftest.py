"""
Shared fixtures: synthetic rectified stereo scenes and dense folders
"""

import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from HierarchicalMVS.config import PatchMatchConfig
from HierarchicalMVS.core.camera import Camera


def checkerboard(width: int, height: int, shift: float = 0.0, cell: int = 2,
                 low: float = 100.0, high: float = 130.0) -> np.ndarray:
    """Checkerboard whose column ``x`` shows the pattern at ``x + shift``"""
    ys, xs = np.mgrid[0:height, 0:width]
    xs = xs + int(shift)
    pattern = ((xs // cell) + (ys // cell)) % 2
    return np.where(pattern == 1, high, low).astype(np.float32)


def make_camera(width: int, height: int, focal: float = 40.0, tx: float = 0.0,
                depth_min: float = 1.7, depth_max: float = 2.4) -> Camera:
    K = np.array([[focal, 0.0, width / 2.0],
                  [0.0, focal, height / 2.0],
                  [0.0, 0.0, 1.0]])
    return Camera(R=np.eye(3), t=np.array([tx, 0.0, 0.0]), K=K,
                  width=width, height=height, depth_min=depth_min, depth_max=depth_max)


def stereo_scene(size: int = 48, depth: float = 2.0, baseline: float = 0.3, focal: float = 40.0):
    """
    Fronto-parallel plane at ``depth`` seen by a reference and a source camera
    translated along x. The source is 10% brighter.

    Returns:
        images, cameras, disparity
    """
    disparity = focal * baseline / depth
    ref = checkerboard(size, size)
    src = 1.1 * checkerboard(size, size, shift=disparity)
    cameras = [make_camera(size, size, focal),
               make_camera(size, size, focal, tx=-baseline)]
    return [ref, src], cameras, disparity


def write_dense_folder(root: Path, size: int = 48):
    """images/, cams/ and pair.txt of the synthetic stereo scene"""
    images, cameras, _ = stereo_scene(size=size)
    (root / "images").mkdir()
    (root / "cams").mkdir()
    for i, (image, camera) in enumerate(zip(images, cameras)):
        cv2.imwrite(str(root / "images" / f"{i:08d}.jpg"), np.clip(image, 0, 255).astype(np.uint8))
        extrinsic = np.eye(4)
        extrinsic[:3, :3] = camera.R
        extrinsic[:3, 3] = camera.t
        lines = ["extrinsic"]
        lines += [" ".join(f"{v:.6f}" for v in row) for row in extrinsic]
        lines += ["", "intrinsic"]
        lines += [" ".join(f"{v:.6f}" for v in row) for row in camera.K]
        lines += ["", "1.8 0.01 192 2.2"]
        (root / "cams" / f"{i:08d}_cam.txt").write_text("\n".join(lines) + "\n")
    (root / "pair.txt").write_text("2\n0\n1 1 10.0\n1\n1 0 10.0\n")


@pytest.fixture
def cpu_config():
    """Small, fast configuration on the CPU device"""
    return PatchMatchConfig(
        device="cpu",
        seed=7,
        patch_radius=4,
        patch_step=1,
        num_iterations=6,
        num_selected_views=1,
        chunk_size=4096,
    )


@pytest.fixture
def scene():
    return stereo_scene()
