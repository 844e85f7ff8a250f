"""
Camera Model
============

Pinhole camera with world-to-camera extrinsics (``x_cam = R @ X + t``) and
the projection helpers shared by the host-side stages (planar prior, export).
All helpers accept scalars or numpy arrays and broadcast.
"""

from dataclasses import dataclass, replace
from typing import Tuple

import numpy as np


PACKED_CAMERA_SIZE = 25  # K(9) R(9) t(3) width height depth_min depth_max


@dataclass(frozen=True)
class Camera:
    """A calibrated view: intrinsics, extrinsics, image size and depth range."""

    R: np.ndarray
    t: np.ndarray
    K: np.ndarray
    width: int = 0
    height: int = 0
    depth_min: float = 0.0
    depth_max: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, 'R', np.asarray(self.R, dtype=np.float64).reshape(3, 3))
        object.__setattr__(self, 't', np.asarray(self.t, dtype=np.float64).reshape(3))
        object.__setattr__(self, 'K', np.asarray(self.K, dtype=np.float64).reshape(3, 3))

    @property
    def fx(self) -> float:
        return float(self.K[0, 0])

    @property
    def fy(self) -> float:
        return float(self.K[1, 1])

    @property
    def cx(self) -> float:
        return float(self.K[0, 2])

    @property
    def cy(self) -> float:
        return float(self.K[1, 2])

    @property
    def center(self) -> np.ndarray:
        """Camera centre in world coordinates"""
        return -self.R.T @ self.t

    def with_size(self, width: int, height: int) -> "Camera":
        return replace(self, width=int(width), height=int(height))

    def rescaled(self, new_width: int, new_height: int) -> "Camera":
        """
        Camera matching an image resampled to ``new_width`` x ``new_height``.

        Focal lengths and principal point are scaled by the same per-axis
        factor as the image; a camera whose size already matches is returned
        unchanged.
        """
        if new_width == self.width and new_height == self.height:
            return self
        scale_x = new_width / float(self.width)
        scale_y = new_height / float(self.height)
        K = self.K.copy()
        K[0, 0] *= scale_x
        K[0, 2] *= scale_x
        K[1, 1] *= scale_y
        K[1, 2] *= scale_y
        return replace(self, K=K, width=int(new_width), height=int(new_height))

    def pack(self) -> np.ndarray:
        """Flatten into the float32 layout uploaded to the device camera array"""
        return np.concatenate([
            self.K.reshape(-1),
            self.R.reshape(-1),
            self.t.reshape(-1),
            [self.width, self.height, self.depth_min, self.depth_max],
        ]).astype(np.float32)


def backproject_to_ref(x, y, depth, camera: Camera, factor: float = 1.0) -> np.ndarray:
    """
    Lift pixel(s) at the given depth into the reference camera frame.

    ``factor`` evaluates the intrinsics at a different image scale than the
    camera was calibrated for (used when the prior is built at another level).
    """
    fx, fy = camera.fx * factor, camera.fy * factor
    cx, cy = camera.cx * factor, camera.cy * factor
    depth = np.asarray(depth, dtype=np.float64)
    X = depth * (np.asarray(x, dtype=np.float64) - cx) / fx
    Y = depth * (np.asarray(y, dtype=np.float64) - cy) / fy
    return np.stack(np.broadcast_arrays(X, Y, depth), axis=-1)


def backproject_to_world(x, y, depth, camera: Camera) -> np.ndarray:
    """Lift pixel(s) at the given depth into world coordinates"""
    points_cam = backproject_to_ref(x, y, depth, camera)
    return (points_cam - camera.t) @ camera.R


def project_on_camera(points_world: np.ndarray, camera: Camera) -> Tuple[np.ndarray, np.ndarray]:
    """
    Project world point(s) into a camera.

    Returns:
        pixels: (..., 2) image coordinates
        depth: (...) depth along the optical axis
    """
    points_cam = np.asarray(points_world, dtype=np.float64) @ camera.R.T + camera.t
    proj = points_cam @ camera.K.T
    depth = proj[..., 2]
    with np.errstate(divide='ignore', invalid='ignore'):
        pixels = proj[..., :2] / depth[..., None]
    return pixels, depth


def depth_from_plane(plane, x, y, camera: Camera, factor: float = 1.0):
    """
    Depth at pixel (x, y) of the plane ``n . X + w = 0`` (reference frame).

    Args:
        plane: (..., 4) plane parameters (nx, ny, nz, w)
    """
    plane = np.asarray(plane, dtype=np.float64)
    fx, fy = camera.fx * factor, camera.fy * factor
    cx, cy = camera.cx * factor, camera.cy * factor
    denom = ((np.asarray(x) - cx) * plane[..., 0]
             + (fx / fy) * (np.asarray(y) - cy) * plane[..., 1]
             + fx * plane[..., 2])
    with np.errstate(divide='ignore', invalid='ignore'):
        return -plane[..., 3] * fx / denom


def normal_to_world(normal: np.ndarray, camera: Camera) -> np.ndarray:
    """Rotate reference-frame normal(s) into the world frame"""
    return np.asarray(normal, dtype=np.float64) @ camera.R


def normal_to_ref(normal: np.ndarray, camera: Camera) -> np.ndarray:
    """Rotate world-frame normal(s) into the reference camera frame"""
    return np.asarray(normal, dtype=np.float64) @ camera.R.T


def distance_to_origin(x, y, depth, normal, camera: Camera):
    """Plane offset ``w = -n . X`` of the plane through the back-projected pixel"""
    X = backproject_to_ref(x, y, depth, camera)
    return -np.sum(np.asarray(normal, dtype=np.float64) * X, axis=-1)


def ray_distance(x, y, depth, camera: Camera):
    """Euclidean distance from the camera centre to the back-projected pixel"""
    return np.linalg.norm(backproject_to_ref(x, y, depth, camera), axis=-1)


def angle_between(v1: np.ndarray, v2: np.ndarray) -> float:
    """Angle in radians between two unit vectors; 0 for identical vectors"""
    cos = float(np.dot(np.asarray(v1, dtype=np.float64), np.asarray(v2, dtype=np.float64)))
    return float(np.arccos(np.clip(cos, -1.0, 1.0)))
