"""
DMB Map Files
=============

Binary container for per-pixel maps (depth, normal, cost, confidence)::

    int32 type (= 1), int32 height, int32 width, int32 channels
    float32 samples, row-major, channels interleaved

All values are little-endian. Readers log and return ``None`` when a file is
missing, truncated or carries a different type tag.
"""

from pathlib import Path
from typing import Optional, Union

import numpy as np

from ..logger import get_logger

logger = get_logger("io.dmb")

DMB_TYPE = 1
_HEADER = np.dtype('<i4')
_DATA = np.dtype('<f4')


def read_dmb(path: Union[str, Path], channels: Optional[int] = None) -> Optional[np.ndarray]:
    """
    Read a dmb file.

    Args:
        path: File to read
        channels: Expected channel count (checked when given)

    Returns:
        (H, W) for single-channel files, (H, W, C) otherwise; None on error
    """
    path = Path(path)
    try:
        with open(path, 'rb') as f:
            header = np.fromfile(f, dtype=_HEADER, count=4)
            if header.size < 4 or int(header[0]) != DMB_TYPE:
                logger.error(f"Invalid dmb header in {path}")
                return None
            _, height, width, nb = (int(v) for v in header)
            if height < 0 or width < 0 or nb < 1:
                logger.error(f"Invalid dmb dimensions {height}x{width}x{nb} in {path}")
                return None
            if channels is not None and nb != channels:
                logger.error(f"{path} has {nb} channels, expected {channels}")
                return None
            data = np.fromfile(f, dtype=_DATA, count=height * width * nb)
    except OSError as e:
        logger.error(f"Error opening file {path}: {e}")
        return None

    if data.size != height * width * nb:
        logger.error(f"Truncated dmb file {path}: {data.size}/{height * width * nb} samples")
        return None

    data = data.astype(np.float32)
    if nb == 1:
        return data.reshape(height, width)
    return data.reshape(height, width, nb)


def write_dmb(path: Union[str, Path], data: np.ndarray):
    """Write an (H, W) or (H, W, C) float map, creating parent folders"""
    data = np.asarray(data, dtype=np.float32)
    if data.ndim == 2:
        height, width = data.shape
        nb = 1
    elif data.ndim == 3:
        height, width, nb = data.shape
    else:
        raise ValueError(f"dmb data must be 2D or 3D, got shape {data.shape}")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        np.array([DMB_TYPE, height, width, nb], dtype=_HEADER).tofile(f)
        np.ascontiguousarray(data, dtype=_DATA).tofile(f)


def read_depth_dmb(path: Union[str, Path]) -> Optional[np.ndarray]:
    return read_dmb(path, channels=1)


def write_depth_dmb(path: Union[str, Path], depth: np.ndarray):
    write_dmb(path, np.asarray(depth).reshape(np.asarray(depth).shape[:2]))


def read_normal_dmb(path: Union[str, Path]) -> Optional[np.ndarray]:
    return read_dmb(path, channels=3)


def write_normal_dmb(path: Union[str, Path], normal: np.ndarray):
    normal = np.asarray(normal)
    if normal.ndim != 3 or normal.shape[2] != 3:
        raise ValueError(f"normal map must be (H, W, 3), got {normal.shape}")
    write_dmb(path, normal)
