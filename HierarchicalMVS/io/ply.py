"""
Point Cloud Export
==================

Binary little-endian PLY with float ``x y z`` (optionally ``nx ny nz``) and
uchar ``red green blue`` per vertex. Non-finite coordinates are written as
the origin so the file stays readable.
"""

from pathlib import Path
from typing import Optional, Union

import numpy as np

from ..logger import get_logger

logger = get_logger("io.ply")


def _vertex_dtype(with_normals: bool) -> np.dtype:
    fields = [('x', '<f4'), ('y', '<f4'), ('z', '<f4')]
    if with_normals:
        fields += [('nx', '<f4'), ('ny', '<f4'), ('nz', '<f4')]
    fields += [('red', 'u1'), ('green', 'u1'), ('blue', 'u1')]
    return np.dtype(fields)


def export_point_cloud(path: Union[str, Path], points: np.ndarray,
                       colors: Optional[np.ndarray] = None,
                       normals: Optional[np.ndarray] = None) -> int:
    """
    Write a colored point cloud.

    Args:
        path: Output .ply path
        points: (N, 3) coordinates
        colors: (N, 3) RGB in [0, 255] (grey if None)
        normals: Optional (N, 3) normals; adds ``nx ny nz`` properties

    Returns:
        Number of vertices written
    """
    points = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    num_points = len(points)
    if colors is None:
        colors = np.full((num_points, 3), 128, dtype=np.uint8)
    colors = np.clip(np.asarray(colors).reshape(-1, 3), 0, 255).astype(np.uint8)

    # sanitize
    bad = ~np.isfinite(points).all(axis=1)
    points = points.copy()
    points[bad] = 0.0

    with_normals = normals is not None
    vertices = np.empty(num_points, dtype=_vertex_dtype(with_normals))
    vertices['x'], vertices['y'], vertices['z'] = points[:, 0], points[:, 1], points[:, 2]
    if with_normals:
        normals = np.nan_to_num(np.asarray(normals, dtype=np.float32).reshape(-1, 3))
        vertices['nx'], vertices['ny'], vertices['nz'] = normals[:, 0], normals[:, 1], normals[:, 2]
    vertices['red'], vertices['green'], vertices['blue'] = colors[:, 0], colors[:, 1], colors[:, 2]

    header = ["ply", "format binary_little_endian 1.0", f"element vertex {num_points}",
              "property float x", "property float y", "property float z"]
    if with_normals:
        header += ["property float nx", "property float ny", "property float nz"]
    header += ["property uchar red", "property uchar green", "property uchar blue", "end_header"]

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(("\n".join(header) + "\n").encode('ascii'))
        f.write(vertices.tobytes())

    if bad.any():
        logger.warning(f"{int(bad.sum())} non-finite points written as origin")
    logger.info(f"✓ Exported {num_points} points to {path}")
    return num_points


def read_point_cloud(path: Union[str, Path]) -> Optional[np.ndarray]:
    """Read a file written by ``export_point_cloud`` as a structured array"""
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        logger.error(f"Error opening file {path}: {e}")
        return None

    marker = b"end_header\n"
    end = raw.find(marker)
    if not raw.startswith(b"ply\n") or end < 0:
        logger.error(f"Not a PLY file: {path}")
        return None
    header = raw[:end].decode('ascii').splitlines()
    with_normals = "property float nx" in header
    count = next((int(line.split()[-1]) for line in header if line.startswith("element vertex")), 0)
    dtype = _vertex_dtype(with_normals)
    body = raw[end + len(marker):]
    if len(body) < count * dtype.itemsize:
        logger.error(f"Truncated PLY file: {path}")
        return None
    return np.frombuffer(body, dtype=dtype, count=count)
