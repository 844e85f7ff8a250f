"""
Planar Prior from Triangulated Support Points
=============================================

Builds the prior-plane field consumed by the propagation engine:

1. support points are triangulated in the image plane (Delaunay)
2. one plane per triangle is fitted through the back-projected vertices
3. triangles are rasterized into a 1-based mask and a per-pixel plane field

A prior built at a coarse level can be lifted to a finer level with the
joint bilateral upsampler.
"""

from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy.spatial import Delaunay, QhullError

from ..config import PatchMatchConfig
from ..core.camera import Camera, backproject_to_ref
from ..core.structures import PriorField, PropagationResult, Triangle
from ..logger import get_logger
from ..upsampling.jbu import JointBilateralUpsampler, nearest_upsample
from .support import select_support_points, texture_field


def delaunay_triangulation(points: Sequence[Tuple[int, int]], width: int, height: int) -> List[Triangle]:
    """
    Delaunay triangulation of integer (x, y) points inside the image rectangle.

    Fewer than three points, or points that are all collinear, give an empty
    triangulation.
    """
    if len(points) < 3:
        return []
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    pts[:, 0] = np.clip(pts[:, 0], 0, width - 1)
    pts[:, 1] = np.clip(pts[:, 1], 0, height - 1)
    pts = np.unique(pts, axis=0)
    if len(pts) < 3 or np.linalg.matrix_rank(pts - pts[0]) < 2:
        return []

    try:
        tri = Delaunay(pts)
    except QhullError:
        return []

    triangles = []
    for simplex in tri.simplices:
        corners = [tuple(int(v) for v in pts[i]) for i in simplex]
        triangles.append(Triangle(*corners))
    return triangles


def fit_prior_plane(triangle: Triangle, depths: np.ndarray, camera: Camera,
                    factor: float = 1.0) -> np.ndarray:
    """
    Plane ``(nx, ny, nz, w)`` through the back-projected triangle vertices.

    The null vector of the homogeneous 3x4 system ``[X Y Z 1]`` is scaled so
    the normal has unit length and the offset ``w`` is non-negative.

    Args:
        triangle: Vertices in pixel coordinates of ``depths``
        depths: (H, W) depth map the vertex depths are read from
        camera: Reference camera
        factor: Scale of ``depths`` relative to the camera's resolution
    """
    A = np.ones((3, 4), dtype=np.float64)
    for row, (x, y) in enumerate(triangle):
        A[row, :3] = backproject_to_ref(x, y, depths[y, x], camera, factor)

    _, _, Vt = np.linalg.svd(A)
    plane = Vt[-1]
    norm = np.linalg.norm(plane[:3])
    if plane[3] < 0:
        norm = -norm
    return (plane / norm).astype(np.float32)


def rasterize_prior(triangles: Sequence[Triangle], planes: Sequence[np.ndarray],
                    height: int, width: int) -> PriorField:
    """Fill each triangle with its 1-based id and look up its plane per pixel"""
    mask = np.zeros((height, width), dtype=np.int32)
    for tid, triangle in enumerate(triangles, start=1):
        corners = np.asarray(triangle, dtype=np.int32).reshape(-1, 1, 2)
        cv2.fillConvexPoly(mask, corners, int(tid))

    table = np.zeros((len(planes) + 1, 4), dtype=np.float32)
    if len(planes):
        table[1:] = np.asarray(planes, dtype=np.float32)
    return PriorField(planes=table[mask], mask=mask, num_planes=len(planes))


class PlanarPriorBuilder:
    """
    Support points -> triangulation -> plane fit -> rasterized prior.

    Example:
        >>> builder = PlanarPriorBuilder(config)
        >>> prior = builder.build(result, cameras[0])
        >>> if prior.has_prior:
        ...     result = engine.run(PropagationStage.PHOTOMETRIC, prior=prior)
    """

    def __init__(self, config: Optional[PatchMatchConfig] = None):
        self.config = config or PatchMatchConfig()
        self.logger = get_logger("prior")
        self.triangles: List[Triangle] = []

    def build(self, result: PropagationResult, camera: Camera,
              image: Optional[np.ndarray] = None) -> PriorField:
        """
        Build a prior from a propagation result at the camera's resolution.

        Args:
            result: Depth, cost and confidence of the unregularized pass
            camera: Reference camera sized like ``result``
            image: Reference intensities for the texture field (defaults to
                   the texture read back with the result)

        Returns:
            PriorField; empty when fewer than three support points survive
        """
        cfg = self.config
        height, width = result.height, result.width
        guidance = image if image is not None else result.texture
        texture = None
        if guidance is not None:
            texture = texture_field(guidance, cfg.canny_low, cfg.canny_high)

        points = select_support_points(
            result.cost, result.confidence, texture,
            tile_size=cfg.support_tile_size,
            texture_penalty=cfg.texture_penalty,
            threshold=cfg.support_threshold,
            max_cost=cfg.max_cost,
        )
        self.triangles = delaunay_triangulation(points, width, height)
        if not self.triangles:
            self.logger.warning(f"No prior: {len(points)} support points could not be triangulated")
            return PriorField.empty(height, width)

        planes = [fit_prior_plane(tri, result.depth, camera) for tri in self.triangles]
        prior = rasterize_prior(self.triangles, planes, height, width)
        coverage = 100.0 * np.count_nonzero(prior.mask) / prior.mask.size
        self.logger.info(
            f"✓ Planar prior: {len(points)} support points, {len(planes)} triangles, "
            f"{coverage:.1f}% coverage"
        )
        return prior

    def upsample(self, prior: PriorField, coarse_camera: Camera, fine_camera: Camera,
                 guidance: np.ndarray, upsampler: Optional[JointBilateralUpsampler] = None) -> PriorField:
        """
        Lift a coarse prior to the resolution of ``guidance``.

        Prior depth and normal are upsampled edge-aware, the mask by nearest
        neighbour; planes are re-derived as ``w = -n . X`` at the fine level.
        """
        height, width = np.asarray(guidance).shape[:2]
        if prior.mask.shape == (height, width):
            return prior
        upsampler = upsampler or JointBilateralUpsampler(self.config)

        # pixels without a prior carry no depth into the blend
        depth = np.where(prior.mask > 0, prior.prior_depth(coarse_camera), np.nan).astype(np.float32)
        normal = prior.planes[..., :3]
        fine_depth, fine_normal = upsampler.upsample(guidance, depth, normal)
        mask = nearest_upsample(prior.mask, height, width)

        ys, xs = np.mgrid[0:height, 0:width]
        points = backproject_to_ref(xs, ys, fine_depth, fine_camera)
        offset = -np.sum(fine_normal * points, axis=-1)
        planes = np.concatenate([fine_normal, offset[..., None]], axis=-1).astype(np.float32)

        valid = (mask > 0) & (fine_depth > 0) & np.isfinite(planes).all(-1)
        planes[~valid] = 0.0
        mask = np.where(valid, mask, 0).astype(np.int32)
        return PriorField(planes=planes, mask=mask, num_planes=prior.num_planes)
