"""
Host-side data structures exchanged between the engine, the hierarchical
controller, the planar prior and the exporters.

All per-pixel arrays are row-major ``(height, width[, channels])`` float32.
"""

from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

import numpy as np

from .camera import Camera, depth_from_plane


class Triangle(NamedTuple):
    """Three integer image points ``(x, y)`` of a support-point triangulation"""
    pt1: Tuple[int, int]
    pt2: Tuple[int, int]
    pt3: Tuple[int, int]


@dataclass
class PropagationResult:
    """
    Per-pixel output of one engine run, read back to host memory.

    Attributes:
        depth: (H, W) depth along the optical axis
        normal: (H, W, 3) unit normal in the reference camera frame
        cost: (H, W) aggregated matching cost in [0, max_cost]
        confidence: (H, W) support-selection confidence in [0, 0.5]
        selected_views: (H, W) view-selection bitmask
        texture: (H, W) reference intensity sampled by the engine
    """
    depth: np.ndarray
    normal: np.ndarray
    cost: np.ndarray
    confidence: Optional[np.ndarray] = None
    selected_views: Optional[np.ndarray] = None
    texture: Optional[np.ndarray] = None

    @property
    def height(self) -> int:
        return self.depth.shape[0]

    @property
    def width(self) -> int:
        return self.depth.shape[1]

    def get_plane_hypothesis(self, index: int) -> np.ndarray:
        """(n.x, n.y, n.z, depth) of the pixel with row-major ``index``"""
        row, col = divmod(int(index), self.width)
        return np.append(self.normal[row, col], self.depth[row, col]).astype(np.float32)

    def get_cost(self, index: int) -> float:
        row, col = divmod(int(index), self.width)
        return float(self.cost[row, col])

    def get_texture(self, index: int) -> float:
        if self.texture is None:
            return 0.0
        row, col = divmod(int(index), self.width)
        return float(self.texture[row, col])


@dataclass
class HypothesisInit:
    """
    Warm-start for an engine run.

    ``depth`` and ``auxiliary_cost`` are kept apart: the depth seeds the
    hypotheses, the cost (carried from a coarser level or a previous pass)
    only decides which pixels are trusted enough to keep their seed.
    """
    depth: np.ndarray
    normal: np.ndarray
    auxiliary_cost: Optional[np.ndarray] = None

    @property
    def shape(self) -> Tuple[int, int]:
        return self.depth.shape[:2]

    @classmethod
    def from_result(cls, result: PropagationResult) -> "HypothesisInit":
        return cls(depth=result.depth, normal=result.normal, auxiliary_cost=result.cost)


@dataclass
class PriorField:
    """
    Rasterized planar prior.

    Attributes:
        planes: (H, W, 4) plane ``(nx, ny, nz, w)`` in the reference frame,
                zero where ``mask == 0``
        mask: (H, W) 1-based triangle id, 0 = no prior
        num_planes: Number of fitted triangle planes
    """
    planes: np.ndarray
    mask: np.ndarray
    num_planes: int = 0

    @property
    def has_prior(self) -> bool:
        return bool(np.any(self.mask > 0))

    @classmethod
    def empty(cls, height: int, width: int) -> "PriorField":
        return cls(np.zeros((height, width, 4), dtype=np.float32),
                   np.zeros((height, width), dtype=np.int32), 0)

    def prior_depth(self, camera: Camera) -> np.ndarray:
        """Depth of each pixel's prior plane, 0 where there is none"""
        height, width = self.mask.shape
        ys, xs = np.mgrid[0:height, 0:width]
        depth = depth_from_plane(self.planes, xs, ys, camera)
        depth = np.where((self.mask > 0) & np.isfinite(depth), depth, 0.0)
        return depth.astype(np.float32)
