"""
Support Point Selection
=======================

Picks sparse, trustworthy pixels from a propagation result. The image is cut
into square tiles; inside each tile the cheapest textured pixel and the
cheapest non-textured pixel compete separately, with the cost adjusted by a
confidence bonus and, for textured pixels, a fixed penalty. A tile yields a
point for a class only when the adjusted cost is below the threshold.
"""

from typing import List, Optional, Tuple

import cv2
import numpy as np

from ..logger import get_logger

logger = get_logger("prior.support")


def texture_field(image: np.ndarray, low: int = 50, high: int = 150) -> np.ndarray:
    """
    Binary edge response of the reference image.

    Args:
        image: (H, W) grayscale intensities in [0, 255]
        low: Canny lower hysteresis threshold
        high: Canny upper hysteresis threshold

    Returns:
        (H, W) float32 field, 1.0 on edges and 0.0 elsewhere
    """
    gray = np.clip(np.nan_to_num(np.asarray(image, dtype=np.float32)), 0, 255).astype(np.uint8)
    edges = cv2.Canny(gray, low, high)
    return (edges > 0).astype(np.float32)


def _tile_argmin(values: np.ndarray, tile: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Minimum and its (x, y) position inside every tile of ``values``"""
    height, width = values.shape
    tiles_y = -(-height // tile)
    tiles_x = -(-width // tile)
    padded = np.full((tiles_y * tile, tiles_x * tile), np.inf, dtype=np.float64)
    padded[:height, :width] = values

    blocks = padded.reshape(tiles_y, tile, tiles_x, tile).transpose(0, 2, 1, 3)
    blocks = blocks.reshape(tiles_y, tiles_x, tile * tile)
    # first minimum in column-major order within the tile
    order = np.arange(tile * tile).reshape(tile, tile).T.reshape(-1)
    arg = np.argmin(blocks[:, :, order], axis=-1)
    local = order[arg]
    best = np.take_along_axis(blocks, local[..., None], axis=-1)[..., 0]

    ty, tx = np.mgrid[0:tiles_y, 0:tiles_x]
    xs = tx * tile + local % tile
    ys = ty * tile + local // tile
    return best, xs, ys


def select_support_points(cost: np.ndarray, confidence: Optional[np.ndarray] = None,
                          texture: Optional[np.ndarray] = None, tile_size: int = 5,
                          texture_penalty: float = 0.2, threshold: float = 0.1,
                          max_cost: float = 2.0) -> List[Tuple[int, int]]:
    """
    Select at most two support points per tile.

    Args:
        cost: (H, W) matching cost; pixels at or above ``max_cost`` are ignored
        confidence: (H, W) bonus subtracted from the cost (zeros if None)
        texture: (H, W) textureness, pixels above 0.5 count as textured
                 (all non-textured if None)
        tile_size: Tile edge length in pixels
        texture_penalty: Added to the adjusted cost of textured pixels
        threshold: Acceptance threshold on the adjusted cost
        max_cost: Cost of pixels without a usable hypothesis

    Returns:
        List of integer (x, y) pixel positions
    """
    cost = np.asarray(cost, dtype=np.float64)
    if confidence is None:
        confidence = np.zeros_like(cost)
    if texture is None:
        texture = np.zeros_like(cost)
    confidence = np.asarray(confidence, dtype=np.float64)
    textured = np.asarray(texture) > 0.5

    usable = np.isfinite(cost) & (cost < max_cost)
    adjusted = cost - np.nan_to_num(confidence)

    points = []
    for mask, penalty in ((textured, texture_penalty), (~textured, 0.0)):
        values = np.where(usable & mask, adjusted + penalty, np.inf)
        best, xs, ys = _tile_argmin(values, int(tile_size))
        accepted = best < threshold
        points.extend(zip(xs[accepted].tolist(), ys[accepted].tolist()))

    logger.debug(f"Selected {len(points)} support points ({tile_size}px tiles)")
    return points
