"""
Joint Bilateral Upsampling
==========================

Edge-aware lifting of a coarse depth (and normal) field to the resolution of
a guidance image. Each fine pixel blends the coarse samples in a
``(2R+1) x (2R+1)`` coarse-pixel window with

    w = exp(-d^2 / (2 sigma_s^2)) * exp(-dI^2 / (2 sigma_r^2))

where ``d`` is the distance in coarse pixels and ``dI`` the guidance
intensity difference. Fine pixel ``(y, x)`` sits at coarse position
``(y * Hc / Hf, x * Wc / Wf)``, which is ``(y / scale, x / scale)`` for whole
ratios. Pixels whose weights vanish fall back to the nearest coarse sample
at the floor of that position. Ratios below 2 are not blended; they are
resampled by nearest neighbour only.
"""

from typing import Optional, Tuple

import numpy as np
import torch

from ..config import PatchMatchConfig
from ..device.samplers import DeviceGuard
from ..logger import get_logger


def upsample_scale(fine_shape: Tuple[int, int], coarse_shape: Tuple[int, int]) -> int:
    """Integer upsampling factor between two resolutions"""
    return max(fine_shape[0] // max(coarse_shape[0], 1), fine_shape[1] // max(coarse_shape[1], 1))


def nearest_upsample(values: np.ndarray, height: int, width: int) -> np.ndarray:
    """
    Nearest-neighbour resampling to ``height`` x ``width``.

    Fine index ``i`` reads coarse index ``floor(i * coarse / fine)``, i.e.
    ``i // scale`` for whole ratios. The same mapping serves every map lifted
    together (depth, normal, cost, prior mask) so they stay aligned.
    """
    values = np.asarray(values)
    coarse_h, coarse_w = values.shape[:2]
    rows = np.minimum(np.arange(height) * coarse_h // height, coarse_h - 1)
    cols = np.minimum(np.arange(width) * coarse_w // width, coarse_w - 1)
    return values[rows[:, None], cols[None, :]]


class JointBilateralUpsampler:
    """Guidance-driven coarse-to-fine upsampling of depth and normal maps"""

    def __init__(self, config: Optional[PatchMatchConfig] = None, device: Optional[torch.device] = None):
        self.config = config or PatchMatchConfig()
        self.device = device or self.config.resolve_device()
        self.radius = int(self.config.jbu_radius)
        self.sigma_spatial = float(self.config.jbu_sigma_spatial)
        self.sigma_range = float(self.config.jbu_sigma_range)
        self.logger = get_logger("jbu")

    def upsample(self, guidance: np.ndarray, depth: np.ndarray,
                 normal: Optional[np.ndarray] = None) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """
        Upsample ``depth`` (and ``normal``) to the resolution of ``guidance``.

        Args:
            guidance: (Hf, Wf) fine reference intensities
            depth: (Hc, Wc) coarse depth
            normal: Optional (Hc, Wc, 3) coarse unit normals

        Returns:
            (depth, normal) at (Hf, Wf); the inputs themselves when the
            resolutions are equal
        """
        fine_h, fine_w = np.asarray(guidance).shape[:2]
        coarse_h, coarse_w = np.asarray(depth).shape[:2]
        if (coarse_h, coarse_w) == (fine_h, fine_w):
            return depth, normal
        scale = upsample_scale((fine_h, fine_w), (coarse_h, coarse_w))
        if scale <= 1:
            lifted_normal = None if normal is None else nearest_upsample(normal, fine_h, fine_w)
            return nearest_upsample(depth, fine_h, fine_w), lifted_normal

        with DeviceGuard("joint bilateral upsampling"):
            fine_depth, fine_normal = self._blend(guidance, depth, normal)

        fallback_depth = nearest_upsample(depth, fine_h, fine_w).astype(np.float32)
        missing = ~np.isfinite(fine_depth)
        fine_depth = np.where(missing, fallback_depth, fine_depth).astype(np.float32)

        if fine_normal is not None:
            length = np.linalg.norm(fine_normal, axis=-1)
            bad = missing | ~np.isfinite(length) | (length < 1e-6)
            with np.errstate(divide='ignore', invalid='ignore'):
                fine_normal = fine_normal / length[..., None]
            fallback_normal = nearest_upsample(normal, fine_h, fine_w).astype(np.float32)
            fine_normal = np.where(bad[..., None], fallback_normal, fine_normal).astype(np.float32)

        self.logger.debug(
            f"Upsampled {coarse_w}x{coarse_h} -> {fine_w}x{fine_h} (x{scale}), "
            f"{int(missing.sum())} nearest-neighbour fallbacks"
        )
        return fine_depth, fine_normal

    def _blend(self, guidance, depth, normal):
        device = self.device
        guide = torch.as_tensor(np.asarray(guidance, dtype=np.float32), device=device)
        coarse_depth = torch.as_tensor(np.asarray(depth, dtype=np.float32), device=device)
        coarse_normal = None
        if normal is not None:
            coarse_normal = torch.as_tensor(np.asarray(normal, dtype=np.float32), device=device)

        fine_h, fine_w = guide.shape
        coarse_h, coarse_w = coarse_depth.shape
        ys, xs = torch.meshgrid(
            torch.arange(fine_h, device=device, dtype=torch.float32),
            torch.arange(fine_w, device=device, dtype=torch.float32),
            indexing='ij',
        )
        ratio_y = fine_h / coarse_h
        ratio_x = fine_w / coarse_w
        cy = ys * coarse_h / fine_h
        cx = xs * coarse_w / fine_w
        base_y = torch.floor(cy).long()
        base_x = torch.floor(cx).long()

        weight_sum = torch.zeros_like(ys)
        depth_sum = torch.zeros_like(ys)
        normal_sum = torch.zeros((fine_h, fine_w, 3), device=device) if coarse_normal is not None else None

        two_ss = 2.0 * self.sigma_spatial ** 2
        two_sr = 2.0 * self.sigma_range ** 2
        for dy in range(-self.radius, self.radius + 1):
            for dx in range(-self.radius, self.radius + 1):
                qy = base_y + dy
                qx = base_x + dx
                inside = (qy >= 0) & (qy < coarse_h) & (qx >= 0) & (qx < coarse_w)
                qy_c = qy.clamp(0, coarse_h - 1)
                qx_c = qx.clamp(0, coarse_w - 1)

                dist2 = (qy.float() - cy) ** 2 + (qx.float() - cx) ** 2
                gy = torch.floor(qy_c * ratio_y).long().clamp(max=fine_h - 1)
                gx = torch.floor(qx_c * ratio_x).long().clamp(max=fine_w - 1)
                diff = guide - guide[gy, gx]
                weight = torch.exp(-dist2 / two_ss - diff * diff / two_sr)

                sample = coarse_depth[qy_c, qx_c]
                usable = inside & torch.isfinite(sample)
                weight = torch.where(usable, weight, torch.zeros_like(weight))
                weight_sum += weight
                depth_sum += weight * torch.nan_to_num(sample)
                if normal_sum is not None:
                    normal_sum += weight[..., None] * torch.nan_to_num(coarse_normal[qy_c, qx_c])

        # no support -> NaN, replaced by the nearest coarse sample
        fine_depth = (depth_sum / weight_sum).cpu().numpy()
        fine_normal = None
        if normal_sum is not None:
            fine_normal = (normal_sum / weight_sum[..., None]).cpu().numpy()
        return fine_depth, fine_normal
