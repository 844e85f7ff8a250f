"""
Multi-View Matching Cost
========================

Scores batches of (pixel, plane hypothesis) pairs against every source view:

- photometric term: bilateral-weighted NCC between the reference patch and
  the patch warped through the hypothesis plane, ``1 - NCC`` in [0, 2]
- geometric term (geometric-consistency mode): forward-backward
  reprojection error through the source view's depth map
- planar prior penalty toward the pixel's assigned prior plane

Per-view costs are combined by a mean over the selected views, which does not
depend on view order.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from ..config import PatchMatchConfig
from ..device.resources import DeviceResources

_EPS = 1e-8
_VAR_EPS = 1e-5


@dataclass
class PatchContext:
    """Hypothesis-independent data of a batch of reference pixels"""
    x: torch.Tensor            # (M,)
    y: torch.Tensor            # (M,)
    ray: torch.Tensor          # (M, 3) un-normalized viewing ray K^-1 [x, y, 1]
    patch_rays: torch.Tensor   # (M, P, 3)
    ref_patch: torch.Tensor    # (M, P)
    weights: torch.Tensor      # (M, P) bilateral weights

    def __len__(self) -> int:
        return self.x.shape[0]


class MatchingCost:
    """Cost evaluation bound to the samplers and cameras of one problem"""

    def __init__(self, config: PatchMatchConfig, resources: DeviceResources, geometric: bool = False):
        self.config = config
        self.resources = resources
        self.device = resources.device
        self.geometric = geometric
        self.max_cost = float(config.max_cost)

        cams = resources.cameras
        K = cams[:, 0:9].reshape(-1, 3, 3)
        R = cams[:, 9:18].reshape(-1, 3, 3)
        t = cams[:, 18:21]
        self.src_sizes = cams[1:, 21:23]

        self.K_ref = K[0]
        self.K_ref_inv = torch.linalg.inv(K[0])
        self.K_src = K[1:]
        self.K_src_inv = torch.linalg.inv(K[1:])
        # x_src = R_rel @ x_ref + t_rel
        self.R_rel = R[1:] @ R[0].T
        self.t_rel = t[1:] - (self.R_rel @ t[0].unsqueeze(-1)).squeeze(-1)
        self.num_views = resources.num_sources

        radius, step = int(config.patch_radius), max(1, int(config.patch_step))
        offsets = torch.arange(-radius, radius + 1, step, dtype=torch.float32, device=self.device)
        oy, ox = torch.meshgrid(offsets, offsets, indexing='ij')
        self.offset_x = ox.reshape(-1)
        self.offset_y = oy.reshape(-1)
        self.spatial_dist = torch.sqrt(self.offset_x ** 2 + self.offset_y ** 2)

        self.depth_min = float(resources.cameras_host[0].depth_min)
        self.depth_max = float(resources.cameras_host[0].depth_max)

    # ------------------------------------------------------------------
    # Geometry helpers
    # ------------------------------------------------------------------

    def rays(self, x: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
        pixels = torch.stack([x, y, torch.ones_like(x)], dim=-1)
        return pixels @ self.K_ref_inv.T

    def context(self, x: torch.Tensor, y: torch.Tensor) -> PatchContext:
        """Precompute rays, reference patch and bilateral weights"""
        ref = self.resources.images[0]
        qx = x[:, None] + self.offset_x[None, :]
        qy = y[:, None] + self.offset_y[None, :]
        ref_patch = ref.sample(qx, qy)
        center = ref.sample(x, y)

        sigma_s = float(self.config.sigma_spatial)
        sigma_c = float(self.config.sigma_color)
        color_dist = torch.abs(ref_patch - center[:, None])
        weights = torch.exp(-self.spatial_dist[None, :] / (2.0 * sigma_s * sigma_s)
                            - color_dist / (2.0 * sigma_c * sigma_c))
        return PatchContext(
            x=x, y=y,
            ray=self.rays(x, y),
            patch_rays=self.rays(qx, qy),
            ref_patch=ref_patch,
            weights=weights,
        )

    def depth_through_plane(self, depth: torch.Tensor, normal: torch.Tensor,
                            from_ray: torch.Tensor, to_ray: torch.Tensor) -> torch.Tensor:
        """
        Depth along ``to_ray`` of the plane through ``depth * from_ray`` with
        normal ``normal``. Rays parallel to or behind the plane give NaN.
        """
        offset = -(normal * (depth[..., None] * from_ray)).sum(-1)
        denom = (normal * to_ray).sum(-1)
        out = -offset / torch.where(denom.abs() > _EPS, denom, torch.full_like(denom, _EPS))
        bad = (denom.abs() <= _EPS) | (out <= 0) | ~torch.isfinite(out)
        return torch.where(bad, torch.full_like(out, float('nan')), out)

    def in_range(self, depth: torch.Tensor) -> torch.Tensor:
        return torch.isfinite(depth) & (depth >= self.depth_min) & (depth <= self.depth_max)

    def plane_depth(self, planes: torch.Tensor, ray: torch.Tensor) -> torch.Tensor:
        """Depth along ``ray`` of planes ``(nx, ny, nz, w)``"""
        denom = (planes[:, :3] * ray).sum(-1)
        safe = torch.where(denom.abs() > _EPS, denom, torch.full_like(denom, _EPS))
        return -planes[:, 3] / safe

    # ------------------------------------------------------------------
    # Costs
    # ------------------------------------------------------------------

    def per_view(self, ctx: PatchContext, depth: torch.Tensor, normal: torch.Tensor) -> torch.Tensor:
        """
        Cost of each hypothesis in every source view.

        Returns:
            (V, M) costs; views the hypothesis cannot be scored in get ``max_cost``
        """
        max_cost = self.max_cost
        center_point = depth[:, None] * ctx.ray                          # (M, 3)
        patch_depth = self.depth_through_plane(depth[:, None], normal[:, None, :],
                                               ctx.ray[:, None, :], ctx.patch_rays)
        patch_points = patch_depth[..., None] * ctx.patch_rays           # (M, P, 3)
        patch_ok = torch.isfinite(patch_depth)

        weights = ctx.weights
        weight_sum = weights.sum(-1).clamp_min(_EPS)
        ref_mean = (weights * ctx.ref_patch).sum(-1) / weight_sum
        ref_dev = ctx.ref_patch - ref_mean[:, None]
        ref_var = (weights * ref_dev * ref_dev).sum(-1) / weight_sum

        costs = []
        for v in range(self.num_views):
            R_rel, t_rel, K_src = self.R_rel[v], self.t_rel[v], self.K_src[v]
            width, height = self.src_sizes[v, 0], self.src_sizes[v, 1]

            center_src = center_point @ R_rel.T + t_rel
            center_proj = center_src @ K_src.T
            cz = center_proj[:, 2]
            safe_cz = torch.where(cz > _EPS, cz, torch.ones_like(cz))
            cu = center_proj[:, 0] / safe_cz
            cv = center_proj[:, 1] / safe_cz
            center_ok = ((cz > _EPS) & (cu >= 0) & (cu <= width - 1)
                         & (cv >= 0) & (cv <= height - 1))

            src_points = patch_points @ R_rel.T + t_rel
            proj = src_points @ K_src.T
            pz = proj[..., 2]
            valid = patch_ok & (pz > _EPS)
            safe_pz = torch.where(valid, pz, torch.ones_like(pz))
            src_patch = self.resources.images[v + 1].sample(proj[..., 0] / safe_pz, proj[..., 1] / safe_pz)
            valid = valid & torch.isfinite(src_patch)
            src_patch = torch.where(valid, src_patch, torch.zeros_like(src_patch))

            src_mean = (weights * src_patch).sum(-1) / weight_sum
            src_dev = src_patch - src_mean[:, None]
            src_var = (weights * src_dev * src_dev).sum(-1) / weight_sum
            cov = (weights * ref_dev * src_dev).sum(-1) / weight_sum
            textured = (ref_var > _VAR_EPS) & (src_var > _VAR_EPS)
            ncc = cov / torch.sqrt(torch.where(textured, ref_var * src_var, torch.ones_like(ref_var)))
            cost = torch.clamp(1.0 - ncc, 0.0, max_cost)

            ok = center_ok & valid.all(-1) & textured
            cost = torch.where(ok, cost, torch.full_like(cost, max_cost))

            if self.geometric and self.resources.depth_valid[v + 1]:
                error = self._reprojection_error(ctx, v, cu, cv, center_ok)
                limit = float(self.config.geom_max_error)
                cost = cost + float(self.config.geom_weight) * torch.clamp(error, max=limit)
                if self.config.mand_consistency:
                    cost = torch.where(error >= limit, torch.full_like(cost, max_cost), cost)
                cost = torch.clamp(cost, max=max_cost)

            costs.append(cost)
        return torch.stack(costs, dim=0)

    def _reprojection_error(self, ctx: PatchContext, v: int, cu: torch.Tensor,
                            cv: torch.Tensor, center_ok: torch.Tensor) -> torch.Tensor:
        """Pixel distance after ref -> source -> (source depth) -> ref"""
        limit = float(self.config.geom_max_error)
        src_depth = self.resources.depths[v + 1].sample(cu, cv)
        src_pixels = torch.stack([cu, cv, torch.ones_like(cu)], dim=-1)
        src_point = src_depth[:, None] * (src_pixels @ self.K_src_inv[v].T)
        ref_point = (src_point - self.t_rel[v]) @ self.R_rel[v]
        proj = ref_point @ self.K_ref.T
        z = proj[:, 2]
        safe_z = torch.where(z > _EPS, z, torch.ones_like(z))
        error = torch.sqrt((proj[:, 0] / safe_z - ctx.x) ** 2 + (proj[:, 1] / safe_z - ctx.y) ** 2)
        ok = center_ok & (src_depth > 0) & (z > _EPS) & torch.isfinite(error)
        return torch.where(ok, error, torch.full_like(error, limit))

    def aggregate(self, per_view: torch.Tensor, selection: torch.Tensor) -> torch.Tensor:
        """Mean cost over the selected views; ``max_cost`` when none is selected"""
        count = selection.sum(0)
        total = torch.where(selection, per_view, torch.zeros_like(per_view)).sum(0)
        mean = total / count.clamp_min(1)
        return torch.where(count > 0, mean, torch.full_like(mean, self.max_cost))

    def prior_penalty(self, ctx: PatchContext, depth: torch.Tensor, normal: torch.Tensor,
                      planes: torch.Tensor, mask: torch.Tensor) -> torch.Tensor:
        """Deviation from the assigned prior plane, zero for unassigned pixels"""
        prior_depth = self.plane_depth(planes, ctx.ray)
        usable = (mask > 0) & torch.isfinite(prior_depth) & (prior_depth > 0)
        safe_depth = torch.where(usable, prior_depth, torch.ones_like(prior_depth))
        tolerance = float(self.config.prior_depth_tolerance)
        depth_term = torch.clamp(torch.abs(depth - safe_depth) / (safe_depth * tolerance), max=1.0)
        normal_term = (1.0 - torch.clamp((normal * planes[:, :3]).sum(-1), -1.0, 1.0)) * 0.5
        penalty = float(self.config.prior_weight) * (depth_term + normal_term)
        return torch.where(usable, penalty, torch.zeros_like(penalty))

    def total(self, ctx: PatchContext, depth: torch.Tensor, normal: torch.Tensor,
              selection: torch.Tensor, prior: Optional[Tuple[torch.Tensor, torch.Tensor]] = None
              ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Aggregated cost of one hypothesis per pixel.

        Returns:
            (cost (M,), per-view costs (V, M))
        """
        per_view = self.per_view(ctx, depth, normal)
        cost = self.aggregate(per_view, selection)
        if prior is not None:
            cost = cost + self.prior_penalty(ctx, depth, normal, prior[0], prior[1])
        return torch.clamp(cost, 0.0, self.max_cost), per_view

    # ------------------------------------------------------------------
    # View selection
    # ------------------------------------------------------------------

    def select_views(self, per_view: torch.Tensor) -> torch.Tensor:
        """
        Keep the ``num_selected_views`` cheapest views whose cost is below
        ``bad_view_cost``; the single best view survives if none qualifies.

        Returns:
            (V, M) boolean selection
        """
        num_views = per_view.shape[0]
        k = max(1, min(int(self.config.num_selected_views), num_views))
        order = torch.argsort(per_view, dim=0)
        rank = torch.empty_like(order)
        rank.scatter_(0, order, torch.arange(num_views, device=per_view.device)[:, None].expand_as(order))
        selection = (rank < k) & (per_view < float(self.config.bad_view_cost))
        best = rank == 0
        empty = ~selection.any(0)
        return torch.where(empty[None, :], best, selection)

    @staticmethod
    def selection_to_bits(selection: torch.Tensor) -> torch.Tensor:
        weights = (2 ** torch.arange(selection.shape[0], device=selection.device, dtype=torch.int64))
        return (selection.to(torch.int64) * weights[:, None]).sum(0)

    @staticmethod
    def bits_to_selection(bits: torch.Tensor, num_views: int) -> torch.Tensor:
        weights = (2 ** torch.arange(num_views, device=bits.device, dtype=torch.int64))
        return (bits[None, :] & weights[:, None]) > 0

    def confidence(self, per_view: torch.Tensor) -> torch.Tensor:
        """Half the fraction of source views that agree with the hypothesis"""
        good = (per_view < float(self.config.good_view_cost)).to(torch.float32)
        return 0.5 * good.mean(0)
