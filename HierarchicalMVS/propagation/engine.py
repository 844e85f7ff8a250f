"""
Hypothesis Propagation Engine
=============================

Checkerboard PatchMatch over the per-pixel plane hypotheses held by a
``DeviceResources`` instance.

Each iteration runs two half-passes (red pixels, ``x + y`` even, then black).
A half-pass scores, for every pixel of the active colour:

1. the current hypothesis
2. the planes of 8 opposite-colour neighbours at (+-1, 0), (0, +-1),
   (+-3, 0), (0, +-3), intersected with the pixel's viewing ray
3. four random candidates: fully random, perturbed depth, perturbed
   normal, both perturbed

and commits the cheapest one. Views are re-selected after every iteration.

Example:
    >>> engine = PropagationEngine(config, resources)
    >>> result = engine.run(PropagationStage.PHOTOMETRIC)
"""

import math
import time
from enum import Enum
from typing import List, Optional, Tuple

import torch

from ..config import PatchMatchConfig
from ..core.structures import PriorField, PropagationResult
from ..device.buffers import HypothesisField
from ..device.resources import DeviceResources
from ..device.samplers import DeviceGuard
from ..errors import DeviceError, InputError, call_site
from ..logger import get_logger
from .cost import MatchingCost

NEIGHBOUR_OFFSETS = ((-1, 0), (1, 0), (0, -1), (0, 1), (-3, 0), (3, 0), (0, -3), (0, 3))


class PropagationStage(Enum):
    """Which cost the engine minimizes"""
    PHOTOMETRIC = "photometric"
    GEOMETRIC = "geometric"


class PropagationEngine:
    """Randomized multi-view hypothesis search on the accelerator"""

    def __init__(self, config: PatchMatchConfig, resources: DeviceResources):
        self.config = config
        self.resources = resources
        self.logger = get_logger("engine")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, stage: PropagationStage = PropagationStage.PHOTOMETRIC,
            prior: Optional[PriorField] = None) -> PropagationResult:
        """
        Run one full propagation pass and read the result back.

        Args:
            stage: Photometric or geometric-consistency cost
            prior: Optional planar prior regularizing the search; a prior
                   already uploaded to the resources is used as well

        Returns:
            Host copy of depth, normal, cost, confidence and view selection
        """
        resources = self.resources
        if resources.closed or not resources.allocated:
            raise DeviceError("engine run without allocated resources", location=call_site(2))

        geometric = stage is PropagationStage.GEOMETRIC
        if geometric and not resources.has_depth_samplers:
            raise InputError("geometric consistency needs source depth maps")
        if prior is not None:
            if prior.has_prior:
                resources.upload_prior(prior)
            else:
                resources.release_prior()

        start = time.time()
        self.cost = MatchingCost(self.config, resources, geometric=geometric)
        self.field: HypothesisField = resources.field
        self.num_views = resources.num_sources

        with DeviceGuard(f"{stage.value} propagation"):
            self._initialize()
            iterations = self.config.iterations_for(geometric)
            for iteration in range(iterations):
                perturbation = float(self.config.perturbation) * (0.5 ** iteration)
                for color in (HypothesisField.RED, HypothesisField.BLACK):
                    self._half_pass(color, perturbation)
                self._reselect_views()
                self.logger.debug(
                    f"Iteration {iteration + 1}/{iterations}: "
                    f"mean cost {float(self.field.costs.mean()):.4f}"
                )
            self._update_confidence()

        result = resources.download()
        self.logger.info(
            f"✓ {stage.value.capitalize()} pass on {resources.width}x{resources.height} "
            f"({self.num_views} sources{', prior' if resources.has_prior else ''}) "
            f"in {time.time() - start:.2f}s"
        )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _chunks(self, index: torch.Tensor) -> List[torch.Tensor]:
        size = max(1, int(self.config.chunk_size))
        return list(torch.split(index, size))

    def _coords(self, index: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        width = self.field.width
        return (index % width).to(torch.float32), (index // width).to(torch.float32)

    def _selection(self, index: torch.Tensor) -> torch.Tensor:
        return MatchingCost.bits_to_selection(self.resources.selected_views[index], self.num_views)

    def _prior(self, index: torch.Tensor) -> Optional[Tuple[torch.Tensor, torch.Tensor]]:
        if not self.resources.has_prior:
            return None
        return self.resources.prior_planes[index], self.resources.plane_masks[index]

    @staticmethod
    def _face_camera(normal: torch.Tensor, ray: torch.Tensor) -> torch.Tensor:
        """Unit-length normals flipped so they point toward the camera"""
        normal = normal / normal.norm(dim=-1, keepdim=True).clamp_min(1e-8)
        facing_away = (normal * ray).sum(-1) > 0
        return torch.where(facing_away[:, None], -normal, normal)

    @staticmethod
    def _unit_vector(u: torch.Tensor, v: torch.Tensor) -> torch.Tensor:
        """Uniform direction on the sphere from two uniforms in [0, 1)"""
        z = 2.0 * u - 1.0
        radius = torch.sqrt(torch.clamp(1.0 - z * z, min=0.0))
        phi = 2.0 * math.pi * v
        return torch.stack([radius * torch.cos(phi), radius * torch.sin(phi), z], dim=-1)

    def _random_hypotheses(self, index: torch.Tensor, ray: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        u = self.resources.rand_states.uniform(index, 3)
        depth = self.cost.depth_min + u[0] * (self.cost.depth_max - self.cost.depth_min)
        normal = self._face_camera(self._unit_vector(u[1], u[2]), ray)
        return normal, depth

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _initialize(self):
        """Random or warm-started hypotheses, initial view selection and costs"""
        resources = self.resources
        field = self.field

        loaded = resources.hypotheses_loaded
        reinit = 0
        normals, depths, costs, views = [], [], [], []
        for index in self._chunks(torch.arange(field.num_pixels, device=field.device)):
            x, y = self._coords(index)
            ctx = self.cost.context(x, y)
            rand_normal, rand_depth = self._random_hypotheses(index, ctx.ray)

            if loaded:
                normal = field.planes[index, :3]
                depth = field.planes[index, 3]
                norm = normal.norm(dim=-1)
                bad = (~self.cost.in_range(depth) | ~torch.isfinite(norm) | (norm < 1e-6))
                if resources.auxiliary_cost is not None:
                    aux = resources.auxiliary_cost[index]
                    bad = bad | ~torch.isfinite(aux) | (aux >= float(self.config.reinit_cost))
                reinit += int(bad.sum())
                safe_normal = torch.where(bad[:, None], rand_normal, normal)
                normal = self._face_camera(safe_normal, ctx.ray)
                depth = torch.where(bad, rand_depth, depth)
            else:
                normal, depth = rand_normal, rand_depth

            per_view = self.cost.per_view(ctx, depth, normal)
            selection = self.cost.select_views(per_view)
            cost = self.cost.aggregate(per_view, selection)
            prior = self._prior(index)
            if prior is not None:
                cost = cost + self.cost.prior_penalty(ctx, depth, normal, prior[0], prior[1])

            normals.append(normal)
            depths.append(depth)
            costs.append(torch.clamp(cost, 0.0, self.cost.max_cost))
            views.append(MatchingCost.selection_to_bits(selection))

        field.reset(torch.cat(normals), torch.cat(depths), torch.cat(costs))
        resources.selected_views[:] = torch.cat(views)
        if loaded:
            self.logger.debug(f"Warm start: {reinit}/{field.num_pixels} pixels re-randomized")

    # ------------------------------------------------------------------
    # Half-pass
    # ------------------------------------------------------------------

    def _half_pass(self, color: int, perturbation: float):
        field = self.field
        index_all, _, _ = field.pixels(color)
        if index_all.numel() == 0:
            field.commit(color, index_all, *field.read(index_all))
            return
        out_normal, out_depth, out_cost = [], [], []
        for index in self._chunks(index_all):
            normal, depth, cost = self._refine(index, perturbation)
            out_normal.append(normal)
            out_depth.append(depth)
            out_cost.append(cost)
        field.commit(color, index_all, torch.cat(out_normal), torch.cat(out_depth), torch.cat(out_cost))

    def _refine(self, index: torch.Tensor, perturbation: float):
        """Best of current, spatial and random candidates for one chunk of pixels"""
        field = self.field
        width, height = field.width, field.height
        x, y = self._coords(index)
        ctx = self.cost.context(x, y)
        selection = self._selection(index)
        prior = self._prior(index)

        best_normal, best_depth, best_cost = field.read(index)

        # spatial propagation
        for dx, dy in NEIGHBOUR_OFFSETS:
            nx, ny = x + dx, y + dy
            inside = (nx >= 0) & (nx <= width - 1) & (ny >= 0) & (ny <= height - 1)
            nindex = (ny.clamp(0, height - 1) * width + nx.clamp(0, width - 1)).long()
            plane = field.planes[nindex]
            candidate = self.cost.depth_through_plane(plane[:, 3], plane[:, :3],
                                                      self.cost.rays(nx, ny), ctx.ray)
            valid = inside & self.cost.in_range(candidate)
            if not bool(valid.any()):
                continue
            candidate = torch.where(valid, candidate, best_depth)
            self._try(ctx, selection, prior, valid, plane[:, :3], candidate,
                      best_normal, best_depth, best_cost)

        # random refinement around the current best
        u = self.resources.rand_states.uniform(index, 7)
        span = self.cost.depth_max - self.cost.depth_min
        rand_normal, rand_depth = self._random_hypotheses(index, ctx.ray)
        pert_depth = best_depth + perturbation * span * (2.0 * u[0] - 1.0)
        jitter = torch.stack([2.0 * u[1] - 1.0, 2.0 * u[2] - 1.0, 2.0 * u[3] - 1.0], dim=-1)
        pert_normal = self._face_camera(best_normal + perturbation * math.pi * jitter, ctx.ray)
        joint_depth = best_depth + perturbation * span * (2.0 * u[4] - 1.0)
        joint_jitter = torch.stack([2.0 * u[5] - 1.0, 2.0 * u[6] - 1.0, 2.0 * u[0] - 1.0], dim=-1)
        joint_normal = self._face_camera(best_normal + perturbation * math.pi * joint_jitter, ctx.ray)

        base_normal, base_depth = best_normal.clone(), best_depth.clone()
        for normal, depth in ((rand_normal, rand_depth),
                              (base_normal, pert_depth),
                              (pert_normal, base_depth),
                              (joint_normal, joint_depth)):
            valid = self.cost.in_range(depth) & torch.isfinite(normal).all(-1)
            if not bool(valid.any()):
                continue
            depth = torch.where(valid, depth, best_depth)
            self._try(ctx, selection, prior, valid, normal, depth, best_normal, best_depth, best_cost)

        return best_normal, best_depth, best_cost

    def _try(self, ctx, selection, prior, valid, normal, depth, best_normal, best_depth, best_cost):
        """Score a candidate and update the best buffers in place where it wins"""
        cost, _ = self.cost.total(ctx, depth, normal, selection, prior)
        better = valid & (cost < best_cost)
        best_normal[better] = normal[better]
        best_depth[better] = depth[better]
        best_cost[better] = cost[better]

    # ------------------------------------------------------------------
    # Per-iteration bookkeeping
    # ------------------------------------------------------------------

    def _reselect_views(self):
        """Rank per-view costs of the current hypotheses and refresh costs"""
        field = self.field
        costs, views = [], []
        for index in self._chunks(torch.arange(field.num_pixels, device=field.device)):
            x, y = self._coords(index)
            ctx = self.cost.context(x, y)
            normal, depth = field.planes[index, :3], field.planes[index, 3]
            per_view = self.cost.per_view(ctx, depth, normal)
            selection = self.cost.select_views(per_view)
            cost = self.cost.aggregate(per_view, selection)
            prior = self._prior(index)
            if prior is not None:
                cost = cost + self.cost.prior_penalty(ctx, depth, normal, prior[0], prior[1])
            costs.append(torch.clamp(cost, 0.0, self.cost.max_cost))
            views.append(MatchingCost.selection_to_bits(selection))
        field.refresh_costs(torch.cat(costs))
        self.resources.selected_views[:] = torch.cat(views)

    def _update_confidence(self):
        field = self.field
        confidence = []
        for index in self._chunks(torch.arange(field.num_pixels, device=field.device)):
            x, y = self._coords(index)
            ctx = self.cost.context(x, y)
            per_view = self.cost.per_view(ctx, field.planes[index, 3], field.planes[index, :3])
            confidence.append(self.cost.confidence(per_view))
        self.resources.confidence[:] = torch.cat(confidence)
