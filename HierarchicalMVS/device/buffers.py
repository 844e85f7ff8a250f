"""
Phase-Tagged Hypothesis Field
=============================

Per-pixel plane hypotheses ``(n.x, n.y, n.z, depth)`` and their costs,
partitioned into the two checkerboard colours. Half-pass ``g`` writes only
colour ``g % 2``; its reads see exactly the state committed by half-pass
``g - 1``. The ``generation`` counter makes that one-phase-stale contract
explicit and checkable.
"""

from typing import Tuple

import torch

from ..errors import FatalError, call_site


class HypothesisField:
    """Plane hypotheses + costs with checkerboard commit discipline"""

    RED = 0
    BLACK = 1

    def __init__(self, height: int, width: int, device: torch.device, max_cost: float = 2.0):
        self.height = int(height)
        self.width = int(width)
        self.device = device
        num_pixels = self.height * self.width

        self.planes = torch.zeros((num_pixels, 4), dtype=torch.float32, device=device)
        self.costs = torch.full((num_pixels,), float(max_cost), dtype=torch.float32, device=device)
        self.generation = 0

        ys, xs = torch.meshgrid(
            torch.arange(self.height, device=device),
            torch.arange(self.width, device=device),
            indexing='ij',
        )
        parity = ((xs + ys) % 2).reshape(-1)
        flat = torch.arange(num_pixels, device=device)
        self._colors = [flat[parity == self.RED], flat[parity == self.BLACK]]

    @property
    def num_pixels(self) -> int:
        return self.height * self.width

    @property
    def nbytes(self) -> int:
        return (self.planes.element_size() * self.planes.nelement()
                + self.costs.element_size() * self.costs.nelement())

    @property
    def active_color(self) -> int:
        """Colour the next commit must write"""
        return self.generation % 2

    def pixels(self, color: int) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Flat index, x and y coordinates of every pixel of ``color``"""
        index = self._colors[color]
        return index, (index % self.width).to(torch.float32), (index // self.width).to(torch.float32)

    def read(self, index: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Snapshot (normal, depth, cost) of the given pixels"""
        planes = self.planes[index]
        return planes[:, :3].clone(), planes[:, 3].clone(), self.costs[index].clone()

    def reset(self, normal: torch.Tensor, depth: torch.Tensor, cost: torch.Tensor):
        """Initialize every pixel at once and restart the generation count"""
        self.planes[:, :3] = normal
        self.planes[:, 3] = depth
        self.costs[:] = cost
        self.generation = 0

    def refresh_costs(self, cost: torch.Tensor):
        """Replace all costs between iterations (hypotheses untouched)"""
        self.costs[:] = cost

    def commit(self, color: int, index: torch.Tensor, normal: torch.Tensor,
               depth: torch.Tensor, cost: torch.Tensor):
        """Write the winners of one half-pass and advance the generation"""
        if color != self.active_color:
            raise FatalError(
                f"out-of-phase commit: colour {color} at generation {self.generation}",
                location=call_site(2),
            )
        self.planes[index, :3] = normal
        self.planes[index, 3] = depth
        self.costs[index] = cost
        self.generation += 1
