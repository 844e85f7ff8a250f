"""
Per-pixel random state: one xorshift32 generator per pixel, kept on the
device for the lifetime of a problem and never copied back to the host.
"""

import torch

_MASK32 = 0xFFFFFFFF


class PixelRandomState:
    """Independent xorshift32 streams, one per pixel"""

    def __init__(self, num_pixels: int, seed: int, device: torch.device):
        index = torch.arange(num_pixels, dtype=torch.int64, device=device)
        state = (index * 2654435761 + (int(seed) & 0xFFFF) * 40503 + 1) & _MASK32
        self.states = torch.where(state == 0, torch.full_like(state, 0x9E3779B9), state)
        # decorrelate neighbouring seeds
        for _ in range(4):
            self.states = self._step(self.states)

    @staticmethod
    def _step(x: torch.Tensor) -> torch.Tensor:
        x = x ^ ((x << 13) & _MASK32)
        x = x ^ (x >> 17)
        x = x ^ ((x << 5) & _MASK32)
        return x

    @property
    def nbytes(self) -> int:
        return self.states.element_size() * self.states.nelement()

    def uniform(self, index: torch.Tensor, count: int = 1) -> torch.Tensor:
        """
        Draw ``count`` uniforms in [0, 1) for each pixel in ``index``.

        Returns:
            (count, len(index)) float32 tensor
        """
        x = self.states[index]
        draws = []
        for _ in range(count):
            x = self._step(x)
            draws.append((x >> 8).to(torch.float32) / 16777216.0)
        self.states[index] = x
        return torch.stack(draws, dim=0)
