"""
Device Samplers
===============

Texture-like access to device-resident 2D float maps: bilinear filtering,
wrap addressing, unnormalized pixel coordinates with integer coordinates at
texel centres.
"""

import torch

from ..errors import DeviceError, HierarchicalMVSError, call_site


class DeviceGuard:
    """
    Turn accelerator failures raised inside the block into ``DeviceError``.

    The location recorded is the line that opened the guard, so the report
    names the failing call site rather than torch internals.

    Example:
        >>> with DeviceGuard("upload reference image"):
        ...     tensor = torch.from_numpy(image).to(device)
    """

    def __init__(self, operation: str):
        self.operation = operation
        self.location = call_site(2)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            return False
        if issubclass(exc_type, HierarchicalMVSError):
            return False
        if issubclass(exc_type, (RuntimeError, MemoryError)):
            raise DeviceError(f"{self.operation} failed: {exc}", location=self.location) from exc
        return False


class TextureSampler:
    """Bilinear, wrap-addressed sampler over one (H, W) float32 device tensor"""

    def __init__(self, data: torch.Tensor, name: str = "texture"):
        if data.dim() != 2:
            raise ValueError(f"{name}: expected a 2D map, got shape {tuple(data.shape)}")
        self.name = name
        self._data = data.contiguous()
        self.height, self.width = self._data.shape

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> torch.Tensor:
        if self._data is None:
            raise DeviceError(f"sampler '{self.name}' used after release", location=call_site(2))
        return self._data

    @property
    def nbytes(self) -> int:
        if self._data is None:
            return 0
        return self._data.element_size() * self._data.nelement()

    def sample(self, x: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
        """
        Sample at pixel coordinates (any matching shapes).

        Non-finite coordinates return NaN.
        """
        data = self.data
        finite = torch.isfinite(x) & torch.isfinite(y)
        x = torch.where(finite, x, torch.zeros_like(x))
        y = torch.where(finite, y, torch.zeros_like(y))

        x0f = torch.floor(x)
        y0f = torch.floor(y)
        fx = x - x0f
        fy = y - y0f
        x0 = x0f.long()
        y0 = y0f.long()

        ix0 = torch.remainder(x0, self.width)
        ix1 = torch.remainder(x0 + 1, self.width)
        iy0 = torch.remainder(y0, self.height)
        iy1 = torch.remainder(y0 + 1, self.height)

        flat = data.reshape(-1)
        v00 = flat[iy0 * self.width + ix0]
        v01 = flat[iy0 * self.width + ix1]
        v10 = flat[iy1 * self.width + ix0]
        v11 = flat[iy1 * self.width + ix1]

        value = ((1 - fx) * (1 - fy) * v00 + fx * (1 - fy) * v01
                 + (1 - fx) * fy * v10 + fx * fy * v11)
        return torch.where(finite, value, torch.full_like(value, float('nan')))

    def release(self):
        self._data = None
