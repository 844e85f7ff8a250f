"""
Device-resident state: samplers, hypothesis buffers, random streams and the
resource manager that owns them.
"""

from .buffers import HypothesisField
from .random import PixelRandomState
from .resources import MAX_VIEWS, DeviceResources
from .samplers import DeviceGuard, TextureSampler

__all__ = [
    'DeviceResources',
    'HypothesisField',
    'PixelRandomState',
    'TextureSampler',
    'DeviceGuard',
    'MAX_VIEWS',
]
