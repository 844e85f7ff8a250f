"""
Hierarchical PatchMatch Multi-View Stereo
=========================================

Dense per-pixel depth and normal estimation for a reference image from a set
of calibrated source images, using checkerboard PatchMatch propagation on a
torch device (CUDA when available, CPU otherwise).

Architecture:
    core/         - Camera, problem and result data model
    device/       - Device-resident samplers, buffers and resource lifecycle
    propagation/  - Matching cost and hypothesis propagation engine
    prior/        - Support points, Delaunay triangulation, planar prior
    upsampling/   - Joint bilateral upsampling
    io/           - Dense folder readers, dmb maps, PLY export

Example:
    >>> from HierarchicalMVS import PatchMatchPipeline, PatchMatchConfig
    >>>
    >>> config = PatchMatchConfig()
    >>> config.set_hierarchy()
    >>> config.set_planar_prior()
    >>> PatchMatchPipeline('./scan1', config).run()
"""

from .config import PatchMatchConfig
from .errors import DeviceError, FatalError, HierarchicalMVSError, InputError
from .pipeline import HierarchicalController, PatchMatchPipeline
from .propagation import PropagationEngine, PropagationStage

__version__ = "1.0.0"
__all__ = [
    'PatchMatchConfig',
    'PatchMatchPipeline',
    'HierarchicalController',
    'PropagationEngine',
    'PropagationStage',
    'HierarchicalMVSError',
    'FatalError',
    'DeviceError',
    'InputError',
]
