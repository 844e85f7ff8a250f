"""
Planar prior from triangulated support points
"""

from .support import select_support_points, texture_field
from .triangulation import PlanarPriorBuilder, delaunay_triangulation, fit_prior_plane, rasterize_prior

__all__ = [
    'PlanarPriorBuilder',
    'select_support_points',
    'texture_field',
    'delaunay_triangulation',
    'fit_prior_plane',
    'rasterize_prior',
]
