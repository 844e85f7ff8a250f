"""
Input readers and output writers
"""

from .cameras import (
    ProblemInputs,
    fit_to_size,
    load_grayscale,
    load_problem_inputs,
    read_camera,
    rescale_image_and_camera,
    result_folder,
)
from .dmb import read_depth_dmb, read_dmb, read_normal_dmb, write_depth_dmb, write_dmb, write_normal_dmb
from .ply import export_point_cloud, read_point_cloud

__all__ = [
    'ProblemInputs',
    'load_problem_inputs',
    'read_camera',
    'load_grayscale',
    'fit_to_size',
    'rescale_image_and_camera',
    'result_folder',
    'read_dmb',
    'write_dmb',
    'read_depth_dmb',
    'write_depth_dmb',
    'read_normal_dmb',
    'write_normal_dmb',
    'export_point_cloud',
    'read_point_cloud',
]
