"""
Camera, problem and result data model
"""

from .camera import (
    Camera,
    angle_between,
    backproject_to_ref,
    backproject_to_world,
    depth_from_plane,
    distance_to_origin,
    normal_to_ref,
    normal_to_world,
    project_on_camera,
    ray_distance,
)
from .problem import Problem, level_image_size, read_pair_file
from .structures import HypothesisInit, PriorField, PropagationResult, Triangle

__all__ = [
    'Camera',
    'Problem',
    'PropagationResult',
    'HypothesisInit',
    'PriorField',
    'Triangle',
    'read_pair_file',
    'level_image_size',
    'backproject_to_ref',
    'backproject_to_world',
    'project_on_camera',
    'depth_from_plane',
    'normal_to_world',
    'normal_to_ref',
    'distance_to_origin',
    'ray_distance',
    'angle_between',
]
