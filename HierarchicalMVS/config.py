"""
PatchMatch Configuration
========================

A single dataclass carries every tunable of the propagation engine, the
planar prior, the joint bilateral upsampler and the hierarchical controller.
The ``set_*`` helpers mirror the mode toggles recognised on the command line.
"""

import json
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Optional, Union

import torch


@dataclass
class PatchMatchConfig:
    """Configuration for the hierarchical PatchMatch stereo engine"""

    # Device selection (None = CUDA when available, else CPU)
    device: Optional[str] = None
    seed: int = 0

    # Input scaling
    max_image_size: int = 3200
    depth_min_factor: float = 0.6
    depth_max_factor: float = 1.2
    baseline: float = 0.54  # nominal, only used for the disparity range

    # Matching cost
    patch_radius: int = 5
    patch_step: int = 2
    sigma_spatial: float = 5.0
    sigma_color: float = 3.0
    max_cost: float = 2.0

    # Propagation
    num_iterations: int = 3
    geom_iterations: int = 2
    perturbation: float = 0.02
    num_selected_views: int = 4
    good_view_cost: float = 0.8
    bad_view_cost: float = 1.2
    chunk_size: int = 65536  # pixels scored per dispatch

    # Geometric consistency
    geom_weight: float = 0.2
    geom_max_error: float = 3.0

    # Planar prior
    prior_weight: float = 0.5
    prior_depth_tolerance: float = 0.05
    support_tile_size: int = 5
    texture_penalty: float = 0.2
    support_threshold: float = 0.1
    canny_low: int = 50
    canny_high: int = 150

    # Joint bilateral upsampling
    jbu_radius: int = 2
    jbu_sigma_spatial: float = 1.0
    jbu_sigma_range: float = 10.0

    # Hierarchy
    num_downscale_levels: int = 2
    reinit_cost: float = 1.2

    # Mode toggles
    geom_consistency: bool = False
    multi_geometry: bool = False
    hierarchy: bool = False
    planar_prior: bool = False
    mand_consistency: bool = False
    resume: bool = False

    # Output
    result_dir_name: str = "HierarchicalMVS"
    export_ply: bool = False

    # Logging
    verbose: bool = False
    log_file: Optional[str] = None

    def set_geom_consistency(self, multi_geometry: bool = False):
        """Enable the geometric-consistency refinement pass"""
        self.geom_consistency = True
        if multi_geometry:
            self.multi_geometry = True

    def set_hierarchy(self):
        self.hierarchy = True

    def set_planar_prior(self):
        self.planar_prior = True

    def set_mand_consistency(self, flag: bool):
        self.mand_consistency = flag

    def iterations_for(self, geometric: bool) -> int:
        """Number of full traversals for a photometric or geometric pass"""
        return self.geom_iterations if geometric else self.num_iterations

    def resolve_device(self) -> torch.device:
        """Pick the accelerator the engine runs on"""
        if self.device is not None:
            return torch.device(self.device)
        return torch.device('cuda' if torch.cuda.is_available() else 'cpu')

    def to_dict(self) -> dict:
        return asdict(self)

    def save_json(self, path: Union[str, Path]):
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_dict(cls, values: dict) -> "PatchMatchConfig":
        """Build a config, ignoring keys that are not config fields"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    @classmethod
    def load_json(cls, path: Union[str, Path]) -> "PatchMatchConfig":
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))
