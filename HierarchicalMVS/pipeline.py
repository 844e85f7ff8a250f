"""
Hierarchical PatchMatch Pipeline
================================

Coarse-to-fine control loop and per-problem driver.

``HierarchicalController`` runs the propagation engine on pyramid levels
``Lmax .. 0``; each level's result is lifted to the next finer level with
the joint bilateral upsampler and used as that level's initialization.
``PatchMatchPipeline`` walks the problems of a dense folder, loads their
inputs, runs the controller and stores the results.

Example:
    >>> config = PatchMatchConfig()
    >>> config.set_hierarchy()
    >>> pipeline = PatchMatchPipeline("scan1/dense", config)
    >>> summary = pipeline.run()
"""

import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .config import PatchMatchConfig
from .core.camera import Camera, backproject_to_world, normal_to_world
from .core.problem import Problem, level_image_size, read_pair_file
from .core.structures import HypothesisInit, PriorField, PropagationResult
from .device.resources import DeviceResources
from .errors import FatalError, HierarchicalMVSError
from .io.cameras import ProblemInputs, fit_to_size, load_problem_inputs, result_folder
from .io.dmb import read_depth_dmb, read_normal_dmb, write_depth_dmb, write_normal_dmb
from .io.ply import export_point_cloud
from .logger import get_logger
from .prior.triangulation import PlanarPriorBuilder
from .propagation.engine import PropagationEngine, PropagationStage
from .upsampling.jbu import JointBilateralUpsampler, nearest_upsample


class HierarchicalController:
    """
    Drive the engine across pyramid levels.

    Level ``L`` works at ``max_image_size // 2**L``; with hierarchy disabled
    only level 0 runs.
    """

    def __init__(self, config: Optional[PatchMatchConfig] = None):
        self.config = config or PatchMatchConfig()
        self.logger = get_logger("controller")
        self.upsampler = JointBilateralUpsampler(self.config)
        self.prior_builder = PlanarPriorBuilder(self.config)
        self.last_prior: Optional[Tuple[PriorField, Camera]] = None

    @property
    def num_levels(self) -> int:
        return int(self.config.num_downscale_levels) + 1 if self.config.hierarchy else 1

    def level_inputs(self, inputs: ProblemInputs, level: int) -> Tuple[List[np.ndarray], List[Camera],
                                                                      Optional[List[Optional[np.ndarray]]]]:
        """Images, cameras and depth maps resampled to one pyramid level"""
        size = level_image_size(inputs.problem.cur_image_size, level)
        images, cameras = [], []
        for image, camera in zip(inputs.images, inputs.cameras):
            image, camera = fit_to_size(image, camera, size)
            images.append(image)
            cameras.append(camera)

        depths = None
        if inputs.depths is not None:
            depths = []
            for depth, camera in zip(inputs.depths, cameras):
                if depth is not None and depth.shape != (camera.height, camera.width):
                    depth = cv2.resize(depth, (camera.width, camera.height), interpolation=cv2.INTER_NEAREST)
                depths.append(depth)
        return images, cameras, depths

    def lift(self, result: PropagationResult, guidance: np.ndarray) -> HypothesisInit:
        """
        Upsample a coarse result into the initialization of a finer level.

        Depth and normals go through the joint bilateral upsampler; the
        coarse cost travels as ``auxiliary_cost`` (nearest neighbour) and
        decides which pixels are re-randomized.
        """
        height, width = guidance.shape[:2]
        depth, normal = self.upsampler.upsample(guidance, result.depth, result.normal)
        cost = nearest_upsample(result.cost, height, width)
        return HypothesisInit(depth=depth, normal=normal, auxiliary_cost=cost)

    def fit_init(self, init: HypothesisInit, guidance: np.ndarray) -> HypothesisInit:
        """Resample a warm start to the resolution of ``guidance``"""
        if init.shape == guidance.shape[:2]:
            return init
        cost = init.auxiliary_cost
        if cost is None:
            cost = np.zeros(init.shape, dtype=np.float32)
        lifted = self.lift(PropagationResult(init.depth, init.normal, cost), guidance)
        if init.auxiliary_cost is None:
            lifted.auxiliary_cost = None
        return lifted

    def solve(self, resources: DeviceResources, images: Sequence[np.ndarray], cameras: Sequence[Camera],
              depths: Optional[Sequence[Optional[np.ndarray]]] = None,
              init: Optional[HypothesisInit] = None,
              stage: PropagationStage = PropagationStage.PHOTOMETRIC,
              coarse_prior: Optional[Tuple[PriorField, Camera]] = None) -> PropagationResult:
        """
        One level: engine pass, optional planar-prior re-run.

        When no support points survive on this level, ``coarse_prior`` (the
        prior of the previous level and its camera) is lifted instead. The
        prior that was used is kept in ``last_prior``.
        """
        self.last_prior = None
        resources.allocate(images, cameras, depths)
        if init is not None:
            resources.upload_hypotheses(init)

        engine = PropagationEngine(self.config, resources)
        result = engine.run(stage)

        if self.config.planar_prior and stage is PropagationStage.PHOTOMETRIC:
            prior = self.prior_builder.build(result, cameras[0], images[0])
            if not prior.has_prior and coarse_prior is not None:
                self.logger.info("Lifting the previous level's planar prior")
                prior = self.prior_builder.upsample(coarse_prior[0], coarse_prior[1], cameras[0], images[0],
                                                    self.upsampler)
            if prior.has_prior:
                self.last_prior = (prior, cameras[0])
                resources.upload_hypotheses(HypothesisInit(depth=result.depth, normal=result.normal))
                result = engine.run(stage, prior=prior)
                resources.release_prior()
        return result

    def run(self, inputs: ProblemInputs, init: Optional[HypothesisInit] = None,
            stage: PropagationStage = PropagationStage.PHOTOMETRIC) -> PropagationResult:
        """
        Run every level, coarsest first.

        Args:
            inputs: Problem inputs at the finest working size
            init: Optional warm start for the coarsest level (resumed result)
            stage: Cost used on every level

        Returns:
            Result at level 0
        """
        result = None
        prior = None
        levels = self.num_levels
        with DeviceResources(self.config) as resources:
            for level in range(levels - 1, -1, -1):
                start = time.time()
                images, cameras, depths = self.level_inputs(inputs, level)
                if result is not None:
                    level_init = self.lift(result, images[0])
                elif init is not None:
                    level_init = self.fit_init(init, images[0])
                else:
                    level_init = None
                result = self.solve(resources, images, cameras, depths, level_init, stage, prior)
                prior = self.last_prior
                self.logger.info(
                    f"Level {level} ({cameras[0].width}x{cameras[0].height}) done "
                    f"in {time.time() - start:.2f}s"
                )
        return result


def write_result(folder: Union[str, Path], result: PropagationResult, geometric: bool = False):
    """Store a result as dmb files; geometric passes write ``depths_geom.dmb``"""
    folder = Path(folder)
    folder.mkdir(parents=True, exist_ok=True)
    write_depth_dmb(folder / ("depths_geom.dmb" if geometric else "depths.dmb"), result.depth)
    write_normal_dmb(folder / "normals.dmb", result.normal)
    write_depth_dmb(folder / "costs.dmb", result.cost)
    if result.confidence is not None:
        write_depth_dmb(folder / "confidence.dmb", result.confidence)


def read_result(folder: Union[str, Path], multi_geometry: bool = False,
                with_cost: bool = False) -> Optional[HypothesisInit]:
    """
    Reload a stored result as a warm start, None when incomplete.

    With ``with_cost`` the stored costs become the auxiliary cost, so pixels
    that matched badly are re-randomized on the next run.
    """
    folder = Path(folder)
    depth = read_depth_dmb(folder / ("depths_geom.dmb" if multi_geometry else "depths.dmb"))
    normal = read_normal_dmb(folder / "normals.dmb")
    if depth is None or normal is None or normal.shape[:2] != depth.shape:
        return None
    cost = read_depth_dmb(folder / "costs.dmb") if with_cost else None
    if cost is not None and cost.shape != depth.shape:
        cost = None
    return HypothesisInit(depth=depth, normal=normal, auxiliary_cost=cost)


def result_to_point_cloud(result: PropagationResult, camera: Camera,
                          max_cost: float = 2.0) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    World points, normals and grey colours of every pixel with a usable hypothesis.

    Returns:
        (points (N, 3), normals (N, 3), colors (N, 3) uint8)
    """
    valid = (result.depth > 0) & np.isfinite(result.depth) & (result.cost < max_cost)
    ys, xs = np.nonzero(valid)
    points = backproject_to_world(xs, ys, result.depth[ys, xs], camera)
    normals = normal_to_world(result.normal[ys, xs], camera)
    gray = result.texture[ys, xs] if result.texture is not None else np.full(len(xs), 128.0)
    colors = np.repeat(np.clip(gray, 0, 255).astype(np.uint8)[:, None], 3, axis=1)
    return points, normals, colors


class PatchMatchPipeline:
    """
    Process every problem of a dense folder.

    Problems that fail on input are logged and skipped; ``FatalError``
    stops the batch and reaches the caller.
    """

    def __init__(self, dense_folder: Union[str, Path], config: Optional[PatchMatchConfig] = None):
        self.dense_folder = Path(dense_folder)
        self.config = config or PatchMatchConfig()
        self.logger = get_logger("pipeline")
        self.controller = HierarchicalController(self.config)
        self.stats = {'processed': 0, 'failed': 0, 'processing_time': {}}

    def load_problems(self, max_source_views: int = 0) -> List[Problem]:
        return read_pair_file(self.dense_folder / "pair.txt", self.config.max_image_size, max_source_views)

    def output_folder(self, image_id: int) -> Path:
        return result_folder(self.dense_folder, image_id, self.config.result_dir_name)

    def process_problem(self, problems: Sequence[Problem], idx: int) -> Optional[PropagationResult]:
        """
        Run one problem and write its results.

        Returns:
            The level-0 result, or None when the inputs could not be loaded
        """
        problem = problems[idx]
        geometric = self.config.geom_consistency
        start = time.time()
        self.logger.info(f"Processing image {problem.ref_image_id:08d} "
                         f"({len(problem.src_image_ids)} sources{', geometric' if geometric else ''})")

        inputs = load_problem_inputs(self.dense_folder, problems, idx, self.config, load_depths=geometric)
        if inputs is None:
            self.logger.error(f"Inputs of image {problem.ref_image_id:08d} could not be loaded")
            return None
        folder = self.output_folder(problem.ref_image_id)

        if geometric:
            init = read_result(folder, self.config.multi_geometry)
            if init is None:
                self.logger.error(f"No stored result to refine for image {problem.ref_image_id:08d}")
                return None
            init = self.controller.fit_init(init, inputs.reference_image)
            with DeviceResources(self.config) as resources:
                result = self.controller.solve(resources, inputs.images, inputs.cameras, inputs.depths,
                                               init, PropagationStage.GEOMETRIC)
        else:
            init = None
            if self.config.resume:
                init = read_result(folder, with_cost=True)
                if init is None:
                    self.logger.warning(f"No stored result to resume for image {problem.ref_image_id:08d}")
            result = self.controller.run(inputs, init)

        write_result(folder, result, geometric=geometric)
        if self.config.export_ply:
            points, normals, colors = result_to_point_cloud(result, inputs.reference_camera,
                                                            self.config.max_cost)
            export_point_cloud(folder / "points.ply", points, colors, normals)

        elapsed = time.time() - start
        self.stats['processing_time'][problem.ref_image_id] = elapsed
        self.logger.info(f"✓ Image {problem.ref_image_id:08d} done in {elapsed:.2f}s -> {folder}")
        return result

    def run(self, problems: Optional[Sequence[Problem]] = None) -> Dict:
        """
        Process all problems.

        Returns:
            Statistics dictionary (processed / failed counts, timings)
        """
        problems = list(problems) if problems is not None else self.load_problems()
        if not problems:
            self.logger.error(f"No problems found in {self.dense_folder}")
            return self.stats

        for idx in range(len(problems)):
            try:
                result = self.process_problem(problems, idx)
            except FatalError:
                raise
            except HierarchicalMVSError as e:
                self.logger.error(f"Problem {problems[idx].ref_image_id:08d} failed: {e}")
                result = None
            if result is None:
                self.stats['failed'] += 1
            else:
                self.stats['processed'] += 1

        self.logger.info(f"Processed {self.stats['processed']}/{len(problems)} problems "
                         f"({self.stats['failed']} failed)")
        return self.stats
