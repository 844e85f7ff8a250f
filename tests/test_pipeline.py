"""
Tests for the hierarchical controller, result storage and the dense folder driver
"""

import numpy as np
import pytest

from HierarchicalMVS.core.problem import Problem
from HierarchicalMVS.core.structures import HypothesisInit, PriorField, PropagationResult
from HierarchicalMVS.device.resources import DeviceResources
from HierarchicalMVS.io.cameras import ProblemInputs
from HierarchicalMVS.io.dmb import read_depth_dmb, read_normal_dmb
from HierarchicalMVS.io.ply import export_point_cloud, read_point_cloud
from HierarchicalMVS.pipeline import (
    HierarchicalController,
    PatchMatchPipeline,
    read_result,
    result_to_point_cloud,
    write_result,
)

from conftest import make_camera, stereo_scene, write_dense_folder


def make_result(size=8, depth=2.0):
    normal = np.zeros((size, size, 3), dtype=np.float32)
    normal[..., 2] = -1.0
    return PropagationResult(
        depth=np.full((size, size), depth, dtype=np.float32),
        normal=normal,
        cost=np.full((size, size), 0.3, dtype=np.float32),
        confidence=np.full((size, size), 0.5, dtype=np.float32),
        texture=np.full((size, size), 200.0, dtype=np.float32),
    )


@pytest.fixture
def small_config(cpu_config):
    cpu_config.num_iterations = 2
    cpu_config.max_image_size = 48
    return cpu_config


# ----------------------------------------------------------------------
# Result storage
# ----------------------------------------------------------------------

def test_write_and_read_result(tmp_path):
    result = make_result()
    write_result(tmp_path, result)

    for name in ("depths.dmb", "normals.dmb", "costs.dmb", "confidence.dmb"):
        assert (tmp_path / name).exists()
    np.testing.assert_array_equal(read_depth_dmb(tmp_path / "costs.dmb"), result.cost)

    init = read_result(tmp_path)
    np.testing.assert_array_equal(init.depth, result.depth)
    np.testing.assert_array_equal(init.normal, result.normal)
    assert init.auxiliary_cost is None


def test_read_result_with_stored_cost(tmp_path):
    result = make_result()
    result.cost[0, 0] = 2.0
    write_result(tmp_path, result)

    init = read_result(tmp_path, with_cost=True)

    np.testing.assert_array_equal(init.auxiliary_cost, result.cost)
    (tmp_path / "costs.dmb").unlink()
    assert read_result(tmp_path, with_cost=True).auxiliary_cost is None


def test_geometric_result_uses_separate_depth_file(tmp_path):
    write_result(tmp_path, make_result(depth=2.0))
    write_result(tmp_path, make_result(depth=2.5), geometric=True)

    assert read_result(tmp_path).depth[0, 0] == pytest.approx(2.0)
    assert read_result(tmp_path, multi_geometry=True).depth[0, 0] == pytest.approx(2.5)


def test_read_result_incomplete(tmp_path):
    assert read_result(tmp_path) is None
    write_result(tmp_path, make_result())
    (tmp_path / "normals.dmb").unlink()
    assert read_result(tmp_path) is None


def test_point_cloud_export(tmp_path):
    camera = make_camera(8, 8)
    result = make_result()
    result.cost[0, 0] = 2.0
    points, normals, colors = result_to_point_cloud(result, camera)

    assert len(points) == 63
    np.testing.assert_allclose(points[:, 2], 2.0)
    assert (colors == 200).all()

    points[0] = np.nan
    count = export_point_cloud(tmp_path / "cloud.ply", points, colors, normals)
    vertices = read_point_cloud(tmp_path / "cloud.ply")

    assert count == 63 and len(vertices) == 63
    assert vertices['x'][0] == 0.0 and vertices['z'][0] == 0.0
    assert vertices['z'][1] == pytest.approx(2.0)
    np.testing.assert_allclose(vertices['nz'], -1.0)


def test_read_point_cloud_rejects_other_files(tmp_path):
    path = tmp_path / "not.ply"
    path.write_bytes(b"solid mesh\n")
    assert read_point_cloud(path) is None
    assert read_point_cloud(tmp_path / "missing.ply") is None


# ----------------------------------------------------------------------
# Controller
# ----------------------------------------------------------------------

def test_controller_levels(small_config):
    controller = HierarchicalController(small_config)
    assert controller.num_levels == 1
    small_config.set_hierarchy()
    assert controller.num_levels == small_config.num_downscale_levels + 1


def test_level_inputs_downscale(small_config):
    images, cameras, _ = stereo_scene()
    inputs = ProblemInputs(problem=Problem(0, [1], 48), images=images, cameras=cameras, view_ids=[0, 1])
    level_images, level_cameras, depths = HierarchicalController(small_config).level_inputs(inputs, 1)

    assert level_images[0].shape == (24, 24)
    assert level_cameras[1].fx == pytest.approx(cameras[1].fx / 2)
    assert depths is None


def test_lift_carries_auxiliary_cost(small_config):
    coarse = make_result(size=8)
    guidance = np.full((16, 16), 100.0, dtype=np.float32)
    init = HierarchicalController(small_config).lift(coarse, guidance)

    assert init.shape == (16, 16)
    np.testing.assert_allclose(init.depth, 2.0, rtol=1e-6)
    np.testing.assert_allclose(init.auxiliary_cost, 0.3)


def test_lift_non_integer_ratio_keeps_cost_aligned(small_config):
    """Auxiliary cost follows the same coarse row as depth on an 8 -> 10 lift"""
    coarse = make_result(size=8)
    coarse.depth[:] = (1.8 + 0.05 * np.arange(8, dtype=np.float32))[:, None]
    coarse.cost[4:] = 2.0
    guidance = np.full((10, 10), 100.0, dtype=np.float32)

    init = HierarchicalController(small_config).lift(coarse, guidance)

    assert init.shape == (10, 10)
    assert init.auxiliary_cost.shape == (10, 10)
    source_rows = np.rint((init.depth[:, 0] - 1.8) / 0.05).astype(int)
    assert source_rows.tolist() == [0, 0, 1, 2, 3, 4, 4, 5, 6, 7]
    np.testing.assert_array_equal(init.auxiliary_cost[:, 0] == 2.0, source_rows >= 4)


def test_fit_init_keeps_missing_cost(small_config):
    init = HypothesisInit.from_result(make_result(size=8))
    controller = HierarchicalController(small_config)
    guidance = np.zeros((8, 8), dtype=np.float32)
    assert controller.fit_init(init, guidance) is init

    lifted = controller.fit_init(HypothesisInit(init.depth, init.normal), np.zeros((16, 16), np.float32))
    assert lifted.shape == (16, 16)
    assert lifted.auxiliary_cost is None


def test_hierarchy_returns_finest_level(small_config):
    small_config.set_hierarchy()
    small_config.num_downscale_levels = 1
    images, cameras, _ = stereo_scene()
    inputs = ProblemInputs(problem=Problem(0, [1], 48), images=images, cameras=cameras, view_ids=[0, 1])

    result = HierarchicalController(small_config).run(inputs)

    assert result.depth.shape == (48, 48)
    assert np.isfinite(result.depth).all()


def test_planar_prior_run(small_config):
    small_config.set_planar_prior()
    images, cameras, _ = stereo_scene()
    inputs = ProblemInputs(problem=Problem(0, [1], 48), images=images, cameras=cameras, view_ids=[0, 1])

    result = HierarchicalController(small_config).run(inputs)

    assert result.depth.shape == (48, 48)
    assert (result.cost <= small_config.max_cost).all()


@pytest.mark.parametrize("coarse_size", [24, 40])
def test_previous_prior_is_lifted_when_level_has_none(small_config, coarse_size):
    small_config.set_planar_prior()
    small_config.num_iterations = 1
    images, cameras, _ = stereo_scene()
    controller = HierarchicalController(small_config)
    controller.prior_builder.build = lambda result, camera, image=None: PriorField.empty(48, 48)

    coarse_camera = cameras[0].rescaled(coarse_size, coarse_size)
    planes = np.zeros((coarse_size, coarse_size, 4), dtype=np.float32)
    planes[..., 2] = -1.0
    planes[..., 3] = 2.0
    coarse_prior = PriorField(planes=planes, mask=np.ones((coarse_size, coarse_size), dtype=np.int32),
                              num_planes=1)

    with DeviceResources(small_config) as resources:
        result = controller.solve(resources, images, cameras, coarse_prior=(coarse_prior, coarse_camera))

    assert result.depth.shape == (48, 48)
    prior, camera = controller.last_prior
    assert camera is cameras[0]
    assert prior.mask.shape == (48, 48) and (prior.mask == 1).all()
    np.testing.assert_allclose(prior.prior_depth(camera), 2.0, atol=1e-4)


def test_no_prior_is_kept_without_support(small_config):
    small_config.set_planar_prior()
    small_config.num_iterations = 1
    images, cameras, _ = stereo_scene()
    controller = HierarchicalController(small_config)
    controller.prior_builder.build = lambda result, camera, image=None: PriorField.empty(48, 48)

    with DeviceResources(small_config) as resources:
        controller.solve(resources, images, cameras)

    assert controller.last_prior is None


# ----------------------------------------------------------------------
# Dense folder driver
# ----------------------------------------------------------------------

def test_pipeline_writes_results(tmp_path, small_config):
    write_dense_folder(tmp_path)
    small_config.export_ply = True
    pipeline = PatchMatchPipeline(tmp_path, small_config)

    stats = pipeline.run()

    assert stats['processed'] == 2 and stats['failed'] == 0
    folder = pipeline.output_folder(0)
    depth = read_depth_dmb(folder / "depths.dmb")
    assert depth.shape == (48, 48)
    assert read_normal_dmb(folder / "normals.dmb").shape == (48, 48, 3)
    assert (folder / "confidence.dmb").exists()
    assert read_point_cloud(folder / "points.ply") is not None


def test_pipeline_geometric_pass(tmp_path, small_config):
    write_dense_folder(tmp_path)
    PatchMatchPipeline(tmp_path, small_config).run()

    small_config.set_geom_consistency()
    small_config.geom_iterations = 1
    pipeline = PatchMatchPipeline(tmp_path, small_config)
    stats = pipeline.run()

    assert stats['processed'] == 2
    assert read_depth_dmb(pipeline.output_folder(0) / "depths_geom.dmb").shape == (48, 48)


def test_geometric_pass_without_stored_results(tmp_path, small_config):
    write_dense_folder(tmp_path)
    small_config.set_geom_consistency()
    stats = PatchMatchPipeline(tmp_path, small_config).run()
    assert stats['processed'] == 0 and stats['failed'] == 2


def test_pipeline_missing_inputs(tmp_path, small_config):
    assert PatchMatchPipeline(tmp_path / "missing", small_config).run()['processed'] == 0

    write_dense_folder(tmp_path)
    (tmp_path / "images" / "00000001.jpg").unlink()
    stats = PatchMatchPipeline(tmp_path, small_config).run()
    # problem 0 is left without sources, problem 1 without its reference
    assert stats['processed'] == 0 and stats['failed'] == 2


def test_resume_warm_starts_from_stored_results(tmp_path, small_config):
    write_dense_folder(tmp_path)
    PatchMatchPipeline(tmp_path, small_config).run()

    small_config.resume = True
    pipeline = PatchMatchPipeline(tmp_path, small_config)
    stored = read_result(pipeline.output_folder(0), with_cost=True)
    seen = []
    run = pipeline.controller.run

    def recording_run(inputs, init=None, stage=None):
        seen.append(init)
        return run(inputs, init)

    pipeline.controller.run = recording_run
    stats = pipeline.run()

    assert stats['processed'] == 2
    assert all(init is not None for init in seen)
    np.testing.assert_array_equal(seen[0].depth, stored.depth)
    np.testing.assert_array_equal(seen[0].auxiliary_cost, stored.auxiliary_cost)


def test_resume_without_stored_results_starts_fresh(tmp_path, small_config):
    write_dense_folder(tmp_path)
    small_config.resume = True
    stats = PatchMatchPipeline(tmp_path, small_config).run()
    assert stats['processed'] == 2
