"""
Tests for joint bilateral upsampling
"""

import numpy as np
import pytest

from HierarchicalMVS.config import PatchMatchConfig
from HierarchicalMVS.upsampling.jbu import JointBilateralUpsampler, nearest_upsample, upsample_scale


@pytest.fixture
def upsampler():
    return JointBilateralUpsampler(PatchMatchConfig(device="cpu"))


def test_upsample_scale():
    assert upsample_scale((64, 48), (32, 24)) == 2
    assert upsample_scale((64, 48), (16, 24)) == 4
    assert upsample_scale((10, 10), (10, 10)) == 1


def test_equal_resolution_is_bit_identical(upsampler):
    rng = np.random.default_rng(0)
    depth = rng.uniform(1, 5, size=(16, 16)).astype(np.float32)
    normal = rng.normal(size=(16, 16, 3)).astype(np.float32)
    guidance = rng.uniform(0, 255, size=(16, 16)).astype(np.float32)

    out_depth, out_normal = upsampler.upsample(guidance, depth, normal)

    assert out_depth.tobytes() == depth.tobytes()
    assert out_normal.tobytes() == normal.tobytes()


def test_full_coverage(upsampler):
    """Every fine pixel gets a finite value, even with hard guidance edges"""
    rng = np.random.default_rng(1)
    depth = rng.uniform(1, 5, size=(10, 12)).astype(np.float32)
    guidance = rng.choice([0.0, 255.0], size=(40, 48)).astype(np.float32)

    out_depth, out_normal = upsampler.upsample(guidance, depth)

    assert out_depth.shape == (40, 48)
    assert out_normal is None
    assert np.isfinite(out_depth).all()
    assert out_depth.min() >= depth.min() - 1e-4
    assert out_depth.max() <= depth.max() + 1e-4


def test_constant_field_is_preserved(upsampler):
    depth = np.full((8, 8), 3.0, dtype=np.float32)
    normal = np.zeros((8, 8, 3), dtype=np.float32)
    normal[..., 2] = -1.0
    guidance = np.random.default_rng(2).uniform(0, 255, size=(16, 16)).astype(np.float32)

    out_depth, out_normal = upsampler.upsample(guidance, depth, normal)

    np.testing.assert_allclose(out_depth, 3.0, rtol=1e-6)
    np.testing.assert_allclose(out_normal[..., 2], -1.0, atol=1e-6)


def test_normals_are_unit_length(upsampler):
    rng = np.random.default_rng(3)
    normal = rng.normal(size=(6, 6, 3)).astype(np.float32)
    normal /= np.linalg.norm(normal, axis=-1, keepdims=True)
    depth = np.ones((6, 6), dtype=np.float32)
    guidance = rng.uniform(0, 255, size=(12, 12)).astype(np.float32)

    _, out_normal = upsampler.upsample(guidance, depth, normal)
    np.testing.assert_allclose(np.linalg.norm(out_normal, axis=-1), 1.0, atol=1e-5)


def test_vanishing_weights_fall_back_to_nearest():
    """With a negligible range sigma only exact guidance matches carry weight"""
    config = PatchMatchConfig(device="cpu", jbu_sigma_range=1e-3)
    depth = np.arange(16, dtype=np.float32).reshape(4, 4) + 1.0
    guidance = np.arange(64, dtype=np.float32).reshape(8, 8) * 10.0

    out_depth, _ = JointBilateralUpsampler(config).upsample(guidance, depth)

    np.testing.assert_array_equal(out_depth, nearest_upsample(depth, 8, 8))


def test_nearest_upsample_clamps():
    values = np.arange(6).reshape(2, 3)
    lifted = nearest_upsample(values, 5, 7)
    assert lifted.shape == (5, 7)
    assert lifted[4, 6] == values[1, 2]
    assert lifted[0, 0] == values[0, 0]


def test_nearest_upsample_non_integer_ratio():
    values = np.arange(8)[:, None] * np.ones((1, 8), dtype=np.int64)
    lifted = nearest_upsample(values, 10, 10)
    assert lifted[:, 0].tolist() == [0, 0, 1, 2, 3, 4, 4, 5, 6, 7]
    assert (lifted == lifted[:, :1]).all()


def test_ratio_below_two_is_nearest_neighbour(upsampler):
    """An 8x8 -> 10x10 lift is a plain nearest resample of depth and normals"""
    rng = np.random.default_rng(4)
    depth = rng.uniform(1, 5, size=(8, 8)).astype(np.float32)
    normal = rng.normal(size=(8, 8, 3)).astype(np.float32)
    guidance = rng.uniform(0, 255, size=(10, 10)).astype(np.float32)

    out_depth, out_normal = upsampler.upsample(guidance, depth, normal)

    np.testing.assert_array_equal(out_depth, nearest_upsample(depth, 10, 10))
    np.testing.assert_array_equal(out_normal, nearest_upsample(normal, 10, 10))


def test_non_integer_ratio_is_blended_to_fine_shape(upsampler):
    depth = np.full((6, 8), 2.0, dtype=np.float32)
    depth[3:] = 3.0
    guidance = np.zeros((15, 20), dtype=np.float32)
    guidance[8:] = 255.0

    out_depth, _ = upsampler.upsample(guidance, depth)

    assert out_depth.shape == (15, 20)
    assert np.isfinite(out_depth).all()
    # rows far from the step keep their side's depth
    np.testing.assert_allclose(out_depth[0], 2.0, atol=1e-4)
    np.testing.assert_allclose(out_depth[-1], 3.0, atol=1e-4)
