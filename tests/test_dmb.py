"""
Tests for the dmb map container
"""

import numpy as np

from HierarchicalMVS.io.dmb import (
    read_depth_dmb,
    read_dmb,
    read_normal_dmb,
    write_depth_dmb,
    write_dmb,
    write_normal_dmb,
)


def test_depth_round_trip(tmp_path):
    """Writing then reading a depth map reproduces it exactly"""
    rng = np.random.default_rng(0)
    depth = rng.uniform(0.5, 10.0, size=(7, 11)).astype(np.float32)
    path = tmp_path / "depths.dmb"

    write_depth_dmb(path, depth)
    loaded = read_depth_dmb(path)

    assert loaded.shape == (7, 11)
    assert loaded.dtype == np.float32
    np.testing.assert_array_equal(loaded, depth)


def test_normal_round_trip(tmp_path):
    rng = np.random.default_rng(1)
    normal = rng.normal(size=(5, 4, 3)).astype(np.float32)
    path = tmp_path / "normals.dmb"

    write_normal_dmb(path, normal)
    np.testing.assert_array_equal(read_normal_dmb(path), normal)


def test_header_layout(tmp_path):
    """Header is four little-endian int32 values: type, height, width, channels"""
    path = tmp_path / "map.dmb"
    write_dmb(path, np.zeros((3, 5, 3), dtype=np.float32))

    header = np.fromfile(path, dtype='<i4', count=4)
    assert header.tolist() == [1, 3, 5, 3]
    assert path.stat().st_size == 16 + 3 * 5 * 3 * 4


def test_wrong_type_tag_returns_none(tmp_path):
    path = tmp_path / "bad.dmb"
    with open(path, 'wb') as f:
        np.array([2, 2, 2, 1], dtype='<i4').tofile(f)
        np.zeros(4, dtype='<f4').tofile(f)

    assert read_dmb(path) is None


def test_missing_and_truncated_files_return_none(tmp_path):
    assert read_depth_dmb(tmp_path / "missing.dmb") is None

    path = tmp_path / "short.dmb"
    with open(path, 'wb') as f:
        np.array([1, 4, 4, 1], dtype='<i4').tofile(f)
        np.zeros(3, dtype='<f4').tofile(f)
    assert read_depth_dmb(path) is None


def test_channel_mismatch_returns_none(tmp_path):
    path = tmp_path / "normals.dmb"
    write_normal_dmb(path, np.zeros((2, 2, 3), dtype=np.float32))
    assert read_depth_dmb(path) is None
