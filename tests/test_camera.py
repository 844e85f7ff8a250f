"""
Tests for the camera and problem model and the dense folder readers
"""

import numpy as np
import pytest

from HierarchicalMVS.core.camera import (
    PACKED_CAMERA_SIZE,
    Camera,
    angle_between,
    backproject_to_ref,
    backproject_to_world,
    depth_from_plane,
    distance_to_origin,
    normal_to_ref,
    normal_to_world,
    project_on_camera,
)
from HierarchicalMVS.core.problem import level_image_size, read_pair_file
from HierarchicalMVS.io.cameras import fit_to_size, read_camera

from conftest import make_camera


def rotation_z(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def test_rescale_scales_intrinsics_per_axis():
    """Resampling by (sx, sy) scales fx, cx by sx and fy, cy by sy"""
    camera = Camera(R=np.eye(3), t=np.zeros(3),
                    K=np.array([[800.0, 0, 320.0], [0, 780.0, 240.0], [0, 0, 1]]),
                    width=640, height=480)
    scaled = camera.rescaled(320, 120)

    assert (scaled.width, scaled.height) == (320, 120)
    assert scaled.fx == pytest.approx(400.0)
    assert scaled.cx == pytest.approx(160.0)
    assert scaled.fy == pytest.approx(195.0)
    assert scaled.cy == pytest.approx(60.0)
    # input camera untouched
    assert camera.fx == pytest.approx(800.0)


def test_rescale_same_size_is_identity():
    camera = make_camera(64, 48)
    assert camera.rescaled(64, 48) is camera


def test_pack_layout():
    camera = make_camera(64, 48, depth_min=1.0, depth_max=5.0)
    packed = camera.pack()
    assert packed.shape == (PACKED_CAMERA_SIZE,)
    assert packed.dtype == np.float32
    np.testing.assert_allclose(packed[21:], [64, 48, 1.0, 5.0])


def test_world_projection_round_trip():
    camera = Camera(R=rotation_z(0.3), t=np.array([0.1, -0.2, 0.5]),
                    K=np.array([[50.0, 0, 32.0], [0, 50.0, 24.0], [0, 0, 1]]),
                    width=64, height=48)
    point = backproject_to_world(10.0, 20.0, 3.0, camera)
    pixel, depth = project_on_camera(point, camera)

    np.testing.assert_allclose(pixel, [10.0, 20.0], atol=1e-9)
    assert depth == pytest.approx(3.0)


def test_depth_from_plane_matches_backprojection():
    """A plane through a back-projected pixel gives that pixel's depth back"""
    camera = make_camera(64, 48, focal=50.0)
    normal = np.array([0.2, -0.1, -1.0])
    normal /= np.linalg.norm(normal)
    w = distance_to_origin(13, 31, 2.5, normal, camera)
    plane = np.append(normal, w)

    assert depth_from_plane(plane, 13, 31, camera) == pytest.approx(2.5)
    X = backproject_to_ref(40, 5, depth_from_plane(plane, 40, 5, camera), camera)
    assert np.dot(normal, X) + w == pytest.approx(0.0, abs=1e-9)


def test_normal_frame_transforms_are_inverse():
    camera = Camera(R=rotation_z(0.7), t=np.zeros(3), K=np.eye(3))
    normal = np.array([0.0, 0.6, -0.8])
    np.testing.assert_allclose(normal_to_ref(normal_to_world(normal, camera), camera), normal, atol=1e-12)
    assert angle_between(normal, normal) == pytest.approx(0.0)
    assert angle_between(normal, -normal) == pytest.approx(np.pi)


def test_fit_to_size_downscales_longest_side():
    image = np.zeros((100, 200), dtype=np.float32)
    camera = make_camera(200, 100)
    scaled, scaled_camera = fit_to_size(image, camera, 50)

    assert scaled.shape == (25, 50)
    assert (scaled_camera.width, scaled_camera.height) == (50, 25)
    assert scaled_camera.fx == pytest.approx(camera.fx * 0.25)

    same, same_camera = fit_to_size(image, camera, 400)
    assert same is image and same_camera is camera


def test_level_image_size():
    assert level_image_size(3200, 0) == 3200
    assert level_image_size(3200, 2) == 800
    assert level_image_size(3, 5) == 1


def test_read_camera(tmp_path):
    path = tmp_path / "00000000_cam.txt"
    path.write_text(
        "extrinsic\n"
        "1 0 0 0.5\n0 1 0 -1\n0 0 1 2\n0 0 0 1\n\n"
        "intrinsic\n"
        "361.54 0 82.9\n0 360.39 66.38\n0 0 1\n\n"
        "425 2.5 192 905\n"
    )
    camera = read_camera(path)

    np.testing.assert_allclose(camera.t, [0.5, -1.0, 2.0])
    assert camera.fx == pytest.approx(361.54)
    assert camera.cy == pytest.approx(66.38)
    assert camera.depth_min == pytest.approx(425.0)
    assert camera.depth_max == pytest.approx(905.0)


def test_read_camera_bad_input_returns_none(tmp_path):
    assert read_camera(tmp_path / "missing.txt") is None
    path = tmp_path / "broken.txt"
    path.write_text("extrinsic\n1 0 0\n")
    assert read_camera(path) is None


def test_read_pair_file(tmp_path):
    path = tmp_path / "pair.txt"
    path.write_text(
        "3\n"
        "0\n2 1 10.5 2 3.2\n"
        "1\n2 0 10.5 2 8.0\n"
        "2\n1 1 8.0\n"
    )
    problems = read_pair_file(path, max_image_size=1600)

    assert [p.ref_image_id for p in problems] == [0, 1, 2]
    assert problems[0].src_image_ids == [1, 2]
    assert problems[0].num_images == 3
    assert problems[2].src_image_ids == [1]
    assert problems[1].cur_image_size == 1600

    limited = read_pair_file(path, max_source_views=1)
    assert limited[0].src_image_ids == [1]


def test_read_pair_file_bad_input_returns_empty(tmp_path):
    assert read_pair_file(tmp_path / "missing.txt") == []
    path = tmp_path / "pair.txt"
    path.write_text("2\n0\n3 1 0.5\n")
    assert read_pair_file(path) == []
