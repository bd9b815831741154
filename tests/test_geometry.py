import numpy as np
import pytest

from geometry import (
    PoseLandmark,
    angle_at_vertex,
    get_landmark,
    joint_angles,
    landmark_field,
    normalize,
    to_vector_list,
    visibility,
)
from models import Landmark


def test_parse_landmark_keys():
    assert PoseLandmark.parse(25) is PoseLandmark.LEFT_KNEE
    assert PoseLandmark.parse("25") is PoseLandmark.LEFT_KNEE
    assert PoseLandmark.parse("left_knee") is PoseLandmark.LEFT_KNEE
    assert PoseLandmark.parse(" RIGHT_WRIST ") is PoseLandmark.RIGHT_WRIST
    with pytest.raises(ValueError):
        PoseLandmark.parse("tail")
    with pytest.raises(ValueError):
        PoseLandmark.parse(40)


def test_landmark_field_sources():
    assert landmark_field(Landmark(x=0.1, y=0.2), "x") == pytest.approx(0.1)
    assert landmark_field({"x": 0.3, "y": 0.4}, "y") == pytest.approx(0.4)
    assert landmark_field({"x": float("nan"), "y": 0.4}, "x") is None
    assert landmark_field(Landmark(x=0.1, y=0.2), "visibility") is None
    assert landmark_field(None, "x") is None


def test_get_landmark_handles_missing_entries(pose_a):
    assert get_landmark(pose_a, 0) is pose_a[0]
    assert get_landmark(pose_a, 33) is None
    assert get_landmark(pose_a, -1) is None
    assert get_landmark([None], 0) is None
    assert get_landmark([{"x": 0.5}], 0) is None
    assert get_landmark(None, 0) is None


def test_visibility_defaults_to_visible():
    assert visibility(Landmark(x=0, y=0)) == 1.0
    assert visibility(Landmark(x=0, y=0, visibility=0.3)) == pytest.approx(0.3)


def test_to_vector_list_shape(pose_a):
    points = to_vector_list(pose_a)
    assert points.shape == (33, 3)
    assert points[PoseLandmark.LEFT_SHOULDER][0] == pytest.approx(0.60)
    assert to_vector_list([]).shape == (0, 3)
    assert to_vector_list(None).shape == (0, 3)


def test_normalize_centers_on_hips_and_scales_by_torso(pose_a):
    normed = normalize(to_vector_list(pose_a))
    hip_mid = (normed[PoseLandmark.LEFT_HIP] + normed[PoseLandmark.RIGHT_HIP]) / 2
    shoulder_mid = (normed[PoseLandmark.LEFT_SHOULDER] + normed[PoseLandmark.RIGHT_SHOULDER]) / 2
    np.testing.assert_allclose(hip_mid, 0.0, atol=1e-12)
    assert np.linalg.norm(shoulder_mid - hip_mid) == pytest.approx(1.0)


def test_normalize_is_translation_and_scale_invariant(pose_a):
    points = to_vector_list(pose_a)
    hip_mid = (points[PoseLandmark.LEFT_HIP] + points[PoseLandmark.RIGHT_HIP]) / 2
    moved = (points - hip_mid) * 2.5 + np.array([0.1, -0.2, 0.0])
    np.testing.assert_allclose(normalize(moved), normalize(points), atol=1e-9)


def test_normalize_degenerate_pose_stays_finite():
    points = np.full((33, 3), 0.5)
    out = normalize(points)
    assert np.all(np.isfinite(out))
    np.testing.assert_allclose(out, 0.0)


def test_normalize_short_pose_treats_missing_anchors_as_origin():
    out = normalize(np.array([[1.0, 2.0, 0.0]]))
    assert out.shape == (1, 3)
    assert np.all(np.isfinite(out))
    assert len(normalize(np.zeros((0, 3)))) == 0


def test_angle_at_vertex():
    assert angle_at_vertex((1, 0), (0, 0), (0, 1)) == pytest.approx(90.0)
    assert angle_at_vertex((1, 0), (0, 0), (-1, 0)) == pytest.approx(180.0)
    assert angle_at_vertex((1, 0), (0, 0), (2, 0)) == pytest.approx(0.0)
    assert angle_at_vertex((0, 0), (0, 0), (1, 1)) is None
    assert angle_at_vertex(None, (0, 0), (1, 1)) is None


def test_joint_angles(pose_a):
    angles = joint_angles(pose_a)
    assert set(angles) == {
        "left_knee", "right_knee", "left_hip", "right_hip",
        "left_elbow", "right_elbow", "left_shoulder", "right_shoulder",
    }
    # straight legs
    assert angles["left_knee"] == pytest.approx(180.0)
    assert angles["right_knee"] == pytest.approx(180.0)
    assert all(a is not None for a in angles.values())


def test_joint_angles_missing_landmark(pose_a):
    pose_a[PoseLandmark.LEFT_WRIST] = None
    angles = joint_angles(pose_a)
    assert angles["left_elbow"] is None
    assert angles["right_elbow"] is not None
    assert all(a is None for a in joint_angles([]).values())


@pytest.mark.parametrize("key", [None, [11], {}, 2.5j])
def test_parse_rejects_non_index_values(key):
    with pytest.raises(ValueError):
        PoseLandmark.parse(key)
