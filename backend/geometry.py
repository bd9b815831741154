import math
from collections.abc import Mapping, Sequence
from enum import IntEnum
from typing import Any, Optional

import numpy as np


class PoseLandmark(IntEnum):
    """MediaPipe Pose landmark indices."""

    NOSE = 0
    LEFT_EYE_INNER = 1
    LEFT_EYE = 2
    LEFT_EYE_OUTER = 3
    RIGHT_EYE_INNER = 4
    RIGHT_EYE = 5
    RIGHT_EYE_OUTER = 6
    LEFT_EAR = 7
    RIGHT_EAR = 8
    MOUTH_LEFT = 9
    MOUTH_RIGHT = 10
    LEFT_SHOULDER = 11
    RIGHT_SHOULDER = 12
    LEFT_ELBOW = 13
    RIGHT_ELBOW = 14
    LEFT_WRIST = 15
    RIGHT_WRIST = 16
    LEFT_PINKY = 17
    RIGHT_PINKY = 18
    LEFT_INDEX = 19
    RIGHT_INDEX = 20
    LEFT_THUMB = 21
    RIGHT_THUMB = 22
    LEFT_HIP = 23
    RIGHT_HIP = 24
    LEFT_KNEE = 25
    RIGHT_KNEE = 26
    LEFT_ANKLE = 27
    RIGHT_ANKLE = 28
    LEFT_HEEL = 29
    RIGHT_HEEL = 30
    LEFT_FOOT_INDEX = 31
    RIGHT_FOOT_INDEX = 32

    @classmethod
    def parse(cls, key: Any) -> "PoseLandmark":
        """Accept an index, a numeric string or a landmark name."""
        if isinstance(key, cls):
            return key
        if isinstance(key, str):
            key = key.strip()
            if key.isdigit():
                return cls(int(key))
            try:
                return cls[key.upper()]
            except KeyError:
                raise ValueError(f"unknown landmark name: {key!r}") from None
        try:
            return cls(int(key))
        except (TypeError, ValueError):
            raise ValueError(f"not a landmark index: {key!r}") from None


NUM_LANDMARKS = len(PoseLandmark)
L = PoseLandmark

# (a, vertex, c) triplets; the angle is measured at the vertex
ANGLE_JOINTS: dict[str, tuple[PoseLandmark, PoseLandmark, PoseLandmark]] = {
    "left_knee": (L.LEFT_HIP, L.LEFT_KNEE, L.LEFT_ANKLE),
    "right_knee": (L.RIGHT_HIP, L.RIGHT_KNEE, L.RIGHT_ANKLE),
    "left_hip": (L.LEFT_SHOULDER, L.LEFT_HIP, L.LEFT_KNEE),
    "right_hip": (L.RIGHT_SHOULDER, L.RIGHT_HIP, L.RIGHT_KNEE),
    "left_elbow": (L.LEFT_SHOULDER, L.LEFT_ELBOW, L.LEFT_WRIST),
    "right_elbow": (L.RIGHT_SHOULDER, L.RIGHT_ELBOW, L.RIGHT_WRIST),
    "left_shoulder": (L.LEFT_ELBOW, L.LEFT_SHOULDER, L.LEFT_HIP),
    "right_shoulder": (L.RIGHT_ELBOW, L.RIGHT_SHOULDER, L.RIGHT_HIP),
}

# Landmark slot that receives each joint's angle similarity
ANGLE_JOINT_INDEX: dict[str, PoseLandmark] = {
    name: triplet[1] for name, triplet in ANGLE_JOINTS.items()
}

SCALE_FLOOR = 1e-6


def landmark_field(landmark: Any, name: str) -> Optional[float]:
    """Read x/y/z/visibility from a pydantic model, MediaPipe landmark or dict."""
    if landmark is None:
        return None
    if isinstance(landmark, Mapping):
        value = landmark.get(name)
    else:
        value = getattr(landmark, name, None)
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def get_landmark(pose: Optional[Sequence], index: int) -> Any:
    """Landmark at index, or None when the pose is too short or the entry is missing."""
    if not pose or index < 0 or index >= len(pose):
        return None
    landmark = pose[index]
    if landmark is None:
        return None
    if landmark_field(landmark, "x") is None or landmark_field(landmark, "y") is None:
        return None
    return landmark


def visibility(landmark: Any) -> float:
    v = landmark_field(landmark, "visibility")
    return 1.0 if v is None else v


def to_vector_list(pose: Optional[Sequence]) -> np.ndarray:
    """Convert a pose to an (N, 3) array; missing fields default to 0."""
    if not pose:
        return np.zeros((0, 3), dtype=np.float64)
    rows = [
        [landmark_field(lm, axis) or 0.0 for axis in ("x", "y", "z")]
        for lm in pose
    ]
    return np.asarray(rows, dtype=np.float64)


def _point(points: np.ndarray, index: int) -> np.ndarray:
    if index < len(points):
        return points[index]
    return np.zeros(3, dtype=np.float64)


def normalize(points: np.ndarray) -> np.ndarray:
    """Center on the hip midpoint and scale by the shoulder-hip distance."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if len(points) == 0:
        return points.copy()

    hip_mid = (_point(points, L.LEFT_HIP) + _point(points, L.RIGHT_HIP)) / 2
    shoulder_mid = (
        _point(points, L.LEFT_SHOULDER) + _point(points, L.RIGHT_SHOULDER)
    ) / 2
    scale = max(float(np.linalg.norm(shoulder_mid - hip_mid)), SCALE_FLOOR)
    return (points - hip_mid) / scale


def angle_at_vertex(a, vertex, c) -> Optional[float]:
    """Interior angle at vertex in degrees, measured in the image (x, y) plane."""
    if a is None or vertex is None or c is None:
        return None
    ba = np.array([a[0] - vertex[0], a[1] - vertex[1]], dtype=np.float64)
    bc = np.array([c[0] - vertex[0], c[1] - vertex[1]], dtype=np.float64)
    n1 = float(np.linalg.norm(ba))
    n2 = float(np.linalg.norm(bc))
    if n1 == 0 or n2 == 0:
        return None
    cos_angle = float(np.clip(np.dot(ba, bc) / (n1 * n2), -1.0, 1.0))
    return math.degrees(math.acos(cos_angle))


def _xy(pose: Optional[Sequence], index: int) -> Optional[tuple[float, float]]:
    landmark = get_landmark(pose, index)
    if landmark is None:
        return None
    return landmark_field(landmark, "x"), landmark_field(landmark, "y")


def joint_angles(pose: Optional[Sequence]) -> dict[str, Optional[float]]:
    """Angle (degrees or None) for each named joint in ANGLE_JOINTS."""
    return {
        name: angle_at_vertex(_xy(pose, a), _xy(pose, b), _xy(pose, c))
        for name, (a, b, c) in ANGLE_JOINTS.items()
    }
