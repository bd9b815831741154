import pytest

from models import Landmark

# Upright standing figure, arms down, in image coordinates (y grows downward)
POSE_A_POINTS = [
    (0.50, 0.10),  # nose
    (0.51, 0.09), (0.52, 0.09), (0.53, 0.09),  # left eye
    (0.49, 0.09), (0.48, 0.09), (0.47, 0.09),  # right eye
    (0.55, 0.10), (0.45, 0.10),  # ears
    (0.52, 0.12), (0.48, 0.12),  # mouth
    (0.60, 0.25), (0.40, 0.25),  # shoulders
    (0.62, 0.42), (0.38, 0.42),  # elbows
    (0.63, 0.60), (0.37, 0.60),  # wrists
    (0.64, 0.64), (0.36, 0.64),  # pinkies
    (0.63, 0.65), (0.37, 0.65),  # index fingers
    (0.62, 0.63), (0.38, 0.63),  # thumbs
    (0.56, 0.55), (0.44, 0.55),  # hips
    (0.56, 0.72), (0.44, 0.72),  # knees
    (0.56, 0.90), (0.44, 0.90),  # ankles
    (0.56, 0.93), (0.44, 0.93),  # heels
    (0.58, 0.95), (0.42, 0.95),  # foot index
]


def make_pose(overrides=None, visibility=1.0):
    """Pose A with the landmarks in ``overrides`` (index -> (x, y)) moved."""
    overrides = overrides or {}
    return [
        Landmark(x=x, y=y, z=0.0, visibility=visibility)
        for x, y in (overrides.get(i, p) for i, p in enumerate(POSE_A_POINTS))
    ]


def to_json(pose):
    return [None if lm is None else lm.model_dump() for lm in pose]


@pytest.fixture
def pose_factory():
    return make_pose


@pytest.fixture
def pose_a():
    return make_pose()


@pytest.fixture
def pose_b():
    # identical to A except both wrists raised above the shoulders
    return make_pose({15: (0.63, 0.20), 16: (0.37, 0.20)})


@pytest.fixture
def pose_json():
    return to_json
