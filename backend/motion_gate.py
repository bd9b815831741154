from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Optional

import numpy as np

from geometry import get_landmark, landmark_field
from scoring_config import DEFAULT_MOTION_INDICES, MotionGateConfig


class MotionTier(str, Enum):
    NONE = "none"
    FROZEN_MISMATCH = "frozen_mismatch"
    FROZEN_MATCH = "frozen_match"
    LAGGING = "lagging"


def _xyz(landmark) -> np.ndarray:
    return np.array([
        landmark_field(landmark, "x") or 0.0,
        landmark_field(landmark, "y") or 0.0,
        landmark_field(landmark, "z") or 0.0,
    ])


def motion_energy(
    previous: Optional[Sequence],
    current: Optional[Sequence],
    indices: Iterable[int] = DEFAULT_MOTION_INDICES,
) -> float:
    """Mean per-landmark displacement between two poses over the given indices.

    Landmarks missing from either pose are skipped; no common landmark gives 0.
    """
    if not previous or not current:
        return 0.0
    displacements = []
    for idx in indices:
        a = get_landmark(previous, idx)
        b = get_landmark(current, idx)
        if a is None or b is None:
            continue
        displacements.append(float(np.linalg.norm(_xyz(b) - _xyz(a))))
    if not displacements:
        return 0.0
    return float(np.mean(displacements))


def classify_motion(
    similarity: float,
    reference_motion: float,
    user_motion: float,
    config: Optional[MotionGateConfig] = None,
) -> MotionTier:
    config = config or MotionGateConfig()
    if reference_motion <= config.reference_motion_epsilon:
        # the reference itself holds still; a still user is following it
        return MotionTier.NONE
    if user_motion < config.freeze_threshold:
        if similarity < config.good_match_cutoff:
            return MotionTier.FROZEN_MISMATCH
        return MotionTier.FROZEN_MATCH
    if user_motion < reference_motion * config.lag_ratio:
        return MotionTier.LAGGING
    return MotionTier.NONE


def penalty_factor(tier: MotionTier, config: Optional[MotionGateConfig] = None) -> float:
    config = config or MotionGateConfig()
    return {
        MotionTier.FROZEN_MISMATCH: config.frozen_mismatch_factor,
        MotionTier.FROZEN_MATCH: config.frozen_match_factor,
        MotionTier.LAGGING: config.lag_factor,
    }.get(tier, 1.0)


def apply_motion_gate(
    similarity: float,
    reference_motion: float,
    user_motion: float,
    config: Optional[MotionGateConfig] = None,
) -> tuple[float, MotionTier]:
    """Scale the aggregate similarity down when the user stays still while the reference moves."""
    config = config or MotionGateConfig()
    tier = classify_motion(similarity, reference_motion, user_motion, config)
    return similarity * penalty_factor(tier, config), tier
