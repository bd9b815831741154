from collections.abc import Sequence
from typing import Optional

import numpy as np

from geometry import (
    ANGLE_JOINT_INDEX,
    PoseLandmark,
    get_landmark,
    joint_angles,
    normalize,
    to_vector_list,
    visibility,
)
from scoring_config import AggregateWeights, SimilarityOptions


def angle_similarity(a: Optional[float], b: Optional[float], tolerance_deg: float) -> float:
    """Linear falloff of the angle difference; an undetectable angle scores 0."""
    if a is None or b is None:
        return 0.0
    return max(0.0, 1.0 - abs(a - b) / tolerance_deg)


def _is_comparable(live: Optional[Sequence], target: Optional[Sequence]) -> bool:
    return bool(live) and bool(target) and len(live) == len(target)


def per_joint_similarity(
    live: Optional[Sequence],
    target: Optional[Sequence],
    options: Optional[SimilarityOptions] = None,
) -> list[float]:
    """One similarity in [0, 1] per landmark index of the live pose.

    The eight angle joints (knees, hips, elbows, shoulders) are compared by
    joint angle, scaled down under low visibility. Every other landmark is
    compared by its distance in the normalized body frame, scaled down the
    same way when occluded. Returns an empty list when the poses cannot be
    compared.
    """
    if not _is_comparable(live, target):
        return []
    options = options or SimilarityOptions()
    n = len(live)
    sims: list[Optional[float]] = [None] * n

    live_angles = joint_angles(live)
    target_angles = joint_angles(target)
    for name, idx in ANGLE_JOINT_INDEX.items():
        if idx >= n:
            continue
        raw = angle_similarity(live_angles[name], target_angles[name], options.angle_tolerance_deg)
        vis_avg = (visibility(live[idx]) + visibility(target[idx])) / 2
        vis_factor = 1.0
        if vis_avg < options.visibility_threshold:
            vis_factor = max(options.visibility_floor, vis_avg / max(1e-6, options.visibility_threshold))
        sims[idx] = max(options.angle_min_similarity, min(1.0, raw * vis_factor))

    norm_live = normalize(to_vector_list(live))
    norm_target = normalize(to_vector_list(target))
    for i in range(n):
        if sims[i] is not None:
            continue
        if get_landmark(live, i) is None or get_landmark(target, i) is None:
            sims[i] = options.missing_similarity
            continue
        dist = float(np.linalg.norm(norm_live[i] - norm_target[i]))
        sim = float(np.clip(1.0 - dist / options.distance_tolerance, 0.0, 1.0))
        vis_live, vis_target = visibility(live[i]), visibility(target[i])
        if min(vis_live, vis_target) < options.visibility_threshold:
            # occluded on either side: scale down, keep a floor
            vis_avg = (vis_live + vis_target) / 2
            vis_factor = min(1.0, max(options.visibility_floor, vis_avg / max(1e-6, options.visibility_threshold)))
            sim = max(options.occluded_min_similarity, sim * vis_factor)
        sims[i] = sim
    return sims


def shoulder_spread_similarity(
    live: Optional[Sequence],
    target: Optional[Sequence],
    tolerance: float = 1.0,
) -> float:
    """Compare left-right shoulder width after normalization (arms-out postures)."""
    if not live or not target:
        return 0.0
    for pose in (live, target):
        if get_landmark(pose, PoseLandmark.LEFT_SHOULDER) is None or \
                get_landmark(pose, PoseLandmark.RIGHT_SHOULDER) is None:
            return 0.0
    a = normalize(to_vector_list(live))
    b = normalize(to_vector_list(target))
    ls, rs = PoseLandmark.LEFT_SHOULDER, PoseLandmark.RIGHT_SHOULDER
    width_a = float(np.linalg.norm(a[ls, :2] - a[rs, :2]))
    width_b = float(np.linalg.norm(b[ls, :2] - b[rs, :2]))
    return float(np.clip(1.0 - abs(width_a - width_b) / tolerance, 0.0, 1.0))


def aggregate_similarity(
    per_joint: Sequence[Optional[float]],
    live: Optional[Sequence],
    target: Optional[Sequence],
    weights: Optional[AggregateWeights] = None,
) -> float:
    """Weighted mean of per-joint similarities plus the shoulder spread term.

    Joints missing from per_joint contribute weights.missing_joint_similarity.
    Poses that cannot be compared at all (no person, length mismatch) score 0.
    """
    if not _is_comparable(live, target):
        return 0.0
    weights = weights or AggregateWeights()

    total = 0.0
    weight_sum = 0.0
    for joint, w in weights.joint_weights.items():
        s = per_joint[joint] if joint < len(per_joint) else None
        if s is None:
            s = weights.missing_joint_similarity
        total += s * w
        weight_sum += w

    spread = shoulder_spread_similarity(live, target, weights.shoulder_spread_tolerance)
    total += spread * weights.shoulder_spread_weight
    weight_sum += weights.shoulder_spread_weight

    if weight_sum <= 0:
        return 0.0
    return float(np.clip(total / weight_sum, 0.0, 1.0))


def pose_similarity(
    live: Optional[Sequence],
    target: Optional[Sequence],
    options: Optional[SimilarityOptions] = None,
    weights: Optional[AggregateWeights] = None,
) -> tuple[float, list[float]]:
    """Aggregate similarity (before motion gating) and the per-joint array."""
    per_joint = per_joint_similarity(live, target, options)
    return aggregate_similarity(per_joint, live, target, weights), per_joint
