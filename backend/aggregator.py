"""Session-end scoring: breakdown, difficulty, performance points and rank."""

import logging
import math
from collections.abc import Sequence
from enum import Enum
from typing import Optional

import numpy as np

from geometry import get_landmark, landmark_field
from models import (
    LeaderboardPosition,
    PerformancePoints,
    PlayerHistory,
    PlayerRank,
    PPBreakdown,
    PPMetadata,
    ScoreBreakdown,
    ScoreMetadata,
    ScoreResult,
)
from scoring_config import AggregatorConfig

logger = logging.getLogger(__name__)


class Difficulty(str, Enum):
    BEGINNER = "BEGINNER"
    INTERMEDIATE = "INTERMEDIATE"
    ADVANCED = "ADVANCED"
    EXPERT = "EXPERT"


# (minimum total PP, tier, display name, color), highest first
RANK_TIERS = [
    (10000, "LEGEND", "Legend", "#FFD700"),
    (7500, "MASTER", "Master", "#E6E6FA"),
    (5000, "EXPERT", "Expert", "#FF6B47"),
    (2500, "ADVANCED", "Advanced", "#4ECDC4"),
    (1000, "INTERMEDIATE", "Intermediate", "#45B7D1"),
    (250, "BEGINNER", "Beginner", "#96CEB4"),
    (0, "NOVICE", "Novice", "#FECA57"),
]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def valid_scores(step_scores: Optional[Sequence[Optional[float]]]) -> list[float]:
    """Drop missing and non-finite entries."""
    out = []
    for s in step_scores or []:
        if s is None:
            continue
        s = float(s)
        if math.isfinite(s):
            out.append(_clamp01(s))
    return out


def calculate_accuracy(step_scores: Sequence[Optional[float]]) -> float:
    scores = valid_scores(step_scores)
    return float(np.mean(scores)) if scores else 0.0


def calculate_consistency(step_scores: Sequence[Optional[float]], max_deviation: float = 0.5) -> float:
    """Low spread across steps means high consistency; no data gives 0."""
    scores = valid_scores(step_scores)
    if not scores:
        return 0.0
    return max(0.0, 1.0 - float(np.std(scores)) / max_deviation)


def calculate_timing(timing_data: Optional[Sequence[Optional[float]]], default: float = 0.5) -> float:
    """Mean of the caller's per-step timing accuracies, or the neutral default."""
    if not timing_data:
        return default
    values = []
    for t in timing_data:
        t = default if t is None else float(t)
        values.append(t if math.isfinite(t) else default)
    return _clamp01(float(np.mean(values)))


def calculate_style(
    step_scores: Sequence[Optional[float]],
    high_cutoff: float = 0.8,
    peak_cutoff: float = 0.9,
) -> float:
    scores = valid_scores(step_scores)
    if not scores:
        return 0.0
    high_ratio = sum(1 for s in scores if s > high_cutoff) / len(scores)
    peak_bonus = min(0.3, 2 * sum(1 for s in scores if s > peak_cutoff) / len(scores))
    return _clamp01(0.7 * high_ratio + peak_bonus)


def _pose_movement(previous: Sequence, current: Sequence, indices: Sequence[int]) -> float:
    movement = 0.0
    for idx in indices:
        a = get_landmark(previous, idx)
        b = get_landmark(current, idx)
        if a is None or b is None:
            continue
        delta = [
            (landmark_field(b, axis) or 0.0) - (landmark_field(a, axis) or 0.0)
            for axis in ("x", "y", "z")
        ]
        movement += math.sqrt(sum(d * d for d in delta))
    return movement


def assess_difficulty(
    reference_sequence: Optional[Sequence[Sequence]],
    config: Optional[AggregatorConfig] = None,
) -> Difficulty:
    """Bucket a reference sequence by how much its key joints move between steps."""
    config = config or AggregatorConfig()
    if not reference_sequence or len(reference_sequence) < 2:
        return Difficulty.BEGINNER

    transitions = len(reference_sequence) - 1
    total = 0.0
    rapid = 0
    for prev, curr in zip(reference_sequence, reference_sequence[1:]):
        if not prev or not curr:
            continue
        movement = _pose_movement(prev, curr, config.difficulty_indices)
        total += movement
        if movement > config.rapid_change_movement:
            rapid += 1

    avg_movement = total / transitions
    rapid_ratio = rapid / transitions
    for tier in (Difficulty.EXPERT, Difficulty.ADVANCED, Difficulty.INTERMEDIATE):
        min_movement, min_ratio = config.difficulty_thresholds.get(tier.value, (math.inf, math.inf))
        if avg_movement > min_movement or rapid_ratio > min_ratio:
            return tier
    return Difficulty.BEGINNER


def calculate_score(
    step_scores: Sequence[Optional[float]],
    timing_data: Optional[Sequence[Optional[float]]] = None,
    reference_sequence: Optional[Sequence[Sequence]] = None,
    config: Optional[AggregatorConfig] = None,
) -> ScoreResult:
    """Reduce per-step best similarities into the final score payload."""
    config = config or AggregatorConfig()
    scores = valid_scores(step_scores)
    difficulty = assess_difficulty(reference_sequence, config)
    multiplier = config.difficulty_multipliers.get(difficulty.value, 1.0)
    timing = calculate_timing(timing_data, config.timing_default)

    if not any(scores):
        # empty or all-zero sessions earn nothing
        accuracy = consistency = style = final = 0.0
    else:
        accuracy = calculate_accuracy(scores)
        consistency = calculate_consistency(scores, config.max_expected_deviation)
        style = calculate_style(scores, config.style_high_cutoff, config.style_peak_cutoff)
        final = (
            accuracy * config.accuracy_weight
            + consistency * config.consistency_weight
            + timing * config.timing_weight
            + style * config.style_weight
        )
        final = min(1.0, max(0.0, final * multiplier))

    result = ScoreResult(
        final_score_percent=round_half_up(final * 100),
        breakdown=ScoreBreakdown(
            accuracy=round_half_up(accuracy * 100),
            consistency=round_half_up(consistency * 100),
            timing=round_half_up(timing * 100),
            style=round_half_up(style * 100),
        ),
        difficulty=difficulty.value,
        difficulty_multiplier=multiplier,
        metadata=ScoreMetadata(
            total_steps=len(step_scores or []),
            valid_steps=len(scores),
            average_step_score=round_half_up(accuracy * 100),
        ),
    )
    logger.debug("Final score %d%% (%s)", result.final_score_percent, difficulty.value)
    return result


def calculate_performance_points(
    score: ScoreResult,
    history: Optional[PlayerHistory] = None,
    config: Optional[AggregatorConfig] = None,
) -> PerformancePoints:
    """PP award for one submitted session; history comes from the persistence layer."""
    config = config or AggregatorConfig()
    history = history or PlayerHistory()
    final = score.final_score_percent
    personal_best = history.personal_best or 0
    streak = history.current_streak or 0

    base_pp = max(config.min_pp, final / 100 * config.max_pp)
    difficulty_bonus = config.difficulty_bonus * config.difficulty_bonus_ratios.get(score.difficulty, 0.0)
    improvement_bonus = 0.0
    if final > personal_best:
        improvement_bonus = config.improvement_bonus * (final - personal_best) / 100
    streak_bonus = 0.0
    if streak >= config.streak_min:
        streak_bonus = config.streak_bonus * min(config.streak_max_multiplier, streak // config.streak_min)
    excellence_bonus = 0
    for cutoff in sorted(config.excellence_bonuses, reverse=True):
        if final >= cutoff:
            excellence_bonus = config.excellence_bonuses[cutoff]
            break

    total = base_pp + difficulty_bonus + improvement_bonus + streak_bonus + excellence_bonus
    return PerformancePoints(
        total_pp=max(0, round_half_up(total)),
        breakdown=PPBreakdown(
            base_pp=round_half_up(base_pp),
            difficulty_bonus=round_half_up(difficulty_bonus),
            improvement_bonus=round_half_up(improvement_bonus),
            streak_bonus=round_half_up(streak_bonus),
            excellence_bonus=excellence_bonus,
        ),
        metadata=PPMetadata(
            is_personal_best=final > personal_best,
            score_improvement=final - personal_best,
            difficulty_level=score.difficulty,
        ),
    )


def player_rank(total_pp: float) -> PlayerRank:
    for minimum, tier, name, color in RANK_TIERS:
        if total_pp >= minimum:
            return PlayerRank(tier=tier, name=name, color=color)
    _, tier, name, color = RANK_TIERS[-1]
    return PlayerRank(tier=tier, name=name, color=color)


def leaderboard_position(score: float, all_scores: Sequence[float] = ()) -> LeaderboardPosition:
    """Where a new score lands among the existing scores of a challenge."""
    if not all_scores:
        return LeaderboardPosition(position=1, percentile=100, total_players=1)
    position = 1 + sum(1 for s in all_scores if s > score)
    percentile = round_half_up((len(all_scores) - position + 1) / len(all_scores) * 100)
    return LeaderboardPosition(
        position=position,
        percentile=max(0, percentile),
        total_players=len(all_scores) + 1,
    )
