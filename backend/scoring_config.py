import json
import logging
import math
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_snake

from geometry import PoseLandmark

logger = logging.getLogger(__name__)

L = PoseLandmark

DEFAULT_JOINT_WEIGHTS: dict[PoseLandmark, float] = {
    # legs
    L.LEFT_KNEE: 0.10,
    L.RIGHT_KNEE: 0.10,
    L.LEFT_ANKLE: 0.06,
    L.RIGHT_ANKLE: 0.06,
    # hips
    L.LEFT_HIP: 0.06,
    L.RIGHT_HIP: 0.06,
    # arms
    L.LEFT_SHOULDER: 0.05,
    L.RIGHT_SHOULDER: 0.05,
    L.LEFT_ELBOW: 0.10,
    L.RIGHT_ELBOW: 0.10,
    L.LEFT_WRIST: 0.09,
    L.RIGHT_WRIST: 0.09,
}

DEFAULT_MOTION_INDICES: tuple[PoseLandmark, ...] = (
    L.LEFT_SHOULDER, L.RIGHT_SHOULDER,
    L.LEFT_ELBOW, L.RIGHT_ELBOW,
    L.LEFT_WRIST, L.RIGHT_WRIST,
    L.LEFT_HIP, L.RIGHT_HIP,
    L.LEFT_KNEE, L.RIGHT_KNEE,
)

WEIGHT_SUM_TOLERANCE = 1e-6


class SimilarityOptions(BaseModel):
    angle_tolerance_deg: float = Field(30.0, gt=0)
    distance_tolerance: float = Field(0.8, gt=0)      # normalized units
    visibility_threshold: float = Field(0.2, ge=0, le=1)
    visibility_floor: float = Field(0.5, ge=0, le=1)  # lowest occlusion scale factor
    angle_min_similarity: float = Field(0.2, ge=0, le=1)
    missing_similarity: float = Field(0.2, ge=0, le=1)
    occluded_min_similarity: float = Field(0.2, ge=0, le=1)


class AggregateWeights(BaseModel):
    joint_weights: dict[PoseLandmark, float] = Field(
        default_factory=lambda: dict(DEFAULT_JOINT_WEIGHTS)
    )
    shoulder_spread_weight: float = Field(0.08, ge=0)
    shoulder_spread_tolerance: float = Field(1.0, gt=0)
    missing_joint_similarity: float = Field(0.2, ge=0, le=1)

    @field_validator("joint_weights", mode="before")
    @classmethod
    def coerce_joint_keys(cls, value: Any) -> Any:
        if not isinstance(value, Mapping):
            return value
        return {PoseLandmark.parse(k): w for k, w in value.items()}

    @field_validator("joint_weights")
    @classmethod
    def non_negative_weights(cls, value: dict[PoseLandmark, float]) -> dict[PoseLandmark, float]:
        for joint, weight in value.items():
            if not math.isfinite(weight) or weight < 0:
                raise ValueError(f"weight for {joint.name} must be a non-negative number")
        return value

    @model_validator(mode="after")
    def weights_sum_to_one(self) -> "AggregateWeights":
        total = sum(self.joint_weights.values()) + self.shoulder_spread_weight
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"joint weights plus shoulder spread weight must sum to 1.0, got {total:.4f}")
        return self


class MotionGateConfig(BaseModel):
    freeze_threshold: float = Field(0.002, ge=0)
    good_match_cutoff: float = Field(0.7, ge=0, le=1)
    frozen_mismatch_factor: float = Field(0.05, ge=0, le=1)
    frozen_match_factor: float = Field(0.5, ge=0, le=1)
    reference_motion_epsilon: float = Field(0.02, ge=0)
    lag_ratio: float = Field(0.3, ge=0, le=1)
    lag_factor: float = Field(0.4, ge=0, le=1)
    indices: tuple[PoseLandmark, ...] = DEFAULT_MOTION_INDICES

    @field_validator("indices", mode="before")
    @classmethod
    def coerce_indices(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return tuple(PoseLandmark.parse(v) for v in value)
        return value


class AggregatorConfig(BaseModel):
    accuracy_weight: float = Field(0.6, ge=0)
    consistency_weight: float = Field(0.2, ge=0)
    timing_weight: float = Field(0.1, ge=0)
    style_weight: float = Field(0.1, ge=0)
    max_expected_deviation: float = Field(0.5, gt=0)
    timing_default: float = Field(0.5, ge=0, le=1)
    style_high_cutoff: float = Field(0.8, ge=0, le=1)
    style_peak_cutoff: float = Field(0.9, ge=0, le=1)
    difficulty_multipliers: dict[str, float] = Field(
        default_factory=lambda: {
            "BEGINNER": 1.0,
            "INTERMEDIATE": 1.3,
            "ADVANCED": 1.6,
            "EXPERT": 2.0,
        }
    )
    # (average movement, rapid-change ratio) lower bounds per tier, hardest first
    difficulty_thresholds: dict[str, tuple[float, float]] = Field(
        default_factory=lambda: {
            "EXPERT": (0.25, 0.4),
            "ADVANCED": (0.15, 0.25),
            "INTERMEDIATE": (0.08, 0.15),
        }
    )
    rapid_change_movement: float = Field(0.3, ge=0)
    difficulty_indices: tuple[PoseLandmark, ...] = DEFAULT_MOTION_INDICES

    min_pp: float = Field(5, ge=0)
    max_pp: float = Field(100, ge=0)
    difficulty_bonus: float = Field(50, ge=0)
    difficulty_bonus_ratios: dict[str, float] = Field(
        default_factory=lambda: {
            "BEGINNER": 0.0,
            "INTERMEDIATE": 0.4,
            "ADVANCED": 0.7,
            "EXPERT": 1.0,
        }
    )
    improvement_bonus: float = Field(25, ge=0)
    streak_bonus: float = Field(10, ge=0)
    streak_min: int = Field(3, ge=1)
    streak_max_multiplier: int = Field(3, ge=0)
    # score percent -> bonus, checked highest first
    excellence_bonuses: dict[int, int] = Field(
        default_factory=lambda: {95: 15, 90: 10, 85: 5}
    )

    @field_validator("difficulty_indices", mode="before")
    @classmethod
    def coerce_indices(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return tuple(PoseLandmark.parse(v) for v in value)
        return value


class ScoringConfig(BaseModel):
    similarity: SimilarityOptions = Field(default_factory=SimilarityOptions)
    weights: AggregateWeights = Field(default_factory=AggregateWeights)
    motion_gate: MotionGateConfig = Field(default_factory=MotionGateConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)


class SessionConfig(BaseModel):
    match_threshold: float = Field(0.75, ge=0, le=1)
    hold_frames: int = Field(4, ge=1)
    auto_skip_seconds: float = Field(0.0, ge=0)
    disable_advancement: bool = False


ModelT = TypeVar("ModelT", bound=BaseModel)


def validate_or_default(model_cls: type[ModelT], data: Any, section: str) -> ModelT:
    """Validate data, replacing invalid fields with their defaults.

    Bad values are logged and dropped; if the remaining fields still fail a
    cross-field rule the whole section falls back to defaults.
    """
    if data is None:
        return model_cls()
    if isinstance(data, model_cls):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if not isinstance(data, Mapping):
        logger.warning("Ignoring %s config: expected an object, got %s", section, type(data).__name__)
        return model_cls()

    data = {to_snake(str(k)): v for k, v in data.items()}
    unknown = sorted(k for k in data if k not in model_cls.model_fields)
    if unknown:
        logger.warning("Ignoring unknown %s config keys: %s", section, ", ".join(unknown))
    data = {k: v for k, v in data.items() if k in model_cls.model_fields}
    try:
        return model_cls.model_validate(data)
    except ValidationError as exc:
        bad_fields = {err["loc"][0] for err in exc.errors() if err["loc"]}
        for err in exc.errors():
            logger.warning("Invalid %s config %s: %s; using default",
                           section, ".".join(str(p) for p in err["loc"]) or "<root>", err["msg"])

    remaining = {k: v for k, v in data.items() if k not in bad_fields}
    try:
        return model_cls.model_validate(remaining)
    except ValidationError:
        logger.warning("Falling back to default %s config", section)
        return model_cls()


def load_scoring_config(source: Union[None, Mapping, str, Path] = None) -> ScoringConfig:
    """Build a ScoringConfig from a mapping or a JSON file; never raises on bad values."""
    if source is None:
        return ScoringConfig()
    if isinstance(source, ScoringConfig):
        return source
    if isinstance(source, (str, Path)):
        try:
            with open(source, "r", encoding="utf-8") as f:
                source = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read scoring config %s (%s); using defaults", source, e)
            return ScoringConfig()
    if not isinstance(source, Mapping):
        logger.warning("Scoring config must be an object; using defaults")
        return ScoringConfig()

    return ScoringConfig(
        similarity=validate_or_default(SimilarityOptions, source.get("similarity"), "similarity"),
        weights=validate_or_default(AggregateWeights, source.get("weights"), "weights"),
        motion_gate=validate_or_default(MotionGateConfig, source.get("motion_gate"), "motion_gate"),
        aggregator=validate_or_default(AggregatorConfig, source.get("aggregator"), "aggregator"),
    )


def load_session_config(source: Optional[Mapping] = None) -> SessionConfig:
    return validate_or_default(SessionConfig, source, "session")
