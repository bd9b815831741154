from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Landmark(BaseModel):
    x: float
    y: float
    z: Optional[float] = None
    visibility: Optional[float] = None  # absent means fully visible


# Detector output for one frame; None marks a missing entry
Pose = list[Optional[Landmark]]


class FramePose(BaseModel):
    frame_num: int
    timestamp: float
    landmarks: list[Landmark]


class ReferenceSequence(ApiModel):
    reference_sequence: list[Pose]
    step_times: Optional[list[float]] = None   # seconds into the reference video
    suggested_auto_skip: float = 0.0


class FrameResult(ApiModel):
    pose: Pose
    score: int                       # 0-100
    similarity: float                # gated aggregate, 0-1
    raw_similarity: float            # before the motion gate
    current_step_index: int
    per_joint_similarities: list[float]
    motion_tier: str


class ScoreBreakdown(ApiModel):
    accuracy: int
    consistency: int
    timing: int
    style: int


class ScoreMetadata(ApiModel):
    total_steps: int
    valid_steps: int
    average_step_score: int


class ScoreResult(ApiModel):
    final_score_percent: int
    breakdown: ScoreBreakdown
    difficulty: str
    difficulty_multiplier: float
    metadata: ScoreMetadata


class PlayerHistory(ApiModel):
    personal_best: float = 0
    current_streak: int = 0


class PPBreakdown(ApiModel):
    base_pp: int = Field(alias="basePP")
    difficulty_bonus: int
    improvement_bonus: int
    streak_bonus: int
    excellence_bonus: int


class PPMetadata(ApiModel):
    is_personal_best: bool
    score_improvement: float
    difficulty_level: str


class PerformancePoints(ApiModel):
    total_pp: int = Field(alias="totalPP")
    breakdown: PPBreakdown
    metadata: PPMetadata


class PlayerRank(ApiModel):
    tier: str
    name: str
    color: str


class LeaderboardPosition(ApiModel):
    position: int
    percentile: int
    total_players: int


class SessionSubmission(ApiModel):
    score: ScoreResult
    performance_points: PerformancePoints


# --- request bodies ---

class CreateSessionRequest(ApiModel):
    reference_sequence: list[Pose]
    step_times: Optional[list[float]] = None
    config: Optional[dict[str, Any]] = None          # session config, see SessionConfig


class FrameRequest(ApiModel):
    landmarks: Pose = Field(default_factory=list)
    timestamp: Optional[float] = None                # seconds; replay clock for /api/rescore


class StepRequest(ApiModel):
    index: Optional[int] = None
    time: Optional[float] = None


class CalculateScoreRequest(ApiModel):
    step_scores: list[Optional[float]]
    timing_data: Optional[list[Optional[float]]] = None
    reference_sequence: list[Pose] = Field(default_factory=list)
    player_history: PlayerHistory = Field(default_factory=PlayerHistory)


class RescoreRequest(ApiModel):
    reference_sequence: list[Pose]
    frames: list[FrameRequest]
    step_times: Optional[list[float]] = None
    config: Optional[dict[str, Any]] = None
    player_history: PlayerHistory = Field(default_factory=PlayerHistory)


class SessionCreated(ApiModel):
    session_id: str


class StepScores(ApiModel):
    step_scores: list[float]


class JobStatus(BaseModel):
    job_id: str
    status: str  # pending, processing, complete, error
    message: str = ""
