import logging
import threading
import time
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any, Optional

from geometry import get_landmark, landmark_field
from models import FrameResult, Landmark, Pose
from motion_gate import MotionTier, apply_motion_gate, motion_energy
from scoring_config import ScoringConfig, SessionConfig
from similarity import pose_similarity

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class AdvancementMode(str, Enum):
    THRESHOLD_HOLD = "threshold_hold"
    AUTO_SKIP = "auto_skip"
    EXTERNAL = "external"


def as_pose(landmarks: Optional[Sequence]) -> Pose:
    """Coerce detector output (models, dicts, MediaPipe objects) into Landmark models."""
    pose: Pose = []
    for lm in landmarks or []:
        if isinstance(lm, Landmark):
            pose.append(lm)
        elif get_landmark([lm], 0) is None:
            pose.append(None)
        else:
            pose.append(Landmark(
                x=landmark_field(lm, "x"),
                y=landmark_field(lm, "y"),
                z=landmark_field(lm, "z"),
                visibility=landmark_field(lm, "visibility"),
            ))
    return pose


class PoseObservable:
    """Latest live pose of a session, readable by a rendering collaborator."""

    def __init__(self):
        self._value: Optional[Pose] = None
        self._subscribers: list[Callable[[Optional[Pose]], None]] = []
        self._lock = threading.Lock()

    def get(self) -> Optional[Pose]:
        return self._value

    def set(self, value: Optional[Pose]) -> None:
        with self._lock:
            self._value = value
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(value)

    def clear(self) -> None:
        self.set(None)

    def subscribe(self, callback: Callable[[Optional[Pose]], None]) -> Callable[[], None]:
        """Register callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe


class ScoringSession:
    """Frame-driven scoring of one practice attempt against a reference sequence.

    Frames must be fed in arrival order; process_frame() and the step
    operations are serialized by an internal lock so a session can be shared
    by request handlers. Sessions never share mutable state with each other.

    Step advancement is selected by the session config:
      - threshold-hold: advance after ``hold_frames`` consecutive frames at or
        above ``match_threshold``
      - auto-skip: advance every ``auto_skip_seconds`` of wall-clock time
      - external: never self-advance; a driver calls go_to_step() or sync_to_time()
    """

    def __init__(
        self,
        reference_sequence: Sequence[Sequence],
        config: Optional[SessionConfig] = None,
        scoring: Optional[ScoringConfig] = None,
        step_times: Optional[Sequence[float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.reference = [as_pose(p) for p in (reference_sequence or [])]
        self.config = config or SessionConfig()
        self.scoring = scoring or ScoringConfig()
        self.clock = clock
        self.step_times: Optional[list[float]] = None
        if step_times is not None:
            if len(step_times) == len(self.reference):
                self.step_times = [float(t) for t in step_times]
            else:
                logger.warning("Ignoring step times: %d times for %d steps",
                               len(step_times), len(self.reference))

        self.current_pose = PoseObservable()
        self.state = SessionState.IDLE
        self._lock = threading.RLock()
        self._previous_live: Optional[Pose] = None
        self.current_step = 0
        self.consecutive_match_frames = 0
        self.step_start = self.clock()
        self._best: list[float] = [0.0] * len(self.reference)

    @property
    def mode(self) -> AdvancementMode:
        if self.config.disable_advancement:
            return AdvancementMode.EXTERNAL
        if self.config.auto_skip_seconds > 0:
            return AdvancementMode.AUTO_SKIP
        return AdvancementMode.THRESHOLD_HOLD

    @property
    def last_step(self) -> int:
        return max(0, len(self.reference) - 1)

    @property
    def best_scores(self) -> list[float]:
        return list(self._best)

    # --- lifecycle ---

    def reset(self) -> None:
        with self._lock:
            self._best = [0.0] * len(self.reference)
            self.current_step = 0
            self.consecutive_match_frames = 0
            self.step_start = self.clock()
            self._previous_live = None

    def start(self) -> None:
        with self._lock:
            if self.state == SessionState.RUNNING:
                return
            self.state = SessionState.RUNNING
            self.consecutive_match_frames = 0
        logger.info("Scoring session started (%d steps, %s mode)", len(self.reference), self.mode.value)

    def stop(self) -> list[float]:
        """Stop scoring; later frames are ignored. Returns the final per-step scores."""
        with self._lock:
            if self.state == SessionState.RUNNING:
                self.state = SessionState.STOPPED
                logger.info("Scoring session stopped: %s", [round(s, 3) for s in self._best])
            scores = list(self._best)
        self.current_pose.clear()
        return scores

    def acquire(self) -> "ScoringSession":
        self.reset()
        self.start()
        return self

    def release(self) -> list[float]:
        return self.stop()

    def __enter__(self) -> "ScoringSession":
        return self.acquire()

    def __exit__(self, *exc: Any) -> None:
        self.release()

    # --- step control ---

    def _set_step(self, index: int) -> None:
        self.current_step = max(0, min(int(index), self.last_step))
        self.consecutive_match_frames = 0
        self.step_start = self.clock()

    def go_to_step(self, index: int) -> int:
        with self._lock:
            if self.reference:
                self._set_step(index)
            return self.current_step

    def next_step(self) -> int:
        return self.go_to_step(self.current_step + 1)

    def prev_step(self) -> int:
        return self.go_to_step(self.current_step - 1)

    def sync_to_time(self, seconds: float) -> int:
        """Select the last step whose step time is at or before ``seconds``."""
        if not self.step_times:
            return self.current_step
        index = 0
        for i, t in enumerate(self.step_times):
            if t <= seconds:
                index = i
            else:
                break
        return self.go_to_step(index)

    # --- frame processing ---

    def process_frame(self, landmarks: Optional[Sequence], now: Optional[float] = None) -> Optional[FrameResult]:
        """Score one detector frame. Returns None once the session is not running."""
        with self._lock:
            if self.state != SessionState.RUNNING:
                return None
            now = self.clock() if now is None else now
            pose = as_pose(landmarks)
            self.current_pose.set(pose)

            if not self.reference:
                self._previous_live = pose
                return FrameResult(
                    pose=pose, score=0, similarity=0.0, raw_similarity=0.0,
                    current_step_index=0, per_joint_similarities=[],
                    motion_tier=MotionTier.NONE.value,
                )

            step = self.current_step
            target = self.reference[step]
            raw, per_joint = pose_similarity(
                pose, target, self.scoring.similarity, self.scoring.weights
            )
            gate = self.scoring.motion_gate
            previous_target = self.reference[max(0, step - 1)]
            reference_motion = motion_energy(previous_target, target, gate.indices)
            user_motion = motion_energy(self._previous_live, pose, gate.indices)
            sim, tier = apply_motion_gate(raw, reference_motion, user_motion, gate)
            self._previous_live = pose

            self._best[step] = max(self._best[step], sim)
            if sim >= self.config.match_threshold:
                self.consecutive_match_frames += 1
            else:
                self.consecutive_match_frames = 0

            logger.debug("step=%d sim=%.3f raw=%.3f matches=%d motion=%s",
                         step, sim, raw, self.consecutive_match_frames, tier.value)
            self._maybe_advance(now)

            return FrameResult(
                pose=pose,
                score=int(round(sim * 100)),
                similarity=sim,
                raw_similarity=raw,
                current_step_index=self.current_step,
                per_joint_similarities=per_joint,
                motion_tier=tier.value,
            )

    def _maybe_advance(self, now: float) -> None:
        mode = self.mode
        if mode == AdvancementMode.THRESHOLD_HOLD:
            if self.consecutive_match_frames >= self.config.hold_frames:
                self._advance(now, "hold")
        elif mode == AdvancementMode.AUTO_SKIP:
            if now - self.step_start >= self.config.auto_skip_seconds:
                self._advance(now, "auto-skip")

    def _advance(self, now: float, reason: str) -> None:
        # the last step holds; it never wraps or overflows
        previous = self.current_step
        self.current_step = min(previous + 1, self.last_step)
        self.consecutive_match_frames = 0
        self.step_start = now
        if self.current_step != previous:
            logger.info("Advanced to step %d (%s)", self.current_step, reason)
