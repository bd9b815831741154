import logging
from typing import Optional

import numpy as np
from scipy.signal import find_peaks

from geometry import normalize, to_vector_list
from models import FramePose, ReferenceSequence

logger = logging.getLogger(__name__)

MIN_STEP_SEPARATION_SEC = 0.4


def _select_fixed_interval(
    frames: list[FramePose], interval: float, duration: Optional[float]
) -> list[int]:
    """Frame indices nearest to every ``interval`` seconds tick."""
    if duration is None or duration <= 0:
        duration = frames[-1].timestamp
    if duration <= 0:
        # a single instant: it is the only step
        return [0]

    times = np.array([f.timestamp for f in frames])
    ticks = np.arange(0.0, duration + 1e-6, interval)
    nearest = [int(np.argmin(np.abs(times - t))) for t in ticks]

    indices: list[int] = []
    for idx in nearest:
        if not indices or indices[-1] != idx:
            indices.append(idx)

    if len(indices) <= 1 and len(frames) > 1:
        # timestamps were unusable; fall back to evenly spaced frames
        approx_count = max(1, round(duration / interval))
        stride = max(1, len(frames) // approx_count)
        indices = list(range(0, len(frames), stride))
        if indices[-1] != len(frames) - 1:
            indices.append(len(frames) - 1)
    return indices


def frame_motion(frames: list[FramePose]) -> np.ndarray:
    """Mean normalized displacement of all landmarks from the previous frame."""
    normed = [normalize(to_vector_list(f.landmarks)) for f in frames]
    motions = [0.0]
    for a, b in zip(normed, normed[1:]):
        if len(a) == 0 or len(a) != len(b):
            motions.append(0.0)
            continue
        motions.append(float(np.mean(np.linalg.norm(a - b, axis=1))))
    return np.array(motions)


def smooth(values: np.ndarray, window: int) -> np.ndarray:
    """Centered moving average, shrinking the window at the edges."""
    values = np.asarray(values, dtype=np.float64)
    if len(values) == 0:
        return values.copy()
    half = max(0, window) // 2
    kernel = np.ones(2 * half + 1)
    sums = np.convolve(values, kernel)[half:half + len(values)]
    counts = np.convolve(np.ones(len(values)), kernel)[half:half + len(values)]
    return sums / counts


def _select_low_motion(
    frames: list[FramePose],
    sample_fps: float,
    smooth_window: int,
    motion_threshold_factor: float,
) -> list[int]:
    """Frame indices of static instants: local motion minima below a threshold."""
    motion = smooth(frame_motion(frames), smooth_window)
    threshold = motion.mean() * motion_threshold_factor

    min_sep = max(1, round(sample_fps * MIN_STEP_SEPARATION_SEC))
    # walls on both ends so holds at the start or end of the video count as minima
    padded = np.pad(motion, 1, constant_values=motion.max() + 1.0)
    minima, _ = find_peaks(-padded, height=-threshold, distance=min_sep)
    indices = [int(i) - 1 for i in minima]

    if not indices:
        # no clear holds; take the stillest frame in each ~1s window
        window = max(1, round(sample_fps))
        for start in range(0, len(frames), window):
            chunk = motion[start:start + window]
            indices.append(start + int(np.argmin(chunk)))
    return indices


def build_reference_sequence(
    frames: list[FramePose],
    sample_fps: float = 15.0,
    smooth_window: int = 5,
    motion_threshold_factor: float = 0.6,
    fixed_interval_seconds: float = 0.0,
    duration: Optional[float] = None,
) -> ReferenceSequence:
    """Turn timestamped detector frames into reference steps.

    With ``fixed_interval_seconds`` one step is kept per interval; otherwise
    steps are the low-motion instants of the video. The suggested auto-skip is
    the fixed interval or the median gap between steps.
    """
    if not frames:
        return ReferenceSequence(reference_sequence=[], step_times=[], suggested_auto_skip=0.0)

    if fixed_interval_seconds and fixed_interval_seconds > 0:
        indices = _select_fixed_interval(frames, fixed_interval_seconds, duration)
        suggested = fixed_interval_seconds if indices else 0.0
    else:
        indices = _select_low_motion(frames, sample_fps, smooth_window, motion_threshold_factor)
        gaps = np.diff([frames[i].timestamp for i in indices])
        suggested = float(np.sort(gaps)[len(gaps) // 2]) if len(gaps) else 0.0

    logger.info("Built reference sequence: %d steps from %d frames", len(indices), len(frames))
    return ReferenceSequence(
        reference_sequence=[list(frames[i].landmarks) for i in indices],
        step_times=[frames[i].timestamp for i in indices],
        suggested_auto_skip=suggested,
    )
