import logging
import os
from typing import Optional

import cv2
import mediapipe as mp

from models import FramePose, Landmark

logger = logging.getLogger(__name__)

MODEL_PATH = os.environ.get(
    "POSE_MODEL_PATH",
    os.path.join(os.path.dirname(__file__), "pose_landmarker_lite.task"),
)

PoseLandmarker = mp.tasks.vision.PoseLandmarker
PoseLandmarkerOptions = mp.tasks.vision.PoseLandmarkerOptions
RunningMode = mp.tasks.vision.RunningMode
BaseOptions = mp.tasks.BaseOptions


def extract_poses(video_path: str, sample_fps: Optional[float] = None) -> tuple[list[FramePose], float]:
    """Run the pose landmarker over a video, optionally subsampled to sample_fps.

    Frames without a detected person are skipped. Returns (frames, video fps).
    """
    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        raise ValueError(f"Cannot open video: {video_path}")

    fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
    stride = 1
    if sample_fps and sample_fps < fps:
        stride = max(1, round(fps / sample_fps))
    frame_poses: list[FramePose] = []

    options = PoseLandmarkerOptions(
        base_options=BaseOptions(model_asset_path=MODEL_PATH),
        running_mode=RunningMode.VIDEO,
        num_poses=1,
        min_pose_detection_confidence=0.5,
        min_tracking_confidence=0.5,
    )

    try:
        with PoseLandmarker.create_from_options(options) as landmarker:
            frame_num = 0
            while True:
                ret, frame = cap.read()
                if not ret:
                    break
                if frame_num % stride:
                    frame_num += 1
                    continue

                rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
                mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)
                timestamp_ms = int(frame_num * 1000 / fps)

                result = landmarker.detect_for_video(mp_image, timestamp_ms)

                if result.pose_landmarks and len(result.pose_landmarks) > 0:
                    raw = result.pose_landmarks[0]  # first person
                    frame_poses.append(
                        FramePose(
                            frame_num=frame_num,
                            timestamp=frame_num / fps,
                            landmarks=_to_landmarks(raw),
                        )
                    )

                frame_num += 1
    finally:
        cap.release()

    logger.info("Extracted %d poses from %s (%.1f fps, stride %d)",
                len(frame_poses), os.path.basename(video_path), fps, stride)
    return frame_poses, fps


def _to_landmarks(raw_landmarks) -> list[Landmark]:
    """Copy MediaPipe NormalizedLandmarks, keeping image coordinates."""
    return [
        Landmark(
            x=lm.x,
            y=lm.y,
            z=lm.z,
            visibility=getattr(lm, "visibility", None),
        )
        for lm in raw_landmarks
    ]
