import logging
import os
import tempfile
import threading
import time
import uuid
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from aggregator import calculate_performance_points, calculate_score
from models import (
    CalculateScoreRequest,
    CreateSessionRequest,
    FrameRequest,
    FrameResult,
    JobStatus,
    ReferenceSequence,
    RescoreRequest,
    SessionCreated,
    SessionSubmission,
    StepRequest,
    StepScores,
)
from reference_builder import build_reference_sequence
from scoring_config import load_scoring_config, load_session_config
from session import ScoringSession

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="DanceScore API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

scoring_config = load_scoring_config(os.environ.get("SCORING_CONFIG_PATH"))

# In-memory job and session stores
jobs: dict[str, dict] = {}
sessions: dict[str, ScoringSession] = {}
_sessions_lock = threading.Lock()

# Stopped sessions stay readable (repeat /stop) for this long, then are dropped
STOPPED_SESSION_TTL = float(os.environ.get("STOPPED_SESSION_TTL", "300"))
stopped_at: dict[str, float] = {}


def _evict_stopped_sessions() -> None:
    cutoff = time.monotonic() - STOPPED_SESSION_TTL
    with _sessions_lock:
        expired = [sid for sid, t in stopped_at.items() if t <= cutoff]
        for sid in expired:
            del stopped_at[sid]
            sessions.pop(sid, None)
    if expired:
        logger.info("Evicted %d stopped sessions", len(expired))


@app.get("/api/health")
def health():
    return {"status": "ok"}


# --- reference extraction ---

@app.post("/api/reference")
async def create_reference(
    video: UploadFile = File(...),
    fixed_interval_seconds: float = Form(0.0),
    sample_fps: float = Form(15.0),
):
    job_id = str(uuid.uuid4())
    jobs[job_id] = {"status": "pending", "message": "Queued", "result": None}

    # Save upload to a temp file
    tmp_dir = tempfile.mkdtemp()
    video_path = os.path.join(tmp_dir, f"ref_{os.path.basename(video.filename or 'video')}")
    with open(video_path, "wb") as f:
        f.write(await video.read())

    # Process in background thread
    thread = threading.Thread(
        target=_process_job,
        args=(job_id, video_path, fixed_interval_seconds, sample_fps),
    )
    thread.start()

    return {"job_id": job_id}


def _process_job(job_id: str, video_path: str, fixed_interval_seconds: float, sample_fps: float):
    # MediaPipe loads its runtime on import; keep it out of the request path
    from pose_extractor import extract_poses

    try:
        jobs[job_id]["status"] = "processing"
        jobs[job_id]["message"] = "Extracting poses from reference video..."

        frames, fps = extract_poses(video_path, sample_fps=sample_fps)
        if not frames:
            raise ValueError("No person detected in reference video")

        jobs[job_id]["message"] = "Selecting reference steps..."
        result = build_reference_sequence(
            frames,
            sample_fps=min(sample_fps, fps),
            fixed_interval_seconds=fixed_interval_seconds,
        )

        jobs[job_id]["status"] = "complete"
        jobs[job_id]["message"] = "Done"
        jobs[job_id]["result"] = result
    except Exception as e:
        logger.exception("Reference job %s failed", job_id)
        jobs[job_id]["status"] = "error"
        jobs[job_id]["message"] = str(e)
    finally:
        try:
            os.remove(video_path)
            os.rmdir(os.path.dirname(video_path))
        except OSError:
            pass


@app.get("/api/status/{job_id}")
def get_status(job_id: str):
    if job_id not in jobs:
        raise HTTPException(status_code=404, detail="Job not found")
    job = jobs[job_id]
    return JobStatus(job_id=job_id, status=job["status"], message=job["message"])


@app.get("/api/results/{job_id}", response_model=ReferenceSequence)
def get_results(job_id: str):
    if job_id not in jobs:
        raise HTTPException(status_code=404, detail="Job not found")
    job = jobs[job_id]
    if job["status"] != "complete":
        raise HTTPException(status_code=400, detail=f"Job not complete: {job['status']}")
    return job["result"]


# --- live scoring sessions ---

def _get_session(session_id: str) -> ScoringSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.post("/api/sessions", response_model=SessionCreated)
def create_session(body: CreateSessionRequest):
    _evict_stopped_sessions()
    session = ScoringSession(
        body.reference_sequence,
        config=load_session_config(body.config),
        scoring=scoring_config,
        step_times=body.step_times,
    )
    session.acquire()
    session_id = str(uuid.uuid4())
    with _sessions_lock:
        sessions[session_id] = session
    return SessionCreated(session_id=session_id)


@app.post("/api/sessions/{session_id}/frames", response_model=FrameResult)
def post_frame(session_id: str, body: FrameRequest):
    session = _get_session(session_id)
    # live sessions run on the server clock; client timestamps are only used by /api/rescore
    result = session.process_frame(body.landmarks)
    if result is None:
        raise HTTPException(status_code=409, detail=f"Session is {session.state.value}")
    return result


@app.post("/api/sessions/{session_id}/step")
def set_step(session_id: str, body: StepRequest):
    session = _get_session(session_id)
    if body.index is not None:
        step = session.go_to_step(body.index)
    elif body.time is not None:
        step = session.sync_to_time(body.time)
    else:
        raise HTTPException(status_code=400, detail="Either index or time is required")
    return {"currentStepIndex": step}


@app.post("/api/sessions/{session_id}/stop", response_model=StepScores)
def stop_session(session_id: str):
    session = _get_session(session_id)
    scores = session.stop()
    with _sessions_lock:
        stopped_at.setdefault(session_id, time.monotonic())
    return StepScores(step_scores=scores)


@app.delete("/api/sessions/{session_id}")
def delete_session(session_id: str):
    with _sessions_lock:
        session = sessions.pop(session_id, None)
        stopped_at.pop(session_id, None)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    session.release()
    return {"deleted": session_id}


# --- scoring ---

def _submission(step_scores, timing_data, reference_sequence, history) -> SessionSubmission:
    score = calculate_score(step_scores, timing_data, reference_sequence, scoring_config.aggregator)
    points = calculate_performance_points(score, history, scoring_config.aggregator)
    return SessionSubmission(score=score, performance_points=points)


@app.post("/api/calculate-score", response_model=SessionSubmission)
def calculate(body: CalculateScoreRequest):
    return _submission(body.step_scores, body.timing_data, body.reference_sequence, body.player_history)


@app.post("/api/rescore", response_model=SessionSubmission)
def rescore(body: RescoreRequest):
    """Replay recorded frames through a fresh session, using frame timestamps as the clock."""
    clock_state = {"now": 0.0}
    if body.frames and body.frames[0].timestamp is not None:
        clock_state["now"] = body.frames[0].timestamp

    session = ScoringSession(
        body.reference_sequence,
        config=load_session_config(body.config),
        scoring=scoring_config,
        step_times=body.step_times,
        clock=lambda: clock_state["now"],
    )
    with session:
        for frame in body.frames:
            now: Optional[float] = frame.timestamp
            if now is None:
                now = clock_state["now"]
            clock_state["now"] = now
            if session.step_times is not None and session.config.disable_advancement:
                session.sync_to_time(now)
            session.process_frame(frame.landmarks, now=now)

    return _submission(session.best_scores, None, session.reference, body.player_history)
