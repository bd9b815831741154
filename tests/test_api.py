import pytest
from fastapi.testclient import TestClient

import main
from models import ReferenceSequence


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def session_id(client, pose_a, pose_b, pose_json):
    response = client.post("/api/sessions", json={
        "referenceSequence": [pose_json(pose_a), pose_json(pose_b)],
        "config": {"holdFrames": 2},
    })
    assert response.status_code == 200
    yield response.json()["sessionId"]
    main.sessions.pop(response.json()["sessionId"], None)


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_session_frames_advance_on_hold(client, session_id, pose_a, pose_json):
    url = f"/api/sessions/{session_id}/frames"
    first = client.post(url, json={"landmarks": pose_json(pose_a)}).json()
    assert first["currentStepIndex"] == 0
    assert first["score"] == 100
    assert len(first["perJointSimilarities"]) == 33
    assert first["motionTier"] == "none"
    assert "rawSimilarity" in first

    second = client.post(url, json={"landmarks": pose_json(pose_a)}).json()
    assert second["currentStepIndex"] == 1


def test_step_control(client, session_id):
    url = f"/api/sessions/{session_id}/step"
    assert client.post(url, json={"index": 5}).json() == {"currentStepIndex": 1}
    assert client.post(url, json={"index": -2}).json() == {"currentStepIndex": 0}
    assert client.post(url, json={}).status_code == 400


def test_stop_then_frames_conflict(client, session_id, pose_a, pose_json):
    client.post(f"/api/sessions/{session_id}/frames", json={"landmarks": pose_json(pose_a)})
    stopped = client.post(f"/api/sessions/{session_id}/stop")
    assert stopped.status_code == 200
    scores = stopped.json()["stepScores"]
    assert scores[0] == pytest.approx(1.0)
    assert scores[1] == 0.0

    response = client.post(f"/api/sessions/{session_id}/frames", json={"landmarks": pose_json(pose_a)})
    assert response.status_code == 409


def test_delete_session(client, session_id):
    assert client.delete(f"/api/sessions/{session_id}").json() == {"deleted": session_id}
    assert client.delete(f"/api/sessions/{session_id}").status_code == 404
    assert client.post(f"/api/sessions/{session_id}/stop").status_code == 404


def test_unknown_session(client):
    assert client.post("/api/sessions/nope/frames", json={"landmarks": []}).status_code == 404


def test_invalid_frame_body(client, session_id):
    response = client.post(f"/api/sessions/{session_id}/frames", json={"landmarks": [{"x": "left"}]})
    assert response.status_code == 422


def test_calculate_score(client):
    body = client.post("/api/calculate-score", json={"stepScores": [1.0, 1.0]}).json()
    assert body["score"]["finalScorePercent"] == 95
    assert body["score"]["breakdown"] == {"accuracy": 100, "consistency": 100, "timing": 50, "style": 100}
    assert body["performancePoints"]["totalPP"] == 134
    assert body["performancePoints"]["breakdown"]["basePP"] == 95


def test_calculate_score_empty(client):
    body = client.post("/api/calculate-score", json={
        "stepScores": [],
        "playerHistory": {"personalBest": 40, "currentStreak": 3},
    }).json()
    assert body["score"]["finalScorePercent"] == 0
    assert body["score"]["breakdown"]["timing"] == 50
    assert body["performancePoints"]["totalPP"] == 15
    assert body["performancePoints"]["breakdown"]["streakBonus"] == 10


def test_rescore_follows_step_times(client, pose_a, pose_b, pose_json):
    frames = [
        {"landmarks": pose_json(pose_a), "timestamp": 0.0},
        {"landmarks": pose_json(pose_a), "timestamp": 0.5},
        {"landmarks": pose_json(pose_b), "timestamp": 1.0},
        {"landmarks": pose_json(pose_b), "timestamp": 1.5},
    ]
    body = client.post("/api/rescore", json={
        "referenceSequence": [pose_json(pose_a), pose_json(pose_b)],
        "stepTimes": [0.0, 1.0],
        "config": {"disableAdvancement": True},
        "frames": frames,
    }).json()
    assert body["score"]["difficulty"] == "EXPERT"
    assert body["score"]["finalScorePercent"] == 100
    assert body["score"]["metadata"]["totalSteps"] == 2


def test_rescore_without_person(client, pose_a, pose_json):
    body = client.post("/api/rescore", json={
        "referenceSequence": [pose_json(pose_a)],
        "frames": [{"landmarks": []}, {"landmarks": []}],
    }).json()
    assert body["score"]["finalScorePercent"] == 0


def test_job_status_and_results(client, pose_a):
    assert client.get("/api/status/missing").status_code == 404
    assert client.get("/api/results/missing").status_code == 404

    main.jobs["busy"] = {"status": "processing", "message": "Extracting", "result": None}
    main.jobs["done"] = {
        "status": "complete",
        "message": "Done",
        "result": ReferenceSequence(reference_sequence=[pose_a], step_times=[0.0], suggested_auto_skip=1.0),
    }
    try:
        assert client.get("/api/status/busy").json()["status"] == "processing"
        assert client.get("/api/results/busy").status_code == 400
        result = client.get("/api/results/done").json()
        assert len(result["referenceSequence"]) == 1
        assert result["stepTimes"] == [0.0]
        assert result["suggestedAutoSkip"] == 1.0
    finally:
        main.jobs.pop("busy", None)
        main.jobs.pop("done", None)


def test_stopped_sessions_are_evicted(client, pose_a, pose_json, monkeypatch):
    body = {"referenceSequence": [pose_json(pose_a)]}
    first = client.post("/api/sessions", json=body).json()["sessionId"]
    # repeat stops are answered while the session is retained
    assert client.post(f"/api/sessions/{first}/stop").status_code == 200
    assert client.post(f"/api/sessions/{first}/stop").status_code == 200
    assert first in main.stopped_at

    monkeypatch.setattr(main, "STOPPED_SESSION_TTL", 0.0)
    second = client.post("/api/sessions", json=body).json()["sessionId"]
    try:
        assert first not in main.sessions
        assert first not in main.stopped_at
        assert client.post(f"/api/sessions/{first}/stop").status_code == 404
        assert second in main.sessions
    finally:
        main.sessions.pop(second, None)


def test_delete_forgets_stop_time(client, session_id):
    client.post(f"/api/sessions/{session_id}/stop")
    client.delete(f"/api/sessions/{session_id}")
    assert session_id not in main.stopped_at
