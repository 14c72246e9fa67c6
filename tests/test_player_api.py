import pytest
from fastapi.testclient import TestClient

from course_player.api.deps import get_backend_factory, get_registry, get_session_factory
from course_player.main import app
from course_player.schemas.progress import LessonProgress
from course_player.services.session_registry import SessionRegistry


ACTOR = {"id": "learner-1", "name": "Ada Learner", "email": "ada@example.com"}
OTHER_ACTOR = {"id": "learner-2", "name": "Bo Learner"}


@pytest.fixture
def api(lms, session_factory):
    sessions = SessionRegistry()
    app.dependency_overrides[get_backend_factory] = lambda: (lambda token: lms.backend())
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_registry] = lambda: sessions
    with TestClient(app) as client:
        yield client
        for session_id in sessions.session_ids():
            client.delete(f"/v1/player/sessions/{session_id}")
    app.dependency_overrides.clear()


def _done(lesson_id: str) -> LessonProgress:
    return LessonProgress(lesson_id=lesson_id, completion_percentage=100, is_completed=True)


def _open(api, online: bool = True, actor: dict = ACTOR) -> str:
    resp = api.post("/v1/player/sessions", json={"course_id": "course-1", "actor": actor, "online": online})
    assert resp.status_code == 201, resp.text
    return resp.json()["session_id"]


def _event(api, session_id: str, lesson_id: str, signal: dict):
    return api.post(f"/v1/player/sessions/{session_id}/events", json={"lesson_id": lesson_id, "signal": signal})


def _rte(api, session_id: str, method: str, *args: str):
    return api.post(f"/v1/player/sessions/{session_id}/rte/API_1484_11/{method}", json={"args": list(args)})


def test_healthz(api):
    resp = api.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_create_session_returns_snapshot_and_lock_state(api):
    resp = api.post(
        "/v1/player/sessions",
        json={"course_id": "course-1", "actor": ACTOR},
        headers={"Authorization": "Bearer abc"},
    )
    assert resp.status_code == 201, resp.text
    data = resp.json()
    assert data["course_id"] == "course-1"
    assert data["snapshot"]["completionPercentage"] == 0.0
    locked = {e["lessonId"]: e["locked"] for e in data["lock_state"]["entries"]}
    assert locked["video-1"] is False
    assert locked["pdf-1"] is True


def test_unknown_session_is_404(api):
    resp = api.get("/v1/player/sessions/nope/lock-state")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "SESSION_NOT_FOUND"


def test_launch_locked_lesson_is_403(api):
    session_id = _open(api)
    resp = api.post(f"/v1/player/sessions/{session_id}/lessons/pdf-1/launch")
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "LESSON_LOCKED"
    assert error["lesson_id"] == "pdf-1"


def test_video_flow_unlocks_next_lesson(api, lms):
    session_id = _open(api)
    resp = api.post(f"/v1/player/sessions/{session_id}/lessons/video-1/launch")
    assert resp.status_code == 200, resp.text
    assert resp.json()["lesson"]["id"] == "video-1"

    resp = _event(api, session_id, "video-1", {"kind": "progress", "fraction": 0.97, "position_seconds": 97})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["completed_now"] is True
    assert body["progress"]["isCompleted"] is True

    resp = api.get(f"/v1/player/sessions/{session_id}/lessons/pdf-1/progress")
    assert resp.json()["locked"] is False

    notices = api.get(f"/v1/player/sessions/{session_id}/notices").json()["notices"]
    assert any(n["level"] == "info" for n in notices)


def test_seek_violation_is_409_with_snap_back(api):
    session_id = _open(api)
    api.post(f"/v1/player/sessions/{session_id}/lessons/video-1/launch")
    _event(api, session_id, "video-1", {"kind": "progress", "fraction": 0.25})

    resp = _event(api, session_id, "video-1", {"kind": "seek", "target_fraction": 0.9})

    assert resp.status_code == 409
    error = resp.json()["error"]
    assert error["code"] == "SEEK_NOT_ALLOWED"
    assert error["message"] == "Please watch the full content to proceed."
    assert error["snap_to"] == pytest.approx(0.25)


def test_invalid_signal_is_rejected(api):
    session_id = _open(api)
    resp = _event(api, session_id, "video-1", {"kind": "text_viewed"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "INVALID_SIGNAL"

    resp = _event(api, session_id, "video-1", {"kind": "progress", "fraction": 3})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


def test_scorm_bridge(api, lms):
    lms.seed(_done("video-1"), _done("pdf-1"), _done("quiz-1"))
    session_id = _open(api)

    resp = _rte(api, session_id, "Initialize", "")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "RTE_NOT_INSTALLED"

    resp = api.post(f"/v1/player/sessions/{session_id}/lessons/scorm-1/launch")
    assert resp.json()["rte_api"] == "API_1484_11"

    assert _rte(api, session_id, "SetValue", "cmi.completion_status", "completed").json() == {"result": "false"}
    assert _rte(api, session_id, "Initialize", "").json() == {"result": "true"}
    assert _rte(api, session_id, "SetValue", "cmi.completion_status", "completed").json() == {"result": "true"}

    resp = api.get(f"/v1/player/sessions/{session_id}/lessons/scorm-1/progress")
    assert resp.json()["progress"]["isCompleted"] is True


def test_scorm_bridge_is_scoped_to_its_session(api, lms):
    lms.seed(_done("video-1"), _done("pdf-1"), _done("quiz-1"))
    first = _open(api)
    second = _open(api, actor=OTHER_ACTOR)

    for session_id in (first, second):
        resp = api.post(f"/v1/player/sessions/{session_id}/lessons/scorm-1/launch")
        assert resp.status_code == 200, resp.text

    assert _rte(api, second, "Initialize", "").json() == {"result": "true"}
    assert _rte(api, second, "SetValue", "cmi.completion_status", "completed").json() == {"result": "true"}

    resp = api.get(f"/v1/player/sessions/{second}/lessons/scorm-1/progress")
    assert resp.json()["progress"]["isCompleted"] is True
    resp = api.get(f"/v1/player/sessions/{first}/lessons/scorm-1/progress")
    assert resp.json()["progress"] is None

    assert api.post("/v1/player/sessions/nope/rte/API_1484_11/Initialize", json={"args": [""]}).status_code == 404


def test_event_for_locked_lesson_is_403(api):
    session_id = _open(api)

    resp = _event(api, session_id, "text-1", {"kind": "text_viewed"})

    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "LESSON_LOCKED"
    snapshot = api.get(f"/v1/player/sessions/{session_id}").json()["snapshot"]
    assert snapshot["completionPercentage"] == 0.0


def test_quiz_result_and_save_exit(api, lms):
    lms.seed(_done("video-1"), _done("pdf-1"))
    session_id = _open(api)

    resp = api.post(
        f"/v1/player/sessions/{session_id}/lessons/quiz-1/quiz/result", json={"passed": True, "percentage": 90}
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["progress"]["isPassed"] is True

    resp = api.post(f"/v1/player/sessions/{session_id}/save-exit")
    assert resp.status_code == 200
    assert resp.json()["pending"] == 0
    assert lms.progress["quiz-1"].is_completed is True


def test_offline_then_delete_keeps_entries(api, lms):
    session_id = _open(api)
    api.post(f"/v1/player/sessions/{session_id}/lessons/video-1/launch")
    resp = api.put(f"/v1/player/sessions/{session_id}/connectivity", json={"online": False})
    assert resp.json()["online"] is False

    _event(api, session_id, "video-1", {"kind": "progress", "fraction": 0.3})
    resp = api.delete(f"/v1/player/sessions/{session_id}")

    assert resp.status_code == 200
    assert resp.json()["skipped"] == "offline"
    assert resp.json()["pending"] > 0
    assert "video-1" not in lms.progress
    assert api.get(f"/v1/player/sessions/{session_id}/lock-state").status_code == 404
