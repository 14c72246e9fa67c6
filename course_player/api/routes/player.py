"""Host API for playback sessions, called by the player shell.

Handlers are async so that session timers and flushes run on the server loop.
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session, sessionmaker

from course_player.api.deps import (
    BackendFactory,
    CurrentSession,
    get_backend_factory,
    get_bearer_token,
    get_registry,
    get_session_factory,
)
from course_player.core.config import get_settings
from course_player.core.error_codes import ErrorCode
from course_player.core.errors import ApiError
from course_player.schemas.player import (
    ConnectivityRequest,
    ConnectivityResponse,
    CreateSessionRequest,
    EventRequest,
    EventResponse,
    LaunchResponse,
    LessonProgressResponse,
    NoticeItem,
    NoticesResponse,
    QuizRecordRequest,
    QuizResultResponse,
    QuizSubmitRequest,
    SessionResponse,
    SyncResultResponse,
)
from course_player.schemas.progress import LockState
from course_player.services.session_registry import SessionRegistry, open_session
from course_player.services.sync_engine import SyncResult

router = APIRouter(prefix="/v1/player", tags=["player"])


# ── Session lifecycle ─────────────────────────────────────────────────────────

@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def create_session(
    payload: CreateSessionRequest,
    token: str | None = Depends(get_bearer_token),
    backend_factory: BackendFactory = Depends(get_backend_factory),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    sessions: SessionRegistry = Depends(get_registry),
) -> SessionResponse:
    backend = backend_factory(token)
    try:
        handle = await open_session(
            payload.course_id,
            payload.actor,
            backend,
            session_factory,
            settings=get_settings(),
            online=payload.online,
        )
    except Exception:
        await backend.aclose()
        raise
    sessions.add(handle)
    session = handle.session
    return SessionResponse(
        session_id=session.session_id,
        course_id=session.course.id,
        snapshot=session.snapshot(),
        lock_state=session.get_lock_state(),
    )


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(handle: CurrentSession) -> SessionResponse:
    session = handle.session
    return SessionResponse(
        session_id=session.session_id,
        course_id=session.course.id,
        snapshot=session.snapshot(),
        lock_state=session.get_lock_state(),
    )


@router.post("/sessions/{session_id}/save-exit", response_model=SyncResultResponse)
async def save_and_exit(handle: CurrentSession) -> SyncResultResponse:
    result = await handle.session.save_and_exit()
    return _sync_response(result, handle.session.sync.pending_count())


@router.delete("/sessions/{session_id}", response_model=SyncResultResponse)
async def delete_session(
    session_id: str,
    handle: CurrentSession,
    sessions: SessionRegistry = Depends(get_registry),
) -> SyncResultResponse:
    result = await sessions.close(session_id)
    return _sync_response(result or SyncResult(reason="teardown"), handle.session.sync.pending_count())


# ── Progression ───────────────────────────────────────────────────────────────

@router.get("/sessions/{session_id}/lock-state", response_model=LockState)
async def get_lock_state(handle: CurrentSession) -> LockState:
    return handle.session.get_lock_state()


@router.get("/sessions/{session_id}/lessons/{lesson_id}/progress", response_model=LessonProgressResponse)
async def get_lesson_progress(lesson_id: str, handle: CurrentSession) -> LessonProgressResponse:
    session = handle.session
    position = session.course.locate(lesson_id)
    if position is None:
        raise ApiError(status_code=404, code=ErrorCode.LESSON_NOT_FOUND, message="Lesson not found")
    entry = session.get_lock_state().get(*position)
    return LessonProgressResponse(
        lesson_id=lesson_id,
        progress=session.get_lesson_progress(lesson_id),
        locked=entry.locked if entry else True,
        reason=entry.reason if entry else None,
    )


@router.post("/sessions/{session_id}/lessons/{lesson_id}/launch", response_model=LaunchResponse)
async def launch_lesson(lesson_id: str, handle: CurrentSession) -> LaunchResponse:
    launch = handle.session.launch_lesson(lesson_id)
    return LaunchResponse(
        lesson=launch.lesson,
        module_index=launch.module_index,
        lesson_index=launch.lesson_index,
        resume_position=launch.resume_position,
        progress=launch.progress,
        rte_api=launch.rte_api,
    )


# ── Widget events ─────────────────────────────────────────────────────────────

@router.post("/sessions/{session_id}/events", response_model=EventResponse)
async def post_event(payload: EventRequest, handle: CurrentSession) -> EventResponse:
    session = handle.session
    delta = await session.submit_event(payload.lesson_id, payload.signal)
    return EventResponse(
        progress=delta.progress,
        changed=delta.changed,
        completed_now=delta.completed_now,
        lock_state=session.get_lock_state(),
    )


# ── Quiz ──────────────────────────────────────────────────────────────────────

@router.post("/sessions/{session_id}/lessons/{lesson_id}/quiz/submit", response_model=QuizResultResponse)
async def submit_quiz(lesson_id: str, payload: QuizSubmitRequest, handle: CurrentSession) -> QuizResultResponse:
    session = handle.session
    result = await session.submit_quiz(lesson_id, payload.answers)
    return _quiz_response(handle, lesson_id, result.passed, result.percentage)


@router.post("/sessions/{session_id}/lessons/{lesson_id}/quiz/result", response_model=QuizResultResponse)
async def record_quiz_result(lesson_id: str, payload: QuizRecordRequest, handle: CurrentSession) -> QuizResultResponse:
    result = handle.session.record_quiz_result(lesson_id, payload.passed, payload.percentage)
    return _quiz_response(handle, lesson_id, result.passed, result.percentage)


# ── Connectivity / notices ────────────────────────────────────────────────────

@router.put("/sessions/{session_id}/connectivity", response_model=ConnectivityResponse)
async def set_connectivity(payload: ConnectivityRequest, handle: CurrentSession) -> ConnectivityResponse:
    handle.connectivity.set_online(payload.online)
    return ConnectivityResponse(online=handle.connectivity.is_online, pending=handle.session.sync.pending_count())


@router.get("/sessions/{session_id}/notices", response_model=NoticesResponse)
async def drain_notices(handle: CurrentSession) -> NoticesResponse:
    return NoticesResponse(notices=[NoticeItem(**asdict(n)) for n in handle.session.drain_notices()])


def _quiz_response(handle, lesson_id: str, passed: bool, percentage: float) -> QuizResultResponse:
    session = handle.session
    return QuizResultResponse(
        passed=passed,
        percentage=percentage,
        progress=session.get_lesson_progress(lesson_id),
        lock_state=session.get_lock_state(),
    )


def _sync_response(result: SyncResult, pending: int) -> SyncResultResponse:
    return SyncResultResponse(
        reason=result.reason,
        sent_progress=result.sent_progress,
        sent_statements=result.sent_statements,
        dropped=result.dropped,
        skipped=result.skipped,
        error=result.error,
        pending=pending,
    )
