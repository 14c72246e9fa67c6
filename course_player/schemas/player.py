from typing import Any

from pydantic import BaseModel, Field

from course_player.schemas.course import Lesson
from course_player.schemas.progress import CourseProgressSnapshot, LessonProgress, LockState
from course_player.schemas.signals import Signal
from course_player.schemas.xapi import Actor


# ── Session lifecycle ─────────────────────────────────────────────────────────

class CreateSessionRequest(BaseModel):
    course_id: str
    actor: Actor
    online: bool = True


class SessionResponse(BaseModel):
    session_id: str
    course_id: str
    snapshot: CourseProgressSnapshot
    lock_state: LockState


class SyncResultResponse(BaseModel):
    reason: str
    sent_progress: int = 0
    sent_statements: int = 0
    dropped: int = 0
    skipped: str | None = None
    error: str | None = None
    pending: int = 0


# ── Lessons ───────────────────────────────────────────────────────────────────

class LaunchResponse(BaseModel):
    lesson: Lesson
    module_index: int
    lesson_index: int
    resume_position: float | None = None
    progress: LessonProgress | None = None
    rte_api: str | None = None


class LessonProgressResponse(BaseModel):
    lesson_id: str
    progress: LessonProgress | None = None
    locked: bool
    reason: str | None = None


# ── Widget events ─────────────────────────────────────────────────────────────

class EventRequest(BaseModel):
    lesson_id: str
    signal: Signal


class EventResponse(BaseModel):
    progress: LessonProgress
    changed: bool
    completed_now: bool
    lock_state: LockState


# ── Quiz ──────────────────────────────────────────────────────────────────────

class QuizSubmitRequest(BaseModel):
    answers: Any = None


class QuizRecordRequest(BaseModel):
    passed: bool
    percentage: float = Field(ge=0.0, le=100.0)


class QuizResultResponse(BaseModel):
    passed: bool
    percentage: float
    progress: LessonProgress | None = None
    lock_state: LockState


# ── Connectivity / notices ────────────────────────────────────────────────────

class ConnectivityRequest(BaseModel):
    online: bool


class ConnectivityResponse(BaseModel):
    online: bool
    pending: int


class NoticeItem(BaseModel):
    level: str
    message: str
    code: str | None = None
    detail: dict[str, Any] = {}


class NoticesResponse(BaseModel):
    notices: list[NoticeItem] = []


# ── SCORM bridge ──────────────────────────────────────────────────────────────

class RteCallRequest(BaseModel):
    args: list[str] = []


class RteCallResponse(BaseModel):
    result: str
