"""
Playback session: one learner, one course.

The session owns the lesson progress map. Widget events are queued and applied
one at a time by the tracker; every mutation recomputes the lock state and
notifies listeners. Each opened lesson gets a ``LessonSession`` holding its two
timers and, for SCORM lessons, the runtime shim installed in the session's RTE slot.
Closing the lesson session cancels both timers and uninstalls the shim in the
same step.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from course_player.core.config import Settings, get_settings
from course_player.core.error_codes import ErrorCode
from course_player.core.errors import ApiError, InvalidSignal, PolicySeekViolation
from course_player.schemas.course import MEDIA_LESSON_TYPES, Course, Lesson, LessonType
from course_player.schemas.progress import (
    CourseProgressSnapshot,
    LessonProgress,
    LessonProgressDelta,
    LockState,
)
from course_player.schemas.signals import PlaybackState, QuizResult, ScormStatus
from course_player.schemas.xapi import Actor
from course_player.services.backend_client import BackendClient
from course_player.services.gate import check_access, compute_lock_state
from course_player.services.scorm_runtime import RteSlot, RuntimeState, ScormRuntimeShim
from course_player.services.sync_engine import SyncEngine, SyncResult
from course_player.services.tracker import ContentProgressTracker
from course_player.services.xapi_emitter import XapiEmitter

logger = logging.getLogger(__name__)

ProgressListener = Callable[[LessonProgress, LockState], None]


@dataclass
class Notice:
    level: str
    message: str
    code: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


class LessonSession:
    """Scoped resources of the lesson currently open."""

    def __init__(self, lesson: Lesson, shim: ScormRuntimeShim | None = None) -> None:
        self.lesson = lesson
        self.shim = shim
        self.playing = False
        self.closed = False
        self._timers: list[asyncio.Task] = []

    def start_timers(self, *timers: tuple[float, Callable[[], Awaitable[Any]]]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; timers for lesson %s not started", self.lesson.id)
            return
        for interval, callback in timers:
            self._timers.append(loop.create_task(_run_every(interval, callback, self.lesson.id)))

    @property
    def timers(self) -> list[asyncio.Task]:
        return list(self._timers)

    def close(self, slot: RteSlot) -> None:
        if self.closed:
            return
        self.closed = True
        for task in self._timers:
            task.cancel()
        self._timers.clear()
        if self.shim is not None:
            slot.uninstall(self.shim)


async def _run_every(interval: float, callback: Callable[[], Awaitable[Any]], lesson_id: str) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await callback()
        except ApiError as exc:
            logger.warning("Timer callback failed for lesson %s: %s", lesson_id, exc.message)
        except Exception:
            logger.exception("Timer callback crashed for lesson %s", lesson_id)


@dataclass
class LessonLaunch:
    lesson: Lesson
    module_index: int
    lesson_index: int
    resume_position: float | None
    progress: LessonProgress | None
    rte_api: str | None = None


class PlayerSession:
    def __init__(
        self,
        course: Course,
        snapshot: CourseProgressSnapshot,
        actor: Actor,
        sync: SyncEngine,
        backend: BackendClient | None = None,
        settings: Settings | None = None,
        slot: RteSlot | None = None,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.course = course
        self.actor = actor
        self.sync = sync
        self._backend = backend
        self._settings = settings or get_settings()
        self.rte = slot or RteSlot()
        self.tracker = ContentProgressTracker(self._settings)
        self.emitter = XapiEmitter(actor, sync.enqueue)
        sync.subscribe_warnings(self.add_warning)

        self._progress: dict[str, LessonProgress] = dict(snapshot.lesson_progress)
        self._lock_state = self._compute_lock_state()
        self._listeners: list[ProgressListener] = []
        self._notices: list[Notice] = []
        self._dirty: set[str] = set()
        self._current: LessonSession | None = None
        self._queue: asyncio.Queue[tuple[str, Any, asyncio.Future | None]] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self.torn_down = False

    # ── produced interface ───────────────────────────────────────────────────

    def get_lock_state(self) -> LockState:
        return self._lock_state

    def get_lesson_progress(self, lesson_id: str) -> LessonProgress | None:
        return self._progress.get(lesson_id)

    def snapshot(self) -> CourseProgressSnapshot:
        return CourseProgressSnapshot.for_course(self.course, self._progress)

    def on_progress_changed(self, callback: ProgressListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def drain_notices(self) -> list[Notice]:
        notices, self._notices = self._notices, []
        return notices

    @property
    def current_lesson(self) -> LessonSession | None:
        return self._current

    # ── lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.get_running_loop().create_task(self._consume())
        # entries left behind by an earlier session go out first
        self.sync.flush_soon("startup")

    async def teardown(self) -> SyncResult | None:
        if self.torn_down:
            return None
        await self.drain()
        self._close_lesson(terminate_scorm=True)
        self._enqueue_dirty()
        await self.sync.wait_idle()
        result = await self.sync.flush("teardown")
        self.torn_down = True
        self.sync.close()
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        self._listeners.clear()
        return result

    async def save_and_exit(self) -> SyncResult:
        await self.drain()
        self._close_lesson(terminate_scorm=True)
        self._enqueue_dirty()
        await self.sync.wait_idle()
        return await self.sync.flush("save_and_exit")

    # ── lesson launch ────────────────────────────────────────────────────────

    def launch_lesson(self, lesson_id: str) -> LessonLaunch:
        self._ensure_alive()
        position = self.course.locate(lesson_id)
        if position is None:
            raise ApiError(status_code=404, code=ErrorCode.LESSON_NOT_FOUND, message="Lesson not found")
        m_idx, l_idx = position
        lesson = check_access(
            self.course, self._progress, m_idx, l_idx, quiz_unlock_threshold=self._settings.quiz_unlock_threshold
        )

        self._close_lesson(terminate_scorm=True)
        progress = self._progress.get(lesson.id)

        shim = None
        if lesson.type is LessonType.SCORM:
            shim = ScormRuntimeShim(
                lesson,
                self.actor,
                on_status=lambda signal: self._on_scorm_status(lesson, signal),
                on_commit=lambda signal: self._on_scorm_commit(lesson, signal),
                suspend_data=progress.suspend_data if progress else None,
            )
            self.rte.install(shim)

        current = LessonSession(lesson, shim)
        current.start_timers(
            (self._settings.heartbeat_interval_seconds, self.heartbeat),
            (self._settings.sync_interval_seconds, self.periodic_sync),
        )
        self._current = current
        self.emitter.launched(lesson)
        logger.info("Lesson %s (%s) launched in session %s", lesson.id, lesson.type.value, self.session_id)
        return LessonLaunch(
            lesson=lesson,
            module_index=m_idx,
            lesson_index=l_idx,
            resume_position=progress.current_position if progress else None,
            progress=progress,
            rte_api=shim.dialect.api_name if shim else None,
        )

    def _close_lesson(self, terminate_scorm: bool) -> None:
        current = self._current
        if current is None:
            return
        if terminate_scorm and current.shim is not None and current.shim.state is RuntimeState.INITIALIZED:
            current.shim.terminate()
        current.close(self.rte)
        self._current = None

    # ── events ───────────────────────────────────────────────────────────────

    def post_event(self, lesson_id: str, signal: Any) -> None:
        """Queue a widget event; it is applied in arrival order by the consumer."""
        self._ensure_alive()
        self._queue.put_nowait((lesson_id, signal, None))

    async def submit_event(self, lesson_id: str, signal: Any) -> LessonProgressDelta:
        """Queue a widget event and wait for the consumer to apply it.

        Errors raised while applying (seek violations, invalid signals) are
        re-raised here instead of being logged.
        """
        self._ensure_alive()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((lesson_id, signal, future))
        return await future

    async def drain(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            await self._queue.join()

    async def _consume(self) -> None:
        while True:
            lesson_id, signal, future = await self._queue.get()
            try:
                delta = self.dispatch(lesson_id, signal)
            except ApiError as exc:
                if future is None:
                    logger.info("Event for lesson %s not applied: %s", lesson_id, exc.message)
                elif not future.done():
                    future.set_exception(exc)
            except Exception as exc:
                logger.exception("Event for lesson %s crashed the reducer", lesson_id)
                if future is not None and not future.done():
                    future.set_exception(exc)
            else:
                if future is not None and not future.done():
                    future.set_result(delta)
            finally:
                self._queue.task_done()

    def dispatch(self, lesson_id: str, signal: Any) -> LessonProgressDelta:
        """Apply one observation synchronously.

        Locked lessons reject observations with ``GateViolation`` before any
        state is touched.
        """
        lesson = self._accessible_lesson(lesson_id)

        if isinstance(signal, PlaybackState):
            if lesson.type not in MEDIA_LESSON_TYPES:
                raise InvalidSignal(f"playback state does not apply to {lesson.type.value} lesson {lesson.id}")
            if self._current is not None and self._current.lesson.id == lesson.id:
                self._current.playing = signal.playing
            current = self._progress.get(lesson.id) or LessonProgress(lesson_id=lesson.id)
            return LessonProgressDelta(progress=current, changed=False)

        try:
            delta = self.tracker.observe(self._progress, lesson, signal)
        except PolicySeekViolation as exc:
            self._notices.append(Notice("error", exc.message, exc.code, exc.detail))
            raise

        if delta.changed:
            self._apply(delta)
        if isinstance(signal, QuizResult):
            self.emitter.quiz_result(lesson, signal.passed, signal.percentage)
        if delta.completed_now:
            self._on_completed(lesson, delta)
        return delta

    def _apply(self, delta: LessonProgressDelta) -> None:
        self._progress[delta.lesson_id] = delta.progress
        self._dirty.add(delta.lesson_id)
        self._lock_state = self._compute_lock_state()
        for listener in list(self._listeners):
            listener(delta.progress, self._lock_state)

    def _on_completed(self, lesson: Lesson, delta: LessonProgressDelta) -> None:
        if lesson.type is not LessonType.QUIZ:
            self.emitter.completed(lesson)
            self._notices.append(Notice("info", f"{lesson.title} completed! You can now proceed to the next lesson."))
        self.sync.enqueue(delta)
        self._dirty.discard(lesson.id)
        self.sync.flush_soon("lesson_completed")

    # ── quiz ─────────────────────────────────────────────────────────────────

    async def submit_quiz(self, lesson_id: str, answers: Any) -> QuizResult:
        lesson = self._accessible_quiz(lesson_id)
        if self._backend is None or not lesson.assessment_id:
            raise ApiError(status_code=503, code=ErrorCode.GRADING_UNAVAILABLE, message="Quiz grading is unavailable")
        result = await self._backend.submit_quiz(lesson.assessment_id, answers)
        return self.record_quiz_result(lesson_id, result.passed, result.percentage)

    def record_quiz_result(self, lesson_id: str, passed: bool, percentage: float) -> QuizResult:
        self._accessible_quiz(lesson_id)
        result = QuizResult(passed=passed, percentage=percentage)
        delta = self.dispatch(lesson_id, result)
        if not delta.completed_now:
            # repeated attempt: persist the new pass/fail flag
            self.sync.enqueue(delta)
            self._dirty.discard(lesson_id)
            self.sync.flush_soon("quiz_submission")
        return result

    def _accessible_quiz(self, lesson_id: str) -> Lesson:
        self._ensure_alive()
        lesson = self._accessible_lesson(lesson_id)
        if lesson.type is not LessonType.QUIZ:
            raise InvalidSignal(f"Lesson {lesson_id} is not a quiz")
        return lesson

    # ── SCORM bridge ─────────────────────────────────────────────────────────

    def _on_scorm_status(self, lesson: Lesson, signal: ScormStatus) -> None:
        self.dispatch(lesson.id, signal)

    def _on_scorm_commit(self, lesson: Lesson, signal: ScormStatus) -> None:
        self.dispatch(lesson.id, signal)
        self.sync.enqueue(self._progress.get(lesson.id) or LessonProgress(lesson_id=lesson.id))
        self._dirty.discard(lesson.id)

    # ── timers ───────────────────────────────────────────────────────────────

    async def heartbeat(self) -> None:
        current = self._current
        if current is None or not current.playing or current.lesson.type not in MEDIA_LESSON_TYPES:
            return
        progress = self._progress.get(current.lesson.id)
        if progress is None:
            return
        self.sync.enqueue(progress)
        self._dirty.discard(progress.lesson_id)
        self.emitter.progressed(current.lesson, progress.current_position)
        # scheduled, not awaited: cancelling the timer must not cancel a request in flight
        self.sync.flush_soon("heartbeat")

    async def periodic_sync(self) -> None:
        self._enqueue_dirty()
        self.sync.flush_soon("periodic")

    def _enqueue_dirty(self) -> None:
        for lesson_id in sorted(self._dirty):
            self.sync.enqueue(self._progress[lesson_id])
        self._dirty.clear()

    # ── helpers ──────────────────────────────────────────────────────────────

    def _compute_lock_state(self) -> LockState:
        return compute_lock_state(self.course, self._progress, self._settings.quiz_unlock_threshold)

    def _accessible_lesson(self, lesson_id: str) -> Lesson:
        position = self.course.locate(lesson_id)
        if position is None:
            raise ApiError(status_code=404, code=ErrorCode.LESSON_NOT_FOUND, message="Lesson not found")
        return check_access(self.course, self._progress, *position, self._settings.quiz_unlock_threshold)

    def _ensure_alive(self) -> None:
        if self.torn_down:
            raise ApiError(status_code=410, code=ErrorCode.SESSION_NOT_FOUND, message="Session has ended")

    def add_warning(self, message: str) -> None:
        self._notices.append(Notice("warning", message, ErrorCode.SYNC_UNAVAILABLE))
