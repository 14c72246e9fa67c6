"""
Per-content-type completion detection.

The tracker turns one widget observation into the merged ``LessonProgress`` of a
lesson. It never performs I/O; the caller owns the progress map and applies the
returned delta.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime

from course_player.core.clock import now_utc
from course_player.core.config import Settings, get_settings
from course_player.core.errors import InvalidSignal, PolicySeekViolation
from course_player.schemas.course import MEDIA_LESSON_TYPES, Lesson, LessonType
from course_player.schemas.progress import LessonProgress, LessonProgressDelta, clamp_percentage
from course_player.schemas.signals import (
    MediaEnded,
    MediaProgress,
    MediaSeek,
    PdfPagesViewed,
    PlaybackState,
    QuizResult,
    ScormStatus,
    TextViewed,
)

logger = logging.getLogger(__name__)

SCORM_COMPLETE_STATUSES = frozenset({"completed", "passed"})

_ALLOWED_SIGNALS = {
    MediaProgress: MEDIA_LESSON_TYPES,
    MediaEnded: MEDIA_LESSON_TYPES,
    MediaSeek: MEDIA_LESSON_TYPES,
    PlaybackState: MEDIA_LESSON_TYPES,
    PdfPagesViewed: frozenset({LessonType.PDF}),
    ScormStatus: frozenset({LessonType.SCORM}),
    QuizResult: frozenset({LessonType.QUIZ}),
    TextViewed: frozenset({LessonType.TEXT}),
}


class ContentProgressTracker:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        # distinct PDF pages seen this session, per lesson
        self._pdf_pages: dict[str, set[int]] = {}

    def observe(
        self,
        progress: Mapping[str, LessonProgress],
        lesson: Lesson,
        signal,
        now: datetime | None = None,
    ) -> LessonProgressDelta:
        allowed = _ALLOWED_SIGNALS.get(type(signal))
        if allowed is None or lesson.type not in allowed:
            raise InvalidSignal(f"{type(signal).__name__} does not apply to {lesson.type.value} lesson {lesson.id}")

        current = progress.get(lesson.id) or LessonProgress(lesson_id=lesson.id)
        now = now or now_utc()

        if isinstance(signal, MediaProgress):
            return self._media_progress(current, lesson, signal, now)
        if isinstance(signal, MediaEnded):
            return self._media_ended(current, lesson, signal, now)
        if isinstance(signal, MediaSeek):
            return self._media_seek(current, lesson, signal, now)
        if isinstance(signal, PdfPagesViewed):
            return self._pdf_pages_viewed(current, signal, now)
        if isinstance(signal, ScormStatus):
            return self._scorm_status(current, signal, now)
        if isinstance(signal, QuizResult):
            return self._finish(current, now, is_passed=signal.passed)
        if isinstance(signal, TextViewed):
            return self._finish(current, now)
        # PlaybackState only drives the heartbeat cadence.
        return LessonProgressDelta(progress=current, changed=False)

    # ── Video / Audio ────────────────────────────────────────────────────────

    def _media_progress(
        self, current: LessonProgress, lesson: Lesson, signal: MediaProgress, now: datetime
    ) -> LessonProgressDelta:
        percentage = clamp_percentage(signal.fraction * 100)
        if percentage <= current.completion_percentage:
            return LessonProgressDelta(progress=current, changed=False)

        position = signal.position_seconds
        if position is None and lesson.duration:
            position = signal.fraction * lesson.duration

        completed = current.is_completed or percentage >= self._settings.completion_threshold
        updated = current.model_copy(
            update={
                "completion_percentage": percentage,
                "is_completed": completed,
                "current_position": position if position is not None else current.current_position,
                "last_accessed_at": now,
            }
        )
        return LessonProgressDelta(progress=updated, completed_now=completed and not current.is_completed)

    def _media_ended(
        self, current: LessonProgress, lesson: Lesson, signal: MediaEnded, now: datetime
    ) -> LessonProgressDelta:
        position = signal.position_seconds
        if position is None:
            position = lesson.duration
        return self._finish(current, now, position=position)

    def _media_seek(
        self, current: LessonProgress, lesson: Lesson, signal: MediaSeek, now: datetime
    ) -> LessonProgressDelta:
        allowed = current.completion_percentage / 100
        if not current.is_completed and signal.target_fraction > allowed + self._settings.seek_tolerance_fraction:
            logger.info(
                "Seek blocked on lesson %s: requested %.3f, watched up to %.3f",
                lesson.id,
                signal.target_fraction,
                allowed,
            )
            raise PolicySeekViolation(lesson.id, signal.target_fraction, allowed)

        position = signal.position_seconds
        if position is None and lesson.duration:
            position = signal.target_fraction * lesson.duration
        if position is None or position == current.current_position:
            return LessonProgressDelta(progress=current, changed=False)
        updated = current.model_copy(update={"current_position": position, "last_accessed_at": now})
        return LessonProgressDelta(progress=updated)

    # ── PDF ──────────────────────────────────────────────────────────────────

    def _pdf_pages_viewed(self, current: LessonProgress, signal: PdfPagesViewed, now: datetime) -> LessonProgressDelta:
        threshold = self._settings.pdf_visibility_threshold
        seen = self._pdf_pages.setdefault(current.lesson_id, set())
        before = len(seen)
        seen.update(
            page for page, ratio in signal.pages.items() if 1 <= page <= signal.total_pages and ratio >= threshold
        )

        percentage = clamp_percentage(len(seen) / signal.total_pages * 100)
        position = signal.current_page
        if position is None and len(seen) > before:
            position = max(seen)

        if percentage <= current.completion_percentage and (
            position is None or position == current.current_position
        ):
            return LessonProgressDelta(progress=current, changed=False)

        percentage = max(percentage, current.completion_percentage)
        completed = current.is_completed or percentage >= self._settings.completion_threshold
        updated = current.model_copy(
            update={
                "completion_percentage": percentage,
                "is_completed": completed,
                "current_position": position if position is not None else current.current_position,
                "last_accessed_at": now,
            }
        )
        return LessonProgressDelta(progress=updated, completed_now=completed and not current.is_completed)

    # ── SCORM ────────────────────────────────────────────────────────────────

    def _scorm_status(self, current: LessonProgress, signal: ScormStatus, now: datetime) -> LessonProgressDelta:
        percentage = current.completion_percentage
        completed = current.is_completed
        if signal.status in SCORM_COMPLETE_STATUSES:
            percentage, completed = 100.0, True
        elif signal.score is not None:
            percentage = max(percentage, clamp_percentage(signal.score))

        is_passed = current.is_passed
        if signal.success == "passed" or signal.status == "passed":
            is_passed = True
        elif signal.success == "failed" or signal.status == "failed":
            is_passed = False

        suspend_data = signal.suspend_data if signal.suspend_data is not None else current.suspend_data
        updated = current.model_copy(
            update={
                "completion_percentage": percentage,
                "is_completed": completed,
                "is_passed": is_passed,
                "suspend_data": suspend_data,
                "last_accessed_at": now,
            }
        )
        changed = (
            percentage != current.completion_percentage
            or completed != current.is_completed
            or is_passed != current.is_passed
            or suspend_data != current.suspend_data
        )
        if not changed:
            return LessonProgressDelta(progress=current, changed=False)
        return LessonProgressDelta(progress=updated, completed_now=completed and not current.is_completed)

    # ── Terminal signals (ended, quiz, text) ─────────────────────────────────

    def _finish(
        self,
        current: LessonProgress,
        now: datetime,
        position: float | None = None,
        is_passed: bool | None = None,
    ) -> LessonProgressDelta:
        update = {"completion_percentage": 100.0, "is_completed": True, "last_accessed_at": now}
        if position is not None:
            update["current_position"] = position
        if is_passed is not None:
            update["is_passed"] = is_passed
        updated = current.model_copy(update=update)
        return LessonProgressDelta(progress=updated, completed_now=not current.is_completed)
