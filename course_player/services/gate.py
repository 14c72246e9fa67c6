"""Sequential lesson/module locking."""

from collections.abc import Mapping

from course_player.core.config import get_settings
from course_player.core.error_codes import ErrorCode
from course_player.core.errors import GateViolation
from course_player.schemas.course import Course, Lesson, LessonType
from course_player.schemas.progress import LessonProgress, LockEntry, LockState

LESSON_LOCKED_REASON = "Please complete the previous lesson to unlock this content."
QUIZ_LOCKED_REASON = "Please complete at least {threshold:g}% of the previous content to unlock this quiz."


def compute_lock_state(
    course: Course,
    progress: Mapping[str, LessonProgress],
    quiz_unlock_threshold: float | None = None,
) -> LockState:
    """Lock status for every lesson of ``course``, walked in declared order."""
    if quiz_unlock_threshold is None:
        quiz_unlock_threshold = get_settings().quiz_unlock_threshold

    entries: list[LockEntry] = []
    predecessor: Lesson | None = None
    last_content: Lesson | None = None

    for m_idx, l_idx, lesson in course.iter_lessons():
        reason = code = None
        if predecessor is not None and not _completed(progress, predecessor):
            reason, code = LESSON_LOCKED_REASON, ErrorCode.LESSON_LOCKED
        elif lesson.type is LessonType.QUIZ and last_content is not None:
            if _percentage(progress, last_content) < quiz_unlock_threshold:
                reason = QUIZ_LOCKED_REASON.format(threshold=quiz_unlock_threshold)
                code = ErrorCode.QUIZ_LOCKED

        entries.append(
            LockEntry(
                module_index=m_idx,
                lesson_index=l_idx,
                lesson_id=lesson.id,
                locked=reason is not None,
                reason=reason,
                code=code,
            )
        )
        predecessor = lesson
        if lesson.type is not LessonType.QUIZ:
            last_content = lesson

    return LockState(course_id=course.id, entries=entries)


def check_access(
    course: Course,
    progress: Mapping[str, LessonProgress],
    module_index: int,
    lesson_index: int,
    quiz_unlock_threshold: float | None = None,
) -> Lesson:
    lesson = course.lesson_at(module_index, lesson_index)
    if lesson is None:
        raise GateViolation(f"{module_index}:{lesson_index}", "Lesson does not exist in this course.")

    entry = compute_lock_state(course, progress, quiz_unlock_threshold).get(module_index, lesson_index)
    if entry is not None and entry.locked:
        raise GateViolation(lesson.id, entry.reason or LESSON_LOCKED_REASON, code=entry.code or ErrorCode.LESSON_LOCKED)
    return lesson


def _completed(progress: Mapping[str, LessonProgress], lesson: Lesson) -> bool:
    entry = progress.get(lesson.id)
    return bool(entry and entry.is_completed)


def _percentage(progress: Mapping[str, LessonProgress], lesson: Lesson) -> float:
    entry = progress.get(lesson.id)
    return entry.completion_percentage if entry else 0.0
