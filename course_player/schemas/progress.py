from datetime import datetime

from pydantic import ConfigDict, Field, computed_field

from course_player.schemas.course import Course, WireModel


def clamp_percentage(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(100.0, float(value)))


class LessonProgress(WireModel):
    model_config = ConfigDict(frozen=True)

    lesson_id: str
    completion_percentage: float = 0.0
    is_completed: bool = False
    current_position: float | None = None
    suspend_data: str | None = None
    last_accessed_at: datetime | None = None
    is_passed: bool | None = None


def merge_progress(current: LessonProgress | None, incoming: LessonProgress) -> LessonProgress:
    """Fold ``incoming`` into ``current`` keeping the monotone fields monotone.

    Percentage keeps its high-water mark and completion is sticky. Every other
    field takes the incoming value when it carries one.
    """
    if current is None:
        return incoming.model_copy(
            update={"completion_percentage": clamp_percentage(incoming.completion_percentage)}
        )
    return current.model_copy(
        update={
            "completion_percentage": max(
                current.completion_percentage, clamp_percentage(incoming.completion_percentage)
            ),
            "is_completed": current.is_completed or incoming.is_completed,
            "current_position": (
                incoming.current_position if incoming.current_position is not None else current.current_position
            ),
            "suspend_data": incoming.suspend_data if incoming.suspend_data is not None else current.suspend_data,
            "last_accessed_at": _latest(current.last_accessed_at, incoming.last_accessed_at),
            "is_passed": incoming.is_passed if incoming.is_passed is not None else current.is_passed,
        }
    )


def _latest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


class LessonProgressDelta(WireModel):
    """Tracker output: the merged progress of one lesson after one observation."""

    model_config = ConfigDict(frozen=True)

    progress: LessonProgress
    changed: bool = True
    completed_now: bool = False

    @property
    def lesson_id(self) -> str:
        return self.progress.lesson_id


class CourseProgressSnapshot(WireModel):
    course_id: str
    lesson_progress: dict[str, LessonProgress] = Field(default_factory=dict)
    total_lessons: int | None = None

    @computed_field
    @property
    def completion_percentage(self) -> float:
        total = self.total_lessons or len(self.lesson_progress)
        if not total:
            return 0.0
        completed = sum(1 for p in self.lesson_progress.values() if p.is_completed)
        return round(min(completed, total) / total * 100, 2)

    @classmethod
    def for_course(cls, course: Course, lesson_progress: dict[str, LessonProgress]) -> "CourseProgressSnapshot":
        return cls(course_id=course.id, lesson_progress=dict(lesson_progress), total_lessons=course.lesson_count())


class LockEntry(WireModel):
    model_config = ConfigDict(frozen=True)

    module_index: int
    lesson_index: int
    lesson_id: str
    locked: bool
    reason: str | None = None
    code: str | None = None


class LockState(WireModel):
    course_id: str
    entries: list[LockEntry] = Field(default_factory=list)

    def get(self, module_index: int, lesson_index: int) -> LockEntry | None:
        for entry in self.entries:
            if entry.module_index == module_index and entry.lesson_index == lesson_index:
                return entry
        return None

    def is_locked(self, module_index: int, lesson_index: int) -> bool:
        entry = self.get(module_index, lesson_index)
        return True if entry is None else entry.locked
