from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Backend payloads are camelCase; Python attributes stay snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LessonType(str, Enum):
    VIDEO = "Video"
    AUDIO = "Audio"
    PDF = "PDF"
    SCORM = "SCORM"
    QUIZ = "Quiz"
    TEXT = "Text"


MEDIA_LESSON_TYPES = frozenset({LessonType.VIDEO, LessonType.AUDIO})


class ScormVersion(str, Enum):
    SCORM_12 = "1.2"
    SCORM_2004 = "2004"


class Lesson(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    type: LessonType
    content_url: str | None = None
    scorm_package_id: str | None = None
    scorm_version: ScormVersion | None = None
    assessment_id: str | None = None
    duration: float | None = None
    description: str | None = None


class Module(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    lessons: tuple[Lesson, ...] = ()
    assessment_id: str | None = None


class Course(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    modules: tuple[Module, ...] = Field(default=())

    def iter_lessons(self):
        """Yield (module_index, lesson_index, lesson) in declared order."""
        for m_idx, module in enumerate(self.modules):
            for l_idx, lesson in enumerate(module.lessons):
                yield m_idx, l_idx, lesson

    def locate(self, lesson_id: str) -> tuple[int, int] | None:
        for m_idx, l_idx, lesson in self.iter_lessons():
            if lesson.id == lesson_id:
                return m_idx, l_idx
        return None

    def lesson_at(self, module_index: int, lesson_index: int) -> Lesson | None:
        if not 0 <= module_index < len(self.modules):
            return None
        lessons = self.modules[module_index].lessons
        if not 0 <= lesson_index < len(lessons):
            return None
        return lessons[lesson_index]

    def lesson_count(self) -> int:
        return sum(len(module.lessons) for module in self.modules)
