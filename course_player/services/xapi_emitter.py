from collections.abc import Callable
from datetime import datetime

from course_player.core.clock import now_utc
from course_player.schemas.course import Lesson, LessonType
from course_player.schemas.xapi import Actor, Verb, XapiResult, XapiStatement

ACTIVITY_TYPES = {
    LessonType.VIDEO: "video",
    LessonType.AUDIO: "audio",
    LessonType.SCORM: "module",
    LessonType.QUIZ: "assessment",
    LessonType.PDF: "document",
    LessonType.TEXT: "document",
}


def activity_id(lesson: Lesson) -> str:
    if lesson.type is LessonType.SCORM:
        return lesson.scorm_package_id or lesson.content_url or lesson.id
    if lesson.type is LessonType.QUIZ:
        return lesson.assessment_id or lesson.id
    return lesson.content_url or lesson.id


def iso_duration(seconds: float) -> str:
    return f"PT{int(max(seconds, 0))}S"


class XapiEmitter:
    """Builds statements and appends them to the outbound queue."""

    def __init__(self, actor: Actor, sink: Callable[[XapiStatement], None]) -> None:
        self.actor = actor
        self._sink = sink

    def launched(self, lesson: Lesson) -> XapiStatement:
        return self._emit(Verb.LAUNCHED, lesson)

    def progressed(self, lesson: Lesson, position_seconds: float | None) -> XapiStatement:
        result = XapiResult(duration=iso_duration(position_seconds)) if position_seconds is not None else None
        return self._emit(Verb.PROGRESSED, lesson, result)

    def completed(self, lesson: Lesson, success: bool | None = True) -> XapiStatement:
        return self._emit(Verb.COMPLETED, lesson, XapiResult(completion=True, success=success))

    def quiz_result(self, lesson: Lesson, passed: bool, percentage: float) -> XapiStatement:
        verb = Verb.PASSED if passed else Verb.FAILED
        return self._emit(verb, lesson, XapiResult(completion=True, success=passed, score=percentage))

    def _emit(
        self,
        verb: Verb,
        lesson: Lesson,
        result: XapiResult | None = None,
        timestamp: datetime | None = None,
    ) -> XapiStatement:
        statement = XapiStatement(
            actor_id=self.actor.id,
            actor_name=self.actor.name,
            actor_email=self.actor.email,
            verb=verb,
            object_id=activity_id(lesson),
            object_name=lesson.title,
            object_type=ACTIVITY_TYPES[lesson.type],
            timestamp=timestamp or now_utc(),
            result=result,
        )
        self._sink(statement)
        return statement
