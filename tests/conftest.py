import json
import os

# must be set before course_player reads its settings
os.environ.setdefault("OUTBOX_DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx
import pytest
from httpx import Client
from sqlalchemy.orm import sessionmaker

from course_player import models  # noqa: F401
from course_player.core.config import Settings
from course_player.db.base import Base
from course_player.db.session import build_engine
from course_player.schemas.course import Course
from course_player.schemas.progress import LessonProgress, merge_progress
from course_player.schemas.xapi import Actor
from course_player.services.backend_client import BackendClient
from course_player.services.scorm_runtime import RteSlot


RUN_INTEGRATION = os.getenv("RUN_INTEGRATION") == "1"
BASE_URL = os.getenv("BASE_URL", "http://localhost:10724")
LMS_URL = "http://lms.test/v1"


@pytest.fixture(scope="session")
def base_url() -> str:
    return BASE_URL


@pytest.fixture(scope="session")
def client(base_url: str):
    with Client(base_url=base_url, timeout=20.0) as c:
        yield c


@pytest.fixture(scope="session")
def integration_enabled() -> bool:
    return RUN_INTEGRATION


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


# ── Domain fixtures ───────────────────────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    return Settings(outbox_database_url="sqlite://")


@pytest.fixture
def actor() -> Actor:
    return Actor(id="learner-1", name="Ada Learner", email="ada@example.com")


@pytest.fixture
def course() -> Course:
    return Course.model_validate(
        {
            "id": "course-1",
            "title": "Data Literacy",
            "modules": [
                {
                    "id": "m1",
                    "title": "Basics",
                    "lessons": [
                        {"id": "video-1", "title": "Intro video", "type": "Video", "contentUrl": "https://cdn.test/v1.mp4", "duration": 100},
                        {"id": "pdf-1", "title": "Reading", "type": "PDF", "contentUrl": "https://cdn.test/r.pdf"},
                        {"id": "quiz-1", "title": "Check-in", "type": "Quiz", "assessmentId": "assess-1"},
                    ],
                },
                {
                    "id": "m2",
                    "title": "Practice",
                    "lessons": [
                        {"id": "scorm-1", "title": "Simulation", "type": "SCORM", "scormPackageId": "pkg-1", "scormVersion": "2004"},
                        {"id": "text-1", "title": "Wrap-up", "type": "Text"},
                    ],
                },
            ],
        }
    )


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def rte() -> RteSlot:
    return RteSlot()


# ── Fake LMS backend ──────────────────────────────────────────────────────────

class FakeLms:
    """In-memory LMS behind an ``httpx.MockTransport``."""

    def __init__(self, course: Course) -> None:
        self.course = course
        self.progress: dict[str, LessonProgress] = {}
        self.patches: list[list[dict]] = []
        self.statements: list[dict] = []
        self.grades: dict[str, tuple[bool, float]] = {}
        # statuses answered to the next writes, oldest first
        self.write_failures: list[int] = []
        self.offline = False

    def seed(self, *records: LessonProgress) -> None:
        for record in records:
            self.progress[record.lesson_id] = record

    def backend(self) -> BackendClient:
        return BackendClient(base_url=LMS_URL, token="test-token", transport=httpx.MockTransport(self.handle))

    def handle(self, request: httpx.Request) -> httpx.Response:
        if self.offline:
            raise httpx.ConnectError("network down", request=request)

        path = request.url.path.removeprefix("/v1")
        if request.method == "GET" and path == f"/courses/{self.course.id}":
            return _ok(self.course.model_dump(mode="json", by_alias=True))
        if request.method == "GET" and path.startswith("/courses/"):
            return httpx.Response(404, json={"success": False, "message": "not found"})
        if request.method == "GET" and path == f"/progress/{self.course.id}":
            if not self.progress:
                return _ok(None)
            lessons = {k: v.model_dump(mode="json", by_alias=True) for k, v in self.progress.items()}
            return _ok({"courseId": self.course.id, "lessonProgress": lessons})

        if request.method in ("PATCH", "POST") and self.write_failures:
            return httpx.Response(self.write_failures.pop(0), json={"success": False})

        if request.method == "PATCH" and path == f"/progress/{self.course.id}":
            lessons = json.loads(request.content)["lessons"]
            self.patches.append(lessons)
            for raw in lessons:
                incoming = LessonProgress.model_validate(raw)
                self.progress[incoming.lesson_id] = merge_progress(self.progress.get(incoming.lesson_id), incoming)
            return _ok(None)
        if request.method == "POST" and path == "/xapi/statements":
            self.statements.extend(json.loads(request.content)["statements"])
            return _ok(None)
        if request.method == "POST" and path.startswith("/assessments/") and path.endswith("/submit"):
            assessment_id = path.split("/")[2]
            passed, percentage = self.grades.get(assessment_id, (True, 100.0))
            return _ok({"passed": passed, "percentage": percentage})
        return httpx.Response(404)

    def verbs(self) -> list[str]:
        return [s["verb"]["id"].rsplit("/", 1)[-1] for s in self.statements]


def _ok(data) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "data": data})


@pytest.fixture
def lms(course: Course) -> FakeLms:
    return FakeLms(course)
