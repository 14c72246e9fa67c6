"""
HTTP client for the LMS backend collaborators (catalog, progress store, xAPI sink,
grading service).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from course_player.core.config import get_settings
from course_player.core.error_codes import ErrorCode
from course_player.core.errors import ApiError, SyncPermanentFailure, SyncTransientFailure
from course_player.schemas.course import Course
from course_player.schemas.progress import CourseProgressSnapshot, LessonProgress
from course_player.schemas.signals import QuizResult
from course_player.schemas.xapi import XapiStatement

logger = logging.getLogger(__name__)

# 4xx statuses that are worth retrying
TRANSIENT_CLIENT_STATUSES = frozenset({408, 425, 429})


class BackendClient:
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.backend_base_url,
            headers=headers,
            timeout=timeout or settings.backend_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_course(self, course_id: str) -> Course:
        try:
            data = await self._request("GET", f"/courses/{course_id}")
        except SyncPermanentFailure as exc:
            if exc.status == 404:
                raise ApiError(status_code=404, code=ErrorCode.COURSE_NOT_FOUND, message="Course not found") from exc
            raise
        return Course.model_validate(_unwrap(data))

    async def get_progress(self, course_id: str) -> CourseProgressSnapshot:
        data = _unwrap(await self._request("GET", f"/progress/{course_id}"))
        if not data:
            return CourseProgressSnapshot(course_id=course_id)
        data.setdefault("courseId", course_id)
        return CourseProgressSnapshot.model_validate(data)

    async def push_progress(self, course_id: str, lessons: list[LessonProgress]) -> None:
        payload = {"lessons": [p.model_dump(mode="json", by_alias=True) for p in lessons]}
        await self._request("PATCH", f"/progress/{course_id}", json=payload)

    async def post_statements(self, statements: list[XapiStatement]) -> None:
        payload = {"statements": [s.to_wire() for s in statements]}
        await self._request("POST", "/xapi/statements", json=payload)

    async def submit_quiz(self, assessment_id: str, answers: Any) -> QuizResult:
        data = _unwrap(await self._request("POST", f"/assessments/{assessment_id}/submit", json={"answers": answers}))
        return QuizResult(passed=bool(data["passed"]), percentage=float(data["percentage"]))

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise SyncTransientFailure(f"{method} {url} failed: {exc}") from exc

        logger.debug("%s %s -> %d", method, url, resp.status_code)
        if resp.status_code >= 500 or resp.status_code in TRANSIENT_CLIENT_STATUSES:
            raise SyncTransientFailure(f"{method} {url} returned {resp.status_code}", status=resp.status_code)
        if resp.status_code >= 400:
            raise SyncPermanentFailure(f"{method} {url} rejected: {resp.status_code} {resp.text[:200]}", status=resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()


def _unwrap(data: Any) -> Any:
    # the LMS wraps payloads as {"success": true, "data": {...}}
    if isinstance(data, dict) and "data" in data and set(data) <= {"data", "success", "message"}:
        return data["data"]
    return data
