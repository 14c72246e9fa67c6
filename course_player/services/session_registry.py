"""In-process registry of open playback sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from course_player.core.config import Settings, get_settings
from course_player.core.error_codes import ErrorCode
from course_player.core.errors import ApiError
from course_player.schemas.progress import CourseProgressSnapshot, merge_progress
from course_player.schemas.xapi import Actor
from course_player.services.backend_client import BackendClient
from course_player.services.connectivity import ConnectivityMonitor
from course_player.services.outbox import KIND_PROGRESS, Outbox
from course_player.services.player_session import PlayerSession
from course_player.services.scorm_runtime import RteSlot
from course_player.services.sync_engine import SyncEngine, SyncResult, coalesce_progress

logger = logging.getLogger(__name__)


@dataclass
class SessionHandle:
    session: PlayerSession
    backend: BackendClient
    connectivity: ConnectivityMonitor

    @property
    def session_id(self) -> str:
        return self.session.session_id


class SessionRegistry:
    def __init__(self) -> None:
        self._handles: dict[str, SessionHandle] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def session_ids(self) -> list[str]:
        return list(self._handles)

    def add(self, handle: SessionHandle) -> None:
        self._handles[handle.session_id] = handle

    def get(self, session_id: str) -> SessionHandle:
        handle = self._handles.get(session_id)
        if handle is None:
            raise ApiError(status_code=404, code=ErrorCode.SESSION_NOT_FOUND, message="Session not found")
        return handle

    async def close(self, session_id: str) -> SyncResult | None:
        handle = self.get(session_id)
        del self._handles[session_id]
        try:
            return await handle.session.teardown()
        finally:
            await handle.backend.aclose()

    async def close_all(self) -> None:
        for session_id in self.session_ids():
            await self.close(session_id)


registry = SessionRegistry()


def _with_unsent_progress(snapshot: CourseProgressSnapshot, outbox: Outbox) -> CourseProgressSnapshot:
    # progress queued by an earlier session that never reached the backend
    pending = [e for e in outbox.pending() if e.kind == KIND_PROGRESS]
    if not pending:
        return snapshot
    merged = dict(snapshot.lesson_progress)
    for progress in coalesce_progress(pending):
        merged[progress.lesson_id] = merge_progress(merged.get(progress.lesson_id), progress)
    logger.info("Restored %d unsent progress records for course %s", len(pending), snapshot.course_id)
    return snapshot.model_copy(update={"lesson_progress": merged})


async def open_session(
    course_id: str,
    actor: Actor,
    backend: BackendClient,
    session_factory: sessionmaker[Session],
    settings: Settings | None = None,
    online: bool = True,
    slot: RteSlot | None = None,
) -> SessionHandle:
    settings = settings or get_settings()
    course = await backend.get_course(course_id)
    snapshot = await backend.get_progress(course.id)

    outbox = Outbox(session_factory, course.id, actor.id)
    snapshot = _with_unsent_progress(snapshot, outbox)
    connectivity = ConnectivityMonitor(online=online)
    sync = SyncEngine(backend, outbox, connectivity, settings)
    session = PlayerSession(course, snapshot, actor, sync, backend=backend, settings=settings, slot=slot)
    session.start()
    logger.info("Session %s opened for course %s (actor %s)", session.session_id, course.id, actor.id)
    return SessionHandle(session=session, backend=backend, connectivity=connectivity)
