"""
Durable FIFO queue of outbound progress records and xAPI statements.

Rows are written once and deleted only after the backend acknowledged them; the
payload of a row is never rewritten.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from course_player.models import OutboxEntry
from course_player.schemas.progress import LessonProgress
from course_player.schemas.xapi import XapiStatement

logger = logging.getLogger(__name__)

KIND_PROGRESS = "progress"
KIND_STATEMENT = "statement"


class Outbox:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        course_id: str,
        actor_id: str,
        offload: bool | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.course_id = course_id
        self.actor_id = actor_id
        # networked databases are written from a worker thread, local SQLite inline
        self.offload = _is_networked(session_factory) if offload is None else offload

    def add_progress(self, progress: LessonProgress) -> int:
        return self._add(KIND_PROGRESS, progress.lesson_id, progress.model_dump(mode="json", by_alias=True))

    def add_statement(self, statement: XapiStatement) -> int:
        return self._add(KIND_STATEMENT, None, statement.model_dump(mode="json", by_alias=True))

    def pending(self, limit: int | None = None) -> list[OutboxEntry]:
        stmt = (
            select(OutboxEntry)
            .where(OutboxEntry.course_id == self.course_id, OutboxEntry.actor_id == self.actor_id)
            .order_by(OutboxEntry.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def count(self) -> int:
        stmt = select(func.count()).select_from(OutboxEntry).where(
            OutboxEntry.course_id == self.course_id, OutboxEntry.actor_id == self.actor_id
        )
        with self._session_factory() as db:
            return int(db.execute(stmt).scalar_one())

    def ack(self, ids: Iterable[int]) -> None:
        ids = list(ids)
        if not ids:
            return
        with self._session_factory() as db:
            db.execute(delete(OutboxEntry).where(OutboxEntry.id.in_(ids)))
            db.commit()

    def record_failure(self, ids: Iterable[int], permanent: bool, max_rejections: int) -> list[int]:
        """Bump retry counters. Returns the ids dropped for exceeding ``max_rejections``."""
        ids = list(ids)
        dropped: list[int] = []
        if not ids:
            return dropped
        with self._session_factory() as db:
            rows = db.execute(select(OutboxEntry).where(OutboxEntry.id.in_(ids))).scalars().all()
            for row in rows:
                row.attempts += 1
                if permanent:
                    row.rejections += 1
                    if row.rejections > max_rejections:
                        dropped.append(row.id)
                        db.delete(row)
            db.commit()
        if dropped:
            logger.error("Dropped %d outbox entries rejected by the backend: %s", len(dropped), dropped)
        return dropped

    def _add(self, kind: str, lesson_id: str | None, payload: dict) -> int:
        row = OutboxEntry(
            course_id=self.course_id,
            actor_id=self.actor_id,
            kind=kind,
            lesson_id=lesson_id,
            payload=payload,
        )
        with self._session_factory() as db:
            db.add(row)
            db.commit()
            return row.id


def _is_networked(session_factory: sessionmaker[Session]) -> bool:
    bind = session_factory.kw.get("bind")
    return bind is not None and bind.dialect.name != "sqlite"
