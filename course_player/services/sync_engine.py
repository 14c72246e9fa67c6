"""
Outbound synchronization of lesson progress and xAPI statements.

Everything goes through the durable outbox first; ``flush`` drains it oldest
first. While offline nothing touches the network. Delivery is at-least-once: the
backend merges progress by max percentage and sticky completion, and statements
carry stable ids.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Coroutine, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from course_player.core.config import Settings, get_settings
from course_player.core.errors import SyncPermanentFailure, SyncTransientFailure
from course_player.models import OutboxEntry
from course_player.schemas.progress import LessonProgress, LessonProgressDelta, merge_progress
from course_player.schemas.xapi import XapiStatement
from course_player.services.backend_client import BackendClient
from course_player.services.connectivity import ConnectivityMonitor
from course_player.services.outbox import KIND_PROGRESS, KIND_STATEMENT, Outbox

logger = logging.getLogger(__name__)

SYNC_WARNING = "Progress may not be saved. We will keep retrying in the background."

# outcomes of one batch delivery
SENT = "sent"
DROPPED = "dropped"
STOPPED = "stopped"


@dataclass
class SyncResult:
    reason: str = ""
    sent_progress: int = 0
    sent_statements: int = 0
    dropped: int = 0
    skipped: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.skipped is None


def coalesce_progress(entries: Iterable[OutboxEntry]) -> list[LessonProgress]:
    """One record per lesson, in order of first appearance.

    Percentages keep their maximum and completion stays sticky, so an older
    delivery arriving last cannot lower what is sent.
    """
    merged: dict[str, LessonProgress] = {}
    for entry in entries:
        progress = LessonProgress.model_validate(entry.payload)
        merged[progress.lesson_id] = merge_progress(merged.get(progress.lesson_id), progress)
    return list(merged.values())


class SyncEngine:
    def __init__(
        self,
        backend: BackendClient,
        outbox: Outbox,
        connectivity: ConnectivityMonitor,
        settings: Settings | None = None,
        on_warning: Callable[[str], None] | None = None,
    ) -> None:
        self._backend = backend
        self._outbox = outbox
        self._connectivity = connectivity
        self._settings = settings or get_settings()
        self._warning_listeners: list[Callable[[str], None]] = [on_warning] if on_warning else []
        self._lock = asyncio.Lock()
        self._rerun_requested = False
        self._closed = False
        self._consecutive_failures = 0
        self._warned = False
        self._replay_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        # one worker keeps outbox writes and reads in submission order
        self._io_worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="outbox") if outbox.offload else None
        self._writes: set[asyncio.Future] = set()
        self._unsubscribe = connectivity.subscribe(self._on_connectivity_change)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def subscribe_warnings(self, listener: Callable[[str], None]) -> None:
        self._warning_listeners.append(listener)

    def pending_count(self) -> int:
        return self._outbox.count()

    # ── enqueue ──────────────────────────────────────────────────────────────

    def enqueue(self, item: LessonProgressDelta | LessonProgress | XapiStatement) -> None:
        if isinstance(item, LessonProgressDelta):
            item = item.progress
        if isinstance(item, LessonProgress):
            write = functools.partial(self._outbox.add_progress, item)
        elif isinstance(item, XapiStatement):
            write = functools.partial(self._outbox.add_statement, item)
        else:
            raise TypeError(f"Cannot enqueue {type(item).__name__}")

        loop = _running_loop()
        if self._io_worker is None or loop is None or self._closed:
            write()
            return
        future = loop.run_in_executor(self._io_worker, write)
        self._writes.add(future)
        future.add_done_callback(self._write_done)

    def _write_done(self, future: asyncio.Future) -> None:
        self._writes.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Outbox write failed", exc_info=future.exception())

    async def _io(self, call: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if self._io_worker is None or self._closed:
            return call(*args, **kwargs)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._io_worker, functools.partial(call, *args, **kwargs))

    def flush_soon(self, reason: str) -> asyncio.Task | None:
        """Fire-and-forget flush for completion, quiz submission and similar triggers."""
        return self._spawn(self.flush(reason))

    async def tick(self) -> SyncResult:
        return await self.flush("periodic")

    # ── flush ────────────────────────────────────────────────────────────────

    async def flush(self, reason: str = "manual") -> SyncResult:
        result = SyncResult(reason=reason)
        if self._closed:
            result.skipped = "closed"
            return result
        if not self._connectivity.is_online:
            result.skipped = "offline"
            return result
        if self._lock.locked():
            # the running flush drains once more before releasing the lock
            self._rerun_requested = True
            result.skipped = "in_flight"
            return result

        async with self._lock:
            while True:
                self._rerun_requested = False
                if not await self._drain(result) or not self._rerun_requested:
                    break
            self._rerun_requested = False

        if result.sent_progress or result.sent_statements:
            logger.debug(
                "Sync (%s) sent %d progress records and %d statements",
                reason,
                result.sent_progress,
                result.sent_statements,
            )
        return result

    async def _drain(self, result: SyncResult) -> bool:
        """Send pending entries batch by batch. False when delivery stopped early."""
        while True:
            entries = await self._io(self._outbox.pending, limit=self._settings.sync_batch_size)
            if not entries:
                return True
            progress_entries = [e for e in entries if e.kind == KIND_PROGRESS]
            statement_entries = [e for e in entries if e.kind == KIND_STATEMENT]

            if progress_entries:
                records = coalesce_progress(progress_entries)
                outcome = await self._send(
                    result, progress_entries, self._backend.push_progress(self._outbox.course_id, records)
                )
                if outcome == STOPPED:
                    return False
                if outcome == SENT:
                    result.sent_progress += len(records)

            if statement_entries:
                statements = [XapiStatement.model_validate(e.payload) for e in statement_entries]
                outcome = await self._send(result, statement_entries, self._backend.post_statements(statements))
                if outcome == STOPPED:
                    return False
                if outcome == SENT:
                    result.sent_statements += len(statements)

            if len(entries) < self._settings.sync_batch_size:
                return True

    async def _send(self, result: SyncResult, entries: list[OutboxEntry], call: Coroutine[Any, Any, None]) -> str:
        ids = [e.id for e in entries]
        try:
            await call
        except SyncTransientFailure as exc:
            if self._closed:
                result.skipped = "closed"
                return STOPPED
            await self._io(
                self._outbox.record_failure, ids, permanent=False, max_rejections=self._settings.permanent_failure_retries
            )
            self._register_transient_failure(exc)
            result.error = exc.message
            return STOPPED
        except SyncPermanentFailure as exc:
            if self._closed:
                result.skipped = "closed"
                return STOPPED
            logger.error("Backend rejected %d outbox entries: %s", len(ids), exc.message)
            dropped = await self._io(
                self._outbox.record_failure, ids, permanent=True, max_rejections=self._settings.permanent_failure_retries
            )
            result.dropped += len(dropped)
            result.error = exc.message
            # a rejected batch must not hold back the rest of the queue
            return DROPPED if dropped else STOPPED

        if self._closed:
            # session torn down while the request was in flight; entries stay queued
            result.skipped = "closed"
            return STOPPED
        await self._io(self._outbox.ack, ids)
        self._consecutive_failures = 0
        self._warned = False
        return SENT

    def _register_transient_failure(self, exc: SyncTransientFailure) -> None:
        self._consecutive_failures += 1
        logger.warning("Sync failed (%d in a row): %s", self._consecutive_failures, exc.message)
        if self._consecutive_failures > self._settings.sync_warning_threshold and not self._warned:
            self._warned = True
            for listener in list(self._warning_listeners):
                listener(SYNC_WARNING)

    # ── connectivity / lifecycle ─────────────────────────────────────────────

    def _on_connectivity_change(self, online: bool) -> None:
        if not online or self._closed:
            return
        if self._replay_task is not None and not self._replay_task.done():
            return
        logger.info("Back online; replaying queued progress")
        self._replay_task = self._spawn(self.flush("reconnect"))

    def _spawn(self, coro: Coroutine[Any, Any, SyncResult]) -> asyncio.Task | None:
        loop = _running_loop()
        if loop is None:
            coro.close()
            logger.debug("No running event loop; flush deferred to the next tick")
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for queued outbox writes and scheduled flushes to settle."""
        while self._tasks or self._writes:
            await asyncio.gather(*list(self._tasks), *list(self._writes), return_exceptions=True)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        if self._io_worker is not None:
            # queued writes still land; only new submissions are refused
            self._io_worker.shutdown(wait=False)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
