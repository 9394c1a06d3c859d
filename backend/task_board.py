# task_board.py — Viewer-scoped live task board
"""
A TaskBoard holds one viewer's task list, keeps it current from the change
feed and runs engine operations against it.

Every mutating call plans a batch, shows its optimistic result immediately,
commits through the store and then settles into `confirmed` (server value)
or `failed` (snapshot restored, error published on the ErrorChannel).
Operations on one board run one at a time.
"""

import asyncio
import logging
import os
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum as PyEnum
from typing import (
    Any, AsyncContextManager, Awaitable, Callable, Deque, Dict, List, Mapping, Optional,
)

from database import async_session_maker
from errors import ErrorChannel, ErrorEvent, StoreUnavailable, TaskWiseError
from models import TaskStatus, UserRole, new_uuid, utcnow
from task_engine import (
    Actor, TaskDraft, TaskRecord, WriteBatch, allowed_statuses, apply_batch, columns,
    plan_archival_sweep, plan_create, plan_delete, plan_field_edit, plan_reopen, plan_reorder,
)
from task_feed import ChangeEvent, TaskFeed
from task_store import TaskStore

logger = logging.getLogger("taskwise.board")

ARCHIVE_SWEEP_DELAY_SECONDS = float(os.getenv("ARCHIVE_SWEEP_DELAY_SECONDS", "5"))

StoreFactory = Callable[[], AsyncContextManager[TaskStore]]
BoardListener = Callable[["TaskBoard"], Awaitable[None]]


def single_store(store: TaskStore) -> StoreFactory:
    """Factory that always hands out the same store (request-scoped use)."""
    @asynccontextmanager
    async def _factory():
        yield store
    return _factory


def session_store_factory(feed: Optional[TaskFeed] = None) -> StoreFactory:
    """Factory opening a fresh session per operation (long-lived boards)."""
    @asynccontextmanager
    async def _factory():
        async with async_session_maker() as session:
            yield TaskStore(session, feed=feed)
    return _factory


# ============================================================
# OPERATIONS
# ============================================================

class OperationState(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class PendingOperation:
    kind: str
    task_ids: List[str]
    local_guess: List[TaskRecord]
    revert_to: List[TaskRecord]
    status_moves: Dict[str, List[str]] = field(default_factory=dict)
    state: OperationState = OperationState.PENDING
    server_value: Optional[List[TaskRecord]] = None
    error: Optional[ErrorEvent] = None
    exception: Optional[TaskWiseError] = None
    id: str = field(default_factory=new_uuid)

    def confirm(self, server_value: List[TaskRecord]) -> None:
        self.state = OperationState.CONFIRMED
        self.server_value = server_value

    def fail(self, event: ErrorEvent, exc: TaskWiseError) -> None:
        self.state = OperationState.FAILED
        self.error = event
        self.exception = exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "state": self.state.value,
            "task_ids": self.task_ids,
            "error": self.error.to_dict() if self.error else None,
        }


# ============================================================
# BOARD
# ============================================================

class TaskBoard:
    def __init__(
        self,
        viewer: Actor,
        store_factory: StoreFactory,
        errors: Optional[ErrorChannel] = None,
        feed: Optional[TaskFeed] = None,
        clock: Callable[[], datetime] = utcnow,
        sweep_delay: float = ARCHIVE_SWEEP_DELAY_SECONDS,
    ):
        self.id = new_uuid()
        self.viewer = viewer
        self.store_factory = store_factory
        self.errors = errors
        self.feed = feed
        self.clock = clock
        self.sweep_delay = sweep_delay

        self.snapshot: List[TaskRecord] = []
        self.operations: Deque[PendingOperation] = deque(maxlen=50)
        self.subscribed = False

        self._optimistic: Optional[List[TaskRecord]] = None
        self._lock = asyncio.Lock()
        self._listeners: Dict[str, BoardListener] = {}
        self._unsubscribe_feed: Optional[Callable[[], None]] = None
        self._reload_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._sweep_attempted = False

    # ── Views ─────────────────────────────────────────────

    @property
    def tasks(self) -> List[TaskRecord]:
        """Optimistic view while an operation is in flight, else the snapshot"""
        return self._optimistic if self._optimistic is not None else self.snapshot

    @property
    def pending(self) -> bool:
        return self._optimistic is not None

    def columns(self) -> Dict[TaskStatus, List[TaskRecord]]:
        return columns(self.tasks)

    def find(self, task_id: str) -> Optional[TaskRecord]:
        return next((t for t in self.tasks if t.id == task_id), None)

    def allowed_statuses(self, task_id: Optional[str] = None) -> List[TaskStatus]:
        task = self.find(task_id) if task_id else None
        return allowed_statuses(self.viewer, task)

    # ── Lifecycle ─────────────────────────────────────────

    def add_listener(self, listener: BoardListener) -> Callable[[], None]:
        token = new_uuid()
        self._listeners[token] = listener

        def _remove():
            self._listeners.pop(token, None)

        return _remove

    async def load(self) -> List[TaskRecord]:
        async with self._store() as store:
            self.snapshot = await store.load(self.viewer)
        await self._notify()
        return self.snapshot

    async def subscribe(self, listener: Optional[BoardListener] = None, sweep: bool = True) -> "TaskBoard":
        if listener is not None:
            self.add_listener(listener)
        if self.feed is not None and self._unsubscribe_feed is None:
            self._unsubscribe_feed = self.feed.subscribe(self._on_change)
        self.subscribed = True
        await self.load()
        if sweep and not self._sweep_attempted and self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._delayed_sweep())
        return self

    async def unsubscribe(self) -> None:
        self.subscribed = False
        self._listeners.clear()
        if self._unsubscribe_feed is not None:
            self._unsubscribe_feed()
            self._unsubscribe_feed = None
        for task in (self._sweep_task, self._reload_task):
            if task is not None and not task.done():
                task.cancel()
        self._sweep_task = None
        self._reload_task = None

    async def __aenter__(self) -> "TaskBoard":
        return await self.subscribe()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.unsubscribe()

    # ── Mutations ─────────────────────────────────────────

    async def reorder(self, task_id: str, destination_status, destination_index: int) -> Optional[PendingOperation]:
        return await self._run(
            "reorder",
            lambda tasks, now: plan_reorder(tasks, task_id, destination_status, destination_index, self.viewer, now),
        )

    async def apply_field_edit(self, task_id: str, proposed: Mapping[str, Any]) -> Optional[PendingOperation]:
        return await self._run(
            "edit",
            lambda tasks, now: plan_field_edit(tasks, task_id, proposed, self.viewer, now),
        )

    async def reopen(self, task_id: str) -> PendingOperation:
        return await self._run("reopen", lambda tasks, now: plan_reopen(tasks, task_id, self.viewer, now))

    async def create_task(self, draft: TaskDraft) -> PendingOperation:
        return await self._run("create", lambda tasks, now: plan_create(tasks, draft, self.viewer, now))

    async def delete_task(self, task_id: str) -> PendingOperation:
        return await self._run("delete", lambda tasks, now: plan_delete(tasks, task_id, self.viewer))

    async def run_archival_sweep(self) -> Optional[PendingOperation]:
        """Archive stale Done tasks. Attempted at most once per subscription."""
        self._sweep_attempted = True
        operation = await self._run("archive-sweep", plan_archival_sweep)
        if operation is not None and operation.state == OperationState.CONFIRMED:
            archived = operation.status_moves.get(TaskStatus.ARCHIVED.value, [])
            logger.info(f"Archived {len(archived)} task(s) for {self.viewer.id}")
        return operation

    # ── Internals ─────────────────────────────────────────

    @asynccontextmanager
    async def _store(self):
        async with self.store_factory() as store:
            store.origin = self.id
            yield store

    async def _run(
        self,
        kind: str,
        plan: Callable[[List[TaskRecord], datetime], Optional[WriteBatch]],
    ) -> Optional[PendingOperation]:
        async with self._lock:
            now = self.clock()
            batch = plan(self.snapshot, now)
            if not batch:
                return None

            operation = PendingOperation(
                kind=kind,
                task_ids=batch.task_ids,
                local_guess=apply_batch(self.snapshot, batch, now),
                revert_to=self.snapshot,
                status_moves=batch.status_moves(),
            )
            self.operations.append(operation)
            self._optimistic = operation.local_guess
            await self._notify()

            try:
                async with self._store() as store:
                    committed_at = await store.commit(batch, self.viewer)
                    server_value = apply_batch(operation.revert_to, batch, committed_at)
                    try:
                        server_value = await store.load(self.viewer)
                    except TaskWiseError as exc:
                        logger.warning(f"Reload after {kind} failed, keeping committed copy: {exc}")
            except Exception as exc:
                if not isinstance(exc, TaskWiseError):
                    logger.error(f"Unexpected failure during {kind}: {exc!r}", exc_info=True)
                    exc = StoreUnavailable(f"The {kind} could not be saved")
                self._optimistic = None
                self.snapshot = operation.revert_to
                operation.fail(await self._report(exc, kind), exc)
            else:
                self._optimistic = None
                self.snapshot = server_value
                operation.confirm(server_value)

            await self._notify()
            return operation

    async def _report(self, exc: TaskWiseError, operation: str) -> ErrorEvent:
        event = ErrorEvent.from_exception(exc, actor_id=self.viewer.id, operation=operation)
        if self.errors is not None:
            await self.errors.emit(event)
        else:
            logger.warning(f"{event.code} during {operation}: {event.message}")
        return event

    async def _notify(self) -> None:
        listeners = list(self._listeners.values())
        if not listeners:
            return
        results = await asyncio.gather(*(fn(self) for fn in listeners), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Board listener failed: {result}")

    def _is_relevant(self, event: ChangeEvent) -> bool:
        if self.viewer.role == UserRole.SYSADMIN:
            return True
        if self.viewer.role == UserRole.DEPADMIN:
            return self.viewer.department in event.departments
        return self.viewer.id in event.owners

    async def _on_change(self, event: ChangeEvent) -> None:
        if not self.subscribed or event.origin == self.id or not self._is_relevant(event):
            return
        # Reload outside the publisher's call stack; boards may be mid-operation
        if self._reload_task is None or self._reload_task.done():
            self._reload_task = asyncio.create_task(self._reload())

    async def _reload(self) -> None:
        async with self._lock:
            if not self.subscribed:
                return
            try:
                await self.load()
            except TaskWiseError as exc:
                await self._report(exc, "reload")

    async def _delayed_sweep(self) -> None:
        await asyncio.sleep(self.sweep_delay)
        if self.subscribed and not self._sweep_attempted:
            await self.run_archival_sweep()
