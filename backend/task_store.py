# task_store.py — Document-store adapter for tasks
# - Viewer-scoped queries (sysadmin / department / owner)
# - One transaction per WriteBatch, all-or-nothing
# - Write rules checked against the stored document before and after each change
# - Commit-time stamping of SERVER_TIMESTAMP values
# - ChangeEvent published on the TaskFeed after every successful commit

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import false, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from errors import PermissionDenied, StoreUnavailable, TaskNotFound, TaskWiseError
from models import Department, Task, TaskHistory, TaskStatus, UserRole, as_utc, utcnow
from task_engine import (
    SERVER_TIMESTAMP, SYSTEM_ACTOR_ID, Actor, HistoryEntry, TaskRecord, WriteBatch, history_entry,
)
from task_feed import ChangeEvent, TaskFeed

logger = logging.getLogger("taskwise.store")


# ============================================================
# CONVERSION
# ============================================================

def to_record(task: Task, depcolor: Optional[str] = None) -> TaskRecord:
    return TaskRecord(
        id=task.id,
        name=task.name,
        status=TaskStatus(task.status),
        user_id=task.user_id,
        order=task.order,
        department=task.department,
        comments=task.comments or "",
        created_at=as_utc(task.created_at),
        done_at=as_utc(task.done_at),
        is_reviewed=bool(task.is_reviewed),
        history=tuple(
            history_entry(h.field, h.old_value, h.new_value, h.changed_by, as_utc(h.timestamp))
            for h in task.history
        ),
        depcolor=depcolor,
    )


def _jsonable(value):
    if value is SERVER_TIMESTAMP:
        return "SERVER_TIMESTAMP"
    if isinstance(value, TaskStatus):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _payload(changes: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: _jsonable(value) for key, value in changes.items()}


# ============================================================
# WRITE RULES
# ============================================================

def may_write(actor: Actor, department: Optional[str], user_id: Optional[str]) -> bool:
    """Whether `actor` may hold a task document with this scope."""
    if actor.id == SYSTEM_ACTOR_ID or actor.role == UserRole.SYSADMIN:
        return True
    if actor.role == UserRole.DEPADMIN:
        return actor.department is not None and department == actor.department
    return user_id == actor.id


# ============================================================
# STORE
# ============================================================

class TaskStore:
    """Applies engine batches to the database for one session"""

    def __init__(
        self,
        db: AsyncSession,
        feed: Optional[TaskFeed] = None,
        origin: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.feed = feed
        self.origin = origin
        self.clock = clock

    @staticmethod
    def visible_query(actor: Actor):
        stmt = select(Task).options(selectinload(Task.history))
        if actor.role == UserRole.SYSADMIN:
            pass
        elif actor.role == UserRole.DEPADMIN:
            if actor.department:
                stmt = stmt.where(Task.department == actor.department)
            else:
                stmt = stmt.where(false())
        else:
            stmt = stmt.where(Task.user_id == actor.id)
        return stmt.order_by(Task.order)

    async def load(self, actor: Actor) -> List[TaskRecord]:
        try:
            result = await self.db.execute(
                self.visible_query(actor).execution_options(populate_existing=True)
            )
            tasks = result.scalars().all()
            colors: Dict[str, str] = {}
            if actor.role in (UserRole.SYSADMIN, UserRole.DEPADMIN):
                rows = await self.db.execute(select(Department.name, Department.depcolor))
                colors = {name: color for name, color in rows.all()}
        except SQLAlchemyError as e:
            logger.error(f"Task query failed: {e}")
            raise StoreUnavailable("Could not load tasks") from e
        return [to_record(t, colors.get(t.department)) for t in tasks]

    async def get(self, actor: Actor, task_id: str) -> TaskRecord:
        for record in await self.load(actor):
            if record.id == task_id:
                return record
        raise TaskNotFound(task_id)

    async def commit(self, batch: WriteBatch, actor: Actor) -> datetime:
        """Apply `batch` in one transaction; returns the commit timestamp."""
        now = self.clock()
        if not batch:
            return now

        departments, owners = set(), set()
        try:
            rows = await self._fetch([w.task_id for w in batch.writes] + [d.task_id for d in batch.deletes])

            # Rule checks precede every mutation
            for write in batch.writes:
                row = rows.get(write.task_id)
                if row is None:
                    raise TaskNotFound(write.task_id)
                department = write.changes.get("department", row.department)
                user_id = write.changes.get("user_id", row.user_id)
                if not (may_write(actor, row.department, row.user_id) and may_write(actor, department, user_id)):
                    raise PermissionDenied(f"tasks/{row.id}", "update", _payload(write.changes))
                departments.update((row.department, department))
                owners.update((row.user_id, user_id))

            for create in batch.creates:
                record = create.record
                if not may_write(actor, record.department, record.user_id):
                    raise PermissionDenied(f"tasks/{record.id}", "create", {
                        "name": record.name,
                        "department": record.department,
                        "user_id": record.user_id,
                        "status": record.status.value,
                    })
                departments.add(record.department)
                owners.add(record.user_id)

            for delete in batch.deletes:
                row = rows.get(delete.task_id)
                if row is None:
                    raise TaskNotFound(delete.task_id)
                if not may_write(actor, row.department, row.user_id):
                    raise PermissionDenied(f"tasks/{row.id}", "delete")
                departments.add(row.department)
                owners.add(row.user_id)

            for write in batch.writes:
                row = rows[write.task_id]
                for key, value in write.changes.items():
                    setattr(row, key, now if value is SERVER_TIMESTAMP else value)
                self._append_history(row, write.history)

            for create in batch.creates:
                self.db.add(self._new_task(create.record, now))

            for delete in batch.deletes:
                await self.db.delete(rows[delete.task_id])

            await self.db.commit()
        except TaskWiseError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Batch commit failed ({len(batch)} writes): {e}")
            raise StoreUnavailable("The task store could not apply the change") from e

        logger.debug(f"Committed batch of {len(batch)} writes for {actor.id}")
        if self.feed is not None:
            await self.feed.publish(ChangeEvent(
                task_ids=frozenset(batch.task_ids),
                departments=frozenset(departments),
                owners=frozenset(owners),
                origin=self.origin,
            ))
        return now

    async def _fetch(self, task_ids: List[str]) -> Dict[str, Task]:
        if not task_ids:
            return {}
        result = await self.db.execute(
            select(Task)
            .where(Task.id.in_(set(task_ids)))
            .options(selectinload(Task.history))
            .execution_options(populate_existing=True)
        )
        return {t.id: t for t in result.scalars().all()}

    @staticmethod
    def _append_history(row: Task, entries: List[HistoryEntry]) -> None:
        sequence = len(row.history)
        for entry in entries:
            data = entry.to_dict()
            row.history.append(TaskHistory(
                sequence=sequence,
                field=entry.field_name,
                old_value=data["old_value"],
                new_value=data["new_value"],
                changed_by=entry.changed_by,
                timestamp=entry.timestamp,
            ))
            sequence += 1

    def _new_task(self, record: TaskRecord, now: datetime) -> Task:
        task = Task(
            id=record.id,
            name=record.name,
            department=record.department,
            comments=record.comments or "",
            status=record.status,
            user_id=record.user_id,
            order=record.order,
            done_at=now if record.done_at is SERVER_TIMESTAMP else record.done_at,
            is_reviewed=record.is_reviewed,
            created_at=now,
            history=[],
        )
        self._append_history(task, list(record.history))
        return task
