"""
TaskWise — Task Ordering & Transition Engine

Pure planning functions over task snapshots. Every mutating operation returns
a WriteBatch describing all document writes it needs; the store applies a
batch all-or-nothing. Nothing in this module performs I/O.

Column invariant: inside every status column the `order` values are exactly
0..n-1 after each planned batch is applied.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from errors import EditNotPermitted, TaskNotFound, TransitionNotAllowed, ValidationFailure
from models import HistoryField, TaskStatus, UserRole, new_uuid

ARCHIVE_HOURS = 48
ARCHIVE_RETENTION = timedelta(hours=ARCHIVE_HOURS)
SYSTEM_ACTOR_ID = "system"

# Columns rendered on the main board; Deprecated and Archived live elsewhere
BOARD_STATUSES: Tuple[TaskStatus, ...] = (
    TaskStatus.IN_PROGRESS,
    TaskStatus.TO_BE_REVIEWED,
    TaskStatus.DONE,
)


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


# Placeholder replaced by the store's commit time
SERVER_TIMESTAMP = _ServerTimestamp()


# ============================================================
# ACTORS
# ============================================================

@dataclass(frozen=True)
class Actor:
    id: str
    role: UserRole
    department: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.SYSADMIN, UserRole.DEPADMIN)


# ============================================================
# HISTORY ENTRIES (tagged by field)
# ============================================================

@dataclass(frozen=True)
class HistoryEntry:
    changed_by: str
    timestamp: datetime
    field_name: ClassVar[HistoryField]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field_name.value,
            "old_value": _dump(self.old),
            "new_value": _dump(self.new),
            "changed_by": self.changed_by,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class NameChange(HistoryEntry):
    old: Optional[str]
    new: Optional[str]
    field_name: ClassVar[HistoryField] = HistoryField.NAME


@dataclass(frozen=True)
class DepartmentChange(HistoryEntry):
    old: Optional[str]
    new: Optional[str]
    field_name: ClassVar[HistoryField] = HistoryField.DEPARTMENT


@dataclass(frozen=True)
class OwnerChange(HistoryEntry):
    old: Optional[str]
    new: Optional[str]
    field_name: ClassVar[HistoryField] = HistoryField.USER_ID


@dataclass(frozen=True)
class CommentsChange(HistoryEntry):
    old: Optional[str]
    new: Optional[str]
    field_name: ClassVar[HistoryField] = HistoryField.COMMENTS


@dataclass(frozen=True)
class StatusChange(HistoryEntry):
    old: Optional[TaskStatus]
    new: TaskStatus
    field_name: ClassVar[HistoryField] = HistoryField.STATUS


HISTORY_TYPES = {
    HistoryField.NAME: NameChange,
    HistoryField.DEPARTMENT: DepartmentChange,
    HistoryField.USER_ID: OwnerChange,
    HistoryField.COMMENTS: CommentsChange,
    HistoryField.STATUS: StatusChange,
}


def history_entry(field_name, old, new, changed_by: str, timestamp: datetime) -> HistoryEntry:
    """Build the typed entry for `field_name`."""
    field_name = HistoryField(field_name)
    if field_name == HistoryField.STATUS:
        old = TaskStatus(old) if old is not None else None
        new = TaskStatus(new)
    return HISTORY_TYPES[field_name](changed_by=changed_by, timestamp=timestamp, old=old, new=new)


def _dump(value):
    return value.value if isinstance(value, TaskStatus) else value


# ============================================================
# SNAPSHOTS & BATCHES
# ============================================================

@dataclass(frozen=True)
class TaskRecord:
    """Immutable snapshot of one task document"""
    id: str
    name: str
    status: TaskStatus
    user_id: str
    order: int
    department: Optional[str] = None
    comments: str = ""
    created_at: Optional[datetime] = None
    done_at: Optional[datetime] = None
    is_reviewed: bool = False
    history: Tuple[HistoryEntry, ...] = ()
    depcolor: Optional[str] = None


@dataclass
class TaskDraft:
    name: str
    department: Optional[str] = None
    comments: str = ""
    status: TaskStatus = TaskStatus.IN_PROGRESS
    user_id: Optional[str] = None


@dataclass
class TaskWrite:
    task_id: str
    changes: Dict[str, Any] = field(default_factory=dict)
    history: List[HistoryEntry] = field(default_factory=list)


@dataclass
class TaskCreate:
    record: TaskRecord


@dataclass
class TaskDelete:
    task_id: str


@dataclass
class WriteBatch:
    """All writes of one operation; applied all-or-nothing"""
    writes: List[TaskWrite] = field(default_factory=list)
    creates: List[TaskCreate] = field(default_factory=list)
    deletes: List[TaskDelete] = field(default_factory=list)

    def update(self, task_id: str, history: Iterable[HistoryEntry] = (), **changes) -> TaskWrite:
        write = self.write_for(task_id)
        if write is None:
            write = TaskWrite(task_id=task_id)
            self.writes.append(write)
        write.changes.update(changes)
        write.history.extend(history)
        return write

    def write_for(self, task_id: str) -> Optional[TaskWrite]:
        for write in self.writes:
            if write.task_id == task_id:
                return write
        return None

    @property
    def task_ids(self) -> List[str]:
        ids = [w.task_id for w in self.writes]
        ids += [c.record.id for c in self.creates]
        ids += [d.task_id for d in self.deletes]
        return ids

    def status_moves(self) -> Dict[str, List[str]]:
        """Updated task ids grouped by the status they move to"""
        moves: Dict[str, List[str]] = {}
        for w in self.writes:
            if "status" in w.changes:
                moves.setdefault(TaskStatus(w.changes["status"]).value, []).append(w.task_id)
        return moves

    def __len__(self) -> int:
        return len(self.writes) + len(self.creates) + len(self.deletes)


# ============================================================
# COLUMNS
# ============================================================

def column(tasks: Iterable[TaskRecord], status: TaskStatus, exclude: Optional[str] = None) -> List[TaskRecord]:
    """Tasks of one status, ordered by rank."""
    return sorted(
        (t for t in tasks if t.status == status and t.id != exclude),
        key=lambda t: t.order,
    )


def columns(tasks: Iterable[TaskRecord], statuses: Sequence[TaskStatus] = tuple(TaskStatus)) -> Dict[TaskStatus, List[TaskRecord]]:
    tasks = list(tasks)
    return {status: column(tasks, status) for status in statuses}


def is_contiguous(tasks: Iterable[TaskRecord]) -> bool:
    for col in columns(tasks).values():
        if [t.order for t in col] != list(range(len(col))):
            return False
    return True


def _renumber(batch: WriteBatch, ordered: Sequence[TaskRecord]) -> None:
    for position, task in enumerate(ordered):
        if task.order != position:
            batch.update(task.id, order=position)


def _find(tasks: Iterable[TaskRecord], task_id: str) -> TaskRecord:
    for task in tasks:
        if task.id == task_id:
            return task
    raise TaskNotFound(task_id)


def _absent(value) -> bool:
    return value is None or value == ""


def _same(old, new) -> bool:
    if _absent(old) and _absent(new):
        return True
    return old == new


# ============================================================
# PERMISSIONS & TRANSITIONS
# ============================================================

def can_view(actor: Actor, task: TaskRecord) -> bool:
    if actor.role == UserRole.SYSADMIN:
        return True
    if actor.role == UserRole.DEPADMIN:
        return actor.department is not None and task.department == actor.department
    return task.user_id == actor.id


def can_edit(actor: Actor, task: TaskRecord) -> bool:
    """Field edits and drags; archived tasks only leave through reopen."""
    return can_view(actor, task) and task.status != TaskStatus.ARCHIVED


def allowed_statuses(actor: Actor, task: Optional[TaskRecord]) -> List[TaskStatus]:
    """Destinations the actor may choose for `task` (None for a new task)."""
    if task is None:
        return [TaskStatus.IN_PROGRESS]
    current = task.status
    if current == TaskStatus.ARCHIVED:
        return [TaskStatus.ARCHIVED]
    if actor.is_admin:
        if current == TaskStatus.TO_BE_REVIEWED:
            return [TaskStatus.IN_PROGRESS, TaskStatus.DONE, TaskStatus.DEPRECATED]
        return [s for s in TaskStatus if s != TaskStatus.ARCHIVED]
    if current == TaskStatus.IN_PROGRESS:
        return [TaskStatus.IN_PROGRESS, TaskStatus.TO_BE_REVIEWED]
    return [current]


def _check_transition(actor: Actor, task: TaskRecord, destination: TaskStatus) -> None:
    allowed = allowed_statuses(actor, task)
    if destination not in allowed:
        raise TransitionNotAllowed(task.status, destination, allowed)


def _coerce_status(value) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        raise ValidationFailure(f"Unknown status: {value}")


def _done_at_change(task: TaskRecord, destination: TaskStatus) -> Dict[str, Any]:
    if destination == TaskStatus.DONE:
        return {"done_at": SERVER_TIMESTAMP}
    return {"done_at": None}


# ============================================================
# OPERATIONS
# ============================================================

def plan_reorder(
    tasks: Sequence[TaskRecord],
    task_id: str,
    destination_status,
    destination_index: int,
    actor: Actor,
    now: datetime,
) -> Optional[WriteBatch]:
    """Drag-and-drop move. Returns None when nothing would change."""
    task = _find(tasks, task_id)
    destination_status = _coerce_status(destination_status)
    if not can_edit(actor, task):
        raise EditNotPermitted("You cannot move this task")

    destination = column(tasks, destination_status, exclude=task.id)
    limit = len(column(tasks, destination_status))
    if isinstance(destination_index, bool) or not isinstance(destination_index, int) \
            or not 0 <= destination_index <= limit:
        raise ValidationFailure(f"Destination index {destination_index} is outside 0..{limit}")
    index = min(destination_index, len(destination))

    status_change = task.status != destination_status
    if not status_change and task.order == index:
        return None
    if status_change:
        _check_transition(actor, task, destination_status)

    batch = WriteBatch()
    if status_change:
        _renumber(batch, column(tasks, task.status, exclude=task.id))

    destination.insert(index, task)
    for position, other in enumerate(destination):
        if other.id != task.id and other.order != position:
            batch.update(other.id, order=position)

    changes: Dict[str, Any] = {"order": index}
    history: List[HistoryEntry] = []
    if status_change:
        changes["status"] = destination_status
        changes.update(_done_at_change(task, destination_status))
        history.append(StatusChange(
            changed_by=actor.id, timestamp=now, old=task.status, new=destination_status,
        ))
    batch.update(task.id, history=history, **changes)
    return batch


EDITABLE_FIELDS = {
    "name": HistoryField.NAME,
    "department": HistoryField.DEPARTMENT,
    "user_id": HistoryField.USER_ID,
    "comments": HistoryField.COMMENTS,
    "status": HistoryField.STATUS,
}


def plan_field_edit(
    tasks: Sequence[TaskRecord],
    task_id: str,
    proposed: Mapping[str, Any],
    actor: Actor,
    now: datetime,
) -> Optional[WriteBatch]:
    """Save from the edit form. Returns None when no field actually changed."""
    task = _find(tasks, task_id)
    if not can_edit(actor, task):
        raise EditNotPermitted("You cannot edit this task")

    unknown = set(proposed) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationFailure(f"Unknown fields: {', '.join(sorted(unknown))}")
    if "name" in proposed and _absent(proposed["name"]):
        raise ValidationFailure("Task name is required.")

    proposed = dict(proposed)
    if proposed.get("status") is not None:
        proposed["status"] = _coerce_status(proposed["status"])
    else:
        proposed.pop("status", None)
    if _absent(proposed.get("user_id")):
        proposed.pop("user_id", None)

    changed = []
    for key, history_field in EDITABLE_FIELDS.items():
        if key not in proposed:
            continue
        old, new = getattr(task, key), proposed[key]
        if not _same(old, new):
            changed.append((key, history_field, old, new))
    if not changed:
        return None

    changes: Dict[str, Any] = {}
    history: List[HistoryEntry] = []
    for key, history_field, old, new in changed:
        if key == "comments":
            new = new or ""
        elif _absent(new):
            new = None
        changes[key] = new
        history.append(history_entry(history_field, old, new, actor.id, now))

    batch = WriteBatch()
    new_status = changes.get("status")
    if new_status is not None:
        _check_transition(actor, task, new_status)
        _renumber(batch, column(tasks, task.status, exclude=task.id))
        changes["order"] = len(column(tasks, new_status, exclude=task.id))
        changes.update(_done_at_change(task, new_status))
        if new_status == TaskStatus.IN_PROGRESS and actor.is_admin:
            changes["is_reviewed"] = True
        elif new_status != TaskStatus.IN_PROGRESS:
            changes["is_reviewed"] = False

    batch.update(task.id, history=history, **changes)
    return batch


def plan_archival_sweep(tasks: Sequence[TaskRecord], now: datetime) -> Optional[WriteBatch]:
    """Archive Done tasks completed more than ARCHIVE_HOURS ago."""
    cutoff = now - ARCHIVE_RETENTION
    done = column(tasks, TaskStatus.DONE)
    stale = [t for t in done if t.done_at is not None and t.done_at < cutoff]
    if not stale:
        return None

    batch = WriteBatch()
    stale_ids = {t.id for t in stale}
    _renumber(batch, [t for t in done if t.id not in stale_ids])
    first_free = len(column(tasks, TaskStatus.ARCHIVED))
    for offset, task in enumerate(stale):
        batch.update(
            task.id,
            history=[StatusChange(
                changed_by=SYSTEM_ACTOR_ID, timestamp=now,
                old=TaskStatus.DONE, new=TaskStatus.ARCHIVED,
            )],
            status=TaskStatus.ARCHIVED,
            order=first_free + offset,
            done_at=None,
        )
    return batch


def plan_reopen(tasks: Sequence[TaskRecord], task_id: str, actor: Actor, now: datetime) -> WriteBatch:
    task = _find(tasks, task_id)
    if not actor.is_admin or not can_view(actor, task):
        raise EditNotPermitted("Only administrators can reopen tasks")
    if task.status != TaskStatus.ARCHIVED:
        raise ValidationFailure("Only archived tasks can be reopened")

    batch = WriteBatch()
    _renumber(batch, column(tasks, TaskStatus.ARCHIVED, exclude=task.id))
    batch.update(
        task.id,
        history=[StatusChange(
            changed_by=actor.id, timestamp=now,
            old=TaskStatus.ARCHIVED, new=TaskStatus.IN_PROGRESS,
        )],
        status=TaskStatus.IN_PROGRESS,
        order=len(column(tasks, TaskStatus.IN_PROGRESS)),
        done_at=None,
        is_reviewed=True,
    )
    return batch


def plan_create(tasks: Sequence[TaskRecord], draft: TaskDraft, actor: Actor, now: datetime) -> WriteBatch:
    if _absent(draft.name):
        raise ValidationFailure("Task name is required.")
    if _absent(draft.department):
        raise ValidationFailure("Please select a department for the new task.")
    status = _coerce_status(draft.status or TaskStatus.IN_PROGRESS)
    allowed = allowed_statuses(actor, None)
    if status not in allowed:
        raise TransitionNotAllowed(None, status, allowed)

    owner = draft.user_id or actor.id
    if owner != actor.id and not actor.is_admin:
        raise EditNotPermitted("Only administrators can assign tasks to other users")

    history: List[HistoryEntry] = [
        StatusChange(changed_by=actor.id, timestamp=now, old=None, new=status),
    ]
    if owner != actor.id:
        history.append(OwnerChange(changed_by=actor.id, timestamp=now, old=actor.id, new=owner))

    record = TaskRecord(
        id=new_uuid(),
        name=draft.name,
        status=status,
        user_id=owner,
        order=len(column(tasks, status)),
        department=draft.department,
        comments=draft.comments or "",
        created_at=now,
        history=tuple(history),
    )
    return WriteBatch(creates=[TaskCreate(record=record)])


def plan_delete(tasks: Sequence[TaskRecord], task_id: str, actor: Actor) -> WriteBatch:
    task = _find(tasks, task_id)
    if not can_view(actor, task):
        raise EditNotPermitted("You cannot delete this task")
    batch = WriteBatch(deletes=[TaskDelete(task_id=task.id)])
    _renumber(batch, column(tasks, task.status, exclude=task.id))
    return batch


# ============================================================
# APPLYING BATCHES TO SNAPSHOTS
# ============================================================

def _resolve(value, now: datetime):
    return now if value is SERVER_TIMESTAMP else value


def apply_write(task: TaskRecord, write: TaskWrite, now: datetime) -> TaskRecord:
    changes = {key: _resolve(value, now) for key, value in write.changes.items()}
    return replace(task, history=task.history + tuple(write.history), **changes)


def apply_batch(tasks: Sequence[TaskRecord], batch: WriteBatch, now: datetime) -> List[TaskRecord]:
    """The snapshot list as it would read after `batch` commits."""
    deleted = {d.task_id for d in batch.deletes}
    result = []
    for task in tasks:
        if task.id in deleted:
            continue
        write = batch.write_for(task.id)
        result.append(apply_write(task, write, now) if write else task)
    result.extend(create.record for create in batch.creates)
    return sorted(result, key=lambda t: t.order)


def archived_on(task: TaskRecord) -> Optional[datetime]:
    """When the task last entered Archived, from its history."""
    entries = [
        h for h in task.history
        if isinstance(h, StatusChange) and h.new == TaskStatus.ARCHIVED
    ]
    if not entries:
        return None
    return max(h.timestamp for h in entries)
