# routers/tasks.py — Kanban tasks: ordered columns, transitions, history, archive
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
import nh3
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from errors import ErrorChannel, TaskNotFound, ValidationFailure, get_error_channel
from models import Department, TaskStatus, User, utcnow
from task_board import OperationState, PendingOperation, TaskBoard, single_store
from task_engine import (
    BOARD_STATUSES, TaskDelete, TaskDraft, TaskRecord, WriteBatch, archived_on, can_edit, column,
)
from task_feed import TaskFeed, get_task_feed
from task_store import TaskStore

logger = logging.getLogger("taskwise.tasks")

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])

DELETE_ALL_CONFIRMATION = "DELETE-ALL"

# Rich-text subset the comment editor produces; nh3 adds rel="noopener noreferrer" to links
COMMENT_TAGS = {"strong", "em", "u", "a", "ul", "ol", "li", "br", "p", "div", "b", "i", "hr"}
COMMENT_ATTRIBUTES = {"a": {"href", "target"}}


# ============================================================
# SCHEMAS
# ============================================================

def sanitize_comments(markup: Optional[str]) -> Optional[str]:
    if markup is None:
        return None
    return nh3.clean(markup, tags=COMMENT_TAGS, attributes=COMMENT_ATTRIBUTES)


class TaskCreateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=500)
    department: Optional[str] = None
    comments: str = ""
    status: TaskStatus = TaskStatus.IN_PROGRESS
    user_id: Optional[str] = None  # Admins may assign to someone else

    @field_validator("comments")
    @classmethod
    def clean_comments(cls, v):
        return sanitize_comments(v)


class TaskEditIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=500)
    department: Optional[str] = None
    user_id: Optional[str] = None
    comments: Optional[str] = None
    status: Optional[TaskStatus] = None

    @field_validator("comments")
    @classmethod
    def clean_comments(cls, v):
        return sanitize_comments(v)


class TaskMoveIn(BaseModel):
    status: TaskStatus
    index: int


class HistoryOut(BaseModel):
    field: str
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    changed_by: str
    timestamp: str


class TaskOut(BaseModel):
    id: str
    name: str
    department: Optional[str] = None
    depcolor: Optional[str] = None
    comments: str = ""
    status: str
    user_id: str
    order: int
    is_reviewed: bool
    created_at: Optional[str] = None
    done_at: Optional[str] = None
    archived_on: Optional[str] = None


class TaskDetailOut(TaskOut):
    history: List[HistoryOut] = []


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def task_out(t: TaskRecord) -> TaskOut:
    return TaskOut(
        id=t.id,
        name=t.name,
        department=t.department,
        depcolor=t.depcolor,
        comments=t.comments,
        status=t.status.value,
        user_id=t.user_id,
        order=t.order,
        is_reviewed=t.is_reviewed,
        created_at=_ts(t.created_at),
        done_at=_ts(t.done_at),
        archived_on=_ts(archived_on(t)) if t.status == TaskStatus.ARCHIVED else None,
    )


def _history_out(t: TaskRecord) -> List[HistoryOut]:
    out = []
    for entry in t.history:
        data = entry.to_dict()
        data["timestamp"] = _ts(data["timestamp"])
        out.append(HistoryOut(**data))
    return out


def _task_detail(t: TaskRecord) -> TaskDetailOut:
    return TaskDetailOut(**task_out(t).model_dump(), history=_history_out(t))


def _require_task(board: TaskBoard, task_id: str) -> TaskRecord:
    task = board.find(task_id)
    if task is None:
        raise TaskNotFound(task_id)
    return task


async def _check_references(db: AsyncSession, department: Optional[str] = None, user_id: Optional[str] = None) -> None:
    """Departments and owners must exist before a task can point at them"""
    if department:
        result = await db.execute(select(Department.id).where(Department.name == department))
        if result.scalar_one_or_none() is None:
            raise ValidationFailure(f"Unknown department: {department}")
    if user_id:
        result = await db.execute(select(User.id).where(User.id == user_id))
        if result.scalar_one_or_none() is None:
            raise ValidationFailure(f"Unknown user: {user_id}")


def _latest(board: TaskBoard, operation: Optional[PendingOperation], task_id: str) -> TaskRecord:
    """The task as committed, even if it has left the caller's view"""
    task = board.find(task_id)
    if task is None and operation is not None:
        task = next((t for t in operation.local_guess if t.id == task_id), None)
    if task is None:
        raise TaskNotFound(task_id)
    return task


def _settle(operation: Optional[PendingOperation]) -> Optional[PendingOperation]:
    """Surface a failed operation as its error; the board already reverted and reported it."""
    if operation is not None and operation.state == OperationState.FAILED:
        raise operation.exception
    return operation


def get_task_store(
    db: AsyncSession = Depends(get_db_session),
    feed: TaskFeed = Depends(get_task_feed),
) -> TaskStore:
    return TaskStore(db, feed=feed)


async def get_board(
    user: CurrentUser = Depends(require_permission("tasks:read")),
    store: TaskStore = Depends(get_task_store),
    errors: ErrorChannel = Depends(get_error_channel),
) -> TaskBoard:
    """The caller's viewer-scoped board, loaded for this request"""
    board = TaskBoard(user.as_actor(), single_store(store), errors=errors)
    await board.load()
    return board


async def get_writable_board(
    user: CurrentUser = Depends(require_permission("tasks:write")),
    board: TaskBoard = Depends(get_board),
) -> TaskBoard:
    return board


# ============================================================
# COLLECTION ENDPOINTS
# ============================================================

@router.get("", response_model=List[TaskOut])
async def list_tasks(
    status: Optional[TaskStatus] = None,
    board: TaskBoard = Depends(get_board),
):
    """Tasks visible to the caller, ordered by rank"""
    tasks = column(board.tasks, status) if status else board.tasks
    return [task_out(t) for t in tasks]


@router.get("/board")
async def get_board_columns(board: TaskBoard = Depends(get_board)) -> Dict[str, List[TaskOut]]:
    """Board columns: In Progress, To Be Reviewed, Done"""
    cols = board.columns()
    return {status.value: [task_out(t) for t in cols[status]] for status in BOARD_STATUSES}


@router.get("/archive", response_model=List[TaskOut])
async def list_archive(board: TaskBoard = Depends(get_board)):
    """Archived tasks, most recently archived first"""
    archived = column(board.tasks, TaskStatus.ARCHIVED)
    dated = sorted((t for t in archived if archived_on(t)), key=archived_on, reverse=True)
    undated = [t for t in archived if not archived_on(t)]
    return [task_out(t) for t in dated + undated]


@router.get("/export")
async def export_tasks(board: TaskBoard = Depends(get_board)):
    """Download every visible task with its history as JSON"""
    exported_at = utcnow()
    body = {
        "exported_at": exported_at.isoformat(),
        "count": len(board.tasks),
        "tasks": [_task_detail(t).model_dump() for t in board.tasks],
    }
    filename = f"tasks-{exported_at.strftime('%Y%m%d-%H%M%S')}.json"
    return JSONResponse(
        content=body,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("", response_model=TaskDetailOut, status_code=201)
async def create_task(
    data: TaskCreateIn,
    board: TaskBoard = Depends(get_writable_board),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a task at the end of its column"""
    await _check_references(db, data.department, data.user_id)
    operation = _settle(await board.create_task(TaskDraft(
        name=data.name.strip(),
        department=data.department,
        comments=data.comments,
        status=data.status,
        user_id=data.user_id,
    )))
    created_id = operation.task_ids[0]
    task = _latest(board, operation, created_id)
    logger.info(f"Task {created_id} created by {board.viewer.id} in {task.department}")
    return _task_detail(task)


@router.post("/archive-sweep")
async def run_archive_sweep(
    user: CurrentUser = Depends(require_permission("tasks:sweep")),
    board: TaskBoard = Depends(get_board),
):
    """Archive Done tasks older than the retention window, within the caller's scope"""
    operation = _settle(await board.run_archival_sweep())
    archived = 0
    if operation is not None and operation.state == OperationState.CONFIRMED:
        archived = len(operation.status_moves.get(TaskStatus.ARCHIVED.value, []))
    return {"archived": archived}


@router.delete("")
async def delete_all_tasks(
    confirm: str = Query(default=""),
    user: CurrentUser = Depends(require_permission("tasks:delete_all")),
    store: TaskStore = Depends(get_task_store),
):
    """Delete every task. Requires confirm=DELETE-ALL"""
    if confirm != DELETE_ALL_CONFIRMATION:
        raise HTTPException(status_code=400, detail=f"Pass confirm={DELETE_ALL_CONFIRMATION} to delete all tasks")
    actor = user.as_actor()
    tasks = await store.load(actor)
    await store.commit(WriteBatch(deletes=[TaskDelete(task_id=t.id) for t in tasks]), actor)
    logger.warning(f"{user.email} deleted all {len(tasks)} tasks")
    return {"deleted": len(tasks)}


# ============================================================
# SINGLE TASK ENDPOINTS
# ============================================================

@router.get("/{task_id}", response_model=TaskDetailOut)
async def get_task(task_id: str, board: TaskBoard = Depends(get_board)):
    return _task_detail(_require_task(board, task_id))


@router.get("/{task_id}/history", response_model=List[HistoryOut])
async def get_task_history(task_id: str, board: TaskBoard = Depends(get_board)):
    return _history_out(_require_task(board, task_id))


@router.get("/{task_id}/transitions")
async def get_task_transitions(task_id: str, board: TaskBoard = Depends(get_board)):
    """Statuses the caller may pick for this task"""
    task = _require_task(board, task_id)
    return {
        "task_id": task.id,
        "current": task.status.value,
        "allowed": [s.value for s in board.allowed_statuses(task.id)],
        "can_edit": can_edit(board.viewer, task),
    }


@router.patch("/{task_id}")
async def edit_task(
    task_id: str,
    data: TaskEditIn,
    board: TaskBoard = Depends(get_writable_board),
    db: AsyncSession = Depends(get_db_session),
):
    """Save edited fields; one history entry per changed field"""
    _require_task(board, task_id)
    proposed = data.model_dump(exclude_unset=True)
    await _check_references(db, proposed.get("department"), proposed.get("user_id"))
    operation = _settle(await board.apply_field_edit(task_id, proposed))
    return {
        "changed": operation is not None,
        "task": _task_detail(_latest(board, operation, task_id)),
    }


@router.post("/{task_id}/move")
async def move_task(task_id: str, move: TaskMoveIn, board: TaskBoard = Depends(get_writable_board)):
    """Drag-and-drop: place the task at `index` inside the `status` column"""
    operation = _settle(await board.reorder(task_id, move.status, move.index))
    return {
        "changed": operation is not None,
        "affected": len(operation.task_ids) if operation else 0,
        "task": task_out(_latest(board, operation, task_id)),
    }


@router.post("/{task_id}/reopen", response_model=TaskDetailOut)
async def reopen_task(
    task_id: str,
    user: CurrentUser = Depends(require_permission("tasks:reopen")),
    board: TaskBoard = Depends(get_board),
):
    """Bring an archived task back to In Progress"""
    operation = _settle(await board.reopen(task_id))
    return _task_detail(_latest(board, operation, task_id))


@router.delete("/{task_id}")
async def delete_task(task_id: str, board: TaskBoard = Depends(get_writable_board)):
    _settle(await board.delete_task(task_id))
    logger.info(f"Task {task_id} deleted by {board.viewer.id}")
    return {"deleted": task_id}
