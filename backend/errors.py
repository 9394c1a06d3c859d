# errors.py — Error taxonomy and error-observation channel for TaskWise
# Codes follow TW-{DOMAIN}-{NUMBER}. Domains: AUTH, TASK, STORE, SYS

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from fastapi import Request

logger = logging.getLogger("taskwise.errors")

ERROR_CATALOGUE = {
    # Authentication & Authorisation
    "TW-AUTH-001": {"message": "Invalid credentials", "severity": "warning", "http_status": 401},
    "TW-AUTH-002": {"message": "Account pending approval", "severity": "info", "http_status": 403},
    "TW-AUTH-003": {"message": "Insufficient permissions", "severity": "warning", "http_status": 403},
    "TW-AUTH-004": {"message": "Account suspended", "severity": "warning", "http_status": 403},

    # Task engine
    "TW-TASK-001": {"message": "Validation failed", "severity": "info", "http_status": 400},
    "TW-TASK-002": {"message": "Task not found", "severity": "info", "http_status": 404},
    "TW-TASK-003": {"message": "Status transition not allowed", "severity": "warning", "http_status": 409},

    # Document store
    "TW-STORE-001": {"message": "Permission denied by store rules", "severity": "warning", "http_status": 403},
    "TW-STORE-002": {"message": "Store unavailable", "severity": "error", "http_status": 503},

    # AI summarisation
    "TW-AI-001": {"message": "Summarisation provider unavailable", "severity": "error", "http_status": 503},

    # System
    "TW-SYS-001": {"message": "Internal server error", "severity": "critical", "http_status": 500},
}


# ============================================================
# EXCEPTIONS
# ============================================================

class TaskWiseError(Exception):
    """Base class for errors that carry a catalogue code"""
    code = "TW-SYS-001"
    kind = "internal"

    def __init__(self, message: Optional[str] = None):
        self.message = message or ERROR_CATALOGUE[self.code]["message"]
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return ERROR_CATALOGUE[self.code]["http_status"]

    @property
    def severity(self) -> str:
        return ERROR_CATALOGUE[self.code]["severity"]


class ValidationFailure(TaskWiseError):
    code = "TW-TASK-001"
    kind = "validation"


class TaskNotFound(ValidationFailure):
    code = "TW-TASK-002"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class TransitionNotAllowed(ValidationFailure):
    code = "TW-TASK-003"

    def __init__(self, current, destination, allowed):
        self.current = current
        self.destination = destination
        self.allowed = list(allowed)
        super().__init__(
            f"Cannot move task from '{_label(current)}' to '{_label(destination)}'. "
            f"Allowed: {', '.join(_label(s) for s in self.allowed)}"
        )


class EditNotPermitted(ValidationFailure):
    code = "TW-AUTH-003"
    kind = "permission-denied"


class PermissionDenied(TaskWiseError):
    """The store rejected a write because the acting identity lacks rights"""
    code = "TW-STORE-001"
    kind = "permission-denied"

    def __init__(self, path: str, operation: str, payload: Optional[Dict[str, Any]] = None):
        self.path = path
        self.operation = operation
        self.payload = payload or {}
        super().__init__(f"Missing or insufficient permissions: {operation} {path}")


class StoreUnavailable(TaskWiseError):
    code = "TW-STORE-002"
    kind = "operation-failed"


class SummaryUnavailable(TaskWiseError):
    code = "TW-AI-001"
    kind = "operation-failed"


def _label(status) -> str:
    return getattr(status, "value", status) or "new"


# ============================================================
# ERROR-OBSERVATION CHANNEL
# ============================================================

@dataclass
class ErrorEvent:
    """A structured failure report published for centralised user feedback"""
    code: str
    kind: str
    message: str
    actor_id: Optional[str] = None
    path: Optional[str] = None
    operation: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_exception(cls, exc: TaskWiseError, actor_id: Optional[str] = None,
                       path: Optional[str] = None, operation: Optional[str] = None) -> "ErrorEvent":
        return cls(
            code=exc.code,
            kind=exc.kind,
            message=exc.message,
            actor_id=actor_id,
            path=getattr(exc, "path", path),
            operation=getattr(exc, "operation", operation),
            payload=getattr(exc, "payload", {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
            "actor_id": self.actor_id,
            "path": self.path,
            "operation": self.operation,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


ErrorListener = Callable[[ErrorEvent], Awaitable[None]]


class ErrorChannel:
    """Publish/subscribe sink for operation failures"""

    def __init__(self, buffer_size: int = 200):
        self._listeners: Dict[str, ErrorListener] = {}
        self._recent: Deque[ErrorEvent] = deque(maxlen=buffer_size)

    def subscribe(self, listener: ErrorListener) -> Callable[[], None]:
        token = str(uuid.uuid4())
        self._listeners[token] = listener

        def _unsubscribe():
            self._listeners.pop(token, None)

        return _unsubscribe

    async def emit(self, event: ErrorEvent) -> None:
        self._recent.append(event)
        logger.warning(f"{event.code} {event.kind}: {event.message} [actor={event.actor_id}]")
        listeners = list(self._listeners.values())
        results = await asyncio.gather(*(fn(event) for fn in listeners), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Error listener failed: {result}")

    def recent(self, limit: int = 50) -> List[ErrorEvent]:
        return list(self._recent)[-limit:][::-1]

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


def get_error_channel(request: Request) -> ErrorChannel:
    """FastAPI dependency: the application-wide error channel"""
    return request.app.state.error_channel
