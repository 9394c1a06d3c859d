# task_feed.py — In-process change feed for task documents
# Gives subscribers "query snapshot changed" notifications after each commit

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, FrozenSet, Optional

from fastapi import Request

logger = logging.getLogger("taskwise.feed")


@dataclass(frozen=True)
class ChangeEvent:
    """One committed batch: which tasks moved and whose views they touch"""
    task_ids: FrozenSet[str]
    departments: FrozenSet[Optional[str]] = frozenset()
    owners: FrozenSet[str] = frozenset()
    origin: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


FeedListener = Callable[[ChangeEvent], Awaitable[None]]


class TaskFeed:
    def __init__(self):
        self._listeners: Dict[str, FeedListener] = {}

    def subscribe(self, listener: FeedListener) -> Callable[[], None]:
        token = str(uuid.uuid4())
        self._listeners[token] = listener

        def _unsubscribe():
            self._listeners.pop(token, None)

        return _unsubscribe

    async def publish(self, event: ChangeEvent) -> None:
        listeners = list(self._listeners.values())
        if not listeners:
            return
        results = await asyncio.gather(*(fn(event) for fn in listeners), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Feed subscriber failed: {result}")

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)


def get_task_feed(request: Request) -> TaskFeed:
    """FastAPI dependency: the application-wide feed"""
    return request.app.state.task_feed
