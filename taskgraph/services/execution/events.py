"""Typed outbound channel for execution lifecycle events.

The executor publishes terminal transitions here; collaborators such as
notifications or analytics subscribe with their own queue::

    queue = channel.subscribe()
    event = await queue.get()
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from taskgraph.core.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_STOPPED = "execution_stopped"
    EXECUTION_REOPENED = "execution_reopened"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_OPTIONAL_FAILED = "node_optional_failed"
    NODE_RETRYING = "node_retrying"
    NODE_SKIPPED = "node_skipped"
    NODE_BLOCKED = "node_blocked"


@dataclass(frozen=True)
class EngineEvent:
    type: EventType
    execution_id: str
    node_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class ExecutionEventChannel:
    """Fan-out of engine events to subscriber queues.

    Queues are bounded; when a subscriber falls behind, its oldest event
    is dropped so publishing never blocks the executor.
    """

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> "asyncio.Queue[EngineEvent]":
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: EngineEvent) -> None:
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
                logger.warning("Event subscriber lagging, dropped oldest event",
                               execution_id=event.execution_id)
            queue.put_nowait(event)
        logger.debug("Published event", type=event.type.value,
                     execution_id=event.execution_id, node_id=event.node_id)
