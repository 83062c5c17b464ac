import asyncio
import logging
from enum import Enum
from typing import Any

from client.api.websocket_schemas import StatusPayload
from client.queue import QueueDriver
from core.event_bus import EventBus
from core.types_registry import EventName

logger = logging.getLogger(__name__)


class AutoQueueMode(str, Enum):
    DISABLED = "disabled"
    # Re-queue whenever the engine queue drains
    INSTANT = "instant"
    # Re-queue when the graph changed since the last submission
    CHANGE = "change"


class AutoQueueHandler:
    """Submits the graph again without the user asking for it."""

    def __init__(
        self,
        queue: QueueDriver,
        event_bus: EventBus,
        mode: AutoQueueMode = AutoQueueMode.DISABLED,
        batch_count: int = 1,
    ):
        self.queue = queue
        self.event_bus = event_bus
        self.mode = AutoQueueMode(mode)
        self.batch_count = batch_count

        self.graph_has_changed = False
        # Jobs the engine reports as remaining
        self.queue_remaining = 0
        self._tasks: set[asyncio.Task[Any]] = set()

        event_bus.on(EventName.GRAPH_CHANGED, self._on_graph_changed)
        event_bus.on(EventName.STATUS, self._on_status)

    def close(self) -> None:
        self.event_bus.off(EventName.GRAPH_CHANGED, self._on_graph_changed)
        self.event_bus.off(EventName.STATUS, self._on_status)

    def _on_graph_changed(self, _payload: Any = None) -> None:
        if self.mode != AutoQueueMode.CHANGE:
            return
        if self.queue_remaining:
            self.graph_has_changed = True
            return
        self.graph_has_changed = False
        self._queue()
        # Counted locally until the engine reports the job
        self.queue_remaining += 1

    def _on_status(self, payload: Any) -> None:
        if payload is None:
            return
        status = payload if isinstance(payload, StatusPayload) else StatusPayload.model_validate(payload)
        remaining = status.exec_info.queue_remaining
        if remaining == self.queue_remaining:
            return
        self.queue_remaining = remaining
        if remaining or self.queue.last_execution_error is not None:
            return
        if self.mode == AutoQueueMode.INSTANT or (
            self.mode == AutoQueueMode.CHANGE and self.graph_has_changed
        ):
            self.graph_has_changed = False
            self._queue()

    def _queue(self) -> None:
        logger.info(f"Auto-queue ({self.mode.value}): submitting {self.batch_count} job(s)")
        task = asyncio.create_task(self.queue.submit(0, self.batch_count))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Auto-queue submission failed: {task.exception()}")
