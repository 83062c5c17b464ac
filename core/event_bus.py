import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from core.types_registry import EventName

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Any]


def _event_key(name: EventName | str) -> str:
    if isinstance(name, EventName):
        return name.value
    return str(name)


class EventBus:
    """Synchronous publish/subscribe hub.

    Handlers registered for the same name run in registration order, on the
    task that called ``emit``. A handler that raises is logged and the
    remaining handlers still run. Coroutine handlers are scheduled on the
    running loop.
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = {}
        self._pending_tasks: set[asyncio.Task[Any]] = set()

    def on(self, name: EventName | str, handler: EventHandler) -> None:
        self._handlers.setdefault(_event_key(name), []).append(handler)

    def off(self, name: EventName | str, handler: EventHandler) -> None:
        handlers = self._handlers.get(_event_key(name))
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[_event_key(name)]

    def has_listeners(self, name: EventName | str) -> bool:
        return bool(self._handlers.get(_event_key(name)))

    def emit(self, name: EventName | str, payload: Any = None) -> None:
        key = _event_key(name)
        # Copy so handlers may (un)subscribe while being dispatched
        for handler in list(self._handlers.get(key, ())):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    self._schedule(key, result)
            except Exception as e:
                logger.error(f"Error in '{key}' event handler: {e}", exc_info=True)

    def _schedule(self, key: str, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending_tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._pending_tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Error in async '{key}' event handler: {t.exception()}")

        task.add_done_callback(_done)
