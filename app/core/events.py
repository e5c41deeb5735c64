import fnmatch
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any

from app.metrics import observe_event_handler_failure

logger = logging.getLogger("app.events")


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous in-process bus.

    Subscriptions are exact names (``record.Account.created``) or shell-style
    patterns (``record.*.deleted``). Events are published after the database
    commit, so a failing handler is logged and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = Lock()

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def _handlers_for(self, event_name: str) -> list[EventHandler]:
        with self._lock:
            result: list[EventHandler] = []
            for pattern, handlers in self._subscribers.items():
                if pattern == event_name or fnmatch.fnmatchcase(event_name, pattern):
                    result.extend(handlers)
            return result

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self._handlers_for(event_name):
            try:
                handler(event)
            except Exception:
                observe_event_handler_failure(event_name)
                logger.exception("event_handler_failed", extra={"event_name": event_name})


event_bus = InProcessEventBus()
