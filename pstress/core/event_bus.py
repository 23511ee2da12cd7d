"""In-process notifications for adaptive analysis progress.

The controller emits one event per state transition, one per completed
pass and one when the run ends.  Subscribers register per event name or
with ``"*"`` for every event.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Callable, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], None]

STATE_CHANGED = "analysis.state"
PASS_RECORDED = "analysis.pass"
RUN_FINISHED = "analysis.finished"

WILDCARD = "*"


class EventBus:
    """Synchronous publish-subscribe channel.

    Parameters
    ----------
    keep_history : bool
        Record every emitted event so a caller can replay the run after
        :meth:`emit` returns.  Off by default.
    """

    def __init__(self, keep_history: bool = False):
        self._handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)
        self._history: Optional[list[dict]] = [] if keep_history else None

    def subscribe(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> None:
        remaining = [h for h in self._handlers.get(event, ()) if h is not handler]
        if remaining:
            self._handlers[event] = remaining
        else:
            self._handlers.pop(event, None)

    def emit(self, event: str, data: dict) -> None:
        if self._history is not None:
            self._history.append({"event": event, "data": data, "time": time.time()})

        targets = self._handlers.get(event, []) + self._handlers.get(WILDCARD, [])
        for handler in targets:
            # Subscriber errors never reach the emitter.
            try:
                handler(data)
            except Exception:
                logger.exception("Subscriber %r failed on %s", handler, event)

    def get_history(self, event: Optional[str] = None) -> list[dict]:
        records = self._history or []
        return [r for r in records if event is None or r["event"] == event]

    def clear_history(self) -> None:
        if self._history is not None:
            self._history.clear()
