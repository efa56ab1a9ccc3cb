from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger("berryorm")

Handler = Callable[[str, Dict[str, Any]], Any]


class EventChannel:
    """Observer list for cross-cutting notifications (query, commit, rollback).

    Handlers receive ``(event_name, payload)``. A failing handler is logged and
    never interrupts the operation that emitted the event.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def subscribe(self, event: str, handler: Handler) -> Handler:
        self._handlers.setdefault(event, []).append(handler)
        return handler

    def unsubscribe(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event) or []
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, event: str) -> List[Handler]:
        return list(self._handlers.get(event) or [])

    def emit(self, event: str, **payload: Any) -> None:
        for handler in self.handlers(event):
            try:
                handler(event, payload)
            except Exception:
                logger.exception("berryorm: %s handler %r failed", event, handler)


def log_event(event: str, payload: Dict[str, Any]) -> None:
    """Default subscriber: statements at DEBUG, transaction outcomes at DEBUG."""
    if event == 'query':
        logger.debug("Executing (%s): %s", payload.get('transaction') or 'default', payload.get('sql'))
    else:
        logger.debug("Transaction %s: %s", payload.get('transaction'), event)
