from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class CdpEvent:
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0
    session_id: str | None = None


EventHandler = Callable[[CdpEvent], None]


class EventDispatcher:
    """Routes CDP notifications to one handler per method.

    Registering a second handler for a method replaces the first.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, EventHandler] = {}

    def on(self, method: str, handler: EventHandler) -> None:
        self._handlers[method] = handler

    def dispatch(self, frame: dict[str, Any]) -> bool:
        """Wrap a raw notification frame and run its handler; False if unhandled."""
        method = frame.get("method") if isinstance(frame, dict) else None
        if not isinstance(method, str) or not method:
            return False
        handler = self._handlers.get(method)
        if handler is None:
            return False
        params = frame.get("params")
        session_id = frame.get("sessionId")
        handler(
            CdpEvent(
                method=method,
                params=params if isinstance(params, dict) else {},
                timestamp=time.time(),
                session_id=session_id if isinstance(session_id, str) else None,
            )
        )
        return True


__all__ = ["CdpEvent", "EventDispatcher", "EventHandler"]
