"""Chrome DevTools Protocol connection over an always-on WebSocket.

Commands are correlated by id: ``send`` registers a future per id and the
reader task resolves whichever future matches an inbound response, so any
number of commands may be in flight and complete in any order. Frames
without an id are notifications and go to the ``on_event`` sink.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from .errors import CdpConnectionError, CommandTimeout, ProtocolError

logger = logging.getLogger("devmon.browser")

DEFAULT_COMMAND_TIMEOUT = 10.0
CONNECT_ATTEMPTS = 5
CONNECT_BASE_DELAY = 1.0
CONNECT_MAX_DELAY = 5.0


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class _Pending:
    future: asyncio.Future
    method: str
    deadline: float


class CdpConnection:
    def __init__(
        self,
        ws: Any,
        ws_url: str,
        *,
        default_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        on_event: Callable[[dict[str, Any]], None] | None = None,
        on_close: Callable[[CdpConnection], None] | None = None,
    ) -> None:
        self.ws_url = ws_url
        self.default_timeout = float(default_timeout)
        self.on_event = on_event
        self.on_close = on_close
        self.close_reason: str | None = None

        self._ws = ws
        self._state = ConnectionState.CONNECTING
        self._next_id = 1
        self._pending: dict[int, _Pending] = {}
        self._reader: asyncio.Task | None = None
        self._closing = False

    @classmethod
    async def open(cls, ws_url: str, *, open_timeout: float = 5.0, **kwargs: Any) -> CdpConnection:
        """Open the socket and start reading frames."""
        try:
            ws = await websockets.connect(ws_url, ping_interval=None, max_size=None, open_timeout=open_timeout)
        except Exception as exc:  # noqa: BLE001
            raise CdpConnectionError(f"Failed to open CDP socket {ws_url}: {exc}") from exc
        conn = cls(ws, ws_url, **kwargs)
        conn.start()
        return conn

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        if self._reader is not None:
            return
        self._state = ConnectionState.OPEN
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(), name="devmon-cdp-reader")

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        """Send a command and wait for its response."""
        if self._state is not ConnectionState.OPEN:
            raise CdpConnectionError(f"CDP connection is {self._state.value}; cannot send {method}")

        limit = self.default_timeout if timeout is None else max(0.01, float(timeout))
        cmd_id = self._next_id
        self._next_id += 1

        fut = asyncio.get_running_loop().create_future()
        self._pending[cmd_id] = _Pending(fut, method, time.monotonic() + limit)

        msg: dict[str, Any] = {"id": cmd_id, "method": method, "params": params or {}}
        if session_id:
            msg["sessionId"] = session_id

        try:
            await self._ws.send(json.dumps(msg))
        except Exception as exc:  # noqa: BLE001
            self._pending.pop(cmd_id, None)
            raise CdpConnectionError(f"CDP send failed for {method}: {exc}") from exc

        try:
            return await asyncio.wait_for(fut, timeout=limit)
        except asyncio.TimeoutError:
            # The wire request is not cancelled; a late response is simply dropped.
            raise CommandTimeout(method, cmd_id, limit) from None
        finally:
            self._pending.pop(cmd_id, None)

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound frames
    # ─────────────────────────────────────────────────────────────────────────

    def handle_frame(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("dropping non-JSON CDP frame")
            return
        if not isinstance(data, dict):
            return

        raw_id = data.get("id")
        if isinstance(raw_id, int):
            pending = self._pending.pop(raw_id, None)
            if pending is None or pending.future.done():
                return
            if "error" in data:
                pending.future.set_exception(ProtocolError(pending.method, data["error"]))
            else:
                result = data.get("result")
                pending.future.set_result(result if isinstance(result, dict) else {})
            return

        if isinstance(data.get("method"), str):
            sink = self.on_event
            if sink is None:
                return
            try:
                sink(data)
            except Exception:  # noqa: BLE001
                logger.exception("CDP event handler failed for %s", data.get("method"))

    async def _read_loop(self) -> None:
        reason = "socket closed"
        try:
            async for raw in self._ws:
                self.handle_frame(raw)
        except ConnectionClosed as exc:
            reason = f"socket closed (code={exc.rcvd.code if exc.rcvd else 'none'})"
        except Exception as exc:  # noqa: BLE001
            reason = f"socket error: {exc}"
            logger.debug("CDP reader stopped: %s", exc)
        finally:
            self._mark_closed("closed locally" if self._closing else reason)

    def _mark_closed(self, reason: str) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.CLOSED
        self.close_reason = reason

        pending = list(self._pending.values())
        self._pending.clear()
        for item in pending:
            if not item.future.done():
                item.future.set_exception(CdpConnectionError(f"CDP connection closed while waiting for {item.method}"))

        cb = self.on_close
        if cb is not None and not self._closing:
            try:
                cb(self)
            except Exception:  # noqa: BLE001
                logger.exception("CDP close callback failed")

    async def close(self) -> None:
        """Close the socket without triggering the disconnect callback."""
        self._closing = True
        with contextlib.suppress(Exception):
            await asyncio.wait_for(self._ws.close(), timeout=2.0)
        reader = self._reader
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        self._mark_closed("closed locally")


def backoff_delays(
    attempts: int = CONNECT_ATTEMPTS,
    base: float = CONNECT_BASE_DELAY,
    cap: float = CONNECT_MAX_DELAY,
) -> list[float]:
    """Delays between consecutive connection attempts."""
    return [min(base * (2**i), cap) for i in range(max(0, attempts - 1))]


async def connect_with_retry(
    resolve_url: Callable[[], Awaitable[str]],
    *,
    attempts: int = CONNECT_ATTEMPTS,
    base_delay: float = CONNECT_BASE_DELAY,
    max_delay: float = CONNECT_MAX_DELAY,
    opener: Callable[..., Awaitable[CdpConnection]] | None = None,
    **kwargs: Any,
) -> CdpConnection:
    """Resolve the socket URL and open it, retrying with exponential backoff."""
    open_conn = opener or CdpConnection.open
    delays = backoff_delays(attempts, base_delay, max_delay)
    last_error: Exception | None = None
    for attempt in range(1, max(1, attempts) + 1):
        try:
            ws_url = await resolve_url()
            return await open_conn(ws_url, **kwargs)
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            logger.info("CDP connection attempt %d/%d failed: %s", attempt, attempts, exc)
        if attempt <= len(delays):
            await asyncio.sleep(delays[attempt - 1])
    raise CdpConnectionError(
        f"Could not connect to the browser after {attempts} attempts: {last_error}",
        hint="verify the browser is running with --remote-debugging-port and that the port is reachable",
    )


__all__ = [
    "CdpConnection",
    "ConnectionState",
    "backoff_delays",
    "connect_with_retry",
]
