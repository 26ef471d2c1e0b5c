from __future__ import annotations

import logging
from typing import Any

from .cdp import CdpConnection
from .errors import MonitorError

logger = logging.getLogger("devmon.browser")

# (method, params) in enable order.
DOMAIN_COMMANDS: list[tuple[str, dict[str, Any]]] = [
    ("Runtime.enable", {}),
    ("Network.enable", {}),
    ("Page.enable", {}),
    ("DOM.enable", {}),
    ("Performance.enable", {}),
    ("Security.enable", {}),
    ("Log.enable", {}),
    ("Target.setDiscoverTargets", {"discover": True}),
]

ASYNC_CALL_STACK_DEPTH = 32


async def enable_all(conn: CdpConnection, *, timeout: float = 5.0) -> list[str]:
    """Enable every diagnostic domain; return the methods that failed.

    A failing domain is logged and skipped so the rest still get enabled.
    """
    failed: list[str] = []
    for method, params in DOMAIN_COMMANDS:
        try:
            await conn.send(method, params, timeout=timeout)
            logger.debug("enabled %s", method)
        except MonitorError as exc:
            failed.append(method)
            logger.warning("failed to enable %s: %s", method, exc)

    # Deeper async stacks make exception traces point at user code.
    try:
        await conn.send("Runtime.enable", {}, timeout=timeout)
        await conn.send("Runtime.setAsyncCallStackDepth", {"maxDepth": ASYNC_CALL_STACK_DEPTH}, timeout=timeout)
    except MonitorError as exc:
        failed.append("Runtime.setAsyncCallStackDepth")
        logger.warning("failed to raise async call stack depth: %s", exc)
    return failed


__all__ = ["ASYNC_CALL_STACK_DEPTH", "DOMAIN_COMMANDS", "enable_all"]
