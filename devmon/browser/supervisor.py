"""Crash/exit classification and coordinated teardown.

Teardown is best-effort and time-bounded at each step: close the page, close
its target, drop the socket, then signal every PID recorded for this
instance (never anything else).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from . import processes
from .cdp import CdpConnection
from .errors import CrashDetected, MonitorError
from .launcher import BrowserProcess, BrowserState

logger = logging.getLogger("devmon.browser")


class ExitKind(str, Enum):
    GRACEFUL = "graceful"
    CRASH = "crash"


def classify_exit(code: int | None, signal: int | str | None) -> ExitKind:
    """Graceful iff exit code 0 and no signal; anything else is a crash."""
    if code == 0 and not signal:
        return ExitKind.GRACEFUL
    return ExitKind.CRASH


class LifecycleSupervisor:
    STEP_WAIT = 0.3
    COMMAND_WAIT = 1.0
    KILL_GRACE = 1.0

    def __init__(
        self,
        emit: Callable[[str, str], None],
        *,
        capture: Callable[[str], Awaitable[Any]] | None = None,
        on_shutdown: Callable[[], None] | None = None,
    ) -> None:
        self._emit = emit
        self._capture = capture
        self.on_shutdown = on_shutdown
        self._shutdown_requested = False
        self._escalated = False
        self._watcher: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self.last_exit: tuple[int | None, int | None] | None = None

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def escalated(self) -> bool:
        return self._escalated

    def prepare_shutdown(self) -> None:
        """One-way: silence reconnect and crash escalation for an intentional teardown."""
        self._shutdown_requested = True

    def escalate(self, reason: str) -> bool:
        """Invoke the shutdown callback at most once per instance."""
        if self._escalated or self._shutdown_requested:
            return False
        self._escalated = True
        self._emit("browser", f"[BROWSER] {reason}")
        cb = self.on_shutdown
        if cb is not None:
            try:
                cb()
            except Exception:  # noqa: BLE001
                logger.exception("shutdown callback failed")
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Process exit observation
    # ─────────────────────────────────────────────────────────────────────────

    def attach(self, browser: BrowserProcess) -> None:
        if browser.handle is None or self._watcher is not None:
            return
        self._watcher = asyncio.get_running_loop().create_task(self._watch_exit(browser), name="devmon-exit-watch")

    async def _watch_exit(self, browser: BrowserProcess) -> None:
        handle = browser.handle
        if handle is None:
            return
        await asyncio.to_thread(handle.wait)
        status = browser.exit_status() or (handle.returncode, None)
        self.on_process_exit(browser, *status)

    def on_process_exit(self, browser: BrowserProcess | None, code: int | None, signal: int | None) -> ExitKind:
        kind = classify_exit(code, signal)
        self.last_exit = (code, signal)
        if browser is not None and browser.state is not BrowserState.SHUTTING_DOWN:
            browser.state = BrowserState.GRACEFULLY_EXITED if kind is ExitKind.GRACEFUL else BrowserState.CRASHED
        if self._shutdown_requested:
            return kind

        if kind is ExitKind.GRACEFUL:
            self._emit("browser", "[EXIT] Browser closed by user")
            logger.debug("browser exited gracefully")
            return kind

        crash = CrashDetected(code, signal)
        self._emit("browser", f"[CRASH] {crash}")
        self._emit("browser", "[CRASH] Browser crashed - check recent server/browser logs for correlation")
        if self._capture is not None:
            self._spawn(self._capture("crash"))
        return kind

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ─────────────────────────────────────────────────────────────────────────
    # Teardown
    # ─────────────────────────────────────────────────────────────────────────

    async def shutdown(
        self,
        conn: CdpConnection | None,
        browser: BrowserProcess | None,
        *,
        target_id: str | None = None,
    ) -> list[int]:
        """Close page, target and socket, then signal this instance's PIDs.

        Returns the PIDs that were signalled.
        """
        self.prepare_shutdown()
        if browser is not None:
            browser.state = BrowserState.SHUTTING_DOWN

        if conn is not None and conn.is_open:
            with contextlib.suppress(MonitorError):
                await conn.send("Page.close", {}, timeout=self.COMMAND_WAIT)
            await asyncio.sleep(self.STEP_WAIT)
            if target_id and conn.is_open:
                with contextlib.suppress(MonitorError):
                    await conn.send("Target.closeTarget", {"targetId": target_id}, timeout=self.COMMAND_WAIT)
                await asyncio.sleep(self.STEP_WAIT)
        if conn is not None:
            await conn.close()

        for task in list(self._tasks):
            task.cancel()

        if browser is None:
            return []

        # Children may have spawned since launch; fold them into this instance's set.
        with contextlib.suppress(Exception):
            browser.pids |= processes.discover_profile_pids(browser.profile_dir, root_pid=browser.pid)
        if browser.pid is not None:
            browser.pids.add(browser.pid)
        signalled = sorted(browser.pids)
        forced = await processes.terminate_pids(signalled, grace=self.KILL_GRACE)
        if forced:
            logger.info("force-killed browser pids %s", forced)

        if browser.handle is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(asyncio.to_thread(browser.handle.wait), timeout=self.KILL_GRACE)
        watcher = self._watcher
        if watcher is not None and not watcher.done():
            watcher.cancel()
        return signalled


__all__ = ["ExitKind", "LifecycleSupervisor", "classify_exit"]
