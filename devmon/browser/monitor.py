"""Browser monitor: launch or attach, connect, instrument, supervise.

Control flow: launcher -> connection (with retry) -> domain enablement ->
event handlers + instrumentation + interaction poller + screenshots for the
life of the connection. A disconnect that was not requested waits a short
grace window, then either escalates (browser gone) or tries one reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import urllib.parse
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .cdp import CdpConnection, backoff_delays, connect_with_retry
from .config import MonitorConfig
from .domains import enable_all
from .errors import InjectionSyntaxError, MonitorError
from .events import EventDispatcher
from .handlers import MonitorEventHandlers
from .http_client import discovery_base, endpoint_ready, list_targets, parse_external_endpoint, select_page_target
from .instrumentation import InstrumentationInjector, InteractionPoller
from .launcher import BrowserLauncher, BrowserProcess
from .screenshots import NetworkIdleTracker, ScreenshotController
from .supervisor import LifecycleSupervisor

logger = logging.getLogger("devmon.browser")

LogCallback = Callable[[str, str], None]


@dataclass
class ReconnectState:
    """Reconnect attempts since the last healthy connection, with their backoff."""

    attempts: int = 0
    delays: list[float] = field(default_factory=backoff_delays)

    def next_delay(self) -> float:
        # First try goes out right after the grace window; repeats back off.
        if self.attempts == 0 or not self.delays:
            return 0.0
        return self.delays[min(self.attempts, len(self.delays)) - 1]

    def reset(self) -> None:
        self.attempts = 0


class BrowserMonitor:
    GRACE_PERIOD = 2.0

    def __init__(
        self,
        config: MonitorConfig,
        log: LogCallback,
        *,
        launcher: BrowserLauncher | None = None,
    ) -> None:
        self.config = config
        self._log = log
        self.launcher = launcher or BrowserLauncher(config)

        self.browser: BrowserProcess | None = None
        self.connection: CdpConnection | None = None
        self.target_id: str | None = None
        self.reconnect = ReconnectState()

        self._external_ws_url: str | None = None
        self._discovery_base: str | None = None
        self._tasks: set[asyncio.Task] = set()
        self._injection_warned = False

        self.dispatcher = EventDispatcher()
        self.supervisor = LifecycleSupervisor(self.emit, capture=self.capture_screenshot)
        self.screenshots = ScreenshotController(
            config.screenshot_dir,
            lambda: self.connection,
            self.emit,
            min_interval=config.screenshot_interval,
            max_width=config.screenshot_max_width,
        )
        self.injector = InstrumentationInjector()
        self.idle = NetworkIdleTracker(lambda: self.spawn(self.screenshots.capture("navigation-settled")))
        self.poller: InteractionPoller | None = None
        self.handlers = MonitorEventHandlers(self)
        self.handlers.register(self.dispatcher)

    # ─────────────────────────────────────────────────────────────────────────
    # Public surface
    # ─────────────────────────────────────────────────────────────────────────

    def emit(self, source: str, message: str) -> None:
        try:
            self._log(source, message)
        except Exception:  # noqa: BLE001
            logger.exception("log callback failed")

    def get_cdp_url(self) -> str | None:
        return self.connection.ws_url if self.connection is not None else None

    def get_browser_pids(self) -> list[int]:
        return sorted(self.browser.pids) if self.browser is not None else []

    def set_on_window_closed_callback(self, callback: Callable[[], None] | None) -> None:
        self.supervisor.on_shutdown = callback

    @property
    def shutdown_requested(self) -> bool:
        return self.supervisor.shutdown_requested

    async def start(self) -> None:
        """Launch (or attach), connect and instrument. Failures here raise."""
        if self.config.cdp_url:
            self._external_ws_url, self._discovery_base = parse_external_endpoint(self.config.cdp_url)
        else:
            self._discovery_base = discovery_base(self.config.cdp_host, self.config.cdp_port)

        if not self.config.external:
            logger.debug("starting browser launch")
            self.browser = await self.launcher.launch()
            self._discovery_base = discovery_base(self.config.cdp_host, self.browser.port)
            self.supervisor.attach(self.browser)

        self.connection = await connect_with_retry(self._resolve_ws_url, opener=self._open_connection)
        self.reconnect.reset()
        await self._configure_connection()
        self.emit("browser", f"[CDP] Connected to {self.connection.ws_url}")

    async def navigate_to_app(self, port: int | None = None) -> None:
        app_port = port or self.config.app_port
        if app_port is None:
            raise MonitorError("No app port configured", hint="pass --app-port or set DEVMON_APP_PORT")
        conn = self._require_connection()
        await conn.send("Page.navigate", {"url": f"http://localhost:{app_port}"})

    async def capture_screenshot(self, label: str) -> str | None:
        return await self.screenshots.capture(label)

    def prepare_shutdown(self) -> None:
        self.supervisor.prepare_shutdown()

    async def shutdown(self) -> None:
        self.prepare_shutdown()
        if self.poller is not None:
            await self.poller.stop()
        self.idle.reset()
        for task in list(self._tasks):
            task.cancel()
        conn, self.connection = self.connection, None
        await self.supervisor.shutdown(conn, self.browser, target_id=self.target_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Connection setup
    # ─────────────────────────────────────────────────────────────────────────

    def _require_connection(self) -> CdpConnection:
        conn = self.connection
        if conn is None or not conn.is_open:
            raise MonitorError("Browser connection is not open")
        return conn

    async def _resolve_ws_url(self) -> str:
        if self._external_ws_url:
            return self._external_ws_url
        if not self._discovery_base:
            raise MonitorError("No discovery endpoint configured")
        targets = await asyncio.to_thread(list_targets, self._discovery_base)
        target = select_page_target(targets)
        self.target_id = target.get("id") if isinstance(target.get("id"), str) else None
        return str(target["webSocketDebuggerUrl"])

    async def _open_connection(self, ws_url: str) -> CdpConnection:
        return await CdpConnection.open(
            ws_url,
            default_timeout=self.config.command_timeout,
            on_event=self.dispatcher.dispatch,
            on_close=self._on_connection_closed,
        )

    async def _configure_connection(self) -> None:
        conn = self._require_connection()
        failed = await enable_all(conn)
        if failed:
            self.emit("browser", f"[CDP] Some domains could not be enabled: {', '.join(failed)}")

        if self.target_id is None:
            with contextlib.suppress(MonitorError):
                info = await conn.send("Target.getTargetInfo", {}, timeout=2.0)
                target_info = info.get("targetInfo")
                if isinstance(target_info, dict) and isinstance(target_info.get("targetId"), str):
                    self.target_id = target_info["targetId"]

        await self._inject()
        if self.poller is not None:
            await self.poller.stop()
        self.poller = InteractionPoller(
            lambda: self.connection,
            self.emit,
            on_settled=lambda: self.spawn(self.screenshots.capture("scroll-settled")),
            should_stop=lambda: self.shutdown_requested,
        )
        self.poller.start()

    async def _inject(self) -> None:
        conn = self.connection
        if conn is None or not conn.is_open or self.shutdown_requested:
            return
        try:
            await self.injector.inject(conn)
        except InjectionSyntaxError as exc:
            if not self._injection_warned:
                self._injection_warned = True
                self.emit("browser", f"[CDP] {exc.diagnostic()}")
        except MonitorError as exc:
            # Deferred: the next load event or backup pass retries.
            logger.debug("instrumentation injection deferred: %s", exc)

    def schedule_injection(self, delay: float) -> None:
        async def _later() -> None:
            if delay > 0:
                await asyncio.sleep(delay)
            await self._inject()

        self.spawn(_later())

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task | None:
        try:
            task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        except RuntimeError:
            # No running loop (e.g. callbacks fired during interpreter teardown).
            with contextlib.suppress(Exception):
                coro.close()  # type: ignore[attr-defined]
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ─────────────────────────────────────────────────────────────────────────
    # Disconnect handling
    # ─────────────────────────────────────────────────────────────────────────

    def _on_connection_closed(self, conn: CdpConnection) -> None:
        if conn is not self.connection or self.shutdown_requested:
            return
        self.spawn(self.handle_disconnect(conn))

    async def _browser_alive(self) -> bool:
        if self.browser is not None:
            return self.browser.is_running()
        base = self._discovery_base
        if base is None and self._external_ws_url:
            parsed = urllib.parse.urlparse(self._external_ws_url)
            scheme = "https" if parsed.scheme == "wss" else "http"
            base = f"{scheme}://{parsed.netloc}"
        if base is None:
            return False
        return await asyncio.to_thread(endpoint_ready, base, 1.0)

    async def handle_disconnect(self, conn: CdpConnection) -> None:
        """Classify an unrequested close: escalate if the browser is gone, else reconnect once."""
        if self.shutdown_requested:
            return
        self.emit(
            "browser",
            f"[CDP] Connection lost ({conn.close_reason or 'unknown reason'}); checking whether the browser is still running",
        )
        if self.poller is not None:
            await self.poller.stop()
        self.idle.reset()

        await asyncio.sleep(self.GRACE_PERIOD)
        if self.shutdown_requested:
            return

        if not await self._browser_alive():
            self.supervisor.escalate("Browser process is gone - shutting down")
            return

        delay = self.reconnect.next_delay()
        self.reconnect.attempts += 1
        if delay > 0:
            await asyncio.sleep(delay)
            if self.shutdown_requested:
                return
        try:
            ws_url = await self._resolve_ws_url()
            new_conn = await self._open_connection(ws_url)
        except Exception as exc:  # noqa: BLE001
            self.emit(
                "browser",
                f"[CDP] Reconnection failed: {exc}. The browser is still running but its debugging endpoint "
                "is unreachable; restart the monitor, or check that no other DevTools client took over the tab",
            )
            return

        self.connection = new_conn
        with contextlib.suppress(Exception):
            await conn.close()
        try:
            await self._configure_connection()
        except MonitorError as exc:
            self.emit("browser", f"[CDP] Reconnected but setup is incomplete: {exc}")
            return
        self.reconnect.reset()
        self.emit("browser", f"[CDP] Reconnected to {new_conn.ws_url}")


__all__ = ["BrowserMonitor", "LogCallback", "ReconnectState"]
