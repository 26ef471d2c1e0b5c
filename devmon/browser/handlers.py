from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .events import CdpEvent, EventDispatcher
from .formatting import (
    format_console_call,
    format_exception,
    format_loading_failed,
    format_log_entry,
    format_request,
    format_response,
)
from .urls import should_monitor

if TYPE_CHECKING:
    from .monitor import BrowserMonitor

BACKUP_INJECT_DELAY = 1.0


class MonitorEventHandlers:
    """CDP notification handlers for one monitor instance."""

    max_request_map = 1000

    def __init__(self, monitor: BrowserMonitor) -> None:
        self.monitor = monitor
        # requestId -> {"method", "url", "ts"} for monitored requests only
        self._requests: dict[str, dict[str, Any]] = {}

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.on("Runtime.consoleAPICalled", self.on_console)
        dispatcher.on("Runtime.exceptionThrown", self.on_exception)
        dispatcher.on("Log.entryAdded", self.on_log_entry)
        dispatcher.on("Network.requestWillBeSent", self.on_request)
        dispatcher.on("Network.responseReceived", self.on_response)
        dispatcher.on("Network.loadingFinished", self.on_loading_finished)
        dispatcher.on("Network.loadingFailed", self.on_loading_failed)
        dispatcher.on("Page.frameNavigated", self.on_frame_navigated)
        dispatcher.on("Page.loadEventFired", self.on_load)
        dispatcher.on("Page.domContentEventFired", self.on_dom_content_loaded)
        dispatcher.on("Target.targetDestroyed", self.on_target_destroyed)
        dispatcher.on("Target.targetCrashed", self.on_target_crashed)

    def _monitored(self, url: Any) -> bool:
        return isinstance(url, str) and should_monitor(url, self.monitor.config.app_port)

    # ─────────────────────────────────────────────────────────────────────────
    # Console / errors
    # ─────────────────────────────────────────────────────────────────────────

    def on_console(self, event: CdpEvent) -> None:
        self.monitor.emit("browser", format_console_call(event.params))

    def on_exception(self, event: CdpEvent) -> None:
        self.monitor.emit("browser", format_exception(event.params))
        self.monitor.spawn(self.monitor.screenshots.capture("error"))

    def on_log_entry(self, event: CdpEvent) -> None:
        line = format_log_entry(event.params)
        if line:
            self.monitor.emit("browser", line)

    # ─────────────────────────────────────────────────────────────────────────
    # Network
    # ─────────────────────────────────────────────────────────────────────────

    def _remember_request(self, request_id: str, meta: dict[str, Any]) -> None:
        self._requests[request_id] = meta
        if len(self._requests) > self.max_request_map:
            drop = len(self._requests) - self.max_request_map
            for k in list(self._requests.keys())[:drop]:
                self._requests.pop(k, None)
                self.monitor.idle.request_finished(k)

    def on_request(self, event: CdpEvent) -> None:
        params = event.params
        request = params.get("request")
        request_id = params.get("requestId")
        if not isinstance(request, dict) or not isinstance(request_id, str):
            return
        url = request.get("url")
        if not self._monitored(url):
            return
        self._remember_request(
            request_id,
            {"method": request.get("method"), "url": url, "ts": params.get("timestamp")},
        )
        self.monitor.idle.request_started(request_id)
        self.monitor.emit("browser", format_request(params))

    def on_response(self, event: CdpEvent) -> None:
        params = event.params
        meta = self._requests.get(params.get("requestId") or "")
        if meta is None:
            return
        response = params.get("response")
        if isinstance(response, dict) and not self._monitored(response.get("url") or meta.get("url")):
            return
        latency_ms = None
        start, end = meta.get("ts"), params.get("timestamp")
        if isinstance(start, (int, float)) and isinstance(end, (int, float)):
            latency_ms = (end - start) * 1000.0
        self.monitor.emit("browser", format_response(params, latency_ms))

    def on_loading_finished(self, event: CdpEvent) -> None:
        request_id = event.params.get("requestId")
        if isinstance(request_id, str) and self._requests.pop(request_id, None) is not None:
            self.monitor.idle.request_finished(request_id)

    def on_loading_failed(self, event: CdpEvent) -> None:
        request_id = event.params.get("requestId")
        if not isinstance(request_id, str):
            return
        meta = self._requests.pop(request_id, None)
        if meta is None:
            return
        self.monitor.emit("browser", format_loading_failed(event.params, meta.get("method"), meta.get("url") or ""))
        self.monitor.idle.request_finished(request_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Page lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def on_frame_navigated(self, event: CdpEvent) -> None:
        frame = event.params.get("frame")
        if not isinstance(frame, dict) or frame.get("parentId"):
            return
        url = frame.get("url")
        if not self._monitored(url):
            return
        self.monitor.emit("browser", f"[NAVIGATION] {url}")
        self.monitor.idle.mark_navigation()
        self.monitor.schedule_injection(BACKUP_INJECT_DELAY)

    def on_load(self, event: CdpEvent) -> None:
        self.monitor.spawn(self.monitor.screenshots.capture("page-loaded"))
        self.monitor.schedule_injection(0)

    def on_dom_content_loaded(self, event: CdpEvent) -> None:
        # Single-page navigations can drop in-page state without a full reload.
        self.monitor.schedule_injection(0)

    # ─────────────────────────────────────────────────────────────────────────
    # Targets
    # ─────────────────────────────────────────────────────────────────────────

    def on_target_destroyed(self, event: CdpEvent) -> None:
        target_id = event.params.get("targetId")
        if target_id and target_id == self.monitor.target_id:
            self.monitor.supervisor.escalate("Monitored tab was closed - shutting down")

    def on_target_crashed(self, event: CdpEvent) -> None:
        target_id = event.params.get("targetId")
        if not target_id or target_id != self.monitor.target_id:
            return
        status = event.params.get("status") or "unknown"
        code = event.params.get("errorCode")
        self.monitor.emit("browser", f"[CRASH] Page crashed - status: {status}, errorCode: {code}")
        self.monitor.spawn(self.monitor.screenshots.capture("crash"))


__all__ = ["BACKUP_INJECT_DELAY", "MonitorEventHandlers"]
