"""Error taxonomy for the browser monitor.

Every error carries an optional ``hint``: the most likely causes and the next
debugging step, so the message can be routed to the log stream as-is.
"""

from __future__ import annotations

import sys
from typing import Any


class MonitorError(Exception):
    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint

    def diagnostic(self) -> str:
        if self.hint:
            return f"{self} ({self.hint})"
        return str(self)


class LaunchError(MonitorError):
    """No usable browser executable across all candidates."""

    def __init__(self, attempts: list[tuple[str, str]], *, platform: str | None = None) -> None:
        self.attempts = list(attempts)
        self.platform = platform or sys.platform
        tried = "; ".join(f"{path}: {reason}" for path, reason in self.attempts) or "no candidates found"
        super().__init__(
            f"Failed to launch a browser on {self.platform}. Tried: {tried}",
            hint=(
                "install Chrome or Chromium, or point DEVMON_BROWSER_PATH at an executable; "
                "if a browser is already running with the same profile directory, close it or use another "
                "DEVMON_PROFILE_DIR; to attach to an existing browser set DEVMON_CDP_URL and DEVMON_SKIP_LAUNCH=1"
            ),
        )

    @property
    def tried_paths(self) -> list[str]:
        return [path for path, _reason in self.attempts]


class ReadinessTimeout(MonitorError):
    pass


class DiscoveryError(MonitorError):
    pass


class CdpConnectionError(MonitorError):
    pass


class CommandTimeout(MonitorError):
    def __init__(self, method: str, command_id: int, timeout: float) -> None:
        self.method = method
        self.command_id = command_id
        self.timeout = timeout
        super().__init__(f"CDP command {method} (id={command_id}) timed out after {timeout:.1f}s")


class ProtocolError(MonitorError):
    def __init__(self, method: str, error: Any) -> None:
        self.method = method
        self.code: int | None = None
        message = str(error)
        if isinstance(error, dict):
            code = error.get("code")
            self.code = code if isinstance(code, int) else None
            message = str(error.get("message") or error)
        self.error_message = message
        super().__init__(f"CDP command {method} failed: {message}")


class InjectionSyntaxError(MonitorError):
    pass


class CrashDetected(MonitorError):
    def __init__(self, code: int | None, signal: int | None) -> None:
        self.code = code
        self.signal = signal
        super().__init__(f"Browser process exited unexpectedly - Code: {code}, Signal: {signal}")


__all__ = [
    "CdpConnectionError",
    "CommandTimeout",
    "CrashDetected",
    "DiscoveryError",
    "InjectionSyntaxError",
    "LaunchError",
    "MonitorError",
    "ProtocolError",
    "ReadinessTimeout",
]
