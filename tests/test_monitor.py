from __future__ import annotations

import asyncio
from typing import Any

import pytest


class _Conn:
    def __init__(self, ws_url: str = "ws://127.0.0.1:9222/devtools/page/A", *, is_open: bool = True) -> None:
        self.ws_url = ws_url
        self.is_open = is_open
        self.close_reason: str | None = "socket closed (code=1006)"
        self.sent: list[tuple[str, dict[str, Any] | None]] = []
        self.closed = False

    async def send(self, method: str, params: dict[str, Any] | None = None, **_kwargs: Any) -> dict[str, Any]:
        self.sent.append((method, params))
        return {}

    async def close(self) -> None:
        self.is_open = False
        self.closed = True


def _monitor(tmp_path, **overrides: Any):
    from devmon.browser.config import MonitorConfig
    from devmon.browser.monitor import BrowserMonitor

    cfg = MonitorConfig(profile_dir=str(tmp_path / "profile"), screenshot_dir=str(tmp_path / "shots"), **overrides)
    lines: list[str] = []
    monitor = BrowserMonitor(cfg, lambda _source, message: lines.append(message))
    monitor.GRACE_PERIOD = 0.0
    return monitor, lines


def test_disconnect_with_dead_browser_fires_callback_exactly_once(tmp_path) -> None:
    monitor, lines = _monitor(tmp_path)
    old = _Conn(is_open=False)
    monitor.connection = old
    calls = [0]
    opened: list[str] = []
    monitor.set_on_window_closed_callback(lambda: calls.__setitem__(0, calls[0] + 1))

    async def _dead() -> bool:
        return False

    async def _open(ws_url: str) -> _Conn:
        opened.append(ws_url)
        return _Conn(ws_url)

    monitor._browser_alive = _dead
    monitor._open_connection = _open

    async def _main() -> None:
        await monitor.handle_disconnect(old)
        await monitor.handle_disconnect(old)

    asyncio.run(_main())

    assert calls[0] == 1
    assert opened == []
    assert any(line.startswith("[BROWSER] Browser process is gone") for line in lines)


def test_disconnect_with_live_browser_reconnects_once(tmp_path) -> None:
    monitor, lines = _monitor(tmp_path)
    old = _Conn(is_open=False)
    monitor.connection = old
    calls = [0]
    opened: list[str] = []
    configured = [0]
    monitor.set_on_window_closed_callback(lambda: calls.__setitem__(0, calls[0] + 1))

    async def _alive() -> bool:
        return True

    async def _resolve() -> str:
        return "ws://127.0.0.1:9222/devtools/page/B"

    async def _open(ws_url: str) -> _Conn:
        opened.append(ws_url)
        return _Conn(ws_url)

    async def _configure() -> None:
        configured[0] += 1

    monitor._browser_alive = _alive
    monitor._resolve_ws_url = _resolve
    monitor._open_connection = _open
    monitor._configure_connection = _configure

    asyncio.run(monitor.handle_disconnect(old))

    assert calls[0] == 0
    assert opened == ["ws://127.0.0.1:9222/devtools/page/B"]
    assert configured[0] == 1
    assert monitor.get_cdp_url() == "ws://127.0.0.1:9222/devtools/page/B"
    assert old.closed
    assert monitor.reconnect.attempts == 0
    assert lines[-1] == "[CDP] Reconnected to ws://127.0.0.1:9222/devtools/page/B"


def test_failed_reconnect_is_reported_without_callback(tmp_path) -> None:
    from devmon.browser.errors import CdpConnectionError

    monitor, lines = _monitor(tmp_path)
    old = _Conn(is_open=False)
    monitor.connection = old
    calls = [0]
    attempts = [0]
    monitor.set_on_window_closed_callback(lambda: calls.__setitem__(0, calls[0] + 1))

    async def _alive() -> bool:
        return True

    async def _resolve() -> str:
        return "ws://127.0.0.1:9222/devtools/page/B"

    async def _open(ws_url: str) -> _Conn:
        attempts[0] += 1
        raise CdpConnectionError("handshake rejected")

    monitor._browser_alive = _alive
    monitor._resolve_ws_url = _resolve
    monitor._open_connection = _open

    asyncio.run(monitor.handle_disconnect(old))

    assert attempts[0] == 1
    assert calls[0] == 0
    assert monitor.connection is old
    assert monitor.reconnect.attempts == 1
    assert any("Reconnection failed: handshake rejected" in line for line in lines)


def test_reconnect_backoff_follows_schedule() -> None:
    from devmon.browser.monitor import ReconnectState

    state = ReconnectState(delays=[1.0, 2.0, 4.0])
    seen = []
    for _ in range(5):
        seen.append(state.next_delay())
        state.attempts += 1
    assert seen == [0.0, 1.0, 2.0, 4.0, 4.0]

    state.reset()
    assert state.attempts == 0
    assert state.delays == [1.0, 2.0, 4.0]
    assert ReconnectState(delays=[]).next_delay() == 0.0


def test_repeated_disconnect_waits_backoff_before_reconnecting(tmp_path) -> None:
    import time

    monitor, lines = _monitor(tmp_path)
    monitor.reconnect.attempts = 1
    monitor.reconnect.delays = [0.05]
    old = _Conn(is_open=False)
    monitor.connection = old
    opened: list[float] = []

    async def _alive() -> bool:
        return True

    async def _resolve() -> str:
        return "ws://127.0.0.1:9222/devtools/page/C"

    async def _open(ws_url: str) -> _Conn:
        opened.append(time.monotonic())
        return _Conn(ws_url)

    async def _configure() -> None:
        return None

    monitor._browser_alive = _alive
    monitor._resolve_ws_url = _resolve
    monitor._open_connection = _open
    monitor._configure_connection = _configure

    started = time.monotonic()
    asyncio.run(monitor.handle_disconnect(old))

    assert len(opened) == 1
    assert opened[0] - started >= 0.04
    assert monitor.reconnect.attempts == 0
    assert lines[-1] == "[CDP] Reconnected to ws://127.0.0.1:9222/devtools/page/C"


def test_disconnect_after_prepare_shutdown_is_ignored(tmp_path) -> None:
    monitor, lines = _monitor(tmp_path)
    old = _Conn(is_open=False)
    monitor.connection = old
    monitor.prepare_shutdown()

    monitor._on_connection_closed(old)
    asyncio.run(monitor.handle_disconnect(old))

    assert lines == []
    assert not monitor._tasks


def test_superseded_connection_close_is_ignored(tmp_path) -> None:
    monitor, _lines = _monitor(tmp_path)
    monitor.connection = _Conn()

    monitor._on_connection_closed(_Conn(is_open=False))

    assert not monitor._tasks


def test_navigate_to_app_uses_configured_port(tmp_path) -> None:
    monitor, _lines = _monitor(tmp_path, app_port=5173)
    conn = _Conn()
    monitor.connection = conn

    asyncio.run(monitor.navigate_to_app())
    asyncio.run(monitor.navigate_to_app(3000))

    assert conn.sent == [
        ("Page.navigate", {"url": "http://localhost:5173"}),
        ("Page.navigate", {"url": "http://localhost:3000"}),
    ]


def test_navigate_to_app_without_port_raises(tmp_path) -> None:
    from devmon.browser.errors import MonitorError

    monitor, _lines = _monitor(tmp_path)
    monitor.connection = _Conn()

    with pytest.raises(MonitorError):
        asyncio.run(monitor.navigate_to_app())


def test_accessors_before_start(tmp_path) -> None:
    from devmon.browser.launcher import BrowserProcess

    monitor, _lines = _monitor(tmp_path)
    assert monitor.get_cdp_url() is None
    assert monitor.get_browser_pids() == []

    monitor.browser = BrowserProcess(handle=None, executable="/bin/chrome", profile_dir="p", port=9222, pids={30, 10, 20})
    assert monitor.get_browser_pids() == [10, 20, 30]


def test_emit_survives_failing_log_callback(tmp_path) -> None:
    from devmon.browser.config import MonitorConfig
    from devmon.browser.monitor import BrowserMonitor

    def _boom(_source: str, _message: str) -> None:
        raise RuntimeError("sink closed")

    monitor = BrowserMonitor(MonitorConfig(profile_dir=str(tmp_path), screenshot_dir=str(tmp_path)), _boom)
    monitor.emit("browser", "[CDP] hello")


def test_start_attaches_to_external_socket(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    from devmon.browser import monitor as monitor_module

    monitor, lines = _monitor(tmp_path, cdp_url="ws://10.0.0.5:9222/devtools/page/X")
    launched = [0]

    async def _launch(*_args: Any, **_kwargs: Any) -> None:
        launched[0] += 1

    async def _connect(resolve_url, *, opener, **_kwargs: Any) -> _Conn:
        return await opener(await resolve_url())

    async def _open(ws_url: str) -> _Conn:
        return _Conn(ws_url)

    async def _configure() -> None:
        return None

    monkeypatch.setattr(monitor.launcher, "launch", _launch)
    monkeypatch.setattr(monitor_module, "connect_with_retry", _connect)
    monitor._open_connection = _open
    monitor._configure_connection = _configure

    asyncio.run(monitor.start())

    assert launched[0] == 0
    assert monitor.get_cdp_url() == "ws://10.0.0.5:9222/devtools/page/X"
    assert lines == ["[CDP] Connected to ws://10.0.0.5:9222/devtools/page/X"]
