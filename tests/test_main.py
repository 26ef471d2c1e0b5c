from __future__ import annotations

import io
import re

import pytest


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DEVMON_CDP_PORT", "DEVMON_APP_PORT", "DEVMON_HEADLESS", "DEVMON_BROWSER_FLAGS", "DEVMON_CDP_URL"):
        monkeypatch.delenv(name, raising=False)


def test_cli_flags_override_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    from devmon.browser.main import build_parser, config_from_args

    monkeypatch.setenv("DEVMON_CDP_PORT", "9333")
    monkeypatch.setenv("DEVMON_BROWSER_FLAGS", "--mute-audio")
    args = build_parser().parse_args(
        [
            "--profile-dir",
            str(tmp_path / "profile"),
            "--app-port",
            "3000",
            "--headless",
            "--browser-flag=--disable-extensions",
            "--screenshot-interval-ms",
            "2000",
            "--cdp-url",
            "http://127.0.0.1:9444",
            "--skip-launch",
        ]
    )
    cfg = config_from_args(args)

    assert cfg.profile_dir == str(tmp_path / "profile")
    assert cfg.cdp_port == 9333
    assert cfg.app_port == 3000
    assert cfg.headless is True
    assert cfg.extra_flags == ["--mute-audio", "--disable-extensions"]
    assert cfg.screenshot_interval == 2.0
    assert cfg.cdp_url == "http://127.0.0.1:9444"
    assert cfg.external is True


def test_egress_line_format() -> None:
    from devmon.browser.main import make_egress

    stream = io.StringIO()
    make_egress(stream)("browser", "[NAVIGATION] http://localhost:3000/")

    line = stream.getvalue()
    assert re.fullmatch(
        r"\[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z\] \[BROWSER\] \[NAVIGATION\] http://localhost:3000/\n", line
    )


def test_run_reports_startup_failure(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    import asyncio

    from devmon.browser import main as main_module
    from devmon.browser.config import MonitorConfig
    from devmon.browser.errors import LaunchError

    shut: list[bool] = []

    class _Monitor:
        def __init__(self, _cfg, _egress) -> None:
            pass

        def set_on_window_closed_callback(self, _cb) -> None:
            pass

        async def start(self) -> None:
            raise LaunchError([("/opt/chrome", "not found")])

        def prepare_shutdown(self) -> None:
            pass

        async def shutdown(self) -> None:
            shut.append(True)

    monkeypatch.setattr(main_module, "BrowserMonitor", _Monitor)
    cfg = MonitorConfig(profile_dir=str(tmp_path), screenshot_dir=str(tmp_path))

    assert asyncio.run(main_module.run(cfg, lambda _s, _m: None)) == 1
    assert shut == [True]


def test_run_stops_when_window_closes(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    import asyncio

    from devmon.browser import main as main_module
    from devmon.browser.config import MonitorConfig

    events: list[str] = []

    class _Monitor:
        def __init__(self, _cfg, _egress) -> None:
            self.cb = None

        def set_on_window_closed_callback(self, cb) -> None:
            self.cb = cb

        async def start(self) -> None:
            events.append("start")
            asyncio.get_running_loop().call_later(0.01, self.cb)

        def prepare_shutdown(self) -> None:
            events.append("prepare")

        async def shutdown(self) -> None:
            events.append("shutdown")

    monkeypatch.setattr(main_module, "BrowserMonitor", _Monitor)
    cfg = MonitorConfig(profile_dir=str(tmp_path), screenshot_dir=str(tmp_path))

    assert asyncio.run(main_module.run(cfg, lambda _s, _m: None)) == 0
    assert events == ["start", "prepare", "shutdown"]
