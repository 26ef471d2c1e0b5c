from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from . import processes
from .config import MonitorConfig, expand_path
from .errors import LaunchError, ReadinessTimeout
from .http_client import discovery_base, endpoint_ready

logger = logging.getLogger("devmon.browser")

LOADING_PAGE_HTML = """<!DOCTYPE html>
<html>
<head><title>devmon - Starting...</title></head>
<body style="font-family: system-ui; background: #1e1e1e; color: #fff; display: flex; align-items: center; justify-content: center; height: 100vh; margin: 0;">
  <div style="text-align: center;">
    <h1>devmon</h1>
    <p>Waiting for your app to start...</p>
  </div>
</body>
</html>
"""


class BrowserState(str, Enum):
    LAUNCHING = "launching"
    READY = "ready"
    CRASHED = "crashed"
    GRACEFULLY_EXITED = "gracefully_exited"
    SHUTTING_DOWN = "shutting_down"


@dataclass
class BrowserProcess:
    handle: subprocess.Popen | None
    executable: str
    profile_dir: str
    port: int
    pids: set[int] = field(default_factory=set)
    state: BrowserState = BrowserState.LAUNCHING

    @property
    def pid(self) -> int | None:
        return self.handle.pid if self.handle is not None else None

    def exit_status(self) -> tuple[int | None, int | None] | None:
        """(exit code, signal) once the process has exited, else None."""
        if self.handle is None:
            return None
        code = self.handle.poll()
        if code is None:
            return None
        # Popen reports death-by-signal as a negative return code.
        if code < 0:
            return None, -code
        return code, None

    def is_running(self) -> bool:
        if self.handle is not None and self.handle.poll() is None:
            return True
        return any(processes.pid_alive(pid) for pid in self.pids)


def create_loading_page() -> str:
    """Write the placeholder page shown until the app is reachable; return its file URL."""
    loading_dir = Path(tempfile.gettempdir()) / "devmon-loading"
    loading_dir.mkdir(parents=True, exist_ok=True)
    loading_path = loading_dir / "loading.html"
    loading_path.write_text(LOADING_PAGE_HTML, encoding="utf-8")
    return loading_path.as_uri()


class BrowserLauncher:
    READY_POLL_INTERVAL = 0.5
    READY_POLL_ATTEMPTS = 30

    def __init__(self, config: MonitorConfig) -> None:
        self.config = config

    @staticmethod
    def find_free_port() -> int:
        with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]

    @property
    def discovery_url(self) -> str:
        return discovery_base(self.config.cdp_host, self.config.cdp_port)

    def build_launch_command(self, executable: str, profile_dir: str, extra: list[str] | None = None) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.config.cdp_port}",
            f"--user-data-dir={profile_dir}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-default-apps",
            "--disable-background-networking",
            "--disable-sync",
        ]
        if self.config.headless:
            flags.extend(["--headless=new", "--disable-gpu"])
        flags.extend(self.config.extra_flags)
        if extra:
            flags.extend(extra)
        start_url = "about:blank" if self.config.headless else create_loading_page()
        return [executable, *flags, start_url]

    def _spawn(self, cmd: list[str]) -> subprocess.Popen:
        popen_kwargs: dict[str, object] = {
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "stdin": subprocess.DEVNULL,
        }
        if os.name == "posix":
            # Own process group: teardown signals the group members we discover, not our parent's.
            popen_kwargs["start_new_session"] = True
        return subprocess.Popen(cmd, **popen_kwargs)  # type: ignore[arg-type]

    def _endpoint_ready(self) -> bool:
        return endpoint_ready(self.discovery_url)

    async def launch(
        self,
        candidates: list[str] | None = None,
        profile_dir: str | None = None,
        extra_flags: list[str] | None = None,
    ) -> BrowserProcess:
        """Spawn the first candidate that reaches a responding discovery endpoint."""
        candidates = list(candidates if candidates is not None else self.config.binary_candidates())
        profile = expand_path(profile_dir or self.config.profile_dir)
        Path(profile).mkdir(parents=True, exist_ok=True)

        killed = await processes.kill_existing_with_profile(profile)
        if killed:
            logger.info("terminated %d leftover browser processes for profile %s", len(killed), profile)

        if int(self.config.cdp_port) == 0:
            self.config.cdp_port = self.find_free_port()

        attempts: list[tuple[str, str]] = []
        for executable in candidates:
            cmd = self.build_launch_command(executable, profile, extra_flags)
            logger.debug("launching browser: %s", " ".join(cmd))
            try:
                handle = self._spawn(cmd)
            except OSError as exc:
                attempts.append((executable, str(exc)))
                logger.debug("spawn failed for %s: %s", executable, exc)
                continue

            browser = BrowserProcess(handle=handle, executable=executable, profile_dir=profile, port=self.config.cdp_port)
            failure = await self._wait_until_ready(browser)
            if failure is not None:
                attempts.append((executable, failure))
                continue

            browser.state = BrowserState.READY
            browser.pids = processes.discover_profile_pids(profile, root_pid=browser.pid)
            if browser.pid is not None:
                browser.pids.add(browser.pid)
            logger.info("browser ready: %s (pid=%s, port=%s)", executable, browser.pid, browser.port)
            return browser

        raise LaunchError(attempts, platform=sys.platform)

    async def _wait_until_ready(self, browser: BrowserProcess) -> str | None:
        """Poll the discovery endpoint; return a failure reason if the process died first."""
        handle = browser.handle
        assert handle is not None
        for _attempt in range(self.READY_POLL_ATTEMPTS):
            code = handle.poll()
            if code is not None and code != 0:
                return f"exited with code {code} before becoming ready"
            if await asyncio.to_thread(self._endpoint_ready):
                return None
            await asyncio.sleep(self.READY_POLL_INTERVAL)

        with contextlib.suppress(Exception):
            handle.terminate()
        waited = self.READY_POLL_ATTEMPTS * self.READY_POLL_INTERVAL
        raise ReadinessTimeout(
            f"Browser {browser.executable} did not expose {self.discovery_url}/json/version within {waited:.0f}s",
            hint=f"check that port {self.config.cdp_port} is free and that the profile directory is not locked",
        )


__all__ = ["BrowserLauncher", "BrowserProcess", "BrowserState", "create_loading_page"]
