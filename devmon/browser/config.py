from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BINARY_CANDIDATES: list[str] = [
    # Prefer Chromium builds; snap versions ignore --user-data-dir, keep them last.
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Google Chrome Canary.app/Contents/MacOS/Google Chrome Canary",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/usr/bin/google-chrome-beta",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    "/snap/bin/chromium",
]

# Bare names resolved through PATH as a last resort.
PATH_CANDIDATES: list[str] = ["google-chrome", "chromium", "chromium-browser", "chrome"]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name) or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name) or default)
    except ValueError:
        return default


@dataclass
class MonitorConfig:
    profile_dir: str
    screenshot_dir: str
    browser_path: str | None = None
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    app_port: int | None = None
    headless: bool = False
    cdp_url: str | None = None
    skip_launch: bool = False
    extra_flags: list[str] = field(default_factory=list)
    screenshot_interval: float = 1.0
    screenshot_max_width: int = 0
    command_timeout: float = 10.0
    debug: bool = False

    @property
    def external(self) -> bool:
        """True when the monitor attaches to a browser it does not own."""
        return self.skip_launch or bool(self.cdp_url)

    def binary_candidates(self) -> list[str]:
        """Executable candidates in launch order (explicit path first)."""
        out: list[str] = []
        if self.browser_path:
            out.append(expand_path(self.browser_path))
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK) and candidate not in out:
                out.append(candidate)
        for name in PATH_CANDIDATES:
            resolved = shutil.which(name)
            if resolved and resolved not in out:
                out.append(resolved)
        return out

    @classmethod
    def from_env(cls) -> MonitorConfig:
        app_port_raw = (os.environ.get("DEVMON_APP_PORT") or "").strip()
        app_port = int(app_port_raw) if app_port_raw.isdigit() else None
        flags_raw = os.environ.get("DEVMON_BROWSER_FLAGS", "")
        extra_flags = [flag.strip() for flag in flags_raw.split(",") if flag.strip()]
        interval_ms = _env_int("DEVMON_SCREENSHOT_INTERVAL_MS", 1000)
        return cls(
            profile_dir=expand_path(os.environ.get("DEVMON_PROFILE_DIR", "~/.devmon/browser-profile")),
            screenshot_dir=expand_path(os.environ.get("DEVMON_SCREENSHOT_DIR", "~/.devmon/screenshots")),
            browser_path=(os.environ.get("DEVMON_BROWSER_PATH") or "").strip() or None,
            cdp_host=(os.environ.get("DEVMON_CDP_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            cdp_port=_env_int("DEVMON_CDP_PORT", 9222),
            app_port=app_port,
            headless=_env_flag("DEVMON_HEADLESS", False),
            cdp_url=(os.environ.get("DEVMON_CDP_URL") or "").strip() or None,
            skip_launch=_env_flag("DEVMON_SKIP_LAUNCH", False),
            extra_flags=extra_flags,
            screenshot_interval=max(0, interval_ms) / 1000.0,
            screenshot_max_width=max(0, _env_int("DEVMON_SCREENSHOT_MAX_WIDTH", 0)),
            command_timeout=max(0.5, _env_float("DEVMON_COMMAND_TIMEOUT", 10.0)),
            debug=_env_flag("DEVMON_DEBUG", False),
        )
