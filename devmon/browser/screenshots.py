from __future__ import annotations

import asyncio
import base64
import logging
import re
import time
from collections.abc import Callable
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path

from PIL import Image

from .cdp import CdpConnection
from .errors import MonitorError

logger = logging.getLogger("devmon.browser")

PRIORITY_EVENTS = frozenset({"error", "crash"})
NETWORK_IDLE_DELAY = 0.5


def timestamp_slug(now: datetime | None = None) -> str:
    """ISO timestamp safe for file names: 2026-10-19T08-15-02-123Z."""
    now = now or datetime.now(timezone.utc)
    iso = now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return iso.replace(":", "-").replace(".", "-")


def _safe_label(label: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "-", label).strip("-") or "event"


class ScreenshotController:
    """Throttled viewport capture; ``error``/``crash`` always bypass the throttle."""

    def __init__(
        self,
        screenshot_dir: str,
        get_connection: Callable[[], CdpConnection | None],
        emit: Callable[[str, str], None],
        *,
        min_interval: float = 1.0,
        max_width: int = 0,
        image_format: str = "png",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.screenshot_dir = Path(screenshot_dir)
        self.min_interval = max(0.0, float(min_interval))
        self.max_width = max(0, int(max_width))
        self.image_format = "jpeg" if image_format.lower() in ("jpg", "jpeg") else "png"
        self._get_connection = get_connection
        self._emit = emit
        self._clock = clock
        self._last_capture: float | None = None

    @property
    def last_capture(self) -> float | None:
        return self._last_capture

    def throttled(self, label: str) -> bool:
        if label in PRIORITY_EVENTS or self._last_capture is None:
            return False
        return self._clock() - self._last_capture < self.min_interval

    async def capture(self, label: str) -> str | None:
        """Capture the viewport; return the written file name or None."""
        if self.throttled(label):
            logger.debug("screenshot %s throttled", label)
            return None
        conn = self._get_connection()
        if conn is None or not conn.is_open:
            logger.debug("screenshot %s skipped: no open connection", label)
            return None

        # Reserve the slot before awaiting so a burst of triggers yields one capture.
        self._last_capture = self._clock()
        try:
            result = await conn.send("Page.captureScreenshot", {"format": self.image_format}, timeout=10.0)
        except MonitorError as exc:
            logger.debug("screenshot %s failed: %s", label, exc)
            return None

        raw = result.get("data")
        if not isinstance(raw, str) or not raw:
            return None

        ext = "jpg" if self.image_format == "jpeg" else "png"
        filename = f"{timestamp_slug()}-{_safe_label(label)}.{ext}"
        try:
            await asyncio.to_thread(self._store, raw, filename)
        except (OSError, ValueError) as exc:
            # ValueError covers bad base64; PIL.UnidentifiedImageError is an OSError.
            logger.debug("screenshot %s could not be saved", label, exc_info=True)
            self._emit(
                "browser",
                f"[SCREENSHOT] failed to save {label} screenshot: {exc} "
                f"(check that {self.screenshot_dir} is a writable directory)",
            )
            return None
        self._emit("browser", f"[SCREENSHOT] {filename}")
        return filename

    def _store(self, raw: str, filename: str) -> None:
        data = self._downscale(base64.b64decode(raw, validate=True))
        self.screenshot_dir.mkdir(parents=True, exist_ok=True)
        (self.screenshot_dir / filename).write_bytes(data)

    def _downscale(self, data: bytes) -> bytes:
        if self.max_width <= 0:
            return data
        with Image.open(BytesIO(data)) as img:
            if img.width <= self.max_width:
                return data
            height = max(1, round(img.height * self.max_width / img.width))
            resized = img.resize((self.max_width, height))
            if self.image_format == "jpeg" and resized.mode != "RGB":
                resized = resized.convert("RGB")
            out = BytesIO()
            resized.save(out, format="JPEG" if self.image_format == "jpeg" else "PNG")
            return out.getvalue()


class NetworkIdleTracker:
    """Debounced "network settled after navigation" trigger.

    In-flight requests are counted; once a navigation is marked and the count
    reaches zero, ``on_idle`` fires after ``delay`` seconds of quiet. Any
    request activity in between restarts the wait.
    """

    def __init__(self, on_idle: Callable[[], None], *, delay: float = NETWORK_IDLE_DELAY) -> None:
        self.delay = delay
        self._on_idle = on_idle
        self._inflight: set[str] = set()
        self._navigation_pending = False
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> int:
        return len(self._inflight)

    @property
    def navigation_pending(self) -> bool:
        return self._navigation_pending

    def request_started(self, request_id: str) -> None:
        self._inflight.add(request_id)
        self._cancel_timer()

    def request_finished(self, request_id: str) -> None:
        if request_id not in self._inflight:
            return
        self._inflight.discard(request_id)
        self._maybe_schedule()

    def mark_navigation(self) -> None:
        self._navigation_pending = True
        self._maybe_schedule()

    def reset(self) -> None:
        self._cancel_timer()
        self._inflight.clear()
        self._navigation_pending = False

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _maybe_schedule(self) -> None:
        if not self._navigation_pending or self._inflight:
            return
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if not self._navigation_pending or self._inflight:
            return
        self._navigation_pending = False
        self._on_idle()


__all__ = ["NETWORK_IDLE_DELAY", "PRIORITY_EVENTS", "NetworkIdleTracker", "ScreenshotController", "timestamp_slug"]
