from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

import esprima

from .cdp import CdpConnection
from .errors import InjectionSyntaxError, MonitorError

logger = logging.getLogger("devmon.browser")

INTERACTION_BUFFER_LIMIT = 100
SCROLL_SETTLE_MS = 300
SCROLL_THRESHOLD_PX = 5
POLL_INTERVAL = 0.5

INSTRUMENTATION_MARKER = "__devmonInstrumented"
INTERACTION_BUFFER = "__devmonInteractions"

GUARD_EXPRESSION = f"Boolean(window.{INSTRUMENTATION_MARKER})"

DRAIN_EXPRESSION = (
    "(() => {"
    f" const buf = Array.isArray(window.{INTERACTION_BUFFER}) ? window.{INTERACTION_BUFFER} : [];"
    f" window.{INTERACTION_BUFFER} = [];"
    " return buf;"
    " })()"
)

# NOTE: self-contained and idempotent; a second evaluation is a no-op.
# Records are {timestamp, type, message}; type is one of click/key/scroll/settled.
# Scroll bursts are coalesced in-page: one "scroll" + one "settled" record per
# burst whose net displacement reaches the threshold, nothing otherwise.
_SCRIPT_TEMPLATE = r"""
(() => {
  const g = window;
  if (g.__MARKER__) {
    return false;
  }
  g.__MARKER__ = true;

  const LIMIT = __LIMIT__;
  const SETTLE_MS = __SETTLE_MS__;
  const THRESHOLD = __THRESHOLD__;

  if (!Array.isArray(g.__BUFFER__)) {
    g.__BUFFER__ = [];
  }

  function push(type, message) {
    const buf = g.__BUFFER__;
    buf.push({ timestamp: new Date().toISOString(), type: type, message: message });
    if (buf.length > LIMIT) {
      buf.splice(0, buf.length - LIMIT);
    }
  }

  function selectorFor(el) {
    if (!el || el.nodeType !== 1) {
      return "unknown";
    }
    if (el.id) {
      return "#" + el.id;
    }
    let sel = el.tagName.toLowerCase();
    const classes = typeof el.className === "string" ? el.className.trim().split(/\s+/).filter(Boolean) : [];
    if (classes.length) {
      sel += "." + classes.slice(0, 3).join(".");
    }
    const parent = el.parentElement;
    if (parent) {
      const same = Array.prototype.filter.call(parent.children, (c) => c.tagName === el.tagName && c.className === el.className);
      if (same.length > 1) {
        sel += ":nth-child(" + (Array.prototype.indexOf.call(parent.children, el) + 1) + ")";
      }
    }
    return sel;
  }

  document.addEventListener("click", (e) => {
    const t = e.target;
    const text = t && t.textContent ? t.textContent.trim().slice(0, 40) : "";
    push("click", "CLICK " + selectorFor(t) + (text ? " \"" + text + "\"" : "") + " at (" + e.clientX + ", " + e.clientY + ")");
  }, true);

  document.addEventListener("keydown", (e) => {
    const t = e.target;
    const key = t && t.type === "password" ? "*" : e.key;
    push("key", "KEY " + key + " in " + selectorFor(t));
  }, true);

  function positionOf(t) {
    if (t === document || t === g || t === document.documentElement || t === document.body) {
      return { x: Math.round(g.scrollX), y: Math.round(g.scrollY), label: "page" };
    }
    return { x: Math.round(t.scrollLeft), y: Math.round(t.scrollTop), label: selectorFor(t) };
  }

  let scrollTarget = null;
  let start = null;
  let timer = null;

  document.addEventListener("scroll", (e) => {
    const t = e.target;
    if (scrollTarget !== t || start === null) {
      scrollTarget = t;
      start = positionOf(t);
    }
    if (timer) {
      clearTimeout(timer);
    }
    timer = setTimeout(() => {
      timer = null;
      const from = start;
      const to = positionOf(t);
      scrollTarget = null;
      start = null;
      if (Math.hypot(to.x - from.x, to.y - from.y) >= THRESHOLD) {
        push("scroll", "SCROLL " + to.label + " from (" + from.x + ", " + from.y + ") to (" + to.x + ", " + to.y + ")");
        push("settled", "SCROLL_SETTLED " + to.label + " at (" + to.x + ", " + to.y + ")");
      }
    }, SETTLE_MS);
  }, true);

  return true;
})()
"""


def build_interaction_script(
    *,
    limit: int = INTERACTION_BUFFER_LIMIT,
    settle_ms: int = SCROLL_SETTLE_MS,
    threshold_px: int = SCROLL_THRESHOLD_PX,
) -> str:
    return (
        _SCRIPT_TEMPLATE.replace("__MARKER__", INSTRUMENTATION_MARKER)
        .replace("__BUFFER__", INTERACTION_BUFFER)
        .replace("__LIMIT__", str(int(limit)))
        .replace("__SETTLE_MS__", str(int(settle_ms)))
        .replace("__THRESHOLD__", str(int(threshold_px)))
    )


INTERACTION_SCRIPT_SOURCE = build_interaction_script()


def _eval_value(result: dict[str, Any]) -> Any:
    remote = result.get("result")
    return remote.get("value") if isinstance(remote, dict) else None


class InstrumentationInjector:
    """Idempotently installs the interaction-capture script in the page."""

    def __init__(self, script: str = INTERACTION_SCRIPT_SOURCE) -> None:
        self.script = script
        self._validated = False
        self._syntax_error: InjectionSyntaxError | None = None

    def validate(self) -> None:
        """Parse the script locally; a malformed script is never sent or retried."""
        if self._syntax_error is not None:
            raise self._syntax_error
        if self._validated:
            return
        try:
            esprima.parseScript(self.script)
        except Exception as exc:  # noqa: BLE001
            self._syntax_error = InjectionSyntaxError(
                f"Instrumentation script does not parse: {exc}",
                hint="the interaction capture script is malformed; interaction logging is disabled",
            )
            raise self._syntax_error from exc
        self._validated = True

    async def inject(self, conn: CdpConnection) -> bool:
        """Install the script; False if it was already present."""
        self.validate()
        guard = await conn.send("Runtime.evaluate", {"expression": GUARD_EXPRESSION, "returnByValue": True})
        if _eval_value(guard) is True:
            return False
        result = await conn.send("Runtime.evaluate", {"expression": self.script, "returnByValue": True})
        details = result.get("exceptionDetails")
        if isinstance(details, dict):
            raise MonitorError(f"Instrumentation script threw in page: {details.get('text') or details}")
        return True


class InteractionPoller:
    """Drains the in-page interaction buffer on a fixed interval."""

    def __init__(
        self,
        get_connection: Callable[[], CdpConnection | None],
        emit: Callable[[str, str], None],
        *,
        on_settled: Callable[[], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
        interval: float = POLL_INTERVAL,
    ) -> None:
        self.interval = interval
        self._get_connection = get_connection
        self._emit = emit
        self._on_settled = on_settled
        self._should_stop = should_stop or (lambda: False)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="devmon-interaction-poller")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def poll_once(self) -> list[dict[str, Any]]:
        conn = self._get_connection()
        if conn is None or not conn.is_open:
            return []
        result = await conn.send(
            "Runtime.evaluate", {"expression": DRAIN_EXPRESSION, "returnByValue": True}, timeout=5.0
        )
        records = _eval_value(result)
        if not isinstance(records, list):
            return []
        out: list[dict[str, Any]] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            out.append(record)
            self._emit("browser", f"[INTERACTION] {record.get('message', '')}")
            if record.get("type") == "settled" and self._on_settled is not None:
                self._on_settled()
        return out

    async def _run(self) -> None:
        while not self._should_stop():
            try:
                await self.poll_once()
            except MonitorError as exc:
                # Page may be mid-navigation; the next tick retries.
                logger.debug("interaction poll failed: %s", exc)
            await asyncio.sleep(self.interval)


__all__ = [
    "DRAIN_EXPRESSION",
    "GUARD_EXPRESSION",
    "INTERACTION_SCRIPT_SOURCE",
    "InstrumentationInjector",
    "InteractionPoller",
    "build_interaction_script",
]
