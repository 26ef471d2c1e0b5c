from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from typing import Any

import pytest


class _Conn:
    def __init__(self, responses: list[dict[str, Any]] | None = None) -> None:
        self.is_open = True
        self.responses = list(responses or [])
        self.sent: list[tuple[str, dict[str, Any] | None]] = []

    async def send(self, method: str, params: dict[str, Any] | None = None, **_kwargs: Any) -> dict[str, Any]:
        self.sent.append((method, params))
        return self.responses.pop(0) if self.responses else {}


def test_interaction_script_parses() -> None:
    import esprima

    from devmon.browser.instrumentation import INTERACTION_SCRIPT_SOURCE

    program = esprima.parseScript(INTERACTION_SCRIPT_SOURCE)
    assert program.body


def test_interaction_script_embeds_limits() -> None:
    from devmon.browser.instrumentation import (
        INSTRUMENTATION_MARKER,
        INTERACTION_BUFFER,
        build_interaction_script,
    )

    script = build_interaction_script(limit=100, settle_ms=300, threshold_px=5)

    assert "const LIMIT = 100;" in script
    assert "const SETTLE_MS = 300;" in script
    assert "const THRESHOLD = 5;" in script
    assert f"g.{INSTRUMENTATION_MARKER}" in script
    assert f"g.{INTERACTION_BUFFER}" in script
    assert "__MARKER__" not in script and "__BUFFER__" not in script


def test_inject_is_noop_when_already_instrumented() -> None:
    from devmon.browser.instrumentation import GUARD_EXPRESSION, InstrumentationInjector

    conn = _Conn([{"result": {"type": "boolean", "value": True}}])
    injected = asyncio.run(InstrumentationInjector().inject(conn))

    assert injected is False
    assert conn.sent == [("Runtime.evaluate", {"expression": GUARD_EXPRESSION, "returnByValue": True})]


def test_inject_installs_script_once_guard_is_clear() -> None:
    from devmon.browser.instrumentation import INTERACTION_SCRIPT_SOURCE, InstrumentationInjector

    conn = _Conn([{"result": {"type": "boolean", "value": False}}, {"result": {"type": "boolean", "value": True}}])
    injected = asyncio.run(InstrumentationInjector().inject(conn))

    assert injected is True
    assert len(conn.sent) == 2
    assert conn.sent[1][1]["expression"] == INTERACTION_SCRIPT_SOURCE


def test_in_page_exception_is_reported() -> None:
    from devmon.browser.errors import MonitorError
    from devmon.browser.instrumentation import InstrumentationInjector

    conn = _Conn([{"result": {"value": False}}, {"exceptionDetails": {"text": "Uncaught ReferenceError"}}])

    with pytest.raises(MonitorError, match="ReferenceError"):
        asyncio.run(InstrumentationInjector().inject(conn))


def test_malformed_script_is_never_sent_or_reparsed(monkeypatch: pytest.MonkeyPatch) -> None:
    from devmon.browser import instrumentation
    from devmon.browser.errors import InjectionSyntaxError

    parses = [0]
    real_parse = instrumentation.esprima.parseScript

    def _counting_parse(source: str, *args: Any, **kwargs: Any):
        parses[0] += 1
        return real_parse(source, *args, **kwargs)

    monkeypatch.setattr(instrumentation.esprima, "parseScript", _counting_parse)

    injector = instrumentation.InstrumentationInjector("(() => { const x = ; })()")
    conn = _Conn()

    for _ in range(2):
        with pytest.raises(InjectionSyntaxError):
            asyncio.run(injector.inject(conn))

    assert conn.sent == []
    assert parses[0] == 1


def test_poll_once_emits_records_and_triggers_settled_capture() -> None:
    from devmon.browser.instrumentation import DRAIN_EXPRESSION, InteractionPoller

    records = [
        {"timestamp": "2026-10-19T08:00:00.000Z", "type": "click", "message": 'CLICK button#save "Save" at (10, 20)'},
        {"timestamp": "2026-10-19T08:00:01.000Z", "type": "scroll", "message": "SCROLL page from (0, 0) to (0, 480)"},
        {"timestamp": "2026-10-19T08:00:01.300Z", "type": "settled", "message": "SCROLL_SETTLED page at (0, 480)"},
    ]
    conn = _Conn([{"result": {"type": "object", "value": records}}])
    lines: list[str] = []
    settled = [0]
    poller = InteractionPoller(
        lambda: conn,
        lambda _s, m: lines.append(m),
        on_settled=lambda: settled.__setitem__(0, settled[0] + 1),
    )

    out = asyncio.run(poller.poll_once())

    assert out == records
    assert conn.sent[0][1]["expression"] == DRAIN_EXPRESSION
    assert lines == [f"[INTERACTION] {r['message']}" for r in records]
    assert settled[0] == 1


def test_poll_once_without_connection_is_empty() -> None:
    from devmon.browser.instrumentation import InteractionPoller

    poller = InteractionPoller(lambda: None, lambda _s, _m: None)
    assert asyncio.run(poller.poll_once()) == []


def test_poller_stops_when_requested() -> None:
    from devmon.browser.errors import CdpConnectionError
    from devmon.browser.instrumentation import InteractionPoller

    class _FlakyConn(_Conn):
        async def send(self, method: str, params: dict[str, Any] | None = None, **kwargs: Any) -> dict[str, Any]:
            await super().send(method, params, **kwargs)
            raise CdpConnectionError("navigating")

    conn = _FlakyConn()
    stop = [False]

    async def _main() -> bool:
        poller = InteractionPoller(lambda: conn, lambda _s, _m: None, should_stop=lambda: stop[0], interval=0.01)
        poller.start()
        await asyncio.sleep(0.05)
        running_before = poller.running
        stop[0] = True
        await asyncio.sleep(0.03)
        assert not poller.running
        await poller.stop()
        return running_before

    assert asyncio.run(_main()) is True
    assert len(conn.sent) >= 2


_SCROLL_HARNESS = r"""
const listeners = {};
let timers = [];
globalThis.window = { scrollX: 0, scrollY: 0 };
globalThis.document = {
  documentElement: {},
  body: {},
  addEventListener: (type, fn) => { (listeners[type] = listeners[type] || []).push(fn); },
};
globalThis.setTimeout = (fn) => { const t = { fn, live: true }; timers.push(t); return t; };
globalThis.clearTimeout = (t) => { if (t) { t.live = false; } };

function scroll(dy) {
  window.scrollY += dy;
  for (const fn of listeners.scroll || []) { fn({ target: document }); }
}
function settle() {
  const due = timers;
  timers = [];
  for (const t of due) { if (t.live) { t.fn(); } }
}
function drain() {
  return window.__BUFFER__.splice(0).map((r) => r.type);
}

const first = (0, eval)(__SCRIPT__);
const second = (0, eval)(__SCRIPT__);

scroll(1); scroll(1); scroll(1);
settle();
const small = drain();

scroll(4); scroll(4); scroll(4);
settle();
const big = drain();

process.stdout.write(JSON.stringify({
  first, second, small, big, scrollListeners: (listeners.scroll || []).length,
}));
"""


def test_scroll_bursts_coalesce_in_js_runtime() -> None:
    node = shutil.which("node")
    if node is None:
        pytest.skip("node not installed")

    from devmon.browser.instrumentation import INTERACTION_BUFFER, INTERACTION_SCRIPT_SOURCE

    harness = _SCROLL_HARNESS.replace("__BUFFER__", INTERACTION_BUFFER).replace(
        "__SCRIPT__", json.dumps(INTERACTION_SCRIPT_SOURCE)
    )
    proc = subprocess.run([node, "-"], input=harness, capture_output=True, text=True, timeout=30)
    assert proc.returncode == 0, proc.stderr
    out = json.loads(proc.stdout)

    assert out["first"] is True
    assert out["second"] is False
    assert out["scrollListeners"] == 1
    # 2px net movement stays below the threshold.
    assert out["small"] == []
    assert out["big"] == ["scroll", "settled"]
