"""Translate raw CDP event params into single human-readable log lines.

Pure functions only; handlers decide whether a line is emitted.
"""

from __future__ import annotations

import json
import re
from typing import Any

MAX_STACK_FRAMES = 5
MAX_BODY_PREVIEW = 200
MAX_AUTH_PREVIEW = 20
MAX_COOKIE_PREVIEW = 40

_FORMAT_DIRECTIVE = re.compile(r"%[sdifoOc%]")


def clip(x: Any, *, max_len: int = 500) -> str:
    try:
        s = str(x)
    except Exception:  # noqa: BLE001
        s = "<unstringifiable>"
    if len(s) <= max_len:
        return s
    return s[:max_len] + "…"


def _preview_value(prop: dict[str, Any]) -> str:
    value = prop.get("value")
    if prop.get("type") == "string":
        return json.dumps(value if isinstance(value, str) else "")
    if value is None:
        sub = prop.get("subtype")
        return "null" if sub == "null" else clip(prop.get("type") or "undefined")
    return clip(value, max_len=120)


def _preview_to_str(preview: dict[str, Any]) -> str:
    props = preview.get("properties")
    props = [p for p in props if isinstance(p, dict)] if isinstance(props, list) else []
    more = ", …" if preview.get("overflow") else ""
    if preview.get("subtype") == "array":
        return "[" + ", ".join(_preview_value(p) for p in props) + more + "]"
    if not props and isinstance(preview.get("description"), str):
        return clip(preview["description"])
    return "{" + ", ".join(f"{p.get('name')}: {_preview_value(p)}" for p in props) + more + "}"


def remote_object_to_str(obj: Any) -> str:
    """Best-effort conversion of a CDP RemoteObject to text."""
    if not isinstance(obj, dict):
        return clip(obj)
    typ = obj.get("type")
    if typ == "string":
        return clip(obj.get("value", ""), max_len=5000)
    if typ == "undefined":
        return "undefined"
    if typ == "object" and obj.get("subtype") == "null":
        return "null"
    if "unserializableValue" in obj:
        return clip(obj["unserializableValue"])
    if "value" in obj:
        value = obj["value"]
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (dict, list)):
            return clip(json.dumps(value, ensure_ascii=False), max_len=2000)
        return clip(value)
    preview = obj.get("preview")
    if typ == "object" and isinstance(preview, dict):
        return _preview_to_str(preview)
    if isinstance(obj.get("description"), str):
        return clip(obj["description"])
    subtype = obj.get("subtype")
    return f"<{typ}{('/' + subtype) if subtype else ''}>"


def _apply_format(template: str, args: list[Any]) -> tuple[str, int]:
    """Expand console format directives; ``%c`` and its style argument are dropped."""
    consumed = 0

    def _replace(match: re.Match[str]) -> str:
        nonlocal consumed
        directive = match.group(0)
        if directive == "%%":
            return "%"
        if consumed >= len(args):
            return ""
        arg = args[consumed]
        consumed += 1
        if directive == "%c":
            return ""
        return remote_object_to_str(arg)

    return _FORMAT_DIRECTIVE.sub(_replace, template), consumed


def format_console_args(args: Any) -> str:
    if not isinstance(args, list) or not args:
        return ""
    first, rest = args[0], list(args[1:])
    parts: list[str] = []
    if isinstance(first, dict) and first.get("type") == "string" and "%" in str(first.get("value", "")):
        text, consumed = _apply_format(str(first.get("value", "")), rest)
        parts.append(text.strip())
        rest = rest[consumed:]
    else:
        parts.append(remote_object_to_str(first))
    parts.extend(remote_object_to_str(a) for a in rest)
    return " ".join(p for p in parts if p)


def format_console_call(params: dict[str, Any]) -> str:
    level = params.get("type") if isinstance(params.get("type"), str) else "log"
    if level == "warning":
        level = "warn"
    return f"[CONSOLE {level.upper()}] {format_console_args(params.get('args'))}"


def format_stack(stack: Any, *, limit: int = MAX_STACK_FRAMES) -> list[str]:
    if not isinstance(stack, dict):
        return []
    frames = stack.get("callFrames")
    if not isinstance(frames, list):
        return []
    out: list[str] = []
    for frame in frames[: max(0, limit)]:
        if not isinstance(frame, dict):
            continue
        fn = frame.get("functionName") or "<anonymous>"
        line = frame.get("lineNumber")
        line_no = line + 1 if isinstance(line, int) else "?"
        out.append(f"{fn}@{frame.get('url') or '<unknown>'}:{line_no}")
    return out


def format_exception(params: dict[str, Any]) -> str:
    details = params.get("exceptionDetails")
    if not isinstance(details, dict):
        details = {}
    message = details.get("text") or "Uncaught exception"
    exception = details.get("exception")
    if isinstance(exception, dict):
        described = exception.get("description") or exception.get("value")
        if described:
            # V8 descriptions embed the stack after the first line.
            message = str(described).splitlines()[0]

    line = f"[RUNTIME ERROR] {clip(message, max_len=1200)}"
    url = details.get("url")
    if isinstance(url, str) and url:
        lineno = details.get("lineNumber")
        colno = details.get("columnNumber")
        loc = url
        if isinstance(lineno, int):
            loc += f":{lineno + 1}"
            if isinstance(colno, int):
                loc += f":{colno + 1}"
        line += f" at {loc}"
    frames = format_stack(details.get("stackTrace"))
    if frames:
        line += "\n  Stack: " + "\n         ".join(frames)
    return line


def format_log_entry(params: dict[str, Any]) -> str | None:
    """Only error/warning entries; the console domain already reports the rest."""
    entry = params.get("entry")
    if not isinstance(entry, dict):
        return None
    level = entry.get("level")
    if level not in ("error", "warning"):
        return None
    line = f"[LOG {str(level).upper()}] {clip(entry.get('text', ''), max_len=1200)}"
    url = entry.get("url")
    if isinstance(url, str) and url:
        lineno = entry.get("lineNumber")
        line += f" ({url}:{lineno + 1})" if isinstance(lineno, int) else f" ({url})"
    return line


def header_value(headers: Any, name: str) -> str | None:
    """Case-insensitive header lookup."""
    if not isinstance(headers, dict):
        return None
    want = name.lower()
    for k, v in headers.items():
        if str(k).strip().lower() == want:
            return str(v) if v is not None and str(v) else None
    return None


def header_excerpt(headers: Any) -> str:
    parts: list[str] = []
    content_type = header_value(headers, "content-type")
    if content_type:
        parts.append(f"content-type={clip(content_type, max_len=80)}")
    auth = header_value(headers, "authorization")
    if auth:
        parts.append(f"authorization={clip(auth, max_len=MAX_AUTH_PREVIEW)}")
    cookie = header_value(headers, "cookie")
    if cookie:
        parts.append(f"cookie={clip(cookie, max_len=MAX_COOKIE_PREVIEW)}")
    return ", ".join(parts)


def format_request(params: dict[str, Any]) -> str:
    request = params.get("request") if isinstance(params.get("request"), dict) else {}
    method = request.get("method") or "GET"
    url = request.get("url") or ""
    initiator = params.get("initiator")
    init_type = initiator.get("type") if isinstance(initiator, dict) else None
    resource_type = params.get("type")

    line = f"[NETWORK] {method} {url}"
    meta = [str(m) for m in (resource_type, f"initiator: {init_type}" if init_type else None) if m]
    if meta:
        line += f" ({', '.join(meta)})"
    excerpt = header_excerpt(request.get("headers"))
    if excerpt:
        line += f" headers: {excerpt}"
    body = request.get("postData")
    if isinstance(body, str) and body:
        line += f" body: {clip(body, max_len=MAX_BODY_PREVIEW)}"
    return line


def format_response(params: dict[str, Any], latency_ms: float | None = None) -> str:
    response = params.get("response") if isinstance(params.get("response"), dict) else {}
    status = response.get("status")
    status_text = response.get("statusText") or ""
    try:
        status_i = int(status)
    except (TypeError, ValueError):
        status_i = 0
    prefix = "[NETWORK ERROR]" if status_i >= 400 else "[NETWORK]"
    line = f"{prefix} {status_i} {status_text}".rstrip() + f" {response.get('url') or ''}"
    meta = []
    if response.get("mimeType"):
        meta.append(str(response["mimeType"]))
    if latency_ms is not None and latency_ms >= 0:
        meta.append(f"{latency_ms:.0f}ms")
    if meta:
        line += f" ({', '.join(meta)})"
    return line


def format_loading_failed(params: dict[str, Any], method: str | None, url: str) -> str:
    error = params.get("errorText") or "request failed"
    if params.get("canceled"):
        error = f"{error} (canceled)"
    return f"[NETWORK ERROR] {error} {method or ''} {url}".replace("  ", " ")


__all__ = [
    "clip",
    "format_console_args",
    "format_console_call",
    "format_exception",
    "format_loading_failed",
    "format_log_entry",
    "format_request",
    "format_response",
    "format_stack",
    "header_excerpt",
    "header_value",
    "remote_object_to_str",
]
