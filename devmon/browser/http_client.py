from __future__ import annotations

import json
import urllib.parse
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

from .errors import DiscoveryError


def _build_request(url: str) -> Request:
    return Request(url, headers={"User-Agent": "devmon-browser/0.1"})


def http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from a discovery endpoint."""
    try:
        with urlopen(_build_request(url), timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (OSError, TimeoutError, URLError) as exc:
        raise DiscoveryError(f"Discovery endpoint {url} unreachable: {exc}") from exc
    except ValueError as exc:
        raise DiscoveryError(f"Discovery endpoint {url} returned invalid JSON: {exc}") from exc


def discovery_base(host: str, port: int, scheme: str = "http") -> str:
    return f"{scheme}://{host}:{int(port)}"


def endpoint_ready(base_url: str, timeout: float = 0.4) -> bool:
    """Return True if the discovery endpoint responds."""
    try:
        with urlopen(_build_request(f"{base_url}/json/version"), timeout=timeout) as resp:
            return resp.status == 200
    except (OSError, TimeoutError, URLError):
        return False


def list_targets(base_url: str, timeout: float = 2.0) -> list[dict[str, Any]]:
    payload = http_get_json(f"{base_url}/json", timeout=timeout)
    if not isinstance(payload, list):
        raise DiscoveryError(f"Discovery endpoint {base_url}/json did not return a target list")
    return [t for t in payload if isinstance(t, dict)]


def select_page_target(targets: list[dict[str, Any]]) -> dict[str, Any]:
    """Pick the first ``page`` target, else the first target with a socket URL."""
    for target in targets:
        if target.get("type") == "page" and target.get("webSocketDebuggerUrl"):
            return target
    # Non-standard single-target setups (remote/containerized hosts) may not label it a page.
    for target in targets:
        if target.get("webSocketDebuggerUrl"):
            return target
    raise DiscoveryError(
        "No debuggable target found",
        hint="make sure a tab is open and no other DevTools client is attached to it",
    )


def parse_external_endpoint(raw: str) -> tuple[str | None, str | None]:
    """Split an external endpoint into (socket url, discovery base).

    ``ws://`` / ``wss://`` addresses are used verbatim; ``http(s)://host:port``
    addresses are treated as discovery endpoints.
    """
    parsed = urllib.parse.urlparse(raw.strip())
    if parsed.scheme in ("ws", "wss"):
        return raw.strip(), None
    if parsed.scheme in ("http", "https") and parsed.hostname:
        try:
            port = parsed.port or (443 if parsed.scheme == "https" else 80)
        except ValueError as exc:
            raise DiscoveryError(f"Invalid port in external endpoint {raw!r}") from exc
        return None, discovery_base(parsed.hostname, port, parsed.scheme)
    raise DiscoveryError(f"Unsupported external endpoint: {raw!r}", hint="use ws://... or http://host:port")


__all__ = [
    "discovery_base",
    "endpoint_ready",
    "http_get_json",
    "list_targets",
    "parse_external_endpoint",
    "select_page_target",
]
