from __future__ import annotations

import urllib.parse

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0"})


def should_monitor(url: str, app_port: int | str | None = None) -> bool:
    """Return True if ``url`` points at the local app being developed.

    The host must be loopback; when ``app_port`` is set the port (explicit, or
    the scheme default) must match it exactly. Anything unparseable is ignored.
    """
    if not isinstance(url, str) or not url:
        return False
    try:
        parsed = urllib.parse.urlsplit(url)
        host = (parsed.hostname or "").lower()
        port = parsed.port
    except ValueError:
        return False

    if host not in LOOPBACK_HOSTS:
        return False

    if app_port is None or str(app_port).strip() == "":
        return True

    if port is None:
        if parsed.scheme == "https":
            port = 443
        elif parsed.scheme == "http":
            port = 80
        else:
            return False
    return str(port) == str(app_port).strip()


__all__ = ["LOOPBACK_HOSTS", "should_monitor"]
