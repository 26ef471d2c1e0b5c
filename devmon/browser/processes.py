"""Browser process discovery and signalling.

PIDs belonging to one monitor instance are found two ways and merged:
the process tree under the launched PID, and a command-line substring match
against the profile directory. The substring match is approximate (another
process mentioning the same path would match), so callers only ever signal
PIDs recorded for their own instance.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from collections.abc import Iterable

import psutil

logger = logging.getLogger("devmon.browser")


def list_processes() -> list[tuple[int, str]]:
    """Return (pid, command line) for every visible process."""
    out: list[tuple[int, str]] = []
    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = proc.info.get("cmdline") or []
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        out.append((int(proc.info["pid"]), " ".join(str(part) for part in cmdline)))
    return out


def own_lineage() -> set[int]:
    """This process and its ancestors; a launcher wrapper may mention the profile path too."""
    pids = {os.getpid()}
    with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
        pids.update(parent.pid for parent in psutil.Process().parents())
    return pids


def _tree_pids(root_pid: int) -> set[int]:
    try:
        root = psutil.Process(root_pid)
        return {root_pid, *(child.pid for child in root.children(recursive=True))}
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return set()


def discover_profile_pids(profile_dir: str, *, root_pid: int | None = None) -> set[int]:
    """Find PIDs of browser processes using ``profile_dir``."""
    pids: set[int] = set()
    if root_pid is not None:
        pids |= _tree_pids(root_pid)
        if pid_alive(root_pid):
            pids.add(root_pid)
    if profile_dir:
        for pid, command in list_processes():
            if profile_dir in command:
                pids.add(pid)
    pids -= own_lineage()
    logger.debug("discovered %d browser pids for %s: %s", len(pids), profile_dir, sorted(pids))
    return pids


def pid_alive(pid: int) -> bool:
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def _signal(pid: int, sig: int) -> None:
    try:
        os.kill(pid, sig)
    except (ProcessLookupError, PermissionError, OSError) as exc:
        logger.debug("signal %s to pid %s failed: %s", sig, pid, exc)


async def terminate_pids(pids: Iterable[int], *, grace: float = 1.0) -> list[int]:
    """SIGTERM each PID, wait ``grace`` seconds, then SIGKILL the survivors.

    Returns the PIDs that needed the forceful signal.
    """
    targets = sorted({int(pid) for pid in pids if int(pid) > 0 and int(pid) != os.getpid()})
    live = [pid for pid in targets if pid_alive(pid)]
    if not live:
        return []
    for pid in live:
        _signal(pid, signal.SIGTERM)

    deadline = time.monotonic() + max(0.0, grace)
    while time.monotonic() < deadline:
        if not any(pid_alive(pid) for pid in live):
            return []
        await asyncio.sleep(0.05)

    forced = [pid for pid in live if pid_alive(pid)]
    kill_sig = getattr(signal, "SIGKILL", signal.SIGTERM)
    for pid in forced:
        logger.debug("pid %s survived SIGTERM, escalating", pid)
        _signal(pid, kill_sig)
    return forced


async def kill_existing_with_profile(profile_dir: str, *, exclude: Iterable[int] = ()) -> list[int]:
    """Preflight cleanup: gracefully signal leftovers bound to ``profile_dir``."""
    if not profile_dir:
        return []
    skip = {int(pid) for pid in exclude} | own_lineage()
    pids = [
        pid
        for pid, command in list_processes()
        if pid not in skip and (f"--user-data-dir={profile_dir}" in command or profile_dir in command)
    ]
    for pid in pids:
        logger.debug("killing existing browser process %s using profile %s", pid, profile_dir)
        _signal(pid, signal.SIGTERM)
    if pids:
        await asyncio.sleep(0.5)
    return pids


__all__ = [
    "discover_profile_pids",
    "own_lineage",
    "kill_existing_with_profile",
    "list_processes",
    "pid_alive",
    "terminate_pids",
]
