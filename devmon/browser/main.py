"""
Command-line entry point: run the browser monitor until interrupted.

Events are printed as ``[<time>] [<SOURCE>] <message>`` to stdout, or
appended to ``--log-file``.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import TextIO

from .config import MonitorConfig, expand_path
from .errors import MonitorError
from .monitor import BrowserMonitor

logger = logging.getLogger("devmon.browser")

__all__ = ["build_parser", "config_from_args", "make_egress", "main", "run"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devmon-browser",
        description="Launch or attach to a Chromium browser and stream its diagnostics.",
    )
    parser.add_argument("--browser-path", help="browser executable to try first")
    parser.add_argument("--profile-dir", help="user-data directory for the launched browser")
    parser.add_argument("--screenshot-dir", help="directory for captured screenshots")
    parser.add_argument("--cdp-host", help="debugging endpoint host")
    parser.add_argument("--cdp-port", type=int, help="debugging endpoint port (0 picks a free port)")
    parser.add_argument("--app-port", type=int, help="only local URLs on this port are logged")
    parser.add_argument("--cdp-url", help="attach to an existing endpoint (ws:// or http://host:port)")
    parser.add_argument("--skip-launch", action="store_true", help="do not launch a browser")
    parser.add_argument("--headless", action="store_true", help="launch in headless mode")
    parser.add_argument("--browser-flag", action="append", default=[], help="extra browser flag (repeatable)")
    parser.add_argument("--screenshot-interval-ms", type=int, help="minimum time between screenshots")
    parser.add_argument("--screenshot-max-width", type=int, help="downscale screenshots wider than this")
    parser.add_argument("--navigate", action="store_true", help="open http://localhost:<app-port> after start")
    parser.add_argument("--log-file", help="append events to this file instead of stdout")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> MonitorConfig:
    """Environment defaults with CLI overrides applied on top."""
    cfg = MonitorConfig.from_env()
    if args.browser_path:
        cfg.browser_path = args.browser_path
    if args.profile_dir:
        cfg.profile_dir = expand_path(args.profile_dir)
    if args.screenshot_dir:
        cfg.screenshot_dir = expand_path(args.screenshot_dir)
    if args.cdp_host:
        cfg.cdp_host = args.cdp_host
    if args.cdp_port is not None:
        cfg.cdp_port = args.cdp_port
    if args.app_port is not None:
        cfg.app_port = args.app_port
    if args.cdp_url:
        cfg.cdp_url = args.cdp_url
    if args.skip_launch:
        cfg.skip_launch = True
    if args.headless:
        cfg.headless = True
    if args.browser_flag:
        cfg.extra_flags = [*cfg.extra_flags, *args.browser_flag]
    if args.screenshot_interval_ms is not None:
        cfg.screenshot_interval = max(0, args.screenshot_interval_ms) / 1000.0
    if args.screenshot_max_width is not None:
        cfg.screenshot_max_width = max(0, args.screenshot_max_width)
    if args.debug:
        cfg.debug = True
    return cfg


def make_egress(stream: TextIO):
    def _egress(source: str, message: str) -> None:
        stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        stream.write(f"[{stamp}] [{source.upper()}] {message}\n")
        stream.flush()

    return _egress


async def run(cfg: MonitorConfig, egress, *, navigate: bool = False) -> int:
    monitor = BrowserMonitor(cfg, egress)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    monitor.set_on_window_closed_callback(stop.set)
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Windows event loops do not support signal handlers; KeyboardInterrupt still applies.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    try:
        await monitor.start()
    except MonitorError as exc:
        logger.error("%s", exc.diagnostic())
        monitor.prepare_shutdown()
        await monitor.shutdown()
        return 1

    if navigate:
        try:
            await monitor.navigate_to_app()
        except MonitorError as exc:
            logger.warning("navigation skipped: %s", exc.diagnostic())

    try:
        await stop.wait()
    finally:
        monitor.prepare_shutdown()
        await monitor.shutdown()
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the browser monitor CLI."""
    args = build_parser().parse_args(argv)
    cfg = config_from_args(args)
    logging.basicConfig(
        level=logging.DEBUG if cfg.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    with contextlib.ExitStack() as stack:
        stream: TextIO = sys.stdout
        if args.log_file:
            stream = stack.enter_context(open(expand_path(args.log_file), "a", encoding="utf-8"))
        try:
            code = asyncio.run(run(cfg, make_egress(stream), navigate=args.navigate))
        except KeyboardInterrupt:
            code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
