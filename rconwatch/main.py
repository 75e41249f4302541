"""
rconwatch — command-line entry point.

Connects to a BattlEye RCON server, polls `players` and keeps the roster.

Usage:
    rconwatch --host 1.2.3.4 --port 2302 --password secret
    rconwatch --config config.json --poll 15 --dashboard
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import threading

from rconwatch.config import ServiceConfig
from rconwatch.data.roster import Player
from rconwatch.service.server import RconService
from rconwatch.transport.scheduler import LoopScheduler

log = logging.getLogger("rconwatch")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_config(args: argparse.Namespace) -> ServiceConfig:
    """Config file (if any) overridden by command-line flags."""
    config = ServiceConfig.load(args.config) if args.config else ServiceConfig()
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.password is not None:
        config.password = args.password
    if args.poll:
        config.poll_interval = args.poll
    return config


def setup_logging(verbose: bool, log_file: str | None, quiet_console: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = []
    if not quiet_console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    if not handlers:
        handlers.append(logging.NullHandler())
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        handlers=handlers,
    )


def _log_roster(snapshot: list[Player]) -> None:
    log.info("%d player(s) online", len(snapshot))
    for p in snapshot:
        log.debug("  #%s %s (%s)", p.id, p.name, p.uid or "unconfirmed")


def create_service(config: ServiceConfig, loop: asyncio.AbstractEventLoop) -> RconService:
    service = RconService(config, LoopScheduler(loop))
    service.on("connect", lambda: log.info("connected to %s:%d", config.host, config.port))
    service.on("error", lambda message: log.error("RCON error: %s", message))
    service.on("players", _log_roster)
    return service


async def _run_forever(service: RconService, poll: float) -> None:
    service.start()
    service.start_polling(poll)
    try:
        await asyncio.Event().wait()
    finally:
        service.stop()


def run_console(config: ServiceConfig) -> None:
    """Run in the foreground until Ctrl+C."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    service = create_service(config, loop)
    main_task = loop.create_task(_run_forever(service, config.poll_interval))
    try:
        loop.run_until_complete(main_task)
    except KeyboardInterrupt:
        log.info("interrupted, shutting down")
        main_task.cancel()
        try:
            loop.run_until_complete(main_task)
        except asyncio.CancelledError:
            pass
    finally:
        loop.close()


def run_dashboard(config: ServiceConfig) -> None:
    """Service loop in a daemon thread, Textual app in the main thread."""
    from rconwatch.dashboard.app import RosterDashboard

    loop = asyncio.new_event_loop()
    service = create_service(config, loop)

    def _loop_thread() -> None:
        asyncio.set_event_loop(loop)
        # Endpoint creation needs a running loop
        loop.call_soon(service.start)
        loop.call_soon(service.start_polling, config.poll_interval)
        loop.run_forever()

    thread = threading.Thread(target=_loop_thread, daemon=True, name="rcon-loop")
    thread.start()
    log.info("RCON loop started in background thread")

    try:
        RosterDashboard(service, loop).run()
    finally:
        loop.call_soon_threadsafe(service.stop)
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=2.0)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="BattlEye RCON client with a live player roster",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=str, default=None,
                        help="JSON config file (server.host / rconPort / rconPassword)")
    parser.add_argument("--host", type=str, default=None,
                        help="RCON host (overrides config)")
    parser.add_argument("--port", type=int, default=None,
                        help="RCON UDP port (overrides config)")
    parser.add_argument("--password", type=str, default=None,
                        help="RCON password (overrides config)")
    parser.add_argument("--poll", type=float, default=None,
                        help="players poll interval in seconds (default: 30)")
    parser.add_argument("--dashboard", action="store_true",
                        help="Show the roster in a terminal dashboard")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    parser.add_argument("--log-file", type=str, default=None,
                        help="Also write logs to this file")
    args = parser.parse_args()

    # Console logging would draw over the dashboard
    setup_logging(args.verbose, args.log_file, quiet_console=args.dashboard)

    try:
        config = build_config(args)
        config.validate()
    except (OSError, ValueError) as e:
        log.error("invalid configuration: %s", e)
        sys.exit(1)
    log.info("config: %s", config.redacted())

    if args.dashboard:
        run_dashboard(config)
    else:
        run_console(config)


if __name__ == "__main__":
    main()
