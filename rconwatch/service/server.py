"""
RCON service — owns the session, the players poll, the roster and the
reconnect loop, and exposes them as a handful of events.

Architecture:
    RconSession ──command responses──→ PlayersQuery ──rows──→ PlayerRoster
         │                                  │                    ↑
         │ server messages                  │ 3 timeouts         │ log events
         ↓                                  ↓                    │
      "message"                     ReconnectSupervisor    feed_log_line()

Produced events (subscribe with on()):
    connect()            login accepted
    close()              session closed (a reconnect usually follows)
    error(message)       login rejected, socket failure, players timeouts
    players(snapshot)    full roster after every merge
    message(text)        server message (chat, admin logins...)
    response(text)       any command response
"""

from __future__ import annotations

import logging
from typing import Callable

from rconwatch.config import ServiceConfig
from rconwatch.data.events import (
    LogEventParser,
    PlayerDisconnected,
    PlayerEvent,
    PlayerJoined,
    PlayerUpdate,
)
from rconwatch.data.roster import Player, PlayerRoster
from rconwatch.errors import AuthError, CommandTimeoutError, RconError
from rconwatch.rcon.players import ObservedPlayer, PlayersQuery
from rconwatch.service.supervisor import ReconnectSupervisor
from rconwatch.transport.scheduler import Scheduler, Timer
from rconwatch.transport.session import EndpointFactory, RconSession

log = logging.getLogger(__name__)

EVENTS = ("connect", "close", "error", "players", "message", "response")


class RconService:
    """Keeps one BattlEye RCON connection alive and the roster current."""

    def __init__(
        self,
        config: ServiceConfig,
        scheduler: Scheduler,
        endpoint_factory: EndpointFactory | None = None,
    ):
        config.validate()
        self.config = config
        self._scheduler = scheduler
        self._endpoint_factory = endpoint_factory

        self.roster = PlayerRoster(
            liveness_timeout=config.liveness_timeout,
            clock=scheduler.time,
        )
        self.query = PlayersQuery(
            scheduler,
            on_players=self._on_players,
            on_escalate=self._on_escalate,
            response_timeout=config.response_timeout,
            gather_debounce=config.gather_debounce,
            max_consecutive_timeouts=config.max_consecutive_timeouts,
        )
        self.supervisor = ReconnectSupervisor(
            scheduler,
            reconnect=self._open_session,
            initial_delay=config.reconnect_initial_delay,
            max_delay=config.reconnect_max_delay,
            max_attempts=config.reconnect_max_attempts,
        )
        self.log_parser = LogEventParser()
        self.session: RconSession | None = None
        self.sessions_opened = 0

        self._listeners: dict[str, list[Callable]] = {name: [] for name in EVENTS}
        self._poll_timer = Timer(scheduler, "players-poll")
        self._poll_interval: float | None = None
        self._restart_timer = Timer(scheduler, "restart")
        self._running = False

    # ---- Events ----

    def on(self, event: str, callback: Callable) -> None:
        """Subscribe to one of EVENTS."""
        if event not in self._listeners:
            raise ValueError(f"unknown event {event!r}, expected one of {EVENTS}")
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: str, *args) -> None:
        for cb in list(self._listeners[event]):
            try:
                cb(*args)
            except Exception:
                log.exception("%s listener %r failed", event, cb)

    # ---- Lifecycle ----

    @property
    def running(self) -> bool:
        return self._running

    @property
    def logged_in(self) -> bool:
        return self.session is not None and self.session.logged_in

    def start(self) -> None:
        """Connect. Failures from here on are retried, never raised."""
        if self._running:
            return
        self._running = True
        log.info("connecting to RCON at %s:%d", self.config.host, self.config.port)
        self._open_session()

    def stop(self) -> None:
        """Disconnect and cancel every timer."""
        self._running = False
        self.stop_polling()
        self.supervisor.cancel()
        self._restart_timer.cancel()
        self._teardown_session()
        log.info("RCON service stopped")

    def restart(self) -> None:
        """Close the session and open a fresh one after restart_delay."""
        if not self._running:
            log.warning("restart() on a stopped service, ignoring")
            return
        log.warning("restarting RCON session")
        self._teardown_session()
        self._emit("close")
        self._restart_timer.start(self.config.restart_delay, self._open_session)

    def _open_session(self) -> None:
        self._teardown_session()
        if not self._running:
            return
        cfg = self.config
        session = RconSession(
            cfg.host, cfg.port, cfg.password,
            self._scheduler,
            keepalive_interval=cfg.keepalive_interval,
            watchdog_timeout=cfg.watchdog_timeout,
            endpoint_factory=self._endpoint_factory,
        )
        session.on_login = self._on_login
        session.on_command_response = self._on_command_response
        session.on_server_message = self._on_server_message
        session.on_timeout = lambda: self._on_session_lost(session, "watchdog timeout")
        session.on_error = lambda exc: self._on_session_error(session, exc)
        session.on_close = lambda: self._on_session_closed(session)
        self.session = session
        self.sessions_opened += 1
        self.query.attach(session)
        session.open()

    def _teardown_session(self) -> None:
        """Close the current session without triggering any of its callbacks."""
        session = self.session
        if session is None:
            return
        session.on_login = None
        session.on_command_response = None
        session.on_server_message = None
        session.on_timeout = None
        session.on_error = None
        session.on_close = None
        session.close()
        self.session = None
        self.query.attach(None)

    # ---- Session callbacks ----

    def _on_login(self) -> None:
        log.info("RCON connected successfully")
        self.supervisor.succeeded()
        self._emit("connect")
        if self._poll_interval is not None:
            # Resume at the previous interval
            self._schedule_poll()

    def _on_command_response(self, text: str) -> None:
        self.query.handle_message(text)
        self._emit("response", text)

    def _on_server_message(self, text: str) -> None:
        log.info("RCON message: %s", text)
        self._emit("message", text)

    def _on_session_closed(self, session: RconSession) -> None:
        if session is not self.session:
            return
        log.warning("RCON connection closed")
        self.query.cancel()
        self._emit("close")

    def _on_session_error(self, session: RconSession, exc: RconError) -> None:
        if session is not self.session:
            return
        log.error("RCON error: %s", exc)
        self._emit("error", str(exc))
        if isinstance(exc, AuthError):
            self._on_session_lost(session, "login rejected", delay=self.config.auth_retry_delay)
        else:
            self._on_session_lost(session, str(exc))

    def _on_session_lost(self, session: RconSession, reason: str, delay: float = 0.0) -> None:
        if session is not self.session or not self._running:
            return
        self.supervisor.request(reason, delay=delay)

    # ---- Players polling ----

    def start_polling(self, interval: float | None = None) -> None:
        """Send `players` every interval seconds (default poll_interval)."""
        self._poll_interval = interval or self.config.poll_interval
        log.info("polling players every %.0fs", self._poll_interval)
        self._schedule_poll()

    def stop_polling(self) -> None:
        self._poll_interval = None
        self._poll_timer.cancel()

    @property
    def polling(self) -> bool:
        return self._poll_interval is not None

    def _schedule_poll(self) -> None:
        self._poll_timer.start(self._poll_interval, self._poll_tick)

    def _poll_tick(self) -> None:
        self.query.poll()
        if self._poll_interval is not None:
            self._schedule_poll()

    def poll_now(self) -> bool:
        """Send a players query right away (outside the interval)."""
        return self.query.poll()

    def _on_players(self, observed: list[ObservedPlayer]) -> None:
        snapshot = self.roster.merge(observed)
        self._emit("players", snapshot)

    def _on_escalate(self) -> None:
        err = CommandTimeoutError(
            f"players command timed out {self.config.max_consecutive_timeouts} times in a row"
        )
        log.error("%s, forcing RCON reconnect", err)
        self._teardown_session()
        self._emit("close")
        self._emit("error", str(err))
        if self._running:
            self.supervisor.request(str(err))

    # ---- Commands ----

    def send_custom_command(self, command: str) -> bool:
        """Pass a raw RCON command through (kick, ban, restart...)."""
        if not self.logged_in:
            log.warning("cannot send %r: RCON not connected", command)
            return False
        log.info("sending custom RCON command: %s", command)
        return self.session.send_command(command) is not None

    # ---- Log events ----

    def handle_event(self, event: PlayerEvent) -> None:
        """Apply a player event from the console log to the roster."""
        match event:
            case PlayerJoined():
                self.roster.enrich_joined(event)
            case PlayerUpdate():
                self.roster.enrich_update(event)
            case PlayerDisconnected():
                self.roster.note_disconnected(event)
            case _:
                log.warning("unhandled log event %r", event)

    def feed_log_line(self, line: str) -> PlayerEvent | None:
        """Parse one console log line and apply any resulting event."""
        event = self.log_parser.feed(line)
        if event is not None:
            self.handle_event(event)
        return event

    # ---- Status ----

    @property
    def players(self) -> list[Player]:
        return self.roster.snapshot()

    @property
    def player_count(self) -> int:
        return len(self.roster)

    def status(self) -> dict:
        session = self.session
        return {
            "host": f"{self.config.host}:{self.config.port}",
            "state": session.state.name if session else "DISCONNECTED",
            "players": self.player_count,
            "polling": self.polling,
            "query_state": self.query.state.name,
            "consecutive_timeouts": self.query.consecutive_timeouts,
            "reconnecting": self.supervisor.is_reconnecting,
            "reconnect_attempts": self.supervisor.attempts,
            "sessions_opened": self.sessions_opened,
            "frames_sent": session.frames_sent if session else 0,
            "frames_received": session.frames_received if session else 0,
        }
