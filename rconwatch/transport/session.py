"""
RCON transport session — one UDP "connection" to a BattlEye server.

Lifecycle:
    DISCONNECTED → LOGGING_IN → LOGGED_IN → DISCONNECTED

A session is single-use: once closed it stays closed and the owner builds
a new one to reconnect.

Liveness:
    keep-alive  empty command when no command was sent for keepalive_interval
                (server drops clients silent for 45s)
    watchdog    reset on every decoded inbound frame; fires after
                watchdog_timeout of silence and closes the session
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum, auto
from typing import Callable

from rconwatch.errors import AuthError, ProtocolError, RconError, TransportError
from rconwatch.protocol.packets import (
    CommandFragment,
    CommandResponse,
    LoginResponse,
    ServerMessage,
    build_ack,
    build_command,
    build_login,
    decode_text,
    parse_frame,
    pretty_hex,
)
from rconwatch.protocol.reassembly import MultipacketAssembler
from rconwatch.transport.scheduler import Scheduler, Timer

log = logging.getLogger(__name__)

# Server deauthenticates clients that send nothing for this long
SERVER_SILENCE_LIMIT = 45.0

DEFAULT_KEEPALIVE_INTERVAL = 30.0
DEFAULT_WATCHDOG_TIMEOUT = 60.0

EndpointFactory = Callable[["RconSession"], None]


class SessionState(Enum):
    DISCONNECTED = auto()
    LOGGING_IN = auto()
    LOGGED_IN = auto()


class RconSession(asyncio.DatagramProtocol):
    """UDP transport, login handshake, keep-alive and watchdog.

    Inbound traffic is surfaced through plain callback attributes:
        on_login()                 login accepted
        on_command_response(text)  complete (reassembled) command response
        on_server_message(text)    server message, already acknowledged
        on_timeout()               watchdog fired (after close)
        on_error(exc)              AuthError / TransportError
        on_close()                 session closed, fires once
    """

    def __init__(
        self,
        host: str,
        port: int,
        password: str,
        scheduler: Scheduler,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        watchdog_timeout: float = DEFAULT_WATCHDOG_TIMEOUT,
        endpoint_factory: EndpointFactory | None = None,
    ):
        if keepalive_interval > SERVER_SILENCE_LIMIT:
            raise ValueError(
                f"keepalive_interval {keepalive_interval}s exceeds the server's "
                f"{SERVER_SILENCE_LIMIT:.0f}s limit"
            )
        self.host = host
        self.port = port
        self._password = password
        self._scheduler = scheduler
        self.keepalive_interval = keepalive_interval
        self.watchdog_timeout = watchdog_timeout
        self._endpoint_factory = endpoint_factory

        self.state = SessionState.DISCONNECTED
        self.transport: asyncio.DatagramTransport | None = None
        self.error: RconError | None = None
        self.assembler = MultipacketAssembler()
        self._sequence = 0
        self._opened = False
        self._closed = False
        self.endpoint_task: asyncio.Task | None = None

        self._keepalive = Timer(scheduler, "keepalive")
        self._watchdog = Timer(scheduler, "watchdog")

        self.last_sent: float = 0.0
        # Only command frames count towards the server's 45s limit, acks don't
        self.last_command_sent: float = 0.0
        self.last_received: float = 0.0
        self.frames_sent = 0
        self.frames_received = 0
        self.malformed = 0

        self.on_login: Callable[[], None] | None = None
        self.on_command_response: Callable[[str], None] | None = None
        self.on_server_message: Callable[[str], None] | None = None
        self.on_timeout: Callable[[], None] | None = None
        self.on_error: Callable[[RconError], None] | None = None
        self.on_close: Callable[[], None] | None = None

    def __repr__(self) -> str:
        return f"<RconSession {self.host}:{self.port} {self.state.name}>"

    @property
    def logged_in(self) -> bool:
        return self.state is SessionState.LOGGED_IN

    @property
    def closed(self) -> bool:
        return self._closed

    # ---- Opening ----

    def open(self) -> None:
        """Create the UDP endpoint. Login is sent from connection_made."""
        if self._opened:
            log.warning("%r: open() called twice, ignoring", self)
            return
        self._opened = True
        self.state = SessionState.LOGGING_IN
        log.info("opening RCON session to %s:%d", self.host, self.port)

        factory = self._endpoint_factory or self._create_endpoint
        try:
            factory(self)
        except OSError as e:
            self._fail(TransportError(f"could not open UDP endpoint: {e}"))

    def _create_endpoint(self, protocol: RconSession) -> None:
        loop = asyncio.get_running_loop()
        self.endpoint_task = loop.create_task(
            loop.create_datagram_endpoint(
                lambda: protocol, remote_addr=(self.host, self.port),
            )
        )
        self.endpoint_task.add_done_callback(self._on_endpoint_done)

    def _on_endpoint_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._fail(TransportError(f"could not open UDP endpoint: {exc}"))

    # ---- asyncio.DatagramProtocol ----

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        if self._closed:
            # Closed while the endpoint was still being created
            transport.close()
            return
        self.transport = transport
        log.debug("UDP endpoint ready, sending login")
        self._send(build_login(self._password))
        self.last_command_sent = self._scheduler.time()
        self._reset_watchdog()
        self._arm_keepalive(self.keepalive_interval)

    def datagram_received(self, data: bytes, addr) -> None:
        if self._closed:
            return
        try:
            msg = parse_frame(data)
        except ProtocolError as e:
            self.malformed += 1
            log.warning("dropping malformed frame from %s: %s", addr, e)
            log.debug("malformed frame:\n%s", pretty_hex(data))
            return

        self.frames_received += 1
        self.last_received = self._scheduler.time()
        self._reset_watchdog()

        match msg:
            case LoginResponse(success=success):
                self._handle_login(success)
            case ServerMessage(seq=seq):
                # Must be acknowledged before anything else happens
                self._send(build_ack(seq))
                self._dispatch(self.on_server_message, msg.text)
            case CommandResponse():
                self._dispatch(self.on_command_response, msg.text)
            case CommandFragment():
                data = self.assembler.feed(msg)
                if data is not None:
                    self._dispatch(self.on_command_response, decode_text(data))

    def error_received(self, exc: Exception) -> None:
        self._fail(TransportError(f"socket error: {exc}"))

    def connection_lost(self, exc: Exception | None) -> None:
        if self._closed:
            return
        if exc is not None:
            self._fail(TransportError(f"connection lost: {exc}"))
        else:
            self.close()

    # ---- Login ----

    def _handle_login(self, success: bool) -> None:
        if self.state is not SessionState.LOGGING_IN:
            log.debug("ignoring login response in state %s", self.state.name)
            return
        if success:
            self.state = SessionState.LOGGED_IN
            log.info("RCON login to %s:%d successful", self.host, self.port)
            self._dispatch(self.on_login)
            return
        log.error("RCON login to %s:%d rejected", self.host, self.port)
        self.error = AuthError("login rejected by server")
        self.close()
        self._dispatch(self.on_error, self.error)

    # ---- Sending ----

    def next_sequence(self) -> int:
        """Take the next one-byte sequence number (wraps after 255)."""
        seq = self._sequence
        self._sequence = (self._sequence + 1) & 0xFF
        return seq

    def send_command(self, command: str) -> int | None:
        """Send a command. Returns the sequence number used, or None."""
        if not self.logged_in:
            log.warning("cannot send %r: session is %s", command, self.state.name)
            return None
        seq = self.next_sequence()
        if not self._send(build_command(seq, command), command=True):
            return None
        log.debug("sent command seq=%d %r", seq, command)
        return seq

    def _send(self, frame: bytes, command: bool = False) -> bool:
        if self.transport is None or self._closed:
            return False
        try:
            self.transport.sendto(frame)
        except OSError as e:
            self._fail(TransportError(f"send failed: {e}"))
            return False
        self.frames_sent += 1
        self.last_sent = self._scheduler.time()
        if command:
            self.last_command_sent = self.last_sent
        return True

    # ---- Timers ----

    def _arm_keepalive(self, delay: float) -> None:
        self._keepalive.start(delay, self._on_keepalive)

    def _on_keepalive(self) -> None:
        if self._closed:
            return
        idle = self._scheduler.time() - self.last_command_sent
        if idle >= self.keepalive_interval:
            if self.logged_in:
                seq = self.next_sequence()
                if self._send(build_command(seq), command=True):
                    log.debug("keep-alive sent seq=%d", seq)
            idle = 0.0
        if not self._closed:
            self._arm_keepalive(self.keepalive_interval - idle)

    def _reset_watchdog(self) -> None:
        self._watchdog.start(self.watchdog_timeout, self._on_watchdog)

    def _on_watchdog(self) -> None:
        if self._closed:
            return
        log.warning(
            "no response from %s:%d in %.0fs, closing session",
            self.host, self.port, self.watchdog_timeout,
        )
        self.close()
        self._dispatch(self.on_timeout)

    # ---- Teardown ----

    def _fail(self, error: RconError) -> None:
        if self._closed:
            return
        log.error("%r: %s", self, error)
        self.error = error
        self.close()
        self._dispatch(self.on_error, error)

    def close(self) -> None:
        """Stop timers and close the socket. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        if self.endpoint_task is not None and not self.endpoint_task.done():
            self.endpoint_task.cancel()
        self._keepalive.cancel()
        self._watchdog.cancel()
        self.assembler.reset()
        self.state = SessionState.DISCONNECTED
        if self.transport is not None:
            self.transport.close()
            self.transport = None
        log.info("RCON session to %s:%d closed", self.host, self.port)
        self._dispatch(self.on_close)

    def _dispatch(self, callback: Callable | None, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            log.exception("session callback %r failed", callback)
