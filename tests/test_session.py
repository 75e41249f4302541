"""Tests for the RCON UDP session: login, acks, keep-alive, watchdog."""

import asyncio

import pytest

from rconwatch.errors import AuthError, TransportError
from rconwatch.protocol.packets import build_ack, build_command, build_login, build_packet
from rconwatch.transport.scheduler import LoopScheduler
from rconwatch.transport.session import RconSession, SessionState

ADDR = ("127.0.0.1", 2302)

LOGIN_OK = build_packet(b"\x00\x01")
LOGIN_REJECTED = build_packet(b"\x00\x00")


def _make_response(seq: int, text: str) -> bytes:
    return build_packet(bytes([0x01, seq]) + text.encode())


def _make_fragment(seq: int, total: int, index: int, text: str) -> bytes:
    return build_packet(bytes([0x01, seq, 0x00, total, index]) + text.encode())


def _make_message(seq: int, text: str) -> bytes:
    return build_packet(bytes([0x02, seq]) + text.encode())


class Recorder:
    """Collects session callbacks in order."""

    def __init__(self, session: RconSession):
        self.calls: list[tuple] = []
        session.on_login = lambda: self.calls.append(("login",))
        session.on_command_response = lambda text: self.calls.append(("response", text))
        session.on_server_message = lambda text: self.calls.append(("message", text))
        session.on_timeout = lambda: self.calls.append(("timeout",))
        session.on_error = lambda exc: self.calls.append(("error", exc))
        session.on_close = lambda: self.calls.append(("close",))

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


def _make_session(scheduler, transport, **kwargs) -> RconSession:
    return RconSession(
        "127.0.0.1", 2302, "secret", scheduler,
        endpoint_factory=lambda s: s.connection_made(transport),
        **kwargs,
    )


def _logged_in(scheduler, transport) -> tuple[RconSession, Recorder]:
    session = _make_session(scheduler, transport)
    rec = Recorder(session)
    session.open()
    session.datagram_received(LOGIN_OK, ADDR)
    return session, rec


class TestLogin:
    def test_open_sends_login(self, scheduler, transport):
        session = _make_session(scheduler, transport)
        session.open()
        assert transport.sent == [build_login("secret")]
        assert session.state is SessionState.LOGGING_IN

    def test_login_accepted(self, scheduler, transport):
        session, rec = _logged_in(scheduler, transport)
        assert session.logged_in
        assert rec.names() == ["login"]

    def test_login_rejected(self, scheduler, transport):
        session = _make_session(scheduler, transport)
        rec = Recorder(session)
        session.open()
        session.datagram_received(LOGIN_REJECTED, ADDR)
        assert session.closed
        assert isinstance(session.error, AuthError)
        assert rec.names() == ["close", "error"]
        assert transport.closed

    def test_second_open_ignored(self, scheduler, transport):
        session = _make_session(scheduler, transport)
        session.open()
        session.open()
        assert len(transport.sent) == 1

    def test_endpoint_failure(self, scheduler):
        def _fail(_session):
            raise OSError("address in use")

        session = RconSession("127.0.0.1", 2302, "pw", scheduler, endpoint_factory=_fail)
        rec = Recorder(session)
        session.open()
        assert isinstance(session.error, TransportError)
        assert rec.names() == ["close", "error"]

    def test_keepalive_above_server_limit_rejected(self, scheduler):
        with pytest.raises(ValueError):
            RconSession("127.0.0.1", 2302, "pw", scheduler, keepalive_interval=46)


class TestInbound:
    def test_server_message_acknowledged_before_dispatch(self, scheduler, transport):
        session, _rec = _logged_in(scheduler, transport)
        seen_at_dispatch = []
        session.on_server_message = lambda text: seen_at_dispatch.append(list(transport.sent))

        session.datagram_received(_make_message(0x2A, "Player #1 Alice connected"), ADDR)

        assert seen_at_dispatch == [[build_login("secret"), build_ack(0x2A)]]

    def test_command_response(self, scheduler, transport):
        session, rec = _logged_in(scheduler, transport)
        session.datagram_received(_make_response(0, "ok"), ADDR)
        assert rec.calls[-1] == ("response", "ok")

    def test_fragments_dispatched_once(self, scheduler, transport):
        session, rec = _logged_in(scheduler, transport)
        session.datagram_received(_make_fragment(1, 3, 2, "c"), ADDR)
        session.datagram_received(_make_fragment(1, 3, 0, "a"), ADDR)
        session.datagram_received(_make_fragment(1, 3, 1, "b"), ADDR)
        assert [c for c in rec.calls if c[0] == "response"] == [("response", "abc")]

    def test_malformed_frames_dropped(self, scheduler, transport):
        session, rec = _logged_in(scheduler, transport)
        for frame in (b"", b"BE", b"garbage frame", _make_response(0, "x")[:-1] + b"?"):
            session.datagram_received(frame, ADDR)
        assert session.malformed == 4
        assert session.logged_in
        assert rec.names() == ["login"]

    def test_closed_session_ignores_datagrams(self, scheduler, transport):
        session, rec = _logged_in(scheduler, transport)
        session.close()
        session.datagram_received(_make_response(0, "late"), ADDR)
        assert "response" not in rec.names()


class TestSending:
    def test_send_before_login_refused(self, scheduler, transport):
        session = _make_session(scheduler, transport)
        session.open()
        assert session.send_command("players") is None
        assert len(transport.sent) == 1

    def test_sequence_wraps(self, scheduler, transport):
        session, _rec = _logged_in(scheduler, transport)
        seqs = [session.send_command("x") for _ in range(257)]
        assert seqs[:256] == list(range(256))
        assert seqs[256] == 0

    def test_command_frame(self, scheduler, transport):
        session, _rec = _logged_in(scheduler, transport)
        session.send_command("players")
        assert transport.sent[-1] == build_command(0, "players")

    def test_send_failure_closes(self, scheduler):
        transport = FailingAfterLogin()
        session, rec = _logged_in(scheduler, transport)
        transport.fail_send = True
        assert session.send_command("players") is None
        assert isinstance(session.error, TransportError)
        assert rec.names() == ["login", "close", "error"]


class FailingAfterLogin:
    def __init__(self):
        self.sent = []
        self.fail_send = False

    def sendto(self, data, addr=None):
        if self.fail_send:
            raise OSError("network is unreachable")
        self.sent.append(data)

    def close(self):
        pass


class TestKeepalive:
    def test_empty_command_after_idle_interval(self, scheduler, transport):
        session, _rec = _logged_in(scheduler, transport)
        scheduler.advance(30)
        assert transport.sent[-1] == build_command(0)

    def test_recent_send_postpones_keepalive(self, scheduler, transport):
        session, _rec = _logged_in(scheduler, transport)
        scheduler.advance(20)
        session.send_command("players")
        sent_before = len(transport.sent)
        scheduler.advance(10)
        assert len(transport.sent) == sent_before
        scheduler.advance(20)
        assert transport.sent[-1] == build_command(1)

    def test_no_keepalive_before_login(self, scheduler, transport):
        session = _make_session(scheduler, transport)
        session.open()
        scheduler.advance(30)
        assert transport.sent == [build_login("secret")]

    def test_acks_do_not_replace_keepalive(self, scheduler, transport):
        session, _rec = _logged_in(scheduler, transport)
        for i in range(6):
            scheduler.advance(20)
            session.datagram_received(_make_message(i, "chat"), ADDR)

        commands = [f for f in transport.sent if f[7] == 0x01]
        acks = [f for f in transport.sent if f[7] == 0x02]
        assert len(acks) == 6
        # Empty commands at 30, 60, 90 and 120s
        assert commands == [build_command(seq) for seq in range(4)]
        assert not session.closed


class TestWatchdog:
    def test_fires_after_silence(self, scheduler, transport):
        session, rec = _logged_in(scheduler, transport)
        scheduler.advance(59.9)
        assert not session.closed
        scheduler.advance(0.2)
        assert session.closed
        assert transport.closed
        assert rec.names() == ["login", "close", "timeout"]

    def test_inbound_frame_resets(self, scheduler, transport):
        session, _rec = _logged_in(scheduler, transport)
        scheduler.advance(50)
        session.datagram_received(_make_response(0, ""), ADDR)
        scheduler.advance(50)
        assert not session.closed

    def test_malformed_frame_does_not_reset(self, scheduler, transport):
        session, _rec = _logged_in(scheduler, transport)
        scheduler.advance(50)
        session.datagram_received(b"BE garbage", ADDR)
        scheduler.advance(11)
        assert session.closed


class TestClose:
    def test_idempotent(self, scheduler, transport):
        session, rec = _logged_in(scheduler, transport)
        session.close()
        session.close()
        assert rec.names().count("close") == 1
        assert transport.close_calls == 1
        assert session.state is SessionState.DISCONNECTED

    def test_cancels_timers(self, scheduler, transport):
        session, _rec = _logged_in(scheduler, transport)
        session.close()
        assert scheduler.pending == 0

    def test_connection_lost_with_error(self, scheduler, transport):
        session, rec = _logged_in(scheduler, transport)
        session.connection_lost(ConnectionRefusedError("refused"))
        assert isinstance(session.error, TransportError)
        assert rec.names() == ["login", "close", "error"]

    def test_callback_exception_logged_not_raised(self, scheduler, transport):
        session = _make_session(scheduler, transport)

        def _boom():
            raise RuntimeError("boom")

        session.on_login = _boom
        session.open()
        session.datagram_received(LOGIN_OK, ADDR)
        assert session.logged_in


def test_close_cancels_pending_endpoint():
    async def _open_and_close():
        loop = asyncio.get_running_loop()
        session = RconSession("127.0.0.1", 2302, "pw", LoopScheduler(loop))
        session.open()
        task = session.endpoint_task
        assert task is not None and not task.done()
        session.close()
        await asyncio.sleep(0)
        return session, task

    session, task = asyncio.run(_open_and_close())
    assert task.cancelled()
    assert session.transport is None
    assert session.error is None
