"""Shared fixtures for rconwatch tests."""

from __future__ import annotations

import itertools
from typing import Callable

import pytest


class ManualHandle:
    def __init__(self, when: float, order: int, callback: Callable[[], None]):
        self.when = when
        self.order = order
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Fake clock. Timers only fire inside advance()."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self._handles: list[ManualHandle] = []
        self._order = itertools.count()

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(self.now + delay, next(self._order), callback)
        self._handles.append(handle)
        return handle

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in time order."""
        target = self.now + seconds
        while True:
            due = [h for h in self._handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.order))
            self._handles.remove(handle)
            self.now = max(self.now, handle.when)
            handle.callback()
        self.now = target
        self._handles = [h for h in self._handles if not h.cancelled]

    @property
    def pending(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled)


class FakeTransport:
    """Stands in for asyncio.DatagramTransport and records what was sent."""

    def __init__(self, fail_send: bool = False):
        self.sent: list[bytes] = []
        self.closed = False
        self.close_calls = 0
        self.fail_send = fail_send

    def sendto(self, data: bytes, addr=None) -> None:
        if self.fail_send:
            raise OSError("network is unreachable")
        self.sent.append(data)

    def close(self) -> None:
        self.closed = True
        self.close_calls += 1


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
