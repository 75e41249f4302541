"""
Reconnection supervisor — exponential backoff around session rebuilds.

Any number of failure signals (watchdog, socket error, players escalation,
rejected login) may arrive while a reconnect is already running; only the
first one starts the loop. The loop stops when the owner reports a
successful login.

    attempt 1 immediately (or after `delay`), then 5s, 10s, 20s, 40s, 60s, 60s...
"""

from __future__ import annotations

import logging
from typing import Callable

from rconwatch.transport.scheduler import Scheduler, Timer

log = logging.getLogger(__name__)

DEFAULT_INITIAL_DELAY = 5.0
DEFAULT_MAX_DELAY = 60.0


class ReconnectSupervisor:
    """Drives `reconnect()` until succeeded() is called."""

    def __init__(
        self,
        scheduler: Scheduler,
        reconnect: Callable[[], None],
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        max_attempts: int | None = None,
    ):
        self._reconnect = reconnect
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts

        self.is_reconnecting = False
        self.attempts = 0
        self.current_delay = initial_delay
        self.total_reconnects = 0
        self.last_reason = ""
        self._timer = Timer(scheduler, "reconnect")

    def request(self, reason: str, delay: float = 0.0) -> bool:
        """Start the reconnect loop. Returns False if one is already running."""
        if self.is_reconnecting:
            log.debug("reconnect already in progress, ignoring: %s", reason)
            return False
        self.is_reconnecting = True
        self.attempts = 0
        self.current_delay = self.initial_delay
        self.last_reason = reason
        log.warning("RCON connection lost (%s), reconnecting", reason)
        if delay > 0:
            log.info("first reconnect attempt in %.0fs", delay)
            self._timer.start(delay, self._attempt)
        else:
            self._attempt()
        return True

    def _attempt(self) -> None:
        if not self.is_reconnecting:
            return
        if self.max_attempts is not None and self.attempts >= self.max_attempts:
            log.error("giving up after %d reconnect attempts", self.attempts)
            self.is_reconnecting = False
            return

        self.attempts += 1
        self.total_reconnects += 1
        log.warning("reconnect attempt %d...", self.attempts)
        try:
            self._reconnect()
        except Exception:
            log.exception("reconnect attempt %d failed", self.attempts)

        # succeeded() may already have run synchronously
        if not self.is_reconnecting:
            return
        delay = self.current_delay
        self.current_delay = min(self.current_delay * 2, self.max_delay)
        self._timer.start(delay, self._attempt)

    def succeeded(self) -> None:
        """Login worked: stop retrying and reset the backoff."""
        if self.is_reconnecting:
            log.info("reconnected after %d attempt(s)", self.attempts)
        self._timer.cancel()
        self.is_reconnecting = False
        self.attempts = 0
        self.current_delay = self.initial_delay

    def cancel(self) -> None:
        self._timer.cancel()
        self.is_reconnecting = False

    @property
    def next_delay(self) -> float:
        return self.current_delay
