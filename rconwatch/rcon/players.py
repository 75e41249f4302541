"""
"players" command correlation.

The server answers `players` with a text table that may span several
command responses (and several datagrams per response):

    Players on server:
    [#] [IP Address]:[Port] [Ping] [GUID] [Name]
    --------------------------------------------------
    1 ; 11111111-1111-1111-1111-111111111111 ; Alice
    2 ; 22222222-2222-2222-2222-222222222222 ; Bob

Responses don't carry anything that reliably ties them to our request, so
only one query is ever outstanding and the gather window is closed by a
debounce timer once lines stop arriving.

    IDLE → AWAITING_RESPONSE → GATHERING → IDLE
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable

from rconwatch.transport.scheduler import Scheduler, Timer
from rconwatch.transport.session import RconSession

log = logging.getLogger(__name__)

PLAYERS_COMMAND = "players"

PLAYER_LINE_RE = re.compile(r"^(\d+)\s*;\s*([a-z0-9-]+)\s*;\s*(.*)$", re.IGNORECASE)
PLAYERS_MARKER_RE = re.compile(r"processing command:\s*players|players on server:", re.IGNORECASE)

DEFAULT_RESPONSE_TIMEOUT = 5.0
DEFAULT_GATHER_DEBOUNCE = 1.0
DEFAULT_MAX_CONSECUTIVE_TIMEOUTS = 3


@dataclass(frozen=True)
class ObservedPlayer:
    """One row of a players listing."""
    id: int
    uid: str
    name: str


def parse_player_lines(text: str) -> list[ObservedPlayer]:
    """Extract `<id> ; <uid> ; <name>` rows. Other lines are skipped."""
    players = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        m = PLAYER_LINE_RE.match(line)
        if m:
            players.append(ObservedPlayer(
                id=int(m.group(1)),
                uid=m.group(2).lower(),
                name=m.group(3).strip(),
            ))
    return players


class QueryState(Enum):
    IDLE = auto()
    AWAITING_RESPONSE = auto()
    GATHERING = auto()


class PlayersQuery:
    """Issues `players`, gathers the listing and hands it to on_players.

    on_escalate is called once every max_consecutive_timeouts timeouts in a
    row; the owner is expected to force a reconnect.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        on_players: Callable[[list[ObservedPlayer]], None],
        on_escalate: Callable[[], None],
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        gather_debounce: float = DEFAULT_GATHER_DEBOUNCE,
        max_consecutive_timeouts: int = DEFAULT_MAX_CONSECUTIVE_TIMEOUTS,
    ):
        self.session: RconSession | None = None
        self._on_players = on_players
        self._on_escalate = on_escalate
        self.response_timeout = response_timeout
        self.gather_debounce = gather_debounce
        self.max_consecutive_timeouts = max_consecutive_timeouts

        self.state = QueryState.IDLE
        self.observed: list[ObservedPlayer] = []
        self.consecutive_timeouts = 0
        self.queries_sent = 0
        self.timeouts_total = 0

        self._response_timer = Timer(scheduler, "players-response")
        self._gather_timer = Timer(scheduler, "players-gather")

    def attach(self, session: RconSession | None) -> None:
        """Point the query at a (new) session. Any gather in progress is dropped."""
        self.cancel()
        self.session = session

    @property
    def outstanding(self) -> bool:
        return self.state is not QueryState.IDLE

    # ---- Issuing ----

    def poll(self) -> bool:
        """Send one `players` query. Returns False if skipped."""
        if self.session is None or not self.session.logged_in:
            log.debug("RCON not logged in, skipping players poll")
            return False
        if self.outstanding:
            log.debug("players query still %s, skipping poll", self.state.name)
            return False

        self.observed = []
        self.state = QueryState.AWAITING_RESPONSE
        self._response_timer.start(self.response_timeout, self._on_response_timeout)
        if self.session.send_command(PLAYERS_COMMAND) is None:
            self._response_timer.cancel()
            self.state = QueryState.IDLE
            return False
        self.queries_sent += 1
        log.debug("sent players command")
        return True

    # ---- Responses ----

    def handle_message(self, text: str) -> None:
        """Feed one complete command response."""
        if self.state is QueryState.AWAITING_RESPONSE:
            # Any response counts as the server being alive
            self._response_timer.cancel()
            self.consecutive_timeouts = 0
            self.state = QueryState.IDLE

        if PLAYERS_MARKER_RE.search(text) and self.state is not QueryState.GATHERING:
            self.state = QueryState.GATHERING
            self.observed = []

        if self.state is not QueryState.GATHERING:
            return

        rows = parse_player_lines(text)
        self.observed.extend(rows)
        log.debug("gathered %d player rows (%d total)", len(rows), len(self.observed))
        self._gather_timer.start(self.gather_debounce, self.finalize)

    def _on_response_timeout(self) -> None:
        self.consecutive_timeouts += 1
        self.timeouts_total += 1
        log.warning(
            "no response to players command within %.0fs (consecutive timeouts: %d)",
            self.response_timeout, self.consecutive_timeouts,
        )
        self.finalize()

        if self.consecutive_timeouts >= self.max_consecutive_timeouts:
            log.error(
                "players command failed %d times in a row, forcing reconnect",
                self.consecutive_timeouts,
            )
            try:
                self._on_escalate()
            except Exception:
                log.exception("players escalation handler failed")
            self.consecutive_timeouts = 0

    def finalize(self) -> None:
        """Close the gather window and hand the rows over."""
        self._response_timer.cancel()
        self._gather_timer.cancel()
        observed = self.observed
        self.observed = []
        self.state = QueryState.IDLE
        try:
            self._on_players(observed)
        except Exception:
            log.exception("players handler failed")

    def cancel(self) -> None:
        """Drop any query in progress without reporting it."""
        self._response_timer.cancel()
        self._gather_timer.cancel()
        self.observed = []
        self.state = QueryState.IDLE
