"""
Player events derived from the server console log.

These are the enrichment inputs for the roster. They come from log lines,
not from RCON, so they are non-authoritative: they can arrive before the
next `players` poll, after it, or interleaved with it.

A join is logged by BattlEye as four lines sharing one timestamp:

    00:57:25.897  DEFAULT      : BattlEye Server: Adding player identity=0x00000000, name='Mr Player Name'
    00:57:25.897  DEFAULT      : BattlEye Server: 'Player #0 Mr Player Name (100.232.104.24:57605) connected'
    00:57:25.897  DEFAULT      : BattlEye Server: Setting GUID for player identity=0x00000000, GUID=32561118877819724
    00:57:25.897  DEFAULT      : BattlEye Server: 'Player #0 Mr Player Name - BE GUID: 95ce5996e283db135343dc1a67d3ab25'

The event is emitted on the BE GUID line.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass

log = logging.getLogger(__name__)

_TS = r"(?P<time>(?:\d{4}-\d{2}-\d{2} )?\d{2}:\d{2}:\d{2}\.\d{3})"
_BE = _TS + r"\s+DEFAULT\s+: BattlEye Server: "

JOIN_IDENTITY_RE = re.compile(
    "^" + _BE + r"Adding player identity=(?P<identity>0x[0-9a-fA-F]+), name='(?P<name>.*?)'"
)
JOIN_CONNECTED_RE = re.compile(
    "^" + _BE + r"'Player\s+#(?P<number>\d+)\s+(?P<name>.*?)\s+\((?P<ip>[^):]+)(?::\d+)?\)\s+connected'"
)
JOIN_GUID_RE = re.compile(
    "^" + _BE + r"Setting GUID for player identity=(?P<identity>0x[0-9a-fA-F]+), GUID=(?P<guid>\w+)"
)
JOIN_BE_GUID_RE = re.compile(
    "^" + _BE + r"'Player\s+#(?P<number>\d+)\s+.*-\s+BE\s+GUID:\s+(?P<be_guid>[a-fA-F0-9]{32})'"
)
DISCONNECTED_RE = re.compile(
    "^" + _BE + r"'Player\s+#(?P<number>\d+)\s+(?P<name>.*?)\s+disconnected'"
)
UPDATE_RE = re.compile(
    "^" + _TS + r"\s+NETWORK\s+:\s+### Updating player: "
    r"PlayerId=(?P<id>\d+), Name=(?P<name>[^,]+), IdentityId=(?P<uid>[a-f0-9-]+)"
)

# Joins missing their last line are forgotten after this many newer joins
MAX_PENDING_JOINS = 64

DEVICE_PC = "PC"
DEVICE_CONSOLE = "Console"


@dataclass(frozen=True)
class PlayerJoined:
    name: str
    ip: str | None = None
    be_guid: str | None = None
    steam_id: str | None = None
    device: str | None = None
    number: int | None = None
    time: str = ""


@dataclass(frozen=True)
class PlayerUpdate:
    id: int
    name: str
    uid: str
    time: str = ""


@dataclass(frozen=True)
class PlayerDisconnected:
    name: str
    number: int | None = None
    time: str = ""


PlayerEvent = PlayerJoined | PlayerUpdate | PlayerDisconnected


def device_from_guid(guid: str) -> tuple[str | None, str]:
    """Platform GUID → (steam_id, device). Numeric GUIDs are SteamID64s."""
    if guid.isdigit() and int(guid) != 0:
        return guid, DEVICE_PC
    return None, DEVICE_CONSOLE


class LogEventParser:
    """Turn console log lines into player events, one line at a time."""

    def __init__(self):
        self._pending: OrderedDict[str, dict] = OrderedDict()
        self.lines_seen = 0
        self.events_emitted = 0

    def feed(self, line: str) -> PlayerEvent | None:
        """Process one line. Returns an event when one is complete."""
        self.lines_seen += 1
        line = line.rstrip("\r\n")
        event = self._parse(line)
        if event is not None:
            self.events_emitted += 1
        return event

    def _parse(self, line: str) -> PlayerEvent | None:
        for regex, handler in self._handlers:
            m = regex.match(line)
            if m:
                return handler(self, m)
        return None

    def _on_update(self, m: re.Match) -> PlayerEvent | None:
        return PlayerUpdate(
            id=int(m.group("id")),
            name=m.group("name").strip(),
            uid=m.group("uid"),
            time=m.group("time"),
        )

    def _on_disconnected(self, m: re.Match) -> PlayerEvent | None:
        return PlayerDisconnected(
            name=m.group("name"),
            number=int(m.group("number")),
            time=m.group("time"),
        )

    def _on_identity(self, m: re.Match) -> PlayerEvent | None:
        self._pending[m.group("time")] = {"name": m.group("name")}
        while len(self._pending) > MAX_PENDING_JOINS:
            stale_time, stale = self._pending.popitem(last=False)
            log.debug("dropping incomplete join for %r at %s", stale["name"], stale_time)
        return None

    def _on_connected(self, m: re.Match) -> PlayerEvent | None:
        join = self._pending.get(m.group("time"))
        if join is not None:
            join["number"] = int(m.group("number"))
            join["ip"] = m.group("ip").strip()
        return None

    def _on_guid(self, m: re.Match) -> PlayerEvent | None:
        join = self._pending.get(m.group("time"))
        if join is not None:
            join["steam_id"], join["device"] = device_from_guid(m.group("guid"))
        return None

    def _on_be_guid(self, m: re.Match) -> PlayerEvent | None:
        join = self._pending.pop(m.group("time"), None)
        if join is None:
            log.debug("BE GUID line without a pending join at %s", m.group("time"))
            return None
        return PlayerJoined(
            name=join["name"],
            ip=join.get("ip"),
            be_guid=m.group("be_guid").lower(),
            steam_id=join.get("steam_id"),
            device=join.get("device"),
            number=join.get("number", int(m.group("number"))),
            time=m.group("time"),
        )

    # Checked in order; first match wins
    _handlers = [
        (UPDATE_RE, _on_update),
        (DISCONNECTED_RE, _on_disconnected),
        (JOIN_IDENTITY_RE, _on_identity),
        (JOIN_CONNECTED_RE, _on_connected),
        (JOIN_GUID_RE, _on_guid),
        (JOIN_BE_GUID_RE, _on_be_guid),
    ]

    @property
    def pending_joins(self) -> int:
        return len(self._pending)
