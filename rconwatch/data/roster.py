"""
Player roster — who is online right now.

Two inputs feed it:
  - the `players` poll (authoritative): merge() reconciles the snapshot by
    uid, refreshes last_seen and expires entries not confirmed for a while
  - console log events (non-authoritative): enrich_joined()/enrich_update()
    only fill in fields that are still empty

Log events often arrive before the poll that confirms the player. A join
without a uid creates a provisional entry keyed by name; the next poll or
update that supplies the uid promotes it in place instead of adding a
second entry.

Removal is expiry-only. A disconnect line in the log does not remove a
player; a poll that no longer lists them lets them age out.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Callable, Iterable

from rconwatch.data.events import PlayerDisconnected, PlayerJoined, PlayerUpdate
from rconwatch.rcon.players import ObservedPlayer

log = logging.getLogger(__name__)

DEFAULT_LIVENESS_TIMEOUT = 120.0

# Fields log events may fill in
ENRICHMENT_FIELDS = ("ip", "be_guid", "steam_id", "device")


@dataclass
class Player:
    """One known participant. None means "not known yet"."""
    name: str
    uid: str | None = None
    id: int | None = None
    ip: str | None = None
    be_guid: str | None = None
    steam_id: str | None = None
    device: str | None = None
    last_seen: float = 0.0

    @property
    def is_provisional(self) -> bool:
        """Seen in the log but not yet confirmed with a uid."""
        return not self.uid

    def fill(self, **values) -> list[str]:
        """Set fields that are currently empty. Returns the names changed."""
        changed = []
        for key, value in values.items():
            if value is None or value == "":
                continue
            current = getattr(self, key)
            if current is None or current == "":
                setattr(self, key, value)
                changed.append(key)
        return changed

    def touch(self, now: float) -> None:
        if now > self.last_seen:
            self.last_seen = now

    def is_stale(self, timeout: float, now: float) -> bool:
        return (now - self.last_seen) > timeout

    def to_dict(self) -> dict:
        return asdict(self)


# Callback type: called with (event_type, data)
# event_type: "players" (full snapshot list), "joined", "updated", "expired"
RosterCallback = Callable[[str, object], None]


class PlayerRoster:
    """Canonical in-memory table of players.

    Only this class mutates the entries. Everything handed out (snapshots,
    callback payloads) is a copy.
    """

    def __init__(
        self,
        liveness_timeout: float = DEFAULT_LIVENESS_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.liveness_timeout = liveness_timeout
        self._clock = clock
        self._players: list[Player] = []
        self._lock = threading.Lock()
        self._callbacks: list[RosterCallback] = []
        self.merges = 0
        self.last_merge: float = 0.0

    def __len__(self) -> int:
        return len(self._players)

    def now(self) -> float:
        """Current time on the roster's clock (same base as last_seen)."""
        return self._clock()

    def on_update(self, callback: RosterCallback) -> None:
        """Subscribe to roster changes."""
        self._callbacks.append(callback)

    def _notify(self, event_type: str, data: object) -> None:
        for cb in self._callbacks:
            try:
                cb(event_type, data)
            except Exception:
                log.exception("roster subscriber failed on %s", event_type)

    # ---- Poll reconciliation ----

    def merge(self, observed: Iterable[ObservedPlayer]) -> list[Player]:
        """Reconcile a `players` listing. Returns the new snapshot."""
        now = self._clock()
        added = 0
        with self._lock:
            lookup: dict[str, ObservedPlayer] = {}
            for obs in observed:
                lookup[obs.uid] = obs

            reconciled = []
            for player in self._players:
                if player.uid and player.uid in lookup:
                    self._apply_observation(player, lookup.pop(player.uid), now)
                    reconciled.append(player)

            # A rename can land on a name a join already created provisionally
            for player in reconciled:
                provisional = self._find_provisional(player.name)
                if provisional is not None:
                    self._fold(provisional, into=player)

            for uid in list(lookup):
                obs = lookup[uid]
                provisional = self._find_provisional(obs.name)
                if provisional is not None:
                    provisional.uid = uid
                    self._apply_observation(provisional, obs, now)
                    del lookup[uid]
                    log.debug("confirmed provisional player %r as %s", obs.name, uid)

            for uid, obs in lookup.items():
                self._players.append(Player(name=obs.name, uid=uid, id=obs.id, last_seen=now))
                added += 1

            expired = self._expire_locked(now)
            self.merges += 1
            self.last_merge = now
            snapshot = self._snapshot_locked()

        log.debug(
            "roster merge: %d players (%d new, %d expired)",
            len(snapshot), added, len(expired),
        )
        for player in expired:
            self._notify("expired", player)
        self._notify("players", snapshot)
        return snapshot

    @staticmethod
    def _apply_observation(player: Player, obs: ObservedPlayer, now: float) -> None:
        player.id = obs.id
        if obs.name:
            player.name = obs.name
        player.touch(now)

    # ---- Log enrichment ----

    def enrich_joined(self, event: PlayerJoined) -> Player:
        """Fill in connection details from a join line."""
        with self._lock:
            player = self._find_by_name(event.name)
            if player is None:
                player = Player(name=event.name, last_seen=self._clock())
                self._players.append(player)
                log.debug("provisional player %r from join event", event.name)
            changed = player.fill(
                ip=event.ip,
                be_guid=event.be_guid,
                steam_id=event.steam_id,
                device=event.device,
            )
            result = replace(player)
        if changed:
            log.debug("enriched %r: %s", event.name, ", ".join(changed))
        self._notify("joined", result)
        return result

    def enrich_update(self, event: PlayerUpdate) -> Player:
        """Attach uid/id from an `Updating player` line."""
        with self._lock:
            by_uid = self._find_by_uid(event.uid)
            by_name = self._find_by_name(event.name)

            if by_uid is not None:
                player = by_uid
                player.fill(id=event.id, name=event.name)
                provisional = self._find_provisional(event.name)
                if provisional is not None and provisional is not by_uid:
                    self._fold(provisional, into=by_uid)
            elif by_name is not None:
                player = by_name
                if player.uid and player.uid != event.uid:
                    log.debug(
                        "update for %r carries uid %s, roster has %s; keeping roster",
                        event.name, event.uid, player.uid,
                    )
                player.fill(uid=event.uid, id=event.id)
            else:
                player = Player(
                    name=event.name, uid=event.uid, id=event.id,
                    last_seen=self._clock(),
                )
                self._players.append(player)
                log.debug("new player %r (%s) from update event", event.name, event.uid)
            result = replace(player)
        self._notify("updated", result)
        return result

    def note_disconnected(self, event: PlayerDisconnected) -> None:
        """Disconnects are logged only; the poll decides when a player is gone."""
        log.debug("player %r disconnected (left to expiry)", event.name)

    def _fold(self, provisional: Player, into: Player) -> None:
        values = {name: getattr(provisional, name) for name in ENRICHMENT_FIELDS}
        into.fill(**values)
        into.touch(provisional.last_seen)
        self._players = [p for p in self._players if p is not provisional]
        log.debug("folded provisional %r into %s", provisional.name, into.uid)

    # ---- Expiry ----

    def expire(self, now: float | None = None) -> list[Player]:
        """Drop players not confirmed within liveness_timeout. Returns them."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = self._expire_locked(now)
        for player in expired:
            self._notify("expired", player)
        return expired

    def _expire_locked(self, now: float) -> list[Player]:
        expired = [p for p in self._players if p.is_stale(self.liveness_timeout, now)]
        if expired:
            self._players = [
                p for p in self._players
                if not p.is_stale(self.liveness_timeout, now)
            ]
            for p in expired:
                log.info(
                    "player %r (%s) expired after %.0fs unseen",
                    p.name, p.uid or "unconfirmed", now - p.last_seen,
                )
        return expired

    # ---- Lookup ----

    def snapshot(self) -> list[Player]:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> list[Player]:
        return [replace(p) for p in self._players]

    def find_by_uid(self, uid: str) -> Player | None:
        with self._lock:
            p = self._find_by_uid(uid)
            return replace(p) if p else None

    def find_by_name(self, name: str) -> Player | None:
        with self._lock:
            p = self._find_by_name(name)
            return replace(p) if p else None

    def find_by_id(self, player_id: int) -> Player | None:
        with self._lock:
            for p in self._players:
                if p.id == player_id:
                    return replace(p)
        return None

    def _find_by_uid(self, uid: str) -> Player | None:
        if not uid:
            return None
        for p in self._players:
            if p.uid == uid:
                return p
        return None

    def _find_by_name(self, name: str) -> Player | None:
        """Prefer a confirmed entry over a provisional one with the same name."""
        provisional = None
        for p in self._players:
            if p.name != name:
                continue
            if not p.is_provisional:
                return p
            provisional = provisional or p
        return provisional

    def _find_provisional(self, name: str) -> Player | None:
        for p in self._players:
            if p.is_provisional and p.name == name:
                return p
        return None

    def clear(self) -> None:
        with self._lock:
            self._players.clear()
