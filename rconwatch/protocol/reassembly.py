"""
Multi-packet reassembly for large command responses.

The server splits responses that don't fit one datagram into fragments:

    0x01 | seq | 0x00 | total | index | data

UDP gives no ordering guarantee, so fragments are stored by index and the
response is delivered once every slot in [0, total) is filled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .packets import CommandFragment

log = logging.getLogger(__name__)

# Cap on fragments held while waiting for index 0 of their response
MAX_EARLY_FRAGMENTS = 32


@dataclass
class PendingMultipacket:
    """Fixed-size slot array for one fragmented response."""
    seq: int
    total: int
    parts: list[bytes | None] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.parts:
            self.parts = [None] * self.total

    def store(self, index: int, data: bytes) -> None:
        self.parts[index] = data

    @property
    def received(self) -> int:
        return sum(1 for p in self.parts if p is not None)

    @property
    def complete(self) -> bool:
        return all(p is not None for p in self.parts)

    def assemble(self) -> bytes:
        """Concatenate all fragments in index order."""
        if not self.complete:
            raise ValueError(f"multipacket incomplete ({self.received}/{self.total})")
        return b"".join(self.parts)


class MultipacketAssembler:
    """Collect CommandFragments and emit complete responses.

    Index 0 opens a new PendingMultipacket sized by its declared total.
    Fragments that arrive ahead of index 0 are parked until it shows up.
    """

    def __init__(self):
        self.pending: PendingMultipacket | None = None
        self._early: dict[tuple[int, int], dict[int, bytes]] = {}
        self.completed: int = 0
        self.dropped: int = 0

    def feed(self, frag: CommandFragment) -> bytes | None:
        """Store one fragment. Returns the full response once complete."""
        if frag.index >= frag.total:
            log.warning(
                "dropping fragment index=%d outside total=%d (seq=%d)",
                frag.index, frag.total, frag.seq,
            )
            self.dropped += 1
            return None

        if frag.index == 0:
            self._open(frag)
        elif self.pending is None or self.pending.seq != frag.seq:
            self._park(frag)
            return None
        elif self.pending.total != frag.total:
            log.warning(
                "dropping stale fragment seq=%d index=%d: total=%d, expected %d",
                frag.seq, frag.index, frag.total, self.pending.total,
            )
            self.dropped += 1
            return None
        else:
            self.pending.store(frag.index, frag.data)

        return self._try_complete()

    def _open(self, frag: CommandFragment) -> None:
        if self.pending is not None and not self.pending.complete:
            log.warning(
                "discarding unfinished multipacket seq=%d (%d/%d fragments)",
                self.pending.seq, self.pending.received, self.pending.total,
            )
            self.dropped += self.pending.received
        self.pending = PendingMultipacket(seq=frag.seq, total=frag.total)
        self.pending.store(0, frag.data)

        early = self._early.pop((frag.seq, frag.total), None)
        if early:
            for index, data in early.items():
                self.pending.store(index, data)
        # Anything else parked belongs to an abandoned response
        if self._early:
            log.debug("clearing %d stale early fragment groups", len(self._early))
            self._early.clear()

    def _park(self, frag: CommandFragment) -> None:
        held = sum(len(g) for g in self._early.values())
        if held >= MAX_EARLY_FRAGMENTS:
            log.warning("early fragment buffer full, dropping seq=%d index=%d",
                        frag.seq, frag.index)
            self.dropped += 1
            return
        self._early.setdefault((frag.seq, frag.total), {})[frag.index] = frag.data
        log.debug("fragment seq=%d index=%d/%d arrived before index 0",
                  frag.seq, frag.index, frag.total)

    def _try_complete(self) -> bytes | None:
        if self.pending is None or not self.pending.complete:
            return None
        data = self.pending.assemble()
        log.debug("multipacket seq=%d complete: %d fragments, %d bytes",
                  self.pending.seq, self.pending.total, len(data))
        self.pending = None
        self.completed += 1
        return data

    def reset(self) -> None:
        """Forget everything (session teardown)."""
        self.pending = None
        self._early.clear()

    def stats(self) -> dict:
        return {
            "completed": self.completed,
            "dropped": self.dropped,
            "pending": self.pending.received if self.pending else 0,
            "early": sum(len(g) for g in self._early.values()),
        }
