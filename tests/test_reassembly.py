"""Tests for multi-packet command response reassembly."""

import pytest

from rconwatch.protocol.packets import CommandFragment
from rconwatch.protocol.reassembly import (
    MAX_EARLY_FRAGMENTS,
    MultipacketAssembler,
    PendingMultipacket,
)


def _make_frag(index: int, total: int = 3, seq: int = 5, data: bytes | None = None) -> CommandFragment:
    if data is None:
        data = f"part{index};".encode()
    return CommandFragment(seq=seq, total=total, index=index, data=data)


def _feed_all(asm: MultipacketAssembler, order: list[int], total: int = 3) -> list[bytes]:
    results = []
    for index in order:
        out = asm.feed(_make_frag(index, total=total))
        if out is not None:
            results.append(out)
    return results


class TestInOrder:
    def test_single_fragment(self):
        asm = MultipacketAssembler()
        assert asm.feed(_make_frag(0, total=1, data=b"all")) == b"all"
        assert asm.completed == 1

    def test_three_fragments(self):
        asm = MultipacketAssembler()
        assert _feed_all(asm, [0, 1, 2]) == [b"part0;part1;part2;"]
        assert asm.pending is None

    def test_nothing_until_complete(self):
        asm = MultipacketAssembler()
        assert asm.feed(_make_frag(0)) is None
        assert asm.feed(_make_frag(1)) is None
        assert asm.stats()["pending"] == 2


class TestOutOfOrder:
    def test_same_bytes_regardless_of_order(self):
        in_order = _feed_all(MultipacketAssembler(), [0, 1, 2])
        shuffled = _feed_all(MultipacketAssembler(), [0, 2, 1])
        assert shuffled == in_order

    def test_fragments_before_index_zero(self):
        asm = MultipacketAssembler()
        assert _feed_all(asm, [2, 1, 0]) == [b"part0;part1;part2;"]

    def test_index_zero_in_the_middle(self):
        asm = MultipacketAssembler()
        assert _feed_all(asm, [1, 0, 2]) == [b"part0;part1;part2;"]

    def test_empty_fragment_data(self):
        asm = MultipacketAssembler()
        asm.feed(_make_frag(0, total=2, data=b""))
        assert asm.feed(_make_frag(1, total=2, data=b"x")) == b"x"


class TestDropped:
    def test_mismatched_total_dropped(self):
        asm = MultipacketAssembler()
        asm.feed(_make_frag(0, total=3))
        assert asm.feed(_make_frag(1, total=4)) is None
        assert asm.dropped == 1
        # The original response still completes
        asm.feed(_make_frag(1, total=3))
        assert asm.feed(_make_frag(2, total=3)) == b"part0;part1;part2;"

    def test_index_out_of_range(self):
        asm = MultipacketAssembler()
        assert asm.feed(_make_frag(3, total=3)) is None
        assert asm.dropped == 1

    def test_new_response_replaces_unfinished_one(self):
        asm = MultipacketAssembler()
        asm.feed(_make_frag(0, seq=1))
        asm.feed(_make_frag(0, seq=2, total=2, data=b"a"))
        assert asm.feed(_make_frag(1, seq=2, total=2, data=b"b")) == b"ab"
        assert asm.dropped == 1

    def test_early_buffer_is_bounded(self):
        asm = MultipacketAssembler()
        for i in range(MAX_EARLY_FRAGMENTS + 5):
            asm.feed(CommandFragment(seq=i % 200, total=250, index=1, data=b"x"))
        assert asm.stats()["early"] == MAX_EARLY_FRAGMENTS
        assert asm.dropped == 5

    def test_reset(self):
        asm = MultipacketAssembler()
        asm.feed(_make_frag(0))
        asm.feed(_make_frag(2, seq=9))
        asm.reset()
        assert asm.pending is None
        assert asm.stats()["early"] == 0


class TestPending:
    def test_assemble_incomplete_raises(self):
        pending = PendingMultipacket(seq=1, total=2)
        pending.store(0, b"a")
        assert not pending.complete
        with pytest.raises(ValueError):
            pending.assemble()
