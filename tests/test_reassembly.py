"""
TorChat-Paste - Fragment reassembly tests.
"""

import pytest

from torchat.errors import InvalidFormat
from torchat.protocol import ChatProtocol, FragmentInfo, FrameType, ProtocolFrame
from torchat.reassembly import Reassembler


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fragments():
    return ChatProtocol(max_fragment_size=4).fragment("abcdefghijklmn")


def make_fragment(message_id, index, total, payload="xx"):
    frame_type = FrameType.MIDDLE_FRAGMENT
    if index == 0:
        frame_type = FrameType.FIRST_FRAGMENT
    elif index == total - 1:
        frame_type = FrameType.LAST_FRAGMENT
    return ProtocolFrame(frame_type, payload, "", FragmentInfo(message_id, index, total))


def test_single_frame_passes_through():
    frame = ChatProtocol().create_frame("whole")
    assert Reassembler().add(frame) == "whole"


def test_in_order(fragments):
    reassembler = Reassembler()
    results = [reassembler.add(frame) for frame in fragments]

    assert results[:-1] == [None] * (len(fragments) - 1)
    assert results[-1] == "abcdefghijklmn"
    assert len(reassembler) == 0


def test_out_of_order(fragments):
    reassembler = Reassembler()
    order = [2, 0, 3, 1]
    results = [reassembler.add(fragments[i]) for i in order]

    assert results[-1] == "abcdefghijklmn"


def test_duplicate_fragment_ignored(fragments):
    reassembler = Reassembler()
    reassembler.add(fragments[0])
    assert reassembler.add(fragments[0]) is None

    for frame in fragments[1:-1]:
        reassembler.add(frame)
    assert reassembler.add(fragments[-1]) == "abcdefghijklmn"


def test_interleaved_messages():
    protocol = ChatProtocol(max_fragment_size=2)
    first = protocol.fragment("aabbcc")
    second = protocol.fragment("ddee")
    reassembler = Reassembler()

    assert reassembler.add(first[0]) is None
    assert reassembler.add(second[0]) is None
    assert len(reassembler) == 2
    assert reassembler.add(second[1]) == "ddee"
    assert reassembler.add(first[1]) is None
    assert reassembler.add(first[2]) == "aabbcc"


def test_total_change_drops_message():
    reassembler = Reassembler()
    reassembler.add(make_fragment("m", 0, 3))

    with pytest.raises(InvalidFormat):
        reassembler.add(make_fragment("m", 1, 4))
    assert len(reassembler) == 0


def test_size_limit():
    reassembler = Reassembler(max_bytes=5)
    reassembler.add(make_fragment("m", 0, 3, "abc"))

    with pytest.raises(InvalidFormat):
        reassembler.add(make_fragment("m", 1, 3, "def"))
    assert len(reassembler) == 0


def test_pending_limit():
    reassembler = Reassembler(max_pending=2)
    reassembler.add(make_fragment("m1", 0, 2))
    reassembler.add(make_fragment("m2", 0, 2))

    with pytest.raises(InvalidFormat):
        reassembler.add(make_fragment("m3", 0, 2))
    # Existing messages can still complete
    assert reassembler.add(make_fragment("m1", 1, 2, "yy")) == "xxyy"


def test_timeout_expires_partial_messages(clock):
    reassembler = Reassembler(timeout=60, clock=clock)
    reassembler.add(make_fragment("old", 0, 2))

    clock.now += 30
    assert reassembler.expire() == []

    clock.now += 31
    assert reassembler.expire() == ["old"]
    assert len(reassembler) == 0


def test_late_fragment_after_expiry_starts_over(clock):
    reassembler = Reassembler(timeout=10, clock=clock)
    reassembler.add(make_fragment("m", 0, 2))
    clock.now += 11

    assert reassembler.add(make_fragment("m", 1, 2)) is None
    assert len(reassembler) == 1


def test_clear():
    reassembler = Reassembler()
    reassembler.add(make_fragment("m", 0, 2))
    reassembler.clear()

    assert len(reassembler) == 0
