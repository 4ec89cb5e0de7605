"""
TorChat-Paste - Protocol tests.

Tests message construction, JSON wire format, frames, fragmentation and
length-prefixed stream framing.
"""

import json
import struct

import pytest

from torchat.errors import InvalidFormat
from torchat.protocol import (
    ChatProtocol,
    FileMetadata,
    FragmentInfo,
    FrameType,
    Message,
    MessageType,
    ProtocolFrame,
)


@pytest.fixture
def protocol():
    return ChatProtocol()


class TestMessages:
    """Message creation and sequence numbers."""

    def test_sequences_start_at_zero(self, protocol):
        messages = [protocol.create_text_message("me.onion", f"m{i}") for i in range(5)]

        assert [m.sequence for m in messages] == [0, 1, 2, 3, 4]
        assert protocol.sequence == 5

    def test_control_messages_take_sequence_numbers(self, protocol):
        text = protocol.create_text_message("me", "hi")
        ack = protocol.create_control_message(MessageType.ACK, "me", text.id)

        assert ack.sequence == text.sequence + 1
        assert ack.content == text.id

    def test_control_message_rejects_other_types(self, protocol):
        with pytest.raises(ValueError):
            protocol.create_control_message(MessageType.TEXT, "me")

    def test_unique_ids(self, protocol):
        ids = {protocol.create_text_message("me", "x").id for _ in range(50)}
        assert len(ids) == 50

    def test_file_message(self, protocol):
        metadata = FileMetadata(name="a.txt", size=3, mime_type="text/plain")
        message = protocol.create_file_message("me", "YWJj", metadata)

        assert message.msg_type is MessageType.FILE
        assert message.file_metadata == metadata

    def test_message_roundtrip(self, protocol):
        metadata = FileMetadata(name="ünï.bin", size=10, mime_type="application/octet-stream")
        message = protocol.create_file_message("me", "AAAA", metadata)

        assert protocol.deserialize_message(protocol.serialize_message(message)) == message

    def test_wire_names(self, protocol):
        message = protocol.create_control_message(MessageType.KEEPALIVE, "me")
        data = json.loads(protocol.serialize_message(message))

        assert data["msg_type"] == "KeepAlive"
        assert data["file_metadata"] is None
        assert set(data) == {
            "id", "msg_type", "sender", "timestamp", "content", "sequence", "file_metadata"
        }


class TestInvalidMessages:
    """Every structural problem is InvalidFormat."""

    def valid(self):
        return {
            "id": "ab" * 16,
            "msg_type": "Text",
            "sender": "me",
            "timestamp": 1700000000,
            "content": "hi",
            "sequence": 0,
            "file_metadata": None,
        }

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda d: d.pop("id"),
            lambda d: d.update(msg_type="Shout"),
            lambda d: d.update(sequence=-1),
            lambda d: d.update(sequence="1"),
            lambda d: d.update(sequence=True),
            lambda d: d.update(content=5),
            lambda d: d.update(file_metadata={"name": "x"}),
            lambda d: d.update(file_metadata={"name": "x", "size": -1, "mime_type": "a"}),
        ],
    )
    def test_invalid_fields(self, protocol, mutate):
        data = self.valid()
        mutate(data)

        with pytest.raises(InvalidFormat):
            protocol.deserialize_message(json.dumps(data))

    @pytest.mark.parametrize("text", ["", "not json", "[]", "42", '"text"'])
    def test_not_an_object(self, protocol, text):
        with pytest.raises(InvalidFormat):
            protocol.deserialize_message(text)

    def test_valid_baseline(self, protocol):
        message = protocol.deserialize_message(json.dumps(self.valid()))
        assert message.msg_type is MessageType.TEXT

    def test_handshake_requires_fields(self, protocol):
        with pytest.raises(InvalidFormat):
            protocol.deserialize_handshake('{"version": 1}')


class TestHandshakeMessage:
    """Handshake encoding."""

    def test_bytes_are_base64_encoded(self, protocol):
        handshake = protocol.create_handshake(b"\x01" * 32, b"\x02" * 32, b"\x03" * 32)

        assert handshake.version == 1
        assert handshake.identity_public_key == "AQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQE="
        restored = protocol.deserialize_handshake(protocol.serialize_handshake(handshake))
        assert restored == handshake

    def test_key_confirmation(self, protocol):
        confirmation = protocol.create_confirmation(b"\xff" * 32)

        assert confirmation.mac == "/" * 42 + "8="
        restored = protocol.deserialize_confirmation(protocol.serialize_confirmation(confirmation))
        assert restored == confirmation

    @pytest.mark.parametrize("text", ["{}", '{"mac": 5}', "[]", "not json"])
    def test_key_confirmation_malformed(self, protocol, text):
        with pytest.raises(InvalidFormat):
            protocol.deserialize_confirmation(text)


class TestFrames:
    """Checksummed frames and fragmentation."""

    def test_single_frame(self, protocol):
        frame = protocol.create_frame("payload")

        assert frame.frame_type is FrameType.SINGLE
        assert frame.fragment is None
        protocol.verify_frame(frame)

    def test_checksum_mismatch(self, protocol):
        frame = protocol.create_frame("payload")
        frame.payload = "payloaD"

        with pytest.raises(InvalidFormat):
            protocol.verify_frame(frame)

    def test_frame_wire_format(self, protocol):
        data = json.loads(protocol.serialize_frame(protocol.create_frame("x")))

        assert data["frame_type"] == "Single"
        assert "fragment" not in data

    def test_small_payload_not_fragmented(self):
        protocol = ChatProtocol(max_fragment_size=10)
        frames = protocol.fragment("0123456789")

        assert len(frames) == 1
        assert frames[0].frame_type is FrameType.SINGLE

    def test_fragment_types_and_order(self):
        protocol = ChatProtocol(max_fragment_size=4)
        frames = protocol.fragment("abcdefghijklmn")

        assert [f.frame_type for f in frames] == [
            FrameType.FIRST_FRAGMENT,
            FrameType.MIDDLE_FRAGMENT,
            FrameType.MIDDLE_FRAGMENT,
            FrameType.LAST_FRAGMENT,
        ]
        assert [f.fragment.index for f in frames] == [0, 1, 2, 3]
        assert {f.fragment.total for f in frames} == {4}
        assert len({f.fragment.message_id for f in frames}) == 1
        assert "".join(f.payload for f in frames) == "abcdefghijklmn"
        for frame in frames:
            protocol.verify_frame(frame)

    def test_two_fragments(self):
        protocol = ChatProtocol(max_fragment_size=3)
        frames = protocol.fragment("abcd")

        assert [f.frame_type for f in frames] == [FrameType.FIRST_FRAGMENT, FrameType.LAST_FRAGMENT]

    def test_fragment_frame_roundtrip(self):
        protocol = ChatProtocol(max_fragment_size=2)
        for frame in protocol.fragment("abcdef"):
            assert protocol.deserialize_frame(protocol.serialize_frame(frame)) == frame

    def test_fragment_info_must_match_frame_type(self, protocol):
        frame = ProtocolFrame(
            frame_type=FrameType.SINGLE,
            payload="x",
            checksum="y",
            fragment=FragmentInfo("id", 0, 2),
        )
        with pytest.raises(InvalidFormat):
            protocol.deserialize_frame(json.dumps(frame.to_dict()))

        data = {"frame_type": "FirstFragment", "payload": "x", "checksum": "y"}
        with pytest.raises(InvalidFormat):
            protocol.deserialize_frame(json.dumps(data))

    def test_fragment_position_must_match_frame_type(self, protocol):
        data = {
            "frame_type": "LastFragment",
            "payload": "x",
            "checksum": "y",
            "fragment": {"message_id": "id", "index": 0, "total": 3},
        }
        with pytest.raises(InvalidFormat):
            protocol.deserialize_frame(json.dumps(data))

    @pytest.mark.parametrize("index,total", [(0, 1), (2, 2), (-1, 3)])
    def test_fragment_range(self, protocol, index, total):
        data = {
            "frame_type": "MiddleFragment",
            "payload": "x",
            "checksum": "y",
            "fragment": {"message_id": "id", "index": index, "total": total},
        }
        with pytest.raises(InvalidFormat):
            protocol.deserialize_frame(json.dumps(data))

    def test_unknown_frame_type(self, protocol):
        with pytest.raises(InvalidFormat):
            protocol.deserialize_frame('{"frame_type": "Huge", "payload": "", "checksum": ""}')


class TestStreamFraming:
    """4-byte big-endian length prefix."""

    def test_pack(self, protocol):
        packed = protocol.pack_frame("héllo")

        assert packed[:4] == struct.pack("!I", len("héllo".encode("utf-8")))
        assert packed[4:] == "héllo".encode("utf-8")

    def test_unpack(self, protocol):
        packed = protocol.pack_frame("one") + protocol.pack_frame("two")

        text, consumed = protocol.unpack_frame(packed)
        assert text == "one"
        assert protocol.unpack_frame(packed[consumed:]) == ("two", len(packed) - consumed)

    def test_unpack_incomplete(self, protocol):
        packed = protocol.pack_frame("hello")

        assert protocol.unpack_frame(packed[:3]) is None
        assert protocol.unpack_frame(packed[:-1]) is None

    def test_size_limits(self):
        protocol = ChatProtocol(max_message_size=8)

        with pytest.raises(InvalidFormat):
            protocol.pack_frame("x" * 9)
        with pytest.raises(InvalidFormat):
            protocol.unpack_frame(struct.pack("!I", 9))

    def test_unpack_rejects_non_utf8(self, protocol):
        with pytest.raises(InvalidFormat):
            protocol.unpack_frame(struct.pack("!I", 2) + b"\xff\xfe")


def test_message_equality_is_field_based(protocol):
    message = protocol.create_text_message("me", "hi")
    copy = Message(**{**message.__dict__})

    assert copy == message
