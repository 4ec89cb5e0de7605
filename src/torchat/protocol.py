"""
TorChat-Paste - Wire protocol definitions.

This module defines the message, handshake and frame shapes exchanged
between peers and their JSON text encoding.

A sealed message travels as:
    Message -> JSON -> pad -> encrypt -> EncryptedMessage JSON
            -> ProtocolFrame(s) JSON -> length-prefixed bytes

Frame layout on the byte stream:
- Length: 4 bytes (unsigned int, big-endian)
- Frame: variable length (UTF-8 JSON)

Oversized payloads are split into FirstFragment / MiddleFragment /
LastFragment frames carrying {message_id, index, total}; see
``torchat.reassembly`` for the receiving side.
"""

import json
import logging
import struct
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .constants import (
    DEFAULT_FRAGMENT_SIZE,
    FRAME_LENGTH_PREFIX_SIZE,
    MAX_MESSAGE_SIZE,
    PROTOCOL_VERSION,
)
from .crypto import constant_time_equals, encode_b64, generate_message_id, hash_data
from .errors import InvalidFormat

logger = logging.getLogger(__name__)


class MessageType(Enum):
    """Message type definitions."""

    HANDSHAKE = "Handshake"
    TEXT = "Text"
    FILE = "File"
    ACK = "Ack"
    KEEPALIVE = "KeepAlive"
    DISCONNECT = "Disconnect"


CONTROL_MESSAGE_TYPES = (MessageType.ACK, MessageType.KEEPALIVE, MessageType.DISCONNECT)
ACKNOWLEDGED_MESSAGE_TYPES = (MessageType.TEXT, MessageType.FILE)


class FrameType(Enum):
    """Frame type definitions."""

    SINGLE = "Single"
    FIRST_FRAGMENT = "FirstFragment"
    MIDDLE_FRAGMENT = "MiddleFragment"
    LAST_FRAGMENT = "LastFragment"


# Field validation helpers


def _field(data: Dict[str, Any], name: str, kind) -> Any:
    if name not in data:
        raise InvalidFormat(f"Missing field: {name}")
    value = data[name]
    # bool is an int subclass and never a valid number here
    if kind is int and isinstance(value, bool):
        raise InvalidFormat(f"Field {name} has wrong type")
    if not isinstance(value, kind):
        raise InvalidFormat(f"Field {name} has wrong type")
    return value


def _non_negative(data: Dict[str, Any], name: str) -> int:
    value = _field(data, name, int)
    if value < 0:
        raise InvalidFormat(f"Field {name} must not be negative")
    return value


def _load_object(text: Union[str, bytes]) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except (ValueError, TypeError, RecursionError) as e:
        raise InvalidFormat(f"Malformed JSON: {e}") from None
    if not isinstance(data, dict):
        raise InvalidFormat("Expected a JSON object")
    return data


def _enum_value(enum_cls, value: Any, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidFormat(f"Unknown {name}: {value!r}") from None


# Data model


@dataclass
class FileMetadata:
    """Name, size and MIME type of a transferred file."""

    name: str
    size: int
    mime_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "size": self.size, "mime_type": self.mime_type}

    @staticmethod
    def from_dict(data: Any) -> "FileMetadata":
        if not isinstance(data, dict):
            raise InvalidFormat("file_metadata must be an object")
        return FileMetadata(
            name=_field(data, "name", str),
            size=_non_negative(data, "size"),
            mime_type=_field(data, "mime_type", str),
        )


@dataclass
class Message:
    """One application message, before padding and encryption."""

    id: str
    msg_type: MessageType
    sender: str
    timestamp: int
    content: str
    sequence: int
    file_metadata: Optional[FileMetadata] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "msg_type": self.msg_type.value,
            "sender": self.sender,
            "timestamp": self.timestamp,
            "content": self.content,
            "sequence": self.sequence,
            "file_metadata": self.file_metadata.to_dict() if self.file_metadata else None,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        metadata = data.get("file_metadata")
        return Message(
            id=_field(data, "id", str),
            msg_type=_enum_value(MessageType, _field(data, "msg_type", str), "message type"),
            sender=_field(data, "sender", str),
            timestamp=_field(data, "timestamp", int),
            content=_field(data, "content", str),
            sequence=_non_negative(data, "sequence"),
            file_metadata=FileMetadata.from_dict(metadata) if metadata is not None else None,
        )


@dataclass
class HandshakeMessage:
    """
    Opening message of a session.

    The identity key authenticates the peer, the ephemeral key feeds the
    session key exchange, and the nonce defends against handshake replay.
    Keys and nonce are base64 strings.
    """

    version: int
    identity_public_key: str
    ephemeral_public_key: str
    nonce: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "identity_public_key": self.identity_public_key,
            "ephemeral_public_key": self.ephemeral_public_key,
            "nonce": self.nonce,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "HandshakeMessage":
        return HandshakeMessage(
            version=_non_negative(data, "version"),
            identity_public_key=_field(data, "identity_public_key", str),
            ephemeral_public_key=_field(data, "ephemeral_public_key", str),
            nonce=_field(data, "nonce", str),
        )


@dataclass
class KeyConfirmation:
    """
    Second handshake message: proves the sender derived the same session keys.

    ``mac`` is the base64 keyed BLAKE2b of the handshake transcript under the
    sender's transmit key.
    """

    mac: str

    def to_dict(self) -> Dict[str, Any]:
        return {"mac": self.mac}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "KeyConfirmation":
        return KeyConfirmation(mac=_field(data, "mac", str))


@dataclass
class FragmentInfo:
    """Position of one fragment within a split message."""

    message_id: str
    index: int
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {"message_id": self.message_id, "index": self.index, "total": self.total}

    @staticmethod
    def from_dict(data: Any) -> "FragmentInfo":
        if not isinstance(data, dict):
            raise InvalidFormat("fragment must be an object")
        info = FragmentInfo(
            message_id=_field(data, "message_id", str),
            index=_non_negative(data, "index"),
            total=_non_negative(data, "total"),
        )
        if info.total < 2 or info.index >= info.total:
            raise InvalidFormat(
                "Fragment index out of range", {"index": info.index, "total": info.total}
            )
        return info


@dataclass
class ProtocolFrame:
    """Checksummed unit of transmission."""

    frame_type: FrameType
    payload: str
    checksum: str
    fragment: Optional[FragmentInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "frame_type": self.frame_type.value,
            "payload": self.payload,
            "checksum": self.checksum,
        }
        if self.fragment is not None:
            data["fragment"] = self.fragment.to_dict()
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ProtocolFrame":
        frame_type = _enum_value(FrameType, _field(data, "frame_type", str), "frame type")
        fragment_data = data.get("fragment")
        fragment = FragmentInfo.from_dict(fragment_data) if fragment_data is not None else None

        if (frame_type is FrameType.SINGLE) != (fragment is None):
            raise InvalidFormat("Fragment info does not match frame type")
        if fragment is not None:
            expected = _expected_frame_type(fragment.index, fragment.total)
            if frame_type is not expected:
                raise InvalidFormat("Fragment position does not match frame type")

        return ProtocolFrame(
            frame_type=frame_type,
            payload=_field(data, "payload", str),
            checksum=_field(data, "checksum", str),
            fragment=fragment,
        )


def _expected_frame_type(index: int, total: int) -> FrameType:
    if index == 0:
        return FrameType.FIRST_FRAGMENT
    if index == total - 1:
        return FrameType.LAST_FRAGMENT
    return FrameType.MIDDLE_FRAGMENT


class ChatProtocol:
    """
    Per-connection protocol handler.

    Holds the protocol version and the outbound sequence counter. The
    counter is not locked: each instance belongs to exactly one connection.
    """

    def __init__(
        self,
        version: int = PROTOCOL_VERSION,
        max_fragment_size: int = DEFAULT_FRAGMENT_SIZE,
        max_message_size: int = MAX_MESSAGE_SIZE,
    ):
        if max_fragment_size <= 0:
            raise ValueError("max_fragment_size must be positive")
        self.version = version
        self.max_fragment_size = max_fragment_size
        self.max_message_size = max_message_size
        self._sequence = 0

    @property
    def sequence(self) -> int:
        """Sequence number the next outbound message will receive."""
        return self._sequence

    def next_sequence(self) -> int:
        """Return the current sequence number and advance the counter."""
        sequence = self._sequence
        self._sequence += 1
        return sequence

    # Message construction

    def create_handshake(
        self,
        identity_public_key: Union[str, bytes],
        ephemeral_public_key: Union[str, bytes],
        nonce: Union[str, bytes],
    ) -> HandshakeMessage:
        """Assemble a handshake message; raw bytes are base64 encoded."""

        def as_text(value):
            return value if isinstance(value, str) else encode_b64(value)

        return HandshakeMessage(
            version=self.version,
            identity_public_key=as_text(identity_public_key),
            ephemeral_public_key=as_text(ephemeral_public_key),
            nonce=as_text(nonce),
        )

    def _create_message(
        self,
        msg_type: MessageType,
        sender: str,
        content: str,
        file_metadata: Optional[FileMetadata] = None,
    ) -> Message:
        return Message(
            id=generate_message_id(),
            msg_type=msg_type,
            sender=sender,
            timestamp=int(time.time()),
            content=content,
            sequence=self.next_sequence(),
            file_metadata=file_metadata,
        )

    def create_text_message(self, sender: str, content: str) -> Message:
        """Create text message."""
        return self._create_message(MessageType.TEXT, sender, content)

    def create_file_message(self, sender: str, content: str, metadata: FileMetadata) -> Message:
        """Create file message; ``content`` carries the base64 file data."""
        return self._create_message(MessageType.FILE, sender, content, metadata)

    def create_control_message(
        self, msg_type: MessageType, sender: str, content: str = ""
    ) -> Message:
        """
        Create an Ack, KeepAlive or Disconnect message.

        For Ack, ``content`` is the id of the acknowledged message. Control
        messages consume a sequence number like any other.
        """
        if msg_type not in CONTROL_MESSAGE_TYPES:
            raise ValueError(f"Not a control message type: {msg_type}")
        return self._create_message(msg_type, sender, content)

    # Serialization

    def serialize_message(self, message: Message) -> str:
        """Serialize a message to JSON text."""
        return json.dumps(message.to_dict(), separators=(",", ":"), ensure_ascii=False)

    def deserialize_message(self, data: Union[str, bytes]) -> Message:
        """Parse a message; any structural problem raises InvalidFormat."""
        return Message.from_dict(_load_object(data))

    def serialize_handshake(self, handshake: HandshakeMessage) -> str:
        """Serialize a handshake message to JSON text."""
        return json.dumps(handshake.to_dict(), separators=(",", ":"))

    def deserialize_handshake(self, data: Union[str, bytes]) -> HandshakeMessage:
        """Parse a handshake message; any structural problem raises InvalidFormat."""
        return HandshakeMessage.from_dict(_load_object(data))

    def create_confirmation(self, mac: Union[str, bytes]) -> KeyConfirmation:
        """Wrap a key confirmation MAC; raw bytes are base64 encoded."""
        return KeyConfirmation(mac=mac if isinstance(mac, str) else encode_b64(mac))

    def serialize_confirmation(self, confirmation: KeyConfirmation) -> str:
        """Serialize a key confirmation to JSON text."""
        return json.dumps(confirmation.to_dict(), separators=(",", ":"))

    def deserialize_confirmation(self, data: Union[str, bytes]) -> KeyConfirmation:
        """Parse a key confirmation; any structural problem raises InvalidFormat."""
        return KeyConfirmation.from_dict(_load_object(data))

    def serialize_frame(self, frame: ProtocolFrame) -> str:
        """Serialize a frame to JSON text."""
        return json.dumps(frame.to_dict(), separators=(",", ":"), ensure_ascii=False)

    def deserialize_frame(self, data: Union[str, bytes]) -> ProtocolFrame:
        """Parse a frame; any structural problem raises InvalidFormat."""
        return ProtocolFrame.from_dict(_load_object(data))

    # Frames

    def create_frame(self, payload: str) -> ProtocolFrame:
        """Wrap a payload in a single frame with a SHA-256 checksum."""
        return ProtocolFrame(
            frame_type=FrameType.SINGLE,
            payload=payload,
            checksum=hash_data(payload.encode("utf-8")),
        )

    def verify_frame(self, frame: ProtocolFrame) -> None:
        """
        Check a frame's checksum.

        The checksum detects accidental corruption only; authenticity comes
        from the AEAD layer inside the payload.

        Raises:
            InvalidFormat: If the checksum does not match
        """
        expected = hash_data(frame.payload.encode("utf-8"))
        if not constant_time_equals(expected, frame.checksum):
            raise InvalidFormat("Frame checksum mismatch")

    def fragment(self, payload: str) -> List[ProtocolFrame]:
        """
        Split a payload into frames of at most ``max_fragment_size`` characters.

        A payload that fits is returned as one Single frame.
        """
        size = self.max_fragment_size
        if len(payload) <= size:
            return [self.create_frame(payload)]

        message_id = generate_message_id()
        chunks = [payload[i : i + size] for i in range(0, len(payload), size)]
        total = len(chunks)
        frames = []
        for index, chunk in enumerate(chunks):
            frames.append(
                ProtocolFrame(
                    frame_type=_expected_frame_type(index, total),
                    payload=chunk,
                    checksum=hash_data(chunk.encode("utf-8")),
                    fragment=FragmentInfo(message_id=message_id, index=index, total=total),
                )
            )
        logger.debug(f"Split payload of {len(payload)} chars into {total} fragments")
        return frames

    # Stream framing

    def pack_frame(self, text: str) -> bytes:
        """
        Prefix serialized frame text with its length.

        Format:
        - Length: 4 bytes (unsigned int, big-endian)
        - Data: UTF-8 encoded frame

        Raises:
            InvalidFormat: If the frame exceeds max_message_size
        """
        data = text.encode("utf-8")
        if len(data) > self.max_message_size:
            raise InvalidFormat(
                f"Frame too large: {len(data)} bytes",
                {"size": len(data), "max_size": self.max_message_size},
            )
        return struct.pack("!I", len(data)) + data

    def unpack_frame(self, buffer: bytes) -> Optional[Tuple[str, int]]:
        """
        Extract one length-prefixed frame from the front of ``buffer``.

        Returns:
        - Frame text
        - Total bytes consumed (prefix + data)

        Returns None if the buffer does not yet hold a complete frame.

        Raises:
            InvalidFormat: If the declared length exceeds max_message_size or
                the data is not UTF-8
        """
        if len(buffer) < FRAME_LENGTH_PREFIX_SIZE:
            return None

        (length,) = struct.unpack("!I", buffer[:FRAME_LENGTH_PREFIX_SIZE])
        if length > self.max_message_size:
            raise InvalidFormat(
                f"Frame too large: {length} bytes",
                {"size": length, "max_size": self.max_message_size},
            )

        end = FRAME_LENGTH_PREFIX_SIZE + length
        if len(buffer) < end:
            return None

        try:
            text = bytes(buffer[FRAME_LENGTH_PREFIX_SIZE:end]).decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidFormat("Frame is not valid UTF-8") from None
        return text, end
