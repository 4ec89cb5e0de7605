"""
TorChat-Paste - Peer sessions.

A P2PConnection owns everything one peer session needs: its state machine,
protocol framer (sequence counter), reassembler and session keys.

Handshake:
1. Each side sends HandshakeMessage {version, identity key, fresh ephemeral
   key, 32-byte nonce}.
2. Each side runs crypto_kx twice, once over the identity keys and once over
   the ephemeral keys, then binds them:
       key = BLAKE2b-256(key=identity kx key, ephemeral kx key || transcript)
   with transcript = initiator nonce || responder nonce.
   Only the holder of the peer's identity secret can derive the same keys,
   and the ephemeral half gives forward secrecy once the ephemeral secrets
   are wiped.
3. Each side sends KeyConfirmation {MAC(tx key, transcript)} and checks the
   peer's MAC under its rx key. Only then does the session become CONNECTED,
   so a peer that merely claims an identity key never gets that far.
4. Any validation or crypto failure returns the session to DISCONNECTED
   with HandshakeFailed. Ephemeral secrets and unconfirmed keys are wiped on
   every path.

Sealed messages:
    Message -> JSON -> pad -> encrypt(tx) -> EncryptedMessage JSON -> frames
"""

import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple, Union

from .connection_fsm import ConnectionEvent, ConnectionState, ConnectionStateMachine
from .constants import (
    DEFAULT_PADDING_BLOCK_SIZE,
    HANDSHAKE_NONCE_SIZE,
    HANDSHAKE_REPLAY_CACHE_SIZE,
    KEY_CONFIRMATION_SIZE,
    MAX_PENDING_ACKS,
)
from .crypto import (
    EncryptedMessage,
    IdentityKeyPair,
    Role,
    SessionKeys,
    apply_padding,
    bind_key,
    constant_time_equals,
    decode_b64,
    decode_public_key,
    decrypt,
    derive_session_keys,
    encrypt,
    generate_identity,
    keyed_hash,
    random_bytes,
    remove_padding,
)
from .errors import (
    Base64Error,
    CryptoError,
    DecryptionFailed,
    HandshakeFailed,
    InvalidFormat,
    NotConnected,
    ProtocolEncryptionError,
    ProtocolError,
)
from .fingerprint import Fingerprint
from .protocol import (
    ACKNOWLEDGED_MESSAGE_TYPES,
    ChatProtocol,
    FileMetadata,
    HandshakeMessage,
    KeyConfirmation,
    Message,
    MessageType,
    ProtocolFrame,
)
from .reassembly import Reassembler

logger = logging.getLogger(__name__)

TRANSCRIPT_LABEL = b"torchat-paste/session/v1"
CONFIRMATION_LABEL = b"torchat-paste/confirm/v1"


class HandshakeReplayCache:
    """Bounded record of handshake nonces already accepted (oldest evicted first)."""

    def __init__(self, max_size: int = HANDSHAKE_REPLAY_CACHE_SIZE):
        self.max_size = max_size
        self._seen: "OrderedDict[bytes, None]" = OrderedDict()
        self._lock = threading.Lock()

    def check_and_add(self, nonce: bytes) -> bool:
        """Record ``nonce``; return False if it was already seen."""
        with self._lock:
            if nonce in self._seen:
                return False
            self._seen[nonce] = None
            while len(self._seen) > self.max_size:
                self._seen.popitem(last=False)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class P2PConnection:
    """One session with one remote peer."""

    def __init__(
        self,
        remote_address: str,
        identity: IdentityKeyPair,
        protocol: Optional[ChatProtocol] = None,
        local_address: str = "",
        padding_block_size: int = DEFAULT_PADDING_BLOCK_SIZE,
        replay_cache: Optional[HandshakeReplayCache] = None,
        reassembler: Optional[Reassembler] = None,
        max_pending_acks: int = MAX_PENDING_ACKS,
    ):
        if padding_block_size <= 0:
            raise ValueError("padding_block_size must be positive")
        self.remote_address = remote_address
        self.local_address = local_address
        self.identity = identity
        self.protocol = protocol or ChatProtocol()
        self.padding_block_size = padding_block_size
        self.replay_cache = replay_cache or HandshakeReplayCache()
        self.reassembler = reassembler or Reassembler()
        self.state_machine = ConnectionStateMachine()

        self.session_keys: Optional[SessionKeys] = None
        self.pending_acks: Dict[str, int] = {}  # message id -> sent at, oldest first
        self.max_pending_acks = max_pending_acks
        self.last_activity = int(time.time())
        self.peer_identity_key: Optional[bytes] = None
        self.peer_fingerprint: Optional[Fingerprint] = None

        self.role: Optional[Role] = None
        self._ephemeral: Optional[IdentityKeyPair] = None
        self._local_nonce: Optional[bytes] = None
        # Derived but not yet confirmed by the peer
        self._unconfirmed_keys: Optional[SessionKeys] = None
        self._unconfirmed_identity: Optional[bytes] = None
        self._transcript: Optional[bytes] = None
        self._last_received_sequence = -1

    @property
    def state(self) -> ConnectionState:
        return self.state_machine.current_state

    def is_connected(self) -> bool:
        return self.state_machine.is_connected()

    def touch(self) -> None:
        """Record activity on the session."""
        self.last_activity = int(time.time())

    # Handshake

    def begin_handshake(self, role: Role) -> HandshakeMessage:
        """
        Start a handshake and return the message to send to the peer.

        Generates a fresh ephemeral key pair and nonce for this attempt.
        """
        if not self.state_machine.transition(ConnectionEvent.HANDSHAKE_STARTED):
            raise HandshakeFailed(f"Cannot start handshake in state {self.state.name}")

        self.role = role
        try:
            self._ephemeral = generate_identity()
            self._local_nonce = random_bytes(HANDSHAKE_NONCE_SIZE)
        except CryptoError as e:
            self._abort_handshake(e.message)
            raise HandshakeFailed(f"Handshake failed: {e.message}") from e
        except BaseException:
            self._abort_handshake("interrupted")
            raise

        logger.debug(f"Handshake started with {self.remote_address} as {role.value}")
        return self.protocol.create_handshake(
            self.identity.public_key, self._ephemeral.public_key, self._local_nonce
        )

    def complete_handshake(
        self,
        peer: HandshakeMessage,
        expected_fingerprint: Optional[Union[Fingerprint, str]] = None,
    ) -> KeyConfirmation:
        """
        Validate the peer's handshake and derive the session keys.

        The keys stay unconfirmed, and the session stays in HANDSHAKE, until
        ``confirm_handshake`` accepts the peer's key confirmation.

        Args:
            peer: Handshake message received from the peer
            expected_fingerprint: If given, the peer identity key must match it

        Returns:
            The key confirmation to send to the peer

        Raises:
            HandshakeFailed: On any validation or key exchange failure; the
                session is back in DISCONNECTED
        """
        if self.state is not ConnectionState.HANDSHAKE:
            raise HandshakeFailed(f"No handshake in progress (state {self.state.name})")
        if self._ephemeral is None:
            self._abort_handshake("handshake already completed")
            raise HandshakeFailed("Peer handshake already processed")

        try:
            keys, peer_identity, transcript = self._derive_keys(peer, expected_fingerprint)
        except HandshakeFailed as e:
            self._abort_handshake(e.message)
            raise
        except (CryptoError, ProtocolError) as e:
            self._abort_handshake(e.message)
            raise HandshakeFailed(f"Handshake failed: {e.message}") from e
        except BaseException:
            self._abort_handshake("interrupted")
            raise

        self._wipe_ephemeral()
        self._unconfirmed_keys = keys
        self._unconfirmed_identity = peer_identity
        self._transcript = transcript
        return self.protocol.create_confirmation(
            keyed_hash(keys.tx, CONFIRMATION_LABEL + transcript, KEY_CONFIRMATION_SIZE)
        )

    def confirm_handshake(self, peer: KeyConfirmation) -> Fingerprint:
        """
        Check the peer's key confirmation and enter CONNECTED.

        Returns:
            The peer's fingerprint

        Raises:
            HandshakeFailed: The peer did not derive the same keys, or no
                handshake is awaiting confirmation; the session is back in
                DISCONNECTED
        """
        if self.state is not ConnectionState.HANDSHAKE:
            raise HandshakeFailed(f"No handshake in progress (state {self.state.name})")
        keys = self._unconfirmed_keys
        if keys is None:
            self._abort_handshake("confirmation before key exchange")
            raise HandshakeFailed("Key confirmation received before handshake")

        try:
            mac = decode_b64(peer.mac)
        except Base64Error as e:
            self._abort_handshake("malformed key confirmation")
            raise HandshakeFailed("Malformed key confirmation") from e
        expected = keyed_hash(keys.rx, CONFIRMATION_LABEL + self._transcript, KEY_CONFIRMATION_SIZE)
        if len(mac) != KEY_CONFIRMATION_SIZE or not constant_time_equals(mac, expected):
            self._abort_handshake("key confirmation mismatch")
            raise HandshakeFailed("Peer could not prove its identity")

        self.session_keys = keys
        self.peer_identity_key = self._unconfirmed_identity
        self.peer_fingerprint = Fingerprint.from_public_key(self.peer_identity_key)
        self._unconfirmed_keys = None
        self._unconfirmed_identity = None
        self._transcript = None
        self._last_received_sequence = -1
        self.touch()
        self.state_machine.transition(ConnectionEvent.HANDSHAKE_COMPLETE)
        logger.info(
            f"Session established with {self.remote_address} "
            f"(peer {self.peer_fingerprint.formatted()})"
        )
        return self.peer_fingerprint

    def _derive_keys(
        self,
        peer: HandshakeMessage,
        expected_fingerprint: Optional[Union[Fingerprint, str]],
    ) -> Tuple[SessionKeys, bytes, bytes]:
        if peer.version != self.protocol.version:
            raise HandshakeFailed(
                "Unsupported protocol version",
                {"version": peer.version, "expected": self.protocol.version},
            )

        peer_identity = decode_public_key(peer.identity_public_key)
        peer_ephemeral = decode_public_key(peer.ephemeral_public_key)
        try:
            peer_nonce = decode_b64(peer.nonce)
        except Base64Error as e:
            raise HandshakeFailed("Malformed handshake nonce") from e
        if len(peer_nonce) != HANDSHAKE_NONCE_SIZE:
            raise HandshakeFailed("Malformed handshake nonce")

        # A peer echoing our own handshake back
        if constant_time_equals(peer_nonce, self._local_nonce) or constant_time_equals(
            peer_ephemeral, self._ephemeral.public_key
        ):
            raise HandshakeFailed("Reflected handshake")

        if expected_fingerprint is not None:
            if not isinstance(expected_fingerprint, Fingerprint):
                expected_fingerprint = Fingerprint(expected_fingerprint)
            if not expected_fingerprint.verify(peer_identity):
                raise HandshakeFailed("Peer fingerprint mismatch")

        if not self.replay_cache.check_and_add(peer_nonce):
            raise HandshakeFailed("Handshake nonce replayed")

        if self.role is Role.INITIATOR:
            transcript = TRANSCRIPT_LABEL + self._local_nonce + peer_nonce
        else:
            transcript = TRANSCRIPT_LABEL + peer_nonce + self._local_nonce

        with derive_session_keys(self.role, self.identity, peer_identity) as static, \
                derive_session_keys(self.role, self._ephemeral, peer_ephemeral) as ephemeral:
            keys = SessionKeys(
                rx=bind_key(static.rx, ephemeral.rx, transcript),
                tx=bind_key(static.tx, ephemeral.tx, transcript),
            )
        return keys, peer_identity, transcript

    def _wipe_ephemeral(self) -> None:
        if self._ephemeral is not None:
            self._ephemeral.wipe()
            self._ephemeral = None
        self._local_nonce = None

    def _wipe_handshake(self) -> None:
        self._wipe_ephemeral()
        if self._unconfirmed_keys is not None:
            self._unconfirmed_keys.wipe()
            self._unconfirmed_keys = None
        self._unconfirmed_identity = None
        self._transcript = None

    def _abort_handshake(self, reason: str) -> None:
        self._wipe_handshake()
        if self.state is ConnectionState.HANDSHAKE:
            self.state_machine.transition(ConnectionEvent.HANDSHAKE_FAILED, reason)
        logger.warning(f"Handshake with {self.remote_address} failed: {reason}")

    # Sealing and opening

    def _require_keys(self) -> SessionKeys:
        if not self.is_connected() or self.session_keys is None:
            raise NotConnected()
        return self.session_keys

    def seal_message(self, message: Message) -> List[ProtocolFrame]:
        """
        Serialize, pad and encrypt a message, and wrap it in frames.

        Text and File messages are tracked in ``pending_acks`` until the
        peer acknowledges them.
        """
        keys = self._require_keys()
        if message.msg_type is MessageType.HANDSHAKE:
            raise InvalidFormat("Handshake messages are never sealed")

        plain = self.protocol.serialize_message(message).encode("utf-8")
        padded = apply_padding(plain, self.padding_block_size)
        try:
            sealed = encrypt(padded, keys.tx)
        except CryptoError as e:
            raise ProtocolEncryptionError(f"Encryption error: {e.message}") from e

        payload = json.dumps(sealed.to_dict(), separators=(",", ":"))
        frames = self.protocol.fragment(payload)

        if message.msg_type in ACKNOWLEDGED_MESSAGE_TYPES:
            self._track_ack(message.id)
        self.touch()
        return frames

    def _track_ack(self, message_id: str) -> None:
        self.pending_acks[message_id] = int(time.time())
        while len(self.pending_acks) > self.max_pending_acks:
            oldest = next(iter(self.pending_acks))
            del self.pending_acks[oldest]
            logger.warning(
                f"No ack from {self.remote_address} for {oldest[:8]}, no longer tracked"
            )

    def expire_pending_acks(self, max_age: float, now: Optional[float] = None) -> List[str]:
        """Stop tracking messages sent more than ``max_age`` seconds ago; returns their ids."""
        cutoff = (time.time() if now is None else now) - max_age
        expired = [mid for mid, sent_at in self.pending_acks.items() if sent_at < cutoff]
        for message_id in expired:
            del self.pending_acks[message_id]
        return expired

    def seal_text(self, content: str) -> Tuple[Message, List[ProtocolFrame]]:
        self._require_keys()
        message = self.protocol.create_text_message(self.local_address, content)
        return message, self.seal_message(message)

    def seal_file(
        self, content: str, metadata: FileMetadata
    ) -> Tuple[Message, List[ProtocolFrame]]:
        self._require_keys()
        message = self.protocol.create_file_message(self.local_address, content, metadata)
        return message, self.seal_message(message)

    def seal_control(
        self, msg_type: MessageType, content: str = ""
    ) -> Tuple[Message, List[ProtocolFrame]]:
        self._require_keys()
        message = self.protocol.create_control_message(msg_type, self.local_address, content)
        return message, self.seal_message(message)

    def open_frame(self, frame: ProtocolFrame) -> Optional[Message]:
        """
        Verify, reassemble and decrypt one incoming frame.

        Returns the message once complete, or None while fragments are still
        outstanding. An incoming Ack clears the acknowledged id from
        ``pending_acks``.

        Raises:
            NotConnected: If the session is not established
            InvalidFormat: Bad checksum, fragment, structure or sequence
            ProtocolEncryptionError: Authentication or padding failure
        """
        keys = self._require_keys()
        self.protocol.verify_frame(frame)
        self.touch()

        payload = self.reassembler.add(frame)
        if payload is None:
            return None

        try:
            data = json.loads(payload)
            sealed = EncryptedMessage.from_dict(data)
        except (ValueError, TypeError, KeyError) as e:
            raise InvalidFormat(f"Malformed encrypted payload: {e}") from None

        try:
            plain = remove_padding(decrypt(sealed, keys.rx))
        except DecryptionFailed as e:
            raise ProtocolEncryptionError("Failed to decrypt frame") from e

        message = self.protocol.deserialize_message(plain)
        if message.msg_type is MessageType.HANDSHAKE:
            raise InvalidFormat("Unexpected handshake inside session")
        if message.sequence <= self._last_received_sequence:
            raise InvalidFormat(
                "Replayed or reordered message",
                {"sequence": message.sequence, "last": self._last_received_sequence},
            )
        self._last_received_sequence = message.sequence

        if message.msg_type is MessageType.ACK:
            self.pending_acks.pop(message.content, None)
        return message

    # Teardown

    def close(self) -> None:
        """Close the session and wipe its keys. Closing is terminal."""
        if self.state is ConnectionState.CLOSING:
            return
        self.state_machine.transition(ConnectionEvent.CLOSE_REQUESTED)
        self._release()
        logger.info(f"Session with {self.remote_address} closed")

    def transport_failed(self, reason: str) -> None:
        """Record a fatal transport error."""
        if self.state_machine.transition(ConnectionEvent.TRANSPORT_FAILED, reason):
            logger.warning(f"Transport to {self.remote_address} failed: {reason}")
        self._wipe_handshake()
        if self.state is ConnectionState.CLOSING:
            self._release()

    def _release(self) -> None:
        self._wipe_handshake()
        if self.session_keys is not None:
            self.session_keys.wipe()
            self.session_keys = None
        self.reassembler.clear()

    def __repr__(self) -> str:
        return f"P2PConnection(remote_address={self.remote_address!r}, state={self.state.name})"


class ConnectionRegistry:
    """
    The one shared store of live sessions, keyed by remote address.

    All access goes through a single lock; sessions themselves are owned by
    one task each and are not locked.
    """

    def __init__(
        self,
        identity: IdentityKeyPair,
        local_address: str = "",
        padding_block_size: int = DEFAULT_PADDING_BLOCK_SIZE,
        protocol_options: Optional[Dict] = None,
        replay_cache_size: int = HANDSHAKE_REPLAY_CACHE_SIZE,
        reassembly_options: Optional[Dict] = None,
    ):
        self.identity = identity
        self.local_address = local_address
        self.padding_block_size = padding_block_size
        self.protocol_options = protocol_options or {}
        self.reassembly_options = reassembly_options or {}
        self.replay_cache = HandshakeReplayCache(replay_cache_size)
        self._connections: Dict[str, P2PConnection] = {}
        self._lock = threading.Lock()

    def _new_connection(self, remote_address: str) -> P2PConnection:
        return P2PConnection(
            remote_address,
            self.identity,
            protocol=ChatProtocol(**self.protocol_options),
            local_address=self.local_address,
            padding_block_size=self.padding_block_size,
            replay_cache=self.replay_cache,
            reassembler=Reassembler(**self.reassembly_options),
        )

    @classmethod
    def from_config(
        cls, identity: IdentityKeyPair, config, local_address: str = ""
    ) -> "ConnectionRegistry":
        """Registry whose sessions use the protocol and padding settings of a Config."""
        return cls(
            identity,
            local_address=local_address,
            padding_block_size=config.padding_block_size,
            protocol_options=config.protocol_options(),
            reassembly_options=config.reassembly_options(),
        )

    def get_or_create(self, remote_address: str) -> P2PConnection:
        """Return the live session for an address, creating one if needed."""
        with self._lock:
            connection = self._connections.get(remote_address)
            if connection is None or connection.state is ConnectionState.CLOSING:
                connection = self._new_connection(remote_address)
                self._connections[remote_address] = connection
            return connection

    def get(self, remote_address: str) -> Optional[P2PConnection]:
        with self._lock:
            return self._connections.get(remote_address)

    def remove(self, remote_address: str) -> bool:
        """Close and forget the session for an address."""
        with self._lock:
            connection = self._connections.pop(remote_address, None)
        if connection is None:
            return False
        connection.close()
        return True

    def addresses(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def connected(self) -> List[P2PConnection]:
        with self._lock:
            return [c for c in self._connections.values() if c.is_connected()]

    def prune_closed(self) -> int:
        """Forget sessions that have reached CLOSING; return how many."""
        with self._lock:
            closed = [a for a, c in self._connections.items() if c.state is ConnectionState.CLOSING]
            for address in closed:
                del self._connections[address]
        return len(closed)

    def close_all(self) -> None:
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.close()
        logger.debug(f"Closed {len(connections)} sessions")

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, remote_address: str) -> bool:
        with self._lock:
            return remote_address in self._connections
