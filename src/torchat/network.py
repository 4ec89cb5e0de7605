"""
TorChat-Paste - Framed session channel over an asyncio byte stream.

The anonymity transport (Tor hidden services, SOCKS proxying) lives outside
this package; it only has to hand over an ordered, reliable byte stream as
an asyncio (StreamReader, StreamWriter) pair. StreamChannel runs the
handshake over that stream and then moves sealed, length-prefixed frames.

Connection flow:
1. Initiator sends its handshake, responder answers with its own
2. Both sides derive session keys (see ``torchat.session``)
3. Responder sends its key confirmation, initiator answers with its own;
   the session is CONNECTED only once the peer's confirmation checks out
4. Text/File messages are acknowledged automatically on receipt
5. Either side may send Disconnect; the session is then closed
"""

import asyncio
import logging
import struct
from typing import Optional, Union

from .constants import CONNECTION_TIMEOUT, FRAME_LENGTH_PREFIX_SIZE, HANDSHAKE_TIMEOUT
from .crypto import Role, encode_b64
from .errors import HandshakeFailed, InvalidFormat, NotConnected, ProtocolError
from .fingerprint import Fingerprint
from .protocol import (
    ACKNOWLEDGED_MESSAGE_TYPES,
    FileMetadata,
    KeyConfirmation,
    Message,
    MessageType,
)
from .session import P2PConnection

logger = logging.getLogger(__name__)


class StreamChannel:
    """Drives one P2PConnection over an asyncio stream pair."""

    def __init__(
        self,
        connection: P2PConnection,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        handshake_timeout: Optional[float] = HANDSHAKE_TIMEOUT,
        auto_ack: bool = True,
        keepalive_interval: Optional[float] = None,
    ):
        self.connection = connection
        self.reader = reader
        self.writer = writer
        self.handshake_timeout = handshake_timeout
        self.auto_ack = auto_ack
        self.keepalive_interval = keepalive_interval
        self._closed = False

    @property
    def protocol(self):
        return self.connection.protocol

    async def __aenter__(self) -> "StreamChannel":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close(notify=exc_type is None)

    # Raw frame I/O

    async def _read_text(self) -> str:
        header = await self.reader.readexactly(FRAME_LENGTH_PREFIX_SIZE)
        (length,) = struct.unpack("!I", header)
        if length > self.protocol.max_message_size:
            raise InvalidFormat(
                f"Frame too large: {length} bytes",
                {"size": length, "max_size": self.protocol.max_message_size},
            )
        data = await self.reader.readexactly(length)
        text, _ = self.protocol.unpack_frame(header + data)
        return text

    async def _write_text(self, text: str) -> None:
        self.writer.write(self.protocol.pack_frame(text))
        await self.writer.drain()

    async def _read_handshake_text(self) -> str:
        try:
            return await asyncio.wait_for(self._read_text(), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            raise HandshakeFailed("Handshake timeout") from None
        except asyncio.IncompleteReadError:
            raise HandshakeFailed("Peer closed connection during handshake") from None

    # Handshake

    async def _read_confirmation(self) -> KeyConfirmation:
        return self.protocol.deserialize_confirmation(await self._read_handshake_text())

    async def initiate(
        self, expected_fingerprint: Optional[Union[Fingerprint, str]] = None
    ) -> Fingerprint:
        """Run the handshake as initiator; returns the peer fingerprint."""
        handshake = self.connection.begin_handshake(Role.INITIATOR)
        try:
            await self._write_text(self.protocol.serialize_handshake(handshake))
            peer = self.protocol.deserialize_handshake(await self._read_handshake_text())
            confirmation = self.connection.complete_handshake(peer, expected_fingerprint)
            await self._write_text(self.protocol.serialize_confirmation(confirmation))
            peer_confirmation = await self._read_confirmation()
        except (ProtocolError, OSError) as e:
            self.connection.transport_failed(str(e))
            if isinstance(e, HandshakeFailed):
                raise
            raise HandshakeFailed(f"Handshake failed: {e}") from e
        except asyncio.CancelledError:
            self.connection.transport_failed("cancelled")
            raise
        return self.connection.confirm_handshake(peer_confirmation)

    async def accept(
        self, expected_fingerprint: Optional[Union[Fingerprint, str]] = None
    ) -> Fingerprint:
        """Run the handshake as responder; returns the peer fingerprint."""
        try:
            peer = self.protocol.deserialize_handshake(await self._read_handshake_text())
        except InvalidFormat as e:
            raise HandshakeFailed(f"Handshake failed: {e.message}") from e

        handshake = self.connection.begin_handshake(Role.RESPONDER)
        try:
            confirmation = self.connection.complete_handshake(peer, expected_fingerprint)
            await self._write_text(self.protocol.serialize_handshake(handshake))
            await self._write_text(self.protocol.serialize_confirmation(confirmation))
            peer_confirmation = await self._read_confirmation()
        except (ProtocolError, OSError) as e:
            self.connection.transport_failed(str(e))
            if isinstance(e, HandshakeFailed):
                raise
            raise HandshakeFailed(f"Handshake failed: {e}") from e
        except asyncio.CancelledError:
            self.connection.transport_failed("cancelled")
            raise
        return self.connection.confirm_handshake(peer_confirmation)

    # Sending

    async def _send_frames(self, frames) -> None:
        try:
            for frame in frames:
                await self._write_text(self.protocol.serialize_frame(frame))
        except OSError as e:
            self.connection.transport_failed(str(e))
            raise

    async def send_text(self, content: str) -> Message:
        """Send a text message; its id stays in pending_acks until acknowledged."""
        message, frames = self.connection.seal_text(content)
        await self._send_frames(frames)
        return message

    async def send_file(
        self, name: str, data: bytes, mime_type: str = "application/octet-stream"
    ) -> Message:
        """Send a file inline as base64 content with its metadata."""
        metadata = FileMetadata(name=name, size=len(data), mime_type=mime_type)
        message, frames = self.connection.seal_file(encode_b64(data), metadata)
        await self._send_frames(frames)
        return message

    async def send_control(self, msg_type: MessageType, content: str = "") -> Message:
        message, frames = self.connection.seal_control(msg_type, content)
        await self._send_frames(frames)
        return message

    async def send_keepalive(self) -> Message:
        return await self.send_control(MessageType.KEEPALIVE)

    async def run_keepalive(self) -> None:
        """
        Send a KeepAlive every ``keepalive_interval`` seconds while connected.

        Meant to run as its own task beside the receive loop; returns when
        the session ends or a send fails.
        """
        if not self.keepalive_interval:
            return
        while True:
            await asyncio.sleep(self.keepalive_interval)
            if self._closed or not self.connection.is_connected():
                return
            try:
                await self.send_keepalive()
            except (OSError, ProtocolError) as e:
                logger.debug(f"Keep-alive to {self.connection.remote_address} stopped: {e}")
                return

    # Receiving

    async def receive(self) -> Optional[Message]:
        """
        Wait for the next Text or File message.

        Acks and keep-alives are consumed here. Returns None once the peer
        disconnects or closes the stream; the session is closed then.

        Raises:
            InvalidFormat, ProtocolEncryptionError: a corrupt or forged frame;
                the session is closed before the error propagates
        """
        while True:
            if not self.connection.is_connected():
                raise NotConnected()
            try:
                text = await self._read_text()
                frame = self.protocol.deserialize_frame(text)
                message = self.connection.open_frame(frame)
            except (asyncio.IncompleteReadError, OSError) as e:
                logger.info(f"Connection closed by {self.connection.remote_address}")
                self.connection.transport_failed(f"stream closed: {e}")
                return None
            except ProtocolError as e:
                logger.error(f"Dropping session with {self.connection.remote_address}: {e}")
                self.connection.transport_failed(str(e))
                raise

            if message is None:
                continue
            if message.msg_type is MessageType.DISCONNECT:
                logger.info(f"{self.connection.remote_address} disconnected")
                self.connection.close()
                return None
            if message.msg_type in (MessageType.ACK, MessageType.KEEPALIVE):
                continue
            if self.auto_ack and message.msg_type in ACKNOWLEDGED_MESSAGE_TYPES:
                await self.send_control(MessageType.ACK, message.id)
            return message

    # Teardown

    async def close(self, notify: bool = True) -> None:
        """Optionally tell the peer, then close the session and the stream."""
        if self._closed:
            return
        self._closed = True

        if notify and self.connection.is_connected():
            try:
                await self.send_control(MessageType.DISCONNECT)
            except (OSError, ProtocolError) as e:
                logger.debug(f"Could not send disconnect: {e}")

        self.connection.close()
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug(f"Error while closing stream: {e}")


async def open_channel(
    host: str,
    port: int,
    connection: P2PConnection,
    handshake_timeout: Optional[float] = HANDSHAKE_TIMEOUT,
    expected_fingerprint: Optional[Union[Fingerprint, str]] = None,
    connect_timeout: Optional[float] = CONNECTION_TIMEOUT,
    keepalive_interval: Optional[float] = None,
) -> StreamChannel:
    """
    Connect to ``host:port`` and run the handshake as initiator.

    Intended for transports that expose the peer as a local TCP endpoint.
    """
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port), timeout=connect_timeout
    )
    channel = StreamChannel(
        connection,
        reader,
        writer,
        handshake_timeout=handshake_timeout,
        keepalive_interval=keepalive_interval,
    )
    try:
        await channel.initiate(expected_fingerprint)
    except BaseException:
        await channel.close(notify=False)
        raise
    return channel
