"""
TorChat-Paste - Fragment reassembly.

Each in-flight split message has one PendingMessage that records the
expected fragment count, the fragments received so far, the bytes held
and the time of the last fragment. Limits:
- total bytes per message (max_bytes)
- idle time before a partial message is dropped (timeout)
- number of messages being reassembled at once (max_pending)

Duplicates are ignored and fragments may arrive in any order. A fragment
that contradicts the message it belongs to drops the whole message.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from .constants import MAX_PENDING_REASSEMBLIES, MAX_REASSEMBLY_BYTES, REASSEMBLY_TIMEOUT
from .errors import InvalidFormat
from .protocol import FrameType, ProtocolFrame

logger = logging.getLogger(__name__)


class PendingMessage:
    """Partially received message."""

    def __init__(self, message_id: str, total: int, now: float):
        self.message_id = message_id
        self.total = total
        self.chunks: Dict[int, str] = {}
        self.size = 0
        self.last_update = now

    @property
    def is_complete(self) -> bool:
        return len(self.chunks) == self.total

    def assemble(self) -> str:
        return "".join(self.chunks[index] for index in range(self.total))


class Reassembler:
    """Rebuilds payloads from fragment frames of one connection."""

    def __init__(
        self,
        max_bytes: int = MAX_REASSEMBLY_BYTES,
        timeout: float = REASSEMBLY_TIMEOUT,
        max_pending: int = MAX_PENDING_REASSEMBLIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_bytes = max_bytes
        self.timeout = timeout
        self.max_pending = max_pending
        self._clock = clock
        self._pending: Dict[str, PendingMessage] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def _drop(self, message_id: str, reason: str) -> None:
        self._pending.pop(message_id, None)
        logger.warning(f"Dropped partial message {message_id[:8]}: {reason}")

    def add(self, frame: ProtocolFrame) -> Optional[str]:
        """
        Feed one verified frame.

        Returns the complete payload once all fragments are present (or
        immediately for a Single frame), otherwise None.

        Raises:
            InvalidFormat: If the fragment contradicts its message or a limit
                is exceeded; the partial message is discarded
        """
        if frame.frame_type is FrameType.SINGLE:
            return frame.payload
        info = frame.fragment
        if info is None:
            raise InvalidFormat("Fragment frame without fragment info")

        now = self._clock()
        self.expire(now)

        pending = self._pending.get(info.message_id)
        if pending is None:
            if len(self._pending) >= self.max_pending:
                raise InvalidFormat(
                    "Too many messages in reassembly", {"max_pending": self.max_pending}
                )
            pending = PendingMessage(info.message_id, info.total, now)
            self._pending[info.message_id] = pending
        elif pending.total != info.total:
            self._drop(info.message_id, "fragment count changed")
            raise InvalidFormat("Fragment count changed mid-message")

        if info.index >= pending.total:
            self._drop(info.message_id, "index out of range")
            raise InvalidFormat("Fragment index out of range")

        if info.index in pending.chunks:
            logger.debug(f"Ignoring duplicate fragment {info.index} of {info.message_id[:8]}")
            return None

        size = len(frame.payload.encode("utf-8"))
        if pending.size + size > self.max_bytes:
            self._drop(info.message_id, "size limit exceeded")
            raise InvalidFormat(
                "Reassembly buffer limit exceeded", {"max_bytes": self.max_bytes}
            )

        pending.chunks[info.index] = frame.payload
        pending.size += size
        pending.last_update = now

        if not pending.is_complete:
            return None

        del self._pending[info.message_id]
        return pending.assemble()

    def expire(self, now: Optional[float] = None) -> List[str]:
        """Drop partial messages idle for longer than the timeout; return their ids."""
        if now is None:
            now = self._clock()
        expired = [
            message_id
            for message_id, pending in self._pending.items()
            if now - pending.last_update > self.timeout
        ]
        for message_id in expired:
            self._drop(message_id, "reassembly timed out")
        return expired

    def clear(self) -> None:
        self._pending.clear()
