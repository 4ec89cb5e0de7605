"""
TorChat-Paste - Stored contact model.

Contacts are persisted only inside the encrypted contacts file managed by
``torchat.storage``; this module defines the record and its JSON shape.
"""

import logging
import time
from typing import Any, Dict, Optional

from .errors import InvalidFingerprint, SerializationError
from .fingerprint import Fingerprint

logger = logging.getLogger(__name__)


class StoredContact:
    """A peer the user has chosen to remember."""

    def __init__(
        self,
        address: str,
        nickname: str,
        fingerprint: Fingerprint,
        added_at: Optional[int] = None,
    ):
        self.address = address
        self.nickname = nickname
        self.fingerprint = fingerprint
        self.added_at = int(time.time()) if added_at is None else int(added_at)

    def to_dict(self) -> Dict[str, Any]:
        """Convert contact to dictionary for storage."""
        return {
            "address": self.address,
            "nickname": self.nickname,
            "fingerprint": str(self.fingerprint),
            "added_at": self.added_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "StoredContact":
        """Create contact from dictionary."""
        try:
            return StoredContact(
                address=str(data["address"]),
                nickname=str(data.get("nickname", "")),
                fingerprint=Fingerprint(data["fingerprint"]),
                added_at=int(data["added_at"]),
            )
        except (KeyError, TypeError, ValueError, InvalidFingerprint) as e:
            raise SerializationError(f"Malformed contact record: {e}") from e

    def __eq__(self, other) -> bool:
        if not isinstance(other, StoredContact):
            return NotImplemented
        return (
            self.address == other.address
            and self.nickname == other.nickname
            and self.fingerprint == other.fingerprint
            and self.added_at == other.added_at
        )

    def __repr__(self) -> str:
        return f"StoredContact(address={self.address!r}, nickname={self.nickname!r})"
