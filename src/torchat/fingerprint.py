"""
TorChat-Paste - Public key fingerprints.

A fingerprint is the base64 encoding of the first 8 bytes of SHA-256 over
an identity public key. Users compare the formatted form out of band
(e.g. "AbCd-EfGh-IjK=") to confirm they are talking to the right key.
"""

import base64
import binascii
import logging
from typing import Union

from .constants import (
    FINGERPRINT_DIGEST_BYTES,
    FINGERPRINT_SEPARATOR,
    PUBLIC_KEY_SIZE,
)
from .crypto import constant_time_equals, hash_raw
from .errors import InvalidFingerprint
from .utils import format_fingerprint

logger = logging.getLogger(__name__)


class Fingerprint:
    """Short, human-comparable identifier derived from a public key."""

    __slots__ = ("value",)

    def __init__(self, value: str):
        if not _is_valid(value):
            raise InvalidFingerprint(f"Not a fingerprint: {value!r}")
        self.value = value

    @classmethod
    def from_public_key(cls, public_key: Union[bytes, bytearray]) -> "Fingerprint":
        """Derive the fingerprint of a 32-byte public key."""
        if len(public_key) != PUBLIC_KEY_SIZE:
            raise InvalidFingerprint(f"Public key must be {PUBLIC_KEY_SIZE} bytes")
        digest = hash_raw(public_key)[:FINGERPRINT_DIGEST_BYTES]
        return cls(base64.b64encode(digest).decode("ascii"))

    @classmethod
    def from_formatted(cls, text: str) -> "Fingerprint":
        """Parse the grouped display form (separators and spaces are ignored)."""
        compact = "".join(text.split()).replace(FINGERPRINT_SEPARATOR, "")
        return cls(compact)

    def verify(self, public_key: Union[bytes, bytearray]) -> bool:
        """
        Check that ``public_key`` hashes to this fingerprint.

        The comparison is constant-time; a key of the wrong length simply
        does not match.
        """
        if len(public_key) != PUBLIC_KEY_SIZE:
            return False
        expected = Fingerprint.from_public_key(public_key)
        return constant_time_equals(self.value, expected.value)

    def formatted(self) -> str:
        """Group the fingerprint into blocks of four characters."""
        return format_fingerprint(self.value)

    def __eq__(self, other) -> bool:
        if isinstance(other, Fingerprint):
            return constant_time_equals(self.value, other.value)
        if isinstance(other, str):
            return constant_time_equals(self.value, other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.value)

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"Fingerprint({self.formatted()!r})"


def _is_valid(value: str) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(raw) == FINGERPRINT_DIGEST_BYTES
