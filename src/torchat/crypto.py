"""
TorChat-Paste - Cryptographic primitives.

This module is the stateless primitive layer every other component sits on:
- X25519 identity key pairs (cryptography)
- crypto_kx session key agreement with separate rx/tx keys (PyNaCl / libsodium)
- XSalsa20-Poly1305 authenticated encryption with 24-byte random nonces
- Argon2id password-based key derivation (argon2-cffi)
- ISO/IEC 7816-4 padding to hide message lengths
- SHA-256 hashing for fingerprints and frame checksums
- Zeroing of secret buffers and a scoped owner for them

Python cannot erase immutable ``bytes`` objects. Every secret this module
owns is therefore held in a ``bytearray`` and zeroed through ``secure_wipe``;
short-lived immutable copies that the underlying C libraries require are
documented at the call site.
"""

import asyncio
import base64
import binascii
import ctypes
import logging
import os
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

import nacl.bindings
import nacl.exceptions
import nacl.hash
from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from nacl.encoding import RawEncoder
from nacl.secret import SecretBox

from .constants import (
    ARGON2_PROFILES,
    DEFAULT_KDF_PROFILE,
    MESSAGE_ID_SIZE,
    PADDING_MARKER,
    PASSWORD_HEADER_SIZE,
    PUBLIC_KEY_SIZE,
    SALT_SIZE,
    SECRET_KEY_SIZE,
    SECRETBOX_KEY_SIZE,
    SECRETBOX_NONCE_SIZE,
    SESSION_KEY_SIZE,
)
from .errors import (
    Base64Error,
    CryptoError,
    DecryptionFailed,
    EncryptionFailed,
    FatalCryptoError,
    InvalidKeyLength,
    KeyExchangeError,
    KeyGenerationFailed,
)

logger = logging.getLogger(__name__)

Buffer = Union[bytes, bytearray, memoryview]


class Role(Enum):
    """Side of a key exchange. The initiator plays the crypto_kx client."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


# Randomness and memory hygiene


def random_bytes(length: int) -> bytes:
    """
    Draw bytes from the operating system CSPRNG.

    A failing random source is not something to retry around: every key,
    nonce and salt depends on it, so the failure is raised as FatalCryptoError.
    """
    try:
        return os.urandom(length)
    except (OSError, NotImplementedError) as e:
        raise FatalCryptoError(f"Secure random source unavailable: {e}") from e


def secure_wipe(buffer: Optional[Union[bytearray, memoryview]]) -> None:
    """
    Zero a mutable buffer in place.

    Only ``bytearray`` and writable ``memoryview`` objects can be erased.
    Passing immutable bytes is a programming error (TypeError). If the
    memory cannot be zeroed, FatalCryptoError is raised.
    """
    if buffer is None:
        return
    if not isinstance(buffer, (bytearray, memoryview)):
        raise TypeError(f"Cannot wipe immutable {type(buffer).__name__}; use a bytearray")

    length = memoryview(buffer).nbytes
    if length == 0:
        return

    try:
        view = (ctypes.c_char * length).from_buffer(buffer)
        ctypes.memset(ctypes.addressof(view), 0, length)
        del view
    except (TypeError, ValueError, BufferError) as e:
        raise FatalCryptoError(f"Failed to zero sensitive buffer: {e}") from e

    if any(memoryview(buffer).cast("B")):
        raise FatalCryptoError("Sensitive buffer still holds data after zeroing")


class SecretBytes:
    """
    Scoped owner of a secret buffer.

    The buffer is zeroed when the ``with`` block exits, whether it returns,
    raises, or is cancelled. A ``bytearray`` passed in is adopted without
    copying; anything else is copied into a fresh ``bytearray``.

        with SecretBytes(derive_key_from_password(pw, salt)) as key:
            ...
    """

    def __init__(self, data: Optional[Buffer] = None, size: int = 0):
        if isinstance(data, bytearray):
            self._buffer = data
        elif data is not None:
            self._buffer = bytearray(data)
        else:
            self._buffer = bytearray(size)

    def __enter__(self) -> bytearray:
        return self._buffer

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.wipe()
        return False

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def buffer(self) -> bytearray:
        return self._buffer

    def wipe(self) -> None:
        secure_wipe(self._buffer)

    def __repr__(self) -> str:
        return f"SecretBytes(<{len(self._buffer)} bytes>)"


def constant_time_equals(a: Union[str, Buffer], b: Union[str, Buffer]) -> bool:
    """
    Compare two secrets or digests without early exit.

    Uses constant-time comparison to prevent timing attacks. Strings must
    be ASCII (fingerprints and checksums are base64).
    """
    if isinstance(a, str) != isinstance(b, str):
        return False
    if isinstance(a, str):
        try:
            return secrets.compare_digest(a.encode("ascii"), b.encode("ascii"))
        except UnicodeEncodeError:
            return False
    return secrets.compare_digest(bytes(a), bytes(b))


# Base64 helpers


def encode_b64(data: Buffer) -> str:
    """Encode bytes as standard base64 text."""
    return base64.b64encode(bytes(data)).decode("ascii")


def decode_b64(text: str) -> bytes:
    """Decode standard base64 text, raising Base64Error on malformed input."""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise Base64Error(f"Base64 decode error: {e}") from e


# Identity keys


class IdentityKeyPair:
    """
    A user's long-term X25519 identity.

    The public half is immutable bytes. The secret half lives in a
    ``bytearray`` so it can be zeroed with ``wipe()`` when the identity is
    locked again.
    """

    def __init__(self, public_key: bytes, secret_key: Buffer):
        if len(public_key) != PUBLIC_KEY_SIZE:
            raise InvalidKeyLength(f"Public key must be {PUBLIC_KEY_SIZE} bytes")
        if len(secret_key) != SECRET_KEY_SIZE:
            raise InvalidKeyLength(f"Secret key must be {SECRET_KEY_SIZE} bytes")
        self.public_key = bytes(public_key)
        self.secret_key = secret_key if isinstance(secret_key, bytearray) else bytearray(secret_key)

    @staticmethod
    def from_secret_key(secret_key: Buffer) -> "IdentityKeyPair":
        """Rebuild a key pair from its 32-byte secret scalar."""
        if len(secret_key) != SECRET_KEY_SIZE:
            raise InvalidKeyLength(f"Secret key must be {SECRET_KEY_SIZE} bytes")
        try:
            private_key = x25519.X25519PrivateKey.from_private_bytes(bytes(secret_key))
        except ValueError as e:
            raise KeyGenerationFailed(f"Invalid X25519 secret key: {e}") from e
        public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return IdentityKeyPair(public_key, secret_key)

    def to_dict(self) -> Dict[str, str]:
        """Export key pair to dictionary for (encrypted) storage."""
        return {
            "public_key": encode_b64(self.public_key),
            "secret_key": encode_b64(self.secret_key),
        }

    @staticmethod
    def from_dict(data: Dict[str, str]) -> "IdentityKeyPair":
        """
        Import key pair from dictionary.

        The public key is recomputed from the secret key and must match the
        stored one.
        """
        try:
            public_key = decode_b64(data["public_key"])
            secret_key = bytearray(decode_b64(data["secret_key"]))
        except (KeyError, TypeError) as e:
            raise CryptoError(f"Malformed key pair record: {e}") from e

        keypair = IdentityKeyPair.from_secret_key(secret_key)
        if not constant_time_equals(keypair.public_key, public_key):
            keypair.wipe()
            raise CryptoError("Public key does not belong to secret key")
        return keypair

    def wipe(self) -> None:
        """Zero the in-memory secret key."""
        secure_wipe(self.secret_key)

    def __repr__(self) -> str:
        return f"IdentityKeyPair(public_key={encode_b64(self.public_key)!r})"


def generate_identity() -> IdentityKeyPair:
    """
    Generate a fresh X25519 identity key pair.

    The secret scalar is drawn from the OS CSPRNG; RNG failure is fatal.
    """
    keypair = IdentityKeyPair.from_secret_key(bytearray(random_bytes(SECRET_KEY_SIZE)))
    logger.debug("Generated new identity key pair")
    return keypair


def decode_public_key(value: Union[str, Buffer]) -> bytes:
    """
    Normalize a peer public key given as raw bytes or base64 text.

    Raises KeyExchangeError if the key is not 32 bytes.
    """
    try:
        raw = decode_b64(value) if isinstance(value, str) else bytes(value)
    except Base64Error as e:
        raise KeyExchangeError("Malformed peer public key encoding") from e
    if len(raw) != PUBLIC_KEY_SIZE:
        raise KeyExchangeError(
            f"Peer public key must be {PUBLIC_KEY_SIZE} bytes", {"length": len(raw)}
        )
    return raw


# Session keys


class SessionKeys:
    """
    Receive and transmit keys for one connection.

    One side's ``tx`` is the other side's ``rx``. Both live in bytearrays and
    are zeroed by ``wipe()``; the object is also a context manager.
    """

    __slots__ = ("rx", "tx")

    def __init__(self, rx: Buffer, tx: Buffer):
        if len(rx) != SESSION_KEY_SIZE or len(tx) != SESSION_KEY_SIZE:
            raise InvalidKeyLength(f"Session keys must be {SESSION_KEY_SIZE} bytes")
        self.rx = rx if isinstance(rx, bytearray) else bytearray(rx)
        self.tx = tx if isinstance(tx, bytearray) else bytearray(tx)

    def wipe(self) -> None:
        secure_wipe(self.rx)
        secure_wipe(self.tx)

    @property
    def is_wiped(self) -> bool:
        return not any(self.rx) and not any(self.tx)

    def __enter__(self) -> "SessionKeys":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.wipe()
        return False

    def __repr__(self) -> str:
        return "SessionKeys(<redacted>)"


def derive_session_keys(
    role: Role, own_pair: IdentityKeyPair, peer_public_key: Union[str, Buffer]
) -> SessionKeys:
    """
    Derive per-connection rx/tx keys with libsodium's crypto_kx.

    The initiator runs the client side and the responder the server side, so
    that initiator.tx == responder.rx and initiator.rx == responder.tx.

    Raises:
        KeyExchangeError: malformed peer key, or a low-order point that would
            produce an all-zero shared secret.
    """
    peer = decode_public_key(peer_public_key)
    if role is Role.INITIATOR:
        exchange = nacl.bindings.crypto_kx_client_session_keys
    elif role is Role.RESPONDER:
        exchange = nacl.bindings.crypto_kx_server_session_keys
    else:
        raise KeyExchangeError(f"Unknown key exchange role: {role!r}")

    # libsodium needs immutable bytes for the secret; the copy is short-lived.
    try:
        rx, tx = exchange(own_pair.public_key, bytes(own_pair.secret_key), peer)
    except nacl.exceptions.CryptoError as e:
        raise KeyExchangeError("Key exchange rejected peer public key") from e

    return SessionKeys(rx=bytearray(rx), tx=bytearray(tx))


def bind_key(auth_key: Buffer, key_material: Buffer, context: bytes) -> bytearray:
    """
    Combine two 32-byte keys and a context string into one 32-byte key.

    Keyed BLAKE2b-256 with ``auth_key`` as the key; used to bind ephemeral
    session keys to the identity exchange and handshake transcript.
    """
    digest = nacl.hash.blake2b(
        bytes(key_material) + context,
        digest_size=SESSION_KEY_SIZE,
        key=bytes(auth_key),
        encoder=RawEncoder,
    )
    return bytearray(digest)


def keyed_hash(key: Buffer, data: bytes, digest_size: int = SESSION_KEY_SIZE) -> bytes:
    """Keyed BLAKE2b of ``data``, used as a MAC over handshake transcripts."""
    _check_key(key)
    return nacl.hash.blake2b(
        bytes(data), digest_size=digest_size, key=bytes(key), encoder=RawEncoder
    )


# Symmetric encryption


@dataclass
class EncryptedMessage:
    """Nonce and ciphertext of one sealed payload, both base64 encoded."""

    nonce: str
    ciphertext: str

    def to_dict(self) -> Dict[str, str]:
        return {"nonce": self.nonce, "ciphertext": self.ciphertext}

    @staticmethod
    def from_dict(data: Dict[str, str]) -> "EncryptedMessage":
        nonce = data["nonce"]
        ciphertext = data["ciphertext"]
        if not isinstance(nonce, str) or not isinstance(ciphertext, str):
            raise TypeError("nonce and ciphertext must be strings")
        return EncryptedMessage(nonce=nonce, ciphertext=ciphertext)


def _check_key(key: Buffer) -> None:
    if len(key) != SECRETBOX_KEY_SIZE:
        raise InvalidKeyLength(f"Key must be {SECRETBOX_KEY_SIZE} bytes")


def encrypt(plaintext: Buffer, key: Buffer) -> EncryptedMessage:
    """
    Seal a payload with XSalsa20-Poly1305 under a fresh random nonce.

    A 24-byte nonce is large enough to be drawn at random for every call
    without tracking, so (key, nonce) never repeats in practice.
    """
    _check_key(key)
    nonce = random_bytes(SECRETBOX_NONCE_SIZE)
    try:
        sealed = SecretBox(bytes(key)).encrypt(bytes(plaintext), nonce)
    except nacl.exceptions.CryptoError as e:
        raise EncryptionFailed(f"Encryption failed: {e}") from e
    return EncryptedMessage(nonce=encode_b64(nonce), ciphertext=encode_b64(sealed.ciphertext))


def decrypt(message: EncryptedMessage, key: Buffer) -> bytes:
    """
    Open a sealed payload.

    Raises DecryptionFailed on authentication failure and on malformed nonce
    or ciphertext encoding. The underlying Base64Error is kept as the cause.
    """
    _check_key(key)
    try:
        nonce = decode_b64(message.nonce)
        ciphertext = decode_b64(message.ciphertext)
    except Base64Error as e:
        raise DecryptionFailed("Malformed encrypted message encoding") from e
    if len(nonce) != SECRETBOX_NONCE_SIZE:
        raise DecryptionFailed("Malformed nonce")

    try:
        return SecretBox(bytes(key)).decrypt(ciphertext, nonce)
    except nacl.exceptions.CryptoError:
        raise DecryptionFailed() from None


# Password-based protection


def _kdf_parameters(profile: str):
    try:
        return ARGON2_PROFILES[profile]
    except KeyError:
        raise CryptoError(
            f"Unknown KDF profile: {profile}", {"profiles": sorted(ARGON2_PROFILES)}
        ) from None


def derive_key_from_password(
    password: str, salt: Buffer, profile: str = DEFAULT_KDF_PROFILE
) -> bytearray:
    """
    Derive a 32-byte key from a password using Argon2id.

    Argon2id is memory-hard, which makes GPU/ASIC guessing expensive. The
    "interactive" profile (2 passes, 64 MiB, 1 lane) produces the same output
    as libsodium's crypto_pwhash with OPSLIMIT/MEMLIMIT_INTERACTIVE.

    Deterministic: the same (password, salt, profile) always yields the same
    key. Callers own the returned bytearray and must wipe it.
    """
    if len(salt) != SALT_SIZE:
        raise InvalidKeyLength(f"Salt must be {SALT_SIZE} bytes")
    time_cost, memory_cost, parallelism = _kdf_parameters(profile)

    try:
        raw = hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=bytes(salt),
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=SECRETBOX_KEY_SIZE,
            type=Type.ID,
        )
    except HashingError as e:
        raise CryptoError(f"Key derivation failed: {e}") from e
    return bytearray(raw)


def _wipe_abandoned_key(future: "asyncio.Future") -> None:
    if future.cancelled() or future.exception() is not None:
        return
    secure_wipe(future.result())


async def derive_key_from_password_async(
    password: str,
    salt: Buffer,
    profile: str = DEFAULT_KDF_PROFILE,
    executor=None,
) -> bytearray:
    """
    Run the password KDF on an executor so it never blocks the event loop.

    If the awaiting task is cancelled, the derivation still finishes in the
    background and its key is zeroed as soon as it exists; nothing is ever
    returned for a cancelled call.
    """
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(executor, derive_key_from_password, password, salt, profile)
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        future.add_done_callback(_wipe_abandoned_key)
        raise


def encrypt_with_password(
    plaintext: Buffer, password: str, profile: str = DEFAULT_KDF_PROFILE
) -> bytes:
    """
    Encrypt data under a password.

    Output layout: salt (16 bytes) || nonce (24 bytes) || ciphertext.
    A fresh salt is drawn for every call so no two secrets share a key; the
    derived key is zeroed before returning.
    """
    salt = random_bytes(SALT_SIZE)
    try:
        derived = derive_key_from_password(password, salt, profile)
    except CryptoError as e:
        raise EncryptionFailed(f"Key derivation failed: {e.message}") from e

    with SecretBytes(derived) as key:
        nonce = random_bytes(SECRETBOX_NONCE_SIZE)
        try:
            sealed = SecretBox(bytes(key)).encrypt(bytes(plaintext), nonce)
        except nacl.exceptions.CryptoError as e:
            raise EncryptionFailed(f"Encryption failed: {e}") from e
    return salt + nonce + sealed.ciphertext


def _split_password_blob(blob: Buffer):
    data = bytes(blob)
    if len(data) < PASSWORD_HEADER_SIZE:
        raise DecryptionFailed("Encrypted blob too short")
    return data[:SALT_SIZE], data[SALT_SIZE:PASSWORD_HEADER_SIZE], data[PASSWORD_HEADER_SIZE:]


def _open_with_derived_key(derived: bytearray, nonce: bytes, ciphertext: bytes) -> bytes:
    with SecretBytes(derived) as key:
        try:
            return SecretBox(bytes(key)).decrypt(ciphertext, nonce)
        except nacl.exceptions.CryptoError:
            raise DecryptionFailed() from None


def decrypt_with_password(
    blob: Buffer, password: str, profile: str = DEFAULT_KDF_PROFILE
) -> bytes:
    """
    Decrypt a blob produced by ``encrypt_with_password``.

    Raises DecryptionFailed if the blob is shorter than the 40-byte header,
    the salt is unusable, or authentication fails after re-deriving the key.
    """
    salt, nonce, ciphertext = _split_password_blob(blob)
    try:
        derived = derive_key_from_password(password, salt, profile)
    except CryptoError:
        raise DecryptionFailed() from None
    return _open_with_derived_key(derived, nonce, ciphertext)


async def decrypt_with_password_async(
    blob: Buffer, password: str, profile: str = DEFAULT_KDF_PROFILE, executor=None
) -> bytes:
    """Same as ``decrypt_with_password`` with the KDF run off the event loop."""
    salt, nonce, ciphertext = _split_password_blob(blob)
    try:
        derived = await derive_key_from_password_async(password, salt, profile, executor)
    except CryptoError:
        raise DecryptionFailed() from None
    return _open_with_derived_key(derived, nonce, ciphertext)


# Padding (traffic analysis resistance)


def apply_padding(data: Buffer, block_size: int) -> bytes:
    """
    Pad with ISO/IEC 7816-4: one 0x80 byte, then zeros to a block boundary.

    The result is always a positive multiple of ``block_size`` and strictly
    longer than ``data``; the block size sets the anonymity set for lengths.
    """
    if block_size <= 0:
        raise ValueError("block_size must be positive")
    padded = bytearray(data)
    padded.append(PADDING_MARKER)
    remainder = len(padded) % block_size
    if remainder:
        padded.extend(bytes(block_size - remainder))
    return bytes(padded)


def remove_padding(data: Buffer) -> bytes:
    """Strip ISO/IEC 7816-4 padding, raising DecryptionFailed if it is malformed."""
    if not data:
        raise DecryptionFailed("Invalid padding")

    index = len(data) - 1
    while index > 0 and data[index] == 0x00:
        index -= 1

    if data[index] != PADDING_MARKER:
        raise DecryptionFailed("Invalid padding")
    return bytes(data[:index])


# Hashing and identifiers


def hash_data(data: Buffer) -> str:
    """
    SHA-256 digest of ``data`` as base64.

    Used for fingerprints and frame checksums only, never to derive secrets.
    """
    digest = hashes.Hash(hashes.SHA256())
    digest.update(bytes(data))
    return encode_b64(digest.finalize())


def hash_raw(data: Buffer) -> bytes:
    """SHA-256 digest of ``data`` as raw bytes."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(bytes(data))
    return digest.finalize()


def generate_message_id() -> str:
    """Random 128-bit message identifier, 32 lowercase hex characters."""
    return random_bytes(MESSAGE_ID_SIZE).hex()
