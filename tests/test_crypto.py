"""
TorChat-Paste - Cryptography tests.

Tests for key exchange, symmetric and password-based encryption, padding
and secret memory handling.
"""

import asyncio
import threading

import pytest

from torchat import crypto
from torchat.constants import PASSWORD_HEADER_SIZE, SALT_SIZE
from torchat.crypto import Role
from torchat.errors import (
    Base64Error,
    CryptoError,
    DecryptionFailed,
    InvalidKeyLength,
    KeyExchangeError,
)


def test_keypair_generation(alice):
    """Test X25519 keypair generation."""
    assert len(alice.public_key) == 32
    assert len(alice.secret_key) == 32
    assert isinstance(alice.secret_key, bytearray)
    assert alice.public_key != bytes(alice.secret_key)


def test_keypair_serialization(alice):
    """Test keypair serialization and deserialization."""
    restored = crypto.IdentityKeyPair.from_dict(alice.to_dict())

    assert restored.public_key == alice.public_key
    assert restored.secret_key == alice.secret_key


def test_keypair_from_dict_rejects_foreign_public_key(alice, bob):
    data = alice.to_dict()
    data["public_key"] = crypto.encode_b64(bob.public_key)

    with pytest.raises(CryptoError):
        crypto.IdentityKeyPair.from_dict(data)


def test_keypair_repr_hides_secret(alice):
    assert crypto.encode_b64(alice.secret_key) not in repr(alice)


def test_session_keys_pair_up(alice, bob):
    """Initiator tx is responder rx and vice versa."""
    with crypto.derive_session_keys(Role.INITIATOR, alice, bob.public_key) as a, \
            crypto.derive_session_keys(Role.RESPONDER, bob, alice.public_key) as b:
        assert a.tx == b.rx
        assert a.rx == b.tx
        assert a.tx != a.rx


def test_session_keys_accept_base64_peer_key(alice, bob):
    raw = crypto.derive_session_keys(Role.INITIATOR, alice, bob.public_key)
    text = crypto.derive_session_keys(Role.INITIATOR, alice, crypto.encode_b64(bob.public_key))
    assert raw.tx == text.tx
    assert raw.rx == text.rx


def test_key_exchange_rejects_short_key(alice):
    with pytest.raises(KeyExchangeError):
        crypto.derive_session_keys(Role.INITIATOR, alice, b"\x01" * 31)


def test_key_exchange_rejects_low_order_point(alice):
    """An all-zero public key would yield an all-zero shared secret."""
    with pytest.raises(KeyExchangeError):
        crypto.derive_session_keys(Role.INITIATOR, alice, bytes(32))


def test_key_exchange_rejects_bad_encoding(alice):
    with pytest.raises(KeyExchangeError):
        crypto.derive_session_keys(Role.RESPONDER, alice, "not base64!")


def test_session_keys_wipe(alice, bob):
    keys = crypto.derive_session_keys(Role.INITIATOR, alice, bob.public_key)
    rx = keys.rx
    keys.wipe()

    assert keys.is_wiped
    assert rx == bytearray(32)


def test_bind_key_depends_on_every_input():
    a, b = bytes(range(32)), bytes(range(32, 64))
    base = crypto.bind_key(a, b, b"ctx")

    assert len(base) == 32
    assert crypto.bind_key(a, b, b"ctx") == base
    assert crypto.bind_key(b, a, b"ctx") != base
    assert crypto.bind_key(a, b, b"other") != base


class TestSymmetricEncryption:
    """XSalsa20-Poly1305 sealing."""

    def test_roundtrip(self):
        key = crypto.random_bytes(32)
        sealed = crypto.encrypt(b"Hello, World!", key)

        assert crypto.decrypt(sealed, key) == b"Hello, World!"

    def test_fresh_nonce_per_call(self):
        key = crypto.random_bytes(32)
        first = crypto.encrypt(b"same", key)
        second = crypto.encrypt(b"same", key)

        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext

    def test_tampered_ciphertext_fails(self):
        key = crypto.random_bytes(32)
        sealed = crypto.encrypt(b"secret", key)
        raw = bytearray(crypto.decode_b64(sealed.ciphertext))
        raw[0] ^= 0x01
        sealed.ciphertext = crypto.encode_b64(raw)

        with pytest.raises(DecryptionFailed):
            crypto.decrypt(sealed, key)

    def test_wrong_key_fails(self):
        sealed = crypto.encrypt(b"secret", crypto.random_bytes(32))

        with pytest.raises(DecryptionFailed):
            crypto.decrypt(sealed, crypto.random_bytes(32))

    def test_malformed_encoding_fails(self):
        key = crypto.random_bytes(32)
        sealed = crypto.EncryptedMessage(nonce="***", ciphertext="AAAA")

        with pytest.raises(DecryptionFailed) as exc_info:
            crypto.decrypt(sealed, key)
        assert isinstance(exc_info.value.__cause__, Base64Error)

    def test_short_nonce_fails(self):
        key = crypto.random_bytes(32)
        sealed = crypto.encrypt(b"x", key)
        sealed.nonce = crypto.encode_b64(b"\x00" * 12)

        with pytest.raises(DecryptionFailed):
            crypto.decrypt(sealed, key)

    def test_key_length_checked(self):
        with pytest.raises(InvalidKeyLength):
            crypto.encrypt(b"x", b"short")


class TestPasswordEncryption:
    """Argon2id-derived keys and salt || nonce || ciphertext blobs."""

    def test_roundtrip(self):
        blob = crypto.encrypt_with_password(b"identity", "correct horse")

        assert crypto.decrypt_with_password(blob, "correct horse") == b"identity"

    def test_blob_layout(self):
        blob = crypto.encrypt_with_password(b"abc", "pw")
        # 16-byte Poly1305 tag on top of the plaintext
        assert len(blob) == PASSWORD_HEADER_SIZE + 3 + 16

    def test_fresh_salt_per_call(self):
        first = crypto.encrypt_with_password(b"abc", "pw")
        second = crypto.encrypt_with_password(b"abc", "pw")

        assert first[:SALT_SIZE] != second[:SALT_SIZE]

    def test_wrong_password_fails(self):
        blob = crypto.encrypt_with_password(b"abc", "pw1")

        with pytest.raises(DecryptionFailed):
            crypto.decrypt_with_password(blob, "pw2")

    def test_short_blob_fails(self):
        with pytest.raises(DecryptionFailed):
            crypto.decrypt_with_password(b"\x00" * (PASSWORD_HEADER_SIZE - 1), "pw")

    def test_profile_mismatch_fails(self):
        blob = crypto.encrypt_with_password(b"abc", "pw", profile="moderate")

        assert crypto.decrypt_with_password(blob, "pw", profile="moderate") == b"abc"
        with pytest.raises(DecryptionFailed):
            crypto.decrypt_with_password(blob, "pw")

    def test_derivation_is_deterministic(self):
        salt = bytes(range(16))
        first = crypto.derive_key_from_password("pw", salt)
        second = crypto.derive_key_from_password("pw", salt)

        assert isinstance(first, bytearray)
        assert len(first) == 32
        assert first == second
        assert crypto.derive_key_from_password("pw!", salt) != first

    def test_bad_salt_length(self):
        with pytest.raises(InvalidKeyLength):
            crypto.derive_key_from_password("pw", b"short")

    def test_unknown_profile(self):
        with pytest.raises(CryptoError):
            crypto.derive_key_from_password("pw", bytes(16), profile="paranoid")


@pytest.mark.asyncio
class TestPasswordEncryptionAsync:
    """KDF off the event loop."""

    async def test_async_decrypt(self):
        blob = crypto.encrypt_with_password(b"payload", "pw")

        assert await crypto.decrypt_with_password_async(blob, "pw") == b"payload"

    async def test_async_wrong_password(self):
        blob = crypto.encrypt_with_password(b"payload", "pw")

        with pytest.raises(DecryptionFailed):
            await crypto.decrypt_with_password_async(blob, "nope")

    async def test_cancelled_derivation_wipes_key(self, monkeypatch):
        release = threading.Event()
        produced = []

        def slow_derive(password, salt, profile):
            release.wait(5)
            key = bytearray(b"\x42" * 32)
            produced.append(key)
            return key

        monkeypatch.setattr(crypto, "derive_key_from_password", slow_derive)
        task = asyncio.ensure_future(crypto.derive_key_from_password_async("pw", bytes(16)))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        release.set()
        for _ in range(200):
            if produced and not any(produced[0]):
                break
            await asyncio.sleep(0.01)

        assert produced
        assert produced[0] == bytearray(32)


class TestPadding:
    """ISO/IEC 7816-4 padding."""

    def test_known_vector(self):
        assert crypto.apply_padding(bytes([0x41, 0x42]), 4) == bytes([0x41, 0x42, 0x80, 0x00])

    def test_full_block_gains_a_block(self):
        padded = crypto.apply_padding(b"abcd", 4)

        assert len(padded) == 8
        assert crypto.remove_padding(padded) == b"abcd"

    def test_empty_input(self):
        padded = crypto.apply_padding(b"", 16)

        assert len(padded) == 16
        assert crypto.remove_padding(padded) == b""

    def test_length_is_block_multiple(self):
        for size in range(0, 40):
            padded = crypto.apply_padding(b"x" * size, 8)
            assert len(padded) % 8 == 0
            assert len(padded) > size

    def test_trailing_zeros_in_data_survive(self):
        data = b"ab\x00\x00"
        assert crypto.remove_padding(crypto.apply_padding(data, 8)) == data

    def test_invalid_padding(self):
        with pytest.raises(DecryptionFailed):
            crypto.remove_padding(b"")
        with pytest.raises(DecryptionFailed):
            crypto.remove_padding(b"\x00\x00\x00\x00")
        with pytest.raises(DecryptionFailed):
            crypto.remove_padding(b"abc\x01")

    def test_invalid_block_size(self):
        with pytest.raises(ValueError):
            crypto.apply_padding(b"x", 0)


class TestSecretMemory:
    """Zeroing of key material."""

    def test_secure_wipe(self):
        buffer = bytearray(b"secret key material")
        crypto.secure_wipe(buffer)

        assert buffer == bytearray(len(b"secret key material"))

    def test_secure_wipe_rejects_bytes(self):
        with pytest.raises(TypeError):
            crypto.secure_wipe(b"immutable")

    def test_secure_wipe_accepts_none_and_empty(self):
        crypto.secure_wipe(None)
        crypto.secure_wipe(bytearray())

    def test_secret_bytes_adopts_bytearray(self):
        buffer = bytearray(b"\x01" * 8)
        with crypto.SecretBytes(buffer) as inner:
            assert inner is buffer

        assert buffer == bytearray(8)

    def test_secret_bytes_wipes_on_error(self):
        secret = crypto.SecretBytes(b"\x07" * 4)
        with pytest.raises(RuntimeError):
            with secret as buffer:
                raise RuntimeError("boom")

        assert buffer == bytearray(4)
        assert "\\x07" not in repr(secret)

    def test_keypair_wipe(self, alice):
        alice.wipe()
        assert alice.secret_key == bytearray(32)


class TestHelpers:
    """Hashing, encoding and identifiers."""

    def test_hash_data_known_value(self):
        # SHA-256("abc")
        assert crypto.hash_data(b"abc") == "ungWv48Bz+pBQUDeXa4iI7ADYaOWF3qctBD/YfIAFa0="

    def test_hash_raw_matches_hash_data(self):
        assert crypto.encode_b64(crypto.hash_raw(b"data")) == crypto.hash_data(b"data")

    def test_decode_b64_rejects_garbage(self):
        with pytest.raises(Base64Error):
            crypto.decode_b64("@@@@")

    def test_message_id(self):
        message_id = crypto.generate_message_id()

        assert len(message_id) == 32
        assert int(message_id, 16) >= 0
        assert message_id != crypto.generate_message_id()

    def test_constant_time_equals(self):
        assert crypto.constant_time_equals(b"abc", bytearray(b"abc"))
        assert crypto.constant_time_equals("abc", "abc")
        assert not crypto.constant_time_equals("abc", "abd")
        assert not crypto.constant_time_equals("abc", b"abc")
