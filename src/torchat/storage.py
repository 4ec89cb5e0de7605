"""
TorChat-Paste - Secure storage for identity and contacts.

SecureStorage is the only component that touches files in the per-user
data directory:
- identity.enc  {"fingerprint": str, "encrypted_data": base64}
- contacts.enc  {"blob": base64}

Both payloads are encrypted with a password-derived key (Argon2id +
XSalsa20-Poly1305, see ``crypto.encrypt_with_password``). The fingerprint in
identity.enc is public and readable before unlock so a user can display it;
it is checked against the decrypted key on every load.

Writes are atomic (temp file + os.replace) and every read-modify-write cycle
runs under one re-entrant lock per instance.
"""

import base64
import binascii
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles

from . import crypto
from .constants import (
    ARGON2_PROFILES,
    CONTACTS_FILENAME,
    DEFAULT_KDF_PROFILE,
    IDENTITY_FILENAME,
    LEGACY_CONTACTS_FILENAME,
    WIPE_CHUNK_SIZE,
)
from .contact import StoredContact
from .errors import (
    CryptoError,
    DecryptionFailed,
    FingerprintMismatch,
    IdentityNotFound,
    InvalidFingerprint,
    InvalidPassword,
    SerializationError,
    StorageEncryptionError,
    StorageError,
    StorageIOError,
)
from .fingerprint import Fingerprint
from .utils import resolve_data_dir

logger = logging.getLogger(__name__)


def _restrict_permissions(path: Path, mode: int) -> None:
    if os.name != "posix":
        return
    try:
        os.chmod(path, mode)
    except OSError as e:
        logger.warning(f"Could not set permissions on {path}: {e}")


@dataclass
class MigrationResult:
    """Outcome of importing a plaintext contacts file."""

    added: int = 0
    # address and nickname of records that carried no fingerprint
    skipped: List[Dict[str, str]] = field(default_factory=list)


class SecureStorage:
    """Encrypted persistence of the identity key pair and the contact list."""

    def __init__(
        self,
        data_dir: Optional[Union[str, Path]] = None,
        kdf_profile: str = DEFAULT_KDF_PROFILE,
    ):
        if kdf_profile not in ARGON2_PROFILES:
            raise StorageError(f"Unknown KDF profile: {kdf_profile}")
        self.data_dir = Path(data_dir) if data_dir else resolve_data_dir()
        self.kdf_profile = kdf_profile
        self._lock = threading.RLock()
        self._ensure_data_dir()

    @property
    def identity_path(self) -> Path:
        return self.data_dir / IDENTITY_FILENAME

    @property
    def contacts_path(self) -> Path:
        return self.data_dir / CONTACTS_FILENAME

    @property
    def legacy_contacts_path(self) -> Path:
        return self.data_dir / LEGACY_CONTACTS_FILENAME

    def _ensure_data_dir(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as e:
            logger.error(f"Failed to create storage directory {self.data_dir}: {e}")
            raise StorageIOError(f"Cannot create storage directory: {e}") from e
        _restrict_permissions(self.data_dir, 0o700)

    # File helpers

    def _read_record(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                record = json.load(f)
        except FileNotFoundError:
            raise
        except OSError as e:
            logger.error(f"Failed to read {path.name}: {e}")
            raise StorageIOError(f"Cannot read {path.name}: {e}") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SerializationError(f"Corrupted {path.name}: {e}") from e
        if not isinstance(record, dict):
            raise SerializationError(f"Corrupted {path.name}: expected an object")
        return record

    def _stage_record(self, path: Path, record: Dict[str, Any]) -> Path:
        """Write ``record`` to a temp file beside ``path`` and return the temp path."""
        content = json.dumps(record, indent=2, ensure_ascii=False)
        temp_path = path.with_name(path.name + ".tmp")
        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Failed to write {path.name}: {e}")
            self._discard(temp_path)
            raise StorageIOError(f"Cannot write {path.name}: {e}") from e
        return temp_path

    def _commit_record(self, temp_path: Path, path: Path) -> None:
        """Move a staged temp file over ``path`` (atomic on POSIX systems)."""
        try:
            os.replace(temp_path, path)
        except OSError as e:
            logger.error(f"Failed to replace {path.name}: {e}")
            self._discard(temp_path)
            raise StorageIOError(f"Cannot write {path.name}: {e}") from e
        _restrict_permissions(path, 0o600)

    @staticmethod
    def _discard(temp_path: Path) -> None:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {temp_path.name}: {e}")

    def _write_record(self, path: Path, record: Dict[str, Any]) -> None:
        self._commit_record(self._stage_record(path, record), path)

    def _secure_delete(self, path: Path) -> bool:
        """
        Overwrite a file with zeros over its full length, fsync, then unlink.

        Best effort only: journaling, copy-on-write and flash-backed file
        systems may keep older copies of the blocks.
        """
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageIOError(f"Cannot stat {path.name}: {e}") from e

        try:
            zeros = bytes(min(size, WIPE_CHUNK_SIZE))
            with open(path, "r+b") as f:
                remaining = size
                while remaining > 0:
                    chunk = min(remaining, WIPE_CHUNK_SIZE)
                    f.write(zeros[:chunk])
                    remaining -= chunk
                f.flush()
                os.fsync(f.fileno())
            path.unlink()
        except OSError as e:
            logger.error(f"Failed to wipe {path.name}: {e}")
            raise StorageIOError(f"Cannot wipe {path.name}: {e}") from e
        logger.debug(f"Securely deleted {path.name} ({size} bytes)")
        return True

    # Blob helpers

    def _seal(self, plaintext: bytes, password: str) -> bytes:
        try:
            return crypto.encrypt_with_password(plaintext, password, self.kdf_profile)
        except CryptoError as e:
            raise StorageEncryptionError(f"Encryption error: {e.message}") from e

    def _record_profile(self, record: Dict[str, Any]) -> None:
        # Omitted for the default profile so records keep the two-field layout
        if self.kdf_profile != DEFAULT_KDF_PROFILE:
            record["kdf_profile"] = self.kdf_profile

    @staticmethod
    def _profile_of(record: Dict[str, Any]) -> str:
        profile = record.get("kdf_profile", DEFAULT_KDF_PROFILE)
        if profile not in ARGON2_PROFILES:
            raise SerializationError(f"Unknown KDF profile in record: {profile!r}")
        return profile

    @staticmethod
    def _decode_blob(record: Dict[str, Any], field: str) -> bytes:
        value = record.get(field)
        if not isinstance(value, str):
            raise SerializationError(f"Missing field: {field}")
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise StorageEncryptionError(f"Malformed {field}: {e}") from e

    # Identity

    def has_identity(self) -> bool:
        """Check if an identity file exists."""
        return self.identity_path.exists()

    def create_identity(self, password: str, overwrite: bool = False) -> Fingerprint:
        """
        Generate a new identity and store it encrypted under ``password``.

        An existing identity is never replaced unless ``overwrite`` is set.
        Returns the new fingerprint; the secret key is wiped before returning.
        """
        with self._lock:
            if self.has_identity() and not overwrite:
                raise StorageError(
                    "Identity already exists", {"path": str(self.identity_path)}
                )

            keypair = crypto.generate_identity()
            try:
                fingerprint = Fingerprint.from_public_key(keypair.public_key)
                self._write_identity(keypair, fingerprint, password)
            finally:
                keypair.wipe()

        logger.info(f"New identity created: {fingerprint.formatted()}")
        return fingerprint

    def _write_identity(
        self, keypair: crypto.IdentityKeyPair, fingerprint: Fingerprint, password: str
    ) -> None:
        plain = json.dumps(keypair.to_dict()).encode("utf-8")
        encrypted = self._seal(plain, password)
        record = {
            "fingerprint": str(fingerprint),
            "encrypted_data": base64.b64encode(encrypted).decode("ascii"),
        }
        self._record_profile(record)
        self._write_record(self.identity_path, record)

    def _read_identity_record(self) -> Dict[str, Any]:
        try:
            return self._read_record(self.identity_path)
        except FileNotFoundError:
            raise IdentityNotFound(details={"path": str(self.identity_path)}) from None

    def read_fingerprint(self) -> Fingerprint:
        """Return the clear fingerprint stored beside the encrypted identity."""
        record = self._read_identity_record()
        try:
            return Fingerprint(record.get("fingerprint"))
        except InvalidFingerprint as e:
            raise SerializationError(f"Malformed fingerprint in identity file: {e}") from e

    def load_identity(self, password: str) -> crypto.IdentityKeyPair:
        """
        Decrypt and return the identity key pair.

        Raises:
            IdentityNotFound: no identity file
            InvalidPassword: wrong password or tampered ciphertext
            FingerprintMismatch: the stored fingerprint does not match the key
        """
        with self._lock:
            record = self._read_identity_record()
            encrypted = self._decode_blob(record, "encrypted_data")
            try:
                plain = crypto.decrypt_with_password(encrypted, password, self._profile_of(record))
            except DecryptionFailed:
                logger.warning("Failed to decrypt identity (incorrect password?)")
                raise InvalidPassword() from None
        return self._finish_identity(record, plain)

    async def load_identity_async(self, password: str) -> crypto.IdentityKeyPair:
        """Async variant of ``load_identity``; file I/O and KDF stay off the event loop."""
        try:
            async with aiofiles.open(self.identity_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            raise IdentityNotFound(details={"path": str(self.identity_path)}) from None
        except OSError as e:
            raise StorageIOError(f"Cannot read {IDENTITY_FILENAME}: {e}") from e

        record = self._parse_record(content, IDENTITY_FILENAME)
        encrypted = self._decode_blob(record, "encrypted_data")
        try:
            plain = await crypto.decrypt_with_password_async(
                encrypted, password, self._profile_of(record)
            )
        except DecryptionFailed:
            logger.warning("Failed to decrypt identity (incorrect password?)")
            raise InvalidPassword() from None
        return self._finish_identity(record, plain)

    @staticmethod
    def _parse_record(content: str, name: str) -> Dict[str, Any]:
        try:
            record = json.loads(content)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Corrupted {name}: {e}") from e
        if not isinstance(record, dict):
            raise SerializationError(f"Corrupted {name}: expected an object")
        return record

    def _finish_identity(self, record: Dict[str, Any], plain: bytes) -> crypto.IdentityKeyPair:
        try:
            keypair = crypto.IdentityKeyPair.from_dict(json.loads(plain))
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError, CryptoError) as e:
            raise SerializationError(f"Malformed identity payload: {e}") from e

        stored = record.get("fingerprint")
        try:
            expected = Fingerprint(stored)
        except InvalidFingerprint:
            expected = None
        if expected is None or not expected.verify(keypair.public_key):
            keypair.wipe()
            logger.error("Identity fingerprint does not match decrypted key")
            raise FingerprintMismatch()

        logger.info(f"Identity unlocked: {expected.formatted()}")
        return keypair

    # Contacts

    def _load_contacts_locked(self, password: str) -> List[StoredContact]:
        try:
            record = self._read_record(self.contacts_path)
        except FileNotFoundError:
            # No contacts yet; still reject a password the identity would reject
            if self.has_identity():
                self.load_identity(password).wipe()
            return []

        blob = self._decode_blob(record, "blob")
        try:
            plain = crypto.decrypt_with_password(blob, password, self._profile_of(record))
        except DecryptionFailed:
            logger.warning("Failed to decrypt contacts (incorrect password?)")
            raise InvalidPassword() from None
        return self._parse_contacts(plain)

    @staticmethod
    def _parse_contacts(plain: bytes) -> List[StoredContact]:
        try:
            entries = json.loads(plain)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SerializationError(f"Malformed contacts payload: {e}") from e
        if not isinstance(entries, list):
            raise SerializationError("Malformed contacts payload: expected a list")
        return [StoredContact.from_dict(entry) for entry in entries]

    def load_contacts(self, password: str) -> List[StoredContact]:
        """Decrypt the contact list; an absent contacts file means no contacts."""
        with self._lock:
            return self._load_contacts_locked(password)

    async def load_contacts_async(self, password: str) -> List[StoredContact]:
        """Async variant of ``load_contacts`` for callers on the event loop."""
        try:
            async with aiofiles.open(self.contacts_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            if self.has_identity():
                (await self.load_identity_async(password)).wipe()
            return []
        except OSError as e:
            raise StorageIOError(f"Cannot read {CONTACTS_FILENAME}: {e}") from e

        record = self._parse_record(content, CONTACTS_FILENAME)
        blob = self._decode_blob(record, "blob")
        try:
            plain = await crypto.decrypt_with_password_async(
                blob, password, self._profile_of(record)
            )
        except DecryptionFailed:
            raise InvalidPassword() from None
        return self._parse_contacts(plain)

    def save_contacts(self, contacts: List[StoredContact], password: str) -> None:
        """Encrypt and atomically replace the contact list."""
        with self._lock:
            plain = json.dumps([c.to_dict() for c in contacts]).encode("utf-8")
            encrypted = self._seal(plain, password)
            record = {"blob": base64.b64encode(encrypted).decode("ascii")}
            self._record_profile(record)
            self._write_record(self.contacts_path, record)
            logger.debug(f"Saved {len(contacts)} contacts")

    def add_contact(
        self,
        address: str,
        nickname: str,
        fingerprint: Union[Fingerprint, str],
        password: str,
    ) -> bool:
        """
        Add a contact unless one with the same address already exists.

        Returns True if the contact was added, False if it was already there.
        """
        if not isinstance(fingerprint, Fingerprint):
            fingerprint = Fingerprint(fingerprint)

        with self._lock:
            contacts = self._load_contacts_locked(password)
            if any(c.address == address for c in contacts):
                logger.debug("Contact already present, not adding")
                return False
            contacts.append(StoredContact(address, nickname, fingerprint))
            self.save_contacts(contacts, password)

        logger.info("Contact added securely.")
        return True

    def remove_contact(self, address: str, password: str) -> bool:
        """Remove the contact with ``address``; returns False if none matched."""
        with self._lock:
            contacts = self._load_contacts_locked(password)
            remaining = [c for c in contacts if c.address != address]
            if len(remaining) == len(contacts):
                return False
            self.save_contacts(remaining, password)

        logger.info("Contact removed.")
        return True

    def find_contact(self, address: str, password: str) -> Optional[StoredContact]:
        """Look up a contact by address."""
        for contact in self.load_contacts(password):
            if contact.address == address:
                return contact
        return None

    # Maintenance

    def change_password(self, old_password: str, new_password: str) -> None:
        """
        Re-encrypt identity and contacts under a new password.

        Both new files are fully written to temp files before either is moved
        into place. If the contacts file cannot be replaced after the
        identity was, the previous identity file is put back, so an I/O
        error never leaves the two files under different passwords.
        """
        with self._lock:
            keypair = self.load_identity(old_password)
            try:
                contacts = self._load_contacts_locked(old_password)
                had_contacts_file = self.contacts_path.exists()
                fingerprint = Fingerprint.from_public_key(keypair.public_key)

                identity_plain = json.dumps(keypair.to_dict()).encode("utf-8")
                identity_blob = self._seal(identity_plain, new_password)
                contacts_plain = json.dumps([c.to_dict() for c in contacts]).encode("utf-8")
                contacts_blob = self._seal(contacts_plain, new_password)
            finally:
                keypair.wipe()

            identity_record = {
                "fingerprint": str(fingerprint),
                "encrypted_data": base64.b64encode(identity_blob).decode("ascii"),
            }
            self._record_profile(identity_record)
            contacts_record = {"blob": base64.b64encode(contacts_blob).decode("ascii")}
            self._record_profile(contacts_record)

            previous_identity = self._read_identity_record()
            staged_identity = self._stage_record(self.identity_path, identity_record)
            staged_contacts = None
            if had_contacts_file:
                try:
                    staged_contacts = self._stage_record(self.contacts_path, contacts_record)
                except StorageError:
                    self._discard(staged_identity)
                    raise

            try:
                self._commit_record(staged_identity, self.identity_path)
            except StorageError:
                if staged_contacts is not None:
                    self._discard(staged_contacts)
                raise

            if staged_contacts is not None:
                try:
                    self._commit_record(staged_contacts, self.contacts_path)
                except StorageError:
                    self._discard(staged_contacts)
                    logger.error("Contacts not re-encrypted, restoring previous identity file")
                    self._write_record(self.identity_path, previous_identity)
                    raise

        logger.info("Password changed")

    def migrate_legacy_contacts(self, password: str) -> MigrationResult:
        """
        Move a plaintext contacts.json into the encrypted contacts file.

        Accepts a list of records, a ``{"contacts": [...]}`` object, or an
        object keyed by address. Records are merged by address into any
        existing encrypted contacts. A record without a fingerprint cannot be
        pinned, so it is not imported; its address and nickname are returned
        in ``MigrationResult.skipped`` for the user to add again with a
        verified fingerprint. The plaintext file is then securely deleted.
        This is the only code path that reads the plaintext file.

        Raises:
            SerializationError: The file or one of its records is malformed;
                nothing is written and the plaintext file is kept
        """
        result = MigrationResult()
        with self._lock:
            try:
                with open(self.legacy_contacts_path, "r", encoding="utf-8") as f:
                    legacy = json.load(f)
            except FileNotFoundError:
                return result
            except OSError as e:
                raise StorageIOError(f"Cannot read {LEGACY_CONTACTS_FILENAME}: {e}") from e
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise SerializationError(f"Corrupted {LEGACY_CONTACTS_FILENAME}: {e}") from e

            if isinstance(legacy, dict):
                wrapped = legacy.get("contacts")
                legacy = wrapped if isinstance(wrapped, list) else list(legacy.values())
            if not isinstance(legacy, list):
                raise SerializationError(f"Corrupted {LEGACY_CONTACTS_FILENAME}: expected a list")

            contacts = self._load_contacts_locked(password)
            known = {c.address for c in contacts}
            for entry in legacy:
                contact = self._legacy_contact(entry)
                if contact is None:
                    result.skipped.append(
                        {"address": entry["address"], "nickname": str(entry.get("nickname") or "")}
                    )
                    continue
                if contact.address in known:
                    continue
                contacts.append(contact)
                known.add(contact.address)
                result.added += 1

            self.save_contacts(contacts, password)
            self._secure_delete(self.legacy_contacts_path)

        if result.skipped:
            logger.warning(
                f"{len(result.skipped)} legacy contacts had no fingerprint and were skipped"
            )
        logger.info(f"Migrated {result.added} legacy contacts into {CONTACTS_FILENAME}")
        return result

    @staticmethod
    def _legacy_contact(entry: Any) -> Optional[StoredContact]:
        """Contact from a plaintext record, or None if the record has no fingerprint."""
        if not isinstance(entry, dict) or not isinstance(entry.get("address"), str):
            raise SerializationError(f"Malformed record in {LEGACY_CONTACTS_FILENAME}")
        if not entry.get("fingerprint"):
            return None
        try:
            return StoredContact(
                address=entry["address"],
                nickname=str(entry.get("nickname") or ""),
                fingerprint=Fingerprint(entry["fingerprint"]),
                added_at=entry.get("added_at"),
            )
        except (TypeError, ValueError, InvalidFingerprint) as e:
            raise SerializationError(f"Malformed record in {LEGACY_CONTACTS_FILENAME}: {e}") from e

    def wipe_all(self) -> List[str]:
        """
        Securely delete identity, contacts and any leftover plaintext contacts.

        Returns the names of the files that were removed.
        """
        removed = []
        with self._lock:
            for path in (self.identity_path, self.contacts_path, self.legacy_contacts_path):
                if self._secure_delete(path):
                    removed.append(path.name)
        logger.info("Data wiped.")
        return removed
