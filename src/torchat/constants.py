"""
TorChat-Paste - Global Constants and Configuration Values

This module defines all constants used throughout the core.
Sizes, KDF cost profiles, file names and protocol defaults are
centralized here.

Author: torchat-paste contributors
Version: 0.3.0
"""

# Version Information
VERSION = "0.3.0"
APP_NAME = "TorChat-Paste"

# Cryptography Constants
PUBLIC_KEY_SIZE = 32  # X25519 public key
SECRET_KEY_SIZE = 32  # X25519 secret key
SESSION_KEY_SIZE = 32  # crypto_kx session key
SECRETBOX_KEY_SIZE = 32  # XSalsa20-Poly1305 key
SECRETBOX_NONCE_SIZE = 24  # 192 bits, safe to draw at random
SALT_SIZE = 16  # 128 bits, Argon2id salt
PASSWORD_HEADER_SIZE = SALT_SIZE + SECRETBOX_NONCE_SIZE  # salt || nonce
HANDSHAKE_NONCE_SIZE = 32
MESSAGE_ID_SIZE = 16  # bytes, hex encoded on the wire

# Fingerprint Constants
FINGERPRINT_DIGEST_BYTES = 8  # truncated SHA-256 prefix
FINGERPRINT_GROUP_SIZE = 4
FINGERPRINT_SEPARATOR = "-"

# Argon2id cost profiles (time_cost, memory_cost in KiB, parallelism).
# These mirror libsodium's crypto_pwhash OPSLIMIT/MEMLIMIT presets.
# interactive: ~0.1-0.3 s and 64 MiB per guess, the floor for online unlock.
# moderate: ~0.7 s and 256 MiB, raises offline brute-force cost about 6x.
# sensitive: ~3.5 s and 1 GiB, for stored blobs that rarely need unlocking.
ARGON2_PROFILES = {
    "interactive": (2, 64 * 1024, 1),
    "moderate": (3, 256 * 1024, 1),
    "sensitive": (4, 1024 * 1024, 1),
}
DEFAULT_KDF_PROFILE = "interactive"

# Padding Constants
DEFAULT_PADDING_BLOCK_SIZE = 256  # bytes, anonymity set for message lengths
PADDING_MARKER = 0x80

# Protocol Constants
PROTOCOL_VERSION = 1
MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10 MB
DEFAULT_FRAGMENT_SIZE = 1024  # bytes of payload per fragment
FRAME_LENGTH_PREFIX_SIZE = 4

# Reassembly Limits
REASSEMBLY_TIMEOUT = 60  # seconds of inactivity before a partial message is dropped
MAX_REASSEMBLY_BYTES = MAX_MESSAGE_SIZE
MAX_PENDING_REASSEMBLIES = 32

# Session Constants
HANDSHAKE_TIMEOUT = 30  # seconds
KEEPALIVE_INTERVAL = 60  # seconds
CONNECTION_TIMEOUT = 30  # seconds
HANDSHAKE_REPLAY_CACHE_SIZE = 4096
KEY_CONFIRMATION_SIZE = 32  # keyed BLAKE2b-256 over the handshake transcript
MAX_PENDING_ACKS = 1024  # unacknowledged messages tracked per session

# File Paths
DATA_DIR_NAME = "torchat_paste"
IDENTITY_FILENAME = "identity.enc"
CONTACTS_FILENAME = "contacts.enc"
LEGACY_CONTACTS_FILENAME = "contacts.json"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "torchat.log"
WIPE_CHUNK_SIZE = 64 * 1024

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
