"""
TorChat-Paste - Security core for a peer-to-peer messenger over Tor.

Identity keys, password-protected storage, the authenticated session
handshake and the framed message protocol. The anonymity transport
itself is supplied by the embedding application.

Version: 0.3.0
License: MIT
"""

__version__ = "0.3.0"
__license__ = "MIT"

from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    ConfigError,
    CryptoError,
    ErrorCode,
    FatalCryptoError,
    ProtocolError,
    StorageError,
    TorchatError,
)
from .fingerprint import Fingerprint
from .session import ConnectionRegistry, P2PConnection
from .storage import SecureStorage

__all__ = [
    "APP_NAME",
    "VERSION",
    "Config",
    "ConfigError",
    "ConnectionRegistry",
    "CryptoError",
    "ErrorCode",
    "FatalCryptoError",
    "Fingerprint",
    "P2PConnection",
    "ProtocolError",
    "SecureStorage",
    "StorageError",
    "TorchatError",
    "__license__",
    "__version__",
]
