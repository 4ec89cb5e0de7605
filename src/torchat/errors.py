"""
TorChat-Paste - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the core. Each error has a unique code for logging and debugging.

Author: torchat-paste contributors
Version: 0.3.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all core error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY_LENGTH = "E103"
    E104_KEY_GENERATION_FAILED = "E104"
    E105_KEY_EXCHANGE_FAILED = "E105"
    E106_BASE64_ERROR = "E106"
    E107_INVALID_FINGERPRINT = "E107"
    E199_FATAL = "E199"

    # Storage Errors (E300-E399)
    E300_STORAGE_ERROR = "E300"
    E301_IO_ERROR = "E301"
    E302_SERIALIZATION_ERROR = "E302"
    E303_ENCRYPTION_ERROR = "E303"
    E304_IDENTITY_NOT_FOUND = "E304"
    E305_INVALID_PASSWORD = "E305"
    E306_FINGERPRINT_MISMATCH = "E306"

    # Protocol Errors (E200-E299)
    E200_PROTOCOL_ERROR = "E200"
    E201_HANDSHAKE_FAILED = "E201"
    E202_INVALID_FORMAT = "E202"
    E203_ENCRYPTION_ERROR = "E203"
    E204_NOT_CONNECTED = "E204"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"


class TorchatError(Exception):
    """Base exception class for all core errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize an error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class FatalCryptoError(BaseException):
    """Unrecoverable failure of the random source or of memory zeroing.

    Derives from BaseException so that generic ``except Exception`` handlers
    cannot swallow it; continuing would mean working with predictable or
    lingering key material.
    """

    def __init__(self, message: str):
        self.code = ErrorCode.E199_FATAL
        self.message = message
        super().__init__(f"[{self.code.value}] {message}")


# Cryptographic errors


class CryptoError(TorchatError):
    """Exception raised for cryptographic operation failures."""

    default_code = ErrorCode.E100_CRYPTO_ERROR
    default_message = "Cryptographic operation failed"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[ErrorCode] = None,
    ):
        super().__init__(code or self.default_code, message or self.default_message, details)


class KeyGenerationFailed(CryptoError):
    default_code = ErrorCode.E104_KEY_GENERATION_FAILED
    default_message = "Key generation failed"


class KeyExchangeError(CryptoError):
    default_code = ErrorCode.E105_KEY_EXCHANGE_FAILED
    default_message = "Key exchange error"


class EncryptionFailed(CryptoError):
    default_code = ErrorCode.E101_ENCRYPTION_FAILED
    default_message = "Encryption failed"


class DecryptionFailed(CryptoError):
    """Raised for tampering and wrong keys alike; the two are never distinguished."""

    default_code = ErrorCode.E102_DECRYPTION_FAILED
    default_message = "Decryption failed"


class InvalidKeyLength(CryptoError):
    default_code = ErrorCode.E103_INVALID_KEY_LENGTH
    default_message = "Invalid key length"


class Base64Error(CryptoError):
    default_code = ErrorCode.E106_BASE64_ERROR
    default_message = "Base64 decode error"


class InvalidFingerprint(CryptoError):
    default_code = ErrorCode.E107_INVALID_FINGERPRINT
    default_message = "Invalid fingerprint"


# Storage errors


class StorageError(TorchatError):
    """Exception raised for secure storage failures."""

    default_code = ErrorCode.E300_STORAGE_ERROR
    default_message = "Storage operation failed"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[ErrorCode] = None,
    ):
        super().__init__(code or self.default_code, message or self.default_message, details)


class StorageIOError(StorageError):
    default_code = ErrorCode.E301_IO_ERROR
    default_message = "IO error"


class SerializationError(StorageError):
    default_code = ErrorCode.E302_SERIALIZATION_ERROR
    default_message = "Serialization error"


class StorageEncryptionError(StorageError):
    default_code = ErrorCode.E303_ENCRYPTION_ERROR
    default_message = "Encryption error"


class IdentityNotFound(StorageError):
    default_code = ErrorCode.E304_IDENTITY_NOT_FOUND
    default_message = "Identity not found"


class InvalidPassword(StorageError):
    """Wrong password or a damaged blob; deliberately a single failure."""

    default_code = ErrorCode.E305_INVALID_PASSWORD
    default_message = "Invalid password"


class FingerprintMismatch(StorageError):
    default_code = ErrorCode.E306_FINGERPRINT_MISMATCH
    default_message = "Fingerprint mismatch"


# Protocol errors


class ProtocolError(TorchatError):
    """Exception raised for framing, handshake and session failures."""

    default_code = ErrorCode.E200_PROTOCOL_ERROR
    default_message = "Protocol error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[ErrorCode] = None,
    ):
        super().__init__(code or self.default_code, message or self.default_message, details)


class HandshakeFailed(ProtocolError):
    default_code = ErrorCode.E201_HANDSHAKE_FAILED
    default_message = "Handshake failed"


class InvalidFormat(ProtocolError):
    default_code = ErrorCode.E202_INVALID_FORMAT
    default_message = "Invalid message format"


class ProtocolEncryptionError(ProtocolError):
    default_code = ErrorCode.E203_ENCRYPTION_ERROR
    default_message = "Encryption error"


class NotConnected(ProtocolError):
    default_code = ErrorCode.E204_NOT_CONNECTED
    default_message = "Connection not established"


class ConfigError(TorchatError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
