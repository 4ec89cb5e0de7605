"""
TorChat-Paste - Utility functions.

Provides logging setup, data directory resolution, and helpers for
formatting and validation.
"""

import logging
import logging.handlers
import os
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

from .constants import (
    DATA_DIR_NAME,
    FINGERPRINT_GROUP_SIZE,
    FINGERPRINT_SEPARATOR,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
)

logger = logging.getLogger(__name__)

# Tor v3 onion service address: 56 base32 characters
ONION_V3_PATTERN = re.compile(r"^[a-z2-7]{56}\.onion$")


def resolve_data_dir(override: Optional[Union[str, Path]] = None) -> Path:
    """
    Resolve the per-user data directory.

    Args:
        override: Explicit directory (from CLI or config); wins when set

    Returns:
        Absolute path; the directory is not created here
    """
    if override:
        return Path(override).expanduser().resolve()

    # Platform-specific local data directory
    if sys.platform == "win32":
        base = Path(os.getenv("LOCALAPPDATA") or os.getenv("APPDATA") or "~")
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.getenv("XDG_DATA_HOME") or Path.home() / ".local" / "share")

    return (base / DATA_DIR_NAME).expanduser().resolve()


def setup_logging(
    data_dir: Optional[Path] = None,
    level: Union[int, str] = logging.INFO,
    console: bool = True,
    file_logging: bool = True,
) -> logging.Logger:
    """
    Configure the ``torchat`` logger.

    Installs a rotating file handler under ``<data_dir>/logs`` and a rich
    console handler on stderr. Calling it again replaces earlier handlers.

    Args:
        data_dir: Data directory; file logging is skipped when None
        level: Logging level name or number
        console: Whether to log to the console
        file_logging: Whether to log to the rotating file

    Returns:
        The configured package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    package_logger = logging.getLogger("torchat")
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    if file_logging and data_dir is not None:
        log_dir = Path(data_dir) / LOGS_DIR
        try:
            log_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            file_handler = logging.handlers.RotatingFileHandler(
                log_dir / LOG_FILENAME,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning(f"File logging disabled: {e}")
        else:
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
            package_logger.addHandler(file_handler)

    if console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=False,
            log_time_format=f"[{LOG_DATE_FORMAT}]",
        )
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        package_logger.addHandler(console_handler)

    if not package_logger.handlers:
        package_logger.addHandler(logging.NullHandler())

    package_logger.propagate = False
    return package_logger


def format_fingerprint(fingerprint: str) -> str:
    """
    Format a fingerprint for display in groups of four characters.

    Args:
        fingerprint: Base64 fingerprint string

    Returns:
        Formatted fingerprint
    """
    return FINGERPRINT_SEPARATOR.join(
        fingerprint[i : i + FINGERPRINT_GROUP_SIZE]
        for i in range(0, len(fingerprint), FINGERPRINT_GROUP_SIZE)
    )


def format_timestamp(unix_seconds: int, format_str: str = "%Y-%m-%d %H:%M:%S") -> str:
    """
    Format a unix timestamp (UTC) to a human-readable string.

    Returns the value unchanged as text if it cannot be converted.
    """
    try:
        dt = datetime.fromtimestamp(int(unix_seconds), tz=timezone.utc)
        return dt.strftime(format_str)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        logger.debug(f"Failed to format timestamp '{unix_seconds}': {e}")
        return str(unix_seconds)


def validate_onion_address(address: str) -> bool:
    """
    Validate a Tor v3 onion address.

    Args:
        address: Address such as "<56 base32 chars>.onion"

    Returns:
        True if valid, False otherwise
    """
    if not isinstance(address, str):
        return False
    return bool(ONION_V3_PATTERN.match(address.strip().lower()))


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length."""
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix
