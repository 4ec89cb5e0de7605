"""
Pytest configuration and fixtures for TorChat-Paste tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from torchat import constants, crypto
from torchat.storage import SecureStorage


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    """
    Shrink Argon2id costs so storage tests run quickly.

    The profiles stay distinct from each other, so a blob sealed under one
    profile still fails to open under another.
    """
    monkeypatch.setitem(constants.ARGON2_PROFILES, "interactive", (1, 8, 1))
    monkeypatch.setitem(constants.ARGON2_PROFILES, "moderate", (2, 8, 1))
    monkeypatch.setitem(constants.ARGON2_PROFILES, "sensitive", (1, 16, 1))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="torchat_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def storage(temp_dir: Path) -> SecureStorage:
    """SecureStorage rooted in a fresh temporary directory."""
    return SecureStorage(temp_dir / "data")


@pytest.fixture
def alice() -> Generator[crypto.IdentityKeyPair, None, None]:
    keypair = crypto.generate_identity()
    yield keypair
    keypair.wipe()


@pytest.fixture
def bob() -> Generator[crypto.IdentityKeyPair, None, None]:
    keypair = crypto.generate_identity()
    yield keypair
    keypair.wipe()


@pytest.fixture
def onion_address() -> str:
    """A syntactically valid v3 onion address."""
    return "a" * 56 + ".onion"


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
