"""
Pytest configuration and shared fixtures for all tests.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from drivepool.backends.providers import ProviderSet
from drivepool.config import Settings
from drivepool.models import FileDescriptor
from drivepool.persistence import InMemoryPersistence
from drivepool.registry import AccountRegistry
from drivepool.vault import CredentialVault


@pytest.fixture
def sample_passphrase():
    """A passphrase meeting every strength rule."""
    return "Correct-Horse-42!"


@pytest.fixture
def vault():
    """A vault with the minimum iteration count, to keep tests fast."""
    return CredentialVault(iterations=100_000)


@pytest.fixture
def persistence():
    """An empty in-memory record store."""
    return InMemoryPersistence()


@pytest.fixture
def settings(tmp_path):
    """Settings with small chunks and no retry delay."""
    return Settings(
        data_dir=tmp_path / "data",
        kdf_iterations=100_000,
        retry_attempts=3,
        retry_base_delay=0.0,
        resumable_threshold=1024,
        chunk_size=256,
    )


@pytest.fixture
def providers(settings):
    """Local and S3 providers (Google Drive is not configured)."""
    return ProviderSet.from_settings(settings)


@pytest.fixture
def registry(persistence, providers, vault):
    """A registry over the in-memory store."""
    return AccountRegistry(persistence, providers, vault=vault, retry_delay=0.0, sleep=lambda s: None)


@pytest.fixture
def connect_local(registry, tmp_path, sample_passphrase):
    """Factory connecting a capacity-capped local directory account."""

    def _connect(label, capacity_bytes=None):
        config = {"directory": str(tmp_path / "accounts" / label)}
        if capacity_bytes is not None:
            config["capacity_bytes"] = capacity_bytes
        return registry.connect_account("local", label, sample_passphrase, config)

    return _connect


@pytest.fixture
def make_file(tmp_path):
    """Factory writing a local file of a given size and describing it."""

    def _make(name, size):
        path = tmp_path / "source" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        pattern = name.encode("utf-8") + b"-"
        path.write_bytes((pattern * (size // len(pattern) + 1))[:size])
        return FileDescriptor.from_path(path)

    return _make
