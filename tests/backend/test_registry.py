"""
Tests for the account registry.
"""

import io
import sys
import threading
import time
from datetime import timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from drivepool.backends.local import LocalAuth, LocalDirectoryStore
from drivepool.exceptions import (
    AccountNotFoundError,
    ConfigurationError,
    DecryptionError,
    NeedsPassphraseError,
    PassphraseTooWeakError,
    RemoteUnavailableError,
)
from drivepool.models import AccessToken, ProviderKind, utcnow
from drivepool.persistence import FileQuery


def expire_token(persistence, account_id, ago=timedelta(minutes=10)):
    """Make the cached access token of an account expired."""
    account = persistence.get_account(account_id)
    account.cached_token = AccessToken("stale-token", utcnow() - ago)
    persistence.save_account(account)


class CountingAuth(LocalAuth):
    """LocalAuth that counts refreshes and makes them slow."""

    def __init__(self):
        super().__init__()
        self.refresh_calls = 0
        self._count_lock = threading.Lock()

    def refresh(self, refresh_token):
        with self._count_lock:
            self.refresh_calls += 1
        time.sleep(0.05)
        return super().refresh(refresh_token)


class TestConnectAccount:
    """Tests for connecting accounts."""

    def test_connect_local(self, registry, connect_local, vault, sample_passphrase):
        """Test that connecting stores identity, quota and encrypted secret."""
        account = connect_local("usb-disk", capacity_bytes=5000)

        assert account.id.startswith("local-")
        assert account.email == "usb-disk@local"
        assert account.provider == ProviderKind.LOCAL
        assert account.quota.bytes_total == 5000
        assert account.free_bytes == 5000
        assert account.cached_token is not None

        secret = vault.decrypt(account.encrypted_credential, sample_passphrase, context=account.id)
        assert secret.reveal().startswith("local:usb-disk:")
        assert registry.get_account(account.id) == account

    def test_weak_passphrase(self, registry, tmp_path):
        """Test that a weak passphrase is refused before anything is stored."""
        with pytest.raises(PassphraseTooWeakError):
            registry.connect_account("local", "usb", "weak", {"directory": str(tmp_path)})

        assert registry.list_accounts() == []

    def test_unknown_provider(self, registry, sample_passphrase):
        """Test that an unknown provider kind is a configuration error."""
        with pytest.raises(ConfigurationError):
            registry.connect_account("dropbox", "code", sample_passphrase)

    def test_unconfigured_provider(self, registry, sample_passphrase):
        """Test that Google Drive is unavailable without OAuth client settings."""
        with pytest.raises(ConfigurationError):
            registry.connect_account(ProviderKind.GOOGLE_DRIVE, "code", sample_passphrase)

    def test_missing_config(self, registry, sample_passphrase):
        """Test that a local account needs a directory."""
        with pytest.raises(ConfigurationError):
            registry.connect_account("local", "usb", sample_passphrase, {})

    def test_reconnect_keeps_creation_time(self, connect_local, registry):
        """Test that connecting the same identity again updates in place."""
        first = connect_local("usb-disk", capacity_bytes=5000)
        second = connect_local("usb-disk", capacity_bytes=9000)

        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at
        assert len(registry.list_accounts()) == 1
        assert registry.get_account(first.id).quota.bytes_total == 9000

    def test_list_in_creation_order(self, connect_local, registry):
        """Test that accounts are listed in connection order."""
        a = connect_local("first")
        b = connect_local("second")

        assert [x.id for x in registry.list_accounts()] == [a.id, b.id]

    def test_get_unknown_account(self, registry):
        """Test that an unknown id raises AccountNotFoundError."""
        with pytest.raises(AccountNotFoundError):
            registry.get_account("missing")


class TestAccessCredential:
    """Tests for access credential caching and refresh."""

    def test_cached_token_needs_no_passphrase(self, registry, connect_local):
        """Test that a live cached token is returned without decryption."""
        account = connect_local("usb-disk")

        assert registry.get_access_credential(account.id) == account.cached_token.token

    def test_expired_token_is_refreshed(self, registry, connect_local, persistence, sample_passphrase):
        """Test that a token expired ten minutes ago is refreshed and persisted."""
        account = connect_local("usb-disk")
        expire_token(persistence, account.id)

        token = registry.get_access_credential(account.id, sample_passphrase)

        assert token != "stale-token"
        stored = persistence.get_account(account.id).cached_token
        assert stored.token == token
        assert not stored.is_expired()

    def test_token_inside_skew_is_refreshed(self, registry, connect_local, persistence, sample_passphrase):
        """Test that a token about to expire counts as expired."""
        account = connect_local("usb-disk")
        expire_token(persistence, account.id, ago=timedelta(seconds=-30))

        assert registry.get_access_credential(account.id, sample_passphrase) != "stale-token"

    def test_expired_without_passphrase(self, registry, connect_local, persistence):
        """Test that a refresh without passphrase raises NeedsPassphraseError."""
        account = connect_local("usb-disk")
        expire_token(persistence, account.id)

        with pytest.raises(NeedsPassphraseError) as exc_info:
            registry.get_access_credential(account.id)
        assert exc_info.value.account_id == account.id

    def test_wrong_passphrase(self, registry, connect_local, persistence):
        """Test that a wrong passphrase raises DecryptionError."""
        account = connect_local("usb-disk")
        expire_token(persistence, account.id)

        with pytest.raises(DecryptionError):
            registry.get_access_credential(account.id, "Wrong-Horse-42!")

    def test_concurrent_refresh_runs_once(
        self, registry, connect_local, persistence, providers, sample_passphrase
    ):
        """Test that concurrent callers share a single refresh."""
        account = connect_local("usb-disk")
        expire_token(persistence, account.id)
        auth = CountingAuth()
        providers.get(ProviderKind.LOCAL).auth = auth

        results = []
        errors = []

        def worker():
            try:
                results.append(registry.get_access_credential(account.id, sample_passphrase))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert auth.refresh_calls == 1
        assert len(set(results)) == 1


class TestQuotaAndIndex:
    """Tests for quota snapshots and the file index."""

    def test_refresh_quota(self, registry, connect_local):
        """Test that refresh_quota reads live usage."""
        account = connect_local("usb-disk", capacity_bytes=1000)
        with registry.open_store(account.id) as store:
            store.upload("a.bin", io.BytesIO(b"x" * 300), 300)

        quota = registry.refresh_quota(account.id)

        assert quota.bytes_used == 300
        assert registry.get_account(account.id).free_bytes == 700

    def test_free_capacity_in_creation_order(self, registry, connect_local):
        """Test free capacity per account."""
        a = connect_local("first", capacity_bytes=100)
        b = connect_local("second", capacity_bytes=200)

        free = registry.free_capacity(refresh=True)

        assert list(free.items()) == [(a.id, 100), (b.id, 200)]

    def test_free_capacity_skips_failing_accounts(self, registry, connect_local, monkeypatch):
        """Test that an account whose remote quota read fails is left out."""
        a = connect_local("first", capacity_bytes=100)
        b = connect_local("second", capacity_bytes=200)
        original = LocalDirectoryStore.get_quota

        def flaky(self):
            if self.account_id == a.id:
                raise RemoteUnavailableError("quota endpoint down")
            return original(self)

        monkeypatch.setattr(LocalDirectoryStore, "get_quota", flaky)

        assert registry.free_capacity(refresh=True) == {b.id: 200}

    def test_free_capacity_needs_passphrase(self, registry, connect_local, persistence):
        """Test that an expired credential without passphrase is not skipped."""
        connect_local("first", capacity_bytes=100)
        b = connect_local("second", capacity_bytes=200)
        expire_token(persistence, b.id)

        with pytest.raises(NeedsPassphraseError) as exc_info:
            registry.free_capacity(refresh=True)
        assert exc_info.value.account_id == b.id

    def test_free_capacity_wrong_passphrase(self, registry, connect_local, persistence):
        """Test that a wrong passphrase is not reported as missing capacity."""
        a = connect_local("first", capacity_bytes=100)
        expire_token(persistence, a.id)

        with pytest.raises(DecryptionError):
            registry.free_capacity("Wrong-Horse-42!", refresh=True)

    def test_sync_file_index(self, registry, connect_local, persistence):
        """Test indexing the remote files of an account."""
        account = connect_local("usb-disk")
        with registry.open_store(account.id) as store:
            for name in ("a.txt", "b.txt", "holiday.jpg"):
                store.upload(name, io.BytesIO(b"x"), 1)

        assert registry.sync_file_index(account.id) == 3
        names = sorted(r.name for r in persistence.query_file_records(FileQuery(account_id=account.id)))
        assert names == ["a.txt", "b.txt", "holiday.jpg"]

    def test_full_sync_drops_stale_records(self, registry, connect_local, persistence):
        """Test that a sync without query replaces the account's records."""
        account = connect_local("usb-disk")
        with registry.open_store(account.id) as store:
            remote_id = store.upload("a.txt", io.BytesIO(b"x"), 1)
        registry.sync_file_index(account.id)

        with registry.open_store(account.id) as store:
            store.delete(remote_id)
        registry.sync_file_index(account.id)

        assert persistence.query_file_records(FileQuery(account_id=account.id)) == []

    def test_query_sync_keeps_other_records(self, registry, connect_local, persistence):
        """Test that a filtered sync only adds matching records."""
        account = connect_local("usb-disk")
        with registry.open_store(account.id) as store:
            store.upload("a.txt", io.BytesIO(b"x"), 1)
        registry.sync_file_index(account.id)
        with registry.open_store(account.id) as store:
            store.upload("holiday.jpg", io.BytesIO(b"x"), 1)

        assert registry.sync_file_index(account.id, query="holiday") == 1
        assert len(persistence.query_file_records(FileQuery(account_id=account.id))) == 2

    def test_sync_restarts_after_transient_failure(self, registry, connect_local, monkeypatch):
        """Test that a transient listing failure restarts from the first page."""
        account = connect_local("usb-disk")
        with registry.open_store(account.id) as store:
            store.upload("a.txt", io.BytesIO(b"x"), 1)

        original = LocalDirectoryStore.list_all
        calls = {"n": 0}

        def flaky(self, query=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RemoteUnavailableError("listing interrupted")
            return original(self, query)

        monkeypatch.setattr(LocalDirectoryStore, "list_all", flaky)

        assert registry.sync_file_index(account.id) == 1
        assert calls["n"] == 2

    def test_sync_gives_up(self, registry, connect_local, monkeypatch):
        """Test that persistent listing failures propagate."""
        account = connect_local("usb-disk")

        def broken(self, query=None):
            raise RemoteUnavailableError("down")

        monkeypatch.setattr(LocalDirectoryStore, "list_all", broken)

        with pytest.raises(RemoteUnavailableError):
            registry.sync_file_index(account.id)


class TestPassphraseAndRemoval:
    """Tests for passphrase rotation and account removal."""

    def test_change_passphrase(self, registry, connect_local, persistence, vault, sample_passphrase):
        """Test that the secret is re-encrypted under the new passphrase."""
        account = connect_local("usb-disk")
        registry.change_passphrase(account.id, sample_passphrase, "Battery-Staple-99?")

        blob = persistence.get_account(account.id).encrypted_credential
        assert vault.decrypt(blob, "Battery-Staple-99?", context=account.id).reveal()
        with pytest.raises(DecryptionError):
            vault.decrypt(blob, sample_passphrase, context=account.id)

        expire_token(persistence, account.id)
        assert registry.get_access_credential(account.id, "Battery-Staple-99?")

    def test_change_passphrase_wrong_old(self, registry, connect_local):
        """Test that the old passphrase must be correct."""
        account = connect_local("usb-disk")

        with pytest.raises(DecryptionError):
            registry.change_passphrase(account.id, "Wrong-Horse-42!", "Battery-Staple-99?")

    def test_change_passphrase_weak_new(self, registry, connect_local, sample_passphrase):
        """Test that the new passphrase must be strong."""
        account = connect_local("usb-disk")

        with pytest.raises(PassphraseTooWeakError):
            registry.change_passphrase(account.id, sample_passphrase, "weak")

    def test_remove_account(self, registry, connect_local, persistence):
        """Test that removal deletes the account and its records."""
        account = connect_local("usb-disk")
        with registry.open_store(account.id) as store:
            store.upload("a.txt", io.BytesIO(b"x"), 1)
        registry.sync_file_index(account.id)

        assert registry.remove_account(account.id) is True
        assert registry.remove_account(account.id) is False
        assert registry.list_accounts() == []
        assert persistence.query_file_records() == []
        with pytest.raises(AccountNotFoundError):
            registry.get_access_credential(account.id)
