"""
Tests for record persistence.
"""

import json
import os
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from drivepool.exceptions import StorageError
from drivepool.models import (
    Account,
    FileDescriptor,
    FileRecord,
    ProviderKind,
    TransferJob,
    TransferState,
)
from drivepool.persistence import FileQuery, InMemoryPersistence, JsonFilePersistence
from drivepool.vault import CipherBlob

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_account(account_id, created_offset=0):
    return Account(
        id=account_id,
        email=f"{account_id}@example.com",
        display_name=account_id,
        provider=ProviderKind.LOCAL,
        encrypted_credential=CipherBlob(b"s" * 32, b"n" * 12, b"c" * 32, 100_000),
        created_at=T0 + timedelta(minutes=created_offset),
    )


def make_record(account_id, remote_id, name, modified_offset=0):
    return FileRecord(
        remote_id=remote_id,
        account_id=account_id,
        name=name,
        size_bytes=10,
        modified_time=T0 + timedelta(days=modified_offset),
    )


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    """Both persistence implementations."""
    if request.param == "memory":
        return InMemoryPersistence()
    return JsonFilePersistence(tmp_path / "records")


class TestAccounts:
    """Tests for account records."""

    def test_save_and_get(self, store):
        """Test that a saved account is returned unchanged."""
        account = make_account("acct-1")
        store.save_account(account)

        assert store.get_account("acct-1") == account

    def test_get_unknown(self, store):
        """Test that an unknown account returns None."""
        assert store.get_account("missing") is None

    def test_upsert(self, store):
        """Test that saving twice replaces the record."""
        account = make_account("acct-1")
        store.save_account(account)
        account.display_name = "Renamed"
        store.save_account(account)

        assert store.get_account("acct-1").display_name == "Renamed"
        assert len(store.list_accounts()) == 1

    def test_list_in_creation_order(self, store):
        """Test that accounts are listed oldest first."""
        store.save_account(make_account("b", created_offset=2))
        store.save_account(make_account("a", created_offset=5))
        store.save_account(make_account("c", created_offset=1))

        assert [a.id for a in store.list_accounts()] == ["c", "b", "a"]

    def test_delete_cascades(self, store):
        """Test that deleting an account removes its files and jobs."""
        store.save_account(make_account("acct-1"))
        store.save_account(make_account("acct-2"))
        store.save_file_records("acct-1", [make_record("acct-1", "r1", "a.txt")])
        store.save_file_records("acct-2", [make_record("acct-2", "r2", "b.txt")])
        store.save_transfer_job(TransferJob("j1", FileDescriptor("a.txt", 1), "acct-1"))
        store.save_transfer_job(TransferJob("j2", FileDescriptor("b.txt", 1), "acct-2"))

        assert store.delete_account("acct-1") is True

        assert store.get_account("acct-1") is None
        assert [r.account_id for r in store.query_file_records()] == ["acct-2"]
        assert [j.id for j in store.list_transfer_jobs()] == ["j2"]

    def test_delete_twice(self, store):
        """Test that deleting a missing account is not an error."""
        store.save_account(make_account("acct-1"))

        assert store.delete_account("acct-1") is True
        assert store.delete_account("acct-1") is False


class TestFileRecords:
    """Tests for file records."""

    @pytest.fixture
    def populated(self, store):
        store.save_file_records("acct-1", [
            make_record("acct-1", "r1", "Holiday.jpg", modified_offset=1),
            make_record("acct-1", "r2", "notes.txt", modified_offset=3),
        ])
        store.save_file_records("acct-2", [
            make_record("acct-2", "r3", "holiday-2.jpg", modified_offset=2),
        ])
        return store

    def test_newest_first(self, populated):
        """Test that records are sorted by modification time, newest first."""
        assert [r.remote_id for r in populated.query_file_records()] == ["r2", "r3", "r1"]

    def test_filter_by_account(self, populated):
        """Test filtering by account."""
        records = populated.query_file_records(FileQuery(account_id="acct-2"))
        assert [r.remote_id for r in records] == ["r3"]

    def test_filter_by_name_case_insensitive(self, populated):
        """Test case-insensitive name filtering."""
        records = populated.query_file_records(FileQuery(name_contains="HOLIDAY"))
        assert {r.remote_id for r in records} == {"r1", "r3"}

    def test_filter_by_record_ids(self, populated):
        """Test filtering by record ids."""
        records = populated.query_file_records(FileQuery(record_ids=["acct-1-r1", "nope"]))
        assert [r.remote_id for r in records] == ["r1"]

    def test_clear(self, populated):
        """Test clearing one account's records."""
        populated.clear_file_records("acct-1")
        assert [r.account_id for r in populated.query_file_records()] == ["acct-2"]

    def test_upsert_by_record_id(self, populated):
        """Test that saving the same record id replaces it."""
        populated.save_file_records("acct-1", [make_record("acct-1", "r1", "renamed.jpg")])

        records = populated.query_file_records(FileQuery(account_id="acct-1"))
        assert sorted(r.name for r in records) == ["notes.txt", "renamed.jpg"]


class TestTransferJobs:
    """Tests for transfer jobs."""

    def test_update_requires_existing(self, store):
        """Test that updating an unsaved job raises StorageError."""
        with pytest.raises(StorageError):
            store.update_transfer_job(TransferJob("j1", FileDescriptor("a", 1), "acct-1"))

    def test_filter_by_state(self, store):
        """Test listing jobs by state."""
        done = TransferJob("j1", FileDescriptor("a", 1), "acct-1", created_at=T0)
        waiting = TransferJob("j2", FileDescriptor("b", 1), "acct-1", created_at=T0 + timedelta(1))
        store.save_transfer_job(done)
        store.save_transfer_job(waiting)
        done.state = TransferState.COMPLETED
        store.update_transfer_job(done)

        assert [j.id for j in store.list_transfer_jobs()] == ["j1", "j2"]
        assert [j.id for j in store.list_transfer_jobs(state=TransferState.PENDING)] == ["j2"]

    def test_copies_are_independent(self, store):
        """Test that mutating a returned job does not change the stored one."""
        store.save_transfer_job(TransferJob("j1", FileDescriptor("a", 1), "acct-1"))

        job = store.get_transfer_job("j1")
        job.bytes_transferred = 1

        assert store.get_transfer_job("j1").bytes_transferred == 0


class TestJsonFilePersistence:
    """Tests specific to the JSON file store."""

    def test_permissions(self, tmp_path):
        """Test that directories are 0o700 and records 0o600."""
        store = JsonFilePersistence(tmp_path / "records")
        store.save_account(make_account("acct-1"))

        root_mode = os.stat(tmp_path / "records").st_mode & 0o777
        file_mode = os.stat(tmp_path / "records" / "accounts" / "acct-1.json").st_mode & 0o777
        assert root_mode == 0o700
        assert file_mode == 0o600

    def test_survives_reopen(self, tmp_path):
        """Test that records persist across instances."""
        JsonFilePersistence(tmp_path / "records").save_account(make_account("acct-1"))

        assert JsonFilePersistence(tmp_path / "records").get_account("acct-1") is not None

    def test_unsafe_ids_are_sanitized(self, tmp_path):
        """Test that ids cannot escape the records directory."""
        store = JsonFilePersistence(tmp_path / "records")
        store.save_account(make_account("../escape"))

        assert not (tmp_path / "escape.json").exists()
        assert store.get_account("../escape") is not None

    def test_corrupt_record(self, tmp_path):
        """Test that an unreadable record raises StorageError."""
        store = JsonFilePersistence(tmp_path / "records")
        (tmp_path / "records" / "accounts" / "bad.json").write_text("{oops")

        with pytest.raises(StorageError):
            store.get_account("bad")

    def test_no_secret_in_plaintext(self, tmp_path, vault, sample_passphrase):
        """Test that the stored account holds only ciphertext."""
        store = JsonFilePersistence(tmp_path / "records")
        account = replace(
            make_account("acct-1"),
            encrypted_credential=vault.encrypt("1//my-refresh-token", sample_passphrase, "acct-1"),
        )
        store.save_account(account)

        raw = (tmp_path / "records" / "accounts" / "acct-1.json").read_text()
        assert "my-refresh-token" not in raw
        assert json.loads(raw)["encrypted_credential"]["cipher"] == "chacha20-poly1305"
