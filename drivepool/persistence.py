"""
Record persistence for accounts, file records and transfer jobs.

The core only depends on the ``Persistence`` interface: synchronous calls,
idempotent upserts keyed by id. Two implementations are provided, an
in-memory store (tests, one-shot runs) and a JSON file store that keeps one
file per record with restrictive permissions (0o600 files, 0o700
directories).
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from drivepool.exceptions import StorageError
from drivepool.models import Account, FileRecord, TransferJob, TransferState

if TYPE_CHECKING:
    from typing import Any

__all__ = ["FileQuery", "Persistence", "InMemoryPersistence", "JsonFilePersistence"]

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class FileQuery:
    """
    Filter for file records. Empty fields match everything.

    Attributes:
        account_id: Only records of this account.
        name_contains: Case-insensitive substring of the file name.
        record_ids: Only these record ids.
    """

    account_id: str | None = None
    name_contains: str | None = None
    record_ids: list[str] | None = field(default=None)

    def matches(self, record: FileRecord) -> bool:
        if self.account_id and record.account_id != self.account_id:
            return False
        if self.name_contains and self.name_contains.lower() not in record.name.lower():
            return False
        if self.record_ids is not None and record.record_id not in self.record_ids:
            return False
        return True


def _newest_first(records: list[FileRecord]) -> list[FileRecord]:
    return sorted(records, key=lambda r: r.modified_time or _OLDEST, reverse=True)


def _by_creation(accounts: list[Account]) -> list[Account]:
    return sorted(accounts, key=lambda a: (a.created_at, a.id))


class Persistence(ABC):
    """Record store used by the registry, the coordinator and the composer."""

    @abstractmethod
    def save_account(self, account: Account) -> None:
        """Insert or replace an account."""
        ...

    @abstractmethod
    def get_account(self, account_id: str) -> Account | None:
        """Return the account, or None if unknown."""
        ...

    @abstractmethod
    def list_accounts(self) -> list[Account]:
        """Return all accounts in creation order."""
        ...

    @abstractmethod
    def delete_account(self, account_id: str) -> bool:
        """
        Delete an account with its file records and transfer jobs.

        Returns:
            True if the account existed.
        """
        ...

    @abstractmethod
    def save_file_records(self, account_id: str, records: list[FileRecord]) -> None:
        """Insert or replace file records of one account."""
        ...

    @abstractmethod
    def clear_file_records(self, account_id: str) -> None:
        """Remove every file record of one account."""
        ...

    @abstractmethod
    def query_file_records(self, query: FileQuery | None = None) -> list[FileRecord]:
        """Return matching records, most recently modified first."""
        ...

    @abstractmethod
    def save_transfer_job(self, job: TransferJob) -> None:
        """Insert or replace a transfer job."""
        ...

    @abstractmethod
    def update_transfer_job(self, job: TransferJob) -> None:
        """
        Replace an existing transfer job.

        Raises:
            StorageError: If the job was never saved.
        """
        ...

    @abstractmethod
    def get_transfer_job(self, job_id: str) -> TransferJob | None:
        """Return the job, or None if unknown."""
        ...

    @abstractmethod
    def list_transfer_jobs(
        self, state: TransferState | None = None, account_id: str | None = None
    ) -> list[TransferJob]:
        """Return jobs in creation order, optionally filtered."""
        ...


class InMemoryPersistence(Persistence):
    """Thread-safe in-memory record store. Records are copied in and out."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: dict[str, dict[str, Any]] = {}
        self._files: dict[str, dict[str, dict[str, Any]]] = {}
        self._jobs: dict[str, dict[str, Any]] = {}

    def save_account(self, account: Account) -> None:
        with self._lock:
            self._accounts[account.id] = account.to_dict()

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            data = self._accounts.get(account_id)
        return Account.from_dict(data) if data else None

    def list_accounts(self) -> list[Account]:
        with self._lock:
            accounts = [Account.from_dict(d) for d in self._accounts.values()]
        return _by_creation(accounts)

    def delete_account(self, account_id: str) -> bool:
        with self._lock:
            existed = self._accounts.pop(account_id, None) is not None
            self._files.pop(account_id, None)
            for job_id in [j for j, d in self._jobs.items() if d["account_id"] == account_id]:
                del self._jobs[job_id]
        return existed

    def save_file_records(self, account_id: str, records: list[FileRecord]) -> None:
        with self._lock:
            bucket = self._files.setdefault(account_id, {})
            for record in records:
                bucket[record.record_id] = record.to_dict()

    def clear_file_records(self, account_id: str) -> None:
        with self._lock:
            self._files.pop(account_id, None)

    def query_file_records(self, query: FileQuery | None = None) -> list[FileRecord]:
        query = query or FileQuery()
        with self._lock:
            records = [
                FileRecord.from_dict(d)
                for bucket in self._files.values()
                for d in bucket.values()
            ]
        return _newest_first([r for r in records if query.matches(r)])

    def save_transfer_job(self, job: TransferJob) -> None:
        with self._lock:
            self._jobs[job.id] = job.to_dict()

    def update_transfer_job(self, job: TransferJob) -> None:
        with self._lock:
            if job.id not in self._jobs:
                raise StorageError("Unknown transfer job", job.id)
            self._jobs[job.id] = job.to_dict()

    def get_transfer_job(self, job_id: str) -> TransferJob | None:
        with self._lock:
            data = self._jobs.get(job_id)
        return TransferJob.from_dict(data) if data else None

    def list_transfer_jobs(
        self, state: TransferState | None = None, account_id: str | None = None
    ) -> list[TransferJob]:
        with self._lock:
            jobs = [TransferJob.from_dict(d) for d in self._jobs.values()]
        jobs = [
            j for j in jobs
            if (state is None or j.state == state)
            and (account_id is None or j.account_id == account_id)
        ]
        return sorted(jobs, key=lambda j: (j.created_at, j.id))


class JsonFilePersistence(Persistence):
    """
    Record store backed by JSON files.

    Layout::

        <root>/accounts/<account>.json
        <root>/files/<account>.json      (all records of one account)
        <root>/transfers/<job>.json

    Writes go to a temporary file that then replaces the target, so a reader
    never sees a half-written record.

    Example:
        >>> store = JsonFilePersistence('~/.drivepool')
        >>> store.list_accounts()
        []
    """

    def __init__(self, root: str | Path) -> None:
        """
        Initialize the store, creating its directories.

        Raises:
            StorageError: If the directories cannot be created.
        """
        self.root = Path(root).expanduser()
        self._lock = threading.RLock()
        self._accounts_dir = self.root / "accounts"
        self._files_dir = self.root / "files"
        self._jobs_dir = self.root / "transfers"

        try:
            for directory in (self.root, self._accounts_dir, self._files_dir, self._jobs_dir):
                directory.mkdir(parents=True, exist_ok=True)
                os.chmod(directory, 0o700)
        except PermissionError as e:
            raise StorageError("Permission denied creating directory", str(self.root)) from e
        except OSError as e:
            raise StorageError(f"Failed to create directory: {e}", str(self.root)) from e

        logger.info(f"Initialized record store: {self.root}")

    @staticmethod
    def _safe_name(identifier: str) -> str:
        return "".join(c if c.isalnum() or c in "-_." else "_" for c in identifier)

    def _write(self, path: Path, data: Any) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            try:
                os.chmod(tmp_path, 0o600)
            except OSError as e:
                logger.warning(f"Could not set permissions on {tmp_path}: {e}")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write record: {e}", str(path)) from e

    def _read(self, path: Path) -> Any | None:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read record: {e}", str(path)) from e

    def _account_path(self, account_id: str) -> Path:
        return self._accounts_dir / f"{self._safe_name(account_id)}.json"

    def _files_path(self, account_id: str) -> Path:
        return self._files_dir / f"{self._safe_name(account_id)}.json"

    def _job_path(self, job_id: str) -> Path:
        return self._jobs_dir / f"{self._safe_name(job_id)}.json"

    def save_account(self, account: Account) -> None:
        with self._lock:
            self._write(self._account_path(account.id), account.to_dict())

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            data = self._read(self._account_path(account_id))
        return Account.from_dict(data) if data else None

    def list_accounts(self) -> list[Account]:
        with self._lock:
            accounts = [
                Account.from_dict(self._read(p))
                for p in self._accounts_dir.glob("*.json")
            ]
        return _by_creation(accounts)

    def delete_account(self, account_id: str) -> bool:
        with self._lock:
            path = self._account_path(account_id)
            existed = path.exists()
            path.unlink(missing_ok=True)
            self._files_path(account_id).unlink(missing_ok=True)
            for job in self.list_transfer_jobs(account_id=account_id):
                self._job_path(job.id).unlink(missing_ok=True)
        if existed:
            logger.info(f"Deleted account record {account_id}")
        return existed

    def save_file_records(self, account_id: str, records: list[FileRecord]) -> None:
        with self._lock:
            path = self._files_path(account_id)
            bucket = self._read(path) or {}
            for record in records:
                bucket[record.record_id] = record.to_dict()
            self._write(path, bucket)

    def clear_file_records(self, account_id: str) -> None:
        with self._lock:
            self._files_path(account_id).unlink(missing_ok=True)

    def query_file_records(self, query: FileQuery | None = None) -> list[FileRecord]:
        query = query or FileQuery()
        with self._lock:
            if query.account_id:
                paths = [self._files_path(query.account_id)]
            else:
                paths = list(self._files_dir.glob("*.json"))
            records = [
                FileRecord.from_dict(d)
                for p in paths
                for d in (self._read(p) or {}).values()
            ]
        return _newest_first([r for r in records if query.matches(r)])

    def save_transfer_job(self, job: TransferJob) -> None:
        with self._lock:
            self._write(self._job_path(job.id), job.to_dict())

    def update_transfer_job(self, job: TransferJob) -> None:
        with self._lock:
            path = self._job_path(job.id)
            if not path.exists():
                raise StorageError("Unknown transfer job", job.id)
            self._write(path, job.to_dict())

    def get_transfer_job(self, job_id: str) -> TransferJob | None:
        with self._lock:
            data = self._read(self._job_path(job_id))
        return TransferJob.from_dict(data) if data else None

    def list_transfer_jobs(
        self, state: TransferState | None = None, account_id: str | None = None
    ) -> list[TransferJob]:
        with self._lock:
            jobs = [TransferJob.from_dict(self._read(p)) for p in self._jobs_dir.glob("*.json")]
        jobs = [
            j for j in jobs
            if (state is None or j.state == state)
            and (account_id is None or j.account_id == account_id)
        ]
        return sorted(jobs, key=lambda j: (j.created_at, j.id))
