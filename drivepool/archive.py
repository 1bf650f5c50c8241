"""
Restore archives.

Streams files from one or many accounts into a single ZIP archive. The
archive is produced lazily, chunk by chunk, and never needs the whole
output in memory: each file is downloaded into a bounded spool (memory up to
a threshold, then a temporary file), written into its ZIP entry and
released before the next one starts.

A file that cannot be fetched does not abort the archive. Its entry is
replaced by a small text file under ``errors/`` explaining what went wrong,
so the archive always holds one entry per requested file.
"""

from __future__ import annotations

import logging
import tempfile
import zipfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, BinaryIO

from drivepool.exceptions import DrivePoolError, PartialArchiveError, StorageError
from drivepool.models import utcnow
from drivepool.persistence import FileQuery

if TYPE_CHECKING:
    from drivepool.backends.base import RemoteStore
    from drivepool.models import Account, FileRecord
    from drivepool.persistence import Persistence
    from drivepool.registry import AccountRegistry

__all__ = ["ArchiveReport", "ArchiveStream", "DownloadStream", "ArchiveComposer"]

logger = logging.getLogger(__name__)

ZIP_CONTENT_TYPE = "application/zip"
ERRORS_DIR = "errors"

_COPY_CHUNK = 1024 * 1024
_ZIP64_LIMIT = (1 << 31) - 1
_UNKNOWN = "unknown"


@dataclass
class ArchiveReport:
    """
    What ended up in an archive. Filled in while the archive streams.

    Attributes:
        requested: Number of record ids requested.
        entries: Names of the file entries written.
        failures: Error message per record id that became an error marker.
    """

    requested: int = 0
    entries: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        """
        Raises:
            PartialArchiveError: If any entry is an error marker.
        """
        if self.failures:
            raise PartialArchiveError(self.failures)


class ArchiveStream:
    """A lazily generated ZIP archive."""

    content_type = ZIP_CONTENT_TYPE

    def __init__(self, filename: str, chunks: Iterator[bytes], report: ArchiveReport) -> None:
        self.filename = filename
        self.report = report
        self._chunks = chunks

    def __iter__(self) -> Iterator[bytes]:
        return self._chunks

    def write_to(self, fileobj: BinaryIO) -> int:
        """Write the whole archive to ``fileobj``; return the byte count."""
        total = 0
        for chunk in self._chunks:
            fileobj.write(chunk)
            total += len(chunk)
        return total


@dataclass
class DownloadStream:
    """One remote file as a stream of bytes."""

    filename: str
    content_type: str
    size: int
    chunks: Iterator[bytes]

    def __iter__(self) -> Iterator[bytes]:
        return self.chunks


class _Sink:
    """Write-only buffer handed to ``zipfile``; drained after each write."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def write(self, data: bytes) -> int:
        self._buffer.extend(data)
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


def _safe_component(value: str) -> str:
    cleaned = value.replace("/", "_").replace("\\", "_").strip()
    return cleaned if cleaned not in ("", ".", "..") else "_"


class _EntryNames:
    """Hands out unique entry names: ``a.txt``, ``a (1).txt``, ``a (2).txt``."""

    def __init__(self) -> None:
        self._taken: set[str] = set()

    def claim(self, name: str) -> str:
        candidate = name
        counter = 0
        while candidate in self._taken:
            counter += 1
            head, slash, tail = name.rpartition("/")
            stem, dot, ext = tail.rpartition(".")
            if not stem:
                stem, dot, ext = tail, "", ""
            candidate = f"{head}{slash}{stem} ({counter}){dot}{ext}"
        self._taken.add(candidate)
        return candidate


class ArchiveComposer:
    """
    Builds restore archives from stored file records.

    Example:
        >>> composer = ArchiveComposer(registry, persistence)
        >>> archive = composer.compose(['acct-1-abc', 'acct-2-def'], passphrase='...')
        >>> with open(archive.filename, 'wb') as f:
        ...     archive.write_to(f)
        >>> archive.report.raise_for_failures()
    """

    def __init__(
        self,
        registry: AccountRegistry,
        persistence: Persistence,
        spool_threshold: int = 16 * 1024 * 1024,
        compresslevel: int = 1,
    ) -> None:
        self.registry = registry
        self.persistence = persistence
        self.spool_threshold = spool_threshold
        self.compresslevel = compresslevel

    def compose(self, record_ids: Iterable[str], passphrase: str | None = None) -> ArchiveStream:
        """
        Start a restore archive.

        Nothing is downloaded until the returned stream is iterated. Accounts
        are processed in creation order and each account's credential is
        resolved once.

        Args:
            record_ids: File record ids to include.
            passphrase: Used when an access credential needs refreshing.
        """
        record_ids = list(dict.fromkeys(record_ids))
        report = ArchiveReport(requested=len(record_ids))
        filename = f"drivepool-restore-{utcnow():%Y%m%d-%H%M%S}.zip"
        return ArchiveStream(filename, self._generate(record_ids, passphrase, report), report)

    def open_file(self, record_id: str, passphrase: str | None = None) -> DownloadStream:
        """
        Stream a single stored file.

        Raises:
            StorageError: If the record id is unknown.
        """
        matches = self.persistence.query_file_records(FileQuery(record_ids=[record_id]))
        if not matches:
            raise StorageError("Unknown file record", record_id)
        record = matches[0]
        store = self.registry.open_store(record.account_id, passphrase)
        try:
            chunks = store.download(record.remote_id)
        except DrivePoolError:
            store.close()
            raise
        return DownloadStream(
            filename=record.name,
            content_type=record.content_type,
            size=record.size_bytes,
            chunks=self._closing(chunks, store),
        )

    @staticmethod
    def _closing(chunks: Iterator[bytes], store: RemoteStore) -> Iterator[bytes]:
        try:
            yield from chunks
        finally:
            store.close()

    def _generate(
        self, record_ids: list[str], passphrase: str | None, report: ArchiveReport
    ) -> Iterator[bytes]:
        records = {
            r.record_id: r
            for r in self.persistence.query_file_records(FileQuery(record_ids=record_ids))
        }
        accounts = {a.id: a for a in self.registry.list_accounts()}

        # Group by account in creation order; orphans (unknown record or account) last.
        groups: dict[str | None, list[str]] = {account_id: [] for account_id in accounts}
        groups[None] = []
        for record_id in record_ids:
            record = records.get(record_id)
            key = record.account_id if record and record.account_id in accounts else None
            groups[key].append(record_id)

        sink = _Sink()
        names = _EntryNames()
        logger.info(f"Composing archive of {len(record_ids)} file(s)")

        with zipfile.ZipFile(
            sink, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=self.compresslevel
        ) as zf:
            for account_id, ids in groups.items():
                if not ids:
                    continue
                account = accounts.get(account_id) if account_id else None
                store: RemoteStore | None = None
                account_error: str | None = None

                if account is None:
                    account_error = "Unknown file record or account"
                else:
                    try:
                        store = self.registry.open_store(account.id, passphrase)
                    except DrivePoolError as e:
                        account_error = f"Could not access account: {e}"
                        logger.warning(f"Archive: account {account.id} unavailable: {e}")

                try:
                    for record_id in ids:
                        record = records.get(record_id)
                        if store is None or record is None:
                            self._write_marker(
                                zf, names, report, record_id, record, account,
                                account_error or "Unknown file record",
                            )
                        else:
                            yield from self._write_file(zf, sink, names, report, record, account, store)
                        if chunk := sink.drain():
                            yield chunk
                finally:
                    if store is not None:
                        store.close()

        yield sink.drain()
        logger.info(
            f"Archive complete: {len(report.entries)} file(s), {len(report.failures)} error marker(s)"
        )

    def _write_file(
        self,
        zf: zipfile.ZipFile,
        sink: _Sink,
        names: _EntryNames,
        report: ArchiveReport,
        record: FileRecord,
        account: Account,
        store: RemoteStore,
    ) -> Iterator[bytes]:
        try:
            with tempfile.SpooledTemporaryFile(max_size=self.spool_threshold) as spool:
                size = 0
                for chunk in store.download(record.remote_id):
                    spool.write(chunk)
                    size += len(chunk)
                spool.seek(0)

                name = names.claim(
                    f"{_safe_component(account.email)}/{_safe_component(record.name)}"
                )
                with zf.open(name, "w", force_zip64=size > _ZIP64_LIMIT) as entry:
                    while data := spool.read(_COPY_CHUNK):
                        entry.write(data)
                        if chunk := sink.drain():
                            yield chunk
        except (DrivePoolError, OSError) as e:
            logger.warning(f"Archive: could not add {record.name} from {account.id}: {e}")
            self._write_marker(zf, names, report, record.record_id, record, account, str(e))
            return

        report.entries.append(name)

    def _write_marker(
        self,
        zf: zipfile.ZipFile,
        names: _EntryNames,
        report: ArchiveReport,
        record_id: str,
        record: FileRecord | None,
        account: Account | None,
        error: str,
    ) -> None:
        email = account.email if account else _UNKNOWN
        file_name = record.name if record else record_id
        marker = names.claim(
            f"{ERRORS_DIR}/{_safe_component(email)}/{_safe_component(file_name)}.error.txt"
        )
        zf.writestr(
            marker,
            f"Failed to include {file_name}\n"
            f"Record: {record_id}\n"
            f"Account: {email}\n"
            f"Error: {error}\n",
        )
        report.failures[record_id] = error
