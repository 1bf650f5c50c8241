"""
Domain records for DrivePool.

Accounts, quota snapshots, cached tokens, file descriptors, placement plans,
transfer jobs and progress events. Every persisted record round-trips through
``to_dict`` / ``from_dict`` so the persistence layer only ever sees plain
JSON-compatible data.
"""

from __future__ import annotations

import mimetypes
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from drivepool.exceptions import ConfigurationError, TransferStateError
from drivepool.vault import CipherBlob

if TYPE_CHECKING:
    from typing import Any

__all__ = [
    "ProviderKind",
    "QuotaSnapshot",
    "AccessToken",
    "TokenBundle",
    "Identity",
    "Account",
    "FileDescriptor",
    "FileRecord",
    "Assignment",
    "PlacementPlan",
    "TransferState",
    "TransferJob",
    "EventKind",
    "TransferEvent",
    "utcnow",
]

# Free capacity reported for accounts without a storage limit.
UNLIMITED_BYTES: int = sys.maxsize

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt_from_str(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ProviderKind(Enum):
    """Remote storage provider behind an account."""

    LOCAL = "local"
    GOOGLE_DRIVE = "google_drive"
    AWS_S3 = "aws_s3"


@dataclass
class QuotaSnapshot:
    """
    Point-in-time capacity of an account.

    Attributes:
        bytes_total: Storage limit, or None when the account is unlimited.
        bytes_used: Bytes in use according to the remote.
        taken_at: When the snapshot was read.
    """

    bytes_total: int | None
    bytes_used: int
    taken_at: datetime = field(default_factory=utcnow)

    @property
    def free_bytes(self) -> int:
        """Free capacity; never negative, even if the remote over-reports usage."""
        if self.bytes_total is None:
            return UNLIMITED_BYTES
        return max(0, self.bytes_total - self.bytes_used)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bytes_total": self.bytes_total,
            "bytes_used": self.bytes_used,
            "taken_at": _dt_to_str(self.taken_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuotaSnapshot:
        return cls(
            bytes_total=data.get("bytes_total"),
            bytes_used=int(data.get("bytes_used", 0)),
            taken_at=_dt_from_str(data.get("taken_at")) or utcnow(),
        )


@dataclass
class AccessToken:
    """Short-lived access credential with its expiry instant."""

    token: str
    expires_at: datetime

    def is_expired(self, now: datetime | None = None, skew_seconds: int = 60) -> bool:
        """Check expiry, treating the last ``skew_seconds`` as already expired."""
        now = now or utcnow()
        return now >= self.expires_at - timedelta(seconds=skew_seconds)

    def __repr__(self) -> str:
        return f"AccessToken(token='***', expires_at={self.expires_at!r})"

    def to_dict(self) -> dict[str, Any]:
        return {"token": self.token, "expires_at": _dt_to_str(self.expires_at)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccessToken:
        return cls(token=data["token"], expires_at=_dt_from_str(data["expires_at"]))


@dataclass
class TokenBundle:
    """Result of an authorization code exchange."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str = ""

    def __repr__(self) -> str:
        return f"TokenBundle(access_token='***', refresh_token='***', expires_at={self.expires_at!r})"

    @property
    def access(self) -> AccessToken:
        return AccessToken(self.access_token, self.expires_at)


@dataclass
class Identity:
    """Who an access token belongs to."""

    id: str
    email: str
    name: str


@dataclass
class Account:
    """
    A connected remote storage account.

    Attributes:
        id: Provider-assigned identity.
        email: Account email (or provider-specific principal).
        display_name: Human-readable name.
        provider: Which remote store adapter serves this account.
        encrypted_credential: Passphrase-encrypted long-lived secret.
        provider_config: Non-secret adapter settings (bucket, directory, ...).
        quota: Last quota snapshot, if any.
        cached_token: Cached short-lived access credential, if any.
        created_at: Connection time; defines placement tie-break order.
        updated_at: Last mutation time.
    """

    id: str
    email: str
    display_name: str
    provider: ProviderKind
    encrypted_credential: CipherBlob
    provider_config: dict[str, Any] = field(default_factory=dict)
    quota: QuotaSnapshot | None = None
    cached_token: AccessToken | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def free_bytes(self) -> int:
        """Free capacity from the last snapshot (0 when never refreshed)."""
        return self.quota.free_bytes if self.quota else 0

    def public_dict(self) -> dict[str, Any]:
        """Account fields that are safe to display."""
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "provider": self.provider.value,
            "quota": self.quota.to_dict() if self.quota else None,
            "created_at": _dt_to_str(self.created_at),
            "updated_at": _dt_to_str(self.updated_at),
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.public_dict()
        data["provider_config"] = dict(self.provider_config)
        data["encrypted_credential"] = self.encrypted_credential.to_dict()
        data["cached_token"] = self.cached_token.to_dict() if self.cached_token else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Account:
        return cls(
            id=data["id"],
            email=data["email"],
            display_name=data.get("display_name", ""),
            provider=ProviderKind(data["provider"]),
            encrypted_credential=CipherBlob.from_dict(data["encrypted_credential"]),
            provider_config=dict(data.get("provider_config") or {}),
            quota=QuotaSnapshot.from_dict(data["quota"]) if data.get("quota") else None,
            cached_token=(
                AccessToken.from_dict(data["cached_token"]) if data.get("cached_token") else None
            ),
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            updated_at=_dt_from_str(data.get("updated_at")) or utcnow(),
        )


@dataclass
class FileDescriptor:
    """A file to be placed and uploaded."""

    name: str
    size_bytes: int
    content_type: str = DEFAULT_CONTENT_TYPE
    path: Path | None = None

    @classmethod
    def from_path(cls, path: str | Path, name: str | None = None) -> FileDescriptor:
        """Describe a local file, guessing its content type from the name."""
        path = Path(path)
        content_type, _ = mimetypes.guess_type(path.name)
        return cls(
            name=name or path.name,
            size_bytes=path.stat().st_size,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            path=path,
        )

    def open(self) -> BinaryIO:
        """Open the upload source for binary reading."""
        if self.path is None:
            raise ConfigurationError(f"No local source for {self.name}")
        return self.path.open("rb")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "size_bytes": self.size_bytes,
            "content_type": self.content_type,
            "path": str(self.path) if self.path else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileDescriptor:
        return cls(
            name=data["name"],
            size_bytes=int(data["size_bytes"]),
            content_type=data.get("content_type") or DEFAULT_CONTENT_TYPE,
            path=Path(data["path"]) if data.get("path") else None,
        )


@dataclass
class FileRecord:
    """A file known to live on a remote account."""

    remote_id: str
    account_id: str
    name: str
    size_bytes: int
    content_type: str = DEFAULT_CONTENT_TYPE
    parent_id: str | None = None
    modified_time: datetime | None = None
    created_time: datetime | None = None

    @property
    def record_id(self) -> str:
        return f"{self.account_id}-{self.remote_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "remote_id": self.remote_id,
            "account_id": self.account_id,
            "name": self.name,
            "size_bytes": self.size_bytes,
            "content_type": self.content_type,
            "parent_id": self.parent_id,
            "modified_time": _dt_to_str(self.modified_time),
            "created_time": _dt_to_str(self.created_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileRecord:
        return cls(
            remote_id=data["remote_id"],
            account_id=data["account_id"],
            name=data["name"],
            size_bytes=int(data["size_bytes"]),
            content_type=data.get("content_type") or DEFAULT_CONTENT_TYPE,
            parent_id=data.get("parent_id"),
            modified_time=_dt_from_str(data.get("modified_time")),
            created_time=_dt_from_str(data.get("created_time")),
        )


@dataclass
class Assignment:
    """One file assigned to one account."""

    file: FileDescriptor
    account_id: str


@dataclass
class PlacementPlan:
    """
    Advisory mapping of files to accounts.

    Attributes:
        assignments: Files in placement order (largest first).
        unplaced: Files that fit on no account.
    """

    assignments: list[Assignment] = field(default_factory=list)
    unplaced: list[FileDescriptor] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.unplaced

    def account_for(self, name: str) -> str | None:
        for assignment in self.assignments:
            if assignment.file.name == name:
                return assignment.account_id
        return None

    def by_account(self) -> dict[str, list[FileDescriptor]]:
        """Group assigned files per account, preserving placement order."""
        grouped: dict[str, list[FileDescriptor]] = {}
        for assignment in self.assignments:
            grouped.setdefault(assignment.account_id, []).append(assignment.file)
        return grouped


class TransferState(Enum):
    """Lifecycle state of a transfer job."""

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


_TRANSITIONS: dict[TransferState, set[TransferState]] = {
    TransferState.PENDING: {TransferState.UPLOADING, TransferState.FAILED, TransferState.PAUSED},
    TransferState.UPLOADING: {
        TransferState.COMPLETED,
        TransferState.FAILED,
        TransferState.PAUSED,
        TransferState.PENDING,
    },
    TransferState.PAUSED: {TransferState.UPLOADING, TransferState.PENDING},
    TransferState.FAILED: {TransferState.PENDING},
    TransferState.COMPLETED: set(),
}


@dataclass
class TransferJob:
    """
    One file upload to one account.

    Only the transfer coordinator mutates jobs. ``completed`` is final;
    ``failed`` only leaves through an explicit retry back to ``pending``.
    """

    id: str
    file: FileDescriptor
    account_id: str
    state: TransferState = TransferState.PENDING
    bytes_transferred: int = 0
    session_token: str | None = None
    error: str | None = None
    remote_file_id: str | None = None
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (TransferState.COMPLETED, TransferState.FAILED)

    def advance(self, state: TransferState, error: str | None = None) -> None:
        """Move to ``state``, enforcing the allowed transitions."""
        if state not in _TRANSITIONS[self.state]:
            raise TransferStateError(self.id, self.state.value, state.value)
        self.state = state
        if state == TransferState.FAILED:
            self.error = error
        elif state == TransferState.COMPLETED:
            self.error = None
            self.completed_at = utcnow()

    def reset(self) -> None:
        """Return to ``pending`` with no session and no progress."""
        self.advance(TransferState.PENDING)
        self.session_token = None
        self.bytes_transferred = 0
        self.error = None

    def record_progress(self, bytes_transferred: int) -> bool:
        """Raise the progress mark; lower values are ignored. Returns True if it moved."""
        if bytes_transferred <= self.bytes_transferred:
            return False
        self.bytes_transferred = min(bytes_transferred, self.file.size_bytes)
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file": self.file.to_dict(),
            "account_id": self.account_id,
            "state": self.state.value,
            "bytes_transferred": self.bytes_transferred,
            "session_token": self.session_token,
            "error": self.error,
            "remote_file_id": self.remote_file_id,
            "attempts": self.attempts,
            "created_at": _dt_to_str(self.created_at),
            "completed_at": _dt_to_str(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransferJob:
        return cls(
            id=data["id"],
            file=FileDescriptor.from_dict(data["file"]),
            account_id=data["account_id"],
            state=TransferState(data["state"]),
            bytes_transferred=int(data.get("bytes_transferred", 0)),
            session_token=data.get("session_token"),
            error=data.get("error"),
            remote_file_id=data.get("remote_file_id"),
            attempts=int(data.get("attempts", 0)),
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            completed_at=_dt_from_str(data.get("completed_at")),
        )


class EventKind(Enum):
    """Kind of transfer event."""

    PROGRESS = "progress"
    STATE = "state"


@dataclass(frozen=True)
class TransferEvent:
    """A progress or state change published by the transfer coordinator."""

    job_id: str
    account_id: str
    kind: EventKind
    state: TransferState
    bytes_transferred: int
    total_bytes: int
    error: str | None = None

    @property
    def percentage(self) -> float:
        if self.total_bytes <= 0:
            return 100.0 if self.state == TransferState.COMPLETED else 0.0
        return round(100.0 * self.bytes_transferred / self.total_bytes, 2)
