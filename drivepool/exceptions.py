"""
Custom exceptions for DrivePool.

This module defines the error taxonomy shared by the vault, the account
registry, the remote store adapters, the transfer coordinator and the
archive composer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from drivepool.models import FileDescriptor


class DrivePoolError(Exception):
    """Base exception for all DrivePool errors."""

    pass


class ConfigurationError(DrivePoolError):
    """Raised when settings or provider configuration are invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class StorageError(DrivePoolError):
    """Raised when the local record store cannot be read or written."""

    def __init__(self, message: str, location: str | None = None) -> None:
        full_message = f"{message}: {location}" if location else message
        super().__init__(full_message)
        self.location = location


class DecryptionError(DrivePoolError):
    """
    Raised when a stored secret cannot be decrypted.

    A wrong passphrase and a corrupted blob produce the same message.
    """

    def __init__(self, message: str = "Invalid passphrase or corrupted data") -> None:
        super().__init__(message)


class PassphraseTooWeakError(DrivePoolError):
    """Raised when a new passphrase does not satisfy the strength rules."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Passphrase rejected: " + "; ".join(errors))
        self.errors = list(errors)


class AccountNotFoundError(DrivePoolError):
    """Raised when an account id is unknown to the registry."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class NeedsPassphraseError(DrivePoolError):
    """Raised when a credential refresh is needed but no passphrase was given."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Passphrase required to refresh credentials for {account_id}")
        self.account_id = account_id


class RemoteError(DrivePoolError):
    """Base class for failures reported by a remote provider."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
    ) -> None:
        parts = [message]
        if provider:
            parts.append(f"provider={provider}")
        if status_code is not None:
            parts.append(f"status={status_code}")
        super().__init__(" ".join(parts))
        self.provider = provider
        self.status_code = status_code


class RemoteAuthError(RemoteError):
    """Raised when a code exchange or token refresh is rejected."""


class RemoteUnavailableError(RemoteError):
    """Raised for transient network or service faults. Retryable."""


class RemoteRejectedError(RemoteError):
    """Raised for permanent remote rejections (bad id, quota exceeded, ...)."""


class SessionExpiredError(RemoteRejectedError):
    """Raised when the remote no longer recognizes a resumable upload session."""


class ProtocolError(RemoteError):
    """Raised when a provider response does not have the expected shape."""


class UploadCancelledError(DrivePoolError):
    """Raised inside an upload when its cancel event is set."""

    def __init__(self, offset: int) -> None:
        super().__init__(f"Upload cancelled at byte {offset}")
        self.offset = offset


class CapacityExceededError(DrivePoolError):
    """Raised when no account has enough free space for one or more files."""

    def __init__(self, unplaced: list[FileDescriptor]) -> None:
        names = ", ".join(f.name for f in unplaced)
        super().__init__(f"Insufficient capacity for {len(unplaced)} file(s): {names}")
        self.unplaced = list(unplaced)


class PartialArchiveError(DrivePoolError):
    """Raised on request when some entries of an archive were error markers."""

    def __init__(self, failures: dict[str, str]) -> None:
        super().__init__(f"{len(failures)} file(s) could not be added to the archive")
        self.failures = dict(failures)


class TransferStateError(DrivePoolError):
    """Raised on an invalid transfer job state transition."""

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(f"Job {job_id}: cannot move from {current} to {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested
