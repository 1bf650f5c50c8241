"""
Abstract base classes for remote providers.

``RemoteStore`` is one account's object storage bound to a live access
credential; ``RemoteAuth`` turns authorization codes and long-lived secrets
into short-lived access credentials. Concrete providers implement a few
primitives; the resumable upload loop itself lives here so every provider
resumes, retries and cancels the same way.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, BinaryIO

from drivepool.exceptions import (
    ConfigurationError,
    RemoteUnavailableError,
    UploadCancelledError,
)

if TYPE_CHECKING:
    from drivepool.models import (
        AccessToken,
        FileRecord,
        Identity,
        ProviderKind,
        QuotaSnapshot,
        TokenBundle,
    )

__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_RESUMABLE_THRESHOLD",
    "ProgressCallback",
    "SessionStatus",
    "RemoteStore",
    "RemoteAuth",
]

logger = logging.getLogger(__name__)

DEFAULT_RESUMABLE_THRESHOLD: int = 5 * 1024 * 1024
DEFAULT_CHUNK_SIZE: int = 8 * 1024 * 1024

ProgressCallback = Callable[[int], None]


@dataclass
class SessionStatus:
    """
    Remote view of a resumable upload session.

    Attributes:
        offset: Number of bytes the remote has acknowledged.
        remote_id: Set once the remote has assembled the file.
    """

    offset: int
    remote_id: str | None = None


class RemoteStore(ABC):
    """
    One account's remote object storage.

    All operations raise ``RemoteUnavailableError`` for transient faults and
    ``RemoteRejectedError`` for permanent ones; malformed responses raise
    ``ProtocolError``.
    """

    def __init__(
        self,
        account_id: str,
        resumable_threshold: int = DEFAULT_RESUMABLE_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_chunk_retries: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if chunk_size <= 0:
            raise ConfigurationError("chunk_size must be positive")
        self.account_id = account_id
        self.resumable_threshold = resumable_threshold
        self.chunk_size = chunk_size
        self.max_chunk_retries = max_chunk_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    @property
    @abstractmethod
    def provider(self) -> ProviderKind:
        """Return the provider kind of this store."""
        ...

    def close(self) -> None:
        """Release network resources held by the store."""

    def __enter__(self) -> RemoteStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @abstractmethod
    def get_quota(self) -> QuotaSnapshot:
        """Read the live capacity of the account."""
        ...

    @abstractmethod
    def list_all(self, query: str | None = None) -> Iterator[FileRecord]:
        """
        Lazily list every file, paginating internally.

        Args:
            query: Optional name filter.

        Returns:
            A finite generator; calling again restarts from the first page.
        """
        ...

    @abstractmethod
    def download(self, remote_id: str) -> Iterator[bytes]:
        """Stream a file's content in chunks."""
        ...

    @abstractmethod
    def delete(self, remote_id: str) -> None:
        """Delete a file."""
        ...

    @abstractmethod
    def _upload_simple(self, name: str, data: bytes, content_type: str) -> str:
        """Upload a small file in one request; return its remote id."""
        ...

    @abstractmethod
    def _start_session(self, name: str, size: int, content_type: str) -> str:
        """Open a resumable session; return its token."""
        ...

    @abstractmethod
    def _query_session(self, session_token: str, size: int) -> SessionStatus:
        """
        Ask the remote how far a session got.

        Raises:
            SessionExpiredError: If the remote no longer knows the session.
        """
        ...

    @abstractmethod
    def _send_chunk(
        self, session_token: str, offset: int, data: bytes, size: int
    ) -> SessionStatus:
        """Send bytes ``[offset, offset + len(data))``; return the new status."""
        ...

    def upload(
        self,
        name: str,
        stream: BinaryIO,
        size: int,
        content_type: str = "application/octet-stream",
        on_progress: ProgressCallback | None = None,
        session_token: str | None = None,
        on_session: Callable[[str], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> str:
        """
        Upload a file.

        Files up to ``resumable_threshold`` bytes go up in one request. Larger
        files, and any call carrying ``session_token``, use the resumable
        protocol: upload continues from the offset the remote acknowledged.

        Args:
            name: Remote file name.
            stream: Seekable binary source positioned anywhere.
            size: Total size in bytes.
            content_type: MIME type.
            on_progress: Called with the acknowledged byte count.
            session_token: Existing session to resume.
            on_session: Called with the token of a newly opened session.
            cancel_event: Checked between chunks.

        Returns:
            The remote file id.

        Raises:
            UploadCancelledError: If ``cancel_event`` was set; the session stays open.
            SessionExpiredError: If ``session_token`` is no longer valid.
            RemoteUnavailableError: After ``max_chunk_retries`` transient failures.
        """
        if session_token is None and size <= self.resumable_threshold:
            if cancel_event is not None and cancel_event.is_set():
                raise UploadCancelledError(0)
            stream.seek(0)
            data = stream.read(size)
            if len(data) != size:
                raise ConfigurationError(f"Source for {name} is shorter than {size} bytes")
            remote_id = self._upload_simple(name, data, content_type)
            if on_progress:
                on_progress(size)
            logger.info(f"Uploaded {name} ({size} bytes) to {self.account_id}")
            return remote_id

        return self._upload_resumable(
            name, stream, size, content_type, on_progress, session_token, on_session, cancel_event
        )

    def _upload_resumable(
        self,
        name: str,
        stream: BinaryIO,
        size: int,
        content_type: str,
        on_progress: ProgressCallback | None,
        session_token: str | None,
        on_session: Callable[[str], None] | None,
        cancel_event: threading.Event | None,
    ) -> str:
        status: SessionStatus | None
        if session_token is None:
            session_token = self._start_session(name, size, content_type)
            if on_session:
                on_session(session_token)
            status = SessionStatus(offset=0)
            logger.info(f"Opened resumable session for {name} on {self.account_id}")
        else:
            status = None
            logger.info(f"Resuming session for {name} on {self.account_id}")

        failures = 0
        while True:
            try:
                if status is None:
                    status = self._query_session(session_token, size)
                    if on_progress:
                        on_progress(status.offset)
                if status.remote_id is not None:
                    break
                if cancel_event is not None and cancel_event.is_set():
                    raise UploadCancelledError(status.offset)

                stream.seek(status.offset)
                chunk = stream.read(min(self.chunk_size, size - status.offset))
                if not chunk:
                    raise ConfigurationError(f"Source for {name} ended at byte {status.offset}")

                status = self._send_chunk(session_token, status.offset, chunk, size)
                failures = 0
                if on_progress:
                    on_progress(status.offset if status.remote_id is None else size)

            except RemoteUnavailableError as e:
                failures += 1
                if failures > self.max_chunk_retries:
                    logger.error(f"Giving up on chunk for {name} after {failures} attempts: {e}")
                    raise
                logger.warning(f"Chunk upload for {name} failed ({e}); re-querying session")
                self._sleep(self.retry_delay * failures)
                status = None

        logger.info(f"Uploaded {name} ({size} bytes) to {self.account_id} via resumable session")
        return status.remote_id


class RemoteAuth(ABC):
    """Authorization capability of one provider."""

    @property
    @abstractmethod
    def provider(self) -> ProviderKind:
        """Return the provider kind served by this capability."""
        ...

    @abstractmethod
    def exchange_code_for_tokens(self, code: str) -> TokenBundle:
        """
        Turn an authorization code into an access/refresh token bundle.

        Raises:
            RemoteAuthError: If the code is rejected.
        """
        ...

    @abstractmethod
    def refresh(self, refresh_token: str) -> AccessToken:
        """
        Obtain a new access credential from the long-lived secret.

        Raises:
            RemoteAuthError: If the refresh is rejected.
        """
        ...

    @abstractmethod
    def get_identity(self, access_token: str) -> Identity:
        """Return who the access credential belongs to."""
        ...

    def authorization_url(self, state: str | None = None) -> str | None:
        """Return the URL that starts an interactive authorization, if any."""
        return None
