"""
Local directory provider.

A capacity-capped directory acts as one storage account. Objects live under
``objects/``, their metadata in ``index.json`` and resumable sessions as
``sessions/<token>.part`` files with a JSON sidecar. Files are written with
0o600 permissions and directories with 0o700.

Useful for offline accounts (an external disk, a NAS mount) and tests.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import secrets
import threading
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from drivepool.backends.base import RemoteAuth, RemoteStore, SessionStatus
from drivepool.exceptions import (
    ProtocolError,
    RemoteAuthError,
    RemoteRejectedError,
    RemoteUnavailableError,
    SessionExpiredError,
)
from drivepool.models import (
    AccessToken,
    FileRecord,
    Identity,
    ProviderKind,
    QuotaSnapshot,
    TokenBundle,
    utcnow,
)

if TYPE_CHECKING:
    from typing import Any

__all__ = ["LocalDirectoryStore", "LocalAuth"]

logger = logging.getLogger(__name__)

_PROVIDER = ProviderKind.LOCAL.value
_TOKEN_PREFIX = "local"
_LABEL_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]{0,63}$")


class LocalDirectoryStore(RemoteStore):
    """
    Remote store backed by a local directory.

    Attributes:
        directory: Root directory of the account.
        capacity_bytes: Storage limit, or None for unlimited.

    Example:
        >>> store = LocalDirectoryStore('acct-1', '/mnt/backup', capacity_bytes=10**9)
        >>> store.get_quota().free_bytes
        1000000000
    """

    READ_CHUNK_SIZE = 1024 * 1024

    def __init__(
        self,
        account_id: str,
        directory: str | Path,
        capacity_bytes: int | None = None,
        page_size: int = 100,
        **kwargs: Any,
    ) -> None:
        """
        Initialize the store, creating its directory layout.

        Raises:
            RemoteUnavailableError: If the directory cannot be created.
        """
        super().__init__(account_id, **kwargs)
        self.directory = Path(directory).expanduser()
        self.capacity_bytes = capacity_bytes
        self.page_size = page_size
        self._objects = self.directory / "objects"
        self._sessions = self.directory / "sessions"
        self._index_path = self.directory / "index.json"
        self._lock = threading.RLock()

        try:
            for path in (self.directory, self._objects, self._sessions):
                path.mkdir(parents=True, exist_ok=True)
                os.chmod(path, 0o700)
        except OSError as e:
            raise RemoteUnavailableError(
                f"Cannot prepare directory {self.directory}: {e}", provider=_PROVIDER
            ) from e

    @property
    def provider(self) -> ProviderKind:
        return ProviderKind.LOCAL

    def _load_index(self) -> dict[str, dict[str, Any]]:
        try:
            return json.loads(self._index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Corrupt index {self._index_path}: {e}", provider=_PROVIDER) from e
        except OSError as e:
            raise RemoteUnavailableError(f"Cannot read index: {e}", provider=_PROVIDER) from e

    def _save_index(self, index: dict[str, dict[str, Any]]) -> None:
        tmp_path = self._index_path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(index, indent=2), encoding="utf-8")
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._index_path)
        except OSError as e:
            raise RemoteUnavailableError(f"Cannot write index: {e}", provider=_PROVIDER) from e

    def _used_bytes(self, index: dict[str, dict[str, Any]]) -> int:
        return sum(int(entry["size"]) for entry in index.values())

    def _in_flight_bytes(self, exclude: Path | None = None) -> int:
        """Bytes already written to open sessions and pending simple uploads."""
        total = 0
        for path in self._sessions.iterdir():
            if path == exclude:
                continue
            if path.suffix == ".simple" or (
                path.suffix == ".part" and path.with_suffix(".json").exists()
            ):
                try:
                    total += path.stat().st_size
                except FileNotFoundError:
                    continue
        return total

    def _ensure_room(
        self, index: dict[str, dict[str, Any]], size: int, exclude: Path | None = None
    ) -> None:
        if self.capacity_bytes is None:
            return
        if self._used_bytes(index) + self._in_flight_bytes(exclude) + size > self.capacity_bytes:
            raise RemoteRejectedError(
                "Storage quota exceeded", provider=_PROVIDER, status_code=403
            )

    def _to_record(self, remote_id: str, entry: dict[str, Any]) -> FileRecord:
        return FileRecord.from_dict({
            "remote_id": remote_id,
            "account_id": self.account_id,
            "name": entry["name"],
            "size_bytes": entry["size"],
            "content_type": entry.get("content_type"),
            "modified_time": entry.get("modified_time"),
            "created_time": entry.get("created_time"),
        })

    def _commit(self, name: str, content_type: str, source: Path) -> str:
        """Move a finished file into ``objects/`` and index it."""
        with self._lock:
            index = self._load_index()
            size = source.stat().st_size
            try:
                self._ensure_room(index, size, exclude=source)
            except RemoteRejectedError:
                source.unlink(missing_ok=True)
                raise
            remote_id = secrets.token_hex(12)
            target = self._objects / remote_id
            os.replace(source, target)
            try:
                os.chmod(target, 0o600)
            except OSError as e:
                logger.warning(f"Could not set permissions on {target}: {e}")
            now = utcnow().isoformat()
            index[remote_id] = {
                "name": name,
                "size": size,
                "content_type": content_type,
                "created_time": now,
                "modified_time": now,
            }
            self._save_index(index)
        return remote_id

    def get_quota(self) -> QuotaSnapshot:
        with self._lock:
            used = self._used_bytes(self._load_index())
        return QuotaSnapshot(bytes_total=self.capacity_bytes, bytes_used=used)

    def list_all(self, query: str | None = None) -> Iterator[FileRecord]:
        with self._lock:
            items = sorted(self._load_index().items())
        if query:
            items = [(k, v) for k, v in items if query.lower() in v["name"].lower()]
        for start in range(0, len(items), self.page_size):
            for remote_id, entry in items[start:start + self.page_size]:
                yield self._to_record(remote_id, entry)

    def download(self, remote_id: str) -> Iterator[bytes]:
        path = self._objects / remote_id
        if not re.fullmatch(r"[0-9a-f]+", remote_id) or not path.exists():
            raise RemoteRejectedError(
                f"File not found: {remote_id}", provider=_PROVIDER, status_code=404
            )
        return self._read_chunks(path)

    def _read_chunks(self, path: Path) -> Iterator[bytes]:
        try:
            with path.open("rb") as f:
                while chunk := f.read(self.READ_CHUNK_SIZE):
                    yield chunk
        except OSError as e:
            raise RemoteUnavailableError(f"Read failed: {e}", provider=_PROVIDER) from e

    def delete(self, remote_id: str) -> None:
        with self._lock:
            index = self._load_index()
            if remote_id not in index:
                raise RemoteRejectedError(
                    f"File not found: {remote_id}", provider=_PROVIDER, status_code=404
                )
            del index[remote_id]
            (self._objects / remote_id).unlink(missing_ok=True)
            self._save_index(index)
        logger.info(f"Deleted {remote_id} from {self.account_id}")

    def _upload_simple(self, name: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self._ensure_room(self._load_index(), len(data))
        tmp_path = self._sessions / f"{secrets.token_hex(8)}.simple"
        try:
            tmp_path.write_bytes(data)
        except OSError as e:
            raise RemoteUnavailableError(f"Write failed: {e}", provider=_PROVIDER) from e
        return self._commit(name, content_type, tmp_path)

    def _session_paths(self, session_token: str) -> tuple[Path, Path]:
        if not re.fullmatch(r"[0-9a-f]{32}", session_token):
            raise SessionExpiredError("Unknown upload session", provider=_PROVIDER, status_code=404)
        return (
            self._sessions / f"{session_token}.part",
            self._sessions / f"{session_token}.json",
        )

    def _start_session(self, name: str, size: int, content_type: str) -> str:
        with self._lock:
            self._ensure_room(self._load_index(), size)
        token = secrets.token_hex(16)
        part, meta = self._session_paths(token)
        meta.write_text(
            json.dumps({"name": name, "size": size, "content_type": content_type}),
            encoding="utf-8",
        )
        part.touch(mode=0o600)
        return token

    def _query_session(self, session_token: str, size: int) -> SessionStatus:
        part, meta = self._session_paths(session_token)
        if not meta.exists() or not part.exists():
            raise SessionExpiredError("Unknown upload session", provider=_PROVIDER, status_code=404)
        return SessionStatus(offset=part.stat().st_size)

    def _send_chunk(
        self, session_token: str, offset: int, data: bytes, size: int
    ) -> SessionStatus:
        part, meta = self._session_paths(session_token)
        if not meta.exists():
            raise SessionExpiredError("Unknown upload session", provider=_PROVIDER, status_code=404)
        current = part.stat().st_size
        if offset != current:
            # Only the acknowledged prefix is kept; the caller re-syncs.
            return SessionStatus(offset=current)
        try:
            with part.open("ab") as f:
                f.write(data)
        except OSError as e:
            raise RemoteUnavailableError(f"Write failed: {e}", provider=_PROVIDER) from e

        received = offset + len(data)
        if received < size:
            return SessionStatus(offset=received)

        info = json.loads(meta.read_text(encoding="utf-8"))
        try:
            remote_id = self._commit(info["name"], info["content_type"], part)
        except RemoteRejectedError:
            meta.unlink(missing_ok=True)
            raise
        meta.unlink(missing_ok=True)
        return SessionStatus(offset=size, remote_id=remote_id)


class LocalAuth(RemoteAuth):
    """
    Token issuer for local directory accounts.

    The authorization code is the account label. Tokens are random strings
    that carry the label, so identity can be recovered from any of them.
    """

    def __init__(self, token_lifetime: timedelta = timedelta(hours=1)) -> None:
        self.token_lifetime = token_lifetime

    @property
    def provider(self) -> ProviderKind:
        return ProviderKind.LOCAL

    def _issue(self, label: str) -> str:
        return f"{_TOKEN_PREFIX}:{label}:{secrets.token_urlsafe(24)}"

    @staticmethod
    def _label_of(token: str) -> str:
        parts = token.split(":")
        if len(parts) != 3 or parts[0] != _TOKEN_PREFIX or not _LABEL_RE.match(parts[1]):
            raise RemoteAuthError("Invalid local token", provider=_PROVIDER, status_code=401)
        return parts[1]

    def exchange_code_for_tokens(self, code: str) -> TokenBundle:
        if not _LABEL_RE.match(code or ""):
            raise RemoteAuthError("Invalid account label", provider=_PROVIDER, status_code=400)
        return TokenBundle(
            access_token=self._issue(code),
            refresh_token=self._issue(code),
            expires_at=utcnow() + self.token_lifetime,
            scope="local",
        )

    def refresh(self, refresh_token: str) -> AccessToken:
        label = self._label_of(refresh_token)
        return AccessToken(self._issue(label), utcnow() + self.token_lifetime)

    def get_identity(self, access_token: str) -> Identity:
        label = self._label_of(access_token)
        digest = hashlib.sha256(label.encode("utf-8")).hexdigest()[:12]
        return Identity(id=f"local-{digest}", email=f"{label}@local", name=label)
