"""
Google Drive provider.

Talks to the Drive v3 REST API and Google's OAuth 2.0 endpoints over
``httpx``. Every JSON response is validated with a ``pydantic`` model before
it is used; a response that does not match raises ``ProtocolError``.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
from collections.abc import Iterator
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, TypeVar
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, Field

from drivepool.backends.base import RemoteAuth, RemoteStore, SessionStatus
from drivepool.exceptions import (
    ProtocolError,
    RemoteAuthError,
    RemoteRejectedError,
    RemoteUnavailableError,
    SessionExpiredError,
)
from drivepool.models import (
    DEFAULT_CONTENT_TYPE,
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

__all__ = ["GoogleDriveStore", "GoogleOAuth", "SCOPES"]

logger = logging.getLogger(__name__)

DRIVE_API = "https://www.googleapis.com/drive/v3"
UPLOAD_API = "https://www.googleapis.com/upload/drive/v3/files"
AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
]

_PROVIDER = ProviderKind.GOOGLE_DRIVE.value
_FILE_FIELDS = "id,name,size,mimeType,parents,modifiedTime,createdTime"
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "backendError"}
_RANGE_RE = re.compile(r"bytes=0-(\d+)")


class _StorageQuota(BaseModel):
    limit: int | None = None
    usage: int = 0


class _About(BaseModel):
    storage_quota: _StorageQuota = Field(alias="storageQuota")


class _DriveFile(BaseModel):
    id: str
    name: str
    size: int = 0
    mime_type: str = Field(default=DEFAULT_CONTENT_TYPE, alias="mimeType")
    parents: list[str] = Field(default_factory=list)
    modified_time: datetime | None = Field(default=None, alias="modifiedTime")
    created_time: datetime | None = Field(default=None, alias="createdTime")


class _FileList(BaseModel):
    files: list[_DriveFile] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")


class _UploadedFile(BaseModel):
    id: str


class _TokenResponse(BaseModel):
    access_token: str
    expires_in: int = 3600
    refresh_token: str | None = None
    scope: str = ""


class _UserInfo(BaseModel):
    id: str
    email: str
    name: str = ""


_M = TypeVar("_M", bound=BaseModel)


def _parse(model: type[_M], response: httpx.Response) -> _M:
    """Validate a JSON response body against ``model``."""
    try:
        return model.model_validate(response.json())
    except ValueError as e:
        raise ProtocolError(
            f"Unexpected response shape for {model.__name__.lstrip('_')}: {e}",
            provider=_PROVIDER,
            status_code=response.status_code,
        ) from e


def _error_reason(response: httpx.Response) -> str:
    try:
        errors = response.json().get("error", {}).get("errors", [])
        return errors[0].get("reason", "") if errors else ""
    except (ValueError, AttributeError):
        return ""


def _raise_for_status(response: httpx.Response, action: str, auth: bool = False) -> None:
    """
    Map an unsuccessful response to the DrivePool error taxonomy.

    Args:
        response: The HTTP response.
        action: What was attempted, for the message.
        auth: True for OAuth endpoints, where any 4xx is an auth failure.
    """
    if response.is_success:
        return
    status = response.status_code
    if status == 429 or status >= 500:
        raise RemoteUnavailableError(f"{action} failed", provider=_PROVIDER, status_code=status)
    if status == 403 and _error_reason(response) in _RATE_LIMIT_REASONS:
        raise RemoteUnavailableError(
            f"{action} rate limited", provider=_PROVIDER, status_code=status
        )
    if status == 401 or auth:
        raise RemoteAuthError(f"{action} unauthorized", provider=_PROVIDER, status_code=status)
    raise RemoteRejectedError(f"{action} rejected", provider=_PROVIDER, status_code=status)


def _escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class _HttpMixin:
    """Shared request plumbing for the Drive and OAuth clients."""

    _client: httpx.Client

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise RemoteUnavailableError(
                f"{method} {url} failed: {e.__class__.__name__}", provider=_PROVIDER
            ) from e

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class GoogleDriveStore(_HttpMixin, RemoteStore):
    """
    Remote store for one Google Drive account.

    Example:
        >>> store = GoogleDriveStore('1234', access_token='ya29...')
        >>> store.get_quota().free_bytes
        10737418240
    """

    def __init__(
        self,
        account_id: str,
        access_token: str,
        client: httpx.Client | None = None,
        timeout: float = 60.0,
        page_size: int = 100,
        **kwargs: Any,
    ) -> None:
        super().__init__(account_id, **kwargs)
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self.page_size = page_size

    @property
    def provider(self) -> ProviderKind:
        return ProviderKind.GOOGLE_DRIVE

    def _to_record(self, item: _DriveFile) -> FileRecord:
        return FileRecord(
            remote_id=item.id,
            account_id=self.account_id,
            name=item.name,
            size_bytes=item.size,
            content_type=item.mime_type,
            parent_id=item.parents[0] if item.parents else None,
            modified_time=item.modified_time,
            created_time=item.created_time,
        )

    def get_quota(self) -> QuotaSnapshot:
        response = self._request(
            "GET", f"{DRIVE_API}/about", params={"fields": "storageQuota"}, headers=self._headers
        )
        _raise_for_status(response, "Quota lookup")
        quota = _parse(_About, response).storage_quota
        return QuotaSnapshot(bytes_total=quota.limit, bytes_used=quota.usage)

    def list_all(self, query: str | None = None) -> Iterator[FileRecord]:
        q = "trashed=false"
        if query:
            q += f" and name contains '{_escape_query(query)}'"
        params: dict[str, Any] = {
            "q": q,
            "pageSize": self.page_size,
            "fields": f"nextPageToken, files({_FILE_FIELDS})",
            "orderBy": "modifiedTime desc",
        }
        page_token: str | None = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            response = self._request(
                "GET", f"{DRIVE_API}/files", params=params, headers=self._headers
            )
            _raise_for_status(response, "File listing")
            page = _parse(_FileList, response)
            for item in page.files:
                yield self._to_record(item)
            page_token = page.next_page_token
            if not page_token:
                break

    def download(self, remote_id: str) -> Iterator[bytes]:
        try:
            with self._client.stream(
                "GET",
                f"{DRIVE_API}/files/{remote_id}",
                params={"alt": "media"},
                headers=self._headers,
            ) as response:
                if not response.is_success:
                    response.read()
                    _raise_for_status(response, f"Download of {remote_id}")
                yield from response.iter_bytes()
        except httpx.TransportError as e:
            raise RemoteUnavailableError(
                f"Download of {remote_id} interrupted: {e.__class__.__name__}",
                provider=_PROVIDER,
            ) from e

    def delete(self, remote_id: str) -> None:
        response = self._request("DELETE", f"{DRIVE_API}/files/{remote_id}", headers=self._headers)
        _raise_for_status(response, f"Delete of {remote_id}")
        logger.info(f"Deleted {remote_id} from {self.account_id}")

    def _upload_simple(self, name: str, data: bytes, content_type: str) -> str:
        boundary = secrets.token_hex(16)
        metadata = json.dumps({"name": name, "mimeType": content_type})
        body = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{metadata}\r\n"
            f"--{boundary}\r\n"
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode("utf-8") + data + f"\r\n--{boundary}--".encode("utf-8")

        response = self._request(
            "POST",
            UPLOAD_API,
            params={"uploadType": "multipart", "fields": "id"},
            headers={**self._headers, "Content-Type": f"multipart/related; boundary={boundary}"},
            content=body,
        )
        _raise_for_status(response, f"Upload of {name}")
        return _parse(_UploadedFile, response).id

    def _start_session(self, name: str, size: int, content_type: str) -> str:
        response = self._request(
            "POST",
            UPLOAD_API,
            params={"uploadType": "resumable", "fields": "id"},
            headers={
                **self._headers,
                "X-Upload-Content-Type": content_type,
                "X-Upload-Content-Length": str(size),
            },
            json={"name": name, "mimeType": content_type},
        )
        _raise_for_status(response, f"Session start for {name}")
        location = response.headers.get("Location")
        if not location:
            raise ProtocolError(
                "Resumable session response has no Location header",
                provider=_PROVIDER,
                status_code=response.status_code,
            )
        return location

    def _session_status(self, response: httpx.Response, size: int) -> SessionStatus:
        if response.status_code == 308:
            match = _RANGE_RE.match(response.headers.get("Range", ""))
            return SessionStatus(offset=int(match.group(1)) + 1 if match else 0)
        if response.status_code in (404, 410):
            raise SessionExpiredError(
                "Upload session expired", provider=_PROVIDER, status_code=response.status_code
            )
        _raise_for_status(response, "Resumable upload")
        return SessionStatus(offset=size, remote_id=_parse(_UploadedFile, response).id)

    def _query_session(self, session_token: str, size: int) -> SessionStatus:
        response = self._request(
            "PUT",
            session_token,
            headers={"Content-Range": f"bytes */{size}", "Content-Length": "0"},
        )
        return self._session_status(response, size)

    def _send_chunk(
        self, session_token: str, offset: int, data: bytes, size: int
    ) -> SessionStatus:
        end = offset + len(data) - 1
        response = self._request(
            "PUT",
            session_token,
            headers={"Content-Range": f"bytes {offset}-{end}/{size}"},
            content=data,
        )
        return self._session_status(response, size)


class GoogleOAuth(_HttpMixin, RemoteAuth):
    """OAuth 2.0 client for Google accounts with offline (refresh token) access."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        client: httpx.Client | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def provider(self) -> ProviderKind:
        return ProviderKind.GOOGLE_DRIVE

    def authorization_url(self, state: str | None = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{AUTH_URL}?{urlencode(params)}"

    def _token_request(self, data: dict[str, str], action: str) -> _TokenResponse:
        response = self._request("POST", TOKEN_URL, data=data)
        _raise_for_status(response, action, auth=True)
        return _parse(_TokenResponse, response)

    def exchange_code_for_tokens(self, code: str) -> TokenBundle:
        tokens = self._token_request(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
            "Code exchange",
        )
        if not tokens.refresh_token:
            raise RemoteAuthError(
                "No refresh token returned; revoke app access and connect again",
                provider=_PROVIDER,
            )
        return TokenBundle(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=utcnow() + timedelta(seconds=tokens.expires_in),
            scope=tokens.scope,
        )

    def refresh(self, refresh_token: str) -> AccessToken:
        tokens = self._token_request(
            {
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            },
            "Token refresh",
        )
        return AccessToken(tokens.access_token, utcnow() + timedelta(seconds=tokens.expires_in))

    def get_identity(self, access_token: str) -> Identity:
        response = self._request(
            "GET", USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
        )
        _raise_for_status(response, "Identity lookup", auth=True)
        info = _parse(_UserInfo, response)
        return Identity(id=info.id, email=info.email, name=info.name or info.email)
