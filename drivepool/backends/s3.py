"""
AWS S3 provider.

An S3 account is a bucket and key prefix with a configured capacity. The
long-lived secret is an IAM access key pair; the short-lived access
credential is an STS session token derived from it. Multipart upload is the
resumable protocol: the session token names the object key and UploadId, and
the acknowledged offset is rebuilt from ``list_parts``.
"""

from __future__ import annotations

import json
import logging
import mimetypes
import secrets
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from drivepool.backends.base import RemoteAuth, RemoteStore, SessionStatus
from drivepool.exceptions import (
    DrivePoolError,
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
)

if TYPE_CHECKING:
    from typing import Any

    from mypy_boto3_s3 import S3Client
    from mypy_boto3_sts import STSClient

__all__ = ["S3Store", "S3Auth", "MIN_PART_SIZE", "parse_key_pair", "parse_session_credentials"]

logger = logging.getLogger(__name__)

_PROVIDER = ProviderKind.AWS_S3.value

# S3 rejects multipart parts below 5 MiB (except the last one).
MIN_PART_SIZE = 5 * 1024 * 1024

_THROTTLE_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
}
_AUTH_CODES = {
    "ExpiredToken",
    "InvalidAccessKeyId",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "TokenRefreshRequired",
}


def _classify(e: Exception, action: str) -> DrivePoolError:
    """Map a boto3/botocore exception to the DrivePool error taxonomy."""
    if isinstance(e, ClientError):
        code = e.response.get("Error", {}).get("Code", "")
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        message = f"{action} failed ({code})"
        if code == "NoSuchUpload":
            return SessionExpiredError("Upload session expired", provider=_PROVIDER, status_code=status)
        if code in _THROTTLE_CODES or (status is not None and status >= 500):
            return RemoteUnavailableError(message, provider=_PROVIDER, status_code=status)
        if code in _AUTH_CODES:
            return RemoteAuthError(message, provider=_PROVIDER, status_code=status)
        return RemoteRejectedError(message, provider=_PROVIDER, status_code=status)
    if isinstance(e, NoCredentialsError):
        return RemoteAuthError(f"{action} failed: no credentials", provider=_PROVIDER)
    return RemoteUnavailableError(f"{action} failed: {e.__class__.__name__}", provider=_PROVIDER)


@contextmanager
def _errors(action: str) -> Iterator[None]:
    try:
        yield
    except (ClientError, BotoCoreError) as e:
        logger.debug(f"S3 error during {action}: {e}")
        raise _classify(e, action) from e


def parse_key_pair(secret: str) -> dict[str, str]:
    """
    Parse the long-lived secret of an S3 account.

    The secret is a JSON object with ``access_key_id`` and
    ``secret_access_key``.

    Raises:
        RemoteAuthError: If the secret is not a valid key pair.
    """
    try:
        data = json.loads(secret)
        return {
            "access_key_id": str(data["access_key_id"]),
            "secret_access_key": str(data["secret_access_key"]),
        }
    except (ValueError, KeyError, TypeError) as e:
        raise RemoteAuthError("Malformed IAM key pair", provider=_PROVIDER) from e


def parse_session_credentials(token: str) -> dict[str, str]:
    """Parse a short-lived STS credential produced by ``S3Auth``."""
    try:
        data = json.loads(token)
        return {
            "aws_access_key_id": str(data["access_key_id"]),
            "aws_secret_access_key": str(data["secret_access_key"]),
            "aws_session_token": str(data["session_token"]),
        }
    except (ValueError, KeyError, TypeError) as e:
        raise RemoteAuthError("Malformed session credential", provider=_PROVIDER) from e


class S3Store(RemoteStore):
    """
    Remote store for one S3 bucket prefix.

    Objects are stored as ``<prefix><random>/<name>`` with server-side
    encryption; the remote id is the key without the prefix.

    Example:
        >>> store = S3Store(
        ...     'aws-123', bucket='my-backups', credentials=creds,
        ...     capacity_bytes=50 * 1024**3,
        ... )
        >>> store.get_quota().bytes_total
        53687091200
    """

    def __init__(
        self,
        account_id: str,
        bucket: str,
        credentials: dict[str, str] | None = None,
        prefix: str = "drivepool/",
        capacity_bytes: int | None = None,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        timeout: float = 60.0,
        client: S3Client | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(account_id, **kwargs)
        self.chunk_size = max(self.chunk_size, MIN_PART_SIZE)
        self.resumable_threshold = max(self.resumable_threshold, MIN_PART_SIZE)
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/" if prefix else ""
        self.capacity_bytes = capacity_bytes
        self.region = region
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self._credentials = credentials or {}
        self._client = client

    @property
    def provider(self) -> ProviderKind:
        return ProviderKind.AWS_S3

    @property
    def client(self) -> S3Client:
        """Get or create the S3 client."""
        if self._client is None:
            config = Config(
                region_name=self.region,
                retries={"max_attempts": 3, "mode": "adaptive"},
                connect_timeout=self.timeout,
                read_timeout=self.timeout,
            )
            self._client = boto3.Session().client(
                "s3", config=config, endpoint_url=self.endpoint_url, **self._credentials
            )
        return self._client

    def _key(self, remote_id: str) -> str:
        return f"{self.prefix}{remote_id}"

    def _iter_objects(self) -> Iterator[dict[str, Any]]:
        paginator = self.client.get_paginator("list_objects_v2")
        with _errors("Listing"):
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
                yield from page.get("Contents", [])

    def get_quota(self) -> QuotaSnapshot:
        used = sum(int(obj.get("Size", 0)) for obj in self._iter_objects())
        return QuotaSnapshot(bytes_total=self.capacity_bytes, bytes_used=used)

    def list_all(self, query: str | None = None) -> Iterator[FileRecord]:
        for obj in self._iter_objects():
            remote_id = obj["Key"][len(self.prefix):]
            name = remote_id.rsplit("/", 1)[-1]
            if query and query.lower() not in name.lower():
                continue
            content_type, _ = mimetypes.guess_type(name)
            yield FileRecord(
                remote_id=remote_id,
                account_id=self.account_id,
                name=name,
                size_bytes=int(obj.get("Size", 0)),
                content_type=content_type or DEFAULT_CONTENT_TYPE,
                parent_id=self.prefix or None,
                modified_time=obj.get("LastModified"),
                created_time=obj.get("LastModified"),
            )

    def download(self, remote_id: str) -> Iterator[bytes]:
        with _errors(f"Download of {remote_id}"):
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(remote_id))
        return self._iter_body(response["Body"], remote_id)

    def _iter_body(self, body: Any, remote_id: str) -> Iterator[bytes]:
        try:
            with _errors(f"Download of {remote_id}"):
                yield from body.iter_chunks(chunk_size=1024 * 1024)
        finally:
            body.close()

    def delete(self, remote_id: str) -> None:
        with _errors(f"Delete of {remote_id}"):
            self.client.delete_object(Bucket=self.bucket, Key=self._key(remote_id))
        logger.info(f"Deleted s3://{self.bucket}/{self._key(remote_id)}")

    def _new_remote_id(self, name: str) -> str:
        return f"{secrets.token_hex(8)}/{name.replace('/', '_')}"

    def _upload_simple(self, name: str, data: bytes, content_type: str) -> str:
        remote_id = self._new_remote_id(name)
        with _errors(f"Upload of {name}"):
            self.client.put_object(
                Bucket=self.bucket,
                Key=self._key(remote_id),
                Body=data,
                ContentType=content_type,
                ServerSideEncryption="AES256",
            )
        return remote_id

    def _start_session(self, name: str, size: int, content_type: str) -> str:
        remote_id = self._new_remote_id(name)
        with _errors(f"Session start for {name}"):
            response = self.client.create_multipart_upload(
                Bucket=self.bucket,
                Key=self._key(remote_id),
                ContentType=content_type,
                ServerSideEncryption="AES256",
            )
        if "UploadId" not in response:
            raise ProtocolError("Multipart response has no UploadId", provider=_PROVIDER)
        return json.dumps({"remote_id": remote_id, "upload_id": response["UploadId"]})

    @staticmethod
    def _parse_session(session_token: str) -> tuple[str, str]:
        try:
            data = json.loads(session_token)
            return data["remote_id"], data["upload_id"]
        except (ValueError, KeyError, TypeError) as e:
            raise SessionExpiredError("Unknown upload session", provider=_PROVIDER) from e

    def _list_parts(self, remote_id: str, upload_id: str) -> list[dict[str, Any]]:
        paginator = self.client.get_paginator("list_parts")
        parts: list[dict[str, Any]] = []
        with _errors("Part listing"):
            for page in paginator.paginate(
                Bucket=self.bucket, Key=self._key(remote_id), UploadId=upload_id
            ):
                parts.extend(page.get("Parts", []))
        return sorted(parts, key=lambda p: p["PartNumber"])

    def _complete(self, remote_id: str, upload_id: str, parts: list[dict[str, Any]]) -> None:
        with _errors("Multipart completion"):
            self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=self._key(remote_id),
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [{"ETag": p["ETag"], "PartNumber": p["PartNumber"]} for p in parts]
                },
            )

    def _acknowledged(self, parts: list[dict[str, Any]], size: int) -> tuple[int, list[dict[str, Any]]]:
        """Return the contiguous acknowledged offset and the parts that make it up."""
        offset = 0
        kept: list[dict[str, Any]] = []
        for expected, part in enumerate(parts, start=1):
            part_size = int(part["Size"])
            if part["PartNumber"] != expected:
                break
            if part_size != self.chunk_size and offset + part_size != size:
                break
            offset += part_size
            kept.append(part)
        return offset, kept

    def _query_session(self, session_token: str, size: int) -> SessionStatus:
        remote_id, upload_id = self._parse_session(session_token)
        offset, parts = self._acknowledged(self._list_parts(remote_id, upload_id), size)
        if offset >= size:
            self._complete(remote_id, upload_id, parts)
            return SessionStatus(offset=size, remote_id=remote_id)
        return SessionStatus(offset=offset)

    def _send_chunk(
        self, session_token: str, offset: int, data: bytes, size: int
    ) -> SessionStatus:
        remote_id, upload_id = self._parse_session(session_token)
        if offset % self.chunk_size:
            raise ProtocolError(f"Offset {offset} is not on a part boundary", provider=_PROVIDER)
        with _errors("Part upload"):
            self.client.upload_part(
                Bucket=self.bucket,
                Key=self._key(remote_id),
                UploadId=upload_id,
                PartNumber=offset // self.chunk_size + 1,
                Body=data,
            )
        received = offset + len(data)
        if received < size:
            return SessionStatus(offset=received)
        return self._query_session(session_token, size)


class S3Auth(RemoteAuth):
    """
    STS-based credential issuer for S3 accounts.

    The "authorization code" is the IAM key pair as JSON; it becomes the
    encrypted long-lived secret, and each refresh mints a session token.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        session_duration: int = 3600,
        sts_client_factory: Any = None,
    ) -> None:
        self.region = region
        self.session_duration = session_duration
        self._sts_client_factory = sts_client_factory or self._create_sts_client

    @property
    def provider(self) -> ProviderKind:
        return ProviderKind.AWS_S3

    def _create_sts_client(self, **credentials: str) -> STSClient:
        return boto3.Session().client("sts", region_name=self.region, **credentials)

    def _mint(self, key_pair: dict[str, str]) -> AccessToken:
        sts = self._sts_client_factory(
            aws_access_key_id=key_pair["access_key_id"],
            aws_secret_access_key=key_pair["secret_access_key"],
        )
        try:
            with _errors("Session token request"):
                response = sts.get_session_token(DurationSeconds=self.session_duration)
        except (RemoteRejectedError, RemoteAuthError) as e:
            raise RemoteAuthError(str(e), provider=_PROVIDER, status_code=e.status_code) from e

        try:
            creds = response["Credentials"]
            token = json.dumps({
                "access_key_id": creds["AccessKeyId"],
                "secret_access_key": creds["SecretAccessKey"],
                "session_token": creds["SessionToken"],
            })
            return AccessToken(token, creds["Expiration"])
        except (KeyError, TypeError) as e:
            raise ProtocolError("Unexpected STS response", provider=_PROVIDER) from e

    def exchange_code_for_tokens(self, code: str) -> TokenBundle:
        key_pair = parse_key_pair(code)
        access = self._mint(key_pair)
        return TokenBundle(
            access_token=access.token,
            refresh_token=json.dumps(key_pair),
            expires_at=access.expires_at,
            scope="s3",
        )

    def refresh(self, refresh_token: str) -> AccessToken:
        return self._mint(parse_key_pair(refresh_token))

    def get_identity(self, access_token: str) -> Identity:
        sts = self._sts_client_factory(**parse_session_credentials(access_token))
        with _errors("Identity lookup"):
            response = sts.get_caller_identity()
        try:
            arn = response["Arn"]
            return Identity(id=f"aws-{response['Account']}", email=arn, name=arn.rsplit("/", 1)[-1])
        except (KeyError, TypeError) as e:
            raise ProtocolError("Unexpected STS identity response", provider=_PROVIDER) from e
