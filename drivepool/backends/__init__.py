"""
Remote storage providers for DrivePool.

This package provides the remote store adapters an account can be backed by:
Google Drive, AWS S3 and a local directory.

Example:
    >>> from drivepool.backends import LocalDirectoryStore
    >>> store = LocalDirectoryStore('acct-1', '/mnt/backup', capacity_bytes=10**9)
    >>> store.get_quota().free_bytes
    1000000000
"""

from drivepool.backends.base import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_RESUMABLE_THRESHOLD,
    RemoteAuth,
    RemoteStore,
    SessionStatus,
)
from drivepool.backends.gdrive import GoogleDriveStore, GoogleOAuth
from drivepool.backends.local import LocalAuth, LocalDirectoryStore
from drivepool.backends.providers import Provider, ProviderSet, StoreFactory
from drivepool.backends.s3 import S3Auth, S3Store

__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_RESUMABLE_THRESHOLD",
    "RemoteAuth",
    "RemoteStore",
    "SessionStatus",
    "GoogleDriveStore",
    "GoogleOAuth",
    "LocalAuth",
    "LocalDirectoryStore",
    "S3Auth",
    "S3Store",
    "Provider",
    "ProviderSet",
    "StoreFactory",
]
