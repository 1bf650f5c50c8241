"""
DrivePool - one backup target made of many storage accounts.

This package aggregates independent remote storage accounts into a single
logical backup target:
- Long-lived account secrets encrypted with a user passphrase
  (PBKDF2-HMAC-SHA256 + ChaCha20-Poly1305)
- Best-fit-decreasing placement of files across accounts
- Resumable, progress-tracked uploads with retry, pause and resume
- Streamed multi-account ZIP archives for restore

Supported providers:
- Google Drive (OAuth 2.0)
- AWS S3 (IAM key pair, STS session credentials)
- Local directories (capacity-capped)

Example:
    >>> from drivepool import (
    ...     AccountRegistry, ArchiveComposer, JsonFilePersistence,
    ...     ProviderSet, Settings, TransferCoordinator, FileDescriptor,
    ... )
    >>> settings = Settings.from_env()
    >>> store = JsonFilePersistence(settings.data_dir)
    >>> registry = AccountRegistry(store, ProviderSet.from_settings(settings))
    >>> registry.connect_account('local', 'usb-disk', 'Str0ng-passphrase!',
    ...                          {'directory': '/mnt/usb', 'capacity_bytes': 10**10})
    >>> coordinator = TransferCoordinator(registry, store)
    >>> coordinator.backup([FileDescriptor.from_path('photos.tar')], 'Str0ng-passphrase!')
"""

from drivepool.archive import ArchiveComposer, ArchiveReport, ArchiveStream, DownloadStream
from drivepool.backends import (
    GoogleDriveStore,
    GoogleOAuth,
    LocalAuth,
    LocalDirectoryStore,
    Provider,
    ProviderSet,
    RemoteAuth,
    RemoteStore,
    S3Auth,
    S3Store,
)
from drivepool.config import Settings, setup_logging
from drivepool.exceptions import (
    AccountNotFoundError,
    CapacityExceededError,
    ConfigurationError,
    DecryptionError,
    DrivePoolError,
    NeedsPassphraseError,
    PartialArchiveError,
    PassphraseTooWeakError,
    ProtocolError,
    RemoteAuthError,
    RemoteError,
    RemoteRejectedError,
    RemoteUnavailableError,
    SessionExpiredError,
    StorageError,
    TransferStateError,
    UploadCancelledError,
)
from drivepool.models import (
    Account,
    FileDescriptor,
    FileRecord,
    PlacementPlan,
    ProviderKind,
    QuotaSnapshot,
    TransferEvent,
    TransferJob,
    TransferState,
)
from drivepool.passphrase import PassphrasePolicy
from drivepool.persistence import (
    FileQuery,
    InMemoryPersistence,
    JsonFilePersistence,
    Persistence,
)
from drivepool.planner import PlacementPlanner
from drivepool.registry import AccountRegistry
from drivepool.transfers import BatchResult, ProgressChannel, RetryPolicy, TransferCoordinator
from drivepool.vault import CredentialVault

__version__ = "0.1.0"
__all__ = [
    # Components
    "AccountRegistry",
    "PlacementPlanner",
    "TransferCoordinator",
    "ArchiveComposer",
    "CredentialVault",
    "PassphrasePolicy",
    # Transfers
    "BatchResult",
    "ProgressChannel",
    "RetryPolicy",
    # Archives
    "ArchiveReport",
    "ArchiveStream",
    "DownloadStream",
    # Providers
    "RemoteAuth",
    "RemoteStore",
    "Provider",
    "ProviderSet",
    "GoogleDriveStore",
    "GoogleOAuth",
    "S3Store",
    "S3Auth",
    "LocalDirectoryStore",
    "LocalAuth",
    # Persistence
    "Persistence",
    "FileQuery",
    "InMemoryPersistence",
    "JsonFilePersistence",
    # Records
    "Account",
    "FileDescriptor",
    "FileRecord",
    "PlacementPlan",
    "ProviderKind",
    "QuotaSnapshot",
    "TransferEvent",
    "TransferJob",
    "TransferState",
    # Settings
    "Settings",
    "setup_logging",
    # Exceptions
    "DrivePoolError",
    "ConfigurationError",
    "StorageError",
    "DecryptionError",
    "PassphraseTooWeakError",
    "AccountNotFoundError",
    "NeedsPassphraseError",
    "RemoteError",
    "RemoteAuthError",
    "RemoteUnavailableError",
    "RemoteRejectedError",
    "SessionExpiredError",
    "ProtocolError",
    "UploadCancelledError",
    "CapacityExceededError",
    "PartialArchiveError",
    "TransferStateError",
]
