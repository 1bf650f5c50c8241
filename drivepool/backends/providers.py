"""
Provider wiring.

A ``Provider`` pairs a provider kind with its ``RemoteAuth`` capability and a
factory that binds a ``RemoteStore`` to an account and a live access
credential. ``ProviderSet.from_settings`` builds the providers available
under the current settings.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from drivepool.backends.base import RemoteAuth, RemoteStore
from drivepool.backends.gdrive import GoogleDriveStore, GoogleOAuth
from drivepool.backends.local import LocalAuth, LocalDirectoryStore
from drivepool.backends.s3 import S3Auth, S3Store, parse_session_credentials
from drivepool.exceptions import ConfigurationError
from drivepool.models import Account, Identity, ProviderKind

if TYPE_CHECKING:
    from typing import Any

    from drivepool.config import Settings

__all__ = ["StoreFactory", "Provider", "ProviderSet"]

logger = logging.getLogger(__name__)

StoreFactory = Callable[[Account, str], RemoteStore]


def _identity_account_id(identity: Identity, config: dict[str, Any]) -> str:
    return identity.id


def _bucket_account_id(identity: Identity, config: dict[str, Any]) -> str:
    # One IAM identity may back several buckets; each bucket is its own account.
    return f"{identity.id}-{config['bucket']}"


@dataclass
class Provider:
    """
    Everything needed to serve accounts of one provider kind.

    Attributes:
        kind: Provider kind.
        auth: Authorization capability.
        open_store: Factory binding a store to an account and access token.
        required_config: Keys an account's ``provider_config`` must carry.
        account_id_for: Derives the account id from identity and config.
    """

    kind: ProviderKind
    auth: RemoteAuth
    open_store: StoreFactory
    required_config: tuple[str, ...] = ()
    account_id_for: Callable[[Identity, dict[str, Any]], str] = _identity_account_id

    def validate_config(self, config: dict[str, Any]) -> None:
        """
        Raises:
            ConfigurationError: If a required key is missing.
        """
        missing = [key for key in self.required_config if not config.get(key)]
        if missing:
            raise ConfigurationError(
                f"{self.kind.value} accounts need: {', '.join(missing)}"
            )


class ProviderSet:
    """Lookup of providers by kind."""

    def __init__(self, providers: Iterable[Provider] = ()) -> None:
        self._providers: dict[ProviderKind, Provider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        self._providers[provider.kind] = provider

    def get(self, kind: ProviderKind) -> Provider:
        """
        Raises:
            ConfigurationError: If the provider is not available.
        """
        try:
            return self._providers[kind]
        except KeyError:
            raise ConfigurationError(f"Provider not configured: {kind.value}") from None

    def kinds(self) -> list[ProviderKind]:
        return list(self._providers)

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderSet:
        """Build the local and S3 providers, plus Google Drive when configured."""
        store_options = {
            "resumable_threshold": settings.resumable_threshold,
            "chunk_size": settings.chunk_size,
            "retry_delay": settings.retry_base_delay,
        }

        def open_local(account: Account, token: str) -> RemoteStore:
            config = account.provider_config
            return LocalDirectoryStore(
                account.id,
                config["directory"],
                capacity_bytes=config.get("capacity_bytes"),
                **store_options,
            )

        def open_s3(account: Account, token: str) -> RemoteStore:
            config = account.provider_config
            return S3Store(
                account.id,
                bucket=config["bucket"],
                credentials=parse_session_credentials(token),
                prefix=config.get("prefix", "drivepool/"),
                capacity_bytes=config.get("capacity_bytes"),
                region=config.get("region", "us-east-1"),
                endpoint_url=config.get("endpoint_url"),
                timeout=settings.request_timeout,
                **store_options,
            )

        def open_gdrive(account: Account, token: str) -> RemoteStore:
            return GoogleDriveStore(
                account.id, token, timeout=settings.request_timeout, **store_options
            )

        providers = cls([
            Provider(
                ProviderKind.LOCAL,
                LocalAuth(),
                open_local,
                required_config=("directory",),
            ),
            Provider(
                ProviderKind.AWS_S3,
                S3Auth(),
                open_s3,
                required_config=("bucket",),
                account_id_for=_bucket_account_id,
            ),
        ])

        if settings.google_configured:
            providers.register(Provider(
                ProviderKind.GOOGLE_DRIVE,
                GoogleOAuth(
                    settings.google_client_id,
                    settings.google_client_secret,
                    settings.google_redirect_uri,
                    timeout=settings.request_timeout,
                ),
                open_gdrive,
            ))
        else:
            logger.info("Google Drive disabled: GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET not set")

        return providers
