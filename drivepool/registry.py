"""
Account registry.

Owns account identity, quota snapshots and the cached short-lived access
credential of every connected account. Long-lived secrets stay encrypted in
persistence; they are decrypted only for the moment a refresh needs them.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from drivepool.exceptions import (
    AccountNotFoundError,
    ConfigurationError,
    DecryptionError,
    DrivePoolError,
    NeedsPassphraseError,
    RemoteUnavailableError,
)
from drivepool.models import Account, ProviderKind, utcnow
from drivepool.passphrase import DEFAULT_POLICY, PassphrasePolicy
from drivepool.vault import CredentialVault

if TYPE_CHECKING:
    from typing import Any

    from drivepool.backends.base import RemoteStore
    from drivepool.backends.providers import Provider, ProviderSet
    from drivepool.models import QuotaSnapshot
    from drivepool.persistence import Persistence

__all__ = ["AccountRegistry"]

logger = logging.getLogger(__name__)


class AccountRegistry:
    """
    Connected accounts and their credentials.

    Credential refresh is serialized per account: when several callers find
    the same expired token, exactly one refresh runs and the others reuse its
    result.

    Example:
        >>> registry = AccountRegistry(persistence, ProviderSet.from_settings(settings))
        >>> account = registry.connect_account('local', 'usb-disk', 'Str0ng-passphrase',
        ...                                    {'directory': '/mnt/usb'})
        >>> registry.free_capacity()
        {'local-1a2b3c4d5e6f': 1000000000}
    """

    def __init__(
        self,
        persistence: Persistence,
        providers: ProviderSet,
        vault: CredentialVault | None = None,
        policy: PassphrasePolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = utcnow,
        token_skew_seconds: int = 60,
        sync_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.persistence = persistence
        self.providers = providers
        self.vault = vault or CredentialVault()
        self.policy = policy
        self.token_skew_seconds = token_skew_seconds
        self.sync_attempts = sync_attempts
        self.retry_delay = retry_delay
        self._clock = clock
        self._sleep = sleep
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(account_id, threading.Lock())

    def _provider(self, account: Account) -> Provider:
        return self.providers.get(account.provider)

    def connect_account(
        self,
        provider: ProviderKind | str,
        code: str,
        passphrase: str,
        config: dict[str, Any] | None = None,
    ) -> Account:
        """
        Connect (or reconnect) an account.

        Args:
            provider: Provider kind.
            code: Authorization code (or provider-specific secret).
            passphrase: Passphrase that will encrypt the long-lived secret.
            config: Non-secret provider settings (directory, bucket, ...).

        Returns:
            The saved account. A reconnect keeps the original creation time.

        Raises:
            PassphraseTooWeakError: If the passphrase fails the policy.
            ConfigurationError: If the provider is unavailable or misconfigured.
            RemoteAuthError: If the code is rejected.
        """
        try:
            kind = ProviderKind(provider)
        except ValueError:
            raise ConfigurationError(f"Unknown provider: {provider}") from None
        self.policy.enforce(passphrase)
        prov = self.providers.get(kind)
        config = dict(config or {})
        prov.validate_config(config)

        tokens = prov.auth.exchange_code_for_tokens(code)
        identity = prov.auth.get_identity(tokens.access_token)
        account_id = prov.account_id_for(identity, config)

        with self._lock_for(account_id):
            existing = self.persistence.get_account(account_id)
            now = self._clock()
            account = Account(
                id=account_id,
                email=identity.email,
                display_name=identity.name,
                provider=kind,
                encrypted_credential=self.vault.encrypt(
                    tokens.refresh_token, passphrase, context=account_id
                ),
                provider_config=config,
                cached_token=tokens.access,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )

            try:
                with prov.open_store(account, tokens.access_token) as store:
                    account.quota = store.get_quota()
            except RemoteUnavailableError as e:
                logger.warning(f"Quota unavailable for new account {account_id}: {e}")

            self.persistence.save_account(account)

        action = "Reconnected" if existing else "Connected"
        logger.info(f"{action} {kind.value} account {account.email} ({account_id})")
        return account

    def list_accounts(self) -> list[Account]:
        """Return all accounts in creation order."""
        return self.persistence.list_accounts()

    def get_account(self, account_id: str) -> Account:
        """
        Raises:
            AccountNotFoundError: If the id is unknown.
        """
        account = self.persistence.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def get_access_credential(self, account_id: str, passphrase: str | None = None) -> str:
        """
        Return a live access credential, refreshing it when expired.

        Args:
            account_id: Account to resolve.
            passphrase: Needed only when a refresh is required.

        Raises:
            AccountNotFoundError: If the id is unknown.
            NeedsPassphraseError: If a refresh is needed and no passphrase was given.
            DecryptionError: If the passphrase is wrong.
            RemoteAuthError: If the provider rejects the refresh.
        """
        with self._lock_for(account_id):
            account = self.get_account(account_id)
            cached = account.cached_token
            if cached and not cached.is_expired(self._clock(), self.token_skew_seconds):
                return cached.token

            if not passphrase:
                raise NeedsPassphraseError(account_id)

            bundle = self.vault.decrypt(account.encrypted_credential, passphrase, context=account_id)
            token = self._provider(account).auth.refresh(bundle.reveal())
            account.cached_token = token
            account.updated_at = self._clock()
            self.persistence.save_account(account)

        logger.info(f"Refreshed access credential for {account_id}")
        return token.token

    def open_store(self, account_id: str, passphrase: str | None = None) -> RemoteStore:
        """Bind a remote store to the account's live access credential."""
        token = self.get_access_credential(account_id, passphrase)
        account = self.get_account(account_id)
        return self._provider(account).open_store(account, token)

    def refresh_quota(self, account_id: str, passphrase: str | None = None) -> QuotaSnapshot:
        """Read live capacity from the remote and store the snapshot."""
        with self.open_store(account_id, passphrase) as store:
            quota = store.get_quota()

        with self._lock_for(account_id):
            account = self.get_account(account_id)
            account.quota = quota
            account.updated_at = self._clock()
            self.persistence.save_account(account)

        logger.debug(f"Quota for {account_id}: {quota.bytes_used}/{quota.bytes_total}")
        return quota

    def free_capacity(self, passphrase: str | None = None, refresh: bool = False) -> dict[str, int]:
        """
        Free bytes per account, in creation order.

        Args:
            passphrase: Used for credential refresh when ``refresh`` is True.
            refresh: Read live quotas first. Accounts whose remote refresh
                fails are left out instead of failing the whole call.

        Raises:
            NeedsPassphraseError: If a credential refresh needs a passphrase.
            DecryptionError: If the passphrase is wrong.
        """
        capacity: dict[str, int] = {}
        for account in self.list_accounts():
            if not refresh:
                capacity[account.id] = account.free_bytes
                continue
            try:
                capacity[account.id] = self.refresh_quota(account.id, passphrase).free_bytes
            except (NeedsPassphraseError, DecryptionError):
                raise
            except DrivePoolError as e:
                logger.warning(f"Skipping {account.id}: quota refresh failed: {e}")
        return capacity

    def sync_file_index(
        self, account_id: str, passphrase: str | None = None, query: str | None = None
    ) -> int:
        """
        List the account's remote files into persistence.

        Without a query the listing replaces every stored record of the
        account; with a query matching records are added or updated. A
        transient failure restarts the listing from the first page.

        Returns:
            Number of records listed.
        """
        for attempt in range(1, self.sync_attempts + 1):
            try:
                with self.open_store(account_id, passphrase) as store:
                    records = list(store.list_all(query))
                break
            except RemoteUnavailableError as e:
                if attempt == self.sync_attempts:
                    raise
                logger.warning(
                    f"Listing {account_id} failed (attempt {attempt}/{self.sync_attempts}): {e}"
                )
                self._sleep(self.retry_delay * attempt)

        if query is None:
            self.persistence.clear_file_records(account_id)
        self.persistence.save_file_records(account_id, records)
        logger.info(f"Indexed {len(records)} file(s) on {account_id}")
        return len(records)

    def change_passphrase(self, account_id: str, old_passphrase: str, new_passphrase: str) -> None:
        """
        Re-encrypt the account's long-lived secret under a new passphrase.

        Raises:
            PassphraseTooWeakError: If the new passphrase fails the policy.
            DecryptionError: If the old passphrase is wrong.
        """
        self.policy.enforce(new_passphrase)
        with self._lock_for(account_id):
            account = self.get_account(account_id)
            account.encrypted_credential = self.vault.reencrypt(
                account.encrypted_credential, old_passphrase, new_passphrase, context=account_id
            )
            account.updated_at = self._clock()
            self.persistence.save_account(account)
        logger.info(f"Changed passphrase for {account_id}")

    def remove_account(self, account_id: str) -> bool:
        """
        Remove an account with its file records and transfer jobs.

        Returns:
            True if the account existed. Removing twice is not an error.
        """
        with self._lock_for(account_id):
            existed = self.persistence.delete_account(account_id)
        with self._locks_guard:
            self._locks.pop(account_id, None)
        if existed:
            logger.info(f"Removed account {account_id}")
        return existed
