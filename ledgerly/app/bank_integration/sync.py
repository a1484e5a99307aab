"""
Bank Sync Service

Pulls accounts and transactions for a stored bank connection and mirrors them
into the database:
- Refreshes expired access tokens
- Upserts accounts by provider account id
- Inserts unseen transactions (categorized), settles pending ones
- Marks the connection as errored when a full sync or token refresh fails
"""

import asyncio
import enum
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.orm import Session

from ledgerly.app.models import (
    BankAccount,
    BankConnection,
    BankConnectionStatus,
    BankTransaction,
    ExpenseCategory,
)
from ledgerly.config import Settings, get_settings
from .categorization import categorize_transaction
from .encryption import TokenEncryption
from .errors import (
    AccountNotFoundError,
    BankingError,
    ConnectionNotFoundError,
    InvalidConnectionStateError,
    ProviderTimeoutError,
    SyncError,
    TokenRefreshError,
)
from .factory import ProviderFactory
from .providers.base import BaseBankProvider, Transaction, TransactionOptions

logger = logging.getLogger(__name__)

T = TypeVar('T')


class SyncFailurePolicy(str, enum.Enum):
    """What to do when fetching one account's transactions fails."""
    ABORT = "abort"
    CONTINUE = "continue"


@dataclass
class SyncResult:
    connection_id: str
    accounts_synced: List[str] = field(default_factory=list)
    failed_accounts: List[str] = field(default_factory=list)
    transactions_added: int = 0
    transactions_updated: int = 0

    @property
    def success(self) -> bool:
        return not self.failed_accounts


class ConnectionLockRegistry:
    """
    One asyncio.Lock per connection id.

    Locks are held weakly so the registry does not grow with every connection
    ever synced; a lock lives as long as some sync is using it.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, connection_id: str) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        return lock


# Shared by every BankSyncService in the process
connection_locks = ConnectionLockRegistry()


class BankSyncService:
    """
    Synchronize a bank connection with its provider.

    Example:
        >>> service = BankSyncService(db, provider_factory)
        >>> result = await service.sync_connection(connection.id)
        >>> print(f"Added {result.transactions_added} transactions")
    """

    def __init__(
        self,
        db: Session,
        provider_factory: ProviderFactory,
        settings: Optional[Settings] = None,
        encryption: Optional[TokenEncryption] = None,
        failure_policy: Optional[SyncFailurePolicy] = None,
        locks: Optional[ConnectionLockRegistry] = None
    ):
        settings = settings or get_settings()
        self.db = db
        self.provider_factory = provider_factory
        self.encryption = encryption or TokenEncryption(settings.secret_key)
        self.failure_policy = failure_policy or SyncFailurePolicy(settings.sync_failure_policy)
        self.timeout = settings.provider_timeout_seconds
        self.lookback = timedelta(days=settings.sync_lookback_days)
        self.locks = locks or connection_locks

    async def sync_connection(self, connection_id: str, account_id: Optional[str] = None) -> SyncResult:
        """
        Sync a connection, or a single account of it.

        Overlapping syncs of the same connection are serialized.

        Args:
            connection_id: BankConnection id
            account_id: Only sync transactions for this account

        Returns:
            SyncResult summary

        Raises:
            ConnectionNotFoundError: Unknown connection
            InvalidConnectionStateError: Connection is not active
            AccountNotFoundError: account_id does not belong to the connection
            TokenRefreshError: Expired token could not be refreshed
            ProviderTimeoutError: A provider call timed out (connection untouched, retryable)
            SyncError: Sync aborted (connection marked error on a full sync only)
        """
        async with self.locks.get(connection_id):
            return await self._sync(connection_id, account_id)

    async def _sync(self, connection_id: str, account_id: Optional[str]) -> SyncResult:
        connection = self.db.query(BankConnection).filter(BankConnection.id == connection_id).first()
        if not connection:
            raise ConnectionNotFoundError(f"Bank connection {connection_id} not found")

        if connection.status != BankConnectionStatus.ACTIVE:
            raise InvalidConnectionStateError(
                f"Bank connection {connection_id} is {connection.status.value}, not active"
            )

        provider = self.provider_factory.get_banking_provider(connection.provider_name)
        access_token = await self._ensure_fresh_token(connection, provider)
        categories = self.db.query(ExpenseCategory).all()
        result = SyncResult(connection_id=connection_id)

        if account_id:
            account = self.db.query(BankAccount).filter(BankAccount.id == account_id).first()
            if not account or account.connection_id != connection.id:
                raise AccountNotFoundError(
                    f"Account {account_id} not found or doesn't belong to connection {connection_id}"
                )

            # A failed single-account sync leaves the connection as it was
            try:
                added, updated = await self._sync_account_transactions(provider, access_token, account, categories)
            except ProviderTimeoutError:
                self.db.rollback()
                raise
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to sync transactions for account {account_id}: {e}")
                raise SyncError(f"Failed to sync transactions for account {account_id}") from e

            result.accounts_synced.append(account.id)
            result.transactions_added = added
            result.transactions_updated = updated
            return result

        logger.info(f"Syncing bank connection {connection_id} ({connection.provider_name})")

        try:
            accounts = await self._call(provider.fetch_accounts(access_token))
            logger.info(f"Found {len(accounts)} accounts to sync")

            db_accounts = []
            for acc in accounts:
                existing = self.db.query(BankAccount).filter(BankAccount.id == acc.id).first()
                if existing:
                    existing.account_name = acc.account_name
                    existing.balance = acc.balance
                    existing.last_updated = datetime.utcnow()
                    db_accounts.append(existing)
                else:
                    account = BankAccount(
                        id=acc.id,
                        connection_id=connection.id,
                        account_name=acc.account_name,
                        account_type=acc.account_type,
                        account_number=acc.account_number,
                        balance=acc.balance,
                        currency=acc.currency,
                        last_updated=datetime.utcnow(),
                    )
                    self.db.add(account)
                    db_accounts.append(account)
            self.db.commit()
        except ProviderTimeoutError:
            self.db.rollback()
            raise
        except Exception as e:
            logger.error(f"Failed to sync accounts for connection {connection_id}: {e}")
            self._mark_error(connection)
            raise SyncError("Failed to sync bank accounts") from e

        for account in db_accounts:
            await self._sync_account_guarded(connection, provider, access_token, account, categories, result)

        connection.updated_at = datetime.utcnow()
        self.db.commit()

        logger.info(
            f"Sync completed for connection {connection_id}: "
            f"{result.transactions_added} added, {result.transactions_updated} settled, "
            f"{len(result.failed_accounts)} accounts failed"
        )
        return result

    async def _sync_account_guarded(
        self,
        connection: BankConnection,
        provider: BaseBankProvider,
        access_token: str,
        account: BankAccount,
        categories: List[ExpenseCategory],
        result: SyncResult
    ) -> None:
        """
        Run one account's transaction sync within a full sync, applying the
        failure policy. Timeouts abort the sync without marking the connection.
        """
        account_id = account.id
        try:
            added, updated = await self._sync_account_transactions(provider, access_token, account, categories)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to sync transactions for account {account_id}: {e}")

            if self.failure_policy == SyncFailurePolicy.CONTINUE:
                result.failed_accounts.append(account_id)
                return

            if isinstance(e, ProviderTimeoutError):
                raise
            self._mark_error(connection)
            raise SyncError(f"Failed to sync transactions for account {account_id}") from e

        result.accounts_synced.append(account_id)
        result.transactions_added += added
        result.transactions_updated += updated

    async def _sync_account_transactions(
        self,
        provider: BaseBankProvider,
        access_token: str,
        account: BankAccount,
        categories: List[ExpenseCategory]
    ) -> Tuple[int, int]:
        """
        Fetch and store transactions for one account.

        The window starts at the newest stored transaction (or the lookback
        period for a fresh account) and ends now.

        Returns:
            (added, updated) counts
        """
        last_transaction = (
            self.db.query(BankTransaction)
            .filter(BankTransaction.account_id == account.id)
            .order_by(BankTransaction.date.desc())
            .first()
        )
        end_date = datetime.utcnow()
        start_date = last_transaction.date if last_transaction else end_date - self.lookback

        transactions = await self._call(
            provider.fetch_transactions(access_token, account.id, TransactionOptions(start_date, end_date))
        )
        logger.info(f"Found {len(transactions)} transactions for account {account.id}")

        added = updated = 0
        seen: Dict[str, Transaction] = {}

        for tx in transactions:
            # Providers occasionally repeat a row within one response
            if tx.id in seen:
                continue
            seen[tx.id] = tx

            existing = self.db.query(BankTransaction).filter(BankTransaction.id == tx.id).first()

            if existing is None:
                self.db.add(BankTransaction(
                    id=tx.id,
                    account_id=account.id,
                    amount=tx.amount,
                    date=tx.date,
                    description=tx.description or "",
                    merchant_name=tx.merchant_name or "",
                    category=categorize_transaction(tx, categories),
                    pending=tx.pending,
                    synced=False,
                ))
                added += 1
            elif existing.pending and not tx.pending:
                # Settled: amount may differ from the authorization
                existing.pending = False
                existing.amount = tx.amount
                existing.description = tx.description or existing.description
                existing.merchant_name = tx.merchant_name or existing.merchant_name
                updated += 1

        account.last_updated = datetime.utcnow()
        self.db.commit()

        return added, updated

    async def _ensure_fresh_token(self, connection: BankConnection, provider: BaseBankProvider) -> str:
        """
        Return a usable access token, refreshing it first if it has expired.

        Raises:
            TokenRefreshError: No refresh token, or the refresh failed
        """
        access_token = self.encryption.decrypt(connection.access_token)

        if not connection.expires_at or connection.expires_at >= datetime.utcnow():
            return access_token

        refresh_token = self.encryption.decrypt(connection.refresh_token)
        if not refresh_token:
            self._mark_error(connection)
            raise TokenRefreshError("Access token expired and no refresh token is available")

        try:
            token = await self._call(provider.refresh_token(refresh_token))
        except ProviderTimeoutError:
            logger.warning(f"Token refresh timed out for connection {connection.id}")
            raise
        except BankingError as e:
            logger.error(f"Failed to refresh token for connection {connection.id}: {e}")
            self._mark_error(connection)
            raise TokenRefreshError("Failed to refresh access token") from e

        connection.access_token = self.encryption.encrypt(token.access_token)
        if token.refresh_token:
            connection.refresh_token = self.encryption.encrypt(token.refresh_token)
        connection.expires_at = token.expires_at
        connection.updated_at = datetime.utcnow()
        self.db.commit()

        logger.info(f"Refreshed access token for connection {connection.id}")
        return token.access_token

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(f"Provider call exceeded {self.timeout}s") from e

    def _mark_error(self, connection: BankConnection) -> None:
        # Drop half-applied changes before recording the failure
        self.db.rollback()
        connection.status = BankConnectionStatus.ERROR
        connection.updated_at = datetime.utcnow()
        self.db.commit()
        logger.warning(f"Bank connection {connection.id} marked as error")
