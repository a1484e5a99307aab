"""
Bank Integration Service

Main orchestration service that handles:
- Consent flow management (initiate, bank selection, code exchange)
- Persisting new connections with encrypted tokens
- Initial sync after connecting
- Disconnecting banks
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ledgerly.app.models import BankConnection, BankConnectionStatus, User
from .encryption import TokenEncryption
from .errors import (
    BankingError,
    BankSelectionNotSupportedError,
    ConnectionNotFoundError,
    InvalidConnectionStateError,
    SessionNotFoundError,
)
from .factory import ProviderFactory
from .providers.base import AuthSession, BankSelectionProvider, ProviderKind
from .session_store import SessionStore
from .sync import BankSyncService

logger = logging.getLogger(__name__)


class BankIntegrationService:
    """
    Main service for bank integration.

    Provides high-level operations for:
    - Starting consent flows
    - Completing the flow from the provider callback
    - Disconnecting banks
    """

    def __init__(
        self,
        db: Session,
        provider_factory: ProviderFactory,
        session_store: SessionStore,
        encryption: Optional[TokenEncryption] = None,
        sync_service: Optional[BankSyncService] = None
    ):
        """
        Initialize service with database session.

        Args:
            db: SQLAlchemy database session
            provider_factory: Builds configured provider instances
            session_store: Flow session store shared with the providers
        """
        self.db = db
        self.provider_factory = provider_factory
        self.session_store = session_store
        self.encryption = encryption or TokenEncryption(provider_factory.settings.secret_key)
        self.sync_service = sync_service or BankSyncService(
            db, provider_factory, settings=provider_factory.settings, encryption=self.encryption
        )

    async def initiate_connection(self, user: User, provider_name: str) -> AuthSession:
        """
        Start connecting a bank for a user.

        Returns:
            AuthSession with an auth_url (direct redirect) or a bank list
            (bank selection required)

        Example:
            >>> session = await service.initiate_connection(user, "truelayer")
            >>> # Redirect user to session.auth_url
        """
        provider = self.provider_factory.get_banking_provider(provider_name)

        removed = self.session_store.cleanup_expired()
        if removed:
            logger.debug(f"Removed {removed} expired banking sessions")

        auth_session = await provider.initiate_auth(user.id)

        logger.info(f"User {user.id} started {provider.name} connection (session {auth_session.session_id})")
        return auth_session

    async def select_bank(self, user: User, session_id: str, bank_id: str, provider_name: str) -> AuthSession:
        """
        Continue a bank-selection flow once the user has picked a bank.

        Raises:
            BankSelectionNotSupportedError: Provider redirects directly
            SessionNotFoundError / SessionExpiredError: Flow must be restarted
        """
        provider = self.provider_factory.get_banking_provider(provider_name)
        if provider.kind != ProviderKind.BANK_SELECTION or not isinstance(provider, BankSelectionProvider):
            raise BankSelectionNotSupportedError(f"{provider.display_name} does not support bank selection")

        session = self.session_store.get(session_id)
        if session.get('user_id') != user.id:
            raise SessionNotFoundError(f"Session {session_id} not found")

        return await provider.complete_auth(session_id, bank_id)

    async def complete_connection(
        self,
        code: str,
        session_id: str,
        user_id: Optional[int] = None,
        provider_name: Optional[str] = None
    ) -> BankConnection:
        """
        Exchange the authorization code and persist the new connection.

        The flow session identifies the user and provider, so this also works
        from the unauthenticated provider callback. A successful exchange
        always creates a new connection row; the session is then discarded
        and an initial sync runs.

        Args:
            code: Authorization code from the callback
            session_id: The OAuth state parameter
            user_id: When given, must match the session's user
            provider_name: When given, must match the session's provider

        Returns:
            The new BankConnection

        Raises:
            SessionNotFoundError / SessionExpiredError: Flow must be restarted
            ProviderError: Code exchange failed
            SyncError / TokenRefreshError / ProviderTimeoutError: Initial sync failed
        """
        session = self.session_store.get(session_id)

        session_user = session.get('user_id')
        session_provider = session.get('provider_name')
        if user_id is not None and session_user != user_id:
            raise SessionNotFoundError(f"Session {session_id} not found")
        if provider_name and provider_name.lower() != session_provider:
            raise SessionNotFoundError(f"Session {session_id} does not belong to {provider_name}")

        provider = self.provider_factory.get_banking_provider(session_provider)
        token = await provider.exchange_token(code, session_id)

        connection = BankConnection(
            user_id=session_user,
            provider_name=provider.name,
            provider_account_id=token.provider_account_id,
            access_token=self.encryption.encrypt(token.access_token),
            refresh_token=self.encryption.encrypt(token.refresh_token),
            consent_id=token.consent_id,
            bank_id=token.bank_id,
            expires_at=token.expires_at,
            status=BankConnectionStatus.ACTIVE,
        )
        self.db.add(connection)
        self.db.commit()
        self.db.refresh(connection)

        self.session_store.delete(session_id)
        logger.info(f"Created {provider.name} connection {connection.id} for user {session_user}")

        await self.sync_service.sync_connection(connection.id)
        self.db.refresh(connection)
        return connection

    async def disconnect_bank(self, connection_id: str, user: User) -> BankConnection:
        """
        Disconnect bank connection.

        Revocation with the provider is best effort; the connection is marked
        disconnected and its tokens cleared regardless.

        Raises:
            ConnectionNotFoundError: Unknown connection or owned by someone else
            InvalidConnectionStateError: Connection is not active
        """
        connection = self.db.query(BankConnection).filter(
            BankConnection.id == connection_id,
            BankConnection.user_id == user.id
        ).first()
        if not connection:
            raise ConnectionNotFoundError(f"Bank connection {connection_id} not found")

        if connection.status != BankConnectionStatus.ACTIVE:
            raise InvalidConnectionStateError(
                f"Bank connection {connection_id} is {connection.status.value}, not active"
            )

        try:
            provider = self.provider_factory.get_banking_provider(connection.provider_name)
            access_token = self.encryption.decrypt(connection.access_token)
            revoked = await provider.revoke_access(access_token, connection.consent_id)
            if not revoked:
                logger.warning(f"Provider did not confirm revocation for connection {connection_id}")
        except (BankingError, ValueError) as e:
            # Connection is marked disconnected anyway
            logger.warning(f"Token revocation failed for connection {connection_id}: {e}")

        connection.status = BankConnectionStatus.DISCONNECTED
        connection.access_token = None
        connection.refresh_token = None
        connection.expires_at = None
        connection.updated_at = datetime.utcnow()
        self.db.commit()

        logger.info(f"Bank connection {connection_id} disconnected by user {user.id}")
        return connection
