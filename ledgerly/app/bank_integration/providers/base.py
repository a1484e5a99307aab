"""
Abstract base classes for bank integration providers

Defines the common interface that all Open Banking aggregators must implement,
plus the normalized data types they return.
"""

import enum
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from ..errors import ProviderError, ProviderTimeoutError
from ..session_store import SessionStore

logger = logging.getLogger(__name__)


class ProviderKind(str, enum.Enum):
    """How a provider starts its consent flow."""
    DIRECT_REDIRECT = "direct_redirect"
    BANK_SELECTION = "bank_selection"


@dataclass
class Bank:
    id: str
    name: str
    region: str
    logo: Optional[str] = None


@dataclass
class Account:
    id: str
    account_name: str
    account_number: str
    account_type: str
    balance: Decimal
    currency: str


@dataclass
class Transaction:
    id: str
    account_id: str
    amount: Decimal
    date: datetime
    description: str = ""
    merchant_name: str = ""
    pending: bool = False


@dataclass
class TransactionOptions:
    start_date: datetime
    end_date: datetime


@dataclass
class AuthSession:
    session_id: str
    auth_url: Optional[str] = None
    banks: Optional[List[Bank]] = None
    consent_id: Optional[str] = None


@dataclass
class TokenResponse:
    access_token: str
    provider_account_id: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    consent_id: Optional[str] = None
    bank_id: Optional[str] = None


@dataclass
class ProviderInfo:
    name: str
    display_name: str
    kind: ProviderKind = field(default=ProviderKind.DIRECT_REDIRECT)


class BaseBankProvider(ABC):
    """
    Abstract base class for bank integration providers.

    All concrete providers (TrueLayer, SIBS) must implement these methods to
    ensure consistent behavior across different banking APIs. Amounts are
    always returned as signed Decimals: negative for money leaving the
    account, positive for money coming in.
    """

    name: str = "base"
    display_name: str = "Base Provider"
    kind: ProviderKind = ProviderKind.DIRECT_REDIRECT

    def __init__(
        self,
        session_store: SessionStore,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize provider.

        Args:
            session_store: Store used to carry OAuth flow state to the callback
            timeout: Seconds before an upstream HTTP call is abandoned
            transport: Optional httpx transport (used to stub the upstream API)
        """
        self.session_store = session_store
        self.timeout = timeout
        self.transport = transport

    def get_provider_info(self) -> ProviderInfo:
        return ProviderInfo(name=self.name, display_name=self.display_name, kind=self.kind)

    @abstractmethod
    async def initiate_auth(self, user_id: int) -> AuthSession:
        """
        Start the consent flow for a user.

        Args:
            user_id: Id of the user connecting a bank

        Returns:
            AuthSession with either an auth_url to redirect to, or a list of
            banks to choose from (bank-selection providers)
        """
        pass

    @abstractmethod
    async def exchange_token(self, code: str, session_id: Optional[str] = None) -> TokenResponse:
        """
        Exchange authorization code for access/refresh tokens.

        Args:
            code: Authorization code from OAuth callback
            session_id: Flow session (the OAuth state parameter)

        Returns:
            TokenResponse for the new connection
        """
        pass

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        """
        Refresh an expired access token using refresh token.

        Args:
            refresh_token: The refresh token

        Returns:
            TokenResponse with the new access token and expiry
        """
        pass

    @abstractmethod
    async def fetch_accounts(self, access_token: str) -> List[Account]:
        """
        Fetch list of accounts available from the bank.

        Args:
            access_token: Valid OAuth access token

        Returns:
            List of normalized accounts
        """
        pass

    @abstractmethod
    async def fetch_transactions(
        self,
        access_token: str,
        account_id: str,
        options: TransactionOptions
    ) -> List[Transaction]:
        """
        Fetch settled and pending transactions for an account within a date range.

        Args:
            access_token: Valid OAuth access token
            account_id: Account identifier from provider
            options: Date window to fetch

        Returns:
            List of normalized transactions
        """
        pass

    @abstractmethod
    async def revoke_access(self, access_token: str, consent_id: Optional[str] = None) -> bool:
        """
        Revoke access token or consent (disconnect bank).

        Best effort: upstream failures are logged and reported as False.

        Args:
            access_token: Token to revoke
            consent_id: Consent to delete, for consent-based providers

        Returns:
            True if revocation successful
        """
        pass

    # Shared helpers

    def _new_session_id(self) -> str:
        return str(uuid.uuid4())

    def _client(self, **kwargs) -> httpx.AsyncClient:
        if self.transport is not None:
            # Client certificates only apply to the default network transport
            kwargs.pop('cert', None)
            kwargs['transport'] = self.transport
        return httpx.AsyncClient(timeout=self.timeout, **kwargs)

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """
        Perform an upstream call and return the decoded JSON body.

        httpx failures are wrapped in ProviderError / ProviderTimeoutError.
        """
        client_kwargs = kwargs.pop('client_kwargs', {})
        try:
            async with self._client(**client_kwargs) as client:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                if not response.content:
                    return {}
                return response.json()
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{self.display_name} request timed out: {method} {url}") from e
        except httpx.HTTPStatusError as e:
            logger.error(
                f"{self.display_name} API error: {e.response.status_code} {e.response.text}"
            )
            raise ProviderError(
                f"{self.display_name} returned {e.response.status_code} for {method} {url}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.display_name} request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"{self.display_name} returned invalid JSON") from e

    @staticmethod
    def _to_decimal(value: Any) -> Decimal:
        try:
            return Decimal(str(value if value is not None else "0"))
        except InvalidOperation:
            return Decimal("0")

    @staticmethod
    def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
        """Parse an ISO date or datetime string into a naive UTC datetime."""
        if not value:
            return None

        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            logger.warning(f"Could not parse date: {value}")
            return None

        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed


class BankSelectionProvider(BaseBankProvider):
    """
    Provider whose consent flow needs the user to pick a bank first.

    initiate_auth returns the bank list and no auth_url; complete_auth creates
    the upstream consent for the chosen bank and returns the redirect URL.
    """

    kind = ProviderKind.BANK_SELECTION

    @abstractmethod
    async def complete_auth(self, session_id: str, bank_id: str) -> AuthSession:
        """
        Continue the flow after bank selection.

        Args:
            session_id: Session created by initiate_auth
            bank_id: Bank chosen by the user

        Returns:
            AuthSession with auth_url and consent_id
        """
        pass
