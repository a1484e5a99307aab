"""
TrueLayer Provider Implementation

TrueLayer is an Open Banking aggregator covering UK and European banks. It
uses a plain OAuth2 authorization-code flow with client secret authentication:
the user is redirected straight to TrueLayer's hosted bank picker.

Documentation: https://docs.truelayer.com/docs/data-api-basics
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from ..errors import ProviderError
from .base import (
    Account,
    AuthSession,
    BaseBankProvider,
    ProviderKind,
    TokenResponse,
    Transaction,
    TransactionOptions,
)

logger = logging.getLogger(__name__)

SANDBOX_API_URL = "https://api.truelayer-sandbox.com"
SANDBOX_AUTH_URL = "https://auth.truelayer-sandbox.com"
PRODUCTION_API_URL = "https://api.truelayer.com"
PRODUCTION_AUTH_URL = "https://auth.truelayer.com"

SANDBOX_SCOPES = "info accounts balance cards transactions direct_debits standing_orders offline_access"
PRODUCTION_SCOPES = "info accounts balance transactions offline_access"

# Mock bank (user "john", password "doe") is only offered in the sandbox
SANDBOX_PROVIDERS = "uk-cs-mock uk-ob-all uk-oauth-all"
PRODUCTION_PROVIDERS = (
    "uk-oauth-all uk-oauth-open-banking uk-cs-all uk-cs-open-banking es-oauth-all it-oauth-all"
)

ACCOUNT_TYPE_MAP = {
    'TRANSACTION': 'Current',
    'SAVINGS': 'Savings',
    'CREDIT_CARD': 'Credit Card',
    'LOAN': 'Loan',
}


class TrueLayerProvider(BaseBankProvider):
    """
    TrueLayer Data API integration.

    Direct-redirect flow: initiate_auth returns the hosted authorization URL
    and the session id travels back as the OAuth `state` parameter.
    """

    name = "truelayer"
    display_name = "TrueLayer"
    kind = ProviderKind.DIRECT_REDIRECT

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        session_store,
        is_sandbox: bool = True,
        **kwargs
    ):
        """
        Initialize TrueLayer provider.

        Args:
            client_id: TrueLayer console client id
            client_secret: TrueLayer console client secret
            redirect_uri: Registered callback URL
            session_store: Flow session store
            is_sandbox: Use the sandbox environment (mock bank available)
        """
        super().__init__(session_store, **kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.is_sandbox = is_sandbox

        if is_sandbox:
            self.base_url = SANDBOX_API_URL
            self.auth_url = SANDBOX_AUTH_URL
        else:
            self.base_url = PRODUCTION_API_URL
            self.auth_url = PRODUCTION_AUTH_URL

    async def initiate_auth(self, user_id: int) -> AuthSession:
        session_id = self._new_session_id()
        self.session_store.store(session_id, {
            'user_id': user_id,
            'provider_name': self.name,
        })

        params = {
            'response_type': 'code',
            'client_id': self.client_id,
            'scope': SANDBOX_SCOPES if self.is_sandbox else PRODUCTION_SCOPES,
            'redirect_uri': self.redirect_uri,
            'state': session_id,
            'providers': SANDBOX_PROVIDERS if self.is_sandbox else PRODUCTION_PROVIDERS,
        }
        auth_url = f"{self.auth_url}/?{urlencode(params)}"

        logger.info(f"TrueLayer auth flow started for user {user_id} (sandbox={self.is_sandbox})")
        return AuthSession(session_id=session_id, auth_url=auth_url)

    async def exchange_token(self, code: str, session_id: Optional[str] = None) -> TokenResponse:
        if not code:
            raise ProviderError("Authorization code is required")

        data = await self._request(
            'POST',
            f"{self.auth_url}/connect/token",
            data={
                'grant_type': 'authorization_code',
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'code': code,
                'redirect_uri': self.redirect_uri,
            },
        )
        logger.info("TrueLayer token exchange successful")

        return await self._token_response(data)

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        data = await self._request(
            'POST',
            f"{self.auth_url}/connect/token",
            data={
                'grant_type': 'refresh_token',
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'refresh_token': refresh_token,
            },
        )
        return await self._token_response(data)

    async def fetch_accounts(self, access_token: str) -> List[Account]:
        data = await self._request(
            'GET',
            f"{self.base_url}/data/v1/accounts",
            headers=self._bearer(access_token),
        )
        results = data.get('results') or []
        logger.info(f"TrueLayer: found {len(results)} accounts")

        accounts = []
        for acc in results:
            number = (acc.get('account_number') or {}).get('number') or ""
            accounts.append(Account(
                id=acc['account_id'],
                account_name=acc.get('display_name') or acc.get('account_type') or f"Account {number[-4:]}",
                account_number=number,
                account_type=ACCOUNT_TYPE_MAP.get(acc.get('account_type'), 'Other'),
                balance=self._to_decimal(acc.get('balance')),
                currency=acc.get('currency') or 'GBP',
            ))
        return accounts

    async def fetch_transactions(
        self,
        access_token: str,
        account_id: str,
        options: TransactionOptions
    ) -> List[Transaction]:
        """
        Fetch settled and pending transactions for an account.

        Settled transactions come from /transactions, pending ones from
        /transactions/pending. Not every bank behind TrueLayer supports the
        pending endpoint, so a failure there only yields no pending rows.
        """
        params = {
            'from': options.start_date.strftime('%Y-%m-%d'),
            'to': options.end_date.strftime('%Y-%m-%d'),
        }
        url = f"{self.base_url}/data/v1/accounts/{account_id}/transactions"

        settled = await self._request('GET', url, params=params, headers=self._bearer(access_token))

        try:
            pending = await self._request(
                'GET', f"{url}/pending", params=params, headers=self._bearer(access_token)
            )
        except ProviderError as e:
            logger.info(f"TrueLayer: no pending transactions for account {account_id}: {e}")
            pending = {}

        transactions = [
            self._normalize_transaction(tx, account_id, pending=False)
            for tx in settled.get('results') or []
        ]
        transactions.extend(
            self._normalize_transaction(tx, account_id, pending=True)
            for tx in pending.get('results') or []
        )

        logger.info(f"TrueLayer: found {len(transactions)} transactions for account {account_id}")
        return transactions

    async def revoke_access(self, access_token: str, consent_id: Optional[str] = None) -> bool:
        try:
            await self._request(
                'POST',
                f"{self.base_url}/data/v1/revoke_access_token",
                json={'access_token': access_token},
                headers=self._bearer(access_token),
            )
            return True
        except ProviderError as e:
            logger.error(f"Failed to revoke TrueLayer access token: {e}")
            return False

    # Helpers

    @staticmethod
    def _bearer(access_token: str) -> Dict[str, str]:
        return {'Authorization': f'Bearer {access_token}'}

    async def _token_response(self, data: Dict[str, Any]) -> TokenResponse:
        access_token = data.get('access_token')
        if not access_token:
            raise ProviderError("TrueLayer token response did not contain an access token")

        expires_in = int(data.get('expires_in') or 3600)
        return TokenResponse(
            access_token=access_token,
            refresh_token=data.get('refresh_token'),
            expires_at=datetime.utcnow() + timedelta(seconds=expires_in),
            provider_account_id=await self._get_provider_id(access_token),
        )

    async def _get_provider_id(self, access_token: str) -> str:
        """Look up which bank the token belongs to, "unknown" if the lookup fails."""
        try:
            data = await self._request(
                'GET', f"{self.base_url}/data/v1/me", headers=self._bearer(access_token)
            )
        except ProviderError as e:
            logger.warning(f"TrueLayer: could not load connection metadata: {e}")
            return "unknown"

        results = data.get('results') or [{}]
        provider = results[0].get('provider') or {}
        return provider.get('provider_id') or "unknown"

    def _normalize_transaction(self, tx: Dict[str, Any], account_id: str, pending: bool) -> Transaction:
        """
        Convert a TrueLayer transaction to the internal format.

        TrueLayer amounts are usually already signed, but the transaction_type
        (DEBIT / CREDIT) is authoritative.
        """
        amount = self._to_decimal(tx.get('amount'))
        transaction_type = (tx.get('transaction_type') or '').upper()
        if transaction_type == 'DEBIT':
            amount = -abs(amount)
        elif transaction_type == 'CREDIT':
            amount = abs(amount)

        return Transaction(
            id=tx.get('transaction_id') or f"{tx.get('timestamp')}-{tx.get('amount')}",
            account_id=account_id,
            amount=amount,
            date=self._parse_datetime(tx.get('timestamp')) or datetime.utcnow(),
            description=tx.get('description') or "",
            merchant_name=tx.get('merchant_name') or "",
            pending=pending,
        )
