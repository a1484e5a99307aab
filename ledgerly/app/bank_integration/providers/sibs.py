"""
SIBS API Market Provider Implementation

SIBS API Market is a PSD2 aggregator for Portuguese banks (Berlin Group
NextGenPSD2 flavour). Requires mTLS (mutual TLS) authentication with client
certificates, and a consent must be created for a specific bank before the
user can be redirected, so the flow has an extra bank-selection step.

Documentation: https://www.sibsapimarket.com/
"""

import logging
import os
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from ..errors import ProviderError
from .base import (
    Account,
    AuthSession,
    Bank,
    BankSelectionProvider,
    TokenResponse,
    Transaction,
    TransactionOptions,
)

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.sibsapimarket.com"
PRODUCTION_URL = "https://api.sibsapimarket.com"

CONSENT_VALIDITY_MONTHS = 6
CONSENT_FREQUENCY_PER_DAY = 4

ACCOUNT_TYPE_MAP = {
    'CACC': 'Current',
    'SVGS': 'Savings',
    'LOAN': 'Loan',
    'CRDT': 'Credit Card',
}


def add_months(start: date, months: int) -> date:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1

    next_month = date(year + (month // 12), month % 12 + 1, 1)
    last_day = (next_month - timedelta(days=1)).day
    return date(year, month, min(start.day, last_day))


class SibsProvider(BankSelectionProvider):
    """
    SIBS API Market integration.

    Special requirements:
    - mTLS authentication (requires client certificate and private key)
    - Bank selection and consent creation before redirect
    - Consent id needed to revoke access
    """

    name = "sibs"
    display_name = "SIBS API Market"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        session_store,
        certificate_path: Optional[str] = None,
        private_key_path: Optional[str] = None,
        is_sandbox: bool = True,
        psu_ip_address: str = "127.0.0.1",
        **kwargs
    ):
        """
        Initialize SIBS provider.

        Args:
            client_id: SIBS application client id
            client_secret: SIBS application client secret
            redirect_uri: Registered callback URL
            session_store: Flow session store
            certificate_path: Path to client certificate (.crt)
            private_key_path: Path to private key (.key)
            is_sandbox: Use the sandbox environment
            psu_ip_address: Reported PSU-IP-Address header
        """
        super().__init__(session_store, **kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.base_url = SANDBOX_URL if is_sandbox else PRODUCTION_URL
        self.psu_ip_address = psu_ip_address

        # mTLS certificate tuple for httpx
        if certificate_path and private_key_path and \
                os.path.exists(certificate_path) and os.path.exists(private_key_path):
            self.client_cert = (certificate_path, private_key_path)
        else:
            self.client_cert = None

    async def initiate_auth(self, user_id: int) -> AuthSession:
        """
        Start the flow by loading the list of banks the user can pick from.

        No auth_url is returned; the route calls complete_auth once the user
        has selected a bank.
        """
        banks = await self.get_banks()

        session_id = self._new_session_id()
        self.session_store.store(session_id, {
            'user_id': user_id,
            'provider_name': self.name,
            'banks': [bank.id for bank in banks],
        })

        logger.info(f"SIBS auth flow started for user {user_id} with {len(banks)} banks")
        return AuthSession(session_id=session_id, auth_url=None, banks=banks)

    async def complete_auth(self, session_id: str, bank_id: str) -> AuthSession:
        """
        Create an account-information consent for the chosen bank.

        The consent grants access to accounts, balances and transactions for
        six months, polled at most four times a day.
        """
        session = self.session_store.get(session_id)

        valid_until = add_months(datetime.utcnow().date(), CONSENT_VALIDITY_MONTHS)
        data = await self._request(
            'POST',
            f"{self.base_url}/v1/consents",
            json={
                'access': {
                    'accounts': True,
                    'balances': True,
                    'transactions': True,
                    'availableFunds': True,
                },
                'recurringIndicator': True,
                'validUntil': valid_until.isoformat(),
                'frequencyPerDay': CONSENT_FREQUENCY_PER_DAY,
            },
            headers=self._headers(),
            client_kwargs={'cert': self.client_cert},
        )

        consent_id = data.get('consentId')
        if not consent_id:
            raise ProviderError("SIBS consent response did not contain a consentId")

        params = {
            'response_type': 'code',
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'scope': 'AIS',
            'consent_id': consent_id,
            'state': session_id,
        }
        auth_url = f"{self.base_url}/auth/{bank_id}?{urlencode(params)}"

        session.update({'consent_id': consent_id, 'bank_id': bank_id})
        self.session_store.update(session_id, session)

        logger.info(f"SIBS consent {consent_id} created for bank {bank_id}")
        return AuthSession(session_id=session_id, auth_url=auth_url, consent_id=consent_id)

    async def exchange_token(self, code: str, session_id: Optional[str] = None) -> TokenResponse:
        if not session_id:
            raise ProviderError("Session ID is required for SIBS provider")

        session = self.session_store.get(session_id)

        data = await self._request(
            'POST',
            f"{self.base_url}/oauth2/token",
            data={
                'grant_type': 'authorization_code',
                'code': code,
                'redirect_uri': self.redirect_uri,
                'client_id': self.client_id,
                'client_secret': self.client_secret,
            },
            client_kwargs={'cert': self.client_cert},
        )

        bank_id = session.get('bank_id')
        return TokenResponse(
            access_token=self._require_access_token(data),
            refresh_token=data.get('refresh_token'),
            expires_at=self._expires_at(data),
            consent_id=session.get('consent_id'),
            bank_id=bank_id,
            # The selected bank identifies the connection
            provider_account_id=bank_id or "unknown",
        )

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        data = await self._request(
            'POST',
            f"{self.base_url}/oauth2/token",
            data={
                'grant_type': 'refresh_token',
                'refresh_token': refresh_token,
                'client_id': self.client_id,
                'client_secret': self.client_secret,
            },
            client_kwargs={'cert': self.client_cert},
        )

        bank_id = data.get('bankId') or ""
        return TokenResponse(
            access_token=self._require_access_token(data),
            refresh_token=data.get('refresh_token'),
            expires_at=self._expires_at(data),
            consent_id=data.get('consent_id'),
            bank_id=bank_id,
            provider_account_id=bank_id,
        )

    async def fetch_accounts(self, access_token: str) -> List[Account]:
        data = await self._request(
            'GET',
            f"{self.base_url}/v1/accounts",
            headers=self._headers(access_token),
            client_kwargs={'cert': self.client_cert},
        )

        accounts = []
        for acc in data.get('accounts') or []:
            iban = acc.get('iban') or ""
            closing = next(
                (b for b in acc.get('balances') or [] if b.get('balanceType') == 'closingBooked'),
                {}
            )
            accounts.append(Account(
                id=acc['resourceId'],
                account_name=acc.get('name') or f"Account {iban[-4:]}",
                account_number=iban,
                account_type=ACCOUNT_TYPE_MAP.get(acc.get('cashAccountType'), 'Other'),
                balance=self._to_decimal((closing.get('amount') or {}).get('amount')),
                currency=acc.get('currency') or 'EUR',
            ))

        logger.info(f"SIBS: found {len(accounts)} accounts")
        return accounts

    async def fetch_transactions(
        self,
        access_token: str,
        account_id: str,
        options: TransactionOptions
    ) -> List[Transaction]:
        """
        Fetch booked and pending transactions in a single call (bookingStatus=both).

        SIBS reports unsigned amounts with a creditDebitIndicator; DBIT rows
        are turned into negative amounts.
        """
        data = await self._request(
            'GET',
            f"{self.base_url}/v1/accounts/{account_id}/transactions",
            params={
                'dateFrom': options.start_date.strftime('%Y-%m-%d'),
                'dateTo': options.end_date.strftime('%Y-%m-%d'),
                'bookingStatus': 'both',
            },
            headers=self._headers(access_token),
            client_kwargs={'cert': self.client_cert},
        )

        groups = data.get('transactions') or {}
        transactions = [
            self._normalize_transaction(tx, account_id, pending=False)
            for tx in groups.get('booked') or []
        ]
        transactions.extend(
            self._normalize_transaction(tx, account_id, pending=True)
            for tx in groups.get('pending') or []
        )

        logger.info(f"SIBS: found {len(transactions)} transactions for account {account_id}")
        return transactions

    async def get_consent_status(self, access_token: str, consent_id: str) -> str:
        """
        Check the status of a consent (e.g. 'valid', 'expired', 'revokedByPsu').

        Args:
            access_token: Valid OAuth access token
            consent_id: Consent created during complete_auth

        Returns:
            Consent status string as reported by SIBS
        """
        data = await self._request(
            'GET',
            f"{self.base_url}/v1/consents/{consent_id}",
            headers=self._headers(access_token),
            client_kwargs={'cert': self.client_cert},
        )
        return data.get('consentStatus', '')

    async def revoke_access(self, access_token: str, consent_id: Optional[str] = None) -> bool:
        if not consent_id:
            raise ProviderError("Consent ID is required for SIBS provider")

        try:
            await self._request(
                'DELETE',
                f"{self.base_url}/v1/consents/{consent_id}",
                headers=self._headers(access_token),
                client_kwargs={'cert': self.client_cert},
            )
            return True
        except ProviderError as e:
            logger.error(f"Failed to revoke SIBS consent {consent_id}: {e}")
            return False

    async def get_banks(self) -> List[Bank]:
        data = await self._request(
            'GET',
            f"{self.base_url}/v1/banks",
            headers=self._headers(),
            client_kwargs={'cert': self.client_cert},
        )
        return [
            Bank(id=bank['bankId'], name=bank.get('name', bank['bankId']), region='PT', logo=bank.get('logo'))
            for bank in data.get('banks') or []
        ]

    # Helpers

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'X-Request-ID': str(uuid.uuid4()),
            'PSU-IP-Address': self.psu_ip_address,
        }
        if access_token:
            headers['Authorization'] = f'Bearer {access_token}'
        return headers

    @staticmethod
    def _require_access_token(data: Dict[str, Any]) -> str:
        access_token = data.get('access_token')
        if not access_token:
            raise ProviderError("SIBS token response did not contain an access token")
        return access_token

    @staticmethod
    def _expires_at(data: Dict[str, Any]) -> datetime:
        return datetime.utcnow() + timedelta(seconds=int(data.get('expires_in') or 3600))

    def _normalize_transaction(self, tx: Dict[str, Any], account_id: str, pending: bool) -> Transaction:
        raw_amount = (tx.get('amount') or {}).get('amount')
        amount = abs(self._to_decimal(raw_amount))
        if tx.get('creditDebitIndicator') == 'DBIT':
            amount = -amount

        booking_date = tx.get('bookingDate') or tx.get('valueDate')

        return Transaction(
            # Some banks omit transactionId; fall back to a stable composite key
            id=tx.get('transactionId') or f"{tx.get('bookingDate')}-{raw_amount}",
            account_id=account_id,
            amount=amount,
            date=self._parse_datetime(booking_date) or datetime.utcnow(),
            description=tx.get('remittanceInformationUnstructured') or tx.get('additionalInformation') or "",
            merchant_name=tx.get('creditorName') or tx.get('debtorName') or "",
            pending=pending,
        )
