"""
Banking error taxonomy

Every failure the bank integration raises derives from BankingError so routes
can translate them into HTTP responses in one place.

Failure policy per operation (what happens when the upstream call fails):

    operation            policy      effect on connection
    -------------------  ----------  --------------------------------------
    revoke_access        swallow     none, local disconnect always succeeds
    refresh_token        fatal       marked ERROR, user must reconnect
    fetch_accounts       fatal       marked ERROR, whole sync aborted
    fetch_transactions   policy      see SyncFailurePolicy (abort/continue)
    single account       raise       none, the error is returned to the caller
    any call timing out  raise       none, ProviderTimeoutError is retryable

The policy lives in sync.py (BankSyncService) and service.py (disconnect_bank).
"""


class BankingError(Exception):
    """Base class for all bank integration errors."""


class SessionError(BankingError):
    """The short-lived OAuth flow session is unusable; restart the connect flow."""


class SessionNotFoundError(SessionError):
    pass


class SessionExpiredError(SessionError):
    pass


class ProviderError(BankingError):
    """An upstream aggregator call failed."""


class ProviderTimeoutError(ProviderError):
    """An upstream aggregator call did not answer in time. Safe to retry."""


class UnsupportedProviderError(BankingError):
    pass


class BankSelectionNotSupportedError(BankingError):
    pass


class TokenRefreshError(BankingError):
    """Access token expired and could not be refreshed."""


class NotFoundError(BankingError):
    """Resource missing or not owned by the caller."""


class ConnectionNotFoundError(NotFoundError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class TransactionNotFoundError(NotFoundError):
    pass


class InvalidConnectionStateError(BankingError):
    pass


class SyncError(BankingError):
    """A sync was aborted. A full sync also marks the connection as errored."""
