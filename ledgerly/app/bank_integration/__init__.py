"""
Bank Integration Module

Provides multi-provider Open Banking integration for automatic transaction
sync. Supports TrueLayer and SIBS API Market with an extensible provider
architecture.
"""

from .encryption import TokenEncryption
from .factory import ProviderFactory, get_provider_factory, get_session_store
from .service import BankIntegrationService
from .sync import BankSyncService, SyncFailurePolicy, SyncResult

__all__ = [
    'BankIntegrationService',
    'BankSyncService',
    'ProviderFactory',
    'SyncFailurePolicy',
    'SyncResult',
    'TokenEncryption',
    'get_provider_factory',
    'get_session_store',
]
