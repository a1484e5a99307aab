"""
Bank Provider Implementations

Abstract base classes and concrete implementations for different Open Banking
aggregators.
"""

from .base import BaseBankProvider, BankSelectionProvider, ProviderKind
from .sibs import SibsProvider
from .truelayer import TrueLayerProvider

__all__ = [
    'BaseBankProvider',
    'BankSelectionProvider',
    'ProviderKind',
    'SibsProvider',
    'TrueLayerProvider',
]
