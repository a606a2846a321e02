"""
Storage Package

Durable server-side records. Session data lives in cookies; everything that
must survive a logout (OAuth tokens, bootstrap data) lives here.

Modules:
- provider: In-memory and SQLAlchemy-backed namespaced key-value stores
- tokens: UserTokens persistence keyed by subject
"""

from .provider import MemStoreProvider, SQLStoreProvider, StoreProvider, create_store_provider
from .tokens import TokenStore

__all__ = [
    "MemStoreProvider",
    "SQLStoreProvider",
    "StoreProvider",
    "TokenStore",
    "create_store_provider",
]
