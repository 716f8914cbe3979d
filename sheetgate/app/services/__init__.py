"""Services package for the gateway.

This package provides:
- The durable account store (SQLAlchemy and in-process)
- The account entity cache over the shared store
- The quota ledger, the only path that charges usage
- Identity, billing and Google Sheets integrations
"""

from sheetgate.app.services.account_cache import AccountCache
from sheetgate.app.services.account_store import (
    AccountStore,
    ConsumeResult,
    InMemoryAccountStore,
    SqlAlchemyAccountStore,
)
from sheetgate.app.services.quota_ledger import QuotaLedger

__all__ = [
    "AccountCache",
    "AccountStore",
    "ConsumeResult",
    "InMemoryAccountStore",
    "SqlAlchemyAccountStore",
    "QuotaLedger",
]
