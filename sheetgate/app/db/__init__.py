from sheetgate.app.db.base import Base
from sheetgate.app.db.models import (
    PAST_DUE_LIMIT,
    PLAN_LIMITS,
    Account,
    AccountSnapshot,
    Plan,
    SubscriptionStatus,
    effective_limit,
)

__all__ = [
    "Base",
    "Account",
    "AccountSnapshot",
    "Plan",
    "SubscriptionStatus",
    "PLAN_LIMITS",
    "PAST_DUE_LIMIT",
    "effective_limit",
]
