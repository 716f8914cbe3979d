from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from sheetgate.app.db.base import Base


class Plan(str, enum.Enum):
    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"


class SubscriptionStatus(str, enum.Enum):
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

    @classmethod
    def from_stripe(cls, status: str | None) -> "SubscriptionStatus":
        """Collapse a Stripe subscription status into the four account states."""
        return _STRIPE_STATUS_MAP.get(status or "", cls.NONE)


_STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.CANCELED,
}

PLAN_LIMITS: dict[Plan, int] = {
    Plan.FREE: 5,
    Plan.STARTER: 250,
    Plan.PRO: 999999,
}

# Fixed regardless of plan while a payment is outstanding
PAST_DUE_LIMIT = 5


def effective_limit(period_limit: int, subscription_status: str) -> int:
    if subscription_status == SubscriptionStatus.PAST_DUE.value:
        return PAST_DUE_LIMIT
    return period_limit


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def start_of_month(now: datetime) -> datetime:
    now = as_utc(now)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("usage_this_period >= 0", name="ck_accounts_usage_non_negative"),
        Index("idx_accounts_email", "email"),
        Index("idx_accounts_stripe_subscription", "stripe_subscription_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    plan: Mapped[str] = mapped_column(String(16), default=Plan.FREE.value)
    usage_this_period: Mapped[int] = mapped_column(Integer, default=0)
    period_limit: Mapped[int] = mapped_column(Integer, default=PLAN_LIMITS[Plan.FREE])
    subscription_status: Mapped[str] = mapped_column(
        String(16), default=SubscriptionStatus.NONE.value
    )
    period_anchor: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    smart_formatting: Mapped[bool] = mapped_column(Boolean, default=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    google_provider_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    google_provider_refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def to_snapshot(self) -> "AccountSnapshot":
        return AccountSnapshot(
            id=self.id,
            email=self.email,
            plan=self.plan,
            usage_this_period=self.usage_this_period,
            period_limit=self.period_limit,
            subscription_status=self.subscription_status,
            period_anchor=as_utc(self.period_anchor),
            smart_formatting=self.smart_formatting,
            stripe_customer_id=self.stripe_customer_id,
            stripe_subscription_id=self.stripe_subscription_id,
            google_provider_token=self.google_provider_token,
        )


@dataclass
class AccountSnapshot:
    """Read replica of one account row.

    This is what the entity cache stores and what handlers see; it is never
    written back. The Google refresh token is left out so it
    never reaches the shared cache.
    """

    id: str
    email: str | None
    plan: str
    usage_this_period: int
    period_limit: int
    subscription_status: str
    period_anchor: datetime
    smart_formatting: bool = True
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    google_provider_token: str | None = None

    @property
    def effective_limit(self) -> int:
        return effective_limit(self.period_limit, self.subscription_status)

    @property
    def limit_reached(self) -> bool:
        return self.usage_this_period >= self.effective_limit

    def usage_payload(self) -> dict[str, Any]:
        return {
            "current": self.usage_this_period,
            "limit": self.effective_limit,
            "limitReached": self.limit_reached,
            "plan": self.plan,
        }

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["period_anchor"] = as_utc(self.period_anchor).isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountSnapshot":
        data = dict(data)
        anchor = data.get("period_anchor")
        if isinstance(anchor, str):
            data["period_anchor"] = as_utc(datetime.fromisoformat(anchor))
        return cls(**data)


class Activity(Base):
    """One completed export, kept for the account's history view."""

    __tablename__ = "activities"
    __table_args__ = (Index("idx_activities_account_created", "account_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id"), index=True)
    sheet_name: Mapped[str] = mapped_column(String)
    spreadsheet_url: Mapped[str] = mapped_column(String)
    spreadsheet_id: Mapped[str] = mapped_column(String)
    item_count: Mapped[int] = mapped_column(Integer, default=0)
    instruction: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def to_record(self) -> "ActivityRecord":
        return ActivityRecord(
            account_id=self.account_id,
            sheet_name=self.sheet_name,
            spreadsheet_url=self.spreadsheet_url,
            spreadsheet_id=self.spreadsheet_id,
            item_count=self.item_count,
            instruction=self.instruction,
            created_at=as_utc(self.created_at),
            id=self.id,
        )


@dataclass
class ActivityRecord:
    account_id: str
    sheet_name: str
    spreadsheet_url: str
    spreadsheet_id: str
    item_count: int
    instruction: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sheet_name": self.sheet_name,
            "spreadsheet_url": self.spreadsheet_url,
            "spreadsheet_id": self.spreadsheet_id,
            "item_count": self.item_count,
            "instruction": self.instruction,
            "timestamp": as_utc(self.created_at).isoformat(),
        }
