"""SQLModel mappings for entitlement state and the billing ledgers."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    INACTIVE = "inactive"

    @classmethod
    def from_provider(cls, value: str | None) -> SubscriptionStatus:
        """Map a provider status string, falling back to ``inactive``."""
        try:
            return cls(value or "")
        except ValueError:
            return cls.INACTIVE


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class PlanType(StrEnum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class CheckoutState(StrEnum):
    PENDING = "PENDING"
    PAID_UNCONFIRMED = "PAID_UNCONFIRMED"
    FREE_GRANT = "FREE_GRANT"
    ENTITLED = "ENTITLED"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({CheckoutState.ENTITLED, CheckoutState.FAILED})

SUBSCRIPTION_FIELDS = frozenset(
    {
        "provider_customer_ref",
        "provider_subscription_ref",
        "provider_price_ref",
        "status",
        "plan_type",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
        "canceled_at",
        "trial_start",
        "trial_end",
        "promo_code",
        "discount_amount",
        "discount_percentage",
    }
)


class Subscription(SQLModel, table=True):
    """One entitlement row per account; the source of truth for access."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        sa.CheckConstraint(
            "current_period_end IS NULL OR current_period_start IS NULL "
            "OR current_period_end >= current_period_start",
            name="ck_subscriptions_period_order",
        ),
    )

    id: str = Field(default_factory=_new_id, sa_column=Column(String(36), primary_key=True))
    account_id: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    provider_customer_ref: str | None = Field(
        default=None, sa_column=Column(String(255), nullable=True)
    )
    provider_subscription_ref: str | None = Field(
        default=None, sa_column=Column(String(255), nullable=True, unique=True)
    )
    provider_price_ref: str | None = Field(
        default=None, sa_column=Column(String(255), nullable=True)
    )
    status: str = Field(
        default=SubscriptionStatus.INACTIVE.value,
        sa_column=Column(String(32), nullable=False),
    )
    plan_type: str | None = Field(default=None, sa_column=Column(String(16), nullable=True))
    current_period_start: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    current_period_end: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    cancel_at_period_end: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    canceled_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    trial_start: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    trial_end: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    promo_code: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))
    discount_amount: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    discount_percentage: float | None = Field(
        default=None, sa_column=Column(Float, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


class AccountProfile(SQLModel, table=True):
    """The slice of the identity-provider account this service writes."""

    __tablename__ = "account_profiles"

    account_id: str = Field(sa_column=Column(String(255), primary_key=True))
    email: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    onboarding_completed: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


class CheckoutAttempt(SQLModel, table=True):
    """Ephemeral record of one pass through the external payment flow."""

    __tablename__ = "checkout_attempts"
    __table_args__ = (sa.Index("ix_checkout_attempts_account_id", "account_id"),)

    provider_session_ref: str = Field(sa_column=Column(String(255), primary_key=True))
    account_id: str = Field(sa_column=Column(String(255), nullable=False))
    plan_type: str = Field(sa_column=Column(String(16), nullable=False))
    provider_price_ref: str | None = Field(
        default=None, sa_column=Column(String(255), nullable=True)
    )
    promo_code: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))
    promotion_code_ref: str | None = Field(
        default=None, sa_column=Column(String(255), nullable=True)
    )
    discount_type: str | None = Field(default=None, sa_column=Column(String(16), nullable=True))
    discount_value: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    state: str = Field(
        default=CheckoutState.PENDING.value, sa_column=Column(String(32), nullable=False)
    )
    failure_reason: str | None = Field(
        default=None, sa_column=Column(String(64), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    consumed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    @property
    def is_free_grant(self) -> bool:
        return self.discount_type == "percentage" and (self.discount_value or 0) >= 100


class BillingHistory(SQLModel, table=True):
    """Append-only ledger of completed and failed payments."""

    __tablename__ = "billing_history"
    __table_args__ = (sa.Index("ix_billing_history_account_id", "account_id"),)

    id: str = Field(default_factory=_new_id, sa_column=Column(String(36), primary_key=True))
    dedup_key: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    account_id: str = Field(sa_column=Column(String(255), nullable=False))
    subscription_id: str | None = Field(
        default=None,
        sa_column=Column(
            String(36), sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
        ),
    )
    provider_invoice_ref: str | None = Field(
        default=None, sa_column=Column(String(255), nullable=True)
    )
    amount: int = Field(sa_column=Column(Integer, nullable=False))
    currency: str = Field(default="usd", sa_column=Column(String(3), nullable=False))
    status: str = Field(default="paid", sa_column=Column(String(16), nullable=False))
    invoice_url: str | None = Field(default=None, sa_column=Column(String(1024), nullable=True))
    paid_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


class PromoCodeUsage(SQLModel, table=True):
    """Append-only audit of successful promotion code applications."""

    __tablename__ = "promo_code_usage"
    __table_args__ = (sa.Index("ix_promo_code_usage_account_id", "account_id"),)

    id: str = Field(default_factory=_new_id, sa_column=Column(String(36), primary_key=True))
    dedup_key: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    account_id: str = Field(sa_column=Column(String(255), nullable=False))
    subscription_id: str | None = Field(
        default=None,
        sa_column=Column(
            String(36), sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
        ),
    )
    promo_code: str = Field(sa_column=Column(String(64), nullable=False))
    provider_promotion_ref: str | None = Field(
        default=None, sa_column=Column(String(255), nullable=True)
    )
    discount_type: str | None = Field(default=None, sa_column=Column(String(16), nullable=True))
    discount_value: float = Field(default=0.0, sa_column=Column(Float, nullable=False))
    applied_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    usage_metadata: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )


class ProcessedEvent(SQLModel, table=True):
    """Recorded Stripe webhook events for duplicate-delivery detection."""

    __tablename__ = "processed_events"

    event_id: str = Field(sa_column=Column(String(255), primary_key=True, nullable=False))
    event_type: str = Field(sa_column=Column(String(128), nullable=False))
    received_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


class SubscriptionSnapshot(BaseModel):
    """Detached, read-only view of a Subscription row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    account_id: str
    provider_customer_ref: str | None = None
    provider_subscription_ref: str | None = None
    provider_price_ref: str | None = None
    status: SubscriptionStatus
    plan_type: PlanType | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    promo_code: str | None = None
    discount_amount: int | None = None
    discount_percentage: float | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator(
        "current_period_start",
        "current_period_end",
        "canceled_at",
        "trial_start",
        "trial_end",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    @property
    def is_comped(self) -> bool:
        return self.provider_subscription_ref is None and self.discount_percentage == 100
