"""Typed webhook event variants validated at the gateway boundary."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from app.models.subscription import PlanType, SubscriptionStatus


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    event_id: str
    event_type: str
    occurred_at: datetime


class CheckoutCompleted(_EventBase):
    kind: Literal["checkout_completed"] = "checkout_completed"
    session_ref: str
    account_id: str
    customer_ref: str | None = None
    subscription_ref: str | None = None
    invoice_ref: str | None = None
    payment_status: str
    amount_total: int = 0
    currency: str = "usd"
    plan_type: PlanType = PlanType.MONTHLY
    promo_code: str | None = None


class InvoicePaid(_EventBase):
    kind: Literal["invoice_paid"] = "invoice_paid"
    subscription_ref: str
    invoice_ref: str
    customer_ref: str | None = None
    amount: int = 0
    currency: str = "usd"
    invoice_url: str | None = None


class InvoicePaymentFailed(_EventBase):
    kind: Literal["invoice_payment_failed"] = "invoice_payment_failed"
    subscription_ref: str
    invoice_ref: str
    customer_ref: str | None = None
    amount: int = 0
    currency: str = "usd"
    invoice_url: str | None = None


class InvoiceActionRequired(_EventBase):
    kind: Literal["invoice_action_required"] = "invoice_action_required"
    subscription_ref: str
    invoice_ref: str


class SubscriptionUpdated(_EventBase):
    kind: Literal["subscription_updated"] = "subscription_updated"
    subscription_ref: str
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    price_ref: str | None = None
    discount_amount: int | None = None
    discount_percentage: float | None = None


class SubscriptionDeleted(_EventBase):
    kind: Literal["subscription_deleted"] = "subscription_deleted"
    subscription_ref: str


class UnhandledEvent(_EventBase):
    kind: Literal["unhandled"] = "unhandled"


BillingEvent = Annotated[
    Union[
        CheckoutCompleted,
        InvoicePaid,
        InvoicePaymentFailed,
        InvoiceActionRequired,
        SubscriptionUpdated,
        SubscriptionDeleted,
        UnhandledEvent,
    ],
    Field(discriminator="kind"),
]
