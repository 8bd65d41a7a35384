"""Persistence backends for subscription entitlements and the billing ledgers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.models.subscription import (
    SUBSCRIPTION_FIELDS,
    AccountProfile,
    BillingHistory,
    CheckoutAttempt,
    ProcessedEvent,
    PromoCodeUsage,
    Subscription,
    SubscriptionSnapshot,
    SubscriptionStatus,
    ensure_utc,
)
from app.observability.metrics import metrics
from app.services.billing.errors import PersistenceFailed

logger = logging.getLogger(__name__)


class UpdateStatus(StrEnum):
    APPLIED = "applied"
    STALE = "stale"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class UpdateOutcome:
    status: UpdateStatus
    snapshot: SubscriptionSnapshot | None = None


class EntitlementStore(Protocol):
    """Persistence contract for entitlement state.

    ``not_after`` enables the staleness guard: the write applies only when the
    stored ``updated_at`` is not newer than it, checked in the same statement.
    """

    async def upsert_subscription(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        *,
        not_after: datetime | None = None,
    ) -> SubscriptionSnapshot | None:
        ...

    async def update_by_provider_ref(
        self,
        subscription_ref: str,
        fields: Mapping[str, Any],
        *,
        not_after: datetime | None = None,
    ) -> UpdateOutcome:
        ...

    async def get_subscription(self, account_id: str) -> SubscriptionSnapshot | None:
        ...

    async def get_by_provider_ref(self, subscription_ref: str) -> SubscriptionSnapshot | None:
        ...

    async def append_billing_history(self, entry: BillingHistory) -> bool:
        ...

    async def append_promo_usage(self, entry: PromoCodeUsage) -> bool:
        ...

    async def get_account_profile(self, account_id: str) -> AccountProfile | None:
        ...

    async def upsert_account_profile(
        self,
        account_id: str,
        *,
        email: str | None = None,
        onboarding_completed: bool | None = None,
    ) -> AccountProfile:
        ...

    async def mark_onboarding_completed(self, account_id: str) -> None:
        ...

    async def record_checkout_attempt(self, attempt: CheckoutAttempt) -> CheckoutAttempt:
        ...

    async def get_checkout_attempt(self, session_ref: str) -> CheckoutAttempt | None:
        ...

    async def update_checkout_attempt(
        self, session_ref: str, **changes: Any
    ) -> CheckoutAttempt | None:
        """Apply ``changes`` to an attempt; consumed attempts are returned unchanged."""

    async def purge_checkout_attempts(self, older_than: datetime) -> int:
        ...

    async def has_processed_event(self, event_id: str) -> bool:
        ...

    async def record_processed_event(self, event_id: str, event_type: str) -> bool:
        ...


def _validate_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - SUBSCRIPTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")
    start = fields.get("current_period_start")
    end = fields.get("current_period_end")
    if start is not None and end is not None and end < start:
        raise PersistenceFailed("current_period_end precedes current_period_start")
    return dict(fields)


def _is_stale(updated_at: datetime | None, not_after: datetime | None) -> bool:
    if not_after is None or updated_at is None:
        return False
    return ensure_utc(updated_at) > ensure_utc(not_after)


class InMemoryEntitlementStore(EntitlementStore):
    """Lock-guarded store used for local development and tests."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._profiles: dict[str, AccountProfile] = {}
        self._attempts: dict[str, CheckoutAttempt] = {}
        self._billing: dict[str, BillingHistory] = {}
        self._promo_usage: dict[str, PromoCodeUsage] = {}
        self._events: dict[str, ProcessedEvent] = {}
        self._lock = Lock()

    @property
    def billing_history(self) -> list[BillingHistory]:
        with self._lock:
            return list(self._billing.values())

    @property
    def promo_usage(self) -> list[PromoCodeUsage]:
        with self._lock:
            return list(self._promo_usage.values())

    async def upsert_subscription(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        *,
        not_after: datetime | None = None,
    ) -> SubscriptionSnapshot | None:
        values = _validate_fields(fields)
        now = datetime.now(UTC)
        with self._lock:
            row = self._subscriptions.get(account_id)
            if row is not None and _is_stale(row.updated_at, not_after):
                return None
            ref = values.get("provider_subscription_ref")
            if ref and any(
                other.provider_subscription_ref == ref and other.account_id != account_id
                for other in self._subscriptions.values()
            ):
                raise PersistenceFailed(f"Subscription {ref} belongs to another account")
            if row is None:
                row = Subscription(account_id=account_id, created_at=now)
                self._subscriptions[account_id] = row
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = not_after or now
            snapshot = SubscriptionSnapshot.model_validate(row)
        metrics.increment("store.subscription.upserted", tags={"backend": "memory"})
        return snapshot

    async def update_by_provider_ref(
        self,
        subscription_ref: str,
        fields: Mapping[str, Any],
        *,
        not_after: datetime | None = None,
    ) -> UpdateOutcome:
        values = _validate_fields(fields)
        with self._lock:
            row = next(
                (
                    candidate
                    for candidate in self._subscriptions.values()
                    if candidate.provider_subscription_ref == subscription_ref
                ),
                None,
            )
            if row is None:
                return UpdateOutcome(UpdateStatus.NOT_FOUND)
            if _is_stale(row.updated_at, not_after):
                return UpdateOutcome(UpdateStatus.STALE, SubscriptionSnapshot.model_validate(row))
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = not_after or datetime.now(UTC)
            return UpdateOutcome(UpdateStatus.APPLIED, SubscriptionSnapshot.model_validate(row))

    async def get_subscription(self, account_id: str) -> SubscriptionSnapshot | None:
        with self._lock:
            row = self._subscriptions.get(account_id)
            return SubscriptionSnapshot.model_validate(row) if row else None

    async def get_by_provider_ref(self, subscription_ref: str) -> SubscriptionSnapshot | None:
        with self._lock:
            for row in self._subscriptions.values():
                if row.provider_subscription_ref == subscription_ref:
                    return SubscriptionSnapshot.model_validate(row)
        return None

    async def append_billing_history(self, entry: BillingHistory) -> bool:
        with self._lock:
            if entry.dedup_key in self._billing:
                return False
            self._billing[entry.dedup_key] = entry
        return True

    async def append_promo_usage(self, entry: PromoCodeUsage) -> bool:
        with self._lock:
            if entry.dedup_key in self._promo_usage:
                return False
            self._promo_usage[entry.dedup_key] = entry
        return True

    async def get_account_profile(self, account_id: str) -> AccountProfile | None:
        with self._lock:
            return self._profiles.get(account_id)

    async def upsert_account_profile(
        self,
        account_id: str,
        *,
        email: str | None = None,
        onboarding_completed: bool | None = None,
    ) -> AccountProfile:
        with self._lock:
            profile = self._profiles.setdefault(account_id, AccountProfile(account_id=account_id))
            if email is not None:
                profile.email = email
            if onboarding_completed is not None:
                profile.onboarding_completed = onboarding_completed
            profile.updated_at = datetime.now(UTC)
            return profile

    async def mark_onboarding_completed(self, account_id: str) -> None:
        await self.upsert_account_profile(account_id, onboarding_completed=True)

    async def record_checkout_attempt(self, attempt: CheckoutAttempt) -> CheckoutAttempt:
        with self._lock:
            self._attempts[attempt.provider_session_ref] = attempt
        return attempt

    async def get_checkout_attempt(self, session_ref: str) -> CheckoutAttempt | None:
        with self._lock:
            return self._attempts.get(session_ref)

    async def update_checkout_attempt(
        self, session_ref: str, **changes: Any
    ) -> CheckoutAttempt | None:
        with self._lock:
            attempt = self._attempts.get(session_ref)
            if attempt is None:
                return None
            if attempt.consumed_at is not None:
                return attempt
            for key, value in changes.items():
                setattr(attempt, key, value)
            return attempt

    async def purge_checkout_attempts(self, older_than: datetime) -> int:
        with self._lock:
            expired = [
                ref
                for ref, attempt in self._attempts.items()
                if ensure_utc(attempt.created_at) < older_than
            ]
            for ref in expired:
                del self._attempts[ref]
        return len(expired)

    async def has_processed_event(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._events

    async def record_processed_event(self, event_id: str, event_type: str) -> bool:
        with self._lock:
            if event_id in self._events:
                return False
            self._events[event_id] = ProcessedEvent(event_id=event_id, event_type=event_type)
        return True


class SqlEntitlementStore(EntitlementStore):
    """Async SQLAlchemy store for Postgres/Supabase (and SQLite in tests).

    Subscription writes are single ``INSERT ... ON CONFLICT (account_id) DO
    UPDATE`` statements, so concurrent reconciliations of one account converge
    on one row without application-level locking.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._dialect = engine.dialect.name
        if self._dialect not in {"postgresql", "sqlite"}:
            raise ValueError(f"Unsupported database dialect: {self._dialect}")
        self._sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        self._metrics_tags = {"backend": self._dialect}

    def _insert(self, table: sa.Table) -> Any:
        return pg_insert(table) if self._dialect == "postgresql" else sqlite_insert(table)

    async def upsert_subscription(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        *,
        not_after: datetime | None = None,
    ) -> SubscriptionSnapshot | None:
        values = _validate_fields(fields)
        table = Subscription.__table__
        now = datetime.now(UTC)
        written_at = not_after or now
        insert_values = {
            "status": SubscriptionStatus.INACTIVE.value,
            **values,
            "id": str(uuid4()),
            "account_id": account_id,
            "created_at": now,
            "updated_at": written_at,
        }
        statement = self._insert(table).values(**insert_values)
        statement = statement.on_conflict_do_update(
            index_elements=[table.c.account_id],
            set_={**values, "updated_at": written_at},
            where=(table.c.updated_at <= not_after) if not_after is not None else None,
        ).returning(*table.c)
        try:
            async with self._sessions() as session:
                result = await session.execute(statement)
                row = result.mappings().first()
                await session.commit()
        except IntegrityError as exc:
            logger.warning(
                "billing.store.conflict",
                extra={"account_id": account_id, "backend": self._dialect},
            )
            raise PersistenceFailed("Subscription conflicts with an existing record") from exc
        except SQLAlchemyError as exc:
            logger.exception(
                "billing.store.error",
                extra={"account_id": account_id, "operation": "upsert", "backend": self._dialect},
            )
            raise PersistenceFailed() from exc
        if row is None:
            return None
        metrics.increment("store.subscription.upserted", tags=self._metrics_tags)
        return SubscriptionSnapshot.model_validate(dict(row))

    async def update_by_provider_ref(
        self,
        subscription_ref: str,
        fields: Mapping[str, Any],
        *,
        not_after: datetime | None = None,
    ) -> UpdateOutcome:
        values = _validate_fields(fields)
        table = Subscription.__table__
        statement = sa.update(table).where(table.c.provider_subscription_ref == subscription_ref)
        if not_after is not None:
            statement = statement.where(table.c.updated_at <= not_after)
        statement = statement.values(
            **values, updated_at=not_after or datetime.now(UTC)
        ).returning(*table.c)
        try:
            async with self._sessions() as session:
                result = await session.execute(statement)
                row = result.mappings().first()
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception(
                "billing.store.error",
                extra={
                    "subscription_ref": subscription_ref,
                    "operation": "update_by_provider_ref",
                    "backend": self._dialect,
                },
            )
            raise PersistenceFailed() from exc
        if row is not None:
            return UpdateOutcome(UpdateStatus.APPLIED, SubscriptionSnapshot.model_validate(dict(row)))
        existing = await self.get_by_provider_ref(subscription_ref)
        if existing is None:
            return UpdateOutcome(UpdateStatus.NOT_FOUND)
        return UpdateOutcome(UpdateStatus.STALE, existing)

    async def get_subscription(self, account_id: str) -> SubscriptionSnapshot | None:
        return await self._fetch_subscription(Subscription.account_id == account_id)

    async def get_by_provider_ref(self, subscription_ref: str) -> SubscriptionSnapshot | None:
        return await self._fetch_subscription(
            Subscription.provider_subscription_ref == subscription_ref
        )

    async def _fetch_subscription(self, clause: Any) -> SubscriptionSnapshot | None:
        try:
            async with self._sessions() as session:
                result = await session.execute(sa.select(Subscription).where(clause))
                record = result.scalars().first()
        except SQLAlchemyError as exc:
            logger.exception("billing.store.error", extra={"operation": "get_subscription"})
            raise PersistenceFailed("Failed to load subscription") from exc
        return SubscriptionSnapshot.model_validate(record) if record else None

    async def append_billing_history(self, entry: BillingHistory) -> bool:
        return await self._append(entry, ledger="billing_history")

    async def append_promo_usage(self, entry: PromoCodeUsage) -> bool:
        return await self._append(entry, ledger="promo_code_usage")

    async def _append(self, entry: BillingHistory | PromoCodeUsage, *, ledger: str) -> bool:
        try:
            async with self._sessions() as session:
                session.add(entry)
                await session.commit()
        except IntegrityError:
            logger.info(
                "billing.store.ledger_duplicate",
                extra={"ledger": ledger, "dedup_key": entry.dedup_key},
            )
            return False
        except SQLAlchemyError as exc:
            logger.exception("billing.store.error", extra={"operation": f"append.{ledger}"})
            raise PersistenceFailed(f"Failed to append to {ledger}") from exc
        return True

    async def get_account_profile(self, account_id: str) -> AccountProfile | None:
        try:
            async with self._sessions() as session:
                return await session.get(AccountProfile, account_id)
        except SQLAlchemyError as exc:
            logger.exception("billing.store.error", extra={"operation": "get_account_profile"})
            raise PersistenceFailed("Failed to load account profile") from exc

    async def upsert_account_profile(
        self,
        account_id: str,
        *,
        email: str | None = None,
        onboarding_completed: bool | None = None,
    ) -> AccountProfile:
        table = AccountProfile.__table__
        now = datetime.now(UTC)
        changes: dict[str, Any] = {"updated_at": now}
        if email is not None:
            changes["email"] = email
        if onboarding_completed is not None:
            changes["onboarding_completed"] = onboarding_completed
        statement = (
            self._insert(table)
            .values(account_id=account_id, **{"onboarding_completed": False, **changes})
            .on_conflict_do_update(index_elements=[table.c.account_id], set_=changes)
            .returning(*table.c)
        )
        try:
            async with self._sessions() as session:
                result = await session.execute(statement)
                row = result.mappings().one()
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception(
                "billing.store.error",
                extra={"account_id": account_id, "operation": "upsert_account_profile"},
            )
            raise PersistenceFailed("Failed to update account profile") from exc
        return AccountProfile.model_validate(dict(row))

    async def mark_onboarding_completed(self, account_id: str) -> None:
        await self.upsert_account_profile(account_id, onboarding_completed=True)

    async def record_checkout_attempt(self, attempt: CheckoutAttempt) -> CheckoutAttempt:
        try:
            async with self._sessions() as session:
                merged = await session.merge(attempt)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception(
                "billing.store.error",
                extra={
                    "session_ref": attempt.provider_session_ref,
                    "operation": "record_checkout_attempt",
                },
            )
            raise PersistenceFailed("Failed to record checkout attempt") from exc
        return merged

    async def get_checkout_attempt(self, session_ref: str) -> CheckoutAttempt | None:
        try:
            async with self._sessions() as session:
                return await session.get(CheckoutAttempt, session_ref)
        except SQLAlchemyError as exc:
            logger.exception("billing.store.error", extra={"operation": "get_checkout_attempt"})
            raise PersistenceFailed("Failed to load checkout attempt") from exc

    async def update_checkout_attempt(
        self, session_ref: str, **changes: Any
    ) -> CheckoutAttempt | None:
        try:
            async with self._sessions() as session:
                attempt = await session.get(CheckoutAttempt, session_ref)
                if attempt is None:
                    return None
                if attempt.consumed_at is not None:
                    return attempt
                for key, value in changes.items():
                    setattr(attempt, key, value)
                await session.commit()
                return attempt
        except SQLAlchemyError as exc:
            logger.exception(
                "billing.store.error",
                extra={"session_ref": session_ref, "operation": "update_checkout_attempt"},
            )
            raise PersistenceFailed("Failed to update checkout attempt") from exc

    async def purge_checkout_attempts(self, older_than: datetime) -> int:
        statement = sa.delete(CheckoutAttempt.__table__).where(
            CheckoutAttempt.__table__.c.created_at < older_than
        )
        try:
            async with self._sessions() as session:
                result = await session.execute(statement)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("billing.store.error", extra={"operation": "purge_checkout_attempts"})
            raise PersistenceFailed("Failed to purge checkout attempts") from exc
        return result.rowcount or 0

    async def has_processed_event(self, event_id: str) -> bool:
        try:
            async with self._sessions() as session:
                return await session.get(ProcessedEvent, event_id) is not None
        except SQLAlchemyError as exc:
            logger.exception("billing.store.error", extra={"operation": "has_processed_event"})
            raise PersistenceFailed("Failed to load processed event") from exc

    async def record_processed_event(self, event_id: str, event_type: str) -> bool:
        statement = (
            self._insert(ProcessedEvent.__table__)
            .values(event_id=event_id, event_type=event_type, received_at=datetime.now(UTC))
            .on_conflict_do_nothing(index_elements=["event_id"])
        )
        try:
            async with self._sessions() as session:
                result = await session.execute(statement)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception(
                "billing.store.error",
                extra={"event_id": event_id, "operation": "record_processed_event"},
            )
            raise PersistenceFailed("Failed to record processed event") from exc
        return bool(result.rowcount)


def build_entitlement_store(engine: AsyncEngine | None) -> EntitlementStore:
    """Return the SQL store when a database engine is configured, else the in-memory one."""
    if engine is None:
        logger.info("billing.store.initialized", extra={"backend": "memory"})
        return InMemoryEntitlementStore()
    store = SqlEntitlementStore(engine)
    logger.info("billing.store.initialized", extra={"backend": engine.dialect.name})
    return store
