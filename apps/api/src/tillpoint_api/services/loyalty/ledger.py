"""Append-only points ledger and the per-account unit of work."""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Sequence, TypeVar
from uuid import UUID

from loguru import logger
from opentelemetry.trace import Span
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from tillpoint_api.core.clock import utcnow
from tillpoint_api.core.settings import settings
from tillpoint_api.domain.loyalty.errors import (
    ConcurrentConflict,
    InsufficientBalance,
    LedgerValidationError,
    StorageConflict,
    UnknownAccount,
)
from tillpoint_api.models.loyalty import LedgerEntryKind, LoyaltyAccount, LoyaltyLedgerEntry
from tillpoint_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from tillpoint_api.observability.tracing import get_tracer

from .locks import AccountLockRegistry, get_account_lock_registry

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff for optimistic concurrency conflicts."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.05
    max_delay_seconds: float = 1.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.ledger_max_attempts,
            base_delay_seconds=settings.ledger_retry_base_delay_seconds,
            max_delay_seconds=settings.ledger_retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(attempt - 1, 0)))


@dataclass(slots=True)
class LedgerPage:
    entries: list[LoyaltyLedgerEntry]
    next_cursor: str | None


def encode_sequence_cursor(sequence: int) -> str:
    return base64.urlsafe_b64encode(f"seq|{sequence}".encode("utf-8")).decode("utf-8")


def decode_sequence_cursor(cursor: str) -> int:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        prefix, value = raw.split("|", 1)
        if prefix != "seq":
            raise ValueError(prefix)
        return int(value)
    except ValueError as exc:
        raise LedgerValidationError("Invalid ledger cursor", cursor=cursor) from exc


def _check_sign(kind: LedgerEntryKind, delta: int) -> None:
    if kind is LedgerEntryKind.EARN and delta < 0:
        raise LedgerValidationError("Earn entries cannot be negative", kind=kind.value, delta=delta)
    if kind in (LedgerEntryKind.REDEEM, LedgerEntryKind.EXPIRE) and delta > 0:
        raise LedgerValidationError(
            f"{kind.value.capitalize()} entries cannot be positive", kind=kind.value, delta=delta
        )
    if kind is LedgerEntryKind.ADJUST and delta == 0:
        raise LedgerValidationError("Adjustments require a non-zero delta", kind=kind.value)


class PointsLedger:
    """Writes ledger entries and keeps the account balance snapshot in step."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        store: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._store = store or get_loyalty_store()

    async def load_account(self, account_id: UUID, *, require_active: bool = True) -> LoyaltyAccount:
        """Fetch the account fresh from storage, bypassing any cached identity."""

        stmt = (
            select(LoyaltyAccount)
            .where(LoyaltyAccount.id == account_id)
            .execution_options(populate_existing=True)
        )
        account = (await self._db.execute(stmt)).scalar_one_or_none()
        if account is None or (require_active and not account.is_active):
            logger.error("Loyalty account not found", account_id=str(account_id))
            raise UnknownAccount(f"Loyalty account {account_id} not found", account_id=str(account_id))
        return account

    async def append(
        self,
        account: LoyaltyAccount,
        kind: LedgerEntryKind,
        delta: int,
        source_ref: str | None,
        *,
        spend_amount: Decimal | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> LoyaltyLedgerEntry:
        """Append one entry and update the account snapshot in the same flush.

        Nothing is written when the delta is inconsistent with ``kind`` or
        would take the balance below zero.
        """

        account_id = str(account.id)
        if not account.is_active:
            raise UnknownAccount(f"Loyalty account {account_id} is inactive", account_id=account_id)
        _check_sign(kind, delta)

        previous_balance = int(account.points_balance or 0)
        running_balance = previous_balance + delta
        if running_balance < 0:
            raise InsufficientBalance(
                "Ledger entry would make the balance negative",
                account_id=account_id,
                balance=previous_balance,
                delta=delta,
            )

        timestamp = occurred_at or utcnow()
        sequence = int(account.last_sequence or 0) + 1
        entry = LoyaltyLedgerEntry(
            account_id=account.id,
            sequence=sequence,
            kind=kind,
            points=delta,
            running_balance=running_balance,
            source_ref=source_ref,
            spend_amount=spend_amount,
            description=description,
            metadata_json=metadata or None,
            occurred_at=timestamp,
        )
        self._db.add(entry)

        account.points_balance = running_balance
        account.last_sequence = sequence
        account.last_activity_at = timestamp
        if kind is LedgerEntryKind.EARN:
            account.lifetime_earned = int(account.lifetime_earned or 0) + delta
        elif kind is LedgerEntryKind.REDEEM:
            account.lifetime_redeemed = int(account.lifetime_redeemed or 0) - delta
        elif kind is LedgerEntryKind.EXPIRE:
            account.lifetime_expired = int(account.lifetime_expired or 0) - delta
        if spend_amount is not None:
            account.lifetime_spend = Decimal(account.lifetime_spend or 0) + Decimal(spend_amount)

        try:
            await self._db.flush()
        except (StaleDataError, IntegrityError) as exc:
            raise StorageConflict(
                "Loyalty account changed during ledger append",
                account_id=account_id,
            ) from exc

        store = self._store
        defer_until_commit(self._db, lambda: store.record_ledger_append(kind.value, delta))
        logger.info(
            "Recorded loyalty ledger entry",
            account_id=account_id,
            kind=kind.value,
            points=delta,
            sequence=sequence,
            running_balance=running_balance,
        )
        return entry

    async def find_by_source(
        self,
        account_id: UUID,
        kind: LedgerEntryKind,
        source_ref: str,
    ) -> LoyaltyLedgerEntry | None:
        stmt = select(LoyaltyLedgerEntry).where(
            LoyaltyLedgerEntry.account_id == account_id,
            LoyaltyLedgerEntry.kind == kind,
            LoyaltyLedgerEntry.source_ref == source_ref,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def list_entries(
        self,
        account_id: UUID,
        *,
        limit: int = 25,
        cursor: str | None = None,
        kinds: Sequence[LedgerEntryKind] | None = None,
    ) -> LedgerPage:
        """Return ledger history newest first, keyed on sequence."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(LoyaltyLedgerEntry)
            .where(LoyaltyLedgerEntry.account_id == account_id)
            .order_by(LoyaltyLedgerEntry.sequence.desc())
        )
        if kinds:
            stmt = stmt.where(LoyaltyLedgerEntry.kind.in_(list(kinds)))
        if cursor:
            stmt = stmt.where(LoyaltyLedgerEntry.sequence < decode_sequence_cursor(cursor))

        rows = list((await self._db.execute(stmt.limit(bounded_limit + 1))).scalars().all())
        entries = rows[:bounded_limit]
        next_cursor = None
        if len(rows) > bounded_limit and entries:
            next_cursor = encode_sequence_cursor(entries[-1].sequence)
        return LedgerPage(entries=entries, next_cursor=next_cursor)


_AFTER_COMMIT_KEY = "loyalty_after_commit"


def defer_until_commit(session: AsyncSession, callback: Callable[[], None]) -> None:
    """Queue ``callback`` to run once the surrounding unit of work commits."""

    session.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


def _run_after_commit(session: AsyncSession) -> None:
    for callback in session.info.pop(_AFTER_COMMIT_KEY, []):
        callback()


def _discard_after_commit(session: AsyncSession) -> None:
    session.info.pop(_AFTER_COMMIT_KEY, None)


async def _commit(session: AsyncSession, account_id: UUID | str) -> None:
    try:
        await session.commit()
    except (StaleDataError, IntegrityError) as exc:
        raise StorageConflict(
            "Loyalty account changed before commit", account_id=str(account_id)
        ) from exc


async def ledger_unit_of_work(
    session: AsyncSession,
    account_id: UUID | str,
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    registry: AccountLockRegistry | None = None,
    store: LoyaltyObservabilityStore | None = None,
) -> T:
    """Run ``operation`` under the account lock and commit it.

    Storage conflicts roll back and retry with backoff until the policy is
    exhausted, then surface as ``ConcurrentConflict``. Any other failure,
    cancellation included, rolls back and propagates unchanged.
    """

    policy = policy or RetryPolicy.from_settings()
    registry = registry or get_account_lock_registry()
    store = store or get_loyalty_store()

    tracer = get_tracer()
    with tracer.start_as_current_span("loyalty.unit_of_work") as span:
        span.set_attribute("loyalty.account_id", str(account_id))
        async with registry.hold(account_id):
            return await _run_with_retries(session, account_id, operation, policy, store, span)


async def _run_with_retries(
    session: AsyncSession,
    account_id: UUID | str,
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    store: LoyaltyObservabilityStore,
    span: Span,
) -> T:
    attempt = 0
    while True:
        attempt += 1
        span.set_attribute("loyalty.attempts", attempt)
        try:
            result = await operation()
            await _commit(session, account_id)
        except StorageConflict as exc:
            _discard_after_commit(session)
            await session.rollback()
            store.record_conflict()
            if attempt >= policy.max_attempts:
                store.record_exhausted()
                logger.warning(
                    "Loyalty account remained contended",
                    account_id=str(account_id),
                    attempts=attempt,
                )
                raise ConcurrentConflict(
                    "Loyalty account is busy, retry the request",
                    account_id=str(account_id),
                    attempts=attempt,
                ) from exc
            delay = policy.delay_for(attempt)
            store.record_retry()
            logger.info(
                "Retrying loyalty unit of work after conflict",
                account_id=str(account_id),
                attempt=attempt,
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)
        except BaseException:
            _discard_after_commit(session)
            await session.rollback()
            raise
        else:
            _run_after_commit(session)
            return result


__all__ = [
    "LedgerPage",
    "PointsLedger",
    "RetryPolicy",
    "decode_sequence_cursor",
    "defer_until_commit",
    "encode_sequence_cursor",
    "ledger_unit_of_work",
]
