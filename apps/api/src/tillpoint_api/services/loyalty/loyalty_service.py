"""Service layer tying the ledger, tiers and redemptions together."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Sequence, TypeVar
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tillpoint_api.core.clock import ensure_aware, utcnow
from tillpoint_api.domain.loyalty.errors import LedgerValidationError, LoyaltyError, LoyaltyValidationError
from tillpoint_api.domain.loyalty.tiers import TierCatalog, compute_earned_points
from tillpoint_api.models.loyalty import (
    LedgerEntryKind,
    LoyaltyAccount,
    LoyaltyLedgerEntry,
    LoyaltyProgram,
    LoyaltyRedemption,
    LoyaltyReward,
    LoyaltyTier,
    RedemptionStatus,
    TierChangeTrigger,
)
from tillpoint_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .catalog import CatalogRepository
from .ledger import LedgerPage, PointsLedger, RetryPolicy, ledger_unit_of_work
from .locks import AccountLockRegistry
from .projector import BalanceProjector, ReconciliationReport
from .redemption import Clock, CodeGenerator, RedemptionEngine, RedemptionResult
from .tier_evaluator import TierBatchResult, TierEvaluation, TierEvaluator

_DAYS_PER_MONTH = 30

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class AccountBalance:
    account_id: UUID
    current_points: int
    lifetime_earned: int
    lifetime_redeemed: int
    tier: str | None
    tier_name: str | None = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accountId": str(self.account_id),
            "currentPoints": self.current_points,
            "lifetimeEarned": self.lifetime_earned,
            "lifetimeRedeemed": self.lifetime_redeemed,
            "tier": self.tier,
            "tierName": self.tier_name,
        }


@dataclass(frozen=True, slots=True)
class SaleRecordResult:
    entry: LoyaltyLedgerEntry
    evaluation: TierEvaluation
    replayed: bool


def _parse_sale_total(value: Any) -> Decimal:
    try:
        total = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise LedgerValidationError("Sale total must be numeric", sale_total=str(value)) from exc
    if not total.is_finite() or total < 0:
        raise LedgerValidationError("Sale total must be a non-negative amount", sale_total=str(value))
    return total


class LoyaltyService:
    """Coordinates loyalty enrollment, earning, redemption and tier workflows."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        catalog: TierCatalog | None = None,
        code_generator: CodeGenerator | None = None,
        clock: Clock | None = None,
        store: LoyaltyObservabilityStore | None = None,
        policy: RetryPolicy | None = None,
        registry: AccountLockRegistry | None = None,
    ) -> None:
        self._db = db_session
        self._catalog = catalog
        self._code_generator = code_generator
        self._clock = clock or utcnow
        self._store = store or get_loyalty_store()
        self._policy = policy
        self._registry = registry
        self._repository = CatalogRepository(db_session)
        self._ledger = PointsLedger(db_session, store=self._store)
        self._projector = BalanceProjector(db_session)

    async def tier_catalog(self) -> TierCatalog:
        if self._catalog is None:
            self._catalog = await self._repository.load_tier_catalog()
        return self._catalog

    async def tier_evaluator(self) -> TierEvaluator:
        return TierEvaluator(
            self._db,
            await self.tier_catalog(),
            ledger=self._ledger,
            store=self._store,
            policy=self._policy,
            registry=self._registry,
        )

    async def redemption_engine(self) -> RedemptionEngine:
        return RedemptionEngine(
            self._db,
            await self.tier_catalog(),
            ledger=self._ledger,
            repository=self._repository,
            code_generator=self._code_generator,
            clock=self._clock,
            store=self._store,
            policy=self._policy,
            registry=self._registry,
        )

    async def _unit_of_work(self, account_id: UUID, operation: Callable[[], Awaitable[T]]) -> T:
        return await ledger_unit_of_work(
            self._db,
            account_id,
            operation,
            policy=self._policy,
            registry=self._registry,
            store=self._store,
        )

    async def enroll(self, customer_id: str, program_id: UUID | None = None) -> LoyaltyAccount:
        """Fetch or create the customer's active account on the lowest tier."""

        customer = (customer_id or "").strip()
        if not customer:
            raise LoyaltyValidationError("Customer id is required")

        program = (
            await self._repository.get_program(program_id)
            if program_id is not None
            else await self._repository.ensure_default_program()
        )
        stmt = select(LoyaltyAccount).where(
            LoyaltyAccount.customer_id == customer,
            LoyaltyAccount.program_id == program.id,
            LoyaltyAccount.is_active.is_(True),
        )
        account = (await self._db.execute(stmt)).scalar_one_or_none()
        if account is not None:
            return account

        catalog = await self.tier_catalog()
        account = LoyaltyAccount(
            customer_id=customer,
            program_id=program.id,
            current_tier_key=catalog.lowest.key,
            tier_updated_at=self._clock(),
        )
        self._db.add(account)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            logger.warning("Detected race when enrolling loyalty account", customer_id=customer)
            return await self.enroll(customer, program_id)

        await self._db.commit()
        logger.info(
            "Enrolled loyalty account",
            customer_id=customer,
            account_id=str(account.id),
            program_id=str(program.id),
            tier=account.current_tier_key,
        )
        return account

    async def record_sale(self, account_id: UUID, sale_id: str, sale_total: Any) -> SaleRecordResult:
        """Earn points for a completed sale and re-check the tier.

        Replaying a sale id returns the entry recorded the first time.
        """

        sale_ref = str(sale_id or "").strip()
        if not sale_ref:
            raise LedgerValidationError("Sale id is required")
        total = _parse_sale_total(sale_total)
        evaluator = await self.tier_evaluator()
        catalog = await self.tier_catalog()

        async def _operation() -> SaleRecordResult:
            account = await self._ledger.load_account(account_id)
            existing = await self._ledger.find_by_source(account.id, LedgerEntryKind.EARN, sale_ref)
            if existing is not None:
                unchanged = TierEvaluation(
                    account.id, account.current_tier_key, account.current_tier_key, False
                )
                return SaleRecordResult(existing, unchanged, True)

            program = await self._db.get(LoyaltyProgram, account.program_id)
            tier = catalog.get(account.current_tier_key) or catalog.resolve(
                int(account.lifetime_earned or 0), Decimal(account.lifetime_spend or 0)
            )
            points = compute_earned_points(
                total,
                earning_multiplier=tier.earning_multiplier,
                points_per_currency=program.points_per_currency if program else 1,
            )
            entry = await self._ledger.append(
                account,
                LedgerEntryKind.EARN,
                points,
                sale_ref,
                spend_amount=total,
                description=f"Sale {sale_ref}",
                metadata={"tier": tier.key, "multiplier": str(tier.earning_multiplier)},
                occurred_at=self._clock(),
            )
            evaluation = await evaluator.apply(account, trigger=TierChangeTrigger.EARN)
            return SaleRecordResult(entry, evaluation, False)

        result = await self._unit_of_work(account_id, _operation)
        if result.replayed:
            logger.info("Loyalty sale already recorded", account_id=str(account_id), sale_id=sale_ref)
        return result

    async def adjust_points(
        self,
        account_id: UUID,
        points: int,
        reason: str,
        *,
        reference: str | None = None,
    ) -> LoyaltyLedgerEntry:
        """Record an operator adjustment in either direction."""

        note = (reason or "").strip()
        if not note:
            raise LedgerValidationError("Adjustments require a reason")

        async def _operation() -> LoyaltyLedgerEntry:
            account = await self._ledger.load_account(account_id)
            if reference and await self._ledger.find_by_source(account_id, LedgerEntryKind.ADJUST, reference):
                raise LedgerValidationError("Adjustment reference already used", reference=reference)
            return await self._ledger.append(
                account,
                LedgerEntryKind.ADJUST,
                int(points),
                reference,
                description=note,
                metadata={"reason": note},
                occurred_at=self._clock(),
            )

        return await self._unit_of_work(account_id, _operation)

    async def balance(self, account_id: UUID) -> AccountBalance:
        snapshot = await self._projector.snapshot(account_id)
        catalog = await self.tier_catalog()
        tier = catalog.get(snapshot.tier_key)
        return AccountBalance(
            account_id=snapshot.account_id,
            current_points=snapshot.current_balance,
            lifetime_earned=snapshot.lifetime_earned,
            lifetime_redeemed=snapshot.lifetime_redeemed,
            tier=snapshot.tier_key,
            tier_name=tier.display_name if tier else None,
        )

    async def deactivate(self, account_id: UUID) -> LoyaltyAccount:
        async def _operation() -> LoyaltyAccount:
            account = await self._ledger.load_account(account_id)
            account.is_active = False
            account.deactivated_at = self._clock()
            await self._db.flush()
            return account

        account = await self._unit_of_work(account_id, _operation)
        logger.info("Deactivated loyalty account", account_id=str(account_id))
        return account

    async def expire_inactive_points(self, now: datetime | None = None) -> list[UUID]:
        """Expire the full balance of accounts idle past their program's window."""

        reference = now or self._clock()
        programs = (
            await self._db.execute(
                select(LoyaltyProgram).where(
                    LoyaltyProgram.is_active.is_(True),
                    LoyaltyProgram.points_expiry_months.is_not(None),
                    LoyaltyProgram.points_expiry_months > 0,
                )
            )
        ).scalars().all()

        expired: list[UUID] = []
        for program in programs:
            cutoff = reference - timedelta(days=_DAYS_PER_MONTH * int(program.points_expiry_months))
            candidates = (
                await self._db.execute(
                    select(LoyaltyAccount.id).where(
                        LoyaltyAccount.program_id == program.id,
                        LoyaltyAccount.is_active.is_(True),
                        LoyaltyAccount.points_balance > 0,
                        or_(
                            LoyaltyAccount.last_activity_at < cutoff,
                            and_(
                                LoyaltyAccount.last_activity_at.is_(None),
                                LoyaltyAccount.created_at < cutoff,
                            ),
                        ),
                    )
                )
            ).scalars().all()

            for account_id in candidates:
                try:
                    if await self._expire_account(account_id, cutoff, reference):
                        expired.append(account_id)
                except LoyaltyError as exc:
                    logger.warning(
                        "Unable to expire loyalty points",
                        account_id=str(account_id),
                        code=exc.code,
                        error=exc.message,
                    )

        logger.bind(summary={"expired_accounts": len(expired)}).info("Loyalty point expiry sweep completed")
        return expired

    async def _expire_account(self, account_id: UUID, cutoff: datetime, reference: datetime) -> bool:
        async def _operation() -> bool:
            account = await self._ledger.load_account(account_id)
            balance = int(account.points_balance or 0)
            last_activity = account.last_activity_at or account.created_at
            if balance <= 0 or (last_activity is not None and _after(last_activity, cutoff)):
                return False
            await self._ledger.append(
                account,
                LedgerEntryKind.EXPIRE,
                -balance,
                f"expiry:{reference.date().isoformat()}",
                description="Points expired after inactivity",
                occurred_at=reference,
            )
            return True

        return await self._unit_of_work(account_id, _operation)

    async def redeem(
        self,
        account_id: UUID,
        reward_id: UUID,
        *,
        idempotency_key: str | None = None,
    ) -> RedemptionResult:
        engine = await self.redemption_engine()
        return await engine.redeem(account_id, reward_id, idempotency_key=idempotency_key)

    async def mark_redemption_used(self, code: str) -> LoyaltyRedemption:
        engine = await self.redemption_engine()
        return await engine.mark_used(code)

    async def cancel_redemption(self, redemption_id: UUID, reason: str | None = None) -> LoyaltyRedemption:
        engine = await self.redemption_engine()
        return await engine.cancel(redemption_id, reason)

    async def expire_redemptions(self, now: datetime | None = None) -> list[UUID]:
        engine = await self.redemption_engine()
        return await engine.expire_stale(now)

    async def list_redemptions(
        self,
        account_id: UUID,
        *,
        statuses: Sequence[RedemptionStatus] | None = None,
        limit: int = 50,
    ) -> list[LoyaltyRedemption]:
        await self._projector.snapshot(account_id)
        engine = await self.redemption_engine()
        return await engine.list_for_account(account_id, statuses=statuses, limit=limit)

    async def evaluate_tier(
        self,
        account_id: UUID,
        *,
        trigger: TierChangeTrigger = TierChangeTrigger.MANUAL,
    ) -> TierEvaluation:
        evaluator = await self.tier_evaluator()
        return await evaluator.evaluate(account_id, trigger=trigger)

    async def evaluate_all_tiers(
        self,
        *,
        trigger: TierChangeTrigger = TierChangeTrigger.SCHEDULED,
    ) -> TierBatchResult:
        evaluator = await self.tier_evaluator()
        return await evaluator.evaluate_all(trigger=trigger)

    async def list_ledger(
        self,
        account_id: UUID,
        *,
        limit: int = 25,
        cursor: str | None = None,
        kinds: Sequence[LedgerEntryKind] | None = None,
    ) -> LedgerPage:
        await self._projector.snapshot(account_id)
        return await self._ledger.list_entries(account_id, limit=limit, cursor=cursor, kinds=kinds)

    async def reconcile(self, account_id: UUID) -> ReconciliationReport:
        return await self._projector.reconcile(account_id)

    async def list_tiers(self) -> list[LoyaltyTier]:
        return await self._repository.list_tiers()

    async def list_rewards(self, *, available_only: bool = True) -> list[LoyaltyReward]:
        return await self._repository.list_rewards(
            active_only=True,
            available_at=self._clock() if available_only else None,
        )


def _after(value: datetime, cutoff: datetime) -> bool:
    return ensure_aware(value) >= ensure_aware(cutoff)


__all__ = ["AccountBalance", "LoyaltyService", "SaleRecordResult"]
