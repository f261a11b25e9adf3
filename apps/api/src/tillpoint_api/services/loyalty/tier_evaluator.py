"""Tier evaluation against lifetime points and spend."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from tillpoint_api.core.clock import utcnow
from tillpoint_api.domain.loyalty.errors import LoyaltyError, StorageConflict
from tillpoint_api.domain.loyalty.tiers import TierCatalog
from tillpoint_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyTierChange,
    TierChangeTrigger,
)
from tillpoint_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .ledger import PointsLedger, RetryPolicy, defer_until_commit, ledger_unit_of_work
from .locks import AccountLockRegistry


@dataclass(frozen=True, slots=True)
class TierEvaluation:
    account_id: UUID
    previous_tier: str | None
    current_tier: str
    changed: bool

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accountId": str(self.account_id),
            "previousTier": self.previous_tier,
            "tier": self.current_tier,
            "changed": self.changed,
        }


@dataclass(frozen=True, slots=True)
class TierBatchFailure:
    account_id: UUID
    code: str
    message: str


@dataclass(slots=True)
class TierBatchResult:
    results: List[TierEvaluation] = field(default_factory=list)
    failures: List[TierBatchFailure] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return sum(1 for result in self.results if result.changed)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "evaluated": len(self.results),
            "changed": self.changed,
            "failed": len(self.failures),
            "results": [result.as_dict() for result in self.results],
            "failures": [
                {"accountId": str(failure.account_id), "code": failure.code, "message": failure.message}
                for failure in self.failures
            ],
        }


class TierEvaluator:
    """Keeps each account's tier in line with the catalog thresholds.

    Promotions apply immediately. A lower evaluated tier only replaces the
    stored one when the account's program allows demotion.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        catalog: TierCatalog,
        *,
        ledger: PointsLedger | None = None,
        store: LoyaltyObservabilityStore | None = None,
        policy: RetryPolicy | None = None,
        registry: AccountLockRegistry | None = None,
    ) -> None:
        self._db = db_session
        self._catalog = catalog
        self._store = store or get_loyalty_store()
        self._ledger = ledger or PointsLedger(db_session, store=self._store)
        self._policy = policy
        self._registry = registry

    async def evaluate(
        self,
        account_id: UUID,
        *,
        trigger: TierChangeTrigger = TierChangeTrigger.MANUAL,
    ) -> TierEvaluation:
        async def _operation() -> TierEvaluation:
            account = await self._ledger.load_account(account_id)
            return await self.apply(account, trigger=trigger)

        return await ledger_unit_of_work(
            self._db,
            account_id,
            _operation,
            policy=self._policy,
            registry=self._registry,
            store=self._store,
        )

    async def apply(self, account: LoyaltyAccount, *, trigger: TierChangeTrigger) -> TierEvaluation:
        """Evaluate an account already loaded inside a unit of work."""

        account_id = str(account.id)
        previous_key = account.current_tier_key
        target = self._catalog.resolve(
            int(account.lifetime_earned or 0),
            Decimal(account.lifetime_spend or 0),
        )

        if previous_key == target.key:
            return TierEvaluation(account.id, previous_key, previous_key, False)

        if self._catalog.get(previous_key) is not None:
            if self._catalog.rank(target.key) < self._catalog.rank(previous_key):
                program = await self._db.get(LoyaltyProgram, account.program_id)
                if program is None or not program.allow_tier_demotion:
                    return TierEvaluation(account.id, previous_key, previous_key, False)

        now = utcnow()
        account.current_tier_key = target.key
        account.tier_updated_at = now
        self._db.add(
            LoyaltyTierChange(
                account_id=account.id,
                previous_tier_key=previous_key,
                new_tier_key=target.key,
                trigger=trigger,
                lifetime_points=int(account.lifetime_earned or 0),
                lifetime_spend=Decimal(account.lifetime_spend or 0),
                created_at=now,
            )
        )
        try:
            await self._db.flush()
        except StaleDataError as exc:
            raise StorageConflict(
                "Loyalty account changed during tier evaluation", account_id=account_id
            ) from exc

        store = self._store
        defer_until_commit(
            self._db, lambda: store.record_tier_change(previous_key, target.key, trigger.value)
        )
        logger.info(
            "Loyalty tier changed",
            account_id=account_id,
            previous_tier=previous_key,
            tier=target.key,
            trigger=trigger.value,
        )
        return TierEvaluation(account.id, previous_key, target.key, True)

    async def evaluate_all(
        self,
        *,
        trigger: TierChangeTrigger = TierChangeTrigger.SCHEDULED,
    ) -> TierBatchResult:
        """Evaluate every active account, collecting failures instead of aborting."""

        stmt = (
            select(LoyaltyAccount.id)
            .where(LoyaltyAccount.is_active.is_(True))
            .order_by(LoyaltyAccount.created_at.asc(), LoyaltyAccount.id.asc())
        )
        account_ids = list((await self._db.execute(stmt)).scalars().all())

        batch = TierBatchResult()
        for account_id in account_ids:
            try:
                batch.results.append(await self.evaluate(account_id, trigger=trigger))
            except LoyaltyError as exc:
                batch.failures.append(TierBatchFailure(account_id, exc.code, exc.message))
                logger.warning(
                    "Loyalty tier evaluation failed",
                    account_id=str(account_id),
                    code=exc.code,
                    error=exc.message,
                )
            except Exception as exc:  # noqa: BLE001
                batch.failures.append(TierBatchFailure(account_id, "unexpected_error", str(exc)))
                logger.exception("Unexpected loyalty tier evaluation failure", account_id=str(account_id))

        summary = {
            "evaluated": len(batch.results),
            "changed": batch.changed,
            "failed": len(batch.failures),
        }
        logger.bind(summary=summary).info("Loyalty tier recalculation completed")
        return batch


__all__ = ["TierBatchFailure", "TierBatchResult", "TierEvaluation", "TierEvaluator"]
