"""Reward redemption: eligibility, debit, stock and code issuance."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tillpoint_api.core.clock import ensure_aware, utcnow
from tillpoint_api.core.settings import settings
from tillpoint_api.domain.loyalty.errors import (
    CodeAllocationFailed,
    InsufficientPoints,
    LoyaltyError,
    OutOfStock,
    RedemptionLimitReached,
    RedemptionNotFound,
    RedemptionStateError,
    RewardInactive,
    RewardUnavailable,
    StorageConflict,
    TierNotEligible,
)
from tillpoint_api.domain.loyalty.rewards import benefit_payload, describe_benefit, reward_benefit
from tillpoint_api.domain.loyalty.tiers import TierCatalog
from tillpoint_api.models.loyalty import (
    LedgerEntryKind,
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyRedemption,
    LoyaltyReward,
    RedemptionStatus,
)
from tillpoint_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .catalog import CatalogRepository, reward_is_available
from .ledger import PointsLedger, RetryPolicy, ledger_unit_of_work
from .locks import AccountLockRegistry

CodeGenerator = Callable[[], str]
Clock = Callable[[], datetime]


def generate_redemption_code(prefix: str | None = None) -> str:
    """Return ``<PREFIX>-`` followed by eight uppercase hex characters."""

    return f"{prefix or settings.redemption_code_prefix}-{secrets.token_hex(4).upper()}"


@dataclass(frozen=True, slots=True)
class RedemptionResult:
    redemption: LoyaltyRedemption
    replayed: bool


class RedemptionEngine:
    """Turns points into reward codes, one account at a time."""

    def __init__(
        self,
        db_session: AsyncSession,
        catalog: TierCatalog,
        *,
        ledger: PointsLedger | None = None,
        repository: CatalogRepository | None = None,
        code_generator: CodeGenerator | None = None,
        clock: Clock | None = None,
        store: LoyaltyObservabilityStore | None = None,
        policy: RetryPolicy | None = None,
        registry: AccountLockRegistry | None = None,
    ) -> None:
        self._db = db_session
        self._catalog = catalog
        self._store = store or get_loyalty_store()
        self._ledger = ledger or PointsLedger(db_session, store=self._store)
        self._repository = repository or CatalogRepository(db_session)
        self._code_generator = code_generator or generate_redemption_code
        self._clock = clock or utcnow
        self._policy = policy
        self._registry = registry

    async def redeem(
        self,
        account_id: UUID,
        reward_id: UUID,
        *,
        idempotency_key: str | None = None,
    ) -> RedemptionResult:
        """Redeem ``reward_id`` for the account, at most once per idempotency key."""

        key = idempotency_key or uuid4().hex

        async def _operation() -> RedemptionResult:
            existing = await self._find_by_key(account_id, key)
            if existing is not None:
                if existing.reward_id != reward_id:
                    logger.warning(
                        "Idempotency key reused for a different reward",
                        account_id=str(account_id),
                        idempotency_key=key,
                        reward_id=str(reward_id),
                    )
                return RedemptionResult(existing, True)
            return await self._issue(account_id, reward_id, key)

        try:
            result = await ledger_unit_of_work(
                self._db,
                account_id,
                _operation,
                policy=self._policy,
                registry=self._registry,
                store=self._store,
            )
        except LoyaltyError as exc:
            self._store.record_redemption(exc.code)
            logger.info(
                "Loyalty redemption rejected",
                account_id=str(account_id),
                reward_id=str(reward_id),
                code=exc.code,
            )
            raise

        self._store.record_redemption("replayed" if result.replayed else "issued")
        return result

    async def _issue(self, account_id: UUID, reward_id: UUID, idempotency_key: str) -> RedemptionResult:
        account = await self._ledger.load_account(account_id)
        account_key = str(account.id)
        reward = await self._repository.get_reward(reward_id)
        now = self._clock()

        await self._check_eligibility(account, reward, now)
        benefit = reward_benefit(reward)
        code = await self._allocate_code()

        redemption_id = uuid4()
        await self._ledger.append(
            account,
            LedgerEntryKind.REDEEM,
            -int(reward.points_cost),
            str(redemption_id),
            description=f"Redeemed {reward.name}",
            occurred_at=now,
        )
        if reward.stock_quantity is not None and not await self._repository.decrement_stock(reward.id):
            raise OutOfStock(f"Reward {reward.name} is out of stock", reward_id=str(reward.id))

        redemption = LoyaltyRedemption(
            id=redemption_id,
            account_id=account.id,
            reward_id=reward.id,
            points_spent=int(reward.points_cost),
            redemption_code=code,
            idempotency_key=idempotency_key,
            status=RedemptionStatus.ISSUED,
            issued_at=now,
            expires_at=now + timedelta(days=settings.redemption_validity_days),
            metadata_json={"benefit": benefit_payload(benefit), "summary": describe_benefit(benefit)},
        )
        self._db.add(redemption)
        try:
            await self._db.flush()
        except IntegrityError as exc:
            raise StorageConflict(
                "Redemption collided with a concurrent write", account_id=account_key
            ) from exc

        logger.info(
            "Issued loyalty redemption",
            account_id=account_key,
            reward_id=str(reward.id),
            redemption_id=str(redemption.id),
            points=int(reward.points_cost),
        )
        return RedemptionResult(redemption, False)

    async def _check_eligibility(self, account: LoyaltyAccount, reward: LoyaltyReward, now: datetime) -> None:
        if not reward.is_active:
            raise RewardInactive(f"Reward {reward.name} is not active", reward_id=str(reward.id))
        if not reward_is_available(reward, now):
            raise RewardUnavailable(
                f"Reward {reward.name} is outside its validity window", reward_id=str(reward.id)
            )

        if reward.stock_quantity is not None and reward.stock_quantity <= 0:
            raise OutOfStock(f"Reward {reward.name} is out of stock", reward_id=str(reward.id))

        if not self._catalog.meets(account.current_tier_key, reward.min_tier_key):
            raise TierNotEligible(
                f"Reward {reward.name} requires tier {reward.min_tier_key}",
                reward_id=str(reward.id),
                tier=account.current_tier_key,
            )

        limit = int(reward.redemption_limit_per_account or 0)
        if limit > 0 and await self._count_redemptions(account.id, reward.id) >= limit:
            raise RedemptionLimitReached(
                f"Reward {reward.name} can be redeemed {limit} time(s) per account",
                reward_id=str(reward.id),
            )

        balance = int(account.points_balance or 0)
        program = await self._db.get(LoyaltyProgram, account.program_id)
        minimum = int(program.minimum_points_for_redemption or 0) if program else 0
        if balance < minimum:
            raise InsufficientPoints(
                f"At least {minimum} points are required before redeeming",
                balance=balance,
                minimum=minimum,
            )

        cost = int(reward.points_cost)
        if balance < cost:
            raise InsufficientPoints(
                f"Reward costs {cost} points but only {balance} are available",
                balance=balance,
                cost=cost,
            )

    async def _count_redemptions(self, account_id: UUID, reward_id: UUID) -> int:
        stmt = select(func.count(LoyaltyRedemption.id)).where(
            LoyaltyRedemption.account_id == account_id,
            LoyaltyRedemption.reward_id == reward_id,
            LoyaltyRedemption.status != RedemptionStatus.CANCELLED,
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def _allocate_code(self) -> str:
        attempts = max(1, settings.redemption_code_max_attempts)
        for _ in range(attempts):
            candidate = self._code_generator()
            stmt = select(LoyaltyRedemption.id).where(LoyaltyRedemption.redemption_code == candidate)
            if (await self._db.execute(stmt)).first() is None:
                return candidate
            logger.warning("Redemption code collision", code=candidate)
        raise CodeAllocationFailed(
            f"Could not allocate a unique redemption code after {attempts} attempts",
            attempts=attempts,
        )

    async def _find_by_key(self, account_id: UUID, idempotency_key: str) -> LoyaltyRedemption | None:
        stmt = select(LoyaltyRedemption).where(
            LoyaltyRedemption.account_id == account_id,
            LoyaltyRedemption.idempotency_key == idempotency_key,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _load(self, redemption_id: UUID) -> LoyaltyRedemption:
        stmt = (
            select(LoyaltyRedemption)
            .where(LoyaltyRedemption.id == redemption_id)
            .execution_options(populate_existing=True)
        )
        redemption = (await self._db.execute(stmt)).scalar_one_or_none()
        if redemption is None:
            raise RedemptionNotFound(f"Redemption {redemption_id} not found", redemption_id=str(redemption_id))
        return redemption

    async def get_by_code(self, code: str) -> LoyaltyRedemption:
        stmt = select(LoyaltyRedemption).where(LoyaltyRedemption.redemption_code == code.strip().upper())
        redemption = (await self._db.execute(stmt)).scalar_one_or_none()
        if redemption is None:
            raise RedemptionNotFound(f"Redemption code {code} not found", code=code)
        return redemption

    async def mark_used(self, code: str) -> LoyaltyRedemption:
        """Move an issued, unexpired code to ``used``."""

        found = await self.get_by_code(code)
        redemption_id = found.id

        async def _operation() -> LoyaltyRedemption:
            redemption = await self._load(redemption_id)
            now = self._clock()
            if redemption.status is not RedemptionStatus.ISSUED:
                raise RedemptionStateError(
                    f"Redemption is {redemption.status.value} and cannot be used",
                    redemption_id=str(redemption.id),
                )
            if redemption.expires_at is not None and ensure_aware(redemption.expires_at) <= now:
                raise RedemptionStateError("Redemption code has expired", redemption_id=str(redemption.id))
            redemption.status = RedemptionStatus.USED
            redemption.used_at = now
            await self._db.flush()
            logger.info("Loyalty redemption used", redemption_id=str(redemption.id))
            return redemption

        return await ledger_unit_of_work(
            self._db,
            found.account_id,
            _operation,
            policy=self._policy,
            registry=self._registry,
            store=self._store,
        )

    async def cancel(self, redemption_id: UUID, reason: str | None = None) -> LoyaltyRedemption:
        """Cancel an issued redemption, refund its points and restock the reward."""

        found = await self._load(redemption_id)

        async def _operation() -> LoyaltyRedemption:
            redemption = await self._load(redemption_id)
            if redemption.status is not RedemptionStatus.ISSUED:
                raise RedemptionStateError(
                    f"Redemption is {redemption.status.value} and cannot be cancelled",
                    redemption_id=str(redemption.id),
                )
            now = self._clock()
            account = await self._ledger.load_account(redemption.account_id)
            await self._ledger.append(
                account,
                LedgerEntryKind.ADJUST,
                int(redemption.points_spent),
                str(redemption.id),
                description=f"Refund for cancelled redemption {redemption.redemption_code}",
                metadata={"reason": reason} if reason else None,
                occurred_at=now,
            )
            await self._repository.restock(redemption.reward_id)
            redemption.status = RedemptionStatus.CANCELLED
            redemption.cancelled_at = now
            redemption.cancellation_reason = reason
            await self._db.flush()
            logger.info(
                "Loyalty redemption cancelled",
                redemption_id=str(redemption.id),
                account_id=str(account.id),
                refunded=int(redemption.points_spent),
            )
            return redemption

        return await ledger_unit_of_work(
            self._db,
            found.account_id,
            _operation,
            policy=self._policy,
            registry=self._registry,
            store=self._store,
        )

    async def expire_stale(self, now: datetime | None = None) -> list[UUID]:
        """Mark issued redemptions past ``expires_at`` as expired. Points stay spent."""

        reference = now or self._clock()
        stmt = select(LoyaltyRedemption.id).where(
            LoyaltyRedemption.status == RedemptionStatus.ISSUED,
            LoyaltyRedemption.expires_at.is_not(None),
            LoyaltyRedemption.expires_at <= reference,
        )
        stale_ids = list((await self._db.execute(stmt)).scalars().all())
        if stale_ids:
            await self._db.execute(
                update(LoyaltyRedemption)
                .where(
                    LoyaltyRedemption.id.in_(stale_ids),
                    LoyaltyRedemption.status == RedemptionStatus.ISSUED,
                )
                .values(status=RedemptionStatus.EXPIRED)
                .execution_options(synchronize_session="fetch")
            )
        await self._db.commit()
        if stale_ids:
            logger.info("Expired loyalty redemptions", count=len(stale_ids))
        return stale_ids

    async def list_for_account(
        self,
        account_id: UUID,
        *,
        statuses: Sequence[RedemptionStatus] | None = None,
        limit: int = 50,
    ) -> list[LoyaltyRedemption]:
        stmt = (
            select(LoyaltyRedemption)
            .where(LoyaltyRedemption.account_id == account_id)
            .order_by(LoyaltyRedemption.issued_at.desc())
            .limit(max(1, min(limit, 100)))
        )
        if statuses:
            stmt = stmt.where(LoyaltyRedemption.status.in_(list(statuses)))
        return list((await self._db.execute(stmt)).scalars().all())


__all__ = ["RedemptionEngine", "RedemptionResult", "generate_redemption_code"]
