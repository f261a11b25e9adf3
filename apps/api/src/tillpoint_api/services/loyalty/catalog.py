"""Persistence access for tiers, rewards and programs."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tillpoint_api.core.clock import ensure_aware
from tillpoint_api.core.settings import settings
from tillpoint_api.domain.loyalty.errors import ProgramNotFound, RewardNotFound
from tillpoint_api.domain.loyalty.tiers import TierCatalog, TierDefinition
from tillpoint_api.models.loyalty import LoyaltyProgram, LoyaltyReward, LoyaltyTier


def tier_from_record(record: LoyaltyTier) -> TierDefinition:
    return TierDefinition(
        key=record.key,
        display_name=record.display_name,
        min_points=int(record.min_points or 0),
        max_points=int(record.max_points) if record.max_points is not None else None,
        min_spend=Decimal(record.min_spend or 0),
        earning_multiplier=Decimal(record.earning_multiplier if record.earning_multiplier is not None else 1),
        redemption_multiplier=Decimal(
            record.redemption_multiplier if record.redemption_multiplier is not None else 1
        ),
        discount_percent=Decimal(record.discount_percent or 0),
        benefits=dict(record.benefits or {}),
        sort_order=int(record.sort_order or 0),
    )


def reward_is_available(reward: LoyaltyReward, at: datetime) -> bool:
    """Whether ``at`` falls inside the reward's validity window."""

    moment = ensure_aware(at)
    valid_from = ensure_aware(reward.valid_from) if reward.valid_from else None
    valid_until = ensure_aware(reward.valid_until) if reward.valid_until else None
    if valid_from is not None and moment < valid_from:
        return False
    if valid_until is not None and moment > valid_until:
        return False
    return True


class CatalogRepository:
    """Loads catalog snapshots and applies conditional stock updates."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def list_tiers(self, *, include_inactive: bool = False) -> list[LoyaltyTier]:
        stmt = select(LoyaltyTier).order_by(LoyaltyTier.sort_order.asc(), LoyaltyTier.min_points.asc())
        if not include_inactive:
            stmt = stmt.where(LoyaltyTier.is_active.is_(True))
        tiers = list((await self._db.execute(stmt)).scalars().all())
        logger.debug("Fetched loyalty tiers", count=len(tiers))
        return tiers

    async def load_tier_catalog(self) -> TierCatalog:
        """Build a validated snapshot from the active tier rows."""

        tiers = await self.list_tiers()
        return TierCatalog.from_definitions(tier_from_record(tier) for tier in tiers)

    async def list_rewards(
        self,
        *,
        active_only: bool = True,
        available_at: datetime | None = None,
    ) -> list[LoyaltyReward]:
        stmt = select(LoyaltyReward).order_by(
            LoyaltyReward.is_featured.desc(), LoyaltyReward.points_cost.asc()
        )
        if active_only:
            stmt = stmt.where(LoyaltyReward.is_active.is_(True))
        rewards = list((await self._db.execute(stmt)).scalars().all())
        if available_at is not None:
            rewards = [reward for reward in rewards if reward_is_available(reward, available_at)]
        logger.debug("Fetched loyalty rewards", count=len(rewards))
        return rewards

    async def get_reward(self, reward_id: UUID) -> LoyaltyReward:
        stmt = (
            select(LoyaltyReward)
            .where(LoyaltyReward.id == reward_id)
            .execution_options(populate_existing=True)
        )
        reward = (await self._db.execute(stmt)).scalar_one_or_none()
        if reward is None:
            raise RewardNotFound(f"Reward {reward_id} not found", reward_id=str(reward_id))
        return reward

    async def decrement_stock(self, reward_id: UUID) -> bool:
        """Take one unit of finite stock; ``False`` when none is left."""

        stmt = (
            update(LoyaltyReward)
            .where(
                LoyaltyReward.id == reward_id,
                LoyaltyReward.stock_quantity.is_not(None),
                LoyaltyReward.stock_quantity > 0,
            )
            .values(stock_quantity=LoyaltyReward.stock_quantity - 1)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def restock(self, reward_id: UUID) -> bool:
        stmt = (
            update(LoyaltyReward)
            .where(LoyaltyReward.id == reward_id, LoyaltyReward.stock_quantity.is_not(None))
            .values(stock_quantity=LoyaltyReward.stock_quantity + 1)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def get_program(self, program_id: UUID) -> LoyaltyProgram:
        program = await self._db.get(LoyaltyProgram, program_id)
        if program is None or not program.is_active:
            raise ProgramNotFound(
                f"Loyalty program {program_id} not found", program_id=str(program_id)
            )
        return program

    async def ensure_default_program(self) -> LoyaltyProgram:
        """Fetch or create the program used when enrollment names none."""

        stmt = select(LoyaltyProgram).where(LoyaltyProgram.name == settings.default_program_name)
        program = (await self._db.execute(stmt)).scalar_one_or_none()
        if program is not None:
            return program

        program = LoyaltyProgram(
            name=settings.default_program_name,
            points_per_currency=Decimal(str(settings.default_points_per_currency)),
            redemption_rate=Decimal(str(settings.default_redemption_rate)),
        )
        self._db.add(program)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            logger.warning("Detected race when creating default loyalty program")
            return await self.ensure_default_program()
        logger.info("Created default loyalty program", program_id=str(program.id))
        return program


__all__ = ["CatalogRepository", "reward_is_available", "tier_from_record"]
