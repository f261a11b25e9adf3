"""Scheduled loyalty maintenance: tier recalculation and expiry sweeps."""

# meta: job: loyalty-maintenance

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from tillpoint_api.core.clock import utcnow
from tillpoint_api.models.loyalty import TierChangeTrigger
from tillpoint_api.services.loyalty import LoyaltyService

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


@asynccontextmanager
async def _open_session(session_factory: SessionFactory) -> AsyncIterator[AsyncSession]:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session
    async with session as managed_session:
        yield managed_session


async def recalculate_loyalty_tiers(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Re-evaluate every active account against the current tier catalog."""

    async with _open_session(session_factory) as session:
        service = LoyaltyService(session)
        batch = await service.evaluate_all_tiers(trigger=TierChangeTrigger.SCHEDULED)

    summary = {
        "evaluated": len(batch.results),
        "changed": batch.changed,
        "failed": len(batch.failures),
    }
    logger.bind(summary=summary).info("Loyalty tier recalculation job completed")
    return summary


async def expire_loyalty_points(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Expire balances of accounts idle past their program's expiry window."""

    async with _open_session(session_factory) as session:
        service = LoyaltyService(session)
        expired = await service.expire_inactive_points(utcnow())

    summary = {"expired_accounts": len(expired)}
    logger.bind(summary=summary).info("Loyalty point expiry job completed")
    return summary


async def expire_loyalty_redemptions(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Mark issued redemption codes past their expiry as expired."""

    async with _open_session(session_factory) as session:
        service = LoyaltyService(session)
        expired = await service.expire_redemptions(utcnow())

    summary = {"expired_redemptions": len(expired)}
    logger.bind(summary=summary).info("Loyalty redemption expiry job completed")
    return summary


__all__ = ["expire_loyalty_points", "expire_loyalty_redemptions", "recalculate_loyalty_tiers"]
