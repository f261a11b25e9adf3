import os
from decimal import Decimal

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("LOYALTY_JOB_SCHEDULER_ENABLED", "false")
os.environ.setdefault("LEDGER_RETRY_BASE_DELAY_SECONDS", "0")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tillpoint_api.app import create_app
from tillpoint_api.db.base import Base
from tillpoint_api.db.session import get_session
from tillpoint_api.models.loyalty import LoyaltyProgram, LoyaltyReward, LoyaltyTier, RewardKind
from tillpoint_api.observability.loyalty import get_loyalty_store
from tillpoint_api.observability.scheduler import get_scheduler_store


@pytest.fixture(autouse=True)
def reset_observability_stores():
    get_loyalty_store().reset()
    get_scheduler_store().reset()
    yield
    get_loyalty_store().reset()
    get_scheduler_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def loyalty_catalog(session_factory):
    """Bronze/silver/gold tiers, a program earning 0.1 points per unit and three rewards."""

    async with session_factory() as session:
        program = LoyaltyProgram(
            name="Default Loyalty Program",
            points_per_currency=Decimal("0.1"),
            redemption_rate=Decimal("0.01"),
        )
        bronze = LoyaltyTier(
            key="bronze",
            display_name="Bronze",
            min_points=0,
            max_points=1000,
            earning_multiplier=Decimal("1.0"),
            benefits={},
            sort_order=0,
        )
        silver = LoyaltyTier(
            key="silver",
            display_name="Silver",
            min_points=1000,
            max_points=5000,
            earning_multiplier=Decimal("1.25"),
            benefits={"priority_support": True},
            sort_order=1,
        )
        gold = LoyaltyTier(
            key="gold",
            display_name="Gold",
            min_points=5000,
            max_points=None,
            earning_multiplier=Decimal("1.5"),
            benefits={"free_delivery": True},
            sort_order=2,
        )
        voucher = LoyaltyReward(
            slug="ten-percent-off",
            name="10% off",
            points_cost=500,
            reward_type=RewardKind.DISCOUNT_PERCENT,
            discount_percent=Decimal("10"),
        )
        coffee = LoyaltyReward(
            slug="free-coffee",
            name="Free coffee",
            points_cost=200,
            reward_type=RewardKind.FREE_PRODUCT,
            product_id="sku-coffee",
            stock_quantity=1,
        )
        lounge = LoyaltyReward(
            slug="gold-lounge",
            name="Gold lounge pass",
            points_cost=100,
            reward_type=RewardKind.FREE_DELIVERY,
            min_tier_key="gold",
        )
        session.add_all([program, bronze, silver, gold, voucher, coffee, lounge])
        await session.commit()

        return {
            "program_id": program.id,
            "voucher_id": voucher.id,
            "coffee_id": coffee.id,
            "lounge_id": lounge.id,
        }
