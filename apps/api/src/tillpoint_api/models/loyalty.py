"""Loyalty ledger domain models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Type
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from tillpoint_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: Type[Enum], name: str) -> SqlEnum:
    return SqlEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class LedgerEntryKind(str, Enum):
    """Point-affecting event kinds recorded on the ledger."""

    EARN = "earn"
    REDEEM = "redeem"
    ADJUST = "adjust"
    EXPIRE = "expire"


class RewardKind(str, Enum):
    """Reward type tags persisted on catalog rows."""

    DISCOUNT_PERCENT = "discount_percent"
    DISCOUNT_FIXED = "discount_fixed"
    FREE_PRODUCT = "free_product"
    FREE_DELIVERY = "free_delivery"
    STORE_CREDIT = "store_credit"


class RedemptionStatus(str, Enum):
    """Lifecycle of an issued redemption code."""

    ISSUED = "issued"
    USED = "used"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TierChangeTrigger(str, Enum):
    """What caused a tier re-evaluation."""

    EARN = "earn"
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class LoyaltyProgram(Base):
    """Earning and redemption rules shared by every account in a program."""

    __tablename__ = "loyalty_programs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    points_per_currency = Column(Numeric(10, 4), nullable=False, default=1, server_default="1")
    redemption_rate = Column(Numeric(10, 4), nullable=False, default=0.01, server_default="0.01")
    minimum_points_for_redemption = Column(Integer, nullable=False, default=0, server_default="0")
    points_expiry_months = Column(Integer, nullable=True)
    allow_tier_demotion = Column(Boolean, nullable=False, default=False, server_default="false")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    accounts = relationship("LoyaltyAccount", back_populates="program")


class LoyaltyTier(Base):
    """Tier band on the lifetime points axis."""

    __tablename__ = "loyalty_tiers"
    __table_args__ = (
        CheckConstraint("min_points >= 0", name="ck_loyalty_tiers_min_points"),
        CheckConstraint("earning_multiplier >= 0", name="ck_loyalty_tiers_earning_multiplier"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    key = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    min_points = Column(Integer, nullable=False, default=0, server_default="0")
    max_points = Column(Integer, nullable=True)
    min_spend = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    earning_multiplier = Column(Numeric(6, 3), nullable=False, default=1, server_default="1")
    redemption_multiplier = Column(Numeric(6, 3), nullable=False, default=1, server_default="1")
    discount_percent = Column(Numeric(5, 2), nullable=False, default=0, server_default="0")
    benefits = Column(JSON, nullable=False, default=dict)
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
        nullable=False,
    )


class LoyaltyAccount(Base):
    """One customer's enrollment in one program, carrying the cached balance projection."""

    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        Index(
            "uq_loyalty_accounts_active_customer_program",
            "customer_id",
            "program_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        CheckConstraint("points_balance >= 0", name="ck_loyalty_accounts_points_balance"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(String, nullable=False, index=True)
    program_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_programs.id"), nullable=False)
    current_tier_key = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")

    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_earned = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_expired = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_spend = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    last_sequence = Column(Integer, nullable=False, default=0, server_default="0")
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    tier_updated_at = Column(DateTime(timezone=True), nullable=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    program = relationship("LoyaltyProgram", back_populates="accounts")
    ledger_entries = relationship(
        "LoyaltyLedgerEntry",
        back_populates="account",
        order_by="LoyaltyLedgerEntry.sequence",
    )
    redemptions = relationship("LoyaltyRedemption", back_populates="account")
    tier_changes = relationship("LoyaltyTierChange", back_populates="account")


class LoyaltyLedgerEntry(Base):
    """Immutable point delta with the running balance at write time."""

    __tablename__ = "loyalty_ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_loyalty_ledger_entries_account_sequence"),
        UniqueConstraint(
            "account_id",
            "kind",
            "source_ref",
            name="uq_loyalty_ledger_entries_account_kind_source",
        ),
        CheckConstraint("running_balance >= 0", name="ck_loyalty_ledger_entries_running_balance"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    sequence = Column(Integer, nullable=False)
    kind = Column(_enum_column(LedgerEntryKind, "loyalty_ledger_entry_kind"), nullable=False)
    points = Column(Integer, nullable=False)
    running_balance = Column(Integer, nullable=False)
    source_ref = Column(String, nullable=True)
    spend_amount = Column(Numeric(14, 2), nullable=True)
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    account = relationship("LoyaltyAccount", back_populates="ledger_entries")


class LoyaltyReward(Base):
    """Redeemable catalog entry."""

    __tablename__ = "loyalty_rewards"
    __table_args__ = (
        CheckConstraint("points_cost > 0", name="ck_loyalty_rewards_points_cost"),
        CheckConstraint(
            "stock_quantity IS NULL OR stock_quantity >= 0",
            name="ck_loyalty_rewards_stock_quantity",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    slug = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    points_cost = Column(Integer, nullable=False)
    monetary_value = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    reward_type = Column(_enum_column(RewardKind, "loyalty_reward_kind"), nullable=False)
    discount_percent = Column(Numeric(5, 2), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    product_id = Column(String, nullable=True)
    stock_quantity = Column(Integer, nullable=True)
    min_tier_key = Column(String, nullable=True)
    redemption_limit_per_account = Column(Integer, nullable=False, default=0, server_default="0")
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    is_featured = Column(Boolean, nullable=False, default=False, server_default="false")
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    redemptions = relationship("LoyaltyRedemption", back_populates="reward")


class LoyaltyRedemption(Base):
    """Issued reward code; one row per successful redemption request."""

    __tablename__ = "loyalty_redemptions"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "idempotency_key",
            name="uq_loyalty_redemptions_account_idempotency_key",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id"), nullable=False)
    points_spent = Column(Integer, nullable=False)
    redemption_code = Column(String, nullable=False, unique=True)
    idempotency_key = Column(String, nullable=False)
    status = Column(
        _enum_column(RedemptionStatus, "loyalty_redemption_status"),
        nullable=False,
        default=RedemptionStatus.ISSUED,
        server_default=RedemptionStatus.ISSUED.value,
    )
    issued_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)

    account = relationship("LoyaltyAccount", back_populates="redemptions")
    reward = relationship("LoyaltyReward", back_populates="redemptions")


class LoyaltyTierChange(Base):
    """History of tier transitions per account."""

    __tablename__ = "loyalty_tier_changes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    previous_tier_key = Column(String, nullable=True)
    new_tier_key = Column(String, nullable=False)
    trigger = Column(_enum_column(TierChangeTrigger, "loyalty_tier_change_trigger"), nullable=False)
    lifetime_points = Column(Integer, nullable=False)
    lifetime_spend = Column(Numeric(14, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    account = relationship("LoyaltyAccount", back_populates="tier_changes")
