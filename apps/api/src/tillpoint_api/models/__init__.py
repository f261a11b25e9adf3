"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    LedgerEntryKind,
    LoyaltyAccount,
    LoyaltyLedgerEntry,
    LoyaltyProgram,
    LoyaltyRedemption,
    LoyaltyReward,
    LoyaltyTier,
    LoyaltyTierChange,
    RedemptionStatus,
    RewardKind,
    TierChangeTrigger,
)
