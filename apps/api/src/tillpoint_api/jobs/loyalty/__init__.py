"""Loyalty job exports."""

from .maintenance import (  # noqa: F401
    expire_loyalty_points,
    expire_loyalty_redemptions,
    recalculate_loyalty_tiers,
)

__all__ = [
    "expire_loyalty_points",
    "expire_loyalty_redemptions",
    "recalculate_loyalty_tiers",
]
