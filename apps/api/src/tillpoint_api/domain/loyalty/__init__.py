"""Loyalty domain primitives: tier catalog, reward benefits and errors."""

from .errors import *  # noqa: F401,F403
from .rewards import (  # noqa: F401
    FixedDiscount,
    FreeDelivery,
    FreeProduct,
    PercentDiscount,
    RewardBenefit,
    StoreCredit,
    benefit_payload,
    describe_benefit,
    reward_benefit,
)
from .tiers import TierCatalog, TierDefinition, compute_earned_points  # noqa: F401
