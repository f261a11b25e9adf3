"""Loyalty error taxonomy.

Every error carries a stable ``code`` and the HTTP status the API layer maps it
to. Validation errors are deterministic and never retried; transient errors may
succeed when the caller retries with the same idempotency key.
"""

from __future__ import annotations

from typing import Any, Dict


class LoyaltyError(RuntimeError):
    """Base class for all loyalty ledger failures."""

    code = "loyalty_error"
    status_code = 500

    def __init__(self, message: str | None = None, **context: Any) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.context: Dict[str, Any] = context

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.code

    def as_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class LoyaltyValidationError(LoyaltyError):
    """Request rejected by a business rule."""

    code = "validation_failed"
    status_code = 400


class LoyaltyTransientError(LoyaltyError):
    """Failure that may clear up on retry."""

    code = "transient_failure"
    status_code = 503


class RewardNotFound(LoyaltyValidationError):
    """Reward does not exist."""

    code = "reward_not_found"
    status_code = 404


class RewardInactive(LoyaltyValidationError):
    """Reward is not active."""

    code = "reward_inactive"
    status_code = 409


class RewardUnavailable(LoyaltyValidationError):
    """Reward is outside its validity window."""

    code = "reward_unavailable"
    status_code = 409


class OutOfStock(LoyaltyValidationError):
    """Reward stock is exhausted."""

    code = "out_of_stock"
    status_code = 409


class TierNotEligible(LoyaltyValidationError):
    """Account tier is below the reward's minimum tier."""

    code = "tier_not_eligible"
    status_code = 403


class InsufficientPoints(LoyaltyValidationError):
    """Balance does not cover the reward cost."""

    code = "insufficient_points"
    status_code = 422


class InsufficientBalance(LoyaltyValidationError):
    """Ledger append would drive the balance negative."""

    code = "insufficient_balance"
    status_code = 422


class RedemptionLimitReached(LoyaltyValidationError):
    """Per-account redemption limit for the reward is reached."""

    code = "redemption_limit_reached"
    status_code = 409


class LedgerValidationError(LoyaltyValidationError):
    """Ledger entry kind and delta are inconsistent."""

    code = "ledger_validation_failed"
    status_code = 400


class RedemptionNotFound(LoyaltyValidationError):
    """Redemption does not exist."""

    code = "redemption_not_found"
    status_code = 404


class RedemptionStateError(LoyaltyValidationError):
    """Redemption cannot transition from its current status."""

    code = "redemption_state_invalid"
    status_code = 409


class StorageConflict(LoyaltyTransientError):
    """Account row changed underneath the current transaction."""

    code = "storage_conflict"
    status_code = 409


class ConcurrentConflict(LoyaltyTransientError):
    """Account stayed contended after all retries."""

    code = "concurrent_conflict"
    status_code = 409


class CodeAllocationFailed(LoyaltyTransientError):
    """Could not allocate a unique redemption code."""

    code = "code_allocation_failed"
    status_code = 503


class ProgramNotFound(LoyaltyValidationError):
    """Loyalty program does not exist or is inactive."""

    code = "program_not_found"
    status_code = 404


class RewardConfigurationError(LoyaltyValidationError):
    """Reward kind and parameters are inconsistent."""

    code = "reward_configuration_invalid"
    status_code = 422


class UnknownAccount(LoyaltyError):
    """Loyalty account does not exist or is inactive."""

    code = "unknown_account"
    status_code = 404


class TierCatalogError(LoyaltyError):
    """Tier configuration is invalid."""

    code = "tier_catalog_invalid"
    status_code = 500


__all__ = [
    "CodeAllocationFailed",
    "ConcurrentConflict",
    "InsufficientBalance",
    "InsufficientPoints",
    "LedgerValidationError",
    "LoyaltyError",
    "LoyaltyTransientError",
    "LoyaltyValidationError",
    "OutOfStock",
    "ProgramNotFound",
    "RedemptionLimitReached",
    "RedemptionNotFound",
    "RedemptionStateError",
    "RewardConfigurationError",
    "RewardInactive",
    "RewardNotFound",
    "RewardUnavailable",
    "StorageConflict",
    "TierCatalogError",
    "TierNotEligible",
    "UnknownAccount",
]
