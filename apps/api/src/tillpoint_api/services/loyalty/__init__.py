"""Loyalty service exports."""

from .catalog import CatalogRepository, reward_is_available, tier_from_record  # noqa: F401
from .ledger import (  # noqa: F401
    LedgerPage,
    PointsLedger,
    RetryPolicy,
    decode_sequence_cursor,
    encode_sequence_cursor,
    ledger_unit_of_work,
)
from .locks import AccountLockRegistry, get_account_lock_registry  # noqa: F401
from .loyalty_service import AccountBalance, LoyaltyService, SaleRecordResult  # noqa: F401
from .projector import BalanceProjector, BalanceSnapshot, ReconciliationReport, ReplayResult  # noqa: F401
from .redemption import RedemptionEngine, RedemptionResult, generate_redemption_code  # noqa: F401
from .tier_evaluator import (  # noqa: F401
    TierBatchFailure,
    TierBatchResult,
    TierEvaluation,
    TierEvaluator,
)
