"""Read-side balance projection over the points ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tillpoint_api.domain.loyalty.errors import UnknownAccount
from tillpoint_api.models.loyalty import LedgerEntryKind, LoyaltyAccount, LoyaltyLedgerEntry

_COMPARED_FIELDS = (
    "current_balance",
    "lifetime_earned",
    "lifetime_redeemed",
    "lifetime_expired",
    "lifetime_spend",
    "last_sequence",
)


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    account_id: UUID
    current_balance: int
    lifetime_earned: int
    lifetime_redeemed: int
    lifetime_expired: int
    lifetime_spend: Decimal
    last_sequence: int
    tier_key: str | None = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accountId": str(self.account_id),
            "currentPoints": self.current_balance,
            "lifetimeEarned": self.lifetime_earned,
            "lifetimeRedeemed": self.lifetime_redeemed,
            "lifetimeExpired": self.lifetime_expired,
            "lifetimeSpend": float(self.lifetime_spend),
            "lastSequence": self.last_sequence,
            "tier": self.tier_key,
        }


@dataclass(frozen=True, slots=True)
class ReplayResult:
    snapshot: BalanceSnapshot
    entry_count: int
    violations: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    account_id: UUID
    cached: BalanceSnapshot
    replayed: BalanceSnapshot
    drift: Dict[str, Tuple[Any, Any]]
    violations: Tuple[str, ...]

    @property
    def consistent(self) -> bool:
        return not self.drift and not self.violations

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accountId": str(self.account_id),
            "consistent": self.consistent,
            "cached": self.cached.as_dict(),
            "replayed": self.replayed.as_dict(),
            "drift": {
                name: {"cached": _jsonable(cached), "replayed": _jsonable(replayed)}
                for name, (cached, replayed) in self.drift.items()
            },
            "violations": list(self.violations),
        }


def _jsonable(value: Any) -> Any:
    return float(value) if isinstance(value, Decimal) else value


class BalanceProjector:
    """Serves balances from the account snapshot and rebuilds them from the ledger."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def _load_account(self, account_id: UUID) -> LoyaltyAccount:
        account = await self._db.get(LoyaltyAccount, account_id)
        if account is None:
            raise UnknownAccount(f"Loyalty account {account_id} not found", account_id=str(account_id))
        return account

    async def snapshot(self, account_id: UUID) -> BalanceSnapshot:
        account = await self._load_account(account_id)
        return BalanceSnapshot(
            account_id=account.id,
            current_balance=int(account.points_balance or 0),
            lifetime_earned=int(account.lifetime_earned or 0),
            lifetime_redeemed=int(account.lifetime_redeemed or 0),
            lifetime_expired=int(account.lifetime_expired or 0),
            lifetime_spend=Decimal(account.lifetime_spend or 0),
            last_sequence=int(account.last_sequence or 0),
            tier_key=account.current_tier_key,
        )

    async def current_balance(self, account_id: UUID) -> int:
        return (await self.snapshot(account_id)).current_balance

    async def lifetime_earned(self, account_id: UUID) -> int:
        return (await self.snapshot(account_id)).lifetime_earned

    async def lifetime_redeemed(self, account_id: UUID) -> int:
        return (await self.snapshot(account_id)).lifetime_redeemed

    async def replay(self, account_id: UUID) -> ReplayResult:
        """Recompute all totals from ledger rows in sequence order."""

        account = await self._load_account(account_id)
        stmt = (
            select(LoyaltyLedgerEntry)
            .where(LoyaltyLedgerEntry.account_id == account_id)
            .order_by(LoyaltyLedgerEntry.sequence.asc())
        )
        entries = list((await self._db.execute(stmt)).scalars().all())

        balance = 0
        earned = 0
        redeemed = 0
        expired = 0
        spend = Decimal("0")
        last_sequence = 0
        violations: list[str] = []

        for entry in entries:
            if entry.sequence != last_sequence + 1:
                violations.append(f"sequence {entry.sequence} follows {last_sequence}")
            last_sequence = entry.sequence

            balance += entry.points
            if entry.kind is LedgerEntryKind.EARN:
                earned += entry.points
            elif entry.kind is LedgerEntryKind.REDEEM:
                redeemed -= entry.points
            elif entry.kind is LedgerEntryKind.EXPIRE:
                expired -= entry.points
            if entry.spend_amount is not None:
                spend += Decimal(entry.spend_amount)

            if entry.running_balance != balance:
                violations.append(
                    f"sequence {entry.sequence} running balance {entry.running_balance} != {balance}"
                )
            if balance < 0:
                violations.append(f"sequence {entry.sequence} balance is negative ({balance})")

        snapshot = BalanceSnapshot(
            account_id=account.id,
            current_balance=balance,
            lifetime_earned=earned,
            lifetime_redeemed=redeemed,
            lifetime_expired=expired,
            lifetime_spend=spend,
            last_sequence=last_sequence,
            tier_key=account.current_tier_key,
        )
        return ReplayResult(snapshot=snapshot, entry_count=len(entries), violations=tuple(violations))

    async def reconcile(self, account_id: UUID) -> ReconciliationReport:
        """Compare the cached snapshot with a full replay without writing anything."""

        cached = await self.snapshot(account_id)
        replayed = await self.replay(account_id)

        drift: Dict[str, Tuple[Any, Any]] = {}
        for name in _COMPARED_FIELDS:
            cached_value = getattr(cached, name)
            replayed_value = getattr(replayed.snapshot, name)
            if cached_value != replayed_value:
                drift[name] = (cached_value, replayed_value)

        report = ReconciliationReport(
            account_id=account_id,
            cached=cached,
            replayed=replayed.snapshot,
            drift=drift,
            violations=replayed.violations,
        )
        if not report.consistent:
            logger.warning(
                "Loyalty balance drift detected",
                account_id=str(account_id),
                drift=sorted(drift),
                violations=len(replayed.violations),
            )
        return report


__all__ = ["BalanceProjector", "BalanceSnapshot", "ReconciliationReport", "ReplayResult"]
