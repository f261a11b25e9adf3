"""API endpoints for loyalty accounts, tiers and redemptions."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tillpoint_api.api.dependencies.security import require_loyalty_api_key
from tillpoint_api.db.session import get_session
from tillpoint_api.domain.loyalty.errors import LedgerValidationError, LoyaltyError
from tillpoint_api.models.loyalty import (
    LedgerEntryKind,
    LoyaltyAccount,
    LoyaltyLedgerEntry,
    LoyaltyRedemption,
    LoyaltyReward,
    RedemptionStatus,
    TierChangeTrigger,
)
from tillpoint_api.services.loyalty import LoyaltyService, tier_from_record


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class SaleRequest(BaseModel):
    accountId: UUID
    saleId: str = Field(..., min_length=1)
    saleTotal: Decimal


class EnrollRequest(BaseModel):
    customerId: str = Field(..., min_length=1)
    programId: Optional[UUID] = None


class RedemptionCreateRequest(BaseModel):
    rewardId: UUID


class AdjustmentRequest(BaseModel):
    points: int
    reason: str = Field(..., min_length=1)
    reference: Optional[str] = None


class RedemptionCancelRequest(BaseModel):
    reason: Optional[str] = None


class AccountResponse(BaseModel):
    id: UUID
    customerId: str
    programId: UUID
    tier: Optional[str]
    isActive: bool
    pointsBalance: int
    createdAt: Optional[datetime]


class BalanceResponse(BaseModel):
    accountId: UUID
    currentPoints: int
    lifetimeEarned: int
    lifetimeRedeemed: int
    tier: Optional[str]
    tierName: Optional[str] = None


class TierEvaluationResponse(BaseModel):
    accountId: UUID
    previousTier: Optional[str]
    tier: str
    changed: bool


class LedgerEntryResponse(BaseModel):
    id: UUID
    sequence: int
    kind: str
    points: int
    runningBalance: int
    sourceRef: Optional[str]
    spendAmount: Optional[float]
    description: Optional[str]
    metadata: dict[str, Any]
    occurredAt: Optional[datetime]


class LedgerWindowResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    nextCursor: Optional[str]


class SaleResponse(BaseModel):
    entry: LedgerEntryResponse
    evaluation: TierEvaluationResponse
    replayed: bool


class RedemptionResponse(BaseModel):
    id: UUID
    accountId: UUID
    rewardId: UUID
    pointsSpent: int
    code: str
    status: str
    issuedAt: Optional[datetime]
    expiresAt: Optional[datetime]
    usedAt: Optional[datetime]
    cancelledAt: Optional[datetime]
    cancellationReason: Optional[str]
    benefit: dict[str, Any]
    summary: Optional[str]


class RewardResponse(BaseModel):
    id: UUID
    slug: str
    name: str
    description: Optional[str]
    pointsCost: int
    monetaryValue: float
    rewardType: str
    minTier: Optional[str]
    stockQuantity: Optional[int]
    redemptionLimitPerAccount: int
    validFrom: Optional[datetime]
    validUntil: Optional[datetime]
    isFeatured: bool


class TierResponse(BaseModel):
    key: str
    name: str
    minPoints: int
    maxPoints: Optional[int]
    minSpend: float
    earningMultiplier: float
    redemptionMultiplier: float
    discountPercent: float
    benefits: dict[str, Any]
    sortOrder: int


@contextmanager
def _loyalty_errors() -> Iterator[None]:
    try:
        yield
    except LoyaltyError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.as_detail()) from exc


def _serialize_account(account: LoyaltyAccount) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        customerId=account.customer_id,
        programId=account.program_id,
        tier=account.current_tier_key,
        isActive=bool(account.is_active),
        pointsBalance=int(account.points_balance or 0),
        createdAt=account.created_at,
    )


def _serialize_ledger_entry(entry: LoyaltyLedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        sequence=entry.sequence,
        kind=entry.kind.value,
        points=entry.points,
        runningBalance=entry.running_balance,
        sourceRef=entry.source_ref,
        spendAmount=float(entry.spend_amount) if entry.spend_amount is not None else None,
        description=entry.description,
        metadata=dict(entry.metadata_json or {}),
        occurredAt=entry.occurred_at,
    )


def _serialize_redemption(redemption: LoyaltyRedemption) -> RedemptionResponse:
    metadata = redemption.metadata_json or {}
    return RedemptionResponse(
        id=redemption.id,
        accountId=redemption.account_id,
        rewardId=redemption.reward_id,
        pointsSpent=redemption.points_spent,
        code=redemption.redemption_code,
        status=redemption.status.value,
        issuedAt=redemption.issued_at,
        expiresAt=redemption.expires_at,
        usedAt=redemption.used_at,
        cancelledAt=redemption.cancelled_at,
        cancellationReason=redemption.cancellation_reason,
        benefit=dict(metadata.get("benefit") or {}),
        summary=metadata.get("summary"),
    )


def _serialize_reward(reward: LoyaltyReward) -> RewardResponse:
    return RewardResponse(
        id=reward.id,
        slug=reward.slug,
        name=reward.name,
        description=reward.description,
        pointsCost=reward.points_cost,
        monetaryValue=float(reward.monetary_value or 0),
        rewardType=reward.reward_type.value,
        minTier=reward.min_tier_key,
        stockQuantity=reward.stock_quantity,
        redemptionLimitPerAccount=int(reward.redemption_limit_per_account or 0),
        validFrom=reward.valid_from,
        validUntil=reward.valid_until,
        isFeatured=bool(reward.is_featured),
    )


def _parse_enum_filters(values: list[str] | None, enum_cls, label: str) -> list[Any] | None:
    if not values:
        return None
    parsed = []
    for value in values:
        try:
            parsed.append(enum_cls(value))
        except ValueError as exc:
            raise LedgerValidationError(f"Unsupported {label}: {value}") from exc
    return parsed


@router.post("/sales", response_model=SaleResponse, status_code=status.HTTP_201_CREATED)
async def record_loyalty_sale(
    request: SaleRequest,
    response: Response,
    db: AsyncSession = Depends(get_session),
) -> SaleResponse:
    """Earn points for a completed sale and re-evaluate the account tier."""

    service = LoyaltyService(db)
    with _loyalty_errors():
        result = await service.record_sale(request.accountId, request.saleId, request.saleTotal)
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return SaleResponse(
        entry=_serialize_ledger_entry(result.entry),
        evaluation=TierEvaluationResponse(**result.evaluation.as_dict()),
        replayed=result.replayed,
    )


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def enroll_loyalty_account(
    request: EnrollRequest,
    db: AsyncSession = Depends(get_session),
) -> AccountResponse:
    """Fetch or create the customer's loyalty account."""

    service = LoyaltyService(db)
    with _loyalty_errors():
        account = await service.enroll(request.customerId, request.programId)
    return _serialize_account(account)


@router.get("/accounts/{account_id}/balance", response_model=BalanceResponse)
async def get_loyalty_balance(
    account_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    service = LoyaltyService(db)
    with _loyalty_errors():
        balance = await service.balance(account_id)
    return BalanceResponse(**balance.as_dict())


@router.post(
    "/accounts/{account_id}/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_loyalty_redemption(
    account_id: UUID,
    request: RedemptionCreateRequest,
    response: Response,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    """Redeem a reward; repeating the idempotency key returns the original redemption."""

    service = LoyaltyService(db)
    with _loyalty_errors():
        result = await service.redeem(account_id, request.rewardId, idempotency_key=idempotency_key)
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return _serialize_redemption(result.redemption)


@router.get("/accounts/{account_id}/redemptions", response_model=List[RedemptionResponse])
async def list_loyalty_redemptions(
    account_id: UUID,
    statuses: list[str] | None = Query(None, description="Filter redemption statuses"),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
) -> List[RedemptionResponse]:
    service = LoyaltyService(db)
    with _loyalty_errors():
        parsed = _parse_enum_filters(statuses, RedemptionStatus, "redemption status")
        redemptions = await service.list_redemptions(account_id, statuses=parsed, limit=limit)
    return [_serialize_redemption(redemption) for redemption in redemptions]


@router.post("/accounts/{account_id}/tier/evaluate", response_model=TierEvaluationResponse)
async def evaluate_loyalty_tier(
    account_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> TierEvaluationResponse:
    service = LoyaltyService(db)
    with _loyalty_errors():
        evaluation = await service.evaluate_tier(account_id)
    return TierEvaluationResponse(**evaluation.as_dict())


@router.post("/tiers/evaluate", dependencies=[Depends(require_loyalty_api_key)])
async def evaluate_all_loyalty_tiers(db: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    """Re-evaluate every active account; failures are reported per account."""

    service = LoyaltyService(db)
    with _loyalty_errors():
        result = await service.evaluate_all_tiers(trigger=TierChangeTrigger.MANUAL)
    return result.as_dict()


@router.get("/accounts/{account_id}/ledger", response_model=LedgerWindowResponse)
async def list_loyalty_ledger(
    account_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    kinds: list[str] | None = Query(None, description="Filter ledger entry kinds"),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    service = LoyaltyService(db)
    with _loyalty_errors():
        parsed = _parse_enum_filters(kinds, LedgerEntryKind, "ledger kind")
        page = await service.list_ledger(account_id, limit=limit, cursor=cursor, kinds=parsed)
    return LedgerWindowResponse(
        entries=[_serialize_ledger_entry(entry) for entry in page.entries],
        nextCursor=page.next_cursor,
    )


@router.get("/accounts/{account_id}/reconciliation")
async def reconcile_loyalty_account(
    account_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Compare the cached balance with a full ledger replay."""

    service = LoyaltyService(db)
    with _loyalty_errors():
        report = await service.reconcile(account_id)
    return report.as_dict()


@router.post(
    "/accounts/{account_id}/adjustments",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_loyalty_api_key)],
)
async def adjust_loyalty_points(
    account_id: UUID,
    request: AdjustmentRequest,
    db: AsyncSession = Depends(get_session),
) -> LedgerEntryResponse:
    service = LoyaltyService(db)
    with _loyalty_errors():
        entry = await service.adjust_points(
            account_id,
            request.points,
            request.reason,
            reference=request.reference,
        )
    return _serialize_ledger_entry(entry)


@router.post("/redemptions/{code}/use", response_model=RedemptionResponse)
async def use_loyalty_redemption(
    code: str,
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    """Mark an issued redemption code as used at checkout."""

    service = LoyaltyService(db)
    with _loyalty_errors():
        redemption = await service.mark_redemption_used(code)
    return _serialize_redemption(redemption)


@router.post(
    "/redemptions/{redemption_id}/cancel",
    response_model=RedemptionResponse,
    dependencies=[Depends(require_loyalty_api_key)],
)
async def cancel_loyalty_redemption(
    redemption_id: UUID,
    request: RedemptionCancelRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    """Cancel an issued redemption and refund its points."""

    service = LoyaltyService(db)
    with _loyalty_errors():
        redemption = await service.cancel_redemption(
            redemption_id,
            request.reason if request else None,
        )
    return _serialize_redemption(redemption)


@router.get("/tiers", response_model=List[TierResponse])
async def list_loyalty_tiers(db: AsyncSession = Depends(get_session)) -> List[TierResponse]:
    """List active loyalty tiers."""

    service = LoyaltyService(db)
    tiers = await service.list_tiers()
    return [TierResponse(**tier_from_record(tier).as_payload()) for tier in tiers]


@router.get("/rewards", response_model=List[RewardResponse])
async def list_loyalty_rewards(
    available_only: bool = Query(True, alias="availableOnly"),
    db: AsyncSession = Depends(get_session),
) -> List[RewardResponse]:
    service = LoyaltyService(db)
    rewards = await service.list_rewards(available_only=available_only)
    return [_serialize_reward(reward) for reward in rewards]
