"""Reward benefit variants."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Union

from tillpoint_api.models.loyalty import RewardKind

from .errors import RewardConfigurationError


@dataclass(frozen=True, slots=True)
class PercentDiscount:
    percent: Decimal


@dataclass(frozen=True, slots=True)
class FixedDiscount:
    amount: Decimal


@dataclass(frozen=True, slots=True)
class FreeProduct:
    product_id: str


@dataclass(frozen=True, slots=True)
class FreeDelivery:
    pass


@dataclass(frozen=True, slots=True)
class StoreCredit:
    amount: Decimal


RewardBenefit = Union[PercentDiscount, FixedDiscount, FreeProduct, FreeDelivery, StoreCredit]


def _decimal_or_none(value: Any) -> Decimal | None:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _coerce_kind(value: Any) -> RewardKind:
    if isinstance(value, RewardKind):
        return value
    try:
        return RewardKind(str(value))
    except ValueError as exc:
        raise RewardConfigurationError(f"Unknown reward kind '{value}'") from exc


def reward_benefit(record: Any) -> RewardBenefit:
    """Build the benefit variant for a reward row, rejecting inconsistent parameters.

    ``record`` is anything exposing ``reward_type``, ``discount_percent``,
    ``discount_amount``, ``product_id`` and ``monetary_value``.
    """

    kind = _coerce_kind(record.reward_type)
    percent = _decimal_or_none(getattr(record, "discount_percent", None))
    amount = _decimal_or_none(getattr(record, "discount_amount", None))
    product_id = getattr(record, "product_id", None)
    monetary_value = _decimal_or_none(getattr(record, "monetary_value", None))

    def _reject_extras(*, allow_percent: bool = False, allow_amount: bool = False, allow_product: bool = False) -> None:
        if percent is not None and not allow_percent:
            raise RewardConfigurationError(f"{kind.value} rewards cannot carry discount_percent")
        if amount is not None and not allow_amount:
            raise RewardConfigurationError(f"{kind.value} rewards cannot carry discount_amount")
        if product_id and not allow_product:
            raise RewardConfigurationError(f"{kind.value} rewards cannot carry product_id")

    if kind is RewardKind.DISCOUNT_PERCENT:
        _reject_extras(allow_percent=True)
        if percent is None or percent <= 0 or percent > 100:
            raise RewardConfigurationError("discount_percent must be within (0, 100]")
        return PercentDiscount(percent=percent)

    if kind is RewardKind.DISCOUNT_FIXED:
        _reject_extras(allow_amount=True)
        if amount is None or amount <= 0:
            raise RewardConfigurationError("discount_amount must be positive")
        return FixedDiscount(amount=amount)

    if kind is RewardKind.FREE_PRODUCT:
        _reject_extras(allow_product=True)
        if not product_id:
            raise RewardConfigurationError("free_product rewards require product_id")
        return FreeProduct(product_id=str(product_id))

    if kind is RewardKind.FREE_DELIVERY:
        _reject_extras()
        return FreeDelivery()

    if kind is RewardKind.STORE_CREDIT:
        _reject_extras()
        if monetary_value is None or monetary_value <= 0:
            raise RewardConfigurationError("store_credit rewards require a positive monetary_value")
        return StoreCredit(amount=monetary_value)

    raise RewardConfigurationError(f"Unsupported reward kind '{kind.value}'")


def describe_benefit(benefit: RewardBenefit) -> str:
    if isinstance(benefit, PercentDiscount):
        return f"{benefit.percent.normalize():f}% off"
    if isinstance(benefit, FixedDiscount):
        return f"{benefit.amount:.2f} off"
    if isinstance(benefit, FreeProduct):
        return f"Free product {benefit.product_id}"
    if isinstance(benefit, FreeDelivery):
        return "Free delivery"
    if isinstance(benefit, StoreCredit):
        return f"{benefit.amount:.2f} store credit"
    raise TypeError(f"Unsupported reward benefit {benefit!r}")


def benefit_payload(benefit: RewardBenefit) -> dict[str, Any]:
    if isinstance(benefit, PercentDiscount):
        return {"kind": RewardKind.DISCOUNT_PERCENT.value, "percent": float(benefit.percent)}
    if isinstance(benefit, FixedDiscount):
        return {"kind": RewardKind.DISCOUNT_FIXED.value, "amount": float(benefit.amount)}
    if isinstance(benefit, FreeProduct):
        return {"kind": RewardKind.FREE_PRODUCT.value, "productId": benefit.product_id}
    if isinstance(benefit, FreeDelivery):
        return {"kind": RewardKind.FREE_DELIVERY.value}
    if isinstance(benefit, StoreCredit):
        return {"kind": RewardKind.STORE_CREDIT.value, "amount": float(benefit.amount)}
    raise TypeError(f"Unsupported reward benefit {benefit!r}")


__all__ = [
    "FixedDiscount",
    "FreeDelivery",
    "FreeProduct",
    "PercentDiscount",
    "RewardBenefit",
    "StoreCredit",
    "benefit_payload",
    "describe_benefit",
    "reward_benefit",
]
