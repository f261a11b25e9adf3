"""Immutable tier catalog snapshot.

Tiers partition the non-negative lifetime points axis. The snapshot is built
once (from persisted rows or directly in tests), validated, and handed to the
components that need it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Dict, Iterable, Iterator, Mapping, Tuple

from .errors import LedgerValidationError, TierCatalogError


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


@dataclass(frozen=True, slots=True)
class TierDefinition:
    """Single tier band with its earning and redemption parameters."""

    key: str
    display_name: str
    min_points: int
    max_points: int | None = None
    min_spend: Decimal = Decimal("0")
    earning_multiplier: Decimal = Decimal("1")
    redemption_multiplier: Decimal = Decimal("1")
    discount_percent: Decimal = Decimal("0")
    benefits: Mapping[str, Any] = field(default_factory=dict)
    sort_order: int = 0

    def as_payload(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.display_name,
            "minPoints": self.min_points,
            "maxPoints": self.max_points,
            "minSpend": float(self.min_spend),
            "earningMultiplier": float(self.earning_multiplier),
            "redemptionMultiplier": float(self.redemption_multiplier),
            "discountPercent": float(self.discount_percent),
            "benefits": dict(self.benefits),
            "sortOrder": self.sort_order,
        }


@dataclass(frozen=True, slots=True)
class TierCatalog:
    """Ordered, validated set of tiers."""

    tiers: Tuple[TierDefinition, ...]

    @classmethod
    def from_definitions(cls, definitions: Iterable[TierDefinition]) -> "TierCatalog":
        ordered = tuple(sorted(definitions, key=lambda tier: (tier.sort_order, tier.min_points)))
        catalog = cls(tiers=ordered)
        catalog.validate()
        return catalog

    def validate(self) -> None:
        """Reject catalogs that leave gaps or overlaps on the points axis."""

        if not self.tiers:
            raise TierCatalogError("Tier catalog is empty")

        seen: set[str] = set()
        for tier in self.tiers:
            if tier.key in seen:
                raise TierCatalogError(f"Duplicate tier key '{tier.key}'", tier=tier.key)
            seen.add(tier.key)
            if tier.min_points < 0:
                raise TierCatalogError(f"Tier '{tier.key}' has negative min_points", tier=tier.key)
            if tier.earning_multiplier < 0:
                raise TierCatalogError(
                    f"Tier '{tier.key}' has a negative earning multiplier", tier=tier.key
                )
            if tier.min_spend < 0:
                raise TierCatalogError(f"Tier '{tier.key}' has negative min_spend", tier=tier.key)
            if tier.max_points is not None and tier.max_points <= tier.min_points:
                raise TierCatalogError(
                    f"Tier '{tier.key}' max_points must exceed min_points", tier=tier.key
                )

        first = self.tiers[0]
        if first.min_points != 0 or first.min_spend != 0:
            raise TierCatalogError(
                f"Lowest tier '{first.key}' must start at zero points and zero spend",
                tier=first.key,
            )

        for lower, upper in zip(self.tiers, self.tiers[1:]):
            if lower.max_points is None:
                raise TierCatalogError(
                    f"Tier '{lower.key}' is unbounded but is not the top tier", tier=lower.key
                )
            if lower.max_points != upper.min_points:
                raise TierCatalogError(
                    f"Tiers '{lower.key}' and '{upper.key}' leave a gap or overlap",
                    tier=upper.key,
                )

        top = self.tiers[-1]
        if top.max_points is not None:
            raise TierCatalogError(f"Top tier '{top.key}' must not have a maximum", tier=top.key)

    def __iter__(self) -> Iterator[TierDefinition]:
        return iter(self.tiers)

    def __len__(self) -> int:
        return len(self.tiers)

    @property
    def lowest(self) -> TierDefinition:
        return self.tiers[0]

    def get(self, key: str | None) -> TierDefinition | None:
        if key is None:
            return None
        for tier in self.tiers:
            if tier.key == key:
                return tier
        return None

    def rank(self, key: str | None) -> int:
        """Position of ``key`` in catalog order; ``None`` ranks as the lowest tier."""

        if key is None:
            return 0
        for position, tier in enumerate(self.tiers):
            if tier.key == key:
                return position
        raise TierCatalogError(f"Unknown tier '{key}'", tier=key)

    def resolve(self, points: int, spend: Decimal | int | float = Decimal("0")) -> TierDefinition:
        """Highest tier whose point and spend thresholds are both met."""

        spend_value = _as_decimal(spend)
        selected = self.tiers[0]
        for tier in self.tiers:
            if tier.min_points <= points and tier.min_spend <= spend_value:
                selected = tier
        return selected

    def meets(self, current: str | None, required: str | None) -> bool:
        """Whether ``current`` reaches ``required``.

        A required tier missing from the catalog is never met. A current tier
        missing from the catalog ranks as the lowest tier.
        """

        if required is None:
            return True
        if self.get(required) is None:
            return False
        current_rank = self.rank(current) if self.get(current) is not None else 0
        return current_rank >= self.rank(required)


def compute_earned_points(
    sale_total: Decimal | int | float | str,
    *,
    earning_multiplier: Decimal | int | float,
    points_per_currency: Decimal | int | float,
) -> int:
    """Points for a finalized sale total, floored to a whole point."""

    total = _as_decimal(sale_total)
    if total < 0:
        raise LedgerValidationError("Sale total must not be negative", sale_total=str(total))
    raw = total * _as_decimal(earning_multiplier) * _as_decimal(points_per_currency)
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


__all__ = ["TierCatalog", "TierDefinition", "compute_earned_points"]
