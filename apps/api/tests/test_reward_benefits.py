from decimal import Decimal
from types import SimpleNamespace

import pytest

from tillpoint_api.domain.loyalty.errors import RewardConfigurationError
from tillpoint_api.domain.loyalty.rewards import (
    FixedDiscount,
    FreeDelivery,
    FreeProduct,
    PercentDiscount,
    StoreCredit,
    benefit_payload,
    describe_benefit,
    reward_benefit,
)
from tillpoint_api.models.loyalty import RewardKind


def _reward(reward_type, **overrides) -> SimpleNamespace:
    values = {
        "reward_type": reward_type,
        "discount_percent": None,
        "discount_amount": None,
        "product_id": None,
        "monetary_value": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_each_reward_kind_builds_its_benefit() -> None:
    assert reward_benefit(_reward(RewardKind.DISCOUNT_PERCENT, discount_percent=Decimal("15"))) == PercentDiscount(
        Decimal("15")
    )
    assert reward_benefit(_reward("discount_fixed", discount_amount="5.00")) == FixedDiscount(Decimal("5.00"))
    assert reward_benefit(_reward(RewardKind.FREE_PRODUCT, product_id="sku-1")) == FreeProduct("sku-1")
    assert reward_benefit(_reward(RewardKind.FREE_DELIVERY)) == FreeDelivery()
    assert reward_benefit(_reward(RewardKind.STORE_CREDIT, monetary_value=Decimal("20"))) == StoreCredit(
        Decimal("20")
    )


@pytest.mark.parametrize(
    "record",
    [
        _reward(RewardKind.DISCOUNT_PERCENT),
        _reward(RewardKind.DISCOUNT_PERCENT, discount_percent=Decimal("120")),
        _reward(RewardKind.DISCOUNT_FIXED, discount_amount=Decimal("0")),
        _reward(RewardKind.FREE_PRODUCT),
        _reward(RewardKind.FREE_DELIVERY, discount_amount=Decimal("3")),
        _reward(RewardKind.STORE_CREDIT, monetary_value=Decimal("0")),
        _reward("mystery_box"),
    ],
)
def test_inconsistent_reward_parameters_are_rejected(record) -> None:
    with pytest.raises(RewardConfigurationError):
        reward_benefit(record)


def test_benefit_payload_and_description() -> None:
    benefit = PercentDiscount(Decimal("10.00"))

    assert benefit_payload(benefit) == {"kind": "discount_percent", "percent": 10.0}
    assert describe_benefit(benefit) == "10% off"
    assert describe_benefit(StoreCredit(Decimal("7.5"))) == "7.50 store credit"
    assert benefit_payload(FreeProduct("sku-9")) == {"kind": "free_product", "productId": "sku-9"}
