from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select, update

from tillpoint_api.core.settings import settings
from tillpoint_api.models.loyalty import LoyaltyAccount, LoyaltyTierChange, TierChangeTrigger
from tillpoint_api.observability.loyalty import get_loyalty_store


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _enroll(client: AsyncClient, customer_id: str) -> str:
    response = await client.post("/api/v1/loyalty/accounts", json={"customerId": customer_id})
    assert response.status_code == 201
    return response.json()["id"]


@pytest.mark.asyncio
async def test_sale_and_redemption_flow(app_with_db, loyalty_catalog) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        account_id = await _enroll(client, "pos-customer")

        sale = await client.post(
            "/api/v1/loyalty/sales",
            json={"accountId": account_id, "saleId": "receipt-100", "saleTotal": "10000.00"},
        )
        assert sale.status_code == 201
        body = sale.json()
        assert body["entry"]["points"] == 1000
        assert body["entry"]["kind"] == "earn"
        assert body["evaluation"] == {
            "accountId": account_id,
            "previousTier": "bronze",
            "tier": "silver",
            "changed": True,
        }
        assert body["replayed"] is False

        replay = await client.post(
            "/api/v1/loyalty/sales",
            json={"accountId": account_id, "saleId": "receipt-100", "saleTotal": "10000.00"},
        )
        assert replay.status_code == 200
        assert replay.json()["replayed"] is True
        assert replay.json()["entry"]["id"] == body["entry"]["id"]

        headers = {"Idempotency-Key": "basket-7"}
        payload = {"rewardId": str(loyalty_catalog["voucher_id"])}
        redemption = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/redemptions", json=payload, headers=headers
        )
        assert redemption.status_code == 201
        issued = redemption.json()
        assert issued["status"] == "issued"
        assert issued["pointsSpent"] == 500
        assert issued["benefit"]["kind"] == "discount_percent"

        again = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/redemptions", json=payload, headers=headers
        )
        assert again.status_code == 200
        assert again.json()["id"] == issued["id"]

        balance = await client.get(f"/api/v1/loyalty/accounts/{account_id}/balance")
        assert balance.status_code == 200
        assert balance.json() == {
            "accountId": account_id,
            "currentPoints": 500,
            "lifetimeEarned": 1000,
            "lifetimeRedeemed": 500,
            "tier": "silver",
            "tierName": "Silver",
        }

        used = await client.post(f"/api/v1/loyalty/redemptions/{issued['code']}/use")
        assert used.status_code == 200
        assert used.json()["status"] == "used"
        assert used.json()["usedAt"] is not None

        reused = await client.post(f"/api/v1/loyalty/redemptions/{issued['code']}/use")
        assert reused.status_code == 409
        assert reused.json()["detail"]["code"] == "redemption_state_invalid"

        listed = await client.get(
            f"/api/v1/loyalty/accounts/{account_id}/redemptions", params={"statuses": ["used"]}
        )
        assert [item["id"] for item in listed.json()] == [issued["id"]]

        reconciliation = await client.get(f"/api/v1/loyalty/accounts/{account_id}/reconciliation")
        assert reconciliation.status_code == 200
        assert reconciliation.json()["consistent"] is True


@pytest.mark.asyncio
async def test_errors_carry_stable_codes(app_with_db, loyalty_catalog) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        account_id = await _enroll(client, "error-customer")

        missing = await client.get(f"/api/v1/loyalty/accounts/{uuid4()}/balance")
        assert missing.status_code == 404
        assert missing.json()["detail"]["code"] == "unknown_account"

        broke = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/redemptions",
            json={"rewardId": str(loyalty_catalog["voucher_id"])},
        )
        assert broke.status_code == 422
        assert broke.json()["detail"]["code"] == "insufficient_points"
        assert broke.json()["detail"]["message"]

        gated = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/redemptions",
            json={"rewardId": str(loyalty_catalog["lounge_id"])},
        )
        assert gated.status_code == 403
        assert gated.json()["detail"]["code"] == "tier_not_eligible"

        unknown_reward = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/redemptions",
            json={"rewardId": str(uuid4())},
        )
        assert unknown_reward.status_code == 404
        assert unknown_reward.json()["detail"]["code"] == "reward_not_found"

        negative = await client.post(
            "/api/v1/loyalty/sales",
            json={"accountId": account_id, "saleId": "receipt-1", "saleTotal": "-5"},
        )
        assert negative.status_code == 400
        assert negative.json()["detail"]["code"] == "ledger_validation_failed"

        bad_filter = await client.get(
            f"/api/v1/loyalty/accounts/{account_id}/ledger", params={"kinds": ["bonus"]}
        )
        assert bad_filter.status_code == 400

        bad_cursor = await client.get(
            f"/api/v1/loyalty/accounts/{account_id}/ledger", params={"cursor": "not-a-cursor"}
        )
        assert bad_cursor.status_code == 400


@pytest.mark.asyncio
async def test_ledger_pagination_walks_history(app_with_db, loyalty_catalog) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        account_id = await _enroll(client, "ledger-customer")
        for index in range(3):
            response = await client.post(
                "/api/v1/loyalty/sales",
                json={"accountId": account_id, "saleId": f"receipt-{index}", "saleTotal": "100"},
            )
            assert response.status_code == 201

        first = await client.get(f"/api/v1/loyalty/accounts/{account_id}/ledger", params={"limit": 2})
        page = first.json()
        assert [entry["sequence"] for entry in page["entries"]] == [3, 2]
        assert page["nextCursor"]

        second = await client.get(
            f"/api/v1/loyalty/accounts/{account_id}/ledger",
            params={"limit": 2, "cursor": page["nextCursor"]},
        )
        tail = second.json()
        assert [entry["sequence"] for entry in tail["entries"]] == [1]
        assert tail["nextCursor"] is None
        assert [entry["runningBalance"] for entry in page["entries"] + tail["entries"]] == [30, 20, 10]


@pytest.mark.asyncio
async def test_operator_routes_require_api_key(app_with_db, loyalty_catalog, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "loyalty_api_key", "till-secret")

    async with _client(app) as client:
        account_id = await _enroll(client, "operator-customer")
        adjustment = {"points": 250, "reason": "Goodwill credit"}

        denied = await client.post(f"/api/v1/loyalty/accounts/{account_id}/adjustments", json=adjustment)
        assert denied.status_code == 401

        wrong = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/adjustments",
            json=adjustment,
            headers={"X-API-Key": "nope"},
        )
        assert wrong.status_code == 401

        operator = {"X-API-Key": "till-secret"}
        granted = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/adjustments", json=adjustment, headers=operator
        )
        assert granted.status_code == 201
        assert granted.json()["kind"] == "adjust"
        assert granted.json()["runningBalance"] == 250

        overdraw = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/adjustments",
            json={"points": -1000, "reason": "Clawback"},
            headers=operator,
        )
        assert overdraw.status_code == 422
        assert overdraw.json()["detail"]["code"] == "insufficient_balance"

        redemption = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/redemptions",
            json={"rewardId": str(loyalty_catalog["coffee_id"])},
        )
        redemption_id = redemption.json()["id"]

        assert (await client.post(f"/api/v1/loyalty/redemptions/{redemption_id}/cancel")).status_code == 401
        cancelled = await client.post(
            f"/api/v1/loyalty/redemptions/{redemption_id}/cancel",
            json={"reason": "Customer changed their mind"},
            headers=operator,
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["cancellationReason"] == "Customer changed their mind"

        balance = await client.get(f"/api/v1/loyalty/accounts/{account_id}/balance")
        assert balance.json()["currentPoints"] == 250

        assert (await client.post("/api/v1/loyalty/tiers/evaluate")).status_code == 401
        batch = await client.post("/api/v1/loyalty/tiers/evaluate", headers=operator)
        assert batch.status_code == 200
        assert batch.json()["failed"] == 0


@pytest.mark.asyncio
async def test_catalog_listings(app_with_db, loyalty_catalog) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        tiers = await client.get("/api/v1/loyalty/tiers")
        rewards = await client.get("/api/v1/loyalty/rewards")

    assert [tier["key"] for tier in tiers.json()] == ["bronze", "silver", "gold"]
    assert tiers.json()[2]["maxPoints"] is None
    by_slug = {reward["slug"]: reward for reward in rewards.json()}
    assert set(by_slug) == {"ten-percent-off", "free-coffee", "gold-lounge"}
    assert by_slug["gold-lounge"]["minTier"] == "gold"
    assert by_slug["free-coffee"]["stockQuantity"] == 1


@pytest.mark.asyncio
async def test_observability_endpoints_report_loyalty_activity(app_with_db, loyalty_catalog) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        account_id = await _enroll(client, "metrics-customer")
        await client.post(
            "/api/v1/loyalty/sales",
            json={"accountId": account_id, "saleId": "receipt-1", "saleTotal": "12000"},
        )

        snapshot = await client.get("/api/v1/observability/loyalty")
        prometheus = await client.get("/api/v1/observability/prometheus")

    assert snapshot.status_code == 200
    data = snapshot.json()
    assert data["ledger"]["entries:earn"] == 1
    assert data["ledger"]["points:earn"] == 1200
    assert data["tiers"]["by_trigger"] == {"earn": 1}
    assert data["scheduler"]["totals"]["runs"] == 0

    assert prometheus.status_code == 200
    body = prometheus.text
    assert 'tillpoint_loyalty_ledger_entries_total{kind="earn"} 1' in body
    assert 'tillpoint_loyalty_tier_changes_total{trigger="earn"} 1' in body
    assert "tillpoint_loyalty_conflicts_total 0" in body


@pytest.mark.asyncio
async def test_health_and_readiness(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        health = await client.get("/healthz")
        ready = await client.get("/api/v1/readyz")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["environment"] == settings.environment

    assert ready.status_code == 200
    payload = ready.json()
    assert payload["status"] == "ready"
    assert payload["components"]["database"]["status"] == "ready"
    assert payload["components"]["loyalty_scheduler"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_operator_tier_evaluation_is_recorded_as_manual(app_with_db, loyalty_catalog, monkeypatch) -> None:
    app, session_factory = app_with_db
    monkeypatch.setattr(settings, "loyalty_api_key", "till-secret")

    async with _client(app) as client:
        account_id = await _enroll(client, "manual-review")
        await client.post(
            "/api/v1/loyalty/sales",
            json={"accountId": account_id, "saleId": "receipt-m1", "saleTotal": "10000"},
        )

    async with session_factory() as session:
        await session.execute(
            update(LoyaltyAccount).where(LoyaltyAccount.id == UUID(account_id)).values(current_tier_key="bronze")
        )
        await session.commit()

    async with _client(app) as client:
        batch = await client.post("/api/v1/loyalty/tiers/evaluate", headers={"X-API-Key": "till-secret"})

    assert batch.status_code == 200
    assert batch.json()["changed"] == 1
    assert batch.json()["failed"] == 0

    async with session_factory() as session:
        triggers = (
            await session.execute(
                select(LoyaltyTierChange.trigger)
                .where(LoyaltyTierChange.account_id == UUID(account_id))
                .order_by(LoyaltyTierChange.created_at.asc())
            )
        ).scalars().all()

    assert TierChangeTrigger.MANUAL in triggers
    assert TierChangeTrigger.SCHEDULED not in triggers
    assert get_loyalty_store().snapshot().tiers["by_trigger"] == {"earn": 1, "manual": 1}


@pytest.mark.asyncio
async def test_reused_adjustment_reference_is_rejected(app_with_db, loyalty_catalog, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "loyalty_api_key", "till-secret")
    operator = {"X-API-Key": "till-secret"}
    adjustment = {"points": 40, "reason": "Service recovery", "reference": "case-88"}

    async with _client(app) as client:
        account_id = await _enroll(client, "case-customer")
        first = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/adjustments", json=adjustment, headers=operator
        )
        second = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/adjustments", json=adjustment, headers=operator
        )
        balance = await client.get(f"/api/v1/loyalty/accounts/{account_id}/balance")

    assert first.status_code == 201
    assert second.status_code == 400
    assert second.json()["detail"]["code"] == "ledger_validation_failed"
    assert balance.json()["currentPoints"] == 40
