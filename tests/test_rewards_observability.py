from __future__ import annotations

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from holyloy_api.app import create_app
from holyloy_api.core.settings import settings
from holyloy_api.observability.rewards import RewardsObservabilityStore, get_rewards_store


def test_store_snapshot_aggregates_events() -> None:
    store = RewardsObservabilityStore()
    store.record_cascade("purchase", global_numbers=3)
    store.record_cascade("purchase", global_numbers=1)
    store.record_task("step_up", "processed")
    store.record_task("step_up", "conflict")
    store.record_payout("affiliate", Decimal("50.05"))
    store.record_payout("affiliate", Decimal("0.10"))
    store.record_qr_event("redeemed")
    store.record_redrive_run({"queued": 4, "processed": 3})

    snapshot = store.snapshot().as_dict()
    assert snapshot["cascades"] == {"purchase": 2}
    assert snapshot["global_numbers"] == 4
    assert snapshot["tasks"] == {"processed": {"step_up": 1}, "conflict": {"step_up": 1}}
    assert snapshot["payouts"] == {"affiliate": {"count": 2, "total": "50.15"}}
    assert snapshot["qr_transfers"] == {"redeemed": 1}
    assert snapshot["redrive"] == {"runs": 1, "queued": 4, "processed": 3}

    store.reset()
    assert store.snapshot().as_dict()["cascades"] == {}


@pytest.mark.asyncio
async def test_rewards_snapshot_requires_key() -> None:
    app = create_app()

    previous_key = settings.observability_api_key
    settings.observability_api_key = "observability-key"

    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            denied = await client.get("/api/v1/observability/rewards")
            assert denied.status_code == 401

            prometheus = await client.get("/api/v1/observability/prometheus")
            assert prometheus.status_code == 401

            allowed = await client.get(
                "/api/v1/observability/rewards",
                headers={"X-API-Key": "observability-key"},
            )
            assert allowed.status_code == 200
    finally:
        settings.observability_api_key = previous_key


@pytest.mark.asyncio
async def test_cascade_metrics_reach_prometheus(app_with_db, register_accounts) -> None:
    app, _ = app_with_db
    _, (referrer, customer) = await register_accounts(
        "metrics-referrer@example.com",
        "metrics-customer@example.com",
        referrers={"metrics-customer@example.com": "metrics-referrer@example.com"},
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        earn = await client.post(f"/api/v1/rewards/customers/{customer.id}/earn", json={"points": 7_500})
        assert earn.status_code == 200

        snapshot = (await client.get("/api/v1/observability/rewards")).json()
        metrics = await client.get("/api/v1/observability/prometheus")

    assert snapshot["cascades"] == {"purchase": 1}
    assert snapshot["global_numbers"] == 5
    assert snapshot["payouts"]["affiliate"]["total"] == "375.00"
    assert snapshot["payouts"]["step_up"]["count"] == 1
    assert snapshot["payouts"]["ripple"]["total"] == "50"

    assert metrics.status_code == 200
    body = metrics.text
    assert 'holyloy_reward_cascades_total{source="purchase"} 1' in body
    assert "holyloy_global_numbers_allocated_total 5" in body
    assert 'holyloy_reward_payouts_total{kind="ripple"} 1' in body
    assert 'holyloy_cascade_tasks_total{kind="step_up",outcome="processed"} 5' in body
    assert get_rewards_store().snapshot().cascades == {"purchase": 1}
