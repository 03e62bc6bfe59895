from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from holyloy_api.models import (
    AccountType,
    MerchantReferralCommission,
    MerchantReferralStatus,
    Referral,
    TransactionSource,
    WalletTransaction,
)
from holyloy_api.services.rewards import AccountService, CommissionGuard, LedgerService, RewardEngine
from holyloy_api.services.rewards.common import utcnow


async def _merchant_pair(session_factory, prefix: str):
    async with session_factory() as session:
        service = AccountService(session)
        referrer = await service.register_merchant(business_name="Uptown Deli", email=f"{prefix}-referrer@example.com")
        referred = await service.register_merchant(
            business_name="Downtown Deli",
            email=f"{prefix}-referred@example.com",
            referral_code=referrer.referral_code,
        )
        customer = await service.register_customer(email=f"{prefix}-customer@example.com")
        await session.commit()
    return referrer, referred, customer


async def _fund(engine: RewardEngine, merchant_id, points: int = 10_000) -> None:
    await engine.admin_generate_points(
        admin_id=uuid4(),
        recipient_id=merchant_id,
        recipient_type=AccountType.MERCHANT,
        points=points,
        description="Merchant float",
    )


async def _income(session_factory, merchant_id) -> Decimal:
    async with session_factory() as session:
        wallet = await LedgerService(session).get_wallet(AccountType.MERCHANT, merchant_id)
        return Decimal(wallet.income_balance)


@pytest.mark.asyncio
async def test_transfer_pays_referring_merchant_two_percent(session_factory) -> None:
    referrer, referred, customer = await _merchant_pair(session_factory, "commission")

    async with session_factory() as session:
        engine = RewardEngine(session)
        await _fund(engine, referred.id)
        outcome = await engine.transfer_merchant_points(referred.id, customer.id, 2_500)

    assert outcome.cashback_amount == Decimal("250.00")
    assert len(outcome.merchant_referral_commission_ids) == 1
    assert await _income(session_factory, referrer.id) == Decimal("50")
    assert await _income(session_factory, referred.id) == Decimal("250")

    async with session_factory() as session:
        commission = await session.get(MerchantReferralCommission, outcome.merchant_referral_commission_ids[0])
        assert commission.status is MerchantReferralStatus.APPROVED
        assert commission.commission_amount == Decimal("50.00")
        assert commission.source_points == 2_500
        assert commission.risk_level == "low"

        entry = (
            await session.execute(
                select(WalletTransaction).where(
                    WalletTransaction.source == TransactionSource.MERCHANT_REFERRAL_COMMISSION
                )
            )
        ).scalar_one()
        assert entry.source_transaction_id == commission.source_transaction_id
        assert entry.reference_id == str(commission.id)

        referral = (
            await session.execute(select(Referral).where(Referral.referee_merchant_id == referred.id))
        ).scalar_one()
        assert referral.lifetime_commission_earned == Decimal("50.00")

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending(steps=["merchant_referral"])
    assert summary["queued"] == 0


@pytest.mark.asyncio
async def test_unreferred_merchant_transfer_records_no_commission(session_factory, register_accounts) -> None:
    merchant, (customer,) = await register_accounts(
        "plain-transfer@example.com",
        merchant_email="plain-transfer-merchant@example.com",
    )

    async with session_factory() as session:
        engine = RewardEngine(session)
        await _fund(engine, merchant.id)
        outcome = await engine.transfer_merchant_points(merchant.id, customer.id, 1_000)

    assert outcome.merchant_referral_commission_ids == []
    async with session_factory() as session:
        rows = (await session.execute(select(MerchantReferralCommission.id))).all()
        assert rows == []


@pytest.mark.asyncio
async def test_redrive_backfills_missing_merchant_commission(session_factory) -> None:
    referrer, referred, customer = await _merchant_pair(session_factory, "backfill")

    async with session_factory() as session:
        engine = RewardEngine(session)

        async def _skip(*args, **kwargs):
            return None

        engine._merchant_referral.evaluate = _skip
        await _fund(engine, referred.id)
        await engine.transfer_merchant_points(referred.id, customer.id, 2_500)

    assert await _income(session_factory, referrer.id) == Decimal("0")

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending(steps=["merchant_referral"])

    assert summary["queued"] == 1
    assert summary["merchant_referral_commissions"] == 1
    assert await _income(session_factory, referrer.id) == Decimal("50")

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending(steps=["merchant_referral"])
    assert summary["queued"] == 0


@pytest.mark.asyncio
async def test_commission_burst_is_blocked_and_not_paid(session_factory, reset_rewards_store) -> None:
    referrer, referred, customer = await _merchant_pair(session_factory, "velocity")

    async with session_factory() as session:
        recent = utcnow() - timedelta(minutes=1)
        for _ in range(5):
            session.add(
                MerchantReferralCommission(
                    referrer_merchant_id=referrer.id,
                    referred_merchant_id=referred.id,
                    source_transaction_id=uuid4(),
                    source_points=500,
                    commission_rate=Decimal("0.02"),
                    commission_amount=Decimal("10.00"),
                    status=MerchantReferralStatus.APPROVED,
                    created_at=recent,
                )
            )
        await session.commit()

    async with session_factory() as session:
        engine = RewardEngine(session)
        await _fund(engine, referred.id)
        outcome = await engine.transfer_merchant_points(referred.id, customer.id, 1_234)

    assert len(outcome.merchant_referral_commission_ids) == 1
    assert await _income(session_factory, referrer.id) == Decimal("0")

    async with session_factory() as session:
        commission = await session.get(MerchantReferralCommission, outcome.merchant_referral_commission_ids[0])
        assert commission.status is MerchantReferralStatus.BLOCKED
        assert commission.commission_amount == Decimal("24.68")
        assert commission.risk_score == 55
        assert any("velocity" in reason for reason in commission.reasons)

    tasks = reset_rewards_store.snapshot().tasks
    assert tasks["blocked"]["merchant_referral"] == 1


@pytest.mark.asyncio
async def test_guard_flags_large_commissions(session_factory) -> None:
    async with session_factory() as session:
        guard = CommissionGuard(session)
        flagged = await guard.assess(
            referrer_merchant_id=uuid4(),
            referred_merchant_id=uuid4(),
            amount=Decimal("150.00"),
            now=utcnow(),
        )
        oversized = await guard.assess(
            referrer_merchant_id=uuid4(),
            referred_merchant_id=uuid4(),
            amount=Decimal("1500.00"),
            now=utcnow(),
        )

    assert flagged.score == 30
    assert flagged.status is MerchantReferralStatus.FLAGGED
    assert not flagged.blocked
    assert oversized.status is MerchantReferralStatus.BLOCKED
    assert oversized.blocked


@pytest.mark.asyncio
async def test_merchant_referral_codes_must_belong_to_a_merchant(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("customer-code@example.com")

    async with session_factory() as session:
        service = AccountService(session)
        with pytest.raises(ValueError, match="must belong to a merchant"):
            await service.register_merchant(
                business_name="Sideline Cafe",
                email="sideline@example.com",
                referral_code=customer.referral_code,
            )
        with pytest.raises(ValueError, match="Unknown referral code"):
            await service.register_merchant(
                business_name="Sideline Cafe",
                email="sideline@example.com",
                referral_code="NOPE1234",
            )


@pytest.mark.asyncio
async def test_merchant_cashback_and_affiliate_feeds(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        referrer = await client.post(
            "/api/v1/rewards/merchants",
            json={"businessName": "Uptown Deli", "email": "feed-referrer@example.com"},
        )
        assert referrer.status_code == 201
        referrer_payload = referrer.json()

        referred = await client.post(
            "/api/v1/rewards/merchants",
            json={
                "businessName": "Downtown Deli",
                "email": "feed-referred@example.com",
                "referralCode": referrer_payload["referralCode"],
            },
        )
        assert referred.status_code == 201
        referred_id = referred.json()["id"]

        customer = await client.post("/api/v1/rewards/customers", json={"email": "feed-customer@example.com"})
        customer_id = customer.json()["id"]

        grant = await client.post(
            "/api/v1/rewards/admin/points",
            json={
                "adminId": str(uuid4()),
                "recipientId": referred_id,
                "recipientType": "merchant",
                "points": 5_000,
                "description": "Opening float",
            },
        )
        assert grant.status_code == 201

        for points in (1_000, 2_500):
            transfer = await client.post(
                f"/api/v1/rewards/merchants/{referred_id}/transfers",
                json={"customerId": customer_id, "points": points},
            )
            assert transfer.status_code == 200
            assert transfer.json()["merchantReferralCommissions"] == 1

        cashback = await client.get(f"/api/v1/rewards/merchants/{referred_id}/cashback")
        assert cashback.status_code == 200
        payload = cashback.json()
        assert payload["totalTransfers"] == 2
        assert Decimal(payload["instantCashback"]) == Decimal("350")
        assert Decimal(payload["referralCommission"]) == Decimal("0")
        assert Decimal(payload["totalCashback"]) == Decimal("350")
        assert Decimal(payload["thisMonthCashback"]) == Decimal("350")
        assert sorted(item["pointsTransferred"] for item in payload["transactions"]) == [1_000, 2_500]
        assert all(item["transferTransactionId"] for item in payload["transactions"])

        limited = await client.get(f"/api/v1/rewards/merchants/{referred_id}/cashback", params={"limit": 1})
        assert len(limited.json()["transactions"]) == 1

        referrer_cashback = await client.get(f"/api/v1/rewards/merchants/{referrer_payload['id']}/cashback")
        assert Decimal(referrer_cashback.json()["referralCommission"]) == Decimal("70")
        assert referrer_cashback.json()["totalTransfers"] == 0

        affiliate = await client.get(f"/api/v1/rewards/merchants/{referrer_payload['id']}/affiliate")
        assert affiliate.status_code == 200
        summary = affiliate.json()
        assert summary["referredCustomerCount"] == 0
        assert Decimal(summary["merchantCommissionTotal"]) == Decimal("70")
        assert summary["blockedCommissionCount"] == 0
        assert [item["merchantId"] for item in summary["referredMerchants"]] == [referred_id]
        assert Decimal(summary["referredMerchants"][0]["lifetimeCommission"]) == Decimal("70")
        assert len(summary["recentCommissions"]) == 2
        assert {item["status"] for item in summary["recentCommissions"]} == {"approved"}

        missing = await client.get(f"/api/v1/rewards/merchants/{uuid4()}/affiliate")
        assert missing.status_code == 404
        missing_cashback = await client.get(f"/api/v1/rewards/merchants/{uuid4()}/cashback")
        assert missing_cashback.status_code == 404
