from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from holyloy_api.models import (
    AccountType,
    BalanceType,
    GlobalSerialNumber,
    InfinityCycle,
    QRTransferToken,
    RewardWallet,
    ShoppingVoucher,
    StepUpReward,
    TransactionSource,
)
from holyloy_api.services.rewards import (
    AllocationConflict,
    CustomerNotFound,
    InsufficientBalance,
    LedgerService,
    RewardEngine,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
)
from holyloy_api.services.rewards.allocator import GlobalNumberAllocator
from holyloy_api.services.rewards.common import utcnow
from holyloy_api.services.rewards.engine import CascadeTask, CascadeTaskKind, _WorkQueue
from holyloy_api.services.rewards.infinity import CumulativeThresholdPolicy
from holyloy_api.services.rewards.qr_transfer import QRTransferBroker


async def _wallet(session_factory, owner_type: AccountType, owner_id) -> RewardWallet:
    async with session_factory() as session:
        return await LedgerService(session).get_wallet(owner_type, owner_id)


def test_work_queue_orders_by_kind_and_collapses_duplicates() -> None:
    queue = _WorkQueue()
    voucher = CascadeTask(CascadeTaskKind.VOUCHER)
    step_up = CascadeTask(CascadeTaskKind.STEP_UP, global_number=5)
    affiliate = CascadeTask(CascadeTaskKind.AFFILIATE, points=10)

    queue.push([voucher, step_up, step_up, affiliate])

    popped = []
    while queue:
        popped.append(queue.pop())
    assert popped == [affiliate, step_up, voucher]


@pytest.mark.asyncio
async def test_earn_points_runs_full_cascade(session_factory, register_accounts) -> None:
    _, (referrer, customer) = await register_accounts(
        "cascade-referrer@example.com",
        "cascade-customer@example.com",
        referrers={"cascade-customer@example.com": "cascade-referrer@example.com"},
    )

    async with session_factory() as session:
        outcome = await RewardEngine(session).earn_points(customer.id, 7_500, description="Order 42")

    assert outcome.points == 7_500
    assert outcome.new_balance == 7_500
    assert outcome.global_numbers_awarded == [1, 2, 3, 4, 5]
    assert len(outcome.affiliate_commission_ids) == 1
    assert len(outcome.step_up_reward_ids) == 1
    assert len(outcome.ripple_reward_ids) == 1
    assert outcome.infinity_cycle_ids == []
    assert outcome.voucher_ids == []

    customer_wallet = await _wallet(session_factory, AccountType.CUSTOMER, customer.id)
    assert customer_wallet.accumulated_points == 0
    assert Decimal(customer_wallet.income_balance) == Decimal("500")

    referrer_wallet = await _wallet(session_factory, AccountType.CUSTOMER, referrer.id)
    # 5% affiliate on 7,500 plus the 50 point ripple on the 500 StepUp.
    assert Decimal(referrer_wallet.income_balance) == Decimal("425")
    assert referrer_wallet.reward_point_balance == 0


@pytest.mark.asyncio
async def test_income_credits_do_not_accumulate(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("income-only@example.com")

    async with session_factory() as session:
        await RewardEngine(session).earn_points(customer.id, 7_500)

    wallet = await _wallet(session_factory, AccountType.CUSTOMER, customer.id)
    assert Decimal(wallet.income_balance) == Decimal("500")
    assert wallet.accumulated_points == 0
    assert wallet.total_earned == 7_500


@pytest.mark.asyncio
async def test_earn_points_rejects_invalid_input(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("invalid-earn@example.com")

    async with session_factory() as session:
        engine = RewardEngine(session)
        with pytest.raises(ValueError):
            await engine.earn_points(customer.id, 0)
        with pytest.raises(ValueError):
            await engine.earn_points(customer.id, 10, source=TransactionSource.STEP_UP_REWARD)
        with pytest.raises(CustomerNotFound):
            await engine.earn_points(uuid4(), 10)


@pytest.mark.asyncio
async def test_infinity_cycle_feeds_new_numbers_back_into_step_up(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("infinity-cascade@example.com")

    async with session_factory() as session:
        number = await GlobalNumberAllocator(session).allocate(customer.id)
        session.add(
            StepUpReward(
                recipient_global_number=number.global_number,
                recipient_customer_id=customer.id,
                trigger_global_number=number.global_number,
                milestone_factor=500,
                reward_points=30_000,
                is_awarded=True,
            )
        )
        await session.commit()

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending(steps=["infinity"])

    assert summary["infinity_cycles"] == 1
    # Minted number 5 triggers the x5 milestone for number 1.
    assert summary["step_up_rewards"] == 1

    async with session_factory() as session:
        cycles = (await session.execute(select(InfinityCycle))).scalars().all()
        assert [cycle.cycle_number for cycle in cycles] == [1]
        unevaluated = (
            await session.execute(
                select(GlobalSerialNumber.global_number).where(GlobalSerialNumber.step_up_evaluated_at.is_(None))
            )
        ).scalars().all()
        assert list(unevaluated) == [1]

    wallet = await _wallet(session_factory, AccountType.CUSTOMER, customer.id)
    assert Decimal(wallet.income_balance) == Decimal("780500")
    assert wallet.accumulated_points == 0


@pytest.mark.asyncio
async def test_cumulative_policy_chains_cycles_in_one_cascade(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("infinity-chain@example.com")

    async with session_factory() as session:
        number = await GlobalNumberAllocator(session).allocate(customer.id)
        for factor in (500, 2_500):
            session.add(
                StepUpReward(
                    recipient_global_number=number.global_number,
                    recipient_customer_id=customer.id,
                    trigger_global_number=number.global_number,
                    milestone_factor=factor,
                    reward_points=30_000,
                    is_awarded=True,
                )
            )
        await session.commit()

    async with session_factory() as session:
        engine = RewardEngine(session, infinity_policy=CumulativeThresholdPolicy())
        summary = await engine.redrive_pending(steps=["infinity"])

    assert summary["infinity_cycles"] == 2

    async with session_factory() as session:
        total = (await session.execute(select(GlobalSerialNumber.id))).all()
        assert len(total) == 1 + 4 + 16


@pytest.mark.asyncio
async def test_merchant_transfer_pays_cashback(session_factory, register_accounts) -> None:
    merchant, (customer,) = await register_accounts(
        "transfer@example.com",
        merchant_email="transfer-merchant@example.com",
    )

    async with session_factory() as session:
        engine = RewardEngine(session)
        await engine.admin_generate_points(
            admin_id=uuid4(),
            recipient_id=merchant.id,
            recipient_type=AccountType.MERCHANT,
            points=10_000,
            description="Merchant float",
        )
        outcome = await engine.transfer_merchant_points(merchant.id, customer.id, 2_500)

    assert outcome.cashback_amount == Decimal("250.00")
    assert outcome.global_numbers_awarded == [1]
    assert outcome.new_balance == 2_500

    merchant_wallet = await _wallet(session_factory, AccountType.MERCHANT, merchant.id)
    assert merchant_wallet.reward_point_balance == 7_500
    assert merchant_wallet.total_transferred == 2_500
    assert Decimal(merchant_wallet.income_balance) == Decimal("250")

    customer_wallet = await _wallet(session_factory, AccountType.CUSTOMER, customer.id)
    assert customer_wallet.accumulated_points == 1_000


@pytest.mark.asyncio
async def test_merchant_transfer_requires_balance(session_factory, register_accounts) -> None:
    merchant, (customer,) = await register_accounts(
        "transfer-broke@example.com",
        merchant_email="transfer-broke-merchant@example.com",
    )

    async with session_factory() as session:
        with pytest.raises(InsufficientBalance):
            await RewardEngine(session).transfer_merchant_points(merchant.id, customer.id, 100)

    customer_wallet = await _wallet(session_factory, AccountType.CUSTOMER, customer.id)
    assert customer_wallet.reward_point_balance == 0


@pytest.mark.asyncio
async def test_admin_grant_requires_description(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("admin-grant@example.com")

    async with session_factory() as session:
        engine = RewardEngine(session)
        with pytest.raises(ValueError):
            await engine.admin_generate_points(
                admin_id=customer.id, recipient_id=customer.id, points=10, description="   "
            )
        outcome = await engine.admin_generate_points(
            admin_id=customer.id,
            recipient_id=customer.id,
            points=1_500,
            description="Goodwill",
        )

    assert outcome.global_numbers_awarded == [1]
    assert outcome.new_balance == 1_500


@pytest.mark.asyncio
async def test_qr_transfer_moves_points_once(session_factory, register_accounts) -> None:
    _, (sender, receiver) = await register_accounts("qr-sender@example.com", "qr-receiver@example.com")

    async with session_factory() as session:
        engine = RewardEngine(session)
        await engine.earn_points(sender.id, 3_000)
        issued = await engine.generate_qr_transfer(sender.id, 1_000)
        outcome = await engine.redeem_qr_transfer(issued.code, receiver.id)

        with pytest.raises(TokenAlreadyUsed):
            await engine.redeem_qr_transfer(issued.code, receiver.id)
        with pytest.raises(TokenNotFound):
            await engine.redeem_qr_transfer("missing-code", receiver.id)

    assert outcome.new_balance == 1_000
    assert outcome.global_numbers_awarded == []

    sender_wallet = await _wallet(session_factory, AccountType.CUSTOMER, sender.id)
    receiver_wallet = await _wallet(session_factory, AccountType.CUSTOMER, receiver.id)
    assert sender_wallet.reward_point_balance == 2_000
    assert sender_wallet.total_transferred == 1_000
    assert receiver_wallet.accumulated_points == 1_000


@pytest.mark.asyncio
async def test_qr_transfer_rejections_leave_token_unused(session_factory, register_accounts) -> None:
    _, (sender, receiver) = await register_accounts("qr-limit@example.com", "qr-limit-receiver@example.com")

    async with session_factory() as session:
        engine = RewardEngine(session)
        await engine.earn_points(sender.id, 3_000)

        with pytest.raises(InsufficientBalance):
            await engine.generate_qr_transfer(sender.id, 3_001)

        first = await engine.generate_qr_transfer(sender.id, 2_000)
        second = await engine.generate_qr_transfer(sender.id, 2_000)
        await engine.redeem_qr_transfer(first.code, receiver.id)

        with pytest.raises(InsufficientBalance):
            await engine.redeem_qr_transfer(second.code, receiver.id)
        with pytest.raises(ValueError):
            await engine.redeem_qr_transfer(second.code, sender.id)

    async with session_factory() as session:
        token = (
            await session.execute(select(QRTransferToken).where(QRTransferToken.code == second.code))
        ).scalar_one()
        assert token.is_used is False
        assert token.receiver_id is None


@pytest.mark.asyncio
async def test_expired_qr_transfer_is_rejected(session_factory, register_accounts) -> None:
    _, (sender, receiver) = await register_accounts("qr-expired@example.com", "qr-expired-receiver@example.com")

    async with session_factory() as session:
        engine = RewardEngine(session)
        await engine.earn_points(sender.id, 500)
        issued = await engine.generate_qr_transfer(sender.id, 100, expiration_minutes=5)

        with pytest.raises(ValueError):
            await engine.generate_qr_transfer(sender.id, 100, expiration_minutes=0)

        broker = QRTransferBroker(session)
        with pytest.raises(TokenExpired):
            await broker.redeem(issued.code, receiver.id, now=utcnow() + timedelta(minutes=6))


@pytest.mark.asyncio
async def test_voucher_conversion_runs_inside_the_cascade(session_factory, register_accounts) -> None:
    merchant, (customer,) = await register_accounts(
        "cascade-voucher@example.com",
        merchant_email="cascade-voucher-merchant@example.com",
    )

    async with session_factory() as session:
        engine = RewardEngine(session)
        outcome = await engine.earn_points(customer.id, 30_000, merchant_id=merchant.id)
        request = await engine.request_voucher_cash_out(customer.id, 6_000, payment_method="bank")

    assert len(outcome.voucher_ids) == 1
    assert outcome.new_balance == 24_000
    assert len(outcome.step_up_reward_ids) == 4
    assert request.available_balance == 6_000


@pytest.mark.asyncio
async def test_step_conflicts_raise_and_leave_work_for_redrive(
    session_factory, register_accounts, reset_rewards_store
) -> None:
    _, (customer,) = await register_accounts("conflict@example.com")

    async with session_factory() as session:
        engine = RewardEngine(session, max_step_attempts=2)

        async def _conflict(global_number: int):
            raise IntegrityError("UPDATE global_serial_numbers", {}, Exception("write conflict"))

        engine._step_up.evaluate = _conflict
        with pytest.raises(AllocationConflict):
            await engine.earn_points(customer.id, 7_500)

    tasks = reset_rewards_store.snapshot().tasks
    assert tasks["conflict"]["step_up"] == 2

    wallet = await _wallet(session_factory, AccountType.CUSTOMER, customer.id)
    assert wallet.reward_point_balance == 7_500
    assert Decimal(wallet.income_balance) == Decimal("0")

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending(steps=["step_up"])

    assert summary["queued"] == 5
    assert summary["step_up_rewards"] == 1

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending()
    assert summary["queued"] == 0

    wallet = await _wallet(session_factory, AccountType.CUSTOMER, customer.id)
    assert Decimal(wallet.income_balance) == Decimal("500")


@pytest.mark.asyncio
async def test_redrive_backfills_missing_affiliate_commission(session_factory, register_accounts) -> None:
    _, (referrer, customer) = await register_accounts(
        "redrive-referrer@example.com",
        "redrive-customer@example.com",
        referrers={"redrive-customer@example.com": "redrive-referrer@example.com"},
    )

    async with session_factory() as session:
        engine = RewardEngine(session)

        async def _skip(*args, **kwargs):
            return None

        engine._affiliate.evaluate = _skip
        await engine.earn_points(customer.id, 1_000)

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending(steps=["affiliate"])

    assert summary["affiliate_commissions"] == 1
    referrer_wallet = await _wallet(session_factory, AccountType.CUSTOMER, referrer.id)
    assert Decimal(referrer_wallet.income_balance) == Decimal("50")


@pytest.mark.asyncio
async def test_redrive_pays_cashback_missed_after_transfer(session_factory, register_accounts) -> None:
    merchant, (customer,) = await register_accounts(
        "missed-cashback@example.com",
        merchant_email="missed-cashback-merchant@example.com",
    )

    async with session_factory() as session:
        engine = RewardEngine(session, max_step_attempts=1)
        await engine.admin_generate_points(
            admin_id=uuid4(),
            recipient_id=merchant.id,
            recipient_type=AccountType.MERCHANT,
            points=1_000,
            description="Merchant float",
        )

        async def _locked(*args, **kwargs):
            raise OperationalError("INSERT INTO wallet_transactions", {}, Exception("database is locked"))

        engine._cashback.evaluate = _locked
        with pytest.raises(AllocationConflict):
            await engine.transfer_merchant_points(merchant.id, customer.id, 500)

    merchant_wallet = await _wallet(session_factory, AccountType.MERCHANT, merchant.id)
    assert merchant_wallet.reward_point_balance == 500
    assert Decimal(merchant_wallet.income_balance) == Decimal("0")

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending(steps=["cashback"])

    assert summary["queued"] == 1
    assert summary["cashback_payouts"] == 1

    merchant_wallet = await _wallet(session_factory, AccountType.MERCHANT, merchant.id)
    assert Decimal(merchant_wallet.income_balance) == Decimal("50")

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending()
    assert summary["queued"] == 0


@pytest.mark.asyncio
async def test_infinity_redrive_skips_customers_already_cycled(session_factory, register_accounts) -> None:
    _, (cycled, waiting) = await register_accounts("infinity-done@example.com", "infinity-waiting@example.com")

    async with session_factory() as session:
        allocator = GlobalNumberAllocator(session)
        for customer in (cycled, waiting):
            number = await allocator.allocate(customer.id)
            session.add(
                StepUpReward(
                    recipient_global_number=number.global_number,
                    recipient_customer_id=customer.id,
                    trigger_global_number=number.global_number,
                    milestone_factor=500,
                    reward_points=30_000,
                    is_awarded=True,
                )
            )
        session.add(
            InfinityCycle(
                customer_id=cycled.id,
                cycle_number=1,
                reward_numbers=[],
                reward_number_count=4,
                points_per_number=195_000,
                total_points=780_000,
                step_up_points_at_trigger=30_000,
            )
        )
        await session.commit()

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending(limit=1, steps=["infinity"])

    assert summary["queued"] == 1
    assert summary["infinity_cycles"] == 1

    async with session_factory() as session:
        cycles = (
            await session.execute(select(InfinityCycle).where(InfinityCycle.customer_id == waiting.id))
        ).scalars().all()
        assert [cycle.cycle_number for cycle in cycles] == [1]


@pytest.mark.asyncio
async def test_voucher_redrive_skips_deferred_customers(session_factory, register_accounts) -> None:
    merchant, (deferred, pending) = await register_accounts(
        "voucher-deferred@example.com",
        "voucher-pending@example.com",
        merchant_email="voucher-redrive-merchant@example.com",
    )

    async with session_factory() as session:
        ledger = LedgerService(session)
        for customer, merchant_id in ((deferred, None), (pending, merchant.id)):
            wallet = await ledger.get_wallet(AccountType.CUSTOMER, customer.id, lock=True)
            await ledger.credit(
                wallet,
                30_000,
                balance_type=BalanceType.REWARD_POINTS,
                source=TransactionSource.PURCHASE,
                merchant_id=merchant_id,
            )
        await session.commit()

    async with session_factory() as session:
        summary = await RewardEngine(session).redrive_pending(limit=1, steps=["voucher"])

    assert summary["queued"] == 1
    assert summary["vouchers"] == 1

    async with session_factory() as session:
        owners = (await session.execute(select(ShoppingVoucher.customer_id))).scalars().all()
        assert set(owners) == {pending.id}

    deferred_wallet = await _wallet(session_factory, AccountType.CUSTOMER, deferred.id)
    assert deferred_wallet.reward_point_balance == 30_000
