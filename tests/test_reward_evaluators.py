"""Evaluator-level coverage for StepUp, Ripple, Infinity, affiliate, cashback, and vouchers."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from holyloy_api.models import (
    AccountType,
    BalanceType,
    GlobalNumberOrigin,
    GlobalSerialNumber,
    RewardWallet,
    StepUpReward,
    TransactionSource,
)
from holyloy_api.services.rewards import CashOutRequestPending, InsufficientBalance, LedgerService
from holyloy_api.services.rewards.affiliate import AffiliateCommissionEvaluator
from holyloy_api.services.rewards.allocator import GlobalNumberAllocator
from holyloy_api.services.rewards.cashback import InstantCashbackEvaluator
from holyloy_api.services.rewards.infinity import (
    CumulativeThresholdPolicy,
    FirstCycleOnlyPolicy,
    InfinityCycleEvaluator,
    resolve_infinity_policy,
    reward_number_count,
)
from holyloy_api.services.rewards.ripple import RippleEvaluator
from holyloy_api.services.rewards.step_up import StepUpEvaluator, milestone_recipients
from holyloy_api.services.rewards.vouchers import ShoppingVoucherConverter, split_proportionally


async def _wallet(session, owner_type: AccountType, owner_id) -> RewardWallet:
    return await LedgerService(session).get_wallet(owner_type, owner_id)


def test_milestone_recipients_cover_every_dividing_factor() -> None:
    assert milestone_recipients(7) == []
    assert milestone_recipients(50) == [(5, 500, 10), (25, 1_500, 2)]
    assert milestone_recipients(2_500) == [
        (5, 500, 500),
        (25, 1_500, 100),
        (125, 3_000, 20),
        (500, 30_000, 5),
        (2_500, 160_000, 1),
    ]


def test_reward_number_count_grows_by_four() -> None:
    assert [reward_number_count(cycle) for cycle in (1, 2, 3)] == [4, 16, 64]
    with pytest.raises(ValueError):
        reward_number_count(0)


def test_infinity_policies() -> None:
    first = FirstCycleOnlyPolicy()
    assert first.next_cycle(step_up_points=29_999, completed_cycles=0) is None
    assert first.next_cycle(step_up_points=30_000, completed_cycles=0) == 1
    assert first.next_cycle(step_up_points=90_000, completed_cycles=1) is None

    cumulative = CumulativeThresholdPolicy()
    assert cumulative.next_cycle(step_up_points=59_999, completed_cycles=1) is None
    assert cumulative.next_cycle(step_up_points=60_000, completed_cycles=1) == 2

    assert resolve_infinity_policy("cumulative_threshold").name == "cumulative_threshold"
    with pytest.raises(ValueError):
        resolve_infinity_policy("unbounded")


def test_split_proportionally_gives_remainder_to_largest_volume() -> None:
    first, second, third = uuid4(), uuid4(), uuid4()

    shares = split_proportionally(6_000, [(first, 7), (second, 4)])
    assert shares == {first: 3_819, second: 2_181}

    tied = split_proportionally(6_000, [(first, 1), (second, 1), (third, 1)])
    assert tied == {first: 2_000, second: 2_000, third: 2_000}

    with pytest.raises(ValueError):
        split_proportionally(6_000, [])


@pytest.mark.asyncio
async def test_step_up_pays_every_milestone_recipient_once(session_factory, register_accounts) -> None:
    _, (owner, second_owner, tenth_owner) = await register_accounts(
        "stepup-owner@example.com",
        "stepup-second@example.com",
        "stepup-tenth@example.com",
    )

    async with session_factory() as session:
        allocator = GlobalNumberAllocator(session)
        for number in range(1, 51):
            if number == 2:
                customer_id = second_owner.id
            elif number == 10:
                customer_id = tenth_owner.id
            else:
                customer_id = owner.id
            await allocator.allocate(customer_id)
        await session.commit()

        evaluator = StepUpEvaluator(session)
        rewards = await evaluator.evaluate(50)
        await session.commit()

        paid = {(reward.recipient_global_number, reward.milestone_factor): reward for reward in rewards}
        assert set(paid) == {(10, 5), (2, 25)}
        assert paid[(10, 5)].reward_points == 500
        assert paid[(2, 25)].reward_points == 1_500
        assert all(reward.is_awarded for reward in rewards)

        assert Decimal((await _wallet(session, AccountType.CUSTOMER, tenth_owner.id)).income_balance) == Decimal("500")
        assert Decimal((await _wallet(session, AccountType.CUSTOMER, second_owner.id)).income_balance) == Decimal(
            "1500"
        )

        assert await evaluator.evaluate(50) == []
        await session.commit()
        total = (await session.execute(select(StepUpReward.id))).all()
        assert len(total) == 2

        trigger = (
            await session.execute(select(GlobalSerialNumber).where(GlobalSerialNumber.global_number == 50))
        ).scalar_one()
        assert trigger.step_up_evaluated_at is not None


@pytest.mark.asyncio
async def test_step_up_rejects_unallocated_trigger(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(ValueError):
            await StepUpEvaluator(session).evaluate(5)


@pytest.mark.asyncio
async def test_ripple_credits_referrer_once(session_factory, register_accounts) -> None:
    _, (referrer, referee) = await register_accounts(
        "ripple-referrer@example.com",
        "ripple-referee@example.com",
        referrers={"ripple-referee@example.com": "ripple-referrer@example.com"},
    )

    async with session_factory() as session:
        allocator = GlobalNumberAllocator(session)
        for _ in range(5):
            await allocator.allocate(referee.id)
        (reward,) = await StepUpEvaluator(session).evaluate(5)
        await session.commit()

        evaluator = RippleEvaluator(session)
        ripple = await evaluator.evaluate(reward)
        await session.commit()

        assert ripple is not None
        assert ripple.step_up_amount == 500
        assert ripple.ripple_amount == 50
        assert ripple.referrer_type is AccountType.CUSTOMER
        assert Decimal((await _wallet(session, AccountType.CUSTOMER, referrer.id)).income_balance) == Decimal("50")

        assert await evaluator.evaluate(reward) is None


@pytest.mark.asyncio
async def test_ripple_without_referrer_is_a_no_op(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("ripple-solo@example.com")

    async with session_factory() as session:
        allocator = GlobalNumberAllocator(session)
        for _ in range(5):
            await allocator.allocate(customer.id)
        (reward,) = await StepUpEvaluator(session).evaluate(5)
        await session.commit()

        assert await RippleEvaluator(session).evaluate(reward) is None


async def _seed_step_up_points(session, customer_id, *points: int) -> None:
    number = await GlobalNumberAllocator(session).allocate(customer_id)
    for factor, reward_points in zip((500, 2_500, 125), points):
        session.add(
            StepUpReward(
                recipient_global_number=number.global_number,
                recipient_customer_id=customer_id,
                trigger_global_number=number.global_number,
                milestone_factor=factor,
                reward_points=reward_points,
                is_awarded=True,
            )
        )
    await session.flush()


@pytest.mark.asyncio
async def test_infinity_first_cycle_grants_four_numbers_and_exact_income(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("infinity@example.com")

    async with session_factory() as session:
        await _seed_step_up_points(session, customer.id, 30_000)
        await session.commit()

        evaluator = InfinityCycleEvaluator(session, policy=FirstCycleOnlyPolicy())
        cycle = await evaluator.check_and_trigger(customer.id)
        await session.commit()

        assert cycle is not None
        assert cycle.cycle_number == 1
        assert cycle.reward_numbers == [2, 3, 4, 5]
        assert cycle.total_points == 780_000
        assert cycle.step_up_points_at_trigger == 30_000

        wallet = await _wallet(session, AccountType.CUSTOMER, customer.id)
        assert Decimal(wallet.income_balance) == Decimal("780000")
        assert wallet.reward_point_balance == 0

        minted = (
            await session.execute(
                select(GlobalSerialNumber).where(GlobalSerialNumber.origin == GlobalNumberOrigin.INFINITY)
            )
        ).scalars().all()
        assert sorted(number.global_number for number in minted) == [2, 3, 4, 5]
        assert all(number.infinity_cycle_id == cycle.id for number in minted)

        assert await evaluator.check_and_trigger(customer.id) is None


@pytest.mark.asyncio
async def test_infinity_below_threshold_does_nothing(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("infinity-low@example.com")

    async with session_factory() as session:
        await _seed_step_up_points(session, customer.id, 3_000)
        await session.commit()

        evaluator = InfinityCycleEvaluator(session, policy=FirstCycleOnlyPolicy())
        assert await evaluator.check_and_trigger(customer.id) is None


@pytest.mark.asyncio
async def test_cumulative_policy_unlocks_second_cycle(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("infinity-cumulative@example.com")

    async with session_factory() as session:
        await _seed_step_up_points(session, customer.id, 30_000, 30_000)
        await session.commit()

        evaluator = InfinityCycleEvaluator(session, policy=CumulativeThresholdPolicy())
        first = await evaluator.check_and_trigger(customer.id)
        second = await evaluator.check_and_trigger(customer.id)
        await session.commit()

        assert first.cycle_number == 1
        assert second.cycle_number == 2
        assert second.reward_number_count == 16
        assert second.total_points == 16 * 195_000
        assert len(second.reward_numbers) == 16

        wallet = await _wallet(session, AccountType.CUSTOMER, customer.id)
        assert Decimal(wallet.income_balance) == Decimal(20 * 195_000)

        assert await evaluator.check_and_trigger(customer.id) is None


@pytest.mark.asyncio
async def test_affiliate_commission_goes_to_merchant_referrer(session_factory, register_accounts) -> None:
    merchant, (customer,) = await register_accounts(
        "affiliate@example.com",
        referrers={"affiliate@example.com": "affiliate-merchant@example.com"},
        merchant_email="affiliate-merchant@example.com",
    )
    source_transaction_id = uuid4()

    async with session_factory() as session:
        evaluator = AffiliateCommissionEvaluator(session)
        commission = await evaluator.evaluate(customer.id, 1_001, source_transaction_id=source_transaction_id)
        await session.commit()

        assert commission is not None
        assert commission.referrer_type is AccountType.MERCHANT
        assert Decimal(commission.commission_amount) == Decimal("50.05")

        wallet = await _wallet(session, AccountType.MERCHANT, merchant.id)
        assert Decimal(wallet.income_balance) == Decimal("50.05")

        assert await evaluator.evaluate(customer.id, 1_001, source_transaction_id=source_transaction_id) is None
        await session.commit()
        wallet = await _wallet(session, AccountType.MERCHANT, merchant.id)
        assert Decimal(wallet.income_balance) == Decimal("50.05")


@pytest.mark.asyncio
async def test_affiliate_without_referrer_is_a_no_op(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("affiliate-solo@example.com")

    async with session_factory() as session:
        result = await AffiliateCommissionEvaluator(session).evaluate(
            customer.id, 500, source_transaction_id=uuid4()
        )
        assert result is None


@pytest.mark.asyncio
async def test_instant_cashback_is_idempotent_per_transfer(session_factory, register_accounts) -> None:
    merchant, _ = await register_accounts(merchant_email="cashback@example.com")
    transfer_id = uuid4()

    async with session_factory() as session:
        evaluator = InstantCashbackEvaluator(session)
        entry = await evaluator.evaluate(merchant.id, 1_234, source_transaction_id=transfer_id)
        await session.commit()
        assert entry.amount == Decimal("123.40")
        assert entry.source is TransactionSource.INSTANT_CASHBACK
        assert entry.source_transaction_id == transfer_id
        assert entry.reference_id == str(transfer_id)

        again = await evaluator.evaluate(merchant.id, 1_234, source_transaction_id=transfer_id)
        assert again.id == entry.id

        wallet = await _wallet(session, AccountType.MERCHANT, merchant.id)
        assert Decimal(wallet.income_balance) == Decimal("123.40")

        with pytest.raises(ValueError, match="Minimum 1 point"):
            await evaluator.evaluate(merchant.id, 0, source_transaction_id=uuid4())


async def _earn_at(session, customer_id, merchant_id, points: int) -> None:
    ledger = LedgerService(session)
    wallet = await ledger.get_wallet(AccountType.CUSTOMER, customer_id, lock=True)
    await ledger.credit(
        wallet,
        points,
        balance_type=BalanceType.REWARD_POINTS,
        source=TransactionSource.PURCHASE,
        merchant_id=merchant_id,
    )


@pytest.mark.asyncio
async def test_voucher_conversion_splits_by_merchant_volume(session_factory, register_accounts) -> None:
    first_merchant, (customer,) = await register_accounts(
        "voucher@example.com",
        merchant_email="voucher-first@example.com",
    )
    second_merchant, _ = await register_accounts(merchant_email="voucher-second@example.com")

    async with session_factory() as session:
        converter = ShoppingVoucherConverter(session)
        await _earn_at(session, customer.id, first_merchant.id, 20_000)
        assert await converter.check_and_convert(customer.id) == []

        await _earn_at(session, customer.id, second_merchant.id, 10_000)
        vouchers = await converter.check_and_convert(customer.id)
        await session.commit()

        by_merchant = {voucher.merchant_id: voucher for voucher in vouchers}
        assert by_merchant[first_merchant.id].voucher_points == 4_000
        assert by_merchant[second_merchant.id].voucher_points == 2_000
        assert Decimal(by_merchant[first_merchant.id].ratio) == Decimal("0.66666667")

        wallet = await _wallet(session, AccountType.CUSTOMER, customer.id)
        assert wallet.reward_point_balance == 24_000
        assert wallet.total_spent == 6_000

        assert await converter.check_and_convert(customer.id) == []
        assert await converter.active_voucher_balance(customer.id) == 6_000


@pytest.mark.asyncio
async def test_voucher_conversion_defers_without_merchant_volume(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("voucher-nomerchant@example.com")

    async with session_factory() as session:
        await _earn_at(session, customer.id, None, 30_000)
        assert await ShoppingVoucherConverter(session).check_and_convert(customer.id) == []
        wallet = await _wallet(session, AccountType.CUSTOMER, customer.id)
        assert wallet.reward_point_balance == 30_000


@pytest.mark.asyncio
async def test_cash_out_requests_respect_voucher_balance(session_factory, register_accounts) -> None:
    merchant, (customer,) = await register_accounts(
        "cashout@example.com",
        merchant_email="cashout-merchant@example.com",
    )

    async with session_factory() as session:
        converter = ShoppingVoucherConverter(session)
        await _earn_at(session, customer.id, merchant.id, 30_000)
        await converter.check_and_convert(customer.id)
        await session.commit()

        with pytest.raises(InsufficientBalance):
            await converter.request_cash_out(customer.id, 6_001)

        request = await converter.request_cash_out(customer.id, 5_000, payment_method="bank")
        await session.commit()
        assert request.requested_amount == 5_000
        assert request.available_balance == 6_000

        with pytest.raises(CashOutRequestPending):
            await converter.request_cash_out(customer.id, 500)
