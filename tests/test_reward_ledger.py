import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from holyloy_api.models import (
    AccountType,
    BalanceType,
    GlobalNumberCounter,
    GlobalSerialNumber,
    RewardWallet,
    TransactionSource,
    TransactionType,
    WalletTransaction,
)
from holyloy_api.services.rewards import (
    AccountService,
    InsufficientBalance,
    LedgerService,
    RewardEngine,
    WalletNotFound,
)
from holyloy_api.services.rewards.allocator import GlobalNumberAllocator
from holyloy_api.services.rewards.common import percentage_of, require_currency, require_points


def test_require_points_rejects_fractional_and_boolean_values() -> None:
    assert require_points(15) == 15
    for invalid in (0, -5, 1.5, True, "10"):
        with pytest.raises(ValueError):
            require_points(invalid)


def test_require_currency_rejects_floats_and_truncates_to_cents() -> None:
    assert require_currency(Decimal("12.349")) == Decimal("12.34")
    assert require_currency(3) == Decimal("3.00")
    with pytest.raises(ValueError):
        require_currency(0.1)
    with pytest.raises(ValueError):
        require_currency(Decimal("0.001"))


def test_percentage_of_is_exact() -> None:
    assert percentage_of(1001, Decimal("0.05")) == Decimal("50.05")
    assert percentage_of(7, Decimal("0.10")) == Decimal("0.70")


@pytest.mark.asyncio
async def test_credit_and_debit_write_matching_journal_rows(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("ledger@example.com")

    async with session_factory() as session:
        ledger = LedgerService(session)
        wallet = await ledger.get_wallet(AccountType.CUSTOMER, customer.id, lock=True)
        await ledger.credit(
            wallet,
            2000,
            balance_type=BalanceType.REWARD_POINTS,
            source=TransactionSource.PURCHASE,
            description="Order 1",
        )
        await ledger.debit(
            wallet,
            500,
            balance_type=BalanceType.REWARD_POINTS,
            source=TransactionSource.QR_TRANSFER_OUT,
        )
        await session.commit()

        assert wallet.reward_point_balance == 1500
        assert wallet.total_earned == 2000
        assert wallet.total_transferred == 500
        assert wallet.total_spent == 0

        entries = (
            await session.execute(select(WalletTransaction).where(WalletTransaction.wallet_id == wallet.id))
        ).scalars().all()
        by_type = {entry.transaction_type: entry for entry in entries}
        assert by_type[TransactionType.CREDIT].balance_after == Decimal("2000")
        assert by_type[TransactionType.DEBIT].balance_after == Decimal("1500")
        assert by_type[TransactionType.DEBIT].amount == Decimal("500")


@pytest.mark.asyncio
async def test_debit_beyond_balance_leaves_no_trace(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("overdraw@example.com")

    async with session_factory() as session:
        ledger = LedgerService(session)
        wallet = await ledger.get_wallet(AccountType.CUSTOMER, customer.id, lock=True)
        await ledger.credit(
            wallet,
            100,
            balance_type=BalanceType.REWARD_POINTS,
            source=TransactionSource.PURCHASE,
        )
        await session.commit()

        with pytest.raises(InsufficientBalance) as excinfo:
            await ledger.debit(
                wallet,
                101,
                balance_type=BalanceType.REWARD_POINTS,
                source=TransactionSource.QR_TRANSFER_OUT,
            )
        assert excinfo.value.available == 100

        with pytest.raises(InsufficientBalance):
            await ledger.debit(
                wallet,
                Decimal("0.01"),
                balance_type=BalanceType.INCOME,
                source=TransactionSource.CASH_OUT,
            )

        assert wallet.reward_point_balance == 100
        count = (
            await session.execute(select(WalletTransaction.id).where(WalletTransaction.wallet_id == wallet.id))
        ).all()
        assert len(count) == 1


@pytest.mark.asyncio
async def test_income_credits_keep_cents(session_factory, register_accounts) -> None:
    merchant, _ = await register_accounts(merchant_email="income@example.com")

    async with session_factory() as session:
        ledger = LedgerService(session)
        wallet = await ledger.get_wallet(AccountType.MERCHANT, merchant.id, lock=True)
        await ledger.credit(
            wallet,
            Decimal("12.35"),
            balance_type=BalanceType.INCOME,
            source=TransactionSource.INSTANT_CASHBACK,
        )
        await ledger.credit(
            wallet,
            Decimal("0.05"),
            balance_type=BalanceType.INCOME,
            source=TransactionSource.INSTANT_CASHBACK,
        )
        await session.commit()

        assert Decimal(wallet.income_balance) == Decimal("12.40")
        assert Decimal(wallet.total_income_earned) == Decimal("12.40")
        assert wallet.reward_point_balance == 0


@pytest.mark.asyncio
async def test_missing_wallet_raises(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("walletless@example.com")

    async with session_factory() as session:
        with pytest.raises(WalletNotFound):
            await LedgerService(session).get_wallet(AccountType.MERCHANT, customer.id)


@pytest.mark.asyncio
async def test_accumulation_converts_every_full_threshold(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("accumulate@example.com")

    async with session_factory() as session:
        ledger = LedgerService(session)
        allocator = GlobalNumberAllocator(session)
        wallet = await ledger.get_wallet(AccountType.CUSTOMER, customer.id, lock=True)

        first = await allocator.maybe_convert(wallet, 4600)
        assert [number.global_number for number in first] == [1, 2, 3]
        assert wallet.accumulated_points == 100

        second = await allocator.maybe_convert(wallet, 1400)
        assert [number.global_number for number in second] == [4]
        assert wallet.accumulated_points == 0

        third = await allocator.maybe_convert(wallet, 1499)
        assert third == []
        assert wallet.accumulated_points == 1499
        await session.commit()


@pytest.mark.asyncio
async def test_merchant_wallets_never_accumulate(session_factory, register_accounts) -> None:
    merchant, _ = await register_accounts(merchant_email="noaccumulate@example.com")

    async with session_factory() as session:
        wallet = await LedgerService(session).get_wallet(AccountType.MERCHANT, merchant.id)
        with pytest.raises(ValueError):
            await GlobalNumberAllocator(session).maybe_convert(wallet, 1500)


@pytest.mark.asyncio
async def test_global_numbers_are_gap_free_across_customers(session_factory, register_accounts) -> None:
    _, customers = await register_accounts("gap-a@example.com", "gap-b@example.com", "gap-c@example.com")

    async with session_factory() as session:
        allocator = GlobalNumberAllocator(session)
        for index in range(9):
            await allocator.allocate(customers[index % 3].id)
        await session.commit()

        numbers = (
            await session.execute(
                select(GlobalSerialNumber.global_number).order_by(GlobalSerialNumber.global_number)
            )
        ).scalars().all()
        assert list(numbers) == list(range(1, 10))

        counter = await session.get(GlobalNumberCounter, "global_number")
        assert counter.last_value == 9


@pytest.mark.asyncio
async def test_rolled_back_allocation_does_not_burn_a_number(session_factory, register_accounts) -> None:
    _, (customer,) = await register_accounts("rollback@example.com")

    async with session_factory() as session:
        allocator = GlobalNumberAllocator(session)
        await allocator.allocate(customer.id)
        await session.commit()

        discarded = await allocator.allocate(customer.id)
        assert discarded.global_number == 2
        await session.rollback()

        kept = await allocator.allocate(customer.id)
        assert kept.global_number == 2
        await session.commit()


@pytest.mark.asyncio
async def test_concurrent_earn_cascades_allocate_each_number_once(file_session_factory) -> None:
    async with file_session_factory() as session:
        service = AccountService(session)
        customers = [await service.register_customer(email=f"race-{index}@example.com") for index in range(6)]
        session.add(GlobalNumberCounter(name="global_number", last_value=0))
        await session.commit()

    async def _earn(customer_id):
        async with file_session_factory() as session:
            outcome = await RewardEngine(session, max_step_attempts=10).earn_points(customer_id, 3_100)
            return outcome.global_numbers_awarded

    awarded = await asyncio.gather(*(_earn(customer.id) for customer in customers))

    flattened = sorted(number for numbers in awarded for number in numbers)
    assert flattened == list(range(1, 13))
    assert all(len(numbers) == 2 for numbers in awarded)

    async with file_session_factory() as session:
        stored = (
            await session.execute(
                select(GlobalSerialNumber.global_number).order_by(GlobalSerialNumber.global_number)
            )
        ).scalars().all()
        assert list(stored) == list(range(1, 13))

        counter = await session.get(GlobalNumberCounter, "global_number")
        assert counter.last_value == 12

        wallets = (
            await session.execute(select(RewardWallet).where(RewardWallet.owner_type == AccountType.CUSTOMER))
        ).scalars().all()
        assert len(wallets) == 6
        assert all(0 <= wallet.accumulated_points < 1_500 for wallet in wallets)
        assert {wallet.accumulated_points for wallet in wallets} == {100}
