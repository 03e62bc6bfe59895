"""Cascade engine: one entry point per collaborator request, drained as a work queue.

Every credit may trigger further credits on other accounts. Instead of calling
evaluators inline, the engine queues ``CascadeTask`` items and processes them
to a fixed point. Each task runs in its own transaction and is idempotent over
persisted state, so a cascade that dies halfway can be re-driven later from
the last committed checkpoint (see ``redrive_pending``).
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, TypeVar
from uuid import UUID

from loguru import logger
from sqlalchemy import Select, and_, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from holyloy_api.core.settings import settings
from holyloy_api.models.account import AccountType, Referral
from holyloy_api.models.reward import (
    AffiliateCommission,
    MerchantReferralCommission,
    MerchantReferralStatus,
    RippleReward,
    StepUpReward,
)
from holyloy_api.models.reward_number import GlobalSerialNumber
from holyloy_api.models.voucher import CashOutRequest
from holyloy_api.models.wallet import (
    EARNING_SOURCES,
    BalanceType,
    RewardWallet,
    TransactionSource,
    TransactionType,
    WalletTransaction,
)
from holyloy_api.observability.rewards import RewardsObservabilityStore, get_rewards_store
from holyloy_api.observability.tracing import get_tracer

from .accounts import AccountService
from .affiliate import AffiliateCommissionEvaluator
from .allocator import GlobalNumberAllocator
from .cashback import InstantCashbackEvaluator
from .common import require_points
from .errors import AllocationConflict
from .infinity import InfinityCycleEvaluator, InfinityCyclePolicy, resolve_infinity_policy
from .ledger import LedgerService
from .merchant_referral import MerchantReferralEvaluator
from .qr_transfer import QRTransferBroker
from .ripple import RIPPLE_REWARD_TABLE, RippleEvaluator
from .step_up import StepUpEvaluator
from .vouchers import ShoppingVoucherConverter

T = TypeVar("T")

_DIRECT_EARN_SOURCES = frozenset({TransactionSource.PURCHASE, TransactionSource.ADMIN_GRANT})


class CascadeTaskKind(str, Enum):
    """Task kinds in processing priority order."""

    AFFILIATE = "affiliate"
    STEP_UP = "step_up"
    RIPPLE = "ripple"
    INFINITY = "infinity"
    CASHBACK = "cashback"
    MERCHANT_REFERRAL = "merchant_referral"
    VOUCHER = "voucher"


_TASK_PRIORITY = {kind: rank for rank, kind in enumerate(CascadeTaskKind)}


@dataclass(frozen=True, slots=True)
class CascadeTask:
    kind: CascadeTaskKind
    customer_id: UUID | None = None
    merchant_id: UUID | None = None
    global_number: int | None = None
    step_up_reward_id: UUID | None = None
    points: int = 0
    reference_id: UUID | None = None


@dataclass(slots=True)
class CascadeOutcome:
    """Primitive summary of one cascade; safe to read after later rollbacks."""

    transaction_id: UUID | None = None
    new_balance: int = 0
    points: int = 0
    global_numbers_awarded: list[int] = field(default_factory=list)
    step_up_reward_ids: list[UUID] = field(default_factory=list)
    ripple_reward_ids: list[UUID] = field(default_factory=list)
    infinity_cycle_ids: list[UUID] = field(default_factory=list)
    affiliate_commission_ids: list[UUID] = field(default_factory=list)
    merchant_referral_commission_ids: list[UUID] = field(default_factory=list)
    voucher_ids: list[UUID] = field(default_factory=list)
    cashback_amount: Decimal | None = None
    cashback_payouts: int = 0
    tasks_processed: int = 0


@dataclass(slots=True)
class IssuedQRTransfer:
    token_id: UUID
    code: str
    points: int
    expires_at: datetime


class _WorkQueue:
    """Priority queue of pending tasks; identical pending tasks collapse into one."""

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, CascadeTask]] = []
        self._pending: set[CascadeTask] = set()
        self._sequence = 0

    def push(self, tasks: Iterable[CascadeTask]) -> None:
        for task in tasks:
            if task in self._pending:
                continue
            self._pending.add(task)
            heapq.heappush(self._heap, (_TASK_PRIORITY[task.kind], self._sequence, task))
            self._sequence += 1

    def pop(self) -> CascadeTask:
        _, _, task = heapq.heappop(self._heap)
        self._pending.discard(task)
        return task

    def __bool__(self) -> bool:
        return bool(self._heap)


class RewardEngine:
    """Public operations of the reward ledger and cascading incentive engine."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        infinity_policy: InfinityCyclePolicy | None = None,
        max_step_attempts: int | None = None,
        voucher_expiry_days: int | None = None,
        qr_default_expiration_minutes: int | None = None,
        qr_max_expiration_minutes: int | None = None,
        store: RewardsObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._max_attempts = max(1, max_step_attempts or settings.cascade_step_max_attempts)
        self._store = store or get_rewards_store()
        self._tracer = get_tracer()

        self._ledger = LedgerService(db_session)
        self._accounts = AccountService(db_session, ledger=self._ledger)
        self._allocator = GlobalNumberAllocator(db_session)
        self._step_up = StepUpEvaluator(db_session, ledger=self._ledger)
        self._ripple = RippleEvaluator(db_session, ledger=self._ledger, accounts=self._accounts)
        self._infinity = InfinityCycleEvaluator(
            db_session,
            policy=infinity_policy or resolve_infinity_policy(settings.infinity_cycle_policy),
            ledger=self._ledger,
            allocator=self._allocator,
        )
        self._affiliate = AffiliateCommissionEvaluator(db_session, ledger=self._ledger, accounts=self._accounts)
        self._vouchers = ShoppingVoucherConverter(
            db_session,
            ledger=self._ledger,
            expiry_days=voucher_expiry_days or settings.voucher_expiry_days,
        )
        self._cashback = InstantCashbackEvaluator(db_session, ledger=self._ledger)
        self._merchant_referral = MerchantReferralEvaluator(db_session, ledger=self._ledger, accounts=self._accounts)
        self._qr = QRTransferBroker(
            db_session,
            ledger=self._ledger,
            allocator=self._allocator,
            default_expiration_minutes=qr_default_expiration_minutes
            or settings.qr_transfer_default_expiration_minutes,
            max_expiration_minutes=qr_max_expiration_minutes or settings.qr_transfer_max_expiration_minutes,
        )

    @property
    def vouchers(self) -> ShoppingVoucherConverter:
        return self._vouchers

    async def earn_points(
        self,
        customer_id: UUID,
        points: int,
        *,
        source: TransactionSource = TransactionSource.PURCHASE,
        description: str | None = None,
        merchant_id: UUID | None = None,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CascadeOutcome:
        """Credit earned points to a customer and run the full cascade."""

        require_points(points)
        if source not in _DIRECT_EARN_SOURCES:
            raise ValueError(f"earn_points does not accept source {source.value}")
        await self._accounts.get_customer(customer_id)
        if merchant_id is not None:
            await self._accounts.get_merchant(merchant_id)

        async def _credit() -> tuple[UUID, list[int]]:
            wallet = await self._ledger.get_wallet(AccountType.CUSTOMER, customer_id, lock=True)
            entry = await self._ledger.credit(
                wallet,
                points,
                balance_type=BalanceType.REWARD_POINTS,
                source=source,
                description=description,
                reference_id=reference_id,
                merchant_id=merchant_id,
                metadata=metadata,
            )
            numbers = await self._allocator.maybe_convert(wallet, points)
            return entry.id, [int(number.global_number) for number in numbers]

        with self._tracer.start_as_current_span(
            "rewards.earn_points",
            attributes={"rewards.customer_id": str(customer_id), "rewards.points": points},
        ):
            transaction_id, numbers = await self._run_step("earn_credit", _credit)
            outcome = CascadeOutcome(transaction_id=transaction_id, points=points, global_numbers_awarded=numbers)
            queue = _WorkQueue()
            queue.push(self._earn_followups(customer_id, points, transaction_id, numbers))
            await self._drain(queue, outcome)
            outcome.new_balance = await self._reward_balance(customer_id)

        self._store.record_cascade(source.value, global_numbers=len(numbers))
        logger.info(
            "Processed earn cascade",
            customer_id=str(customer_id),
            points=points,
            source=source.value,
            global_numbers=numbers,
            tasks_processed=outcome.tasks_processed,
        )
        return outcome

    async def admin_generate_points(
        self,
        *,
        admin_id: UUID,
        recipient_id: UUID,
        points: int,
        description: str,
        transaction_type: str = "admin_grant",
        recipient_type: AccountType = AccountType.CUSTOMER,
    ) -> CascadeOutcome:
        """Privileged grant; the admin identity lands in the journal metadata."""

        if not description or not description.strip():
            raise ValueError("An audit description is required for admin point generation")
        require_points(points)
        metadata = {"admin_id": str(admin_id), "transaction_type": transaction_type}

        logger.info(
            "Admin generating points",
            admin_id=str(admin_id),
            recipient_id=str(recipient_id),
            recipient_type=recipient_type.value,
            points=points,
        )
        if recipient_type is AccountType.CUSTOMER:
            return await self.earn_points(
                recipient_id,
                points,
                source=TransactionSource.ADMIN_GRANT,
                description=description.strip(),
                metadata=metadata,
            )

        await self._accounts.get_merchant(recipient_id)

        async def _credit_merchant() -> tuple[UUID, int]:
            wallet = await self._ledger.get_wallet(AccountType.MERCHANT, recipient_id, lock=True)
            entry = await self._ledger.credit(
                wallet,
                points,
                balance_type=BalanceType.REWARD_POINTS,
                source=TransactionSource.ADMIN_GRANT,
                description=description.strip(),
                metadata=metadata,
            )
            return entry.id, int(wallet.reward_point_balance)

        transaction_id, balance = await self._run_step("admin_merchant_credit", _credit_merchant)
        self._store.record_cascade(TransactionSource.ADMIN_GRANT.value, global_numbers=0)
        return CascadeOutcome(transaction_id=transaction_id, new_balance=balance, points=points)

    async def transfer_merchant_points(
        self,
        merchant_id: UUID,
        customer_id: UUID,
        points: int,
        *,
        description: str | None = None,
    ) -> CascadeOutcome:
        """Move points from a merchant to a customer.

        The customer side runs the earn cascade. The merchant then gets 10%
        instant cashback, and a merchant that referred it gets 2%.
        """

        require_points(points)
        await self._accounts.get_merchant(merchant_id)
        await self._accounts.get_customer(customer_id)

        async def _transfer() -> tuple[UUID, list[int]]:
            wallets = await self._ledger.lock_accounts(
                [(AccountType.MERCHANT, merchant_id), (AccountType.CUSTOMER, customer_id)]
            )
            merchant_wallet = wallets[(AccountType.MERCHANT, merchant_id)]
            customer_wallet = wallets[(AccountType.CUSTOMER, customer_id)]
            await self._ledger.debit(
                merchant_wallet,
                points,
                balance_type=BalanceType.REWARD_POINTS,
                source=TransactionSource.MERCHANT_TRANSFER,
                description=description or "Points transferred to customer",
                merchant_id=merchant_id,
                metadata={"customer_id": str(customer_id)},
            )
            entry = await self._ledger.credit(
                customer_wallet,
                points,
                balance_type=BalanceType.REWARD_POINTS,
                source=TransactionSource.MERCHANT_TRANSFER,
                description=description or "Points received from merchant",
                merchant_id=merchant_id,
            )
            numbers = await self._allocator.maybe_convert(customer_wallet, points)
            return entry.id, [int(number.global_number) for number in numbers]

        with self._tracer.start_as_current_span(
            "rewards.merchant_transfer",
            attributes={"rewards.merchant_id": str(merchant_id), "rewards.points": points},
        ):
            transaction_id, numbers = await self._run_step("merchant_transfer", _transfer)
            outcome = CascadeOutcome(transaction_id=transaction_id, points=points, global_numbers_awarded=numbers)
            queue = _WorkQueue()
            queue.push(self._earn_followups(customer_id, points, transaction_id, numbers))
            queue.push(
                [
                    CascadeTask(
                        CascadeTaskKind.CASHBACK,
                        merchant_id=merchant_id,
                        points=points,
                        reference_id=transaction_id,
                    ),
                    CascadeTask(
                        CascadeTaskKind.MERCHANT_REFERRAL,
                        merchant_id=merchant_id,
                        points=points,
                        reference_id=transaction_id,
                    ),
                ]
            )
            await self._drain(queue, outcome)
            outcome.new_balance = await self._reward_balance(customer_id)

        self._store.record_cascade(TransactionSource.MERCHANT_TRANSFER.value, global_numbers=len(numbers))
        return outcome

    async def generate_qr_transfer(
        self,
        sender_id: UUID,
        points: int,
        expiration_minutes: int | None = None,
    ) -> IssuedQRTransfer:
        await self._accounts.get_customer(sender_id)

        async def _generate() -> IssuedQRTransfer:
            token = await self._qr.generate(sender_id, points, expiration_minutes)
            return IssuedQRTransfer(
                token_id=token.id,
                code=token.code,
                points=int(token.points),
                expires_at=token.expires_at,
            )

        issued = await self._run_step("qr_generate", _generate)
        self._store.record_qr_event("generated")
        return issued

    async def redeem_qr_transfer(self, code: str, receiver_id: UUID) -> CascadeOutcome:
        """Redeem a token; the receiver's credit leg runs the earn cascade."""

        await self._accounts.get_customer(receiver_id)

        async def _redeem() -> tuple[UUID, int, list[int]]:
            redemption = await self._qr.redeem(code, receiver_id)
            return (
                redemption.credit.id,
                int(redemption.token.points),
                [int(number.global_number) for number in redemption.global_numbers],
            )

        with self._tracer.start_as_current_span("rewards.qr_redeem"):
            try:
                transaction_id, points, numbers = await self._run_step("qr_redeem", _redeem)
            except Exception as exc:
                self._store.record_qr_event(f"rejected:{type(exc).__name__}")
                raise
            outcome = CascadeOutcome(transaction_id=transaction_id, points=points, global_numbers_awarded=numbers)
            queue = _WorkQueue()
            queue.push(self._earn_followups(receiver_id, points, transaction_id, numbers))
            await self._drain(queue, outcome)
            outcome.new_balance = await self._reward_balance(receiver_id)

        self._store.record_qr_event("redeemed")
        self._store.record_cascade(TransactionSource.QR_TRANSFER_IN.value, global_numbers=len(numbers))
        return outcome

    async def request_voucher_cash_out(
        self,
        customer_id: UUID,
        amount: int,
        *,
        payment_method: str | None = None,
        payment_details: dict[str, Any] | None = None,
    ) -> CashOutRequest:
        await self._accounts.get_customer(customer_id)

        async def _request() -> CashOutRequest:
            return await self._vouchers.request_cash_out(
                customer_id,
                amount,
                payment_method=payment_method,
                payment_details=payment_details,
            )

        request = await self._run_step("voucher_cash_out", _request)
        await self._db.refresh(request)
        return request

    async def redrive_pending(
        self,
        *,
        limit: int | None = None,
        steps: Iterable[str] | None = None,
    ) -> dict[str, int]:
        """Re-queue cascade work whose durable checkpoint shows it never finished."""

        batch = max(1, limit or settings.cascade_redrive_batch_size)
        enabled = set(steps if steps is not None else settings.cascade_redrive_steps)
        tasks: list[CascadeTask] = []

        if CascadeTaskKind.STEP_UP.value in enabled:
            rows = await self._db.execute(
                select(GlobalSerialNumber.global_number)
                .where(GlobalSerialNumber.step_up_evaluated_at.is_(None))
                .order_by(GlobalSerialNumber.global_number.asc())
                .limit(batch)
            )
            tasks.extend(
                CascadeTask(CascadeTaskKind.STEP_UP, global_number=int(number)) for number in rows.scalars()
            )

        if CascadeTaskKind.RIPPLE.value in enabled:
            rows = await self._db.execute(
                select(StepUpReward.id)
                .join(
                    Referral,
                    and_(
                        Referral.referee_customer_id == StepUpReward.recipient_customer_id,
                        Referral.is_active.is_(True),
                    ),
                )
                .outerjoin(RippleReward, RippleReward.source_step_up_reward_id == StepUpReward.id)
                .where(
                    StepUpReward.is_awarded.is_(True),
                    StepUpReward.reward_points.in_(list(RIPPLE_REWARD_TABLE)),
                    RippleReward.id.is_(None),
                )
                .order_by(StepUpReward.created_at.asc(), StepUpReward.id.asc())
                .limit(batch)
            )
            tasks.extend(
                CascadeTask(CascadeTaskKind.RIPPLE, step_up_reward_id=reward_id) for reward_id in rows.scalars()
            )

        if CascadeTaskKind.AFFILIATE.value in enabled:
            rows = await self._db.execute(
                select(WalletTransaction.id, RewardWallet.owner_id, WalletTransaction.amount)
                .join(RewardWallet, RewardWallet.id == WalletTransaction.wallet_id)
                .join(
                    Referral,
                    and_(Referral.referee_customer_id == RewardWallet.owner_id, Referral.is_active.is_(True)),
                )
                .outerjoin(AffiliateCommission, AffiliateCommission.source_transaction_id == WalletTransaction.id)
                .where(
                    RewardWallet.owner_type == AccountType.CUSTOMER,
                    WalletTransaction.balance_type == BalanceType.REWARD_POINTS,
                    WalletTransaction.transaction_type == TransactionType.CREDIT,
                    WalletTransaction.source.in_(list(EARNING_SOURCES)),
                    AffiliateCommission.id.is_(None),
                )
                .order_by(WalletTransaction.created_at.asc(), WalletTransaction.id.asc())
                .limit(batch)
            )
            tasks.extend(
                CascadeTask(
                    CascadeTaskKind.AFFILIATE,
                    customer_id=owner_id,
                    points=int(amount),
                    reference_id=transaction_id,
                )
                for transaction_id, owner_id, amount in rows.all()
            )

        if CascadeTaskKind.INFINITY.value in enabled:
            tasks.extend(
                CascadeTask(CascadeTaskKind.INFINITY, customer_id=customer_id)
                for customer_id in await self._infinity.due_customers(batch)
            )

        if CascadeTaskKind.CASHBACK.value in enabled:
            cashback = aliased(WalletTransaction)
            rows = await self._db.execute(
                self._transfer_credits()
                .outerjoin(
                    cashback,
                    and_(
                        cashback.source_transaction_id == WalletTransaction.id,
                        cashback.source == TransactionSource.INSTANT_CASHBACK,
                    ),
                )
                .where(cashback.id.is_(None))
                .order_by(WalletTransaction.created_at.asc(), WalletTransaction.id.asc())
                .limit(batch)
            )
            tasks.extend(
                CascadeTask(
                    CascadeTaskKind.CASHBACK,
                    merchant_id=merchant_id,
                    points=int(amount),
                    reference_id=transaction_id,
                )
                for transaction_id, merchant_id, amount in rows.all()
            )

        if CascadeTaskKind.MERCHANT_REFERRAL.value in enabled:
            rows = await self._db.execute(
                self._transfer_credits()
                .join(
                    Referral,
                    and_(
                        Referral.referee_merchant_id == WalletTransaction.merchant_id,
                        Referral.referrer_type == AccountType.MERCHANT,
                        Referral.is_active.is_(True),
                    ),
                )
                .outerjoin(
                    MerchantReferralCommission,
                    MerchantReferralCommission.source_transaction_id == WalletTransaction.id,
                )
                .where(MerchantReferralCommission.id.is_(None))
                .order_by(WalletTransaction.created_at.asc(), WalletTransaction.id.asc())
                .limit(batch)
            )
            tasks.extend(
                CascadeTask(
                    CascadeTaskKind.MERCHANT_REFERRAL,
                    merchant_id=merchant_id,
                    points=int(amount),
                    reference_id=transaction_id,
                )
                for transaction_id, merchant_id, amount in rows.all()
            )

        if CascadeTaskKind.VOUCHER.value in enabled:
            tasks.extend(
                CascadeTask(CascadeTaskKind.VOUCHER, customer_id=customer_id)
                for customer_id in await self._vouchers.pending_conversions(batch)
            )

        # Release read snapshots before the per-task transactions begin.
        await self._db.commit()

        outcome = CascadeOutcome()
        queue = _WorkQueue()
        queue.push(tasks)
        with self._tracer.start_as_current_span("rewards.redrive", attributes={"rewards.queued": len(tasks)}):
            await self._drain(queue, outcome)

        summary = {
            "queued": len(tasks),
            "processed": outcome.tasks_processed,
            "step_up_rewards": len(outcome.step_up_reward_ids),
            "ripple_rewards": len(outcome.ripple_reward_ids),
            "affiliate_commissions": len(outcome.affiliate_commission_ids),
            "infinity_cycles": len(outcome.infinity_cycle_ids),
            "cashback_payouts": outcome.cashback_payouts,
            "merchant_referral_commissions": len(outcome.merchant_referral_commission_ids),
            "vouchers": len(outcome.voucher_ids),
        }
        logger.bind(summary=summary).info("Cascade re-drive completed")
        return summary

    def _transfer_credits(self) -> Select:
        """Customer-side legs of merchant transfers, as (transaction id, merchant id, points)."""

        return (
            select(WalletTransaction.id, WalletTransaction.merchant_id, WalletTransaction.amount)
            .join(RewardWallet, RewardWallet.id == WalletTransaction.wallet_id)
            .where(
                RewardWallet.owner_type == AccountType.CUSTOMER,
                WalletTransaction.source == TransactionSource.MERCHANT_TRANSFER,
                WalletTransaction.transaction_type == TransactionType.CREDIT,
                WalletTransaction.merchant_id.is_not(None),
            )
        )

    def _earn_followups(
        self,
        customer_id: UUID,
        points: int,
        transaction_id: UUID,
        numbers: list[int],
    ) -> list[CascadeTask]:
        tasks = [
            CascadeTask(
                CascadeTaskKind.AFFILIATE,
                customer_id=customer_id,
                points=points,
                reference_id=transaction_id,
            )
        ]
        tasks.extend(CascadeTask(CascadeTaskKind.STEP_UP, global_number=number) for number in numbers)
        tasks.append(CascadeTask(CascadeTaskKind.VOUCHER, customer_id=customer_id))
        return tasks

    async def _drain(self, queue: _WorkQueue, outcome: CascadeOutcome) -> None:
        while queue:
            task = queue.pop()
            queue.push(await self._dispatch(task, outcome))
            outcome.tasks_processed += 1
            self._store.record_task(task.kind.value, "processed")

    async def _dispatch(self, task: CascadeTask, outcome: CascadeOutcome) -> list[CascadeTask]:
        if task.kind is CascadeTaskKind.AFFILIATE:
            return await self._handle_affiliate(task, outcome)
        if task.kind is CascadeTaskKind.STEP_UP:
            return await self._handle_step_up(task, outcome)
        if task.kind is CascadeTaskKind.RIPPLE:
            return await self._handle_ripple(task, outcome)
        if task.kind is CascadeTaskKind.INFINITY:
            return await self._handle_infinity(task, outcome)
        if task.kind is CascadeTaskKind.CASHBACK:
            return await self._handle_cashback(task, outcome)
        if task.kind is CascadeTaskKind.MERCHANT_REFERRAL:
            return await self._handle_merchant_referral(task, outcome)
        return await self._handle_voucher(task, outcome)

    async def _handle_affiliate(self, task: CascadeTask, outcome: CascadeOutcome) -> list[CascadeTask]:
        async def _evaluate() -> tuple[UUID, Decimal] | None:
            commission = await self._affiliate.evaluate(
                task.customer_id, task.points, source_transaction_id=task.reference_id
            )
            if commission is None:
                return None
            return commission.id, Decimal(commission.commission_amount)

        result = await self._run_step(CascadeTaskKind.AFFILIATE.value, _evaluate)
        if result is not None:
            outcome.affiliate_commission_ids.append(result[0])
            self._store.record_payout(CascadeTaskKind.AFFILIATE.value, result[1])
        return []

    async def _handle_step_up(self, task: CascadeTask, outcome: CascadeOutcome) -> list[CascadeTask]:
        async def _evaluate() -> list[tuple[UUID, UUID, int]]:
            rewards = await self._step_up.evaluate(task.global_number)
            return [(reward.id, reward.recipient_customer_id, int(reward.reward_points)) for reward in rewards]

        awarded = await self._run_step(CascadeTaskKind.STEP_UP.value, _evaluate)
        follow_ups: list[CascadeTask] = []
        for reward_id, recipient_id, reward_points in awarded:
            outcome.step_up_reward_ids.append(reward_id)
            self._store.record_payout(CascadeTaskKind.STEP_UP.value, Decimal(reward_points))
            follow_ups.append(CascadeTask(CascadeTaskKind.RIPPLE, step_up_reward_id=reward_id))
            follow_ups.append(
                CascadeTask(
                    CascadeTaskKind.INFINITY,
                    customer_id=recipient_id,
                    global_number=task.global_number,
                )
            )
        return follow_ups

    async def _handle_ripple(self, task: CascadeTask, outcome: CascadeOutcome) -> list[CascadeTask]:
        async def _evaluate() -> tuple[UUID, int] | None:
            reward = await self._db.get(StepUpReward, task.step_up_reward_id, populate_existing=True)
            if reward is None:
                raise ValueError(f"StepUp reward {task.step_up_reward_id} not found")
            ripple = await self._ripple.evaluate(reward)
            if ripple is None:
                return None
            return ripple.id, int(ripple.ripple_amount)

        result = await self._run_step(CascadeTaskKind.RIPPLE.value, _evaluate)
        if result is not None:
            outcome.ripple_reward_ids.append(result[0])
            self._store.record_payout(CascadeTaskKind.RIPPLE.value, Decimal(result[1]))
        return []

    async def _handle_infinity(self, task: CascadeTask, outcome: CascadeOutcome) -> list[CascadeTask]:
        async def _evaluate() -> tuple[UUID, int, list[int]] | None:
            cycle = await self._infinity.check_and_trigger(
                task.customer_id, trigger_global_number=task.global_number
            )
            if cycle is None:
                return None
            return cycle.id, int(cycle.total_points), [int(number) for number in cycle.reward_numbers]

        result = await self._run_step(CascadeTaskKind.INFINITY.value, _evaluate)
        if result is None:
            return []
        cycle_id, total_points, minted = result
        outcome.infinity_cycle_ids.append(cycle_id)
        self._store.record_payout(CascadeTaskKind.INFINITY.value, Decimal(total_points))
        follow_ups = [CascadeTask(CascadeTaskKind.STEP_UP, global_number=number) for number in minted]
        follow_ups.append(CascadeTask(CascadeTaskKind.INFINITY, customer_id=task.customer_id))
        return follow_ups

    async def _handle_cashback(self, task: CascadeTask, outcome: CascadeOutcome) -> list[CascadeTask]:
        async def _evaluate() -> Decimal:
            entry = await self._cashback.evaluate(
                task.merchant_id, task.points, source_transaction_id=task.reference_id
            )
            return Decimal(entry.amount)

        outcome.cashback_amount = await self._run_step(CascadeTaskKind.CASHBACK.value, _evaluate)
        outcome.cashback_payouts += 1
        self._store.record_payout(CascadeTaskKind.CASHBACK.value, outcome.cashback_amount)
        return []

    async def _handle_merchant_referral(self, task: CascadeTask, outcome: CascadeOutcome) -> list[CascadeTask]:
        async def _evaluate() -> tuple[UUID, Decimal, MerchantReferralStatus] | None:
            commission = await self._merchant_referral.evaluate(
                task.merchant_id, task.points, source_transaction_id=task.reference_id
            )
            if commission is None:
                return None
            return commission.id, Decimal(commission.commission_amount), commission.status

        result = await self._run_step(CascadeTaskKind.MERCHANT_REFERRAL.value, _evaluate)
        if result is None:
            return []
        commission_id, amount, status = result
        outcome.merchant_referral_commission_ids.append(commission_id)
        if status is MerchantReferralStatus.BLOCKED:
            self._store.record_task(CascadeTaskKind.MERCHANT_REFERRAL.value, "blocked")
        else:
            self._store.record_payout(CascadeTaskKind.MERCHANT_REFERRAL.value, amount)
        return []

    async def _handle_voucher(self, task: CascadeTask, outcome: CascadeOutcome) -> list[CascadeTask]:
        async def _evaluate() -> list[UUID]:
            vouchers = await self._vouchers.check_and_convert(task.customer_id)
            return [voucher.id for voucher in vouchers]

        voucher_ids = await self._run_step(CascadeTaskKind.VOUCHER.value, _evaluate)
        outcome.voucher_ids.extend(voucher_ids)
        return []

    async def _reward_balance(self, customer_id: UUID) -> int:
        result = await self._db.execute(
            select(RewardWallet.reward_point_balance).where(
                RewardWallet.owner_type == AccountType.CUSTOMER,
                RewardWallet.owner_id == customer_id,
            )
        )
        return int(result.scalar_one())

    async def _run_step(self, step: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one cascade step in its own transaction, retrying lost write races."""

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await operation()
                await self._db.commit()
            except (IntegrityError, OperationalError) as exc:
                await self._db.rollback()
                self._store.record_task(step, "conflict")
                if attempt >= self._max_attempts:
                    logger.error("Cascade step exhausted retries", step=step, attempts=attempt, error=str(exc))
                    raise AllocationConflict(f"{step} did not commit after {attempt} attempts") from exc
                logger.warning("Retrying cascade step after write conflict", step=step, attempt=attempt)
                continue
            except Exception:
                await self._db.rollback()
                self._store.record_task(step, "failed")
                raise
            return result


__all__ = [
    "CascadeOutcome",
    "CascadeTask",
    "CascadeTaskKind",
    "IssuedQRTransfer",
    "RewardEngine",
]
