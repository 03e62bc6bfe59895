"""Infinity cycles: batches of granted Global Numbers unlocked by StepUp earnings."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, select
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.account import AccountType
from holyloy_api.models.reward import InfinityCycle, StepUpReward
from holyloy_api.models.reward_number import GlobalNumberOrigin
from holyloy_api.models.wallet import BalanceType, TransactionSource

from .allocator import GlobalNumberAllocator
from .ledger import LedgerService

INFINITY_THRESHOLD = 30_000
POINTS_PER_REWARD_NUMBER = 195_000
INITIAL_REWARD_NUMBER_COUNT = 4
CYCLE_GROWTH_FACTOR = 4


def reward_number_count(cycle_number: int) -> int:
    if cycle_number < 1:
        raise ValueError("cycle_number starts at 1")
    return INITIAL_REWARD_NUMBER_COUNT * CYCLE_GROWTH_FACTOR ** (cycle_number - 1)


class InfinityCyclePolicy(Protocol):
    """Decides which cycle, if any, a customer has just unlocked."""

    name: str

    def next_cycle(self, *, step_up_points: int, completed_cycles: int) -> int | None:
        ...

    def due_clause(self, *, step_up_points: Any, completed_cycles: Any) -> ColumnElement[bool]:
        """SQL form of ``next_cycle`` for selecting customers with a cycle due."""
        ...


class FirstCycleOnlyPolicy:
    """Only cycle 1 fires; later cycles wait on a product decision."""

    name = "first_cycle_only"

    def next_cycle(self, *, step_up_points: int, completed_cycles: int) -> int | None:
        if completed_cycles == 0 and step_up_points >= INFINITY_THRESHOLD:
            return 1
        return None

    def due_clause(self, *, step_up_points: Any, completed_cycles: Any) -> ColumnElement[bool]:
        return and_(completed_cycles == 0, step_up_points >= INFINITY_THRESHOLD)


class CumulativeThresholdPolicy:
    """Cycle N unlocks at N x 30,000 cumulative awarded StepUp points."""

    name = "cumulative_threshold"

    def next_cycle(self, *, step_up_points: int, completed_cycles: int) -> int | None:
        candidate = completed_cycles + 1
        if step_up_points >= INFINITY_THRESHOLD * candidate:
            return candidate
        return None

    def due_clause(self, *, step_up_points: Any, completed_cycles: Any) -> ColumnElement[bool]:
        return step_up_points >= INFINITY_THRESHOLD * (completed_cycles + 1)


INFINITY_POLICIES: dict[str, type[FirstCycleOnlyPolicy] | type[CumulativeThresholdPolicy]] = {
    FirstCycleOnlyPolicy.name: FirstCycleOnlyPolicy,
    CumulativeThresholdPolicy.name: CumulativeThresholdPolicy,
}


def resolve_infinity_policy(name: str) -> InfinityCyclePolicy:
    try:
        return INFINITY_POLICIES[name]()
    except KeyError as exc:
        raise ValueError(f"Unknown infinity cycle policy: {name}") from exc


class InfinityCycleEvaluator:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        policy: InfinityCyclePolicy,
        ledger: LedgerService | None = None,
        allocator: GlobalNumberAllocator | None = None,
    ) -> None:
        self._db = db_session
        self._policy = policy
        self._ledger = ledger or LedgerService(db_session)
        self._allocator = allocator or GlobalNumberAllocator(db_session)

    async def due_customers(self, limit: int) -> list[UUID]:
        """Customers whose awarded StepUp total says the next cycle is due, in id order."""

        earned = (
            select(
                StepUpReward.recipient_customer_id.label("customer_id"),
                func.sum(StepUpReward.reward_points).label("points"),
            )
            .where(StepUpReward.is_awarded.is_(True))
            .group_by(StepUpReward.recipient_customer_id)
            .subquery()
        )
        cycles = (
            select(
                InfinityCycle.customer_id.label("customer_id"),
                func.max(InfinityCycle.cycle_number).label("completed"),
            )
            .group_by(InfinityCycle.customer_id)
            .subquery()
        )
        completed = func.coalesce(cycles.c.completed, 0)
        result = await self._db.execute(
            select(earned.c.customer_id)
            .outerjoin(cycles, cycles.c.customer_id == earned.c.customer_id)
            .where(self._policy.due_clause(step_up_points=earned.c.points, completed_cycles=completed))
            .order_by(earned.c.customer_id.asc())
            .limit(limit)
        )
        return list(result.scalars())

    async def awarded_step_up_points(self, customer_id: UUID) -> int:
        result = await self._db.execute(
            select(func.coalesce(func.sum(StepUpReward.reward_points), 0)).where(
                StepUpReward.recipient_customer_id == customer_id,
                StepUpReward.is_awarded.is_(True),
            )
        )
        return int(result.scalar_one())

    async def completed_cycles(self, customer_id: UUID) -> int:
        result = await self._db.execute(
            select(func.coalesce(func.max(InfinityCycle.cycle_number), 0)).where(
                InfinityCycle.customer_id == customer_id
            )
        )
        return int(result.scalar_one())

    async def check_and_trigger(
        self,
        customer_id: UUID,
        *,
        trigger_global_number: int | None = None,
    ) -> InfinityCycle | None:
        """Create the next cycle when the policy says it is due.

        The customer's wallet lock serializes concurrent checks, and the
        (customer, cycle_number) unique constraint backs it up.
        """

        wallet = await self._ledger.get_wallet(AccountType.CUSTOMER, customer_id, lock=True)
        step_up_points = await self.awarded_step_up_points(customer_id)
        completed = await self.completed_cycles(customer_id)
        cycle_number = self._policy.next_cycle(step_up_points=step_up_points, completed_cycles=completed)
        if cycle_number is None:
            return None
        if cycle_number != completed + 1:
            raise ValueError(f"Infinity cycle {cycle_number} requested after {completed} completed cycles")

        count = reward_number_count(cycle_number)
        total_points = count * POINTS_PER_REWARD_NUMBER
        cycle = InfinityCycle(
            customer_id=customer_id,
            cycle_number=cycle_number,
            reward_numbers=[],
            reward_number_count=count,
            points_per_number=POINTS_PER_REWARD_NUMBER,
            total_points=total_points,
            step_up_points_at_trigger=step_up_points,
            trigger_global_number=trigger_global_number,
        )
        self._db.add(cycle)
        await self._db.flush()

        minted: list[int] = []
        for _ in range(count):
            number = await self._allocator.allocate(
                customer_id,
                origin=GlobalNumberOrigin.INFINITY,
                infinity_cycle_id=cycle.id,
            )
            minted.append(int(number.global_number))
        cycle.reward_numbers = minted

        await self._ledger.credit(
            wallet,
            Decimal(total_points),
            balance_type=BalanceType.INCOME,
            source=TransactionSource.INFINITY_REWARD,
            description=f"Infinity cycle {cycle_number}: {count} reward numbers",
            reference_id=str(cycle.id),
            metadata={"cycle_number": cycle_number, "reward_numbers": minted, "policy": self._policy.name},
        )
        await self._db.flush()

        logger.info(
            "Triggered infinity cycle",
            customer_id=str(customer_id),
            cycle_number=cycle_number,
            reward_numbers=minted,
            total_points=total_points,
            policy=self._policy.name,
        )
        return cycle


__all__ = [
    "CumulativeThresholdPolicy",
    "FirstCycleOnlyPolicy",
    "INFINITY_THRESHOLD",
    "InfinityCycleEvaluator",
    "InfinityCyclePolicy",
    "POINTS_PER_REWARD_NUMBER",
    "resolve_infinity_policy",
    "reward_number_count",
]
