"""StepUp reward evaluation for newly allocated Global Numbers."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.account import AccountType
from holyloy_api.models.reward import StepUpReward
from holyloy_api.models.reward_number import GlobalSerialNumber
from holyloy_api.models.wallet import BalanceType, RewardWallet, TransactionSource

from .common import utcnow
from .errors import DuplicateMilestone
from .ledger import LedgerService

# (milestone factor, reward points)
STEP_UP_MILESTONES: tuple[tuple[int, int], ...] = (
    (5, 500),
    (25, 1_500),
    (125, 3_000),
    (500, 30_000),
    (2_500, 160_000),
)


def milestone_recipients(global_number: int) -> list[tuple[int, int, int]]:
    """Return ``(factor, reward_points, recipient_number)`` for every factor dividing the number."""

    return [
        (factor, reward_points, global_number // factor)
        for factor, reward_points in STEP_UP_MILESTONES
        if global_number % factor == 0
    ]


class StepUpEvaluator:
    """Pay milestone rewards to the owners of ``N / factor``.

    Evaluation is idempotent: a (recipient number, factor) pair pays at most
    once, enforced both by lookup and by a unique constraint.
    """

    def __init__(self, db_session: AsyncSession, *, ledger: LedgerService | None = None) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)

    async def evaluate(self, global_number: int) -> list[StepUpReward]:
        trigger = await self._get_number(global_number)
        if trigger is None:
            raise ValueError(f"Global Number {global_number} has not been allocated")

        candidates: list[tuple[int, int, GlobalSerialNumber]] = []
        for factor, reward_points, recipient_number in milestone_recipients(global_number):
            recipient = await self._get_number(recipient_number)
            if recipient is None:
                continue
            candidates.append((factor, reward_points, recipient))

        wallets: dict[UUID, RewardWallet] = {}
        if candidates:
            locked = await self._ledger.lock_accounts(
                (AccountType.CUSTOMER, recipient.customer_id) for _, _, recipient in candidates
            )
            wallets = {owner_id: wallet for (_, owner_id), wallet in locked.items()}

        awarded: list[StepUpReward] = []
        for factor, reward_points, recipient in candidates:
            try:
                reward = await self._award(
                    trigger,
                    recipient,
                    factor=factor,
                    reward_points=reward_points,
                    wallet=wallets[recipient.customer_id],
                )
            except DuplicateMilestone as exc:
                logger.debug(
                    "Skipping StepUp milestone already awarded",
                    recipient_global_number=exc.recipient_global_number,
                    milestone_factor=exc.milestone_factor,
                    trigger_global_number=global_number,
                )
                continue
            awarded.append(reward)

        trigger.step_up_evaluated_at = utcnow()
        await self._db.flush()
        return awarded

    async def _award(
        self,
        trigger: GlobalSerialNumber,
        recipient: GlobalSerialNumber,
        *,
        factor: int,
        reward_points: int,
        wallet: RewardWallet,
    ) -> StepUpReward:
        existing = await self._db.execute(
            select(StepUpReward.id).where(
                StepUpReward.recipient_global_number == recipient.global_number,
                StepUpReward.milestone_factor == factor,
            )
        )
        if existing.first() is not None:
            raise DuplicateMilestone(recipient.global_number, factor)

        reward = StepUpReward(
            recipient_global_number=recipient.global_number,
            recipient_customer_id=recipient.customer_id,
            trigger_global_number=trigger.global_number,
            milestone_factor=factor,
            reward_points=reward_points,
            is_awarded=False,
        )
        self._db.add(reward)
        await self._db.flush()

        await self._ledger.credit(
            wallet,
            Decimal(reward_points),
            balance_type=BalanceType.INCOME,
            source=TransactionSource.STEP_UP_REWARD,
            description=f"StepUp x{factor} reward for Global #{recipient.global_number}",
            reference_id=str(reward.id),
            metadata={
                "recipient_global_number": recipient.global_number,
                "trigger_global_number": trigger.global_number,
                "milestone_factor": factor,
            },
        )
        reward.is_awarded = True
        reward.awarded_at = utcnow()
        await self._db.flush()

        logger.info(
            "Awarded StepUp reward",
            step_up_reward_id=str(reward.id),
            recipient_customer_id=str(recipient.customer_id),
            recipient_global_number=recipient.global_number,
            trigger_global_number=trigger.global_number,
            milestone_factor=factor,
            reward_points=reward_points,
        )
        return reward

    async def _get_number(self, global_number: int) -> GlobalSerialNumber | None:
        result = await self._db.execute(
            select(GlobalSerialNumber).where(GlobalSerialNumber.global_number == global_number)
        )
        return result.scalar_one_or_none()


__all__ = ["STEP_UP_MILESTONES", "StepUpEvaluator", "milestone_recipients"]
