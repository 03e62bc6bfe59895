"""Ripple rewards: a referrer's share of StepUp payouts."""

from __future__ import annotations

from decimal import Decimal

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.reward import RippleReward, StepUpReward
from holyloy_api.models.wallet import BalanceType, TransactionSource

from .accounts import AccountService
from .ledger import LedgerService

RIPPLE_REWARD_TABLE: dict[int, int] = {
    500: 50,
    1_500: 100,
    3_000: 150,
    30_000: 700,
    160_000: 1_500,
}


class RippleEvaluator:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: LedgerService | None = None,
        accounts: AccountService | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)
        self._accounts = accounts or AccountService(db_session, ledger=self._ledger)

    async def evaluate(self, step_up_reward: StepUpReward) -> RippleReward | None:
        """Credit the recipient's referrer once per StepUp reward; no referrer is a no-op."""

        if not step_up_reward.is_awarded:
            return None

        existing = await self._db.execute(
            select(RippleReward.id).where(RippleReward.source_step_up_reward_id == step_up_reward.id)
        )
        if existing.first() is not None:
            return None

        referral = await self._accounts.get_active_referral(step_up_reward.recipient_customer_id)
        if referral is None:
            return None

        ripple_amount = RIPPLE_REWARD_TABLE.get(int(step_up_reward.reward_points))
        if ripple_amount is None:
            logger.warning(
                "No ripple tier for StepUp amount",
                step_up_reward_id=str(step_up_reward.id),
                reward_points=step_up_reward.reward_points,
            )
            return None

        wallet = await self._ledger.get_wallet(referral.referrer_type, referral.referrer_id, lock=True)
        ripple = RippleReward(
            source_step_up_reward_id=step_up_reward.id,
            referrer_type=referral.referrer_type,
            referrer_id=referral.referrer_id,
            referred_customer_id=step_up_reward.recipient_customer_id,
            step_up_amount=step_up_reward.reward_points,
            ripple_amount=ripple_amount,
        )
        self._db.add(ripple)
        await self._db.flush()

        await self._ledger.credit(
            wallet,
            Decimal(ripple_amount),
            balance_type=BalanceType.INCOME,
            source=TransactionSource.RIPPLE_REWARD,
            description=f"Ripple reward on {step_up_reward.reward_points} StepUp",
            reference_id=str(ripple.id),
            metadata={
                "step_up_reward_id": str(step_up_reward.id),
                "referred_customer_id": str(step_up_reward.recipient_customer_id),
            },
        )
        referral.total_ripple_rewards = int(referral.total_ripple_rewards or 0) + ripple_amount
        await self._db.flush()

        logger.info(
            "Awarded ripple reward",
            ripple_reward_id=str(ripple.id),
            referrer_id=str(referral.referrer_id),
            referrer_type=referral.referrer_type.value,
            ripple_amount=ripple_amount,
        )
        return ripple


__all__ = ["RIPPLE_REWARD_TABLE", "RippleEvaluator"]
