"""Serial Number Allocator: converts accumulated points into Global Numbers."""

from __future__ import annotations

from uuid import UUID

from loguru import logger
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.account import AccountType
from holyloy_api.models.reward_number import (
    GLOBAL_NUMBER_SEQUENCE,
    GlobalNumberCounter,
    GlobalNumberOrigin,
    GlobalSerialNumber,
)
from holyloy_api.models.wallet import CONVERSION_THRESHOLD, RewardWallet

from .common import require_points


class GlobalNumberAllocator:
    """Hand out Global Numbers from the persisted counter.

    The counter increment, the ``GlobalSerialNumber`` insert and the wallet's
    ``accumulated_points`` update share the caller's transaction, so a rolled
    back step never burns a number and the sequence stays gap free.
    """

    def __init__(self, db_session: AsyncSession, *, sequence: str = GLOBAL_NUMBER_SEQUENCE) -> None:
        self._db = db_session
        self._sequence = sequence

    async def next_value(self) -> int:
        stmt = (
            update(GlobalNumberCounter)
            .where(GlobalNumberCounter.name == self._sequence)
            .values(last_value=GlobalNumberCounter.last_value + 1)
            .returning(GlobalNumberCounter.last_value)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        value = result.scalar_one_or_none()
        if value is not None:
            return int(value)

        # First allocation ever; a concurrent first insert fails on the primary key.
        self._db.add(GlobalNumberCounter(name=self._sequence, last_value=1))
        await self._db.flush()
        logger.info("Initialised Global Number counter", sequence=self._sequence)
        return 1

    async def allocate(
        self,
        customer_id: UUID,
        *,
        origin: GlobalNumberOrigin = GlobalNumberOrigin.EARNED,
        infinity_cycle_id: UUID | None = None,
    ) -> GlobalSerialNumber:
        value = await self.next_value()
        number = GlobalSerialNumber(
            global_number=value,
            customer_id=customer_id,
            origin=origin,
            infinity_cycle_id=infinity_cycle_id,
        )
        self._db.add(number)
        await self._db.flush()
        logger.info(
            "Allocated Global Number",
            global_number=value,
            customer_id=str(customer_id),
            origin=origin.value,
        )
        return number

    async def maybe_convert(self, wallet: RewardWallet, earned_points: int) -> list[GlobalSerialNumber]:
        """Add freshly earned points to the bucket and convert every full 1,500.

        The wallet must already be locked by the caller.
        """

        if wallet.owner_type is not AccountType.CUSTOMER:
            raise ValueError("Only customer wallets accumulate towards Global Numbers")
        require_points(earned_points, field="earned_points")

        accumulated = int(wallet.accumulated_points or 0) + earned_points
        numbers: list[GlobalSerialNumber] = []
        while accumulated >= CONVERSION_THRESHOLD:
            accumulated -= CONVERSION_THRESHOLD
            numbers.append(await self.allocate(wallet.owner_id))

        wallet.accumulated_points = accumulated
        await self._db.flush()
        if numbers:
            logger.info(
                "Converted accumulated points",
                customer_id=str(wallet.owner_id),
                global_numbers=[number.global_number for number in numbers],
                accumulated_points=accumulated,
            )
        return numbers


__all__ = ["GlobalNumberAllocator"]
