"""Job that expires shopping vouchers past their validity window."""

# meta: job: voucher-expiry

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.services.rewards.vouchers import ShoppingVoucherConverter

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def run_voucher_expiry(
    *,
    session_factory: SessionFactory,
    now: datetime | None = None,
) -> Dict[str, int]:
    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    async with session as managed_session:
        expired = await ShoppingVoucherConverter(managed_session).expire_vouchers(now=now)
        await managed_session.commit()

    summary = {"expired": expired}
    logger.bind(summary=summary).info("Voucher expiry sweep completed")
    return summary


__all__ = ["run_voucher_expiry"]
