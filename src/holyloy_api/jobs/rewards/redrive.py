"""Job that finishes reward cascades left incomplete by crashes or lost races."""

# meta: job: cascade-redrive

from __future__ import annotations

from typing import Awaitable, Callable, Dict, Iterable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.observability.rewards import get_rewards_store
from holyloy_api.services.rewards import RewardEngine

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def run_cascade_redrive(
    *,
    session_factory: SessionFactory,
    limit: int | None = None,
    steps: Iterable[str] | None = None,
) -> Dict[str, int]:
    """Re-queue unevaluated Global Numbers and missing follow-up rewards."""

    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    async with session as managed_session:
        engine = RewardEngine(managed_session)
        summary = await engine.redrive_pending(limit=limit, steps=steps)

    get_rewards_store().record_redrive_run(summary)
    logger.bind(summary=summary).info("Cascade re-drive job completed")
    return summary


__all__ = ["run_cascade_redrive"]
