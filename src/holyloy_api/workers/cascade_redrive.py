"""Worker wiring for periodic cascade re-drive sweeps."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Sequence

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.core.settings import settings
from holyloy_api.models.redrive_run import CascadeRedriveRun
from holyloy_api.observability.rewards import get_rewards_store
from holyloy_api.services.rewards import RewardEngine
from holyloy_api.services.rewards.vouchers import ShoppingVoucherConverter

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class CascadeRedriveWorker:
    """Periodically finishes cascades whose follow-up steps never committed."""

    # meta: worker: cascade-redrive

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        steps: Sequence[str] | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.cascade_redrive_interval_seconds
        self._batch_size = batch_size or settings.cascade_redrive_batch_size
        self._steps = list(steps) if steps is not None else list(settings.cascade_redrive_steps)
        self._trigger_label = trigger_label or settings.cascade_redrive_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Cascade re-drive worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
            steps=self._steps,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Cascade re-drive worker stopped")

    async def run_once(self, *, triggered_by: str | None = None) -> Dict[str, int]:
        """Execute a single sweep and persist a run row describing it."""

        trigger = triggered_by or self._trigger_label
        summary: Dict[str, int] = {"queued": 0, "processed": 0}

        session = await self._ensure_session()
        async with session as managed_session:
            run = CascadeRedriveRun(triggered_by=trigger, status="running")
            managed_session.add(run)
            await managed_session.commit()
            run_id = run.id

            try:
                engine = RewardEngine(managed_session)
                summary = await engine.redrive_pending(limit=self._batch_size, steps=self._steps)
                summary["vouchers_expired"] = await ShoppingVoucherConverter(managed_session).expire_vouchers()
                await managed_session.commit()

                run = await managed_session.get(CascadeRedriveRun, run_id, populate_existing=True)
                run.status = "completed"
                run.completed_at = datetime.now(timezone.utc)
                run.queued_count = summary.get("queued", 0)
                run.processed_count = summary.get("processed", 0)
                run.summary = dict(summary)
                run.metadata_json = self._build_run_metadata(trigger)
                await managed_session.commit()
                logger.info(
                    "Cascade re-drive sweep completed",
                    run_id=str(run_id),
                    queued=summary.get("queued", 0),
                    processed=summary.get("processed", 0),
                    trigger=trigger,
                )
            except Exception as exc:
                await managed_session.rollback()
                run = await managed_session.get(CascadeRedriveRun, run_id, populate_existing=True)
                run.status = "failed"
                run.completed_at = datetime.now(timezone.utc)
                run.error_message = str(exc)
                run.metadata_json = self._build_run_metadata(trigger, error=str(exc))
                await managed_session.commit()
                get_rewards_store().record_redrive_run({"failed": 1})
                logger.exception(
                    "Cascade re-drive sweep failed",
                    run_id=str(run_id),
                    error=str(exc),
                )
                raise

        get_rewards_store().record_redrive_run(summary)
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Cascade re-drive iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session

    def _build_run_metadata(self, trigger: str, *, error: str | None = None) -> Dict[str, object | None]:
        metadata: Dict[str, object | None] = {
            "batch_size": self._batch_size,
            "steps": list(self._steps),
            "triggered_by": trigger,
        }
        if error:
            metadata["error"] = error
        return metadata
