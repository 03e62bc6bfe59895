from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.core.settings import settings
from holyloy_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as error:
        components["database"] = ComponentStatus(status="error", detail=f"Database unreachable ({error})")
        status = "error"

    worker = getattr(request.app.state, "cascade_redrive_worker", None)
    if settings.cascade_redrive_worker_enabled and worker is not None:
        running = bool(getattr(worker, "is_running", False))
        detail = None if running else "Cascade re-drive worker not running"
        if not running and status == "ready":
            status = "degraded"
        components["cascade_redrive"] = ComponentStatus(status="ready" if running else "starting", detail=detail)
    else:
        components["cascade_redrive"] = ComponentStatus(
            status="disabled",
            detail="Cascade re-drive worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
