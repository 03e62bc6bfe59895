"""Operator endpoints for privileged grants and cascade maintenance."""

from __future__ import annotations

from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.api.dependencies.security import require_admin_api_key
from holyloy_api.core.settings import settings
from holyloy_api.db.session import get_session
from holyloy_api.models.account import AccountType
from holyloy_api.observability.rewards import get_rewards_store
from holyloy_api.services.rewards import RewardEngine, RewardEngineError

from .rewards import CascadeResponse, reward_http_error, serialize_outcome


router = APIRouter(
    prefix="/rewards/admin",
    tags=["rewards-admin"],
    dependencies=[Depends(require_admin_api_key)],
)


class AdminPointsRequest(BaseModel):
    adminId: UUID = Field(..., description="Operator issuing the grant")
    recipientId: UUID
    recipientType: Literal["customer", "merchant"] = "customer"
    points: int = Field(..., gt=0, strict=True)
    description: str = Field(..., min_length=1, description="Audit reason recorded on the ledger entry")
    transactionType: str = Field("admin_grant", max_length=64)


class RedriveRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=1000)
    steps: Optional[List[str]] = Field(None, description="Subset of cascade steps to re-drive")


class RedriveResponse(BaseModel):
    queued: int
    processed: int
    stepUpRewards: int
    rippleRewards: int
    affiliateCommissions: int
    infinityCycles: int
    cashbackPayouts: int
    merchantReferralCommissions: int
    vouchers: int


@router.post("/points", response_model=CascadeResponse, status_code=status.HTTP_201_CREATED)
async def admin_generate_points(
    payload: AdminPointsRequest,
    db: AsyncSession = Depends(get_session),
) -> CascadeResponse:
    """Grant points to a customer or merchant with an audit trail."""

    engine = RewardEngine(db)
    try:
        outcome = await engine.admin_generate_points(
            admin_id=payload.adminId,
            recipient_id=payload.recipientId,
            points=payload.points,
            description=payload.description,
            transaction_type=payload.transactionType,
            recipient_type=AccountType(payload.recipientType),
        )
    except (RewardEngineError, ValueError) as exc:
        raise reward_http_error(exc) from exc
    return serialize_outcome(outcome)


@router.post("/cascade/redrive", response_model=RedriveResponse)
async def redrive_cascades(
    payload: RedriveRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> RedriveResponse:
    """Finish cascades whose follow-up steps never committed."""

    engine = RewardEngine(db)
    try:
        summary = await engine.redrive_pending(
            limit=payload.limit if payload else None,
            steps=payload.steps if payload and payload.steps else settings.cascade_redrive_steps,
        )
    except (RewardEngineError, ValueError) as exc:
        raise reward_http_error(exc) from exc
    get_rewards_store().record_redrive_run(summary)
    return RedriveResponse(
        queued=summary["queued"],
        processed=summary["processed"],
        stepUpRewards=summary["step_up_rewards"],
        rippleRewards=summary["ripple_rewards"],
        affiliateCommissions=summary["affiliate_commissions"],
        infinityCycles=summary["infinity_cycles"],
        cashbackPayouts=summary["cashback_payouts"],
        merchantReferralCommissions=summary["merchant_referral_commissions"],
        vouchers=summary["vouchers"],
    )
