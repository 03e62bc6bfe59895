"""API endpoints for reward wallets, cascades, QR transfers, and vouchers."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.api.dependencies.security import require_rewards_api_key
from holyloy_api.api.dependencies.session import require_customer_session
from holyloy_api.db.session import get_session
from holyloy_api.models.account import AccountType, Customer
from holyloy_api.models.reward import (
    AffiliateCommission,
    InfinityCycle,
    MerchantReferralCommission,
    RippleReward,
    StepUpReward,
)
from holyloy_api.models.voucher import ShoppingVoucher, ShoppingVoucherStatus
from holyloy_api.models.wallet import CONVERSION_THRESHOLD, BalanceType, TransactionSource, WalletTransaction
from holyloy_api.services.rewards import (
    AccountService,
    AllocationConflict,
    CascadeOutcome,
    CashOutRequestPending,
    CustomerNotFound,
    InsufficientBalance,
    MerchantAffiliateSummary,
    MerchantCashbackSummary,
    MerchantNotFound,
    RewardEngine,
    RewardEngineError,
    RewardQueryService,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
    WalletNotFound,
    WalletSummary,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)


router = APIRouter(prefix="/rewards", tags=["rewards"])


_ERROR_STATUS: tuple[tuple[type[Exception] | tuple[type[Exception], ...], int], ...] = (
    (TokenExpired, status.HTTP_410_GONE),
    ((TokenAlreadyUsed, InsufficientBalance, CashOutRequestPending), status.HTTP_409_CONFLICT),
    ((TokenNotFound, CustomerNotFound, MerchantNotFound, WalletNotFound), status.HTTP_404_NOT_FOUND),
    (AllocationConflict, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def reward_http_error(exc: Exception) -> HTTPException:
    """Translate a reward engine failure into the matching HTTP error."""

    for error_types, status_code in _ERROR_STATUS:
        if isinstance(exc, error_types):
            return HTTPException(status_code=status_code, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Reward processing failed")


class CustomerRegistrationRequest(BaseModel):
    email: str = Field(..., min_length=3, description="Customer email address")
    displayName: Optional[str] = Field(None, description="Name shown to the customer")
    referralCode: Optional[str] = Field(None, description="Referral code of the referring customer or merchant")


class MerchantRegistrationRequest(BaseModel):
    businessName: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    referralCode: Optional[str] = Field(None, description="Referral code of the referring merchant")


class AccountResponse(BaseModel):
    id: UUID
    accountType: str
    email: str
    name: Optional[str]
    referralCode: str
    createdAt: datetime


class EarnPointsRequest(BaseModel):
    points: int = Field(..., gt=0, strict=True, description="Whole points earned")
    merchantId: Optional[UUID] = Field(None, description="Merchant where the points were earned")
    description: Optional[str] = Field(None, description="Ledger description")
    referenceId: Optional[str] = Field(None, max_length=64, description="External order or receipt reference")


class MerchantTransferRequest(BaseModel):
    customerId: UUID
    points: int = Field(..., gt=0, strict=True)
    description: Optional[str] = None


class CascadeResponse(BaseModel):
    transactionId: Optional[UUID]
    points: int
    newBalance: int
    globalNumbersAwarded: List[int]
    stepUpRewards: int
    rippleRewards: int
    infinityCycles: int
    affiliateCommissions: int
    merchantReferralCommissions: int
    vouchersIssued: int
    cashback: Optional[Decimal]


class WalletResponse(BaseModel):
    ownerType: str
    ownerId: UUID
    rewardPointBalance: int
    accumulatedPoints: int
    pointsToNextGlobalNumber: int
    incomeBalance: Decimal
    totalEarned: int
    totalSpent: int
    totalTransferred: int
    totalIncomeEarned: Decimal
    globalNumbers: List[int]


class WalletTransactionResponse(BaseModel):
    id: UUID
    balanceType: str
    transactionType: str
    source: str
    amount: Decimal
    balanceAfter: Decimal
    description: Optional[str]
    referenceId: Optional[str]
    merchantId: Optional[UUID]
    metadata: dict[str, Any]
    createdAt: datetime


class TransactionWindowResponse(BaseModel):
    transactions: List[WalletTransactionResponse]
    nextCursor: Optional[str]


class StepUpRewardResponse(BaseModel):
    id: UUID
    recipientGlobalNumber: int
    triggerGlobalNumber: int
    milestoneFactor: int
    rewardPoints: int
    isAwarded: bool
    awardedAt: Optional[datetime]


class RippleRewardResponse(BaseModel):
    id: UUID
    sourceStepUpRewardId: UUID
    referredCustomerId: UUID
    stepUpAmount: int
    rippleAmount: int
    createdAt: datetime


class InfinityCycleResponse(BaseModel):
    id: UUID
    cycleNumber: int
    rewardNumbers: List[int]
    rewardNumberCount: int
    pointsPerNumber: int
    totalPoints: int
    triggerGlobalNumber: Optional[int]
    createdAt: datetime


class AffiliateCommissionResponse(BaseModel):
    id: UUID
    referredCustomerId: UUID
    sourcePoints: int
    commissionAmount: Decimal
    createdAt: datetime


class AffiliateSummaryResponse(BaseModel):
    referralCount: int
    lifetimeCommission: Decimal
    totalRippleRewards: int
    recentCommissions: List[AffiliateCommissionResponse]


class CashbackEntryResponse(BaseModel):
    id: UUID
    transferTransactionId: Optional[UUID]
    pointsTransferred: int
    cashbackAmount: Decimal
    description: Optional[str]
    createdAt: datetime


class MerchantCashbackResponse(BaseModel):
    totalCashback: Decimal
    instantCashback: Decimal
    referralCommission: Decimal
    todayCashback: Decimal
    thisMonthCashback: Decimal
    totalTransfers: int
    transactions: List[CashbackEntryResponse]


class ReferredMerchantResponse(BaseModel):
    merchantId: UUID
    businessName: str
    lifetimeCommission: Decimal
    referredAt: datetime


class MerchantReferralCommissionResponse(BaseModel):
    id: UUID
    referredMerchantId: UUID
    sourceTransactionId: UUID
    sourcePoints: int
    commissionRate: Decimal
    commissionAmount: Decimal
    status: str
    riskScore: int
    reasons: List[str]
    createdAt: datetime


class MerchantAffiliateResponse(BaseModel):
    referredCustomerCount: int
    customerCommissionTotal: Decimal
    merchantCommissionTotal: Decimal
    blockedCommissionCount: int
    referredMerchants: List[ReferredMerchantResponse]
    recentCommissions: List[MerchantReferralCommissionResponse]


class VoucherResponse(BaseModel):
    id: UUID
    merchantId: UUID
    voucherCode: str
    voucherPoints: int
    originalPoints: int
    ratio: Decimal
    status: str
    expiresAt: datetime


class QRTransferCreateRequest(BaseModel):
    points: int = Field(..., gt=0, strict=True)
    expirationMinutes: Optional[int] = Field(None, ge=1, description="Minutes until the code expires")


class QRTransferResponse(BaseModel):
    id: UUID
    code: str
    points: int
    expiresAt: datetime


class CashOutCreateRequest(BaseModel):
    amount: int = Field(..., gt=0, strict=True, description="Voucher points to cash out")
    paymentMethod: Optional[str] = Field(None, max_length=32)
    paymentDetails: Optional[dict[str, Any]] = None


class CashOutResponse(BaseModel):
    id: UUID
    requestedAmount: int
    availableBalance: int
    status: str
    paymentMethod: Optional[str]
    createdAt: datetime


@router.post(
    "/customers",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_rewards_api_key)],
)
async def register_customer(
    payload: CustomerRegistrationRequest,
    db: AsyncSession = Depends(get_session),
) -> AccountResponse:
    """Register a customer, their wallet, and an optional referral edge."""

    service = AccountService(db)
    try:
        customer = await service.register_customer(
            email=payload.email,
            display_name=payload.displayName,
            referral_code=payload.referralCode,
        )
    except ValueError as exc:
        await db.rollback()
        raise reward_http_error(exc) from exc
    await db.commit()
    await db.refresh(customer)
    return AccountResponse(
        id=customer.id,
        accountType=AccountType.CUSTOMER.value,
        email=customer.email,
        name=customer.display_name,
        referralCode=customer.referral_code,
        createdAt=customer.created_at,
    )


@router.post(
    "/merchants",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_rewards_api_key)],
)
async def register_merchant(
    payload: MerchantRegistrationRequest,
    db: AsyncSession = Depends(get_session),
) -> AccountResponse:
    service = AccountService(db)
    try:
        merchant = await service.register_merchant(
            business_name=payload.businessName,
            email=payload.email,
            referral_code=payload.referralCode,
        )
    except ValueError as exc:
        await db.rollback()
        raise reward_http_error(exc) from exc
    await db.commit()
    await db.refresh(merchant)
    return AccountResponse(
        id=merchant.id,
        accountType=AccountType.MERCHANT.value,
        email=merchant.email,
        name=merchant.business_name,
        referralCode=merchant.referral_code,
        createdAt=merchant.created_at,
    )


@router.post(
    "/customers/{customer_id}/earn",
    response_model=CascadeResponse,
    dependencies=[Depends(require_rewards_api_key)],
)
async def earn_points(
    customer_id: UUID,
    payload: EarnPointsRequest,
    db: AsyncSession = Depends(get_session),
) -> CascadeResponse:
    """Credit purchase points and run the reward cascade."""

    engine = RewardEngine(db)
    try:
        outcome = await engine.earn_points(
            customer_id,
            payload.points,
            source=TransactionSource.PURCHASE,
            description=payload.description,
            merchant_id=payload.merchantId,
            reference_id=payload.referenceId,
        )
    except (RewardEngineError, ValueError) as exc:
        raise reward_http_error(exc) from exc
    return serialize_outcome(outcome)


@router.post(
    "/merchants/{merchant_id}/transfers",
    response_model=CascadeResponse,
    dependencies=[Depends(require_rewards_api_key)],
)
async def transfer_merchant_points(
    merchant_id: UUID,
    payload: MerchantTransferRequest,
    db: AsyncSession = Depends(get_session),
) -> CascadeResponse:
    """Move merchant points to a customer; the merchant earns instant cashback."""

    engine = RewardEngine(db)
    try:
        outcome = await engine.transfer_merchant_points(
            merchant_id,
            payload.customerId,
            payload.points,
            description=payload.description,
        )
    except (RewardEngineError, ValueError) as exc:
        raise reward_http_error(exc) from exc
    return serialize_outcome(outcome)


@router.get(
    "/customers/{customer_id}/wallet",
    response_model=WalletResponse,
    dependencies=[Depends(require_rewards_api_key)],
)
async def get_customer_wallet(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> WalletResponse:
    return await _wallet_response(db, AccountType.CUSTOMER, customer_id)


@router.get(
    "/merchants/{merchant_id}/wallet",
    response_model=WalletResponse,
    dependencies=[Depends(require_rewards_api_key)],
)
async def get_merchant_wallet(
    merchant_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> WalletResponse:
    return await _wallet_response(db, AccountType.MERCHANT, merchant_id)


@router.get(
    "/merchants/{merchant_id}/cashback",
    response_model=MerchantCashbackResponse,
    dependencies=[Depends(require_rewards_api_key)],
)
async def get_merchant_cashback(
    merchant_id: UUID,
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
) -> MerchantCashbackResponse:
    """Instant cashback history with day, month, and lifetime totals."""

    try:
        summary = await RewardQueryService(db).get_merchant_cashback(merchant_id, limit=limit)
    except WalletNotFound as exc:
        raise reward_http_error(exc) from exc
    return _serialize_merchant_cashback(summary)


@router.get(
    "/merchants/{merchant_id}/affiliate",
    response_model=MerchantAffiliateResponse,
    dependencies=[Depends(require_rewards_api_key)],
)
async def get_merchant_affiliate(
    merchant_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> MerchantAffiliateResponse:
    """Referred merchants and customers plus the merchant-referral commission audit."""

    try:
        await AccountService(db).get_merchant(merchant_id)
    except MerchantNotFound as exc:
        raise reward_http_error(exc) from exc
    summary = await RewardQueryService(db).get_merchant_affiliate(merchant_id)
    return _serialize_merchant_affiliate(summary)


@router.get(
    "/customers/{customer_id}/transactions",
    response_model=TransactionWindowResponse,
    dependencies=[Depends(require_rewards_api_key)],
)
async def list_customer_transactions(
    customer_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    balanceType: str | None = Query(None, description="Filter by reward_points or income"),
    db: AsyncSession = Depends(get_session),
) -> TransactionWindowResponse:
    """Return wallet journal entries with pagination."""

    balance_type: BalanceType | None = None
    if balanceType:
        try:
            balance_type = BalanceType(balanceType)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported balance type: {balanceType}") from exc

    decoded_cursor = None
    if cursor:
        try:
            decoded_cursor = decode_time_uuid_cursor(cursor)
        except Exception as exc:  # pragma: no cover - malformed cursors
            raise HTTPException(status_code=400, detail="Invalid transaction cursor") from exc

    service = RewardQueryService(db)
    try:
        entries, next_cursor = await service.list_transactions(
            AccountType.CUSTOMER,
            customer_id,
            limit=limit,
            cursor=decoded_cursor,
            balance_type=balance_type,
        )
    except WalletNotFound as exc:
        raise reward_http_error(exc) from exc

    return TransactionWindowResponse(
        transactions=[_serialize_transaction(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.get(
    "/customers/{customer_id}/step-up-rewards",
    response_model=List[StepUpRewardResponse],
    dependencies=[Depends(require_rewards_api_key)],
)
async def list_step_up_rewards(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[StepUpRewardResponse]:
    rewards = await RewardQueryService(db).list_step_up_rewards(customer_id)
    return [_serialize_step_up(reward) for reward in rewards]


@router.get(
    "/customers/{customer_id}/ripple-rewards",
    response_model=List[RippleRewardResponse],
    dependencies=[Depends(require_rewards_api_key)],
)
async def list_ripple_rewards(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[RippleRewardResponse]:
    """Ripple rewards earned by this customer as a referrer."""

    rewards = await RewardQueryService(db).list_ripple_rewards(AccountType.CUSTOMER, customer_id)
    return [_serialize_ripple(reward) for reward in rewards]


@router.get(
    "/customers/{customer_id}/infinity-cycles",
    response_model=List[InfinityCycleResponse],
    dependencies=[Depends(require_rewards_api_key)],
)
async def list_infinity_cycles(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[InfinityCycleResponse]:
    cycles = await RewardQueryService(db).list_infinity_cycles(customer_id)
    return [_serialize_cycle(cycle) for cycle in cycles]


@router.get(
    "/customers/{customer_id}/affiliate",
    response_model=AffiliateSummaryResponse,
    dependencies=[Depends(require_rewards_api_key)],
)
async def get_affiliate_summary(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> AffiliateSummaryResponse:
    summary = await RewardQueryService(db).get_affiliate_summary(AccountType.CUSTOMER, customer_id)
    return AffiliateSummaryResponse(
        referralCount=summary.referral_count,
        lifetimeCommission=summary.lifetime_commission,
        totalRippleRewards=summary.total_ripple_rewards,
        recentCommissions=[_serialize_commission(item) for item in summary.recent_commissions],
    )


@router.get(
    "/customers/{customer_id}/vouchers",
    response_model=List[VoucherResponse],
    dependencies=[Depends(require_rewards_api_key)],
)
async def list_vouchers(
    customer_id: UUID,
    statusFilter: str | None = Query(None, alias="status", description="Filter voucher status"),
    db: AsyncSession = Depends(get_session),
) -> List[VoucherResponse]:
    voucher_status: ShoppingVoucherStatus | None = None
    if statusFilter:
        try:
            voucher_status = ShoppingVoucherStatus(statusFilter)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported voucher status: {statusFilter}") from exc
    vouchers = await RewardQueryService(db).list_vouchers(customer_id, status=voucher_status)
    return [_serialize_voucher(voucher) for voucher in vouchers]


@router.post(
    "/customers/{customer_id}/voucher-cash-outs",
    response_model=CashOutResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_rewards_api_key)],
)
async def request_voucher_cash_out(
    customer_id: UUID,
    payload: CashOutCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> CashOutResponse:
    engine = RewardEngine(db)
    try:
        request = await engine.request_voucher_cash_out(
            customer_id,
            payload.amount,
            payment_method=payload.paymentMethod,
            payment_details=payload.paymentDetails,
        )
    except (RewardEngineError, ValueError) as exc:
        raise reward_http_error(exc) from exc
    return CashOutResponse(
        id=request.id,
        requestedAmount=int(request.requested_amount),
        availableBalance=int(request.available_balance),
        status=request.status.value,
        paymentMethod=request.payment_method,
        createdAt=request.created_at,
    )


@router.post(
    "/qr-transfers",
    response_model=QRTransferResponse,
    status_code=status.HTTP_201_CREATED,
)
async def generate_qr_transfer(
    payload: QRTransferCreateRequest,
    current_customer: Customer = Depends(require_customer_session),
    db: AsyncSession = Depends(get_session),
) -> QRTransferResponse:
    """Issue a single-use transfer code for the authenticated customer."""

    engine = RewardEngine(db)
    try:
        issued = await engine.generate_qr_transfer(current_customer.id, payload.points, payload.expirationMinutes)
    except (RewardEngineError, ValueError) as exc:
        raise reward_http_error(exc) from exc
    return QRTransferResponse(
        id=issued.token_id,
        code=issued.code,
        points=issued.points,
        expiresAt=issued.expires_at,
    )


@router.post("/qr-transfers/{code}/redeem", response_model=CascadeResponse)
async def redeem_qr_transfer(
    code: str,
    current_customer: Customer = Depends(require_customer_session),
    db: AsyncSession = Depends(get_session),
) -> CascadeResponse:
    """Redeem a transfer code into the authenticated customer's wallet."""

    customer_id = current_customer.id
    engine = RewardEngine(db)
    try:
        outcome = await engine.redeem_qr_transfer(code, customer_id)
    except (RewardEngineError, ValueError) as exc:
        raise reward_http_error(exc) from exc
    return serialize_outcome(outcome)


async def _wallet_response(db: AsyncSession, owner_type: AccountType, owner_id: UUID) -> WalletResponse:
    try:
        summary = await RewardQueryService(db).get_wallet_summary(owner_type, owner_id)
    except WalletNotFound as exc:
        raise reward_http_error(exc) from exc
    return _serialize_wallet(summary)


def serialize_outcome(outcome: CascadeOutcome) -> CascadeResponse:
    return CascadeResponse(
        transactionId=outcome.transaction_id,
        points=outcome.points,
        newBalance=outcome.new_balance,
        globalNumbersAwarded=list(outcome.global_numbers_awarded),
        stepUpRewards=len(outcome.step_up_reward_ids),
        rippleRewards=len(outcome.ripple_reward_ids),
        infinityCycles=len(outcome.infinity_cycle_ids),
        affiliateCommissions=len(outcome.affiliate_commission_ids),
        merchantReferralCommissions=len(outcome.merchant_referral_commission_ids),
        vouchersIssued=len(outcome.voucher_ids),
        cashback=outcome.cashback_amount,
    )


def _serialize_wallet(summary: WalletSummary) -> WalletResponse:
    wallet = summary.wallet
    accumulated = int(wallet.accumulated_points or 0)
    return WalletResponse(
        ownerType=wallet.owner_type.value,
        ownerId=wallet.owner_id,
        rewardPointBalance=int(wallet.reward_point_balance or 0),
        accumulatedPoints=accumulated,
        pointsToNextGlobalNumber=CONVERSION_THRESHOLD - accumulated,
        incomeBalance=Decimal(wallet.income_balance or 0),
        totalEarned=int(wallet.total_earned or 0),
        totalSpent=int(wallet.total_spent or 0),
        totalTransferred=int(wallet.total_transferred or 0),
        totalIncomeEarned=Decimal(wallet.total_income_earned or 0),
        globalNumbers=summary.global_numbers,
    )


def _serialize_transaction(entry: WalletTransaction) -> WalletTransactionResponse:
    return WalletTransactionResponse(
        id=entry.id,
        balanceType=entry.balance_type.value,
        transactionType=entry.transaction_type.value,
        source=entry.source.value,
        amount=Decimal(entry.amount),
        balanceAfter=Decimal(entry.balance_after),
        description=entry.description,
        referenceId=entry.reference_id,
        merchantId=entry.merchant_id,
        metadata=dict(entry.metadata_json or {}),
        createdAt=entry.created_at,
    )


def _serialize_step_up(reward: StepUpReward) -> StepUpRewardResponse:
    return StepUpRewardResponse(
        id=reward.id,
        recipientGlobalNumber=int(reward.recipient_global_number),
        triggerGlobalNumber=int(reward.trigger_global_number),
        milestoneFactor=reward.milestone_factor,
        rewardPoints=int(reward.reward_points),
        isAwarded=bool(reward.is_awarded),
        awardedAt=reward.awarded_at,
    )


def _serialize_ripple(reward: RippleReward) -> RippleRewardResponse:
    return RippleRewardResponse(
        id=reward.id,
        sourceStepUpRewardId=reward.source_step_up_reward_id,
        referredCustomerId=reward.referred_customer_id,
        stepUpAmount=int(reward.step_up_amount),
        rippleAmount=int(reward.ripple_amount),
        createdAt=reward.created_at,
    )


def _serialize_cycle(cycle: InfinityCycle) -> InfinityCycleResponse:
    return InfinityCycleResponse(
        id=cycle.id,
        cycleNumber=cycle.cycle_number,
        rewardNumbers=[int(number) for number in cycle.reward_numbers or []],
        rewardNumberCount=cycle.reward_number_count,
        pointsPerNumber=int(cycle.points_per_number),
        totalPoints=int(cycle.total_points),
        triggerGlobalNumber=cycle.trigger_global_number,
        createdAt=cycle.created_at,
    )


def _serialize_commission(commission: AffiliateCommission) -> AffiliateCommissionResponse:
    return AffiliateCommissionResponse(
        id=commission.id,
        referredCustomerId=commission.referred_customer_id,
        sourcePoints=int(commission.source_points),
        commissionAmount=Decimal(commission.commission_amount),
        createdAt=commission.created_at,
    )


def _serialize_voucher(voucher: ShoppingVoucher) -> VoucherResponse:
    return VoucherResponse(
        id=voucher.id,
        merchantId=voucher.merchant_id,
        voucherCode=voucher.voucher_code,
        voucherPoints=int(voucher.voucher_points),
        originalPoints=int(voucher.original_points),
        ratio=Decimal(voucher.ratio),
        status=voucher.status.value,
        expiresAt=voucher.expires_at,
    )


def _serialize_merchant_cashback(summary: MerchantCashbackSummary) -> MerchantCashbackResponse:
    return MerchantCashbackResponse(
        totalCashback=summary.total_income,
        instantCashback=summary.instant_cashback_total,
        referralCommission=summary.referral_commission_total,
        todayCashback=summary.today_cashback,
        thisMonthCashback=summary.month_cashback,
        totalTransfers=summary.total_transfers,
        transactions=[
            CashbackEntryResponse(
                id=entry.id,
                transferTransactionId=entry.source_transaction_id,
                pointsTransferred=int((entry.metadata_json or {}).get("points_transferred", 0)),
                cashbackAmount=Decimal(entry.amount),
                description=entry.description,
                createdAt=entry.created_at,
            )
            for entry in summary.entries
        ],
    )


def _serialize_merchant_referral(commission: MerchantReferralCommission) -> MerchantReferralCommissionResponse:
    return MerchantReferralCommissionResponse(
        id=commission.id,
        referredMerchantId=commission.referred_merchant_id,
        sourceTransactionId=commission.source_transaction_id,
        sourcePoints=int(commission.source_points),
        commissionRate=Decimal(commission.commission_rate),
        commissionAmount=Decimal(commission.commission_amount),
        status=commission.status.value,
        riskScore=int(commission.risk_score or 0),
        reasons=list(commission.reasons or []),
        createdAt=commission.created_at,
    )


def _serialize_merchant_affiliate(summary: MerchantAffiliateSummary) -> MerchantAffiliateResponse:
    return MerchantAffiliateResponse(
        referredCustomerCount=summary.referred_customer_count,
        customerCommissionTotal=summary.customer_commission_total,
        merchantCommissionTotal=summary.merchant_commission_total,
        blockedCommissionCount=summary.blocked_commission_count,
        referredMerchants=[
            ReferredMerchantResponse(
                merchantId=item.merchant_id,
                businessName=item.business_name,
                lifetimeCommission=item.lifetime_commission,
                referredAt=item.referred_at,
            )
            for item in summary.referred_merchants
        ],
        recentCommissions=[_serialize_merchant_referral(item) for item in summary.recent_commissions],
    )
