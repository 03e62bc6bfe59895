"""Reward ledger and cascade service exports."""

from .accounts import AccountService  # noqa: F401
from .engine import (  # noqa: F401
    CascadeOutcome,
    CascadeTask,
    CascadeTaskKind,
    IssuedQRTransfer,
    RewardEngine,
)
from .errors import (  # noqa: F401
    AllocationConflict,
    CashOutRequestPending,
    CustomerNotFound,
    DuplicateMilestone,
    InsufficientBalance,
    MerchantNotFound,
    RewardEngineError,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
    WalletNotFound,
)
from .ledger import LedgerService  # noqa: F401
from .merchant_referral import CommissionGuard, MerchantReferralEvaluator  # noqa: F401
from .queries import (  # noqa: F401
    AffiliateSummary,
    MerchantAffiliateSummary,
    MerchantCashbackSummary,
    RewardQueryService,
    WalletSummary,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)
