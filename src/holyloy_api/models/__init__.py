"""SQLAlchemy models package."""

from .account import AccountType, Customer, Merchant, Referral  # noqa: F401
from .qr_transfer import QRTransferToken  # noqa: F401
from .redrive_run import CascadeRedriveRun  # noqa: F401
from .reward import (  # noqa: F401
    AffiliateCommission,
    InfinityCycle,
    MerchantReferralCommission,
    MerchantReferralStatus,
    RippleReward,
    StepUpReward,
)
from .reward_number import (  # noqa: F401
    GLOBAL_NUMBER_SEQUENCE,
    GlobalNumberCounter,
    GlobalNumberOrigin,
    GlobalSerialNumber,
)
from .voucher import CashOutRequest, CashOutStatus, ShoppingVoucher, ShoppingVoucherStatus  # noqa: F401
from .wallet import (  # noqa: F401
    CONVERSION_THRESHOLD,
    EARNING_SOURCES,
    BalanceType,
    RewardWallet,
    TransactionSource,
    TransactionType,
    WalletTransaction,
)

__all__ = [
    "AccountType",
    "AffiliateCommission",
    "BalanceType",
    "CONVERSION_THRESHOLD",
    "CashOutRequest",
    "CashOutStatus",
    "CascadeRedriveRun",
    "Customer",
    "EARNING_SOURCES",
    "GLOBAL_NUMBER_SEQUENCE",
    "GlobalNumberCounter",
    "GlobalNumberOrigin",
    "GlobalSerialNumber",
    "InfinityCycle",
    "Merchant",
    "MerchantReferralCommission",
    "MerchantReferralStatus",
    "QRTransferToken",
    "Referral",
    "RewardWallet",
    "RippleReward",
    "ShoppingVoucher",
    "ShoppingVoucherStatus",
    "StepUpReward",
    "TransactionSource",
    "TransactionType",
    "WalletTransaction",
]
