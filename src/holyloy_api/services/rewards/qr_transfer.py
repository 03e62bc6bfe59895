"""Peer-to-peer point transfers through single-use QR tokens."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.account import AccountType
from holyloy_api.models.qr_transfer import QRTransferToken
from holyloy_api.models.reward_number import GlobalSerialNumber
from holyloy_api.models.wallet import BalanceType, TransactionSource, WalletTransaction

from .allocator import GlobalNumberAllocator
from .common import ensure_aware, require_points, utcnow
from .errors import InsufficientBalance, TokenAlreadyUsed, TokenExpired, TokenNotFound
from .ledger import LedgerService


@dataclass(slots=True)
class QRRedemption:
    token: QRTransferToken
    debit: WalletTransaction
    credit: WalletTransaction
    global_numbers: list[GlobalSerialNumber] = field(default_factory=list)


class QRTransferBroker:
    """Issue and redeem transfer tokens.

    Balance is checked when a token is generated but not reserved; redemption
    re-checks it and moves the points in the caller's transaction.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: LedgerService | None = None,
        allocator: GlobalNumberAllocator | None = None,
        default_expiration_minutes: int = 15,
        max_expiration_minutes: int = 24 * 60,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)
        self._allocator = allocator or GlobalNumberAllocator(db_session)
        self._default_expiration_minutes = default_expiration_minutes
        self._max_expiration_minutes = max_expiration_minutes

    async def generate(
        self,
        sender_id: UUID,
        points: int,
        expiration_minutes: int | None = None,
    ) -> QRTransferToken:
        require_points(points)
        minutes = expiration_minutes if expiration_minutes is not None else self._default_expiration_minutes
        if minutes < 1 or minutes > self._max_expiration_minutes:
            raise ValueError(f"expiration_minutes must be between 1 and {self._max_expiration_minutes}")

        wallet = await self._ledger.get_wallet(AccountType.CUSTOMER, sender_id)
        if int(wallet.reward_point_balance or 0) < points:
            raise InsufficientBalance(wallet.id, points, wallet.reward_point_balance)

        token = QRTransferToken(
            code=secrets.token_urlsafe(24),
            sender_id=sender_id,
            points=points,
            expires_at=utcnow() + timedelta(minutes=minutes),
            is_used=False,
        )
        self._db.add(token)
        await self._db.flush()
        logger.info(
            "Generated QR transfer token",
            token_id=str(token.id),
            sender_id=str(sender_id),
            points=points,
            expires_at=token.expires_at.isoformat(),
        )
        return token

    async def redeem(self, code: str, receiver_id: UUID, *, now: datetime | None = None) -> QRRedemption:
        """Debit the sender, credit the receiver and consume the token together.

        Any failure leaves the token unused once the caller rolls back.
        """

        result = await self._db.execute(
            select(QRTransferToken)
            .where(QRTransferToken.code == code)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        token = result.scalar_one_or_none()
        if token is None:
            raise TokenNotFound("QR transfer code not recognised")
        if token.is_used:
            raise TokenAlreadyUsed("QR transfer code has already been redeemed")
        if ensure_aware(token.expires_at) <= (now or utcnow()):
            raise TokenExpired("QR transfer code has expired")
        if token.sender_id == receiver_id:
            raise ValueError("A QR transfer cannot be redeemed by its sender")

        wallets = await self._ledger.lock_accounts(
            [(AccountType.CUSTOMER, token.sender_id), (AccountType.CUSTOMER, receiver_id)]
        )
        sender_wallet = wallets[(AccountType.CUSTOMER, token.sender_id)]
        receiver_wallet = wallets[(AccountType.CUSTOMER, receiver_id)]

        points = int(token.points)
        debit = await self._ledger.debit(
            sender_wallet,
            points,
            balance_type=BalanceType.REWARD_POINTS,
            source=TransactionSource.QR_TRANSFER_OUT,
            description="QR transfer sent",
            reference_id=str(token.id),
            metadata={"receiver_id": str(receiver_id)},
        )
        credit = await self._ledger.credit(
            receiver_wallet,
            points,
            balance_type=BalanceType.REWARD_POINTS,
            source=TransactionSource.QR_TRANSFER_IN,
            description="QR transfer received",
            reference_id=str(token.id),
            metadata={"sender_id": str(token.sender_id)},
        )
        numbers = await self._allocator.maybe_convert(receiver_wallet, points)

        token.is_used = True
        token.used_at = utcnow()
        token.receiver_id = receiver_id
        await self._db.flush()

        logger.info(
            "Redeemed QR transfer token",
            token_id=str(token.id),
            sender_id=str(token.sender_id),
            receiver_id=str(receiver_id),
            points=points,
        )
        return QRRedemption(token=token, debit=debit, credit=credit, global_numbers=numbers)


__all__ = ["QRRedemption", "QRTransferBroker"]
