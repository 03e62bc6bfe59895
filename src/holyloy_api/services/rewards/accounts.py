"""Customer and merchant registration plus referral graph lookups."""

from __future__ import annotations

import secrets
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from holyloy_api.models.account import AccountType, Customer, Merchant, Referral

from .errors import CustomerNotFound, MerchantNotFound
from .ledger import LedgerService

_REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class AccountService:
    """Owns account lifecycle; every registered account gets its wallet up front."""

    def __init__(self, db_session: AsyncSession, *, ledger: LedgerService | None = None) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)

    async def get_customer(self, customer_id: UUID) -> Customer:
        customer = await self._db.get(Customer, customer_id)
        if customer is None:
            raise CustomerNotFound(f"Customer {customer_id} not found")
        return customer

    async def get_merchant(self, merchant_id: UUID) -> Merchant:
        merchant = await self._db.get(Merchant, merchant_id)
        if merchant is None:
            raise MerchantNotFound(f"Merchant {merchant_id} not found")
        return merchant

    async def get_active_referral(self, customer_id: UUID) -> Referral | None:
        stmt = select(Referral).where(
            Referral.referee_customer_id == customer_id,
            Referral.is_active.is_(True),
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_merchant_referral(self, merchant_id: UUID) -> Referral | None:
        stmt = select(Referral).where(
            Referral.referee_merchant_id == merchant_id,
            Referral.is_active.is_(True),
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def register_customer(
        self,
        *,
        email: str,
        display_name: str | None = None,
        referral_code: str | None = None,
    ) -> Customer:
        """Create a customer, their wallet, and the referral edge when a code is given."""

        normalized_email = email.strip().lower()
        if await self._email_taken(Customer, normalized_email):
            raise ValueError("A customer with this email already exists")

        referrer: tuple[AccountType, UUID] | None = None
        if referral_code:
            referrer = await self._resolve_referral_code(referral_code)
            if referrer is None:
                raise ValueError("Unknown referral code")

        customer = Customer(
            email=normalized_email,
            display_name=display_name,
            referral_code=await self._generate_unique_referral_code(),
        )
        self._db.add(customer)
        await self._db.flush()
        await self._ledger.ensure_wallet(AccountType.CUSTOMER, customer.id)

        if referrer is not None:
            referrer_type, referrer_id = referrer
            self._db.add(
                Referral(
                    referrer_type=referrer_type,
                    referrer_id=referrer_id,
                    referee_customer_id=customer.id,
                    referral_code=referral_code.strip().upper(),
                )
            )
            await self._db.flush()

        logger.info(
            "Registered customer",
            customer_id=str(customer.id),
            referred_by=str(referrer[1]) if referrer else None,
        )
        return customer

    async def register_merchant(
        self,
        *,
        business_name: str,
        email: str,
        referral_code: str | None = None,
    ) -> Merchant:
        """Create a merchant and its wallet; only another merchant may refer it."""

        normalized_email = email.strip().lower()
        if await self._email_taken(Merchant, normalized_email):
            raise ValueError("A merchant with this email already exists")

        referrer_id: UUID | None = None
        if referral_code:
            referrer = await self._resolve_referral_code(referral_code)
            if referrer is None:
                raise ValueError("Unknown referral code")
            if referrer[0] is not AccountType.MERCHANT:
                raise ValueError("Merchant referral codes must belong to a merchant")
            referrer_id = referrer[1]

        merchant = Merchant(
            business_name=business_name.strip(),
            email=normalized_email,
            referral_code=await self._generate_unique_referral_code(),
        )
        self._db.add(merchant)
        await self._db.flush()
        await self._ledger.ensure_wallet(AccountType.MERCHANT, merchant.id)

        if referrer_id is not None:
            self._db.add(
                Referral(
                    referrer_type=AccountType.MERCHANT,
                    referrer_id=referrer_id,
                    referee_merchant_id=merchant.id,
                    referral_code=referral_code.strip().upper(),
                )
            )
            await self._db.flush()

        logger.info(
            "Registered merchant",
            merchant_id=str(merchant.id),
            referred_by=str(referrer_id) if referrer_id else None,
        )
        return merchant

    async def _email_taken(self, model: type[Customer] | type[Merchant], email: str) -> bool:
        result = await self._db.execute(select(model.id).where(model.email == email))
        return result.first() is not None

    async def _resolve_referral_code(self, code: str) -> tuple[AccountType, UUID] | None:
        normalized = code.strip().upper()
        customer_id = (
            await self._db.execute(select(Customer.id).where(Customer.referral_code == normalized))
        ).scalar_one_or_none()
        if customer_id is not None:
            return AccountType.CUSTOMER, customer_id

        merchant_id = (
            await self._db.execute(select(Merchant.id).where(Merchant.referral_code == normalized))
        ).scalar_one_or_none()
        if merchant_id is not None:
            return AccountType.MERCHANT, merchant_id
        return None

    async def _generate_unique_referral_code(self) -> str:
        while True:
            code = "".join(secrets.choice(_REFERRAL_CODE_ALPHABET) for _ in range(8))
            if await self._resolve_referral_code(code) is None:
                return code


__all__ = ["AccountService"]
