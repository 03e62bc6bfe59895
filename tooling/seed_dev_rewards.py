"""Seed a small referral graph and a few earn events for local development."""

from __future__ import annotations

import asyncio
import os
from typing import TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from holyloy_api.core.settings import settings
from holyloy_api.db.base import Base
from holyloy_api.models import Customer, Merchant
from holyloy_api.services.rewards import AccountService, RewardEngine


class SeedCustomer(TypedDict):
    email: str
    display_name: str
    referred_by: str | None
    points: int


DEV_MERCHANT_EMAIL = os.getenv("DEV_MERCHANT_EMAIL", "merchant@holyloy.dev").lower()

DEV_CUSTOMERS: list[SeedCustomer] = [
    {"email": "alice@holyloy.dev", "display_name": "Alice QA", "referred_by": None, "points": 3000},
    {"email": "bob@holyloy.dev", "display_name": "Bob QA", "referred_by": "alice@holyloy.dev", "points": 1500},
    {"email": "carol@holyloy.dev", "display_name": "Carol QA", "referred_by": "merchant", "points": 4500},
]


async def _get_or_create_merchant(session: AsyncSession) -> Merchant:
    existing = await session.execute(select(Merchant).where(Merchant.email == DEV_MERCHANT_EMAIL))
    merchant = existing.scalar_one_or_none()
    if merchant is None:
        merchant = await AccountService(session).register_merchant(
            business_name="Holyloy Dev Store",
            email=DEV_MERCHANT_EMAIL,
        )
        await session.commit()
    return merchant


async def seed_rewards(session: AsyncSession) -> None:
    accounts = AccountService(session)
    merchant = await _get_or_create_merchant(session)
    codes: dict[str, str] = {"merchant": merchant.referral_code}

    for entry in DEV_CUSTOMERS:
        existing = await session.execute(select(Customer).where(Customer.email == entry["email"]))
        customer = existing.scalar_one_or_none()
        if customer is not None:
            codes[entry["email"]] = customer.referral_code
            continue

        customer = await accounts.register_customer(
            email=entry["email"],
            display_name=entry["display_name"],
            referral_code=codes.get(entry["referred_by"]) if entry["referred_by"] else None,
        )
        await session.commit()
        codes[entry["email"]] = customer.referral_code

        engine = RewardEngine(session)
        await engine.earn_points(
            customer.id,
            entry["points"],
            description="Development seed purchase",
            merchant_id=merchant.id,
        )


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        if settings.database_url.startswith("sqlite"):
            import holyloy_api.models  # noqa: F401

            async with engine.begin() as connection:
                await connection.run_sync(Base.metadata.create_all)
        async with session_factory() as session:
            await seed_rewards(session)
        print("Development reward accounts ready ✅")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
