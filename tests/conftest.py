import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import holyloy_api.models  # noqa: E402,F401
from holyloy_api.app import create_app  # noqa: E402
from holyloy_api.db.base import Base  # noqa: E402
from holyloy_api.db.session import get_session  # noqa: E402
from holyloy_api.observability.rewards import get_rewards_store  # noqa: E402
from holyloy_api.services.rewards import AccountService  # noqa: E402


@pytest.fixture(autouse=True)
def reset_rewards_store():
    store = get_rewards_store()
    store.reset()
    yield store
    store.reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on a file-backed database so each one holds its own connection."""

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rewards.db'}",
        future=True,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def register_accounts(session_factory):
    """Return a helper that registers a merchant and customers in one commit."""

    async def _register(*emails: str, referrers: dict[str, str] | None = None, merchant_email: str | None = None):
        referrers = referrers or {}
        async with session_factory() as session:
            service = AccountService(session)
            merchant = None
            codes: dict[str, str] = {}
            if merchant_email:
                merchant = await service.register_merchant(business_name="Corner Store", email=merchant_email)
                codes[merchant_email] = merchant.referral_code
            customers = []
            for email in emails:
                referrer_email = referrers.get(email)
                customer = await service.register_customer(
                    email=email,
                    referral_code=codes[referrer_email] if referrer_email else None,
                )
                codes[email] = customer.referral_code
                customers.append(customer)
            await session.commit()
        return merchant, customers

    return _register
