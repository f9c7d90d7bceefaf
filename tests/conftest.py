import os

from cryptography.fernet import Fernet

# Settings are read at import time; pin a hermetic config before anything imports invitemarket
os.environ.setdefault("TELEMETRY_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRETS_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("INTERNAL_ADMIN_KEY", "test-internal")
os.environ.setdefault("CHAIN_ID", "84532")
os.environ.setdefault("PUBLIC_BASE_URL", "https://invite.test")

import asyncio  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

# Import Base + all models so metadata is complete
from invitemarket.models import Base  # noqa: E402

from invitemarket.main import app  # noqa: E402
from invitemarket.core.crypto import SecretCipher  # noqa: E402
from invitemarket.core.db import get_db  # noqa: E402
from invitemarket.api.deps import get_cipher, get_identity_resolver, get_settlement_adapter  # noqa: E402
from invitemarket.services.identity import IdentityResolver  # noqa: E402
from invitemarket.services.settlement import SettlementReceipt, SettlementResult  # noqa: E402

from fixtures_seed import seed_listing  # noqa: E402,F401


def _test_db_url(tmp_path) -> str:
    # a file, not :memory:, so concurrent sessions see the same database
    return os.getenv("DATABASE_URL_TEST") or f"sqlite+aiosqlite:///{tmp_path / 'market.db'}"


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    url = _test_db_url(tmp_path)
    connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
    engine = create_async_engine(url, connect_args=connect_args)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(Fernet.generate_key().decode())


class FakeSettlement:
    """
    Settles instantly. The X-PAYMENT value is taken as the payer address, so tests can
    play several buyers; `next_result` forces a specific facilitator answer.
    """

    def __init__(self):
        self.calls: list[dict] = []
        self.next_result: SettlementResult | None = None

    async def settle(self, **kwargs) -> SettlementResult:
        self.calls.append(kwargs)
        await asyncio.sleep(0)
        if self.next_result is not None:
            return self.next_result
        proof = kwargs.get("payment_proof")
        if not proof:
            return SettlementResult(
                status=402,
                response_body={"x402Version": 1, "error": "X-PAYMENT header is required", "accepts": []},
            )
        return SettlementResult(
            status=200,
            receipt=SettlementReceipt(payer=proof.lower(), transaction="0x" + "ab" * 32, network="base-sepolia"),
        )


@pytest.fixture
def settlement() -> FakeSettlement:
    return FakeSettlement()


@pytest.fixture
def identity_resolver() -> IdentityResolver:
    return IdentityResolver([])


@pytest_asyncio.fixture
async def client(session_factory, settlement, cipher, identity_resolver):
    """
    HTTP client against the app with a session per request (as in production) and
    the lifespan-built collaborators replaced by test doubles.
    """
    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_settlement_adapter] = lambda: settlement
    app.dependency_overrides[get_cipher] = lambda: cipher
    app.dependency_overrides[get_identity_resolver] = lambda: identity_resolver

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
