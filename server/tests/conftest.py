"""
Shared test configuration and fixtures for the SignDesk test suite.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, List

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from signdesk.core.config import Settings, get_settings
from signdesk.db.session import init_models
from signdesk.integrations.esignature import SignerInput
from signdesk.integrations.esignature.mock_adapter import MockESignatureProvider
from signdesk.integrations.esignature.signing import SIGNATURE_HEADER, compute_signature
from signdesk.main import create_application
from signdesk.services.signature_service import SignatureService

WEBHOOK_SECRET = "whsec-test-secret"
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    """In-memory database shared by every session of one test."""
    test_engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    await init_models(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture
def provider() -> MockESignatureProvider:
    return MockESignatureProvider()


@pytest.fixture
def service(provider: MockESignatureProvider) -> SignatureService:
    return SignatureService(provider)


@pytest.fixture
def signers() -> List[SignerInput]:
    return [
        SignerInput(name="Avery Buyer", email="Avery.Buyer@Example.com "),
        SignerInput(name="Sam Seller", email="sam.seller@example.com"),
    ]


@pytest.fixture
def test_settings() -> Settings:
    return Settings(environment="test", esign_provider="mock", esign_webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def app(
    test_settings: Settings,
    provider: MockESignatureProvider,
    session_factory: async_sessionmaker[AsyncSession],
) -> FastAPI:
    return create_application(test_settings, provider=provider, session_factory=session_factory)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def make_token() -> Callable[..., str]:
    def _make_token(subject: str = "ops@signdesk.test", roles: List[str] | None = None) -> str:
        payload = {
            "sub": subject,
            "roles": ["admin"] if roles is None else roles,
            "exp": datetime.now(timezone.utc) + timedelta(minutes=15),
        }
        return jwt.encode(payload, get_settings().secret_key, algorithm="HS256")

    return _make_token


@pytest.fixture
def admin_headers(make_token: Callable[..., str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def sign_webhook() -> Callable[[bytes], Dict[str, str]]:
    def _sign(body: bytes) -> Dict[str, str]:
        return {SIGNATURE_HEADER: compute_signature(body, WEBHOOK_SECRET), "Content-Type": "application/json"}

    return _sign
