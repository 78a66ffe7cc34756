"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- In-memory SQLite database with the real schema
- Static settings
- RSA key material in the encodings operators paste into payment_config
- User factory and gateway notification signer
- Scripted AI provider
- API test client with dependency overrides
"""

import base64
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")

from qc_billing.config import Settings
from qc_billing.db.models import Base, PaymentConfig, PaymentOrder, User
from qc_billing.models.api import AnalysisResult, ContentCheckResult, OrderStatus
from qc_billing.models.domain import AlipayConfig, InlineImage
from qc_billing.services.signature import canonicalize, load_private_key

TEST_APP_ID = "2021000000000001"

# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test, schema from the ORM metadata."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    """Static settings with signature verification enforced."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        tracing_enabled=False,
        alipay_allow_unverified_notify=False,
        gemini_api_key="test-gemini-key",
    )


@pytest.fixture
def tolerant_settings() -> Settings:
    """Settings that process notifications whose signature fails."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        tracing_enabled=False,
        alipay_allow_unverified_notify=True,
    )


# ============================================================================
# Key Material Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def pkcs8_private_key_b64(rsa_private_key: rsa.RSAPrivateKey) -> str:
    """Bare base64 PKCS#8 DER, as exported by the gateway's key tool."""
    der = rsa_private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(der).decode("ascii")


@pytest.fixture(scope="session")
def pkcs1_private_key_b64(rsa_private_key: rsa.RSAPrivateKey) -> str:
    """Bare base64 PKCS#1 DER (traditional OpenSSL)."""
    der = rsa_private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(der).decode("ascii")


@pytest.fixture(scope="session")
def public_key_b64(rsa_private_key: rsa.RSAPrivateKey) -> str:
    """Bare base64 SubjectPublicKeyInfo DER."""
    der = rsa_private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


@pytest.fixture(scope="session")
def other_public_key_b64() -> str:
    """A public key that did not sign anything in these tests."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    der = key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


@pytest.fixture
def alipay_config(pkcs8_private_key_b64: str, public_key_b64: str) -> AlipayConfig:
    """Fully configured gateway credentials."""
    return AlipayConfig(
        app_id=TEST_APP_ID,
        private_key=pkcs8_private_key_b64,
        public_key=public_key_b64,
        enabled=True,
    )


@pytest.fixture
def sign_as_gateway(pkcs8_private_key_b64: str) -> Callable[[dict[str, str]], dict[str, str]]:
    """
    Sign notification params the way the gateway does.

    The gateway's content excludes sign and sign_type.
    """
    key = load_private_key(pkcs8_private_key_b64)

    def _sign(params: dict[str, str]) -> dict[str, str]:
        from cryptography.hazmat.primitives import hashes
        from cryptography.hazmat.primitives.asymmetric import padding

        content = canonicalize(params, exclude=("sign", "sign_type"))
        signature = key.sign(content.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        return {**params, "sign": base64.b64encode(signature).decode("ascii")}

    return _sign


def build_notification(
    order_id: str,
    total_amount: str = "9.90",
    trade_status: str = "TRADE_SUCCESS",
    trade_no: str = "2024031522001400000000000001",
) -> dict[str, str]:
    """Unsigned notification params as the gateway posts them."""
    return {
        "app_id": TEST_APP_ID,
        "charset": "utf-8",
        "notify_time": "2024-03-15 10:00:05",
        "notify_type": "trade_status_sync",
        "out_trade_no": order_id,
        "sign_type": "RSA2",
        "total_amount": total_amount,
        "trade_no": trade_no,
        "trade_status": trade_status,
        "version": "1.0",
    }


@pytest.fixture
def notification_builder() -> Callable[..., dict[str, str]]:
    return build_notification


# ============================================================================
# Row Factories
# ============================================================================


@pytest.fixture
def create_user(db: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory that inserts and commits a user."""

    async def _create(
        credits: int = 0,
        device_id: str | None = None,
        is_admin: bool = False,
        nickname: str = "tester",
        user_id: UUID | None = None,
    ) -> User:
        user = User(
            id=user_id or uuid4(),
            nickname=nickname,
            device_id=device_id,
            device_suffix=device_id[-6:] if device_id else None,
            credits=credits,
            is_admin=is_admin,
        )
        db.add(user)
        await db.commit()
        return user

    return _create


@pytest.fixture
def create_order(db: AsyncSession) -> Callable[..., Awaitable[PaymentOrder]]:
    """Factory that inserts a pending pkg_12 order."""

    async def _create(
        user_id: UUID,
        order_id: str = "QC1710468000000ABC123",
        amount: Decimal = Decimal("9.90"),
        credits: int = 12,
    ) -> PaymentOrder:
        order = PaymentOrder(
            order_id=order_id,
            user_id=user_id,
            package_id="pkg_12",
            amount=amount,
            credits=credits,
            status=OrderStatus.PENDING.value,
        )
        db.add(order)
        await db.commit()
        return order

    return _create


@pytest.fixture
def store_alipay_config(
    db: AsyncSession, pkcs8_private_key_b64: str, public_key_b64: str
) -> Callable[..., Awaitable[None]]:
    """Write gateway credentials into payment_config."""

    async def _store(enabled: bool = True, public_key: str | None = None) -> None:
        db.add_all(
            [
                PaymentConfig(key="alipay_appid", value=TEST_APP_ID),
                PaymentConfig(key="alipay_private_key", value=pkcs8_private_key_b64),
                PaymentConfig(
                    key="alipay_public_key",
                    value=public_key if public_key is not None else public_key_b64,
                ),
                PaymentConfig(key="alipay_enabled", value=None, is_enabled=enabled),
            ]
        )
        await db.commit()

    return _store


# ============================================================================
# AI Provider Fixtures
# ============================================================================


class ProviderAPIError(Exception):
    """Stand-in for an SDK error carrying an HTTP code and gRPC-style status."""

    def __init__(self, code: int, message: str, status: str | None = None) -> None:
        self.code = code
        self.status = status
        super().__init__(f"{code} {status or ''}. {message}")


class ScriptedProvider:
    """
    AIProvider whose calls play back a script.

    Each script entry is either a value to return or an exception to raise.
    """

    def __init__(self, script: list[Any] | None = None) -> None:
        self.script = list(script or [])
        self.calls: list[str] = []

    async def _next(self, method: str) -> Any:
        self.calls.append(method)
        outcome = self.script.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def generate_image(self, prompt: str, images: list[InlineImage]) -> str:
        return await self._next("generate_image")

    async def analyze(self, prompt: str, images: list[InlineImage]) -> AnalysisResult:
        return await self._next("analyze")

    async def check_content(self, prompt: str, images: list[InlineImage]) -> ContentCheckResult:
        return await self._next("check_content")


@pytest.fixture
def provider_error() -> type[ProviderAPIError]:
    return ProviderAPIError


@pytest.fixture
def rate_limited() -> Callable[[], ProviderAPIError]:
    return lambda: ProviderAPIError(429, "Rate limit exceeded", "RESOURCE_EXHAUSTED")


@pytest.fixture
def sample_analysis() -> AnalysisResult:
    return AnalysisResult(
        title="Balanced",
        score=82,
        content="Complexion is even with good color.",
        advice=["Sleep before 23:00", "Drink warm water"],
    )


@pytest.fixture
def recorded_sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(recorded_sleeps: list[float]) -> Callable[[float], Awaitable[None]]:
    """Sleep that records the requested delay and returns immediately."""

    async def _sleep(delay: float) -> None:
        recorded_sleeps.append(delay)

    return _sleep


# ============================================================================
# API Client Fixtures
# ============================================================================


@pytest.fixture
def scripted_provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
async def client(
    db: AsyncSession,
    test_settings: Settings,
    scripted_provider: ScriptedProvider,
    fake_sleep: Callable[[float], Awaitable[None]],
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test database and fakes wired in."""
    from qc_billing.api.dependencies import get_ai_provider, get_sleep
    from qc_billing.config import get_settings
    from qc_billing.db.session import get_read_db, get_write_db
    from qc_billing.main import app

    async def _db() -> AsyncGenerator[AsyncSession, None]:
        yield db

    app.dependency_overrides[get_write_db] = _db
    app.dependency_overrides[get_read_db] = _db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_ai_provider] = lambda: scripted_provider
    app.dependency_overrides[get_sleep] = lambda: fake_sleep

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()
