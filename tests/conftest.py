import os
import sys
import tempfile

# Must be set before database / main are imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./.pytest-preorder.db"
os.environ.setdefault("ENVIRONMENT", "test")
os.environ["ADMIN_EMAILS"] = "admin@example.com, ops@example.com"
os.environ["SENTRY_ENABLE"] = "false"
os.environ.pop("RATE_LIMIT_REDIS_URL", None)
os.environ["STORAGE_PATH"] = os.path.join(tempfile.gettempdir(), "preorder-test-uploads")
os.environ["BONUS_PACK_TOKEN_SECRET"] = "test-bonus-pack-secret"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

# Add parent directory to path to allow importing models and main
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import get_session, get_session_factory
from main import app
from models import AuthSession, User, generate_session_token, hash_token
from services.rate_limiter import InMemoryRateLimitStore, reset_rate_limiters
from storage import DiskStorageProvider, get_storage_provider

ADMIN_EMAIL = "admin@example.com"
READER_EMAIL = "reader@example.com"
OTHER_EMAIL = "other@example.com"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def png_bytes(seed: bytes = b"", size: int = 512) -> bytes:
    """A PNG-signed payload, distinct per seed so hashes differ."""
    body = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + seed
    return body + b"\x00" * max(0, size - len(body))


def jpeg_bytes(seed: bytes = b"", size: int = 512) -> bytes:
    body = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00" + seed
    return body + b"\x00" * max(0, size - len(body))


def pdf_bytes(seed: bytes = b"", extra: bytes = b"", size: int = 512) -> bytes:
    body = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n" + extra + seed
    return body + b" " * max(0, size - len(body))


@pytest_asyncio.fixture(name="engine")
async def engine_fixture(tmp_path):
    # File-backed so the entitlement resolver's concurrent sessions see committed rows
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        future=True,
        poolclass=NullPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(name="session")
async def session_fixture(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="rate_store", autouse=True)
def rate_store_fixture(clock):
    store = InMemoryRateLimitStore(clock=clock)
    reset_rate_limiters(store)
    yield store
    reset_rate_limiters()


@pytest.fixture(name="storage")
def storage_fixture(tmp_path):
    return DiskStorageProvider(str(tmp_path / "uploads"))


@pytest_asyncio.fixture(name="client")
async def client_fixture(session: AsyncSession, session_factory, storage):
    def get_session_override():
        return session

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_storage_provider] = lambda: storage

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def create_user_and_token(session: AsyncSession, email: str):
    """Create a user plus a live session; returns (user, bearer token)."""
    user = User(email=email)
    session.add(user)
    await session.commit()
    await session.refresh(user)

    token = generate_session_token()
    session.add(
        AuthSession(
            email=user.email,
            user_id=user.id,
            session_token_hash=hash_token(token),
        )
    )
    await session.commit()
    return user, token


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture(name="reader")
async def reader_fixture(session: AsyncSession):
    return await create_user_and_token(session, READER_EMAIL)


@pytest_asyncio.fixture(name="other_reader")
async def other_reader_fixture(session: AsyncSession):
    return await create_user_and_token(session, OTHER_EMAIL)


@pytest_asyncio.fixture(name="admin")
async def admin_fixture(session: AsyncSession):
    return await create_user_and_token(session, ADMIN_EMAIL)


async def make_receipt(session: AsyncSession, user_id: int, status: str = "PENDING", **fields):
    """Insert a receipt row directly, bypassing the upload pipeline."""
    from models import Receipt

    receipt = Receipt(
        user_id=user_id,
        retailer=fields.pop("retailer", "Amazon"),
        file_hash=fields.pop("file_hash", None) or generate_session_token(),
        file_url=fields.pop("file_url", "/uploads/receipts/test.png"),
        mime_type=fields.pop("mime_type", "image/png"),
        file_size=fields.pop("file_size", 512),
        status=status,
        **fields,
    )
    session.add(receipt)
    await session.commit()
    await session.refresh(receipt)
    return receipt
