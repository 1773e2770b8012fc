import os

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from models.database import Base, User
from sensitive.keys import EncryptionKeyProvider, LookupKeyProvider, reset_default_keys


@pytest.fixture(autouse=True)
def _isolate_key_config(monkeypatch):
    """Start every test with no key configuration and no cached providers."""
    monkeypatch.delenv("ENCRYPTION_KEY", raising=False)
    monkeypatch.delenv("SSN_HMAC_KEY", raising=False)
    reset_default_keys()
    yield
    reset_default_keys()


@pytest.fixture()
def encryption_keys():
    return EncryptionKeyProvider(os.urandom(32))


@pytest.fixture()
def other_encryption_keys():
    return EncryptionKeyProvider(os.urandom(32))


@pytest.fixture()
def lookup_keys():
    return LookupKeyProvider("test-hmac-key")


@pytest.fixture()
async def engine():
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield test_engine
    finally:
        await test_engine.dispose()


@pytest.fixture()
async def db(engine):
    sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with sessions() as session:
        yield session


@pytest.fixture()
def make_user():
    """Build (unsaved) users with unique emails."""
    counter = {"n": 0}

    def _make(**fields) -> User:
        counter["n"] += 1
        fields.setdefault("email", f"user{counter['n']}@example.com")
        fields.setdefault("first_name", "Test")
        fields.setdefault("last_name", f"User{counter['n']}")
        return User(**fields)

    return _make
