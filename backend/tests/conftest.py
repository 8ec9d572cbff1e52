"""Shared test fixtures for all test groups."""

import os

# Set before any app import: get_settings() is cached on first use
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

import hashlib
import hmac
import json
import time

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import get_settings
from app.db.base import Base
from app.db.models.account import Account
from app.services.account_store import AccountStateStore


@pytest.fixture
def db_url(tmp_path) -> str:
    """File-backed SQLite so concurrent sessions get separate connections."""
    return f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"


@pytest.fixture
async def db_engine(db_url) -> AsyncEngine:
    import app.db.models  # noqa: F401

    engine = create_async_engine(db_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def create_account(session_factory):
    """Factory: insert an account linked to a Stripe customer, return its id."""

    async def _create(customer_id: str | None, email: str | None = None) -> int:
        async with session_factory() as session:
            account = Account(stripe_customer_id=customer_id, email=email)
            session.add(account)
            await session.commit()
            return account.id

    return _create


@pytest.fixture
def account_store(session_factory) -> AccountStateStore:
    return AccountStateStore(session_factory, retry_attempts=3, retry_backoff_seconds=0, cas_attempts=5)


@pytest.fixture
async def redis():
    """Provide fakeredis async client."""
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def webhook_secret() -> str:
    return get_settings().stripe_webhook_secret


@pytest.fixture
def sign_payload(webhook_secret):
    """Factory: build a Stripe-Signature header for raw bytes."""

    def _sign(body: bytes, timestamp: int | None = None, secret: str | None = None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        key = (secret or webhook_secret).encode("utf-8")
        mac = hmac.new(key, f"{ts}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
        return f"t={ts},v1={mac}"

    return _sign


@pytest.fixture
def stripe_event():
    """Factory: minimal Stripe event dict."""

    def _event(event_id: str, event_type: str, obj: dict, created: int = 1_700_000_000) -> dict:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created,
            "data": {"object": obj},
        }

    return _event


@pytest.fixture
def signed_delivery(stripe_event, sign_payload):
    """Factory: (raw body, signature header) for an event."""

    def _deliver(event_id: str, event_type: str, obj: dict) -> tuple[bytes, str]:
        body = json.dumps(stripe_event(event_id, event_type, obj)).encode("utf-8")
        return body, sign_payload(body)

    return _deliver
