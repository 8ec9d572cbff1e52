"""Idempotency Ledger: turns at-least-once webhook delivery into effectively-once application.

admit() is a single atomic insert against the backing store, never a
read-then-write, so two simultaneous deliveries of the same event id see
exactly one ADMITTED.

The webhook pipeline does not call admit() up front. It takes a claim:

- DatabaseIdempotencyLedger: the claim writes nothing by itself. Its row is
  staged into the same transaction as the account snapshot write (or
  committed alone when the event changes no snapshot), so a failed delivery
  leaves no record behind, whichever store went down.
- RedisIdempotencyLedger: the claim is the SET NX itself. A failed delivery
  releases it; if Redis is gone by then the key outlives the failure until
  its TTL.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Protocol, runtime_checkable

import redis.asyncio as redis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.exceptions import TransientStoreError
from app.db.base import TRANSIENT_DB_ERRORS
from app.db.models.stripe_event import StripeWebhookEvent

logger = structlog.get_logger(__name__)


class Admission(str, Enum):
    ADMITTED = "admitted"
    ALREADY_PROCESSED = "already_processed"


@runtime_checkable
class LedgerClaim(Protocol):
    """One delivery's hold on an event id, settled by the reconciliation outcome."""

    event_id: str

    def stage(self, session: AsyncSession) -> None:
        """Add the ledger record to a transaction the caller commits."""
        ...

    async def record(self) -> Admission:
        """Commit the ledger record on its own (the event changes no snapshot)."""
        ...

    async def release(self) -> None:
        """Undo the claim after a transient failure."""
        ...


@runtime_checkable
class IdempotencyLedger(Protocol):
    async def admit(self, event_id: str, event_type: str | None = None) -> Admission: ...

    async def claim(self, event_id: str, event_type: str | None = None) -> LedgerClaim | None: ...

    async def release(self, event_id: str) -> None: ...

    async def purge_expired(self, older_than: datetime) -> int: ...


@dataclass
class DatabaseClaim:
    ledger: "DatabaseIdempotencyLedger"
    event_id: str
    event_type: str | None = None

    def stage(self, session: AsyncSession) -> None:
        session.add(StripeWebhookEvent(event_id=self.event_id, event_type=self.event_type))

    async def record(self) -> Admission:
        return await self.ledger.admit(self.event_id, self.event_type)

    async def release(self) -> None:
        # Nothing outlives a rolled-back transaction
        return None


@dataclass
class RedisClaim:
    ledger: "RedisIdempotencyLedger"
    event_id: str

    def stage(self, session: AsyncSession) -> None:
        return None

    async def record(self) -> Admission:
        # SET NX already committed the claim
        return Admission.ADMITTED

    async def release(self) -> None:
        await self.ledger.release(self.event_id)


class DatabaseIdempotencyLedger:
    """Ledger backed by the stripe_webhook_events table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def admit(self, event_id: str, event_type: str | None = None) -> Admission:
        """Insert the event id. Return ALREADY_PROCESSED if the row already exists."""
        try:
            async with self._session_factory() as session:
                try:
                    session.add(StripeWebhookEvent(event_id=event_id, event_type=event_type))
                    await session.commit()
                    return Admission.ADMITTED
                except IntegrityError:
                    await session.rollback()
                    return Admission.ALREADY_PROCESSED
        except TRANSIENT_DB_ERRORS as exc:
            raise TransientStoreError(f"Idempotency ledger unavailable: {exc}") from exc

    async def claim(self, event_id: str, event_type: str | None = None) -> DatabaseClaim | None:
        """Return a claim, or None if the event id is already recorded.

        The lookup only short-circuits redeliveries. Two concurrent deliveries
        can both get a claim; the primary key admits one of them at commit.
        """
        try:
            async with self._session_factory() as session:
                existing = await session.get(StripeWebhookEvent, event_id)
        except TRANSIENT_DB_ERRORS as exc:
            raise TransientStoreError(f"Idempotency ledger unavailable: {exc}") from exc
        if existing is not None:
            return None
        return DatabaseClaim(self, event_id, event_type)

    async def release(self, event_id: str) -> None:
        """Delete an event's record so its next delivery is applied again."""
        try:
            async with self._session_factory() as session:
                await session.execute(delete(StripeWebhookEvent).where(StripeWebhookEvent.event_id == event_id))
                await session.commit()
        except TRANSIENT_DB_ERRORS as exc:
            raise TransientStoreError(f"Idempotency ledger unavailable: {exc}") from exc
        logger.info("idempotency_admission_released", event_id=event_id, backend="database")

    async def purge_expired(self, older_than: datetime) -> int:
        """Delete records processed before older_than. Returns the number removed."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(StripeWebhookEvent).where(StripeWebhookEvent.processed_at < older_than)
            )
            await session.commit()
            return result.rowcount or 0


class RedisIdempotencyLedger:
    """Ledger backed by Redis keys that expire after the retention window."""

    KEY_PREFIX = "billing:stripe_event:"

    def __init__(self, client: redis.Redis, retention: timedelta):
        self._redis = client
        self._ttl_seconds = int(retention.total_seconds())

    def _key(self, event_id: str) -> str:
        return f"{self.KEY_PREFIX}{event_id}"

    async def admit(self, event_id: str, event_type: str | None = None) -> Admission:
        value = f"{event_type or ''}|{datetime.now(UTC).isoformat()}"
        try:
            created = await self._redis.set(self._key(event_id), value, nx=True, ex=self._ttl_seconds)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise TransientStoreError(f"Idempotency ledger unavailable: {exc}") from exc
        return Admission.ADMITTED if created else Admission.ALREADY_PROCESSED

    async def claim(self, event_id: str, event_type: str | None = None) -> RedisClaim | None:
        if await self.admit(event_id, event_type) == Admission.ALREADY_PROCESSED:
            return None
        return RedisClaim(self, event_id)

    async def release(self, event_id: str) -> None:
        try:
            await self._redis.delete(self._key(event_id))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise TransientStoreError(f"Idempotency ledger unavailable: {exc}") from exc
        logger.info("idempotency_admission_released", event_id=event_id, backend="redis")

    async def purge_expired(self, older_than: datetime) -> int:
        # Keys expire on their own TTL
        return 0


def build_idempotency_ledger(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis_client: redis.Redis | None = None,
) -> IdempotencyLedger:
    """Create the ledger selected by settings.idempotency_backend."""
    backend = settings.idempotency_backend.lower()
    if backend == "redis":
        if redis_client is None:
            raise ValueError("Redis idempotency backend requires a Redis client")
        return RedisIdempotencyLedger(redis_client, timedelta(days=settings.idempotency_retention_days))
    if backend == "database":
        if session_factory is None:
            raise ValueError("Database idempotency backend requires a session factory")
        return DatabaseIdempotencyLedger(session_factory)
    raise ValueError(f"Unknown idempotency backend: {settings.idempotency_backend}")
