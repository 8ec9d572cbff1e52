"""Account State Store: keyed access to each account's subscription snapshot.

Writes go through update_snapshot(), an atomic read-modify-write guarded by
the account row's version column (compare-and-swap). Two reconciliations for
the same account never interleave a read from one with a write from the
other: the loser of the race sees zero rows updated, re-reads and re-applies.
With the database ledger, the event's ledger row rides in the same commit.

Nothing is cached between calls; every read hits the database.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.core.config import Settings
from app.core.exceptions import DuplicateEventError, LookupMiss, TransientStoreError
from app.db.base import TRANSIENT_DB_ERRORS
from app.db.models.account import Account
from app.domain.billing import SubscriptionSnapshot, SubscriptionStatus
from app.services.idempotency_ledger import LedgerClaim

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SnapshotMutation = Callable[[SubscriptionSnapshot | None], SubscriptionSnapshot | None]


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; stored values are always UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def snapshot_from_row(account: Account) -> SubscriptionSnapshot | None:
    if account.subscription_status is None:
        return None
    return SubscriptionSnapshot(
        subscription_id=account.subscription_id,
        status=SubscriptionStatus(account.subscription_status),
        current_period_end=_aware(account.current_period_end),
        cancel_at_period_end=bool(account.cancel_at_period_end),
        trial_end=_aware(account.trial_end),
        last_applied_event_id=account.last_applied_event_id,
    )


class AccountStateStore:
    """Read/write access to accounts keyed by id, with bounded retries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.2,
        cas_attempts: int = 5,
    ):
        self._session_factory = session_factory
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff = retry_backoff_seconds
        self._cas_attempts = max(1, cas_attempts)

    async def _with_retry(self, operation: Callable[..., Awaitable[T]], *args) -> T:
        """Run operation, retrying transient database errors with exponential backoff.

        Raises:
            TransientStoreError: once the attempts are exhausted
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TRANSIENT_DB_ERRORS),
                stop=stop_after_attempt(self._retry_attempts),
                wait=wait_exponential(multiplier=self._retry_backoff, max=2),
                reraise=True,
                before_sleep=lambda rs: logger.warning(
                    "account_store_retrying",
                    operation=operation.__name__,
                    attempt=rs.attempt_number,
                    error_type=type(rs.outcome.exception()).__name__,
                ),
            ):
                with attempt:
                    return await operation(*args)
        except TRANSIENT_DB_ERRORS as exc:
            logger.error(
                "account_store_unavailable",
                operation=operation.__name__,
                attempts=self._retry_attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise TransientStoreError(f"Account store unavailable: {exc}") from exc
        # Unreachable: the retry loop always returns or raises
        raise RuntimeError("account_store_exhausted_retries")  # pragma: no cover

    # ── Lookups ─────────────────────────────────────────────────────

    async def resolve_account(self, customer_id: str) -> int:
        """Map a Stripe customer id to the local account id.

        Raises:
            LookupMiss: no account carries this customer id
        """
        account_id = await self._with_retry(self._select_account_id, customer_id)
        if account_id is None:
            raise LookupMiss(customer_id)
        return account_id

    async def get_snapshot(self, account_id: int) -> SubscriptionSnapshot | None:
        snapshot, _version = await self._with_retry(self._read, account_id)
        return snapshot

    async def _select_account_id(self, customer_id: str) -> int | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Account.id).where(Account.stripe_customer_id == customer_id))
            return result.scalar_one_or_none()

    async def _read(self, account_id: int) -> tuple[SubscriptionSnapshot | None, int]:
        async with self._session_factory() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise LookupMiss("", account_id=account_id)
            return snapshot_from_row(account), account.version

    # ── Read-modify-write ───────────────────────────────────────────

    async def update_snapshot(
        self,
        account_id: int,
        mutate: SnapshotMutation,
        claim: LedgerClaim | None = None,
    ) -> tuple[SubscriptionSnapshot | None, bool]:
        """Atomically apply mutate() to the account's snapshot.

        mutate receives the current snapshot (None if the account has never had
        a subscription) and returns the replacement, or None to leave the row
        untouched. It must be pure: it may run more than once on CAS conflict.

        When a ledger claim is given, its record is committed in the same
        transaction as the snapshot. Nothing is committed when mutate returns
        None; the caller settles the claim.

        Returns:
            (resulting snapshot, whether a write happened)

        Raises:
            LookupMiss: account row no longer exists
            DuplicateEventError: the claimed event was recorded concurrently
            TransientStoreError: store unreachable, or CAS conflicts exhausted
        """
        for cas_attempt in range(1, self._cas_attempts + 1):
            current, version = await self._with_retry(self._read, account_id)
            replacement = mutate(current)
            if replacement is None:
                return current, False

            if await self._with_retry(self._compare_and_swap, account_id, version, replacement, claim):
                return replacement, True

            logger.info("account_snapshot_cas_conflict", account_id=account_id, attempt=cas_attempt)

        raise TransientStoreError(
            f"Account {account_id} snapshot changed concurrently {self._cas_attempts} times"
        )

    async def _compare_and_swap(
        self,
        account_id: int,
        version: int,
        snapshot: SubscriptionSnapshot,
        claim: LedgerClaim | None = None,
    ) -> bool:
        async with self._session_factory() as session:
            try:
                if claim is not None:
                    # Flushed first so a concurrent duplicate fails before touching the account row
                    claim.stage(session)
                    await session.flush()
                result = await session.execute(
                    update(Account)
                    .where(Account.id == account_id, Account.version == version)
                    .values(
                        subscription_id=snapshot.subscription_id,
                        subscription_status=snapshot.status.value,
                        current_period_end=snapshot.current_period_end,
                        cancel_at_period_end=snapshot.cancel_at_period_end,
                        trial_end=snapshot.trial_end,
                        last_applied_event_id=snapshot.last_applied_event_id,
                        version=version + 1,
                        updated_at=datetime.now(UTC),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return False
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if claim is None:
                    raise
                raise DuplicateEventError(claim.event_id) from exc
            return True


def build_account_store(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> AccountStateStore:
    return AccountStateStore(
        session_factory,
        retry_attempts=settings.store_retry_attempts,
        retry_backoff_seconds=settings.store_retry_backoff_seconds,
        cas_attempts=settings.store_cas_attempts,
    )
