"""Tests for the account state store: lookups, CAS read-modify-write, retries."""

from datetime import UTC, datetime

import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import LookupMiss, TransientStoreError
from app.db.models.account import Account
from app.domain.billing import SubscriptionSnapshot, SubscriptionStatus
from app.services.account_store import AccountStateStore

pytestmark = pytest.mark.unit

ACTIVE = SubscriptionSnapshot(
    subscription_id="sub_1",
    status=SubscriptionStatus.ACTIVE,
    current_period_end=datetime(2026, 1, 1, tzinfo=UTC),
    last_applied_event_id="evt_a",
)
PAST_DUE = SubscriptionSnapshot(
    subscription_id="sub_1",
    status=SubscriptionStatus.PAST_DUE,
    current_period_end=datetime(2026, 1, 1, tzinfo=UTC),
    last_applied_event_id="evt_b",
)


class _Unreachable:
    async def __aenter__(self):
        raise OperationalError("SELECT", {}, ConnectionRefusedError("db down"))

    async def __aexit__(self, *exc):
        return False


class FlakySessionFactory:
    """Fails the first `failures` session opens, then delegates."""

    def __init__(self, inner, failures: int):
        self._inner = inner
        self.failures = failures
        self.opened = 0

    def __call__(self):
        self.opened += 1
        if self.failures > 0:
            self.failures -= 1
            return _Unreachable()
        return self._inner()


async def _version(session_factory, account_id: int) -> int:
    async with session_factory() as session:
        return (await session.get(Account, account_id)).version


async def test_resolve_account_maps_customer(account_store, create_account):
    account_id = await create_account("cus_1")

    assert await account_store.resolve_account("cus_1") == account_id


async def test_resolve_account_miss(account_store, create_account):
    await create_account("cus_1")

    with pytest.raises(LookupMiss) as exc_info:
        await account_store.resolve_account("cus_unknown")
    assert exc_info.value.customer_id == "cus_unknown"


async def test_new_account_has_no_snapshot(account_store, create_account):
    account_id = await create_account("cus_1")

    assert await account_store.get_snapshot(account_id) is None


async def test_update_snapshot_writes_and_bumps_version(account_store, create_account, session_factory):
    account_id = await create_account("cus_1")

    snapshot, written = await account_store.update_snapshot(account_id, lambda current: ACTIVE)

    assert written is True
    assert snapshot == ACTIVE
    assert await account_store.get_snapshot(account_id) == ACTIVE
    assert await _version(session_factory, account_id) == 1


async def test_update_snapshot_noop_leaves_row_untouched(account_store, create_account, session_factory):
    account_id = await create_account("cus_1")
    await account_store.update_snapshot(account_id, lambda current: ACTIVE)

    snapshot, written = await account_store.update_snapshot(account_id, lambda current: None)

    assert written is False
    assert snapshot == ACTIVE
    assert await _version(session_factory, account_id) == 1


async def test_update_snapshot_missing_account(account_store):
    with pytest.raises(LookupMiss):
        await account_store.update_snapshot(999, lambda current: ACTIVE)


async def test_concurrent_write_between_read_and_swap_is_not_lost(session_factory, create_account):
    """A write landing between our read and our CAS forces a re-read; neither update is lost."""
    account_id = await create_account("cus_1")
    competitor = AccountStateStore(session_factory, retry_backoff_seconds=0)
    seen: list[SubscriptionSnapshot | None] = []

    class InterleavingStore(AccountStateStore):
        interleaved = False

        async def _read(self, account_id):
            result = await super()._read(account_id)
            if not self.interleaved:
                self.interleaved = True
                await competitor.update_snapshot(account_id, lambda current: PAST_DUE)
            return result

    store = InterleavingStore(session_factory, retry_backoff_seconds=0)

    def mutate(current):
        seen.append(current)
        return ACTIVE

    snapshot, written = await store.update_snapshot(account_id, mutate)

    assert written is True
    assert seen == [None, PAST_DUE]
    assert await store.get_snapshot(account_id) == ACTIVE
    assert await _version(session_factory, account_id) == 2


async def test_cas_conflicts_exhausted_raise_transient(session_factory, create_account):
    account_id = await create_account("cus_1")
    competitor = AccountStateStore(session_factory, retry_backoff_seconds=0)

    class AlwaysContendedStore(AccountStateStore):
        async def _read(self, account_id):
            result = await super()._read(account_id)
            await competitor.update_snapshot(account_id, lambda current: PAST_DUE)
            return result

    store = AlwaysContendedStore(session_factory, retry_backoff_seconds=0, cas_attempts=2)

    with pytest.raises(TransientStoreError):
        await store.update_snapshot(account_id, lambda current: ACTIVE)


async def test_transient_errors_are_retried(session_factory, create_account):
    account_id = await create_account("cus_1")
    flaky = FlakySessionFactory(session_factory, failures=2)
    store = AccountStateStore(flaky, retry_attempts=3, retry_backoff_seconds=0)

    assert await store.resolve_account("cus_1") == account_id
    assert flaky.opened == 3


async def test_retries_exhausted_raise_transient(session_factory):
    flaky = FlakySessionFactory(session_factory, failures=10)
    store = AccountStateStore(flaky, retry_attempts=3, retry_backoff_seconds=0)

    with pytest.raises(TransientStoreError):
        await store.resolve_account("cus_1")
    assert flaky.opened == 3
