from datetime import datetime, timedelta, timezone

import pytest

from access_control.modules.access_manager import AccessManager
from access_control.modules.database_manager import DatabaseManager
from access_control.modules.key_provider import KeyProvider
from access_control.modules.ports import ScanHistoryStore, SubscriptionStore
from access_control.modules.scan_log import ScanLogWriter
from access_control.modules.subscription_store import SqliteSubscriptionStore

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value):
        self.now = value
        return value


class MemorySubscriptions(SubscriptionStore):

    def __init__(self, subscriptions=None):
        self.subscriptions = dict(subscriptions or {})
        self.calls = 0

    def get_subscription_status(self, user_id):
        self.calls += 1
        return self.subscriptions.get(user_id)


class MemoryHistory(ScanHistoryStore):

    def __init__(self):
        self.consumed = []
        self.calls = 0

    def nonce_consumed(self, user_id, nonce, since):
        self.calls += 1
        return any(
            u == user_id and n == nonce and at >= since
            for u, n, at in self.consumed
        )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def key_provider(clock):
    return KeyProvider('v1', 'unit-test-key', retired_keys={'v0': 'old-unit-test-key'}, clock=clock)


@pytest.fixture
def db_manager(tmp_path):
    manager = DatabaseManager(tmp_path / 'access.db', timeout=5.0)
    yield manager
    manager.close_all_connections()


@pytest.fixture
def scan_log(db_manager):
    return ScanLogWriter(db_manager)


@pytest.fixture
def subscriptions(db_manager):
    return SqliteSubscriptionStore(db_manager)


@pytest.fixture
def access_manager(scan_log, subscriptions, key_provider, clock):
    return AccessManager(
        scan_log=scan_log,
        subscriptions=subscriptions,
        key_provider=key_provider,
        validity=timedelta(minutes=5),
        scan_timeout=10.0,
        clock=clock,
    )
