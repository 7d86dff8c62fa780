"""pytest configuration for kvbeacon tests."""

import pytest

from kvbeacon.errors import StoreError
from kvbeacon.store import InMemoryStore, KVStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyBackend:
    """Delegates to an InMemoryStore, failing selected calls on demand.

    ``fail_keepalive`` holds lease ids whose heartbeat fails, ``fail_get``,
    ``fail_put`` keys whose lookup / write fails, and ``fail_grant`` makes
    every lease grant fail.  ``calls`` logs (method, argument) in order.
    """

    def __init__(self, inner: InMemoryStore):
        self.inner = inner
        self.fail_keepalive = set()
        self.fail_get = set()
        self.fail_put = set()
        self.fail_grant = False
        self.calls = []

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def get_first(self, key):
        self.calls.append(("get_first", key))
        if key in self.fail_get:
            raise StoreError("get", "injected lookup failure")
        return self.inner.get_first(key)

    def keepalive(self, lease_id):
        self.calls.append(("keepalive", lease_id))
        if lease_id in self.fail_keepalive:
            raise StoreError("lease_keepalive", "injected heartbeat failure")
        return self.inner.keepalive(lease_id)

    def grant_lease(self, ttl):
        self.calls.append(("grant_lease", ttl))
        if self.fail_grant:
            raise StoreError("lease_grant", "injected grant failure")
        return self.inner.grant_lease(ttl)

    def put(self, key, value, lease=0):
        self.calls.append(("put", key))
        if key in self.fail_put:
            raise StoreError("put", "injected put failure")
        return self.inner.put(key, value, lease)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def store(memory):
    return KVStore(memory)


@pytest.fixture
def flaky(memory):
    return FlakyBackend(memory)


@pytest.fixture
def flaky_store(flaky):
    return KVStore(flaky)
