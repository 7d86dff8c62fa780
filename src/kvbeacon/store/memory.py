"""In-process lease-backed store.

Behaves like the etcd subset kvbeacon relies on: leases expire after their
TTL unless kept alive, keys bound to an expired lease disappear with it,
and every write bumps a store-wide revision.  Used by the tests and by the
CLI when the configured endpoints use the ``memory://`` scheme.
"""

import itertools
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

from ..errors import StoreError
from .base import NO_LEASE, KeyValue, prefix_range_end


@dataclass
class _Lease:
    ttl: int
    expires_at: float
    keys: set


class InMemoryStore:
    """Thread-safe, dict-backed store with etcd-style leases."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[bytes, KeyValue] = {}
        self._leases: Dict[int, _Lease] = {}
        self._lease_ids = itertools.count(7587_0000_0000_0001)
        self._revision = 1

    def _expire(self) -> None:
        """Drop expired leases and the keys attached to them.  Caller holds the lock."""
        now = self._clock()
        expired = [lid for lid, lease in self._leases.items() if lease.expires_at <= now]
        for lid in expired:
            lease = self._leases.pop(lid)
            if lease.keys:
                self._revision += 1
            for key in lease.keys:
                self._data.pop(key, None)

    def _detach(self, key: bytes) -> None:
        current = self._data.get(key)
        if current is not None and current.lease in self._leases:
            self._leases[current.lease].keys.discard(key)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {"version": "memory", "revision": self._revision}

    def grant_lease(self, ttl: int) -> int:
        if ttl <= 0:
            raise StoreError("lease_grant", f"invalid ttl {ttl}")
        with self._lock:
            self._expire()
            lid = next(self._lease_ids)
            self._leases[lid] = _Lease(ttl=ttl, expires_at=self._clock() + ttl, keys=set())
            return lid

    def put(self, key: bytes, value: bytes, lease: int = NO_LEASE) -> Optional[KeyValue]:
        if not key:
            raise StoreError("put", "etcdserver: key is not provided")
        with self._lock:
            self._expire()
            if lease != NO_LEASE and lease not in self._leases:
                raise StoreError("put", "etcdserver: requested lease not found")
            prev = self._data.get(key)
            self._detach(key)
            self._revision += 1
            self._data[key] = KeyValue(
                key=key,
                value=value,
                lease=lease,
                create_revision=prev.create_revision if prev else self._revision,
                mod_revision=self._revision,
                version=prev.version + 1 if prev else 1,
            )
            if lease != NO_LEASE:
                self._leases[lease].keys.add(key)
            return replace(prev) if prev else None

    def get_first(self, key: bytes) -> Optional[KeyValue]:
        if not key:
            raise StoreError("get", "etcdserver: key is not provided")
        with self._lock:
            self._expire()
            kv = self._data.get(key)
            return replace(kv) if kv else None

    def _select(self, key: bytes, prefix: bool) -> List[bytes]:
        """Keys matched by *key* (exactly, or as a prefix).  Caller holds the lock."""
        if not prefix:
            return [key] if key in self._data else []
        end = prefix_range_end(key)
        return [k for k in sorted(self._data) if k >= key and (end == b"\x00" or k < end)]

    def range(self, key: bytes, prefix: bool = False) -> List[KeyValue]:
        if not key:
            raise StoreError("get", "etcdserver: key is not provided")
        with self._lock:
            self._expire()
            return [replace(self._data[k]) for k in self._select(key, prefix)]

    def keepalive(self, lease_id: int) -> int:
        if lease_id == NO_LEASE:
            return 0
        with self._lock:
            self._expire()
            lease = self._leases.get(lease_id)
            if lease is None:
                raise StoreError("lease_keepalive", "requested lease not found")
            lease.expires_at = self._clock() + lease.ttl
            return lease.ttl

    def delete(self, key: bytes, prefix: bool = False) -> int:
        if not key:
            raise StoreError("delete", "etcdserver: key is not provided")
        with self._lock:
            self._expire()
            keys = self._select(key, prefix)
            for k in keys:
                self._detach(k)
                del self._data[k]
            if keys:
                self._revision += 1
            return len(keys)

    def lease_ttl(self, lease_id: int) -> Optional[float]:
        """Seconds left on *lease_id*, or None once it has expired."""
        with self._lock:
            self._expire()
            lease = self._leases.get(lease_id)
            if lease is None:
                return None
            return lease.expires_at - self._clock()
