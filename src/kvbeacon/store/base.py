"""
Store contract shared by every backend

This module provides:
- KeyValue: one stored key with its lease binding and revision metadata
- LeaseStore: the operations the rest of kvbeacon consumes from a store
- Key helpers: to_bytes and prefix_range_end
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Protocol, Union


# Lease id meaning "not bound to any lease".
NO_LEASE = 0

KeyLike = Union[str, bytes]


def to_bytes(data: KeyLike) -> bytes:
    if isinstance(data, bytes):
        return data
    return data.encode("utf-8")


def prefix_range_end(prefix: bytes) -> bytes:
    """Return the exclusive upper bound covering every key that starts with *prefix*.

    Trailing ``0xff`` bytes cannot be incremented, so they are dropped before
    bumping the last byte.  A prefix made only of ``0xff`` (or an empty one)
    maps to ``b"\\x00"``, which etcd reads as "to the end of the keyspace".
    """
    end = bytearray(prefix)
    while end:
        if end[-1] < 0xFF:
            end[-1] += 1
            return bytes(end)
        end.pop()
    return b"\x00"


@dataclass
class KeyValue:
    """A stored key-value pair"""
    key: bytes
    value: bytes
    lease: int = NO_LEASE
    create_revision: int = 0
    mod_revision: int = 0
    version: int = 0

    def key_str(self) -> str:
        return self.key.decode("utf-8", errors="replace")

    def value_str(self) -> str:
        return self.value.decode("utf-8", errors="replace")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serialisable dictionary."""
        data = asdict(self)
        data["key"] = self.key_str()
        data["value"] = self.value_str()
        return data


class LeaseStore(Protocol):
    """Lease-backed key-value store.

    Every method is a single round trip and raises ``StoreError`` (or
    ``StoreConnectionError`` when the store cannot be reached) on failure.
    Implementations must be safe to share between threads.
    """

    def status(self) -> Dict[str, Any]: ...

    def grant_lease(self, ttl: int) -> int: ...

    def put(self, key: bytes, value: bytes, lease: int = NO_LEASE) -> Optional[KeyValue]: ...

    def get_first(self, key: bytes) -> Optional[KeyValue]: ...

    def range(self, key: bytes, prefix: bool = False) -> List[KeyValue]: ...

    def keepalive(self, lease_id: int) -> int: ...

    def delete(self, key: bytes, prefix: bool = False) -> int: ...
