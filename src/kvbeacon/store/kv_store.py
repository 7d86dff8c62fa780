"""Key-value operations on top of a lease-backed store."""

import logging
from typing import Callable, Iterable, List, Optional

from ..config import EtcdConfig, RegistrationConfig
from ..errors import KeyNotFoundError, StoreConnectionError
from ..registrar import RegistrationHandle, Registrar, TickReport
from .base import NO_LEASE, KeyLike, KeyValue, LeaseStore, to_bytes
from .etcd_gateway import EtcdGatewayClient
from .memory import InMemoryStore

logger = logging.getLogger(__name__)

MEMORY_SCHEME = "memory://"


class KVStore:
    """Store handle shared by direct callers and every registration.

    Wraps one LeaseStore backend; the backend is safe for concurrent use,
    so a single KVStore can back any number of running registrations.
    """

    def __init__(self, backend: LeaseStore):
        self.backend = backend

    @classmethod
    def connect(cls, config: EtcdConfig) -> "KVStore":
        """Connect to the configured cluster and check that it answers.

        Endpoints using the ``memory://`` scheme select a fresh in-process
        store instead.  Raises StoreConnectionError if etcd is unreachable.
        """
        if config.endpoints and all(e.startswith(MEMORY_SCHEME) for e in config.endpoints):
            logger.info("Using in-memory store")
            return cls(InMemoryStore())

        backend = EtcdGatewayClient(config.endpoints, timeout=config.timeout_seconds)
        try:
            status = backend.status()
        except StoreConnectionError as e:
            raise StoreConnectionError("connect", e.cause) from e
        logger.info(
            "Connected to etcd %s (version %s)",
            ",".join(config.endpoints), status.get("version", "unknown"),
        )
        return cls(backend)

    def put(self, key: KeyLike, value: KeyLike, ttl: int = 0) -> Optional[KeyValue]:
        """Write *key*, bound to a fresh *ttl*-second lease unless ttl is 0.

        Returns the previous pair, if any.
        """
        if ttl < 0:
            raise ValueError(f"ttl must not be negative, got {ttl}")
        lease = self.backend.grant_lease(ttl) if ttl else NO_LEASE
        return self.backend.put(to_bytes(key), to_bytes(value), lease)

    def get(self, key: KeyLike) -> KeyValue:
        """Exact lookup.  Raises KeyNotFoundError when *key* does not exist."""
        key = to_bytes(key)
        kv = self.backend.get_first(key)
        if kv is None:
            raise KeyNotFoundError(key)
        return kv

    def get_with_prefix(self, key: KeyLike) -> List[KeyValue]:
        return self.backend.range(to_bytes(key), prefix=True)

    def delete(self, key: KeyLike) -> int:
        return self.backend.delete(to_bytes(key))

    def delete_with_prefix(self, key: KeyLike) -> int:
        return self.backend.delete(to_bytes(key), prefix=True)

    def touch(self, key: KeyLike) -> None:
        """Heartbeat the lease behind *key*; absent or lease-less keys are left alone."""
        kv = self.backend.get_first(to_bytes(key))
        if kv is not None and kv.lease != NO_LEASE:
            self.backend.keepalive(kv.lease)

    def put_or_touch(self, key: KeyLike, value: KeyLike, ttl: int) -> None:
        """Create *key* under a fresh lease if absent, else renew its lease.

        An existing value is never rewritten.
        """
        key = to_bytes(key)
        current = self.backend.get_first(key)
        if current is None:
            self.put(key, value, ttl)
        elif current.lease != NO_LEASE:
            self.backend.keepalive(current.lease)

    def start_registration(
        self,
        service_name: str,
        config: RegistrationConfig,
        listeners: Iterable[Callable[[TickReport], None]] = (),
    ) -> RegistrationHandle:
        """Start keeping *service_name* registered; returns the running handle."""
        return Registrar(self, service_name, config, listeners=listeners).start()


def connect(config: EtcdConfig) -> KVStore:
    return KVStore.connect(config)
