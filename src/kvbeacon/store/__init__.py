"""
Lease-backed key-value store

This package provides:
1. KVStore: put/get/delete/touch/put_or_touch and registration entry point
2. EtcdGatewayClient: etcd v3 client over the HTTP JSON gateway
3. InMemoryStore: dict-backed store with etcd-style leases
"""

from .base import NO_LEASE, KeyValue, LeaseStore, prefix_range_end, to_bytes
from .etcd_gateway import EtcdGatewayClient
from .kv_store import KVStore, connect
from .memory import InMemoryStore

__all__ = [
    'NO_LEASE',
    'KeyValue',
    'LeaseStore',
    'prefix_range_end',
    'to_bytes',
    'EtcdGatewayClient',
    'KVStore',
    'connect',
    'InMemoryStore',
]
