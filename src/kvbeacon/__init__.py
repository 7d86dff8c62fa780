"""
kvbeacon: keep a service registered in etcd for Traefik's KV provider.

    store = connect(EtcdConfig(endpoints=["http://127.0.0.1:2379"]))
    handle = store.start_registration(
        "api", RegistrationConfig(url="http://10.0.0.5:8080", tags=["env=prod"], ttl=10),
    )
    ...
    handle.stop()
"""

from .config import EtcdConfig, KVBeaconConfig, RegistrationConfig, load_config
from .errors import (
    ConfigError,
    KeyNotFoundError,
    KVBeaconError,
    StoreConnectionError,
    StoreError,
)
from .records import Record, derive_records, parse_tag
from .registrar import RegistrationHandle, RegistrationHealth, Registrar, TickReport, renewal_interval
from .store import KeyValue, KVStore, connect

__version__ = '0.1.0'
__all__ = [
    'EtcdConfig',
    'KVBeaconConfig',
    'RegistrationConfig',
    'load_config',
    'ConfigError',
    'KeyNotFoundError',
    'KVBeaconError',
    'StoreConnectionError',
    'StoreError',
    'Record',
    'derive_records',
    'parse_tag',
    'RegistrationHandle',
    'RegistrationHealth',
    'Registrar',
    'TickReport',
    'renewal_interval',
    'KeyValue',
    'KVStore',
    'connect',
]
