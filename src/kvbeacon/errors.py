"""Exception types raised by kvbeacon."""


class KVBeaconError(Exception):
    """Base class for all kvbeacon errors."""


class ConfigError(KVBeaconError, ValueError):
    """Invalid or incomplete configuration."""


class StoreError(KVBeaconError):
    """A store operation failed.

    ``operation`` names the failed step (``get``, ``put``, ``lease_grant``,
    ``lease_keepalive``, ``delete`` ...) and ``cause`` is a human-readable
    description of what went wrong.
    """

    def __init__(self, operation: str, cause: str):
        self.operation = operation
        self.cause = cause
        super().__init__(f"etcd {operation} failed: {cause}")


class StoreConnectionError(StoreError):
    """No configured store endpoint could be reached."""


class KeyNotFoundError(StoreError):
    """Exact lookup found no such key."""

    def __init__(self, key: bytes):
        self.key = key
        super().__init__("get", "data not found")
