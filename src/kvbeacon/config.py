"""Configuration loading and merging for kvbeacon."""

from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .errors import ConfigError


@dataclass
class EtcdConfig:
    """How to reach the etcd cluster."""
    endpoints: list[str] = field(default_factory=lambda: ["http://127.0.0.1:2379"])
    # Per-request timeout in milliseconds
    timeout: int = 2000

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000


@dataclass
class RegistrationConfig:
    """What to register for one service and how to keep it alive."""
    url: str = ""
    tags: list[str] = field(default_factory=list)
    # Lease TTL in seconds; records are renewed every ttl / 2
    ttl: int = 10

    # Attempts per record within one tick before the failure is logged
    max_attempts: int = 3
    # First retry delay in seconds, doubled on each further attempt
    retry_backoff: float = 0.5

    # Delete the records when the registration is stopped
    deregister_on_stop: bool = True

    def validate(self) -> None:
        if not self.url:
            raise ConfigError("registration url is required")
        if not isinstance(self.ttl, int) or isinstance(self.ttl, bool) or self.ttl <= 0:
            raise ConfigError(f"registration ttl must be a positive integer, got {self.ttl!r}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.retry_backoff < 0:
            raise ConfigError(f"retry_backoff must not be negative, got {self.retry_backoff}")


@dataclass
class KVBeaconConfig:
    etcd: EtcdConfig = field(default_factory=EtcdConfig)
    service_name: str = ""
    registration: RegistrationConfig = field(default_factory=RegistrationConfig)

    def validate(self) -> None:
        if not self.service_name:
            raise ConfigError("service_name is required")
        self.registration.validate()


def _pick(cls, data: dict) -> dict:
    """Keep only the keys that are fields of dataclass *cls*."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def load_config(path: str | Path) -> KVBeaconConfig:
    """Load a KVBeaconConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    etcd = EtcdConfig(**_pick(EtcdConfig, data.get("etcd") or {}))
    registration = RegistrationConfig(**_pick(RegistrationConfig, data.get("registration") or {}))
    # A single endpoint may be written as a bare string
    if isinstance(etcd.endpoints, str):
        etcd.endpoints = [etcd.endpoints]

    return KVBeaconConfig(
        etcd=etcd,
        service_name=str(data.get("service_name") or ""),
        registration=registration,
    )


# CLI dest -> (section, field)
_CLI_FIELDS = {
    "endpoints": ("etcd", "endpoints"),
    "timeout": ("etcd", "timeout"),
    "service_name": (None, "service_name"),
    "url": ("registration", "url"),
    "tags": ("registration", "tags"),
    "ttl": ("registration", "ttl"),
    "max_attempts": ("registration", "max_attempts"),
    "retry_backoff": ("registration", "retry_backoff"),
}


def merge_cli_args(config: KVBeaconConfig, args) -> KVBeaconConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for dest, (section, name) in _CLI_FIELDS.items():
        cli_val = getattr(args, dest, None)
        if cli_val is None:
            continue
        target = getattr(config, section) if section else config
        setattr(target, name, cli_val)
    return config


def config_to_yaml(config: KVBeaconConfig) -> str:
    """Serialize a KVBeaconConfig back to YAML."""
    reg = config.registration
    data: dict = {
        "etcd": {
            "endpoints": list(config.etcd.endpoints),
            "timeout": config.etcd.timeout,
        },
        "service_name": config.service_name,
        "registration": {
            "url": reg.url,
            "tags": list(reg.tags),
            "ttl": reg.ttl,
            "max_attempts": reg.max_attempts,
            "retry_backoff": reg.retry_backoff,
            "deregister_on_stop": reg.deregister_on_stop,
        },
    }
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
