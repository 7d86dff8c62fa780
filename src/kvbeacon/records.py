"""Derive the Traefik KV records that make a service discoverable."""

from dataclasses import dataclass
from typing import List, Tuple

from .config import RegistrationConfig


@dataclass(frozen=True)
class Record:
    """One key-value pair that must exist in the store"""
    key: bytes
    value: bytes

    def to_dict(self) -> dict:
        return {
            "key": self.key.decode("utf-8", errors="replace"),
            "value": self.value.decode("utf-8", errors="replace"),
        }


def service_url_key(service_name: str) -> str:
    """Key of the load-balancer server URL for *service_name*."""
    return f"traefik/http/services/{service_name}/loadbalancer/servers/{service_name}/url"


def router_service_key(service_name: str) -> str:
    """Key binding the router named *service_name* to the service of the same name."""
    return f"traefik/http/routers/{service_name}/service"


def parse_tag(tag: str) -> Tuple[str, str]:
    """Split a ``key=value`` tag at the first ``=``.

    A tag without ``=`` yields ``("", "")``.  Such a record is still emitted;
    etcd refuses the empty key, so it shows up as a failed record every tick.
    """
    if "=" not in tag:
        return "", ""
    key, value = tag.split("=", 1)
    return key, value


def derive_records(service_name: str, config: RegistrationConfig) -> List[Record]:
    """Build the records for one service, in reconciliation order.

    URL record first, then the router binding, then one record per tag in
    the order the tags were given.
    """
    records = [
        Record(service_url_key(service_name).encode(), config.url.encode()),
        Record(router_service_key(service_name).encode(), service_name.encode()),
    ]
    for tag in config.tags:
        key, value = parse_tag(tag)
        records.append(Record(key.encode(), value.encode()))
    return records
