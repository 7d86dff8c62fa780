"""CLI entry point for kvbeacon."""

import argparse
import json
import logging
import signal
import sys
import threading

from .config import KVBeaconConfig, config_to_yaml, load_config, merge_cli_args
from .errors import KVBeaconError
from .records import derive_records
from .store import KVStore


def _add_store_args(parser: argparse.ArgumentParser) -> None:
    """Add the etcd connection flags shared by every store-touching subcommand."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument(
        "--endpoints", nargs="+", default=None,
        help="etcd endpoints, e.g. http://127.0.0.1:2379 (memory:// for an in-process store)",
    )
    parser.add_argument(
        "--timeout", type=int, default=None,
        help="Per-request timeout in milliseconds (default: 2000)",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def _add_registration_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--service-name", type=str, dest="service_name", help="Service name")
    parser.add_argument("--url", type=str, help="Endpoint URL Traefik should route to")
    parser.add_argument(
        "--tag", action="append", dest="tags", metavar="KEY=VALUE",
        help="Extra key=value record (repeatable; replaces tags from the config file)",
    )
    parser.add_argument("--ttl", type=int, help="Lease TTL in seconds (default: 10)")
    parser.add_argument(
        "--max-attempts", type=int, dest="max_attempts",
        help="Attempts per record within one renewal tick (default: 3)",
    )
    parser.add_argument(
        "--retry-backoff", type=float, dest="retry_backoff",
        help="First retry delay in seconds, doubled per attempt (default: 0.5)",
    )


def _build_config(args) -> KVBeaconConfig:
    """Build a KVBeaconConfig from a config file + CLI overrides."""
    if getattr(args, "config", None):
        config = load_config(args.config)
    else:
        config = KVBeaconConfig()
    merge_cli_args(config, args)
    return config


def _connect(args) -> KVStore:
    return KVStore.connect(_build_config(args).etcd)


def _format_kvs(kvs, fmt: str) -> str:
    """Format a list of KeyValue objects for output."""
    if fmt == "json":
        return json.dumps([kv.to_dict() for kv in kvs], indent=2)
    lines = []
    for kv in kvs:
        lease = f"lease={kv.lease:x}" if kv.lease else "lease=none"
        lines.append(f"{kv.key_str()}  {kv.value_str()}  {lease}  rev={kv.mod_revision}")
    return "\n".join(lines) if lines else "(no keys)"


# ---------------------------------------------------------------------------
# kvbeacon register / records / config
# ---------------------------------------------------------------------------

def cmd_register(args) -> None:
    """Register a service and keep it registered until interrupted."""
    config = _build_config(args)
    config.validate()
    store = KVStore.connect(config.etcd)

    done = threading.Event()

    def _on_signal(signum, frame):
        print(f"\nReceived {signal.Signals(signum).name}, stopping ...", file=sys.stderr)
        done.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    handle = store.start_registration(config.service_name, config.registration)
    print(
        f"Registered {config.service_name} -> {config.registration.url} "
        f"(ttl={config.registration.ttl}s)",
        file=sys.stderr,
    )
    try:
        while not done.wait(1.0):
            pass
    finally:
        deregister = False if args.keep_records else None
        handle.stop(deregister=deregister, timeout=config.etcd.timeout_seconds * 10)


def cmd_records(args) -> None:
    """Print the records a registration would keep alive, without touching etcd."""
    config = _build_config(args)
    config.validate()
    records = derive_records(config.service_name, config.registration)
    if args.format == "json":
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return
    for r in records:
        d = r.to_dict()
        print(f"{d['key']} = {d['value']}")


def cmd_config(args) -> None:
    print(config_to_yaml(_build_config(args)), end="")


# ---------------------------------------------------------------------------
# kvbeacon kv subcommand
# ---------------------------------------------------------------------------

def cmd_kv_get(args) -> None:
    store = _connect(args)
    if args.prefix:
        kvs = store.get_with_prefix(args.key)
    else:
        kvs = [store.get(args.key)]
    print(_format_kvs(kvs, args.format))


def cmd_kv_put(args) -> None:
    store = _connect(args)
    prev = store.put(args.key, args.value, args.lease_ttl)
    if args.format == "json":
        print(json.dumps({"prev_kv": prev.to_dict() if prev else None}, indent=2))
    elif prev:
        print(f"previous: {prev.value_str()}")


def cmd_kv_delete(args) -> None:
    store = _connect(args)
    if args.prefix:
        deleted = store.delete_with_prefix(args.key)
    else:
        deleted = store.delete(args.key)
    if args.format == "json":
        print(json.dumps({"deleted": deleted}))
    else:
        print(deleted)


def cmd_kv_touch(args) -> None:
    _connect(args).touch(args.key)


def cmd_kv_put_or_touch(args) -> None:
    _connect(args).put_or_touch(args.key, args.value, args.lease_ttl)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="kvbeacon",
        description="kvbeacon: keep services registered in etcd for Traefik",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO", dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # register
    register_parser = subparsers.add_parser(
        "register", help="Register a service and keep renewing it until interrupted",
    )
    _add_store_args(register_parser)
    _add_registration_args(register_parser)
    register_parser.add_argument(
        "--keep-records", action="store_true", dest="keep_records",
        help="Leave the records in place on shutdown and let their leases expire",
    )
    register_parser.set_defaults(func=cmd_register)

    # records
    records_parser = subparsers.add_parser(
        "records", help="Print the records a registration would write",
    )
    _add_store_args(records_parser)
    _add_registration_args(records_parser)
    records_parser.set_defaults(func=cmd_records)

    # config
    config_parser = subparsers.add_parser("config", help="Print the effective configuration")
    _add_store_args(config_parser)
    _add_registration_args(config_parser)
    config_parser.set_defaults(func=cmd_config)

    # kv
    kv_parser = subparsers.add_parser("kv", help="Direct key-value operations")
    kv_sub = kv_parser.add_subparsers(dest="kv_command")

    kv_get = kv_sub.add_parser("get", help="Get a key (or every key under a prefix)")
    _add_store_args(kv_get)
    kv_get.add_argument("key", type=str)
    kv_get.add_argument("--prefix", action="store_true", help="Treat KEY as a prefix")
    kv_get.set_defaults(func=cmd_kv_get)

    kv_put = kv_sub.add_parser("put", help="Write a key, optionally under a lease")
    _add_store_args(kv_put)
    kv_put.add_argument("key", type=str)
    kv_put.add_argument("value", type=str)
    kv_put.add_argument(
        "--ttl", type=int, default=0, dest="lease_ttl",
        help="Lease TTL in seconds; 0 writes without a lease (default: 0)",
    )
    kv_put.set_defaults(func=cmd_kv_put)

    kv_delete = kv_sub.add_parser("delete", help="Delete a key (or every key under a prefix)")
    _add_store_args(kv_delete)
    kv_delete.add_argument("key", type=str)
    kv_delete.add_argument("--prefix", action="store_true", help="Treat KEY as a prefix")
    kv_delete.set_defaults(func=cmd_kv_delete)

    kv_touch = kv_sub.add_parser("touch", help="Renew the lease behind a key")
    _add_store_args(kv_touch)
    kv_touch.add_argument("key", type=str)
    kv_touch.set_defaults(func=cmd_kv_touch)

    kv_pot = kv_sub.add_parser(
        "put-or-touch", help="Create a key under a lease, or renew it if it exists",
    )
    _add_store_args(kv_pot)
    kv_pot.add_argument("key", type=str)
    kv_pot.add_argument("value", type=str)
    kv_pot.add_argument("--ttl", type=int, required=True, dest="lease_ttl", help="Lease TTL in seconds")
    kv_pot.set_defaults(func=cmd_kv_put_or_touch)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "kv" and not args.kv_command:
        kv_parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=args.log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        args.func(args)
    except (KVBeaconError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
