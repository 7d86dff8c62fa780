"""
etcd v3 client over the JSON gateway

Talks to etcd's gRPC-gateway (``/v3/...`` endpoints) with plain HTTP POSTs.
Keys and values are base64 encoded on the wire, and int64 fields such as
lease ids and revisions come back as JSON strings.

Each call tries the configured endpoints in order.  Transport failures
(refused connection, timeout, unresolvable host) move on to the next
endpoint; an HTTP error or an ``error`` body means the store answered and
rejected the request, so it is raised straight away.
"""

import base64
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from ..errors import StoreConnectionError, StoreError
from .base import NO_LEASE, KeyValue, prefix_range_end

logger = logging.getLogger(__name__)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: Optional[str]) -> bytes:
    return base64.b64decode(data) if data else b""


def _kv_from_json(data: Dict[str, Any]) -> KeyValue:
    return KeyValue(
        key=_unb64(data.get("key")),
        value=_unb64(data.get("value")),
        lease=int(data.get("lease", NO_LEASE)),
        create_revision=int(data.get("create_revision", 0)),
        mod_revision=int(data.get("mod_revision", 0)),
        version=int(data.get("version", 0)),
    )


def _error_message(body: Any) -> str:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return err.get("message") or json.dumps(err)
        return body.get("message") or str(err)
    return str(body)


def _decode(raw: bytes) -> Dict[str, Any]:
    """Parse a gateway response body.

    Streaming RPCs (lease keepalive) answer with one JSON object per line;
    only the first message matters for a one-shot call.
    """
    text = raw.decode("utf-8").strip()
    if not text:
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return json.loads(text.splitlines()[0])


class EtcdGatewayClient:
    """Lease-backed store client for one etcd cluster."""

    def __init__(self, endpoints: List[str], timeout: float = 2.0):
        if not endpoints:
            raise ValueError("at least one etcd endpoint is required")
        self._endpoints = [e.rstrip("/") for e in endpoints]
        self._timeout = timeout
        # Bypass http_proxy env vars; etcd normally lives on the internal network.
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    @property
    def endpoints(self) -> List[str]:
        return list(self._endpoints)

    def _post(self, path: str, payload: Dict[str, Any], operation: str) -> Dict[str, Any]:
        body = json.dumps(payload).encode()
        last_error: Optional[Exception] = None
        for endpoint in self._endpoints:
            request = urllib.request.Request(
                f"{endpoint}{path}",
                data=body,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            try:
                with self._opener.open(request, timeout=self._timeout) as resp:
                    raw = resp.read()
            except urllib.error.HTTPError as e:
                try:
                    cause = _error_message(_decode(e.read()))
                except (ValueError, OSError):
                    cause = f"HTTP {e.code} {e.reason}"
                raise StoreError(operation, cause) from e
            except (urllib.error.URLError, OSError) as e:
                logger.debug("etcd endpoint %s unreachable: %s", endpoint, e)
                last_error = e
                continue

            try:
                data = _decode(raw)
            except ValueError as e:
                raise StoreError(operation, f"malformed response from {endpoint}: {raw[:80]!r}") from e
            if not isinstance(data, dict):
                raise StoreError(operation, f"unexpected response from {endpoint}: {raw[:80]!r}")
            if data.get("error"):
                raise StoreError(operation, _error_message(data))
            return data

        raise StoreConnectionError(
            operation, f"no etcd endpoint reachable ({last_error})"
        )

    def status(self) -> Dict[str, Any]:
        return self._post("/v3/maintenance/status", {}, "status")

    def grant_lease(self, ttl: int) -> int:
        data = self._post("/v3/lease/grant", {"TTL": ttl, "ID": 0}, "lease_grant")
        if "ID" not in data:
            raise StoreError("lease_grant", f"response carries no lease id: {data}")
        return int(data["ID"])

    def put(self, key: bytes, value: bytes, lease: int = NO_LEASE) -> Optional[KeyValue]:
        payload: Dict[str, Any] = {"key": _b64(key), "value": _b64(value), "prev_kv": True}
        if lease != NO_LEASE:
            payload["lease"] = str(lease)
        data = self._post("/v3/kv/put", payload, "put")
        prev = data.get("prev_kv")
        return _kv_from_json(prev) if prev else None

    def range(self, key: bytes, prefix: bool = False, limit: int = 0) -> List[KeyValue]:
        payload: Dict[str, Any] = {"key": _b64(key)}
        if prefix:
            payload["range_end"] = _b64(prefix_range_end(key))
        if limit:
            payload["limit"] = limit
        data = self._post("/v3/kv/range", payload, "get")
        return [_kv_from_json(kv) for kv in data.get("kvs", [])]

    def get_first(self, key: bytes) -> Optional[KeyValue]:
        kvs = self.range(key, limit=1)
        return kvs[0] if kvs else None

    def keepalive(self, lease_id: int) -> int:
        data = self._post("/v3/lease/keepalive", {"ID": str(lease_id)}, "lease_keepalive")
        result = data.get("result", data)
        ttl = int(result.get("TTL", 0))
        if ttl <= 0:
            raise StoreError("lease_keepalive", f"lease {lease_id} not found or expired")
        return ttl

    def delete(self, key: bytes, prefix: bool = False) -> int:
        payload: Dict[str, Any] = {"key": _b64(key)}
        if prefix:
            payload["range_end"] = _b64(prefix_range_end(key))
        data = self._post("/v3/kv/deleterange", payload, "delete")
        return int(data.get("deleted", 0))
