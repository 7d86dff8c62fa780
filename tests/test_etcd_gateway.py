"""Tests for the etcd JSON-gateway client against a fake urllib opener."""

import base64
import io
import json
import urllib.error

import pytest

from kvbeacon.config import RegistrationConfig
from kvbeacon.errors import StoreConnectionError, StoreError
from kvbeacon.registrar import Registrar
from kvbeacon.store import EtcdGatewayClient, KVStore


def b64(s: bytes) -> str:
    return base64.b64encode(s).decode()


class FakeResponse:
    def __init__(self, body):
        self._body = body if isinstance(body, bytes) else json.dumps(body).encode()

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeOpener:
    """Replays queued outcomes; each is a response body or an exception to raise."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def open(self, request, timeout=None):
        self.requests.append({
            "url": request.full_url,
            "method": request.get_method(),
            "body": json.loads(request.data),
            "timeout": timeout,
        })
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)


def make_client(*outcomes, endpoints=("http://etcd1:2379",)):
    client = EtcdGatewayClient(list(endpoints), timeout=1.5)
    client._opener = FakeOpener(*outcomes)
    return client


class TestRequests:
    def test_grant_lease(self):
        client = make_client({"ID": "7587867612938141730", "TTL": "10"})
        assert client.grant_lease(10) == 7587867612938141730
        req = client._opener.requests[0]
        assert req["url"] == "http://etcd1:2379/v3/lease/grant"
        assert req["method"] == "POST"
        assert req["body"] == {"TTL": 10, "ID": 0}
        assert req["timeout"] == 1.5

    def test_put_with_lease(self):
        client = make_client({"header": {"revision": "5"}})
        assert client.put(b"k", b"v", 42) is None
        assert client._opener.requests[0]["body"] == {
            "key": b64(b"k"), "value": b64(b"v"), "prev_kv": True, "lease": "42",
        }

    def test_put_without_lease_returns_previous(self):
        client = make_client({"prev_kv": {
            "key": b64(b"k"), "value": b64(b"old"),
            "create_revision": "2", "mod_revision": "3", "version": "2",
        }})
        prev = client.put(b"k", b"new")
        assert "lease" not in client._opener.requests[0]["body"]
        assert prev.value == b"old"
        assert prev.lease == 0
        assert prev.mod_revision == 3

    def test_get_first(self):
        client = make_client({"kvs": [{"key": b64(b"k"), "value": b64(b"v"), "lease": "99"}], "count": "1"})
        kv = client.get_first(b"k")
        assert (kv.key, kv.value, kv.lease) == (b"k", b"v", 99)
        assert client._opener.requests[0]["body"] == {"key": b64(b"k"), "limit": 1}

    def test_get_first_missing(self):
        client = make_client({"header": {}})
        assert client.get_first(b"k") is None

    def test_prefix_range(self):
        client = make_client({"kvs": [
            {"key": b64(b"p/a"), "value": b64(b"1")},
            {"key": b64(b"p/b"), "value": b64(b"2")},
        ]})
        kvs = client.range(b"p/", prefix=True)
        assert [kv.key for kv in kvs] == [b"p/a", b"p/b"]
        assert client._opener.requests[0]["body"] == {"key": b64(b"p/"), "range_end": b64(b"p0")}

    def test_delete_prefix(self):
        client = make_client({"deleted": "3"})
        assert client.delete(b"p/", prefix=True) == 3
        assert client._opener.requests[0]["url"].endswith("/v3/kv/deleterange")

    def test_delete_nothing(self):
        client = make_client({"header": {}})
        assert client.delete(b"k") == 0

    def test_keepalive_stream_response(self):
        body = b'{"result":{"header":{},"ID":"42","TTL":"10"}}\n'
        client = make_client(body)
        assert client.keepalive(42) == 10
        assert client._opener.requests[0]["body"] == {"ID": "42"}

    def test_keepalive_expired_lease(self):
        client = make_client({"result": {"ID": "42"}})
        with pytest.raises(StoreError) as exc:
            client.keepalive(42)
        assert exc.value.operation == "lease_keepalive"


class TestErrors:
    def test_fails_over_to_next_endpoint(self):
        client = make_client(
            urllib.error.URLError("connection refused"),
            {"deleted": "1"},
            endpoints=("http://etcd1:2379", "http://etcd2:2379/"),
        )
        assert client.delete(b"k") == 1
        urls = [r["url"] for r in client._opener.requests]
        assert urls == ["http://etcd1:2379/v3/kv/deleterange", "http://etcd2:2379/v3/kv/deleterange"]

    def test_all_endpoints_unreachable(self):
        client = make_client(
            urllib.error.URLError("refused"),
            TimeoutError("timed out"),
            endpoints=("http://etcd1:2379", "http://etcd2:2379"),
        )
        with pytest.raises(StoreConnectionError) as exc:
            client.get_first(b"k")
        assert exc.value.operation == "get"
        assert "timed out" in str(exc.value)

    def test_http_error_is_not_retried_elsewhere(self):
        body = json.dumps({"error": "etcdserver: key is not provided", "code": 3,
                           "message": "etcdserver: key is not provided"}).encode()
        http_error = urllib.error.HTTPError(
            "http://etcd1:2379/v3/kv/put", 400, "Bad Request", {}, io.BytesIO(body),
        )
        client = make_client(http_error, endpoints=("http://etcd1:2379", "http://etcd2:2379"))
        with pytest.raises(StoreError) as exc:
            client.put(b"", b"")
        assert not isinstance(exc.value, StoreConnectionError)
        assert str(exc.value) == "etcd put failed: etcdserver: key is not provided"
        assert len(client._opener.requests) == 1

    def test_error_body(self):
        client = make_client({"error": {"grpc_code": 5, "message": "requested lease not found"}})
        with pytest.raises(StoreError) as exc:
            client.keepalive(7)
        assert exc.value.cause == "requested lease not found"

    def test_requires_endpoints(self):
        with pytest.raises(ValueError):
            EtcdGatewayClient([])

    def test_garbled_body_is_store_error(self):
        client = make_client(b"<html>502 Bad Gateway</html>")
        with pytest.raises(StoreError) as exc:
            client.get_first(b"k")
        assert exc.value.operation == "get"
        assert "malformed response" in exc.value.cause

    def test_non_object_body_is_store_error(self):
        client = make_client(b'["not", "an", "object"]')
        with pytest.raises(StoreError) as exc:
            client.delete(b"k")
        assert exc.value.operation == "delete"

    def test_grant_without_id(self):
        client = make_client({"TTL": "10"})
        with pytest.raises(StoreError) as exc:
            client.grant_lease(10)
        assert exc.value.operation == "lease_grant"


class TestRenewalOverGateway:
    def test_bad_gateway_reply_fails_only_that_record(self):
        client = make_client(
            b"<html>502 Bad Gateway</html>",
            {"kvs": [{"key": b64(b"traefik/http/routers/api/service"),
                      "value": b64(b"api"), "lease": "42"}]},
            {"result": {"ID": "42", "TTL": "10"}},
        )
        registrar = Registrar(
            KVStore(client), "api",
            RegistrationConfig(url="http://10.0.0.5:8080", ttl=10, max_attempts=1),
        )
        report = registrar.run_tick()

        assert [key for key, _ in report.failures] == [
            b"traefik/http/services/api/loadbalancer/servers/api/url",
        ]
        assert report.renewed == 1
        assert registrar.health.ticks == 1
        paths = [r["url"].split("2379")[1] for r in client._opener.requests]
        assert paths == ["/v3/kv/range", "/v3/kv/range", "/v3/lease/keepalive"]
