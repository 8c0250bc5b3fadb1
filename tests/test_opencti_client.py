"""Tests for the httpx-based OpenCTI client, using httpx.MockTransport."""

import gzip
import json
import time
from datetime import datetime, timezone

import httpx
import pytest

from opencti_exporter.client.opencti_client import OpenCTIClient
from opencti_exporter.errors import (
    ConfigurationError,
    OpenCTIConnectionError,
    OpenCTIHealthError,
    OpenCTIQueryError,
    OpenCTITimeoutError,
)

EMAIL_NODE = {
    "__typename": "EmailAddr",
    "id": "585cf60b-bdc3-45c5-a909-a9dcd0434db7",
    "entity_type": "Email-Addr",
    "observable_value": "test@test.com",
    "created_at": "2025-01-16T15:45:55.316Z",
    "updated_at": "2025-01-16T15:45:55.316Z",
}


def _make_client(handler, **kwargs) -> OpenCTIClient:
    return OpenCTIClient(
        "https://opencti:8080", "testtoken",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _observables_response(*nodes) -> httpx.Response:
    edges = [{"node": node, "cursor": "x"} for node in nodes]
    return httpx.Response(200, json={"data": {"stixCyberObservables": {"edges": edges}}})


def test_health_check_ok():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"status": "success"})

    _make_client(handler).health_check()

    assert seen[0].method == "GET"
    assert seen[0].url.path == "/health"
    assert seen[0].headers["Authorization"] == "Bearer testtoken"


def test_health_check_sends_access_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"status": "success"})

    _make_client(handler, health_access_key="s3cret").health_check()
    assert seen[0].url.params["health_access_key"] == "s3cret"


def test_health_check_bad_gateway():
    client = _make_client(lambda request: httpx.Response(502))
    with pytest.raises(OpenCTIHealthError, match="502"):
        client.health_check()


def test_health_check_unhealthy_status():
    client = _make_client(lambda request: httpx.Response(200, json={"status": "error"}))
    with pytest.raises(OpenCTIHealthError):
        client.health_check()


def test_health_check_not_json():
    client = _make_client(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
    with pytest.raises(OpenCTIHealthError):
        client.health_check()


def test_connection_error_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(OpenCTIConnectionError, match="connection refused"):
        _make_client(handler).health_check()


def test_timeout_is_wrapped():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(OpenCTITimeoutError):
        _make_client(handler).list_observables(1, "created_at")


def test_list_observables_request_shape():
    seen = []

    def handler(request):
        seen.append(request)
        return _observables_response(EMAIL_NODE)

    _make_client(handler).list_observables(1, "updated_at", "desc")

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/graphql"
    assert request.headers["Authorization"] == "Bearer testtoken"

    body = json.loads(request.content)
    assert body["variables"] == {"first": 1, "orderBy": "updated_at", "orderMode": "desc"}
    assert "stixCyberObservables" in body["query"]
    assert "updated_at" in body["query"]


def test_list_observables_parses_nodes():
    client = _make_client(lambda request: _observables_response(EMAIL_NODE))
    records = client.list_observables(1, "created_at")

    assert len(records) == 1
    record = records[0]
    assert record.entity_type == "Email-Addr"
    assert record.observable_value == "test@test.com"
    assert record.updated_at == datetime(2025, 1, 16, 15, 45, 55, 316000, tzinfo=timezone.utc)


def test_list_observables_empty():
    client = _make_client(lambda request: _observables_response())
    assert client.list_observables(1, "created_at") == []


def test_list_observables_null_data():
    client = _make_client(lambda request: httpx.Response(200, json={"data": {"stixCyberObservables": None}}))
    assert client.list_observables(1, "created_at") == []


def test_most_recent_helpers():
    client = _make_client(lambda request: _observables_response(EMAIL_NODE))
    assert client.most_recent_created().entity_type == "Email-Addr"
    assert client.most_recent_updated().entity_type == "Email-Addr"

    client = _make_client(lambda request: _observables_response())
    assert client.most_recent_created() is None


def test_graphql_errors_raise():
    payload = {"errors": [{"message": "You must be logged in to do this."}], "data": None}
    client = _make_client(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(OpenCTIQueryError, match="logged in"):
        client.list_observables(1, "created_at")


def test_graphql_http_error_raises():
    client = _make_client(lambda request: httpx.Response(500, text="oops"))
    with pytest.raises(OpenCTIQueryError, match="500"):
        client.list_observables(1, "created_at")


def test_unreadable_node_raises():
    node = dict(EMAIL_NODE, updated_at="yesterday")
    client = _make_client(lambda request: _observables_response(node))
    with pytest.raises(OpenCTIQueryError):
        client.list_observables(1, "created_at")


def test_bad_order_mode():
    client = _make_client(lambda request: _observables_response())
    with pytest.raises(ValueError):
        client.list_observables(1, "created_at", "sideways")


@pytest.mark.parametrize("url", ["opencti:8080/graphql", "ftp://opencti", "not a url", ""])
def test_malformed_url_rejected(url):
    with pytest.raises(ConfigurationError):
        OpenCTIClient(url, "testtoken")


def test_empty_token_rejected():
    with pytest.raises(ConfigurationError):
        OpenCTIClient("https://opencti:8080", "")


def test_name_includes_url():
    client = OpenCTIClient("https://opencti:8080/", "testtoken")
    assert client.url == "https://opencti:8080"
    assert "opencti:8080" in client.name()
    client.close()


def test_slow_body_hits_deadline():
    def trickle():
        for piece in (b'{"st', b'atus', b'": "', b'succ', b'ess"', b"}"):
            yield piece
            time.sleep(0.2)

    client = _make_client(lambda request: httpx.Response(200, content=trickle()))

    start = time.monotonic()
    with pytest.raises(OpenCTITimeoutError):
        client.health_check(timeout=0.5)
    assert time.monotonic() - start < 0.9


def test_gzipped_body_is_decoded():
    body = gzip.compress(json.dumps({"status": "success"}).encode())
    client = _make_client(lambda request: httpx.Response(
        200, content=body, headers={"Content-Encoding": "gzip", "Content-Type": "application/json"},
    ))
    client.health_check()


@pytest.mark.parametrize("payload", [
    {"data": ["not", "an", "object"]},
    {"data": {"stixCyberObservables": ["not", "a", "connection"]}},
    {"data": {"stixCyberObservables": {"edges": [{"node": {"entity_type": "Hostname", "updated_at": 123}}]}}},
])
def test_unexpected_shapes_raise_query_error(payload):
    client = _make_client(lambda request: httpx.Response(200, json=payload))
    with pytest.raises(OpenCTIQueryError):
        client.list_observables(1, "created_at")
