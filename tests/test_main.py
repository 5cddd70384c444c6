"""HTTP-level tests for the /api/proxy route and operational endpoints."""
from unittest.mock import patch

import httpx
from fastapi.testclient import TestClient

from apiproxy.config import Settings
from apiproxy.forwarder import UpstreamResponse
from apiproxy.main import CORS_HEADERS, PROXY_PATH, app

client = TestClient(app)

BASE = "https://api.example.com"


def _assert_cors(response):
    for name, value in CORS_HEADERS.items():
        assert response.headers[name] == value


def test_options_preflight(fake_transport):
    r = client.options(PROXY_PATH)
    assert r.status_code == 204
    assert r.content == b""
    _assert_cors(r)
    assert fake_transport.calls == []


def test_missing_base_or_path(fake_transport):
    for params in ({}, {"base": BASE}, {"path": "/v1/graph"}):
        r = client.get(PROXY_PATH, params=params)
        assert r.status_code == 400
        assert r.json() == {"ok": False, "error": {"message": "Missing base or path"}}
        assert r.headers["content-type"] == "application/json; charset=utf-8"
        _assert_cors(r)
    assert fake_transport.calls == []


def test_disallowed_base(fake_transport):
    for base in ("http://example.com", "https://localhost", "https://127.0.0.1", "https://[::1]", "https://foo.local"):
        r = client.get(PROXY_PATH, params={"base": base, "path": "/v1/graph"})
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Invalid base URL"
    assert fake_transport.calls == []


def test_malformed_or_numeric_loopback_base_rejected(fake_transport):
    for base in ("https://exa mple.com", "https://a<b>.com", "https://api.example.com:99999", "https://127.1", "https://2130706433"):
        r = client.get(PROXY_PATH, params={"base": base, "path": "/v1"})
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Invalid base URL"
    assert fake_transport.calls == []


def test_path_without_leading_slash(fake_transport):
    r = client.get(PROXY_PATH, params={"base": "https://api.example.com/", "path": "v1/graph"})
    assert r.status_code == 400
    assert r.json()["ok"] is False
    assert r.json()["error"]["message"] == "path must start with /"


def test_get_relays_upstream_verbatim(fake_transport):
    r = client.get(PROXY_PATH, params={"base": BASE, "path": "/v1/graph"})

    assert r.status_code == 200
    assert r.headers["content-type"] == "application/json"
    assert r.text == '{"x":1}'
    _assert_cors(r)

    call = fake_transport.calls[0]
    assert call.method == "GET"
    assert call.url == "https://api.example.com/v1/graph"
    assert "Authorization" not in call.headers
    assert call.body is None


def test_post_forwards_authorization_and_body(fake_transport):
    r = client.post(
        PROXY_PATH,
        params={"base": BASE, "path": "/v1/submit"},
        json={"a": 1},
        headers={"Authorization": "Bearer tok123"},
    )
    assert r.status_code == 200

    call = fake_transport.calls[0]
    assert call.method == "POST"
    assert call.url == "https://api.example.com/v1/submit"
    assert call.headers == {"Authorization": "Bearer tok123", "Content-Type": "application/json"}
    assert call.body == '{"a":1}'


def test_post_without_body_sends_empty_object(fake_transport):
    r = client.post(PROXY_PATH, params={"base": BASE, "path": "/v1/submit"})
    assert r.status_code == 200
    assert fake_transport.calls[0].body == "{}"


def test_post_invalid_json(fake_transport):
    r = client.post(
        PROXY_PATH,
        params={"base": BASE, "path": "/v1/submit"},
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json()["error"]["message"].startswith("Invalid JSON body")
    assert fake_transport.calls == []


def test_post_body_too_large(fake_transport):
    with patch("apiproxy.main.get_settings", return_value=Settings(max_body_bytes=8)):
        r = client.post(PROXY_PATH, params={"base": BASE, "path": "/v1/submit"}, json={"payload": "x" * 64})
    assert r.status_code == 413
    assert r.json() == {"ok": False, "error": {"message": "Request body too large"}}
    assert fake_transport.calls == []


def test_upstream_error_status_and_content_type_relayed(fake_transport):
    fake_transport.response = UpstreamResponse(404, "text/plain", b"not here")
    r = client.get(PROXY_PATH, params={"base": BASE, "path": "/missing"})
    assert r.status_code == 404
    assert r.headers["content-type"] == "text/plain"
    assert r.text == "not here"


def test_missing_upstream_content_type_defaults_to_json(fake_transport):
    fake_transport.response = UpstreamResponse(200, None, b"[]")
    r = client.get(PROXY_PATH, params={"base": BASE, "path": "/v1/list"})
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/json; charset=utf-8"
    assert r.text == "[]"


def test_dispatch_failure_returns_502(fake_transport):
    fake_transport.error = httpx.ConnectError("connection refused")
    r = client.get(PROXY_PATH, params={"base": BASE, "path": "/v1/graph"})
    assert r.status_code == 502
    assert r.json() == {"ok": False, "error": {"message": "connection refused"}}
    _assert_cors(r)


def test_unsupported_method(fake_transport):
    r = client.put(PROXY_PATH, params={"base": BASE, "path": "/v1/graph"})
    assert r.status_code == 405
    _assert_cors(r)
    assert fake_transport.calls == []


def test_request_id_echoed(fake_transport):
    r = client.get(PROXY_PATH, params={"base": BASE, "path": "/v1/graph"}, headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"
    r = client.get(PROXY_PATH, params={"base": BASE, "path": "/v1/graph"})
    assert r.headers["X-Request-ID"]


def test_healthz_and_metrics(fake_transport):
    assert client.get("/healthz").json() == {"ok": True}
    client.get(PROXY_PATH, params={"base": BASE, "path": "/v1/graph"})
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "apiproxy_requests_total" in r.text
    assert "apiproxy_forward_total" in r.text


def test_readyz():
    r = client.get("/readyz")
    assert r.status_code == 200
    assert r.json()["http_client_ready"] is True
