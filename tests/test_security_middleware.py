"""Tests for the security pipeline middleware and application routes."""

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from reqshield.app.core.config import Settings
from reqshield.app.core.store import InMemoryStore
from reqshield.app.main import create_app


def make_app(**overrides):
    values = {"max_requests_per_window": 20, "sweep_interval_seconds": 3600}
    values.update(overrides)
    app = create_app(Settings(_env_file=None, **values), store=InMemoryStore())

    @app.post("/echo")
    async def echo(request: Request) -> dict:
        return {
            "identity": request.state.client_identity,
            "form": request.state.sanitized_form,
            "query": request.state.sanitized_query,
            "body": request.state.sanitized_body,
            "findings": [f.field for f in request.state.threat_findings],
        }

    @app.post("/api/webhook/payment")
    async def webhook() -> dict:
        return {"received": True}

    return app


@pytest.fixture
def client():
    with TestClient(make_app()) as c:
        yield c


def fetch_token(client) -> str:
    resp = client.get("/csrf-token")
    assert resp.status_code == 200
    return resp.json()["csrf_token"]


class TestResponseHeaders:
    def test_security_headers_on_admitted_response(self, client):
        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "SAMEORIGIN"
        assert resp.headers["Content-Security-Policy"] == "default-src 'self'"
        assert "Strict-Transport-Security" not in resp.headers
        assert "x-powered-by" not in resp.headers

    def test_rate_limit_headers_on_admitted_response(self, client):
        resp = client.get("/health")
        assert resp.headers["X-RateLimit-Limit"] == "20"
        assert resp.headers["X-RateLimit-Remaining"] == "19"

    def test_hsts_behind_tls_proxy(self, client):
        resp = client.get("/health", headers={"X-Forwarded-Proto": "https"})
        assert resp.headers["Strict-Transport-Security"].startswith("max-age=")


class TestHealth:
    def test_health_reports_store_and_sweeper(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["components"]["store"]["type"] == "InMemoryStore"
        assert data["components"]["sweeper"]["status"] == "ok"


class TestCsrfFlow:
    def test_token_endpoint_sets_session_cookie(self, client):
        resp = client.get("/csrf-token")
        body = resp.json()

        assert "session_id" in resp.cookies
        assert len(body["csrf_token"]) == 64
        assert body["header_name"] == "x-csrf-token"

    def test_post_without_token_is_403(self, client):
        resp = client.post("/echo", json={"a": 1})

        assert resp.status_code == 403
        assert resp.json()["reason"] == "missing"
        assert resp.headers["content-type"] == "application/json"

    def test_post_with_header_token(self, client):
        token = fetch_token(client)
        resp = client.post("/echo", json={"a": 1}, headers={"X-CSRF-Token": token})

        assert resp.status_code == 200
        assert resp.json()["identity"].startswith("session:")

    def test_post_with_form_token_gets_sanitized_form(self, client):
        token = fetch_token(client)
        resp = client.post("/echo", data={"_csrf": token, "name": "<b>Ada</b>"})

        assert resp.status_code == 200
        assert resp.json()["form"]["name"] == "&lt;b&gt;Ada&lt;/b&gt;"

    def test_token_from_other_session_rejected(self, client):
        token = fetch_token(client)
        client.cookies.clear()

        resp = client.post(
            "/echo",
            json={},
            headers={"X-CSRF-Token": token, "Cookie": "session_id=someone-else"},
        )

        assert resp.status_code == 403
        assert resp.json()["reason"] == "session_mismatch"

    def test_excluded_path_skips_csrf(self, client):
        resp = client.post("/api/webhook/payment", json={"id": "evt_1"})
        assert resp.status_code == 200

    def test_logout_invalidates_tokens(self, client):
        token = fetch_token(client)
        resp = client.post("/logout", headers={"X-CSRF-Token": token})

        assert resp.status_code == 200
        assert resp.json()["invalidated"] == 1

        resp = client.post("/echo", json={}, headers={"X-CSRF-Token": token})
        assert resp.status_code == 403
        assert resp.json()["reason"] == "not_found"

    def test_one_time_tokens(self):
        with TestClient(make_app(csrf_one_time_use=True)) as client:
            token = fetch_token(client)
            first = client.post("/echo", json={}, headers={"X-CSRF-Token": token})
            second = client.post("/echo", json={}, headers={"X-CSRF-Token": token})

        assert first.status_code == 200
        assert second.status_code == 403
        assert second.json()["reason"] == "already_used"


class TestInputInspection:
    def test_findings_exposed_to_endpoint(self, client):
        token = fetch_token(client)
        resp = client.post(
            "/echo?id=1%20OR%201%3D1",
            json={"path": "../../etc/passwd"},
            headers={"X-CSRF-Token": token},
        )

        assert resp.status_code == 200
        assert resp.json()["findings"] == ["query.id", "body.path"]

    def test_blocking_rejects_with_400(self):
        with TestClient(make_app(block_detected_threats=True)) as client:
            token = fetch_token(client)
            resp = client.post(
                "/echo",
                json={"username": {"$ne": None}},
                headers={"X-CSRF-Token": token},
            )

        assert resp.status_code == 400
        assert resp.json()["error"] == "threat_detected"

    def test_invalid_json_is_not_inspected(self, client):
        token = fetch_token(client)
        resp = client.post(
            "/echo",
            content=b"{not json",
            headers={"X-CSRF-Token": token, "Content-Type": "application/json"},
        )
        assert resp.status_code == 200
        assert resp.json()["body"] is None

    def test_deeply_nested_json_is_not_inspected(self):
        with TestClient(make_app(csrf_enabled=False)) as client:
            resp = client.post(
                "/echo",
                content=b"[" * 50_000 + b"]" * 50_000,
                headers={"Content-Type": "application/json"},
            )

        assert resp.status_code == 200
        assert resp.json()["body"] is None

    def test_every_value_of_repeated_query_key_is_blocked(self):
        with TestClient(make_app(block_detected_threats=True, csrf_enabled=False)) as client:
            resp = client.post("/echo?q=1%3B%20DROP%20TABLE%20users&q=hello")

        assert resp.status_code == 400
        assert resp.json()["field"] == "query.q[0]"

    def test_every_value_of_repeated_form_key_is_blocked(self):
        with TestClient(make_app(block_detected_threats=True, csrf_enabled=False)) as client:
            resp = client.post("/echo", data={"name": ["Ada", "../../etc/passwd"]})

        assert resp.status_code == 400
        assert resp.json()["field"] == "form.name[1]"

    def test_repeated_keys_keep_all_sanitized_values(self):
        with TestClient(make_app(csrf_enabled=False)) as client:
            resp = client.post("/echo?tag=%3Ca%3E&tag=%3Cb%3E&page=2")

        assert resp.status_code == 200
        assert resp.json()["query"] == {"tag": ["&lt;a&gt;", "&lt;b&gt;"], "page": "2"}


class TestRateLimiting:
    def test_429_after_budget(self):
        with TestClient(make_app(max_requests_per_window=2)) as client:
            client.get("/health")
            client.get("/health")
            resp = client.get("/health")

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert resp.json()["error"] == "rate_limit_exceeded"

    def test_forwarded_clients_are_separate(self):
        with TestClient(make_app(max_requests_per_window=1)) as client:
            a = client.get("/health", headers={"X-Forwarded-For": "10.0.0.5"})
            b = client.get("/health", headers={"X-Forwarded-For": "10.0.0.6"})
            again = client.get("/health", headers={"X-Forwarded-For": "10.0.0.5"})

        assert a.status_code == 200
        assert b.status_code == 200
        assert again.status_code == 429


class TestTransport:
    def test_redirect_to_https(self):
        app = make_app(https_only=True, server_hostname="shop.example.com")
        with TestClient(app, follow_redirects=False) as client:
            resp = client.get("/health?verbose=1")

        assert resp.status_code == 301
        assert resp.headers["location"] == "https://shop.example.com/health?verbose=1"

    def test_refused_without_hostname(self):
        with TestClient(make_app(https_only=True)) as client:
            resp = client.get("/health")

        assert resp.status_code == 403
        assert resp.json()["error"] == "https_required"
