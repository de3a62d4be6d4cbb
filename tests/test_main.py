"""
Tests for Main Application wiring.

Covers the validation error handler and request logging middleware.
"""

from fastapi.testclient import TestClient


class TestValidationHandler:
    """Tests for the RequestValidationError handler."""

    def test_missing_field_returns_422(self, client: TestClient, user_headers):
        """Missing fields are reported with sanitized error entries."""
        response = client.post("/v1/credits/use", json={}, headers=user_headers)

        assert response.status_code == 422
        errors = response.json()["detail"]
        assert errors[0]["loc"] == ["body", "amount"]
        assert set(errors[0]) >= {"type", "loc", "msg"}

    def test_ctx_values_are_stringified(self, client: TestClient, user_headers):
        """Constraint context is rendered as strings."""
        response = client.post(
            "/v1/credits/use",
            json={"amount": 1, "description": ""},
            headers=user_headers,
        )

        assert response.status_code == 422
        error = response.json()["detail"][0]
        assert all(isinstance(v, str) for v in error["ctx"].values())


class TestLoggingMiddleware:
    """Tests for the HTTP middleware."""

    def test_request_id_passthrough(self, client: TestClient, user_headers):
        """Requests carrying X-Request-ID are served normally."""
        response = client.get("/", headers={**user_headers, "X-Request-ID": "req-1"})

        assert response.status_code == 200

    def test_requests_are_counted(self, client: TestClient):
        """Completed requests show up in the HTTP counter."""
        client.get("/")
        body = client.get("/metrics").text

        samples = [line for line in body.splitlines() if line.startswith("ledger_http_requests_total{")]
        assert samples
