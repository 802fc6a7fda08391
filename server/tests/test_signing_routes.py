"""
HTTP tests for the signing session, health and monitoring endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from utilitysign.integrations.backend import ErrorKind, GatewayError, GatewayResult
from utilitysign.main import create_application

from tests.conftest import ok_result

SIGNER = {"name": "Ada Lovelace", "email": "ada@example.no"}
START_BODY = {"order_ref": "order-1", "document_ref": "doc-1", "signer": SIGNER}


def failure(kind, retryable, **kwargs):
    error = GatewayError(kind=kind, message=f"{kind.value} failure", retryable=retryable, **kwargs)
    return GatewayResult.failed(error, correlation_id="wp-abc-1", attempts=1)


@pytest.fixture
def client(test_settings, stub_gateway, order_store, notifications):
    app = create_application(test_settings, gateway=stub_gateway, order_store=order_store, notification_sink=notifications)
    with TestClient(app) as test_client:
        yield test_client


class TestStartSigning:
    def test_start_session(self, client, stub_gateway):
        response = client.post("/signing", json={**START_BODY, "idempotency_key": "key-1"})

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["reused"] is False
        assert body["session"]["status"] == "awaiting_identity"
        assert body["session"]["session_id"] == "sess-1"
        assert body["session"]["signer"] == SIGNER
        stub_gateway.start.assert_awaited_once()

    def test_resubmission_is_idempotent(self, client, stub_gateway):
        client.post("/signing", json={**START_BODY, "idempotency_key": "key-1"})
        response = client.post("/signing", json={**START_BODY, "idempotency_key": "key-1"})

        assert response.status_code == 201
        assert response.json()["reused"] is True
        assert stub_gateway.create_signing_session.await_count == 1

    def test_invalid_signer(self, client, stub_gateway):
        response = client.post("/signing", json={**START_BODY, "signer": {"name": "A", "email": "nope"}})

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["kind"] == "validation"
        assert error["step"] == "identity"
        assert set(error["validation_errors"]) == {"name", "email"}
        stub_gateway.create_signing_session.assert_not_awaited()

    def test_missing_fields_use_framework_validation(self, client):
        response = client.post("/signing", json={"order_ref": "order-1"})
        assert response.status_code == 422

    def test_configuration_error_is_not_retryable(self, client, stub_gateway):
        stub_gateway.create_signing_session.return_value = failure(
            ErrorKind.CONFIGURATION, False, error_code="CRIIPTO_NOT_CONFIGURED", user_message="Kontakt administrator."
        )

        response = client.post("/signing", json=START_BODY)

        assert response.status_code == 503
        body = response.json()
        assert body["correlation_id"] == "wp-abc-1"
        assert body["error"]["kind"] == "configuration"
        assert body["error"]["retryable"] is False
        assert body["error"]["step"] == "identity"
        assert body["error"]["user_message"] == "Kontakt administrator."

    def test_rate_limited_sets_retry_after(self, client, stub_gateway):
        stub_gateway.create_signing_session.return_value = failure(
            ErrorKind.RATE_LIMITED, True, retry_after_seconds=42.5
        )

        response = client.post("/signing", json=START_BODY)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["retryable"] is True

    @pytest.mark.parametrize(
        "kind,status_code",
        [
            (ErrorKind.SERVER_UNAVAILABLE, 503),
            (ErrorKind.NETWORK, 502),
            (ErrorKind.VALIDATION, 400),
            (ErrorKind.UNKNOWN, 502),
        ],
    )
    def test_status_by_error_kind(self, client, stub_gateway, kind, status_code):
        stub_gateway.create_signing_session.return_value = failure(kind, kind.is_transient)

        response = client.post("/signing", json=START_BODY)

        assert response.status_code == status_code
        assert response.json()["error"]["kind"] == kind.value


class TestSigningActions:
    def test_get_unknown_session(self, client):
        assert client.get("/signing/missing").status_code == 404

    def test_trigger_completion(self, client, stub_gateway):
        client.post("/signing", json=START_BODY)
        stub_gateway.check_completion.return_value = ok_result({"status": "signed"})

        response = client.post("/signing/order-1/complete")

        assert response.status_code == 200
        body = response.json()
        assert body["disposition"] == "applied"
        assert body["session"]["status"] == "signed"
        stub_gateway.get_signing_status.assert_not_awaited()

    def test_trigger_completion_gateway_failure(self, client, stub_gateway):
        client.post("/signing", json=START_BODY)
        stub_gateway.check_completion.return_value = failure(ErrorKind.NETWORK, True)

        response = client.post("/signing/order-1/complete")

        assert response.status_code == 502
        assert response.json()["error"]["step"] == "signature"

    def test_trigger_completion_unknown_order(self, client):
        assert client.post("/signing/missing/complete").status_code == 404

    def test_cancel_identity(self, client):
        client.post("/signing", json=START_BODY)

        response = client.post("/signing/identity/sess-1/cancel")

        assert response.status_code == 200
        session = response.json()["session"]
        assert session["status"] == "identity_cancelled"
        assert session["last_error"] == {
            "kind": "authentication.cancelled",
            "step": "identity",
            "message": "Cancelled by user",
            "retryable": True,
        }


class TestHealthAndMonitoring:
    def test_health(self, client, stub_gateway):
        response = client.get("/health")

        assert response.json() == {"status": "ok", "environment": "staging"}
        stub_gateway.health_check.assert_not_awaited()

    def test_deep_health_degraded(self, client, stub_gateway):
        stub_gateway.health_check.return_value = failure(ErrorKind.SERVER_UNAVAILABLE, True, status_code=503)

        body = client.get("/health", params={"deep": True}).json()

        assert body["status"] == "degraded"
        assert body["backend"]["healthy"] is False

    def test_gateway_monitoring(self, client):
        body = client.get("/monitoring/gateway").json()

        assert set(body) == {"metrics", "cache", "rate_limit"}
        assert body["rate_limit"]["limit"] == 60
        assert body["metrics"]["total_requests"] == 0
