from __future__ import annotations

import logging

from fastapi.testclient import TestClient

from adaptive_limiter.main import app


client = TestClient(app)


def test_preserves_incoming_request_id_header():
    incoming_id = "test-request-id-123"
    resp = client.get("/health", headers={"X-Request-ID": incoming_id})

    assert resp.status_code == 200
    assert resp.headers.get("X-Request-ID") == incoming_id


def test_generates_request_id_and_duration_when_missing():
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.headers.get("X-Request-ID")
    assert float(resp.headers["X-Request-Duration-ms"]) >= 0


def test_error_envelope_carries_request_id():
    resp = client.get("/v1/cluster/status", headers={"X-Request-ID": "req-403"})

    assert resp.status_code == 403
    assert resp.headers["X-Request-ID"] == "req-403"
    assert resp.json()["error"]["request_id"] == "req-403"


def test_logs_completed_request(caplog):
    with caplog.at_level(logging.INFO, logger="adaptive_limiter.core.middleware"):
        client.get("/health/ready", headers={"X-Request-ID": "req-log"})

    records = [r for r in caplog.records if r.getMessage() == "http.request_completed"]
    assert records
    assert records[-1].path == "/health/ready"
    assert records[-1].status_code == 200
