import json
import logging
from pathlib import Path

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from opswatch.config import parse_config
from opswatch.server import create_app

ADMIN_TOKEN = "admin-secret"
DEV_TOKEN = "dev-secret"
READONLY_TOKEN = "readonly-secret"


def _config(log_dir: Path, **overrides):
    data = {
        "instance_name": "node-a",
        "log_dir": str(log_dir),
        "credentials": [
            {"token": ADMIN_TOKEN, "username": "alice", "role": "admin"},
            {"token": DEV_TOKEN, "username": "dmitri", "role": "developer"},
            {"token": READONLY_TOKEN, "username": "rosa", "role": "readonly"},
        ],
    }
    data.update(overrides)
    return parse_config(data)


class _CaptureHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.messages: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(record.getMessage())


@pytest.fixture
def client(tmp_path):
    return TestClient(create_app(_config(tmp_path)))


def _auth(token: str) -> dict:
    return {"X-API-Token": token}


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["instance"] == "node-a"
    assert "time" in body


def test_api_info_lists_route_access(client):
    response = client.get("/api/info")
    assert response.status_code == 200
    endpoints = {item["path"]: item["access"] for item in response.json()["endpoints"]}
    assert endpoints["/health"] == "public"
    assert endpoints["/alerts"] == "authenticated"
    assert endpoints["/logs/audit"] == "roles:admin"


def test_protected_route_requires_token(client):
    response = client.get("/alerts")
    assert response.status_code == 401
    assert response.json() == {"error": "authentication required"}


def test_unknown_token_is_rejected(client):
    response = client.get("/alerts", headers=_auth("not-a-token"))
    assert response.status_code == 401
    assert response.json() == {"error": "invalid token"}
    assert "not-a-token" not in response.text


def test_readonly_token_forbidden_on_admin_route(client):
    response = client.get("/logs/system", headers=_auth(READONLY_TOKEN))
    assert response.status_code == 403
    assert response.json() == {"error": "insufficient permissions"}

    allowed = client.get("/alerts", headers=_auth(READONLY_TOKEN))
    assert allowed.status_code == 200


def test_developer_token_forbidden_on_audit_log(client):
    response = client.get("/logs/audit", headers=_auth(DEV_TOKEN))
    assert response.status_code == 403


def test_admin_reads_parsed_audit_records(client):
    client.get("/alerts")
    response = client.get("/logs/audit", headers=_auth(ADMIN_TOKEN))

    assert response.status_code == 200
    body = response.json()
    entries = body["entries"]
    assert body["count"] == len(entries) == 2
    assert all(isinstance(entry, dict) for entry in entries)
    failed, current = entries
    assert failed["path"] == "/alerts"
    assert failed["user"] == "anonymous"
    assert current["path"] == "/logs/audit"
    assert current["user"] == "alice"
    assert current["method"] == "GET"
    assert current["user_agent"] == "testclient"
    assert current["client_address"] == "testclient"


def test_unregistered_path_requires_authentication(client):
    assert client.get("/nope").status_code == 401
    response = client.get("/nope", headers=_auth(READONLY_TOKEN))
    assert response.status_code == 404
    assert response.json() == {"error": "not found"}


def test_missing_artifacts_return_empty_payloads(client):
    alerts = client.get("/alerts", headers=_auth(READONLY_TOKEN)).json()
    assert alerts == {"alerts": [], "count": 0}
    security = client.get("/security", headers=_auth(READONLY_TOKEN)).json()
    assert security == {"events": [], "count": 0}
    metrics = client.get("/metrics", headers=_auth(READONLY_TOKEN)).json()
    assert metrics == {"metrics": [], "count": 0}
    processes = client.get("/health/processes", headers=_auth(READONLY_TOKEN)).json()
    assert processes == {"processes": {}}
    system = client.get("/logs/system", headers=_auth(ADMIN_TOKEN)).json()
    assert system == {"logs": [], "count": 0}


def test_alerts_tail_keeps_last_lines_in_order(tmp_path):
    lines = [f"alert {i}" for i in range(150)]
    (tmp_path / "alerts.log").write_text("\n".join(lines) + "\n", encoding="utf-8")
    client = TestClient(create_app(_config(tmp_path)))

    body = client.get("/alerts", headers=_auth(DEV_TOKEN)).json()
    assert body["count"] == 50
    assert body["alerts"] == lines[-50:]

    limited = client.get("/alerts", params={"limit": 5}, headers=_auth(DEV_TOKEN)).json()
    assert limited["alerts"] == lines[-5:]


def test_limit_out_of_range_is_rejected(client):
    response = client.get("/alerts", params={"limit": 0}, headers=_auth(DEV_TOKEN))
    assert response.status_code == 422
    assert response.json() == {"error": "invalid request parameters"}


def test_metrics_endpoint_parses_json_lines(tmp_path):
    records = [{"cpu": i, "ts": f"2024-01-01T00:00:0{i}Z"} for i in range(3)]
    (tmp_path / "metrics.json").write_text(
        "\n".join(json.dumps(r) for r in records) + "\n", encoding="utf-8"
    )
    client = TestClient(create_app(_config(tmp_path)))

    body = client.get("/metrics", headers=_auth(READONLY_TOKEN)).json()
    assert body == {"metrics": records, "count": 3}


def test_malformed_metrics_artifact_returns_generic_error(tmp_path, caplog):
    (tmp_path / "metrics.json").write_text('{"cpu": 1}\n{"cpu": \n', encoding="utf-8")
    client = TestClient(create_app(_config(tmp_path)))

    with caplog.at_level(logging.ERROR, logger="opswatch.server"):
        response = client.get("/metrics", headers=_auth(READONLY_TOKEN))

    assert response.status_code == 500
    assert response.json() == {"error": "failed to read metrics"}
    assert str(tmp_path) not in response.text
    assert any("metrics.json" in record.getMessage() for record in caplog.records)


def test_process_health_document(tmp_path):
    document = {"collector": {"pid": 42, "status": "running"}}
    (tmp_path / "process_health.json").write_text(json.dumps(document), encoding="utf-8")
    client = TestClient(create_app(_config(tmp_path)))

    body = client.get("/health/processes", headers=_auth(READONLY_TOKEN)).json()
    assert body == {"processes": document}


def test_rate_limit_rejects_after_threshold(tmp_path):
    client = TestClient(create_app(_config(tmp_path, rate_limit={"max_requests": 3})))

    statuses = [client.get("/health").status_code for _ in range(4)]
    assert statuses == [200, 200, 200, 429]

    blocked = client.get("/health")
    assert blocked.status_code == 429
    assert blocked.json() == {"error": "too many requests"}
    assert int(blocked.headers["Retry-After"]) >= 1


def test_rate_limit_headers_on_admitted_requests(tmp_path):
    client = TestClient(create_app(_config(tmp_path, rate_limit={"max_requests": 10})))
    response = client.get("/health")
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "9"


def test_rate_limit_ignores_forwarded_for_by_default(tmp_path):
    client = TestClient(create_app(_config(tmp_path, rate_limit={"max_requests": 1})))

    first = client.get("/health", headers={"x-forwarded-for": "10.0.0.1"})
    second = client.get("/health", headers={"x-forwarded-for": "10.0.0.2"})

    assert first.status_code == 200
    assert second.status_code == 429


def test_rate_limit_uses_forwarded_for_when_trusted(tmp_path):
    config = _config(tmp_path, rate_limit={"max_requests": 1, "trust_forwarded_for": True})
    client = TestClient(create_app(config))

    first = client.get("/health", headers={"x-forwarded-for": "10.0.0.1"})
    second = client.get("/health", headers={"x-forwarded-for": "10.0.0.2"})

    assert first.status_code == 200
    assert second.status_code == 200


def test_rate_limit_keys_on_proxy_appended_hop(tmp_path):
    config = _config(tmp_path, rate_limit={"max_requests": 1, "trust_forwarded_for": True})
    client = TestClient(create_app(config))

    statuses = [
        client.get("/health", headers={"x-forwarded-for": f"1.2.3.{i}, 10.0.0.9"}).status_code
        for i in range(5)
    ]
    assert statuses == [200, 429, 429, 429, 429]


def test_trailing_slash_on_public_route_is_not_gated(tmp_path):
    client = TestClient(create_app(_config(tmp_path)))

    redirect = client.get("/health/", follow_redirects=False)
    assert redirect.status_code == 307
    assert redirect.headers["location"].endswith("/health")
    assert client.get("/health/").status_code == 200
    assert client.get("/alerts/").status_code == 401


def test_non_standard_json_constant_is_a_malformed_artifact(tmp_path, caplog):
    (tmp_path / "metrics.json").write_text('{"cpu": NaN}\n', encoding="utf-8")
    client = TestClient(create_app(_config(tmp_path)))

    with caplog.at_level(logging.ERROR, logger="opswatch.server"):
        response = client.get("/metrics", headers=_auth(READONLY_TOKEN))

    assert response.status_code == 500
    assert response.json() == {"error": "failed to read metrics"}
    messages = [record.getMessage() for record in caplog.records]
    assert any("metrics.json" in message and "NaN" in message for message in messages)
    assert not any("Unhandled server error" in message for message in messages)


def test_unhandled_error_does_not_leak_internals(tmp_path, monkeypatch):
    app = create_app(_config(tmp_path))

    def _boom():
        raise RuntimeError("db password leaked")

    monkeypatch.setattr(app.state.metrics, "snapshot_application", _boom)
    client = TestClient(app)
    response = client.get("/metrics/application", headers=_auth(READONLY_TOKEN))

    assert response.status_code == 500
    assert response.json() == {"error": "internal server error", "message": "an unexpected error occurred"}
    assert "password" not in response.text


def test_audit_failure_does_not_fail_request(tmp_path, caplog):
    (tmp_path / "audit.log").mkdir()
    client = TestClient(create_app(_config(tmp_path)))

    with caplog.at_level(logging.WARNING, logger="opswatch.server"):
        response = client.get("/health")

    assert response.status_code == 200
    assert any("Audit append failed" in record.getMessage() for record in caplog.records)

    audit = client.get("/logs/audit", headers=_auth(ADMIN_TOKEN))
    assert audit.status_code == 500
    assert audit.json() == {"error": "failed to read audit"}


def test_access_log_records_status(client):
    from opswatch.pipeline import ACCESS_LOGGER

    handler = _CaptureHandler()
    ACCESS_LOGGER.addHandler(handler)
    try:
        client.get("/alerts")
    finally:
        ACCESS_LOGGER.removeHandler(handler)

    payloads = [json.loads(msg) for msg in handler.messages]
    assert any(
        p["event"] == "access" and p["path"] == "/alerts" and p["status_code"] == 401 for p in payloads
    )


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"x-request-id": "req-123"})
    assert response.headers["x-request-id"] == "req-123"
