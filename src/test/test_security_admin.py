import io
import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from auth import oauth2
from auth.oauth2 import create_access_token, required_token_user
from conftest import browser_headers
from main import create_app
from security.events import SecurityEventType as T, ThreatLevel as L

ADMIN = {"ID": "1", "Name": "Quân", "Email": "admin@example.com", "Avatar": None, "Privilege": "Admin"}
USER = {"ID": "2", "Name": "Nam", "Email": "user@example.com", "Avatar": None, "Privilege": "User"}

ADMIN_IP = "192.0.2.200"


@pytest.fixture
def app(pipeline):
    app = create_app(pipeline)
    app.dependency_overrides[required_token_user] = lambda: ADMIN
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def get(client, clock, path, **kwargs):
    clock.advance(1)
    return client.get(path, headers=browser_headers(ADMIN_IP), **kwargs)


def seed(pipeline, clock):
    now = clock()
    pipeline.events.record(T.RATE_LIMIT_EXCEEDED, L.LOW, "203.0.113.2", "/api/ping", "GET", now - 7200, blocked=True)
    pipeline.events.record(T.SQL_INJECTION, L.CRITICAL, "203.0.113.1", "/api/games", "GET", now - 10,
                           details={"location": "query:id"}, blocked=True, user_agent="curl/8.0")
    pipeline.events.record(T.XSS_ATTACK, L.CRITICAL, "203.0.113.1", "/api/chat", "POST", now - 5, blocked=True)
    pipeline.reputation.report_violation("203.0.113.1", "attack_attempt", now)


def test_statistics(client, clock, pipeline):
    seed(pipeline, clock)

    res = get(client, clock, "/security/admin/statistics")
    assert res.status_code == 200
    body = res.json()
    assert body["totalEvents"] == 3
    assert body["eventsByType"]["sql_injection"] == 1
    assert body["eventsByLevel"] == {"critical": 2, "low": 1}
    assert body["topAttackingIPs"][0] == {"ip": "203.0.113.1", "count": 2}
    assert body["blockedEvents"] == 3
    assert body["globalThreatLevel"] == "high"

    windowed = get(client, clock, "/security/admin/statistics", params={"window_seconds": 3600}).json()
    assert windowed["totalEvents"] == 2


def test_statistics_rejects_bad_window(client, clock):
    assert get(client, clock, "/security/admin/statistics", params={"window_seconds": 0}).status_code == 422


def test_events_newest_first_with_limit(client, clock, pipeline):
    seed(pipeline, clock)

    body = get(client, clock, "/security/admin/events", params={"limit": 2}).json()
    assert body["count"] == 2
    assert [e["type"] for e in body["items"]] == ["xss_attack", "sql_injection"]
    assert body["items"][1]["userAgent"] == "curl/8.0"
    assert body["items"][1]["details"]["location"] == "query:id"


def test_threat_indicators(client, clock, pipeline):
    seed(pipeline, clock)

    body = get(client, clock, "/security/admin/threat_indicators", params={"ip": "203.0.113.1"}).json()
    assert body["ip"] == "203.0.113.1"
    assert body["threatScore"] == 60
    assert {i["type"] for i in body["indicators"]} == {"critical_events", "high_threat_score"}


def test_invalid_ip_is_rejected(client, clock):
    res = get(client, clock, "/security/admin/threat_indicators", params={"ip": "not-an-ip"})
    assert res.status_code == 400
    res = get(client, clock, "/security/admin/reputation", params={"ip": "999.1.1.1"})
    assert res.status_code == 400


def test_reputation(client, clock, pipeline):
    seed(pipeline, clock)

    body = get(client, clock, "/security/admin/reputation", params={"ip": "203.0.113.1"}).json()
    assert body["score"] == 60
    assert body["violationCount"] == 1
    assert body["blocked"] is False
    assert body["blockedUntil"] is None

    fresh = get(client, clock, "/security/admin/reputation", params={"ip": "203.0.113.99"}).json()
    assert fresh["score"] == 100
    assert fresh["lastViolationAt"] is None


def test_export_excel(client, clock, pipeline):
    seed(pipeline, clock)

    res = get(client, clock, "/security/admin/export/events.xlsx")
    assert res.status_code == 200
    assert res.headers["content-type"].startswith(
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    )
    assert "security_events.xlsx" in res.headers["content-disposition"]

    wb = load_workbook(io.BytesIO(res.content))
    assert wb.sheetnames == ["Summary", "Events", "TopAttackingIPs", "CoordinatedAttacks"]
    events = list(wb["Events"].iter_rows(values_only=True))
    assert len(events) == 4   # header + 3 sự kiện
    assert events[1][2] == "rate_limit_exceeded"


def test_non_admin_is_forbidden(app, client, clock, pipeline):
    app.dependency_overrides[required_token_user] = lambda: USER

    for path, params in [
        ("/security/admin/statistics", None),
        ("/security/admin/events", None),
        ("/security/admin/threat_indicators", {"ip": "203.0.113.1"}),
        ("/security/admin/reputation", {"ip": "203.0.113.1"}),
        ("/security/admin/export/events.xlsx", None),
    ]:
        assert get(client, clock, path, params=params).status_code == 403


def test_missing_token_is_unauthorized(pipeline, clock):
    client = TestClient(create_app(pipeline))
    assert get(client, clock, "/security/admin/statistics").status_code == 401


def test_real_jwt(monkeypatch, pipeline, clock):
    monkeypatch.setattr(oauth2, "SECRET_KEY", "unit-test-secret")
    client = TestClient(create_app(pipeline))
    token = create_access_token({"ID": "1", "Email": "admin@example.com", "Privilege": "Boss"})

    clock.advance(1)
    res = client.get(
        "/security/admin/statistics",
        headers=browser_headers(ADMIN_IP, authorization=f"Bearer {token}"),
    )
    assert res.status_code == 200

    clock.advance(1)
    res = client.get(
        "/security/admin/statistics",
        headers=browser_headers(ADMIN_IP, authorization="Bearer not-a-jwt"),
    )
    assert res.status_code == 401


def test_token_without_email_is_rejected(monkeypatch, pipeline, clock):
    monkeypatch.setattr(oauth2, "SECRET_KEY", "unit-test-secret")
    client = TestClient(create_app(pipeline))
    token = create_access_token({"ID": "1", "Privilege": "Admin"})

    res = get(client, clock, "/security/admin/statistics")
    assert res.status_code == 401
    clock.advance(1)
    res = client.get(
        "/security/admin/statistics",
        headers=browser_headers(ADMIN_IP, authorization=f"Bearer {token}"),
    )
    assert res.status_code == 401


# =========================
# Health check
# =========================

def test_healthz(client, clock):
    assert get(client, clock, "/healthz").json() == {"status": "ok"}


def test_readyz_reports_maintenance(app, clock):
    with TestClient(app) as client:
        body = get(client, clock, "/readyz").json()
        assert body["status"] == "ok"
        assert body["checks"]["defense"] == "ok"
        assert body["checks"]["maintenance"] == "running"
    assert app.state.defense.maintenance_alive is False
