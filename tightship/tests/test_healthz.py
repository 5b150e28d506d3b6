import tightship.api.health as health_api


class FakeConn:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def exec_driver_sql(self, query):
        return None


class FakeEngine:
    def connect(self):
        return FakeConn()


class FakeInspector:
    def __init__(self, tables):
        self.tables = set(tables)

    def has_table(self, name):
        return name in self.tables


def test_healthz_always_ok(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_ok_with_mocked_db(client, monkeypatch):
    monkeypatch.setattr(health_api, "get_engine", lambda: FakeEngine())
    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector(health_api.REQUIRED_TABLES))

    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_reports_missing_tables(client, monkeypatch):
    monkeypatch.setattr(health_api, "get_engine", lambda: FakeEngine())
    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector(["organizations"]))

    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert "subscriptions" in resp.json()["detail"]


def test_readyz_handles_db_down(client, monkeypatch):
    def boom():
        raise RuntimeError("db down")

    monkeypatch.setattr(health_api, "get_engine", boom)

    resp = client.get("/readyz")
    body = resp.json()
    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "database" in body.get("detail", "")


def test_health_db_deterministic_when_now_given(client, monkeypatch):
    monkeypatch.setattr(health_api, "check_connection", lambda: False)

    resp = client.get("/api/health/db", params={"now": "2024-03-15T12:00:00+00:00"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is False
    assert body["db"]["latency_ms"] is None
    assert body["computed_at"] == "2024-03-15T12:00:00+00:00"
