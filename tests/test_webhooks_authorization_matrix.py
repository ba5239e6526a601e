from fastapi.testclient import TestClient

from src.auth.context import SuperAdminContext
from src.auth.dependencies import get_current_super_admin
from src.main import app


CLIENT_UPDATE = "it.fattureincloud.webhooks.entities.clients.update"


def _set_super_admin():
    async def _override():
        return SuperAdminContext(super_admin_id="sa-1", email="ops@example.com")

    app.dependency_overrides[get_current_super_admin] = _override


def _clear():
    app.dependency_overrides.clear()


def _event(entry_id: str, status: str, **overrides) -> dict:
    row = {
        "id": entry_id,
        "fic_account_id": "acct-1",
        "event_type": CLIENT_UPDATE,
        "resource_type": "client",
        "fic_resource_id": "42",
        "event_key": f"key-{entry_id}",
        "status": status,
        "payload": {"data": {"ids": [42]}},
        "attempts": 1,
        "last_error": "boom" if status == "failed" else None,
        "created_at": f"2025-01-01T00:00:0{entry_id[-1]}+00:00",
    }
    row.update(overrides)
    return row


def test_event_admin_endpoints_require_super_admin(fake_db):
    client = TestClient(app)
    assert client.get("/api/webhooks/events").status_code == 401
    assert client.get("/api/webhooks/events/evt-1").status_code == 401
    assert client.post("/api/webhooks/events/evt-1/replay").status_code == 401
    assert client.post("/api/webhooks/events/replay-failed", json={}).status_code == 401


def test_event_admin_endpoints_reject_garbage_token(fake_db):
    client = TestClient(app)
    response = client.get("/api/webhooks/events", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_list_and_detail_events(fake_db):
    fake_db.tables["fic_events"] = [_event("e1", "processed"), _event("e2", "failed")]
    _set_super_admin()
    try:
        client = TestClient(app)
        listed = client.get("/api/webhooks/events")
        failed_only = client.get("/api/webhooks/events", params={"status_value": "failed"})
        detail = client.get("/api/webhooks/events/e2")
        missing = client.get("/api/webhooks/events/nope")
        bad_filter = client.get("/api/webhooks/events", params={"status_value": "weird"})
    finally:
        _clear()

    assert listed.status_code == 200
    assert [row["id"] for row in listed.json()] == ["e2", "e1"]
    assert [row["id"] for row in failed_only.json()] == ["e2"]
    assert detail.json()["payload"] == {"data": {"ids": [42]}}
    assert detail.json()["last_error"] == "boom"
    assert missing.status_code == 404
    assert bad_filter.status_code == 400


def test_replay_failed_entry_resyncs_resource(fake_db, fake_fic, account_factory):
    fake_db.tables["fic_accounts"] = [account_factory()]
    fake_db.tables["fic_events"] = [_event("e1", "failed")]
    fake_fic.resources[("1001", "client", "42")] = {"id": 42, "name": "ACME"}
    _set_super_admin()
    try:
        client = TestClient(app)
        response = client.post("/api/webhooks/events/e1/replay")
    finally:
        _clear()

    assert response.status_code == 200
    assert response.json() == {"id": "e1", "status": "queued", "reason": None}
    entry = fake_db.rows("fic_events")[0]
    assert entry["status"] == "processed"
    assert fake_db.rows("fic_clients")[0]["name"] == "ACME"


def test_replay_skips_entries_that_are_not_failed(fake_db, fake_fic):
    fake_db.tables["fic_events"] = [_event("e1", "processed")]
    _set_super_admin()
    try:
        client = TestClient(app)
        response = client.post("/api/webhooks/events/e1/replay")
    finally:
        _clear()

    assert response.json()["status"] == "skipped"
    assert response.json()["reason"] == "status=processed"
    assert fake_fic.calls == []


def test_bulk_replay_of_failed_entries(fake_db, fake_fic, account_factory):
    fake_db.tables["fic_accounts"] = [account_factory()]
    fake_db.tables["fic_events"] = [
        _event("e1", "failed"),
        _event("e2", "failed", fic_resource_id="43"),
        _event("e3", "processed"),
    ]
    fake_fic.resources[("1001", "client", "42")] = {"id": 42, "name": "ACME"}
    fake_fic.resources[("1001", "client", "43")] = {"id": 43, "name": "Beta"}
    _set_super_admin()
    try:
        client = TestClient(app)
        dry = client.post("/api/webhooks/events/replay-failed", json={"dry_run": True})
        real = client.post("/api/webhooks/events/replay-failed", json={"account_id": "acct-1"})
    finally:
        _clear()

    assert dry.json()["matched"] == 2
    assert dry.json()["dry_run"] is True
    assert real.status_code == 200
    assert real.json()["queued"] == 2
    assert [row["status"] for row in fake_db.rows("fic_events")] == ["processed", "processed", "processed"]
    assert len(fake_db.rows("fic_clients")) == 2
