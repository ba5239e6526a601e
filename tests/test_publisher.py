import hashlib
import hmac
import json

import httpx
from fastapi.testclient import TestClient

from src.domain.errors import TransientNetworkError
from src.domain.resources import ResourceAction, ResourceCategory
from src.main import app
from src.routers import webhooks as webhooks_router
from src.services import publisher, resource_sync


CLIENT_CREATE = "it.fattureincloud.webhooks.entities.clients.create"


class _RecordingHttpClient:
    sent = []

    def __init__(self, timeout: float):
        self.timeout = timeout

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def post(self, url: str, headers: dict, json: dict):
        self.sent.append({"url": url, "headers": headers, "json": json, "timeout": self.timeout})

        class _Response:
            status_code = 200
            text = "ok"

        return _Response()


def test_publish_is_skipped_without_relay_url(monkeypatch):
    monkeypatch.setattr(publisher.settings, "realtime_publish_url", None)
    _RecordingHttpClient.sent = []
    monkeypatch.setattr(publisher.httpx, "Client", _RecordingHttpClient)

    assert publisher.publish_event("sync.account.acct-1", "resource.synced", {"fic_id": "42"}) is False
    assert _RecordingHttpClient.sent == []


def test_publish_posts_channel_event_and_data(monkeypatch):
    _RecordingHttpClient.sent = []
    monkeypatch.setattr(publisher.settings, "realtime_publish_url", "https://push.example.com/events")
    monkeypatch.setattr(publisher.settings, "realtime_publish_bearer_token", "push-tok")
    monkeypatch.setattr(publisher.settings, "realtime_publish_timeout_seconds", 1.5)
    monkeypatch.setattr(publisher.httpx, "Client", _RecordingHttpClient)

    assert publisher.publish_event("webhooks.account.acct-1", "webhook.received", {"event_type": CLIENT_CREATE}) is True

    sent = _RecordingHttpClient.sent[0]
    assert sent["url"] == "https://push.example.com/events"
    assert sent["headers"]["Authorization"] == "Bearer push-tok"
    assert sent["timeout"] == 1.5
    assert sent["json"]["channel"] == "webhooks.account.acct-1"
    assert sent["json"]["event"] == "webhook.received"
    assert sent["json"]["data"] == {"event_type": CLIENT_CREATE}


def test_publish_failure_is_swallowed(monkeypatch):
    class _FailingHttpClient(_RecordingHttpClient):
        def post(self, url: str, headers: dict, json: dict):
            raise httpx.ConnectError("relay down")

    monkeypatch.setattr(publisher.settings, "realtime_publish_url", "https://push.example.com/events")
    monkeypatch.setattr(publisher.httpx, "Client", _FailingHttpClient)

    assert publisher.publish_event("sync.account.acct-1", "resource.synced", {}) is False


def test_accepted_webhook_and_sync_are_published(fake_db, fake_fic, account_factory, monkeypatch):
    fake_db.tables["fic_accounts"] = [account_factory()]
    fake_db.tables["fic_subscriptions"] = [
        {
            "id": "sub-row-1",
            "fic_account_id": "acct-1",
            "fic_subscription_id": "SUB1",
            "event_group": "entity",
            "is_active": True,
            "verified": True,
            "webhook_secret": "whsec-1",
        }
    ]
    fake_fic.resources[("1001", "client", "42")] = {"id": 42, "name": "ACME"}
    published = []

    def _record(channel, event, payload, *, request_id=None):
        published.append((channel, event, payload))
        return True

    monkeypatch.setattr(webhooks_router, "publish_event", _record)
    monkeypatch.setattr(resource_sync, "publish_event", _record)

    body = json.dumps({"data": {"ids": [42]}}).encode()
    response = TestClient(app).post(
        "/api/webhooks/fic/acct-1/entity",
        content=body,
        headers={
            "content-type": "application/json",
            "X-Fic-Signature": hmac.new(b"whsec-1", body, hashlib.sha256).hexdigest(),
            "ce-type": CLIENT_CREATE,
            "ce-id": "evt-9",
        },
    )

    assert response.status_code == 202
    events = {event: (channel, payload) for channel, event, payload in published}
    assert events["resource.synced"][0] == "sync.account.acct-1"
    assert events["resource.synced"][1]["fic_id"] == "42"
    assert events["resource.synced"][1]["result"] == "upserted"
    assert events["webhook.received"][0] == "webhooks.account.acct-1"
    assert events["webhook.received"][1]["ce_id"] == "evt-9"
    assert events["webhook.received"][1]["data"] == {"ids": [42]}


def test_failed_sync_is_not_published(fake_db, fake_fic, account_factory, monkeypatch):
    fake_db.tables["fic_accounts"] = [account_factory()]
    published = []
    monkeypatch.setattr(resource_sync, "publish_event", lambda *args, **kwargs: published.append(args))
    fake_fic.failures["fetch"] = TransientNetworkError("timeout")

    result = resource_sync.sync_resource(
        account_id="acct-1",
        category=ResourceCategory.CLIENT,
        resource_id="42",
        action=ResourceAction.UPDATED,
    )

    assert result == "failed"
    assert published == []
