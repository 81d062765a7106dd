"""Trigger authentication and cron endpoints (fundmatch/api/routes/cron.py)."""
import base64
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from fundmatch.api.auth import (
    SOURCE_ADMIN, SOURCE_CRON, SOURCE_SIGNED_WEBHOOK, SOURCE_WORKER, identify_trigger,
    sign_body, verify_signature,
)
from fundmatch.api.routes import cron
from fundmatch.api_app import app
from fundmatch.config import Settings
from fundmatch.matching.orchestrator import RefreshSummary

SETTINGS = Settings(
    cron_secret="cron-secret",
    webhook_signing_key="current-key",
    webhook_next_signing_key="next-key",
    admin_api_key="admin-key",
    worker_api_key="worker-key",
)


class FakeOrchestrator:
    def __init__(self):
        self.calls = []

    def refresh(self, trigger_source, force_direct=False):
        self.calls.append((trigger_source, force_direct))
        return RefreshSummary(strategy="direct", triggered_by=trigger_source).finish()


class FakeStore:
    def __init__(self):
        self.calls = []

    def prune_stale(self, retention_days, now=None):
        self.calls.append(retention_days)
        return 3


@pytest.fixture
def orchestrator():
    return FakeOrchestrator()


@pytest.fixture
def client(engine, env, orchestrator):
    env(CRON_SECRET="cron-secret", WEBHOOK_SIGNING_KEY="current-key", WEBHOOK_NEXT_SIGNING_KEY="next-key",
        ADMIN_API_KEY="admin-key", WORKER_API_KEY="worker-key")
    app.dependency_overrides[cron.get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[cron.get_digest_channels] = lambda: []
    app.dependency_overrides[cron.get_result_store] = FakeStore
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _b64_signature(body: bytes, key: str) -> str:
    return base64.b64encode(hmac.new(key.encode(), body, hashlib.sha256).digest()).decode()


# ---------- pure credential checks ----------

def test_identify_each_credential():
    body = b'{"hello": "world"}'
    assert identify_trigger({"authorization": "Bearer cron-secret"}, b"", SETTINGS) == SOURCE_CRON
    assert identify_trigger({"upstash-signature": sign_body(body, "current-key")}, body, SETTINGS) \
        == SOURCE_SIGNED_WEBHOOK
    assert identify_trigger({"x-api-key": "admin-key"}, b"", SETTINGS) == SOURCE_ADMIN
    assert identify_trigger({"x-worker-key": "worker-key"}, b"", SETTINGS) == SOURCE_WORKER
    assert identify_trigger({}, b"", SETTINGS) is None
    assert identify_trigger({"authorization": "Bearer nope", "x-api-key": "nope"}, b"", SETTINGS) is None


def test_unset_secrets_never_match():
    """An unconfigured credential type cannot be satisfied by an empty header."""
    assert identify_trigger({"authorization": "Bearer ", "x-api-key": ""}, b"", Settings()) is None


def test_signature_formats_and_key_rotation():
    body = b"payload"
    keys = ("current-key", "next-key")
    assert verify_signature(sign_body(body, "current-key"), body, keys)
    assert verify_signature("sha256=" + sign_body(body, "next-key"), body, keys)
    assert verify_signature(_b64_signature(body, "next-key"), body, keys)
    assert not verify_signature(sign_body(body, "old-key"), body, keys)
    assert not verify_signature(sign_body(b"tampered", "current-key"), body, keys)


# ---------- HTTP ----------

def test_refresh_rejects_missing_credentials(client, orchestrator):
    res = client.post("/api/cron/matching-refresh")
    assert res.status_code == 401
    assert orchestrator.calls == []


@pytest.mark.parametrize("headers,source", [
    ({"Authorization": "Bearer cron-secret"}, SOURCE_CRON),
    ({"X-API-Key": "admin-key"}, SOURCE_ADMIN),
    ({"X-Worker-Key": "worker-key"}, SOURCE_WORKER),
])
def test_refresh_accepts_each_credential(client, orchestrator, headers, source):
    res = client.get("/api/cron/matching-refresh", headers=headers)
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["data"]["triggered_by"] == source
    assert orchestrator.calls == [(source, False)]


def test_refresh_signed_webhook(client, orchestrator):
    body = json.dumps({"scheduled": True}).encode()
    res = client.post("/api/cron/matching-refresh", content=body,
                      headers={"Upstash-Signature": _b64_signature(body, "next-key"),
                               "Content-Type": "application/json"})
    assert res.status_code == 200
    assert orchestrator.calls == [(SOURCE_SIGNED_WEBHOOK, False)]


def test_refresh_rejects_bad_signature(client, orchestrator):
    body = b'{"scheduled": true}'
    res = client.post("/api/cron/matching-refresh", content=body,
                      headers={"Upstash-Signature": sign_body(b"other body", "current-key")})
    assert res.status_code == 401
    assert orchestrator.calls == []


def test_refresh_direct_flag(client, orchestrator):
    res = client.post("/api/cron/matching-refresh", json={"direct": True},
                      headers={"X-Worker-Key": "worker-key"})
    assert res.status_code == 200
    assert orchestrator.calls == [(SOURCE_WORKER, True)]


def test_daily_digest_requires_auth(client):
    assert client.post("/api/cron/daily-digest").status_code == 401
    res = client.post("/api/cron/daily-digest", headers={"Authorization": "Bearer cron-secret"})
    assert res.status_code == 200
    assert res.json()["data"] == {"usersProcessed": 0, "sent": {}, "errors": []}


def test_prune_results(client):
    res = client.post("/api/cron/prune-results", headers={"X-API-Key": "admin-key"})
    assert res.status_code == 200
    assert res.json()["data"] == {"deleted": 3, "retentionDays": 30}
