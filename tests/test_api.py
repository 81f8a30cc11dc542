"""Tests for the FastAPI application."""

import asyncio
from datetime import timedelta

import pytest
from aioresponses import aioresponses
from fastapi.testclient import TestClient

from conftest import SIGNING_KEY, WEBHOOK_URL, make_agent, make_email

from moperator.api import API_TOKEN_HEADER_NAME, create_app
from moperator.config_loader import RelayConfig
from moperator.core import RelayCore
from moperator.models import DEFAULT_LABELS, Label, utc_now
from moperator.storage import MemoryStorage

TOKEN = "operator-token"
AUTH = {API_TOKEN_HEADER_NAME: TOKEN}


def _core(**overrides):
    config = RelayConfig(signing_key=SIGNING_KEY, tenant_per_minute=2, **overrides)
    relay = RelayCore(config, storage=MemoryStorage(), test_mode=True)

    async def seed():
        await relay.registry.save_labels("acme", DEFAULT_LABELS + [Label(id="finance", name="Finance")])
        await relay.registry.save_agent(make_agent(tenant_id="acme"))

    asyncio.run(seed())
    return relay


@pytest.fixture
def core():
    return _core()


@pytest.fixture
def client(core):
    with TestClient(create_app(core, api_token=TOKEN)) as test_client:
        yield test_client


def _email_body():
    return {"tenant_id": "acme", "email": make_email().to_dict(), "labels": ["finance"]}


def test_health_is_open(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_write_endpoints_require_token(client):
    assert client.post("/run-now").status_code == 401
    assert client.post("/run-now", headers={API_TOKEN_HEADER_NAME: "wrong"}).status_code == 401
    response = client.post("/run-now", headers=AUTH)
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_ingest_email(client):
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=200)
        response = client.post("/emails", json=_email_body(), headers=AUTH)
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["labels"] == ["finance"]
    assert data["dispatchResults"][0]["success"] is True
    assert data["queued"] == []


def test_ingest_rejects_invalid_body(client):
    response = client.post("/emails", json={"tenant_id": "acme"}, headers=AUTH)
    assert response.status_code == 422


def test_tenant_rate_limit(client):
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=200, repeat=True)
        statuses = [client.post("/emails", json=_email_body(), headers=AUTH).status_code for _ in range(3)]
    assert statuses == [200, 200, 429]


def test_write_rate_limit_returns_retry_after():
    with TestClient(create_app(_core(strict_per_minute=3), api_token=TOKEN)) as client:
        responses = [client.post("/retry/process", headers=AUTH) for _ in range(4)]
    assert [r.status_code for r in responses] == [200, 200, 200, 429]
    limited = responses[-1]
    body = limited.json()
    assert body["error"] == "Too many requests"
    assert 0 < body["retryAfter"] <= 60
    assert limited.headers["Retry-After"] == str(body["retryAfter"])


def test_retry_endpoints(client, core):
    async def fail_once():
        past = utc_now() - timedelta(hours=1)
        return await core.retry_queue.enqueue(
            make_email(), make_agent(tenant_id="acme"), ["finance"], "finance", "r", "Timeout", now=past
        )

    item = asyncio.run(fail_once())

    assert client.get("/retry/stats").json() == {"pending": 1, "deadLettered": 0}
    pending = client.get("/retry/pending").json()
    assert pending["count"] == 1
    assert pending["items"][0]["id"] == item.id

    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=200)
        stats = client.post("/retry/process", headers=AUTH).json()
    assert stats["succeeded"] == 1
    assert client.get("/retry/dead").json() == {"items": [], "count": 0}
    assert client.post("/retry/dead/nope/replay", headers=AUTH).status_code == 404


def test_replay_dead_letter(client, core):
    async def dead_letter():
        core.retry_queue.max_attempts = 1
        past = utc_now() - timedelta(hours=1)
        item = await core.retry_queue.enqueue(
            make_email(), make_agent(tenant_id="acme"), ["finance"], "finance", "r", "Timeout", now=past
        )
        with aioresponses() as m:
            m.post(WEBHOOK_URL, status=500)
            await core.retry_queue.process()
        return item

    item = asyncio.run(dead_letter())
    response = client.post(f"/retry/dead/{item.id}/replay", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["item"]["id"] != item.id
    assert client.get("/retry/stats").json() == {"pending": 1, "deadLettered": 1}


def test_health_endpoints(client, core):
    with aioresponses() as m:
        m.head(WEBHOOK_URL, status=500, repeat=True)
        for _ in range(3):
            assert client.post("/health/check", headers=AUTH).status_code == 200

    summary = client.get("/health/agents").json()
    assert summary["summary"]["active"] == 0
    assert summary["agents"][0]["active"] is False

    assert client.post("/agents/ghost/enable", headers=AUTH).status_code == 404
    response = client.post("/agents/billing/enable", params={"tenant_id": "acme"}, headers=AUTH)
    assert response.status_code == 200
    assert response.json()["agent"]["active"] is True


def test_metrics(client):
    client.get("/retry/stats")
    response = client.get("/metrics", headers=AUTH)
    assert response.status_code == 200
    assert "moperator_pending_retries" in response.text
