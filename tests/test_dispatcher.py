"""Tests for signed webhook dispatch using aioresponses."""

import asyncio
import json

import pytest
from aioresponses import aioresponses
from yarl import URL

from conftest import SIGNING_KEY, WEBHOOK_URL, make_agent, make_email

from moperator.dispatcher import (
    LABELS_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    InvalidWebhookUrlError,
    WebhookDispatcher,
    build_payload,
    is_valid_webhook_url,
)
from moperator.prometheus import RelayMetrics
from moperator.signing import verify_payload

OTHER_URL = "https://travel.acme.test/hook"


def _sent(m, url=WEBHOOK_URL, index=0):
    return m.requests[("POST", URL(url))][index].kwargs


def test_is_valid_webhook_url():
    assert is_valid_webhook_url(WEBHOOK_URL)
    assert is_valid_webhook_url("http://10.0.0.5:8080/agent")
    assert not is_valid_webhook_url(None)
    assert not is_valid_webhook_url("")
    assert not is_valid_webhook_url("https://example.com/webhook")
    assert not is_valid_webhook_url("https://your-webhook.acme.test")
    assert not is_valid_webhook_url("ftp://agents.acme.test/hook")
    assert not is_valid_webhook_url("agents.acme.test/hook")


def test_build_payload_field_order_and_signature():
    payload = build_payload(
        make_email(), ["finance"], "finance", "Invoice", SIGNING_KEY, timestamp="2024-01-15T10:00:00.000Z"
    )
    assert list(payload) == ["email", "labels", "matchedLabel", "routingReason", "timestamp", "signature"]
    assert payload["email"]["from"] == "sender@acme.test"
    assert payload["email"]["textBody"] == "Please find the invoice attached."
    assert verify_payload(payload, payload["signature"], SIGNING_KEY)


@pytest.mark.asyncio
async def test_dispatch_success_sends_signed_body_and_headers():
    metrics = RelayMetrics()
    dispatcher = WebhookDispatcher(SIGNING_KEY, metrics=metrics)
    agent = make_agent()
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=200, body="ok")
        outcome = await dispatcher.dispatch(make_email(), ["finance", "urgent"], "finance", agent, "Invoice")

        sent = _sent(m)
    assert outcome.success is True
    assert outcome.status_code == 200
    assert outcome.agent_id == "billing"
    assert outcome.matched_label == "finance"

    body = json.loads(sent["data"])
    headers = sent["headers"]
    assert headers["Content-Type"] == "application/json"
    assert headers[LABELS_HEADER] == "finance,urgent"
    assert headers[TIMESTAMP_HEADER] == body["timestamp"]
    assert headers[SIGNATURE_HEADER] == body["signature"]
    assert body["timestamp"].endswith("Z")
    assert body["matchedLabel"] == "finance"
    assert body["routingReason"] == "Invoice"
    assert verify_payload(body, headers[SIGNATURE_HEADER], SIGNING_KEY)
    assert not verify_payload(body, headers[SIGNATURE_HEADER], "wrong-key")

    text = metrics.generate_latest().decode()
    assert 'moperator_dispatch_total{agent_id="billing",outcome="success"} 1.0' in text


@pytest.mark.asyncio
async def test_dispatch_secret_override():
    dispatcher = WebhookDispatcher(SIGNING_KEY)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=204)
        outcome = await dispatcher.dispatch(
            make_email(), ["finance"], "finance", make_agent(), "r", secret="per-agent"
        )
        body = json.loads(_sent(m)["data"])
    assert outcome.success
    assert verify_payload(body, body["signature"], "per-agent")


@pytest.mark.asyncio
async def test_dispatch_non_2xx_is_failure_with_status():
    dispatcher = WebhookDispatcher(SIGNING_KEY)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=500, body="boom")
        outcome = await dispatcher.dispatch(make_email(), ["finance"], "finance", make_agent(), "r")
    assert outcome.success is False
    assert outcome.status_code == 500
    assert outcome.error is None
    assert outcome.error_text == "Status: 500"


@pytest.mark.asyncio
async def test_dispatch_client_error_status_is_failure():
    dispatcher = WebhookDispatcher(SIGNING_KEY)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=404)
        outcome = await dispatcher.dispatch(make_email(), ["finance"], "finance", make_agent(), "r")
    assert not outcome.success
    assert outcome.status_code == 404


@pytest.mark.asyncio
async def test_dispatch_timeout():
    dispatcher = WebhookDispatcher(SIGNING_KEY, timeout=0.1)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, exception=asyncio.TimeoutError())
        outcome = await dispatcher.dispatch(make_email(), ["finance"], "finance", make_agent(), "r")
    assert outcome.success is False
    assert outcome.status_code is None
    assert outcome.error == "Timeout"


@pytest.mark.asyncio
async def test_dispatch_connection_error():
    import aiohttp

    dispatcher = WebhookDispatcher(SIGNING_KEY)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, exception=aiohttp.ClientConnectionError("Connection refused"))
        outcome = await dispatcher.dispatch(make_email(), ["finance"], "finance", make_agent(), "r")
    assert outcome.success is False
    assert outcome.status_code is None
    assert outcome.error == "Connection refused"


@pytest.mark.asyncio
async def test_dispatch_invalid_url_raises():
    dispatcher = WebhookDispatcher(SIGNING_KEY)
    agent = make_agent(webhook_url="https://example.com/webhook")
    with pytest.raises(InvalidWebhookUrlError) as excinfo:
        await dispatcher.dispatch(make_email(), ["finance"], "finance", agent, "r")
    assert excinfo.value.agent_id == "billing"
    assert excinfo.value.code == "invalid_webhook_url"


@pytest.mark.asyncio
async def test_fan_out_delivers_once_per_agent_and_skips_invalid():
    dispatcher = WebhookDispatcher(SIGNING_KEY)
    agents = [
        make_agent("billing", labels=["finance", "urgent"]),
        make_agent("travel", labels=["travel"], webhook_url=OTHER_URL),
        make_agent("broken", labels=["finance"], webhook_url=None),
        make_agent("paused", labels=["finance"], active=False),
    ]
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=200)
        m.post(OTHER_URL, status=503)
        outcomes = await dispatcher.dispatch_to_subscribed_agents(
            make_email(), ["urgent", "finance", "travel"], agents, "Trip invoice"
        )
        assert len(m.requests[("POST", URL(WEBHOOK_URL))]) == 1
        assert len(m.requests[("POST", URL(OTHER_URL))]) == 1

    assert [(o.agent_id, o.matched_label, o.success) for o in outcomes] == [
        ("billing", "urgent", True),
        ("travel", "travel", False),
    ]
    assert outcomes[1].status_code == 503


@pytest.mark.asyncio
async def test_fan_out_without_subscribers_makes_no_requests():
    dispatcher = WebhookDispatcher(SIGNING_KEY)
    with aioresponses() as m:
        outcomes = await dispatcher.dispatch_to_subscribed_agents(
            make_email(), ["legal"], [make_agent()], "r"
        )
        assert not m.requests
    assert outcomes == []


@pytest.mark.asyncio
async def test_dispatch_tolerates_binary_response_body():
    dispatcher = WebhookDispatcher(SIGNING_KEY)
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=200, body=b"\xff\xfe\xfa")
        outcome = await dispatcher.dispatch(make_email(), ["finance"], "finance", make_agent(), "r")
    assert outcome.success is True
    assert outcome.status_code == 200


@pytest.mark.asyncio
async def test_fan_out_survives_binary_response_body():
    dispatcher = WebhookDispatcher(SIGNING_KEY)
    agents = [
        make_agent("billing", labels=["finance"]),
        make_agent("travel", labels=["finance"], webhook_url=OTHER_URL),
    ]
    with aioresponses() as m:
        m.post(WEBHOOK_URL, status=200, body=b"\x89PNG\r\n\x1a\n\xff")
        m.post(OTHER_URL, status=500, body=b"\xc3\x28")
        outcomes = await dispatcher.dispatch_to_subscribed_agents(make_email(), ["finance"], agents, "r")
    assert [(o.agent_id, o.success, o.status_code) for o in outcomes] == [
        ("billing", True, 200),
        ("travel", False, 500),
    ]
