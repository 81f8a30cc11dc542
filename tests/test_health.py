"""Tests for the health monitor and automatic agent disabling."""

import asyncio
from datetime import datetime, timezone

import pytest
from aioresponses import aioresponses

from conftest import WEBHOOK_URL, make_agent

from moperator.health import HealthMonitor, ProbeResult, next_health_status
from moperator.models import HealthStatus
from moperator.prometheus import RelayMetrics
from moperator.registry import AgentRegistry

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def registry(storage):
    return AgentRegistry(storage)


@pytest.fixture
def metrics():
    return RelayMetrics()


@pytest.fixture
def monitor(registry, metrics):
    return HealthMonitor(registry, timeout=1.0, metrics=metrics)


def test_next_health_status_counts_failures_and_resets():
    failed = next_health_status(None, ProbeResult(False, 12, "HTTP 500"), NOW)
    assert failed.consecutive_failures == 1
    assert failed.last_success is None
    again = next_health_status(failed, ProbeResult(False, 8, "Timeout"), NOW)
    assert again.consecutive_failures == 2
    assert again.last_error == "Timeout"
    ok = next_health_status(again, ProbeResult(True, 5), NOW)
    assert ok.healthy and ok.consecutive_failures == 0
    assert ok.last_success == NOW


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [200, 204, 405])
async def test_check_webhook_healthy_statuses(monitor, status):
    with aioresponses() as m:
        m.head(WEBHOOK_URL, status=status)
        probe = await monitor.check_webhook(WEBHOOK_URL)
    assert probe.healthy
    assert probe.error is None


@pytest.mark.asyncio
async def test_check_webhook_failures(monitor):
    with aioresponses() as m:
        m.head(WEBHOOK_URL, status=503, reason="Service Unavailable")
        probe = await monitor.check_webhook(WEBHOOK_URL)
    assert not probe.healthy
    assert probe.error == "HTTP 503 Service Unavailable"

    with aioresponses() as m:
        m.head(WEBHOOK_URL, exception=asyncio.TimeoutError())
        probe = await monitor.check_webhook(WEBHOOK_URL)
    assert probe == ProbeResult(False, probe.response_time_ms, "Timeout")


@pytest.mark.asyncio
async def test_three_failures_disable_agent(monitor, registry, metrics):
    await registry.save_agent(make_agent())
    with aioresponses() as m:
        m.head(WEBHOOK_URL, status=500, repeat=True)
        for expected in (1, 2):
            status = await monitor.check_agent(await registry.get_agent("billing"))
            assert status.consecutive_failures == expected
            assert (await registry.get_agent("billing")).active is True
        status = await monitor.check_agent(await registry.get_agent("billing"))

    agent = await registry.get_agent("billing")
    assert status.consecutive_failures == 3
    assert agent.active is False
    assert agent.health.healthy is False
    assert "moperator_agents_disabled_total 1.0" in metrics.generate_latest().decode()


@pytest.mark.asyncio
async def test_disabled_agent_stays_inactive(monitor, registry, metrics):
    await registry.save_agent(
        make_agent(
            active=False,
            health=HealthStatus(healthy=False, last_check=NOW, consecutive_failures=3),
        )
    )
    agent = await registry.get_agent("billing")
    with aioresponses() as m:
        m.head(WEBHOOK_URL, status=500)
        status = await monitor.check_agent(agent)
    assert status.consecutive_failures == 4
    assert (await registry.get_agent("billing")).active is False
    assert "moperator_agents_disabled_total 0.0" in metrics.generate_latest().decode()

    with aioresponses() as m:
        m.head(WEBHOOK_URL, status=200)
        status = await monitor.check_agent(agent)
    stored = await registry.get_agent("billing")
    assert status.healthy and status.consecutive_failures == 0
    assert stored.active is False


@pytest.mark.asyncio
async def test_success_resets_failure_count(monitor, registry):
    await registry.save_agent(make_agent())
    with aioresponses() as m:
        m.head(WEBHOOK_URL, status=500)
        m.head(WEBHOOK_URL, status=500)
        m.head(WEBHOOK_URL, status=200)
        for _ in range(3):
            await monitor.check_agent(await registry.get_agent("billing"))
    agent = await registry.get_agent("billing")
    assert agent.active is True
    assert agent.health.consecutive_failures == 0
    assert agent.health.last_success is not None


@pytest.mark.asyncio
async def test_agent_without_url_is_healthy_and_not_written(monitor, registry, storage):
    await registry.save_agent(make_agent(webhook_url=None))
    before = await storage.get("agent:billing")
    with aioresponses() as m:
        status = await monitor.check_agent(await registry.get_agent("billing"))
        assert not m.requests
    assert status.healthy and status.consecutive_failures == 0
    assert await storage.get("agent:billing") == before


@pytest.mark.asyncio
async def test_concurrent_checks_do_not_lose_failures(monitor, registry):
    await registry.save_agent(make_agent())
    agent = await registry.get_agent("billing")
    with aioresponses() as m:
        m.head(WEBHOOK_URL, status=500, repeat=True)
        await asyncio.gather(monitor.check_agent(agent), monitor.check_agent(agent))
    stored = await registry.get_agent("billing")
    assert stored.health.consecutive_failures == 2


@pytest.mark.asyncio
async def test_re_enable_agent(monitor, registry):
    await registry.save_agent(
        make_agent(
            tenant_id="acme",
            active=False,
            health=HealthStatus(healthy=False, last_check=NOW, consecutive_failures=3, last_error="x"),
        )
    )
    agent = await monitor.re_enable_agent("billing", "acme")
    assert agent.active is True
    assert agent.health.consecutive_failures == 0
    assert (await registry.get_agent("billing", "acme")).active is True
    assert await monitor.re_enable_agent("ghost") is None


@pytest.mark.asyncio
async def test_check_all_agents_and_summary(monitor, registry):
    other = "https://travel.acme.test/hook"
    await registry.save_agent(make_agent("billing"))
    await registry.save_agent(make_agent("travel", tenant_id="acme", webhook_url=other))
    await registry.save_agent(make_agent("paused", active=False))
    with aioresponses() as m:
        m.head(WEBHOOK_URL, status=200)
        m.head(other, status=500)
        stats = await monitor.check_all_agents()
    assert stats.to_dict() == {"checked": 2, "healthy": 1, "unhealthy": 1, "disabled": 1}

    summary = await monitor.summary()
    assert summary["summary"] == {"total": 3, "active": 2, "healthy": 1, "unhealthy": 1}
    by_id = {entry["id"]: entry for entry in summary["agents"]}
    assert by_id["travel"]["health"]["consecutiveFailures"] == 1
    assert by_id["paused"]["health"] is None


@pytest.mark.asyncio
async def test_check_webhook_follows_redirects(monitor):
    plain = "http://agents.acme.test/webhook"
    with aioresponses() as m:
        m.head(plain, status=301, headers={"Location": WEBHOOK_URL})
        # aioresponses replays the redirected request as GET
        m.get(WEBHOOK_URL, status=200)
        probe = await monitor.check_webhook(plain)
    assert probe.healthy
    assert probe.error is None


@pytest.mark.asyncio
async def test_tenant_agent_without_tenant_field_is_disabled(monitor, registry, storage):
    raw = b'{"id":"bot","name":"Bot","webhookUrl":"' + WEBHOOK_URL.encode() + b'","labels":["finance"],"active":true}'
    await storage.put("user:acme:agent:bot", raw)

    with aioresponses() as m:
        m.head(WEBHOOK_URL, status=500, repeat=True)
        for _ in range(4):
            await monitor.check_all_agents()

    agent = await registry.get_agent("bot", "acme")
    assert agent.tenant_id == "acme"
    assert agent.active is False
    assert agent.health.consecutive_failures == 3
    assert await storage.get("agent:bot") is None
