# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Endpoint health monitoring with automatic agent disabling.

Each active agent's webhook is probed with a ``HEAD`` request bounded by a
timeout. Redirects are followed and the final response is judged.
A 2xx response or ``405 Method Not Allowed`` (the endpoint exists but
rejects HEAD) counts as healthy; any other status, transport error or timeout
counts as a failure.

Consecutive failures are tracked on the agent's stored ``HealthStatus``. When
they reach ``max_consecutive_failures`` the agent is switched to
``active=False``, which stops further dispatches and retries against it. This
is one-way: only :meth:`HealthMonitor.re_enable_agent` brings an agent back,
resetting its failure count.

The stored agent is updated with a compare-and-set, so concurrent checks of
the same agent cannot lose failures or resurrect a disabled agent.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, NamedTuple

import aiohttp

from .logger import get_logger
from .models import Agent, HealthStatus, HealthSweepStats, utc_now
from .prometheus import RelayMetrics
from .registry import AgentRegistry

HEALTH_CHECK_TIMEOUT = 10.0
MAX_CONSECUTIVE_FAILURES = 3


class ProbeResult(NamedTuple):
    healthy: bool
    response_time_ms: int
    error: str | None = None


def next_health_status(
    previous: HealthStatus | None,
    probe: ProbeResult,
    now: datetime,
) -> HealthStatus:
    """Fold a probe result into the agent's previous health status."""
    if probe.healthy:
        return HealthStatus(
            healthy=True,
            last_check=now,
            last_success=now,
            consecutive_failures=0,
            response_time_ms=probe.response_time_ms,
        )
    return HealthStatus(
        healthy=False,
        last_check=now,
        last_success=previous.last_success if previous else None,
        consecutive_failures=(previous.consecutive_failures if previous else 0) + 1,
        last_error=probe.error,
        response_time_ms=probe.response_time_ms,
    )


class HealthMonitor:
    """Probes agent endpoints and opens the circuit on repeated failures.

    Attributes:
        registry: Agent registry holding the agent records.
        timeout: Seconds allowed for one probe.
        max_consecutive_failures: Failures after which an agent is disabled.
        metrics: Prometheus metrics collector.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        *,
        timeout: float = HEALTH_CHECK_TIMEOUT,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
        logger=None,
        metrics: RelayMetrics | None = None,
    ):
        self.registry = registry
        self.timeout = float(timeout)
        self.max_consecutive_failures = max(1, int(max_consecutive_failures))
        self.logger = logger or get_logger("HealthMonitor")
        self.metrics = metrics or RelayMetrics()

    async def check_webhook(self, webhook_url: str) -> ProbeResult:
        """Issue one ``HEAD`` probe and classify the answer."""
        started = time.monotonic()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.head(webhook_url, allow_redirects=True) as resp:
                    status = resp.status
                    reason = resp.reason or ""
        except asyncio.TimeoutError:
            return ProbeResult(False, self._elapsed_ms(started), "Timeout")
        except (aiohttp.ClientError, OSError) as exc:
            return ProbeResult(False, self._elapsed_ms(started), str(exc) or exc.__class__.__name__)
        elapsed = self._elapsed_ms(started)
        if 200 <= status < 300 or status == 405:
            return ProbeResult(True, elapsed)
        return ProbeResult(False, elapsed, f"HTTP {status} {reason}".strip())

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    async def check_agent(self, agent: Agent) -> HealthStatus:
        """Probe one agent and persist its new health status.

        Agents without a webhook URL are vacuously healthy and are not probed
        or updated.
        """
        now = utc_now()
        if not agent.webhook_url:
            return HealthStatus(healthy=True, last_check=now, consecutive_failures=0)

        probe = await self.check_webhook(agent.webhook_url)
        transition: dict[str, Any] = {}

        def _apply(stored: Agent) -> Agent:
            previous = stored.health
            status = next_health_status(previous, probe, now)
            was_healthy = previous.healthy if previous else True
            disable = stored.active and status.consecutive_failures >= self.max_consecutive_failures
            transition.update(status=status, was_healthy=was_healthy, disabled=disable)
            return stored.model_copy(
                update={"health": status, "active": False if disable else stored.active}
            )

        updated = await self.registry.update_agent(agent.id, agent.tenant_id, _apply)
        if updated is None:
            # Not in the registry: report the probe without persisting it.
            return next_health_status(agent.health, probe, now)

        status: HealthStatus = transition["status"]
        if transition["was_healthy"] and not status.healthy:
            self.logger.warning("Agent %s is now UNHEALTHY: %s", agent.id, status.last_error)
        elif not transition["was_healthy"] and status.healthy:
            self.logger.info("Agent %s is now HEALTHY", agent.id)
        if transition["disabled"]:
            self.metrics.inc_agent_disabled()
            self.logger.warning(
                "Auto-disabled agent %s after %d consecutive failures",
                agent.id,
                status.consecutive_failures,
            )
        return status

    async def check_all_agents(self) -> HealthSweepStats:
        """Probe every active agent; inactive agents are counted as disabled."""
        stats = HealthSweepStats()
        for agent in await self.registry.list_agents():
            if not agent.active:
                stats.disabled += 1
                continue
            stats.checked += 1
            status = await self.check_agent(agent)
            if status.healthy:
                stats.healthy += 1
            else:
                stats.unhealthy += 1
        self.logger.info(
            "Health check complete: %d checked, %d healthy, %d unhealthy, %d disabled",
            stats.checked,
            stats.healthy,
            stats.unhealthy,
            stats.disabled,
        )
        return stats

    async def re_enable_agent(self, agent_id: str, tenant_id: str | None = None) -> Agent | None:
        """Reactivate an agent and reset its consecutive failure count."""

        def _apply(stored: Agent) -> Agent:
            health = stored.health
            if health is not None:
                health = health.model_copy(update={"consecutive_failures": 0})
            return stored.model_copy(update={"active": True, "health": health})

        agent = await self.registry.update_agent(agent_id, tenant_id, _apply)
        if agent is not None:
            self.logger.info("Re-enabled agent %s", agent_id)
        return agent

    async def summary(self) -> dict[str, Any]:
        """Return every agent's health and aggregate counts."""
        agents = await self.registry.list_agents()
        active = [agent for agent in agents if agent.active]
        return {
            "agents": [
                {
                    "id": agent.id,
                    "name": agent.name,
                    "active": agent.active,
                    "health": agent.health.to_dict() if agent.health else None,
                }
                for agent in agents
            ],
            "summary": {
                "total": len(agents),
                "active": len(active),
                "healthy": sum(1 for a in active if a.health and a.health.healthy),
                "unhealthy": sum(1 for a in active if a.health and not a.health.healthy),
            },
        }
