# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the relay.

All metrics use the ``moperator_`` prefix.

Metrics exposed:
    - ``moperator_dispatch_total``: Webhook attempts per agent and outcome.
    - ``moperator_retry_total``: Retry pass results (succeeded, failed, dead_lettered).
    - ``moperator_rate_limited_total``: Rejected requests per limiter scope.
    - ``moperator_agents_disabled_total``: Agents auto-disabled by health checks.
    - ``moperator_pending_retries``: Gauge of items in the retry store.
    - ``moperator_dead_letters``: Gauge of items in the dead-letter store.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class RelayMetrics:
    """Prometheus metrics collector for the relay.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        dispatches: Counter of webhook attempts labeled by agent and outcome.
        retries: Counter of retry pass results.
        rate_limited: Counter of rate limit rejections.
        agents_disabled: Counter of health-check auto-disables.
        pending: Gauge of pending retry items.
        dead_letters: Gauge of dead-lettered items.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created.
        """
        self.registry = registry or CollectorRegistry()
        self.dispatches = Counter(
            "moperator_dispatch_total",
            "Total webhook delivery attempts",
            ["agent_id", "outcome"],
            registry=self.registry,
        )
        self.retries = Counter(
            "moperator_retry_total",
            "Total retry pass results",
            ["result"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "moperator_rate_limited_total",
            "Total rate limited requests",
            ["scope"],
            registry=self.registry,
        )
        self.agents_disabled = Counter(
            "moperator_agents_disabled_total",
            "Total agents disabled after consecutive health check failures",
            registry=self.registry,
        )
        self.pending = Gauge(
            "moperator_pending_retries",
            "Current pending retry items",
            registry=self.registry,
        )
        self.dead_letters = Gauge(
            "moperator_dead_letters",
            "Current dead-lettered items",
            registry=self.registry,
        )

    def inc_dispatch(self, agent_id: str, success: bool) -> None:
        """Count one delivery attempt for an agent."""
        outcome = "success" if success else "failure"
        self.dispatches.labels(agent_id=agent_id or "unknown", outcome=outcome).inc()

    def inc_retry(self, result: str, amount: int = 1) -> None:
        if amount:
            self.retries.labels(result=result).inc(amount)

    def inc_rate_limited(self, scope: str) -> None:
        self.rate_limited.labels(scope=scope or "default").inc()

    def inc_agent_disabled(self) -> None:
        self.agents_disabled.inc()

    def set_queue_sizes(self, pending: int, dead_lettered: int) -> None:
        """Set the retry store gauges."""
        self.pending.set(pending)
        self.dead_letters.set(dead_lettered)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
