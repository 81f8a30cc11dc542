# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for the relay.

This module provides the RelayCore class, the central coordinator wiring the
storage port to the subsystems:

- Classification fallback and label validation for inbound emails
- Label-based fan-out and signed webhook dispatch
- Retry queue for failed deliveries, with dead-lettering
- Health monitoring with automatic agent disabling
- Fixed-window rate limiting for the HTTP entry points

The core runs one background loop that periodically drains the retry queue
and sweeps agent health. The loop can be woken early with :meth:`run_now`.

Example:
    Running the relay::

        from moperator.config_loader import load_relay_config
        from moperator.core import RelayCore

        core = RelayCore(load_relay_config("/etc/moperator/config.ini"))
        await core.start()
        result = await core.ingest_email("acme", email, labels=["finance"])
        await core.stop()
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from typing import Any

from .classifier import Classifier, classify_email
from .config_loader import RelayConfig
from .dispatcher import WebhookDispatcher
from .health import HealthMonitor
from .logger import get_logger
from .models import DispatchOutcome, EmailSnapshot, HealthSweepStats, RetryPassStats
from .prometheus import RelayMetrics
from .rate_limit import RateLimiter
from .registry import AgentRegistry, validate_assigned_labels
from .retry_queue import RetryQueue
from .storage import SqliteStorage, Storage


@dataclass
class IngestResult:
    """Outcome of routing one inbound email.

    Attributes:
        labels: Labels the email was routed with.
        reason: Routing reason forwarded to agents.
        outcomes: One entry per attempted delivery.
        queued: Ids of the retry items created for failed deliveries.
        fallback: True when classification fell back to catch-all.
    """

    labels: list[str]
    reason: str
    outcomes: list[DispatchOutcome] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "labels": self.labels,
            "reason": self.reason,
            "dispatchResults": [outcome.to_dict() for outcome in self.outcomes],
            "queued": self.queued,
            "fallback": self.fallback,
        }


class RelayCore:
    """Central orchestrator for the relay.

    Attributes:
        config: Resolved runtime settings.
        storage: Storage port shared by all components.
        registry: Agent and label access.
        dispatcher: Signed webhook dispatcher.
        retry_queue: Failed delivery queue.
        health: Agent health monitor.
        rate_limiter: Fixed-window request limiter.
        metrics: Prometheus metrics collector.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        storage: Storage | None = None,
        classifier: Classifier | None = None,
        logger=None,
        metrics: RelayMetrics | None = None,
        test_mode: bool = False,
    ):
        """Initialize the relay with its configuration.

        Args:
            config: Runtime settings; defaults to :class:`RelayConfig` defaults.
            storage: Storage port. Defaults to SQLite at ``config.db_path``.
            classifier: Optional async label classifier used when an email
                arrives without labels.
            logger: Custom logger instance. If None, uses default logger.
            metrics: Prometheus metrics collector. If None, creates new instance.
            test_mode: Disable the periodic timer; the scheduler loop only
                runs when woken by :meth:`run_now`.
        """
        self.config = config or RelayConfig()
        self.logger = logger or get_logger()
        self.metrics = metrics or RelayMetrics()
        self.storage = storage or SqliteStorage(self.config.db_path)
        self.classifier = classifier
        self.registry = AgentRegistry(self.storage)
        self.dispatcher = WebhookDispatcher(
            self.config.signing_key,
            timeout=self.config.dispatch_timeout,
            concurrency=self.config.dispatch_concurrency,
            metrics=self.metrics,
        )
        self.retry_queue = RetryQueue(
            self.storage,
            self.dispatcher,
            registry=self.registry,
            max_attempts=self.config.max_attempts,
            base_delay=self.config.base_delay,
            lease_seconds=self.config.lease_seconds,
            retry_ttl=self.config.retry_ttl,
            dead_letter_ttl=self.config.dead_letter_ttl,
            metrics=self.metrics,
        )
        self.health = HealthMonitor(
            self.registry,
            timeout=self.config.health_timeout,
            max_consecutive_failures=self.config.max_consecutive_failures,
            metrics=self.metrics,
        )
        self.rate_limiter = RateLimiter(self.storage)

        self._test_mode = bool(test_mode)
        self._interval = math.inf if self._test_mode else max(1.0, float(self.config.scheduler_interval))
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_scheduler: asyncio.Task | None = None

    async def init(self) -> None:
        """Prepare the storage backend."""
        init_db = getattr(self.storage, "init_db", None)
        if init_db is not None:
            await init_db()
        await self.retry_queue.refresh_gauges()

    # ------------------------------------------------------------------ ingest
    async def ingest_email(
        self,
        tenant_id: str,
        email: EmailSnapshot,
        labels: list[str] | None = None,
        reason: str | None = None,
    ) -> IngestResult:
        """Route one parsed email to the tenant's subscribed agents.

        When ``labels`` is None the classifier is consulted (with catch-all
        fallback). Supplied labels are validated against the tenant's labels.
        Failed deliveries are handed to the retry queue.
        """
        tenant_labels = await self.registry.get_labels(tenant_id)
        fallback = False
        if labels is None:
            result = await classify_email(self.classifier, email, tenant_labels)
            assigned = result.decision.labels
            reason = reason or result.decision.reason
            fallback = result.fallback
        else:
            assigned = validate_assigned_labels(labels, tenant_labels)
            reason = reason or "Labels supplied by caller"
        self.logger.info("Routing email %r for tenant %s with labels %s", email.subject, tenant_id, assigned)

        agents = await self.registry.list_agents(tenant_id)
        outcomes = await self.dispatcher.dispatch_to_subscribed_agents(email, assigned, agents, reason)
        by_id = {agent.id: agent for agent in agents}

        queued: list[str] = []
        for outcome in outcomes:
            if outcome.success:
                continue
            item = await self.retry_queue.enqueue(
                email,
                by_id[outcome.agent_id],
                assigned,
                outcome.matched_label,
                reason,
                outcome.error_text,
                tenant_id=tenant_id,
            )
            queued.append(item.id)

        succeeded = sum(1 for outcome in outcomes if outcome.success)
        self.logger.info(
            "%d agents notified (%d success, %d failed)",
            len(outcomes),
            succeeded,
            len(outcomes) - succeeded,
        )
        if queued:
            await self.retry_queue.refresh_gauges()
        return IngestResult(
            labels=assigned, reason=reason, outcomes=outcomes, queued=queued, fallback=fallback
        )

    # --------------------------------------------------------------- scheduled
    async def run_scheduled(self) -> tuple[RetryPassStats, HealthSweepStats]:
        """Run one retry drain followed by one health sweep."""
        retry_stats = await self.retry_queue.process()
        self.logger.info(
            "Retry: %d processed, %d succeeded, %d failed, %d dead lettered",
            retry_stats.processed,
            retry_stats.succeeded,
            retry_stats.failed,
            retry_stats.dead_lettered,
        )
        health_stats = await self.health.check_all_agents()
        purge = getattr(self.storage, "purge_expired", None)
        if purge is not None:
            await purge()
        return retry_stats, health_stats

    def run_now(self) -> None:
        """Wake the scheduler loop for an immediate pass."""
        self._wake_event.set()

    # --------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Initialize storage and spawn the scheduler loop."""
        self.logger.debug("Starting RelayCore...")
        await self.init()
        self._stop.clear()
        self._task_scheduler = asyncio.create_task(self._scheduler_loop(), name="relay-scheduler-loop")

    async def stop(self) -> None:
        """Stop the scheduler loop and wait for the current pass to finish."""
        self._stop.set()
        self._wake_event.set()
        if self._task_scheduler:
            await asyncio.gather(self._task_scheduler, return_exceptions=True)

    async def _scheduler_loop(self) -> None:
        self.logger.debug("Scheduler loop started (interval=%s)", self._interval)
        while not self._stop.is_set():
            await self._wait_for_wakeup(self._interval)
            if self._stop.is_set():
                break
            try:
                await self.run_scheduled()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in scheduler loop: %s", exc)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Pause until ``timeout`` elapses or the wake event is set."""
        if self._stop.is_set():
            return
        if math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
