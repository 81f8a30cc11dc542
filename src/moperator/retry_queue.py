# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry queue with exponential backoff and dead-lettering.

A failed initial delivery creates a :class:`RetryItem` with ``attempts=1``
stored under ``retry:{id}``, due ``base_delay`` seconds later. Each scheduled
pass redelivers the due items:

- success: the pending item is deleted
- failure with attempts left: ``attempts`` is incremented and the item is
  rescheduled ``base_delay * 2 ** (attempts - 1)`` seconds after this attempt
  (60s, 120s, 240s, 480s with the defaults)
- failure on the last attempt: a :class:`DeadLetterItem` is written under
  ``dead:{id}`` and the pending item is deleted

Before redelivering, a pass claims the item with a lease (owner id plus
expiry) written through compare-and-set. Overlapping passes skip items leased
by someone else; a lease left behind by a crashed pass expires and the item
becomes claimable again. Lease expiry and the attempt timestamps are taken
when each item is claimed, not when the pass starts, so a slow pass never
hands out leases that have already run out.

Dead-lettering writes ``dead:{id}`` before deleting ``retry:{id}``. If the
process dies between the two writes both records exist; the next pass finds
the dead letter and drops the stale pending copy without redelivering it.

Pending items expire after ``retry_ttl`` (7 days) and dead letters after
``dead_letter_ttl`` (30 days). Past that the storage layer drops them whatever
their state: this is a hard data-loss boundary.

Example:
    Draining the queue from a periodic task::

        queue = RetryQueue(storage, dispatcher, registry=registry)
        stats = await queue.process()
        logger.info("Retry: %d processed, %d succeeded", stats.processed, stats.succeeded)
"""

from __future__ import annotations

import secrets
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from .dispatcher import InvalidWebhookUrlError, WebhookDispatcher
from .logger import get_logger
from .models import (
    Agent,
    DeadLetterItem,
    DispatchOutcome,
    EmailSnapshot,
    QueueStats,
    RetryItem,
    RetryPassStats,
    utc_now,
)
from .prometheus import RelayMetrics
from .registry import AgentRegistry
from .storage import Storage

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 60  # seconds
DEFAULT_LEASE_SECONDS = 300
RETRY_TTL = 7 * 24 * 3600
DEAD_LETTER_TTL = 30 * 24 * 3600

RETRY_PREFIX = "retry:"
DEAD_PREFIX = "dead:"


def calculate_backoff(attempts: int, base_delay: int = DEFAULT_BASE_DELAY) -> int:
    """Seconds to wait after the ``attempts``-th failed attempt."""
    return base_delay * 2 ** max(0, attempts - 1)


def generate_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class RetryQueue:
    """Owns the at-least-once delivery guarantee for failed webhooks.

    Attributes:
        storage: Storage port holding pending and dead-lettered items.
        dispatcher: Dispatcher used for redelivery.
        registry: Optional agent registry; items whose agent is disabled
            are left pending until the agent is re-enabled.
        max_attempts: Total attempts (including the initial one) per item.
        base_delay: Backoff base in seconds.
        lease_seconds: How long a claim on an item stays valid.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        storage: Storage,
        dispatcher: WebhookDispatcher,
        *,
        registry: AgentRegistry | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: int = DEFAULT_BASE_DELAY,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        retry_ttl: int = RETRY_TTL,
        dead_letter_ttl: int = DEAD_LETTER_TTL,
        owner_id: str | None = None,
        logger=None,
        metrics: RelayMetrics | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.dispatcher = dispatcher
        self.registry = registry
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0, int(base_delay))
        self.lease_seconds = max(1, int(lease_seconds))
        self.retry_ttl = retry_ttl
        self.dead_letter_ttl = dead_letter_ttl
        self.owner_id = owner_id or f"relay-{uuid.uuid4().hex[:8]}"
        self.logger = logger or get_logger("RetryQueue")
        self.metrics = metrics or RelayMetrics()
        self.clock = clock

    # ----------------------------------------------------------------- enqueue
    async def enqueue(
        self,
        email: EmailSnapshot,
        agent: Agent,
        labels: Sequence[str],
        matched_label: str,
        routing_reason: str,
        error: str,
        tenant_id: str | None = None,
        now: datetime | None = None,
    ) -> RetryItem:
        """Record a failed initial delivery as attempt 1 of ``max_attempts``."""
        now = now or self.clock()
        item = RetryItem(
            id=generate_id(),
            email=email,
            agent_id=agent.id,
            webhook_url=agent.webhook_url or "",
            labels=list(labels),
            matched_label=matched_label,
            routing_reason=routing_reason,
            tenant_id=tenant_id or agent.tenant_id,
            attempts=1,
            max_attempts=self.max_attempts,
            last_attempt=now,
            next_attempt=now + timedelta(seconds=self.base_delay),
            last_error=error,
            created_at=now,
        )
        await self.storage.put(f"{RETRY_PREFIX}{item.id}", item.to_json(), ttl=self.retry_ttl)
        self.logger.info("Added to retry queue: %s (attempt 1/%d)", item.id, item.max_attempts)
        return item

    # ----------------------------------------------------------------- process
    async def process(self, now: datetime | None = None) -> RetryPassStats:
        """Redeliver every due item once.

        Items not yet due, leased by another pass, or whose agent is disabled
        are left untouched; only the latter are counted (as ``skipped``).

        Args:
            now: Reference time of the pass. Each item is judged and claimed
                at ``now`` plus the time elapsed since the pass started.
        """
        offset = (now - self.clock()) if now else timedelta(0)
        stats = RetryPassStats()
        for key in await self.storage.list(RETRY_PREFIX):
            raw = await self.storage.get(key)
            if raw is None:
                continue
            item = RetryItem.from_json(raw)
            current = self.clock() + offset
            if not item.is_due(current) or item.is_leased(current):
                continue
            if await self.storage.get(f"{DEAD_PREFIX}{item.id}") is not None:
                await self.storage.delete(key)
                self.logger.warning("Dropped pending copy of dead-lettered item %s", item.id)
                continue
            if await self._agent_disabled(item):
                stats.skipped += 1
                self.logger.debug("Skipping %s: agent %s is disabled", item.id, item.agent_id)
                continue
            claimed = await self._claim(key, raw, item, current)
            if claimed is None:
                self.logger.debug("Item %s claimed by another pass", item.id)
                continue

            stats.processed += 1
            self.logger.info(
                "Processing %s (attempt %d/%d)", item.id, item.attempts + 1, item.max_attempts
            )
            outcome = await self._redeliver(claimed)
            if outcome.success:
                await self.storage.delete(key)
                stats.succeeded += 1
                self.logger.info("Retry succeeded for %s", item.id)
                continue

            attempts = claimed.attempts + 1
            error = outcome.error_text
            if attempts >= claimed.max_attempts:
                await self._dead_letter(key, claimed, attempts, error, current)
                stats.dead_lettered += 1
                self.logger.warning("Dead lettered %s after %d attempts: %s", item.id, attempts, error)
            else:
                rescheduled = claimed.model_copy(
                    update={
                        "attempts": attempts,
                        "last_attempt": current,
                        "next_attempt": current + timedelta(seconds=calculate_backoff(attempts, self.base_delay)),
                        "last_error": error,
                        "lease_owner": None,
                        "lease_expires_at": None,
                    }
                )
                await self.storage.put(key, rescheduled.to_json(), ttl=self.retry_ttl)
                stats.failed += 1
                self.logger.info(
                    "Retry failed for %s, next attempt at %s",
                    item.id,
                    rescheduled.next_attempt.isoformat(),
                )

        self.metrics.inc_retry("succeeded", stats.succeeded)
        self.metrics.inc_retry("failed", stats.failed)
        self.metrics.inc_retry("dead_lettered", stats.dead_lettered)
        await self.refresh_gauges()
        return stats

    async def _agent_disabled(self, item: RetryItem) -> bool:
        if self.registry is None:
            return False
        agent = await self.registry.get_agent(item.agent_id, item.tenant_id)
        return agent is not None and not agent.active

    async def _claim(self, key: str, raw: bytes, item: RetryItem, now: datetime) -> RetryItem | None:
        leased = item.model_copy(
            update={
                "lease_owner": self.owner_id,
                "lease_expires_at": now + timedelta(seconds=self.lease_seconds),
            }
        )
        if await self.storage.compare_and_set(key, raw, leased.to_json(), ttl=self.retry_ttl):
            return leased
        return None

    async def _redeliver(self, item: RetryItem) -> DispatchOutcome:
        agent = Agent(
            id=item.agent_id,
            name=item.agent_id,
            webhook_url=item.webhook_url,
            labels=list(item.labels),
            tenant_id=item.tenant_id,
        )
        try:
            return await self.dispatcher.dispatch(
                item.email, item.labels, item.matched_label, agent, item.routing_reason
            )
        except InvalidWebhookUrlError as exc:
            return DispatchOutcome(
                agent_id=item.agent_id, matched_label=item.matched_label, success=False, error=str(exc)
            )

    async def _dead_letter(
        self, key: str, item: RetryItem, attempts: int, error: str, now: datetime
    ) -> None:
        dead = DeadLetterItem(
            **item.model_dump(exclude={"lease_owner", "lease_expires_at"}),
            final_error=error,
            dead_lettered_at=now,
        )
        dead = dead.model_copy(update={"attempts": attempts, "last_attempt": now, "last_error": error})
        await self.storage.put(f"{DEAD_PREFIX}{item.id}", dead.to_json(), ttl=self.dead_letter_ttl)
        await self.storage.delete(key)

    # ----------------------------------------------------------------- inspect
    async def list_pending(self) -> list[RetryItem]:
        return await self._load_all(RETRY_PREFIX, RetryItem)

    async def list_dead_letters(self) -> list[DeadLetterItem]:
        return await self._load_all(DEAD_PREFIX, DeadLetterItem)

    async def _load_all(self, prefix: str, model):
        items = []
        for key in await self.storage.list(prefix):
            raw = await self.storage.get(key)
            if raw:
                items.append(model.from_json(raw))
        return items

    async def get_dead_letter(self, item_id: str) -> DeadLetterItem | None:
        raw = await self.storage.get(f"{DEAD_PREFIX}{item_id}")
        return DeadLetterItem.from_json(raw) if raw else None

    async def stats(self) -> QueueStats:
        return QueueStats(
            pending=len(await self.storage.list(RETRY_PREFIX)),
            dead_lettered=len(await self.storage.list(DEAD_PREFIX)),
        )

    async def refresh_gauges(self) -> None:
        stats = await self.stats()
        self.metrics.set_queue_sizes(stats.pending, stats.dead_lettered)

    async def replay_dead_letter(self, item_id: str, now: datetime | None = None) -> RetryItem | None:
        """Queue a fresh delivery for a dead-lettered item.

        The dead letter itself is left unchanged; the replay is a new pending
        item with its own id, ``attempts=1`` and due immediately.

        Returns:
            The new pending item, or None if no such dead letter exists.
        """
        dead = await self.get_dead_letter(item_id)
        if dead is None:
            return None
        now = now or self.clock()
        item = RetryItem(
            **dead.model_dump(
                exclude={"final_error", "dead_lettered_at", "lease_owner", "lease_expires_at"}
            )
        ).model_copy(
            update={
                "id": generate_id(),
                "attempts": 1,
                "max_attempts": self.max_attempts,
                "last_attempt": now,
                "next_attempt": now,
                "last_error": f"Replay of {dead.id}: {dead.final_error}",
                "created_at": now,
            }
        )
        await self.storage.put(f"{RETRY_PREFIX}{item.id}", item.to_json(), ttl=self.retry_ttl)
        self.logger.info("Replayed dead letter %s as %s", dead.id, item.id)
        return item
