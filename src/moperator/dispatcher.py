# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Signed webhook delivery to agents.

Each delivery is an HTTP POST of the JSON payload::

    {"email": {...}, "labels": [...], "matchedLabel": "...",
     "routingReason": "...", "timestamp": "...", "signature": "..."}

with the headers ``X-Moperator-Signature`` (hex HMAC-SHA256 of the payload
without ``signature``), ``X-Moperator-Timestamp`` and ``X-Moperator-Labels``.

Every attempt is bounded by a client timeout so a slow agent cannot stall the
caller. Outcomes are classified as:

- 2xx response: success
- any other response: failure with ``status_code``
- transport error or timeout: failure with ``error`` and no status code

Example:
    Fanning out one email::

        dispatcher = WebhookDispatcher(signing_key="secret")
        outcomes = await dispatcher.dispatch_to_subscribed_agents(
            email, ["finance"], agents, "Invoice attached"
        )
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit

import aiohttp

from .logger import get_logger
from .matcher import AgentMatch, find_subscribed_agents
from .models import Agent, DispatchOutcome, EmailSnapshot, utc_now
from .prometheus import RelayMetrics
from .signing import canonical_json, sign_payload

DEFAULT_DISPATCH_TIMEOUT = 10.0
DEFAULT_DISPATCH_CONCURRENCY = 4
PLACEHOLDER_PATTERNS = ("your-webhook", "example.com", "placeholder")

SIGNATURE_HEADER = "X-Moperator-Signature"
TIMESTAMP_HEADER = "X-Moperator-Timestamp"
LABELS_HEADER = "X-Moperator-Labels"


class InvalidWebhookUrlError(ValueError):
    """Raised when an agent's webhook URL can never be delivered to."""

    def __init__(self, agent_id: str, url: str | None):
        super().__init__(f"Agent {agent_id!r} has no valid webhook URL: {url!r}")
        self.agent_id = agent_id
        self.url = url
        self.code = "invalid_webhook_url"


def is_valid_webhook_url(url: str | None) -> bool:
    """Return True for absolute http(s) URLs that are not template placeholders."""
    if not url:
        return False
    if any(pattern in url for pattern in PLACEHOLDER_PATTERNS):
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def build_payload(
    email: EmailSnapshot,
    labels: Sequence[str],
    matched_label: str,
    routing_reason: str,
    secret: str,
    timestamp: str | None = None,
) -> dict[str, Any]:
    """Assemble and sign the webhook body.

    The returned dict carries ``signature`` as its last key.
    """
    payload: dict[str, Any] = {
        "email": email.to_dict(),
        "labels": list(labels),
        "matchedLabel": matched_label,
        "routingReason": routing_reason,
        "timestamp": timestamp or _iso_now(),
    }
    payload["signature"] = sign_payload(canonical_json(payload), secret)
    return payload


def _iso_now() -> str:
    now: datetime = utc_now()
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WebhookDispatcher:
    """Performs signed webhook deliveries and classifies their outcome.

    Attributes:
        signing_key: Shared secret used to sign every payload.
        timeout: Total seconds allowed for one delivery attempt.
        concurrency: Maximum parallel deliveries during a fan-out.
        logger: Logger instance for diagnostic output.
        metrics: Prometheus metrics collector.
    """

    def __init__(
        self,
        signing_key: str,
        *,
        timeout: float = DEFAULT_DISPATCH_TIMEOUT,
        concurrency: int = DEFAULT_DISPATCH_CONCURRENCY,
        logger=None,
        metrics: RelayMetrics | None = None,
    ):
        self.signing_key = signing_key
        self.timeout = float(timeout)
        self.concurrency = max(1, int(concurrency))
        self.logger = logger or get_logger("Dispatcher")
        self.metrics = metrics or RelayMetrics()

    def _client_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout)

    async def dispatch(
        self,
        email: EmailSnapshot,
        labels: Sequence[str],
        matched_label: str,
        agent: Agent,
        routing_reason: str,
        secret: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> DispatchOutcome:
        """Deliver one signed payload to ``agent``.

        Args:
            email: The parsed email being delivered.
            labels: All labels assigned to the email.
            matched_label: The label that selected this agent.
            agent: Target agent; its ``webhook_url`` must be valid.
            routing_reason: Classifier explanation forwarded to the agent.
            secret: Signing key override; defaults to ``signing_key``.
            session: Optional shared client session.

        Returns:
            The classified outcome. Delivery failures never raise.

        Raises:
            InvalidWebhookUrlError: If the agent's URL is missing or a placeholder.
        """
        if not is_valid_webhook_url(agent.webhook_url):
            raise InvalidWebhookUrlError(agent.id, agent.webhook_url)
        payload = build_payload(
            email, labels, matched_label, routing_reason, secret or self.signing_key
        )
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: payload["signature"],
            TIMESTAMP_HEADER: payload["timestamp"],
            LABELS_HEADER: ",".join(labels),
        }
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        self.logger.info(
            "POST %s (agent=%s, label=%s)", agent.webhook_url, agent.id, matched_label
        )
        try:
            if session is None:
                async with aiohttp.ClientSession(timeout=self._client_timeout()) as own_session:
                    status = await self._post(own_session, agent.webhook_url, body, headers)
            else:
                status = await self._post(session, agent.webhook_url, body, headers)
        except asyncio.TimeoutError:
            outcome = DispatchOutcome(
                agent_id=agent.id, matched_label=matched_label, success=False, error="Timeout"
            )
        except (aiohttp.ClientError, OSError) as exc:
            outcome = DispatchOutcome(
                agent_id=agent.id,
                matched_label=matched_label,
                success=False,
                error=str(exc) or exc.__class__.__name__,
            )
        else:
            outcome = DispatchOutcome(
                agent_id=agent.id,
                matched_label=matched_label,
                success=200 <= status < 300,
                status_code=status,
            )
        self.metrics.inc_dispatch(agent.id, outcome.success)
        if not outcome.success:
            self.logger.warning(
                "Delivery to agent %s failed: %s", agent.id, outcome.error_text
            )
        return outcome

    async def _post(
        self,
        session: aiohttp.ClientSession,
        url: str,
        body: bytes,
        headers: dict[str, str],
    ) -> int:
        async with session.post(url, data=body, headers=headers, timeout=self._client_timeout()) as resp:
            text = (await resp.read()).decode("utf-8", errors="replace")
            self.logger.debug("Response %s from %s: %s", resp.status, url, text[:200])
            return resp.status

    async def dispatch_to_subscribed_agents(
        self,
        email: EmailSnapshot,
        email_labels: Sequence[str],
        agents: Sequence[Agent],
        routing_reason: str,
    ) -> list[DispatchOutcome]:
        """Fan an email out to every subscribed, active agent.

        Agents without a valid webhook URL are skipped and produce no outcome.
        Deliveries to different agents run concurrently, bounded by
        ``concurrency``; outcomes keep fan-out order.
        """
        deliverable: list[AgentMatch] = []
        for match in find_subscribed_agents(agents, email_labels):
            if not is_valid_webhook_url(match.agent.webhook_url):
                self.logger.warning("Skipping %s - no valid webhook URL", match.agent.id)
                continue
            deliverable.append(match)
        if not deliverable:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)
        async with aiohttp.ClientSession(timeout=self._client_timeout()) as session:

            async def _deliver(match: AgentMatch) -> DispatchOutcome:
                async with semaphore:
                    return await self.dispatch(
                        email,
                        email_labels,
                        match.matched_label,
                        match.agent,
                        routing_reason,
                        session=session,
                    )

            return list(await asyncio.gather(*(_deliver(match) for match in deliverable)))
