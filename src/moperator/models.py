# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the relay.

This module defines the records exchanged between components and persisted
through the storage port. Every model serializes to camelCase JSON so that
the stored blobs and the webhook wire format stay readable by the receiving
agents.

Models:
    - EmailSnapshot: Parsed email carried in webhook payloads
    - Label: Tenant-defined email category
    - Agent: Registered downstream webhook endpoint
    - HealthStatus: Result of the latest health probe for an agent
    - DispatchOutcome: Result of one delivery attempt
    - RetryItem / DeadLetterItem: Pending and terminal failed deliveries
    - RateLimitConfig / RateLimitEntry / RateLimitResult: Rate limiter state
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = 1
CATCH_ALL_LABEL = "catch-all"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class RelayModel(BaseModel):
    """Base model serializing field names as camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> bytes:
        """Serialize to the JSON blob stored under the model's key."""
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: bytes | str):
        return cls.model_validate_json(raw)


class Attachment(RelayModel):
    filename: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    content: str = ""


class EmailSnapshot(RelayModel):
    """Parsed inbound email, produced by the (external) email parser."""

    from_addr: Annotated[str, Field(alias="from")]
    to: str
    subject: str = ""
    text_body: str = ""
    html_body: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    received_at: str = Field(default_factory=lambda: utc_now().isoformat())


class Label(RelayModel):
    id: Annotated[str, Field(min_length=1, max_length=50, pattern=r"^[a-zA-Z0-9_-]+$")]
    name: Annotated[str, Field(min_length=1, max_length=100)]
    description: Annotated[str, Field(max_length=500)] = ""


DEFAULT_LABELS = [
    Label(
        id="important",
        name="Important",
        description="Urgent, time-sensitive, or high-priority emails requiring immediate attention",
    ),
    Label(id=CATCH_ALL_LABEL, name="Other", description="Emails that don't fit other categories"),
]


class LabelingDecision(RelayModel):
    """Labels assigned by the classifier and its explanation."""

    labels: list[str]
    reason: str = ""


class HealthStatus(RelayModel):
    """Outcome of the most recent health probe against an agent endpoint.

    ``consecutive_failures`` resets to zero on any successful check and is
    incremented by one on every failed check.
    """

    healthy: bool
    last_check: datetime
    last_success: datetime | None = None
    consecutive_failures: int = 0
    last_error: str | None = None
    response_time_ms: int | None = None


class Agent(RelayModel):
    """Downstream endpoint receiving emails for its subscribed labels."""

    schema_version: int = SCHEMA_VERSION
    id: str
    name: str = ""
    description: str = ""
    webhook_url: str | None = None
    labels: list[str] = Field(default_factory=list)
    active: bool = True
    health: HealthStatus | None = None
    tenant_id: str | None = None


class DispatchOutcome(RelayModel):
    """Result of a single webhook delivery attempt."""

    agent_id: str
    matched_label: str
    success: bool
    status_code: int | None = None
    error: str | None = None

    @property
    def error_text(self) -> str:
        """Human readable failure reason stored on retry items."""
        if self.error:
            return self.error
        return f"Status: {self.status_code}"


class RetryItem(RelayModel):
    """A failed delivery waiting for its next attempt.

    While pending, ``1 <= attempts <= max_attempts``. The lease fields mark
    an item as in flight for one scheduler pass.
    """

    schema_version: int = SCHEMA_VERSION
    id: str
    email: EmailSnapshot
    agent_id: str
    webhook_url: str
    labels: list[str] = Field(default_factory=list)
    matched_label: str
    routing_reason: str = ""
    tenant_id: str | None = None
    attempts: int = 1
    max_attempts: int = 5
    last_attempt: datetime
    next_attempt: datetime
    last_error: str = ""
    created_at: datetime
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt <= now

    def is_leased(self, now: datetime) -> bool:
        """True while another pass holds an unexpired lease on the item."""
        return (
            self.lease_owner is not None
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )


class DeadLetterItem(RetryItem):
    """Terminal copy of a retry item that exhausted its attempts."""

    model_config = ConfigDict(frozen=True)

    final_error: str
    dead_lettered_at: datetime


class RateLimitConfig(RelayModel):
    model_config = ConfigDict(frozen=True)

    window_ms: int = 60_000
    max_requests: int = 60


class RateLimitEntry(RelayModel):
    count: int
    reset_at: int


class RateLimitResult(RelayModel):
    allowed: bool
    remaining: int
    reset_at: int


class RetryPassStats(RelayModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0


class QueueStats(RelayModel):
    pending: int = 0
    dead_lettered: int = 0


class HealthSweepStats(RelayModel):
    checked: int = 0
    healthy: int = 0
    unhealthy: int = 0
    disabled: int = 0
