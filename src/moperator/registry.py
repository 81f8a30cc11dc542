# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Narrow read/write adapter over the agent and label records.

Agent and label management (CRUD, authentication) belongs to the tenant
service; the relay only needs to list agents, read their labels and flip
their ``active``/``health`` fields. Records are laid out as:

- ``user:{tenant_id}:agent:{agent_id}`` for tenant agents
- ``agent:{agent_id}`` for agents registered without a tenant
- ``user:{tenant_id}:labels`` for a tenant's label list
"""

from __future__ import annotations

import json
from collections.abc import Callable

from .logger import get_logger
from .models import CATCH_ALL_LABEL, DEFAULT_LABELS, Agent, Label
from .storage import Storage

GLOBAL_AGENT_PREFIX = "agent:"
TENANT_PREFIX = "user:"


def tenant_key(tenant_id: str, *segments: str) -> str:
    return ":".join([f"user:{tenant_id}", *segments])


def agent_key(agent_id: str, tenant_id: str | None = None) -> str:
    if tenant_id:
        return tenant_key(tenant_id, "agent", agent_id)
    return f"{GLOBAL_AGENT_PREFIX}{agent_id}"


def _is_agent_key(key: str) -> bool:
    if key.startswith(GLOBAL_AGENT_PREFIX):
        return True
    parts = key.split(":")
    return len(parts) == 4 and parts[0] == "user" and parts[2] == "agent"


def _load_agent(key: str, raw: bytes) -> Agent:
    """Decode a stored agent, taking ``tenant_id`` from its key when absent.

    Records written by the tenant service carry no ``tenantId``; the key is
    the only place the owning tenant is recorded.
    """
    agent = Agent.from_json(raw)
    if agent.tenant_id is None and key.startswith(TENANT_PREFIX):
        agent = agent.model_copy(update={"tenant_id": key.split(":")[1]})
    return agent


class AgentRegistry:
    """Agent and label access backed by the storage port."""

    def __init__(self, storage: Storage, logger=None):
        self.storage = storage
        self.logger = logger or get_logger("AgentRegistry")

    async def save_agent(self, agent: Agent) -> None:
        await self.storage.put(agent_key(agent.id, agent.tenant_id), agent.to_json())

    async def get_agent(self, agent_id: str, tenant_id: str | None = None) -> Agent | None:
        key = agent_key(agent_id, tenant_id)
        raw = await self.storage.get(key)
        return _load_agent(key, raw) if raw else None

    async def delete_agent(self, agent_id: str, tenant_id: str | None = None) -> None:
        await self.storage.delete(agent_key(agent_id, tenant_id))

    async def list_agents(self, tenant_id: str | None = None) -> list[Agent]:
        """List the agents of one tenant, or every agent when ``tenant_id`` is None."""
        if tenant_id:
            keys = await self.storage.list(tenant_key(tenant_id, "agent:"))
        else:
            keys = await self.storage.list(GLOBAL_AGENT_PREFIX)
            keys += [key for key in await self.storage.list(TENANT_PREFIX) if _is_agent_key(key)]
        agents: list[Agent] = []
        for key in keys:
            raw = await self.storage.get(key)
            if raw:
                agents.append(_load_agent(key, raw))
        return agents

    async def update_agent(
        self,
        agent_id: str,
        tenant_id: str | None,
        mutate: Callable[[Agent], Agent | None],
    ) -> Agent | None:
        """Atomically apply ``mutate`` to a stored agent.

        Returns:
            The stored agent after the update, or None if the agent does not exist.
        """

        key = agent_key(agent_id, tenant_id)

        def _apply(raw: bytes | None) -> bytes | None:
            if raw is None:
                return None
            updated = mutate(_load_agent(key, raw))
            return updated.to_json() if updated is not None else None

        raw = await self.storage.update(key, _apply)
        return _load_agent(key, raw) if raw else None

    async def get_labels(self, tenant_id: str) -> list[Label]:
        """Return the tenant's labels, initializing them with the defaults."""
        key = tenant_key(tenant_id, "labels")
        raw = await self.storage.get(key)
        if raw is None:
            await self.save_labels(tenant_id, DEFAULT_LABELS)
            return list(DEFAULT_LABELS)
        return [Label.model_validate(item) for item in json.loads(raw)]

    async def save_labels(self, tenant_id: str, labels: list[Label]) -> None:
        payload = json.dumps([label.to_dict() for label in labels]).encode("utf-8")
        await self.storage.put(tenant_key(tenant_id, "labels"), payload)


def validate_assigned_labels(assigned: list[str], labels: list[Label]) -> list[str]:
    """Keep only known label ids, deduplicated; fall back to ``catch-all``."""
    known = {label.id for label in labels}
    valid: list[str] = []
    for label_id in assigned:
        if label_id in known and label_id not in valid:
            valid.append(label_id)
    return valid or [CATCH_ALL_LABEL]
