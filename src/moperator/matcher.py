# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Label-based selection of the agents that receive an email."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import NamedTuple

from .models import Agent


class AgentMatch(NamedTuple):
    agent: Agent
    matched_label: str


def find_subscribed_agents(agents: Sequence[Agent], email_labels: Iterable[str]) -> list[AgentMatch]:
    """Return the active agents subscribed to any of ``email_labels``.

    Labels are scanned in the order given and agents in registry order. Each
    agent appears at most once, recorded with the first email label it is
    subscribed to. Inactive agents are excluded.
    """
    matches: list[AgentMatch] = []
    seen: set[str] = set()
    for label in email_labels:
        for agent in agents:
            if agent.id in seen or not agent.active or label not in agent.labels:
                continue
            seen.add(agent.id)
            matches.append(AgentMatch(agent, label))
    return matches
