"""Shared fixtures for the relay tests."""

import pytest
import pytest_asyncio

from moperator.models import Agent, EmailSnapshot
from moperator.storage import MemoryStorage, SqliteStorage

WEBHOOK_URL = "https://agents.acme.test/webhook"
SIGNING_KEY = "test-signing-key"


def make_email(**overrides) -> EmailSnapshot:
    data = {
        "from": "sender@acme.test",
        "to": "inbox@moperator.ai",
        "subject": "Invoice #42",
        "textBody": "Please find the invoice attached.",
        "attachments": [],
        "receivedAt": "2024-01-15T10:00:00.000Z",
    }
    data.update(overrides)
    return EmailSnapshot.model_validate(data)


def make_agent(agent_id: str = "billing", labels=("finance",), **overrides) -> Agent:
    data = {
        "id": agent_id,
        "name": agent_id.title(),
        "description": f"{agent_id} agent",
        "webhook_url": WEBHOOK_URL,
        "labels": list(labels),
        "active": True,
    }
    data.update(overrides)
    return Agent(**data)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest_asyncio.fixture
async def sqlite_storage(tmp_path):
    store = SqliteStorage(str(tmp_path / "kv.db"))
    await store.init_db()
    return store
