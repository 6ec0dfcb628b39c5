import asyncio
from datetime import datetime, timezone

import pytest

from contractops.config import COSettings
from contractops.errors import GatewayError
from contractops.persistence import InMemoryGateway
from contractops.signing import ProviderDocument

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

class CountingGateway(InMemoryGateway):
    """In-memory store that counts writes."""

    def __init__(self, seed=None):
        super().__init__(seed)
        self.writes = []

    async def insert(self, table, row):
        self.writes.append(("insert", table))
        return await super().insert(table, row)

    async def insert_many(self, table, rows):
        self.writes.append(("insert_many", table))
        return await super().insert_many(table, rows)

    async def update(self, table, record_id, changes):
        self.writes.append(("update", table))
        return await super().update(table, record_id, changes)

    def updates(self, table="contract"):
        return [w for w in self.writes if w == ("update", table)]

class FakeSigningGateway:
    platform = "esignatures"

    def __init__(self, status=None, fail=None, delay=0.0):
        self.status = status
        self.fail = fail
        self.delay = delay
        self.sent = []
        self.polls = []

    async def send(self, document):
        self.sent.append(document)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise GatewayError(self.fail)
        return ProviderDocument(document_id="doc-1", sign_url="https://sign.example/doc-1")

    async def get_status(self, document_id):
        self.polls.append(document_id)
        return self.status

@pytest.fixture
def settings():
    return COSettings(
        _env_file=None,
        esignatures_api_key="test-key",
        webhook_secret="whsec",
        site_url="https://app.example",
        actor_contact_id=None,
        max_retries=1,
        max_rps=0,
    )

@pytest.fixture
def clock():
    return lambda: FIXED_NOW

@pytest.fixture
def counting_store():
    return CountingGateway

@pytest.fixture
def fake_gateway():
    return FakeSigningGateway
