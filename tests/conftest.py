"""Shared test fixtures for the CRM sync engine.

Provides:
- stub_crm: a fresh StubCRM (see crm_stub.py) per test
- make_connector / connector: connectors bound to the stub, no delays or backoff
- memory_store / upsert_layer: in-memory record store and upsert layer
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio

from crm_stub import ACCESS_KEY, SERVER_URL, USERNAME, StubCRM
from src.recruitops.crm.auth import AuthStrategy, TokenAuth
from src.recruitops.crm.connector import CRMConnector
from src.recruitops.sync.store import InMemoryRecordStore
from src.recruitops.sync.upsert import UpsertLayer


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def stub_crm() -> StubCRM:
    return StubCRM()


@pytest.fixture
def make_connector(stub_crm: StubCRM):
    """Factory for connectors talking to ``stub_crm`` with no delays or backoff."""

    def _make(auth: AuthStrategy | None = None, **kwargs: Any) -> CRMConnector:
        options: dict[str, Any] = {
            "auth": auth or TokenAuth(),
            "page_size": 100,
            "page_delay": 0,
            "backoff_min": 0,
            "backoff_max": 0,
            "transport": stub_crm.transport(),
        }
        options.update(kwargs)
        return CRMConnector(SERVER_URL, USERNAME, ACCESS_KEY, **options)

    return _make


@pytest_asyncio.fixture
async def connector(make_connector) -> AsyncGenerator[CRMConnector, None]:
    conn = make_connector()
    yield conn
    await conn.close()


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def upsert_layer(memory_store: InMemoryRecordStore) -> UpsertLayer:
    return UpsertLayer(memory_store)
