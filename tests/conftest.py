"""
tests/conftest.py -- Shared test fixtures for ServiceMap unit and integration tests.

This module provides:
  - store: fresh in-memory InventoryStore per test for engine unit tests
  - seed_inventory(): a small, known inventory (groups, RRAs, hosts, rules)
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: TestClient plus its store for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API client because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
"""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from inventory.models import Host, HostMatchRule, RRAService, SystemGroup
from inventory.store import InventoryStore

# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@dataclass
class SeededInventory:
    web_group: int
    db_group: int
    mail_group: int
    web_rra: int
    db_rra: int
    web1_host: int
    techowner: int


def seed_inventory(store: InventoryStore) -> SeededInventory:
    """Load a small inventory:

    Groups (created in this order, so IDs ascend):
      - web  (prod)  RRA "Web Frontend", static host web1.example.com
                     (tech owner "webops", requiretcw=True)
      - db   (prod)  RRA "Customer DB", pattern ^db[0-9]+\\.example\\.com$
      - mail (stage) pattern mail, plus a broader pattern example\\.org
    """
    web = store.create_sysgroup(SystemGroup(name="web", environment="prod"))
    db = store.create_sysgroup(SystemGroup(name="db", environment="prod"))
    mail = store.create_sysgroup(SystemGroup(name="mail", environment="stage"))

    web_rra = store.create_rra(
        RRAService(name="Web Frontend", avail_rep_impact="high", confi_fin_prob="low", default_data="internal"),
        [web],
    )
    db_rra = store.create_rra(RRAService(name="Customer DB", default_data="confidential"), [db])

    owner = store.create_techowner("webops")
    web1 = store.create_host(
        Host(hostname="web1.example.com", sysgroup_id=web, techowner_id=owner, requiretcw=True, comment="static")
    )
    store.create_hostmatch(HostMatchRule(expression=r"^db[0-9]+\.example\.com$", sysgroup_id=db))
    store.create_hostmatch(HostMatchRule(expression="mail", sysgroup_id=mail))
    store.create_hostmatch(HostMatchRule(expression=r"example\.org", sysgroup_id=mail))
    return SeededInventory(
        web_group=web,
        db_group=db,
        mail_group=mail,
        web_rra=web_rra,
        db_rra=db_rra,
        web1_host=web1,
        techowner=owner,
    )


# ---------------------------------------------------------------------------
# Unit-test store
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[InventoryStore, None, None]:
    """Fresh in-memory store. Engine calls and store helpers run on the test thread."""
    s = InventoryStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def seeded(store: InventoryStore) -> SeededInventory:
    return seed_inventory(store)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: InventoryStore):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine so the periodic expiry never
    runs during API tests (a real asyncio.Task is required; MagicMock would
    fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, InventoryStore], None, None]:
    """Yield (client, store) for API integration tests.

    One isolated named in-memory DB per test module; the module name keeps
    parallel modules from sharing state.
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    store = InventoryStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    app.router.lifespan_context = _patch_lifespan(store)
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store

    store.close()


@pytest.fixture(scope="module")
def api_inventory(api_client: tuple[TestClient, InventoryStore]) -> SeededInventory:
    """Seed the API client's store once per module."""
    _client, store = api_client
    return seed_inventory(store)
