# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Shared fixtures for the MPC session coordinator test suite.

Coordinators are wired to in-process fake engines (see
:mod:`tests.fakes`), so no Vertex service is needed. Module-level
singletons are reset around every test.
"""

from __future__ import annotations

from typing import AsyncGenerator, Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.mpc.coordinator import SessionCoordinator, get_coordinator, reset_coordinator
from app.mpc.guard import ConcurrencyGuard
from app.mpc.models import Algorithm
from app.mpc.store import InMemoryKeyStore, reset_key_store
from app.mpc.vertex_client import reset_vertex_client
from tests.fakes import FakeEngine, FakeKeyVault, FakeRendezvous, make_coordinator


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Prevent state leakage between tests."""
    reset_coordinator()
    reset_key_store()
    reset_vertex_client()
    yield
    reset_coordinator()
    reset_key_store()
    reset_vertex_client()


@pytest.fixture
def rendezvous() -> FakeRendezvous:
    return FakeRendezvous()


@pytest.fixture
def engines(rendezvous: FakeRendezvous) -> Dict[Algorithm, FakeEngine]:
    vault = FakeKeyVault()
    return {algo: FakeEngine(algo, vault, rendezvous) for algo in Algorithm}


@pytest.fixture
def store() -> InMemoryKeyStore:
    return InMemoryKeyStore()


@pytest_asyncio.fixture
async def coordinator(store, engines, rendezvous) -> AsyncGenerator[SessionCoordinator, None]:
    """Per-pair coordinator on fake engines; drains sessions on teardown."""
    c = make_coordinator(store, engines, rendezvous, guard=ConcurrencyGuard("pair"))
    yield c
    await c.shutdown(grace_seconds=1.0)


@pytest_asyncio.fixture
async def client(coordinator: SessionCoordinator) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the FastAPI app, backed by the fake coordinator."""
    from app.main import app

    app.dependency_overrides[get_coordinator] = lambda: coordinator
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as async_client:
        yield async_client
    app.dependency_overrides.clear()
