"""Test fixtures.

Most tests run entirely in memory: an InMemoryNegotiationStore, fake
connections and a fake identity service, wired into a real Runtime and
handed to the app through app.state and dependency_overrides.

The SQL store tests use a real PostgreSQL session in a transaction that is
rolled back afterwards (every commit() becomes a SAVEPOINT). They are
skipped when the database is unreachable.
"""

from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from fakes import FakeIdentityResolver, InMemoryNegotiationStore
from parley.config import settings
from parley.db.models import Base
from parley.realtime.job_status import InMemoryJobStatusBoard
from parley.realtime.presence import PresenceRegistry
from parley.realtime.runtime import Runtime

DIRECTORY = {
    "req-1": "Rita Requester",
    "req-2": "Rob Requester",
    "wrk-1": "Walt Worker",
    "wrk-2": "Wendy Worker",
    "wrk-3": "Will Worker",
}


@pytest.fixture()
def identity():
    return FakeIdentityResolver(dict(DIRECTORY))


@pytest.fixture()
def registry(identity):
    return PresenceRegistry(identity)


@pytest.fixture()
def job_status():
    return InMemoryJobStatusBoard()


@pytest.fixture()
def store():
    return InMemoryNegotiationStore()


@pytest.fixture()
def runtime(registry, job_status, identity, store):
    @asynccontextmanager
    async def open_store():
        yield store

    return Runtime(
        registry=registry,
        job_status=job_status,
        identity=identity,
        open_store=open_store,
        ack_timeout=0.05,
    )


@pytest_asyncio.fixture()
async def client(runtime, store):
    """HTTP client against the app with the in-memory runtime and store.

    Auth is overridden with a fixed identity so protected routes work
    without real tokens.
    """
    from parley.api.deps import get_store
    from parley.auth.dependencies import CurrentIdentity, get_current_user
    from parley.main import app

    def override_get_current_user():
        return CurrentIdentity(participant_id="admin-1", token="test-token")

    app.state.runtime = runtime
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_current_user] = override_get_current_user

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    del app.state.runtime


@pytest_asyncio.fixture()
async def db_session():
    """Per-test session with automatic rollback via savepoints."""
    engine = create_async_engine(
        settings.database_url, echo=False, connect_args={"timeout": 2}
    )
    try:
        conn = await engine.connect()
    except (OSError, SQLAlchemyError) as e:
        await engine.dispose()
        pytest.skip(f"PostgreSQL not reachable: {e}")

    trans = await conn.begin()
    await conn.run_sync(Base.metadata.create_all)
    session = AsyncSession(
        bind=conn,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield session
    finally:
        await session.close()
        await trans.rollback()
        await conn.close()
        await engine.dispose()
