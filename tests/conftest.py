"""Shared fixtures for the memoria test suite.

Unit tests run against :mod:`memoria.testing` fakes.  PostgreSQL-backed tests
use one pgvector testcontainer per session and a fresh database per test.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from memoria.config import MemoriaConfig
from memoria.memory.embedding import InMemoryEmbeddingIndex
from memoria.memory.store import MemoryStore
from memoria.memory.system import MemorySystem
from memoria.testing import HashingEmbeddingEngine, InMemoryMemoryRepository

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

# A fixed Wednesday afternoon, UTC.
FIXED_NOW = datetime(2024, 6, 12, 14, 30, tzinfo=UTC)


class FakeClock:
    """Mutable UTC clock for components that take a ``clock`` callable."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Mutable monotonic clock (seconds) for cache expiry."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repo() -> InMemoryMemoryRepository:
    return InMemoryMemoryRepository()


@pytest.fixture
def engine() -> HashingEmbeddingEngine:
    return HashingEmbeddingEngine(dimension=64)


@pytest.fixture
def index(engine: HashingEmbeddingEngine) -> InMemoryEmbeddingIndex:
    return InMemoryEmbeddingIndex(engine)


@pytest.fixture
def store(repo: InMemoryMemoryRepository, index: InMemoryEmbeddingIndex) -> MemoryStore:
    return MemoryStore(repo, index)


@pytest.fixture
def config() -> MemoriaConfig:
    """Defaults with periodic cache cleanup off so no background task is left running."""
    return MemoriaConfig.model_validate(
        {"cache": {"enable_cleanup": False}, "embedding": {"dimension": 64}}
    )


@pytest.fixture
async def system(
    repo: InMemoryMemoryRepository,
    index: InMemoryEmbeddingIndex,
    config: MemoriaConfig,
    clock: FakeClock,
) -> AsyncIterator[MemorySystem]:
    mem = MemorySystem(repo, index, config, clock=clock)
    await mem.initialize()
    try:
        yield mem
    finally:
        await mem.close()


# ---------------------------------------------------------------------------
# PostgreSQL (testcontainers)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared pgvector container for every DB-backed test in the session.

    Each use of :func:`provisioned_postgres_pool` creates a new database with
    a random name, so rows and schemas never leak between tests.
    """
    if not docker_available:
        pytest.skip("Docker not available")
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("pgvector/pgvector:pg16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database and asyncpg pool for a single test usage.

    Tests should use this as::

        async with provisioned_postgres_pool() as pool:
            ...
    """
    from memoria.db import ConnectionParams, Database

    @asynccontextmanager
    async def _provision(*, min_pool_size: int = 1, max_pool_size: int = 3) -> AsyncIterator[Pool]:
        params = ConnectionParams(
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
        )
        db = Database(
            f"test_{uuid.uuid4().hex[:12]}",
            params,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()
