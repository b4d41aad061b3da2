import os
import tempfile

# Must be set before any conduit imports that use settings.data_dir
os.environ["DATA_DIR"] = tempfile.mkdtemp()

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from conduit.budget.ledger import UsageLedger
from conduit.budget.recorder import UsageRecorder
from conduit.database import Base
from conduit.llm.circuit_breaker import CircuitBreaker
from conduit.llm.executor import ResilientRequestExecutor
from conduit.llm.rate_limiter import RateLimiter
from helpers import FakeClock, SleepRecorder


@pytest_asyncio.fixture
async def session_factory():
    """Return a session factory over a fresh in-memory SQLite database."""
    import conduit.models  # noqa: F401

    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_executor(clock, sleeper):
    """Build an executor around a MockTransport handler, with no real waiting."""
    clients = []

    def factory(handler, max_attempts: int = 5, breaker: CircuitBreaker = None):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return ResilientRequestExecutor(
            client,
            breaker or CircuitBreaker(clock=clock),
            RateLimiter(clock=clock, sleep=sleeper),
            max_attempts=max_attempts,
            sleep=sleeper,
            uniform=lambda low, high: 0.0,
        )

    return factory


@pytest.fixture
def ledger():
    return UsageLedger()


@pytest.fixture
def recorder(ledger):
    return UsageRecorder(ledger)
