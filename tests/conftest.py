"""
Pytest Configuration and Fixtures for the Ingestion Service Tests
"""
from typing import List, Optional, Sequence

import pytest
import pytest_asyncio
from hypothesis import settings
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.database import init_models
from app.repositories.job_repository import JobRepository
from app.repositories.record_repository import RecordRepository

# Configure Hypothesis profiles
settings.register_profile("ci", max_examples=100, deadline=None)
settings.register_profile("dev", max_examples=50, deadline=5000)
settings.load_profile("dev")


class FakeVectorGenerator:
    """
    Deterministic Vector Generator.

    Texts containing any of `fail_markers` always get an empty vector;
    `fail_all` makes every call fail. Every call is recorded.
    """

    def __init__(self, dimensions: int = 4, fail_markers: Sequence[str] = (), fail_all: bool = False):
        self.dimensions = dimensions
        self.fail_markers = tuple(fail_markers)
        self.fail_all = fail_all
        self.calls: List[List[str]] = []

    def _vector(self, text: str) -> List[float]:
        base = float(len(text) % 7 + 1)
        return [base + i for i in range(self.dimensions)]

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        results = []
        for text in texts:
            if self.fail_all or any(marker in text for marker in self.fail_markers):
                results.append([])
            else:
                results.append(self._vector(text))
        return results

    def attempts_for(self, text: str) -> int:
        return sum(call.count(text) for call in self.calls)


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine; NullPool gives every session its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ingest.db'}", poolclass=NullPool)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def job_repo(session_factory) -> JobRepository:
    return JobRepository(session_factory)


@pytest.fixture
def record_repo(session_factory) -> RecordRepository:
    return RecordRepository(session_factory)


@pytest.fixture
def fake_generator() -> FakeVectorGenerator:
    return FakeVectorGenerator()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def sample_partition_id() -> str:
    return "project-alpha"


def make_csv(rows: Sequence[dict], columns: Optional[Sequence[str]] = None) -> str:
    """Build CSV text from dict rows (no quoting needed for test data)."""
    columns = list(columns or rows[0].keys())
    lines = [",".join(columns)]
    for row in rows:
        lines.append(",".join(str(row.get(c, "")) for c in columns))
    return "\n".join(lines) + "\n"


@pytest.fixture
def generator_factory():
    """Build FakeVectorGenerators with custom failure behaviour."""
    return FakeVectorGenerator
