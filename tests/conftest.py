"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator, Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from oversight.db import SessionFactory, session_scope
from oversight.models import Base, Task

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture
def now() -> datetime:
    """Fixed clock for scoring and persistence."""
    return NOW


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """Build an unsaved task; created_at defaults to the fixed clock."""

    def factory(status: str = "completed", **kwargs: Any) -> Task:
        kwargs.setdefault("assigned_to", "web_dev_lead")
        kwargs.setdefault("created_at", NOW)
        kwargs.setdefault("retry_count", 0)
        kwargs.setdefault("metadata_", {})
        return Task(status=status, **kwargs)

    return factory


@pytest.fixture
def history(make_task: Callable[..., Task]) -> Callable[..., list[Task]]:
    """Build a newest-first task history from a list of statuses."""

    def factory(statuses: Sequence[str], **kwargs: Any) -> list[Task]:
        return [
            make_task(status, created_at=NOW - timedelta(hours=i + 1), **kwargs)
            for i, status in enumerate(statuses)
        ]

    return factory


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine]:
    """In-memory SQLite engine with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    return session_scope(async_sessionmaker(engine, expire_on_commit=False))


@pytest.fixture
def add_tasks(
    session_factory: SessionFactory, history: Callable[..., list[Task]]
) -> Callable[..., Any]:
    """Persist a newest-first history for one subordinate."""

    async def factory(role: str, statuses: Sequence[str], **kwargs: Any) -> list[Task]:
        tasks = history(statuses, assigned_to=role, **kwargs)
        async with session_factory() as session:
            session.add_all(tasks)
        return tasks

    return factory
