from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from abacus.config import Settings
from abacus.infra.db.models import Base


class FakeClock:
    """Mutable 'now' for engines, token providers and deadlines."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingSleep:

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class MockUpstream:
    """httpx transport that routes requests to a handler and records them."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self._handle))

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def json_body(request: httpx.Request) -> Any:
    return json.loads(request.content.decode())


@pytest.fixture
def cfg() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        anthropic_admin_key="sk-ant-admin01-test",
        anthropic_base_url="https://anthropic.test",
        cursor_admin_key="key_cursor_test",
        cursor_base_url="https://cursor.test",
        github_token="ghp_testtoken",
        github_repos="acme/api",
        github_org="acme",
        github_base_url="https://github.test",
        work_email_domain="acme.com",
        anthropic_page_delay_s=0,
        cursor_page_delay_s=0,
        github_page_delay_s=0,
        github_commit_delay_s=0,
        backfill_chunk_delay_s=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 6, 11, 12, 30, tzinfo=timezone.utc))


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(eng.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session(engine) -> AsyncSession:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as s:
        yield s
