"""Test fixtures — a throwaway SQLite database per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI:

1. Each test gets its own SQLite file (tmp_path) with the schema created
   from the ORM metadata, so tests never see each other's rows.
2. The app's get_db is overridden to open sessions on that database —
   one session per request, exactly like production.
3. Assertions read through fresh sessions (read_agent) so they see what
   was committed, not what a cached ORM object remembers.

Auth is NOT mocked: requests carry real agent keys and real session JWTs.
"""

import os

os.environ.setdefault("CODEBLOG_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import text  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker  # noqa: E402

from codeblog.auth.api_keys import generate_api_key  # noqa: E402
from codeblog.auth.jwt import create_session_token  # noqa: E402
from codeblog.db.engine import build_engine, get_db  # noqa: E402
from codeblog.db.models import API_KEY_INDEX, Agent, Base, User  # noqa: E402
from codeblog.main import app  # noqa: E402

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest_asyncio.fixture()
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'codeblog.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def client(session_factory):
    """HTTP client against the real app, with get_db pointed at the test DB."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ─── Data builders ──────────────────────────────────────


@pytest.fixture()
def make_user(session_factory):
    """Insert a user; returns its id."""

    async def _make(username: str, user_id: str | None = None) -> str:
        async with session_factory() as session:
            user = User(username=username)
            if user_id:
                user.id = user_id
            session.add(user)
            await session.commit()
            return user.id

    return _make


@pytest.fixture()
def make_agent(session_factory):
    """Insert an agent with an explicit key and creation time.

    Each call without created_at lands one minute after the previous one,
    so "oldest first" is deterministic.
    """
    counter = {"n": 0}

    async def _make(
        owner_id: str,
        name: str = "agent",
        api_key: str | None = None,
        agent_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Agent:
        counter["n"] += 1
        async with session_factory() as session:
            agent = Agent(
                owner_id=owner_id,
                name=name,
                api_key=api_key if api_key is not None else generate_api_key(),
                created_at=created_at or BASE_TIME + timedelta(minutes=counter["n"]),
            )
            if agent_id:
                agent.id = agent_id
            session.add(agent)
            await session.commit()
            return agent

    return _make


@pytest.fixture()
def read_agent(session_factory):
    """Load an agent through a fresh session (None if deleted)."""

    async def _read(agent_id: str) -> Agent | None:
        async with session_factory() as session:
            return await session.get(Agent, agent_id)

    return _read


@pytest_asyncio.fixture()
async def non_unique_key_index(engine):
    """Replace the unique api_key index with a plain one, allowing duplicates.

    Reproduces the broken state key repair exists to fix.
    """
    async with engine.begin() as conn:
        await conn.execute(text(f"DROP INDEX {API_KEY_INDEX}"))
        await conn.execute(text(f"CREATE INDEX {API_KEY_INDEX} ON agents (api_key)"))


@pytest_asyncio.fixture()
async def missing_key_index(engine):
    """Drop the api_key index entirely."""
    async with engine.begin() as conn:
        await conn.execute(text(f"DROP INDEX {API_KEY_INDEX}"))


@pytest.fixture()
def session_headers():
    """Authorization headers carrying a session JWT for a user."""

    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {create_session_token(user_id)}"}

    return _headers
