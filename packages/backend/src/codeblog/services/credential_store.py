"""Credential store — persistence for agent identities and their keys.

Learn: All reads and writes of agents.api_key go through this class.
Callers get plain snapshots (AgentKeyRecord) rather than live ORM rows
for bulk reads, so a rolled-back savepoint never leaves them holding
expired objects.

Unique-key violations surface as ApiKeyConflictError, a retryable error
distinct from every other database failure.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import inspect, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from codeblog.auth.api_keys import redact_key
from codeblog.db.models import API_KEY_INDEX, Agent, User


class ApiKeyConflictError(Exception):
    """Raised when a write would give two agents the same API key.

    Retryable: generate a fresh key and try again.
    """


@dataclass(frozen=True)
class AgentKeyRecord:
    """Read-only view of an agent and the key it holds."""

    id: str
    name: str
    api_key: str
    owner_id: str
    owner_username: Optional[str]
    created_at: datetime


@dataclass
class IndexInfo:
    name: str
    unique: bool


@dataclass
class IndexStatus:
    """State of the unique index on agents.api_key."""

    exists: bool
    unique: bool
    columns: list[str] = field(default_factory=list)
    indexes: list[IndexInfo] = field(default_factory=list)


@dataclass
class IndexRepair:
    created: bool
    error: Optional[str] = None


def _is_api_key_conflict(exc: IntegrityError) -> bool:
    return "api_key" in str(exc.orig)


def describe_db_error(exc: Exception) -> str:
    """Error summary that never carries SQL parameters (and so never a key)."""
    orig = getattr(exc, "orig", None)
    return type(orig or exc).__name__


def _api_key_index():
    for index in Agent.__table__.indexes:
        if index.name == API_KEY_INDEX:
            return index
    raise LookupError(f"{API_KEY_INDEX} is not declared on {Agent.__tablename__}")


def _read_indexes(sync_conn) -> list[dict]:
    return inspect(sync_conn).get_indexes(Agent.__tablename__)


def _rebuild_api_key_index(sync_conn, drop_existing: bool) -> None:
    index = _api_key_index()
    if drop_existing:
        index.drop(sync_conn)
    index.create(sync_conn)


class CredentialStore:
    """Agent identities and API keys backed by the agents table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ─── Lookups ────────────────────────────────────────

    async def find_by_api_key(self, api_key: str, limit: int = 2) -> list[tuple[str, str]]:
        """(agent_id, owner_id) pairs holding this key, oldest first.

        The limit is small on purpose: two rows are enough to tell
        "unique" from "duplicated".
        """
        result = await self.db.execute(
            select(Agent.id, Agent.owner_id)
            .where(Agent.api_key == api_key)
            .order_by(Agent.created_at.asc(), Agent.id.asc())
            .limit(limit)
        )
        return [(row.id, row.owner_id) for row in result.all()]

    async def get(self, agent_id: str) -> Optional[Agent]:
        return await self.db.get(Agent, agent_id)

    async def list_for_owner(self, owner_id: str) -> list[Agent]:
        result = await self.db.execute(
            select(Agent)
            .where(Agent.owner_id == owner_id)
            .order_by(Agent.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_with_keys(self) -> list[AgentKeyRecord]:
        """Every agent that holds a key, oldest first."""
        result = await self.db.execute(
            select(
                Agent.id,
                Agent.name,
                Agent.api_key,
                Agent.owner_id,
                Agent.created_at,
                User.username,
            )
            .outerjoin(User, User.id == Agent.owner_id)
            .where(Agent.api_key.is_not(None))
            .order_by(Agent.created_at.asc(), Agent.id.asc())
        )
        return [
            AgentKeyRecord(
                id=row.id,
                name=row.name,
                api_key=row.api_key,
                owner_id=row.owner_id,
                owner_username=row.username,
                created_at=row.created_at,
            )
            for row in result.all()
        ]

    # ─── Writes ─────────────────────────────────────────

    async def create(self, owner_id: str, name: str, api_key: str) -> Agent:
        agent = Agent(owner_id=owner_id, name=name, api_key=api_key)
        self.db.add(agent)
        try:
            await self.db.flush()
        except IntegrityError as e:
            if _is_api_key_conflict(e):
                raise ApiKeyConflictError(
                    f"API key {redact_key(api_key)} is already assigned"
                ) from e
            raise
        return agent

    async def set_api_key(self, agent_id: str, api_key: str) -> None:
        try:
            await self.db.execute(
                update(Agent).where(Agent.id == agent_id).values(api_key=api_key)
            )
        except IntegrityError as e:
            if _is_api_key_conflict(e):
                raise ApiKeyConflictError(
                    f"API key {redact_key(api_key)} is already assigned"
                ) from e
            raise

    async def delete(self, agent: Agent) -> None:
        await self.db.delete(agent)
        await self.db.flush()

    # ─── Unique index ───────────────────────────────────

    async def api_key_index_status(self) -> IndexStatus:
        """Inspect the agents table for the api_key unique index."""
        conn = await self.db.connection()
        indexes = await conn.run_sync(_read_indexes)

        target = next((ix for ix in indexes if ix["name"] == API_KEY_INDEX), None)
        return IndexStatus(
            exists=target is not None,
            unique=bool(target and target.get("unique")),
            columns=list(target["column_names"]) if target else [],
            indexes=[
                IndexInfo(name=ix["name"], unique=bool(ix.get("unique")))
                for ix in indexes
            ],
        )

    async def ensure_unique_api_key_index(self) -> IndexRepair:
        """Make sure agents.api_key has a unique index.

        A non-unique index under the same name is dropped and recreated
        as unique; a missing one is created. Runs in a savepoint so a
        failure (e.g. duplicates still present) leaves the session usable.
        """
        current = await self.api_key_index_status()
        if current.exists and current.unique:
            return IndexRepair(created=False)

        try:
            async with self.db.begin_nested():
                conn = await self.db.connection()
                await conn.run_sync(_rebuild_api_key_index, current.exists)
            await self.db.commit()
        except SQLAlchemyError as e:
            return IndexRepair(
                created=False,
                error=f"Could not create {API_KEY_INDEX} ({describe_db_error(e)})",
            )

        after = await self.api_key_index_status()
        if not after.exists or not after.unique:
            return IndexRepair(
                created=False,
                error=f"Failed to create a unique {API_KEY_INDEX} index.",
            )
        return IndexRepair(created=True)
