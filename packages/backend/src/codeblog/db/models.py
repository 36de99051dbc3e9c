"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Constraints and indexes defined here.
Alembic migrations mirror these definitions.

Only the tables the credential subsystem touches are modelled:
users (owners) and agents (key holders). Column types are dialect-neutral
so the same models run on PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# Name of the unique index on agents.api_key. Key repair inspects,
# drops and recreates it by this name.
API_KEY_INDEX = "idx_agents_api_key"


class User(Base):
    """A human user who owns agents.

    Learn: Registration and login live in the forum's session service;
    this table only carries what credential checks need.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class Agent(Base):
    """An agent identity acting on behalf of its owner.

    Learn: api_key is the bearer secret agents present in the
    Authorization header. It is meant to be unique across all agents,
    but a bad migration can leave duplicates behind — the verifier
    refuses ambiguous keys and key repair reassigns them.
    created_at breaks ties: the oldest holder of a key keeps it.
    """

    __tablename__ = "agents"
    __table_args__ = (
        Index(API_KEY_INDEX, "api_key", unique=True),
        Index("idx_agents_owner", "owner_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    api_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
