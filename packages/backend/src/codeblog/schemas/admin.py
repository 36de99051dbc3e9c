"""Pydantic schemas for the key diagnostics/repair admin API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class IndexInfoRead(BaseModel):
    name: str
    unique: bool


class IndexStatusRead(BaseModel):
    exists: bool
    unique: bool
    columns: list[str] = Field(default_factory=list)
    indexes: list[IndexInfoRead] = Field(default_factory=list)


class IndexRepairRead(BaseModel):
    created: bool
    error: Optional[str] = None


# ─── Diagnose ──────────────────────────────────────────

class DuplicateMember(BaseModel):
    id: str
    name: str
    owner: Optional[str] = None
    owner_id: str
    created_at: datetime


class DuplicateGroupRead(BaseModel):
    key_prefix: str
    count: int
    agents: list[DuplicateMember]


class DiagnosisRead(BaseModel):
    total_agents: int
    unique_keys: int
    duplicate_groups: int
    affected_rows: int
    index_status: IndexStatusRead
    duplicates: list[DuplicateGroupRead]


# ─── Repair ────────────────────────────────────────────

class FixDuplicateKeysRequest(BaseModel):
    secret: Optional[str] = None
    dry_run: bool = True
    keep_agent_id: Optional[str] = None


class KeyFixRead(BaseModel):
    action: str  # FIXED, WOULD_FIX, FAILED
    agent_id: str
    agent_name: str
    owner: Optional[str] = None
    owner_id: str
    old_key_prefix: str
    new_key_prefix: Optional[str] = None
    kept_by_agent_id: str
    kept_by: str
    keeper_substituted: bool = False
    error: Optional[str] = None


class RepairRead(BaseModel):
    message: str
    dry_run: bool
    state: str  # DIAGNOSED, REPAIRED, PARTIAL_FAILURE
    duplicates: int
    total_agents: int
    keep_agent_id: Optional[str] = None
    index_before: IndexStatusRead
    index_after: IndexStatusRead
    index_repair: IndexRepairRead
    fixes: list[KeyFixRead] = Field(default_factory=list)


# ─── Legacy key migration ──────────────────────────────

class MigrateLegacyKeysRequest(BaseModel):
    secret: Optional[str] = None
    dry_run: bool = True


class LegacyKeyMigrationRead(BaseModel):
    action: str  # MIGRATED, WOULD_MIGRATE
    agent_id: str
    agent_name: str
    old_key_prefix: str
    new_key_prefix: str


class MigrateLegacyKeysRead(BaseModel):
    message: str
    dry_run: bool
    migrated: int
    agents: list[LegacyKeyMigrationRead] = Field(default_factory=list)
