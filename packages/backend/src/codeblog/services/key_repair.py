"""Duplicate API key diagnostics and repair.

Learn: The agents.api_key unique index can go missing (a botched
migration, a restore from a dump without indexes). Once it is gone,
two agents can end up holding the same key, and the verifier then
refuses that key for both. This service finds and fixes that state:

    diagnose()  → DIAGNOSED, read-only
    repair(dry_run=True)  → DIAGNOSED, reports what would change
    repair(dry_run=False) → REPAIRED or PARTIAL_FAILURE

Repair never deactivates an agent. In each duplicate group one keeper
(the requested keep_agent_id if it is in the group, else the oldest)
keeps the key and everyone else gets a fresh one. Each group is applied
in its own savepoint, so one failing group neither half-applies nor
blocks the rest. The unique index is restored last, only when every
group went through.

migrate_legacy_keys() is the companion clean-up for keys still in a
legacy format: same body, current prefix.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from codeblog.auth.api_keys import generate_api_key, is_legacy, redact_key, upgrade_key
from codeblog.services.credential_store import (
    AgentKeyRecord,
    ApiKeyConflictError,
    CredentialStore,
    IndexRepair,
    IndexStatus,
    describe_db_error,
)

logger = structlog.get_logger()

DRY_RUN_PREFIX = "(dry run)"


class RepairState(str, Enum):
    DIAGNOSED = "DIAGNOSED"
    REPAIRED = "REPAIRED"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"


class FixAction(str, Enum):
    FIXED = "FIXED"
    WOULD_FIX = "WOULD_FIX"
    FAILED = "FAILED"


class MigrationAction(str, Enum):
    MIGRATED = "MIGRATED"
    WOULD_MIGRATE = "WOULD_MIGRATE"


@dataclass
class DuplicateGroup:
    """Two or more agents sharing one key, oldest first."""

    api_key: str
    agents: list[AgentKeyRecord]

    @property
    def key_prefix(self) -> str:
        return redact_key(self.api_key)


@dataclass
class Diagnosis:
    total_agents: int
    duplicate_groups: list[DuplicateGroup]
    index_status: IndexStatus

    @property
    def affected_rows(self) -> int:
        return sum(len(group.agents) - 1 for group in self.duplicate_groups)

    @property
    def unique_keys(self) -> int:
        return self.total_agents - self.affected_rows


@dataclass
class KeyFix:
    """What happened (or would happen) to one non-keeper agent."""

    action: FixAction
    agent_id: str
    agent_name: str
    owner_id: str
    owner_username: Optional[str]
    old_key_prefix: str
    new_key_prefix: Optional[str]
    kept_by_agent_id: str
    kept_by: str
    keeper_substituted: bool = False
    error: Optional[str] = None


@dataclass
class RepairOutcome:
    dry_run: bool
    state: RepairState
    total_agents: int
    duplicate_groups: int
    keep_agent_id: Optional[str]
    index_before: IndexStatus
    index_after: IndexStatus
    index_repair: IndexRepair
    fixes: list[KeyFix] = field(default_factory=list)

    @property
    def failed(self) -> list[KeyFix]:
        return [fix for fix in self.fixes if fix.action == FixAction.FAILED]

    @property
    def keeper_substituted(self) -> bool:
        return any(fix.keeper_substituted for fix in self.fixes)


@dataclass
class LegacyKeyMigration:
    action: MigrationAction
    agent_id: str
    agent_name: str
    old_key_prefix: str
    new_key_prefix: str


def find_duplicate_groups(agents: list[AgentKeyRecord]) -> list[DuplicateGroup]:
    """Group agents by key; keep only keys held by more than one agent.

    Input order is preserved inside each group, so oldest-first input
    gives oldest-first groups.
    """
    by_key: dict[str, list[AgentKeyRecord]] = {}
    for agent in agents:
        if not agent.api_key:
            continue
        by_key.setdefault(agent.api_key, []).append(agent)

    return [
        DuplicateGroup(api_key=api_key, agents=members)
        for api_key, members in by_key.items()
        if len(members) > 1
    ]


def pick_keeper(
    group: DuplicateGroup, keep_agent_id: Optional[str] = None
) -> tuple[AgentKeyRecord, bool]:
    """Choose the agent that keeps the key.

    Returns (keeper, substituted). substituted is True when a
    keep_agent_id was requested but is not a member of this group and
    the oldest member was used instead.
    """
    if keep_agent_id:
        for agent in group.agents:
            if agent.id == keep_agent_id:
                return agent, False
        return group.agents[0], True
    return group.agents[0], False


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, ApiKeyConflictError):
        return str(exc)
    return describe_db_error(exc)


def _owner_label(agent: AgentKeyRecord) -> str:
    return f"{agent.name} ({agent.owner_username or agent.owner_id})"


class KeyRepairService:
    """Finds and fixes agents that share an API key."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = CredentialStore(db)

    # ─── Diagnose ───────────────────────────────────────

    async def diagnose(self) -> Diagnosis:
        """Read-only scan of all keyed agents and the unique index."""
        agents = await self.store.list_with_keys()
        index_status = await self.store.api_key_index_status()
        return Diagnosis(
            total_agents=len(agents),
            duplicate_groups=find_duplicate_groups(agents),
            index_status=index_status,
        )

    # ─── Repair ─────────────────────────────────────────

    async def repair(
        self,
        *,
        dry_run: bool = True,
        keep_agent_id: Optional[str] = None,
    ) -> RepairOutcome:
        """Reassign keys so no two agents share one, then restore the index.

        Dry-run unless dry_run=False is passed explicitly.
        """
        diagnosis = await self.diagnose()
        index_before = diagnosis.index_status

        fixes: list[KeyFix] = []
        for group in diagnosis.duplicate_groups:
            fixes.extend(await self._repair_group(group, keep_agent_id, dry_run))

        if dry_run:
            return RepairOutcome(
                dry_run=True,
                state=RepairState.DIAGNOSED,
                total_agents=diagnosis.total_agents,
                duplicate_groups=len(diagnosis.duplicate_groups),
                keep_agent_id=keep_agent_id,
                index_before=index_before,
                index_after=index_before,
                index_repair=IndexRepair(created=False),
                fixes=fixes,
            )

        rows_failed = any(fix.action == FixAction.FAILED for fix in fixes)
        if rows_failed:
            index_repair = IndexRepair(
                created=False,
                error="Skipped: some duplicate groups could not be repaired.",
            )
        else:
            index_repair = await self.store.ensure_unique_api_key_index()
            if index_repair.created:
                logger.info("key_repair.index_restored")
            elif index_repair.error:
                logger.error("key_repair.index_restore_failed", error=index_repair.error)

        index_after = await self.store.api_key_index_status()
        state = (
            RepairState.PARTIAL_FAILURE
            if rows_failed or index_repair.error
            else RepairState.REPAIRED
        )
        return RepairOutcome(
            dry_run=False,
            state=state,
            total_agents=diagnosis.total_agents,
            duplicate_groups=len(diagnosis.duplicate_groups),
            keep_agent_id=keep_agent_id,
            index_before=index_before,
            index_after=index_after,
            index_repair=index_repair,
            fixes=fixes,
        )

    async def _repair_group(
        self,
        group: DuplicateGroup,
        keep_agent_id: Optional[str],
        dry_run: bool,
    ) -> list[KeyFix]:
        keeper, substituted = pick_keeper(group, keep_agent_id)
        planned = [
            (agent, generate_api_key())
            for agent in group.agents
            if agent.id != keeper.id
        ]

        def fix(agent, new_key, action, error=None) -> KeyFix:
            return KeyFix(
                action=action,
                agent_id=agent.id,
                agent_name=agent.name,
                owner_id=agent.owner_id,
                owner_username=agent.owner_username,
                old_key_prefix=group.key_prefix,
                new_key_prefix=new_key,
                kept_by_agent_id=keeper.id,
                kept_by=_owner_label(keeper),
                keeper_substituted=substituted,
                error=error,
            )

        if substituted:
            logger.warning(
                "key_repair.keeper_substituted",
                requested=keep_agent_id,
                keeper=keeper.id,
                key_prefix=group.key_prefix,
            )

        if dry_run:
            return [fix(agent, DRY_RUN_PREFIX, FixAction.WOULD_FIX) for agent, _ in planned]

        try:
            async with self.db.begin_nested():
                for agent, new_key in planned:
                    await self.store.set_api_key(agent.id, new_key)
            await self.db.commit()
        except (ApiKeyConflictError, SQLAlchemyError) as e:
            error = _describe_failure(e)
            logger.error(
                "key_repair.group_failed",
                key_prefix=group.key_prefix,
                agent_ids=[agent.id for agent, _ in planned],
                error=error,
            )
            return [fix(agent, None, FixAction.FAILED, error) for agent, _ in planned]

        logger.info(
            "key_repair.group_fixed",
            key_prefix=group.key_prefix,
            keeper=keeper.id,
            reassigned=[agent.id for agent, _ in planned],
        )
        return [
            fix(agent, redact_key(new_key), FixAction.FIXED)
            for agent, new_key in planned
        ]

    # ─── Legacy keys ────────────────────────────────────

    async def migrate_legacy_keys(self, *, dry_run: bool = True) -> list[LegacyKeyMigration]:
        """Move every legacy-format key to the current prefix, same body.

        All agents are migrated in one transaction; a conflict aborts the
        whole migration and raises ApiKeyConflictError.
        """
        agents = [a for a in await self.store.list_with_keys() if is_legacy(a.api_key)]
        planned = [(agent, upgrade_key(agent.api_key)) for agent in agents]
        action = MigrationAction.WOULD_MIGRATE if dry_run else MigrationAction.MIGRATED

        if not dry_run and planned:
            async with self.db.begin_nested():
                for agent, new_key in planned:
                    await self.store.set_api_key(agent.id, new_key)
            await self.db.commit()
            logger.info("key_repair.legacy_keys_migrated", count=len(planned))

        return [
            LegacyKeyMigration(
                action=action,
                agent_id=agent.id,
                agent_name=agent.name,
                old_key_prefix=redact_key(agent.api_key),
                new_key_prefix=redact_key(new_key),
            )
            for agent, new_key in planned
        ]
