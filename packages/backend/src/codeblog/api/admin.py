"""Admin API — duplicate API key diagnostics, repair and legacy migration.

Learn: Two ways in, both configured per deployment:
1. Shared secret (CODEBLOG_ADMIN_SECRET) in the JSON body or the
   X-Admin-Secret header, compared in constant time.
2. A bearer token whose user id is in CODEBLOG_ADMIN_USER_IDS.

Anything else gets a bare 401 "Unauthorized". Unexpected failures are
logged and answered with a generic 500; keys only ever leave the server
as redacted prefixes.

- GET  /admin/fix-duplicate-keys   → diagnose (read-only)
- POST /admin/fix-duplicate-keys   → repair (dry_run defaults to true)
- POST /admin/migrate-legacy-keys  → cmk_ → cbk_ (dry_run defaults to true)
"""

import secrets
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from codeblog.auth.dependencies import get_principal_optional
from codeblog.auth.verifier import Principal
from codeblog.config import settings
from codeblog.db.engine import get_db
from codeblog.schemas.admin import (
    DiagnosisRead,
    FixDuplicateKeysRequest,
    MigrateLegacyKeysRead,
    MigrateLegacyKeysRequest,
    RepairRead,
)
from codeblog.services.credential_store import (
    ApiKeyConflictError,
    IndexStatus,
    describe_db_error,
)
from codeblog.services.key_repair import Diagnosis, KeyRepairService, RepairOutcome

logger = structlog.get_logger()

router = APIRouter(prefix="/admin")


# ─── Admin checks ───────────────────────────────────────


def _secret_matches(candidate: Optional[str]) -> bool:
    expected = settings.admin_secret
    if not expected or not candidate:
        return False
    return secrets.compare_digest(candidate.encode(), expected.encode())


def _is_admin_principal(principal: Optional[Principal]) -> bool:
    return principal is not None and principal.user_id in settings.admin_user_ids


def _require_admin(principal: Optional[Principal], *candidates: Optional[str]) -> None:
    if _is_admin_principal(principal):
        return
    if any(_secret_matches(c) for c in candidates):
        return
    raise HTTPException(status_code=401, detail="Unauthorized")


def _internal_error(event: str, exc: Exception) -> HTTPException:
    # Tracebacks of database errors carry bound parameters, i.e. raw keys.
    logger.error(event, error=describe_db_error(exc))
    return HTTPException(status_code=500, detail="Internal server error")


# ─── Serialization ──────────────────────────────────────


def _index(status: IndexStatus) -> dict:
    return {
        "exists": status.exists,
        "unique": status.unique,
        "columns": status.columns,
        "indexes": [{"name": ix.name, "unique": ix.unique} for ix in status.indexes],
    }


def _diagnosis(d: Diagnosis) -> dict:
    return {
        "total_agents": d.total_agents,
        "unique_keys": d.unique_keys,
        "duplicate_groups": len(d.duplicate_groups),
        "affected_rows": d.affected_rows,
        "index_status": _index(d.index_status),
        "duplicates": [
            {
                "key_prefix": group.key_prefix,
                "count": len(group.agents),
                "agents": [
                    {
                        "id": a.id,
                        "name": a.name,
                        "owner": a.owner_username,
                        "owner_id": a.owner_id,
                        "created_at": a.created_at,
                    }
                    for a in group.agents
                ],
            }
            for group in d.duplicate_groups
        ],
    }


def _repair_message(outcome: RepairOutcome) -> str:
    if outcome.duplicate_groups == 0:
        message = "No duplicate apiKeys found"
    elif outcome.dry_run:
        message = (
            f"Found {len(outcome.fixes)} duplicate(s). "
            "Run with dry_run=false to fix."
        )
    elif outcome.failed:
        message = (
            f"Fixed {len(outcome.fixes) - len(outcome.failed)} duplicate apiKey(s); "
            f"{len(outcome.failed)} could not be fixed."
        )
    else:
        message = f"Fixed {len(outcome.fixes)} duplicate apiKey(s)."

    if outcome.keeper_substituted:
        message += (
            f" keep_agent_id {outcome.keep_agent_id} was not in every group;"
            " the oldest agent kept the key there."
        )
    return message


def _repair(outcome: RepairOutcome) -> dict:
    return {
        "message": _repair_message(outcome),
        "dry_run": outcome.dry_run,
        "state": outcome.state.value,
        "duplicates": outcome.duplicate_groups,
        "total_agents": outcome.total_agents,
        "keep_agent_id": outcome.keep_agent_id,
        "index_before": _index(outcome.index_before),
        "index_after": _index(outcome.index_after),
        "index_repair": {
            "created": outcome.index_repair.created,
            "error": outcome.index_repair.error,
        },
        "fixes": [
            {
                "action": fix.action.value,
                "agent_id": fix.agent_id,
                "agent_name": fix.agent_name,
                "owner": fix.owner_username,
                "owner_id": fix.owner_id,
                "old_key_prefix": fix.old_key_prefix,
                "new_key_prefix": fix.new_key_prefix,
                "kept_by_agent_id": fix.kept_by_agent_id,
                "kept_by": fix.kept_by,
                "keeper_substituted": fix.keeper_substituted,
                "error": fix.error,
            }
            for fix in outcome.fixes
        ],
    }


# ─── Routes ─────────────────────────────────────────────


@router.get("/fix-duplicate-keys", response_model=DiagnosisRead)
async def diagnose_duplicate_keys(
    x_admin_secret: Optional[str] = Header(None),
    principal: Optional[Principal] = Depends(get_principal_optional),
    db: AsyncSession = Depends(get_db),
):
    """Report agents sharing an API key and the state of the unique index."""
    _require_admin(principal, x_admin_secret)
    try:
        diagnosis = await KeyRepairService(db).diagnose()
    except Exception as e:
        raise _internal_error("admin.diagnose_duplicate_keys_failed", e)
    return _diagnosis(diagnosis)


@router.post("/fix-duplicate-keys", response_model=RepairRead)
async def fix_duplicate_keys(
    body: Optional[FixDuplicateKeysRequest] = None,
    x_admin_secret: Optional[str] = Header(None),
    principal: Optional[Principal] = Depends(get_principal_optional),
    db: AsyncSession = Depends(get_db),
):
    """Reassign duplicated keys. Dry-run unless dry_run is explicitly false."""
    body = body or FixDuplicateKeysRequest()
    _require_admin(principal, body.secret, x_admin_secret)
    try:
        outcome = await KeyRepairService(db).repair(
            dry_run=body.dry_run, keep_agent_id=body.keep_agent_id
        )
    except Exception as e:
        raise _internal_error("admin.fix_duplicate_keys_failed", e)

    logger.info(
        "admin.fix_duplicate_keys",
        dry_run=outcome.dry_run,
        state=outcome.state.value,
        fixes=len(outcome.fixes),
        failed=len(outcome.failed),
    )
    return _repair(outcome)


@router.post("/migrate-legacy-keys", response_model=MigrateLegacyKeysRead)
async def migrate_legacy_keys(
    body: Optional[MigrateLegacyKeysRequest] = None,
    x_admin_secret: Optional[str] = Header(None),
    principal: Optional[Principal] = Depends(get_principal_optional),
    db: AsyncSession = Depends(get_db),
):
    """Rewrite legacy-prefixed keys to the current prefix."""
    body = body or MigrateLegacyKeysRequest()
    _require_admin(principal, body.secret, x_admin_secret)
    try:
        migrations = await KeyRepairService(db).migrate_legacy_keys(dry_run=body.dry_run)
    except ApiKeyConflictError:
        raise HTTPException(
            status_code=409,
            detail="A migrated key collides with an existing key; nothing was changed",
        )
    except Exception as e:
        raise _internal_error("admin.migrate_legacy_keys_failed", e)

    if not migrations:
        message = "No legacy API keys found"
    elif body.dry_run:
        message = f"Found {len(migrations)} legacy key(s). Run with dry_run=false to migrate."
    else:
        message = f"Migrated {len(migrations)} legacy key(s)."

    return {
        "message": message,
        "dry_run": body.dry_run,
        "migrated": 0 if body.dry_run else len(migrations),
        "agents": [
            {
                "action": m.action.value,
                "agent_id": m.agent_id,
                "agent_name": m.agent_name,
                "old_key_prefix": m.old_key_prefix,
                "new_key_prefix": m.new_key_prefix,
            }
            for m in migrations
        ],
    }
