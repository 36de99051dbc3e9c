"""CodeBlog admin CLI — diagnose and repair agent API keys.

Usage:
    codeblog keys diagnose                       # Duplicate keys + index status
    codeblog keys repair                         # Dry run: show what would change
    codeblog keys repair --apply                 # Reassign duplicated keys
    codeblog keys repair --apply --keep AGENT_ID # Prefer AGENT_ID as keeper
    codeblog keys migrate-legacy [--apply]       # cmk_ → cbk_

Authenticates with the admin secret (--secret or CODEBLOG_ADMIN_SECRET)
or an admin user's bearer token (--token or CODEBLOG_TOKEN).
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("CODEBLOG_API_URL", DEFAULT_API_URL).rstrip("/")


def _client(token: Optional[str] = None) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the CodeBlog backend."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _check(r: httpx.Response) -> dict:
    """Exit with a readable message on non-2xx responses."""
    if r.status_code == 401:
        click.secho(
            "Unauthorized: pass --secret/--token or set CODEBLOG_ADMIN_SECRET",
            fg="red",
            err=True,
        )
        sys.exit(1)
    if r.is_error:
        detail = r.json().get("detail", r.text) if r.content else r.reason_phrase
        click.secho(f"Error {r.status_code}: {detail}", fg="red", err=True)
        sys.exit(1)
    return r.json()


def _action_color(action: str) -> str:
    return {
        "FIXED": "green",
        "MIGRATED": "green",
        "WOULD_FIX": "yellow",
        "WOULD_MIGRATE": "yellow",
        "FAILED": "red",
    }.get(action, "white")


def _print_index(label: str, status: dict) -> None:
    if not status["exists"]:
        state = click.style("missing", fg="red")
    elif status["unique"]:
        state = click.style("unique", fg="green")
    else:
        state = click.style("NOT unique", fg="red")
    click.echo(f"  {label:14s} {state}")


def _auth_options(f):
    f = click.option(
        "--token", envvar="CODEBLOG_TOKEN", help="Admin user's bearer token"
    )(f)
    f = click.option(
        "--secret", envvar="CODEBLOG_ADMIN_SECRET", help="Admin shared secret"
    )(f)
    f = click.option("--json", "as_json", is_flag=True, help="Print raw JSON")(f)
    return f


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="codeblog")
def main():
    """CodeBlog — admin tooling for agent credentials."""


@main.group()
def keys():
    """Diagnose and repair agent API keys."""


# ---------------------------------------------------------------------------
# codeblog keys diagnose
# ---------------------------------------------------------------------------


@keys.command()
@_auth_options
def diagnose(secret: Optional[str], token: Optional[str], as_json: bool):
    """Show agents that share an API key and the unique index status."""
    _run(_diagnose_impl(secret, token, as_json))


async def _diagnose_impl(secret: Optional[str], token: Optional[str], as_json: bool):
    headers = {"X-Admin-Secret": secret} if secret else {}
    async with _client(token) as c:
        r = await c.get("/api/v1/admin/fix-duplicate-keys", headers=headers)
    data = _check(r)

    if as_json:
        click.echo(_pretty_json(data))
        return

    click.secho("API key diagnosis", bold=True)
    click.echo(f"  Agents:        {data['total_agents']}")
    click.echo(f"  Unique keys:   {data['unique_keys']}")
    click.echo(f"  Dup. groups:   {data['duplicate_groups']}")
    click.echo(f"  Affected rows: {data['affected_rows']}")
    _print_index("Index:", data["index_status"])

    for group in data["duplicates"]:
        click.echo()
        click.secho(f"  {group['key_prefix']}  ({group['count']} agents)", fg="yellow")
        for a in group["agents"]:
            owner = a.get("owner") or a["owner_id"]
            click.echo(f"    {a['id']}  {a['name']:20s}  owner={owner}  {a['created_at']}")


# ---------------------------------------------------------------------------
# codeblog keys repair
# ---------------------------------------------------------------------------


@keys.command()
@click.option("--apply", is_flag=True, help="Actually change keys (default is a dry run)")
@click.option("--keep", "keep_agent_id", help="Agent ID that should keep its key")
@_auth_options
def repair(apply: bool, keep_agent_id: Optional[str], secret: Optional[str],
           token: Optional[str], as_json: bool):
    """Give every duplicate holder except one a fresh key.

    Without --apply nothing is changed.
    """
    _run(_repair_impl(apply, keep_agent_id, secret, token, as_json))


async def _repair_impl(apply: bool, keep_agent_id: Optional[str], secret: Optional[str],
                       token: Optional[str], as_json: bool):
    body: dict = {"dry_run": not apply}
    if keep_agent_id:
        body["keep_agent_id"] = keep_agent_id
    if secret:
        body["secret"] = secret

    async with _client(token) as c:
        r = await c.post("/api/v1/admin/fix-duplicate-keys", json=body)
    data = _check(r)

    if as_json:
        click.echo(_pretty_json(data))
        return

    click.secho(data["message"], bold=True)
    for fix in data["fixes"]:
        action = click.style(f"{fix['action']:10s}", fg=_action_color(fix["action"]))
        line = f"  {action} {fix['agent_id']}  {fix['old_key_prefix']} → {fix['new_key_prefix']}"
        if fix.get("error"):
            line += f"  ({fix['error']})"
        click.echo(line)

    if not data["dry_run"]:
        click.echo()
        _print_index("Index before:", data["index_before"])
        _print_index("Index after:", data["index_after"])
        if data["index_repair"].get("error"):
            click.secho(f"  Index repair failed: {data['index_repair']['error']}", fg="red")

    if data["state"] == "PARTIAL_FAILURE":
        sys.exit(2)


# ---------------------------------------------------------------------------
# codeblog keys migrate-legacy
# ---------------------------------------------------------------------------


@keys.command("migrate-legacy")
@click.option("--apply", is_flag=True, help="Actually rewrite keys (default is a dry run)")
@_auth_options
def migrate_legacy(apply: bool, secret: Optional[str], token: Optional[str], as_json: bool):
    """Rewrite legacy cmk_ keys to the cbk_ prefix."""
    _run(_migrate_legacy_impl(apply, secret, token, as_json))


async def _migrate_legacy_impl(apply: bool, secret: Optional[str], token: Optional[str],
                               as_json: bool):
    body: dict = {"dry_run": not apply}
    if secret:
        body["secret"] = secret

    async with _client(token) as c:
        r = await c.post("/api/v1/admin/migrate-legacy-keys", json=body)
    data = _check(r)

    if as_json:
        click.echo(_pretty_json(data))
        return

    click.secho(data["message"], bold=True)
    for m in data["agents"]:
        action = click.style(f"{m['action']:14s}", fg=_action_color(m["action"]))
        click.echo(f"  {action} {m['agent_id']}  {m['old_key_prefix']} → {m['new_key_prefix']}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
