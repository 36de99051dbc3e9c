"""Admin CLI tests — click commands against a mocked backend.

Learn: _client is swapped for an httpx client on a MockTransport, so the
commands run end to end (option parsing, request shape, output, exit
code) without a server.
"""

import json

import httpx
import pytest
from click.testing import CliRunner

from codeblog.cli import main as cli

INDEX_OK = {"exists": True, "unique": True, "columns": ["api_key"], "indexes": []}
INDEX_BAD = {"exists": True, "unique": False, "columns": ["api_key"], "indexes": []}


@pytest.fixture()
def backend(monkeypatch):
    """Record requests and answer them with canned responses."""
    state = {"requests": [], "responses": {}}

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        status, body = state["responses"][(request.method, request.url.path)]
        return httpx.Response(status, json=body)

    def fake_client(token=None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        return httpx.AsyncClient(
            transport=httpx.MockTransport(handler),
            base_url="http://test",
            headers=headers,
        )

    monkeypatch.setattr(cli, "_client", fake_client)
    return state


def _repair_body(state="REPAIRED", dry_run=False, fixes=None, error=None):
    return {
        "message": "Fixed 1 duplicate apiKey(s).",
        "dry_run": dry_run,
        "state": state,
        "duplicates": 1,
        "total_agents": 2,
        "keep_agent_id": None,
        "index_before": INDEX_BAD,
        "index_after": INDEX_OK,
        "index_repair": {"created": True, "error": error},
        "fixes": fixes or [],
    }


def test_diagnose_sends_secret_header(backend):
    backend["responses"][("GET", "/api/v1/admin/fix-duplicate-keys")] = (
        200,
        {
            "total_agents": 2,
            "unique_keys": 1,
            "duplicate_groups": 1,
            "affected_rows": 1,
            "index_status": INDEX_BAD,
            "duplicates": [
                {
                    "key_prefix": "cbk_0123456789abcdef...",
                    "count": 2,
                    "agents": [
                        {"id": "a1", "name": "first", "owner": "alice",
                         "owner_id": "u1", "created_at": "2026-01-01T00:00:00Z"},
                        {"id": "a2", "name": "second", "owner": None,
                         "owner_id": "u1", "created_at": "2026-01-02T00:00:00Z"},
                    ],
                }
            ],
        },
    )

    result = CliRunner().invoke(cli.main, ["keys", "diagnose", "--secret", "s3cret"])

    assert result.exit_code == 0, result.output
    assert backend["requests"][0].headers["x-admin-secret"] == "s3cret"
    assert "Affected rows: 1" in result.output
    assert "NOT unique" in result.output
    assert "cbk_0123456789abcdef..." in result.output


def test_diagnose_json_output(backend):
    body = {"total_agents": 0, "unique_keys": 0, "duplicate_groups": 0,
            "affected_rows": 0, "index_status": INDEX_OK, "duplicates": []}
    backend["responses"][("GET", "/api/v1/admin/fix-duplicate-keys")] = (200, body)

    result = CliRunner().invoke(cli.main, ["keys", "diagnose", "--token", "t0k", "--json"])

    assert result.exit_code == 0
    assert json.loads(result.output) == body
    assert backend["requests"][0].headers["authorization"] == "Bearer t0k"


def test_repair_is_dry_run_by_default(backend):
    backend["responses"][("POST", "/api/v1/admin/fix-duplicate-keys")] = (
        200,
        _repair_body(state="DIAGNOSED", dry_run=True),
    )

    result = CliRunner().invoke(cli.main, ["keys", "repair", "--secret", "s3cret"])

    assert result.exit_code == 0
    sent = json.loads(backend["requests"][0].content)
    assert sent == {"dry_run": True, "secret": "s3cret"}


def test_repair_apply_with_keep(backend):
    fix = {
        "action": "FIXED", "agent_id": "a2", "agent_name": "second", "owner": "alice",
        "owner_id": "u1", "old_key_prefix": "cbk_0123456789abcdef...",
        "new_key_prefix": "cbk_fedcba9876543210...", "kept_by_agent_id": "a1",
        "kept_by": "first (alice)", "keeper_substituted": False, "error": None,
    }
    backend["responses"][("POST", "/api/v1/admin/fix-duplicate-keys")] = (
        200,
        _repair_body(fixes=[fix]),
    )

    result = CliRunner().invoke(
        cli.main, ["keys", "repair", "--apply", "--keep", "a1", "--secret", "s3cret"]
    )

    assert result.exit_code == 0, result.output
    sent = json.loads(backend["requests"][0].content)
    assert sent["dry_run"] is False
    assert sent["keep_agent_id"] == "a1"
    assert "a2" in result.output
    assert "Index after:" in result.output


def test_repair_partial_failure_exits_2(backend):
    backend["responses"][("POST", "/api/v1/admin/fix-duplicate-keys")] = (
        200,
        _repair_body(state="PARTIAL_FAILURE", error="Skipped: some duplicate groups could not be repaired."),
    )

    result = CliRunner().invoke(cli.main, ["keys", "repair", "--apply", "--secret", "s3cret"])

    assert result.exit_code == 2
    assert "Index repair failed" in result.output


def test_unauthorized_exits_1(backend):
    backend["responses"][("GET", "/api/v1/admin/fix-duplicate-keys")] = (
        401,
        {"detail": "Unauthorized"},
    )

    result = CliRunner().invoke(cli.main, ["keys", "diagnose"], env={"CODEBLOG_ADMIN_SECRET": None})

    assert result.exit_code == 1
    assert "Unauthorized" in result.output


def test_migrate_legacy_apply(backend):
    backend["responses"][("POST", "/api/v1/admin/migrate-legacy-keys")] = (
        200,
        {
            "message": "Migrated 1 legacy key(s).",
            "dry_run": False,
            "migrated": 1,
            "agents": [
                {"action": "MIGRATED", "agent_id": "old", "agent_name": "legacy",
                 "old_key_prefix": "cmk_deadbeefdeadbeef...",
                 "new_key_prefix": "cbk_deadbeefdeadbeef..."},
            ],
        },
    )

    result = CliRunner().invoke(
        cli.main, ["keys", "migrate-legacy", "--apply", "--secret", "s3cret"]
    )

    assert result.exit_code == 0
    assert json.loads(backend["requests"][0].content) == {"dry_run": False, "secret": "s3cret"}
    assert "Migrated 1 legacy key(s)." in result.output
    assert "MIGRATED" in result.output
