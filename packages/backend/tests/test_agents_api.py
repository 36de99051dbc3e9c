"""Agent credential API tests — issue, list, rotate, delete.

Learn: Each test calls the real app over httpx with real credentials:
a session JWT for the owner, the issued cbk_ key for the agent.
"""

import re

import pytest
from structlog.testing import capture_logs

from codeblog.auth.api_keys import generate_api_key
from codeblog.services import agent_service

KEY_PATTERN = re.compile(r"^cbk_[0-9a-f]{64}$")


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def create_agent(client, session_headers):
    async def _create(user_id: str, name: str = "scribe") -> dict:
        r = await client.post("/api/v1/agents", json={"name": name}, headers=session_headers(user_id))
        assert r.status_code == 201, r.text
        return r.json()

    return _create


# ═══════════════════════════════════════════════════════════
# Create / whoami / list
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_create_agent_returns_key_once(client, make_user, create_agent):
    owner = await make_user("alice")
    data = await create_agent(owner, name="scribe")

    assert KEY_PATTERN.match(data["api_key"])
    assert data["name"] == "scribe"
    assert data["owner_id"] == owner


@pytest.mark.asyncio
async def test_create_agent_requires_auth(client):
    r = await client.post("/api/v1/agents", json={"name": "x"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_create_agent_validates_name(client, make_user, session_headers):
    owner = await make_user("alice")
    r = await client.post("/api/v1/agents", json={"name": ""}, headers=session_headers(owner))
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_issued_key_authenticates_as_agent(client, make_user, create_agent):
    owner = await make_user("alice")
    data = await create_agent(owner)

    r = await client.get("/api/v1/agents/me", headers=bearer(data["api_key"]))
    assert r.status_code == 200
    assert r.json() == {"type": "agent", "user_id": owner, "agent_id": data["id"]}


@pytest.mark.asyncio
async def test_whoami_with_session(client, session_headers):
    r = await client.get("/api/v1/agents/me", headers=session_headers("user-9"))
    assert r.json() == {"type": "session", "user_id": "user-9", "agent_id": None}


@pytest.mark.asyncio
async def test_list_agents_redacts_keys(client, make_user, create_agent, session_headers):
    owner = await make_user("alice")
    first = await create_agent(owner, name="one")
    await create_agent(owner, name="two")

    r = await client.get("/api/v1/agents", headers=session_headers(owner))
    assert r.status_code == 200
    agents = r.json()
    assert [a["name"] for a in agents] == ["one", "two"]
    assert agents[0]["key_prefix"] == first["api_key"][:20] + "..."
    assert "api_key" not in agents[0]
    assert first["api_key"] not in r.text


@pytest.mark.asyncio
async def test_list_agents_anonymous_is_empty(client, make_user, create_agent):
    owner = await make_user("alice")
    await create_agent(owner)

    r = await client.get("/api/v1/agents")
    assert r.status_code == 200
    assert r.json() == []


@pytest.mark.asyncio
async def test_list_agents_only_shows_own(client, make_user, create_agent, session_headers):
    alice = await make_user("alice")
    bob = await make_user("bob")
    await create_agent(alice, name="alices")

    r = await client.get("/api/v1/agents", headers=session_headers(bob))
    assert r.json() == []


# ═══════════════════════════════════════════════════════════
# Rotate
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_rotate_key_revokes_old_key(client, make_user, create_agent, session_headers):
    owner = await make_user("alice")
    data = await create_agent(owner)

    r = await client.post(
        f"/api/v1/agents/{data['id']}/rotate-key", headers=session_headers(owner)
    )
    assert r.status_code == 200
    new_key = r.json()["api_key"]
    assert KEY_PATTERN.match(new_key)
    assert new_key != data["api_key"]

    assert (await client.get("/api/v1/agents/me", headers=bearer(data["api_key"]))).status_code == 401
    me = await client.get("/api/v1/agents/me", headers=bearer(new_key))
    assert me.json()["agent_id"] == data["id"]


@pytest.mark.asyncio
async def test_rotate_key_other_owner_forbidden(client, make_user, create_agent, session_headers):
    alice = await make_user("alice")
    bob = await make_user("bob")
    data = await create_agent(alice)

    r = await client.post(f"/api/v1/agents/{data['id']}/rotate-key", headers=session_headers(bob))
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_rotate_key_missing_agent(client, session_headers):
    r = await client.post("/api/v1/agents/nope/rotate-key", headers=session_headers("u"))
    assert r.status_code == 404


# ═══════════════════════════════════════════════════════════
# Delete
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_agent_cannot_delete_itself(client, make_user, create_agent, read_agent):
    owner = await make_user("alice")
    data = await create_agent(owner)

    r = await client.delete(f"/api/v1/agents/{data['id']}", headers=bearer(data["api_key"]))
    assert r.status_code == 400
    assert r.json()["detail"] == (
        "Cannot delete the agent you are currently using. Switch to another agent first."
    )
    assert await read_agent(data["id"]) is not None


@pytest.mark.asyncio
async def test_agent_can_delete_sibling(client, make_user, create_agent, read_agent):
    owner = await make_user("alice")
    caller = await create_agent(owner, name="caller")
    sibling = await create_agent(owner, name="sibling")

    r = await client.delete(f"/api/v1/agents/{sibling['id']}", headers=bearer(caller["api_key"]))
    assert r.status_code == 200
    assert r.json() == {"success": True, "message": 'Agent "sibling" deleted successfully'}
    assert await read_agent(sibling["id"]) is None


@pytest.mark.asyncio
async def test_session_owner_can_delete_any_own_agent(
    client, make_user, create_agent, session_headers, read_agent
):
    owner = await make_user("alice")
    data = await create_agent(owner)

    r = await client.delete(f"/api/v1/agents/{data['id']}", headers=session_headers(owner))
    assert r.status_code == 200
    assert await read_agent(data["id"]) is None


@pytest.mark.asyncio
async def test_delete_other_owners_agent_forbidden(
    client, make_user, create_agent, read_agent
):
    alice = await make_user("alice")
    bob = await make_user("bob")
    alices = await create_agent(alice)
    bobs = await create_agent(bob)

    r = await client.delete(f"/api/v1/agents/{alices['id']}", headers=bearer(bobs["api_key"]))
    assert r.status_code == 403
    assert r.json()["detail"] == "You can only delete your own agents"
    assert await read_agent(alices["id"]) is not None


@pytest.mark.asyncio
async def test_delete_missing_agent(client, make_user, create_agent):
    owner = await make_user("alice")
    data = await create_agent(owner)

    r = await client.delete("/api/v1/agents/does-not-exist", headers=bearer(data["api_key"]))
    assert r.status_code == 404
    assert r.json()["detail"] == "Agent not found"


@pytest.mark.asyncio
async def test_delete_requires_auth(client):
    r = await client.delete("/api/v1/agents/anything")
    assert r.status_code == 401


# ═══════════════════════════════════════════════════════════
# Key collisions
# ═══════════════════════════════════════════════════════════


def _key_sequence(monkeypatch, keys):
    """Make key generation hand out the given keys, in order, then fresh ones."""
    pending = list(keys)

    def fake_generate():
        return pending.pop(0) if pending else generate_api_key()

    monkeypatch.setattr(agent_service, "generate_api_key", fake_generate)


@pytest.mark.asyncio
async def test_create_agent_retries_on_key_collision(
    client, make_user, make_agent, session_headers, monkeypatch
):
    owner = await make_user("alice")
    taken = await make_agent(owner, name="existing")
    _key_sequence(monkeypatch, [taken.api_key, taken.api_key])

    with capture_logs() as logs:
        r = await client.post(
            "/api/v1/agents", json={"name": "newcomer"}, headers=session_headers(owner)
        )

    assert r.status_code == 201
    assert r.json()["api_key"] != taken.api_key
    assert KEY_PATTERN.match(r.json()["api_key"])
    assert [e["event"] for e in logs].count("agents.key_collision") == 2

    listed = await client.get("/api/v1/agents", headers=session_headers(owner))
    assert [a["name"] for a in listed.json()] == ["existing", "newcomer"]


@pytest.mark.asyncio
async def test_create_agent_gives_up_with_409(
    client, make_user, make_agent, session_headers, monkeypatch
):
    owner = await make_user("alice")
    taken = await make_agent(owner, name="existing")
    monkeypatch.setattr(agent_service, "generate_api_key", lambda: taken.api_key)

    r = await client.post(
        "/api/v1/agents", json={"name": "newcomer"}, headers=session_headers(owner)
    )

    assert r.status_code == 409
    assert r.headers["retry-after"] == "1"
    assert taken.api_key not in r.text

    listed = await client.get("/api/v1/agents", headers=session_headers(owner))
    assert [a["name"] for a in listed.json()] == ["existing"]


@pytest.mark.asyncio
async def test_rotate_key_retries_on_key_collision(
    client, make_user, make_agent, session_headers, read_agent, monkeypatch
):
    owner = await make_user("alice")
    taken = await make_agent(owner, name="existing")
    target = await make_agent(owner, name="target")
    _key_sequence(monkeypatch, [taken.api_key])

    r = await client.post(
        f"/api/v1/agents/{target.id}/rotate-key", headers=session_headers(owner)
    )

    assert r.status_code == 200
    new_key = r.json()["api_key"]
    assert new_key not in (taken.api_key, target.api_key)
    assert (await read_agent(target.id)).api_key == new_key


@pytest.mark.asyncio
async def test_rotate_key_gives_up_with_409(
    client, make_user, make_agent, session_headers, read_agent, monkeypatch
):
    owner = await make_user("alice")
    taken = await make_agent(owner, name="existing")
    target = await make_agent(owner, name="target")
    monkeypatch.setattr(agent_service, "generate_api_key", lambda: taken.api_key)

    with capture_logs() as logs:
        r = await client.post(
            f"/api/v1/agents/{target.id}/rotate-key", headers=session_headers(owner)
        )

    assert r.status_code == 409
    assert r.headers["retry-after"] == "1"
    assert [e["event"] for e in logs].count("agents.key_collision") == agent_service.MAX_KEY_ATTEMPTS
    # The old key still works; nothing was half-applied.
    assert (await read_agent(target.id)).api_key == target.api_key


@pytest.mark.asyncio
async def test_create_agent_non_utf8_body_is_422(client, make_user, session_headers):
    owner = await make_user("alice")
    headers = {**session_headers(owner), "Content-Type": "application/json"}
    r = await client.post("/api/v1/agents", content=b'{"name": "\xff\xfe"}', headers=headers)
    assert r.status_code == 422
