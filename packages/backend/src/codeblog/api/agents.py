"""Agent credential API — issue, rotate, list and delete agent keys.

Learn: Handlers here never read the Authorization header. They are
wrapped by with_api_auth / optional_api_auth and receive the resolved
Principal as their third argument, plus a RouteContext with path params
and the request's DB session.

- POST   /agents                     → create agent, returns key once
- GET    /agents                     → caller's agents ([] when anonymous)
- GET    /agents/me                  → who the bearer token belongs to
- POST   /agents/{agent_id}/rotate-key → new key, returned once
- DELETE /agents/{agent_id}          → delete (never the calling agent)
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from codeblog.auth.api_keys import redact_key
from codeblog.auth.middleware import (
    RouteContext,
    optional_api_auth,
    parse_body,
    with_api_auth,
)
from codeblog.auth.verifier import Principal
from codeblog.schemas.agent import (
    AgentCreate,
    AgentDeleted,
    AgentKeyIssued,
    AgentRead,
    WhoAmI,
)
from codeblog.services.agent_service import (
    AgentForbiddenError,
    AgentNotFoundError,
    AgentService,
    SelfDeletionError,
)
from codeblog.services.credential_store import ApiKeyConflictError

router = APIRouter(prefix="/agents")


def _issued(agent, api_key: str) -> dict:
    return {
        "id": agent.id,
        "name": agent.name,
        "owner_id": agent.owner_id,
        "api_key": api_key,  # Only time the full key is returned!
        "created_at": agent.created_at,
    }


def _key_conflict() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail="API key collision, please retry",
        headers={"Retry-After": "1"},
    )


@router.post("", response_model=AgentKeyIssued, status_code=201)
@with_api_auth
async def create_agent(request: Request, context: RouteContext, principal: Principal):
    """Create an agent owned by the caller and issue its first key."""
    body = await parse_body(request, AgentCreate)
    try:
        agent, api_key = await AgentService(context.db).create_agent(
            owner_id=principal.user_id, name=body.name
        )
    except ApiKeyConflictError:
        raise _key_conflict()
    return _issued(agent, api_key)


@router.get("", response_model=list[AgentRead])
@optional_api_auth
async def list_agents(
    request: Request, context: RouteContext, principal: Optional[Principal]
):
    """List the caller's agents. Anonymous callers see an empty list."""
    if principal is None:
        return []
    agents = await AgentService(context.db).list_agents(principal.user_id)
    return [
        {
            "id": a.id,
            "name": a.name,
            "owner_id": a.owner_id,
            "key_prefix": redact_key(a.api_key) if a.api_key else None,
            "created_at": a.created_at,
        }
        for a in agents
    ]


@router.get("/me", response_model=WhoAmI)
@with_api_auth
async def who_am_i(request: Request, context: RouteContext, principal: Principal):
    return {
        "type": principal.identity_type,
        "user_id": principal.user_id,
        "agent_id": principal.agent_id,
    }


@router.post("/{agent_id}/rotate-key", response_model=AgentKeyIssued)
@with_api_auth
async def rotate_key(request: Request, context: RouteContext, principal: Principal):
    """Replace an agent's key. The old key stops verifying right away."""
    try:
        agent, api_key = await AgentService(context.db).rotate_key(
            context.params["agent_id"], principal
        )
    except AgentNotFoundError:
        raise HTTPException(status_code=404, detail="Agent not found")
    except AgentForbiddenError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ApiKeyConflictError:
        raise _key_conflict()
    return _issued(agent, api_key)


@router.delete("/{agent_id}", response_model=AgentDeleted)
@with_api_auth
async def delete_agent(request: Request, context: RouteContext, principal: Principal):
    try:
        name = await AgentService(context.db).delete_agent(
            context.params["agent_id"], principal
        )
    except SelfDeletionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AgentNotFoundError:
        raise HTTPException(status_code=404, detail="Agent not found")
    except AgentForbiddenError:
        raise HTTPException(status_code=403, detail="You can only delete your own agents")
    return {"success": True, "message": f'Agent "{name}" deleted successfully'}
