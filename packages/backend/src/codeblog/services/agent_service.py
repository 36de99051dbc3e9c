"""Agent service — issuing, rotating and deleting agent credentials.

Learn: Service layer separates business logic from HTTP routing.
Routes translate the exceptions below into status codes.

Key issuance retries a few times on ApiKeyConflictError. With 256-bit
keys a collision means the unique index caught something real, so the
retry count stays small and the error surfaces if it keeps happening.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from codeblog.auth.api_keys import generate_api_key, redact_key
from codeblog.auth.verifier import Principal
from codeblog.db.models import Agent
from codeblog.services.credential_store import ApiKeyConflictError, CredentialStore

logger = structlog.get_logger()

MAX_KEY_ATTEMPTS = 3


class AgentNotFoundError(Exception):
    """Raised when an agent does not exist."""


class AgentForbiddenError(Exception):
    """Raised when the caller does not own the agent."""


class SelfDeletionError(Exception):
    """Raised when an agent tries to delete the identity it is authenticated as."""


class AgentService:
    """Business logic for agent identities and their keys."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = CredentialStore(db)

    async def create_agent(self, owner_id: str, name: str) -> tuple[Agent, str]:
        """Create an agent with a fresh key. Returns (agent, api_key)."""
        last_error = None
        for attempt in range(1, MAX_KEY_ATTEMPTS + 1):
            api_key = generate_api_key()
            try:
                async with self.db.begin_nested():
                    agent = await self.store.create(
                        owner_id=owner_id, name=name, api_key=api_key
                    )
            except ApiKeyConflictError as e:
                logger.warning("agents.key_collision", attempt=attempt, owner_id=owner_id)
                last_error = e
                continue

            await self.db.commit()
            logger.info(
                "agents.created",
                agent_id=agent.id,
                owner_id=owner_id,
                key_prefix=redact_key(api_key),
            )
            return agent, api_key

        raise last_error

    async def list_agents(self, owner_id: str) -> list[Agent]:
        return await self.store.list_for_owner(owner_id)

    async def rotate_key(self, agent_id: str, principal: Principal) -> tuple[Agent, str]:
        """Give an owned agent a new key; the old one stops working immediately."""
        agent = await self._owned_agent(agent_id, principal)

        last_error = None
        for attempt in range(1, MAX_KEY_ATTEMPTS + 1):
            api_key = generate_api_key()
            try:
                async with self.db.begin_nested():
                    await self.store.set_api_key(agent.id, api_key)
            except ApiKeyConflictError as e:
                logger.warning("agents.key_collision", attempt=attempt, agent_id=agent.id)
                last_error = e
                continue

            await self.db.commit()
            await self.db.refresh(agent)
            logger.info(
                "agents.key_rotated",
                agent_id=agent.id,
                key_prefix=redact_key(api_key),
            )
            return agent, api_key

        raise last_error

    async def delete_agent(self, agent_id: str, principal: Principal) -> str:
        """Delete an owned agent. Returns the deleted agent's name.

        An agent may not delete itself: doing so would revoke the very
        key the caller is using. Session-authenticated owners may delete
        any of their agents.
        """
        if principal.is_agent and principal.agent_id == agent_id:
            raise SelfDeletionError(
                "Cannot delete the agent you are currently using. "
                "Switch to another agent first."
            )

        agent = await self._owned_agent(agent_id, principal)
        name = agent.name
        await self.store.delete(agent)
        await self.db.commit()
        logger.info("agents.deleted", agent_id=agent_id, owner_id=principal.user_id)
        return name

    async def _owned_agent(self, agent_id: str, principal: Principal) -> Agent:
        agent = await self.store.get(agent_id)
        if not agent:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        if agent.owner_id != principal.user_id:
            raise AgentForbiddenError("You can only manage your own agents")
        return agent
