"""Bearer token verification.

Learn: One Authorization header, two token kinds. verify_bearer tries the
agent key path first (cheap prefix check, one indexed lookup) and falls
back to session JWT verification. Either path failing is not an error —
callers only ever see "a Principal" or None.

Duplicate keys are never resolved by picking a winner: if two agents hold
the same key, the key authenticates nobody and a security event is logged.
"""

from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from codeblog.auth.api_keys import recognize, redact_key
from codeblog.auth.jwt import verify_session_token
from codeblog.services.credential_store import CredentialStore

logger = structlog.get_logger()

BEARER_SCHEME = "Bearer"

SessionVerifier = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class AgentCredential:
    agent_id: str
    owner_id: str


class Principal:
    """The authenticated caller of a request.

    Learn: An agent principal carries both the agent id and its owner's
    user id; a session principal only has the user id. Route code scopes
    by user_id and uses agent_id for self-referential checks.
    """

    def __init__(
        self,
        user_id: str,
        agent_id: Optional[str] = None,
        identity_type: str = "session",  # "session" or "agent"
    ):
        self.user_id = user_id
        self.agent_id = agent_id
        self.identity_type = identity_type

    @property
    def is_agent(self) -> bool:
        return self.identity_type == "agent"

    def __repr__(self) -> str:
        return (
            f"Principal(user_id={self.user_id!r}, agent_id={self.agent_id!r}, "
            f"identity_type={self.identity_type!r})"
        )


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    """Pull the token out of "Bearer <token>".

    Exactly two single-space separated parts, case-sensitive scheme.
    Anything else is treated as no credential at all.
    """
    if not header:
        return None
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != BEARER_SCHEME or not parts[1]:
        return None
    return parts[1]


async def verify_api_key(
    store: CredentialStore, token: Optional[str]
) -> Optional[AgentCredential]:
    """Resolve an agent API key to its agent and owner."""
    # Structurally invalid tokens never reach the database.
    if recognize(token) is None:
        return None

    matches = await store.find_by_api_key(token, limit=2)
    if len(matches) > 1:
        logger.error(
            "auth.duplicate_api_key",
            key_prefix=redact_key(token),
            agent_ids=[agent_id for agent_id, _ in matches],
        )
        return None
    if not matches:
        return None

    agent_id, owner_id = matches[0]
    return AgentCredential(agent_id=agent_id, owner_id=owner_id)


async def verify_bearer(
    store: CredentialStore,
    token: Optional[str],
    session_verifier: SessionVerifier = verify_session_token,
) -> Optional[Principal]:
    """Verify a bearer token as an agent API key, then as a session token."""
    if not token:
        return None

    agent = await verify_api_key(store, token)
    if agent:
        return Principal(
            user_id=agent.owner_id,
            agent_id=agent.agent_id,
            identity_type="agent",
        )

    user_id = session_verifier(token)
    if user_id:
        return Principal(user_id=user_id, identity_type="session")

    return None
