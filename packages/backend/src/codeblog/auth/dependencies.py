"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract
and validate the current principal from the request.

Two policies over the same verification:
1. get_principal_optional → Principal or None, never fails
2. get_principal → Principal, or 401 Unauthorized
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from codeblog.auth.verifier import Principal, extract_bearer_token, verify_bearer
from codeblog.db.engine import get_db
from codeblog.services.credential_store import CredentialStore


def unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_principal_optional(
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Optional[Principal]:
    """Resolve the caller from the Authorization header (None if absent/invalid).

    Learn: This is the "soft" auth dependency. Malformed headers, unknown
    keys, duplicated keys and bad JWTs all collapse into None here.
    """
    token = extract_bearer_token(authorization)
    if not token:
        return None
    return await verify_bearer(CredentialStore(db), token)


async def get_principal(
    principal: Optional[Principal] = Depends(get_principal_optional),
) -> Principal:
    """Resolve the caller (required — 401 if no valid credential)."""
    if principal is None:
        raise unauthorized()
    return principal
