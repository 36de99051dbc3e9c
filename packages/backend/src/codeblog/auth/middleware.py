"""Handler wrappers that keep route logic authentication-agnostic.

Learn: Every wrapped handler has the same shape:

    async def handler(request, context, principal): ...

context is a RouteContext holding the path parameters (empty for routes
without any) and the request's database session. Because the signature is
uniform, the wrappers never inspect the handler to decide what to pass.

    @router.delete("/agents/{agent_id}")
    @with_api_auth
    async def delete_agent(request, context, principal):
        agent_id = context.params["agent_id"]

with_api_auth answers 401 without calling the handler when the request
has no valid credential; optional_api_auth calls it with principal=None.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from fastapi import Depends, Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from codeblog.auth.dependencies import get_principal_optional, unauthorized
from codeblog.auth.verifier import Principal
from codeblog.db.engine import get_db

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class RouteContext:
    """Per-request context handed to wrapped handlers."""

    db: AsyncSession
    params: dict[str, str] = field(default_factory=dict)


Handler = Callable[[Request, RouteContext, Optional[Principal]], Awaitable[Any]]


async def parse_body(request: Request, model: type[ModelT]) -> ModelT:
    """Validate the JSON body against a schema; invalid input becomes a 422."""
    try:
        raw = await request.json()
    except json.JSONDecodeError as e:
        raise RequestValidationError(
            [{"type": "json_invalid", "loc": ("body", e.pos), "msg": "JSON decode error", "input": {}}]
        )
    except UnicodeDecodeError as e:
        raise RequestValidationError(
            [{"type": "json_invalid", "loc": ("body", e.start), "msg": "Body is not valid UTF-8", "input": {}}]
        )
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False))


def _adopt_metadata(endpoint: Callable, handler: Handler) -> None:
    # functools.wraps would expose the handler's signature to FastAPI,
    # which must see the endpoint's own parameters instead.
    endpoint.__name__ = handler.__name__
    endpoint.__qualname__ = handler.__qualname__
    endpoint.__doc__ = handler.__doc__
    endpoint.__module__ = handler.__module__


def with_api_auth(handler: Handler) -> Callable[..., Awaitable[Any]]:
    """Required auth: 401 unless the request carries a valid bearer token."""

    async def endpoint(
        request: Request,
        principal: Optional[Principal] = Depends(get_principal_optional),
        db: AsyncSession = Depends(get_db),
    ):
        if principal is None:
            raise unauthorized()
        context = RouteContext(db=db, params=dict(request.path_params))
        return await handler(request, context, principal)

    _adopt_metadata(endpoint, handler)
    return endpoint


def optional_api_auth(handler: Handler) -> Callable[..., Awaitable[Any]]:
    """Optional auth: the handler always runs; principal is None when anonymous."""

    async def endpoint(
        request: Request,
        principal: Optional[Principal] = Depends(get_principal_optional),
        db: AsyncSession = Depends(get_db),
    ):
        context = RouteContext(db=db, params=dict(request.path_params))
        return await handler(request, context, principal)

    _adopt_metadata(endpoint, handler)
    return endpoint
