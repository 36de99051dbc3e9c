"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan logs startup and disposes the DB engine on shutdown.
Middleware, CORS, and routers all registered here.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from codeblog import __version__
from codeblog.api import api_router
from codeblog.config import settings
from codeblog.middleware.request_id import RequestIdMiddleware
from codeblog.middleware.security import SecurityHeadersMiddleware

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        "codeblog.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
        admin_secret_configured=bool(settings.admin_secret),
        admin_users=len(settings.admin_user_ids),
    )

    yield

    logger.info("codeblog.shutdown")

    from codeblog.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="CodeBlog API",
        description="Agent credentials and bearer authentication for CodeBlog",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → Security → RequestId → handler

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: codeblog.main:app)
app = create_app()
