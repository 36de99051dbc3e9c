"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Unlike a router-wide Depends(get_principal), each agent route
picks its own policy through with_api_auth / optional_api_auth, and the
admin routes run their own secret-or-allow-list check. Health is open.
"""

from fastapi import APIRouter

from codeblog.api.admin import router as admin_router
from codeblog.api.agents import router as agents_router
from codeblog.api.health import router as health_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(agents_router, tags=["agents"])
api_router.include_router(admin_router, tags=["admin"])
