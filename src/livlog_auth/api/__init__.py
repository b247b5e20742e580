"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. This protects all routes in each router
without modifying individual handlers. Health and auth routers are
open; the auth routes that need a user (/me, /account) declare
get_current_user themselves.
"""

from fastapi import APIRouter, Depends

from livlog_auth.api.auth import router as auth_router
from livlog_auth.api.health import router as health_router
from livlog_auth.api.search import router as search_router
from livlog_auth.auth.dependencies import get_current_user

# All protected routers require authentication
_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes, no auth required
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])

# Protected routes, require a valid access token
api_router.include_router(search_router, tags=["search"], dependencies=_auth)
