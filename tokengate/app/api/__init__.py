"""API endpoints package for tokengate."""

from tokengate.app.api.admin.router import router as admin_router
from tokengate.app.api.ratelimit import router as ratelimit_router

__all__ = [
    "admin_router",
    "ratelimit_router",
]
