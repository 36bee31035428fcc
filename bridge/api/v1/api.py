"""
API router that includes all endpoint routers.
"""

from fastapi import APIRouter

from bridge.api.v1.endpoints import auth, migration, password, webhooks

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(webhooks.router, prefix="/auth", tags=["webhooks"])
api_router.include_router(migration.router, prefix="/migration", tags=["migration"])
api_router.include_router(password.router, prefix="/password", tags=["password"])
