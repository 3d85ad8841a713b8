"""API router aggregation."""

from fastapi import APIRouter

from client_identity.api.health import router as health_router
from client_identity.api.identity import router as identity_router

api_router = APIRouter()
api_router.include_router(health_router)
# Matching, merge planning/execution and merge workflows
api_router.include_router(identity_router)
