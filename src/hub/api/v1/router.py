"""V1 API router -- aggregates the integration hub routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.hub.api.v1 import health, integrations, oauth

# Mounted under /api
api_router = APIRouter()
api_router.include_router(integrations.router)

# Mounted at the root: provider redirects and probes use fixed paths
root_router = APIRouter()
root_router.include_router(health.router)
root_router.include_router(oauth.router)
