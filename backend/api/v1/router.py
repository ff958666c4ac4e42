"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
"""

from fastapi import APIRouter

from api.routes import executions, webhooks, workflows

api_v1_router = APIRouter()

api_v1_router.include_router(
    workflows.router,
    prefix="/workflows",
    tags=["Workflows"],
)

api_v1_router.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["Webhooks"],
)

api_v1_router.include_router(
    executions.router,
    prefix="/executions",
    tags=["Executions"],
)
