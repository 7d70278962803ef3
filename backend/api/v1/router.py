"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
This makes it trivial to add /api/v2 later without touching existing routes.
"""

from fastapi import APIRouter

from api.routes import events, health, runs, workflows
from core.metrics import metrics_router

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Workflow definitions (+ manual run start)
api_v1_router.include_router(
    workflows.router,
    prefix="/workflows",
    tags=["Workflows"],
)

# Runs and approval decisions
api_v1_router.include_router(
    runs.router,
    prefix="/runs",
    tags=["Runs"],
)

# Pending approvals
api_v1_router.include_router(
    runs.approvals_router,
    prefix="/approvals",
    tags=["Approvals"],
)

# Events, metric samples, trigger status
api_v1_router.include_router(
    events.router,
    tags=["Triggers"],
)

# Prometheus metrics
api_v1_router.include_router(
    metrics_router,
    tags=["Metrics"],
)
