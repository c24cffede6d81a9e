"""
API v1 router setup
Organized into: public (booking page, manage links), dashboard (JWT) and billing routes
"""
from fastapi import APIRouter

from agenda.api.v1 import billing
from agenda.api.v1.dashboard import appointments, subscription
from agenda.api.v1.public import booking, manage

api_v1_router = APIRouter()

# ============================================================================
# PUBLIC ROUTES (No authentication required)
# ============================================================================
# Manage links sit outside /public so no establishment slug can shadow them
api_v1_router.include_router(
    manage.router,
    tags=["Public"]
)

api_v1_router.include_router(
    booking.router,
    prefix="/public",
    tags=["Public"]
)

# ============================================================================
# DASHBOARD ROUTES (JWT authentication required)
# ============================================================================
api_v1_router.include_router(
    appointments.router,
    prefix="/dashboard",
    tags=["Dashboard"]
)

api_v1_router.include_router(
    subscription.router,
    prefix="/dashboard",
    tags=["Dashboard"]
)

# ============================================================================
# BILLING ROUTES (shared secret)
# ============================================================================
api_v1_router.include_router(
    billing.router,
    tags=["Billing"]
)


# ============================================================================
# ROOT ENDPOINT - API Info
# ============================================================================
@api_v1_router.get("/", tags=["Info"])
async def api_info():
    """Structure of the API routes by authentication type."""
    return {
        "version": "1.0",
        "authentication": {
            "public": "No authentication required (manage links carry their own token)",
            "dashboard": "JWT Bearer token required (staff)",
            "billing": "Shared webhook secret"
        }
    }
