from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Branch connections
    branches,
    # Stock lookups
    stock,
    # Count lifecycle
    counts,
    # Adjustment requests
    requests,
)
from app.config import settings


api_router = APIRouter(prefix=settings.API_V1_PREFIX)

# ==================== Branches ====================
api_router.include_router(
    branches.router,
    prefix="/branches",
    tags=["Branches"]
)

# ==================== Stock ====================
api_router.include_router(
    stock.router,
    prefix="/stock",
    tags=["Stock"]
)

# ==================== Counts ====================
api_router.include_router(
    counts.router,
    prefix="/counts",
    tags=["Counts"]
)

# ==================== Adjustment Requests ====================
api_router.include_router(
    requests.router,
    prefix="/requests",
    tags=["Adjustment Requests"]
)
