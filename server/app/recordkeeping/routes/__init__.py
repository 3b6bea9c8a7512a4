"""Recordkeeping routes aggregation."""

from fastapi import APIRouter

from .osha import router as osha_router

# Create main recordkeeping router
recordkeeping_router = APIRouter()

# Mount sub-routers
recordkeeping_router.include_router(osha_router, tags=["osha-recordkeeping"])

__all__ = ["recordkeeping_router"]
