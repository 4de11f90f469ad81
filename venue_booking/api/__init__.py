"""API endpoints for the Venue Booking service."""

from fastapi import APIRouter

from .booking import router as booking_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(booking_router)

__all__ = ["api_router"]
