"""
Public booking endpoints: submission, availability, token responses and
deposit evidence.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from ..schemas.booking import (
    AvailabilityResponse,
    BookingCreateRequest,
    BookingPublicResponse,
    CreateBookingResponse,
    DepositEvidenceRequest,
    UserResponseRequest,
)
from ..schemas.common import ErrorResponse
from ..services.lifecycle_service import LifecycleService, NewBooking, UserProposal
from ..utils.dependencies import (
    AvailabilityReader,
    get_availability_reader,
    get_lifecycle_service,
)

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/booking",
    tags=["booking"],
    responses={
        404: {"model": ErrorResponse, "description": "Unknown booking or link"},
        409: {"model": ErrorResponse, "description": "Calendar conflict"},
        410: {"model": ErrorResponse, "description": "Link expired"},
        422: {"model": ErrorResponse, "description": "Invalid dates or input"},
        429: {"model": ErrorResponse, "description": "Too many requests"},
    },
)


@router.post(
    "",
    response_model=CreateBookingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a booking request",
)
async def create_booking(
    request: BookingCreateRequest,
    service: LifecycleService = Depends(get_lifecycle_service),
) -> CreateBookingResponse:
    """
    Submit a new booking request.

    The booking starts in ``pending`` and does not block the calendar until
    staff confirm it or verify a deposit.
    """
    booking = await service.create_booking(NewBooking(
        name=request.name,
        email=request.email,
        phone=request.phone,
        event_type=request.event_type,
        start_date=request.start_date,
        end_date=request.end_date,
        start_time=request.start_time,
        end_time=request.end_time,
    ))
    logger.info(f"Booking request {booking.reference_number} received")
    return CreateBookingResponse(booking=BookingPublicResponse.model_validate(booking))


@router.get(
    "/availability",
    response_model=AvailabilityResponse,
    summary="List unavailable dates",
)
async def get_availability(
    booking_id: Optional[UUID] = Query(None, alias="bookingId"),
    reader: AvailabilityReader = Depends(get_availability_reader),
) -> AvailabilityResponse:
    """
    Dates and time ranges occupied by blocking bookings.

    Pass ``bookingId`` to leave that booking's own interval out, for example
    when its owner is choosing a new date.
    """
    unavailable = await reader.unavailable_dates(booking_id)
    return AvailabilityResponse(
        unavailable_dates=unavailable.dates,
        unavailable_time_ranges=unavailable.ranges,
    )


@router.get(
    "/response/{token}",
    response_model=BookingPublicResponse,
    summary="Get the booking behind a response token",
)
async def get_booking_by_token(
    token: str,
    service: LifecycleService = Depends(get_lifecycle_service),
) -> BookingPublicResponse:
    booking = await service.get_booking_by_token(token)
    return BookingPublicResponse.model_validate(booking)


@router.post(
    "/response/{token}",
    response_model=BookingPublicResponse,
    summary="Respond to a booking update",
)
async def submit_response(
    token: str,
    request: UserResponseRequest,
    service: LifecycleService = Depends(get_lifecycle_service),
) -> BookingPublicResponse:
    """Accept the current dates, propose new ones, or cancel."""
    proposal = None
    if request.response == "propose":
        proposal = UserProposal(
            start_date=request.proposed_date,
            end_date=request.proposed_end_date,
            start_time=request.proposed_start_time,
            end_time=request.proposed_end_time,
        )

    booking = await service.submit_user_response(
        token,
        request.response,
        proposal=proposal,
        message=request.message,
    )
    return BookingPublicResponse.model_validate(booking)


@router.post(
    "/deposit/{token}",
    response_model=BookingPublicResponse,
    summary="Record deposit evidence",
)
async def upload_deposit(
    token: str,
    request: DepositEvidenceRequest,
    service: LifecycleService = Depends(get_lifecycle_service),
) -> BookingPublicResponse:
    booking = await service.record_deposit_evidence(token, request.evidence_ref)
    return BookingPublicResponse.model_validate(booking)
