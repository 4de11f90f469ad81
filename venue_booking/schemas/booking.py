"""
Pydantic schemas for the public booking endpoints.
"""

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from ..models.booking import BookingStatus

DATE_FIELD_PATTERN = r"^\d{4}-\d{2}-\d{2}"


class BookingCreateRequest(BaseModel):
    """Schema for submitting a booking request."""

    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=64)
    event_type: Optional[str] = Field(None, max_length=100)
    start_date: str = Field(..., pattern=DATE_FIELD_PATTERN, description="YYYY-MM-DD in the venue's timezone")
    end_date: Optional[str] = Field(None, pattern=DATE_FIELD_PATTERN)
    start_time: Optional[str] = Field(None, max_length=16, description="HH:MM or h:MM AM/PM")
    end_time: Optional[str] = Field(None, max_length=16)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name must not be blank")
        return v


class BookingPublicResponse(BaseModel):
    """What an external party may see about their booking."""

    id: UUID
    reference_number: Optional[str]
    name: str
    event_type: Optional[str] = None
    status: BookingStatus
    start_date: str
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    proposed_date: Optional[str] = None
    proposed_end_date: Optional[str] = None
    proposed_start_time: Optional[str] = None
    proposed_end_time: Optional[str] = None
    user_response: Optional[str] = None
    response_date: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    has_deposit_evidence: bool = False
    created_at: datetime

    model_config = {"from_attributes": True}


class CreateBookingResponse(BaseModel):
    success: bool = True
    booking: BookingPublicResponse
    message: str = "Booking request received"


class UserResponseRequest(BaseModel):
    """Schema for an external party's answer to a booking update."""

    response: Literal["accept", "propose", "cancel"]
    proposed_date: Optional[str] = Field(None, pattern=DATE_FIELD_PATTERN)
    proposed_end_date: Optional[str] = Field(None, pattern=DATE_FIELD_PATTERN)
    proposed_start_time: Optional[str] = Field(None, max_length=16)
    proposed_end_time: Optional[str] = Field(None, max_length=16)
    message: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def require_proposal(self) -> "UserResponseRequest":
        if self.response == "propose" and not self.proposed_date:
            raise ValueError("proposed_date is required when proposing a new date")
        return self


class DepositEvidenceRequest(BaseModel):
    """Reference to uploaded deposit evidence (storage key or URL)."""

    evidence_ref: str = Field(..., min_length=1, max_length=2048)


class TimeRange(BaseModel):
    booking_id: UUID
    status: BookingStatus
    start_date: str
    end_date: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    start: datetime
    end: datetime


class AvailabilityResponse(BaseModel):
    unavailable_dates: List[str]
    unavailable_time_ranges: List[TimeRange]

