"""
Booking model for reservations of the venue.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Enum, Index, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, IdentifiedMixin, UTCDateTime

if TYPE_CHECKING:
    from .booking_history import BookingStatusHistory


class BookingStatus(str, enum.Enum):
    """Closed set of booking statuses."""
    PENDING = "pending"
    PENDING_DEPOSIT = "pending_deposit"
    PAID_DEPOSIT = "paid_deposit"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    FINISHED = "finished"


class Booking(IdentifiedMixin, Base):
    """A time-bound reservation of the single shared venue."""

    __tablename__ = "bookings"

    reference_number: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)

    # Contact
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Canonical interval; dates are YYYY-MM-DD in the business zone
    start_date: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    end_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    start_time: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    end_time: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(
            BookingStatus,
            name="booking_status",
            values_callable=lambda members: [member.value for member in members],
            validate_strings=True,
        ),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True
    )

    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # External party response
    response_token: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    proposed_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    proposed_end_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    proposed_start_time: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    proposed_end_time: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    user_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Deposit
    deposit_evidence_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    deposit_verified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    deposit_verified_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deposit_verified_from_other_channel: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    # Fee annotations
    fee_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    fee_amount_original: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    fee_currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    fee_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        nullable=False
    )

    status_history: Mapped[List["BookingStatusHistory"]] = relationship(
        "BookingStatusHistory",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingStatusHistory.created_at",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'pending_deposit', 'paid_deposit', 'confirmed', 'cancelled', 'finished')",
            name="ck_bookings_status_valid",
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_bookings_end_not_before_start",
        ),
        CheckConstraint(
            "proposed_end_date IS NULL OR proposed_date IS NULL OR proposed_end_date >= proposed_date",
            name="ck_bookings_proposed_end_not_before_start",
        ),
        Index("ix_bookings_status_start_date", "status", "start_date"),
    )

    @property
    def has_deposit_evidence(self) -> bool:
        return bool(self.deposit_evidence_url)

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, start_date={self.start_date}, "
            f"end_date={self.end_date}, status={self.status.value})>"
        )
