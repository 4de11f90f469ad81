"""
Append-only audit trail of booking status changes.
"""

import uuid
from typing import Optional, TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, IdentifiedMixin
from .booking import BookingStatus

if TYPE_CHECKING:
    from .booking import Booking


def _status_enum() -> Enum:
    return Enum(
        BookingStatus,
        name="booking_status",
        values_callable=lambda members: [member.value for member in members],
        create_constraint=False,
    )


class BookingStatusHistory(IdentifiedMixin, Base):
    """One row per applied status transition. Never updated."""

    __tablename__ = "booking_status_history"

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Null for the creation record
    old_status: Mapped[Optional[BookingStatus]] = mapped_column(_status_enum(), nullable=True)
    new_status: Mapped[BookingStatus] = mapped_column(_status_enum(), nullable=False)

    changed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    change_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    booking: Mapped["Booking"] = relationship("Booking", back_populates="status_history")

    def __repr__(self) -> str:
        old = self.old_status.value if self.old_status else None
        return (
            f"<BookingStatusHistory(booking_id={self.booking_id}, "
            f"{old} -> {self.new_status.value}, by={self.changed_by})>"
        )
