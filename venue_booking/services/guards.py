"""
Per-transition guard predicates.

Guards never raise to signal a refusal; they return a ``GuardResult``.
The lifecycle service turns a refusal into the matching error.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..models.booking import Booking, BookingStatus
from ..utils.exceptions import StoreError, ValidationError, is_lock_contention
from ..utils.metrics import OVERLAP_CHECK_FAILURES, MetricsRegistry, metrics as default_metrics
from ..utils.timezone import DateOracle
from .overlap_service import BookingInterval, Interval, OverlapEngine, blocks_in, build_interval
from .status_machine import ALLOWED_TRANSITIONS, OCCUPYING_STATUSES

logger = logging.getLogger(__name__)

S = BookingStatus


@dataclass
class GuardContext:
    """Caller-supplied flags that guards consult."""
    skip_date_check: bool = False
    is_admin: bool = False
    force_restore: bool = False
    check_overlap: bool = True


@dataclass
class GuardResult:
    allowed: bool
    reason: Optional[str] = None
    conflict: bool = False
    overlapping: List[BookingInterval] = field(default_factory=list)

    @classmethod
    def allow(cls) -> "GuardResult":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "GuardResult":
        return cls(allowed=False, reason=reason)


@dataclass
class CandidateFields:
    """The interval a booking will occupy once the transition is written."""
    start_date: str
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "CandidateFields":
        return cls(booking.start_date, booking.end_date, booking.start_time, booking.end_time)


Guard = Callable[["GuardEvaluator", Booking, CandidateFields, GuardContext], Awaitable[GuardResult]]


class GuardEvaluator:
    """Evaluates the guard registered for a (from, to) status pair."""

    def __init__(
        self,
        session: AsyncSession,
        oracle: Optional[DateOracle] = None,
        metrics: Optional[MetricsRegistry] = None,
        overlap_fail_open: Optional[bool] = None,
    ):
        self.session = session
        self.oracle = oracle or DateOracle()
        self.overlap = OverlapEngine(session, self.oracle)
        self.metrics = metrics or default_metrics
        self.overlap_fail_open = (
            get_settings().overlap_guard_fail_open if overlap_fail_open is None else overlap_fail_open
        )

    async def evaluate(
        self,
        booking: Booking,
        target: BookingStatus,
        context: Optional[GuardContext] = None,
        candidate: Optional[CandidateFields] = None,
    ) -> GuardResult:
        context = context or GuardContext()
        candidate = candidate or CandidateFields.from_booking(booking)
        target = BookingStatus(target)
        guard = GUARDS.get((booking.status, target))
        result = GuardResult.allow() if guard is None else await guard(self, booking, candidate, context)

        # Edges into confirmed check overlaps in their own guard. Any other
        # edge that leaves the booking blocking (a restored or renegotiating
        # booking whose deposit was verified) must check here.
        if (
            result.allowed
            and context.check_overlap
            and target not in OCCUPYING_STATUSES
            and blocks_in(target, booking.deposit_verified_at)
        ):
            result = await self.check_availability(booking, candidate, f"move booking to {target.value}")
        return result

    async def check_availability(
        self, booking: Booking, candidate: CandidateFields, action_label: str = "confirm"
    ) -> GuardResult:
        """
        Deny when ``candidate`` overlaps another blocking booking.

        A store failure during the check allows the transition with a
        warning when ``overlap_fail_open`` is set. Lock contention is never
        absorbed here so that the unit of work can retry it.
        """
        try:
            interval = build_interval(
                self.oracle, candidate.start_date, candidate.end_date,
                candidate.start_time, candidate.end_time,
            )
        except ValidationError as e:
            return GuardResult.deny(f"Cannot {action_label}: {e.message}")

        try:
            async with self.session.begin_nested():
                result = await self.overlap.conflicts(interval, exclude_id=booking.id)
        except Exception as e:
            if is_lock_contention(e):
                raise
            self.metrics.increment(OVERLAP_CHECK_FAILURES)
            if not self.overlap_fail_open:
                raise StoreError(f"Overlap check failed: {e}") from e
            logger.warning(f"Overlap check failed for booking {booking.id}, allowing: {e}")
            return GuardResult.allow()

        if result.overlaps:
            return GuardResult(
                allowed=False,
                reason=f"Cannot {action_label}: overlaps with existing confirmed booking(s)",
                conflict=True,
                overlapping=result.matches,
            )
        return GuardResult.allow()

    def interval_of(self, candidate: CandidateFields) -> Interval:
        return build_interval(
            self.oracle, candidate.start_date, candidate.end_date,
            candidate.start_time, candidate.end_time,
        )


async def _guard_accept(ev: GuardEvaluator, booking: Booking, candidate: CandidateFields, ctx: GuardContext) -> GuardResult:
    if ctx.skip_date_check:
        return GuardResult.allow()
    try:
        start = ev.oracle.to_instant(candidate.start_date, candidate.start_time)
    except ValidationError as e:
        return GuardResult.deny(f"Cannot accept booking: {e.message}")
    if ev.oracle.is_past(start):
        return GuardResult.deny("Cannot accept booking with past start date")
    return GuardResult.allow()


async def _guard_confirm(ev: GuardEvaluator, booking: Booking, candidate: CandidateFields, ctx: GuardContext) -> GuardResult:
    if not ctx.check_overlap:
        return GuardResult.allow()
    return await ev.check_availability(booking, candidate, "confirm")


async def _guard_restore_confirmed(ev: GuardEvaluator, booking: Booking, candidate: CandidateFields, ctx: GuardContext) -> GuardResult:
    if not ctx.check_overlap:
        return GuardResult.allow()
    return await ev.check_availability(booking, candidate, "restore to confirmed")


async def _guard_restore_paid_deposit(ev: GuardEvaluator, booking: Booking, candidate: CandidateFields, ctx: GuardContext) -> GuardResult:
    if not booking.deposit_evidence_url:
        return GuardResult.deny("Cannot restore to paid_deposit without deposit evidence")
    return GuardResult.allow()


async def _guard_finish(ev: GuardEvaluator, booking: Booking, candidate: CandidateFields, ctx: GuardContext) -> GuardResult:
    try:
        end = ev.interval_of(candidate).end
    except ValidationError as e:
        return GuardResult.deny(f"Cannot finish booking: {e.message}")
    if not ev.oracle.is_past(end):
        return GuardResult.deny("Cannot finish booking: end date is in the future")
    return GuardResult.allow()


async def _guard_force_restore(ev: GuardEvaluator, booking: Booking, candidate: CandidateFields, ctx: GuardContext) -> GuardResult:
    if not (ctx.force_restore and ctx.is_admin):
        return GuardResult.deny(
            "Cannot restore finished booking without force flag and admin context"
        )
    if not ctx.check_overlap:
        return GuardResult.allow()
    return await ev.check_availability(booking, candidate, "restore finished booking")


# Every legal edge appears here; None means the edge is unguarded
GUARDS: Dict[Tuple[BookingStatus, BookingStatus], Optional[Guard]] = {
    (S.PENDING, S.PENDING_DEPOSIT): _guard_accept,
    (S.PENDING, S.CANCELLED): None,
    (S.PENDING_DEPOSIT, S.PAID_DEPOSIT): None,
    (S.PENDING_DEPOSIT, S.CONFIRMED): _guard_confirm,
    (S.PENDING_DEPOSIT, S.CANCELLED): None,
    (S.PAID_DEPOSIT, S.CONFIRMED): _guard_confirm,
    (S.PAID_DEPOSIT, S.PENDING_DEPOSIT): None,
    (S.PAID_DEPOSIT, S.CANCELLED): None,
    (S.CONFIRMED, S.FINISHED): _guard_finish,
    (S.CONFIRMED, S.CANCELLED): None,
    (S.CANCELLED, S.PENDING_DEPOSIT): None,
    (S.CANCELLED, S.PAID_DEPOSIT): _guard_restore_paid_deposit,
    (S.CANCELLED, S.CONFIRMED): _guard_restore_confirmed,
    (S.FINISHED, S.CONFIRMED): _guard_force_restore,
}

assert set(GUARDS) == {
    (source, target) for source, targets in ALLOWED_TRANSITIONS.items() for target in targets
}, "guard table must cover exactly the legal transitions"
