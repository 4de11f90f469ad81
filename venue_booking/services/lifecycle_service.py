"""
Booking lifecycle orchestration.

Every operation that changes a booking runs inside one unit of work: the
booking is loaded, the transition is checked against the status table, its
guard is evaluated (including the calendar overlap check) and the result is
written together with a history record, all in the same transaction. Two
concurrent confirmations of overlapping bookings therefore cannot both
commit.
"""

import logging
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.booking import Booking, BookingStatus
from ..models.booking_history import BookingStatusHistory
from ..unit_of_work import Transaction, UnitOfWork
from ..utils.exceptions import (
    BookingNotFoundError,
    ConflictError,
    NotFoundError,
    TokenExpiredError,
    TransitionDeniedError,
    ValidationError,
)
from ..utils.logging_config import log_business_event, log_security_event
from ..utils.metrics import MetricsRegistry, metrics as default_metrics
from ..utils.timezone import DateOracle
from ..utils.tokens import calculate_token_expiry, generate_response_token, validate_token_expiry
from .guards import CandidateFields, GuardContext, GuardEvaluator, GuardResult
from .notification_service import Notifier
from .overlap_service import build_interval
from .status_machine import (
    OTHER_CHANNEL_ACTIONS,
    TOKEN_ISSUING_STATUSES,
    ActionDescriptor,
    AdminAction,
    allowed_targets,
    available_actions,
    check_legal,
    target_status_for,
)

logger = logging.getLogger(__name__)

S = BookingStatus

SYSTEM_ACTOR = "system"
USER_ACTOR = "user"

# Statuses a proposal is promoted into the canonical interval on entry
PROMOTING_STATUSES = frozenset({S.PENDING_DEPOSIT, S.CONFIRMED})

# Statuses automatically cancelled once their start has passed
AUTO_CANCEL_STATUSES = (S.PENDING, S.PENDING_DEPOSIT, S.PAID_DEPOSIT)

ACCEPT_CLASS_ACTIONS = frozenset({
    AdminAction.ACCEPT,
    AdminAction.ACCEPT_DEPOSIT,
    AdminAction.ACCEPT_DEPOSIT_OTHER_CHANNEL,
    AdminAction.CONFIRM_OTHER_CHANNEL,
})

RECENT_RESPONSE_WINDOW = timedelta(minutes=5)


@dataclass
class TransitionContext(GuardContext):
    """Guard flags plus who is acting and why."""
    changed_by: str = "admin"
    change_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    is_staff: bool = True
    other_channel: bool = False


@dataclass
class NewBooking:
    name: str
    email: str
    start_date: str
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    phone: Optional[str] = None
    event_type: Optional[str] = None
    admin_notes: Optional[str] = None


@dataclass
class UserProposal:
    start_date: str
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


@dataclass
class ActionValidation:
    valid: bool
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    overlapping: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AutoUpdateResult:
    cancelled: int = 0
    finished: int = 0
    failed: int = 0
    changed: List[Booking] = field(default_factory=list)

    @property
    def updated(self) -> int:
        return self.cancelled + self.finished


class LifecycleService:
    """Applies booking status transitions safely under concurrent callers."""

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        oracle: Optional[DateOracle] = None,
        notifier: Optional[Notifier] = None,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.unit_of_work = unit_of_work
        self.oracle = oracle or DateOracle()
        self.notifier = notifier
        self.metrics = metrics or default_metrics

    # Transitions

    async def apply_transition(
        self,
        booking_id: UUID,
        target: BookingStatus,
        context: Optional[TransitionContext] = None,
    ) -> Booking:
        """
        Move a booking to ``target``.

        Raises:
            BookingNotFoundError: No booking with this id.
            TransitionDeniedError: The edge is illegal or its guard refused it.
            ConflictError: The booking's interval overlaps a blocking booking.
        """
        context = context or TransitionContext()
        target = BookingStatus(target)

        async def _apply(tx: Transaction) -> Booking:
            booking = await self._load_for_update(tx, booking_id)
            return await self._transition(tx, booking, target, context)

        return await self.unit_of_work.run(_apply, name="apply_transition")

    async def perform_action(
        self,
        booking_id: UUID,
        action: AdminAction,
        context: Optional[TransitionContext] = None,
        new_dates: Optional[CandidateFields] = None,
    ) -> Booking:
        """Run an admin action; its target status comes from the fixed action table."""
        action = AdminAction(action)
        context = context or TransitionContext()

        if action == AdminAction.CHANGE_DATE:
            if new_dates is None:
                raise ValidationError("New dates are required to change the booking date")
            return await self.change_date(booking_id, new_dates, context)

        if action in OTHER_CHANNEL_ACTIONS:
            context = replace(context, other_channel=True)
        if context.change_reason is None:
            context = replace(context, change_reason=f"Admin action: {action.value}")

        async def _perform(tx: Transaction) -> Booking:
            booking = await self._load_for_update(tx, booking_id)
            if action == AdminAction.ACCEPT_DEPOSIT and not booking.deposit_evidence_url:
                raise TransitionDeniedError(
                    "No deposit evidence found. Cannot verify deposit without evidence.",
                    current_status=booking.status.value,
                    target_status=S.CONFIRMED.value,
                )
            target = target_status_for(action, booking.status)
            return await self._transition(tx, booking, target, context)

        return await self.unit_of_work.run(_perform, name=f"action_{action.value}")

    async def change_date(
        self,
        booking_id: UUID,
        new_dates: CandidateFields,
        context: Optional[TransitionContext] = None,
    ) -> Booking:
        """Rewrite the canonical interval of a confirmed booking after an overlap check."""
        context = context or TransitionContext()

        async def _change(tx: Transaction) -> Booking:
            booking = await self._load_for_update(tx, booking_id)
            if booking.status != S.CONFIRMED:
                raise TransitionDeniedError(
                    "Change date is only available for confirmed bookings",
                    current_status=booking.status.value,
                    target_status=booking.status.value,
                )

            candidate = self._normalize_candidate(new_dates, allow_past=context.skip_date_check)
            evaluator = GuardEvaluator(tx.session, self.oracle, self.metrics)
            self._raise_if_denied(
                await evaluator.check_availability(booking, candidate, "change date"),
                booking.status,
                booking.status,
            )

            old_range = f"{booking.start_date}..{booking.end_date or booking.start_date}"
            self._set_interval(booking, candidate)
            self._issue_token(booking, candidate)
            if context.admin_notes is not None:
                booking.admin_notes = context.admin_notes
            if context.is_staff:
                booking.user_response = None
                booking.response_date = None

            await tx.session.flush()
            log_business_event(
                "booking_date_changed",
                {
                    "booking_id": str(booking.id),
                    "old_range": old_range,
                    "new_range": f"{booking.start_date}..{booking.end_date or booking.start_date}",
                },
                actor=context.changed_by,
            )
            self._schedule_notification(tx, booking, booking.status, context.change_reason or "Booking date changed")
            return booking

        return await self.unit_of_work.run(_change, name="change_date")

    async def _transition(
        self,
        tx: Transaction,
        booking: Booking,
        target: BookingStatus,
        context: TransitionContext,
        oracle: Optional[DateOracle] = None,
    ) -> Booking:
        oracle = oracle or self.oracle
        current = booking.status

        legality = check_legal(current, target)
        if not legality.legal:
            raise TransitionDeniedError(
                legality.reason,
                current_status=current.value,
                target_status=target.value,
                allowed=sorted(status.value for status in allowed_targets(current)),
            )

        if current == target:
            logger.info(f"Booking {booking.id} already {target.value}, nothing to do")
            return booking

        candidate = self._candidate_after(booking, target)
        evaluator = GuardEvaluator(tx.session, oracle, self.metrics)
        result = await evaluator.evaluate(booking, target, context, candidate)
        self._raise_if_denied(result, current, target)

        self._write_transition(booking, current, target, context, candidate, oracle)

        tx.session.add(BookingStatusHistory(
            booking_id=booking.id,
            old_status=current,
            new_status=target,
            changed_by=context.changed_by,
            change_reason=context.change_reason,
        ))
        await tx.session.flush()

        log_business_event(
            "booking_status_changed",
            {
                "booking_id": str(booking.id),
                "old_status": current.value,
                "new_status": target.value,
                "reason": context.change_reason,
            },
            actor=context.changed_by,
        )
        self._schedule_notification(tx, booking, target, context.change_reason)
        return booking

    def _candidate_after(self, booking: Booking, target: BookingStatus) -> CandidateFields:
        """The interval the booking will hold once ``target`` is written."""
        if target in PROMOTING_STATUSES and booking.proposed_date:
            return CandidateFields(
                start_date=booking.proposed_date,
                end_date=booking.proposed_end_date,
                start_time=booking.proposed_start_time or booking.start_time,
                end_time=booking.proposed_end_time or booking.end_time,
            )
        return CandidateFields.from_booking(booking)

    def _write_transition(
        self,
        booking: Booking,
        current: BookingStatus,
        target: BookingStatus,
        context: TransitionContext,
        candidate: CandidateFields,
        oracle: DateOracle,
    ) -> None:
        booking.status = target

        if target in PROMOTING_STATUSES and booking.proposed_date:
            self._set_interval(booking, candidate)

        if target in TOKEN_ISSUING_STATUSES:
            self._issue_token(booking, candidate, oracle)

        if target == S.CONFIRMED and current in (S.PENDING_DEPOSIT, S.PAID_DEPOSIT):
            booking.deposit_verified_at = oracle.now()
            booking.deposit_verified_by = context.changed_by
            booking.deposit_verified_from_other_channel = (
                context.other_channel or not booking.deposit_evidence_url
            )

        if current == S.PAID_DEPOSIT and target == S.PENDING_DEPOSIT:
            # Rejected evidence has to be uploaded again
            booking.deposit_evidence_url = None

        if context.admin_notes is not None:
            booking.admin_notes = context.admin_notes

        if context.is_staff:
            booking.user_response = None
            booking.response_date = None

    def _set_interval(self, booking: Booking, candidate: CandidateFields) -> None:
        booking.start_date = candidate.start_date
        multi_day = candidate.end_date and candidate.end_date != candidate.start_date
        booking.end_date = candidate.end_date if multi_day else None
        booking.start_time = candidate.start_time
        booking.end_time = candidate.end_time
        booking.proposed_date = None
        booking.proposed_end_date = None
        booking.proposed_start_time = None
        booking.proposed_end_time = None

    def _issue_token(self, booking: Booking, candidate: CandidateFields, oracle: Optional[DateOracle] = None) -> None:
        oracle = oracle or self.oracle
        try:
            interval_end = build_interval(
                oracle, candidate.start_date, candidate.end_date,
                candidate.start_time, candidate.end_time,
            ).end
        except ValidationError:
            interval_end = None
        booking.response_token = generate_response_token()
        booking.token_expires_at = calculate_token_expiry(interval_end, now=oracle.now())

    def _raise_if_denied(self, result: GuardResult, current: BookingStatus, target: BookingStatus) -> None:
        if result.allowed:
            return
        if result.conflict:
            raise ConflictError(
                result.reason,
                overlapping=[match.to_dict() for match in result.overlapping],
                current_status=current.value,
                target_status=target.value,
            )
        raise TransitionDeniedError(
            result.reason,
            current_status=current.value,
            target_status=target.value,
        )

    def _schedule_notification(
        self, tx: Transaction, booking: Booking, new_status: BookingStatus, reason: Optional[str]
    ) -> None:
        if self.notifier is None:
            return
        notifier = self.notifier

        async def _notify() -> None:
            await notifier.notify(booking, new_status, reason)

        tx.after_commit(_notify)

    # Creation

    async def create_booking(self, data: NewBooking) -> Booking:
        """
        Record a new booking request in ``pending`` status.

        Raises:
            ValidationError: Dates are not real calendar days, the end
                precedes the start, or the start is in the past.
        """
        candidate = self._normalize_candidate(
            CandidateFields(data.start_date, data.end_date, data.start_time, data.end_time)
        )

        async def _create(tx: Transaction) -> Booking:
            booking = Booking(
                reference_number=self._reference_number(candidate.start_date),
                name=data.name,
                email=data.email,
                phone=data.phone,
                event_type=data.event_type,
                admin_notes=data.admin_notes,
                status=S.PENDING,
            )
            self._set_interval(booking, candidate)
            tx.session.add(booking)
            await tx.session.flush()

            tx.session.add(BookingStatusHistory(
                booking_id=booking.id,
                old_status=None,
                new_status=S.PENDING,
                changed_by=USER_ACTOR,
                change_reason="Booking request submitted",
            ))
            await tx.session.flush()

            log_business_event(
                "booking_created",
                {"booking_id": str(booking.id), "start_date": booking.start_date},
                actor=USER_ACTOR,
            )
            self._schedule_notification(tx, booking, S.PENDING, "Booking request received")
            return booking

        return await self.unit_of_work.run(_create, name="create_booking")

    def _reference_number(self, start_date: str) -> str:
        return f"VB-{start_date.replace('-', '')}-{secrets.token_hex(3).upper()}"

    def _normalize_candidate(self, fields: CandidateFields, allow_past: bool = False) -> CandidateFields:
        """Validate and canonicalize user supplied dates."""
        start_date = self.oracle.parse_date(fields.start_date).isoformat()
        end_date = self.oracle.parse_date(fields.end_date).isoformat() if fields.end_date else None
        candidate = CandidateFields(start_date, end_date, fields.start_time or None, fields.end_time or None)

        interval = build_interval(
            self.oracle, candidate.start_date, candidate.end_date,
            candidate.start_time, candidate.end_time,
        )
        if not allow_past and self.oracle.is_past(interval.start):
            raise ValidationError(
                "Start date must be in the future",
                field_errors={"start_date": ["Start date is in the past"]},
            )
        return candidate

    # External party responses

    async def get_booking_by_token(self, token: str, extended: bool = False) -> Booking:
        """
        Resolve a response token.

        Raises:
            NotFoundError: Unknown token.
            TokenExpiredError: Past expiry plus the grace period.
        """
        async def _load(tx: Transaction) -> Booking:
            return await self._load_by_token(tx.session, token, extended)

        return await self.unit_of_work.run(_load, name="get_booking_by_token")

    async def submit_user_response(
        self,
        token: str,
        response: str,
        proposal: Optional[UserProposal] = None,
        message: Optional[str] = None,
    ) -> Booking:
        """
        Record an external party's answer: ``accept``, ``propose`` or ``cancel``.

        A proposal never changes status and never blocks the calendar; the
        original interval keeps blocking until staff accept the proposal.
        """
        if response not in ("accept", "propose", "cancel"):
            raise ValidationError(
                f"Unknown response: {response}",
                field_errors={"response": ["Must be one of accept, propose, cancel"]},
            )
        if response == "propose" and proposal is None:
            raise ValidationError(
                "A proposed date is required",
                field_errors={"proposal": ["Missing proposed date"]},
            )

        async def _respond(tx: Transaction) -> Booking:
            booking = await self._load_by_token_for_update(tx, token)

            if booking.status in (S.CANCELLED, S.FINISHED):
                raise TransitionDeniedError(
                    "This booking is no longer open for responses",
                    current_status=booking.status.value,
                )

            if response == "cancel":
                context = TransitionContext(
                    changed_by=USER_ACTOR,
                    change_reason=message or "Cancelled by user",
                    is_staff=False,
                )
                booking = await self._transition(tx, booking, S.CANCELLED, context)
            elif response == "propose":
                candidate = self._normalize_candidate(CandidateFields(
                    proposal.start_date, proposal.end_date, proposal.start_time, proposal.end_time,
                ))
                evaluator = GuardEvaluator(tx.session, self.oracle, self.metrics)
                self._raise_if_denied(
                    await evaluator.check_availability(booking, candidate, "propose these dates"),
                    booking.status,
                    booking.status,
                )
                booking.proposed_date = candidate.start_date
                booking.proposed_end_date = candidate.end_date
                booking.proposed_start_time = candidate.start_time
                booking.proposed_end_time = candidate.end_time
                booking.user_response = message or "Proposed alternative date"
            else:
                booking.user_response = message or "Accepted"

            booking.response_date = self.oracle.now()
            await tx.session.flush()

            log_business_event(
                "booking_user_response",
                {"booking_id": str(booking.id), "response": response},
                actor=USER_ACTOR,
            )
            return booking

        return await self.unit_of_work.run(_respond, name="submit_user_response")

    async def record_deposit_evidence(self, token: str, evidence_ref: str) -> Booking:
        """Attach a deposit evidence reference and move ``pending_deposit`` to ``paid_deposit``."""
        if not evidence_ref or not evidence_ref.strip():
            raise ValidationError(
                "Deposit evidence is required",
                field_errors={"evidence_ref": ["Missing deposit evidence reference"]},
            )

        async def _record(tx: Transaction) -> Booking:
            booking = await self._load_by_token_for_update(tx, token, extended=True)
            booking.deposit_evidence_url = evidence_ref.strip()

            if booking.status == S.PAID_DEPOSIT:
                # Re-upload while awaiting verification
                booking.response_date = self.oracle.now()
                await tx.session.flush()
                return booking

            if booking.status != S.PENDING_DEPOSIT:
                raise TransitionDeniedError(
                    "Deposit can only be uploaded while a deposit is pending",
                    current_status=booking.status.value,
                    target_status=S.PAID_DEPOSIT.value,
                )

            context = TransitionContext(
                changed_by=USER_ACTOR,
                change_reason="Deposit evidence uploaded",
                is_staff=False,
            )
            booking = await self._transition(tx, booking, S.PAID_DEPOSIT, context)
            booking.response_date = self.oracle.now()
            return booking

        return await self.unit_of_work.run(_record, name="record_deposit_evidence")

    # Sweep

    def will_auto_update(self, booking: Booking, oracle: Optional[DateOracle] = None) -> Optional[BookingStatus]:
        """Status the sweep would move ``booking`` to, or None."""
        oracle = oracle or self.oracle
        try:
            interval = build_interval(
                oracle, booking.start_date, booking.end_date, booking.start_time, booking.end_time,
            )
        except ValidationError as e:
            logger.warning(f"Booking {booking.id} has unreadable dates, skipping sweep: {e.message}")
            return None

        if booking.status in AUTO_CANCEL_STATUSES and oracle.is_past(interval.start):
            return S.CANCELLED
        if booking.status == S.CONFIRMED and oracle.is_past(interval.end):
            return S.FINISHED
        return None

    async def auto_update(self, now: Optional[datetime] = None) -> AutoUpdateResult:
        """
        Cancel unconfirmed bookings whose start has passed and finish
        confirmed bookings whose end has passed.

        Each booking is updated in its own unit of work; one failure is
        logged and the sweep carries on.
        """
        oracle = self.oracle if now is None else DateOracle(self.oracle.timezone_name, clock=lambda: now)
        today = oracle.today()
        result = AutoUpdateResult()

        async def _candidates(tx: Transaction) -> List[UUID]:
            rows = await tx.session.execute(
                select(Booking.id).where(
                    Booking.status.in_(AUTO_CANCEL_STATUSES + (S.CONFIRMED,)),
                    Booking.start_date <= today,
                )
            )
            return list(rows.scalars().all())

        booking_ids = await self.unit_of_work.run(_candidates, name="auto_update_scan")

        for booking_id in booking_ids:
            try:
                booking = await self.unit_of_work.run(
                    lambda tx, booking_id=booking_id: self._auto_update_one(tx, booking_id, oracle),
                    name="auto_update_booking",
                )
            except Exception as e:
                result.failed += 1
                logger.error(f"Auto-update failed for booking {booking_id}: {e}")
                continue

            if booking is None:
                continue
            result.changed.append(booking)
            if booking.status == S.CANCELLED:
                result.cancelled += 1
            else:
                result.finished += 1

        if result.updated or result.failed:
            logger.info(
                f"Auto-update: {result.cancelled} cancelled, {result.finished} finished, "
                f"{result.failed} failed"
            )
        return result

    async def _auto_update_one(self, tx: Transaction, booking_id: UUID, oracle: DateOracle) -> Optional[Booking]:
        await tx.lock_calendar()
        booking = await tx.session.get(Booking, booking_id)
        if booking is None:
            return None

        # Re-check inside the transaction; the booking may have moved since the scan
        target = self.will_auto_update(booking, oracle)
        if target is None:
            return None

        reason = (
            "Start date has passed without confirmation" if target == S.CANCELLED
            else "Booking end date has passed"
        )
        context = TransitionContext(changed_by=SYSTEM_ACTOR, change_reason=reason, is_staff=False)
        return await self._transition(tx, booking, target, context, oracle)

    # Reads

    async def get_booking(self, booking_id: UUID) -> Booking:
        async def _get(tx: Transaction) -> Booking:
            return await self._load(tx.session, booking_id)

        return await self.unit_of_work.run(_get, name="get_booking")

    async def get_status_history(self, booking_id: UUID) -> List[BookingStatusHistory]:
        """Status history of a booking, newest first."""
        async def _history(tx: Transaction) -> List[BookingStatusHistory]:
            await self._load(tx.session, booking_id)
            rows = await tx.session.execute(
                select(BookingStatusHistory)
                .where(BookingStatusHistory.booking_id == booking_id)
                .order_by(BookingStatusHistory.created_at.desc(), BookingStatusHistory.id.desc())
            )
            return list(rows.scalars().all())

        return await self.unit_of_work.run(_history, name="get_status_history")

    async def get_available_actions(self, booking_id: UUID, is_admin: bool = True) -> List[ActionDescriptor]:
        booking = await self.get_booking(booking_id)
        try:
            date_in_past = self.oracle.is_date_in_past(booking.start_date, booking.start_time)
        except ValidationError:
            date_in_past = self.oracle.is_date_in_past(booking.start_date)
        return available_actions(
            booking.status,
            has_deposit_evidence=booking.has_deposit_evidence,
            is_admin=is_admin,
            date_in_past=date_in_past,
        )

    async def validate_action(self, booking_id: UUID, action: AdminAction) -> ActionValidation:
        """Read-only report of what would go wrong if ``action`` ran now."""
        action = AdminAction(action)

        async def _validate(tx: Transaction) -> ActionValidation:
            booking = await self._load(tx.session, booking_id)
            report = ActionValidation(valid=True)
            target = target_status_for(action, booking.status)

            legality = check_legal(booking.status, target)
            if not legality.legal:
                report.errors.append(legality.reason)

            if action in ACCEPT_CLASS_ACTIONS:
                candidate = self._candidate_after(booking, target)
                try:
                    start = self.oracle.to_instant(candidate.start_date, candidate.start_time)
                    if self.oracle.is_past(start):
                        report.errors.append(
                            "Booking start date is in the past. "
                            "This booking will be auto-cancelled if accepted."
                        )
                except ValidationError as e:
                    report.errors.append(e.message)

                evaluator = GuardEvaluator(tx.session, self.oracle, self.metrics, overlap_fail_open=False)
                try:
                    overlap = await evaluator.check_availability(booking, candidate)
                except Exception as e:
                    logger.warning(f"Overlap check failed while validating booking {booking.id}: {e}")
                    report.warnings.append("Could not verify booking overlaps. Please check manually.")
                else:
                    if overlap.conflict:
                        report.overlapping = [match.to_dict() for match in overlap.overlapping]
                        names = ", ".join(match.name or "Unknown" for match in overlap.overlapping)
                        report.warnings.append(
                            f"This booking overlaps with existing confirmed booking(s): {names}. "
                            "Please verify this is intentional."
                        )

            if action == AdminAction.ACCEPT_DEPOSIT and not booking.deposit_evidence_url:
                report.errors.append("No deposit evidence found. Cannot verify deposit without evidence.")

            if booking.response_date and booking.response_date > self.oracle.now() - RECENT_RESPONSE_WINDOW:
                report.warnings.append(
                    "User recently responded. Changing status now might disrupt their current action."
                )

            if booking.status == target:
                report.warnings.append(f'Booking is already in "{target.value}" status.')

            report.valid = not report.errors
            return report

        return await self.unit_of_work.run(_validate, name="validate_action")

    async def _load(self, session: AsyncSession, booking_id: UUID) -> Booking:
        booking = await session.get(Booking, booking_id)
        if booking is None:
            raise BookingNotFoundError(str(booking_id))
        return booking

    async def _load_for_update(self, tx: Transaction, booking_id: UUID) -> Booking:
        await tx.lock_calendar()
        result = await tx.session.execute(
            select(Booking).where(Booking.id == booking_id).with_for_update()
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise BookingNotFoundError(str(booking_id))
        return booking

    async def _load_by_token_for_update(self, tx: Transaction, token: str, extended: bool = False) -> Booking:
        await tx.lock_calendar()
        return await self._load_by_token(tx.session, token, extended, for_update=True)

    async def _load_by_token(
        self, session: AsyncSession, token: str, extended: bool = False, for_update: bool = False
    ) -> Booking:
        if not token:
            raise NotFoundError("Invalid or expired link", resource_type="token")

        query = select(Booking).where(Booking.response_token == token)
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Invalid or expired link", resource_type="token")

        if not validate_token_expiry(booking.token_expires_at, now=self.oracle.now(), extended=extended):
            log_security_event(
                "expired_token_used",
                {"booking_id": str(booking.id), "extended_grace": extended},
            )
            raise TokenExpiredError()
        return booking
