"""Tests for booking lifecycle operations."""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from venue_booking.models.booking import Booking, BookingStatus
from venue_booking.models.booking_history import BookingStatusHistory
from venue_booking.services.guards import CandidateFields
from venue_booking.services.lifecycle_service import (
    LifecycleService,
    NewBooking,
    TransitionContext,
    UserProposal,
)
from venue_booking.services.notification_service import Notifier
from venue_booking.services.overlap_service import OverlapEngine
from venue_booking.services.status_machine import AdminAction
from venue_booking.unit_of_work import Transaction
from venue_booking.utils.exceptions import (
    BookingNotFoundError,
    CalendarDateError,
    ConflictError,
    NotFoundError,
    TokenExpiredError,
    TransitionDeniedError,
    ValidationError,
)
from venue_booking.utils.metrics import NOTIFICATION_FAILURES, metrics

from .conftest import FUTURE, hours_ago, utc

S = BookingStatus


async def history_of(database, booking_id):
    async with database.get_session() as session:
        rows = await session.execute(
            select(BookingStatusHistory)
            .where(BookingStatusHistory.booking_id == booking_id)
            .order_by(BookingStatusHistory.created_at)
        )
        return list(rows.scalars().all())


class TestCreateBooking:
    async def test_creates_pending_booking_with_history(self, service, database, notifier):
        booking = await service.create_booking(NewBooking(
            name="Ada", email="ada@example.com", start_date="2031-05-10T00:00:00Z",
            start_time="10:00", end_time="14:00",
        ))

        assert booking.status == S.PENDING
        assert booking.start_date == "2031-05-10"
        assert booking.reference_number.startswith("VB-20310510-")

        history = await history_of(database, booking.id)
        assert [(h.old_status, h.new_status, h.changed_by) for h in history] == [(None, S.PENDING, "user")]
        assert [n.new_status for n in notifier.sent] == ["pending"]

    async def test_rejects_past_start(self, service):
        with pytest.raises(ValidationError):
            await service.create_booking(NewBooking(name="Ada", email="a@example.com", start_date="2020-01-01"))

    async def test_rejects_impossible_date(self, service):
        with pytest.raises(CalendarDateError):
            await service.create_booking(NewBooking(name="Ada", email="a@example.com", start_date="2031-02-30"))

    async def test_rejects_end_before_start(self, service):
        with pytest.raises(ValidationError):
            await service.create_booking(NewBooking(
                name="Ada", email="a@example.com", start_date=FUTURE, start_time="15:00", end_time="09:00",
            ))


class TestApplyTransition:
    async def test_accept_issues_token_and_records_history(self, service, database, make_booking, notifier):
        booking = await make_booking(start_time="10:00", end_time="14:00")

        updated = await service.apply_transition(booking.id, S.PENDING_DEPOSIT)

        assert updated.status == S.PENDING_DEPOSIT
        assert len(updated.response_token) == 64
        assert updated.token_expires_at <= service.oracle.now() + timedelta(days=30, seconds=5)

        history = await history_of(database, booking.id)
        assert [(h.old_status, h.new_status) for h in history] == [(S.PENDING, S.PENDING_DEPOSIT)]
        assert [n.new_status for n in notifier.sent] == ["pending_deposit"]

    async def test_token_expires_at_interval_end_when_sooner(self, service, make_booking, oracle):
        soon = oracle.add_days(oracle.today(), 3)
        booking = await make_booking(start_date=soon, start_time="10:00", end_time="14:00")

        updated = await service.apply_transition(booking.id, S.PENDING_DEPOSIT)

        assert updated.token_expires_at == oracle.to_instant(soon, "14:00")

    async def test_illegal_transition_changes_nothing(self, service, database, make_booking, load_booking):
        booking = await make_booking()

        with pytest.raises(TransitionDeniedError) as exc_info:
            await service.apply_transition(booking.id, S.CONFIRMED)

        assert exc_info.value.allowed == ["cancelled", "pending_deposit"]
        assert (await load_booking(booking.id)).status == S.PENDING
        assert await history_of(database, booking.id) == []

    async def test_same_status_is_a_no_op(self, service, database, make_booking):
        booking = await make_booking(status=S.CONFIRMED)
        updated = await service.apply_transition(booking.id, S.CONFIRMED)
        assert updated.status == S.CONFIRMED
        assert await history_of(database, booking.id) == []

    async def test_unknown_booking(self, service):
        with pytest.raises(BookingNotFoundError):
            await service.apply_transition(uuid.uuid4(), S.CANCELLED)

    async def test_guard_denial(self, service, make_booking):
        booking = await make_booking(start_date="2020-01-01")
        with pytest.raises(TransitionDeniedError, match="past start date"):
            await service.apply_transition(booking.id, S.PENDING_DEPOSIT)

    async def test_confirm_conflict(self, service, make_booking, load_booking):
        existing = await make_booking(start_time="10:00", end_time="14:00", status=S.CONFIRMED)
        booking = await make_booking(start_time="13:00", end_time="15:00", status=S.PAID_DEPOSIT)

        with pytest.raises(ConflictError) as exc_info:
            await service.apply_transition(booking.id, S.CONFIRMED)

        assert exc_info.value.overlapping[0]["booking_id"] == str(existing.id)
        assert (await load_booking(booking.id)).status == S.PAID_DEPOSIT

    async def test_touching_bookings_both_confirm(self, service, make_booking):
        first = await make_booking(start_time="10:00", end_time="12:00", status=S.PAID_DEPOSIT)
        second = await make_booking(start_time="12:00", end_time="14:00", status=S.PAID_DEPOSIT)

        assert (await service.apply_transition(first.id, S.CONFIRMED)).status == S.CONFIRMED
        assert (await service.apply_transition(second.id, S.CONFIRMED)).status == S.CONFIRMED

    async def test_concurrent_confirms_admit_exactly_one(self, service, database, make_booking):
        first = await make_booking(start_time="10:00", end_time="14:00", status=S.PAID_DEPOSIT)
        second = await make_booking(start_time="11:00", end_time="15:00", status=S.PAID_DEPOSIT)

        results = await asyncio.gather(
            service.apply_transition(first.id, S.CONFIRMED),
            service.apply_transition(second.id, S.CONFIRMED),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, Booking)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == 1

        async with database.get_session() as session:
            confirmed = (await session.execute(
                select(Booking.id).where(Booking.status == S.CONFIRMED)
            )).scalars().all()
        assert confirmed == [successes[0].id]

    async def test_confirm_stamps_deposit_verification(self, service, make_booking):
        booking = await make_booking(status=S.PAID_DEPOSIT, deposit_evidence_url="uploads/slip.png")

        updated = await service.perform_action(
            booking.id, AdminAction.ACCEPT_DEPOSIT, TransitionContext(changed_by="staff@venue"),
        )

        assert updated.status == S.CONFIRMED
        assert updated.deposit_verified_at is not None
        assert updated.deposit_verified_by == "staff@venue"
        assert updated.deposit_verified_from_other_channel is False

    async def test_confirm_without_evidence_is_other_channel(self, service, make_booking):
        booking = await make_booking(status=S.PENDING_DEPOSIT)
        updated = await service.perform_action(booking.id, AdminAction.CONFIRM_OTHER_CHANNEL)
        assert updated.deposit_verified_from_other_channel is True

    async def test_accept_deposit_requires_evidence(self, service, make_booking):
        booking = await make_booking(status=S.PAID_DEPOSIT)
        with pytest.raises(TransitionDeniedError, match="No deposit evidence"):
            await service.perform_action(booking.id, AdminAction.ACCEPT_DEPOSIT)

    async def test_reject_deposit_clears_evidence(self, service, make_booking):
        booking = await make_booking(status=S.PAID_DEPOSIT, deposit_evidence_url="uploads/slip.png")
        updated = await service.perform_action(booking.id, AdminAction.REJECT_DEPOSIT)
        assert updated.status == S.PENDING_DEPOSIT
        assert updated.deposit_evidence_url is None

    async def test_staff_transition_clears_user_response(self, service, make_booking):
        booking = await make_booking(
            status=S.PENDING_DEPOSIT, user_response="Accepted", response_date=hours_ago(1),
        )
        updated = await service.apply_transition(booking.id, S.CANCELLED)
        assert updated.user_response is None
        assert updated.response_date is None

    async def test_shared_context_is_not_changed_by_actions(self, service, make_booking):
        context = TransitionContext(changed_by="staff@venue")
        other_channel = await make_booking(status=S.PENDING_DEPOSIT)
        with_evidence = await make_booking(
            start_date="2031-06-01", status=S.PAID_DEPOSIT, deposit_evidence_url="uploads/slip.png",
        )

        await service.perform_action(other_channel.id, AdminAction.CONFIRM_OTHER_CHANNEL, context)
        updated = await service.perform_action(with_evidence.id, AdminAction.ACCEPT_DEPOSIT, context)

        assert (context.other_channel, context.change_reason) == (False, None)
        assert updated.deposit_verified_from_other_channel is False

    async def test_force_restore(self, service, make_booking):
        booking = await make_booking(status=S.FINISHED)

        with pytest.raises(TransitionDeniedError):
            await service.perform_action(booking.id, AdminAction.FORCE_RESTORE)

        updated = await service.perform_action(
            booking.id, AdminAction.FORCE_RESTORE, TransitionContext(force_restore=True, is_admin=True),
        )
        assert updated.status == S.CONFIRMED

    async def test_notifier_failure_does_not_undo_transition(self, unit_of_work, oracle, make_booking, load_booking):
        class BrokenNotifier(Notifier):
            async def send(self, notification):
                raise ConnectionError("broker down")

        service = LifecycleService(unit_of_work, oracle=oracle, notifier=BrokenNotifier())
        booking = await make_booking()

        await service.apply_transition(booking.id, S.CANCELLED)

        assert (await load_booking(booking.id)).status == S.CANCELLED
        assert metrics.get(NOTIFICATION_FAILURES) == 1


class TestProposals:
    async def _pending_deposit(self, service, make_booking, **fields):
        booking = await make_booking(start_time="10:00", end_time="14:00", **fields)
        return await service.apply_transition(booking.id, S.PENDING_DEPOSIT)

    async def test_proposal_is_promoted_on_confirm(self, service, make_booking):
        booking = await self._pending_deposit(service, make_booking)

        proposed = await service.submit_user_response(
            booking.response_token, "propose", UserProposal(start_date="2031-05-20", start_time="09:00", end_time="11:00"),
        )
        assert proposed.status == S.PENDING_DEPOSIT
        assert proposed.proposed_date == "2031-05-20"
        assert proposed.start_date == FUTURE

        confirmed = await service.perform_action(booking.id, AdminAction.CONFIRM_OTHER_CHANNEL)
        assert confirmed.start_date == "2031-05-20"
        assert (confirmed.start_time, confirmed.end_time) == ("09:00", "11:00")
        assert confirmed.proposed_date is None
        assert confirmed.response_token != booking.response_token

    async def test_original_interval_keeps_blocking_during_renegotiation(self, service, make_booking):
        await make_booking(
            start_time="10:00", end_time="14:00", status=S.PAID_DEPOSIT,
            deposit_verified_at=hours_ago(1), proposed_date="2031-05-20",
        )
        at_original = await make_booking(start_time="12:00", end_time="13:00", status=S.PAID_DEPOSIT)
        at_proposed = await make_booking(
            start_date="2031-05-20", start_time="12:00", end_time="13:00", status=S.PAID_DEPOSIT,
        )

        with pytest.raises(ConflictError):
            await service.apply_transition(at_original.id, S.CONFIRMED)
        assert (await service.apply_transition(at_proposed.id, S.CONFIRMED)).status == S.CONFIRMED

    async def test_conflicting_proposal_is_refused(self, service, make_booking):
        await make_booking(start_date="2031-05-20", status=S.CONFIRMED)
        booking = await self._pending_deposit(service, make_booking)

        with pytest.raises(ConflictError):
            await service.submit_user_response(
                booking.response_token, "propose", UserProposal(start_date="2031-05-20"),
            )

    async def test_user_cancel(self, service, database, make_booking):
        booking = await self._pending_deposit(service, make_booking)

        cancelled = await service.submit_user_response(booking.response_token, "cancel", message="Plans changed")

        assert cancelled.status == S.CANCELLED
        history = await history_of(database, booking.id)
        assert (history[-1].changed_by, history[-1].change_reason) == ("user", "Plans changed")

    async def test_user_accept_records_response(self, service, make_booking):
        booking = await self._pending_deposit(service, make_booking)
        accepted = await service.submit_user_response(booking.response_token, "accept")
        assert accepted.status == S.PENDING_DEPOSIT
        assert accepted.user_response == "Accepted"
        assert accepted.response_date is not None

    async def test_unknown_response(self, service, make_booking):
        booking = await self._pending_deposit(service, make_booking)
        with pytest.raises(ValidationError):
            await service.submit_user_response(booking.response_token, "maybe")

    async def test_reject_deposit_does_not_promote_onto_a_confirmed_slot(self, service, database, oracle, make_booking, load_booking):
        await make_booking(start_date="2031-05-20", start_time="09:00", end_time="11:00", status=S.CONFIRMED)
        renegotiating = await make_booking(
            start_time="10:00", end_time="14:00", status=S.PAID_DEPOSIT,
            deposit_verified_at=hours_ago(24), deposit_evidence_url="uploads/slip.png",
            proposed_date="2031-05-20", proposed_start_time="09:00", proposed_end_time="11:00",
        )

        with pytest.raises(ConflictError):
            await service.perform_action(renegotiating.id, AdminAction.REJECT_DEPOSIT)

        unchanged = await load_booking(renegotiating.id)
        assert (unchanged.status, unchanged.start_date, unchanged.proposed_date) == (
            S.PAID_DEPOSIT, FUTURE, "2031-05-20",
        )
        async with database.get_session() as session:
            result = await OverlapEngine(session, oracle).conflicts_for_fields("2031-05-20", None, "09:30", "10:00")
        assert len(result.matches) == 1

    async def test_reject_deposit_promotes_a_free_proposal(self, service, make_booking):
        renegotiating = await make_booking(
            start_time="10:00", end_time="14:00", status=S.PAID_DEPOSIT,
            deposit_verified_at=hours_ago(24), deposit_evidence_url="uploads/slip.png",
            proposed_date="2031-05-20", proposed_start_time="09:00", proposed_end_time="11:00",
        )

        updated = await service.perform_action(renegotiating.id, AdminAction.REJECT_DEPOSIT)

        assert updated.status == S.PENDING_DEPOSIT
        assert (updated.start_date, updated.start_time, updated.end_time) == ("2031-05-20", "09:00", "11:00")
        assert updated.proposed_date is None


class TestTokens:
    async def test_unknown_token(self, service):
        with pytest.raises(NotFoundError):
            await service.get_booking_by_token("0" * 64)

    async def test_expired_token(self, service, make_booking):
        await make_booking(response_token="a" * 64, token_expires_at=hours_ago(0.2), status=S.PENDING_DEPOSIT)
        with pytest.raises(TokenExpiredError):
            await service.get_booking_by_token("a" * 64)

    async def test_within_grace_period(self, service, make_booking):
        booking = await make_booking(response_token="b" * 64, token_expires_at=hours_ago(0.05))
        assert (await service.get_booking_by_token("b" * 64)).id == booking.id

    async def test_deposit_upload_uses_extended_grace(self, service, make_booking, load_booking):
        booking = await make_booking(
            response_token="c" * 64, token_expires_at=hours_ago(0.2), status=S.PENDING_DEPOSIT,
        )

        updated = await service.record_deposit_evidence("c" * 64, "uploads/slip.jpg")

        assert updated.status == S.PAID_DEPOSIT
        assert updated.deposit_evidence_url == "uploads/slip.jpg"
        assert (await load_booking(booking.id)).status == S.PAID_DEPOSIT

    async def test_deposit_upload_in_wrong_status(self, service, make_booking):
        await make_booking(response_token="d" * 64, token_expires_at=hours_ago(-24), status=S.CONFIRMED)
        with pytest.raises(TransitionDeniedError):
            await service.record_deposit_evidence("d" * 64, "uploads/slip.jpg")

    @pytest.mark.parametrize("operation", ["respond", "deposit"])
    async def test_token_writes_lock_calendar_before_loading(self, service, make_booking, monkeypatch, operation):
        await make_booking(response_token="e" * 64, token_expires_at=hours_ago(-24), status=S.PENDING_DEPOSIT)
        events = []
        lock_calendar = Transaction.lock_calendar
        load_by_token = LifecycleService._load_by_token

        async def recording_lock(tx):
            events.append("lock")
            await lock_calendar(tx)

        async def recording_load(self, session, token, extended=False, for_update=False):
            events.append(("load", for_update))
            return await load_by_token(self, session, token, extended, for_update)

        monkeypatch.setattr(Transaction, "lock_calendar", recording_lock)
        monkeypatch.setattr(LifecycleService, "_load_by_token", recording_load)

        if operation == "respond":
            await service.submit_user_response("e" * 64, "accept")
        else:
            await service.record_deposit_evidence("e" * 64, "uploads/slip.jpg")

        assert events[:2] == ["lock", ("load", True)]


class TestRestoration:
    async def _cancelled_after_confirmation(self, make_booking, **fields):
        return await make_booking(
            start_time="10:00", end_time="12:00", status=S.CANCELLED,
            deposit_verified_at=hours_ago(48), deposit_evidence_url="uploads/slip.png", **fields,
        )

    @pytest.mark.parametrize("target", [S.PENDING_DEPOSIT, S.PAID_DEPOSIT])
    async def test_restore_over_a_taken_slot_is_refused(self, service, make_booking, load_booking, target):
        restored = await self._cancelled_after_confirmation(make_booking)
        taker = await make_booking(start_time="11:00", end_time="13:00", status=S.PAID_DEPOSIT)
        await service.apply_transition(taker.id, S.CONFIRMED)

        with pytest.raises(ConflictError):
            await service.apply_transition(restored.id, target)

        assert (await load_booking(restored.id)).status == S.CANCELLED

    @pytest.mark.parametrize("target", [S.PENDING_DEPOSIT, S.PAID_DEPOSIT])
    async def test_restore_into_a_free_slot_blocks_again(self, service, database, oracle, make_booking, target):
        restored = await self._cancelled_after_confirmation(make_booking)

        updated = await service.apply_transition(restored.id, target)

        assert updated.status == target
        async with database.get_session() as session:
            blocking = await OverlapEngine(session, oracle).blocking_intervals()
        assert [entry.booking_id for entry in blocking] == [restored.id]

    async def test_unverified_booking_restores_without_overlap_check(self, service, make_booking):
        await make_booking(start_time="10:00", end_time="12:00", status=S.CONFIRMED)
        restored = await make_booking(start_time="10:00", end_time="12:00", status=S.CANCELLED)

        updated = await service.apply_transition(restored.id, S.PENDING_DEPOSIT)

        assert updated.status == S.PENDING_DEPOSIT


class TestChangeDate:
    async def test_moves_confirmed_booking(self, service, database, make_booking):
        booking = await make_booking(start_time="10:00", end_time="12:00", status=S.CONFIRMED)

        updated = await service.perform_action(
            booking.id, AdminAction.CHANGE_DATE,
            new_dates=CandidateFields("2031-06-01", "2031-06-02", "18:00", "10:00"),
        )

        assert (updated.start_date, updated.end_date) == ("2031-06-01", "2031-06-02")
        assert updated.status == S.CONFIRMED
        assert await history_of(database, booking.id) == []

    async def test_refuses_overlap(self, service, make_booking):
        await make_booking(start_date="2031-06-01", status=S.CONFIRMED)
        booking = await make_booking(status=S.CONFIRMED)
        with pytest.raises(ConflictError):
            await service.change_date(booking.id, CandidateFields("2031-06-01"))

    async def test_only_for_confirmed(self, service, make_booking):
        booking = await make_booking(status=S.PENDING)
        with pytest.raises(TransitionDeniedError):
            await service.change_date(booking.id, CandidateFields("2031-06-01"))


class TestAutoUpdate:
    async def test_sweep(self, service, make_booking, load_booking):
        stale = await make_booking(start_date="2031-01-10", status=S.PENDING_DEPOSIT)
        done = await make_booking(start_date="2031-01-05", end_date="2031-01-06", status=S.CONFIRMED)
        running = await make_booking(start_date="2031-01-14", end_date="2031-01-16", status=S.CONFIRMED)
        future = await make_booking(start_date="2031-02-01", status=S.PENDING)

        result = await service.auto_update(now=utc(2031, 1, 15, 12, 0))

        assert (result.cancelled, result.finished, result.failed) == (1, 1, 0)
        assert (await load_booking(stale.id)).status == S.CANCELLED
        assert (await load_booking(done.id)).status == S.FINISHED
        assert (await load_booking(running.id)).status == S.CONFIRMED
        assert (await load_booking(future.id)).status == S.PENDING

    async def test_system_actor_in_history(self, service, database, make_booking):
        booking = await make_booking(start_date="2031-01-10")
        await service.auto_update(now=utc(2031, 1, 15))
        history = await history_of(database, booking.id)
        assert history[-1].changed_by == "system"

    async def test_one_failure_does_not_stop_the_sweep(self, service, make_booking, load_booking):
        broken = await make_booking(start_date="2031-01-10", status=S.PENDING)
        fine = await make_booking(start_date="2031-01-11", status=S.PENDING)

        original = service._auto_update_one

        async def _flaky(tx, booking_id, oracle):
            if booking_id == broken.id:
                raise RuntimeError("boom")
            return await original(tx, booking_id, oracle)

        service._auto_update_one = _flaky
        result = await service.auto_update(now=utc(2031, 1, 15))

        assert (result.cancelled, result.failed) == (1, 1)
        assert (await load_booking(fine.id)).status == S.CANCELLED


class TestReads:
    async def test_history_newest_first(self, service, make_booking):
        booking = await make_booking(status=S.PAID_DEPOSIT, deposit_evidence_url="uploads/slip.png")
        await service.apply_transition(booking.id, S.PENDING_DEPOSIT)
        await service.apply_transition(booking.id, S.CANCELLED)

        history = await service.get_status_history(booking.id)

        assert [h.new_status for h in history] == [S.CANCELLED, S.PENDING_DEPOSIT]

    async def test_available_actions(self, service, make_booking):
        booking = await make_booking(status=S.PAID_DEPOSIT, deposit_evidence_url="uploads/slip.png")
        actions = await service.get_available_actions(booking.id)
        assert actions[0].action == AdminAction.ACCEPT_DEPOSIT

    async def test_validate_past_start(self, service, make_booking):
        booking = await make_booking(start_date="2020-01-01")
        report = await service.validate_action(booking.id, AdminAction.ACCEPT)
        assert not report.valid
        assert any("in the past" in error for error in report.errors)

    async def test_validate_overlap_is_a_warning(self, service, make_booking):
        await make_booking(status=S.CONFIRMED, name="Wedding")
        booking = await make_booking(status=S.PENDING_DEPOSIT)

        report = await service.validate_action(booking.id, AdminAction.CONFIRM_OTHER_CHANNEL)

        assert report.valid
        assert len(report.overlapping) == 1
        assert any("Wedding" in warning for warning in report.warnings)

    async def test_validate_missing_evidence(self, service, make_booking):
        booking = await make_booking(status=S.PAID_DEPOSIT, response_date=hours_ago(0.01))
        report = await service.validate_action(booking.id, AdminAction.ACCEPT_DEPOSIT)
        assert not report.valid
        assert any("deposit evidence" in error for error in report.errors)
        assert any("recently responded" in warning for warning in report.warnings)
