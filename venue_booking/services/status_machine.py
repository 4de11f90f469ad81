"""
Booking status transition policy and the admin action surface.

Everything here is pure: no I/O, no store access. Guards that need the
calendar live in ``guards.py``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from ..models.booking import BookingStatus

S = BookingStatus

ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    S.PENDING: frozenset({S.PENDING_DEPOSIT, S.CANCELLED}),
    S.PENDING_DEPOSIT: frozenset({S.PAID_DEPOSIT, S.CONFIRMED, S.CANCELLED}),
    S.PAID_DEPOSIT: frozenset({S.CONFIRMED, S.PENDING_DEPOSIT, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.FINISHED, S.CANCELLED}),
    # Restoration, each edge guarded
    S.CANCELLED: frozenset({S.PENDING_DEPOSIT, S.PAID_DEPOSIT, S.CONFIRMED}),
    # Administrator force-override only
    S.FINISHED: frozenset({S.CONFIRMED}),
}

assert set(ALLOWED_TRANSITIONS) == set(BookingStatus), "every status needs a transition entry"

# Statuses whose canonical interval occupies the venue calendar
OCCUPYING_STATUSES: FrozenSet[BookingStatus] = frozenset({S.CONFIRMED})

# Statuses that keep blocking their original interval once a deposit was verified
RENEGOTIATION_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {S.PENDING, S.PENDING_DEPOSIT, S.PAID_DEPOSIT}
)

# Statuses that get a fresh response token when entered
TOKEN_ISSUING_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {S.PENDING_DEPOSIT, S.PAID_DEPOSIT, S.CONFIRMED}
)


@dataclass(frozen=True)
class LegalityCheck:
    legal: bool
    reason: Optional[str] = None


def allowed_targets(current: BookingStatus) -> FrozenSet[BookingStatus]:
    """Statuses reachable from ``current`` in one step, excluding the no-op."""
    return ALLOWED_TRANSITIONS[BookingStatus(current)]


def check_legal(current: BookingStatus, target: BookingStatus) -> LegalityCheck:
    """
    Decide whether ``current -> target`` is a legal edge.

    Moving to the same status is always legal. When illegal, the reason
    lists the allowed targets for display.
    """
    current = BookingStatus(current)
    target = BookingStatus(target)

    if current == target:
        return LegalityCheck(legal=True)

    allowed = allowed_targets(current)
    if target in allowed:
        return LegalityCheck(legal=True)

    allowed_text = ", ".join(sorted(status.value for status in allowed)) or "none"
    return LegalityCheck(
        legal=False,
        reason=(
            f"Invalid status transition from {current.value} to {target.value}. "
            f"Allowed transitions: {allowed_text}"
        ),
    )


class AdminAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    ACCEPT_DEPOSIT = "accept_deposit"
    ACCEPT_DEPOSIT_OTHER_CHANNEL = "accept_deposit_other_channel"
    REJECT_DEPOSIT = "reject_deposit"
    CANCEL = "cancel"
    CHANGE_DATE = "change_date"
    CONFIRM_OTHER_CHANNEL = "confirm_other_channel"
    FORCE_RESTORE = "force_restore"


# None means "stay in the current status"
ACTION_TARGETS: Dict[AdminAction, Optional[BookingStatus]] = {
    AdminAction.ACCEPT: S.PENDING_DEPOSIT,
    AdminAction.REJECT: S.CANCELLED,
    AdminAction.ACCEPT_DEPOSIT: S.CONFIRMED,
    AdminAction.ACCEPT_DEPOSIT_OTHER_CHANNEL: S.CONFIRMED,
    AdminAction.REJECT_DEPOSIT: S.PENDING_DEPOSIT,
    AdminAction.CANCEL: S.CANCELLED,
    AdminAction.CHANGE_DATE: None,
    AdminAction.CONFIRM_OTHER_CHANNEL: S.CONFIRMED,
    AdminAction.FORCE_RESTORE: S.CONFIRMED,
}

assert set(ACTION_TARGETS) == set(AdminAction), "every action needs a target"

# Actions that confirm without looking at uploaded evidence
OTHER_CHANNEL_ACTIONS = frozenset(
    {AdminAction.ACCEPT_DEPOSIT_OTHER_CHANNEL, AdminAction.CONFIRM_OTHER_CHANNEL}
)


def target_status_for(action: AdminAction, current: BookingStatus) -> BookingStatus:
    target = ACTION_TARGETS[AdminAction(action)]
    return BookingStatus(current) if target is None else target


@dataclass(frozen=True)
class ActionDescriptor:
    action: AdminAction
    label: str
    target_status: BookingStatus
    kind: str
    description: str
    requires_confirmation: bool = True
    requires_validation: bool = False
    requires_force_flag: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.action.value,
            "label": self.label,
            "target_status": self.target_status.value,
            "type": self.kind,
            "description": self.description,
            "requires_confirmation": self.requires_confirmation,
            "requires_validation": self.requires_validation,
            "requires_force_flag": self.requires_force_flag,
        }


def _cancel(target: BookingStatus = S.CANCELLED) -> ActionDescriptor:
    return ActionDescriptor(
        AdminAction.CANCEL, "Cancel", target, "destructive", "Cancel this booking"
    )


def available_actions(
    status: BookingStatus,
    has_deposit_evidence: bool = False,
    is_admin: bool = False,
    date_in_past: bool = False,
) -> List[ActionDescriptor]:
    """Admin-invocable actions for a booking in ``status``."""
    status = BookingStatus(status)
    actions: List[ActionDescriptor] = []

    if status == S.PENDING:
        if not date_in_past:
            actions.append(ActionDescriptor(
                AdminAction.ACCEPT, "Accept", S.PENDING_DEPOSIT, "primary",
                "Approve this booking request (user can upload deposit)",
                requires_validation=True,
            ))
        actions.append(ActionDescriptor(
            AdminAction.REJECT, "Reject", S.CANCELLED, "destructive", "Decline this booking",
        ))
        actions.append(_cancel())

    elif status == S.PENDING_DEPOSIT:
        actions.append(ActionDescriptor(
            AdminAction.CONFIRM_OTHER_CHANNEL, "Confirm (Other Channel)", S.CONFIRMED, "secondary",
            "Confirm booking - deposit verified through other channels (phone, in-person, etc.)",
            requires_validation=True,
        ))
        actions.append(_cancel())

    elif status == S.PAID_DEPOSIT:
        if has_deposit_evidence:
            actions.append(ActionDescriptor(
                AdminAction.ACCEPT_DEPOSIT, "Accept Deposit", S.CONFIRMED, "primary",
                "Accept deposit evidence and confirm booking",
                requires_validation=True,
            ))
        actions.append(ActionDescriptor(
            AdminAction.ACCEPT_DEPOSIT_OTHER_CHANNEL, "Confirm (Verified via Other Channel)",
            S.CONFIRMED, "secondary",
            "Confirm booking - deposit verified through other channels (phone, in-person, etc.)",
            requires_validation=True,
        ))
        actions.append(ActionDescriptor(
            AdminAction.REJECT_DEPOSIT, "Reject Deposit", S.PENDING_DEPOSIT, "destructive",
            "Reject deposit evidence, user must re-upload",
        ))
        actions.append(_cancel())

    elif status == S.CONFIRMED:
        actions.append(ActionDescriptor(
            AdminAction.CHANGE_DATE, "Change Date", S.CONFIRMED, "secondary",
            "Change booking dates (only for confirmed bookings)",
            requires_validation=True,
        ))
        actions.append(_cancel())

    elif status == S.FINISHED and is_admin:
        actions.append(ActionDescriptor(
            AdminAction.FORCE_RESTORE, "Force Restore to Confirmed", S.CONFIRMED, "secondary",
            "Force restore finished booking to confirmed (requires admin override)",
            requires_validation=True,
            requires_force_flag=True,
        ))

    # Cancelled bookings are restored through explicit transitions, not actions
    return actions


def get_action_definition(
    action: AdminAction,
    status: BookingStatus,
    has_deposit_evidence: bool = False,
    is_admin: bool = False,
    date_in_past: bool = False,
) -> Optional[ActionDescriptor]:
    for descriptor in available_actions(status, has_deposit_evidence, is_admin, date_in_past):
        if descriptor.action == AdminAction(action):
            return descriptor
    return None
