"""
Quote lifecycle: states, transitions, who may fire them, and edit locking.

Everything here is a pure function of (status, event, role). Persisting a
transition is the caller's job; see labquote.services.quote_actions.
"""
from collections import namedtuple
from datetime import datetime
from enum import Enum

from labquote.errors import InvalidTransition, PermissionDenied
from labquote.models.quote import QuoteStatus

REQUESTER = "requester"
LAB = "lab"
ADMIN = "admin"
SYSTEM = "system"    # auto-transitions fired by another mutation
CARRIER = "carrier"  # fired only by the tracking gate

USER_ROLES = (REQUESTER, LAB, ADMIN)


class QuoteEvent(str, Enum):
    SUBMIT = "submit"
    LAB_APPROVE = "lab_approve"
    LAB_APPROVE_MODIFIED = "lab_approve_modified"
    LAB_REJECT = "lab_reject"
    CUSTOMER_ACCEPT = "customer_accept"
    CUSTOMER_DECLINE = "customer_decline"
    PAYMENT_RECORDED = "payment_recorded"
    TRACKING_ATTACHED = "tracking_attached"
    CARRIER_IN_TRANSIT = "carrier_in_transit"
    CARRIER_DELIVERED = "carrier_delivered"
    START_TESTING = "start_testing"
    ALL_ITEMS_COMPLETED = "all_items_completed"


Transition = namedtuple("Transition", ["target", "initiators"])

S = QuoteStatus
E = QuoteEvent

TRANSITIONS = {
    (S.DRAFT, E.SUBMIT): Transition(S.SENT_TO_VENDOR, {REQUESTER}),
    (S.SENT_TO_VENDOR, E.LAB_APPROVE): Transition(S.APPROVED_PAYMENT_PENDING, {LAB}),
    (S.SENT_TO_VENDOR, E.LAB_APPROVE_MODIFIED): Transition(S.AWAITING_CUSTOMER_APPROVAL, {LAB}),
    (S.SENT_TO_VENDOR, E.LAB_REJECT): Transition(S.REJECTED, {LAB}),
    (S.AWAITING_CUSTOMER_APPROVAL, E.CUSTOMER_ACCEPT): Transition(S.APPROVED_PAYMENT_PENDING, {REQUESTER}),
    (S.AWAITING_CUSTOMER_APPROVAL, E.CUSTOMER_DECLINE): Transition(S.REJECTED, {REQUESTER}),
    (S.APPROVED_PAYMENT_PENDING, E.PAYMENT_RECORDED): Transition(S.PAID_AWAITING_SHIPPING, {SYSTEM}),
    (S.PAID_AWAITING_SHIPPING, E.TRACKING_ATTACHED): Transition(S.IN_TRANSIT, {SYSTEM}),
    (S.PAID_AWAITING_SHIPPING, E.CARRIER_IN_TRANSIT): Transition(S.IN_TRANSIT, {CARRIER}),
    (S.IN_TRANSIT, E.CARRIER_DELIVERED): Transition(S.DELIVERED, {CARRIER}),
    (S.DELIVERED, E.START_TESTING): Transition(S.TESTING_IN_PROGRESS, {LAB}),
    (S.TESTING_IN_PROGRESS, E.ALL_ITEMS_COMPLETED): Transition(S.COMPLETED, {SYSTEM}),
}

TERMINAL_STATUSES = frozenset({S.REJECTED, S.COMPLETED})

LOCKED_STATUSES = frozenset({
    S.PAID_AWAITING_SHIPPING,
    S.IN_TRANSIT,
    S.DELIVERED,
    S.TESTING_IN_PROGRESS,
    S.COMPLETED,
})

# outstanding lab/customer decisions: not even admins edit here
ADMIN_EDIT_EXCLUDED = frozenset({S.SENT_TO_VENDOR, S.AWAITING_CUSTOMER_APPROVAL})

# statuses where a tracking number is still worth polling
ACTIVE_TRACKING_STATUSES = frozenset({S.PAID_AWAITING_SHIPPING, S.IN_TRANSIT})


def _status(value):
    try:
        return QuoteStatus(value)
    except ValueError:
        raise InvalidTransition(f"unknown quote status: {value!r}")


def may_initiate(initiators, role):
    if role in initiators:
        return True
    # admin may do anything a requester or lab may do, never system/carrier events
    return role == ADMIN and bool(initiators & {REQUESTER, LAB})


def next_status(status, event, role):
    """
    Resolve the status reached when `role` fires `event` on a quote in `status`.
    Raises InvalidTransition when no such edge exists and PermissionDenied
    when the edge exists but `role` may not fire it.
    """
    status = _status(status)
    event = QuoteEvent(event)
    transition = TRANSITIONS.get((status, event))
    if transition is None:
        raise InvalidTransition(
            f"cannot {event.value} a quote in status {status.value}",
            status=status.value,
            event=event.value,
        )
    if not may_initiate(transition.initiators, role):
        raise PermissionDenied(
            f"{role} may not {event.value} a quote in status {status.value}",
            status=status.value,
            event=event.value,
        )
    return transition.target


def allowed_events(status, role):
    status = _status(status)
    return [
        event for (src, event), t in TRANSITIONS.items()
        if src == status and may_initiate(t.initiators, role)
    ]


def is_terminal(status):
    return _status(status) in TERMINAL_STATUSES


def is_locked(status):
    return _status(status) in LOCKED_STATUSES


def can_edit(status, role):
    status = _status(status)
    if role == ADMIN:
        return status not in ADMIN_EDIT_EXCLUDED
    if is_locked(status):
        return False
    return role == REQUESTER and status == S.DRAFT


def can_delete(status, role):
    return can_edit(status, role)


def available_actions(quote, role):
    """Action matrix for one quote as seen by one role."""
    status = _status(quote.status)
    actions = {
        "view": True,
        "edit": False,
        "delete": False,
        "manage_items": False,
        "send_to_vendor": False,
        "approve_reject": False,
        "add_payment": False,
        "add_shipping": False,
        "refresh_tracking": False,
        "start_testing": False,
    }

    if status == S.DRAFT:
        actions["edit"] = can_edit(status, role)
        actions["delete"] = can_delete(status, role)
        actions["send_to_vendor"] = role in (REQUESTER, ADMIN)
    elif status == S.SENT_TO_VENDOR:
        actions["approve_reject"] = role in (LAB, ADMIN)
    elif status == S.AWAITING_CUSTOMER_APPROVAL:
        actions["approve_reject"] = role in (REQUESTER, ADMIN)
    elif status == S.APPROVED_PAYMENT_PENDING:
        actions["add_payment"] = role in (REQUESTER, ADMIN)
    elif status == S.PAID_AWAITING_SHIPPING:
        actions["add_shipping"] = role in (REQUESTER, ADMIN) and not quote.tracking_number
    elif status == S.IN_TRANSIT:
        actions["refresh_tracking"] = bool(quote.tracking_number)
    elif status == S.DELIVERED:
        actions["start_testing"] = role in (LAB, ADMIN)
        actions["manage_items"] = role in (LAB, ADMIN)
    elif status == S.TESTING_IN_PROGRESS:
        actions["manage_items"] = role in (LAB, ADMIN)

    if role == ADMIN and status not in ADMIN_EDIT_EXCLUDED:
        actions["edit"] = True
        actions["delete"] = True
        actions["manage_items"] = True

    return actions


def generate_quote_number(quote, today=None):
    """QT-YYYYMMDD-<zero padded id>, used when neither side supplied a number."""
    today = today or datetime.utcnow().date()
    return f"QT-{today.strftime('%Y%m%d')}-{int(quote.id):06d}"
