import itertools
from datetime import date
from types import SimpleNamespace

import pytest

from labquote.errors import InvalidTransition, PermissionDenied
from labquote.lifecycle import (
    ADMIN, CARRIER, LAB, LOCKED_STATUSES, REQUESTER, SYSTEM, TERMINAL_STATUSES,
    TRANSITIONS, QuoteEvent, allowed_events, available_actions, can_edit,
    generate_quote_number, is_locked, is_terminal, next_status,
)
from labquote.models.quote import QuoteStatus

ROLES = (REQUESTER, LAB, ADMIN, SYSTEM, CARRIER)


@pytest.mark.parametrize("status,event,role", list(itertools.product(QuoteStatus, QuoteEvent, ROLES)))
def test_only_table_edges_are_accepted(status, event, role):
    transition = TRANSITIONS.get((status, event))
    if transition is None:
        with pytest.raises(InvalidTransition):
            next_status(status, event, role)
        return
    allowed = role in transition.initiators or (
        role == ADMIN and bool(transition.initiators & {REQUESTER, LAB})
    )
    if allowed:
        assert next_status(status, event, role) == transition.target
    else:
        with pytest.raises(PermissionDenied):
            next_status(status, event, role)


def test_documented_edges():
    S, E = QuoteStatus, QuoteEvent
    assert next_status(S.DRAFT, E.SUBMIT, REQUESTER) == S.SENT_TO_VENDOR
    assert next_status(S.SENT_TO_VENDOR, E.LAB_APPROVE, LAB) == S.APPROVED_PAYMENT_PENDING
    assert next_status(S.SENT_TO_VENDOR, E.LAB_APPROVE_MODIFIED, LAB) == S.AWAITING_CUSTOMER_APPROVAL
    assert next_status(S.AWAITING_CUSTOMER_APPROVAL, E.CUSTOMER_DECLINE, REQUESTER) == S.REJECTED
    assert next_status(S.APPROVED_PAYMENT_PENDING, E.PAYMENT_RECORDED, SYSTEM) == S.PAID_AWAITING_SHIPPING
    assert next_status(S.PAID_AWAITING_SHIPPING, E.TRACKING_ATTACHED, SYSTEM) == S.IN_TRANSIT
    assert next_status(S.IN_TRANSIT, E.CARRIER_DELIVERED, CARRIER) == S.DELIVERED
    assert next_status(S.TESTING_IN_PROGRESS, E.ALL_ITEMS_COMPLETED, SYSTEM) == S.COMPLETED


def test_admin_acts_for_lab_and_requester_but_not_system():
    S, E = QuoteStatus, QuoteEvent
    assert next_status(S.SENT_TO_VENDOR, E.LAB_REJECT, ADMIN) == S.REJECTED
    assert next_status(S.AWAITING_CUSTOMER_APPROVAL, E.CUSTOMER_ACCEPT, ADMIN) == S.APPROVED_PAYMENT_PENDING
    with pytest.raises(PermissionDenied):
        next_status(S.IN_TRANSIT, E.CARRIER_DELIVERED, ADMIN)
    with pytest.raises(PermissionDenied):
        next_status(S.APPROVED_PAYMENT_PENDING, E.PAYMENT_RECORDED, ADMIN)


def test_terminal_statuses_have_no_exits():
    for status in TERMINAL_STATUSES:
        assert is_terminal(status.value)
        for role in ROLES:
            assert allowed_events(status, role) == []


def test_locking_rule():
    for status in QuoteStatus:
        if status in LOCKED_STATUSES:
            assert is_locked(status)
            assert not can_edit(status, REQUESTER)
            assert not can_edit(status, LAB)
            assert can_edit(status, ADMIN)
    assert not can_edit(QuoteStatus.SENT_TO_VENDOR, ADMIN)
    assert not can_edit(QuoteStatus.AWAITING_CUSTOMER_APPROVAL, ADMIN)
    assert can_edit(QuoteStatus.DRAFT, REQUESTER)
    assert not can_edit(QuoteStatus.SENT_TO_VENDOR, REQUESTER)


def test_unknown_status_is_invalid():
    with pytest.raises(InvalidTransition):
        next_status("archived", QuoteEvent.SUBMIT, REQUESTER)


def test_action_matrix():
    draft = SimpleNamespace(status="draft", tracking_number=None)
    assert available_actions(draft, REQUESTER)["send_to_vendor"]
    assert available_actions(draft, REQUESTER)["edit"]
    assert not available_actions(draft, LAB)["edit"]

    paid = SimpleNamespace(status="paid_awaiting_shipping", tracking_number=None)
    assert available_actions(paid, REQUESTER)["add_shipping"]
    assert not available_actions(paid, REQUESTER)["edit"]
    assert available_actions(paid, ADMIN)["edit"]

    pending = SimpleNamespace(status="sent_to_vendor", tracking_number=None)
    assert available_actions(pending, LAB)["approve_reject"]
    assert not available_actions(pending, ADMIN)["edit"]

    delivered = SimpleNamespace(status="delivered", tracking_number="1Z999")
    assert available_actions(delivered, LAB)["start_testing"]
    assert not available_actions(delivered, REQUESTER)["start_testing"]


def test_generated_quote_number():
    quote = SimpleNamespace(id=42)
    assert generate_quote_number(quote, today=date(2024, 5, 6)) == "QT-20240506-000042"
