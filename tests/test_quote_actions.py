from datetime import date
from decimal import Decimal

import pytest

from labquote import db
from labquote.decorators import actor_from_user
from labquote.errors import (
    InvalidTransition, InvariantViolation, PermissionDenied, ValidationError,
)
from labquote.lifecycle import LOCKED_STATUSES
from labquote.models import ActivityLogEntry, Quote, QuoteItem, QuoteStatus, TrackingEvent, UsageRecord, User
from labquote.services import quote_actions


def _entries(quote_id, activity_type=None):
    query = ActivityLogEntry.query.filter_by(quote_id=quote_id)
    if activity_type:
        query = query.filter_by(activity_type=activity_type)
    return query.all()


def _reload(quote):
    return db.session.get(Quote, quote.id)


# --- drafting ---

def test_create_quote_with_items(requester_actor, lab, product):
    result = quote_actions.create_quote(requester_actor, lab.id, items=[
        {"product_id": product.id, "price": "250", "additional_samples": 2, "additional_report_headers": 1,
         "client": "ACME"},
    ])
    quote = result.quote
    assert quote.status == QuoteStatus.DRAFT.value
    assert len(quote.items) == 1
    item = quote.items[0]
    assert item.additional_headers_data == [{"client": "", "sample": "", "manufacturer": "", "batch": ""}]
    assert [e.activity_type for e in _entries(quote.id)] == ["created"]


def test_lab_cannot_create_quotes(lab_actor, lab):
    with pytest.raises(PermissionDenied):
        quote_actions.create_quote(lab_actor, lab.id)


def test_item_header_records_must_fit_count(requester_actor, lab, product):
    with pytest.raises(ValidationError):
        quote_actions.create_quote(requester_actor, lab.id, items=[{
            "product_id": product.id,
            "additional_report_headers": 1,
            "additional_headers_data": [{"client": "a"}, {"client": "b"}],
        }])
    assert Quote.query.count() == 0


def test_add_item_and_resize_headers(requester_actor, make_quote, product):
    quote = make_quote(items=[])
    result = quote_actions.add_item(requester_actor, quote.id, {"product_id": product.id, "price": "100"})
    item_id = result.extra["item"]["id"]
    assert _entries(quote.id, "item_added")[0].meta["item_id"] == item_id

    quote_actions.update_item(requester_actor, quote.id, item_id, {"additional_headers_data": [{"batch": "B1"}]})
    item = db.session.get(QuoteItem, item_id)
    assert item.additional_report_headers == 1
    quote_actions.update_item(requester_actor, quote.id, item_id, {"additional_report_headers": 3})
    item = db.session.get(QuoteItem, item_id)
    assert item.additional_report_headers == 3
    assert item.additional_headers_data[0]["batch"] == "B1"
    assert len(item.additional_headers_data) == 3


@pytest.mark.parametrize("price", ["NaN", "Infinity", "-Infinity"])
def test_non_finite_item_price_is_rejected(requester_actor, make_quote, product, price):
    quote = make_quote(items=[])
    with pytest.raises(ValidationError):
        quote_actions.add_item(requester_actor, quote.id, {"product_id": product.id, "price": price})
    assert QuoteItem.query.filter_by(quote_id=quote.id).count() == 0


def test_corrupt_header_data_fails_the_read(requester_actor, make_quote):
    quote = make_quote(items=[{"price": Decimal("10"), "additional_report_headers": 2,
                               "additional_headers_data": [{"client": "x"}]}])
    with pytest.raises(InvariantViolation):
        quote_actions.get_quote(requester_actor, quote.id)
    # nothing was repaired behind our back
    assert db.session.get(Quote, quote.id).items[0].additional_headers_data == [{"client": "x"}]


# --- submit ---

def test_submit_sends_priced_snapshot_to_lab(requester_actor, requester, make_quote, mailer):
    quote = make_quote(items=[{"price": Decimal("250"), "additional_samples": 2, "additional_report_headers": 1}])

    result = quote_actions.submit(requester_actor, quote.id)

    assert _reload(quote).status == QuoteStatus.SENT_TO_VENDOR.value
    assert result.notification_error is None
    assert mailer.sent[0]["recipient"] == "orders@acme-lab.example"
    assert mailer.sent[0]["subject"] == "Quote Request - Pending Assignment"
    assert "Total: $380.00" in mailer.sent[0]["html_body"]
    (entry,) = _entries(quote.id)
    assert entry.activity_type == "email_sent"
    assert entry.meta["grand_total"] == "380.00"
    assert entry.meta["discount_percent"] == "5.00"
    assert UsageRecord.query.filter_by(user_id=requester.id).one().items_sent == 1


def test_submit_requires_lab_contact(requester_actor, make_quote, lab):
    lab.contact_email = None
    db.session.commit()
    quote = make_quote()
    with pytest.raises(ValidationError):
        quote_actions.submit(requester_actor, quote.id)
    assert _reload(quote).status == QuoteStatus.DRAFT.value
    assert _entries(quote.id) == []


def test_submit_requires_priced_items(requester_actor, make_quote):
    quote = make_quote(items=[{"price": None}])
    with pytest.raises(ValidationError):
        quote_actions.submit(requester_actor, quote.id)


def test_submit_respects_monthly_quota(requester_actor, requester, make_quote):
    requester.monthly_item_limit = 1
    db.session.commit()
    quote = make_quote(items=[{"price": Decimal("10")}, {"price": Decimal("20")}])
    with pytest.raises(ValidationError) as excinfo:
        quote_actions.submit(requester_actor, quote.id)
    assert excinfo.value.extra["remaining_items"] == 1
    assert _reload(quote).status == QuoteStatus.DRAFT.value


def test_submit_email_failure_is_not_fatal(requester_actor, make_quote, mailer):
    mailer.fail = True
    quote = make_quote()
    result = quote_actions.submit(requester_actor, quote.id)
    assert result.notification_error
    assert _reload(quote).status == QuoteStatus.SENT_TO_VENDOR.value
    assert len(_entries(quote.id, "email_sent")) == 1


def test_submit_uses_default_template(requester_actor, requester, lab, make_quote, mailer):
    from labquote.templating import create_template

    create_template(requester.id, "Mine", "Order for {{lab_name}}", "Items:\n{{quote_items}}", lab_id=lab.id, is_default=True)
    quote = make_quote()
    quote_actions.submit(requester_actor, quote.id)
    assert mailer.sent[0]["subject"] == "Order for Acme Analytical"


# --- lab decisions ---

def test_plain_approval_goes_to_payment(lab_actor, make_quote, mailer):
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    result = quote_actions.approve(lab_actor, quote.id, lab_response="Looks good")
    quote = _reload(quote)
    assert quote.status == QuoteStatus.APPROVED_PAYMENT_PENDING.value
    assert quote.quote_number.startswith("QT-")
    assert quote.quote_number.endswith(f"{quote.id:06d}")
    assert quote.discount_amount is None
    assert result.extra["modified"] is False
    assert [e.activity_type for e in _entries(quote.id)] == ["lab_approved"]
    assert mailer.sent[0]["recipient"] == "requester@example.com"


def test_discount_equal_to_tier_is_not_a_modification(lab_actor, make_quote):
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    quote_actions.approve(lab_actor, quote.id, discount_percent="5")
    quote = _reload(quote)
    assert quote.status == QuoteStatus.APPROVED_PAYMENT_PENDING.value
    assert quote.discount_amount is None


def test_discount_change_needs_customer_approval(lab_actor, make_quote):
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR, lab_quote_number="LAB-9")
    result = quote_actions.approve(lab_actor, quote.id, discount_percent=15)
    quote = _reload(quote)
    assert quote.status == QuoteStatus.AWAITING_CUSTOMER_APPROVAL.value
    assert quote.discount_type == "percentage"
    assert quote.discount_amount == Decimal("15.00")
    assert result.extra["pricing"]["grand_total"] == "212.50"
    (entry,) = _entries(quote.id)
    assert entry.activity_type == "lab_modified"
    assert entry.meta["changes_made"] == ["discount"]
    assert entry.meta["new_discount"] == "15.00"


def test_price_change_needs_customer_approval(lab_actor, make_quote):
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    item_id = quote.items[0].id
    quote_actions.approve(lab_actor, quote.id, item_prices={str(item_id): "300"})
    quote = _reload(quote)
    assert quote.status == QuoteStatus.AWAITING_CUSTOMER_APPROVAL.value
    assert quote.items[0].price == Decimal("300.00")
    entry = _entries(quote.id, "lab_modified")[0]
    assert entry.meta["old_prices"] == {str(item_id): "250.00"}
    assert entry.meta["new_prices"] == {str(item_id): "300.00"}


def test_unchanged_prices_are_not_a_modification(lab_actor, make_quote):
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    quote_actions.approve(lab_actor, quote.id, item_prices={quote.items[0].id: "250.00"})
    assert _reload(quote).status == QuoteStatus.APPROVED_PAYMENT_PENDING.value


@pytest.mark.parametrize("kwargs", [
    {"discount_percent": "NaN"},
    {"discount_percent": "Infinity"},
    {"item_prices": ["300"]},
    {"item_prices": "300"},
])
def test_malformed_approval_input_is_rejected(lab_actor, make_quote, kwargs):
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    with pytest.raises(ValidationError):
        quote_actions.approve(lab_actor, quote.id, **kwargs)
    assert _reload(quote).status == QuoteStatus.SENT_TO_VENDOR.value
    assert _entries(quote.id) == []


def test_requester_cannot_approve(requester_actor, make_quote):
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    with pytest.raises(PermissionDenied):
        quote_actions.approve(requester_actor, quote.id)
    assert _reload(quote).status == QuoteStatus.SENT_TO_VENDOR.value


def test_other_lab_cannot_see_quote(make_quote, other_lab):
    outsider = User(login_id="outsider", display_name="Outsider", email="outsider@example.com",
                    role="lab", lab_id=other_lab.id, is_active=True)
    outsider.set_password("password123")
    db.session.add(outsider)
    db.session.commit()
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    with pytest.raises(PermissionDenied):
        quote_actions.reject(actor_from_user(outsider), quote.id)


def test_reject_is_terminal(lab_actor, requester_actor, make_quote):
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    quote_actions.reject(lab_actor, quote.id, lab_response="Cannot test this compound")
    quote = _reload(quote)
    assert quote.status == QuoteStatus.REJECTED.value
    assert quote.lab_response == "Cannot test this compound"
    with pytest.raises(InvalidTransition):
        quote_actions.accept(requester_actor, quote.id)


def test_customer_accepts_and_declines(requester_actor, make_quote):
    accepted = make_quote(status=QuoteStatus.AWAITING_CUSTOMER_APPROVAL, discount_type="percentage",
                          discount_amount=Decimal("15"))
    result = quote_actions.accept(requester_actor, accepted.id)
    assert _reload(accepted).status == QuoteStatus.APPROVED_PAYMENT_PENDING.value
    assert result.activity.meta["grand_total"] == "212.50"

    declined = make_quote(status=QuoteStatus.AWAITING_CUSTOMER_APPROVAL)
    quote_actions.decline(requester_actor, declined.id, reason="too expensive")
    assert _reload(declined).status == QuoteStatus.REJECTED.value
    assert _entries(declined.id, "customer_rejected")[0].meta["reason"] == "too expensive"


# --- payment and shipping ---

def test_payment_auto_advances_once(requester_actor, make_quote, mailer):
    quote = make_quote(status=QuoteStatus.APPROVED_PAYMENT_PENDING)
    quote_actions.record_payment(requester_actor, quote.id, payment_amount_usd="380", payment_date="2024-03-02")
    quote = _reload(quote)
    assert quote.status == QuoteStatus.PAID_AWAITING_SHIPPING.value
    assert quote.payment_amount_usd == Decimal("380.00")
    assert quote.payment_date == date(2024, 3, 2)
    assert mailer.sent[0]["recipient"] == "orders@acme-lab.example"

    with pytest.raises(InvalidTransition):
        quote_actions.record_payment(requester_actor, quote.id, payment_status="paid")
    assert len(_entries(quote.id, "payment_recorded")) == 1


def test_payment_needs_some_detail(requester_actor, make_quote):
    quote = make_quote(status=QuoteStatus.APPROVED_PAYMENT_PENDING)
    with pytest.raises(ValidationError):
        quote_actions.record_payment(requester_actor, quote.id, transaction_id="tx-1")


def test_payment_cannot_skip_approval(requester_actor, make_quote):
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    with pytest.raises(InvalidTransition):
        quote_actions.record_payment(requester_actor, quote.id, payment_status="paid")


def test_lab_cannot_record_payment(lab_actor, make_quote):
    quote = make_quote(status=QuoteStatus.APPROVED_PAYMENT_PENDING)
    with pytest.raises(PermissionDenied):
        quote_actions.record_payment(lab_actor, quote.id, payment_status="paid")


def test_payment_email_failure_keeps_payment(requester_actor, make_quote, mailer):
    mailer.fail = True
    quote = make_quote(status=QuoteStatus.APPROVED_PAYMENT_PENDING)
    result = quote_actions.record_payment(requester_actor, quote.id, payment_status="paid")
    assert result.notification_error
    assert _reload(quote).status == QuoteStatus.PAID_AWAITING_SHIPPING.value


def test_audit_failure_rolls_back_transition(requester_actor, make_quote, monkeypatch):
    quote = make_quote(status=QuoteStatus.APPROVED_PAYMENT_PENDING)

    def broken_log(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(quote_actions, "_log", broken_log)
    with pytest.raises(RuntimeError):
        quote_actions.record_payment(requester_actor, quote.id, payment_status="paid")
    quote = _reload(quote)
    assert quote.status == QuoteStatus.APPROVED_PAYMENT_PENDING.value
    assert quote.payment_status is None


def test_shipping_moves_to_in_transit(requester_actor, make_quote):
    quote = make_quote(status=QuoteStatus.PAID_AWAITING_SHIPPING, payment_status="paid")
    quote_actions.add_shipping(requester_actor, quote.id, " 1Z999AA10123456784 ")
    quote = _reload(quote)
    assert quote.status == QuoteStatus.IN_TRANSIT.value
    assert quote.tracking_number == "1Z999AA10123456784"
    assert quote.shipped_date is not None
    event = TrackingEvent.query.filter_by(quote_id=quote.id).one()
    assert event.source == "manual"
    assert event.details["old_status"] == "paid_awaiting_shipping"

    with pytest.raises(InvalidTransition):
        quote_actions.attach_tracking(requester_actor, quote.id, "1ZOTHER")


def test_shipping_requires_tracking_number(requester_actor, make_quote):
    quote = make_quote(status=QuoteStatus.PAID_AWAITING_SHIPPING)
    with pytest.raises(ValidationError):
        quote_actions.add_shipping(requester_actor, quote.id, "  ")


# --- testing and completion ---

def test_quote_completes_only_when_every_item_is_done(lab_actor, requester_actor, make_quote, mailer):
    quote = make_quote(status=QuoteStatus.DELIVERED, items=[
        {"price": Decimal("100")}, {"price": Decimal("100")}, {"price": Decimal("100")},
    ])
    quote_actions.start_testing(lab_actor, quote.id)
    item_ids = [item.id for item in _reload(quote).items]
    assert {i.status for i in _reload(quote).items} == {"testing_in_progress"}

    first = quote_actions.submit_results(lab_actor, item_ids[0], test_results={"purity": "99.1%"})
    second = quote_actions.submit_results(lab_actor, item_ids[1], report_url="https://reports.example/2.pdf")
    assert _reload(quote).status == QuoteStatus.TESTING_IN_PROGRESS.value
    assert first.extra["quote_completed"] is False
    assert second.activity.meta["remaining_items"] == 1

    mailer.sent.clear()
    last = quote_actions.submit_results(lab_actor, item_ids[2])
    assert last.extra["quote_completed"] is True
    assert last.activity.meta["quote_completed"] is True
    assert _reload(quote).status == QuoteStatus.COMPLETED.value
    assert mailer.sent[0]["recipient"] == "requester@example.com"


def test_failed_item_blocks_completion(lab_actor, make_quote):
    quote = make_quote(status=QuoteStatus.TESTING_IN_PROGRESS, items=[
        {"price": Decimal("100"), "status": "completed"}, {"price": Decimal("100"), "status": "testing_in_progress"},
    ])
    item_id = quote.items[1].id
    quote_actions.submit_results(lab_actor, item_id, status="failed", testing_notes="sample degraded")
    assert _reload(quote).status == QuoteStatus.TESTING_IN_PROGRESS.value
    quote_actions.submit_results(lab_actor, item_id, status="completed")
    assert _reload(quote).status == QuoteStatus.COMPLETED.value


def test_results_need_testing_status(lab_actor, make_quote):
    quote = make_quote(status=QuoteStatus.DELIVERED)
    with pytest.raises(InvalidTransition):
        quote_actions.submit_results(lab_actor, quote.items[0].id)


def test_requester_cannot_submit_results(requester_actor, make_quote):
    quote = make_quote(status=QuoteStatus.TESTING_IN_PROGRESS)
    with pytest.raises(PermissionDenied):
        quote_actions.submit_results(requester_actor, quote.items[0].id)


# --- locking ---

@pytest.mark.parametrize("status", sorted(LOCKED_STATUSES, key=lambda s: s.value))
def test_locked_quote_rejects_requester_but_not_admin(status, requester_actor, admin_actor, make_quote):
    quote = make_quote(status=status)
    with pytest.raises(PermissionDenied):
        quote_actions.update_quote(requester_actor, quote.id, {"notes": "changed"})
    (denied,) = _entries(quote.id, "edit_denied")
    assert denied.meta == {"status": status.value, "fields": ["notes"], "role": "requester"}

    quote_actions.update_quote(admin_actor, quote.id, {"notes": "changed"})
    assert _reload(quote).notes == "changed"


@pytest.mark.parametrize("status", [QuoteStatus.SENT_TO_VENDOR, QuoteStatus.AWAITING_CUSTOMER_APPROVAL])
def test_pending_decisions_are_locked_even_for_admin(status, admin_actor, make_quote):
    quote = make_quote(status=status)
    with pytest.raises(PermissionDenied):
        quote_actions.update_quote(admin_actor, quote.id, {"notes": "changed"})
    assert _reload(quote).notes is None


def test_lab_edit_attempt_is_audited(lab_actor, make_quote):
    quote = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    with pytest.raises(PermissionDenied):
        quote_actions.update_quote(lab_actor, quote.id, {"notes": "lab note"})
    with pytest.raises(PermissionDenied):
        quote_actions.delete_quote(lab_actor, quote.id)

    denied = _entries(quote.id, "edit_denied")
    assert [e.meta for e in denied] == [
        {"status": "sent_to_vendor", "fields": ["notes"], "role": "lab"},
        {"status": "sent_to_vendor", "fields": ["delete"], "role": "lab"},
    ]
    assert _reload(quote).notes is None


def test_status_is_not_a_generic_field(admin_actor, make_quote):
    quote = make_quote()
    with pytest.raises(ValidationError):
        quote_actions.update_quote(admin_actor, quote.id, {"status": "completed"})


def test_delete_only_while_editable(requester_actor, admin_actor, make_quote):
    draft = make_quote()
    quote_actions.delete_quote(requester_actor, draft.id)
    assert db.session.get(Quote, draft.id) is None

    paid = make_quote(status=QuoteStatus.PAID_AWAITING_SHIPPING)
    with pytest.raises(PermissionDenied):
        quote_actions.delete_quote(requester_actor, paid.id)
    quote_actions.delete_quote(admin_actor, paid.id)
    assert db.session.get(Quote, paid.id) is None


# --- duplication ---

@pytest.mark.parametrize("status", list(QuoteStatus))
def test_duplicate_strips_payment_and_shipping(status, requester_actor, make_quote):
    source = make_quote(
        status=status,
        items=[
            {"price": Decimal("250"), "additional_report_headers": 1,
             "additional_headers_data": [{"client": "ACME", "sample": "S1", "manufacturer": "", "batch": ""}]},
            {"price": Decimal("90"), "status": "completed"},
        ],
        payment_status="paid",
        payment_amount_usd=Decimal("380"),
        tracking_number="1ZSRC",
        quote_number="QT-SRC",
    )
    result = quote_actions.duplicate(requester_actor, source.id)
    copy = result.quote

    assert copy.id != source.id
    assert copy.status == QuoteStatus.DRAFT.value
    assert copy.payment_status is None
    assert copy.tracking_number is None
    assert copy.quote_number is None
    assert len(copy.items) == 2
    assert copy.items[0].additional_headers_data[0]["client"] == "ACME"
    assert {i.status for i in copy.items} == {"pending"}
    assert _entries(copy.id, "duplicated")[0].meta["source_quote_id"] == source.id

    source = _reload(source)
    assert source.status == QuoteStatus(status).value
    assert source.tracking_number == "1ZSRC"
    assert _entries(source.id) == []


def test_admin_duplicate_keeps_original_owner(admin_actor, requester, make_quote):
    source = make_quote(status=QuoteStatus.COMPLETED)
    copy = quote_actions.duplicate(admin_actor, source.id).quote
    assert copy.user_id == requester.id


# --- reads ---

def test_lab_does_not_see_drafts(lab_actor, make_quote):
    make_quote()
    sent = make_quote(status=QuoteStatus.SENT_TO_VENDOR)
    assert [q.id for q in quote_actions.list_quotes(lab_actor)] == [sent.id]


def test_every_transition_writes_one_entry(requester_actor, lab_actor, make_quote):
    quote = make_quote()
    quote_actions.submit(requester_actor, quote.id)
    quote_actions.approve(lab_actor, quote.id, discount_percent=20)
    quote_actions.accept(requester_actor, quote.id)
    quote_actions.record_payment(requester_actor, quote.id, payment_status="paid")
    quote_actions.add_shipping(requester_actor, quote.id, "1ZFLOW")
    types = [e.activity_type for e in quote_actions.activity_for(requester_actor, quote.id)]
    assert types == ["email_sent", "lab_modified", "customer_approved", "payment_recorded", "shipping_added"]
