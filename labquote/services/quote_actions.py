"""
Quote mutation orchestrator.

Every public action here follows the same shape:
    1. permission and lifecycle checks (nothing written yet)
    2. the mutation itself, status changes as compare-and-set UPDATEs
    3. pricing when money is involved
    4. exactly one ActivityLogEntry
    5. commit, then notifications

Steps 2-4 share one transaction. A notification failure after commit is
logged and reported on the ActionResult; it never undoes the mutation.
"""
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from flask import current_app
from sqlalchemy import func

from labquote import db
from labquote.errors import (
    InvalidTransition, NotFound, NotificationError, PermissionDenied, ValidationError,
)
from labquote.lifecycle import (
    ADMIN, LAB, REQUESTER, SYSTEM, QuoteEvent, allowed_events, available_actions,
    can_delete, can_edit, generate_quote_number, is_terminal, next_status,
)
from labquote.models.activity_log import ActivityLogEntry, ActivityType
from labquote.models.email_template import EmailTemplate
from labquote.models.lab import Lab
from labquote.models.product import Product
from labquote.models.quote import Quote, QuoteStatus
from labquote.models.quote_item import ItemStatus, QuoteItem
from labquote.models.tracking_event import SOURCE_MANUAL, TrackingEvent
from labquote.models.user import User
from labquote.pricing import (
    normalize_discount_percent, price_for_quote, price_quote,
    stored_discount_percent, tiered_discount_percent, to_money,
)
from labquote.services import notifications
from labquote.services.usage import UsageService
from labquote.templating import build_quote_variables, render, select_template

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ITEM_TEXT_FIELDS = ("client", "sample", "manufacturer", "batch")
QUOTE_EDITABLE_FIELDS = ("notes", "quote_number", "lab_quote_number", "lab_id", "estimated_delivery")
ITEM_EDITABLE_FIELDS = ITEM_TEXT_FIELDS + (
    "price", "additional_samples", "additional_report_headers", "additional_headers_data",
)


@dataclass
class ActionResult:
    quote: Optional[Quote]
    activity: Optional[ActivityLogEntry] = None
    notification_error: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def to_dict(self):
        data = {
            "quote": self.quote.to_dict(with_items=True) if self.quote is not None else None,
            "activity": self.activity.to_dict() if self.activity is not None else None,
            "notification_error": self.notification_error,
        }
        data.update(self.extra)
        return data


# --- helpers ---

def _now():
    return datetime.utcnow()


@contextmanager
def unit_of_work():
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _load_quote(quote_id):
    quote = db.session.get(Quote, quote_id)
    if quote is None:
        raise NotFound(f"quote {quote_id} not found")
    return quote


def _ensure_visible(actor, quote):
    if not quote.is_visible_to(actor):
        raise PermissionDenied(f"quote {quote.id} is not accessible", quote_id=quote.id)


def _require_role(actor, roles, what):
    if actor.role not in roles:
        raise PermissionDenied(f"{actor.role} may not {what}")


def _log(quote_id, actor, activity_type, description, **metadata):
    entry = ActivityLogEntry.build(
        quote_id, getattr(actor, "user_id", None), activity_type, description, **metadata
    )
    db.session.add(entry)
    return entry


def _compare_and_set(quote, from_status, to_status, *conditions, **values):
    """Move `quote` from one status to another only if it is still in `from_status`."""
    stmt = (
        db.update(Quote)
        .where(Quote.id == quote.id, Quote.status == from_status, *conditions)
        .values(status=to_status, updated_at=_now(), **values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise InvalidTransition(
            f"quote {quote.id} changed concurrently; expected status {from_status}",
            quote_id=quote.id,
        )
    db.session.refresh(quote)


def _notify(result, func_, *args):
    try:
        func_(*args)
    except NotificationError as e:
        current_app.logger.warning(
            "[NOTIFY] quote_id=%s notification failed: %s", getattr(result.quote, "id", None), e.message
        )
        result.notification_error = e.message


def _record_denied_edit(actor, quote, fields, reason):
    """Audit a refused edit in its own transaction, then refuse."""
    db.session.rollback()
    _log(
        quote.id, actor, ActivityType.EDIT_DENIED,
        f"Edit denied for {actor.role} while quote is {quote.status}",
        status=quote.status, fields=sorted(fields), role=actor.role,
    )
    db.session.commit()
    current_app.logger.warning(
        "[DENIED] user_id=%s role=%s quote_id=%s status=%s fields=%s",
        actor.user_id, actor.role, quote.id, quote.status, sorted(fields),
    )
    raise PermissionDenied(reason, quote_id=quote.id, status=quote.status)


def _ensure_editable(actor, quote, fields):
    _ensure_visible(actor, quote)
    if actor.role == LAB:
        _record_denied_edit(actor, quote, fields, "labs may not edit quote details")
    if not can_edit(quote.status, actor.role):
        _record_denied_edit(actor, quote, fields, f"quote {quote.id} cannot be edited while {quote.status}")


def _parse_date(value, name):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"{name} must be an ISO date (YYYY-MM-DD)")


def _text(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _owner_of(quote):
    return quote.owner or db.session.get(User, quote.user_id)


def _apply_item_fields(item, data):
    for name in ITEM_TEXT_FIELDS:
        if name in data:
            setattr(item, name, _text(data[name]))
    if "price" in data:
        item.price = to_money(data["price"]) if data["price"] not in (None, "") else None
        if item.price is not None and item.price < 0:
            raise ValidationError("price must be >= 0")
    if "additional_samples" in data:
        samples = data["additional_samples"] or 0
        try:
            samples = int(samples)
        except (TypeError, ValueError):
            raise ValidationError("additional_samples must be an integer")
        if samples < 0:
            raise ValidationError("additional_samples must be >= 0")
        item.additional_samples = samples
    if "additional_report_headers" in data or "additional_headers_data" in data:
        records = data.get("additional_headers_data")
        if "additional_report_headers" in data:
            count = data["additional_report_headers"]
        elif records is not None:
            count = len(records)
        else:
            count = item.additional_report_headers or 0
        try:
            count = int(count or 0)
        except (TypeError, ValueError):
            raise ValidationError("additional_report_headers must be an integer")
        item.resize_additional_headers(count, records)


def _build_item(data):
    if not isinstance(data, dict):
        raise ValidationError("each item must be an object")
    product_id = data.get("product_id")
    if not product_id:
        raise ValidationError("product_id is required for every item")
    product = db.session.get(Product, product_id)
    if product is None:
        raise ValidationError(f"unknown product {product_id}")
    unknown = set(data) - set(ITEM_EDITABLE_FIELDS) - {"product_id"}
    if unknown:
        raise ValidationError(f"unknown item fields: {sorted(unknown)}")
    item = QuoteItem(
        product=product,
        additional_samples=0,
        additional_report_headers=0,
        additional_headers_data=[],
        status=ItemStatus.PENDING.value,
    )
    _apply_item_fields(item, data)
    return item


# --- reads ---

def get_quote(actor, quote_id):
    """Load a quote for `actor`. Corrupt header data fails the read."""
    quote = _load_quote(quote_id)
    _ensure_visible(actor, quote)
    for item in quote.items:
        item.check_invariants()
    return quote


def quote_detail(actor, quote):
    data = quote.to_dict(with_items=True)
    data["pricing"] = price_for_quote(quote).to_dict()
    data["actions"] = available_actions(quote, actor.role)
    data["allowed_events"] = [event.value for event in allowed_events(quote.status, actor.role)]
    data["is_terminal"] = is_terminal(quote.status)
    return data


def list_quotes(actor, status=None):
    query = Quote.visible_to(actor)
    if status:
        try:
            status = QuoteStatus(status).value
        except ValueError:
            raise ValidationError(f"unknown status: {status}")
        query = query.filter(Quote.status == status)
    return query.order_by(Quote.created_at.desc(), Quote.id.desc()).all()


def activity_for(actor, quote_id):
    quote = _load_quote(quote_id)
    _ensure_visible(actor, quote)
    return (
        ActivityLogEntry.query
        .filter_by(quote_id=quote.id)
        .order_by(ActivityLogEntry.created_at, ActivityLogEntry.id)
        .all()
    )


def tracking_events_for(actor, quote_id):
    quote = _load_quote(quote_id)
    _ensure_visible(actor, quote)
    return TrackingEvent.query.filter_by(quote_id=quote.id).order_by(TrackingEvent.id).all()


# --- drafting ---

def create_quote(actor, lab_id, items=None, notes=None, quote_number=None):
    _require_role(actor, (REQUESTER, ADMIN), "create quotes")
    lab = db.session.get(Lab, lab_id) if lab_id else None
    if lab is None or not lab.is_active:
        raise ValidationError("a valid lab is required")
    with unit_of_work():
        quote = Quote(
            user_id=actor.user_id,
            lab_id=lab.id,
            status=QuoteStatus.DRAFT.value,
            notes=_text(notes),
            quote_number=_text(quote_number),
        )
        for data in items or []:
            quote.items.append(_build_item(data))
        db.session.add(quote)
        db.session.flush()
        entry = _log(quote.id, actor, ActivityType.CREATED, f"Quote created for {lab.name}", lab_id=lab.id)
    current_app.logger.info("[QUOTE] created quote_id=%s user_id=%s lab_id=%s", quote.id, actor.user_id, lab.id)
    return ActionResult(quote, entry)


def add_item(actor, quote_id, data):
    quote = _load_quote(quote_id)
    _ensure_editable(actor, quote, ["items"])
    with unit_of_work():
        item = _build_item(data)
        quote.items.append(item)
        db.session.flush()
        entry = _log(
            quote.id, actor, ActivityType.ITEM_ADDED, f"Added {item.compound_name}",
            item_id=item.id,
            product_id=item.product_id,
            additional_samples=item.additional_samples,
            additional_report_headers=item.additional_report_headers,
        )
    return ActionResult(quote, entry, extra={"item": item.to_dict()})


def update_quote(actor, quote_id, changes):
    """Generic field edit. Status, payment and shipping go through their own actions."""
    quote = _load_quote(quote_id)
    fields = set(changes or {})
    if not fields:
        raise ValidationError("no changes given")
    unknown = fields - set(QUOTE_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"fields not editable here: {sorted(unknown)}")
    _ensure_editable(actor, quote, fields)

    with unit_of_work():
        if "lab_id" in changes:
            if quote.status != QuoteStatus.DRAFT.value:
                raise ValidationError("lab can only be changed on a draft quote")
            lab = db.session.get(Lab, changes["lab_id"])
            if lab is None or not lab.is_active:
                raise ValidationError("a valid lab is required")
            quote.lab_id = lab.id
        for name in ("notes", "quote_number", "lab_quote_number"):
            if name in changes:
                setattr(quote, name, _text(changes[name]))
        if "estimated_delivery" in changes:
            quote.estimated_delivery = _parse_date(changes["estimated_delivery"], "estimated_delivery")
        entry = _log(
            quote.id, actor, ActivityType.UPDATED, f"Updated {', '.join(sorted(fields))}",
            fields=sorted(fields), status=quote.status,
        )
    return ActionResult(quote, entry)


def update_item(actor, quote_id, item_id, changes):
    quote = _load_quote(quote_id)
    item = db.session.get(QuoteItem, item_id)
    if item is None or item.quote_id != quote.id:
        raise NotFound(f"item {item_id} not found on quote {quote_id}")
    fields = set(changes or {})
    if not fields:
        raise ValidationError("no changes given")
    unknown = fields - set(ITEM_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"item fields not editable: {sorted(unknown)}")
    _ensure_editable(actor, quote, {f"items.{f}" for f in fields})
    item.check_invariants()

    with unit_of_work():
        _apply_item_fields(item, changes)
        entry = _log(
            quote.id, actor, ActivityType.UPDATED, f"Updated item {item.id}",
            fields=sorted(f"items.{f}" for f in fields), status=quote.status,
        )
    return ActionResult(quote, entry, extra={"item": item.to_dict()})


def delete_quote(actor, quote_id):
    quote = _load_quote(quote_id)
    _ensure_visible(actor, quote)
    if actor.role == LAB:
        _record_denied_edit(actor, quote, ["delete"], "labs may not delete quotes")
    if not can_delete(quote.status, actor.role):
        _record_denied_edit(actor, quote, ["delete"], f"quote {quote.id} cannot be deleted while {quote.status}")
    with unit_of_work():
        db.session.delete(quote)
    current_app.logger.info("[QUOTE] deleted quote_id=%s by user_id=%s", quote_id, actor.user_id)


def duplicate(actor, quote_id):
    """New draft with the source's items; payment and shipping are not carried over."""
    source = get_quote(actor, quote_id)
    _require_role(actor, (REQUESTER, ADMIN), "duplicate quotes")
    owner_id = actor.user_id if actor.role == REQUESTER else source.user_id

    with unit_of_work():
        copy = Quote(
            user_id=owner_id,
            lab_id=source.lab_id,
            status=QuoteStatus.DRAFT.value,
            notes=source.notes,
        )
        for item in source.items:
            copy.items.append(QuoteItem(
                product_id=item.product_id,
                client=item.client,
                sample=item.sample,
                manufacturer=item.manufacturer,
                batch=item.batch,
                price=item.price,
                additional_samples=item.additional_samples or 0,
                additional_report_headers=item.additional_report_headers or 0,
                additional_headers_data=[dict(r) for r in (item.additional_headers_data or [])],
                status=ItemStatus.PENDING.value,
            ))
        db.session.add(copy)
        db.session.flush()
        entry = _log(
            copy.id, actor, ActivityType.DUPLICATED, f"Duplicated from quote {source.id}",
            source_quote_id=source.id, item_count=len(copy.items),
        )
    current_app.logger.info("[QUOTE] duplicated quote_id=%s -> %s", source.id, copy.id)
    return ActionResult(copy, entry, extra={"source_quote_id": source.id})


# --- requester -> lab ---

def submit(actor, quote_id, template_id=None, usage=None):
    """draft -> sent_to_vendor: render the request email and send it to the lab."""
    quote = get_quote(actor, quote_id)
    target = next_status(quote.status, QuoteEvent.SUBMIT, actor.role)

    lab = quote.lab
    if lab is None or not lab.contact_email or not EMAIL_RE.match(lab.contact_email):
        raise ValidationError("the lab has no valid contact email on file")
    items = list(quote.items)
    if not items:
        raise ValidationError("add at least one item before sending")
    unpriced = [i.id for i in items if i.price is None]
    if unpriced:
        raise ValidationError("every item needs a price before sending", item_ids=unpriced)

    owner = _owner_of(quote)
    usage = usage or UsageService()
    if not usage.can_send_items(owner, len(items)):
        raise ValidationError(
            "monthly item limit reached",
            remaining_items=usage.get_remaining_items(owner),
        )

    if template_id:
        template = db.session.get(EmailTemplate, template_id)
        if template is None or template.user_id != quote.user_id:
            raise NotFound(f"email template {template_id} not found")
    else:
        template = select_template(quote.user_id, quote.lab_id)

    pricing = price_for_quote(quote, items)
    rendered = render(template, build_quote_variables(quote, items, pricing))

    with unit_of_work():
        _compare_and_set(quote, QuoteStatus.DRAFT.value, target.value)
        usage.record_usage(owner, len(items))
        entry = _log(
            quote.id, actor, ActivityType.EMAIL_SENT, f"Quote sent to {lab.name}",
            recipient=lab.contact_email,
            subject=rendered.subject,
            template_id=getattr(template, "id", None) if not isinstance(template, dict) else None,
            item_count=len(items),
            **pricing.summary(),
        )
    current_app.logger.info("[QUOTE] submitted quote_id=%s lab_id=%s items=%d", quote.id, lab.id, len(items))

    result = ActionResult(quote, entry, extra={"pricing": pricing.to_dict()})
    _notify(result, notifications.notify_quote_submitted, quote, rendered)
    return result


# --- lab decisions ---

def approve(actor, quote_id, item_prices=None, discount_percent=None, lab_quote_number=None, lab_response=None):
    """
    Lab approval. Any changed item price, or a discount that differs from
    what the quote would get anyway, sends the quote back to the requester
    (awaiting_customer_approval); otherwise it goes to payment.
    """
    quote = get_quote(actor, quote_id)
    items = {item.id: item for item in quote.items}

    if item_prices is not None and not isinstance(item_prices, dict):
        raise ValidationError("item_prices must be an object mapping item id to price")
    new_prices = {}
    for raw_id, raw_price in (item_prices or {}).items():
        try:
            item_id = int(raw_id)
        except (TypeError, ValueError):
            raise ValidationError(f"invalid item id: {raw_id!r}")
        if item_id not in items:
            raise ValidationError(f"item {item_id} is not on quote {quote.id}")
        price = to_money(raw_price)
        if price < 0:
            raise ValidationError("price must be >= 0")
        new_prices[item_id] = price

    old_prices = {i: items[i].price for i in items}
    changed_prices = {i: p for i, p in new_prices.items() if old_prices[i] is None or to_money(old_prices[i]) != p}

    lines = [
        {
            "price": changed_prices.get(i, item.price),
            "additional_samples": item.additional_samples,
            "additional_report_headers": item.additional_report_headers,
        }
        for i, item in items.items()
    ]
    new_discount = normalize_discount_percent(discount_percent)
    old_discount = stored_discount_percent(quote)
    baseline = old_discount if old_discount is not None else tiered_discount_percent(price_quote(lines).subtotal)
    discount_changed = new_discount is not None and new_discount != baseline

    modified = bool(changed_prices) or discount_changed
    event = QuoteEvent.LAB_APPROVE_MODIFIED if modified else QuoteEvent.LAB_APPROVE
    old_status = quote.status
    target = next_status(quote.status, event, actor.role)

    with unit_of_work():
        _compare_and_set(quote, old_status, target.value)
        for item_id, price in changed_prices.items():
            items[item_id].price = price
        if discount_changed:
            quote.discount_type = "percentage"
            quote.discount_amount = new_discount
        if lab_quote_number is not None:
            quote.lab_quote_number = _text(lab_quote_number)
        if lab_response is not None:
            quote.lab_response = _text(lab_response)
        if target == QuoteStatus.APPROVED_PAYMENT_PENDING and not quote.quote_number and not quote.lab_quote_number:
            quote.quote_number = generate_quote_number(quote)
        db.session.flush()
        pricing = price_for_quote(quote)

        if modified:
            entry = _log(
                quote.id, actor, ActivityType.LAB_MODIFIED, "Lab approved with modifications",
                status=target.value,
                lab_quote_number=quote.lab_quote_number,
                changes_made=sorted(
                    (["prices"] if changed_prices else []) + (["discount"] if discount_changed else [])
                ),
                old_prices={str(i): old_prices[i] for i in changed_prices},
                new_prices={str(i): p for i, p in changed_prices.items()},
                old_discount=old_discount,
                new_discount=new_discount if discount_changed else old_discount,
                **pricing.summary(),
            )
        else:
            entry = _log(
                quote.id, actor, ActivityType.LAB_APPROVED, "Lab approved the quote",
                status=target.value,
                lab_quote_number=quote.lab_quote_number,
                quote_number=quote.quote_number,
                changes_made=False,
                **pricing.summary(),
            )
    current_app.logger.info(
        "[QUOTE] approved quote_id=%s by user_id=%s %s->%s modified=%s",
        quote.id, actor.user_id, old_status, target.value, modified,
    )

    result = ActionResult(quote, entry, extra={"pricing": pricing.to_dict(), "modified": modified})
    owner = _owner_of(quote)
    _notify(result, notifications.notify_quote_status_changed, quote, old_status, target.value,
            owner.email, owner.display_name)
    return result


def reject(actor, quote_id, lab_response=None):
    quote = get_quote(actor, quote_id)
    old_status = quote.status
    target = next_status(quote.status, QuoteEvent.LAB_REJECT, actor.role)
    with unit_of_work():
        _compare_and_set(quote, old_status, target.value, lab_response=_text(lab_response))
        entry = _log(
            quote.id, actor, ActivityType.LAB_REJECTED, "Lab rejected the quote",
            status=target.value, lab_response=quote.lab_response,
        )
    current_app.logger.info("[QUOTE] rejected quote_id=%s by user_id=%s", quote.id, actor.user_id)

    result = ActionResult(quote, entry)
    owner = _owner_of(quote)
    _notify(result, notifications.notify_quote_status_changed, quote, old_status, target.value,
            owner.email, owner.display_name)
    return result


# --- requester response to a modified quote ---

def accept(actor, quote_id):
    quote = get_quote(actor, quote_id)
    old_status = quote.status
    target = next_status(quote.status, QuoteEvent.CUSTOMER_ACCEPT, actor.role)
    with unit_of_work():
        _compare_and_set(quote, old_status, target.value)
        if not quote.quote_number and not quote.lab_quote_number:
            quote.quote_number = generate_quote_number(quote)
        pricing = price_for_quote(quote)
        entry = _log(
            quote.id, actor, ActivityType.CUSTOMER_APPROVED, "Customer accepted the modified quote",
            status=target.value, quote_number=quote.quote_number,
            **pricing.summary(),
        )
    current_app.logger.info("[QUOTE] customer accepted quote_id=%s", quote.id)

    result = ActionResult(quote, entry, extra={"pricing": pricing.to_dict()})
    _notify(result, notifications.notify_quote_status_changed, quote, old_status, target.value,
            quote.lab.contact_email, quote.lab.name)
    return result


def decline(actor, quote_id, reason=None):
    quote = get_quote(actor, quote_id)
    old_status = quote.status
    target = next_status(quote.status, QuoteEvent.CUSTOMER_DECLINE, actor.role)
    with unit_of_work():
        _compare_and_set(quote, old_status, target.value)
        entry = _log(
            quote.id, actor, ActivityType.CUSTOMER_REJECTED, "Customer declined the modified quote",
            status=target.value, reason=_text(reason),
        )
    current_app.logger.info("[QUOTE] customer declined quote_id=%s", quote.id)

    result = ActionResult(quote, entry)
    _notify(result, notifications.notify_quote_status_changed, quote, old_status, target.value,
            quote.lab.contact_email, quote.lab.name)
    return result


# --- payment and shipping ---

def record_payment(actor, quote_id, payment_status=None, payment_amount_usd=None,
                   payment_amount_crypto=None, payment_date=None, transaction_id=None):
    """
    Attach payment details. The first payment on an approved quote moves
    it to paid_awaiting_shipping; the status and the "no payment yet"
    condition are checked in the same UPDATE so two requests cannot both fire.
    """
    quote = get_quote(actor, quote_id)
    _require_role(actor, (REQUESTER, ADMIN), "record payments")
    target = next_status(quote.status, QuoteEvent.PAYMENT_RECORDED, SYSTEM)

    values = {
        "payment_status": _text(payment_status),
        "payment_amount_usd": to_money(payment_amount_usd) if payment_amount_usd not in (None, "") else None,
        "payment_amount_crypto": _text(payment_amount_crypto),
        "payment_date": _parse_date(payment_date, "payment_date"),
        "transaction_id": _text(transaction_id),
    }
    if not (values["payment_status"] or values["payment_amount_usd"] is not None or values["payment_date"]):
        raise ValidationError("payment status, amount or date is required")
    if values["payment_amount_usd"] is not None and values["payment_amount_usd"] < 0:
        raise ValidationError("payment amount must be >= 0")

    old_status = quote.status
    with unit_of_work():
        _compare_and_set(
            quote, QuoteStatus.APPROVED_PAYMENT_PENDING.value, target.value,
            Quote.payment_status.is_(None),
            Quote.payment_amount_usd.is_(None),
            Quote.payment_date.is_(None),
            **values,
        )
        entry = _log(
            quote.id, actor, ActivityType.PAYMENT_RECORDED, "Payment information recorded",
            status=target.value, **values,
        )
    current_app.logger.info(
        "[QUOTE] payment recorded quote_id=%s by user_id=%s %s->%s",
        quote.id, actor.user_id, old_status, target.value,
    )

    result = ActionResult(quote, entry)
    _notify(result, notifications.notify_lab_payment, quote)
    return result


def add_shipping(actor, quote_id, tracking_number, shipped_date=None, estimated_delivery=None):
    """Attach the first tracking number; paid_awaiting_shipping -> in_transit."""
    quote = get_quote(actor, quote_id)
    _require_role(actor, (REQUESTER, ADMIN), "add shipping information")
    tracking_number = _text(tracking_number)
    if not tracking_number:
        raise ValidationError("tracking number is required")
    target = next_status(quote.status, QuoteEvent.TRACKING_ATTACHED, SYSTEM)
    shipped = _parse_date(shipped_date, "shipped_date") or _now().date()
    eta = _parse_date(estimated_delivery, "estimated_delivery")

    old_status = quote.status
    with unit_of_work():
        _compare_and_set(
            quote, QuoteStatus.PAID_AWAITING_SHIPPING.value, target.value,
            Quote.tracking_number.is_(None),
            tracking_number=tracking_number,
            shipped_date=shipped,
            estimated_delivery=eta,
        )
        db.session.add(TrackingEvent(
            quote_id=quote.id,
            status=target.value,
            tracking_number=tracking_number,
            source=SOURCE_MANUAL,
            details={"old_status": old_status, "shipped_date": shipped.isoformat()},
        ))
        entry = _log(
            quote.id, actor, ActivityType.SHIPPING_ADDED, f"Shipping added: {tracking_number}",
            tracking_number=tracking_number, shipped_date=shipped, status=target.value,
        )
    current_app.logger.info("[QUOTE] shipping added quote_id=%s tracking=%s", quote.id, tracking_number)

    result = ActionResult(quote, entry)
    _notify(result, notifications.notify_quote_status_changed, quote, old_status, target.value,
            quote.lab.contact_email, quote.lab.name)
    return result


attach_tracking = add_shipping


# --- testing ---

def start_testing(actor, quote_id):
    quote = get_quote(actor, quote_id)
    old_status = quote.status
    target = next_status(quote.status, QuoteEvent.START_TESTING, actor.role)
    with unit_of_work():
        _compare_and_set(quote, old_status, target.value)
        db.session.execute(
            db.update(QuoteItem)
            .where(QuoteItem.quote_id == quote.id, QuoteItem.status == ItemStatus.PENDING.value)
            .values(status=ItemStatus.TESTING_IN_PROGRESS.value)
            .execution_options(synchronize_session=False)
        )
        entry = _log(quote.id, actor, ActivityType.TESTING_STARTED, "Lab started testing", status=target.value)
    db.session.refresh(quote)
    current_app.logger.info("[QUOTE] testing started quote_id=%s", quote.id)

    result = ActionResult(quote, entry)
    owner = _owner_of(quote)
    _notify(result, notifications.notify_quote_status_changed, quote, old_status, target.value,
            owner.email, owner.display_name)
    return result


def submit_results(actor, item_id, test_results=None, report_url=None, testing_notes=None,
                   status=ItemStatus.COMPLETED.value, report_file=None):
    """
    Record results for one item. The quote completes only when no item is
    left unfinished; that check and the status change are one UPDATE.
    """
    item = db.session.get(QuoteItem, item_id)
    if item is None:
        raise NotFound(f"quote item {item_id} not found")
    quote = get_quote(actor, item.quote_id)
    _require_role(actor, (LAB, ADMIN), "submit results")
    if quote.status != QuoteStatus.TESTING_IN_PROGRESS.value:
        raise InvalidTransition(
            f"results can only be submitted while testing is in progress (quote is {quote.status})",
            quote_id=quote.id,
        )
    try:
        item_status = ItemStatus(status)
    except ValueError:
        raise ValidationError(f"unknown item status: {status}")
    if item_status not in (ItemStatus.COMPLETED, ItemStatus.FAILED):
        raise ValidationError("result status must be completed or failed")
    if test_results is not None and not isinstance(test_results, (dict, list)):
        raise ValidationError("test_results must be an object or list")
    target = next_status(QuoteStatus.TESTING_IN_PROGRESS, QuoteEvent.ALL_ITEMS_COMPLETED, SYSTEM)

    now = _now()
    with unit_of_work():
        item.status = item_status.value
        if test_results is not None:
            item.test_results = test_results
        if report_url is not None:
            item.report_url = _text(report_url)
        if report_file is not None:
            item.report_file = _text(report_file)
        if testing_notes is not None:
            item.testing_notes = _text(testing_notes)
        item.date_submitted = now
        item.date_completed = now if item_status is ItemStatus.COMPLETED else None
        db.session.flush()

        unfinished = db.exists().where(
            QuoteItem.quote_id == quote.id,
            QuoteItem.status != ItemStatus.COMPLETED.value,
        )
        completed = db.session.execute(
            db.update(Quote)
            .where(
                Quote.id == quote.id,
                Quote.status == QuoteStatus.TESTING_IN_PROGRESS.value,
                ~unfinished,
            )
            .values(status=target.value, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        remaining = db.session.execute(
            db.select(func.count(QuoteItem.id)).where(
                QuoteItem.quote_id == quote.id,
                QuoteItem.status != ItemStatus.COMPLETED.value,
            )
        ).scalar_one()
        entry = _log(
            quote.id, actor, ActivityType.RESULTS_SUBMITTED,
            f"Results submitted for item {item.id} ({item_status.value})",
            item_id=item.id,
            item_status=item_status.value,
            report_url=item.report_url,
            quote_completed=completed,
            remaining_items=remaining,
        )
    db.session.refresh(quote)
    current_app.logger.info(
        "[QUOTE] results item_id=%s quote_id=%s completed=%s remaining=%d",
        item.id, quote.id, completed, remaining,
    )

    result = ActionResult(quote, entry, extra={"item": item.to_dict(), "quote_completed": completed})
    if completed:
        _notify(result, notifications.notify_results_ready, quote)
    return result
