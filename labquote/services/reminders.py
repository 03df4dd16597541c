from datetime import datetime, timedelta

from flask import current_app

from labquote import db
from labquote.errors import NotificationError
from labquote.models.activity_log import ActivityLogEntry, ActivityType
from labquote.models.quote import Quote, QuoteStatus
from labquote.services import notifications


def _approved_at(quote):
    """When the quote entered approved_payment_pending, from its activity trail."""
    entry = (
        ActivityLogEntry.query
        .filter(
            ActivityLogEntry.quote_id == quote.id,
            ActivityLogEntry.activity_type.in_([
                ActivityType.LAB_APPROVED.value, ActivityType.CUSTOMER_APPROVED.value,
            ]),
        )
        .order_by(ActivityLogEntry.created_at.desc())
        .first()
    )
    return entry.created_at if entry else quote.updated_at


def send_payment_reminders(now=None, interval_days=None):
    """
    Remind requesters about quotes waiting for payment.
    A quote gets at most one reminder per interval. Returns counters:
    {"checked", "sent", "skipped", "failed"}.
    """
    now = now or datetime.utcnow()
    if interval_days is None:
        interval_days = current_app.config["PAYMENT_REMINDER_INTERVAL_DAYS"]
    cutoff = now - timedelta(days=interval_days)

    quotes = (
        Quote.query
        .filter(Quote.status == QuoteStatus.APPROVED_PAYMENT_PENDING.value)
        .order_by(Quote.id)
        .all()
    )
    stats = {"checked": len(quotes), "sent": 0, "skipped": 0, "failed": 0}
    for quote in quotes:
        approved_at = _approved_at(quote)
        recent = (
            ActivityLogEntry.query
            .filter(
                ActivityLogEntry.quote_id == quote.id,
                ActivityLogEntry.activity_type == ActivityType.PAYMENT_REMINDER.value,
                ActivityLogEntry.created_at > cutoff,
            )
            .first()
        )
        if recent is not None or approved_at > cutoff:
            stats["skipped"] += 1
            continue

        days = (now - approved_at).days
        try:
            recipient = notifications.notify_payment_reminder(quote, days)
        except NotificationError as e:
            current_app.logger.warning("[REMINDER] quote_id=%s failed: %s", quote.id, e.message)
            stats["failed"] += 1
            continue

        db.session.add(ActivityLogEntry.build(
            quote.id, None, ActivityType.PAYMENT_REMINDER,
            f"Payment reminder sent ({days} days since approval)",
            created_at=now,
            days_since_approval=days,
            recipient=recipient,
        ))
        db.session.commit()
        stats["sent"] += 1

    current_app.logger.info(
        "[REMINDER] checked=%d sent=%d skipped=%d failed=%d",
        stats["checked"], stats["sent"], stats["skipped"], stats["failed"],
    )
    return stats
