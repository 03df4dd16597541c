from datetime import datetime

from flask import current_app

from labquote import db
from labquote.models.usage import UsageRecord


def month_bounds(now):
    start = datetime(now.year, now.month, 1)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1)
    else:
        end = datetime(now.year, now.month + 1, 1)
    return start, end


class UsageService:
    """Monthly allowance of items a requester may send to labs."""

    def __init__(self, clock=datetime.utcnow):
        self.clock = clock

    def _record(self, user_id):
        start, _ = month_bounds(self.clock())
        return UsageRecord.query.filter_by(user_id=user_id, period_start=start).first()

    def items_sent(self, user):
        record = self._record(user.id)
        return record.items_sent if record else 0

    def get_remaining_items(self, user):
        if user.monthly_item_limit is None:
            return None
        return max(0, user.monthly_item_limit - self.items_sent(user))

    def can_send_items(self, user, count):
        remaining = self.get_remaining_items(user)
        return remaining is None or count <= remaining

    def record_usage(self, user, count):
        """Add `count` to this month's row. Joins the caller's transaction; does not commit."""
        start, end = month_bounds(self.clock())
        updated = db.session.execute(
            db.update(UsageRecord)
            .where(UsageRecord.user_id == user.id, UsageRecord.period_start == start)
            .values(items_sent=UsageRecord.items_sent + count)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount == 0:
            db.session.add(UsageRecord(user_id=user.id, period_start=start, period_end=end, items_sent=count))
            db.session.flush()
        current_app.logger.info("[USAGE] user_id=%s items=+%d period=%s", user.id, count, start.date().isoformat())

    def summary(self, user):
        start, end = month_bounds(self.clock())
        return {
            "period_start": start.isoformat(),
            "period_end": end.isoformat(),
            "items_sent": self.items_sent(user),
            "monthly_item_limit": user.monthly_item_limit,
            "remaining_items": self.get_remaining_items(user),
        }
