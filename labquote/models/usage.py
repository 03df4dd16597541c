from datetime import datetime
from labquote import db


class UsageRecord(db.Model):
    """Items sent to labs by one requester within one calendar month."""

    __tablename__ = "usage_tracking"
    __table_args__ = (db.UniqueConstraint("user_id", "period_start"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    period_start = db.Column(db.DateTime, nullable=False)
    period_end = db.Column(db.DateTime, nullable=False)
    items_sent = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
