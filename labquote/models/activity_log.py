from datetime import datetime
from enum import Enum

from labquote import db
from sqlalchemy.orm import relationship


class ActivityType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ITEM_ADDED = "item_added"
    DUPLICATED = "duplicated"
    EMAIL_SENT = "email_sent"
    LAB_APPROVED = "lab_approved"
    LAB_MODIFIED = "lab_modified"
    LAB_REJECTED = "lab_rejected"
    CUSTOMER_APPROVED = "customer_approved"
    CUSTOMER_REJECTED = "customer_rejected"
    PAYMENT_RECORDED = "payment_recorded"
    SHIPPING_ADDED = "shipping_added"
    STATUS_CHANGE = "status_change"
    TESTING_STARTED = "testing_started"
    RESULTS_SUBMITTED = "results_submitted"
    PAYMENT_REMINDER = "payment_reminder"
    EDIT_DENIED = "edit_denied"


# metadata keys accepted per activity type
_PRICING = ("subtotal", "discount_percent", "discount_amount", "grand_total")

METADATA_SCHEMA = {
    ActivityType.CREATED: ("lab_id",),
    ActivityType.UPDATED: ("fields", "status"),
    ActivityType.ITEM_ADDED: ("item_id", "product_id", "additional_samples", "additional_report_headers"),
    ActivityType.DUPLICATED: ("source_quote_id", "item_count"),
    ActivityType.EMAIL_SENT: ("recipient", "subject", "template_id", "item_count") + _PRICING,
    ActivityType.LAB_APPROVED: ("status", "lab_quote_number", "quote_number", "changes_made") + _PRICING,
    ActivityType.LAB_MODIFIED: (
        "status", "lab_quote_number", "changes_made", "old_prices", "new_prices",
        "old_discount", "new_discount",
    ) + _PRICING,
    ActivityType.LAB_REJECTED: ("status", "lab_response"),
    ActivityType.CUSTOMER_APPROVED: ("status", "quote_number") + _PRICING,
    ActivityType.CUSTOMER_REJECTED: ("status", "reason"),
    ActivityType.PAYMENT_RECORDED: (
        "payment_status", "payment_amount_usd", "payment_amount_crypto",
        "payment_date", "transaction_id", "status",
    ),
    ActivityType.SHIPPING_ADDED: ("tracking_number", "shipped_date", "status"),
    ActivityType.STATUS_CHANGE: ("old_status", "new_status", "source", "tracking_number"),
    ActivityType.TESTING_STARTED: ("status",),
    ActivityType.RESULTS_SUBMITTED: ("item_id", "item_status", "report_url", "quote_completed", "remaining_items"),
    ActivityType.PAYMENT_REMINDER: ("days_since_approval", "recipient"),
    ActivityType.EDIT_DENIED: ("status", "fields", "role"),
}


def activity_metadata(activity_type, **fields):
    """Build the metadata payload for one activity type, rejecting undeclared keys."""
    activity_type = ActivityType(activity_type)
    allowed = METADATA_SCHEMA[activity_type]
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"metadata keys {sorted(unknown)} not declared for {activity_type.value}")
    return {k: _jsonable(v) for k, v in fields.items()}


def _jsonable(value):
    from decimal import Decimal
    from datetime import date

    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class ActivityLogEntry(db.Model):
    __tablename__ = "quote_activity_log"

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    activity_type = db.Column(db.String(40), nullable=False, index=True)
    description = db.Column(db.String(500), nullable=False)
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    quote = relationship("Quote", back_populates="activities")

    @classmethod
    def build(cls, quote_id, user_id, activity_type, description, created_at=None, **metadata):
        entry = cls(
            quote_id=quote_id,
            user_id=user_id,
            activity_type=ActivityType(activity_type).value,
            description=description,
            meta=activity_metadata(activity_type, **metadata),
        )
        if created_at is not None:
            entry.created_at = created_at
        return entry

    def to_dict(self):
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "user_id": self.user_id,
            "activity_type": self.activity_type,
            "description": self.description,
            "metadata": self.meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ActivityLogEntry quote_id={self.quote_id} type={self.activity_type}>"
