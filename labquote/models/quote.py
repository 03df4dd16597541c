from labquote import db
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum


# str subclass: members compare equal to the stored column values
class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT_TO_VENDOR = "sent_to_vendor"
    AWAITING_CUSTOMER_APPROVAL = "awaiting_customer_approval"
    APPROVED_PAYMENT_PENDING = "approved_payment_pending"
    REJECTED = "rejected"
    PAID_AWAITING_SHIPPING = "paid_awaiting_shipping"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    TESTING_IN_PROGRESS = "testing_in_progress"
    COMPLETED = "completed"


def _iso(value):
    return value.isoformat() if value is not None else None


def _money(value):
    return f"{value:.2f}" if value is not None else None


class Quote(db.Model):
    __tablename__ = "quotes"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    lab_id = db.Column(db.Integer, db.ForeignKey("labs.id"), nullable=False, index=True)
    status = db.Column(db.String(40), nullable=False, default=QuoteStatus.DRAFT.value, index=True)

    quote_number = db.Column(db.String(50), nullable=True)
    lab_quote_number = db.Column(db.String(50), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    lab_response = db.Column(db.Text, nullable=True)

    # null until a lab explicitly modifies pricing
    discount_type = db.Column(db.String(20), nullable=True)
    discount_amount = db.Column(db.Numeric(5, 2), nullable=True)

    payment_status = db.Column(db.String(40), nullable=True)
    payment_amount_usd = db.Column(db.Numeric(12, 2), nullable=True)
    payment_amount_crypto = db.Column(db.String(100), nullable=True)
    payment_date = db.Column(db.Date, nullable=True)
    transaction_id = db.Column(db.String(200), nullable=True)

    tracking_number = db.Column(db.String(100), nullable=True, index=True)
    shipped_date = db.Column(db.Date, nullable=True)
    tracking_updated_at = db.Column(db.DateTime, nullable=True)
    estimated_delivery = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("User", foreign_keys=[user_id])
    lab = relationship("Lab")

    items = relationship(
        "QuoteItem",
        back_populates="quote",
        cascade="all, delete-orphan",
        order_by="QuoteItem.id",
    )
    activities = relationship(
        "ActivityLogEntry",
        back_populates="quote",
        cascade="all, delete-orphan",
        order_by="ActivityLogEntry.id",
    )
    tracking_events = relationship(
        "TrackingEvent",
        back_populates="quote",
        cascade="all, delete-orphan",
        order_by="TrackingEvent.id",
    )

    @classmethod
    def visible_to(cls, actor):
        """Quotes an actor may see: admins all, labs their lab's sent quotes, requesters their own."""
        if actor.is_admin:
            return cls.query
        if actor.role == "lab":
            return cls.query.filter(cls.lab_id == actor.lab_id, cls.status != QuoteStatus.DRAFT.value)
        return cls.query.filter(cls.user_id == actor.user_id)

    def is_visible_to(self, actor):
        if actor.is_admin:
            return True
        if actor.role == "lab":
            return actor.lab_id is not None and self.lab_id == actor.lab_id and self.status != QuoteStatus.DRAFT.value
        return self.user_id == actor.user_id

    def to_dict(self, with_items=False):
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "lab_id": self.lab_id,
            "lab_name": self.lab.name if self.lab else None,
            "status": self.status,
            "quote_number": self.quote_number,
            "lab_quote_number": self.lab_quote_number,
            "notes": self.notes,
            "lab_response": self.lab_response,
            "discount_type": self.discount_type,
            "discount_amount": _money(self.discount_amount),
            "payment_status": self.payment_status,
            "payment_amount_usd": _money(self.payment_amount_usd),
            "payment_amount_crypto": self.payment_amount_crypto,
            "payment_date": _iso(self.payment_date),
            "transaction_id": self.transaction_id,
            "tracking_number": self.tracking_number,
            "shipped_date": _iso(self.shipped_date),
            "tracking_updated_at": _iso(self.tracking_updated_at),
            "estimated_delivery": _iso(self.estimated_delivery),
            "created_at": _iso(self.created_at),
        }
        if with_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data

    def __repr__(self):
        return f"<Quote id={self.id} status={self.status} lab_id={self.lab_id}>"
