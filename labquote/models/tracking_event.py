from datetime import datetime

from labquote import db
from sqlalchemy.orm import relationship

SOURCE_MANUAL = "manual"
SOURCE_CARRIER_SYNC = "carrier-sync"
SOURCES = (SOURCE_MANUAL, SOURCE_CARRIER_SYNC)


class TrackingEvent(db.Model):
    """Append-only history of tracking polls and status changes for a quote."""

    __tablename__ = "tracking_events"

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id"), nullable=False, index=True)
    status = db.Column(db.String(40), nullable=False)
    tracking_number = db.Column(db.String(100), nullable=True)
    source = db.Column(db.String(20), nullable=False, default=SOURCE_MANUAL)
    details = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    quote = relationship("Quote", back_populates="tracking_events")

    def to_dict(self):
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "status": self.status,
            "tracking_number": self.tracking_number,
            "source": self.source,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
