from dataclasses import dataclass, asdict
from enum import Enum

from labquote import db
from labquote.errors import InvariantViolation, ValidationError
from sqlalchemy.orm import relationship


class ItemStatus(str, Enum):
    PENDING = "pending"
    TESTING_IN_PROGRESS = "testing_in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


HEADER_FIELDS = ("client", "sample", "manufacturer", "batch")


@dataclass
class AdditionalHeaderRecord:
    """One extra report grouping under which the item's results are reported."""

    client: str = ""
    sample: str = ""
    manufacturer: str = ""
    batch: str = ""

    @classmethod
    def from_dict(cls, data):
        if isinstance(data, cls):
            return data
        if not isinstance(data, dict):
            raise ValidationError("additional header record must be an object")
        unknown = set(data) - set(HEADER_FIELDS)
        if unknown:
            raise ValidationError(f"unknown header fields: {sorted(unknown)}")
        return cls(**{k: (data.get(k) or "").strip() for k in HEADER_FIELDS})

    def to_dict(self):
        return asdict(self)


class QuoteItem(db.Model):
    __tablename__ = "quote_items"

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    client = db.Column(db.String(255), nullable=True)
    sample = db.Column(db.String(255), nullable=True)
    manufacturer = db.Column(db.String(255), nullable=True)
    batch = db.Column(db.String(255), nullable=True)

    price = db.Column(db.Numeric(12, 2), nullable=True)
    additional_samples = db.Column(db.Integer, nullable=False, default=0)
    additional_report_headers = db.Column(db.Integer, nullable=False, default=0)
    additional_headers_data = db.Column(db.JSON, nullable=False, default=list)

    status = db.Column(db.String(30), nullable=False, default=ItemStatus.PENDING.value)
    test_results = db.Column(db.JSON, nullable=True)
    report_url = db.Column(db.String(500), nullable=True)
    report_file = db.Column(db.String(500), nullable=True)
    testing_notes = db.Column(db.Text, nullable=True)
    date_submitted = db.Column(db.DateTime, nullable=True)
    date_completed = db.Column(db.DateTime, nullable=True)

    quote = relationship("Quote", back_populates="items")
    product = relationship("Product", back_populates="items")

    @property
    def compound_name(self):
        return self.product.name if self.product else ""

    def header_records(self):
        self.check_invariants()
        return [AdditionalHeaderRecord.from_dict(r) for r in (self.additional_headers_data or [])]

    def resize_additional_headers(self, count, records=None):
        """
        Set the header count and resize the record list to match.
        Existing records are kept in order; new slots are blank, surplus
        slots are dropped from the end.
        """
        if count is None or int(count) < 0:
            raise ValidationError("additional_report_headers must be >= 0")
        count = int(count)
        if records is not None:
            current = [AdditionalHeaderRecord.from_dict(r) for r in records]
            if len(current) > count:
                raise ValidationError(
                    f"{len(current)} header records given for {count} additional headers"
                )
        else:
            current = [AdditionalHeaderRecord.from_dict(r) for r in (self.additional_headers_data or [])]
        current = current[:count]
        while len(current) < count:
            current.append(AdditionalHeaderRecord())
        self.additional_report_headers = count
        # new list object so the JSON column is flagged dirty
        self.additional_headers_data = [r.to_dict() for r in current]

    def check_invariants(self):
        data = self.additional_headers_data or []
        count = self.additional_report_headers or 0
        if len(data) != count:
            raise InvariantViolation(
                f"quote item {self.id}: {len(data)} header records stored for {count} additional headers",
                item_id=self.id,
            )

    def to_dict(self):
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "product_id": self.product_id,
            "compound_name": self.compound_name,
            "client": self.client,
            "sample": self.sample,
            "manufacturer": self.manufacturer,
            "batch": self.batch,
            "price": f"{self.price:.2f}" if self.price is not None else None,
            "additional_samples": self.additional_samples,
            "additional_report_headers": self.additional_report_headers,
            "additional_headers_data": list(self.additional_headers_data or []),
            "status": self.status,
            "test_results": self.test_results,
            "report_url": self.report_url,
            "testing_notes": self.testing_notes,
            "date_submitted": self.date_submitted.isoformat() if self.date_submitted else None,
            "date_completed": self.date_completed.isoformat() if self.date_completed else None,
        }

    def __repr__(self):
        return f"<QuoteItem id={self.id} quote_id={self.quote_id} status={self.status}>"
