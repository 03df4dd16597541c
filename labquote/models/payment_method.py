from datetime import datetime
from enum import Enum

from labquote import db
from labquote.errors import ValidationError


class MethodType(str, Enum):
    CRYPTO_WALLET = "crypto_wallet"
    BANK_TRANSFER = "bank_transfer"
    WIRE_TRANSFER = "wire_transfer"
    CREDIT_CARD = "credit_card"
    OTHER = "other"


# (required keys, optional keys) per method type
DETAIL_SCHEMAS = {
    MethodType.CRYPTO_WALLET: (("currency", "wallet_address"), ()),
    MethodType.BANK_TRANSFER: (("account_name", "account_number", "routing_number", "bank_name"), ()),
    MethodType.WIRE_TRANSFER: (("account_name", "account_number", "swift_code", "bank_name"), ()),
    MethodType.CREDIT_CARD: (("card_type", "last_four"), ()),
    MethodType.OTHER: (("notes",), ()),
}


def validate_details(method_type, details):
    """
    Check a details payload against the schema of its method type.
    Returns a cleaned dict (values stripped) or raises ValidationError.
    """
    try:
        method_type = MethodType(method_type)
    except ValueError:
        raise ValidationError(f"unknown payment method type: {method_type}")
    if not isinstance(details, dict):
        raise ValidationError("details must be an object")

    required, optional = DETAIL_SCHEMAS[method_type]
    unknown = set(details) - set(required) - set(optional)
    if unknown:
        raise ValidationError(f"unexpected fields for {method_type.value}: {sorted(unknown)}")

    cleaned = {}
    for key in required + optional:
        value = details.get(key)
        value = str(value).strip() if value is not None else ""
        if key in required and not value:
            raise ValidationError(f"{key} is required for {method_type.value}")
        if value:
            cleaned[key] = value

    if method_type is MethodType.CREDIT_CARD:
        last_four = cleaned["last_four"]
        if len(last_four) != 4 or not last_four.isdigit():
            raise ValidationError("last_four must be exactly 4 digits")
    return cleaned


class PaymentMethod(db.Model):
    __tablename__ = "payment_methods"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    method_type = db.Column(db.String(30), nullable=False)
    label = db.Column(db.String(100), nullable=True)
    details = db.Column(db.JSON, nullable=False, default=dict)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "method_type": self.method_type,
            "label": self.label,
            "details": self.details,
            "is_default": self.is_default,
        }

    def __repr__(self):
        return f"<PaymentMethod id={self.id} user_id={self.user_id} type={self.method_type} default={self.is_default}>"
