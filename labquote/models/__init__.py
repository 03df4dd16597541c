from labquote import db
from labquote.models.user import User
from labquote.models.lab import Lab
from labquote.models.product import Product
from labquote.models.quote import Quote, QuoteStatus
from labquote.models.quote_item import QuoteItem, ItemStatus, AdditionalHeaderRecord
from labquote.models.activity_log import ActivityLogEntry, ActivityType
from labquote.models.tracking_event import TrackingEvent
from labquote.models.payment_method import PaymentMethod, MethodType
from labquote.models.email_template import EmailTemplate
from labquote.models.usage import UsageRecord

__all__ = [
    "db",
    "User",
    "Lab",
    "Product",
    "Quote",
    "QuoteStatus",
    "QuoteItem",
    "ItemStatus",
    "AdditionalHeaderRecord",
    "ActivityLogEntry",
    "ActivityType",
    "TrackingEvent",
    "PaymentMethod",
    "MethodType",
    "EmailTemplate",
    "UsageRecord",
]
