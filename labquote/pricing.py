# --- Quote pricing: item surcharges and tiered discount ---
from collections import namedtuple
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional

from labquote.errors import ValidationError

ADDITIONAL_SAMPLE_PRICE = Decimal("60.00")
ADDITIONAL_HEADER_PRICE = Decimal("30.00")

TIER_THRESHOLD = Decimal("1200.00")
DISCOUNT_BELOW_THRESHOLD = Decimal("5")
DISCOUNT_AT_OR_ABOVE_THRESHOLD = Decimal("10")

CENTS = Decimal("0.01")

PricingLine = namedtuple(
    "PricingLine",
    ["price", "additional_samples", "additional_report_headers"],
    defaults=(0, 0),
)


@dataclass(frozen=True)
class QuotePricing:
    subtotal: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    grand_total: Decimal
    per_item_totals: List[Decimal] = field(default_factory=list)

    def summary(self):
        return {
            "subtotal": self.subtotal,
            "discount_percent": self.discount_percent,
            "discount_amount": self.discount_amount,
            "grand_total": self.grand_total,
        }

    def to_dict(self):
        return {
            "subtotal": format_amount(self.subtotal),
            "discount_percent": format_amount(self.discount_percent),
            "discount_amount": format_amount(self.discount_amount),
            "grand_total": format_amount(self.grand_total),
            "per_item_totals": [format_amount(t) for t in self.per_item_totals],
        }


def to_money(value) -> Decimal:
    """Convert a price-ish value (None, str, int, float, Decimal) to cents."""
    if value is None or value == "":
        return Decimal("0.00")
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"invalid amount: {value!r}")
    try:
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"amount out of range: {value!r}")


def _count(value, name):
    if value is None or value == "":
        return 0
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    if count < 0:
        raise ValidationError(f"{name} must be >= 0")
    return count


def _field(item, name, default=None):
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def additional_samples_charge(item) -> Decimal:
    # flat $60 per extra sample for every compound
    return ADDITIONAL_SAMPLE_PRICE * _count(_field(item, "additional_samples"), "additional_samples")


def additional_headers_charge(item) -> Decimal:
    return ADDITIONAL_HEADER_PRICE * _count(_field(item, "additional_report_headers"), "additional_report_headers")


def item_total(item) -> Decimal:
    base = to_money(_field(item, "price"))
    return (base + additional_samples_charge(item) + additional_headers_charge(item)).quantize(CENTS)


def tiered_discount_percent(subtotal) -> Decimal:
    return DISCOUNT_BELOW_THRESHOLD if to_money(subtotal) < TIER_THRESHOLD else DISCOUNT_AT_OR_ABOVE_THRESHOLD


def normalize_discount_percent(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        pct = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"invalid discount percentage: {value!r}")
    if not pct.is_finite():
        raise ValidationError(f"invalid discount percentage: {value!r}")
    if pct < 0 or pct > 100:
        raise ValidationError("discount percentage must be between 0 and 100")
    return pct.quantize(CENTS, rounding=ROUND_HALF_UP)


def price_quote(items, discount_percent_override=None) -> QuotePricing:
    """
    Price a set of quote lines.

    Args:
        items: QuoteItem rows, dicts or PricingLine tuples
        discount_percent_override: lab supplied percentage, or None for the
            default tier (5% below $1200.00, 10% from $1200.00 up)
    Returns:
        QuotePricing with every amount rounded to cents
    """
    override = normalize_discount_percent(discount_percent_override)
    per_item = [item_total(item) for item in items]
    subtotal = sum(per_item, Decimal("0.00"))

    pct = override if override is not None else tiered_discount_percent(subtotal)
    discount = (subtotal * pct / Decimal("100")).quantize(CENTS, rounding=ROUND_HALF_UP)
    return QuotePricing(
        subtotal=subtotal,
        discount_percent=pct,
        discount_amount=discount,
        grand_total=subtotal - discount,
        per_item_totals=per_item,
    )


def stored_discount_percent(quote):
    if quote.discount_type == "percentage" and quote.discount_amount is not None:
        return quote.discount_amount
    return None


def price_for_quote(quote, items=None) -> QuotePricing:
    return price_quote(quote.items if items is None else items, stored_discount_percent(quote))


def format_amount(value) -> str:
    return f"{to_money(value):.2f}"


def format_usd(value) -> str:
    return f"${to_money(value):,.2f}"
