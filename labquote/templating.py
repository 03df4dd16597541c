"""
Email template rendering.

Tokens look like {{name}} (inner whitespace allowed). Known names are
substituted in a single pass over the source text, so a substituted value
is never scanned again; unknown tokens are left exactly as written.

Rendering is a no-op on its own output as long as no substituted value
contains a token. Values are inserted verbatim, so a value such as a
client name written as "{{total}}" survives the first render unchanged but
would be resolved by a second one; callers render the stored template
once and never re-render the result.
"""
import re
from collections import namedtuple

from markupsafe import escape
from sqlalchemy import and_, case

from labquote import db
from labquote.errors import NotFound, ValidationError
from labquote.models.email_template import EmailTemplate
from labquote.pricing import format_usd

TOKEN_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")

PENDING_QUOTE_NUMBER = "Pending Assignment"

RenderedTemplate = namedtuple("RenderedTemplate", ["subject", "body"])

DEFAULT_TEMPLATE = {
    "id": None,
    "name": "Default Quote Request",
    "subject": "Quote Request - {{quote_number}}",
    "body": (
        "Dear {{lab_name}},\n\n"
        "We would like to request a quote for the following testing services:\n\n"
        "{{quote_items}}\n\n"
        "Total: {{total}}\n\n"
        "Please provide your quote response at your earliest convenience.\n\n"
        "Best regards"
    ),
}


def _part(template, name):
    if isinstance(template, dict):
        return template.get(name) or ""
    return getattr(template, name, None) or ""


def render_text(text, variables):
    def substitute(match):
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return TOKEN_RE.sub(substitute, text or "")


def render(template, variables):
    """Render subject and body of `template` (object or dict) against `variables`."""
    return RenderedTemplate(
        subject=render_text(_part(template, "subject"), variables),
        body=render_text(_part(template, "body"), variables),
    )


def unresolved_tokens(text):
    return sorted(set(TOKEN_RE.findall(text or "")))


def format_items_block(items, per_item_totals):
    lines = []
    for index, (item, total) in enumerate(zip(items, per_item_totals), start=1):
        name = item.compound_name or f"Product #{item.product_id}"
        lines.append(f"{index}. {name} - {format_usd(total)}")
        for label in ("client", "sample", "manufacturer", "batch"):
            value = getattr(item, label, None)
            if value:
                lines.append(f"   {label.capitalize()}: {value}")
        if item.additional_samples:
            lines.append(f"   Additional samples: {item.additional_samples}")
        if item.additional_report_headers:
            lines.append(f"   Additional report headers: {item.additional_report_headers}")
            for n, record in enumerate(item.header_records(), start=1):
                parts = [f"{k}={v}" for k, v in record.to_dict().items() if v]
                lines.append(f"     Header {n}: {', '.join(parts) or '(blank)'}")
    return "\n".join(lines)


def build_quote_variables(quote, items, pricing):
    return {
        "lab_name": quote.lab.name if quote.lab else "",
        "quote_number": quote.quote_number or quote.lab_quote_number or PENDING_QUOTE_NUMBER,
        "quote_items": format_items_block(items, pricing.per_item_totals),
        "total": format_usd(pricing.grand_total),
    }


def to_html(body):
    escaped = str(escape(body or ""))
    return escaped.replace("\r\n", "\n").replace("\n", "<br>\n")


# --- template registry ---

def select_template(user_id, lab_id):
    """Owner default for this lab, then owner default for all labs, then the built-in."""
    lab_match = case((EmailTemplate.lab_id == lab_id, 0), else_=1)
    template = (
        EmailTemplate.query
        .filter(EmailTemplate.user_id == user_id, EmailTemplate.is_default.is_(True))
        .filter((EmailTemplate.lab_id == lab_id) | (EmailTemplate.lab_id.is_(None)))
        .order_by(lab_match, EmailTemplate.id.desc())
        .first()
    )
    return template or DEFAULT_TEMPLATE


def create_template(user_id, name, subject, body, lab_id=None, is_default=False):
    name = (name or "").strip()
    if not name or not (subject or "").strip() or not (body or "").strip():
        raise ValidationError("name, subject and body are required")
    template = EmailTemplate(
        user_id=user_id, lab_id=lab_id, name=name,
        subject=subject, body=body, is_default=False,
    )
    db.session.add(template)
    db.session.flush()
    if is_default:
        _claim_default(template)
    db.session.commit()
    return template


def set_default_template(user_id, template_id):
    template = db.session.get(EmailTemplate, template_id)
    if template is None or template.user_id != user_id:
        raise NotFound(f"email template {template_id} not found")
    _claim_default(template)
    db.session.commit()
    return template


def _claim_default(template):
    # one statement: every template in the scope ends up default only if it is this one
    scope = and_(
        EmailTemplate.user_id == template.user_id,
        EmailTemplate.lab_id.is_(None) if template.lab_id is None else EmailTemplate.lab_id == template.lab_id,
    )
    db.session.execute(
        db.update(EmailTemplate)
        .where(scope)
        .values(is_default=(EmailTemplate.id == template.id))
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(template)
