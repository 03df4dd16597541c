import smtplib
from datetime import datetime
from email.message import EmailMessage

from flask import current_app

from labquote.errors import NotificationError
from labquote.templating import render, to_html, PENDING_QUOTE_NUMBER

STATUS_CHANGED_TEMPLATE = {
    "subject": "Quote {{quote_number}} is now {{status_label}}",
    "body": (
        "Hello {{recipient_name}},\n\n"
        "Quote {{quote_number}} with {{lab_name}} moved from {{old_status_label}} "
        "to {{status_label}}.\n\n"
        "{{lab_response}}"
    ),
}

PAYMENT_RECORDED_TEMPLATE = {
    "subject": "Payment recorded for quote {{quote_number}}",
    "body": (
        "Dear {{lab_name}},\n\n"
        "Payment information was recorded for quote {{quote_number}}.\n\n"
        "Payment status: {{payment_status}}\n"
        "Amount (USD): {{payment_amount_usd}}\n"
        "Payment date: {{payment_date}}\n"
        "Transaction ID: {{transaction_id}}\n\n"
        "The samples will ship once tracking is available."
    ),
}

RESULTS_READY_TEMPLATE = {
    "subject": "Results ready for quote {{quote_number}}",
    "body": (
        "Hello {{recipient_name}},\n\n"
        "{{lab_name}} has completed testing for every item on quote {{quote_number}}. "
        "Reports are available in your quote history."
    ),
}

PAYMENT_REMINDER_TEMPLATE = {
    "subject": "Payment reminder for quote {{quote_number}}",
    "body": (
        "Hello {{recipient_name}},\n\n"
        "Quote {{quote_number}} with {{lab_name}} was approved {{days_since_approval}} days ago "
        "and is still waiting for payment.\n\n"
        "Please record your payment so the lab can proceed."
    ),
}


def _label(status):
    return str(status or "").replace("_", " ")


class EmailSender:
    """Outbound mail collaborator: send_email(recipient, subject, html_body)."""

    def send_email(self, recipient, subject, html_body):
        raise NotImplementedError


class LogEmailSender(EmailSender):
    def send_email(self, recipient, subject, html_body):
        current_app.logger.info(
            "[NOTIFY] mail backend=log to=%s subject=%s body_len=%d",
            recipient, subject, len(html_body or ""),
        )


class SmtpEmailSender(EmailSender):
    def __init__(self, host, port=587, username=None, password=None, sender=None, timeout=10):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def send_email(self, recipient, subject, html_body):
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = recipient
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html_body, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"failed to send email to {recipient}: {e}")


def build_mailer(config):
    backend = (config.get("MAIL_BACKEND") or "log").lower()
    if backend == "smtp" and config.get("SMTP_HOST"):
        return SmtpEmailSender(
            config["SMTP_HOST"],
            port=config.get("SMTP_PORT") or 587,
            username=config.get("SMTP_USER"),
            password=config.get("SMTP_PASSWORD"),
            sender=config.get("MAIL_FROM"),
        )
    return LogEmailSender()


def get_mailer():
    return current_app.extensions["labquote.mailer"]


def deliver(recipient, subject, body, kind):
    """
    Send one rendered message.
    Args:
        recipient: email address (required)
        subject: rendered subject line
        body: rendered plain-text body, converted to HTML here
        kind: short label for the [NOTIFY] log line
    Raises:
        NotificationError when there is no recipient or delivery fails
    """
    if not recipient:
        raise NotificationError(f"no recipient address for {kind} notification")
    try:
        get_mailer().send_email(recipient, subject, to_html(body))
    except NotificationError:
        current_app.logger.warning("[NOTIFY] kind=%s to=%s delivery failed", kind, recipient)
        raise
    except Exception as e:
        current_app.logger.exception("[NOTIFY] kind=%s to=%s delivery failed", kind, recipient)
        raise NotificationError(f"failed to send {kind} email to {recipient}: {e}")
    current_app.logger.info(
        "[NOTIFY] kind=%s to=%s subject=%s at=%s",
        kind, recipient, subject, datetime.utcnow().isoformat(),
    )
    return recipient


def _base_variables(quote, recipient_user=None):
    return {
        "quote_number": quote.quote_number or quote.lab_quote_number or PENDING_QUOTE_NUMBER,
        "lab_name": quote.lab.name if quote.lab else "",
        "recipient_name": getattr(recipient_user, "display_name", None) or "there",
    }


def notify_quote_submitted(quote, rendered):
    """Send the rendered quote request to the lab's contact address."""
    recipient = quote.lab.contact_email if quote.lab else None
    return deliver(recipient, rendered.subject, rendered.body, "quote_submitted")


def notify_quote_status_changed(quote, old_status, new_status, recipient, recipient_name=None):
    variables = _base_variables(quote)
    variables["recipient_name"] = recipient_name or "there"
    variables.update(
        old_status_label=_label(old_status),
        status_label=_label(new_status),
        lab_response=quote.lab_response or "",
    )
    rendered = render(STATUS_CHANGED_TEMPLATE, variables)
    return deliver(recipient, rendered.subject, rendered.body, "status_changed")


def notify_lab_payment(quote):
    variables = _base_variables(quote)
    variables.update(
        payment_status=quote.payment_status or "-",
        payment_amount_usd=f"{quote.payment_amount_usd:.2f}" if quote.payment_amount_usd is not None else "-",
        payment_date=quote.payment_date.isoformat() if quote.payment_date else "-",
        transaction_id=quote.transaction_id or "-",
    )
    rendered = render(PAYMENT_RECORDED_TEMPLATE, variables)
    recipient = quote.lab.contact_email if quote.lab else None
    return deliver(recipient, rendered.subject, rendered.body, "lab_payment")


def notify_results_ready(quote):
    rendered = render(RESULTS_READY_TEMPLATE, _base_variables(quote, quote.owner))
    return deliver(getattr(quote.owner, "email", None), rendered.subject, rendered.body, "results_ready")


def notify_payment_reminder(quote, days_since_approval):
    variables = _base_variables(quote, quote.owner)
    variables["days_since_approval"] = days_since_approval
    rendered = render(PAYMENT_REMINDER_TEMPLATE, variables)
    return deliver(getattr(quote.owner, "email", None), rendered.subject, rendered.body, "payment_reminder")
