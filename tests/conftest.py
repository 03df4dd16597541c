from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from labquote import create_app, db
from labquote.config import TestConfig
from labquote.decorators import actor_from_user
from labquote.errors import CarrierError, NotificationError
from labquote.models import Lab, Product, Quote, QuoteItem, QuoteStatus, User
from labquote.services.carrier import CarrierClient, PollResult


class FakeCarrier(CarrierClient):
    """Answers from a dict of tracking number -> carrier status."""

    name = "fake"

    def __init__(self):
        self.statuses = {}
        self.failing_numbers = set()
        self.fail_all = None
        self.calls = []

    def poll_tracking(self, tracking_number):
        return self.poll_many([tracking_number])[0]

    def poll_many(self, tracking_numbers):
        self.calls.append(list(tracking_numbers))
        if self.fail_all:
            raise CarrierError(self.fail_all)
        results = []
        for number in tracking_numbers:
            if number in self.failing_numbers:
                results.append(PollResult(tracking_number=number, success=False, error="tracking lookup failed"))
            else:
                status = self.statuses.get(number, "in_transit")
                results.append(PollResult(tracking_number=number, success=True, new_status=status))
        return results


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send_email(self, recipient, subject, html_body):
        if self.fail:
            raise NotificationError("smtp unavailable")
        self.sent.append({"recipient": recipient, "subject": subject, "html_body": html_body})


class Clock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def app():
    app = create_app(TestConfig)
    app.extensions["labquote.carrier"] = FakeCarrier()
    app.extensions["labquote.mailer"] = RecordingMailer()
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def carrier(app):
    return app.extensions["labquote.carrier"]


@pytest.fixture
def mailer(app):
    return app.extensions["labquote.mailer"]


@pytest.fixture
def clock():
    return Clock()


def _user(login_id, role, lab=None, **extra):
    user = User(
        login_id=login_id,
        display_name=login_id.title(),
        email=f"{login_id}@example.com",
        role=role,
        lab_id=lab.id if lab is not None else None,
        is_active=True,
        **extra,
    )
    user.set_password("password123")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def lab(app):
    lab = Lab(name="Acme Analytical", contact_email="orders@acme-lab.example")
    db.session.add(lab)
    db.session.commit()
    return lab


@pytest.fixture
def other_lab(app):
    lab = Lab(name="Other Lab", contact_email="hello@other-lab.example")
    db.session.add(lab)
    db.session.commit()
    return lab


@pytest.fixture
def product(app):
    product = Product(name="Tirzepatide", category="peptide")
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture
def requester(app):
    return _user("requester", "requester")


@pytest.fixture
def other_requester(app):
    return _user("someone", "requester")


@pytest.fixture
def lab_user(app, lab):
    return _user("labtech", "lab", lab=lab)


@pytest.fixture
def admin(app):
    return _user("admin", "admin")


@pytest.fixture
def requester_actor(requester):
    return actor_from_user(requester)


@pytest.fixture
def lab_actor(lab_user):
    return actor_from_user(lab_user)


@pytest.fixture
def admin_actor(admin):
    return actor_from_user(admin)


@pytest.fixture
def make_quote(app, requester, lab, product):
    """Insert a quote directly in any status, bypassing the orchestrator."""

    def factory(status=QuoteStatus.DRAFT, items=None, owner=None, quote_lab=None, **fields):
        quote = Quote(
            user_id=(owner or requester).id,
            lab_id=(quote_lab or lab).id,
            status=QuoteStatus(status).value,
            **fields,
        )
        for data in items if items is not None else [{"price": Decimal("250.00")}]:
            headers = data.get("additional_report_headers", 0)
            quote.items.append(QuoteItem(
                product_id=data.get("product_id", product.id),
                price=data.get("price"),
                additional_samples=data.get("additional_samples", 0),
                additional_report_headers=headers,
                additional_headers_data=data.get(
                    "additional_headers_data",
                    [{"client": "", "sample": "", "manufacturer": "", "batch": ""}] * headers,
                ),
                status=data.get("status", "pending"),
            ))
        db.session.add(quote)
        db.session.commit()
        return quote

    return factory
