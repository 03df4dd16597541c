import pytest

from labquote import db
from labquote.errors import NotFound, ValidationError
from labquote.models import PaymentMethod
from labquote.models.payment_method import validate_details
from labquote.services import payment_methods

WALLET = {"currency": "USDC", "wallet_address": "0xabc123"}
CARD = {"card_type": "visa", "last_four": "4242"}


def _defaults(user_id):
    return [m.id for m in PaymentMethod.query.filter_by(user_id=user_id, is_default=True).all()]


def test_details_are_checked_per_type():
    assert validate_details("crypto_wallet", {"currency": " BTC ", "wallet_address": "bc1q"}) == {
        "currency": "BTC", "wallet_address": "bc1q",
    }
    with pytest.raises(ValidationError):
        validate_details("bank_transfer", {"account_name": "Acme", "account_number": "1"})
    with pytest.raises(ValidationError):
        validate_details("other", {"notes": "cash", "pin": "1234"})
    with pytest.raises(ValidationError):
        validate_details("cheque", {})


@pytest.mark.parametrize("last_four", ["424", "42a2", "42424"])
def test_card_needs_exactly_four_digits(last_four):
    with pytest.raises(ValidationError):
        validate_details("credit_card", {"card_type": "visa", "last_four": last_four})


def test_only_one_default_per_user(app, requester, other_requester):
    first = payment_methods.create_method(requester.id, "crypto_wallet", WALLET, is_default=True)
    theirs = payment_methods.create_method(other_requester.id, "crypto_wallet", WALLET, is_default=True)
    second = payment_methods.create_method(requester.id, "credit_card", CARD, label="Work card", is_default=True)

    assert _defaults(requester.id) == [second.id]
    assert _defaults(other_requester.id) == [theirs.id]

    payment_methods.set_default(requester.id, first.id)
    assert _defaults(requester.id) == [first.id]
    assert payment_methods.get_default(requester.id).id == first.id
    assert [m.id for m in payment_methods.list_methods(requester.id)][0] == first.id


def test_new_method_is_not_default_unless_asked(app, requester):
    method = payment_methods.create_method(requester.id, "other", {"notes": "pay on pickup"})
    assert method.is_default is False
    assert payment_methods.get_default(requester.id) is None


def test_other_users_methods_are_not_found(app, requester, other_requester):
    theirs = payment_methods.create_method(other_requester.id, "crypto_wallet", WALLET, is_default=True)
    with pytest.raises(NotFound):
        payment_methods.set_default(requester.id, theirs.id)
    with pytest.raises(NotFound):
        payment_methods.delete_method(requester.id, theirs.id)
    assert db.session.get(PaymentMethod, theirs.id).is_default is True


def test_update_revalidates_details(app, requester):
    method = payment_methods.create_method(requester.id, "credit_card", CARD)
    with pytest.raises(ValidationError):
        payment_methods.update_method(requester.id, method.id, details={"card_type": "visa", "last_four": "12"})
    db.session.rollback()

    updated = payment_methods.update_method(
        requester.id, method.id, method_type="wire_transfer",
        details={"account_name": "Acme", "account_number": "99", "swift_code": "ACMEUS33", "bank_name": "First"},
    )
    assert updated.method_type == "wire_transfer"
    assert updated.details["swift_code"] == "ACMEUS33"


def test_delete(app, requester):
    method = payment_methods.create_method(requester.id, "other", {"notes": "invoice"})
    payment_methods.delete_method(requester.id, method.id)
    assert payment_methods.list_methods(requester.id) == []
