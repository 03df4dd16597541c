from flask import Blueprint, request, jsonify

from labquote.decorators import login_required, current_actor
from labquote.errors import ValidationError
from labquote.pricing import price_for_quote
from labquote.services import quote_actions

quote_bp = Blueprint("quote", __name__)


def _body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


@quote_bp.route("/quotes", methods=["GET"])
@login_required
def quote_list():
    actor = current_actor()
    quotes = quote_actions.list_quotes(actor, status=request.args.get("status"))
    return jsonify([q.to_dict() for q in quotes])


@quote_bp.route("/quotes", methods=["POST"])
@login_required
def quote_create():
    data = _body()
    result = quote_actions.create_quote(
        current_actor(),
        data.get("lab_id"),
        items=data.get("items"),
        notes=data.get("notes"),
        quote_number=data.get("quote_number"),
    )
    return jsonify(result.to_dict()), 201


@quote_bp.route("/quotes/<int:quote_id>", methods=["GET"])
@login_required
def quote_detail(quote_id):
    actor = current_actor()
    quote = quote_actions.get_quote(actor, quote_id)
    return jsonify(quote_actions.quote_detail(actor, quote))


@quote_bp.route("/quotes/<int:quote_id>", methods=["PATCH"])
@login_required
def quote_update(quote_id):
    result = quote_actions.update_quote(current_actor(), quote_id, _body())
    return jsonify(result.to_dict())


@quote_bp.route("/quotes/<int:quote_id>", methods=["DELETE"])
@login_required
def quote_delete(quote_id):
    quote_actions.delete_quote(current_actor(), quote_id)
    return jsonify({"deleted": quote_id})


@quote_bp.route("/quotes/<int:quote_id>/items", methods=["POST"])
@login_required
def item_add(quote_id):
    result = quote_actions.add_item(current_actor(), quote_id, _body())
    return jsonify(result.to_dict()), 201


@quote_bp.route("/quotes/<int:quote_id>/items/<int:item_id>", methods=["PATCH"])
@login_required
def item_update(quote_id, item_id):
    result = quote_actions.update_item(current_actor(), quote_id, item_id, _body())
    return jsonify(result.to_dict())


@quote_bp.route("/quotes/<int:quote_id>/pricing", methods=["GET"])
@login_required
def quote_pricing(quote_id):
    quote = quote_actions.get_quote(current_actor(), quote_id)
    return jsonify(price_for_quote(quote).to_dict())


@quote_bp.route("/quotes/<int:quote_id>/activity", methods=["GET"])
@login_required
def quote_activity(quote_id):
    entries = quote_actions.activity_for(current_actor(), quote_id)
    return jsonify([e.to_dict() for e in entries])


@quote_bp.route("/quotes/<int:quote_id>/tracking-events", methods=["GET"])
@login_required
def quote_tracking_events(quote_id):
    events = quote_actions.tracking_events_for(current_actor(), quote_id)
    return jsonify([e.to_dict() for e in events])


# --- lifecycle actions ---

@quote_bp.route("/quotes/<int:quote_id>/submit", methods=["POST"])
@login_required
def quote_submit(quote_id):
    data = _body()
    result = quote_actions.submit(current_actor(), quote_id, template_id=data.get("template_id"))
    return jsonify(result.to_dict())


@quote_bp.route("/quotes/<int:quote_id>/approve", methods=["POST"])
@login_required
def quote_approve(quote_id):
    data = _body()
    result = quote_actions.approve(
        current_actor(),
        quote_id,
        item_prices=data.get("item_prices"),
        discount_percent=data.get("discount_percent"),
        lab_quote_number=data.get("lab_quote_number"),
        lab_response=data.get("lab_response"),
    )
    return jsonify(result.to_dict())


@quote_bp.route("/quotes/<int:quote_id>/reject", methods=["POST"])
@login_required
def quote_reject(quote_id):
    data = _body()
    result = quote_actions.reject(current_actor(), quote_id, lab_response=data.get("lab_response"))
    return jsonify(result.to_dict())


@quote_bp.route("/quotes/<int:quote_id>/accept", methods=["POST"])
@login_required
def quote_accept(quote_id):
    result = quote_actions.accept(current_actor(), quote_id)
    return jsonify(result.to_dict())


@quote_bp.route("/quotes/<int:quote_id>/decline", methods=["POST"])
@login_required
def quote_decline(quote_id):
    data = _body()
    result = quote_actions.decline(current_actor(), quote_id, reason=data.get("reason"))
    return jsonify(result.to_dict())


@quote_bp.route("/quotes/<int:quote_id>/payment", methods=["POST"])
@login_required
def quote_payment(quote_id):
    data = _body()
    result = quote_actions.record_payment(
        current_actor(),
        quote_id,
        payment_status=data.get("payment_status"),
        payment_amount_usd=data.get("payment_amount_usd"),
        payment_amount_crypto=data.get("payment_amount_crypto"),
        payment_date=data.get("payment_date"),
        transaction_id=data.get("transaction_id"),
    )
    return jsonify(result.to_dict())


@quote_bp.route("/quotes/<int:quote_id>/shipping", methods=["POST"])
@login_required
def quote_shipping(quote_id):
    data = _body()
    result = quote_actions.add_shipping(
        current_actor(),
        quote_id,
        data.get("tracking_number"),
        shipped_date=data.get("shipped_date"),
        estimated_delivery=data.get("estimated_delivery"),
    )
    return jsonify(result.to_dict())


@quote_bp.route("/quotes/<int:quote_id>/duplicate", methods=["POST"])
@login_required
def quote_duplicate(quote_id):
    result = quote_actions.duplicate(current_actor(), quote_id)
    return jsonify(result.to_dict()), 201


@quote_bp.route("/quotes/<int:quote_id>/start-testing", methods=["POST"])
@login_required
def quote_start_testing(quote_id):
    result = quote_actions.start_testing(current_actor(), quote_id)
    return jsonify(result.to_dict())


@quote_bp.route("/quotes/<int:quote_id>/items/<int:item_id>/results", methods=["POST"])
@login_required
def item_results(quote_id, item_id):
    data = _body()
    # item must belong to the quote in the URL
    quote = quote_actions.get_quote(current_actor(), quote_id)
    if item_id not in {item.id for item in quote.items}:
        raise ValidationError(f"item {item_id} is not on quote {quote_id}")
    result = quote_actions.submit_results(
        current_actor(),
        item_id,
        test_results=data.get("test_results"),
        report_url=data.get("report_url"),
        testing_notes=data.get("testing_notes"),
        status=data.get("status") or "completed",
        report_file=data.get("report_file"),
    )
    return jsonify(result.to_dict())
