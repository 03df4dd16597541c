from flask import Blueprint, request, jsonify

from labquote.decorators import login_required, roles_required, current_actor
from labquote.errors import NotFound
from labquote.services import payment_methods

payment_method_bp = Blueprint("payment_method", __name__)


@payment_method_bp.route("/payment-methods", methods=["GET"])
@login_required
@roles_required("requester", "admin")
def method_list():
    actor = current_actor()
    return jsonify([m.to_dict() for m in payment_methods.list_methods(actor.user_id)])


@payment_method_bp.route("/payment-methods/default", methods=["GET"])
@login_required
@roles_required("requester", "admin")
def method_default():
    method = payment_methods.get_default(current_actor().user_id)
    if method is None:
        raise NotFound("no default payment method")
    return jsonify(method.to_dict())


@payment_method_bp.route("/payment-methods", methods=["POST"])
@login_required
@roles_required("requester", "admin")
def method_create():
    data = request.get_json(silent=True) or {}
    method = payment_methods.create_method(
        current_actor().user_id,
        data.get("method_type"),
        data.get("details"),
        label=data.get("label"),
        is_default=bool(data.get("is_default")),
    )
    return jsonify(method.to_dict()), 201


@payment_method_bp.route("/payment-methods/<int:method_id>", methods=["PATCH"])
@login_required
@roles_required("requester", "admin")
def method_update(method_id):
    data = request.get_json(silent=True) or {}
    method = payment_methods.update_method(
        current_actor().user_id,
        method_id,
        label=data.get("label"),
        details=data.get("details"),
        method_type=data.get("method_type"),
    )
    return jsonify(method.to_dict())


@payment_method_bp.route("/payment-methods/<int:method_id>", methods=["DELETE"])
@login_required
@roles_required("requester", "admin")
def method_delete(method_id):
    payment_methods.delete_method(current_actor().user_id, method_id)
    return jsonify({"deleted": method_id})


@payment_method_bp.route("/payment-methods/<int:method_id>/default", methods=["POST"])
@login_required
@roles_required("requester", "admin")
def method_set_default(method_id):
    method = payment_methods.set_default(current_actor().user_id, method_id)
    return jsonify(method.to_dict())
