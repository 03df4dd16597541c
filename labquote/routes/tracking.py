from flask import Blueprint, request, jsonify, session

from labquote.decorators import login_required, current_actor
from labquote.tracking import TrackingGate

tracking_bp = Blueprint("tracking", __name__)


@tracking_bp.route("/tracking/cooldown", methods=["GET"])
@login_required
def cooldown():
    actor = current_actor()
    remaining = TrackingGate.from_app().cooldown_remaining(actor)
    return jsonify({"remaining_seconds": remaining, "allowed": remaining == 0})


@tracking_bp.route("/tracking/refresh", methods=["POST"])
@login_required
def refresh():
    data = request.get_json(silent=True) or {}
    report = TrackingGate.from_app().manual_refresh(current_actor(), data.get("tracking_number"))
    return jsonify(report.to_dict())


@tracking_bp.route("/tracking/stale-check", methods=["POST"])
@login_required
def stale_check():
    report = TrackingGate.from_app().refresh_stale_once(current_actor(), session)
    if report is None:
        return jsonify({"checked": False})
    data = report.to_dict()
    data["checked"] = True
    return jsonify(data)
