from flask import Blueprint, request, jsonify, session, g, current_app

from labquote import db
from labquote.decorators import login_required
from labquote.errors import ValidationError
from labquote.models.user import User
from labquote.services.usage import UsageService

auth_bp = Blueprint("auth", __name__)


def _payload():
    return request.get_json(silent=True) or request.form.to_dict()


@auth_bp.route("/login", methods=["POST"])
def login():
    data = _payload()
    login_id = (data.get("login_id") or "").strip()
    password = data.get("password") or ""
    user = User.query.filter_by(login_id=login_id).first()
    if not user or not user.check_password(password):
        current_app.logger.info("[AUTH] login failed login_id=%s ip=%s", login_id, request.remote_addr)
        return jsonify({"error": "invalid_credentials", "message": "invalid login id or password"}), 401
    if not user.is_active:
        current_app.logger.info("[AUTH] inactive login user_id=%s", user.id)
        return jsonify({"error": "inactive", "message": "account is not active"}), 403
    session.clear()
    session["user_id"] = user.id
    current_app.logger.info("[AUTH] login user_id=%s role=%s", user.id, user.role)
    return jsonify(user.to_dict())


@auth_bp.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"status": "logged_out"})


@auth_bp.route("/register", methods=["POST"])
def register():
    data = _payload()
    login_id = (data.get("login_id") or "").strip()
    display_name = (data.get("display_name") or "").strip()
    email = (data.get("email") or "").strip() or None
    password = data.get("password") or ""
    if not login_id or not display_name or not password:
        raise ValidationError("login_id, display_name and password are required")
    if len(password) < 8:
        raise ValidationError("password must be at least 8 characters")
    if User.query.filter_by(login_id=login_id).first():
        raise ValidationError("this login id is already registered")

    # new accounts stay inactive until an admin enables them
    user = User(login_id=login_id, display_name=display_name, email=email, role="requester", is_active=False)
    user.set_password(password)
    try:
        db.session.add(user)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("[AUTH] registered user_id=%s login_id=%s", user.id, login_id)
    return jsonify(user.to_dict()), 201


@auth_bp.route("/me")
@login_required
def me():
    data = g.current_user.to_dict()
    if g.current_user.role == "requester":
        data["usage"] = UsageService().summary(g.current_user)
    return jsonify(data)
