from flask import current_app

from labquote import db
from labquote.errors import NotFound, ValidationError
from labquote.models.payment_method import MethodType, PaymentMethod, validate_details


def list_methods(user_id):
    return (
        PaymentMethod.query
        .filter_by(user_id=user_id)
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc(), PaymentMethod.id.desc())
        .all()
    )


def get_default(user_id):
    return PaymentMethod.query.filter_by(user_id=user_id, is_default=True).first()


def _owned(user_id, method_id):
    method = db.session.get(PaymentMethod, method_id)
    if method is None or method.user_id != user_id:
        raise NotFound(f"payment method {method_id} not found")
    return method


def _claim_default(user_id, method_id):
    # unset-all and set-one in a single statement
    result = db.session.execute(
        db.update(PaymentMethod)
        .where(PaymentMethod.user_id == user_id)
        .values(is_default=(PaymentMethod.id == method_id))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def create_method(user_id, method_type, details, label=None, is_default=False):
    try:
        method_type = MethodType(method_type)
    except ValueError:
        raise ValidationError(f"unknown payment method type: {method_type}")
    cleaned = validate_details(method_type, details or {})
    method = PaymentMethod(
        user_id=user_id,
        method_type=method_type.value,
        label=(label or "").strip() or None,
        details=cleaned,
        is_default=False,
    )
    try:
        db.session.add(method)
        db.session.flush()
        if is_default:
            _claim_default(user_id, method.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    db.session.refresh(method)
    current_app.logger.info(
        "[PAYMENT-METHOD] created id=%s user_id=%s type=%s default=%s",
        method.id, user_id, method.method_type, method.is_default,
    )
    return method


def update_method(user_id, method_id, label=None, details=None, method_type=None):
    method = _owned(user_id, method_id)
    try:
        new_type = MethodType(method_type).value if method_type else method.method_type
    except ValueError:
        raise ValidationError(f"unknown payment method type: {method_type}")
    if details is not None or new_type != method.method_type:
        method.details = validate_details(new_type, details if details is not None else method.details)
        method.method_type = new_type
    if label is not None:
        method.label = label.strip() or None
    db.session.commit()
    current_app.logger.info("[PAYMENT-METHOD] updated id=%s user_id=%s", method.id, user_id)
    return method


def delete_method(user_id, method_id):
    method = _owned(user_id, method_id)
    db.session.delete(method)
    db.session.commit()
    current_app.logger.info("[PAYMENT-METHOD] deleted id=%s user_id=%s", method_id, user_id)


def set_default(user_id, method_id):
    method = _owned(user_id, method_id)
    try:
        _claim_default(user_id, method.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    db.session.refresh(method)
    current_app.logger.info("[PAYMENT-METHOD] default id=%s user_id=%s", method.id, user_id)
    return method
