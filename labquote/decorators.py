from dataclasses import dataclass
from functools import wraps
from typing import Optional

from flask import g, abort


@dataclass(frozen=True)
class Actor:
    """Who is acting: the identity every permission check runs against."""

    user_id: Optional[int]
    role: str
    lab_id: Optional[int] = None

    @property
    def is_admin(self):
        return self.role == "admin"


def actor_from_user(user):
    return Actor(user_id=user.id, role=user.role, lab_id=user.lab_id)


def current_actor():
    user = getattr(g, "current_user", None)
    if not user:
        abort(401)
    return actor_from_user(user)


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not getattr(g, "current_user", None):
            abort(401)
        return f(*args, **kwargs)
    return decorated_function


def roles_required(*roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if not user:
                abort(401)
            if user.role not in roles:
                abort(403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator
