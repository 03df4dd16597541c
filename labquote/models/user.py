from datetime import datetime
from werkzeug.security import generate_password_hash, check_password_hash
from labquote import db


ROLES = ("requester", "lab", "admin")


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    login_id = db.Column(db.String(128), unique=True, nullable=False)
    display_name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(32), nullable=False, default="requester")
    lab_id = db.Column(db.Integer, db.ForeignKey("labs.id"), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    monthly_item_limit = db.Column(db.Integer, nullable=True)  # None = unlimited
    tracking_refreshed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            "id": self.id,
            "login_id": self.login_id,
            "display_name": self.display_name,
            "email": self.email,
            "role": self.role,
            "lab_id": self.lab_id,
            "is_active": self.is_active,
            "monthly_item_limit": self.monthly_item_limit,
        }

    def __repr__(self):
        return f"<User id={self.id} login_id={self.login_id} role={self.role}>"
