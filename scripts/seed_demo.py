"""Seed a local database with demo accounts, a lab and a few compounds."""
import os
import sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from labquote import create_app, db  # noqa: E402
from labquote.models import Lab, Product, User  # noqa: E402

DEMO_USERS = [
    # login_id, display_name, role, password
    ("admin", "Administrator", "admin", "adminpass"),
    ("requester", "Demo Requester", "requester", "requesterpass"),
    ("lab", "Demo Lab User", "lab", "labpass"),
]

COMPOUNDS = ["Tirzepatide", "Semaglutide", "Retatrutide", "BPC-157"]


def upsert_user(login_id, display_name, role, password, lab=None):
    user = User.query.filter_by(login_id=login_id).first()
    if user:
        print(f"[INFO] Updated user login_id={login_id}")
    else:
        user = User(login_id=login_id)
        db.session.add(user)
        print(f"[INFO] Created user login_id={login_id}")
    user.display_name = display_name
    user.role = role
    user.email = f"{login_id}@example.com"
    user.is_active = True
    user.lab_id = lab.id if (lab is not None and role == "lab") else None
    user.set_password(password)


def main():
    app = create_app()
    with app.app_context():
        lab = Lab.query.filter_by(name="Demo Analytical Lab").first()
        if not lab:
            lab = Lab(name="Demo Analytical Lab", contact_email="lab@example.com")
            db.session.add(lab)
            db.session.flush()
            print(f"[INFO] Created lab id={lab.id}")
        for name in COMPOUNDS:
            if not Product.query.filter_by(name=name).first():
                db.session.add(Product(name=name, category="peptide"))
                print(f"[INFO] Created product {name}")
        for login_id, display_name, role, password in DEMO_USERS:
            upsert_user(login_id, display_name, role, password, lab=lab)
        db.session.commit()
    print("[INFO] seed complete")


if __name__ == "__main__":
    main()
