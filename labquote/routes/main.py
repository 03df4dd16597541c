from flask import Blueprint, jsonify, g

from labquote import db
from labquote.decorators import login_required
from labquote.models.lab import Lab
from labquote.models.product import Product


main_bp = Blueprint("main", __name__)


@main_bp.route("/health")
def health():
    db.session.execute(db.text("SELECT 1"))
    return jsonify({"status": "ok"})


@main_bp.route("/labs")
@login_required
def lab_list():
    labs = Lab.query.filter_by(is_active=True).order_by(Lab.name).all()
    return jsonify([lab.to_dict() for lab in labs])


@main_bp.route("/products")
@login_required
def product_list():
    products = Product.query.order_by(Product.name).all()
    return jsonify([
        {"id": p.id, "name": p.name, "category": p.category, "note": p.note}
        for p in products
    ])
