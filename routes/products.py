"""
Vendor product catalogue routes for Tajer.
"""

import logging

from flask import Blueprint, request, jsonify

from auth_routes import require_auth
from models import db, Product, User

logger = logging.getLogger(__name__)

products_bp = Blueprint("products", __name__, url_prefix="/api")


def _active_vendor_products():
    return (
        Product.query
        .join(User, Product.vendor_id == User.id)
        .filter(Product.is_active.is_(True), User.role == "vendor")
    )


@products_bp.route("/products", methods=["GET"])
def list_products():
    """All active products listed by vendors."""
    products = _active_vendor_products().order_by(Product.created_at.desc()).all()
    return jsonify([p.to_dict() for p in products]), 200


@products_bp.route("/products", methods=["POST"])
@require_auth
def create_product(user_id):
    """
    Body JSON: name, description, price, stock, image_url
    """
    user = db.session.get(User, user_id)
    if user.role != "vendor":
        return jsonify({"error": "Only vendors can add products"}), 403

    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name:
        return jsonify({"error": "name is required"}), 400
    try:
        price = round(float(data.get("price")), 2)
        stock = int(data.get("stock") or 0)
    except (TypeError, ValueError):
        return jsonify({"error": "price and stock must be numbers"}), 400
    if price < 0 or stock < 0:
        return jsonify({"error": "price and stock cannot be negative"}), 400

    product = Product(
        name=name,
        description=data.get("description"),
        price=price,
        stock=stock,
        image_url=data.get("image_url") or data.get("imageUrl"),
        vendor_id=user.id,
        vendor_name=user.username,
    )
    db.session.add(product)
    db.session.commit()
    logger.info("Vendor %s added product %s", user.id, product.id)
    return jsonify({"success": True, "product": product.to_dict()}), 201


@products_bp.route("/products/<int:product_id>", methods=["DELETE"])
@require_auth
def delete_product(user_id, product_id):
    """Soft delete: the product stays on past orders."""
    product = db.session.get(Product, product_id)
    if not product or not product.is_active:
        return jsonify({"error": "Product not found"}), 404
    if product.vendor_id != user_id:
        return jsonify({"error": "You can only delete your own products"}), 403

    product.is_active = False
    db.session.commit()
    return jsonify({"success": True, "message": "Product deleted"}), 200


@products_bp.route("/search", methods=["GET"])
def search_products():
    """Case-insensitive name search. Query: ?query=..."""
    query = (request.args.get("query") or "").strip()
    if not query:
        return jsonify({"error": "query is required"}), 400
    products = (
        _active_vendor_products()
        .filter(Product.name.ilike("%{}%".format(query)))
        .order_by(Product.name)
        .all()
    )
    return jsonify([p.to_dict() for p in products]), 200


@products_bp.route("/vendors/by-name/<name>", methods=["GET"])
def vendor_by_name(name):
    vendor = User.query.filter(User.role == "vendor", User.username.ilike(name)).first()
    if not vendor:
        return jsonify({"error": "Vendor not found"}), 404
    return jsonify({"id": vendor.id, "username": vendor.username}), 200


@products_bp.route("/vendor/<int:vendor_id>/products", methods=["GET"])
def vendor_products(vendor_id):
    products = (
        _active_vendor_products()
        .filter(Product.vendor_id == vendor_id)
        .order_by(Product.created_at.desc())
        .all()
    )
    return jsonify([p.to_dict() for p in products]), 200
