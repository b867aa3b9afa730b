"""
In-store order reservations for Tajer.
A customer (or guest) reserves products from one vendor and picks them up
in store with the printed barcode.
"""

import logging

from flask import Blueprint, request, jsonify, current_app

from auth_routes import require_auth, verify_token
from models import db, Order, OrderItem, Product, User

logger = logging.getLogger(__name__)

orders_bp = Blueprint("orders", __name__, url_prefix="/api")


def _optional_user_id():
    token = request.headers.get("Authorization", "").replace("Bearer ", "")
    return verify_token(token) if token else None


@orders_bp.route("/reserve-order", methods=["POST"])
def reserve_order():
    """
    Body JSON: vendorId, items [{productId, quantity}], guestName, guestContact
    Returns: { success, orderId, barcodeText }
    """
    data = request.get_json(silent=True) or {}
    items = data.get("items") or []
    try:
        vendor_id = int(data.get("vendorId") or data.get("vendor_id"))
    except (TypeError, ValueError):
        return jsonify({"error": "vendorId is required"}), 400
    if not items:
        return jsonify({"error": "At least one item is required"}), 400

    vendor = db.session.get(User, vendor_id)
    if not vendor or vendor.role != "vendor":
        return jsonify({"error": "Vendor not found"}), 404

    customer_id = _optional_user_id()
    guest_name = data.get("guestName") or data.get("guest_name")
    guest_contact = data.get("guestContact") or data.get("guest_contact")
    if not customer_id and not (guest_name and guest_contact):
        return jsonify({"error": "guestName and guestContact are required for guest orders"}), 400

    order = Order(
        customer_id=customer_id,
        vendor_id=vendor.id,
        guest_name=guest_name,
        guest_contact=guest_contact,
    )
    total = 0.0
    for entry in items:
        try:
            product_id = int(entry.get("productId") or entry.get("product_id"))
            quantity = int(entry.get("quantity") or 1)
        except (TypeError, ValueError, AttributeError):
            return jsonify({"error": "Each item needs a productId and quantity"}), 400
        if quantity < 1:
            return jsonify({"error": "Quantity must be at least 1"}), 400
        product = db.session.get(Product, product_id)
        if not product or not product.is_active or product.vendor_id != vendor.id:
            return jsonify({"error": "Product {} is not available from this vendor".format(product_id)}), 400
        order.items.append(OrderItem(product=product, quantity=quantity, price=product.price))
        total += product.price * quantity

    order.total_price = round(total, 2)
    db.session.add(order)
    db.session.commit()
    logger.info("Order %s reserved with vendor %s (%.2f)", order.id, vendor.id, order.total_price)

    current_app.extensions["notifier"].order_received(vendor.email, vendor.username, order)

    return jsonify({
        "success": True,
        "orderId": order.id,
        "barcodeText": order.barcode,
        "total": order.total_price,
    }), 201


@orders_bp.route("/orders", methods=["GET"])
@require_auth
def list_orders(user_id):
    """Orders placed by the authenticated customer (?userId= must match)."""
    requested = request.args.get("userId")
    if requested and requested != str(user_id):
        return jsonify({"error": "Not authorised for these orders"}), 403
    orders = Order.query.filter_by(customer_id=user_id).order_by(Order.created_at.desc()).all()
    return jsonify([o.to_dict() for o in orders]), 200


@orders_bp.route("/orders/<order_id>", methods=["GET"])
@require_auth
def get_order(user_id, order_id):
    order = db.session.get(Order, order_id)
    if not order:
        return jsonify({"error": "Order not found"}), 404
    if user_id not in (order.customer_id, order.vendor_id):
        return jsonify({"error": "Not authorised for this order"}), 403
    return jsonify(order.to_dict()), 200


@orders_bp.route("/vendor/<int:vendor_id>/reservations", methods=["GET"])
@require_auth
def vendor_reservations(user_id, vendor_id):
    user = db.session.get(User, user_id)
    if user.id != vendor_id and user.role != "admin":
        return jsonify({"error": "Not authorised for this vendor"}), 403
    orders = Order.query.filter_by(vendor_id=vendor_id).order_by(Order.created_at.desc()).all()
    return jsonify([o.to_dict() for o in orders]), 200
