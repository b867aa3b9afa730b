"""
Rental property and reservation API routes for Tajer.
Landlords list properties and decide on offers; tenants identify themselves
by the email they booked with.
"""

from flask import Blueprint, request, jsonify, current_app

from auth_routes import require_auth, require_role
from errors import ValidationError
from extensions import limiter

properties_bp = Blueprint("properties", __name__, url_prefix="/api")


def _reservations():
    return current_app.extensions["reservations"]


def _body():
    return request.get_json(silent=True) or {}


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------
@properties_bp.route("/properties", methods=["GET"])
def list_properties():
    props = _reservations().list_properties(city=request.args.get("city"))
    return jsonify({"properties": [p.to_dict() for p in props]}), 200


@properties_bp.route("/properties", methods=["POST"])
@require_role("landlord")
def create_property(user_id):
    """
    Body JSON: title, price, description, address, city, image_urls
    """
    data = _body()
    prop = _reservations().create_property(
        user_id,
        title=data.get("title"),
        price=data.get("price"),
        description=data.get("description"),
        address=data.get("address"),
        city=data.get("city"),
        image_urls=data.get("image_urls"),
    )
    return jsonify({"success": True, "property": prop.to_dict()}), 201


@properties_bp.route("/properties/<int:property_id>", methods=["GET"])
def get_property(property_id):
    prop = _reservations().get_property(property_id)
    body = prop.to_dict()
    body["availability"] = prop.availability.to_dict() if prop.availability else None
    return jsonify({"property": body}), 200


@properties_bp.route("/properties/<int:property_id>/availability/range", methods=["POST"])
@require_role("landlord")
def set_availability(user_id, property_id):
    """Body JSON: start_date, end_date (optional), is_available (default true)"""
    data = _body()
    availability = _reservations().set_availability(
        property_id,
        user_id,
        start_date=data.get("start_date"),
        end_date=data.get("end_date"),
        is_available=data.get("is_available", True),
    )
    return jsonify({"success": True, "availability": availability.to_dict()}), 200


@properties_bp.route("/properties/<int:property_id>/availability", methods=["GET"])
def get_availability(property_id):
    """Query: from=YYYY-MM-DD&to=YYYY-MM-DD"""
    date_from = request.args.get("from")
    date_to = request.args.get("to")
    if not date_from or not date_to:
        raise ValidationError("from and to are required")
    days = _reservations().availability(property_id, date_from, date_to)
    return jsonify({"property_id": property_id, "days": days}), 200


# ---------------------------------------------------------------------------
# Reservations: tenant side
# ---------------------------------------------------------------------------
@properties_bp.route("/reservations", methods=["POST"])
@limiter.limit("10 per minute")
def submit_reservation():
    """
    Body JSON: property_id, email, name, start_date, end_date, offer_price, message
    """
    data = _body()
    try:
        property_id = int(data.get("property_id"))
    except (TypeError, ValueError):
        raise ValidationError("property_id is required")
    reservation = _reservations().submit(
        property_id,
        tenant_email=data.get("email") or data.get("tenant_email"),
        tenant_name=data.get("name") or data.get("tenant_name"),
        start_date=data.get("start_date"),
        end_date=data.get("end_date"),
        offer_price=data.get("offer_price"),
        message=data.get("message"),
    )
    return jsonify({"success": True, "reservation": reservation.to_dict()}), 201


@properties_bp.route("/reservations", methods=["GET"])
def tenant_reservations():
    """Query: email. The tenant's own requests, newest first."""
    email = request.args.get("email")
    if not email:
        raise ValidationError("email is required")
    reservations = _reservations().list_for_tenant(email)
    return jsonify({"reservations": [r.to_dict() for r in reservations]}), 200


@properties_bp.route("/reservations/<int:reservation_id>", methods=["GET"])
def get_reservation(reservation_id):
    reservation = _reservations().get_for_tenant(reservation_id, request.args.get("email"))
    return jsonify({"reservation": reservation.to_dict()}), 200


@properties_bp.route("/reservations/upload-id", methods=["POST"])
@limiter.limit("5 per minute")
def upload_id():
    """
    multipart/form-data: reservation_id, email, frontId (required), backId, selfie
    """
    try:
        reservation_id = int(request.form.get("reservation_id"))
    except (TypeError, ValueError):
        raise ValidationError("reservation_id is required")
    reservation = _reservations().upload_id(reservation_id, request.form.get("email"), request.files)
    return jsonify({"success": True, "reservation": reservation.to_dict()}), 200


@properties_bp.route("/reservations/<int:reservation_id>/checkout", methods=["POST"])
@limiter.limit("10 per minute")
def reservation_checkout(reservation_id):
    """Body JSON: email. Returns: { url, session_id }"""
    session = _reservations().start_checkout(reservation_id, _body().get("email"))
    return jsonify({"url": session["url"], "session_id": session["id"]}), 200


# ---------------------------------------------------------------------------
# Reservations: landlord side
# ---------------------------------------------------------------------------
@properties_bp.route("/landlord/reservations", methods=["GET"])
@require_role("landlord")
def landlord_reservations(user_id):
    reservations = _reservations().list_for_landlord(user_id, status=request.args.get("status"))
    return jsonify({"reservations": [r.to_dict() for r in reservations]}), 200


@properties_bp.route("/reservations/<int:reservation_id>/accept", methods=["POST"])
@require_auth
def accept_reservation(user_id, reservation_id):
    reservation = _reservations().accept(reservation_id, user_id, note=_body().get("note"))
    return jsonify({"success": True, "reservation": reservation.to_dict()}), 200


@properties_bp.route("/reservations/<int:reservation_id>/reject", methods=["POST"])
@require_auth
def reject_reservation(user_id, reservation_id):
    reservation = _reservations().reject(reservation_id, user_id, note=_body().get("note"))
    return jsonify({"success": True, "reservation": reservation.to_dict()}), 200


@properties_bp.route("/reservations/<int:reservation_id>/request-documents", methods=["POST"])
@require_auth
def request_documents(user_id, reservation_id):
    reservation = _reservations().request_documents(reservation_id, user_id, note=_body().get("note"))
    return jsonify({"success": True, "reservation": reservation.to_dict()}), 200
