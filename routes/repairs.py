"""
Repair request API routes for Tajer.
Customer posts a job -> provider quotes -> customer pays a deposit ->
provider completes -> customer confirms and is charged -> provider is paid out.
"""

import logging

from flask import Blueprint, request, jsonify, current_app, redirect

from auth_routes import require_admin
from errors import NotFoundError, ValidationError
from extensions import limiter
from models import ProviderAccount

logger = logging.getLogger(__name__)

repairs_bp = Blueprint("repairs", __name__, url_prefix="/api/repairs")


def _repairs():
    return current_app.extensions["repairs"]


def _body():
    return request.get_json(silent=True) or {}


def _job_code(data):
    return data.get("job_code") or data.get("jobCode")


def _page(title, message, status=200):
    return """
    <html>
    <head><title>{title}</title></head>
    <body style="font-family: sans-serif; text-align: center; padding: 50px;">
        <h1>{title}</h1>
        <p>{message}</p>
    </body>
    </html>
    """.format(title=title, message=message), status


def _wants_html():
    return request.method == "GET"


# ---------------------------------------------------------------------------
# Submission and listing
# ---------------------------------------------------------------------------
@repairs_bp.route("", methods=["POST"])
@limiter.limit("10 per minute")
def submit_repair():
    """
    Create a repair request.
    Body JSON: description, image_urls (list), requester_email,
               customer_address, preferred_time
    """
    data = _body()
    repair = _repairs().submit_request(
        description=data.get("description"),
        image_urls=data.get("image_urls") or data.get("imageUrls"),
        requester_email=data.get("requester_email") or data.get("email"),
        customer_address=data.get("customer_address") or data.get("address"),
        preferred_time=data.get("preferred_time") or data.get("preferredTime"),
    )
    return jsonify({
        "success": True,
        "repairId": repair.id,
        "job_code": repair.job_code,
        "repair": repair.to_dict(),
    }), 201


@repairs_bp.route("/open", methods=["GET"])
def list_open_repairs():
    """Open requests for providers to quote, newest first."""
    repairs = _repairs().list_open()
    return jsonify({"repairs": [r.open_listing() for r in repairs]}), 200


@repairs_bp.route("/<int:repair_id>", methods=["GET"])
def get_repair(repair_id):
    repair = _repairs().get(repair_id)
    listing = repair.open_listing()
    listing["price_quote"] = repair.price_quote
    listing["completion_status"] = repair.completion_status
    return jsonify({"repair": listing}), 200


@repairs_bp.route("/check", methods=["POST"])
@limiter.limit("20 per minute")
def check_repair():
    """
    Look a job up by its code and the email of either party.
    Body JSON: job_code, email
    Returns: { role: "user" | "provider", repair }
    """
    data = _body()
    repair, role = _repairs().check(_job_code(data), data.get("email"))
    return jsonify({
        "role": role,
        "repair": repair.to_dict(include_payment=(role == "provider")),
    }), 200


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------
@repairs_bp.route("/<int:repair_id>/quote", methods=["POST"])
@limiter.limit("10 per minute")
def submit_quote(repair_id):
    """
    Body JSON: provider_email, provider_first_name, provider_last_name,
               provider_city, price_quote
    """
    data = _body()
    repair = _repairs().submit_quote(
        repair_id,
        provider_email=data.get("provider_email"),
        provider_first_name=data.get("provider_first_name"),
        provider_last_name=data.get("provider_last_name"),
        provider_city=data.get("provider_city"),
        price_quote=data.get("price_quote"),
    )
    return jsonify({"success": True, "job_code": repair.job_code, "status": repair.status}), 200


@repairs_bp.route("/<int:repair_id>/accept", methods=["GET", "POST"])
def accept_quote(repair_id):
    """Accept a quote. The link in the quote email carries ?code=<job code>."""
    code = request.args.get("code") or _job_code(_body())
    repair = _repairs().accept(repair_id, code)
    if _wants_html():
        return _page("Quote accepted", "Thanks! Your provider has been notified. "
                     "You'll be asked for a ${:.2f} deposit to lock in the job.".format(repair.deposit_amount))
    return jsonify({"success": True, "status": repair.status}), 200


@repairs_bp.route("/<int:repair_id>/reject", methods=["GET", "POST"])
def reject_quote(repair_id):
    code = request.args.get("code") or _job_code(_body())
    repair = _repairs().reject(repair_id, code)
    if _wants_html():
        return _page("Quote rejected", "The quote was declined. No payment was taken.")
    return jsonify({"success": True, "status": repair.status}), 200


# ---------------------------------------------------------------------------
# Deposit
# ---------------------------------------------------------------------------
@repairs_bp.route("/payments/start/<int:repair_id>", methods=["POST"])
@limiter.limit("10 per minute")
def start_deposit(repair_id):
    """Returns: { client_secret, payment_intent_id, amount }"""
    result = _repairs().start_deposit(repair_id)
    return jsonify(result), 200


@repairs_bp.route("/save-payment-method", methods=["POST"])
def save_payment_method():
    """
    Body JSON: repair_id, payment_intent_id, payment_method_id (optional)
    """
    data = _body()
    repair_id = data.get("repair_id") or data.get("repairId")
    if not repair_id:
        raise ValidationError("repair_id is required")
    try:
        repair_id = int(repair_id)
    except (TypeError, ValueError):
        raise ValidationError("repair_id must be an integer")
    repair = _repairs().save_payment_method(
        repair_id,
        data.get("payment_intent_id") or data.get("paymentIntentId"),
        data.get("payment_method_id") or data.get("paymentMethodId"),
    )
    return jsonify({"success": True, "status": repair.status}), 200


# ---------------------------------------------------------------------------
# Completion and pricing
# ---------------------------------------------------------------------------
@repairs_bp.route("/mark-completed", methods=["POST"])
def mark_completed():
    """Provider marks the job done. Body JSON: job_code, email, final_price"""
    data = _body()
    repair = _repairs().mark_completed(_job_code(data), data.get("email"), data.get("final_price"))
    return jsonify({
        "success": True,
        "completion_status": repair.completion_status,
        "final_price": repair.final_price,
    }), 200


@repairs_bp.route("/revise-price", methods=["POST"])
def revise_price():
    """
    Provider revises the price before finishing.
    Body JSON: job_code (or repair_id), email, final_price, materials_cost
    """
    data = _body()
    job_code = _job_code(data)
    repair_id = data.get("repair_id") or data.get("repairId")
    if not job_code and repair_id:
        try:
            job_code = _repairs().get(int(repair_id)).job_code
        except (TypeError, ValueError):
            raise ValidationError("repair_id must be an integer")
    repair = _repairs().revise_price(
        job_code, data.get("email"), data.get("final_price"), data.get("materials_cost"),
    )
    return jsonify({"success": True, "status": repair.status, "final_price": repair.final_price}), 200


@repairs_bp.route("/accept-final-price", methods=["POST"])
def accept_final_price():
    """Customer accepts a revised price. Body JSON: job_code, email"""
    data = _body()
    repair = _repairs().accept_final_price(_job_code(data), data.get("email"))
    return jsonify({"success": True, "status": repair.status}), 200


@repairs_bp.route("/confirm-completion", methods=["POST"])
@limiter.limit("5 per minute")
def confirm_completion():
    """
    Customer confirms the job; the remaining balance is charged.
    Body JSON: job_code, email
    """
    data = _body()
    repair, payout = _repairs().confirm_completion(_job_code(data), data.get("email"))
    return jsonify({
        "success": True,
        "repair": repair.to_dict(),
        "charged": round(repair.final_price - repair.deposit_amount, 2),
        "payout": payout,
    }), 200


@repairs_bp.route("/release-payment", methods=["POST"])
@require_admin
def release_payment(user_id):
    """Admin retry of a provider payout. Body JSON: repair_id"""
    data = _body()
    try:
        repair_id = int(data.get("repair_id") or data.get("repairId"))
    except (TypeError, ValueError):
        raise ValidationError("repair_id is required")
    result = _repairs().release_payout(repair_id)
    logger.info("Admin %s released payout for repair %s: %s", user_id, repair_id, result)
    return jsonify(result), 200


# ---------------------------------------------------------------------------
# Provider payout onboarding
# ---------------------------------------------------------------------------
@repairs_bp.route("/providers/onboarding-link", methods=["POST"])
@limiter.limit("5 per minute")
def onboarding_link():
    """Fresh onboarding link for a provider. Body JSON: email"""
    url = _repairs().issue_onboarding_link(_body().get("email"))
    return jsonify({"url": url}), 200


@repairs_bp.route("/providers/onboarding/return", methods=["GET"])
def onboarding_return():
    """Stripe sends the provider here after onboarding."""
    account_id = request.args.get("account", "")
    account = _repairs().sync_account(account_id) if account_id else None
    if account is None:
        return _page("Setup complete!", "You can close this window.")
    if account.transfers_active:
        _repairs().release_payouts_for_account(account.stripe_account_id)
        return _page("Setup complete!", "Your payouts are active. You can close this window.")
    return _page("Almost there", "Stripe is still reviewing your details. We'll pay you out as soon as they're approved.")


@repairs_bp.route("/providers/onboarding/refresh", methods=["GET"])
def onboarding_refresh():
    """Stripe sends the provider here when the onboarding link has expired."""
    account_id = request.args.get("account", "")
    account = ProviderAccount.query.filter_by(stripe_account_id=account_id).first() if account_id else None
    if account is None:
        raise NotFoundError("No payout account found")
    return redirect(_repairs().issue_onboarding_link(account.email))
