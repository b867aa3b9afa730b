"""
Payment API routes for Tajer.
Cart checkout through Stripe Checkout, plus the Stripe webhooks for the
platform account and for connected (provider) accounts.
"""

import logging

from flask import Blueprint, request, jsonify, current_app

from errors import MarketplaceError, UpstreamError
from extensions import limiter
from models import db, Product
from payment_gateway import account_status

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.route("/create-checkout-session", methods=["POST"])
@limiter.limit("10 per minute")
def create_checkout_session():
    """
    Stripe Checkout for a shopping cart.
    Body JSON: cartItems [{productId, quantity}]
    Returns: { url, id }
    """
    data = request.get_json(silent=True) or {}
    cart = data.get("cartItems") or data.get("cart_items") or []
    if not cart:
        return jsonify({"error": "cartItems is required"}), 400

    line_items = []
    for entry in cart:
        try:
            product_id = int(entry.get("productId") or entry.get("id"))
            quantity = int(entry.get("quantity") or 1)
        except (TypeError, ValueError, AttributeError):
            return jsonify({"error": "Each cart item needs a productId and quantity"}), 400
        product = db.session.get(Product, product_id)
        if not product or not product.is_active:
            return jsonify({"error": "Product {} is not available".format(product_id)}), 400
        if quantity < 1:
            return jsonify({"error": "Quantity must be at least 1"}), 400
        line_items.append({"name": product.name, "price": product.price, "quantity": quantity})

    frontend = current_app.config["FRONTEND_URL"]
    session = current_app.extensions["gateway"].create_checkout_session(
        line_items,
        success_url="{}/success".format(frontend),
        cancel_url="{}/cart".format(frontend),
        metadata={"type": "cart"},
    )
    return jsonify({"url": session["url"], "id": session["id"]}), 200


# ---------------------------------------------------------------------------
# Stripe Webhooks
# ---------------------------------------------------------------------------
webhook_bp = Blueprint("webhooks", __name__)


def _raw_event():
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature", "")
    return payload, sig_header


def _data_object(event):
    return (event.get("data") or {}).get("object") or {}


@webhook_bp.route("/webhook", methods=["POST"])
def stripe_webhook():
    """
    Platform account events: payment_intent.succeeded,
    payment_intent.payment_failed, checkout.session.completed
    """
    payload, sig_header = _raw_event()
    event = current_app.extensions["gateway"].parse_event(
        payload, sig_header, current_app.config.get("STRIPE_WEBHOOK_SECRET", ""))
    event_type = event.get("type")
    data_object = _data_object(event)

    try:
        if event_type == "payment_intent.succeeded":
            _handle_payment_succeeded(data_object)
        elif event_type == "payment_intent.payment_failed":
            _handle_payment_failed(data_object)
        elif event_type == "checkout.session.completed":
            _handle_checkout_completed(data_object)
        else:
            logger.debug("Ignoring webhook event %s", event_type)
    except UpstreamError:
        raise
    except MarketplaceError as e:
        # Stale event for a record that already moved on.
        logger.warning("Webhook %s not applied: %s", event_type, e.message)

    return jsonify({"received": True}), 200


@webhook_bp.route("/webhook/connected", methods=["POST"])
def connected_webhook():
    """Connected account events: account.updated"""
    payload, sig_header = _raw_event()
    event = current_app.extensions["gateway"].parse_event(
        payload, sig_header, current_app.config.get("STRIPE_CONNECT_WEBHOOK_SECRET", ""))
    if event.get("type") == "account.updated":
        _handle_account_updated(_data_object(event))
    return jsonify({"received": True}), 200


def _handle_payment_succeeded(intent):
    """A succeeded deposit intent saves the card and releases the job to the provider."""
    metadata = intent.get("metadata") or {}
    if metadata.get("type") != "repair_deposit":
        return
    repair = current_app.extensions["repairs"].handle_deposit_succeeded(
        intent.get("id", ""), intent.get("payment_method"))
    if repair is None:
        logger.info("payment_intent.succeeded for unknown deposit %s", intent.get("id"))


def _handle_payment_failed(intent):
    metadata = intent.get("metadata") or {}
    error = (intent.get("last_payment_error") or {}).get("message")
    logger.warning(
        "Payment %s failed (type: %s, repair: %s): %s",
        intent.get("id"), metadata.get("type"), metadata.get("repair_id"), error,
    )


def _handle_checkout_completed(session):
    metadata = session.get("metadata") or {}
    if metadata.get("type") == "reservation":
        current_app.extensions["reservations"].mark_paid(session.get("id"), metadata.get("reservation_id"))
    else:
        logger.info("Checkout session %s completed (%s)", session.get("id"), metadata.get("type"))


def _handle_account_updated(account):
    """Sync the provider's capability flags and pay out anything that was waiting."""
    account_id = account.get("id")
    if not account_id:
        return
    repairs = current_app.extensions["repairs"]
    provider_account = repairs.sync_account(account_id, account_status(account))
    if provider_account is None:
        logger.info("account.updated webhook for unknown account: %s", account_id)
        return
    logger.info(
        "Connected account updated: %s (transfers_active: %s, payouts_enabled: %s)",
        account_id, provider_account.transfers_active, provider_account.payouts_enabled,
    )
    if provider_account.transfers_active:
        repairs.release_payouts_for_account(account_id)
