"""
Stripe gateway for Tajer.

One instance is built at application start and handed to the services that
need it. Each gateway owns its own ``stripe.StripeClient`` (API key, HTTP
client, timeout and network retries); nothing is set on the stripe module.

When no secret key is configured the gateway runs in dev mode: nothing
leaves the process and mock ids (``pi_dev_...``, ``acct_dev_...``) are
returned, so flows can be exercised locally end to end.
"""

import json
import logging

import stripe

from errors import UpstreamError, ValidationError
from models import generate_uuid

logger = logging.getLogger(__name__)


def to_cents(amount):
    return int(round(float(amount) * 100))


def _dev_id(prefix):
    return "{}_dev_{}".format(prefix, generate_uuid()[:8])


class StripeGateway:

    def __init__(self, api_key, currency="usd", timeout=10, max_network_retries=1,
                 connect_country="US"):
        self.api_key = api_key or ""
        self.currency = currency
        self.connect_country = connect_country
        self._http_client = None
        self.client = None
        if self.api_key:
            self._http_client = stripe.RequestsClient(timeout=timeout)
            self.client = stripe.StripeClient(
                self.api_key,
                http_client=self._http_client,
                max_network_retries=max_network_retries,
            )

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY", ""),
            currency=config.get("CURRENCY", "usd"),
            timeout=config.get("STRIPE_TIMEOUT_SECONDS", 10),
            max_network_retries=config.get("STRIPE_MAX_NETWORK_RETRIES", 1),
            connect_country=config.get("STRIPE_CONNECT_COUNTRY", "US"),
        )

    @property
    def live(self):
        return bool(self.api_key)

    def shutdown(self):
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None
        self.client = None

    def _call(self, what, method, *args, **kwargs):
        """Invoke ``method`` (e.g. ``"payment_intents.create"``) on this gateway's client."""
        if self.client is None:
            raise UpstreamError("Payment provider client is shut down")
        fn = self.client
        for name in method.split("."):
            fn = getattr(fn, name)
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", what, e.user_message or str(e))
            raise UpstreamError("Payment provider error: {}".format(e.user_message or str(e)))

    # -- Customers / payment intents ----------------------------------------

    def create_customer(self, email, metadata=None):
        if not self.live:
            return _dev_id("cus")
        customer = self._call("customer create", "customers.create",
                              params={"email": email, "metadata": metadata or {}})
        return customer.id

    def create_deposit_intent(self, amount, customer_id, metadata, idempotency_key):
        """PaymentIntent that saves the card for later off-session charges."""
        if not self.live:
            intent_id = _dev_id("pi")
            return {"id": intent_id, "client_secret": "{}_secret_dev".format(intent_id)}
        intent = self._call(
            "deposit intent", "payment_intents.create",
            params={
                "amount": to_cents(amount),
                "currency": self.currency,
                "customer": customer_id,
                "setup_future_usage": "off_session",
                "automatic_payment_methods": {"enabled": True},
                "metadata": metadata,
            },
            options={"idempotency_key": idempotency_key},
        )
        return {"id": intent.id, "client_secret": intent.client_secret}

    def retrieve_payment_intent(self, intent_id):
        if not self.live or intent_id.startswith("pi_dev_"):
            return {
                "id": intent_id,
                "status": "succeeded",
                "client_secret": "{}_secret_dev".format(intent_id),
                "payment_method": "pm_dev_card",
                "customer": None,
            }
        intent = self._call("intent retrieve", "payment_intents.retrieve", intent_id)
        return {
            "id": intent.id,
            "status": intent.status,
            "client_secret": intent.client_secret,
            "payment_method": intent.payment_method,
            "customer": intent.customer,
        }

    def charge_saved_method(self, amount, customer_id, payment_method_id, metadata,
                            idempotency_key, application_fee=None, destination=None):
        """Charge a saved payment method off-session and confirm immediately.

        ``application_fee`` is only sent together with ``destination``; Stripe
        rejects a fee on a charge that stays on the platform.
        """
        if not self.live:
            return {"id": _dev_id("pi"), "status": "succeeded"}
        params = {
            "amount": to_cents(amount),
            "currency": self.currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "off_session": True,
            "confirm": True,
            "metadata": metadata,
        }
        if destination:
            params["transfer_data"] = {"destination": destination}
            if application_fee:
                params["application_fee_amount"] = to_cents(application_fee)
        intent = self._call("off-session charge", "payment_intents.create",
                            params=params, options={"idempotency_key": idempotency_key})
        if intent.status != "succeeded":
            raise UpstreamError("Final charge did not succeed (status: {})".format(intent.status))
        return {"id": intent.id, "status": intent.status}

    # -- Connect ------------------------------------------------------------

    def create_connected_account(self, email, idempotency_key):
        if not self.live:
            return _dev_id("acct")
        account = self._call(
            "connect account create", "accounts.create",
            params={
                "type": "express",
                "country": self.connect_country,
                "email": email,
                "capabilities": {
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
            },
            options={"idempotency_key": idempotency_key},
        )
        return account.id

    def create_account_link(self, account_id, refresh_url, return_url):
        if not self.live:
            return "https://connect.stripe.com/setup/e/mock"
        link = self._call(
            "account link", "account_links.create",
            params={
                "account": account_id,
                "refresh_url": refresh_url,
                "return_url": return_url,
                "type": "account_onboarding",
            },
        )
        return link.url

    def get_account_status(self, account_id):
        if not self.live:
            logger.info("[DEV] Treating connected account %s as fully onboarded", account_id)
            return {
                "charges_enabled": True,
                "payouts_enabled": True,
                "details_submitted": True,
                "transfers_active": True,
            }
        account = self._call("account retrieve", "accounts.retrieve", account_id)
        return account_status(account)

    def create_transfer(self, amount, destination, metadata, idempotency_key):
        if not self.live:
            return _dev_id("tr")
        transfer = self._call(
            "transfer", "transfers.create",
            params={
                "amount": to_cents(amount),
                "currency": self.currency,
                "destination": destination,
                "metadata": metadata,
            },
            options={"idempotency_key": idempotency_key},
        )
        return transfer.id

    # -- Checkout -----------------------------------------------------------

    def create_checkout_session(self, line_items, success_url, cancel_url,
                                metadata=None, customer_email=None):
        """``line_items`` is a list of ``{"name", "price", "quantity"}`` dicts."""
        if not self.live:
            session_id = _dev_id("cs")
            return {"id": session_id, "url": "https://checkout.stripe.com/c/pay/{}".format(session_id)}
        params = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": item["name"]},
                        "unit_amount": to_cents(item["price"]),
                    },
                    "quantity": int(item.get("quantity") or 1),
                }
                for item in line_items
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        if customer_email:
            params["customer_email"] = customer_email
        session = self._call("checkout session", "checkout.sessions.create", params=params)
        return {"id": session.id, "url": session.url}

    # -- Webhooks -----------------------------------------------------------

    def parse_event(self, payload, sig_header, webhook_secret):
        """Verify a webhook signature and return the event as a plain dict.

        Without a configured secret (development) the payload is parsed
        unverified.
        """
        if webhook_secret:
            try:
                stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
            except stripe.SignatureVerificationError:
                raise ValidationError("Invalid signature")
            except ValueError:
                raise ValidationError("Invalid payload")
        try:
            return json.loads(payload)
        except ValueError:
            raise ValidationError("Invalid JSON")


def account_status(account):
    """Flatten a Stripe account (or account.updated payload) into our flags."""
    capabilities = account.get("capabilities") or {}
    return {
        "charges_enabled": bool(account.get("charges_enabled", False)),
        "payouts_enabled": bool(account.get("payouts_enabled", False)),
        "details_submitted": bool(account.get("details_submitted", False)),
        "transfers_active": capabilities.get("transfers") == "active",
    }
