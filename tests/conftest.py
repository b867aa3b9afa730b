"""
Pytest configuration and fixtures for Tajer backend tests
"""
import itertools

import pytest

from server import create_app
from models import db, User
from auth_routes import generate_token
from errors import UpstreamError
from notifications import EmailNotifier
from payment_gateway import StripeGateway


class FakeGateway(StripeGateway):
    """Stripe stand-in that records every call instead of hitting the API."""

    def __init__(self):
        super().__init__(api_key="")
        self._ids = itertools.count(1)
        self.transfers_active = True
        self.intent_status = "succeeded"
        self.fail_transfers = False
        self.customers = []
        self.deposit_intents = []
        self.charges = []
        self.accounts = []
        self.account_links = []
        self.transfers = []
        self.checkout_sessions = []

    @property
    def live(self):
        return True

    def _next(self, prefix):
        return "{}_test_{}".format(prefix, next(self._ids))

    def create_customer(self, email, metadata=None):
        customer_id = self._next("cus")
        self.customers.append({"id": customer_id, "email": email, "metadata": metadata})
        return customer_id

    def create_deposit_intent(self, amount, customer_id, metadata, idempotency_key):
        intent_id = self._next("pi")
        self.deposit_intents.append({
            "id": intent_id,
            "amount": amount,
            "customer": customer_id,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        return {"id": intent_id, "client_secret": "{}_secret".format(intent_id)}

    def retrieve_payment_intent(self, intent_id):
        return {
            "id": intent_id,
            "status": self.intent_status,
            "client_secret": "{}_secret".format(intent_id),
            "payment_method": "pm_test_card",
            "customer": None,
        }

    def charge_saved_method(self, amount, customer_id, payment_method_id, metadata,
                            idempotency_key, application_fee=None, destination=None):
        intent_id = self._next("pi")
        self.charges.append({
            "id": intent_id,
            "amount": amount,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
            "application_fee": application_fee,
            "destination": destination,
        })
        return {"id": intent_id, "status": "succeeded"}

    def create_connected_account(self, email, idempotency_key):
        account_id = self._next("acct")
        self.accounts.append({"id": account_id, "email": email, "idempotency_key": idempotency_key})
        return account_id

    def create_account_link(self, account_id, refresh_url, return_url):
        self.account_links.append({"account": account_id, "refresh_url": refresh_url, "return_url": return_url})
        return "https://connect.test/onboard/{}".format(account_id)

    def get_account_status(self, account_id):
        return {
            "charges_enabled": True,
            "payouts_enabled": self.transfers_active,
            "details_submitted": True,
            "transfers_active": self.transfers_active,
        }

    def create_transfer(self, amount, destination, metadata, idempotency_key):
        if self.fail_transfers:
            raise UpstreamError("Payment provider error: transfer declined")
        transfer_id = self._next("tr")
        self.transfers.append({
            "id": transfer_id,
            "amount": amount,
            "destination": destination,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        return transfer_id

    def create_checkout_session(self, line_items, success_url, cancel_url,
                                metadata=None, customer_email=None):
        session_id = self._next("cs")
        self.checkout_sessions.append({
            "id": session_id,
            "line_items": line_items,
            "metadata": metadata,
            "customer_email": customer_email,
        })
        return {"id": session_id, "url": "https://checkout.test/{}".format(session_id)}


class RecordingNotifier(EmailNotifier):
    """Builds every email but keeps it in memory."""

    def __init__(self):
        super().__init__(send_async=False)
        self.sent = []

    def send(self, to_email, subject, html_content):
        self.sent.append({"to": to_email, "subject": subject, "html": html_content})

    def to(self, email):
        return [m for m in self.sent if m["to"] == email]

    def subjects(self, email):
        return [m["subject"] for m in self.to(email)]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(gateway, notifier, tmp_path):
    """Create application instance for testing"""
    app = create_app('testing', gateway=gateway, notifier=notifier)
    app.extensions['reservations'].upload_folder = str(tmp_path)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture
def repairs(app):
    return app.extensions['repairs']


@pytest.fixture
def reservations(app):
    return app.extensions['reservations']


@pytest.fixture
def user_factory(app):
    """Factory for creating users with a given role"""
    counter = itertools.count(1)

    def _create_user(role='customer', **kwargs):
        n = next(counter)
        defaults = {
            'username': '{}{}'.format(role, n),
            'email': '{}{}@example.com'.format(role, n),
            'role': role,
        }
        defaults.update(kwargs)
        user = User(**defaults)
        user.set_password('TestPass123!')
        db.session.add(user)
        db.session.commit()
        return user

    return _create_user


def headers_for(user):
    """Auth headers with a JWT token for *user*"""
    return {
        'Authorization': 'Bearer {}'.format(generate_token(user.id)),
        'Content-Type': 'application/json',
    }


@pytest.fixture
def customer(user_factory):
    return user_factory('customer', username='carla', email='carla@example.com')


@pytest.fixture
def vendor(user_factory):
    return user_factory('vendor', username='HardwareHub', email='shop@example.com')


@pytest.fixture
def landlord(user_factory):
    return user_factory('landlord', username='lina', email='lina@example.com')


@pytest.fixture
def admin(user_factory):
    return user_factory('admin', username='root', email='admin@example.com')


# ---------------------------------------------------------------------------
# Repair helpers
# ---------------------------------------------------------------------------
REQUESTER = 'user@example.com'
PROVIDER = 'pro@example.com'


def submit_repair(repairs, **kwargs):
    defaults = {
        'description': 'Leaking kitchen faucet',
        'image_urls': ['https://img.test/faucet.jpg'],
        'requester_email': REQUESTER,
        'customer_address': '12 Cedar St',
        'preferred_time': 'Saturday morning',
    }
    defaults.update(kwargs)
    return repairs.submit_request(**defaults)


def quote_and_accept(repairs, repair, price=150.0):
    repairs.submit_quote(repair.id, 'Pro@Example.com', 'Sam', 'Fixer', 'Beirut', price)
    return repairs.accept(repair.id, repair.job_code)


def fund(repairs, repair):
    intent = repairs.start_deposit(repair.id)
    return repairs.save_payment_method(repair.id, intent['payment_intent_id'])


@pytest.fixture
def funded_repair(repairs):
    """A repair quoted at $150, accepted, with the $20 deposit paid"""
    repair = submit_repair(repairs)
    quote_and_accept(repairs, repair)
    fund(repairs, repair)
    return repair
