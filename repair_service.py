"""
Repair job lifecycle.

``RepairLifecycleManager`` owns every state change of a repair request, from
submission and quoting through the deposit, completion, the final
off-session charge and the provider payout. Each operation checks the
transition table first, then calls the payment provider, and only persists
once the provider call succeeded.

Money split: the provider's total share is ``provider_payout_rate`` of the
settlement price and the platform keeps ``platform_fee_rate``. When the
provider's connected account can receive transfers at charge time, the
final charge is a destination charge and part of the share is routed with
it (``destination_transfer_amount``); the payout transfers the rest.
"""

import logging
import math
import re

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from errors import (
    AuthorizationError, InvalidTransitionError, MarketplaceError, NotFoundError,
    PreconditionError, UpstreamError, ValidationError,
)
from lifecycle import (
    CompletionStatus, PRE_COMPLETION, REPAIR_COMPLETION, REPAIR_STATUS, RepairStatus,
)
from models import db, ProviderAccount, RepairRequest, generate_job_code, utcnow

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
JOB_CODE_ATTEMPTS = 5


def normalize_email(value):
    return (value or "").strip().lower()


def validate_email(value, field="email"):
    email = normalize_email(value)
    if not email:
        raise ValidationError("{} is required".format(field))
    if not EMAIL_RE.match(email):
        raise ValidationError("{} is not a valid email address".format(field))
    return email


def parse_price(value, field="price"):
    """Positive, finite amount in dollars, rounded to cents."""
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError("{} must be a positive number".format(field))
    if math.isnan(amount) or math.isinf(amount) or amount <= 0:
        raise ValidationError("{} must be a positive number".format(field))
    return round(amount, 2)


def _require_text(value, field):
    text = (value or "").strip() if isinstance(value, str) else value
    if not text:
        raise ValidationError("{} is required".format(field))
    return text


class RepairLifecycleManager:

    def __init__(self, gateway, notifier, base_url, frontend_url, deposit_amount=20.0,
                 platform_fee_rate=0.10, provider_payout_rate=0.90):
        self.gateway = gateway
        self.notifier = notifier
        self.base_url = base_url.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")
        self.deposit_amount = deposit_amount
        self.platform_fee_rate = platform_fee_rate
        self.provider_payout_rate = provider_payout_rate

    @classmethod
    def from_config(cls, config, gateway, notifier):
        return cls(
            gateway,
            notifier,
            base_url=config["APP_BASE_URL"],
            frontend_url=config["FRONTEND_URL"],
            deposit_amount=config.get("REPAIR_DEPOSIT_AMOUNT", 20.0),
            platform_fee_rate=config.get("PLATFORM_FEE_RATE", 0.10),
            provider_payout_rate=config.get("PROVIDER_PAYOUT_RATE", 0.90),
        )

    # -----------------------------------------------------------------------
    # Links placed in emails
    # -----------------------------------------------------------------------
    def accept_url(self, repair):
        return "{}/api/repairs/{}/accept?code={}".format(self.base_url, repair.id, repair.job_code)

    def reject_url(self, repair):
        return "{}/api/repairs/{}/reject?code={}".format(self.base_url, repair.id, repair.job_code)

    def _frontend_link(self, repair, action):
        return "{}/repair-status?code={}&action={}".format(self.frontend_url, repair.job_code, action)

    # -----------------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------------
    def get(self, repair_id):
        repair = db.session.get(RepairRequest, repair_id)
        if repair is None:
            raise NotFoundError("Repair request not found")
        return repair

    def get_by_code(self, job_code):
        code = (job_code or "").strip().upper()
        if not code:
            raise ValidationError("job_code is required")
        repair = RepairRequest.query.filter_by(job_code=code).first()
        if repair is None:
            raise NotFoundError("Repair request not found")
        return repair

    def list_open(self):
        return (
            RepairRequest.query
            .filter_by(status=RepairStatus.OPEN.value)
            .order_by(RepairRequest.created_at.desc(), RepairRequest.id.desc())
            .all()
        )

    def check(self, job_code, email):
        """Return ``(repair, role)`` for whoever holds this job code and email."""
        repair = self.get_by_code(job_code)
        email = normalize_email(email)
        if email and email == normalize_email(repair.requester_email):
            return repair, "user"
        if email and email == normalize_email(repair.provider_email):
            return repair, "provider"
        raise AuthorizationError("Email does not match this job")

    def _require_requester(self, repair, email):
        if not email or normalize_email(email) != normalize_email(repair.requester_email):
            raise AuthorizationError("Only the customer who requested this repair can do that")

    def _require_provider(self, repair, email):
        if not repair.provider_email or normalize_email(email) != normalize_email(repair.provider_email):
            raise AuthorizationError("Only the provider on this job can do that")

    def _require_code(self, repair, job_code):
        if (job_code or "").strip().upper() != repair.job_code:
            raise AuthorizationError("Job code does not match this repair")

    # -----------------------------------------------------------------------
    # Submission and quoting
    # -----------------------------------------------------------------------
    def submit_request(self, description, image_urls, requester_email, customer_address,
                       preferred_time):
        description = _require_text(description, "description")
        customer_address = _require_text(customer_address, "customer_address")
        preferred_time = _require_text(preferred_time, "preferred_time")
        requester_email = validate_email(requester_email, "requester_email")
        if image_urls is None:
            image_urls = []
        if not isinstance(image_urls, list) or not all(isinstance(u, str) for u in image_urls):
            raise ValidationError("image_urls must be a list of URLs")

        for _ in range(JOB_CODE_ATTEMPTS):
            repair = RepairRequest(
                job_code=generate_job_code(),
                description=description,
                image_urls=image_urls,
                requester_email=requester_email,
                customer_address=customer_address,
                preferred_time=preferred_time,
                deposit_amount=self.deposit_amount,
                platform_fee_rate=self.platform_fee_rate,
                provider_payout_rate=self.provider_payout_rate,
                status=RepairStatus.OPEN.value,
                completion_status=CompletionStatus.PENDING.value,
            )
            db.session.add(repair)
            try:
                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                logger.warning("Job code collision, retrying")
        else:
            raise MarketplaceError("Could not allocate a job code")

        logger.info("Repair request %s submitted (%s)", repair.id, repair.job_code)
        self.notifier.repair_received(repair)
        return repair

    def submit_quote(self, repair_id, provider_email, provider_first_name, provider_last_name,
                     provider_city, price_quote):
        provider_email = validate_email(provider_email, "provider_email")
        price = parse_price(price_quote, "price_quote")
        repair = self.get(repair_id)
        new_status = REPAIR_STATUS.advance(repair.status, "quote")

        repair.provider_email = provider_email
        repair.provider_first_name = (provider_first_name or "").strip() or None
        repair.provider_last_name = (provider_last_name or "").strip() or None
        repair.provider_city = (provider_city or "").strip() or None
        repair.price_quote = price
        repair.status = new_status.value
        db.session.commit()

        logger.info("Quote of %.2f submitted for repair %s by %s", price, repair.id, provider_email)
        self.notifier.quote_received(repair, self.accept_url(repair), self.reject_url(repair))
        self.notifier.quote_submitted(repair)
        return repair

    def accept(self, repair_id, job_code):
        repair = self.get(repair_id)
        self._require_code(repair, job_code)
        new_status = REPAIR_STATUS.advance(repair.status, "accept")

        account, created = self.ensure_connected_account(repair.provider_email)
        repair.provider_stripe_account_id = account.stripe_account_id
        repair.status = new_status.value
        db.session.commit()
        logger.info("Repair %s accepted", repair.id)

        if created:
            try:
                url = self.issue_onboarding_link(account.email)
            except UpstreamError:
                logger.warning("Could not create onboarding link for %s", account.email)
            else:
                self.notifier.provider_onboarding(account.email, repair.provider_first_name, url)
        self.notifier.quote_accepted(repair)
        return repair

    def reject(self, repair_id, job_code):
        repair = self.get(repair_id)
        self._require_code(repair, job_code)
        repair.status = REPAIR_STATUS.advance(repair.status, "reject").value
        db.session.commit()
        logger.info("Repair %s rejected", repair.id)
        return repair

    # -----------------------------------------------------------------------
    # Provider connected accounts
    # -----------------------------------------------------------------------
    def ensure_connected_account(self, provider_email):
        """Return ``(account, created)`` for the provider, creating it once."""
        email = validate_email(provider_email, "provider_email")
        account = ProviderAccount.query.filter_by(email=email).first()
        if account is not None:
            return account, False

        stripe_account_id = self.gateway.create_connected_account(
            email, idempotency_key="connect-account-{}".format(email)
        )
        account = ProviderAccount(email=email, stripe_account_id=stripe_account_id)
        db.session.add(account)
        try:
            db.session.commit()
        except IntegrityError:
            # Lost the race against a concurrent insert for the same email.
            db.session.rollback()
            account = ProviderAccount.query.filter_by(email=email).first()
            if account is None:
                raise
            return account, False
        logger.info("Created connected account %s for %s", stripe_account_id, email)
        return account, True

    def issue_onboarding_link(self, provider_email):
        email = validate_email(provider_email, "provider_email")
        account = ProviderAccount.query.filter_by(email=email).first()
        if account is None:
            raise NotFoundError("No payout account for this provider")
        return self.gateway.create_account_link(
            account.stripe_account_id,
            refresh_url="{}/api/repairs/providers/onboarding/refresh?account={}".format(
                self.base_url, account.stripe_account_id),
            return_url="{}/api/repairs/providers/onboarding/return?account={}".format(
                self.base_url, account.stripe_account_id),
        )

    def sync_account(self, stripe_account_id, status=None):
        """Store the account's capability flags.

        ``status`` comes from an ``account.updated`` payload; without it the
        account is fetched from the provider. Returns the account, or None
        for an account this service never created.
        """
        account = ProviderAccount.query.filter_by(stripe_account_id=stripe_account_id).first()
        if account is None:
            return None
        if status is None:
            status = self.gateway.get_account_status(stripe_account_id)
        account.charges_enabled = status["charges_enabled"]
        account.payouts_enabled = status["payouts_enabled"]
        account.details_submitted = status["details_submitted"]
        account.transfers_active = status["transfers_active"]
        db.session.commit()
        return account

    def _account_for(self, repair):
        if repair.provider_stripe_account_id:
            account = ProviderAccount.query.filter_by(
                stripe_account_id=repair.provider_stripe_account_id).first()
            if account is not None:
                return account
        if repair.provider_email:
            return ProviderAccount.query.filter_by(email=normalize_email(repair.provider_email)).first()
        return None

    # -----------------------------------------------------------------------
    # Deposit
    # -----------------------------------------------------------------------
    def start_deposit(self, repair_id):
        repair = self.get(repair_id)
        new_status = REPAIR_STATUS.advance(repair.status, "start_deposit")

        if repair.deposit_payment_intent_id:
            intent = self.gateway.retrieve_payment_intent(repair.deposit_payment_intent_id)
            if intent["status"] != "canceled":
                repair.status = new_status.value
                db.session.commit()
                return {
                    "client_secret": intent["client_secret"],
                    "payment_intent_id": intent["id"],
                    "amount": repair.deposit_amount,
                }

        if not repair.stripe_customer_id:
            repair.stripe_customer_id = self.gateway.create_customer(
                repair.requester_email,
                metadata={"repair_id": str(repair.id), "job_code": repair.job_code},
            )
            db.session.commit()

        intent = self.gateway.create_deposit_intent(
            repair.deposit_amount,
            repair.stripe_customer_id,
            metadata={
                "type": "repair_deposit",
                "repair_id": str(repair.id),
                "job_code": repair.job_code,
            },
            idempotency_key="deposit-{}-{}".format(repair.id, repair.deposit_payment_intent_id or "first"),
        )
        repair.deposit_payment_intent_id = intent["id"]
        repair.stripe_payment_intent_id = intent["id"]
        repair.status = new_status.value
        db.session.commit()
        logger.info("Deposit intent %s created for repair %s", intent["id"], repair.id)
        return {
            "client_secret": intent["client_secret"],
            "payment_intent_id": intent["id"],
            "amount": repair.deposit_amount,
        }

    def save_payment_method(self, repair_id, payment_intent_id, payment_method_id=None):
        repair = self.get(repair_id)
        if not payment_intent_id:
            raise ValidationError("payment_intent_id is required")
        if not repair.deposit_payment_intent_id:
            raise PreconditionError("Deposit has not been started for this repair")
        if payment_intent_id != repair.deposit_payment_intent_id:
            raise ValidationError("Payment intent does not belong to this repair")

        already_paid = repair.deposit_paid_at is not None
        if already_paid and repair.stripe_payment_method_id and (
                payment_method_id is None or payment_method_id == repair.stripe_payment_method_id):
            return repair

        new_status = REPAIR_STATUS.advance(repair.status, "save_payment_method")
        intent = self.gateway.retrieve_payment_intent(payment_intent_id)
        if intent["status"] != "succeeded":
            raise PreconditionError("Deposit payment has not succeeded yet")
        method = payment_method_id or intent.get("payment_method")
        if not method:
            raise ValidationError("payment_method_id is required")

        repair.stripe_payment_method_id = method
        if intent.get("customer") and not repair.stripe_customer_id:
            repair.stripe_customer_id = intent["customer"]
        repair.status = new_status.value
        if not already_paid:
            repair.deposit_paid_at = utcnow()
        db.session.commit()

        logger.info("Payment method saved for repair %s", repair.id)
        if not already_paid:
            self.notifier.paid_repair(repair)
        return repair

    def handle_deposit_succeeded(self, payment_intent_id, payment_method_id=None):
        """Webhook path for a succeeded deposit intent. Returns the repair or None."""
        repair = RepairRequest.query.filter_by(deposit_payment_intent_id=payment_intent_id).first()
        if repair is None:
            return None
        return self.save_payment_method(repair.id, payment_intent_id, payment_method_id)

    # -----------------------------------------------------------------------
    # Completion and pricing
    # -----------------------------------------------------------------------
    def mark_completed(self, job_code, email, final_price):
        repair = self.get_by_code(job_code)
        self._require_provider(repair, email)
        price = parse_price(final_price, "final_price")
        if RepairStatus(repair.status) not in PRE_COMPLETION:
            raise InvalidTransitionError(REPAIR_COMPLETION.name, repair.status, "mark_completed")
        new_completion = REPAIR_COMPLETION.advance(repair.completion_status, "mark_completed")

        repair.final_price = price
        repair.completion_status = new_completion.value
        repair.completed_at = utcnow()
        db.session.commit()

        logger.info("Repair %s marked completed at %.2f", repair.id, price)
        self.notifier.completion_confirmation(repair, self._frontend_link(repair, "confirm"))
        return repair

    def revise_price(self, job_code, email, final_price, materials_cost=None):
        repair = self.get_by_code(job_code)
        self._require_provider(repair, email)
        price = parse_price(final_price, "final_price")
        materials = None
        if materials_cost not in (None, ""):
            try:
                materials = round(float(materials_cost), 2)
            except (TypeError, ValueError):
                raise ValidationError("materials_cost must be a number")
            if materials < 0 or math.isnan(materials) or math.isinf(materials):
                raise ValidationError("materials_cost must not be negative")
        new_status = REPAIR_STATUS.advance(repair.status, "revise_price")

        repair.final_price = price
        repair.materials_cost = materials
        repair.status = new_status.value
        db.session.commit()

        logger.info("Repair %s price revised to %.2f", repair.id, price)
        self.notifier.final_price_review(
            repair,
            self._frontend_link(repair, "accept-final-price"),
            self.reject_url(repair),
        )
        return repair

    def accept_final_price(self, job_code, email):
        repair = self.get_by_code(job_code)
        self._require_requester(repair, email)
        target = RepairStatus.DEPOSIT_PAID if repair.stripe_payment_method_id else RepairStatus.ACCEPTED
        repair.status = REPAIR_STATUS.advance(repair.status, "accept_final_price", target).value
        db.session.commit()
        logger.info("Final price accepted for repair %s", repair.id)
        return repair

    def confirm_completion(self, job_code, email):
        """Charge the remaining balance and close the job.

        Returns ``(repair, payout_result)``; the payout attempt never fails
        the confirmation.
        """
        repair = self.get_by_code(job_code)
        self._require_requester(repair, email)
        new_completion = REPAIR_COMPLETION.advance(repair.completion_status, "confirm_completion")
        new_status = REPAIR_STATUS.advance(repair.status, "confirm_completion")
        if not repair.stripe_payment_method_id or not repair.stripe_customer_id:
            raise PreconditionError("No saved payment method for this repair")
        final_price = repair.final_price
        deposit = repair.deposit_amount or 0.0
        if final_price is None or final_price <= deposit:
            raise PreconditionError("Final price must be greater than the deposit")

        remaining = round(final_price - deposit, 2)
        fee = round(final_price * repair.platform_fee_rate, 2)
        destination = None
        routed = 0.0
        account = self._account_for(repair)
        if account is not None and remaining > fee:
            account = self.sync_account(account.stripe_account_id) or account
            if account.transfers_active:
                destination = account.stripe_account_id
                routed = round(remaining - fee, 2)

        charge = self.gateway.charge_saved_method(
            remaining,
            repair.stripe_customer_id,
            repair.stripe_payment_method_id,
            metadata={
                "type": "repair_final",
                "repair_id": str(repair.id),
                "job_code": repair.job_code,
                "platform_fee": "{:.2f}".format(fee),
            },
            idempotency_key="final-{}".format(repair.id),
            application_fee=fee if destination else None,
            destination=destination,
        )

        repair.final_payment_intent_id = charge["id"]
        repair.stripe_payment_intent_id = charge["id"]
        repair.platform_fee_amount = fee
        repair.destination_transfer_amount = routed
        if destination:
            repair.provider_stripe_account_id = destination
        repair.completion_status = new_completion.value
        repair.status = new_status.value
        repair.user_confirmed_at = utcnow()
        db.session.commit()

        logger.info("Repair %s confirmed, charged %.2f (fee %.2f, routed %.2f)",
                    repair.id, remaining, fee, routed)
        self.notifier.repair_receipt(repair, remaining)
        self.notifier.repair_confirmed(repair)

        try:
            payout = self.release_payout(repair.id)
        except UpstreamError as e:
            logger.warning("Automatic payout for repair %s failed: %s", repair.id, e.message)
            payout = {"success": False, "reason": "transfer_failed"}
        return repair, payout

    # -----------------------------------------------------------------------
    # Payouts
    # -----------------------------------------------------------------------
    def payout_amount_for(self, repair):
        share = repair.provider_payout_rate * (repair.settlement_price or 0.0)
        return round(share - (repair.destination_transfer_amount or 0.0), 2)

    def release_payout(self, repair_id):
        """Transfer the provider's remaining share, at most once per repair.

        Returns ``{"success": bool, "reason"?, "amount"?, "transfer_id"?}``.
        Raises ``UpstreamError`` only when the transfer itself fails.
        """
        repair = self.get(repair_id)
        if repair.completion_status != CompletionStatus.USER_CONFIRMED.value:
            return {"success": False, "reason": "not_confirmed"}
        if repair.payout_released_at is not None:
            return {"success": False, "reason": "already_released"}
        account = self._account_for(repair)
        if account is None:
            return {"success": False, "reason": "no_connected_account"}
        account = self.sync_account(account.stripe_account_id) or account
        if not account.transfers_active:
            return {"success": False, "reason": "transfers_inactive"}

        amount = self.payout_amount_for(repair)
        claimed_at = utcnow()
        claim = db.session.execute(
            update(RepairRequest)
            .where(
                RepairRequest.id == repair.id,
                RepairRequest.payout_released_at.is_(None),
                RepairRequest.completion_status == CompletionStatus.USER_CONFIRMED.value,
            )
            .values(
                payout_released_at=claimed_at,
                payout_amount=amount,
                provider_stripe_account_id=account.stripe_account_id,
            )
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if claim.rowcount != 1:
            return {"success": False, "reason": "already_released"}

        transfer_id = None
        if amount > 0:
            try:
                transfer_id = self.gateway.create_transfer(
                    amount,
                    account.stripe_account_id,
                    metadata={"repair_id": str(repair.id), "job_code": repair.job_code},
                    idempotency_key="payout-{}".format(repair.id),
                )
            except UpstreamError:
                db.session.execute(
                    update(RepairRequest)
                    .where(
                        RepairRequest.id == repair.id,
                        RepairRequest.payout_released_at == claimed_at,
                        RepairRequest.payout_transfer_id.is_(None),
                    )
                    .values(payout_released_at=None, payout_amount=None)
                    .execution_options(synchronize_session=False)
                )
                db.session.commit()
                raise
            db.session.execute(
                update(RepairRequest)
                .where(RepairRequest.id == repair.id)
                .values(payout_transfer_id=transfer_id)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()

        db.session.refresh(repair)
        logger.info("Payout of %.2f released for repair %s (%s)", amount, repair.id, transfer_id)
        self.notifier.payout_sent(repair)
        return {"success": True, "amount": amount, "transfer_id": transfer_id}

    def release_payouts_for_account(self, stripe_account_id):
        """Retry pending payouts for every confirmed repair of one provider."""
        repairs = RepairRequest.query.filter(
            RepairRequest.provider_stripe_account_id == stripe_account_id,
            RepairRequest.completion_status == CompletionStatus.USER_CONFIRMED.value,
            RepairRequest.payout_released_at.is_(None),
        ).all()
        results = []
        for repair in repairs:
            try:
                results.append((repair.id, self.release_payout(repair.id)))
            except UpstreamError as e:
                logger.warning("Payout for repair %s failed: %s", repair.id, e.message)
                results.append((repair.id, {"success": False, "reason": "transfer_failed"}))
        return results

    def sweep_payouts(self):
        """Retry every confirmed, unreleased payout. Returns how many went out."""
        account_ids = [
            row[0] for row in db.session.query(RepairRequest.provider_stripe_account_id)
            .filter(
                RepairRequest.completion_status == CompletionStatus.USER_CONFIRMED.value,
                RepairRequest.payout_released_at.is_(None),
                RepairRequest.provider_stripe_account_id.isnot(None),
            )
            .distinct()
            .all()
        ]
        released = 0
        for account_id in account_ids:
            results = self.release_payouts_for_account(account_id)
            released += sum(1 for _, result in results if result.get("success"))
        return released
