"""
Email notifications for Tajer.

Email: Resend (preferred) or SendGrid (legacy fallback). With neither key
configured messages are only logged.

IMPORTANT: No method of ``EmailNotifier`` should ever raise an exception.
All errors are caught and logged so that a notification failure never
takes down a repair, reservation or payment flow.

Email sending is performed on a background thread (unless EMAIL_ASYNC is
false) so that HTTP request handlers are never blocked by network I/O to
the email provider.
"""

import logging
import threading

from email_templates import (
    repair_received_html,
    quote_received_html,
    provider_quote_submitted_html,
    quote_accepted_html,
    provider_onboarding_html,
    paid_repair_html,
    completion_confirmation_html,
    final_price_review_html,
    repair_receipt_html,
    repair_confirmed_provider_html,
    payout_sent_html,
    reservation_received_html,
    reservation_update_html,
    order_received_html,
    welcome_html,
    password_reset_html,
)

logger = logging.getLogger(__name__)


class EmailNotifier:

    def __init__(self, resend_api_key="", sendgrid_api_key="", email_from="support@tajernow.com",
                 email_from_name="Tajer", send_async=True):
        self.resend_api_key = resend_api_key
        self.sendgrid_api_key = sendgrid_api_key
        self.email_from = email_from
        self.email_from_name = email_from_name
        self.send_async = send_async

    @classmethod
    def from_config(cls, config):
        return cls(
            resend_api_key=config.get("RESEND_API_KEY", ""),
            sendgrid_api_key=config.get("SENDGRID_API_KEY", ""),
            email_from=config.get("EMAIL_FROM", "support@tajernow.com"),
            email_from_name=config.get("EMAIL_FROM_NAME", "Tajer"),
            send_async=config.get("EMAIL_ASYNC", True),
        )

    # -----------------------------------------------------------------------
    # Transport
    # -----------------------------------------------------------------------
    def send(self, to_email, subject, html_content):
        """Send an email, on a background thread when configured. Never raises."""
        if not to_email:
            logger.warning("Skipping email with no recipient: %s", subject)
            return None
        if not self.send_async:
            return self._send_sync(to_email, subject, html_content)
        try:
            thread = threading.Thread(
                target=self._send_sync,
                args=(to_email, subject, html_content),
                daemon=True,
            )
            thread.start()
            logger.debug("Email queued (async) to %s: %s", to_email, subject)
        except Exception:
            logger.exception("Failed to queue async email to %s", to_email)
        return None

    def _send_sync(self, to_email, subject, html_content):
        try:
            if self.resend_api_key:
                return self._send_resend(to_email, subject, html_content)
            if self.sendgrid_api_key:
                return self._send_sendgrid(to_email, subject, html_content)
            logger.info("[DEV] Email to %s: %s", to_email, subject)
            return None
        except Exception:
            logger.exception("Failed to send email to %s", to_email)
            return None

    def _send_resend(self, to_email, subject, html_content):
        """Send via the Resend API. Returns the response id or None."""
        try:
            import resend
            resend.api_key = self.resend_api_key

            params = {
                "from": "{} <{}>".format(self.email_from_name, self.email_from),
                "to": [to_email],
                "subject": subject,
                "html": html_content,
            }
            response = resend.Emails.send(params)
            logger.info("Email sent via Resend to %s (id: %s)", to_email, response.get("id"))
            return response.get("id")
        except Exception:
            logger.exception("Resend email failed for %s", to_email)
            return None

    def _send_sendgrid(self, to_email, subject, html_content):
        """Send via SendGrid. Returns status code or None."""
        try:
            from sendgrid import SendGridAPIClient
            from sendgrid.helpers.mail import Mail

            message = Mail(
                from_email=(self.email_from, self.email_from_name),
                to_emails=to_email,
                subject=subject,
                html_content=html_content,
            )
            response = SendGridAPIClient(self.sendgrid_api_key).send(message)
            logger.info("Email sent via SendGrid to %s (status: %s)", to_email, response.status_code)
            return response.status_code
        except Exception:
            logger.exception("SendGrid email failed for %s", to_email)
            return None

    def _deliver(self, what, to_email, subject, render, **kwargs):
        try:
            return self.send(to_email, subject, render(**kwargs))
        except Exception:
            logger.exception("Failed to build %s email for %s", what, to_email)
            return None

    # -----------------------------------------------------------------------
    # Repairs
    # -----------------------------------------------------------------------
    def repair_received(self, repair):
        return self._deliver(
            "repair received", repair.requester_email,
            "Your Repair Request Is Being Processed",
            repair_received_html,
            description=repair.description,
            image_urls=repair.image_urls or [],
            job_code=repair.job_code,
        )

    def quote_received(self, repair, accept_url, reject_url):
        return self._deliver(
            "quote received", repair.requester_email,
            "You have a quote for your repair ({})".format(repair.job_code),
            quote_received_html,
            job_code=repair.job_code,
            description=repair.description,
            provider_name=repair.provider_name,
            provider_city=repair.provider_city,
            price_quote=repair.price_quote,
            deposit_amount=repair.deposit_amount,
            accept_url=accept_url,
            reject_url=reject_url,
        )

    def quote_submitted(self, repair):
        return self._deliver(
            "quote submitted", repair.provider_email,
            "Your quote for job {} was sent".format(repair.job_code),
            provider_quote_submitted_html,
            provider_name=repair.provider_first_name,
            job_code=repair.job_code,
            description=repair.description,
            price_quote=repair.price_quote,
        )

    def quote_accepted(self, repair):
        return self._deliver(
            "quote accepted", repair.provider_email,
            "Your quote for job {} was accepted".format(repair.job_code),
            quote_accepted_html,
            provider_name=repair.provider_first_name,
            job_code=repair.job_code,
            customer_address=repair.customer_address,
            preferred_time=repair.preferred_time,
        )

    def provider_onboarding(self, to_email, provider_name, onboarding_url):
        return self._deliver(
            "provider onboarding", to_email,
            "Set up your Tajer payouts",
            provider_onboarding_html,
            provider_name=provider_name,
            onboarding_url=onboarding_url,
        )

    def paid_repair(self, repair):
        return self._deliver(
            "paid repair", repair.provider_email,
            "New Paid Repair Request - {}".format((repair.description or "")[:60]),
            paid_repair_html,
            description=repair.description,
            customer_address=repair.customer_address,
            preferred_time=repair.preferred_time,
            requester_email=repair.requester_email,
        )

    def completion_confirmation(self, repair, confirm_url):
        return self._deliver(
            "completion confirmation", repair.requester_email,
            "Please confirm your repair ({})".format(repair.job_code),
            completion_confirmation_html,
            job_code=repair.job_code,
            provider_name=repair.provider_name,
            final_price=repair.final_price,
            deposit_amount=repair.deposit_amount,
            confirm_url=confirm_url,
        )

    def final_price_review(self, repair, accept_url, reject_url):
        return self._deliver(
            "final price review", repair.requester_email,
            "Updated price for your repair ({})".format(repair.job_code),
            final_price_review_html,
            job_code=repair.job_code,
            provider_name=repair.provider_name,
            final_price=repair.final_price,
            materials_cost=repair.materials_cost,
            accept_url=accept_url,
            reject_url=reject_url,
        )

    def repair_receipt(self, repair, charged_amount):
        return self._deliver(
            "repair receipt", repair.requester_email,
            "Your Tajer receipt ({})".format(repair.job_code),
            repair_receipt_html,
            job_code=repair.job_code,
            final_price=repair.final_price,
            deposit_amount=repair.deposit_amount,
            charged_amount=charged_amount,
        )

    def repair_confirmed(self, repair):
        return self._deliver(
            "repair confirmed", repair.provider_email,
            "Job {} confirmed by the customer".format(repair.job_code),
            repair_confirmed_provider_html,
            provider_name=repair.provider_first_name,
            job_code=repair.job_code,
            final_price=repair.final_price,
        )

    def payout_sent(self, repair):
        return self._deliver(
            "payout sent", repair.provider_email,
            "Payout sent for job {}".format(repair.job_code),
            payout_sent_html,
            provider_name=repair.provider_first_name,
            job_code=repair.job_code,
            amount=repair.payout_amount,
        )

    # -----------------------------------------------------------------------
    # Rentals
    # -----------------------------------------------------------------------
    def reservation_received(self, reservation, landlord_email):
        prop = reservation.property
        return self._deliver(
            "reservation received", landlord_email,
            "New reservation request for {}".format(prop.title if prop else "your property"),
            reservation_received_html,
            property_title=prop.title if prop else "",
            tenant_name=reservation.tenant_name,
            tenant_email=reservation.tenant_email,
            start_date=reservation.start_date.isoformat(),
            end_date=reservation.end_date.isoformat(),
            offer_price=reservation.offer_price,
            message=reservation.message,
        )

    def reservation_update(self, reservation, action_url=None, action_label=None):
        prop = reservation.property
        return self._deliver(
            "reservation update", reservation.tenant_email,
            "Update on your reservation request",
            reservation_update_html,
            tenant_name=reservation.tenant_name,
            property_title=prop.title if prop else "",
            status=reservation.status,
            note=reservation.landlord_note,
            action_url=action_url,
            action_label=action_label,
        )

    # -----------------------------------------------------------------------
    # Shop
    # -----------------------------------------------------------------------
    def order_received(self, vendor_email, vendor_name, order):
        return self._deliver(
            "order received", vendor_email,
            "New Reservation Received",
            order_received_html,
            vendor_name=vendor_name,
            guest_name=order.guest_name,
            guest_contact=order.guest_contact,
            order_id=order.id,
            barcode=order.barcode,
            total=order.total_price,
            items=[(item.product.name if item.product else "Item", item.quantity) for item in order.items],
        )

    # -----------------------------------------------------------------------
    # Accounts
    # -----------------------------------------------------------------------
    def welcome(self, user):
        return self._deliver(
            "welcome", user.email,
            "Welcome to Tajer!",
            welcome_html,
            name=user.username,
        )

    def password_reset(self, user, reset_url):
        return self._deliver(
            "password reset", user.email,
            "Reset your Tajer password",
            password_reset_html,
            name=user.username,
            reset_url=reset_url,
        )
