"""
Rental reservations.

Landlords list properties and publish one availability range per property;
tenants send an offer for a date range, upload a photo ID when asked, and
pay through Stripe Checkout once the landlord accepts. Status changes go
through ``RESERVATION_STATUS``.
"""

import logging
import os
from datetime import datetime

from dateutil.rrule import rrule, DAILY
from werkzeug.utils import secure_filename

from errors import (
    AuthorizationError, InvalidTransitionError, NotFoundError, ValidationError,
)
from lifecycle import BLOCKING_RESERVATION_STATUSES, RESERVATION_STATUS, ReservationStatus
from models import db, Property, PropertyAvailability, Reservation, User, generate_uuid, utcnow
from repair_service import normalize_email, parse_price, validate_email

logger = logging.getLogger(__name__)

ALLOWED_ID_EXTENSIONS = {"jpg", "jpeg", "png", "webp", "heic"}
ID_FIELDS = ("frontId", "backId", "selfie")
MAX_AVAILABILITY_DAYS = 366


def parse_date(value, field):
    if not value:
        raise ValidationError("{} is required".format(field))
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("{} must be a date (YYYY-MM-DD)".format(field))


def _days(start, end):
    return [dt.date() for dt in rrule(DAILY, dtstart=start, until=end)]


def _allowed_image(file):
    if not file or not file.filename or "." not in file.filename:
        return False
    ext = file.filename.rsplit(".", 1)[1].lower()
    if ext not in ALLOWED_ID_EXTENSIONS:
        return False
    return not file.mimetype or file.mimetype.startswith("image/")


class ReservationManager:

    def __init__(self, gateway, notifier, frontend_url, upload_folder, max_id_image_size):
        self.gateway = gateway
        self.notifier = notifier
        self.frontend_url = frontend_url.rstrip("/")
        self.upload_folder = upload_folder
        self.max_id_image_size = max_id_image_size

    @classmethod
    def from_config(cls, config, gateway, notifier):
        return cls(
            gateway,
            notifier,
            frontend_url=config["FRONTEND_URL"],
            upload_folder=config["UPLOAD_FOLDER"],
            max_id_image_size=config.get("MAX_ID_IMAGE_SIZE", 6 * 1024 * 1024),
        )

    # -----------------------------------------------------------------------
    # Properties and availability
    # -----------------------------------------------------------------------
    def create_property(self, landlord_id, title, price, description=None, address=None,
                        city=None, image_urls=None):
        if not (title or "").strip():
            raise ValidationError("title is required")
        prop = Property(
            landlord_id=landlord_id,
            title=title.strip(),
            description=description,
            address=address,
            city=city,
            price=parse_price(price, "price"),
            image_urls=image_urls or [],
        )
        db.session.add(prop)
        db.session.commit()
        logger.info("Property %s listed by landlord %s", prop.id, landlord_id)
        return prop

    def list_properties(self, city=None):
        query = Property.query.filter_by(is_active=True)
        if city:
            query = query.filter(Property.city.ilike(city.strip()))
        return query.order_by(Property.created_at.desc()).all()

    def get_property(self, property_id, active_only=True):
        prop = db.session.get(Property, property_id)
        if prop is None or (active_only and not prop.is_active):
            raise NotFoundError("Property not found")
        return prop

    def _owned_property(self, property_id, landlord_id):
        prop = self.get_property(property_id, active_only=False)
        if prop.landlord_id != landlord_id:
            raise AuthorizationError("You do not own this property")
        return prop

    def set_availability(self, property_id, landlord_id, start_date, end_date=None, is_available=True):
        """Create or replace the property's availability range."""
        prop = self._owned_property(property_id, landlord_id)
        start = parse_date(start_date, "start_date")
        end = parse_date(end_date, "end_date") if end_date else None
        if end is not None and end < start:
            raise ValidationError("end_date must not be before start_date")

        availability = prop.availability
        if availability is None:
            availability = PropertyAvailability(property_id=prop.id)
            db.session.add(availability)
        availability.start_date = start
        availability.end_date = end
        availability.is_available = bool(is_available)
        db.session.commit()
        return availability

    def _blocking_reservations(self, property_id, start, end):
        query = Reservation.query.filter(
            Reservation.property_id == property_id,
            Reservation.status.in_([s.value for s in BLOCKING_RESERVATION_STATUSES]),
            Reservation.start_date <= end,
            Reservation.end_date >= start,
        )
        return query.all()

    def availability(self, property_id, date_from, date_to):
        """Per-day availability for ``date_from..date_to`` inclusive."""
        prop = self.get_property(property_id)
        start = parse_date(date_from, "from")
        end = parse_date(date_to, "to")
        if end < start:
            raise ValidationError("to must not be before from")
        if (end - start).days >= MAX_AVAILABILITY_DAYS:
            raise ValidationError("Date range is too long")

        window = prop.availability
        blocked = self._blocking_reservations(prop.id, start, end)
        days = []
        for day in _days(start, end):
            if window is None:
                open_day = True
            else:
                open_day = window.is_available and window.covers(day)
            taken = any(r.start_date <= day <= r.end_date for r in blocked)
            days.append({"date": day.isoformat(), "available": open_day and not taken})
        return days

    # -----------------------------------------------------------------------
    # Offers
    # -----------------------------------------------------------------------
    def submit(self, property_id, tenant_email, start_date, end_date, offer_price,
               tenant_name=None, message=None):
        email = validate_email(tenant_email, "email")
        start = parse_date(start_date, "start_date")
        end = parse_date(end_date, "end_date")
        if end < start:
            raise ValidationError("end_date must not be before start_date")
        price = parse_price(offer_price, "offer_price")
        prop = self.get_property(property_id)

        window = prop.availability
        if window is not None and not all(window.is_available and window.covers(d) for d in (start, end)):
            raise ValidationError("Property is not available for those dates")
        if self._blocking_reservations(prop.id, start, end):
            raise ValidationError("Those dates are already requested or booked")

        reservation = Reservation(
            property_id=prop.id,
            tenant_email=email,
            tenant_name=(tenant_name or "").strip() or None,
            start_date=start,
            end_date=end,
            offer_price=price,
            message=message,
            status=ReservationStatus.PENDING.value,
        )
        db.session.add(reservation)
        db.session.commit()
        logger.info("Reservation %s submitted for property %s", reservation.id, prop.id)

        landlord = db.session.get(User, prop.landlord_id)
        self.notifier.reservation_received(reservation, landlord.email if landlord else None)
        return reservation

    def get(self, reservation_id):
        reservation = db.session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        return reservation

    def get_for_tenant(self, reservation_id, email):
        reservation = self.get(reservation_id)
        if not email or normalize_email(email) != reservation.tenant_email:
            raise AuthorizationError("Email does not match this reservation")
        return reservation

    def _for_landlord(self, reservation_id, landlord_id):
        reservation = self.get(reservation_id)
        if reservation.property.landlord_id != landlord_id:
            raise AuthorizationError("You do not own this property")
        return reservation

    def list_for_landlord(self, landlord_id, status=None):
        query = Reservation.query.join(Property).filter(Property.landlord_id == landlord_id)
        if status:
            query = query.filter(Reservation.status == status)
        return query.order_by(Reservation.created_at.desc()).all()

    def list_for_tenant(self, email):
        return (
            Reservation.query
            .filter_by(tenant_email=normalize_email(email))
            .order_by(Reservation.created_at.desc())
            .all()
        )

    # -----------------------------------------------------------------------
    # Landlord decisions
    # -----------------------------------------------------------------------
    def accept(self, reservation_id, landlord_id, note=None):
        reservation = self._for_landlord(reservation_id, landlord_id)
        if reservation.id_front:
            target = ReservationStatus.ACCEPTED
        else:
            target = ReservationStatus.ACCEPTED_PENDING_VERIFICATION
        reservation.status = RESERVATION_STATUS.advance(reservation.status, "accept", target).value
        if note:
            reservation.landlord_note = note
        db.session.commit()
        logger.info("Reservation %s accepted (%s)", reservation.id, reservation.status)

        if target == ReservationStatus.ACCEPTED:
            self.notifier.reservation_update(reservation, self._tenant_link(reservation, "pay"), "Pay now")
        else:
            self.notifier.reservation_update(reservation, self._tenant_link(reservation, "upload-id"), "Upload ID")
        return reservation

    def reject(self, reservation_id, landlord_id, note=None):
        reservation = self._for_landlord(reservation_id, landlord_id)
        reservation.status = RESERVATION_STATUS.advance(reservation.status, "reject").value
        if note:
            reservation.landlord_note = note
        db.session.commit()
        logger.info("Reservation %s rejected", reservation.id)
        self.notifier.reservation_update(reservation)
        return reservation

    def request_documents(self, reservation_id, landlord_id, note=None):
        reservation = self._for_landlord(reservation_id, landlord_id)
        reservation.status = RESERVATION_STATUS.advance(reservation.status, "request_documents").value
        if note:
            reservation.landlord_note = note
        db.session.commit()
        self.notifier.reservation_update(
            reservation, self._tenant_link(reservation, "upload-id"), "Upload documents")
        return reservation

    def _tenant_link(self, reservation, action):
        return "{}/reservations/{}?action={}&email={}".format(
            self.frontend_url, reservation.id, action, reservation.tenant_email)

    # -----------------------------------------------------------------------
    # Tenant ID documents
    # -----------------------------------------------------------------------
    def upload_id(self, reservation_id, email, files):
        """Store ID images. ``files`` maps frontId/backId/selfie to uploads."""
        reservation = self.get_for_tenant(reservation_id, email)
        current = ReservationStatus(reservation.status)
        if current == ReservationStatus.DOCUMENTS_REQUESTED:
            new_status = RESERVATION_STATUS.advance(current, "submit_documents")
        elif current == ReservationStatus.ACCEPTED_PENDING_VERIFICATION:
            new_status = RESERVATION_STATUS.advance(current, "verify_identity")
        elif current == ReservationStatus.PENDING:
            new_status = current
        else:
            raise InvalidTransitionError(RESERVATION_STATUS.name, current.value, "upload_id")

        front = files.get("frontId")
        if not front or not front.filename:
            raise ValidationError("frontId is required")
        accepted = {}
        for field in ID_FIELDS:
            file = files.get(field)
            if not file or not file.filename:
                continue
            if not _allowed_image(file):
                raise ValidationError("{} must be an image".format(field))
            file.seek(0, os.SEEK_END)
            size = file.tell()
            file.seek(0)
            if size > self.max_id_image_size:
                raise ValidationError("{} exceeds the maximum size of {} MB".format(
                    field, self.max_id_image_size // (1024 * 1024)))
            accepted[field] = file

        folder = os.path.join(self.upload_folder, "ids", str(reservation.id))
        os.makedirs(folder, exist_ok=True)
        stored = {}
        for field, file in accepted.items():
            ext = file.filename.rsplit(".", 1)[1].lower()
            name = secure_filename("{}-{}.{}".format(field, generate_uuid()[:8], ext))
            file.save(os.path.join(folder, name))
            stored[field] = os.path.join("ids", str(reservation.id), name)

        reservation.id_front = stored["frontId"]
        reservation.id_back = stored.get("backId", reservation.id_back)
        reservation.id_selfie = stored.get("selfie", reservation.id_selfie)
        reservation.id_submitted_at = utcnow()
        reservation.status = new_status.value
        db.session.commit()
        logger.info("ID uploaded for reservation %s (%s)", reservation.id, reservation.status)

        if new_status == ReservationStatus.ACCEPTED:
            self.notifier.reservation_update(reservation, self._tenant_link(reservation, "pay"), "Pay now")
        return reservation

    # -----------------------------------------------------------------------
    # Payment
    # -----------------------------------------------------------------------
    def start_checkout(self, reservation_id, email):
        reservation = self.get_for_tenant(reservation_id, email)
        RESERVATION_STATUS.advance(reservation.status, "start_checkout")
        session = self.gateway.create_checkout_session(
            [{
                "name": "Stay at {} ({} to {})".format(
                    reservation.property.title,
                    reservation.start_date.isoformat(),
                    reservation.end_date.isoformat(),
                ),
                "price": reservation.offer_price,
                "quantity": 1,
            }],
            success_url="{}/reservations/{}?paid=1".format(self.frontend_url, reservation.id),
            cancel_url="{}/reservations/{}?canceled=1".format(self.frontend_url, reservation.id),
            metadata={"type": "reservation", "reservation_id": str(reservation.id)},
            customer_email=reservation.tenant_email,
        )
        reservation.stripe_checkout_session_id = session["id"]
        db.session.commit()
        return session

    def mark_paid(self, checkout_session_id, reservation_id=None):
        """Record a completed checkout. Returns the reservation or None."""
        reservation = None
        if checkout_session_id:
            reservation = Reservation.query.filter_by(
                stripe_checkout_session_id=checkout_session_id).first()
        if reservation is None and reservation_id:
            try:
                reservation = db.session.get(Reservation, int(reservation_id))
            except (TypeError, ValueError):
                reservation = None
        if reservation is None:
            logger.warning("Checkout %s does not match a reservation", checkout_session_id)
            return None
        if reservation.status == ReservationStatus.PAID.value:
            return reservation

        reservation.status = RESERVATION_STATUS.advance(reservation.status, "mark_paid").value
        reservation.paid_at = utcnow()
        if checkout_session_id:
            reservation.stripe_checkout_session_id = checkout_session_id
        db.session.commit()
        logger.info("Reservation %s paid", reservation.id)
        self.notifier.reservation_update(reservation)
        return reservation

