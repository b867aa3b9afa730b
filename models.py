"""
Tajer SQLAlchemy Models
All database entities for the marketplace: users, product listings and
reservations, rental properties, and repair requests.
"""

import uuid
import secrets
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import (
    Column, String, Float, Boolean, Integer, Text, Date, DateTime, ForeignKey, JSON,
    CheckConstraint, Index
)
from sqlalchemy.orm import relationship
from werkzeug.security import generate_password_hash, check_password_hash

from lifecycle import RepairStatus, CompletionStatus, ReservationStatus

db = SQLAlchemy()

USER_ROLES = ("customer", "vendor", "landlord", "provider", "admin")


def generate_uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


def generate_job_code():
    """Random shareable repair code in the form R-NNNNNN."""
    return "R-{:06d}".format(secrets.randbelow(1000000))


def generate_barcode():
    """8 hex characters printed on a reservation slip."""
    return secrets.token_hex(4)


def _iso(value):
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------
class User(db.Model):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(50), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="customer")
    reset_token = Column(String(128), nullable=True, unique=True, index=True)
    reset_token_expires = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    products = relationship("Product", back_populates="vendor", lazy="dynamic")
    properties = relationship("Property", back_populates="landlord", lazy="dynamic")

    __table_args__ = (
        CheckConstraint(
            "role IN ('customer', 'vendor', 'landlord', 'provider', 'admin')",
            name="ck_users_role",
        ),
    )

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# Product
# ---------------------------------------------------------------------------
class Product(db.Model):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False, default=0.0)
    stock = Column(Integer, default=0)
    image_url = Column(Text, nullable=True)
    vendor_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    vendor_name = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)

    vendor = relationship("User", back_populates="products")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "stock": self.stock or 0,
            "image_url": self.image_url,
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# Order (in-store reservation of vendor products)
# ---------------------------------------------------------------------------
class Order(db.Model):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    customer_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    total_price = Column(Float, nullable=False, default=0.0)
    guest_name = Column(String(255), nullable=True)
    guest_contact = Column(String(255), nullable=True)
    barcode = Column(String(16), nullable=False, default=generate_barcode)
    status = Column(String(20), nullable=False, default="reserved")

    created_at = Column(DateTime, default=utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="selectin")

    def to_dict(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "vendor_id": self.vendor_id,
            "total_price": round(self.total_price or 0.0, 2),
            "guest_name": self.guest_name,
            "guest_contact": self.guest_contact,
            "barcode": self.barcode,
            "status": self.status,
            "items": [item.to_dict() for item in self.items],
            "created_at": _iso(self.created_at),
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Float, nullable=False, default=0.0)

    order = relationship("Order", back_populates="items")
    product = relationship("Product", lazy="joined")

    def to_dict(self):
        return {
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "price": self.price,
        }


# ---------------------------------------------------------------------------
# Property (rental listing)
# ---------------------------------------------------------------------------
class Property(db.Model):
    __tablename__ = "properties"

    id = Column(Integer, primary_key=True)
    landlord_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    address = Column(Text, nullable=True)
    city = Column(String(100), nullable=True)
    price = Column(Float, nullable=False, default=0.0)  # per night
    image_urls = Column(JSON, nullable=True, default=list)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)

    landlord = relationship("User", back_populates="properties")
    availability = relationship("PropertyAvailability", back_populates="property", uselist=False,
                                cascade="all, delete-orphan")
    reservations = relationship("Reservation", back_populates="property", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "landlord_id": self.landlord_id,
            "title": self.title,
            "description": self.description,
            "address": self.address,
            "city": self.city,
            "price": self.price,
            "image_urls": self.image_urls or [],
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }


class PropertyAvailability(db.Model):
    __tablename__ = "property_availability"

    id = Column(Integer, primary_key=True)
    property_id = Column(Integer, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, unique=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)  # null = open-ended
    is_available = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)

    property = relationship("Property", back_populates="availability")

    def covers(self, day):
        return self.start_date <= day and (self.end_date is None or day <= self.end_date)

    def to_dict(self):
        return {
            "property_id": self.property_id,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "is_available": self.is_available,
        }


# ---------------------------------------------------------------------------
# Reservation (tenant offer on a property)
# ---------------------------------------------------------------------------
class Reservation(db.Model):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True)
    property_id = Column(Integer, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_email = Column(String(255), nullable=False, index=True)
    tenant_name = Column(String(255), nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    offer_price = Column(Float, nullable=False)
    message = Column(Text, nullable=True)
    landlord_note = Column(Text, nullable=True)
    status = Column(String(40), nullable=False, default=ReservationStatus.PENDING.value)

    id_front = Column(String(255), nullable=True)
    id_back = Column(String(255), nullable=True)
    id_selfie = Column(String(255), nullable=True)
    id_submitted_at = Column(DateTime, nullable=True)

    stripe_checkout_session_id = Column(String(255), nullable=True, unique=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    property = relationship("Property", back_populates="reservations", lazy="joined")

    __table_args__ = (
        Index("ix_reservations_status", "status"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "property_id": self.property_id,
            "property_title": self.property.title if self.property else None,
            "tenant_email": self.tenant_email,
            "tenant_name": self.tenant_name,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "offer_price": self.offer_price,
            "message": self.message,
            "landlord_note": self.landlord_note,
            "status": self.status,
            "id_on_file": bool(self.id_front),
            "id_submitted_at": _iso(self.id_submitted_at),
            "paid_at": _iso(self.paid_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ---------------------------------------------------------------------------
# ProviderAccount (Stripe Connect account of a repair provider)
# ---------------------------------------------------------------------------
class ProviderAccount(db.Model):
    __tablename__ = "provider_accounts"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)  # lower-cased
    stripe_account_id = Column(String(255), unique=True, nullable=False)
    charges_enabled = Column(Boolean, nullable=False, default=False)
    payouts_enabled = Column(Boolean, nullable=False, default=False)
    details_submitted = Column(Boolean, nullable=False, default=False)
    transfers_active = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "email": self.email,
            "stripe_account_id": self.stripe_account_id,
            "charges_enabled": self.charges_enabled,
            "payouts_enabled": self.payouts_enabled,
            "details_submitted": self.details_submitted,
            "transfers_active": self.transfers_active,
        }


# ---------------------------------------------------------------------------
# RepairRequest
# ---------------------------------------------------------------------------
class RepairRequest(db.Model):
    __tablename__ = "repair_requests"

    id = Column(Integer, primary_key=True)
    job_code = Column(String(8), unique=True, nullable=False, index=True)

    description = Column(Text, nullable=False)
    image_urls = Column(JSON, nullable=True, default=list)
    requester_email = Column(String(255), nullable=False, index=True)
    customer_address = Column(Text, nullable=False)
    preferred_time = Column(String(255), nullable=False)

    provider_email = Column(String(255), nullable=True, index=True)
    provider_first_name = Column(String(100), nullable=True)
    provider_last_name = Column(String(100), nullable=True)
    provider_city = Column(String(100), nullable=True)

    price_quote = Column(Float, nullable=True)
    final_price = Column(Float, nullable=True)
    materials_cost = Column(Float, nullable=True)
    deposit_amount = Column(Float, nullable=False, default=20.0)
    platform_fee_rate = Column(Float, nullable=False, default=0.10)
    provider_payout_rate = Column(Float, nullable=False, default=0.90)

    stripe_customer_id = Column(String(255), nullable=True)
    stripe_payment_method_id = Column(String(255), nullable=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)
    deposit_payment_intent_id = Column(String(255), nullable=True, index=True)
    final_payment_intent_id = Column(String(255), nullable=True)
    provider_stripe_account_id = Column(String(255), nullable=True, index=True)

    platform_fee_amount = Column(Float, nullable=True)
    destination_transfer_amount = Column(Float, nullable=False, default=0.0)
    payout_amount = Column(Float, nullable=True)
    payout_transfer_id = Column(String(255), nullable=True)

    status = Column(String(40), nullable=False, default=RepairStatus.OPEN.value)
    completion_status = Column(String(40), nullable=False, default=CompletionStatus.PENDING.value)

    deposit_paid_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    user_confirmed_at = Column(DateTime, nullable=True)
    payout_released_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_repair_requests_status", "status"),
        Index("ix_repair_requests_completion", "completion_status", "payout_released_at"),
        CheckConstraint("deposit_amount >= 0", name="ck_repair_deposit_non_negative"),
    )

    @property
    def provider_name(self):
        parts = [self.provider_first_name or "", self.provider_last_name or ""]
        return " ".join(p for p in parts if p) or None

    @property
    def settlement_price(self):
        """Price the payout is computed from."""
        return self.final_price if self.final_price is not None else self.price_quote

    def to_dict(self, include_payment=False):
        data = {
            "id": self.id,
            "job_code": self.job_code,
            "description": self.description,
            "image_urls": self.image_urls or [],
            "requester_email": self.requester_email,
            "customer_address": self.customer_address,
            "preferred_time": self.preferred_time,
            "provider_email": self.provider_email,
            "provider_first_name": self.provider_first_name,
            "provider_last_name": self.provider_last_name,
            "provider_city": self.provider_city,
            "price_quote": self.price_quote,
            "final_price": self.final_price,
            "materials_cost": self.materials_cost,
            "deposit_amount": self.deposit_amount,
            "status": self.status,
            "completion_status": self.completion_status,
            "deposit_paid_at": _iso(self.deposit_paid_at),
            "completed_at": _iso(self.completed_at),
            "user_confirmed_at": _iso(self.user_confirmed_at),
            "payout_released_at": _iso(self.payout_released_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_payment:
            data.update({
                "platform_fee_amount": self.platform_fee_amount,
                "destination_transfer_amount": self.destination_transfer_amount or 0.0,
                "payout_amount": self.payout_amount,
                "payout_transfer_id": self.payout_transfer_id,
                "provider_stripe_account_id": self.provider_stripe_account_id,
                "has_payment_method": bool(self.stripe_payment_method_id),
            })
        return data

    def open_listing(self):
        """Public view for providers browsing open requests."""
        return {
            "id": self.id,
            "description": self.description,
            "image_urls": self.image_urls or [],
            "customer_address": self.customer_address,
            "preferred_time": self.preferred_time,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }
