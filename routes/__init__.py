"""
Tajer API Route Blueprints
"""
from .repairs import repairs_bp
from .reservations import properties_bp
from .products import products_bp
from .orders import orders_bp
from .payments import payments_bp, webhook_bp

__all__ = [
    "repairs_bp",
    "properties_bp",
    "products_bp",
    "orders_bp",
    "payments_bp",
    "webhook_bp",
]
