"""
Error types raised by the Tajer service layer.

Route handlers let these propagate; ``register_error_handlers`` turns each
one into a JSON body of the form ``{"error": message}`` with the matching
HTTP status.
"""

import logging

from flask import jsonify

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"error": self.message}


class ValidationError(MarketplaceError):
    """Missing or malformed input."""
    status_code = 400


class AuthorizationError(MarketplaceError):
    """Caller is not a party to the record."""
    status_code = 403


class NotFoundError(MarketplaceError):
    status_code = 404


class InvalidTransitionError(MarketplaceError):
    """Event is not allowed from the record's current state."""
    status_code = 409

    def __init__(self, machine, current, event):
        super().__init__(
            "Cannot {} a {} that is {}".format(event.replace("_", " "), machine, current)
        )
        self.machine = machine
        self.current = current
        self.event = event


class PreconditionError(MarketplaceError):
    status_code = 409


class UpstreamError(MarketplaceError):
    """The payment or email provider failed."""
    status_code = 502


def register_error_handlers(app):
    @app.errorhandler(MarketplaceError)
    def handle_marketplace_error(e):
        if e.status_code >= 500:
            logger.error("%s: %s", type(e).__name__, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(413)
    def handle_too_large(e):
        return jsonify({"error": "Upload too large"}), 413

    @app.errorhandler(429)
    def ratelimit_handler(e):
        # Retry-After header is set by Flask-Limiter; read it back.
        retry_after = e.get_headers().get("Retry-After") if hasattr(e, "get_headers") else None
        retry_after_seconds = int(retry_after) if retry_after else 60
        return jsonify({
            "error": "Too many requests. Please try again later.",
            "retry_after": retry_after_seconds,
        }), 429

    @app.errorhandler(500)
    def handle_internal_error(e):
        logger.exception("Unhandled error")
        return jsonify({"error": "Internal server error"}), 500
