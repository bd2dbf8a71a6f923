"""
Error taxonomy for the cart / checkout / payment workflows.

Workflows raise these; main.py renders them as ``{"detail": message}`` with the
class's HTTP status.
"""


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    """Missing/invalid input, insufficient stock, empty cart."""

    status_code = 400


class NotFoundError(StoreError):
    status_code = 404


class AuthorizationError(StoreError):
    """Acting on another user's resource."""

    status_code = 403


class ConfigurationError(StoreError):
    status_code = 500


class PaymentPendingError(ValidationError):
    """The gateway has no successful payment yet; the caller should retry later."""

    retryable = True


class UpstreamError(StoreError):
    """A payment gateway call failed; ``message`` is the gateway's own where available."""

    status_code = 500
