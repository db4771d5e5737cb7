"""Error taxonomy shared by the payment routes, the gateways and the vault."""

from typing import Any, Optional


class PaymentError(Exception):
    """Base class for errors surfaced to the caller as ``{success: false, error}``."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(PaymentError):
    """Provider missing, inactive or without usable credentials."""

    status_code = 400


class NotFoundError(PaymentError):
    status_code = 404


class InvalidRequestError(PaymentError):
    status_code = 400


class OrderStateError(PaymentError):
    """Order is no longer waiting for payment."""

    status_code = 409


class GatewayError(PaymentError):
    """The provider's own API answered with a failure."""

    status_code = 502

    def __init__(self, message: str, provider_reason: Optional[str] = None, payload: Any = None):
        super().__init__(message)
        self.provider_reason = provider_reason
        self.payload = payload


class DecryptionFailure(Exception):
    """Stored credential could not be decrypted."""


class AuthorizationError(Exception):
    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
