"""
Application exceptions.

Each exception carries a human readable message and the HTTP status the API
layer answers with.
"""


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FormValidationError(StorefrontError):
    """A form failed local validation; nothing was sent anywhere."""
    status_code = 400


class AuthenticationError(StorefrontError):
    status_code = 401


class PermissionDeniedError(StorefrontError):
    status_code = 403


class NotFoundError(StorefrontError):
    status_code = 404


class CheckoutStateError(StorefrontError):
    """The checkout is not in a step that allows the requested action."""
    status_code = 409


class GatewayError(StorefrontError):
    """An external service answered with an error."""
    status_code = 502


class OrderPersistenceError(GatewayError):
    """The order could not be written. The customer may retry."""
