"""Payment domain errors.

Each error carries the HTTP status the API layer answers with; the callback
endpoint never surfaces them to the provider.
"""


class PaymentError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidProduct(PaymentError):
    pass


class VariantNotFound(PaymentError):
    pass


class InsufficientStock(PaymentError):
    pass


class StockConflict(PaymentError):
    """Stock ran out between push initiation and the provider's confirmation."""
    status_code = 409


class InvalidPhoneNumber(PaymentError):
    pass


class InvalidAmount(PaymentError):
    pass


class GatewayAuthError(PaymentError):
    status_code = 503


class GatewayRequestError(PaymentError):
    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.error_code = error_code


class PushRejected(PaymentError):
    def __init__(self, message: str, response_code: str):
        super().__init__(message)
        self.response_code = response_code


class PaymentIntentNotFound(PaymentError):
    status_code = 404


class InvalidTransition(PaymentError):
    status_code = 409


class RetryNotAllowed(PaymentError):
    pass


class NotAuthorized(PaymentError):
    status_code = 403
