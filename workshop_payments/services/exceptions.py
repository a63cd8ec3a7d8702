from typing import Optional


class SumUpError(Exception):
    """Base class for failures talking to SumUp.

    ``status_code`` is None when the processor could not be reached at all.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationError(SumUpError):
    """Raised when no access token could be issued"""

    pass


class CheckoutCreationError(SumUpError):
    """Raised when SumUp rejects a new checkout"""

    pass


class CheckoutLookupError(SumUpError):
    """Raised when a checkout cannot be fetched or listed"""

    pass


class PaymentRequestError(Exception):
    """Base class for payment request operations refused for business reasons"""

    pass


class DuplicateReferenceError(PaymentRequestError):
    pass


class PaymentRequestLockedError(PaymentRequestError):
    """Raised when an edit would diverge from money already requested or paid"""

    pass


class PaymentInitError(PaymentRequestError):
    pass
