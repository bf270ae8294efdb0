"""Exceptions raised while submitting payment requests."""


class PaymentError(Exception):
    """Base exception for payment request errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    pass
