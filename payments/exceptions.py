"""Payment exceptions."""


class PaymentError(Exception):
    """Base class for payment errors."""
    pass


class UnsupportedPaymentMethodError(PaymentError):
    """Raised when a payment method type isn't supported."""
    pass


class PaymentProviderNotFoundError(PaymentError):
    """Raised when no provider is registered under a name."""
    pass


class PaymentProviderUnavailableError(PaymentError):
    """Raised when a provider can't be reached or fails to answer.

    A decline is not an error; this means the outcome of the call is unknown.
    """
    pass


class PaymentNotFoundError(PaymentError):
    """Raised when a provider has no record of a payment."""
    pass
