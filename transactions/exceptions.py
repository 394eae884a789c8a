"""Transaction exceptions.

Messages are stable; callers and the HTTP layer match on them.
"""
from typing import List, Optional


class TransactionError(Exception):
    """Base class for transaction errors."""
    pass


class ListingNotFoundError(TransactionError):
    def __init__(self, message: str = 'Listing not found'):
        super().__init__(message)


class ListingUnavailableError(TransactionError):
    def __init__(self, message: str = 'Listing is not available for purchase'):
        super().__init__(message)


class SelfPurchaseError(TransactionError):
    def __init__(self, message: str = 'Cannot purchase your own listing'):
        super().__init__(message)


class TransactionNotFoundError(TransactionError):
    def __init__(self, message: str = 'Transaction not found'):
        super().__init__(message)


class BuyerNotFoundError(TransactionError):
    def __init__(self, message: str = 'Buyer not found'):
        super().__init__(message)


class NotTransactionBuyerError(TransactionError):
    def __init__(self, message: str = 'Only the buyer can confirm delivery'):
        super().__init__(message)


class InvalidTransactionStateError(TransactionError):
    """Raised when a transaction isn't in the status an operation needs."""
    pass


class TransactionNotCancellableError(InvalidTransactionStateError):
    def __init__(self, message: str = 'Transaction cannot be cancelled in current status'):
        super().__init__(message)


class PaymentExpiredError(InvalidTransactionStateError):
    def __init__(self, message: str = 'Payment instructions have expired'):
        super().__init__(message)


class InvalidStatusTransitionError(TransactionError):
    """Raised when a status change isn't allowed from the current status."""
    pass


class InvalidTransactionUpdateError(TransactionError):
    """Raised when an update payload is empty or incomplete."""
    pass


class InvalidPaymentMethodError(TransactionError):
    """Raised when a payment method payload fails validation."""
    def __init__(self, errors: Optional[List[str]] = None):
        self.errors = errors or []
        detail = '; '.join(self.errors) if self.errors else 'invalid payload'
        super().__init__(f"Invalid payment method: {detail}")


class RefundFailedError(TransactionError):
    def __init__(self, message: str = 'Failed to process refund'):
        super().__init__(message)
