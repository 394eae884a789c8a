"""Fee policy for marketplace payments.

Fees are charged on the item price only. Shipping is passed through to the
seller and never carries platform or payment fees.

    platform fee   5% for every method
    pix            1%, capped at R$10.00
    credit card    2.9% + R$0.30
    bank transfer  1.5%

Each fee is rounded to the cent on its own, then
``net_amount = amount - platform_fee - payment_fee`` exactly.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from pydantic import BaseModel

from .exceptions import UnsupportedPaymentMethodError
from .models import PaymentMethodType

CENT = Decimal('0.01')

PLATFORM_FEE_RATE = Decimal('0.05')
PIX_FEE_RATE = Decimal('0.01')
PIX_FEE_CAP = Decimal('10.00')
CARD_FEE_RATE = Decimal('0.029')
CARD_FEE_FIXED = Decimal('0.30')
BANK_TRANSFER_FEE_RATE = Decimal('0.015')

Amount = Union[Decimal, int, str]


class FeeBreakdown(BaseModel):
    platform_fee: Decimal
    payment_fee: Decimal
    total_fees: Decimal
    net_amount: Decimal


def to_money(value: Amount) -> Decimal:
    """Quantize an amount to cents, rounding half up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def platform_fee(amount: Amount) -> Decimal:
    return to_money(to_money(amount) * PLATFORM_FEE_RATE)


def payment_fee(amount: Amount, method: Union[PaymentMethodType, str]) -> Decimal:
    """Get the processing fee a payment method charges on ``amount``.

    Raises:
        UnsupportedPaymentMethodError: If the method isn't known
    """
    try:
        method = PaymentMethodType(method)
    except ValueError:
        raise UnsupportedPaymentMethodError(f"Unsupported payment method: {method}")

    amount = to_money(amount)
    if method == PaymentMethodType.PIX:
        return min(to_money(amount * PIX_FEE_RATE), PIX_FEE_CAP)
    if method == PaymentMethodType.CREDIT_CARD:
        return to_money(amount * CARD_FEE_RATE + CARD_FEE_FIXED)
    return to_money(amount * BANK_TRANSFER_FEE_RATE)


def calculate_fees(amount: Amount, method: Union[PaymentMethodType, str]) -> FeeBreakdown:
    """Compute platform fee, payment fee and net proceeds for an item price.

    Args:
        amount: Item price, shipping excluded
        method: Payment method type

    Returns:
        FeeBreakdown with every value in cents

    Raises:
        UnsupportedPaymentMethodError: If the method isn't known
    """
    amount = to_money(amount)
    if amount < 0:
        raise ValueError(f"Amount must not be negative: {amount}")

    platform = platform_fee(amount)
    processing = payment_fee(amount, method)
    return FeeBreakdown(
        platform_fee=platform,
        payment_fee=processing,
        total_fees=platform + processing,
        net_amount=amount - platform - processing
    )
