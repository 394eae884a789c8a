"""Payments module for charging buyers and refunding them.

This module provides functionality for:
- Computing platform and payment fees (see fees.py)
- Validating payment method payloads
- Routing charges and refunds to a payment provider
- Looking up payment status
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import UUID

from config import settings_conf
from .exceptions import (
    PaymentError,
    PaymentNotFoundError,
    PaymentProviderNotFoundError,
    PaymentProviderUnavailableError,
    UnsupportedPaymentMethodError,
)
from .fees import FeeBreakdown, calculate_fees, to_money
from .models import (
    PaymentMethod,
    PaymentMethodInfo,
    PaymentMethodType,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    PaymentStatusType,
    RefundResult,
    ValidationResult,
)
from .providers import (
    PIXPaymentProvider,
    PaymentProvider,
    SandboxPaymentProvider,
    StripePaymentProvider,
)

logger = logging.getLogger(__name__)

# Which provider settles each payment method
PROVIDER_FOR_METHOD = {
    PaymentMethodType.PIX: 'pix',
    PaymentMethodType.CREDIT_CARD: 'stripe',
    PaymentMethodType.BANK_TRANSFER: 'stripe',
}

# Method assumed when a caller names a provider instead of a method
DEFAULT_METHOD_FOR_PROVIDER = {
    'pix': PaymentMethodType.PIX,
    'stripe': PaymentMethodType.CREDIT_CARD,
}

AVAILABLE_PAYMENT_METHODS = [
    PaymentMethodInfo(
        type=PaymentMethodType.PIX,
        name='PIX',
        description='Instant payment system',
        processing_time='Instant',
        fees='1% (max R$10)'
    ),
    PaymentMethodInfo(
        type=PaymentMethodType.CREDIT_CARD,
        name='Credit Card',
        description='Visa, Mastercard, Elo',
        processing_time='1-2 business days',
        fees='2.9% + R$0.30'
    ),
    PaymentMethodInfo(
        type=PaymentMethodType.BANK_TRANSFER,
        name='Bank Transfer',
        description='TED/DOC transfer',
        processing_time='1-3 business days',
        fees='1.5%'
    ),
]


def refund_idempotency_key(transaction_id: Union[UUID, str]) -> str:
    """Key that makes refunding a transaction safe to repeat."""
    return f"refund_{transaction_id}"


def default_providers(latency_ms: Optional[int] = None) -> Dict[str, PaymentProvider]:
    """Build the sandbox providers keyed by name."""
    if latency_ms is None:
        latency_ms = settings_conf['provider_latency_ms']
    providers = [PIXPaymentProvider(latency_ms), StripePaymentProvider(latency_ms)]
    return {provider.name: provider for provider in providers}


def _detail(details: Mapping[str, Any], snake: str, camel: str) -> Any:
    value = details.get(snake)
    if value in (None, ''):
        value = details.get(camel)
    return value


class PaymentService:
    """Adapter between transactions and payment providers.

    Owns no persistent state. Declines come back as
    ``PaymentResult(success=False)``; provider outages raise.
    """

    def __init__(
        self,
        providers: Optional[Dict[str, PaymentProvider]] = None,
        currency: Optional[str] = None
    ) -> None:
        """Initialize the payment service.

        Args:
            providers: Providers keyed by name. Defaults to the sandbox providers.
            currency: Currency charged. Defaults to the configured currency.
        """
        self.providers = providers if providers is not None else default_providers()
        self.currency = currency or settings_conf['currency']

    def calculate_fees(
        self,
        amount: Union[Decimal, int, str],
        method: Union[PaymentMethodType, str]
    ) -> FeeBreakdown:
        """Compute platform fee, payment fee and net amount for an item price."""
        return calculate_fees(amount, method)

    def validate_payment_method(
        self,
        payment_method: Union[PaymentMethod, Mapping[str, Any]]
    ) -> ValidationResult:
        """Check a payment method payload has what its type needs.

        Card details are accepted in snake_case or camelCase.
        """
        if isinstance(payment_method, PaymentMethod):
            method_type = payment_method.type.value
            details = payment_method.details
        else:
            method_type = payment_method.get('type')
            details = payment_method.get('details') or {}

        errors: List[str] = []
        if not method_type:
            errors.append('Payment method type is required')
            return ValidationResult(valid=False, errors=errors)

        try:
            method_type = PaymentMethodType(method_type)
        except ValueError:
            errors.append('Invalid payment method type')
            return ValidationResult(valid=False, errors=errors)

        if method_type == PaymentMethodType.CREDIT_CARD:
            if not _detail(details, 'card_number', 'cardNumber'):
                errors.append('Card number is required')
            if (not _detail(details, 'expiry_month', 'expiryMonth')
                    or not _detail(details, 'expiry_year', 'expiryYear')):
                errors.append('Card expiry date is required')
            if not details.get('cvv'):
                errors.append('CVV is required')
        return ValidationResult(valid=not errors, errors=errors)

    def provider_for(self, method_or_provider: Union[PaymentMethodType, str]) -> str:
        """Resolve a payment method type or provider name to a provider name."""
        if isinstance(method_or_provider, PaymentMethodType):
            return PROVIDER_FOR_METHOD[method_or_provider]
        if method_or_provider in self.providers:
            return method_or_provider
        try:
            return PROVIDER_FOR_METHOD[PaymentMethodType(method_or_provider)]
        except ValueError:
            raise PaymentProviderNotFoundError(
                f"No payment provider for {method_or_provider}"
            )

    def get_provider(self, name: str) -> PaymentProvider:
        try:
            return self.providers[name]
        except KeyError:
            raise PaymentProviderNotFoundError(f"Payment provider {name} not found")

    async def process_payment(
        self,
        provider_hint: Union[PaymentMethodType, str],
        transaction_id: UUID,
        amount: Union[Decimal, int, str],
        details: Optional[Dict[str, Any]] = None,
        customer: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        method: Optional[Union[PaymentMethodType, str]] = None
    ) -> PaymentResult:
        """Charge a buyer through the provider for a method or provider name.

        Args:
            provider_hint: Provider name or payment method type
            transaction_id: Transaction being paid
            amount: Amount charged, shipping included
            details: Method specific payload (card data, PIX payer)
            customer: Buyer contact data for the provider
            metadata: Extra data attached to the charge
            method: Method type when ``provider_hint`` is a provider name

        Returns:
            PaymentResult; a decline has ``success=False``

        Raises:
            PaymentProviderNotFoundError: If no provider matches the hint
            PaymentProviderUnavailableError: If the provider call fails
        """
        provider = self.get_provider(self.provider_for(provider_hint))

        if method is None:
            try:
                method = PaymentMethodType(provider_hint)
            except ValueError:
                method = DEFAULT_METHOD_FOR_PROVIDER.get(provider.name, PaymentMethodType.CREDIT_CARD)

        request = PaymentRequest(
            transaction_id=transaction_id,
            amount=to_money(amount),
            currency=self.currency,
            method=method,
            details=details or {},
            customer=customer or {},
            metadata=metadata or {}
        )

        try:
            result = await provider.process_payment(request)
        except PaymentError:
            logger.error(f"Payment provider {provider.name} failed for transaction {transaction_id}")
            raise

        if not result.success:
            logger.warning(
                f"Payment for transaction {transaction_id} declined by {provider.name}: "
                f"{result.error_message}"
            )
        return result

    async def refund_payment(
        self,
        provider_hint: Union[PaymentMethodType, str],
        transaction_id: UUID,
        amount: Union[Decimal, int, str]
    ) -> RefundResult:
        """Refund a transaction's payment.

        Repeated calls for one transaction refund only once.
        """
        provider = self.get_provider(self.provider_for(provider_hint))
        key = refund_idempotency_key(transaction_id)

        try:
            result = await provider.refund_payment(transaction_id, to_money(amount), key)
        except PaymentError:
            logger.error(f"Refund via {provider.name} failed for transaction {transaction_id}")
            raise

        if not result.success:
            logger.warning(
                f"Refund for transaction {transaction_id} rejected by {provider.name}: "
                f"{result.error_message}"
            )
        return result

    async def get_payment_status(
        self,
        provider_hint: Union[PaymentMethodType, str],
        payment_id: str
    ) -> PaymentStatus:
        """Look up a payment at its provider."""
        provider = self.get_provider(self.provider_for(provider_hint))
        return await provider.get_payment_status(payment_id)

    def get_available_payment_methods(self) -> List[PaymentMethodInfo]:
        """List the payment methods buyers can choose at checkout."""
        return [
            info for info in AVAILABLE_PAYMENT_METHODS
            if PROVIDER_FOR_METHOD[info.type] in self.providers
        ]


__all__ = [
    'PaymentService',
    'PaymentProvider',
    'SandboxPaymentProvider',
    'PIXPaymentProvider',
    'StripePaymentProvider',
    'default_providers',
    'refund_idempotency_key',
    'calculate_fees',
    'to_money',
    'FeeBreakdown',
    'PaymentMethod',
    'PaymentMethodInfo',
    'PaymentMethodType',
    'PaymentRequest',
    'PaymentResult',
    'PaymentStatus',
    'PaymentStatusType',
    'RefundResult',
    'ValidationResult',
    'PaymentError',
    'PaymentNotFoundError',
    'PaymentProviderNotFoundError',
    'PaymentProviderUnavailableError',
    'UnsupportedPaymentMethodError',
]
