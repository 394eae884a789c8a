"""Payment providers.

A provider charges and refunds on behalf of the payment service. The
sandbox providers shipped here settle in memory and follow the usual
processor test-card convention so the whole payment flow can run without a
network:

    4000000000000002  declined, "Payment declined by issuer"
    4000000000009995  declined, "Insufficient funds"
    4000000000000119  provider unavailable (raises)

PIX payments can be steered with ``details['simulate']`` set to
``'decline'`` or ``'unavailable'``.
"""
import asyncio
import logging
import secrets
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional
from uuid import UUID

from .exceptions import PaymentNotFoundError, PaymentProviderUnavailableError
from .fees import payment_fee, to_money
from .models import (
    PaymentMethodType,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    PaymentStatusType,
    RefundResult,
)

logger = logging.getLogger(__name__)

DECLINED_CARD = '4000000000000002'
INSUFFICIENT_FUNDS_CARD = '4000000000009995'
PROCESSING_ERROR_CARD = '4000000000000119'


class PaymentProvider(ABC):
    """Contract every payment provider implements."""

    name: str

    @abstractmethod
    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        """Charge the buyer.

        A decline is returned as ``success=False``. Raise
        PaymentProviderUnavailableError only when the outcome is unknown.
        """

    @abstractmethod
    async def refund_payment(
        self,
        transaction_id: UUID,
        amount: Decimal,
        idempotency_key: str
    ) -> RefundResult:
        """Refund a captured payment.

        Repeating a call with the same ``idempotency_key`` must return the
        first result without refunding again.
        """

    @abstractmethod
    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        """Look up a payment the provider issued."""


def _new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class SandboxPaymentProvider(PaymentProvider):
    """In-memory provider base. Subclasses decide declines."""

    payment_prefix = 'sandbox'
    refund_prefix = 'refund'

    def __init__(self, latency_ms: int = 0) -> None:
        """Initialize the provider.

        Args:
            latency_ms: Simulated round trip awaited on every call
        """
        self.latency_ms = latency_ms
        self._payments: Dict[str, PaymentStatus] = {}
        self._payments_by_transaction: Dict[UUID, str] = {}
        self._refunds: Dict[str, RefundResult] = {}

    async def _round_trip(self) -> None:
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000)

    @abstractmethod
    def _decline_reason(self, request: PaymentRequest) -> Optional[str]:
        """Return why a charge is declined, or None to accept it.

        Raises:
            PaymentProviderUnavailableError: To simulate an outage
        """

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        await self._round_trip()
        now = datetime.now(timezone.utc)

        reason = self._decline_reason(request)
        if reason:
            logger.info(f"{self.name} declined payment for {request.transaction_id}: {reason}")
            return PaymentResult(
                success=False,
                status=PaymentStatusType.FAILED,
                error_message=reason,
                provider=self.name
            )

        payment_id = _new_id(self.payment_prefix)
        self._payments[payment_id] = PaymentStatus(
            payment_id=payment_id,
            status=PaymentStatusType.COMPLETED,
            amount=to_money(request.amount),
            currency=request.currency,
            created_at=now,
            completed_at=now
        )
        self._payments_by_transaction[request.transaction_id] = payment_id
        logger.info(f"{self.name} captured {request.amount} for {request.transaction_id} as {payment_id}")

        return PaymentResult(
            success=True,
            payment_id=payment_id,
            status=PaymentStatusType.COMPLETED,
            transaction_fee=payment_fee(request.amount, request.method),
            provider=self.name
        )

    async def refund_payment(
        self,
        transaction_id: UUID,
        amount: Decimal,
        idempotency_key: str
    ) -> RefundResult:
        await self._round_trip()

        if idempotency_key in self._refunds:
            logger.info(f"{self.name} refund {idempotency_key} already issued")
            return self._refunds[idempotency_key]

        refund = RefundResult(
            success=True,
            refund_id=_new_id(self.refund_prefix),
            amount=to_money(amount),
            status=PaymentStatusType.COMPLETED
        )
        self._refunds[idempotency_key] = refund

        payment_id = self._payments_by_transaction.get(transaction_id)
        if payment_id:
            self._payments[payment_id].status = PaymentStatusType.REFUNDED
        logger.info(f"{self.name} refunded {refund.amount} for {transaction_id}")
        return refund

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        await self._round_trip()
        try:
            return self._payments[payment_id]
        except KeyError:
            raise PaymentNotFoundError(f"Payment {payment_id} not found at {self.name}")


class StripePaymentProvider(SandboxPaymentProvider):
    """Card and bank transfer processor."""

    name = 'stripe'
    payment_prefix = 'stripe'
    refund_prefix = 'refund'

    def _decline_reason(self, request: PaymentRequest) -> Optional[str]:
        if request.details.get('simulate') == 'unavailable':
            raise PaymentProviderUnavailableError("Card processor did not respond")
        if request.details.get('simulate') == 'decline':
            return "Payment declined by issuer"
        if request.method != PaymentMethodType.CREDIT_CARD:
            return None

        number = str(
            request.details.get('card_number') or request.details.get('cardNumber') or ''
        ).replace(' ', '')
        if number == PROCESSING_ERROR_CARD:
            raise PaymentProviderUnavailableError("Card processor did not respond")
        if number == DECLINED_CARD:
            return "Payment declined by issuer"
        if number == INSUFFICIENT_FUNDS_CARD:
            return "Insufficient funds"
        return None


class PIXPaymentProvider(SandboxPaymentProvider):
    """Brazilian instant payments."""

    name = 'pix'
    payment_prefix = 'pix'
    refund_prefix = 'pix_refund'

    def _decline_reason(self, request: PaymentRequest) -> Optional[str]:
        simulate = request.details.get('simulate')
        if simulate == 'unavailable':
            raise PaymentProviderUnavailableError("PIX network did not respond")
        if simulate == 'decline':
            return "PIX payment was not authorized"
        return None
