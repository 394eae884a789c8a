"""Transaction data models and the lifecycle state machine."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from payments.models import PaymentMethod, PaymentMethodType


class TransactionStatus(str, Enum):
    PENDING_PAYMENT = 'pending_payment'
    PAYMENT_CONFIRMED = 'payment_confirmed'
    SHIPPED = 'shipped'
    DELIVERED = 'delivered'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class TransactionEventType(str, Enum):
    TRANSACTION_CREATED = 'transaction_created'
    PAYMENT_CONFIRMED = 'payment_confirmed'
    PAYMENT_FAILED = 'payment_failed'
    STATUS_UPDATED = 'status_updated'
    SHIPPED = 'shipped'
    DELIVERED = 'delivered'
    FUNDS_RELEASED = 'funds_released'
    TRANSACTION_CANCELLED = 'transaction_cancelled'
    REFUND_ISSUED = 'refund_issued'
    RESERVATION_EXPIRED = 'reservation_expired'


ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING_PAYMENT: frozenset({
        TransactionStatus.PAYMENT_CONFIRMED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.PAYMENT_CONFIRMED: frozenset({
        TransactionStatus.SHIPPED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.SHIPPED: frozenset({TransactionStatus.DELIVERED}),
    TransactionStatus.DELIVERED: frozenset({TransactionStatus.COMPLETED}),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({TransactionStatus.COMPLETED, TransactionStatus.CANCELLED})

CANCELLABLE_STATUSES = frozenset({
    TransactionStatus.PENDING_PAYMENT,
    TransactionStatus.PAYMENT_CONFIRMED,
})

# Statuses only reachable through their own operation, never a generic update
DEDICATED_STATUSES = frozenset({
    TransactionStatus.PAYMENT_CONFIRMED,
    TransactionStatus.DELIVERED,
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
})


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class ShippingAddress(BaseModel):
    model_config = ConfigDict(extra='allow', populate_by_name=True)

    name: Optional[str] = None
    street: str
    number: Optional[str] = None
    complement: Optional[str] = None
    neighborhood: Optional[str] = None
    city: str
    state: str
    postal_code: str = Field(alias='postalCode')
    country: str = 'BR'
    phone: Optional[str] = None


class TransactionFees(BaseModel):
    platform_fee: Decimal
    payment_fee: Decimal
    shipping_fee: Decimal = Decimal('0')


class TransactionEvent(BaseModel):
    type: TransactionEventType
    description: str
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Transaction(BaseModel):
    id: UUID
    listing_id: UUID
    buyer_id: UUID
    seller_id: UUID
    amount: Decimal
    currency: str = 'BRL'
    fees: TransactionFees
    net_amount: Decimal
    status: TransactionStatus
    payment_method: PaymentMethodType
    payment_id: Optional[str] = None
    shipping_address: Dict[str, Any]
    shipping_method: str = 'standard'
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    notes: Optional[str] = None
    timeline: List[TransactionEvent] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class CreateTransactionRequest(BaseModel):
    listing_id: UUID
    buyer_id: UUID
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    shipping_method: str = 'standard'
    notes: Optional[str] = None


class PaymentInstructions(BaseModel):
    type: PaymentMethodType = PaymentMethodType.PIX
    qr_code: str
    pix_key: str
    amount: Decimal
    expires_at: datetime


class CreateTransactionResult(BaseModel):
    transaction: Transaction
    payment_required: bool
    payment_instructions: Optional[PaymentInstructions] = None


class PaymentOutcome(BaseModel):
    success: bool
    payment_id: Optional[str] = None
    error_message: Optional[str] = None


class TransactionUpdate(BaseModel):
    """Fields a generic update may touch."""
    model_config = ConfigDict(extra='forbid')

    status: Optional[TransactionStatus] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    shipping_method: Optional[str] = None
    notes: Optional[str] = None


class TransactionStats(BaseModel):
    total_transactions: int
    total_revenue: Decimal
    average_order_value: Decimal
    completion_rate: float
    status_breakdown: Dict[str, int]
