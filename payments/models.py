"""Payment data models."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class PaymentMethodType(str, Enum):
    PIX = 'pix'
    CREDIT_CARD = 'credit_card'
    BANK_TRANSFER = 'bank_transfer'


class PaymentStatusType(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    REFUNDED = 'refunded'


class PaymentMethod(BaseModel):
    """A payment method as chosen by the buyer."""
    type: PaymentMethodType
    details: Dict[str, Any] = Field(default_factory=dict)


class PaymentRequest(BaseModel):
    """What a provider needs to charge a buyer."""
    transaction_id: UUID
    amount: Decimal
    currency: str = 'BRL'
    method: PaymentMethodType
    details: Dict[str, Any] = Field(default_factory=dict)
    customer: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentResult(BaseModel):
    """Outcome of a charge. A decline is ``success=False``, not an exception."""
    success: bool
    payment_id: Optional[str] = None
    status: PaymentStatusType
    transaction_fee: Decimal = Decimal('0')
    error_message: Optional[str] = None
    provider: str


class RefundResult(BaseModel):
    success: bool
    refund_id: Optional[str] = None
    amount: Decimal
    status: PaymentStatusType
    error_message: Optional[str] = None


class PaymentStatus(BaseModel):
    payment_id: str
    status: PaymentStatusType
    amount: Decimal
    currency: str = 'BRL'
    created_at: datetime
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class PaymentMethodInfo(BaseModel):
    """A payment method offered to buyers at checkout."""
    type: PaymentMethodType
    name: str
    description: str
    processing_time: str
    fees: str
    enabled: bool = True
