"""Payments API endpoints."""

from decimal import Decimal
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from payments import (
    FeeBreakdown,
    PaymentMethodInfo,
    PaymentService,
    UnsupportedPaymentMethodError,
    ValidationResult,
)
from ..dependencies import get_payment_service

# Create router
router = APIRouter(
    prefix="/payments",
    tags=["Payments"]
)


class FeeRequest(BaseModel):
    """Request model for a fee quote."""
    amount: Decimal = Field(ge=0)
    method: str


@router.get("/methods", response_model=List[PaymentMethodInfo])
async def get_payment_methods(service: PaymentService = Depends(get_payment_service)):
    """List the payment methods offered at checkout."""
    return service.get_available_payment_methods()


@router.post("/fees", response_model=FeeBreakdown)
async def calculate_fees(
    request: FeeRequest,
    service: PaymentService = Depends(get_payment_service)
):
    """Quote platform and payment fees for an item price."""
    try:
        return service.calculate_fees(request.amount, request.method)
    except UnsupportedPaymentMethodError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )


@router.post("/validate", response_model=ValidationResult)
async def validate_payment_method(
    payment_method: Dict[str, Any],
    service: PaymentService = Depends(get_payment_service)
):
    """Check a payment method payload before checkout."""
    return service.validate_payment_method(payment_method)
