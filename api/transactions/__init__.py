"""Transactions API endpoints."""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from payments import PaymentError
from payments.models import PaymentMethod
from transactions import (
    CreateTransactionRequest,
    CreateTransactionResult,
    ListingNotFoundError,
    NotTransactionBuyerError,
    Transaction,
    TransactionError,
    TransactionNotFoundError,
    TransactionService,
    TransactionStats,
    TransactionStatus,
    TransactionUpdate,
)
from transactions.models import ShippingAddress
from ..dependencies import get_caller_id, get_transaction_service

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/transactions",
    tags=["Transactions"]
)


class CreateTransactionBody(BaseModel):
    """Request model for starting a purchase. The caller is the buyer."""
    listing_id: UUID
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    shipping_method: str = 'standard'
    notes: Optional[str] = None


class PaymentBody(BaseModel):
    """Request model for paying a transaction."""
    details: Dict[str, Any] = Field(default_factory=dict)


class CancelBody(BaseModel):
    """Request model for cancelling a transaction."""
    reason: str


def _http_error(e: Exception) -> HTTPException:
    """Map a service error to an HTTP error."""
    if isinstance(e, (TransactionNotFoundError, ListingNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, NotTransactionBuyerError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, TransactionError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, PaymentError):
        logger.error(f"Payment provider error: {e}")
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    logger.exception("Unhandled error in transactions API")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


async def _load_for_party(
    service: TransactionService,
    transaction_id: UUID,
    caller_id: UUID
) -> Transaction:
    transaction = await service.get_transaction(transaction_id)
    if transaction is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    if caller_id not in (transaction.buyer_id, transaction.seller_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return transaction


@router.post("", response_model=CreateTransactionResult, status_code=status.HTTP_201_CREATED)
async def create_transaction(
    body: CreateTransactionBody,
    caller_id: UUID = Depends(get_caller_id),
    service: TransactionService = Depends(get_transaction_service)
):
    """Start a purchase of a listing."""
    try:
        return await service.create_transaction(
            CreateTransactionRequest(
                listing_id=body.listing_id,
                buyer_id=caller_id,
                shipping_address=body.shipping_address,
                payment_method=body.payment_method,
                shipping_method=body.shipping_method,
                notes=body.notes
            )
        )
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e)


@router.get("", response_model=List[Transaction])
async def list_transactions(
    role: str = Query('all', pattern='^(all|buyer|seller)$'),
    status_filter: Optional[TransactionStatus] = Query(None, alias='status'),
    caller_id: UUID = Depends(get_caller_id),
    service: TransactionService = Depends(get_transaction_service)
):
    """List the caller's purchases and sales, newest first."""
    try:
        return await service.get_user_transactions(caller_id, role=role, status=status_filter)
    except Exception as e:
        raise _http_error(e)


# Stats before /{transaction_id} so "stats" isn't parsed as an ID
@router.get("/stats", response_model=TransactionStats)
async def get_stats(
    seller_id: Optional[UUID] = None,
    service: TransactionService = Depends(get_transaction_service)
):
    """Get transaction totals, optionally for one seller."""
    try:
        return await service.get_transaction_stats(seller_id)
    except Exception as e:
        raise _http_error(e)


@router.get("/{transaction_id}", response_model=Transaction)
async def get_transaction(
    transaction_id: UUID,
    caller_id: UUID = Depends(get_caller_id),
    service: TransactionService = Depends(get_transaction_service)
):
    """Get a transaction with its timeline. Buyer and seller only."""
    try:
        return await _load_for_party(service, transaction_id, caller_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e)


@router.post("/{transaction_id}/payment")
async def process_payment(
    transaction_id: UUID,
    body: PaymentBody,
    caller_id: UUID = Depends(get_caller_id),
    service: TransactionService = Depends(get_transaction_service)
):
    """Pay for a transaction. A declined payment answers 402."""
    try:
        transaction = await _load_for_party(service, transaction_id, caller_id)
        if transaction.buyer_id != caller_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only the buyer can pay for the transaction"
            )
        outcome = await service.process_payment(transaction_id, body.details)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e)

    if not outcome.success:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=outcome.error_message
        )
    return outcome


@router.patch("/{transaction_id}", response_model=Transaction)
async def update_transaction(
    transaction_id: UUID,
    updates: TransactionUpdate,
    caller_id: UUID = Depends(get_caller_id),
    service: TransactionService = Depends(get_transaction_service)
):
    """Update shipping details or mark a transaction shipped. Seller only."""
    try:
        transaction = await _load_for_party(service, transaction_id, caller_id)
        if transaction.seller_id != caller_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only the seller can update the transaction"
            )
        return await service.update_transaction(transaction_id, updates)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e)


@router.post("/{transaction_id}/confirm-delivery", response_model=Transaction)
async def confirm_delivery(
    transaction_id: UUID,
    caller_id: UUID = Depends(get_caller_id),
    service: TransactionService = Depends(get_transaction_service)
):
    """Confirm receipt of the item and release funds to the seller."""
    try:
        return await service.confirm_delivery(transaction_id, caller_id)
    except Exception as e:
        raise _http_error(e)


@router.post("/{transaction_id}/cancel", response_model=Transaction)
async def cancel_transaction(
    transaction_id: UUID,
    body: CancelBody,
    caller_id: UUID = Depends(get_caller_id),
    service: TransactionService = Depends(get_transaction_service)
):
    """Cancel a transaction before it ships, refunding any payment."""
    try:
        await _load_for_party(service, transaction_id, caller_id)
        return await service.cancel_transaction(transaction_id, body.reason)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e)
