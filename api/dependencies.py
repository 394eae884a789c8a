"""Shared FastAPI dependencies."""

from typing import Optional
from uuid import UUID

from fastapi import Header, HTTPException, status

from payments import PaymentService
from transactions import TransactionService

_payment_service: Optional[PaymentService] = None
_transaction_service: Optional[TransactionService] = None


def get_payment_service() -> PaymentService:
    """Get the process-wide payment service."""
    global _payment_service
    if _payment_service is None:
        _payment_service = PaymentService()
    return _payment_service


def get_transaction_service() -> TransactionService:
    """Get the process-wide transaction service."""
    global _transaction_service
    if _transaction_service is None:
        _transaction_service = TransactionService(payments=get_payment_service())
    return _transaction_service


async def get_caller_id(x_user_id: Optional[str] = Header(None)) -> UUID:
    """Identify the caller from the X-User-Id header set by the auth gateway."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header"
        )
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-User-Id header"
        )
