"""Stores the transaction service depends on.

ListingManager and TransactionRepository implement these against
PostgreSQL. ``conn`` is the handle yielded by ``TransactionStore.transaction()``;
passing it makes a write part of that database transaction.
"""
from datetime import datetime
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol
from uuid import UUID

from listings import Listing
from payments.models import RefundResult
from .models import Transaction, TransactionEvent, TransactionStatus


class ListingStore(Protocol):

    async def get_listing(self, listing_id: UUID, conn=None) -> Optional[Listing]: ...

    async def update_status(self, listing_id: UUID, status: str, conn=None) -> bool: ...

    async def reserve_listing(
        self,
        listing_id: UUID,
        transaction_id: UUID,
        reserved_until: Optional[datetime] = None,
        conn=None
    ) -> bool: ...

    async def confirm_reservation(self, listing_id: UUID, transaction_id: UUID, conn=None) -> bool: ...

    async def release_listing(self, listing_id: UUID, transaction_id: UUID, conn=None) -> bool: ...

    async def mark_sold(self, listing_id: UUID, conn=None) -> bool: ...

    async def find_expired_reservations(self, now: datetime, limit: int = 100, conn=None) -> List[Listing]: ...


class TransactionStore(Protocol):

    def transaction(self) -> AsyncContextManager[Any]: ...

    async def insert_transaction(self, record: Dict[str, Any], conn=None) -> Transaction: ...

    async def get_transaction(self, transaction_id: UUID, conn=None) -> Optional[Transaction]: ...

    async def update_transaction(
        self,
        transaction_id: UUID,
        fields: Dict[str, Any],
        expected_status: Optional[List[TransactionStatus]] = None,
        conn=None
    ) -> Optional[Transaction]: ...

    async def add_event(self, transaction_id: UUID, event: TransactionEvent, conn=None) -> None: ...

    async def get_events(self, transaction_id: UUID, conn=None) -> List[TransactionEvent]: ...

    async def record_refund(
        self,
        transaction_id: UUID,
        refund: RefundResult,
        provider: str,
        conn=None
    ) -> bool: ...

    async def get_refund(self, transaction_id: UUID, conn=None) -> Optional[Dict[str, Any]]: ...

    async def list_transactions(
        self,
        user_id: UUID,
        role: str = 'all',
        status: Optional[TransactionStatus] = None,
        conn=None
    ) -> List[Transaction]: ...

    async def get_user(self, user_id: UUID, conn=None) -> Optional[Dict[str, Any]]: ...

    async def status_counts(self, seller_id: Optional[UUID] = None, conn=None) -> List[Dict[str, Any]]: ...
