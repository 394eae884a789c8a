"""Listings module for marketplace listing availability.

This module provides functionality for:
- Looking up listings with their price and domestic shipping cost
- Reserving a listing for exactly one in-flight transaction
- Releasing a reservation or marking a listing sold
- Finding reservations whose hold has expired
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from asyncpg.exceptions import PostgresError
from pydantic import BaseModel

from database import get_pool, use_connection
from database.exceptions import DatabaseError

logger = logging.getLogger(__name__)

ListingId = Union[str, uuid.UUID]


class ListingStatus(str, Enum):
    DRAFT = 'draft'
    ACTIVE = 'active'
    RESERVED = 'reserved'
    SOLD = 'sold'
    EXPIRED = 'expired'
    REMOVED = 'removed'
    UNDER_REVIEW = 'under_review'


class Listing(BaseModel):
    """The slice of a listing a transaction needs."""
    id: uuid.UUID
    seller_id: uuid.UUID
    title: str = ''
    price: Decimal
    currency: str = 'BRL'
    shipping_cost: Decimal = Decimal('0')
    status: ListingStatus
    reserved_by: Optional[uuid.UUID] = None
    reserved_until: Optional[datetime] = None


def domestic_shipping_cost(shipping_options: Optional[Dict[str, Any]]) -> Decimal:
    """Get the domestic shipping cost from a listing's shipping options.

    Listings without a domestic option ship for free.
    """
    domestic = (shipping_options or {}).get('domestic') or {}
    cost = domestic.get('cost')
    if cost is None:
        return Decimal('0')
    return Decimal(str(cost))


def row_to_listing(row) -> Listing:
    """Convert a marketplace_listings row into a Listing."""
    return Listing(
        id=row['id'],
        seller_id=row['seller_id'],
        title=row['title'],
        price=row['price'],
        currency=row['currency'] or 'BRL',
        shipping_cost=domestic_shipping_cost(row['shipping_options']),
        status=row['status'],
        reserved_by=row['reserved_by'],
        reserved_until=row['reserved_until']
    )


class ListingManager:
    """Manager class for listing availability.

    Every write accepts an optional ``conn`` so it can join a database
    transaction the caller has already opened.
    """

    def __init__(self, pool=None):
        """Initialize the listing manager.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
        """
        self.pool = pool

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def get_listing(self, listing_id: ListingId, conn=None) -> Optional[Listing]:
        """Get a listing by ID, or None if it doesn't exist."""
        await self.ensure_pool()
        try:
            async with use_connection(self.pool, conn) as conn:
                row = await conn.fetchrow(
                    'SELECT * FROM marketplace_listings WHERE id = $1',
                    listing_id
                )
        except PostgresError as e:
            logger.error(f"Database error loading listing {listing_id}: {e}")
            raise DatabaseError(f"Failed to load listing: {e}")

        return row_to_listing(row) if row else None

    async def update_status(
        self,
        listing_id: ListingId,
        status: Union[ListingStatus, str],
        conn=None
    ) -> bool:
        """Set a listing's status unconditionally.

        Any reservation hold is cleared unless the new status is ``reserved``.

        Returns:
            True if the listing exists and was updated
        """
        await self.ensure_pool()
        status = ListingStatus(status)
        async with use_connection(self.pool, conn) as conn:
            result = await conn.execute(
                '''
                UPDATE marketplace_listings
                SET
                    status = $2,
                    reserved_by = CASE WHEN $2 = 'reserved' THEN reserved_by END,
                    reserved_until = CASE WHEN $2 = 'reserved' THEN reserved_until END,
                    updated_at = now()
                WHERE id = $1
                ''',
                listing_id, status.value
            )
        return _affected(result) > 0

    async def reserve_listing(
        self,
        listing_id: ListingId,
        transaction_id: uuid.UUID,
        reserved_until: Optional[datetime] = None,
        conn=None
    ) -> bool:
        """Reserve an active listing for a transaction.

        The status check and the write are a single statement, so of two
        concurrent buyers only one can win.

        Args:
            listing_id: Listing to reserve
            transaction_id: Transaction that will hold the reservation
            reserved_until: When an unpaid hold lapses, None for no expiry
            conn: Optional connection of an open database transaction

        Returns:
            True if this call reserved the listing, False if it wasn't active
        """
        await self.ensure_pool()
        async with use_connection(self.pool, conn) as conn:
            row = await conn.fetchrow(
                '''
                UPDATE marketplace_listings
                SET
                    status = 'reserved',
                    reserved_by = $2,
                    reserved_until = $3,
                    updated_at = now()
                WHERE id = $1 AND status = 'active'
                RETURNING id
                ''',
                listing_id, transaction_id, reserved_until
            )

        if row is None:
            logger.info(f"Listing {listing_id} could not be reserved for {transaction_id}")
            return False
        logger.debug(f"Reserved listing {listing_id} for transaction {transaction_id}")
        return True

    async def confirm_reservation(
        self,
        listing_id: ListingId,
        transaction_id: uuid.UUID,
        conn=None
    ) -> bool:
        """Drop the expiry of a reservation once its transaction is paid."""
        await self.ensure_pool()
        async with use_connection(self.pool, conn) as conn:
            result = await conn.execute(
                '''
                UPDATE marketplace_listings
                SET reserved_until = NULL, updated_at = now()
                WHERE id = $1 AND status = 'reserved' AND reserved_by = $2
                ''',
                listing_id, transaction_id
            )
        return _affected(result) > 0

    async def release_listing(
        self,
        listing_id: ListingId,
        transaction_id: uuid.UUID,
        conn=None
    ) -> bool:
        """Return a listing to ``active`` if the given transaction holds it.

        Returns:
            True if the reservation was released, False if the transaction
            didn't hold one
        """
        await self.ensure_pool()
        async with use_connection(self.pool, conn) as conn:
            result = await conn.execute(
                '''
                UPDATE marketplace_listings
                SET
                    status = 'active',
                    reserved_by = NULL,
                    reserved_until = NULL,
                    updated_at = now()
                WHERE id = $1 AND status = 'reserved' AND reserved_by = $2
                ''',
                listing_id, transaction_id
            )

        released = _affected(result) > 0
        if released:
            logger.info(f"Released listing {listing_id} from transaction {transaction_id}")
        return released

    async def mark_sold(self, listing_id: ListingId, conn=None) -> bool:
        """Mark a listing sold and clear its reservation."""
        sold = await self.update_status(listing_id, ListingStatus.SOLD, conn=conn)
        if sold:
            logger.info(f"Listing {listing_id} sold")
        return sold

    async def find_expired_reservations(
        self,
        now: datetime,
        limit: int = 100,
        conn=None
    ) -> List[Listing]:
        """Get reserved listings whose hold lapsed before ``now``."""
        await self.ensure_pool()
        async with use_connection(self.pool, conn) as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM marketplace_listings
                WHERE status = 'reserved'
                    AND reserved_until IS NOT NULL
                    AND reserved_until < $1
                ORDER BY reserved_until
                LIMIT $2
                ''',
                now, limit
            )
        return [row_to_listing(row) for row in rows]


def _affected(command_status: str) -> int:
    """Row count from an asyncpg command status such as ``UPDATE 1``."""
    try:
        return int(command_status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


__all__ = [
    'ListingManager',
    'Listing',
    'ListingStatus',
    'domestic_shipping_cost',
]
