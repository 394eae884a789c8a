"""PostgreSQL persistence for marketplace transactions."""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from uuid import UUID

from asyncpg.exceptions import PostgresError

from database import get_pool, use_connection
from database.exceptions import DatabaseError
from payments.models import RefundResult
from .models import Transaction, TransactionEvent, TransactionStatus

logger = logging.getLogger(__name__)

# Columns update_transaction may write
UPDATABLE_COLUMNS = {
    'status',
    'payment_id',
    'tracking_number',
    'estimated_delivery',
    'actual_delivery',
    'shipping_method',
    'notes'
}

INSERT_COLUMNS = (
    'id',
    'listing_id',
    'buyer_id',
    'seller_id',
    'amount',
    'currency',
    'fees',
    'net_amount',
    'status',
    'payment_method',
    'shipping_address',
    'shipping_method',
    'notes'
)


def _db_value(value: Any) -> Any:
    """Unwrap enums so asyncpg sees plain values."""
    return getattr(value, 'value', value)


def row_to_transaction(row, events: Optional[List[TransactionEvent]] = None) -> Transaction:
    """Convert a marketplace_transactions row into a Transaction."""
    data = dict(row)
    data['fees'] = data.get('fees') or {}
    data['timeline'] = events or []
    return Transaction(**data)


def row_to_event(row) -> TransactionEvent:
    return TransactionEvent(
        type=row['event_type'],
        description=row['description'],
        timestamp=row['created_at'],
        metadata=row['metadata'] or {}
    )


class TransactionRepository:
    """Reads and writes transactions, their events and refund records.

    Each method takes an optional ``conn``; pass the connection yielded by
    ``transaction()`` to group several writes into one database transaction.
    """

    def __init__(self, pool=None) -> None:
        """Initialize the repository.

        Args:
            pool: Optional database connection pool. If not provided, will get from database module.
        """
        self.pool = pool

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    @asynccontextmanager
    async def transaction(self):
        """Open a database transaction and yield its connection.

        Everything written through the yielded connection commits together,
        or not at all if the block raises.
        """
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def insert_transaction(self, record: Dict[str, Any], conn=None) -> Transaction:
        """Insert a new transaction row.

        Args:
            record: Column values keyed by the names in INSERT_COLUMNS
            conn: Optional connection of an open database transaction

        Returns:
            The stored transaction
        """
        await self.ensure_pool()
        values = [_db_value(record.get(column)) for column in INSERT_COLUMNS]
        placeholders = ', '.join(f"${i}" for i in range(1, len(INSERT_COLUMNS) + 1))

        try:
            async with use_connection(self.pool, conn) as conn:
                row = await conn.fetchrow(
                    f'''
                    INSERT INTO marketplace_transactions ({', '.join(INSERT_COLUMNS)})
                    VALUES ({placeholders})
                    RETURNING *
                    ''',
                    *values
                )
        except PostgresError as e:
            logger.error(f"Database error creating transaction: {e}")
            raise DatabaseError(f"Failed to create transaction: {e}")

        return row_to_transaction(row)

    async def get_transaction(self, transaction_id: UUID, conn=None) -> Optional[Transaction]:
        """Get a transaction with its timeline, or None if not found."""
        await self.ensure_pool()
        async with use_connection(self.pool, conn) as conn:
            row = await conn.fetchrow(
                'SELECT * FROM marketplace_transactions WHERE id = $1',
                transaction_id
            )
            if not row:
                return None
            events = await self.get_events(transaction_id, conn=conn)

        return row_to_transaction(row, events)

    async def update_transaction(
        self,
        transaction_id: UUID,
        fields: Dict[str, Any],
        expected_status: Optional[List[TransactionStatus]] = None,
        conn=None
    ) -> Optional[Transaction]:
        """Update columns of a transaction.

        Args:
            transaction_id: Transaction to update
            fields: Column values to write, keys from UPDATABLE_COLUMNS
            expected_status: Only update while the row has one of these statuses
            conn: Optional connection of an open database transaction

        Returns:
            The updated transaction (without timeline), or None if it doesn't
            exist or its status didn't match
        """
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update transaction columns: {', '.join(sorted(unknown))}")

        await self.ensure_pool()

        params: List[Any] = [transaction_id]
        assignments = []
        param_idx = 2
        for column, value in fields.items():
            assignments.append(f"{column} = ${param_idx}")
            params.append(_db_value(value))
            param_idx += 1
        assignments.append('updated_at = now()')

        query = f"UPDATE marketplace_transactions SET {', '.join(assignments)} WHERE id = $1"
        if expected_status:
            query += f" AND status = ANY(${param_idx}::text[])"
            params.append([_db_value(status) for status in expected_status])
        query += ' RETURNING *'

        logger.debug("Executing transaction update: %s with params: %r", query, params)
        async with use_connection(self.pool, conn) as conn:
            row = await conn.fetchrow(query, *params)

        return row_to_transaction(row) if row else None

    async def add_event(self, transaction_id: UUID, event: TransactionEvent, conn=None) -> None:
        """Append an event to a transaction's timeline."""
        await self.ensure_pool()
        async with use_connection(self.pool, conn) as conn:
            await conn.execute(
                '''
                INSERT INTO transaction_events (
                    transaction_id, event_type, description, metadata, created_at
                ) VALUES ($1, $2, $3, $4, $5)
                ''',
                transaction_id,
                event.type.value,
                event.description,
                event.metadata,
                event.timestamp
            )

    async def get_events(self, transaction_id: UUID, conn=None) -> List[TransactionEvent]:
        """Get a transaction's events, oldest first."""
        await self.ensure_pool()
        async with use_connection(self.pool, conn) as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM transaction_events
                WHERE transaction_id = $1
                ORDER BY created_at, id
                ''',
                transaction_id
            )
        return [row_to_event(row) for row in rows]

    async def record_refund(
        self,
        transaction_id: UUID,
        refund: RefundResult,
        provider: str,
        conn=None
    ) -> bool:
        """Store the refund of a transaction.

        Returns:
            True if recorded, False if the transaction already had one
        """
        await self.ensure_pool()
        async with use_connection(self.pool, conn) as conn:
            row = await conn.fetchrow(
                '''
                INSERT INTO transaction_refunds (
                    transaction_id, refund_id, amount, status, provider
                ) VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (transaction_id) DO NOTHING
                RETURNING transaction_id
                ''',
                transaction_id,
                refund.refund_id,
                refund.amount,
                refund.status.value,
                provider
            )
        return row is not None

    async def get_refund(self, transaction_id: UUID, conn=None) -> Optional[Dict[str, Any]]:
        """Get the refund recorded for a transaction, if any."""
        await self.ensure_pool()
        async with use_connection(self.pool, conn) as conn:
            row = await conn.fetchrow(
                'SELECT * FROM transaction_refunds WHERE transaction_id = $1',
                transaction_id
            )
        return dict(row) if row else None

    async def list_transactions(
        self,
        user_id: UUID,
        role: str = 'all',
        status: Optional[TransactionStatus] = None,
        conn=None
    ) -> List[Transaction]:
        """Get a user's transactions, newest first.

        Args:
            user_id: Buyer or seller
            role: 'buyer', 'seller' or 'all'
            status: Optional status to filter by
        """
        if role not in ('all', 'buyer', 'seller'):
            raise ValueError(f"Invalid role: {role}")

        await self.ensure_pool()

        query = 'SELECT * FROM marketplace_transactions WHERE '
        if role == 'buyer':
            query += 'buyer_id = $1'
        elif role == 'seller':
            query += 'seller_id = $1'
        else:
            query += '(buyer_id = $1 OR seller_id = $1)'
        params: List[Any] = [user_id]

        if status:
            query += ' AND status = $2'
            params.append(_db_value(status))
        query += ' ORDER BY created_at DESC'

        async with use_connection(self.pool, conn) as conn:
            rows = await conn.fetch(query, *params)
            results = []
            for row in rows:
                events = await self.get_events(row['id'], conn=conn)
                results.append(row_to_transaction(row, events))
        return results

    async def get_user(self, user_id: UUID, conn=None) -> Optional[Dict[str, Any]]:
        """Get a user's contact data."""
        await self.ensure_pool()
        async with use_connection(self.pool, conn) as conn:
            row = await conn.fetchrow(
                'SELECT id, email, name, cpf FROM users WHERE id = $1',
                user_id
            )
        return dict(row) if row else None

    async def status_counts(self, seller_id: Optional[UUID] = None, conn=None) -> List[Dict[str, Any]]:
        """Count transactions and sum their amounts per status.

        Returns:
            List of dicts with 'status', 'count' and 'total_amount'
        """
        await self.ensure_pool()
        query = '''
            SELECT status, COUNT(*) AS count, COALESCE(SUM(amount), 0) AS total_amount
            FROM marketplace_transactions
        '''
        params: List[Any] = []
        if seller_id:
            query += ' WHERE seller_id = $1'
            params.append(seller_id)
        query += ' GROUP BY status'

        async with use_connection(self.pool, conn) as conn:
            rows = await conn.fetch(query, *params)
        return [dict(row) for row in rows]
