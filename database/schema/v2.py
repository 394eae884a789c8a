"""Schema v2 - Reservation ownership, buyer notes and refund records.

Adds:
- reserved_by / reserved_until on listings so only the holding transaction
  can release a reservation and unpaid PIX reservations can expire
- notes on transactions
- transaction_refunds, one row per refunded transaction
"""
from .v1 import schema as v1_schema

_v1_tables = {table['name']: table for table in v1_schema['tables']}

schema = {
    'version': 2,
    'tables': [
        _v1_tables['users'],
        {
            **_v1_tables['marketplace_listings'],
            'columns': _v1_tables['marketplace_listings']['columns'] + [
                {'name': 'reserved_by', 'type': 'UUID'},
                {'name': 'reserved_until', 'type': 'TIMESTAMPTZ'}
            ],
            'indexes': _v1_tables['marketplace_listings']['indexes'] + [
                {'name': 'idx_marketplace_listings_reserved_until', 'columns': ['reserved_until'],
                 'where': "status = 'reserved'"}
            ]
        },
        {
            **_v1_tables['marketplace_transactions'],
            'columns': _v1_tables['marketplace_transactions']['columns'] + [
                {'name': 'notes', 'type': 'TEXT'}
            ]
        },
        _v1_tables['transaction_events'],
        {
            'name': 'transaction_refunds',
            'columns': [
                {'name': 'transaction_id', 'type': 'UUID', 'primary_key': True},
                {'name': 'refund_id', 'type': 'VARCHAR(100)', 'nullable': False},
                {'name': 'amount', 'type': 'DECIMAL(10,2)', 'nullable': False},
                {'name': 'status', 'type': 'VARCHAR(20)', 'nullable': False},
                {'name': 'provider', 'type': 'VARCHAR(50)', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['transaction_id'], 'references': 'marketplace_transactions(id)'}
            ]
        }
    ],
    'migrations': [
        '''
        ALTER TABLE marketplace_listings
        ADD COLUMN IF NOT EXISTS reserved_by UUID,
        ADD COLUMN IF NOT EXISTS reserved_until TIMESTAMPTZ;
        ''',
        '''
        CREATE INDEX IF NOT EXISTS idx_marketplace_listings_reserved_until
        ON marketplace_listings(reserved_until)
        WHERE status = 'reserved';
        ''',
        '''
        ALTER TABLE marketplace_transactions
        ADD COLUMN IF NOT EXISTS notes TEXT;
        ''',
        '''
        CREATE TABLE IF NOT EXISTS transaction_refunds (
            transaction_id UUID PRIMARY KEY REFERENCES marketplace_transactions(id),
            refund_id VARCHAR(100) NOT NULL,
            amount DECIMAL(10,2) NOT NULL,
            status VARCHAR(20) NOT NULL,
            provider VARCHAR(50) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        '''
    ]
}
