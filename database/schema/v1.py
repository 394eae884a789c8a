"""Schema v1 - Initial marketplace transaction schema.

This version includes tables for:
- Users (buyer contact metadata only)
- Marketplace listings
- Marketplace transactions
- Transaction timeline events
"""

TRANSACTION_STATUSES = (
    "'pending_payment', 'payment_confirmed', 'processing', 'shipped', "
    "'delivered', 'completed', 'cancelled', 'refunded', 'disputed'"
)

LISTING_STATUSES = (
    "'draft', 'active', 'sold', 'reserved', 'expired', 'removed', 'under_review'"
)

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'users',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'email', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'name', 'type': 'TEXT'},
                {'name': 'cpf', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        },
        {
            'name': 'marketplace_listings',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'seller_id', 'type': 'UUID', 'nullable': False},
                {'name': 'title', 'type': 'TEXT', 'nullable': False},
                {'name': 'price', 'type': 'DECIMAL(10,2)', 'nullable': False},
                {'name': 'currency', 'type': 'VARCHAR(3)', 'default': "'BRL'"},
                {'name': 'shipping_options', 'type': 'JSONB', 'nullable': False, 'default': "'{}'"},
                {'name': 'status', 'type': 'VARCHAR(20)', 'default': "'active'",
                 'check': f'status IN ({LISTING_STATUSES})'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['seller_id'], 'references': 'users(id)', 'on_delete': 'CASCADE'}
            ],
            'indexes': [
                {'name': 'idx_marketplace_listings_seller', 'columns': ['seller_id']},
                {'name': 'idx_marketplace_listings_status', 'columns': ['status']}
            ]
        },
        {
            'name': 'marketplace_transactions',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'listing_id', 'type': 'UUID', 'nullable': False},
                {'name': 'buyer_id', 'type': 'UUID', 'nullable': False},
                {'name': 'seller_id', 'type': 'UUID', 'nullable': False},
                {'name': 'amount', 'type': 'DECIMAL(10,2)', 'nullable': False},
                {'name': 'currency', 'type': 'VARCHAR(3)', 'default': "'BRL'"},
                {'name': 'fees', 'type': 'JSONB', 'nullable': False, 'default': "'{}'"},
                {'name': 'net_amount', 'type': 'DECIMAL(10,2)', 'nullable': False},
                {'name': 'status', 'type': 'VARCHAR(20)', 'default': "'pending_payment'",
                 'check': f'status IN ({TRANSACTION_STATUSES})'},
                {'name': 'payment_method', 'type': 'VARCHAR(50)', 'nullable': False},
                {'name': 'payment_id', 'type': 'VARCHAR(100)'},
                {'name': 'shipping_address', 'type': 'JSONB', 'nullable': False},
                {'name': 'shipping_method', 'type': 'VARCHAR(50)'},
                {'name': 'tracking_number', 'type': 'VARCHAR(100)'},
                {'name': 'estimated_delivery', 'type': 'TIMESTAMPTZ'},
                {'name': 'actual_delivery', 'type': 'TIMESTAMPTZ'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['listing_id'], 'references': 'marketplace_listings(id)'},
                {'columns': ['buyer_id'], 'references': 'users(id)'},
                {'columns': ['seller_id'], 'references': 'users(id)'}
            ],
            'indexes': [
                {'name': 'idx_marketplace_transactions_buyer', 'columns': ['buyer_id']},
                {'name': 'idx_marketplace_transactions_seller', 'columns': ['seller_id']},
                {'name': 'idx_marketplace_transactions_status', 'columns': ['status']}
            ]
        },
        {
            'name': 'transaction_events',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'transaction_id', 'type': 'UUID', 'nullable': False},
                {'name': 'event_type', 'type': 'VARCHAR(50)', 'nullable': False},
                {'name': 'description', 'type': 'TEXT', 'nullable': False},
                {'name': 'metadata', 'type': 'JSONB', 'default': "'{}'"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['transaction_id'], 'references': 'marketplace_transactions(id)',
                 'on_delete': 'CASCADE'}
            ],
            'indexes': [
                {'name': 'idx_transaction_events_transaction', 'columns': ['transaction_id', 'created_at']}
            ]
        }
    ]
}
