"""Database module for managing connections to PostgreSQL.

This module handles:
- Database connection pool initialization
- Schema management
- Connection lifecycle
"""

import json
import logging
import ssl
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any
import backoff
import asyncpg
from urllib.parse import urlparse, parse_qs

from .exceptions import DatabaseError, DatabaseSchemaError
from .lib.schema_manager import SchemaManager

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_schema_manager: Optional[SchemaManager] = None

def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for managed PostgreSQL connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context

def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    parsed = urlparse(db_url)
    params = parse_qs(parsed.query)

    kwargs: Dict[str, Any] = {
        'server_settings': {
            'statement_timeout': '60000',  # 1 minute
        }
    }

    sslmode = params.get('sslmode', ['disable'])[0]
    if sslmode in ('require', 'verify-ca', 'verify-full'):
        kwargs['ssl'] = _get_ssl_context()

    return kwargs

async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSON/JSONB columns into Python objects."""
    for typename in ('json', 'jsonb'):
        await conn.set_type_codec(
            typename,
            encoder=json.dumps,
            decoder=json.loads,
            schema='pg_catalog'
        )

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def init_db(db_url: Optional[str] = None) -> None:
    """Initialize the database connection pool and schema.

    Args:
        db_url: Optional database URL. If not provided, will use settings.

    Raises:
        ValueError: If database URL is not provided
        DatabaseSchemaError: If the schema cannot be applied
    """
    global _pool, _schema_manager

    if _pool:
        return

    try:
        # Import here to avoid circular imports
        from config import settings_conf

        url = db_url or settings_conf.get('db_url')
        if not url:
            raise ValueError("Database URL not provided")

        logger.info("Connecting to %s", urlparse(url).hostname)
        _pool = await asyncpg.create_pool(
            url,
            min_size=2,
            max_size=20,
            max_queries=10000,
            max_inactive_connection_lifetime=300.0,
            command_timeout=60.0,
            init=_init_connection,
            **_get_connection_kwargs(url)
        )

        _schema_manager = SchemaManager(_pool)
        await _schema_manager.initialize()

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        if _pool:
            await _pool.close()
            _pool = None
        raise

async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Returns:
        The connection pool

    Raises:
        RuntimeError: If pool hasn't been initialized
    """
    if not _pool:
        await init_db()
    if not _pool:
        raise RuntimeError("Failed to initialize database pool")
    return _pool

async def close() -> None:
    """Close the database connection pool."""
    global _pool, _schema_manager

    if _pool:
        await _pool.close()
        _pool = None
        _schema_manager = None

@asynccontextmanager
async def use_connection(pool: asyncpg.Pool, conn: Optional[asyncpg.Connection] = None):
    """Yield ``conn`` when the caller already holds one, else a pooled connection.

    Lets a method take part in a caller's database transaction by passing
    the transaction's connection through.
    """
    if conn is not None:
        yield conn
        return
    async with pool.acquire() as pooled:
        yield pooled

# Export public interface
__all__ = [
    'init_db', 'get_pool', 'close', 'use_connection',
    'DatabaseError', 'DatabaseSchemaError'
]
