"""Database connection and schema management."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import asyncpg
import structlog

from routine_engine.config import get_settings
from routine_engine.errors import StoreUnavailableError

logger = structlog.get_logger(__name__)

# Global connection pool
_pool: Optional[asyncpg.Pool] = None

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Returns:
        asyncpg connection pool

    Raises:
        RuntimeError: If pool is not initialized
    """
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_database() first.")
    return _pool


async def init_database() -> asyncpg.Pool:
    """Initialize the database connection pool.

    The pool is sized so that every concurrent user pass can hold one
    connection for a pattern lock and borrow another for its queries.
    """
    global _pool

    if _pool is not None:
        return _pool

    settings = get_settings()
    max_size = max(10, settings.max_concurrent_users * 2 + 2)

    try:
        _pool = await asyncpg.create_pool(
            settings.postgres_url,
            min_size=2,
            max_size=max_size,
            command_timeout=60,
        )
        logger.info("database_pool_created", min_size=2, max_size=max_size)
        return _pool
    except Exception as e:
        logger.error("database_pool_creation_failed", error=str(e))
        raise


async def close_database() -> None:
    """Close the database connection pool."""
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("database_pool_closed")


async def run_migrations() -> None:
    """Run all SQL migrations in order.

    Migrations are idempotent (IF NOT EXISTS) and can be re-run safely.
    """
    pool = await get_pool()

    if not MIGRATIONS_DIR.exists():
        logger.warning("migrations_directory_not_found", path=str(MIGRATIONS_DIR))
        return

    migration_files = sorted(MIGRATIONS_DIR.glob("*.sql"))

    if not migration_files:
        logger.info("no_migrations_found")
        return

    async with pool.acquire() as conn:
        for migration_file in migration_files:
            try:
                await conn.execute(migration_file.read_text())
                logger.info("migration_applied", file=migration_file.name)
            except Exception as e:
                logger.error("migration_failed", file=migration_file.name, error=str(e))
                raise


async def health_check() -> bool:
    """Check database connectivity.

    Returns:
        True if database is healthy, False otherwise
    """
    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
            return result == 1
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return False


@asynccontextmanager
async def store_errors(operation: str) -> AsyncIterator[None]:
    """Translate driver failures and timeouts into StoreUnavailableError."""
    try:
        yield
    except StoreUnavailableError:
        raise
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError, RuntimeError) as e:
        logger.error("store_operation_failed", operation=operation, error=str(e))
        raise StoreUnavailableError(operation, e) from e
