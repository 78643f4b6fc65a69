"""Thin helpers over an asyncpg-compatible connection pool."""
import logging
from typing import Any

from .exceptions import PersistenceError

logger = logging.getLogger("navigator.credentials")


async def run(pool: Any, method: str, sql: str, *args: Any, store: str = "store") -> Any:
    """Acquire a connection and call ``conn.<method>(sql, *args)``.

    Args:
        pool: asyncpg-compatible connection pool.
        method: Connection method (fetch, fetchrow, fetchval, execute).
        sql: Statement with positional ``$n`` placeholders.
        store: Name used in error messages.

    Raises:
        PersistenceError: On any driver or connection failure.
    """
    try:
        async with pool.acquire() as conn:
            return await getattr(conn, method)(sql, *args)
    except PersistenceError:
        raise
    except Exception as err:
        # driver messages may echo bound parameters, only keep the type
        logger.error("%s operation failed: %s", store, type(err).__name__)
        raise PersistenceError(
            f"{store} unavailable ({type(err).__name__})"
        ) from err


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user text matches literally."""
    return (
        value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )
