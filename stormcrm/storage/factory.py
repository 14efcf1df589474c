from __future__ import annotations

from stormcrm.config import Settings, StoreBackend
from stormcrm.logging import get_logger
from stormcrm.storage.common import Database
from stormcrm.storage.memory import MemoryDatabase
from stormcrm.storage.postgres import PostgresDatabase

logger = get_logger(__name__)


def create_database(settings: Settings) -> Database:
    """Pick the backend once for the process lifetime.

    ``USE_MEMORY_STORE`` or a missing ``DATABASE_URL`` selects the in-process
    emulator; otherwise a Postgres pool is configured (opened later by the
    application lifespan).
    """

    backend = settings.store_backend
    if backend is StoreBackend.MEMORY:
        if not settings.use_memory_store:
            logger.warning("database_url_missing_using_memory_store")
        db: Database = MemoryDatabase()
    else:
        db = PostgresDatabase(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            timeout=settings.db_connect_timeout_seconds,
            max_idle=settings.db_idle_timeout_seconds,
            ssl_require=settings.db_ssl_require,
        )
    logger.info("database_backend_selected", backend=backend.value)
    return db


__all__ = ["create_database"]
