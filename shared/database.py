"""
Database service for PostgreSQL integration.
Owns the asyncpg connection pool and the schema used by the bulk action
stores and the work queue.
"""
import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from asyncpg import Pool

from shared.config import get_shared_settings as get_settings

logger = logging.getLogger(__name__)


# SQL schema for creating tables
SCHEMA_SQL = """
-- One record per submitted bulk action
CREATE TABLE IF NOT EXISTS bulk_actions (
    id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    action_type     VARCHAR(100) NOT NULL,
    status          VARCHAR(32) NOT NULL DEFAULT 'pending',
    scheduled_for   TIMESTAMPTZ,
    account_id      VARCHAR(255) NOT NULL DEFAULT 'default',
    config          JSONB NOT NULL DEFAULT '{}',
    stats_total     INTEGER NOT NULL DEFAULT 0,
    stats_success   INTEGER NOT NULL DEFAULT 0,
    stats_failed    INTEGER NOT NULL DEFAULT 0,
    stats_skipped   INTEGER NOT NULL DEFAULT 0,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_bulk_actions_status_scheduled ON bulk_actions(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_bulk_actions_account_created ON bulk_actions(account_id, created_at DESC);

-- Per-entity work items
CREATE TABLE IF NOT EXISTS bulk_action_entities (
    id              BIGSERIAL PRIMARY KEY,
    bulk_action_id  UUID NOT NULL REFERENCES bulk_actions(id) ON DELETE CASCADE,
    entity_id       VARCHAR(255) NOT NULL,
    entity_data     JSONB NOT NULL DEFAULT '{}',
    status          VARCHAR(20) NOT NULL DEFAULT 'pending',
    error_message   TEXT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_bulk_action_entities_action_entity
    ON bulk_action_entities(bulk_action_id, entity_id);
CREATE INDEX IF NOT EXISTS idx_bulk_action_entities_action_status
    ON bulk_action_entities(bulk_action_id, status);

-- Per-entity audit trail
CREATE TABLE IF NOT EXISTS bulk_action_logs (
    id              BIGSERIAL PRIMARY KEY,
    bulk_action_id  UUID NOT NULL,
    entity_id       VARCHAR(255) NOT NULL,
    log_type        VARCHAR(20) NOT NULL,
    message         TEXT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_bulk_action_logs_action ON bulk_action_logs(bulk_action_id, created_at);

-- Completion summaries (audit side channel, not part of the action record)
CREATE TABLE IF NOT EXISTS bulk_action_completions (
    id              BIGSERIAL PRIMARY KEY,
    bulk_action_id  UUID NOT NULL,
    success_count   INTEGER NOT NULL,
    failed_count    INTEGER NOT NULL,
    skipped_count   INTEGER NOT NULL,
    total_count     INTEGER NOT NULL,
    completed_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_bulk_action_completions_action ON bulk_action_completions(bulk_action_id);

-- Work queue (process-action jobs)
CREATE TABLE IF NOT EXISTS bulk_action_jobs (
    id              BIGSERIAL PRIMARY KEY,
    queue_name      VARCHAR(100) NOT NULL,
    topic           VARCHAR(100) NOT NULL DEFAULT 'process-action',
    action_id       UUID NOT NULL,
    status          VARCHAR(20) NOT NULL DEFAULT 'waiting',
    attempts_made   INTEGER NOT NULL DEFAULT 0,
    max_attempts    INTEGER NOT NULL DEFAULT 1,
    backoff_ms      INTEGER NOT NULL DEFAULT 0,
    run_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    locked_at       TIMESTAMPTZ,
    last_error      TEXT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    finished_at     TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_bulk_action_jobs_pick ON bulk_action_jobs(queue_name, status, run_at);
CREATE UNIQUE INDEX IF NOT EXISTS ux_bulk_action_jobs_live_action
    ON bulk_action_jobs(action_id) WHERE status IN ('waiting', 'delayed', 'active');

-- Target records of the bulk-update handler
CREATE TABLE IF NOT EXISTS contacts (
    id              BIGSERIAL PRIMARY KEY,
    name            VARCHAR(255) NOT NULL,
    email           VARCHAR(255) NOT NULL UNIQUE,
    age             INTEGER,
    status          VARCHAR(50),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSON/JSONB columns to Python objects."""
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


class DatabaseService:
    """
    Async database service for PostgreSQL operations.
    Hands out pooled connections to the stores and the work queue.
    """

    def __init__(self):
        self._pool: Optional[Pool] = None
        self._initialized: bool = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if database connection is established."""
        return self._pool is not None and not self._pool._closed

    async def connect(self, database_url: str = None, max_retries: int = None, retry_delay: float = 2.0) -> bool:
        """
        Initialize database connection pool with retry logic.
        Returns True if connection successful, False otherwise.

        Args:
            database_url: Optional database URL. If not provided, reads from
                          DATABASE_URL env var or Settings.
            max_retries: Maximum number of connection attempts.
            retry_delay: Initial delay between retries in seconds, doubles each attempt.
        """
        settings = get_settings()

        # Get database URL: parameter > env var > settings (fallback)
        if not database_url:
            database_url = os.environ.get("DATABASE_URL") or settings.database_url
        if not database_url:
            logger.warning("DATABASE_URL not configured, database features disabled")
            return False

        if max_retries is None:
            max_retries = settings.db_connect_retries

        async with self._lock:
            if self._pool is not None:
                return True

            delay = retry_delay
            for attempt in range(1, max_retries + 1):
                try:
                    logger.debug("Connecting to PostgreSQL (attempt %d/%d)...", attempt, max_retries)
                    self._pool = await asyncpg.create_pool(
                        dsn=database_url,
                        min_size=settings.db_pool_min_size,
                        max_size=settings.db_pool_max_size,
                        command_timeout=30,
                        init=_init_connection,
                    )

                    await self._init_schema()
                    self._initialized = True

                    logger.info("Database connection established")
                    return True

                except Exception as e:
                    self._pool = None
                    if attempt < max_retries:
                        logger.warning(
                            "Database connection attempt %d/%d failed: %s. Retrying in %.0fs...",
                            attempt, max_retries, e, delay,
                        )
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, 30)
                    else:
                        logger.error("Failed to connect to database after %d attempts: %s", max_retries, e)
                        return False

        return False

    async def disconnect(self) -> None:
        """Close database connection pool."""
        async with self._lock:
            if self._pool is not None:
                await self._pool.close()
                self._pool = None
                self._initialized = False
                logger.info("Database disconnected")

    async def _init_schema(self) -> None:
        """Initialize database schema (create tables if not exist)."""
        if self._pool is None:
            return

        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
            logger.debug("Database schema initialized")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool."""
        if self._pool is None:
            raise RuntimeError("Database not connected")

        async with self._pool.acquire() as conn:
            yield conn


db_service = DatabaseService()
