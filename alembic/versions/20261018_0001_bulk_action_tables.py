"""Create bulk action, entity, audit, job and contact tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""
from alembic import op

# revision identifiers
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── bulk_actions ──────────────────────────────────────────────
    op.execute("""
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
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_bulk_actions_status_scheduled ON bulk_actions (status, scheduled_for)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_bulk_actions_account_created ON bulk_actions (account_id, created_at DESC)")

    # ── bulk_action_entities ──────────────────────────────────────
    op.execute("""
        CREATE TABLE IF NOT EXISTS bulk_action_entities (
            id              BIGSERIAL PRIMARY KEY,
            bulk_action_id  UUID NOT NULL REFERENCES bulk_actions(id) ON DELETE CASCADE,
            entity_id       VARCHAR(255) NOT NULL,
            entity_data     JSONB NOT NULL DEFAULT '{}',
            status          VARCHAR(20) NOT NULL DEFAULT 'pending',
            error_message   TEXT,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_bulk_action_entities_action_entity "
        "ON bulk_action_entities (bulk_action_id, entity_id)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_bulk_action_entities_action_status "
        "ON bulk_action_entities (bulk_action_id, status)"
    )

    # ── bulk_action_logs / bulk_action_completions ────────────────
    op.execute("""
        CREATE TABLE IF NOT EXISTS bulk_action_logs (
            id              BIGSERIAL PRIMARY KEY,
            bulk_action_id  UUID NOT NULL,
            entity_id       VARCHAR(255) NOT NULL,
            log_type        VARCHAR(20) NOT NULL,
            message         TEXT,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_bulk_action_logs_action ON bulk_action_logs (bulk_action_id, created_at)")
    op.execute("""
        CREATE TABLE IF NOT EXISTS bulk_action_completions (
            id              BIGSERIAL PRIMARY KEY,
            bulk_action_id  UUID NOT NULL,
            success_count   INTEGER NOT NULL,
            failed_count    INTEGER NOT NULL,
            skipped_count   INTEGER NOT NULL,
            total_count     INTEGER NOT NULL,
            completed_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_bulk_action_completions_action "
        "ON bulk_action_completions (bulk_action_id)"
    )

    # ── bulk_action_jobs (work queue) ─────────────────────────────
    op.execute("""
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
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_bulk_action_jobs_pick ON bulk_action_jobs (queue_name, status, run_at)")
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_bulk_action_jobs_live_action "
        "ON bulk_action_jobs (action_id) WHERE status IN ('waiting', 'delayed', 'active')"
    )

    # ── contacts ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE IF NOT EXISTS contacts (
            id              BIGSERIAL PRIMARY KEY,
            name            VARCHAR(255) NOT NULL,
            email           VARCHAR(255) NOT NULL UNIQUE,
            age             INTEGER,
            status          VARCHAR(50),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS contacts")
    op.execute("DROP TABLE IF EXISTS bulk_action_jobs")
    op.execute("DROP TABLE IF EXISTS bulk_action_completions")
    op.execute("DROP TABLE IF EXISTS bulk_action_logs")
    op.execute("DROP TABLE IF EXISTS bulk_action_entities")
    op.execute("DROP TABLE IF EXISTS bulk_actions")
