"""Persistence for bulk actions: action records, entity work items, contacts.

Each store is described by a ``Protocol`` and implemented on asyncpg via
``db_service``. Errors from the database propagate to the caller; the
processor relies on that to fail the run and hand it back to the queue.
"""
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from shared.database import DatabaseService, db_service
from web.backend.core.bulk.constants import BulkActionStatus, EntityStatus, Outcome
from web.backend.core.bulk.models import ActionStats, BulkAction, BulkActionEntity

logger = logging.getLogger(__name__)

# Columns of ``contacts`` that handlers may write
CONTACT_COLUMNS = frozenset({"name", "email", "age", "status"})


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _rows_affected(result: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 3``."""
    try:
        return int(result.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


# ── Protocols ────────────────────────────────────────────────

class ActionStore(Protocol):
    async def create(
        self,
        action_type: str,
        config: Dict[str, Any],
        scheduled_for: Optional[datetime],
        account_id: str,
    ) -> BulkAction: ...

    async def get(self, action_id: str) -> Optional[BulkAction]: ...

    async def list(
        self,
        status: Optional[BulkActionStatus] = None,
        account_id: Optional[str] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Tuple[List[BulkAction], int]: ...

    async def set_total(self, action_id: str, total: int) -> None: ...

    async def set_status(self, action_id: str, status: BulkActionStatus) -> Optional[BulkAction]: ...

    async def update_stats(self, action_id: str, stats: ActionStats) -> Optional[BulkAction]: ...

    async def mark_queued_if_pending(self, action_id: str) -> bool: ...

    async def claim_due_actions(self, now: datetime, limit: int = 100) -> List[BulkAction]: ...

    async def release_claim(self, action_id: str) -> bool: ...

    async def status_summary(self, account_id: Optional[str] = None) -> Dict[str, int]: ...

    async def record_completion(self, action_id: str, summary: Dict[str, int]) -> None: ...


class EntityStore(Protocol):
    async def create_entities(self, action_id: str, entities: Sequence[Dict[str, Any]]) -> int: ...

    async def get_entities_for_processing(self, action_id: str, batch_size: int) -> List[BulkActionEntity]: ...

    async def complete_entity(self, entity: BulkActionEntity, outcome: Outcome, message: str) -> bool: ...

    async def get_entities_stats(self, action_id: str) -> Dict[str, int]: ...

    async def list_entities(
        self,
        action_id: str,
        status: Optional[EntityStatus] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Tuple[List[BulkActionEntity], int]: ...


class ContactStore(Protocol):
    async def update_by_email(self, email: str, fields: Dict[str, Any]) -> bool: ...

    async def insert_many(self, contacts: Sequence[Dict[str, Any]]) -> int: ...


# ── Action records ───────────────────────────────────────────

class PostgresActionStore:
    def __init__(self, db: DatabaseService = db_service):
        self._db = db

    async def create(self, action_type, config, scheduled_for, account_id) -> BulkAction:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO bulk_actions (action_type, status, config, scheduled_for, account_id)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                action_type, BulkActionStatus.PENDING.value, config, scheduled_for, account_id,
            )
        return BulkAction.from_row(row)

    async def get(self, action_id: str) -> Optional[BulkAction]:
        if not _is_uuid(action_id):
            return None
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM bulk_actions WHERE id = $1", uuid.UUID(action_id),
            )
        return BulkAction.from_row(row) if row else None

    async def list(self, status=None, account_id=None, page=1, per_page=50):
        where_parts = []
        params: list = []
        idx = 1

        if status is not None:
            where_parts.append(f"status = ${idx}")
            params.append(BulkActionStatus(status).value)
            idx += 1
        if account_id is not None:
            where_parts.append(f"account_id = ${idx}")
            params.append(account_id)
            idx += 1

        where_clause = (" WHERE " + " AND ".join(where_parts)) if where_parts else ""
        offset = (page - 1) * per_page

        async with self._db.acquire() as conn:
            total = await conn.fetchval(
                f"SELECT COUNT(*) FROM bulk_actions{where_clause}", *params,
            )
            rows = await conn.fetch(
                f"SELECT * FROM bulk_actions{where_clause} "
                f"ORDER BY created_at DESC LIMIT ${idx} OFFSET ${idx + 1}",
                *params, per_page, offset,
            )
        return [BulkAction.from_row(r) for r in rows], total or 0

    async def set_total(self, action_id: str, total: int) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                "UPDATE bulk_actions SET stats_total = $2, updated_at = NOW() WHERE id = $1",
                uuid.UUID(action_id), total,
            )

    async def set_status(self, action_id: str, status: BulkActionStatus) -> Optional[BulkAction]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE bulk_actions SET status = $2, updated_at = NOW() WHERE id = $1 RETURNING *",
                uuid.UUID(action_id), BulkActionStatus(status).value,
            )
        return BulkAction.from_row(row) if row else None

    async def update_stats(self, action_id: str, stats: ActionStats) -> Optional[BulkAction]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE bulk_actions
                SET stats_success = $2, stats_failed = $3, stats_skipped = $4, updated_at = NOW()
                WHERE id = $1
                RETURNING *
                """,
                uuid.UUID(action_id), stats.success, stats.failed, stats.skipped,
            )
        return BulkAction.from_row(row) if row else None

    async def mark_queued_if_pending(self, action_id: str) -> bool:
        async with self._db.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE bulk_actions SET status = 'queued', updated_at = NOW()
                WHERE id = $1 AND status = 'pending'
                """,
                uuid.UUID(action_id),
            )
        return _rows_affected(result) == 1

    async def claim_due_actions(self, now: datetime, limit: int = 100) -> List[BulkAction]:
        """Flip due pending actions to queued and return them.

        Rows locked by a concurrent claimer are skipped, so two ticks never
        return the same action.
        """
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE bulk_actions SET status = 'queued', updated_at = NOW()
                WHERE id IN (
                    SELECT id FROM bulk_actions
                    WHERE status = 'pending'
                      AND scheduled_for IS NOT NULL
                      AND scheduled_for <= $1
                    ORDER BY scheduled_for
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                now, limit,
            )
        return [BulkAction.from_row(r) for r in rows]

    async def release_claim(self, action_id: str) -> bool:
        """Return a queued action to pending after a failed enqueue.

        The action becomes due immediately so the scheduler retries it.
        """
        async with self._db.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE bulk_actions
                SET status = 'pending', scheduled_for = COALESCE(scheduled_for, NOW()), updated_at = NOW()
                WHERE id = $1 AND status = 'queued'
                """,
                uuid.UUID(action_id),
            )
        return _rows_affected(result) == 1

    async def status_summary(self, account_id: Optional[str] = None) -> Dict[str, int]:
        summary = {s.value: 0 for s in BulkActionStatus}
        async with self._db.acquire() as conn:
            if account_id is None:
                rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS count FROM bulk_actions GROUP BY status",
                )
            else:
                rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS count FROM bulk_actions "
                    "WHERE account_id = $1 GROUP BY status",
                    account_id,
                )
        for row in rows:
            summary[row["status"]] = row["count"]
        return summary

    async def record_completion(self, action_id: str, summary: Dict[str, int]) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO bulk_action_completions
                    (bulk_action_id, success_count, failed_count, skipped_count, total_count)
                VALUES ($1, $2, $3, $4, $5)
                """,
                uuid.UUID(action_id),
                summary["successCount"], summary["failedCount"],
                summary["skippedCount"], summary["totalCount"],
            )


# ── Entity work items ────────────────────────────────────────

class PostgresEntityStore:
    def __init__(self, db: DatabaseService = db_service):
        self._db = db

    async def create_entities(self, action_id: str, entities: Sequence[Dict[str, Any]]) -> int:
        """Insert ``{entity_id, entity_data}`` items; return how many were stored.

        Ids already present for the action are dropped without aborting the rest.
        """
        if not entities:
            return 0
        entity_ids = [str(e["entity_id"]) for e in entities]
        payloads = [json.dumps(e.get("entity_data") or {}, default=str) for e in entities]
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                """
                INSERT INTO bulk_action_entities (bulk_action_id, entity_id, entity_data)
                SELECT $1, t.entity_id, t.entity_data::jsonb
                FROM unnest($2::text[], $3::text[]) AS t(entity_id, entity_data)
                ON CONFLICT (bulk_action_id, entity_id) DO NOTHING
                RETURNING id
                """,
                uuid.UUID(action_id), entity_ids, payloads,
            )
        stored = len(rows)
        if stored < len(entities):
            logger.warning(
                "Action %s: %d of %d entities dropped as duplicates",
                action_id, len(entities) - stored, len(entities),
            )
        return stored

    async def get_entities_for_processing(self, action_id: str, batch_size: int) -> List[BulkActionEntity]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM bulk_action_entities
                WHERE bulk_action_id = $1 AND status = 'pending'
                ORDER BY id
                LIMIT $2
                """,
                uuid.UUID(action_id), batch_size,
            )
        return [BulkActionEntity.from_row(r) for r in rows]

    async def complete_entity(self, entity: BulkActionEntity, outcome: Outcome, message: str) -> bool:
        """Move a pending entity to its terminal status and append the audit row.

        Both writes share one transaction. Returns False when the entity had
        already left ``pending`` (another delivery got there first).
        """
        async with self._db.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE bulk_action_entities
                    SET status = $2, error_message = $3, updated_at = NOW()
                    WHERE id = $1 AND status = 'pending'
                    """,
                    entity.id,
                    outcome.entity_status.value,
                    message if outcome is not Outcome.SUCCESS else None,
                )
                if _rows_affected(result) != 1:
                    return False
                await conn.execute(
                    """
                    INSERT INTO bulk_action_logs (bulk_action_id, entity_id, log_type, message)
                    VALUES ($1, $2, $3, $4)
                    """,
                    uuid.UUID(entity.bulk_action_id), entity.entity_id, outcome.value, message,
                )
        return True

    async def get_entities_stats(self, action_id: str) -> Dict[str, int]:
        stats = {"total": 0, **{s.value: 0 for s in EntityStatus}}
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT status, COUNT(*) AS count FROM bulk_action_entities
                WHERE bulk_action_id = $1
                GROUP BY status
                """,
                uuid.UUID(action_id),
            )
        for row in rows:
            stats[row["status"]] = row["count"]
            stats["total"] += row["count"]
        return stats

    async def list_entities(self, action_id, status=None, page=1, per_page=50):
        params: list = [uuid.UUID(action_id)]
        where_clause = " WHERE bulk_action_id = $1"
        if status is not None:
            where_clause += " AND status = $2"
            params.append(EntityStatus(status).value)
        idx = len(params) + 1
        offset = (page - 1) * per_page

        async with self._db.acquire() as conn:
            total = await conn.fetchval(
                f"SELECT COUNT(*) FROM bulk_action_entities{where_clause}", *params,
            )
            rows = await conn.fetch(
                f"SELECT * FROM bulk_action_entities{where_clause} "
                f"ORDER BY id LIMIT ${idx} OFFSET ${idx + 1}",
                *params, per_page, offset,
            )
        return [BulkActionEntity.from_row(r) for r in rows], total or 0


# ── Contacts ─────────────────────────────────────────────────

class PostgresContactStore:
    def __init__(self, db: DatabaseService = db_service):
        self._db = db

    async def update_by_email(self, email: str, fields: Dict[str, Any]) -> bool:
        """Patch the contact with ``email``. Returns False when none matched."""
        unknown = set(fields) - CONTACT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown contact field(s): {', '.join(sorted(unknown))}")
        if not fields:
            return True

        columns = sorted(fields)
        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start=2))
        async with self._db.acquire() as conn:
            result = await conn.execute(
                f"UPDATE contacts SET {assignments}, updated_at = NOW() WHERE email = $1",
                email, *(fields[col] for col in columns),
            )
        return _rows_affected(result) > 0

    async def insert_many(self, contacts: Iterable[Dict[str, Any]]) -> int:
        records = [
            (c.get("name") or "", c["email"], c.get("age"), c.get("status"))
            for c in contacts
            if c.get("email")
        ]
        if not records:
            return 0
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                """
                INSERT INTO contacts (name, email, age, status)
                SELECT * FROM unnest($1::text[], $2::text[], $3::int[], $4::text[])
                ON CONFLICT (email) DO NOTHING
                RETURNING id
                """,
                [r[0] for r in records], [r[1] for r in records],
                [r[2] for r in records], [r[3] for r in records],
            )
        return len(rows)
