"""Dedup ledger: the durable record of trigger events already delivered."""

from datetime import UTC, datetime

from autoflow.db.database import get_db
from autoflow.models.event import ProcessedEvent


class DedupLedger:
    """Append-only set of (user, service, external event id) keys.

    A record's presence is the only source of truth for "already delivered".
    Claiming is a single conditional insert against the UNIQUE key, so two
    pollers racing on the same event can never both win.
    """

    async def claim(
        self,
        user_id: str,
        service_name: str,
        external_event_id: str,
        scope: str | None = None,
    ) -> bool:
        """Atomically record an event as delivered.

        Returns:
            True if this call inserted the record, False if it already existed
        """
        db = await get_db()

        cursor = await db.execute(
            """
            INSERT INTO processed_events (user_id, service_name, external_event_id, scope, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id, service_name, external_event_id) DO NOTHING
            """,
            [user_id, service_name, external_event_id, scope, datetime.now(UTC).isoformat()],
        )
        await db.commit()

        return cursor.rowcount == 1

    async def is_processed(self, user_id: str, service_name: str, external_event_id: str) -> bool:
        """Check for a record. For inspection only; never use it to decide a claim."""
        db = await get_db()

        cursor = await db.execute(
            """
            SELECT 1 FROM processed_events
            WHERE user_id = ? AND service_name = ? AND external_event_id = ?
            """,
            [user_id, service_name, external_event_id],
        )
        return await cursor.fetchone() is not None

    async def list_recent(
        self, user_id: str, service_name: str, limit: int = 50
    ) -> list[ProcessedEvent]:
        """List the most recently recorded events for (user, service)."""
        db = await get_db()

        cursor = await db.execute(
            """
            SELECT * FROM processed_events
            WHERE user_id = ? AND service_name = ?
            ORDER BY recorded_at DESC, id DESC
            LIMIT ?
            """,
            [user_id, service_name, limit],
        )
        rows = await cursor.fetchall()

        return [
            ProcessedEvent(
                user_id=row["user_id"],
                service_name=row["service_name"],
                external_event_id=row["external_event_id"],
                scope=row["scope"],
                recorded_at=datetime.fromisoformat(row["recorded_at"]),
            )
            for row in rows
        ]

    async def count(self, user_id: str, service_name: str) -> int:
        """Count recorded events for (user, service)."""
        db = await get_db()

        cursor = await db.execute(
            "SELECT COUNT(*) FROM processed_events WHERE user_id = ? AND service_name = ?",
            [user_id, service_name],
        )
        row = await cursor.fetchone()
        return row[0] if row else 0
