"""Database operations for workflow definitions."""

import json
import uuid
from datetime import UTC, datetime

import aiosqlite

from autoflow.db.database import get_db
from autoflow.models.workflow import Step, Workflow


def _generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def _now() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def _row_to_workflow(row: aiosqlite.Row) -> Workflow:
    """Convert a database row to a Workflow model."""
    return Workflow(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        trigger=Step.model_validate_json(row["trigger_json"]),
        actions=[Step.model_validate(a) for a in json.loads(row["actions_json"] or "[]")],
        enabled=bool(row["enabled"]),
        version=row["version"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


class WorkflowStore:
    """Storage for workflows. Definitions are immutable apart from ``enabled``;
    an edit replaces trigger and actions together and bumps ``version``."""

    async def create(
        self,
        user_id: str,
        name: str,
        trigger: Step,
        actions: list[Step],
        description: str | None = None,
        enabled: bool = True,
    ) -> Workflow:
        """Create a new workflow."""
        db = await get_db()
        workflow_id = _generate_id()
        now = _now()

        await db.execute(
            """
            INSERT INTO workflows (
                id, user_id, name, description, trigger_json, actions_json,
                enabled, version, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
            [
                workflow_id,
                user_id,
                name,
                description,
                trigger.model_dump_json(),
                json.dumps([a.model_dump(mode="json") for a in actions]),
                int(enabled),
                now,
                now,
            ],
        )
        await db.commit()

        return await self.get(workflow_id)  # type: ignore

    async def get(self, workflow_id: str) -> Workflow | None:
        """Get a workflow by ID."""
        db = await get_db()

        cursor = await db.execute("SELECT * FROM workflows WHERE id = ?", [workflow_id])
        row = await cursor.fetchone()

        if not row:
            return None

        return _row_to_workflow(row)

    async def list_for_user(self, user_id: str) -> list[Workflow]:
        """List a user's workflows, oldest first."""
        db = await get_db()

        cursor = await db.execute(
            "SELECT * FROM workflows WHERE user_id = ? ORDER BY created_at ASC, rowid ASC",
            [user_id],
        )
        rows = await cursor.fetchall()

        return [_row_to_workflow(row) for row in rows]

    async def list_enabled(self) -> list[Workflow]:
        """List every enabled workflow (used to schedule at startup)."""
        db = await get_db()

        cursor = await db.execute(
            "SELECT * FROM workflows WHERE enabled = 1 ORDER BY created_at ASC, rowid ASC"
        )
        rows = await cursor.fetchall()

        return [_row_to_workflow(row) for row in rows]

    async def replace(
        self,
        workflow_id: str,
        name: str,
        trigger: Step,
        actions: list[Step],
        description: str | None = None,
    ) -> Workflow | None:
        """Store a new version of a workflow's definition."""
        db = await get_db()

        cursor = await db.execute(
            """
            UPDATE workflows
            SET name = ?,
                description = ?,
                trigger_json = ?,
                actions_json = ?,
                version = version + 1,
                updated_at = ?
            WHERE id = ?
            """,
            [
                name,
                description,
                trigger.model_dump_json(),
                json.dumps([a.model_dump(mode="json") for a in actions]),
                _now(),
                workflow_id,
            ],
        )
        await db.commit()

        if cursor.rowcount == 0:
            return None

        return await self.get(workflow_id)

    async def set_enabled(self, workflow_id: str, enabled: bool) -> Workflow | None:
        """Toggle a workflow on or off."""
        db = await get_db()

        cursor = await db.execute(
            "UPDATE workflows SET enabled = ?, updated_at = ? WHERE id = ?",
            [int(enabled), _now(), workflow_id],
        )
        await db.commit()

        if cursor.rowcount == 0:
            return None

        return await self.get(workflow_id)

    async def delete(self, workflow_id: str) -> bool:
        """Delete a workflow."""
        db = await get_db()

        cursor = await db.execute("DELETE FROM workflows WHERE id = ?", [workflow_id])
        await db.commit()

        return cursor.rowcount > 0
