"""Database operations for per-user service credentials."""

import json
import logging
import uuid
from datetime import UTC, datetime

import aiosqlite

from autoflow.db.database import get_db
from autoflow.db.secrets import TokenCipher
from autoflow.errors import CredentialNotFoundError
from autoflow.models.credential import Credential, TokenGrant

logger = logging.getLogger(__name__)


def _now() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class CredentialStore:
    """Encrypted credential records, unique per (user, service).

    Every write is a single statement, so concurrent workflows sharing a
    credential never observe a half-written record.
    """

    def __init__(self, cipher: TokenCipher) -> None:
        self._cipher = cipher

    def _row_to_credential(self, row: aiosqlite.Row) -> Credential:
        """Convert a database row to a Credential model."""
        refresh = row["encrypted_refresh_token"]
        return Credential(
            user_id=row["user_id"],
            service_name=row["service_name"],
            access_token=self._cipher.decrypt(row["encrypted_access_token"]),
            refresh_token=self._cipher.decrypt(refresh) if refresh else None,
            expires_at=_parse_time(row["expires_at"]),
            extra=json.loads(row["extra_json"] or "{}"),
            created_at=_parse_time(row["created_at"]),
            updated_at=_parse_time(row["updated_at"]),
        )

    async def upsert(self, credential: Credential) -> Credential:
        """Create or replace the credential for (user, service)."""
        db = await get_db()
        now = _now()

        await db.execute(
            """
            INSERT INTO credentials (
                id, user_id, service_name, encrypted_access_token,
                encrypted_refresh_token, expires_at, extra_json, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, service_name) DO UPDATE SET
                encrypted_access_token = excluded.encrypted_access_token,
                encrypted_refresh_token = excluded.encrypted_refresh_token,
                expires_at = excluded.expires_at,
                extra_json = excluded.extra_json,
                updated_at = excluded.updated_at
            """,
            [
                str(uuid.uuid4()),
                credential.user_id,
                credential.service_name,
                self._cipher.encrypt(credential.access_token),
                self._cipher.encrypt(credential.refresh_token) if credential.refresh_token else None,
                credential.expires_at.isoformat() if credential.expires_at else None,
                json.dumps(credential.extra),
                now,
                now,
            ],
        )
        await db.commit()

        stored = await self.get(credential.user_id, credential.service_name)
        if stored is None:
            raise CredentialNotFoundError(credential.user_id, credential.service_name)
        return stored

    async def get(self, user_id: str, service_name: str) -> Credential | None:
        """Get the decrypted credential for (user, service)."""
        db = await get_db()

        cursor = await db.execute(
            "SELECT * FROM credentials WHERE user_id = ? AND service_name = ?",
            [user_id, service_name],
        )
        row = await cursor.fetchone()

        if not row:
            return None

        return self._row_to_credential(row)

    async def list_for_user(self, user_id: str) -> list[Credential]:
        """List all credentials a user has connected."""
        db = await get_db()

        cursor = await db.execute(
            "SELECT * FROM credentials WHERE user_id = ? ORDER BY service_name ASC",
            [user_id],
        )
        rows = await cursor.fetchall()

        return [self._row_to_credential(row) for row in rows]

    async def update_tokens(self, credential: Credential, grant: TokenGrant) -> Credential:
        """Write refreshed tokens back in place.

        Providers that do not rotate refresh tokens omit them from the refresh
        response, in which case the stored refresh token is kept.

        Returns:
            The credential as it now stands
        """
        db = await get_db()

        refresh_token = grant.refresh_token or credential.refresh_token
        extra = {**credential.extra, **grant.extra}

        cursor = await db.execute(
            """
            UPDATE credentials
            SET encrypted_access_token = ?,
                encrypted_refresh_token = ?,
                expires_at = ?,
                extra_json = ?,
                updated_at = ?
            WHERE user_id = ? AND service_name = ?
            """,
            [
                self._cipher.encrypt(grant.access_token),
                self._cipher.encrypt(refresh_token) if refresh_token else None,
                grant.expires_at.isoformat() if grant.expires_at else None,
                json.dumps(extra),
                _now(),
                credential.user_id,
                credential.service_name,
            ],
        )
        await db.commit()

        if cursor.rowcount == 0:
            # Disconnected while the refresh was in flight; don't resurrect it
            logger.warning(
                f"Credential for {credential.service_name} was removed during refresh "
                f"(user {credential.user_id})"
            )

        return credential.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": refresh_token,
                "expires_at": grant.expires_at,
                "extra": extra,
            }
        )

    async def delete(self, user_id: str, service_name: str) -> bool:
        """Remove the credential for (user, service)."""
        db = await get_db()

        cursor = await db.execute(
            "DELETE FROM credentials WHERE user_id = ? AND service_name = ?",
            [user_id, service_name],
        )
        await db.commit()

        return cursor.rowcount > 0
