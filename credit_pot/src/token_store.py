"""Encrypted credential persistence keyed by (user_id, provider).

The store never caches; every call reads or writes DuckDB. It does not
encrypt either: callers hand it SecretBox ciphertext.
"""

import logging
import threading
from collections.abc import Callable

from credit_pot.src.database import CredentialDatabase
from credit_pot.src.models import CredentialRecord
from credit_pot.src.utils import now_ms

logger = logging.getLogger(__name__)

COLUMNS = (
    "id, user_id, provider, access_token, refresh_token, expires_at, scope, "
    "created_at, updated_at, deleted, deleted_at"
)


def _to_record(row: tuple) -> CredentialRecord:
    return CredentialRecord(
        id=row[0],
        user_id=row[1],
        provider=row[2],
        access_token_ciphertext=row[3],
        refresh_token_ciphertext=row[4],
        expires_at=row[5],
        scope=row[6] or "",
        created_at=row[7],
        updated_at=row[8],
        deleted=row[9],
        deleted_at=row[10],
    )


class TokenStore:
    """Get, upsert and soft-delete credential records."""

    def __init__(self, database: CredentialDatabase, clock: Callable[[], int] = now_ms) -> None:
        """Initialize the store and make sure the schema exists."""
        self.database = database
        self.clock = clock
        # Serializes read-then-write sequences so upserts cannot double-insert
        self._write_lock = threading.Lock()
        database.setup()

    def get(self, user_id: str, provider: str) -> CredentialRecord | None:
        """Return the live record for a user and provider, or None."""
        with self.database.connect() as conn:
            row = conn.execute(
                f"""
                SELECT {COLUMNS} FROM credentials
                WHERE user_id = ? AND provider = ? AND NOT deleted
                ORDER BY updated_at DESC
                LIMIT 1
                """,  # noqa: S608
                (user_id, provider),
            ).fetchone()
        return _to_record(row) if row else None

    def get_all(self, user_id: str) -> list[CredentialRecord]:
        """Return every live record for a user, one per provider."""
        with self.database.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {COLUMNS} FROM credentials
                WHERE user_id = ? AND NOT deleted
                ORDER BY provider
                """,  # noqa: S608
                (user_id,),
            ).fetchall()
        return [_to_record(row) for row in rows]

    def list_user_ids(self) -> list[str]:
        """Return distinct users holding at least one live record."""
        with self.database.connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT user_id FROM credentials WHERE NOT deleted ORDER BY user_id"
            ).fetchall()
        return [row[0] for row in rows]

    def upsert(
        self,
        user_id: str,
        provider: str,
        *,
        access_token_ciphertext: str,
        refresh_token_ciphertext: str | None,
        expires_at: int,
        scope: str = "",
    ) -> CredentialRecord:
        """Update the live record in place, or insert one if none exists.

        The original ``created_at`` of an existing record is preserved.
        Only the (user_id, provider) row is touched.
        """
        now = self.clock()
        with self._write_lock:
            existing = self.get(user_id, provider)
            with self.database.connect() as conn:
                if existing:
                    conn.execute(
                        """
                        UPDATE credentials
                        SET access_token = ?, refresh_token = ?, expires_at = ?,
                            scope = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            access_token_ciphertext,
                            refresh_token_ciphertext,
                            expires_at,
                            scope,
                            now,
                            existing.id,
                        ),
                    )
                    record = existing.model_copy(
                        update={
                            "access_token_ciphertext": access_token_ciphertext,
                            "refresh_token_ciphertext": refresh_token_ciphertext,
                            "expires_at": expires_at,
                            "scope": scope,
                            "updated_at": now,
                        }
                    )
                else:
                    record = CredentialRecord(
                        user_id=user_id,
                        provider=provider,
                        access_token_ciphertext=access_token_ciphertext,
                        refresh_token_ciphertext=refresh_token_ciphertext,
                        expires_at=expires_at,
                        scope=scope,
                        created_at=now,
                        updated_at=now,
                    )
                    conn.execute(
                        f"""
                        INSERT INTO credentials ({COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,  # noqa: S608
                        (
                            record.id,
                            record.user_id,
                            record.provider,
                            record.access_token_ciphertext,
                            record.refresh_token_ciphertext,
                            record.expires_at,
                            record.scope,
                            record.created_at,
                            record.updated_at,
                            record.deleted,
                            record.deleted_at,
                        ),
                    )
        logger.debug(f"Stored {provider} credential for user {user_id}")
        return record

    def soft_delete(self, user_id: str, provider: str) -> bool:
        """Mark the live record deleted. Returns False if there was none.

        Calling it again is a no-op.
        """
        now = self.clock()
        with self._write_lock, self.database.connect() as conn:
            row = conn.execute(
                """
                UPDATE credentials SET deleted = TRUE, deleted_at = ?, updated_at = ?
                WHERE user_id = ? AND provider = ? AND NOT deleted
                RETURNING id
                """,
                (now, now, user_id, provider),
            ).fetchall()
        if row:
            logger.info(f"Disconnected {provider} for user {user_id}")
        return bool(row)

    def restore(self, user_id: str, provider: str) -> CredentialRecord | None:
        """Un-delete the most recently deleted record, if no live one exists."""
        with self._write_lock:
            if self.get(user_id, provider):
                return None
            with self.database.connect() as conn:
                row = conn.execute(
                    """
                    SELECT id FROM credentials
                    WHERE user_id = ? AND provider = ? AND deleted
                    ORDER BY deleted_at DESC
                    LIMIT 1
                    """,
                    (user_id, provider),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    """
                    UPDATE credentials SET deleted = FALSE, deleted_at = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    (self.clock(), row[0]),
                )
        logger.info(f"Restored {provider} credential for user {user_id}")
        return self.get(user_id, provider)
