"""Database operations for user_two_factor and user_two_factor_recovery."""

from datetime import datetime
from typing import Any

from clients.postgres_client import PostgresClient
from auth.types import RecoveryCode, TwoFactorRecord


def _row_to_record(row: dict[str, Any]) -> TwoFactorRecord:
    return TwoFactorRecord(
        user_id=row["user_id"],
        secret_encrypted=row["secret_encrypted"],
        enabled=row["enabled"],
        created_at=row["created_at"],
        enabled_at=row["enabled_at"],
        last_used_step=row["last_used_step"],
    )


def _row_to_code(row: dict[str, Any]) -> RecoveryCode:
    return RecoveryCode(
        id=row["id"],
        user_id=row["user_id"],
        code_hash=row["code_hash"],
        label=row["label"],
        used=row["used"],
        used_at=row["used_at"],
        created_at=row["created_at"],
    )


class TwoFactorDatabase:
    """One second-factor row per user plus its recovery code set."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def get(self, user_id: int) -> TwoFactorRecord | None:
        row = self._db.execute_single(
            """SELECT user_id, secret_encrypted, enabled, created_at, enabled_at, last_used_step
               FROM user_two_factor WHERE user_id = %s""",
            (user_id,),
        )
        return _row_to_record(row) if row else None

    def upsert_pending(self, user_id: int, secret_encrypted: str, now: datetime) -> TwoFactorRecord:
        """Store a fresh unconfirmed secret, replacing whatever was there."""
        rows = self._db.execute_returning(
            """INSERT INTO user_two_factor (user_id, secret_encrypted, enabled, created_at)
               VALUES (%s, %s, false, %s)
               ON CONFLICT (user_id) DO UPDATE
               SET secret_encrypted = EXCLUDED.secret_encrypted,
                   enabled = false,
                   created_at = EXCLUDED.created_at,
                   enabled_at = NULL,
                   last_used_step = NULL
               RETURNING user_id, secret_encrypted, enabled, created_at, enabled_at, last_used_step""",
            (user_id, secret_encrypted, now),
        )
        return _row_to_record(rows[0])

    def enable(
        self,
        user_id: int,
        secret_encrypted: str,
        step: int,
        code_rows: list[tuple[str, str]],
        now: datetime,
    ) -> bool:
        """
        Promote the pending secret to enabled and store the first recovery codes.

        Conditional on the row still holding ``secret_encrypted`` unconfirmed,
        so a concurrent setup restart makes this a no-op.

        Args:
            code_rows: (code_hash, label) pairs.

        Returns:
            True if this call enabled two-factor.
        """
        with self._db.transaction() as tx:
            rows = tx.execute(
                """UPDATE user_two_factor
                   SET enabled = true, enabled_at = %s, last_used_step = %s
                   WHERE user_id = %s AND enabled = false AND secret_encrypted = %s
                   RETURNING user_id""",
                (now, step, user_id, secret_encrypted),
            )
            if not rows:
                return False
            self._replace_codes(tx, user_id, code_rows, now)
        return True

    def delete(self, user_id: int) -> bool:
        """Drop the secret and every recovery code. Returns True if 2FA existed."""
        with self._db.transaction() as tx:
            tx.execute("DELETE FROM user_two_factor_recovery WHERE user_id = %s", (user_id,))
            rows = tx.execute(
                "DELETE FROM user_two_factor WHERE user_id = %s RETURNING user_id",
                (user_id,),
            )
        return len(rows) > 0

    def record_totp_step(self, user_id: int, step: int) -> bool:
        """
        Remember the accepted TOTP step.

        Returns:
            False if this step (or a later one) was already accepted, i.e. replay.
        """
        rows = self._db.execute_returning(
            """UPDATE user_two_factor SET last_used_step = %s
               WHERE user_id = %s AND enabled = true
                 AND (last_used_step IS NULL OR last_used_step < %s)
               RETURNING user_id""",
            (step, user_id, step),
        )
        return len(rows) > 0

    # -- recovery codes ----------------------------------------------------

    @staticmethod
    def _replace_codes(tx, user_id: int, code_rows: list[tuple[str, str]], now: datetime) -> None:
        tx.execute("DELETE FROM user_two_factor_recovery WHERE user_id = %s", (user_id,))
        tx.executemany(
            """INSERT INTO user_two_factor_recovery (user_id, code_hash, label, used, created_at)
               VALUES (%s, %s, %s, false, %s)""",
            [(user_id, code_hash, label, now) for code_hash, label in code_rows],
        )

    def replace_recovery_codes(self, user_id: int, code_rows: list[tuple[str, str]], now: datetime) -> None:
        """Swap the whole code set in one transaction. Old and new never coexist."""
        with self._db.transaction() as tx:
            self._replace_codes(tx, user_id, code_rows, now)

    def list_recovery_codes(self, user_id: int) -> list[RecoveryCode]:
        rows = self._db.execute(
            """SELECT id, user_id, code_hash, label, used, used_at, created_at
               FROM user_two_factor_recovery
               WHERE user_id = %s ORDER BY id""",
            (user_id,),
        )
        return [_row_to_code(r) for r in rows]

    def list_unused_recovery_codes(self, user_id: int) -> list[RecoveryCode]:
        rows = self._db.execute(
            """SELECT id, user_id, code_hash, label, used, used_at, created_at
               FROM user_two_factor_recovery
               WHERE user_id = %s AND used = false ORDER BY id""",
            (user_id,),
        )
        return [_row_to_code(r) for r in rows]

    def count_unused_recovery_codes(self, user_id: int) -> int:
        return self._db.execute_scalar(
            "SELECT count(*) FROM user_two_factor_recovery WHERE user_id = %s AND used = false",
            (user_id,),
        ) or 0

    def mark_recovery_code_used(self, code_id: int, now: datetime) -> bool:
        """Consume one code. Of two racing calls exactly one gets True."""
        rows = self._db.execute_returning(
            """UPDATE user_two_factor_recovery SET used = true, used_at = %s
               WHERE id = %s AND used = false
               RETURNING id""",
            (now, code_id),
        )
        return len(rows) > 0
