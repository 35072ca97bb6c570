"""PostgreSQL-backed storage with automatic table migration.

Every cross-request invariant is enforced here with conditional statements:
- one mapping per original message id: partial unique index + ON CONFLICT DO NOTHING
- non-negative balances: UPDATE ... WHERE credits >= amount, plus a CHECK constraint
- one settlement per mapping: SELECT ... FOR UPDATE on the mapping row, then a
  status check, inside the same transaction as the debit
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from mail_relay.storage.models import (
    DebitResult,
    MappingRecord,
    SettlementResult,
    TransactionRecord,
    UserRecord,
    Visibility,
    WorkflowKind,
    WorkflowRecord,
)

_USER_COLUMNS = "id AS user_id, email AS address, credits, is_approved, created_at"
_WORKFLOW_COLUMNS = """
    id AS workflow_id, name, kind, visibility, is_active, credits_per_task,
    execution_address, instruction, description, owner_user_id
"""
_MAPPING_COLUMNS = """
    id AS mapping_id, original_message_id, external_id, original_sender, workflow,
    status, credits_charged, created_at, completed_at
"""
_TRANSACTION_COLUMNS = """
    id AS transaction_id, user_id, credits_delta, reason,
    email_mapping_id AS mapping_id, created_at
"""


class PostgresRelayStorage:
    """Persist users, workflows, mappings and transactions in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("MAIL_RELAY_DATABASE_URL is required")
        self.database_url = database_url
        self._psycopg, self._dict_row = self._load_psycopg()

    def migrate(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id BIGSERIAL PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    credits INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
                    is_approved BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workflows (
                    id BIGSERIAL PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    kind TEXT NOT NULL DEFAULT 'native' CHECK (kind IN ('native', 'api')),
                    visibility TEXT NOT NULL DEFAULT 'public'
                        CHECK (visibility IN ('public', 'private')),
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    credits_per_task INTEGER NOT NULL CHECK (credits_per_task > 0),
                    execution_address TEXT,
                    instruction TEXT,
                    description TEXT,
                    owner_user_id BIGINT REFERENCES users(id) ON DELETE SET NULL,
                    CHECK (kind <> 'native' OR execution_address IS NOT NULL)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workflow_approved_senders (
                    id BIGSERIAL PRIMARY KEY,
                    workflow_id BIGINT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                    email TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    UNIQUE (workflow_id, email)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS email_mappings (
                    id BIGSERIAL PRIMARY KEY,
                    original_message_id TEXT,
                    external_id TEXT,
                    original_sender TEXT NOT NULL,
                    workflow TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'acknowledged', 'completed')),
                    credits_charged INTEGER,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    completed_at TIMESTAMPTZ,
                    CHECK ((credits_charged IS NULL) = (completed_at IS NULL))
                )
                """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_email_mappings_original_message_id
                ON email_mappings(original_message_id)
                WHERE original_message_id IS NOT NULL
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_email_mappings_external_id
                ON email_mappings(external_id)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id BIGSERIAL PRIMARY KEY,
                    user_id BIGINT NOT NULL REFERENCES users(id),
                    credits_delta INTEGER NOT NULL,
                    reason TEXT,
                    email_mapping_id BIGINT REFERENCES email_mappings(id),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_transactions_user_id
                ON transactions(user_id)
                """)
            conn.commit()

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except self._psycopg.Error:
            return False
        return True

    def get_user_by_address(self, address: str) -> UserRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s",
                (address.lower(),),
            ).fetchone()
        return UserRecord.model_validate(row) if row else None

    def get_user(self, user_id: int) -> UserRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s",
                (user_id,),
            ).fetchone()
        return UserRecord.model_validate(row) if row else None

    def create_user(
        self, address: str, *, credits: int = 0, is_approved: bool = False
    ) -> UserRecord:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO users (email, credits, is_approved)
                VALUES (%s, %s, %s)
                RETURNING {_USER_COLUMNS}
                """,
                (address.lower(), credits, is_approved),
            ).fetchone()
            if row is None:
                conn.rollback()
                raise RuntimeError("Failed to persist user")
            if credits > 0:
                self._append_transaction(conn, row["user_id"], credits, "Initial credits", None)
            conn.commit()
        return UserRecord.model_validate(row)

    def get_workflow_by_name(self, name: str) -> WorkflowRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE name = %s AND is_active = TRUE",
                (name.lower(),),
            ).fetchone()
        return WorkflowRecord.model_validate(row) if row else None

    def get_workflow(self, workflow_id: int) -> WorkflowRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = %s",
                (workflow_id,),
            ).fetchone()
        return WorkflowRecord.model_validate(row) if row else None

    def upsert_workflow(
        self,
        name: str,
        *,
        credits_per_task: int,
        kind: WorkflowKind = "native",
        visibility: Visibility = "public",
        execution_address: str | None = None,
        instruction: str | None = None,
        description: str | None = None,
        owner_user_id: int | None = None,
        is_active: bool = True,
    ) -> WorkflowRecord:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO workflows (
                    name,
                    kind,
                    visibility,
                    is_active,
                    credits_per_task,
                    execution_address,
                    instruction,
                    description,
                    owner_user_id
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (name) DO UPDATE
                SET kind = EXCLUDED.kind,
                    visibility = EXCLUDED.visibility,
                    is_active = EXCLUDED.is_active,
                    credits_per_task = EXCLUDED.credits_per_task,
                    execution_address = EXCLUDED.execution_address,
                    instruction = EXCLUDED.instruction,
                    description = EXCLUDED.description,
                    owner_user_id = EXCLUDED.owner_user_id
                RETURNING {_WORKFLOW_COLUMNS}
                """,
                (
                    name.lower(),
                    kind,
                    visibility,
                    is_active,
                    credits_per_task,
                    execution_address,
                    instruction,
                    description,
                    owner_user_id,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError(f"Failed to persist workflow {name}")
        return WorkflowRecord.model_validate(row)

    def is_approved_sender(self, workflow_id: int, address: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM workflow_approved_senders
                    WHERE workflow_id = %s AND email = %s
                ) AS present
                """,
                (workflow_id, address.lower()),
            ).fetchone()
        return bool(row and row.get("present"))

    def add_approved_sender(self, workflow_id: int, address: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_approved_senders (workflow_id, email)
                VALUES (%s, %s)
                ON CONFLICT (workflow_id, email) DO NOTHING
                """,
                (workflow_id, address.lower()),
            )
            conn.commit()

    def create_mapping(
        self, *, original_message_id: str | None, original_sender: str, workflow: str
    ) -> tuple[MappingRecord, bool]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO email_mappings (original_message_id, original_sender, workflow)
                VALUES (%s, %s, %s)
                ON CONFLICT (original_message_id) WHERE original_message_id IS NOT NULL
                DO NOTHING
                RETURNING {_MAPPING_COLUMNS}
                """,
                (original_message_id, original_sender.lower(), workflow),
            ).fetchone()
            conn.commit()
            if row is not None:
                return MappingRecord.model_validate(row), True
            existing = conn.execute(
                f"SELECT {_MAPPING_COLUMNS} FROM email_mappings WHERE original_message_id = %s",
                (original_message_id,),
            ).fetchone()
        if existing is None:
            raise RuntimeError(f"Mapping for {original_message_id} vanished after conflict")
        return MappingRecord.model_validate(existing), False

    def get_mapping(self, mapping_id: int) -> MappingRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_MAPPING_COLUMNS} FROM email_mappings WHERE id = %s",
                (mapping_id,),
            ).fetchone()
        return MappingRecord.model_validate(row) if row else None

    def get_mapping_by_correlation_id(self, message_id: str) -> MappingRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_MAPPING_COLUMNS}
                FROM email_mappings
                WHERE original_message_id = %s OR external_id = %s
                ORDER BY id ASC
                LIMIT 1
                """,
                (message_id, message_id),
            ).fetchone()
        return MappingRecord.model_validate(row) if row else None

    def get_mapping_by_external_id(self, external_id: str) -> MappingRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_MAPPING_COLUMNS}
                FROM email_mappings
                WHERE external_id = %s
                ORDER BY id ASC
                LIMIT 1
                """,
                (external_id,),
            ).fetchone()
        return MappingRecord.model_validate(row) if row else None

    def set_external_id(self, mapping_id: int, external_id: str) -> MappingRecord:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE email_mappings
                SET external_id = %s
                WHERE id = %s
                RETURNING {_MAPPING_COLUMNS}
                """,
                (external_id, mapping_id),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Mapping {mapping_id} does not exist")
        return MappingRecord.model_validate(row)

    def mark_mapping_acknowledged(self, mapping_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE email_mappings
                SET status = 'acknowledged'
                WHERE id = %s AND status = 'pending'
                """,
                (mapping_id,),
            )
            conn.commit()
        return cursor.rowcount > 0

    def mark_mapping_completed(self, mapping_id: int, *, credits_charged: int) -> bool:
        with self._connect() as conn:
            applied = self._complete(conn, mapping_id, credits_charged)
            conn.commit()
        return applied

    def debit_credits(
        self, user_id: int, amount: int, *, reason: str, mapping_id: int | None = None
    ) -> DebitResult:
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        with self._connect() as conn:
            result = self._debit(conn, user_id, amount, reason, mapping_id)
            conn.commit()
        return result

    def grant_credits(self, user_id: int, amount: int, *, reason: str) -> TransactionRecord:
        if amount <= 0:
            raise ValueError("Grant amount must be positive")
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET credits = credits + %s WHERE id = %s RETURNING credits",
                (amount, user_id),
            ).fetchone()
            if row is None:
                conn.rollback()
                raise KeyError(f"User {user_id} does not exist")
            transaction = self._append_transaction(conn, user_id, amount, reason, None)
            conn.commit()
        return transaction

    def list_transactions(self, user_id: int) -> list[TransactionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_TRANSACTION_COLUMNS}
                FROM transactions
                WHERE user_id = %s
                ORDER BY id ASC
                """,
                (user_id,),
            ).fetchall()
        return [TransactionRecord.model_validate(row) for row in rows]

    def settle_mapping(
        self,
        mapping_id: int,
        *,
        user_id: int | None,
        amount: int,
        reason: str,
    ) -> SettlementResult:
        with self._connect() as conn:
            locked = conn.execute(
                f"SELECT {_MAPPING_COLUMNS} FROM email_mappings WHERE id = %s FOR UPDATE",
                (mapping_id,),
            ).fetchone()
            if locked is None:
                conn.rollback()
                raise KeyError(f"Mapping {mapping_id} does not exist")
            if locked["status"] == "completed":
                conn.rollback()
                return SettlementResult(
                    applied=False, mapping=MappingRecord.model_validate(locked)
                )

            debited = False
            if user_id is not None and amount > 0:
                debited = self._debit(conn, user_id, amount, reason, mapping_id).applied
            charged = amount if debited else 0
            self._complete(conn, mapping_id, charged)
            row = conn.execute(
                f"SELECT {_MAPPING_COLUMNS} FROM email_mappings WHERE id = %s",
                (mapping_id,),
            ).fetchone()
            conn.commit()
        return SettlementResult(
            applied=True,
            mapping=MappingRecord.model_validate(row),
            debited=debited,
            charged=charged,
        )

    def _debit(
        self, conn: Any, user_id: int, amount: int, reason: str, mapping_id: int | None
    ) -> DebitResult:
        row = conn.execute(
            """
            UPDATE users
            SET credits = credits - %s
            WHERE id = %s AND credits >= %s
            RETURNING credits
            """,
            (amount, user_id, amount),
        ).fetchone()
        if row is None:
            current = conn.execute(
                "SELECT credits FROM users WHERE id = %s", (user_id,)
            ).fetchone()
            return DebitResult(applied=False, balance=current["credits"] if current else None)
        transaction = self._append_transaction(conn, user_id, -amount, reason, mapping_id)
        return DebitResult(applied=True, balance=int(row["credits"]), transaction=transaction)

    @staticmethod
    def _complete(conn: Any, mapping_id: int, credits_charged: int) -> bool:
        cursor = conn.execute(
            """
            UPDATE email_mappings
            SET status = 'completed',
                credits_charged = %s,
                completed_at = %s
            WHERE id = %s AND status <> 'completed'
            """,
            (credits_charged, datetime.now(tz=UTC), mapping_id),
        )
        return cursor.rowcount > 0

    @staticmethod
    def _append_transaction(
        conn: Any, user_id: int, delta: int, reason: str, mapping_id: int | None
    ) -> TransactionRecord:
        row = conn.execute(
            f"""
            INSERT INTO transactions (user_id, credits_delta, reason, email_mapping_id)
            VALUES (%s, %s, %s, %s)
            RETURNING {_TRANSACTION_COLUMNS}
            """,
            (user_id, delta, reason, mapping_id),
        ).fetchone()
        if row is None:
            raise RuntimeError("Failed to persist transaction")
        return TransactionRecord.model_validate(row)

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row
