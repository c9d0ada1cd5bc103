"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled.

Uniqueness of the three transaction dedup keys is enforced by the schema,
so a losing writer in a check-then-insert race gets DuplicateTransactionError
instead of a second row.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from .models import (
    AiProcessingLog,
    MobileClient,
    ReviewQueueItem,
    Transaction,
)

# Column fragment in sqlite's "UNIQUE constraint failed: ..." message → dedup key
_UNIQUE_KEY_COLUMNS = (
    ("mpesa_transactions.client_tx_id", "client_tx_id"),
    ("mpesa_transactions.raw_message", "raw_message"),
    ("mpesa_transactions.transaction_code", "transaction_code"),
)


class StorageError(Exception):
    """Raised when an insert or update against the store fails."""


class DuplicateTransactionError(Exception):
    """Raised when an insert violates one of the transaction uniqueness keys."""

    def __init__(self, key: str, existing_id: str | None = None):
        self.key = key
        self.existing_id = existing_id
        super().__init__(f"Transaction with the same {key} already exists")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, timeout=30.0,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Mobile clients ──────────────────────────────────────

    def insert_client(self, client: MobileClient) -> MobileClient:
        self.conn.execute(
            "INSERT INTO mobile_clients"
            " (id, device_id, token_hash, device_name, is_active,"
            "  last_sync_at, created_at)"
            " VALUES (?,?,?,?,?,?,?)",
            (client.id, client.device_id, client.token_hash,
             client.device_name, int(client.is_active),
             client.last_sync_at, client.created_at),
        )
        self.conn.commit()
        return client

    def get_client(self, client_id: str) -> MobileClient | None:
        row = self.conn.execute(
            "SELECT * FROM mobile_clients WHERE id = ?", (client_id,)
        ).fetchone()
        return self._row_to_client(row) if row else None

    def get_client_by_device_id(self, device_id: str) -> MobileClient | None:
        row = self.conn.execute(
            "SELECT * FROM mobile_clients WHERE device_id = ?", (device_id,)
        ).fetchone()
        return self._row_to_client(row) if row else None

    def get_client_by_token_hash(self, token_hash: str) -> MobileClient | None:
        row = self.conn.execute(
            "SELECT * FROM mobile_clients WHERE token_hash = ?", (token_hash,)
        ).fetchone()
        return self._row_to_client(row) if row else None

    def update_client_credentials(
        self, client_id: str, token_hash: str, device_name: str | None = None,
    ):
        """Rotate a client's token and re-activate it."""
        self.conn.execute(
            "UPDATE mobile_clients SET token_hash = ?, is_active = 1,"
            " device_name = COALESCE(?, device_name) WHERE id = ?",
            (token_hash, device_name, client_id),
        )
        self.conn.commit()

    def set_client_active(self, device_id: str, active: bool) -> bool:
        cur = self.conn.execute(
            "UPDATE mobile_clients SET is_active = ? WHERE device_id = ?",
            (int(active), device_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def touch_client(self, client_id: str, synced_at: str | None = None):
        self.conn.execute(
            "UPDATE mobile_clients SET last_sync_at = ? WHERE id = ?",
            (synced_at or _now(), client_id),
        )
        self.conn.commit()

    # ── Transactions ────────────────────────────────────────

    def insert_transaction(
        self, txn: Transaction, reviews: list[ReviewQueueItem] | None = None,
    ) -> Transaction:
        """Insert a transaction together with its review queue items.

        Either the transaction and all of its items are stored or nothing is.

        Raises:
            DuplicateTransactionError: If client_tx_id, transaction_code or
                (client_id, raw_message) already exists. This is the
                authoritative duplicate signal when two writers race past
                the dedup check.
            StorageError: For any other database failure.
        """
        try:
            self.conn.execute("BEGIN")
            self.conn.execute(
                "INSERT INTO mpesa_transactions"
                " (id, client_id, client_tx_id, transaction_code, amount,"
                "  balance, sender, recipient, transaction_type, raw_message,"
                "  transaction_timestamp, ai_metadata, status, duplicate_of,"
                "  created_at, updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (txn.id, txn.client_id, txn.client_tx_id,
                 txn.transaction_code, txn.amount, txn.balance,
                 txn.sender, txn.recipient, txn.transaction_type,
                 txn.raw_message, txn.transaction_timestamp,
                 json.dumps(txn.ai_metadata), txn.status,
                 txn.duplicate_of, txn.created_at, txn.updated_at),
            )
            if reviews:
                self.conn.executemany(
                    "INSERT INTO review_queue"
                    " (id, mpesa_id, reason, priority, notes, resolved_at,"
                    "  resolution, created_at)"
                    " VALUES (?,?,?,?,?,?,?,?)",
                    [
                        (r.id, r.mpesa_id, r.reason, r.priority, r.notes,
                         r.resolved_at, r.resolution, r.created_at)
                        for r in reviews
                    ],
                )
            self.conn.commit()
            return txn
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            key = _duplicate_key(str(e))
            if key is None:
                raise StorageError(f"Insert failed for {txn.client_tx_id}: {e}") from e
            existing = self._find_by_key(txn, key)
            raise DuplicateTransactionError(
                key, existing.id if existing else None,
            ) from e
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StorageError(f"Insert failed for {txn.client_tx_id}: {e}") from e
        except Exception:
            self.conn.rollback()
            raise

    def _find_by_key(self, txn: Transaction, key: str) -> Transaction | None:
        if key == "client_tx_id":
            return self.get_transaction_by_client_tx_id(txn.client_tx_id)
        if key == "raw_message":
            return self.get_transaction_by_message(txn.client_id, txn.raw_message)
        if txn.transaction_code:
            return self.get_transaction_by_code(txn.transaction_code)
        return None

    def get_transaction(self, txn_id: str) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM mpesa_transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transaction_by_client_tx_id(
        self, client_tx_id: str
    ) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM mpesa_transactions WHERE client_tx_id = ?",
            (client_tx_id,),
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transaction_by_message(
        self, client_id: str, raw_message: str
    ) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM mpesa_transactions"
            " WHERE client_id = ? AND raw_message = ?",
            (client_id, raw_message),
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transaction_by_code(
        self, transaction_code: str
    ) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM mpesa_transactions WHERE transaction_code = ?",
            (transaction_code,),
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transactions_since(
        self, start_ms: int, limit: int = 100
    ) -> list[Transaction]:
        """Transactions with transaction_timestamp >= start_ms, newest first."""
        rows = self.conn.execute(
            "SELECT * FROM mpesa_transactions"
            " WHERE transaction_timestamp >= ?"
            " ORDER BY transaction_timestamp DESC, rowid DESC LIMIT ?",
            (start_ms, limit),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def append_transaction_flag(self, txn_id: str, flag: str) -> bool:
        """Add a flag to ai_metadata.flags unless it is already there.

        Returns True if the flag was added.
        """
        try:
            self.conn.execute("BEGIN IMMEDIATE")
            row = self.conn.execute(
                "SELECT ai_metadata FROM mpesa_transactions WHERE id = ?",
                (txn_id,),
            ).fetchone()
            if row is None:
                self.conn.rollback()
                return False
            metadata = _load_metadata(row["ai_metadata"])
            flags = list(metadata.get("flags") or [])
            if flag in flags:
                self.conn.rollback()
                return False
            metadata["flags"] = flags + [flag]
            self.conn.execute(
                "UPDATE mpesa_transactions SET ai_metadata = ?, updated_at = ?"
                " WHERE id = ?",
                (json.dumps(metadata), _now(), txn_id),
            )
            self.conn.commit()
            return True
        except Exception:
            self.conn.rollback()
            raise

    _TRANSACTION_UPDATE_COLS = frozenset({
        "transaction_type", "transaction_code", "amount", "balance",
        "sender", "recipient", "duplicate_of",
    })

    def _transaction_update_clause(self, fields: dict) -> tuple[list[str], list]:
        # Only reviewer-correctable columns
        unknown = set(fields) - self._TRANSACTION_UPDATE_COLS
        if unknown:
            raise ValueError(f"Unknown columns for transaction update: {sorted(unknown)}")
        sets: list[str] = []
        vals: list = []
        for col in sorted(fields):
            sets.append(f"{col} = ?")
            vals.append(fields[col])
        return sets, vals

    def update_transaction_fields(self, txn_id: str, fields: dict) -> bool:
        """Correct parsed fields on a transaction. Returns False if no row matched."""
        sets, vals = self._transaction_update_clause(fields)
        if not sets:
            return False
        sets.append("updated_at = ?")
        vals.extend([_now(), txn_id])
        cur = self.conn.execute(
            f"UPDATE mpesa_transactions SET {', '.join(sets)} WHERE id = ?",
            vals,
        )
        self.conn.commit()
        return cur.rowcount > 0

    # ── Review queue ────────────────────────────────────────

    def insert_review_if_absent(self, item: ReviewQueueItem) -> bool:
        """Insert a review item unless an open one exists for (mpesa_id, reason).

        The partial unique index on open items makes this exact under
        concurrent scans. Returns True if a row was inserted.
        """
        try:
            cur = self.conn.execute(
                "INSERT INTO review_queue"
                " (id, mpesa_id, reason, priority, notes, resolved_at,"
                "  resolution, created_at)"
                " VALUES (?,?,?,?,?,?,?,?)"
                " ON CONFLICT(mpesa_id, reason) WHERE resolved_at IS NULL"
                " DO NOTHING",
                (item.id, item.mpesa_id, item.reason, item.priority,
                 item.notes, item.resolved_at, item.resolution,
                 item.created_at),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StorageError(f"Review insert failed for {item.mpesa_id}: {e}") from e
        return cur.rowcount > 0

    def get_review(self, review_id: str) -> ReviewQueueItem | None:
        row = self.conn.execute(
            "SELECT * FROM review_queue WHERE id = ?", (review_id,)
        ).fetchone()
        return self._row_to_review(row) if row else None

    def get_reviews_for_transaction(
        self, mpesa_id: str, open_only: bool = False
    ) -> list[ReviewQueueItem]:
        sql = "SELECT * FROM review_queue WHERE mpesa_id = ?"
        if open_only:
            sql += " AND resolved_at IS NULL"
        sql += " ORDER BY created_at, rowid"
        rows = self.conn.execute(sql, (mpesa_id,)).fetchall()
        return [self._row_to_review(r) for r in rows]

    def get_open_review_keys(self, reason: str | None = None) -> set[tuple[str, str]]:
        """Return {(mpesa_id, reason)} for every open review item."""
        sql = "SELECT mpesa_id, reason FROM review_queue WHERE resolved_at IS NULL"
        params: list = []
        if reason is not None:
            sql += " AND reason = ?"
            params.append(reason)
        rows = self.conn.execute(sql, params).fetchall()
        return {(r["mpesa_id"], r["reason"]) for r in rows}

    def resolve_review(
        self,
        review_id: str,
        resolution: str,
        status: str,
        transaction_updates: dict | None = None,
    ) -> str | None:
        """Close an open review item and update its transaction atomically.

        The close only applies while resolved_at is NULL. Returns the
        resolved_at timestamp, or None if the item was missing or already
        resolved (nothing is written in that case).
        """
        sets, vals = self._transaction_update_clause(transaction_updates or {})
        resolved_at = _now()
        try:
            self.conn.execute("BEGIN IMMEDIATE")
            cur = self.conn.execute(
                "UPDATE review_queue SET resolved_at = ?, resolution = ?"
                " WHERE id = ? AND resolved_at IS NULL",
                (resolved_at, resolution, review_id),
            )
            if cur.rowcount == 0:
                self.conn.rollback()
                return None
            mpesa_id = self.conn.execute(
                "SELECT mpesa_id FROM review_queue WHERE id = ?", (review_id,)
            ).fetchone()["mpesa_id"]
            sets = ["status = ?", "updated_at = ?"] + sets
            vals = [status, resolved_at] + vals + [mpesa_id]
            self.conn.execute(
                f"UPDATE mpesa_transactions SET {', '.join(sets)} WHERE id = ?",
                vals,
            )
            self.conn.commit()
            return resolved_at
        except Exception:
            self.conn.rollback()
            raise

    # ── AI processing logs ──────────────────────────────────

    def insert_ai_log(self, log: AiProcessingLog) -> AiProcessingLog:
        self.conn.execute(
            "INSERT INTO ai_processing_logs"
            " (id, mpesa_id, model, prompt_id, input_data, output_data,"
            "  processing_time_ms, success, error_message, created_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?)",
            (log.id, log.mpesa_id, log.model, log.prompt_id,
             log.input_data, log.output_data, log.processing_time_ms,
             int(log.success), log.error_message, log.created_at),
        )
        self.conn.commit()
        return log

    def get_ai_logs(
        self, prompt_id: str | None = None, limit: int = 100
    ) -> list[AiProcessingLog]:
        sql = "SELECT * FROM ai_processing_logs"
        params: list = []
        if prompt_id is not None:
            sql += " WHERE prompt_id = ?"
            params.append(prompt_id)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_ai_log(r) for r in rows]

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_client(row: sqlite3.Row) -> MobileClient:
        return MobileClient(
            id=row["id"], device_id=row["device_id"],
            token_hash=row["token_hash"], device_name=row["device_name"],
            is_active=bool(row["is_active"]),
            last_sync_at=row["last_sync_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"], client_id=row["client_id"],
            client_tx_id=row["client_tx_id"],
            transaction_code=row["transaction_code"],
            amount=row["amount"], balance=row["balance"],
            sender=row["sender"], recipient=row["recipient"],
            transaction_type=row["transaction_type"],
            raw_message=row["raw_message"],
            transaction_timestamp=row["transaction_timestamp"],
            ai_metadata=_load_metadata(row["ai_metadata"]),
            status=row["status"], duplicate_of=row["duplicate_of"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_review(row: sqlite3.Row) -> ReviewQueueItem:
        return ReviewQueueItem(
            id=row["id"], mpesa_id=row["mpesa_id"], reason=row["reason"],
            priority=row["priority"], notes=row["notes"],
            resolved_at=row["resolved_at"], resolution=row["resolution"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_ai_log(row: sqlite3.Row) -> AiProcessingLog:
        return AiProcessingLog(
            id=row["id"], mpesa_id=row["mpesa_id"], model=row["model"],
            prompt_id=row["prompt_id"], input_data=row["input_data"],
            output_data=row["output_data"],
            processing_time_ms=row["processing_time_ms"],
            success=bool(row["success"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
        )


def _duplicate_key(message: str) -> str | None:
    """Map an IntegrityError message to the dedup key it violated."""
    if "UNIQUE constraint failed" not in message:
        return None
    for fragment, key in _UNIQUE_KEY_COLUMNS:
        if fragment in message:
            return key
    return None


def _load_metadata(raw: str | None) -> dict:
    if not raw:
        return {}
    data = json.loads(raw)
    return data if isinstance(data, dict) else {}
