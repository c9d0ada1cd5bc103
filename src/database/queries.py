"""Complex queries that span multiple tables.

These go beyond single-table CRUD and implement reporting views used
by the CLI and the review workflow.
"""

from __future__ import annotations

import json
import sqlite3

_PRIORITY_ORDER = (
    "CASE r.priority"
    " WHEN 'critical' THEN 0 WHEN 'high' THEN 1"
    " WHEN 'normal' THEN 2 ELSE 3 END"
)


def list_open_reviews(
    conn: sqlite3.Connection, limit: int = 50
) -> list[dict]:
    """Open review items with their transaction, most urgent first.

    Ordered by priority (critical → low), then oldest first.
    """
    rows = conn.execute(
        "SELECT r.id, r.mpesa_id, r.reason, r.priority, r.notes,"
        "  r.created_at, t.client_tx_id, t.transaction_code, t.amount,"
        "  t.transaction_type, t.raw_message, t.ai_metadata, t.status"
        " FROM review_queue r"
        " JOIN mpesa_transactions t ON r.mpesa_id = t.id"
        " WHERE r.resolved_at IS NULL"
        f" ORDER BY {_PRIORITY_ORDER}, r.created_at, r.rowid"
        " LIMIT ?",
        (limit,),
    ).fetchall()
    result = []
    for r in rows:
        item = dict(r)
        item["ai_metadata"] = json.loads(item["ai_metadata"] or "{}")
        result.append(item)
    return result


def get_status_counts(conn: sqlite3.Connection) -> dict:
    """Counts for the `pesasync status` command."""
    row = conn.execute(
        "SELECT"
        "  (SELECT COUNT(*) FROM mpesa_transactions) AS total_txns,"
        "  (SELECT COUNT(*) FROM mpesa_transactions WHERE status = 'cleaned') AS cleaned,"
        "  (SELECT COUNT(*) FROM mpesa_transactions WHERE status = 'pending_review') AS pending_review,"
        "  (SELECT COUNT(*) FROM mpesa_transactions WHERE status = 'rejected') AS rejected,"
        "  (SELECT COUNT(*) FROM review_queue WHERE resolved_at IS NULL) AS open_reviews,"
        "  (SELECT COUNT(*) FROM review_queue"
        "     WHERE resolved_at IS NULL AND reason = 'fraud_suspicion') AS open_fraud_reviews,"
        "  (SELECT COUNT(*) FROM mobile_clients WHERE is_active = 1) AS active_devices,"
        "  (SELECT MAX(last_sync_at) FROM mobile_clients) AS last_sync_at"
    ).fetchone()
    return dict(row)
