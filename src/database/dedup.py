"""3-key deduplication engine for device-submitted transactions.

Keys (evaluated in order, first match wins):
1. client_tx_id: the device's own idempotency key
2. (client_id, raw_message): the same SMS re-sent under a new client_tx_id
3. transaction_code: provider reference, only when the record carries one

A hit means the record is never classified or inserted. The lookup is a
read, so two concurrent submissions can both miss; the schema's UNIQUE
constraints catch the loser at insert time (see Repository.insert_transaction).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.database.models import Transaction
from src.database.repository import Repository

if TYPE_CHECKING:
    from src.ingest.records import IncomingRecord


@dataclass
class DedupResult:
    """Outcome of dedup check for a single record."""
    status: str  # "new", "duplicate"
    tier: str | None = None  # "client_tx_id", "raw_message", "transaction_code"
    matched_txn: Transaction | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.status == "duplicate"


class DedupEngine:
    """Run 3-key deduplication against the repository."""

    def __init__(self, repo: Repository):
        self.repo = repo

    # ── Key 1: client_tx_id ───────────────────────────────

    def check_client_tx_id(self, client_tx_id: str) -> Transaction | None:
        return self.repo.get_transaction_by_client_tx_id(client_tx_id)

    # ── Key 2: same device, same message ─────────────────

    def check_raw_message(
        self, client_id: str, raw_message: str
    ) -> Transaction | None:
        return self.repo.get_transaction_by_message(client_id, raw_message)

    # ── Key 3: transaction code ──────────────────────────

    def check_transaction_code(
        self, transaction_code: str | None
    ) -> Transaction | None:
        if not transaction_code:
            return None
        return self.repo.get_transaction_by_code(transaction_code)

    # ── Full check ───────────────────────────────────────

    def find_duplicate(
        self, record: IncomingRecord, client_id: str
    ) -> DedupResult:
        """Check a record against all three keys in priority order."""
        existing = self.check_client_tx_id(record.client_tx_id)
        if existing is not None:
            return DedupResult(
                status="duplicate", tier="client_tx_id", matched_txn=existing,
            )

        existing = self.check_raw_message(client_id, record.raw_message)
        if existing is not None:
            return DedupResult(
                status="duplicate", tier="raw_message", matched_txn=existing,
            )

        existing = self.check_transaction_code(record.transaction_code)
        if existing is not None:
            return DedupResult(
                status="duplicate", tier="transaction_code", matched_txn=existing,
            )

        return DedupResult(status="new")
