"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings generated via uuid4()).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

TRANSACTION_TYPES = (
    "Paybill", "Till", "SendMoney", "Withdrawal", "Deposit", "Airtime",
    "BankToMpesa", "MpesaToBank", "Reversal", "Unknown",
)

TRANSACTION_STATUSES = (
    "pending_upload", "uploaded", "pending_review",
    "cleaned", "duplicate", "rejected",
)

# Ordered lowest to highest
REVIEW_PRIORITIES = ("low", "normal", "high", "critical")


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MobileClient:
    device_id: str
    token_hash: str
    id: str = field(default_factory=_new_id)
    device_name: str | None = None
    is_active: bool = True
    last_sync_at: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class Transaction:
    client_id: str
    client_tx_id: str
    raw_message: str
    transaction_timestamp: int  # epoch milliseconds
    id: str = field(default_factory=_new_id)
    transaction_code: str | None = None
    amount: float | None = None
    balance: float | None = None
    sender: str | None = None
    recipient: str | None = None
    transaction_type: str = "Unknown"
    ai_metadata: dict = field(default_factory=dict)
    status: str = "uploaded"
    duplicate_of: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def flags(self) -> list[str]:
        return list(self.ai_metadata.get("flags") or [])

    def snapshot(self) -> dict:
        """Public view returned to devices after ingestion."""
        return {
            "id": self.id,
            "client_tx_id": self.client_tx_id,
            "transaction_type": self.transaction_type,
            "transaction_code": self.transaction_code,
            "amount": self.amount,
            "balance": self.balance,
            "status": self.status,
            "ai_metadata": self.ai_metadata,
            "uploaded_at": self.created_at,
        }


@dataclass
class ReviewQueueItem:
    mpesa_id: str
    reason: str
    id: str = field(default_factory=_new_id)
    priority: str = "normal"
    notes: str | None = None
    resolved_at: str | None = None
    resolution: str | None = None
    created_at: str = field(default_factory=_now)

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


@dataclass
class AiProcessingLog:
    model: str
    prompt_id: str
    id: str = field(default_factory=_new_id)
    mpesa_id: str | None = None
    input_data: str | None = None
    output_data: str | None = None
    processing_time_ms: int | None = None
    success: bool = False
    error_message: str | None = None
    created_at: str = field(default_factory=_now)
