"""Rule-based fraud predicates over a window of recent transactions.

Each predicate is independent; evaluate() combines them into one anomaly
per transaction. Thresholds come from the `fraud` section of settings.yaml.

Rules:
  high_amount              amount above the threshold (severity high)
  rapid_transactions       more than N same-client transactions within the
                           rapid window either side of this one (high)
  quick_deposit_withdrawal large Withdrawal shortly after a Deposit from the
                           same client (critical)
  unusual_time             local hour inside the unusual range (no severity)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo

from src.database.models import REVIEW_PRIORITIES, Transaction

logger = logging.getLogger(__name__)

_MINUTE_MS = 60_000

_SEVERITY_RANK = {p: i for i, p in enumerate(REVIEW_PRIORITIES)}


@dataclass
class Anomaly:
    transaction_id: str
    severity: str
    explanation: str
    flags: list[str] = field(default_factory=list)
    source: str = "rules"  # "rules" or "ai"

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "severity": self.severity,
            "explanation": self.explanation,
        }


def max_severity(current: str, candidate: str) -> str:
    if _SEVERITY_RANK.get(candidate, 0) > _SEVERITY_RANK.get(current, 0):
        return candidate
    return current


def is_high_amount(txn: Transaction, settings: dict) -> bool:
    return txn.amount is not None and txn.amount > settings["high_amount"]


def is_rapid(txn: Transaction, window: list[Transaction], settings: dict) -> bool:
    span_ms = settings["rapid_window_minutes"] * _MINUTE_MS
    same_client = [
        t for t in window
        if t.client_id == txn.client_id
        and abs(t.transaction_timestamp - txn.transaction_timestamp) < span_ms
    ]
    return len(same_client) > settings["rapid_count"]


def is_quick_deposit_withdrawal(
    txn: Transaction, window: list[Transaction], settings: dict,
) -> bool:
    if txn.transaction_type != "Withdrawal":
        return False
    if txn.amount is None or txn.amount <= settings["quick_withdrawal_amount"]:
        return False
    span_ms = settings["quick_withdrawal_minutes"] * _MINUTE_MS
    return any(
        t.client_id == txn.client_id
        and t.transaction_type == "Deposit"
        and t.transaction_timestamp < txn.transaction_timestamp
        and txn.transaction_timestamp - t.transaction_timestamp < span_ms
        for t in window
    )


def is_unusual_time(txn: Transaction, settings: dict, tz: tzinfo) -> bool:
    start_hour, end_hour = settings["unusual_hours"]
    local = datetime.fromtimestamp(txn.transaction_timestamp / 1000, tz)
    return start_hour <= local.hour <= end_hour


def evaluate(
    txn: Transaction,
    window: list[Transaction],
    settings: dict,
    tz: tzinfo | None = None,
) -> Anomaly | None:
    """Run every rule on one transaction. Returns None if nothing fired."""
    if tz is None:
        tz = ZoneInfo(settings["timezone"])
    flags: list[str] = []
    severity = "normal"

    if is_high_amount(txn, settings):
        flags.append("high_amount")
        severity = max_severity(severity, "high")

    if is_rapid(txn, window, settings):
        flags.append("rapid_transactions")
        severity = max_severity(severity, "high")

    if is_quick_deposit_withdrawal(txn, window, settings):
        flags.append("quick_deposit_withdrawal")
        severity = max_severity(severity, "critical")

    try:
        unusual = is_unusual_time(txn, settings, tz)
    except (OverflowError, OSError, ValueError):
        logger.warning(
            "Skipping unusual_time for %s: timestamp %s out of range",
            txn.id, txn.transaction_timestamp,
        )
        unusual = False
    if unusual:
        flags.append("unusual_time")

    if not flags:
        return None
    return Anomaly(
        transaction_id=txn.id,
        severity=severity,
        explanation=f"Detected: {', '.join(flags)}",
        flags=flags,
    )
