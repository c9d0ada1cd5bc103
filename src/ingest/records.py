"""Incoming record: the validated shape of one device upload."""

from __future__ import annotations

import math
from dataclasses import dataclass

from src.database.models import TRANSACTION_TYPES

REQUIRED_FIELDS = ("client_tx_id", "raw_message", "transaction_timestamp")

# 9999-12-31T23:59:59.999Z
MAX_TIMESTAMP_MS = 253_402_300_799_999


class ValidationError(Exception):
    """Raised when an uploaded record is missing or has malformed fields."""


@dataclass
class IncomingRecord:
    """Intermediate representation of an upload, before dedup and insertion."""
    client_tx_id: str
    raw_message: str
    transaction_timestamp: int  # epoch milliseconds, as sent by the device
    transaction_code: str | None = None
    amount: float | None = None
    balance: float | None = None
    sender: str | None = None
    recipient: str | None = None
    transaction_type: str = "Unknown"
    client_id: str | None = None  # only when embedded in a batch record

    @classmethod
    def from_payload(cls, payload: dict) -> IncomingRecord:
        """Validate a JSON payload into a record.

        Raises:
            ValidationError: On a missing required field or a non-numeric
                amount, balance or timestamp.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Record must be an object")
        missing = [f for f in REQUIRED_FIELDS if payload.get(f) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        txn_type = payload.get("transaction_type") or "Unknown"
        if txn_type not in TRANSACTION_TYPES:
            txn_type = "Unknown"

        code = payload.get("transaction_code")
        return cls(
            client_tx_id=str(payload["client_tx_id"]),
            raw_message=str(payload["raw_message"]),
            transaction_timestamp=_as_timestamp(payload["transaction_timestamp"]),
            transaction_code=str(code).strip().upper() if code else None,
            amount=_as_number(payload.get("amount"), "amount"),
            balance=_as_number(payload.get("balance"), "balance"),
            sender=payload.get("sender") or None,
            recipient=payload.get("recipient") or None,
            transaction_type=txn_type,
            client_id=payload.get("client_id") or None,
        )


def _as_number(value, name: str) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be a number, got {value!r}") from e
    if not math.isfinite(number):
        raise ValidationError(f"{name} must be finite, got {value!r}")
    return number


def _as_timestamp(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("transaction_timestamp must be epoch milliseconds")
    try:
        ts = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"transaction_timestamp must be epoch milliseconds, got {value!r}"
        ) from e
    if not math.isfinite(ts) or not 0 <= ts <= MAX_TIMESTAMP_MS:
        raise ValidationError(
            f"transaction_timestamp out of range, got {value!r}"
        )
    return int(value) if isinstance(value, int) else int(ts)
