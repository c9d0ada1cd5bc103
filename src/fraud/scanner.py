"""Fraud scanner: batch anomaly pass over recently stored transactions.

Runs independently of ingestion (on demand or from an external scheduler):
  load window → rule pass → AI pass on the most recent rows → merge →
  open fraud_suspicion reviews → flag transactions

Re-running over an overlapping window is idempotent: an anomaly only opens
a review when no open (transaction, fraud_suspicion) item exists, and the
"fraud_suspected" flag is only appended once. Dedup state is never touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from src.categorize.classifier import Classifier
from src.categorize.router import FRAUD_SUSPICION
from src.config import Config
from src.database.models import ReviewQueueItem
from src.database.repository import Repository
from src.fraud.rules import Anomaly, evaluate

logger = logging.getLogger(__name__)

FRAUD_FLAG = "fraud_suspected"


@dataclass
class ScanResult:
    """Summary of one scan."""
    anomalies: list[Anomaly] = field(default_factory=list)
    scanned: int = 0
    reviews_created: int = 0

    @property
    def flagged(self) -> int:
        return len(self.anomalies)

    def to_dict(self) -> dict:
        return {
            "flagged": self.flagged,
            "anomalies": [a.to_dict() for a in self.anomalies],
        }


def _to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


class FraudScanner:
    def __init__(self, repo: Repository, classifier: Classifier, config: Config):
        self.repo = repo
        self.classifier = classifier
        self.settings = config.fraud
        self.tz = ZoneInfo(self.settings["timezone"])

    def scan(self, window_start: datetime | None = None) -> ScanResult:
        """Scan transactions with timestamp >= window_start.

        Defaults to the last `window_hours`. The window is capped at
        `max_rows` most recent transactions.
        """
        if window_start is None:
            window_start = datetime.now(timezone.utc) - timedelta(
                hours=self.settings["window_hours"]
            )
        window = self.repo.get_transactions_since(
            _to_ms(window_start), limit=self.settings["max_rows"],
        )
        logger.info("Analyzing %d recent transactions for fraud", len(window))
        if not window:
            return ScanResult()

        anomalies: list[Anomaly] = []
        for txn in window:
            anomaly = evaluate(txn, window, self.settings, self.tz)
            if anomaly is not None:
                anomalies.append(anomaly)

        self._merge_ai_anomalies(window, anomalies)

        result = ScanResult(anomalies=anomalies, scanned=len(window))
        result.reviews_created = self._flag(anomalies)
        logger.info(
            "Flagged %d suspicious transactions (%d new reviews)",
            result.flagged, result.reviews_created,
        )
        return result

    def _merge_ai_anomalies(self, window, anomalies: list[Anomaly]) -> None:
        # window is newest first, so the head is the most recent N
        sample = window[: self.settings["ai_sample_size"]]
        window_ids = {t.id for t in window}
        seen = {a.transaction_id for a in anomalies}
        for entry in self.classifier.detect_anomalies(sample):
            txn_id = entry["transaction_id"]
            if txn_id in seen:
                continue
            if txn_id not in window_ids:
                logger.warning("AI anomaly for transaction outside window ignored: %s", txn_id)
                continue
            anomalies.append(Anomaly(
                transaction_id=txn_id,
                severity=entry["severity"],
                explanation=entry["explanation"],
                source="ai",
            ))
            seen.add(txn_id)

    def _flag(self, anomalies: list[Anomaly]) -> int:
        """Open reviews and set the fraud flag. Returns reviews created."""
        open_keys = self.repo.get_open_review_keys(FRAUD_SUSPICION)
        created = 0
        for anomaly in anomalies:
            key = (anomaly.transaction_id, FRAUD_SUSPICION)
            if key not in open_keys:
                item = ReviewQueueItem(
                    mpesa_id=anomaly.transaction_id,
                    reason=FRAUD_SUSPICION,
                    priority=anomaly.severity,
                    notes=anomaly.explanation,
                )
                if self.repo.insert_review_if_absent(item):
                    created += 1
                open_keys.add(key)
            self.repo.append_transaction_flag(anomaly.transaction_id, FRAUD_FLAG)
        return created
