"""Ingestion gateway: authenticate → dedup → classify → route → insert.

Orchestrates one upload request from a device, either a single record or
a batch. Batch records are processed sequentially and independently: a
failure on one record is logged and reported, and the rest continue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from src.categorize.classifier import Classifier
from src.categorize.router import route
from src.config import Config
from src.database.dedup import DedupEngine
from src.database.models import MobileClient, Transaction
from src.database.repository import DuplicateTransactionError, Repository
from src.devices.registry import DeviceRegistry
from src.ingest.records import IncomingRecord, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class IngestOutcome:
    """Result of ingesting a single record."""
    status: str  # "inserted", "duplicate"
    transaction: Transaction
    duplicate_of: str | None = None
    tier: str | None = None  # dedup key that matched

    @property
    def is_duplicate(self) -> bool:
        return self.status == "duplicate"

    def to_dict(self) -> dict:
        body = {"success": True, "transaction": self.transaction.snapshot()}
        if self.is_duplicate:
            body["duplicate"] = True
            body["duplicate_of"] = self.duplicate_of
        return body


@dataclass
class BatchReport:
    """Aggregate result of a batch upload."""
    inserted: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)  # client_tx_ids
    errors: list[dict] = field(default_factory=list)
    pending_review: list[str] = field(default_factory=list)
    processed: int = 0

    def to_dict(self) -> dict:
        return {
            "inserted": list(self.inserted),
            "duplicates": list(self.duplicates),
            "errors": list(self.errors),
            "pending_review": list(self.pending_review),
            "processed": self.processed,
        }


class IngestionGateway:
    """Compose device auth, dedup, classification and routing per request.

    Args:
        repo: Database repository.
        registry: Device registry for token authentication.
        dedup: Dedup engine.
        classifier: ProviderClassifier or FallbackClassifier.
        config: Application config (routing thresholds).
    """

    def __init__(
        self,
        repo: Repository,
        registry: DeviceRegistry,
        dedup: DedupEngine,
        classifier: Classifier,
        config: Config,
    ):
        self.repo = repo
        self.registry = registry
        self.dedup = dedup
        self.classifier = classifier
        self.config = config

    # ── Single-record mode ───────────────────────────────

    def ingest(self, token: str | None, payload: dict) -> IngestOutcome:
        """Ingest one record.

        Raises:
            AuthenticationError: Unknown or inactive device.
            ValidationError: Missing or malformed fields.
            StorageError: The insert failed for a reason other than a duplicate.
        """
        client = self.registry.authenticate(token)
        record = IncomingRecord.from_payload(payload)
        outcome = self._process(record, client)
        self.registry.touch(client.id)
        return outcome

    # ── Batch mode ───────────────────────────────────────

    def ingest_batch(self, token: str | None, records: list) -> BatchReport:
        """Ingest a batch, isolating per-record failures.

        Raises:
            AuthenticationError: Unknown or inactive device. Nothing is processed.
            ValidationError: records is not a list.
        """
        client = self.registry.authenticate(token)
        if not isinstance(records, list):
            raise ValidationError("Records array is required")

        logger.info("Processing %d records from device %s", len(records), client.device_id)
        report = BatchReport()
        for index, payload in enumerate(records):
            label = _record_label(payload, index)
            try:
                record = IncomingRecord.from_payload(payload)
                outcome = self._process(record, client)
            except Exception as e:
                logger.exception("Error processing record %s", label)
                report.errors.append({"record": label, "error": str(e)})
                continue

            report.processed += 1
            if outcome.is_duplicate:
                report.duplicates.append(record.client_tx_id)
                continue
            report.inserted.append(outcome.transaction.id)
            if outcome.transaction.status == "pending_review":
                report.pending_review.append(outcome.transaction.id)

        if report.processed:
            self.registry.touch(client.id)

        logger.info(
            "Batch results: %d inserted, %d duplicates, %d errors",
            len(report.inserted), len(report.duplicates), len(report.errors),
        )
        return report

    # ── Per-record pipeline ──────────────────────────────

    def _process(self, record: IncomingRecord, client: MobileClient) -> IngestOutcome:
        if record.client_id and record.client_id != client.id:
            raise ValidationError(
                f"Record client_id {record.client_id} does not match the authenticated device"
            )

        dedup = self.dedup.find_duplicate(record, client.id)
        if dedup.is_duplicate:
            logger.info(
                "Duplicate %s matched %s on %s",
                record.client_tx_id, dedup.matched_txn.id, dedup.tier,
            )
            return IngestOutcome(
                status="duplicate",
                transaction=dedup.matched_txn,
                duplicate_of=dedup.matched_txn.id,
                tier=dedup.tier,
            )

        result = self.classifier.classify(record.raw_message)

        txn_type = record.transaction_type
        if result.transaction_type and result.transaction_type != "Unknown":
            txn_type = result.transaction_type

        txn = Transaction(
            client_id=client.id,
            client_tx_id=record.client_tx_id,
            raw_message=record.raw_message,
            transaction_timestamp=record.transaction_timestamp,
            transaction_code=record.transaction_code,
            amount=record.amount,
            balance=record.balance,
            sender=record.sender,
            recipient=record.recipient,
            transaction_type=txn_type,
            ai_metadata=result.to_metadata(),
        )
        decision = route(txn, result, self.config)
        txn.status = decision.status

        try:
            self.repo.insert_transaction(txn, decision.reviews)
        except DuplicateTransactionError as e:
            # Lost the race to a concurrent upload of the same record
            existing = self.repo.get_transaction(e.existing_id) if e.existing_id else None
            if existing is None:
                raise
            logger.info(
                "Duplicate %s detected at insert on %s (matched %s)",
                record.client_tx_id, e.key, existing.id,
            )
            return IngestOutcome(
                status="duplicate",
                transaction=existing,
                duplicate_of=existing.id,
                tier=e.key,
            )

        logger.info("Inserted %s (status: %s)", txn.id, txn.status)
        return IngestOutcome(status="inserted", transaction=txn)


def _record_label(payload, index: int) -> str:
    if isinstance(payload, dict) and payload.get("client_tx_id"):
        return str(payload["client_tx_id"])
    return f"#{index}"
