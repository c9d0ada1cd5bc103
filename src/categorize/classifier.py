"""AI classification of raw M-PESA messages, with a deterministic fallback.

ProviderClassifier sends the message to the model through a claude_fn
callback (system: str, prompt: str) -> str. A provider error, timeout or
malformed response yields the fixed fallback result instead of raising.
Every provider attempt is written to ai_processing_logs.

FallbackClassifier never calls out. It is used when no API key is set.
"""

from __future__ import annotations

import json
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from src.config import Config
from src.database.models import (
    REVIEW_PRIORITIES,
    TRANSACTION_TYPES,
    AiProcessingLog,
    Transaction,
)
from src.database.repository import Repository

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.5
FALLBACK_EXPLANATION = "Fallback parsing"

PARSE_SYSTEM_PROMPT = (
    "You are an M-PESA transaction parser. Analyze the raw message and "
    "return a JSON object with these fields:\n"
    '  - "confidence": float 0.0-1.0 indicating parsing confidence\n'
    '  - "transaction_type": one of ' + "|".join(TRANSACTION_TYPES) + "\n"
    '  - "tags": array of relevant tags like ["income", "business", "personal"]\n'
    '  - "flags": array of warning flags like ["high_amount", "unusual_time", '
    '"new_recipient", "fraud_suspected"]\n'
    '  - "explanation": brief reason for the classification\n'
    "Return ONLY the JSON object, no other text."
)

FRAUD_SYSTEM_PROMPT = (
    "You are a fraud detection assistant for M-PESA transactions. Analyze "
    "the transaction patterns and identify any suspicious activity. Return "
    "a JSON array of anomalies, each an object with:\n"
    '  - "transaction_id": the id of the suspicious transaction\n'
    '  - "severity": one of low|normal|high|critical\n'
    '  - "explanation": one sentence\n'
    "Return an empty array if nothing is suspicious. "
    "Return ONLY the JSON array, no other text."
)


class ClassificationUnavailable(Exception):
    """The provider failed or answered with something unusable."""


@dataclass
class ClassificationResult:
    """Structured interpretation of one raw message."""
    confidence: float
    model: str
    prompt_id: str
    transaction_type: str | None = None
    tags: list[str] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)
    explanation: str = ""
    is_fallback: bool = False

    def to_metadata(self) -> dict:
        """The ai_metadata object stored on the transaction."""
        return {
            "model": self.model,
            "prompt_id": self.prompt_id,
            "confidence": self.confidence,
            "tags": list(self.tags),
            "flags": list(self.flags),
            "explanation": self.explanation,
        }


def fallback_result(model: str, prompt_id: str) -> ClassificationResult:
    return ClassificationResult(
        confidence=FALLBACK_CONFIDENCE,
        model=model,
        prompt_id=prompt_id,
        explanation=FALLBACK_EXPLANATION,
        is_fallback=True,
    )


class Classifier(ABC):
    """Capability interface used by the ingestion gateway and fraud scanner."""

    @abstractmethod
    def classify(self, raw_message: str) -> ClassificationResult:
        """Classify a raw message. Must not raise for provider problems."""

    @abstractmethod
    def detect_anomalies(self, transactions: list[Transaction]) -> list[dict]:
        """Return [{transaction_id, severity, explanation}] for suspicious rows."""


class FallbackClassifier(Classifier):
    def __init__(self, config: Config):
        self.model = config.classifier_model
        self.prompt_id = config.parse_prompt_id

    def classify(self, raw_message: str) -> ClassificationResult:
        return fallback_result(self.model, self.prompt_id)

    def detect_anomalies(self, transactions: list[Transaction]) -> list[dict]:
        return []


class ProviderClassifier(Classifier):
    """Classifier backed by an external language model.

    Args:
        claude_fn: Callable (system: str, prompt: str) -> str. Expected to
            enforce its own timeout and raise on failure.
        repo: Repository for the audit log.
        config: Provides model id and prompt ids.
    """

    def __init__(self, claude_fn, repo: Repository, config: Config):
        self.claude_fn = claude_fn
        self.repo = repo
        self.model = config.classifier_model
        self.prompt_id = config.parse_prompt_id
        self.fraud_prompt_id = config.fraud_prompt_id

    def classify(self, raw_message: str) -> ClassificationResult:
        user_prompt = f"Parse this M-PESA message:\n{raw_message}"
        start = time.monotonic()
        response: str | None = None
        try:
            response = self.claude_fn(PARSE_SYSTEM_PROMPT, user_prompt)
            result = _parse_classification(response, self.model, self.prompt_id)
        except Exception as e:
            logger.warning("Classification unavailable, using fallback: %s", e)
            self._log_attempt(
                self.prompt_id, {"raw_message": raw_message}, response,
                start, success=False, error=str(e),
            )
            return fallback_result(self.model, self.prompt_id)

        self._log_attempt(
            self.prompt_id, {"raw_message": raw_message}, response,
            start, success=True,
        )
        return result

    def detect_anomalies(self, transactions: list[Transaction]) -> list[dict]:
        if not transactions:
            return []
        summary = [
            {
                "id": t.id,
                "type": t.transaction_type,
                "amount": t.amount,
                "timestamp": t.transaction_timestamp,
                "sender": t.sender,
                "recipient": t.recipient,
            }
            for t in transactions
        ]
        user_prompt = (
            "Analyze these transactions for fraud:\n"
            + json.dumps(summary, indent=2)
        )
        start = time.monotonic()
        response: str | None = None
        try:
            response = self.claude_fn(FRAUD_SYSTEM_PROMPT, user_prompt)
            anomalies = _parse_anomalies(response)
        except Exception as e:
            logger.warning("AI anomaly detection unavailable: %s", e)
            self._log_attempt(
                self.fraud_prompt_id, {"transaction_count": len(summary)},
                response, start, success=False, error=str(e),
            )
            return []

        self._log_attempt(
            self.fraud_prompt_id, {"transaction_count": len(summary)},
            response, start, success=True,
        )
        return anomalies

    def _log_attempt(
        self,
        prompt_id: str,
        input_data: dict,
        output: str | None,
        start: float,
        success: bool,
        error: str | None = None,
    ) -> None:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        self.repo.insert_ai_log(AiProcessingLog(
            model=self.model,
            prompt_id=prompt_id,
            input_data=json.dumps(input_data),
            output_data=output,
            processing_time_ms=elapsed_ms,
            success=success,
            error_message=error,
        ))


def _strip_fences(response: str) -> str:
    text = response.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [line for line in lines if not line.strip().startswith("```")]
        text = "\n".join(lines)
    return text.strip()


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v]


def _as_confidence(value) -> float:
    # bool, NaN and inf are not scores
    if value is None or isinstance(value, bool):
        return FALLBACK_CONFIDENCE
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return FALLBACK_CONFIDENCE
    if not math.isfinite(confidence):
        logger.warning("Model returned non-finite confidence %r", value)
        return FALLBACK_CONFIDENCE
    return max(0.0, min(1.0, confidence))


def _parse_classification(
    response: str, model: str, prompt_id: str
) -> ClassificationResult:
    """Parse the model's JSON object into a ClassificationResult.

    Raises:
        ClassificationUnavailable: If the response is not a JSON object.
    """
    if not response:
        raise ClassificationUnavailable("Empty response")
    text = _strip_fences(response)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ClassificationUnavailable(
            f"Unparseable response: {text[:200]}"
        ) from e
    if not isinstance(data, dict):
        raise ClassificationUnavailable(f"Response is not an object: {type(data).__name__}")

    confidence = _as_confidence(data.get("confidence"))

    txn_type = data.get("transaction_type")
    if txn_type not in TRANSACTION_TYPES:
        if txn_type:
            logger.warning("Model returned unknown transaction_type '%s'", txn_type)
        txn_type = None

    return ClassificationResult(
        confidence=confidence,
        model=model,
        prompt_id=prompt_id,
        transaction_type=txn_type,
        tags=_string_list(data.get("tags")),
        flags=_string_list(data.get("flags")),
        explanation=str(data.get("explanation") or "AI parsed"),
    )


def _parse_anomalies(response: str) -> list[dict]:
    """Parse the model's JSON array of anomalies.

    Entries without a transaction_id are dropped; unknown severities
    become "normal".

    Raises:
        ClassificationUnavailable: If the response is not a JSON array.
    """
    if not response:
        raise ClassificationUnavailable("Empty response")
    text = _strip_fences(response)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ClassificationUnavailable(
            f"Unparseable response: {text[:200]}"
        ) from e
    if not isinstance(data, list):
        raise ClassificationUnavailable(f"Response is not an array: {type(data).__name__}")

    anomalies = []
    for entry in data:
        if not isinstance(entry, dict) or not entry.get("transaction_id"):
            continue
        severity = entry.get("severity")
        if severity not in REVIEW_PRIORITIES:
            severity = "normal"
        anomalies.append({
            "transaction_id": str(entry["transaction_id"]),
            "severity": severity,
            "explanation": str(entry.get("explanation") or "AI flagged"),
        })
    return anomalies
