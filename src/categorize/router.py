"""Confidence router: classification → transaction status + review items.

Two independent rules, either or both may fire:
1. Low confidence: below the cleaned threshold opens a "low_confidence"
   review, "high" priority under the high-priority threshold, else "normal".
2. Fraud flags: a classifier flag in the configured set opens a
   "critical" "fraud_suspicion" review regardless of confidence.

The router never touches storage; the gateway persists its output together
with the transaction insert.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from src.categorize.classifier import ClassificationResult
from src.config import Config
from src.database.models import ReviewQueueItem, Transaction

LOW_CONFIDENCE = "low_confidence"
FRAUD_SUSPICION = "fraud_suspicion"


@dataclass
class RouteDecision:
    status: str  # "cleaned" or "pending_review"
    reviews: list[ReviewQueueItem] = field(default_factory=list)


def status_for(confidence: float, config: Config) -> str:
    return "cleaned" if confidence >= config.cleaned_threshold else "pending_review"


def low_confidence_review(
    txn: Transaction, result: ClassificationResult, config: Config,
) -> ReviewQueueItem | None:
    if status_for(result.confidence, config) != "pending_review":
        return None
    priority = "high" if result.confidence < config.high_priority_below else "normal"
    return ReviewQueueItem(
        mpesa_id=txn.id,
        reason=LOW_CONFIDENCE,
        priority=priority,
        notes=result.explanation,
    )


def fraud_flag_review(
    txn: Transaction, result: ClassificationResult, config: Config,
) -> ReviewQueueItem | None:
    hits = [f for f in result.flags if f in config.fraud_review_flags]
    if not hits:
        return None
    return ReviewQueueItem(
        mpesa_id=txn.id,
        reason=FRAUD_SUSPICION,
        priority="critical",
        notes=f"Flags: {', '.join(result.flags)}",
    )


_RULES = (low_confidence_review, fraud_flag_review)


def route(
    txn: Transaction, result: ClassificationResult, config: Config,
) -> RouteDecision:
    reviews = []
    for rule in _RULES:
        item = rule(txn, result, config)
        if item is not None:
            reviews.append(item)
    return RouteDecision(status=status_for(result.confidence, config), reviews=reviews)
