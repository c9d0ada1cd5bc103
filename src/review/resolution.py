"""Review resolution: the only way an open review item is closed.

    open ──accepted──▶ resolved   transaction.status = "cleaned"
    open ──rejected──▶ resolved   transaction.status = "rejected"

A resolved item is terminal. Optional transaction_updates (corrections made
by the reviewer) are applied in the same database transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.database.models import ReviewQueueItem, Transaction
from src.database.repository import Repository

logger = logging.getLogger(__name__)

RESOLUTION_STATUS = {
    "accepted": "cleaned",
    "rejected": "rejected",
}


class ReviewNotFoundError(Exception):
    def __init__(self, review_id: str):
        self.review_id = review_id
        super().__init__(f"Review item '{review_id}' not found")


class ReviewAlreadyResolvedError(Exception):
    def __init__(self, review_id: str, resolution: str | None = None):
        self.review_id = review_id
        self.resolution = resolution
        super().__init__(f"Review item '{review_id}' is already resolved ({resolution})")


@dataclass
class ResolutionResult:
    review: ReviewQueueItem
    transaction: Transaction

    def to_dict(self) -> dict:
        return {
            "review": {
                "id": self.review.id,
                "mpesa_id": self.review.mpesa_id,
                "reason": self.review.reason,
                "resolution": self.review.resolution,
                "resolved_at": self.review.resolved_at,
            },
            "transaction": self.transaction.snapshot(),
        }


def resolve_review(
    repo: Repository,
    review_id: str,
    resolution: str,
    transaction_updates: dict | None = None,
) -> ResolutionResult:
    """Close a review item and update its transaction.

    Raises:
        ValueError: Unknown resolution, or transaction_updates names a
            column that reviewers may not change.
        ReviewNotFoundError: No item with this id.
        ReviewAlreadyResolvedError: The item was resolved already,
            including by a concurrent resolver.
    """
    status = RESOLUTION_STATUS.get(resolution)
    if status is None:
        raise ValueError(
            f"Unknown resolution '{resolution}', expected one of {sorted(RESOLUTION_STATUS)}"
        )

    item = repo.get_review(review_id)
    if item is None:
        raise ReviewNotFoundError(review_id)
    if not item.is_open:
        raise ReviewAlreadyResolvedError(review_id, item.resolution)

    resolved_at = repo.resolve_review(
        review_id, resolution, status, transaction_updates,
    )
    if resolved_at is None:
        current = repo.get_review(review_id)
        raise ReviewAlreadyResolvedError(
            review_id, current.resolution if current else None,
        )

    logger.info(
        "Resolved review %s (%s) as %s; transaction %s → %s",
        review_id, item.reason, resolution, item.mpesa_id, status,
    )
    return ResolutionResult(
        review=repo.get_review(review_id),
        transaction=repo.get_transaction(item.mpesa_id),
    )
