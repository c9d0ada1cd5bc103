"""Tests for review resolution."""

from pathlib import Path

import pytest

from src.database.models import MobileClient, ReviewQueueItem, Transaction
from src.database.repository import Repository
from src.review.resolution import (
    ReviewAlreadyResolvedError,
    ReviewNotFoundError,
    resolve_review,
)

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "src" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def item(repo):
    client = repo.insert_client(MobileClient(device_id="pixel-7", token_hash="h1"))
    txn = Transaction(
        client_id=client.id, client_tx_id="ctx-001", raw_message="m",
        transaction_timestamp=1767225600000, amount=1500.0,
        status="pending_review",
    )
    review = ReviewQueueItem(mpesa_id=txn.id, reason="low_confidence")
    repo.insert_transaction(txn, [review])
    return review


class TestResolve:
    def test_accept_cleans_transaction(self, repo, item):
        result = resolve_review(repo, item.id, "accepted")
        assert result.review.resolution == "accepted"
        assert result.review.resolved_at is not None
        assert result.transaction.status == "cleaned"
        assert repo.get_transaction(item.mpesa_id).status == "cleaned"

    def test_reject_rejects_transaction(self, repo, item):
        result = resolve_review(repo, item.id, "rejected")
        assert result.transaction.status == "rejected"

    def test_corrections_applied(self, repo, item):
        result = resolve_review(
            repo, item.id, "accepted",
            {"amount": 1550.0, "transaction_type": "Paybill"},
        )
        assert result.transaction.amount == 1550.0
        assert result.transaction.transaction_type == "Paybill"

    def test_to_dict(self, repo, item):
        body = resolve_review(repo, item.id, "accepted").to_dict()
        assert body["review"]["id"] == item.id
        assert body["review"]["resolution"] == "accepted"
        assert body["transaction"]["status"] == "cleaned"


class TestErrors:
    def test_unknown_resolution(self, repo, item):
        with pytest.raises(ValueError, match="Unknown resolution"):
            resolve_review(repo, item.id, "maybe")
        assert repo.get_review(item.id).is_open

    def test_not_found(self, repo):
        with pytest.raises(ReviewNotFoundError):
            resolve_review(repo, "ghost", "accepted")

    def test_already_resolved(self, repo, item):
        resolve_review(repo, item.id, "accepted")
        with pytest.raises(ReviewAlreadyResolvedError) as exc:
            resolve_review(repo, item.id, "rejected")
        assert exc.value.resolution == "accepted"
        assert repo.get_transaction(item.mpesa_id).status == "cleaned"

    def test_status_not_correctable(self, repo, item):
        with pytest.raises(ValueError):
            resolve_review(repo, item.id, "accepted", {"status": "uploaded"})
        assert repo.get_review(item.id).is_open
        assert repo.get_transaction(item.mpesa_id).status == "pending_review"

    def test_concurrent_resolver_loses(self, repo, item, monkeypatch):
        # Another reviewer closes the item between our read and our update
        original = repo.resolve_review

        def racing_resolve(review_id, resolution, status, updates=None):
            original(review_id, "rejected", "rejected")
            return original(review_id, resolution, status, updates)

        monkeypatch.setattr(repo, "resolve_review", racing_resolve)
        with pytest.raises(ReviewAlreadyResolvedError):
            resolve_review(repo, item.id, "accepted")
        assert repo.get_transaction(item.mpesa_id).status == "rejected"
