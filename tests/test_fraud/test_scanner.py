"""Tests for the batch fraud scanner."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from src.categorize.classifier import Classifier, FallbackClassifier
from src.config import Config
from src.database.models import MobileClient, ReviewQueueItem, Transaction
from src.database.repository import Repository
from src.fraud.scanner import FRAUD_FLAG, FraudScanner
from tests.conftest import FIXTURE_CONFIG_DIR

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "src" / "database" / "migrations"

NOON = 1767268800000  # 2026-01-01T12:00:00Z
MINUTE = 60_000
WINDOW_START = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def config():
    return Config(config_dir=FIXTURE_CONFIG_DIR)


@pytest.fixture
def client(repo):
    return repo.insert_client(MobileClient(device_id="pixel-7", token_hash="h1"))


class StubClassifier(Classifier):
    def __init__(self, anomalies):
        self.anomalies = anomalies
        self.seen: list[Transaction] = []

    def classify(self, raw_message):
        raise AssertionError("scanner must not classify")

    def detect_anomalies(self, transactions):
        self.seen = list(transactions)
        return self.anomalies


def _store(repo, client_id, offset_min, **kw):
    defaults = dict(
        client_id=client_id,
        client_tx_id=f"ctx-{offset_min}",
        raw_message=f"message {offset_min}",
        transaction_timestamp=NOON + offset_min * MINUTE,
        amount=1000.0,
        transaction_type="SendMoney",
        status="cleaned",
    )
    defaults.update(kw)
    txn = Transaction(**defaults)
    repo.insert_transaction(txn)
    return txn


def _deposit_then_withdrawal(repo, client_id):
    deposit = _store(repo, client_id, 0, transaction_type="Deposit", amount=80000.0)
    withdrawal = _store(repo, client_id, 10, transaction_type="Withdrawal", amount=60000.0)
    return deposit, withdrawal


class TestRuleScan:
    def test_flags_quick_withdrawal(self, repo, config, client):
        deposit, withdrawal = _deposit_then_withdrawal(repo, client.id)
        scanner = FraudScanner(repo, FallbackClassifier(config), config)
        result = scanner.scan(WINDOW_START)

        assert result.scanned == 2
        assert result.flagged == 1
        assert result.reviews_created == 1
        [anomaly] = result.anomalies
        assert anomaly.transaction_id == withdrawal.id
        assert anomaly.severity == "critical"

        [item] = repo.get_reviews_for_transaction(withdrawal.id)
        assert item.reason == "fraud_suspicion"
        assert item.priority == "critical"
        assert item.notes == "Detected: quick_deposit_withdrawal"
        assert FRAUD_FLAG in repo.get_transaction(withdrawal.id).flags
        assert repo.get_transaction(deposit.id).flags == []

    def test_rapid_burst_flags_all(self, repo, config, client):
        txns = [_store(repo, client.id, m) for m in (0, 9, 18, 27, 36, 45)]
        result = FraudScanner(repo, FallbackClassifier(config), config).scan(WINDOW_START)
        assert {a.transaction_id for a in result.anomalies} == {t.id for t in txns}
        assert all(a.severity == "high" for a in result.anomalies)

    def test_empty_window(self, repo, config, client):
        _store(repo, client.id, 0)
        later = datetime(2026, 2, 1, tzinfo=timezone.utc)
        result = FraudScanner(repo, FallbackClassifier(config), config).scan(later)
        assert result.scanned == 0
        assert result.to_dict() == {"flagged": 0, "anomalies": []}

    def test_naive_window_start_is_utc(self, repo, config, client):
        _deposit_then_withdrawal(repo, client.id)
        scanner = FraudScanner(repo, FallbackClassifier(config), config)
        assert scanner.scan(datetime(2026, 1, 1)).scanned == 2

    def test_status_and_dedup_state_untouched(self, repo, config, client):
        _, withdrawal = _deposit_then_withdrawal(repo, client.id)
        FraudScanner(repo, FallbackClassifier(config), config).scan(WINDOW_START)
        stored = repo.get_transaction(withdrawal.id)
        assert stored.status == "cleaned"
        assert stored.client_tx_id == withdrawal.client_tx_id


class TestUnconvertibleTimestamp:
    def test_far_future_row_does_not_abort_scan(self, repo, config, client):
        _store(repo, client.id, 0, client_tx_id="ctx-far", raw_message="far",
               transaction_timestamp=10**17)
        big = _store(repo, client.id, 5, amount=200000.0)
        scanner = FraudScanner(repo, FallbackClassifier(config), config)
        result = scanner.scan(datetime(2020, 1, 1, tzinfo=timezone.utc))
        assert result.scanned == 2
        assert [a.transaction_id for a in result.anomalies] == [big.id]


class TestIdempotency:
    def test_rescan_keeps_one_open_review(self, repo, config, client):
        _, withdrawal = _deposit_then_withdrawal(repo, client.id)
        scanner = FraudScanner(repo, FallbackClassifier(config), config)
        first = scanner.scan(WINDOW_START)
        second = scanner.scan(WINDOW_START)

        assert first.reviews_created == 1
        assert second.reviews_created == 0
        assert second.flagged == 1
        assert len(repo.get_reviews_for_transaction(withdrawal.id, open_only=True)) == 1
        assert repo.get_transaction(withdrawal.id).flags == [FRAUD_FLAG]

    def test_resolved_review_can_reopen(self, repo, config, client):
        _, withdrawal = _deposit_then_withdrawal(repo, client.id)
        scanner = FraudScanner(repo, FallbackClassifier(config), config)
        scanner.scan(WINDOW_START)
        [item] = repo.get_reviews_for_transaction(withdrawal.id)
        repo.resolve_review(item.id, "accepted", "cleaned")

        assert scanner.scan(WINDOW_START).reviews_created == 1
        assert len(repo.get_reviews_for_transaction(withdrawal.id)) == 2

    def test_existing_ingest_review_not_duplicated(self, repo, config, client):
        deposit = _store(repo, client.id, 0, transaction_type="Deposit", amount=80000.0)
        withdrawal = Transaction(
            client_id=client.id, client_tx_id="ctx-w", raw_message="withdrawal",
            transaction_timestamp=NOON + 10 * MINUTE, amount=60000.0,
            transaction_type="Withdrawal",
        )
        repo.insert_transaction(withdrawal, [ReviewQueueItem(
            mpesa_id=withdrawal.id, reason="fraud_suspicion", priority="critical",
        )])
        result = FraudScanner(repo, FallbackClassifier(config), config).scan(WINDOW_START)
        assert result.reviews_created == 0
        assert len(repo.get_reviews_for_transaction(withdrawal.id)) == 1
        assert repo.get_reviews_for_transaction(deposit.id) == []


class TestAiMerge:
    def test_ai_anomaly_added(self, repo, config, client):
        quiet = _store(repo, client.id, 0)
        classifier = StubClassifier([{
            "transaction_id": quiet.id, "severity": "high",
            "explanation": "Unusual recipient pattern",
        }])
        result = FraudScanner(repo, classifier, config).scan(WINDOW_START)
        [anomaly] = result.anomalies
        assert anomaly.source == "ai"
        [item] = repo.get_reviews_for_transaction(quiet.id)
        assert item.priority == "high"
        assert item.notes == "Unusual recipient pattern"

    def test_rule_result_wins_for_same_transaction(self, repo, config, client):
        _, withdrawal = _deposit_then_withdrawal(repo, client.id)
        classifier = StubClassifier([{
            "transaction_id": withdrawal.id, "severity": "low", "explanation": "meh",
        }])
        result = FraudScanner(repo, classifier, config).scan(WINDOW_START)
        assert result.flagged == 1
        assert result.anomalies[0].severity == "critical"

    def test_ids_outside_window_ignored(self, repo, config, client):
        _store(repo, client.id, 0)
        classifier = StubClassifier([{
            "transaction_id": "not-in-window", "severity": "high", "explanation": "x",
        }])
        result = FraudScanner(repo, classifier, config).scan(WINDOW_START)
        assert result.flagged == 0

    def test_ai_sees_most_recent_sample(self, repo, config, client):
        for m in range(0, 250, 10):
            _store(repo, client.id, m)
        classifier = StubClassifier([])
        FraudScanner(repo, classifier, config).scan(WINDOW_START)
        assert len(classifier.seen) == 20
        assert classifier.seen[0].transaction_timestamp == NOON + 240 * MINUTE
