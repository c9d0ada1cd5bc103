"""Tests for the confidence router."""

import pytest

from src.categorize.classifier import ClassificationResult
from src.categorize.router import (
    FRAUD_SUSPICION,
    LOW_CONFIDENCE,
    route,
    status_for,
)
from src.config import Config
from src.database.models import Transaction
from tests.conftest import FIXTURE_CONFIG_DIR


@pytest.fixture
def config():
    return Config(config_dir=FIXTURE_CONFIG_DIR)


@pytest.fixture
def txn():
    return Transaction(
        client_id="c1", client_tx_id="x", raw_message="m",
        transaction_timestamp=1767225600000,
    )


def _result(confidence, flags=None, explanation="AI parsed"):
    return ClassificationResult(
        confidence=confidence, model="test-model", prompt_id="mpesa_parse_v1",
        flags=flags or [], explanation=explanation,
    )


class TestStatus:
    def test_at_threshold_is_cleaned(self, config):
        assert status_for(0.85, config) == "cleaned"

    def test_below_threshold_needs_review(self, config):
        assert status_for(0.84, config) == "pending_review"


class TestLowConfidence:
    def test_high_confidence_no_review(self, config, txn):
        decision = route(txn, _result(0.9), config)
        assert decision.status == "cleaned"
        assert decision.reviews == []

    def test_mid_confidence_normal_priority(self, config, txn):
        decision = route(txn, _result(0.7, explanation="Ambiguous recipient"), config)
        assert decision.status == "pending_review"
        [item] = decision.reviews
        assert item.reason == LOW_CONFIDENCE
        assert item.priority == "normal"
        assert item.notes == "Ambiguous recipient"
        assert item.mpesa_id == txn.id

    def test_fallback_confidence_is_normal_priority(self, config, txn):
        [item] = route(txn, _result(0.5), config).reviews
        assert item.priority == "normal"

    def test_very_low_confidence_high_priority(self, config, txn):
        [item] = route(txn, _result(0.4), config).reviews
        assert item.priority == "high"


class TestFraudFlags:
    def test_flag_opens_critical_review_even_when_confident(self, config, txn):
        decision = route(txn, _result(0.95, flags=["high_amount"]), config)
        assert decision.status == "cleaned"
        [item] = decision.reviews
        assert item.reason == FRAUD_SUSPICION
        assert item.priority == "critical"
        assert item.notes == "Flags: high_amount"

    def test_other_flags_ignored(self, config, txn):
        decision = route(txn, _result(0.95, flags=["new_recipient"]), config)
        assert decision.reviews == []

    def test_both_rules_fire(self, config, txn):
        decision = route(
            txn, _result(0.3, flags=["fraud_suspected", "unusual_time"]), config,
        )
        assert decision.status == "pending_review"
        reasons = {r.reason: r for r in decision.reviews}
        assert reasons[LOW_CONFIDENCE].priority == "high"
        assert reasons[FRAUD_SUSPICION].priority == "critical"
        assert reasons[FRAUD_SUSPICION].notes == "Flags: fraud_suspected, unusual_time"
