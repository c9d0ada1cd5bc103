"""YAML configuration loader for PesaSync.

Loads settings.yaml from the config/ directory. Sections:
  classifier, routing, fraud
Every value has a default, so a section may be omitted entirely.
"""

from pathlib import Path

import yaml


class Config:
    """Loads and provides access to the YAML settings file."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._settings: dict | None = None

    def _load(self, filename: str) -> dict:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping in {path}")
        return data

    @property
    def settings(self) -> dict:
        if self._settings is None:
            self._settings = self._load("settings.yaml")
        return self._settings

    def _section(self, name: str) -> dict:
        return self.settings.get(name) or {}

    # ── Classifier ────────────────────────────────────────

    @property
    def classifier_model(self) -> str:
        return self._section("classifier").get("model", "claude-sonnet-4-20250514")

    @property
    def parse_prompt_id(self) -> str:
        return self._section("classifier").get("prompt_id", "mpesa_parse_v1")

    @property
    def fraud_prompt_id(self) -> str:
        return self._section("classifier").get("fraud_prompt_id", "mpesa_fraud_v1")

    @property
    def classifier_timeout(self) -> float:
        """Seconds before a provider call is abandoned in favour of the fallback."""
        return float(self._section("classifier").get("timeout_seconds", 20))

    @property
    def classifier_max_tokens(self) -> int:
        return int(self._section("classifier").get("max_tokens", 1024))

    # ── Confidence routing ────────────────────────────────

    @property
    def cleaned_threshold(self) -> float:
        return float(self._section("routing").get("cleaned_threshold", 0.85))

    @property
    def high_priority_below(self) -> float:
        return float(self._section("routing").get("high_priority_below", 0.5))

    @property
    def fraud_review_flags(self) -> frozenset[str]:
        flags = self._section("routing").get(
            "fraud_flags", ["high_amount", "fraud_suspected"],
        )
        return frozenset(flags)

    # ── Fraud scan ────────────────────────────────────────

    @property
    def fraud(self) -> dict:
        """Fraud scan settings merged over defaults."""
        defaults = {
            "window_hours": 24,
            "max_rows": 100,
            "ai_sample_size": 20,
            "high_amount": 100000,
            "rapid_count": 5,
            "rapid_window_minutes": 60,
            "quick_withdrawal_amount": 50000,
            "quick_withdrawal_minutes": 30,
            "unusual_hours": [1, 5],
            "timezone": "Africa/Nairobi",
        }
        defaults.update(self._section("fraud"))
        return defaults
