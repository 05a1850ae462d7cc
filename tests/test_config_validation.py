"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from pathlib import Path

import pytest
import yaml

from core.exceptions import ValidationError
from tools.config_validator import (
    TradingConfig,
    build_config,
    load_config,
    load_yaml_file,
    validate_config_file,
)

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config" / "trading.yaml"


def write_config(tmp_path, data):
    path = tmp_path / "trading.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestShippedConfig:
    """config/trading.yaml in the repo"""

    def test_shipped_config_is_valid(self):
        assert validate_config_file(REPO_CONFIG) == []

    def test_shipped_config_matches_defaults(self):
        assert load_config(REPO_CONFIG) == TradingConfig()


class TestDefaults:
    def test_defaults(self):
        config = TradingConfig()

        assert config.max_slippage_pct == 0.5
        assert config.stop_loss_pct == 0.1
        assert config.take_profit_pct == 0.2
        assert config.max_open_positions == 5
        assert config.risk_level == "medium"
        assert config.enable_auto_trading is True
        assert config.cooldown_seconds == 300.0
        assert config.poll_interval_seconds == 60.0
        assert config.request_timeout_seconds == 10.0
        assert config.slippage_bps == 50

    def test_risk_level_normalized(self):
        assert build_config({"risk_level": "HIGH"}).risk_level == "high"


class TestInvalidValues:
    """Each invalid value is reported by field name"""

    @pytest.mark.parametrize("field,value", [
        ("stop_loss_pct", 1.5),
        ("stop_loss_pct", 0),
        ("take_profit_pct", -0.2),
        ("max_open_positions", 0),
        ("risk_level", "reckless"),
        ("max_slippage_pct", 0),
        ("request_timeout_ms", 20_000),
        ("request_timeout_ms", 1_000),
        ("max_retries", 0),
        ("concurrency_limit", 0),
    ])
    def test_field_rejected(self, tmp_path, field, value):
        errors = validate_config_file(write_config(tmp_path, {field: value}))

        assert len(errors) == 1
        assert errors[0].startswith(f"trading.yaml: {field}:")

    def test_unknown_key_rejected(self, tmp_path):
        errors = validate_config_file(write_config(tmp_path, {"max_leverage": 10}))
        assert any("max_leverage" in e for e in errors)

    def test_backoff_below_interval_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            build_config({"min_interval_ms": 5_000, "max_backoff_ms": 1_000})
        assert "max_backoff_ms" in str(exc_info.value)

    def test_duplicate_watchlist_rejected(self):
        with pytest.raises(ValidationError):
            build_config({"watchlist": ["A", "A"]})

    def test_watchlist_entries_trimmed(self):
        assert build_config({"watchlist": [" A ", "", "B"]}).watchlist == ["A", "B"]

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            build_config({"logging": {"level": "CHATTY"}})

    def test_nested_sections(self):
        config = build_config({"cache": {"market_snapshot_ttl_ms": 5_000}, "metrics": {"enabled": True}})

        assert config.cache.market_snapshot_ttl_ms == 5_000
        assert config.cache.analysis_ttl_ms == 60_000
        assert config.metrics.enabled is True


class TestFileHandling:
    def test_missing_file(self, tmp_path):
        errors = validate_config_file(tmp_path / "absent.yaml")
        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "trading.yaml"
        path.write_text("risk_level: [unclosed\n")

        errors = validate_config_file(path)

        assert len(errors) == 1
        assert "Invalid YAML" in errors[0]

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "trading.yaml"
        path.write_text("")

        assert load_yaml_file(path) == {}
        assert load_config(path) == TradingConfig()

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "trading.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValidationError):
            load_config(path)

    def test_load_config_raises_on_invalid_values(self, tmp_path):
        with pytest.raises(ValidationError) as exc_info:
            load_config(write_config(tmp_path, {"stop_loss_pct": 2}))
        assert "stop_loss_pct" in str(exc_info.value)

    def test_load_config_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_config(tmp_path / "absent.yaml")
