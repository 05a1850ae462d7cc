"""
Configuration Validation Module

Validates trading.yaml against Pydantic schemas so a bad config is caught
before the engine starts.

Usage:
    from tools.config_validator import validate_config_file

    errors = validate_config_file("config/trading.yaml")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError
from core.models import WRAPPED_SOL_MINT

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/trading.yaml")


class CacheConfig(BaseModel):
    """TTLs for the named caches (milliseconds)"""
    model_config = ConfigDict(extra="forbid")

    market_snapshot_ttl_ms: int = Field(default=30_000, gt=0, description="Price/liquidity snapshots")
    analysis_ttl_ms: int = Field(default=60_000, gt=0, description="Analysis bundles")
    batch_display_ttl_ms: int = Field(default=30_000, gt=0, description="Batch results shown in the dashboard")
    cleanup_interval_ms: int = Field(default=60_000, gt=0, description="Expired-entry sweep interval")


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = Field(default="INFO", description="Root log level")
    file: str = Field(default="logs/trader.log", description="Log file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{v}'")
        return level


class MetricsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=False, description="Start the Prometheus exporter")
    port: int = Field(default=9100, gt=0, lt=65536, description="Exporter port")


class TradingConfig(BaseModel):
    """Complete trading configuration schema"""
    model_config = ConfigDict(extra="forbid")

    # Risk
    max_slippage_pct: float = Field(default=0.5, gt=0, le=100, description="Max tolerated slippage %")
    max_trade_size_usd: float = Field(default=100.0, gt=0, description="Upper bound per trade (USD)")
    min_liquidity_usd: float = Field(default=1000.0, ge=0, description="Minimum pool liquidity for BUYs")
    stop_loss_pct: float = Field(default=0.1, gt=0, lt=1, description="Stop loss as a fraction of entry")
    take_profit_pct: float = Field(default=0.2, gt=0, description="Take profit as a fraction of entry")
    max_open_positions: int = Field(default=5, gt=0, description="Max concurrently OPEN positions")
    risk_level: Literal["low", "medium", "high"] = Field(default="medium", description="Sizing multiplier")
    enable_auto_trading: bool = Field(default=True, description="Master switch for execution")
    allow_multiple_positions_per_token: bool = Field(
        default=True, description="Allow a BUY for a token that already has an OPEN position"
    )
    min_move_pct: float = Field(default=5.0, ge=0, description="Min predicted move % for prediction signals")

    # Timing
    cooldown_ms: int = Field(default=300_000, ge=0, description="Per-token signal cooldown")
    poll_interval_ms: int = Field(default=60_000, gt=0, description="Position monitor interval")
    scan_interval_ms: int = Field(default=30_000, gt=0, description="Watchlist scan interval")
    concurrency_limit: int = Field(default=3, gt=0, description="Max in-flight batch calls")

    # External calls
    min_interval_ms: int = Field(default=2_000, ge=0, description="Min spacing between calls per resource")
    max_backoff_ms: int = Field(default=30_000, gt=0, description="Backoff cap")
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts for retryable failures")
    request_timeout_ms: int = Field(default=10_000, ge=5_000, le=10_000, description="Per-call timeout")

    # Venue
    base_asset: str = Field(default=WRAPPED_SOL_MINT, min_length=1, description="Asset BUYs are paid in")
    max_simulated_slippage_pct: float = Field(default=2.0, ge=0, le=100, description="Paper venue slippage cap")

    watchlist: List[str] = Field(default_factory=list, description="Tokens scanned for opportunities")

    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @field_validator("risk_level", mode="before")
    @classmethod
    def normalize_risk_level(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator("watchlist")
    @classmethod
    def validate_watchlist(cls, v: List[str]) -> List[str]:
        cleaned = [token.strip() for token in v if token and token.strip()]
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("watchlist contains duplicate tokens")
        return cleaned

    @model_validator(mode="after")
    def check_consistency(self) -> "TradingConfig":
        if self.max_backoff_ms < self.min_interval_ms:
            raise ValueError(
                f"max_backoff_ms ({self.max_backoff_ms}) must be >= min_interval_ms ({self.min_interval_ms})"
            )
        return self

    # Second-based views used by the runtime components
    @property
    def cooldown_seconds(self) -> float:
        return self.cooldown_ms / 1000.0

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def scan_interval_seconds(self) -> float:
        return self.scan_interval_ms / 1000.0

    @property
    def min_interval_seconds(self) -> float:
        return self.min_interval_ms / 1000.0

    @property
    def max_backoff_seconds(self) -> float:
        return self.max_backoff_ms / 1000.0

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def slippage_bps(self) -> int:
        return int(round(self.max_slippage_pct * 100))


def _format_errors(error: PydanticValidationError, prefix: str = "") -> List[str]:
    messages = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in item["loc"]) or "config"
        messages.append(f"{prefix}{field}: {item['msg']}")
    return messages


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"{file_path}: top level must be a mapping, got {type(data).__name__}")
    return data


def build_config(data: Dict[str, Any]) -> TradingConfig:
    """Validate a mapping into a TradingConfig, raising our ValidationError on failure."""
    try:
        return TradingConfig(**data)
    except PydanticValidationError as e:
        raise ValidationError("; ".join(_format_errors(e)), source="config", original=e)


def load_config(path: Union[str, Path] = DEFAULT_CONFIG_PATH) -> TradingConfig:
    """Load and validate a trading config file."""
    file_path = Path(path)
    try:
        data = load_yaml_file(file_path)
    except (FileNotFoundError, yaml.YAMLError) as e:
        raise ValidationError(str(e), source=str(file_path), original=e)
    config = build_config(data)
    logger.info(f"Loaded config from {file_path} (risk_level={config.risk_level}, "
                f"auto_trading={config.enable_auto_trading})")
    return config


def validate_config_file(path: Union[str, Path] = DEFAULT_CONFIG_PATH) -> List[str]:
    """
    Validate a trading config file.

    Returns:
        List of error messages (empty if valid)
    """
    file_path = Path(path)
    name = file_path.name
    errors: List[str] = []

    try:
        TradingConfig(**load_yaml_file(file_path))
        logger.info(f"✅ {name} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{name}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{name}: Invalid YAML - {e}")
    except PydanticValidationError as e:
        errors.extend(_format_errors(e, prefix=f"{name}: "))

    if errors:
        logger.error(f"❌ {len(errors)} validation error(s) found in {name}")
    return errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_path = sys.argv[1] if len(sys.argv) > 1 else str(DEFAULT_CONFIG_PATH)
    errors = validate_config_file(config_path)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ Configuration file is valid!\n")
        sys.exit(0)
