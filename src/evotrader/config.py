"""Configuration management using Pydantic v2."""

import json
import os
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hard ceiling applied to any model-reported win probability before sizing.
WIN_PROBABILITY_CEILING = 0.75


def parse_list_env(value: Any) -> Any:
    """Parse list values from env (JSON array, comma-separated, or single item)."""
    if value is None:
        return value
    if isinstance(value, str):
        if value.strip() == "":
            return value
        try:
            parsed = json.loads(value)
            if isinstance(parsed, list):
                return parsed
        except json.JSONDecodeError:
            pass
        items = [item.strip() for item in value.split(",") if item.strip()]
        return items if items else value
    return value


def _find_env_file() -> str:
    """Find .env file: check project root first, then CWD."""
    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    env_path = os.path.join(project_root, ".env")
    if os.path.exists(env_path):
        return env_path
    return ".env"


class EvoSettings(BaseSettings):
    """Main configuration for the evotrader control loop."""

    model_config = SettingsConfigDict(
        env_file=_find_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
        env_ignore_empty=True,
    )

    # Capital & risk
    starting_equity: float = Field(
        default=1000.0,
        gt=0,
        description="Fallback equity baseline (USDT) when the exchange balance is unavailable",
    )
    max_drawdown_limit: float = Field(
        default=0.10,
        gt=0,
        le=1,
        description="Drawdown from peak equity (fraction) that latches the governor into HALTED",
    )
    max_position_cap: float = Field(
        default=0.20,
        ge=0,
        le=1,
        description="Upper bound on the Kelly capital fraction risked per trade",
    )
    win_probability_cap: float = Field(
        default=WIN_PROBABILITY_CEILING,
        gt=0,
        le=WIN_PROBABILITY_CEILING,
        description="Cap on model win probability before sizing (may be lowered, never raised)",
    )
    kelly_multiplier: float = Field(
        default=1.0,
        gt=0,
        le=1,
        description="Fractional Kelly multiplier (1.0 = full Kelly, 0.5 = half Kelly)",
    )
    stop_atr_multiple: float = Field(
        default=2.0,
        gt=0,
        description="Stop distance in ATR units when the intent carries no stop-loss percentage",
    )
    max_leverage: int = Field(default=5, ge=1, le=125, description="Maximum leverage per order")

    # Heartbeat
    heartbeat_base_interval_sec: float = Field(default=300.0, gt=0)
    heartbeat_min_interval_sec: float = Field(default=60.0, gt=0)
    heartbeat_max_interval_sec: float = Field(default=900.0, gt=0)
    heartbeat_reference_volatility: float = Field(
        default=0.5,
        gt=0,
        description="ATR as percent of price at which the base interval applies",
    )
    heartbeat_max_growth: float = Field(
        default=2.0,
        ge=1.0,
        description="Largest factor by which the interval may lengthen in one cycle",
    )

    # Execution
    execution_max_attempts: int = Field(default=10, ge=1, description="Submission attempt ceiling")
    execution_base_delay_sec: float = Field(default=0.5, gt=0)
    execution_max_delay_sec: float = Field(default=60.0, gt=0)
    http_timeout_sec: float = Field(default=10.0, gt=0, description="Timeout per network call")

    # Decision source
    decision_timeout_sec: float = Field(default=60.0, gt=0)
    deepseek_api_key: str = Field(default="", description="DeepSeek API key (empty = no-trade brain)")
    deepseek_base_url: str = Field(default="https://api.deepseek.com")
    deepseek_model: str = Field(default="deepseek-reasoner")
    strategy_version: str = Field(default="v6.0-deep-reasoning")

    # Memory
    memory_query_limit: int = Field(default=5, ge=1, le=50)
    memory_write_timeout_sec: float = Field(default=5.0, gt=0)
    memory_write_retry_interval_sec: float = Field(default=300.0, gt=0)

    # Opportunity scanner
    scanner_interval_sec: float = Field(default=3600.0, gt=0)
    scanner_window_hours: float = Field(default=24.0, gt=0)
    scanner_move_threshold_pct: float = Field(
        default=0.05,
        gt=0,
        description="Single-bar close-to-close move (fraction) that counts as an opportunity",
    )
    scanner_activity_lookback_hours: float = Field(
        default=12.0,
        ge=0,
        description="Orders this long before a move still count as having acted on it",
    )
    scanner_bar: str = Field(default="1H")

    # Realized PnL sync
    pnl_sync_interval_sec: float = Field(default=120.0, gt=0)

    # Periodic status report (equity, total PnL, open positions)
    status_report_interval_sec: float = Field(default=3600.0, gt=0)

    # Symbols
    symbols: list[str] = Field(default=["BTC-USDT-SWAP", "ETH-USDT-SWAP"])

    @field_validator("symbols", mode="before")
    @classmethod
    def parse_symbols(cls, v: Any) -> Any:
        """Parse symbols from env, handling empty strings and JSON."""
        if v is None or v == "":
            return ["BTC-USDT-SWAP", "ETH-USDT-SWAP"]
        return parse_list_env(v)

    # Exchange
    dry_run: bool = Field(default=True, description="Route orders to the in-process PaperBroker")
    okx_api_key: str = Field(default="")
    okx_secret_key: str = Field(default="")
    okx_passphrase: str = Field(default="")
    okx_base_url: str = Field(default="https://www.okx.com")
    okx_simulated: bool = Field(default=False, description="Send x-simulated-trading header")
    okx_position_mode: Literal["long_short", "net"] = Field(
        default="long_short",
        description="Account position mode; long_short sends posSide on orders",
    )
    okx_margin_mode: Literal["cross", "isolated"] = Field(default="cross")

    # Notifier
    notifier_webhook_url: str = Field(default="")
    notifier_secret: str = Field(default="")
    notifier_keyword: str = Field(default="Trading")
    large_fill_alert_usd: float = Field(default=1000.0, ge=0)

    # Storage
    database_path: str = Field(default="evotrader.db")

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["text", "json"] = Field(default="text", description="Log output format")

    @model_validator(mode="after")
    def validate_heartbeat_band(self) -> "EvoSettings":
        """Ensure the heartbeat band is well-formed."""
        if self.heartbeat_min_interval_sec > self.heartbeat_max_interval_sec:
            raise ValueError(
                "heartbeat_min_interval_sec must be <= heartbeat_max_interval_sec "
                f"(got {self.heartbeat_min_interval_sec} > {self.heartbeat_max_interval_sec})"
            )
        return self

    @property
    def has_exchange_credentials(self) -> bool:
        """Whether signed OKX endpoints can be called."""
        return bool(self.okx_api_key and self.okx_secret_key and self.okx_passphrase)


# Global settings instance
settings = EvoSettings()
