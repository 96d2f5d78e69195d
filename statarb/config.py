"""Application configuration via environment variables."""

from datetime import timedelta
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from statarb.schemas.pair import PairConfig
from statarb.utils.constants import VALID_INTERVALS

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class RiskLimits(BaseModel):
    """Portfolio-wide thresholds. Immutable once loaded."""

    entry_z: float = Field(default=2.0, gt=0)
    exit_z: float = Field(default=0.5, ge=0)
    stop_z: float = Field(default=3.5, gt=0)
    min_correlation: float = Field(default=0.3, ge=-1, le=1)
    min_confidence: float = Field(default=0.5, ge=0, le=1)
    max_concurrent_positions: int = Field(default=5, ge=1)
    max_capital_per_pair_pct: float = Field(default=5.0, gt=0, le=100)
    max_total_exposure_pct: float = Field(default=20.0, gt=0, le=100)
    max_holding_period: timedelta = timedelta(days=7)
    min_expected_return: float = Field(default=0.001, ge=0)
    reject_high_risk: bool = True

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _validate_thresholds(self):
        if not self.exit_z < self.entry_z < self.stop_z:
            raise ValueError("thresholds must satisfy exit_z < entry_z < stop_z")
        if self.max_capital_per_pair_pct > self.max_total_exposure_pct:
            raise ValueError("max_capital_per_pair_pct must be <= max_total_exposure_pct")
        return self


class ConfidenceWeights(BaseModel):
    """Tunable weights of the pair confidence score."""

    correlation: float = Field(default=0.3, ge=0)
    cointegration: float = Field(default=0.3, ge=0)
    sample_size: float = Field(default=0.3, ge=0)
    reversion_speed: float = Field(default=0.1, ge=0)
    sample_target: int = Field(default=500, ge=1)  # points for full sample score
    fast_half_life: float = Field(default=5.0, gt=0)  # periods for full speed score

    model_config = {"frozen": True}


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'statarb.db'}"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]  # Vite dev server

    # Universe
    pairs: list[PairConfig] = []
    candle_interval: str = "1m"

    # Risk limits
    entry_z: float = 2.0
    exit_z: float = 0.5
    stop_z: float = 3.5
    min_correlation: float = 0.3
    min_confidence: float = 0.5
    max_concurrent_positions: int = 5
    max_capital_per_pair_pct: float = 5.0
    max_total_exposure_pct: float = 20.0
    max_holding_period_hours: float = 7 * 24
    min_expected_return: float = 0.001
    reject_high_risk: bool = True

    # Statistics
    lookback_window: int = Field(default=240, ge=2)
    min_samples: int = Field(default=30, ge=3)
    zscore_window: int = Field(default=60, ge=2)
    alignment_tolerance_seconds: float = Field(default=0.0, ge=0)
    cointegration_critical_value: float = -3.34  # Engle-Granger 5%, two series, constant
    confidence_weights: ConfidenceWeights = ConfidenceWeights()

    # Signal shaping
    return_per_z: float = 0.005
    max_base_return: float = 0.05
    reference_half_life: float = 30.0
    max_time_adjustment: float = 4.0
    return_weight_scale: float = 20.0

    # Health and execution
    correlation_breakdown_ticks: int = Field(default=3, ge=1)
    stale_price_timeout_seconds: float = Field(default=300.0, gt=0)
    execution_timeout_seconds: float = Field(default=30.0, gt=0)
    min_leg_notional: float = Field(default=10.0, ge=0)

    # Scheduling
    tick_interval_seconds: int = Field(default=30, ge=1)

    # Capital; 0 reads the available Lighter balance every tick
    total_capital: float = Field(default=0.0, ge=0)

    # Lighter
    lighter_host: str = "https://mainnet.zklighter.elliot.ai"
    lighter_private_key: str = ""
    lighter_api_key_index: int = 3
    lighter_account_index: int = 0

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    model_config = {"env_prefix": "SA_", "env_file": ".env"}

    @field_validator("candle_interval")
    @classmethod
    def _validate_interval(cls, value: str) -> str:
        if value not in VALID_INTERVALS:
            allowed = ", ".join(VALID_INTERVALS)
            raise ValueError(f"must be one of: {allowed}")
        return value

    @model_validator(mode="after")
    def _validate_timeouts(self):
        # Quotes are refreshed once per tick
        if self.stale_price_timeout_seconds < self.tick_interval_seconds:
            raise ValueError("stale_price_timeout_seconds must be >= tick_interval_seconds")
        return self

    def risk_limits(self) -> RiskLimits:
        return RiskLimits(
            entry_z=self.entry_z,
            exit_z=self.exit_z,
            stop_z=self.stop_z,
            min_correlation=self.min_correlation,
            min_confidence=self.min_confidence,
            max_concurrent_positions=self.max_concurrent_positions,
            max_capital_per_pair_pct=self.max_capital_per_pair_pct,
            max_total_exposure_pct=self.max_total_exposure_pct,
            max_holding_period=timedelta(hours=self.max_holding_period_hours),
            min_expected_return=self.min_expected_return,
            reject_high_risk=self.reject_high_risk,
        )


settings = Settings()
