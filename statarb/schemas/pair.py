"""Pydantic schemas for configured pairs and pair statistics."""

import math
from datetime import datetime
from pydantic import BaseModel, Field, field_validator, model_validator


class PairConfig(BaseModel):
    pair_id: str = Field(default="", max_length=120)
    token_a: str = Field(min_length=1, max_length=32)
    token_b: str = Field(min_length=1, max_length=32)
    market_a: int = Field(default=0, ge=0)  # Lighter market index
    market_b: int = Field(default=0, ge=0)

    @field_validator("token_a", "token_b")
    @classmethod
    def _trim_required_text(cls, value: str) -> str:
        text = value.strip().upper()
        if not text:
            raise ValueError("must not be empty")
        return text

    @model_validator(mode="after")
    def _validate_relationships(self):
        if self.token_a == self.token_b:
            raise ValueError("token_a and token_b must differ")
        if not self.pair_id:
            self.pair_id = f"{self.token_a}-{self.token_b}"
        return self


class TradingPairRead(BaseModel):
    pair_id: str
    token_a: str
    token_b: str
    correlation: float | None = None
    cointegrated: bool = False
    test_statistic: float | None = None
    half_life: float | None = None
    confidence: float = 0.0
    sample_size: int = 0
    hedge_ratio: float | None = None
    z_score: float | None = None
    tradable: bool = False
    reason: str | None = None
    last_updated: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("correlation", "test_statistic", "half_life", "hedge_ratio", "z_score")
    @classmethod
    def _finite_or_none(cls, value: float | None) -> float | None:
        # inf/nan are not valid JSON
        if value is None or math.isinf(value) or math.isnan(value):
            return None
        return value

    @classmethod
    def unanalyzed(cls, pair: PairConfig) -> "TradingPairRead":
        return cls(pair_id=pair.pair_id, token_a=pair.token_a, token_b=pair.token_b, reason="not_analyzed")
