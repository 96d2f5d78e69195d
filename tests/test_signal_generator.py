"""Tests for z-score classification, direction and expected return."""

import math

import pytest

from statarb.config import RiskLimits
from statarb.engine.errors import StatisticalDegenerateError
from statarb.schemas.pair import PairConfig
from statarb.services.signal_generator import (
    Classification,
    Direction,
    RiskLevel,
    SignalGenerator,
    compute_zscore,
    risk_level,
)

from conftest import NOW, make_stats


@pytest.fixture
def generator(limits) -> SignalGenerator:
    return SignalGenerator(limits)


def test_zscore_formula():
    assert compute_zscore(1.5, 1.0, 0.25) == pytest.approx(2.0)


@pytest.mark.parametrize("std", [0.0, -1.0, float("nan")])
def test_zscore_rejects_non_positive_std(std):
    with pytest.raises(StatisticalDegenerateError):
        compute_zscore(1.0, 0.0, std)


def test_entry_signal_for_wide_correlated_spread(generator):
    signal = generator.classify(z_score=2.3, correlation=0.8, confidence=0.6, pair_id="ETH-BTC")
    assert signal.classification == Classification.ENTRY
    assert signal.direction == Direction.SHORT_SPREAD


def test_negative_z_enters_long_spread(generator):
    signal = generator.classify(z_score=-2.3, correlation=0.8, confidence=0.6)
    assert signal.classification == Classification.ENTRY
    assert signal.direction == Direction.LONG_SPREAD


@pytest.mark.parametrize(
    "z, correlation, confidence",
    [
        (1.9, 0.8, 0.6),   # below entry threshold
        (2.5, 0.2, 0.6),   # weak correlation
        (2.5, 0.8, 0.4),   # low confidence
    ],
)
def test_hold_without_position_when_a_condition_fails(generator, z, correlation, confidence):
    assert generator.classify(z, correlation, confidence).classification == Classification.HOLD


@pytest.mark.parametrize(
    "z, expected",
    [
        (3.6, Classification.STOP),
        (3.5, Classification.STOP),
        (0.4, Classification.EXIT),
        (0.5, Classification.EXIT),
        (1.8, Classification.HOLD),
        (2.5, Classification.HOLD),
    ],
)
def test_classification_with_position(generator, z, expected):
    assert generator.classify(z, 0.8, 0.6, has_position=True).classification == expected


def test_stop_takes_priority_regardless_of_correlation(generator):
    assert generator.classify(4.0, -0.5, 0.0, has_position=True).classification == Classification.STOP


@pytest.mark.parametrize("z", [0.3, 1.0, 2.0, 2.3, 3.4, 3.6, 10.0])
@pytest.mark.parametrize("has_position", [False, True])
def test_classify_is_symmetric_in_z(generator, z, has_position):
    pos = generator.classify(z, 0.8, 0.6, has_position=has_position)
    neg = generator.classify(-z, 0.8, 0.6, has_position=has_position)
    assert pos.classification == neg.classification
    assert pos.direction != neg.direction
    assert pos.expected_return == neg.expected_return


def test_expected_return_grows_with_deviation_and_speed(generator):
    assert generator.expected_return(2.0, 30.0) == pytest.approx(0.01)
    assert generator.expected_return(3.0, 30.0) > generator.expected_return(2.0, 30.0)
    assert generator.expected_return(2.0, 10.0) == pytest.approx(0.01 * 3)


def test_expected_return_is_capped(generator):
    # base capped at 5%, time adjustment capped at 4x
    assert generator.expected_return(50.0, 1.0) == pytest.approx(0.05 * 4)
    assert generator.expected_return(2.0, 0.0) == pytest.approx(0.01 * 4)


def test_slow_or_non_reverting_spread_gets_minimum_time_adjustment(generator):
    assert generator.expected_return(2.0, 600.0) == pytest.approx(0.01 * 0.5)
    assert generator.expected_return(2.0, math.inf) == pytest.approx(0.01 * 0.5)
    assert generator.expected_return(2.0, None) == pytest.approx(0.01 * 0.5)


def test_rank_score_is_expected_return_times_confidence(generator):
    signal = generator.classify(2.3, 0.8, 0.6, half_life=10.0)
    assert signal.rank_score == pytest.approx(signal.expected_return * 0.6)


def test_generate_from_statistics(generator):
    pair = PairConfig(token_a="ETH", token_b="BTC")
    signal = generator.generate(make_stats(pair, z_score=2.3), has_position=False)
    assert signal.pair_id == "ETH-BTC"
    assert signal.timestamp == NOW
    assert signal.classification == Classification.ENTRY


def test_generate_skips_non_tradable_pair_without_position(generator):
    pair = PairConfig(token_a="ETH", token_b="BTC")
    stats = make_stats(pair, z_score=2.3, tradable=False)
    assert generator.generate(stats, has_position=False) is None
    # an open position still needs exit signals
    assert generator.generate(stats, has_position=True).classification == Classification.HOLD


def test_custom_thresholds():
    generator = SignalGenerator(RiskLimits(entry_z=1.5, exit_z=0.2, stop_z=2.5))
    assert generator.classify(1.6, 0.8, 0.6).classification == Classification.ENTRY
    assert generator.classify(2.6, 0.8, 0.6, has_position=True).classification == Classification.STOP


@pytest.mark.parametrize(
    "correlation, half_life, confidence, expected",
    [
        (0.9, 5.0, 0.85, RiskLevel.LOW),
        (0.65, 15.0, 0.7, RiskLevel.MEDIUM),
        (0.4, 25.0, 0.9, RiskLevel.HIGH),
        (0.9, math.inf, 0.5, RiskLevel.HIGH),
    ],
)
def test_risk_level(correlation, half_life, confidence, expected):
    assert risk_level(correlation, half_life, confidence) == expected


def test_signal_carries_strength_and_risk(generator):
    signal = generator.classify(-3.0, 0.8, 0.6, half_life=10.0)
    assert signal.strength == 0.75
    assert signal.risk_level == RiskLevel.LOW
    assert generator.classify(6.0, 0.8, 0.6).strength == 1.0
