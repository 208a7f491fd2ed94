"""
Tests for the Precision / Momentum / Ignition evaluators
"""
from dataclasses import replace

import pytest

from core.models import SignalScore, StrategyType
from core.strategies import (
    evaluate_ignition, evaluate_momentum, evaluate_precision, safety_filters
)


class TestPrecision:

    def test_fully_confirmed_is_strong_buy(self, settings, scenario_a_aggregates):
        result = evaluate_precision(scenario_a_aggregates, settings)

        assert result.score == SignalScore.STRONG_BUY
        assert result.strategy_type == StrategyType.PRECISION
        assert all(result.conditions.values())

    def test_mtf_validation_yields_pending(self, settings, scenario_a_aggregates):
        settings = replace(settings, use_mtf_validation=True)
        result = evaluate_precision(scenario_a_aggregates, settings)

        assert result.score == SignalScore.PENDING_CONFIRMATION

    def test_no_trend_is_hold(self, settings, scenario_a_aggregates):
        scenario_a_aggregates['4h']['price_above_ema50_4h'] = False
        result = evaluate_precision(scenario_a_aggregates, settings)

        assert result.score == SignalScore.HOLD
        assert result.conditions['trend'] is False

    def test_no_squeeze_is_hold(self, settings, scenario_a_aggregates):
        scenario_a_aggregates['15m']['is_in_squeeze_15m'] = False
        assert evaluate_precision(scenario_a_aggregates, settings).score == SignalScore.HOLD

    def test_no_breakout_stays_compression(self, settings, scenario_a_aggregates):
        scenario_a_aggregates['1m']['last_close_1m'] = 99.0
        result = evaluate_precision(scenario_a_aggregates, settings)

        assert result.score == SignalScore.COMPRESSION
        assert result.conditions['breakout'] is False

    def test_missing_1m_data_stays_compression(self, settings, scenario_a_aggregates):
        scenario_a_aggregates['1m'] = {}
        assert evaluate_precision(scenario_a_aggregates, settings).score == SignalScore.COMPRESSION

    def test_volume_must_exceed_one_and_a_half_average(self, settings, scenario_a_aggregates):
        scenario_a_aggregates['1m']['last_volume_1m'] = 150.0
        assert evaluate_precision(scenario_a_aggregates, settings).score == SignalScore.COMPRESSION

    def test_disabled_volume_filter_is_satisfied(self, settings, scenario_a_aggregates):
        scenario_a_aggregates['1m']['last_volume_1m'] = 10.0
        settings = replace(settings, use_volume_confirmation=False)
        result = evaluate_precision(scenario_a_aggregates, settings)

        assert result.conditions['volume'] is True
        assert result.score == SignalScore.STRONG_BUY

    def test_falling_obv_blocks_entry(self, settings, scenario_a_aggregates):
        scenario_a_aggregates['1m']['obv_slope_1m'] = -1.0
        assert evaluate_precision(scenario_a_aggregates, settings).score == SignalScore.COMPRESSION

    def test_cvd_filter_only_when_enabled(self, settings, scenario_a_aggregates):
        scenario_a_aggregates['5m']['cvd_trending_up_5m'] = False
        assert evaluate_precision(scenario_a_aggregates, settings).score == SignalScore.STRONG_BUY

        settings = replace(settings, use_cvd_filter=True)
        assert evaluate_precision(scenario_a_aggregates, settings).score == SignalScore.COMPRESSION

    def test_overbought_1h_blocks_entry(self, settings, scenario_a_aggregates):
        scenario_a_aggregates['1h']['rsi_1h'] = 80.0
        result = evaluate_precision(scenario_a_aggregates, settings)

        assert result.conditions['safety'] is False
        assert result.score == SignalScore.COMPRESSION


class TestSafetyFilters:

    def test_disabled_filters_always_pass(self, settings):
        settings = replace(settings, use_rsi_safety_filter=False, use_rsi_mtf_filter=False)
        assert safety_filters({}, settings) == {'safety': True, 'rsi_mtf': True}

    def test_mtf_rsi_filter(self, settings, scenario_a_aggregates):
        settings = replace(settings, use_rsi_mtf_filter=True)
        scenario_a_aggregates['15m']['rsi_15m'] = 71.0

        assert safety_filters(scenario_a_aggregates, settings)['rsi_mtf'] is False


class TestMomentum:

    @pytest.fixture
    def impulse(self, scenario_a_aggregates):
        scenario_a_aggregates['15m'].update(body_ratio_15m=0.8, volume_ratio_15m=2.5, is_bullish_15m=True)
        scenario_a_aggregates['5m']['momentum_confirmed_5m'] = True
        return scenario_a_aggregates

    def test_impulse_with_confirmation(self, settings, impulse):
        result = evaluate_momentum(impulse, settings)

        assert result.score == SignalScore.MOMENTUM_BUY
        assert result.strategy_type == StrategyType.MOMENTUM

    def test_boundaries_are_inclusive(self, settings, impulse):
        impulse['15m'].update(body_ratio_15m=0.7, volume_ratio_15m=2.0)
        assert evaluate_momentum(impulse, settings) is not None

    def test_weak_body_no_candidate(self, settings, impulse):
        impulse['15m']['body_ratio_15m'] = 0.5
        assert evaluate_momentum(impulse, settings) is None

    def test_bearish_impulse_no_candidate(self, settings, impulse):
        impulse['15m']['is_bullish_15m'] = False
        assert evaluate_momentum(impulse, settings) is None

    def test_needs_5m_confirmation(self, settings, impulse):
        impulse['5m'] = {}
        assert evaluate_momentum(impulse, settings) is None

    def test_disabled(self, settings, impulse):
        assert evaluate_momentum(impulse, replace(settings, use_momentum_strategy=False)) is None


class TestIgnition:

    @pytest.fixture
    def spike(self, scenario_a_aggregates):
        scenario_a_aggregates['1m'].update(
            prev_close_1m=100.0, last_close_1m=106.0,
            volume_avg_1m=100.0, last_volume_1m=1500.0,
        )
        return scenario_a_aggregates

    @pytest.fixture
    def ignition_settings(self, settings):
        return replace(settings, use_ignition_strategy=True)

    def test_spike_detected(self, ignition_settings, spike):
        result = evaluate_ignition(spike, ignition_settings)

        assert result.score == SignalScore.IGNITION_DETECTED
        assert result.strategy_type == StrategyType.IGNITION

    def test_bypasses_rsi_filters(self, ignition_settings, spike):
        spike['1h']['rsi_1h'] = 95.0
        assert evaluate_ignition(spike, ignition_settings) is not None

    def test_requires_trend(self, ignition_settings, spike):
        spike['4h']['price_above_ema50_4h'] = False
        assert evaluate_ignition(spike, ignition_settings) is None

    def test_small_move_ignored(self, ignition_settings, spike):
        spike['1m']['last_close_1m'] = 104.0
        assert evaluate_ignition(spike, ignition_settings) is None

    def test_volume_threshold_inclusive(self, ignition_settings, spike):
        spike['1m']['last_volume_1m'] = 1000.0
        assert evaluate_ignition(spike, ignition_settings) is not None

        spike['1m']['last_volume_1m'] = 999.0
        assert evaluate_ignition(spike, ignition_settings) is None

    def test_disabled_by_default(self, settings, spike):
        assert evaluate_ignition(spike, settings) is None
