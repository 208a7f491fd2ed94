"""
Tests for signal classification and priority
"""
from dataclasses import replace
from decimal import Decimal

from core.models import PriceTick, SignalScore, StrategyType
from core.signal_classifier import SignalClassifier
from core.trade_parameters import RiskProfile


def test_scenario_a_reaches_strong_buy(state, scenario_a_aggregates, clock):
    """Scenario A: all Precision conditions met, MTF validation off"""
    signal = SignalClassifier(state).classify('BTCUSDT', scenario_a_aggregates)

    assert signal.score == SignalScore.STRONG_BUY
    assert signal.strategy_type == StrategyType.PRECISION
    assert signal.conditions_met_count == len(signal.conditions)
    assert signal.created_at == clock.now


def test_required_timeframes(state, scenario_a_aggregates):
    classifier = SignalClassifier(state)
    for timeframe in ('15m', '1h', '4h'):
        aggregates = dict(scenario_a_aggregates)
        aggregates[timeframe] = {}
        assert classifier.classify('BTCUSDT', aggregates) is None


def test_missing_1m_is_not_fatal(state, scenario_a_aggregates):
    scenario_a_aggregates['1m'] = {}
    signal = SignalClassifier(state).classify('BTCUSDT', scenario_a_aggregates)

    assert signal.score == SignalScore.COMPRESSION


def test_hold_when_nothing_fires(state, scenario_a_aggregates):
    scenario_a_aggregates['4h']['price_above_ema50_4h'] = False
    signal = SignalClassifier(state).classify('BTCUSDT', scenario_a_aggregates)

    assert signal.score == SignalScore.HOLD
    assert signal.strategy_type == StrategyType.PRECISION


def test_ignition_beats_momentum_and_precision(state, scenario_a_aggregates):
    state.replace_settings(replace(state.settings, use_ignition_strategy=True))
    scenario_a_aggregates['15m'].update(body_ratio_15m=0.9, volume_ratio_15m=3.0)
    scenario_a_aggregates['5m']['momentum_confirmed_5m'] = True
    scenario_a_aggregates['1m'].update(prev_close_1m=95.0, last_close_1m=100.0, last_volume_1m=2000.0)

    signal = SignalClassifier(state).classify('BTCUSDT', scenario_a_aggregates)

    assert signal.score == SignalScore.IGNITION_DETECTED
    assert signal.strategy_type == StrategyType.IGNITION
    assert signal.profile_name == RiskProfile.IGNITION.value


def test_momentum_beats_precision(state, scenario_a_aggregates):
    scenario_a_aggregates['15m'].update(body_ratio_15m=0.9, volume_ratio_15m=3.0)
    scenario_a_aggregates['5m']['momentum_confirmed_5m'] = True

    signal = SignalClassifier(state).classify('BTCUSDT', scenario_a_aggregates)

    assert signal.score == SignalScore.MOMENTUM_BUY
    assert set(signal.conditions) == {'trend', 'impulse_15m', 'confirmation_5m', 'safety', 'rsi_mtf'}


def test_price_prefers_cached_tick(state, scenario_a_aggregates, clock):
    classifier = SignalClassifier(state)
    assert classifier.classify('BTCUSDT', scenario_a_aggregates).price == Decimal('100.0')

    state.price_cache['BTCUSDT'] = PriceTick(price=Decimal('101.25'), timestamp=clock.now)
    assert classifier.classify('BTCUSDT', scenario_a_aggregates).price == Decimal('101.25')


def test_price_falls_back_to_15m_close(state, scenario_a_aggregates):
    scenario_a_aggregates['1m'] = {}
    scenario_a_aggregates['15m']['last_close_15m'] = 98.5

    signal = SignalClassifier(state).classify('BTCUSDT', scenario_a_aggregates)
    assert signal.price == Decimal('98.5')


def test_profile_attached_for_display(state, scenario_a_aggregates):
    scenario_a_aggregates['15m']['adx_15m'] = 15.0
    signal = SignalClassifier(state).classify('BTCUSDT', scenario_a_aggregates)

    assert signal.profile_name == RiskProfile.SCALPER.value
    assert signal.to_dict()['profile'] == 'SCALPER'
    assert signal.to_dict()['score'] == 85
