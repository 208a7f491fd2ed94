"""
Tests for adaptive risk profile selection
"""
from dataclasses import FrozenInstanceError, replace
from decimal import Decimal

import pytest

from core.models import StrategyType
from core.trade_parameters import (
    RiskProfile, TradeParameters, ignition_parameters, manual_parameters,
    resolve_trade_parameters, scalper_parameters, select_profile,
    sniper_parameters, volatility_hunter_parameters
)


class TestSelectProfile:

    @pytest.mark.parametrize('adx,atr_pct,expected', [
        (15.0, 1.0, RiskProfile.SCALPER),
        (15.0, 8.0, RiskProfile.SCALPER),     # range check wins
        (25.0, 8.0, RiskProfile.VOLATILITY_HUNTER),
        (25.0, 5.0, RiskProfile.SNIPER),      # volatile is strictly greater
        (20.0, 1.0, RiskProfile.SNIPER),      # range is strictly lower
        (None, 8.0, RiskProfile.VOLATILITY_HUNTER),
        (25.0, None, RiskProfile.SNIPER),
        (None, None, RiskProfile.SNIPER),
    ])
    def test_regime(self, settings, adx, atr_pct, expected):
        assert select_profile(settings, StrategyType.PRECISION, adx, atr_pct) == expected

    def test_ignition_always_ignition(self, settings):
        assert select_profile(settings, StrategyType.IGNITION, 10.0, 10.0) == RiskProfile.IGNITION

        manual = replace(settings, use_dynamic_profile_selector=False)
        assert select_profile(manual, StrategyType.IGNITION, None, None) == RiskProfile.IGNITION

    def test_selector_off_is_manual(self, settings):
        settings = replace(settings, use_dynamic_profile_selector=False)
        assert select_profile(settings, StrategyType.MOMENTUM, 10.0, 10.0) == RiskProfile.MANUAL


class TestProfiles:

    def test_scalper(self, settings):
        params = scalper_parameters(settings)

        assert params.risk_reward_ratio == Decimal('0.75')
        assert params.use_atr_stop_loss is False
        assert params.stop_loss_pct == Decimal('2.0')
        assert not (params.use_partial_take_profit or params.use_auto_breakeven
                    or params.use_adaptive_trailing_stop)

    def test_volatility_hunter(self, settings):
        params = volatility_hunter_parameters(settings)

        assert params.risk_reward_ratio == Decimal('3.0')
        assert params.use_atr_stop_loss is True
        assert params.atr_multiplier == Decimal('2.0')
        assert params.use_partial_take_profit is False
        assert params.use_auto_breakeven is True
        assert params.use_adaptive_trailing_stop is True

    def test_sniper(self, settings):
        params = sniper_parameters(settings)

        assert params.risk_reward_ratio == Decimal('5.0')
        assert params.atr_multiplier == Decimal('1.5')
        assert params.use_partial_take_profit is True
        assert params.use_auto_breakeven is True
        assert params.use_adaptive_trailing_stop is True

    def test_ignition_only_trails(self, settings):
        settings = replace(settings, risk_reward_ratio=Decimal('6'), stop_loss_pct=Decimal('3'))
        params = ignition_parameters(settings)

        assert params.profile == RiskProfile.IGNITION
        assert params.risk_reward_ratio == Decimal('6')
        assert params.stop_loss_pct == Decimal('3')
        assert params.use_ignition_trailing_stop is True
        assert params.ignition_trailing_stop_pct == Decimal('1.5')
        assert not (params.use_partial_take_profit or params.use_auto_breakeven
                    or params.use_adaptive_trailing_stop)

    def test_manual_follows_settings(self, settings):
        settings = replace(settings, risk_reward_ratio=Decimal('2.5'), use_partial_take_profit=True)
        params = manual_parameters(settings)

        assert params.name == 'MANUAL'
        assert params.risk_reward_ratio == Decimal('2.5')
        assert params.use_partial_take_profit is True
        assert params.use_ignition_trailing_stop is False

    def test_profiles_are_immutable(self, settings):
        params = sniper_parameters(settings)
        with pytest.raises(FrozenInstanceError):
            params.risk_reward_ratio = Decimal('1')

    def test_dict_restores_same_parameters(self, settings):
        params = volatility_hunter_parameters(settings)
        assert TradeParameters.from_dict(params.to_dict()) == params


def test_resolve_uses_signal_indicators(settings, make_signal):
    signal = make_signal(adx_15m=12.0, atr_pct_15m=1.0)
    assert resolve_trade_parameters(signal, settings) == scalper_parameters(settings)

    signal = make_signal(adx_15m=30.0, atr_pct_15m=7.5)
    assert resolve_trade_parameters(signal, settings).profile == RiskProfile.VOLATILITY_HUNTER
