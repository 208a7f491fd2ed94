"""
Adaptive risk profiles

Every profile is a fully specified, immutable TradeParameters value built from
the current BotSettings. The profile selected at entry is stored on the
position and drives its whole exit lifecycle.
"""
import logging
from dataclasses import dataclass, asdict, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from config.settings import BotSettings
from core.models import Signal, StrategyType

logger = logging.getLogger(__name__)


class RiskProfile(Enum):
    SNIPER = 'SNIPER'
    SCALPER = 'SCALPER'
    VOLATILITY_HUNTER = 'VOLATILITY_HUNTER'
    IGNITION = 'IGNITION'
    MANUAL = 'MANUAL'


@dataclass(frozen=True)
class TradeParameters:
    """Risk and exit-management parameters of one position"""
    profile: RiskProfile
    risk_reward_ratio: Decimal

    # Stop placement
    use_atr_stop_loss: bool
    atr_multiplier: Decimal
    stop_loss_pct: Decimal

    # Partial take profit
    use_partial_take_profit: bool
    partial_tp_trigger_pct: Decimal
    partial_tp_sell_qty_pct: Decimal

    # Breakeven
    use_auto_breakeven: bool
    breakeven_trigger_r: Decimal
    adjust_breakeven_for_fees: bool
    transaction_fee_pct: Decimal

    # Adaptive trailing (ATR based)
    use_adaptive_trailing_stop: bool
    trailing_stop_tighten_threshold_r: Decimal
    trailing_stop_tighten_multiplier_reduction: Decimal

    # Ignition trailing (percentage based)
    use_ignition_trailing_stop: bool
    ignition_trailing_stop_pct: Decimal

    @property
    def name(self) -> str:
        return self.profile.value

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['profile'] = self.profile.value
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in data.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TradeParameters':
        values = {}
        for key, default in asdict(manual_parameters(BotSettings())).items():
            raw = data.get(key, default)
            if key == 'profile':
                values[key] = RiskProfile(raw if isinstance(raw, str) else raw.value)
            elif isinstance(default, bool):
                values[key] = bool(raw)
            else:
                values[key] = Decimal(str(raw))
        return cls(**values)


def manual_parameters(settings: BotSettings) -> TradeParameters:
    """MANUAL profile: everything straight from settings"""
    return TradeParameters(
        profile=RiskProfile.MANUAL,
        risk_reward_ratio=settings.risk_reward_ratio,
        use_atr_stop_loss=settings.use_atr_stop_loss,
        atr_multiplier=settings.atr_multiplier,
        stop_loss_pct=settings.stop_loss_pct,
        use_partial_take_profit=settings.use_partial_take_profit,
        partial_tp_trigger_pct=settings.partial_tp_trigger_pct,
        partial_tp_sell_qty_pct=settings.partial_tp_sell_qty_pct,
        use_auto_breakeven=settings.use_auto_breakeven,
        breakeven_trigger_r=settings.breakeven_trigger_r,
        adjust_breakeven_for_fees=settings.adjust_breakeven_for_fees,
        transaction_fee_pct=settings.transaction_fee_pct,
        use_adaptive_trailing_stop=settings.use_adaptive_trailing_stop,
        trailing_stop_tighten_threshold_r=settings.trailing_stop_tighten_threshold_r,
        trailing_stop_tighten_multiplier_reduction=settings.trailing_stop_tighten_multiplier_reduction,
        use_ignition_trailing_stop=False,
        ignition_trailing_stop_pct=settings.ignition_trailing_stop_pct,
    )


def ignition_parameters(settings: BotSettings) -> TradeParameters:
    """
    IGNITION profile: manual stop settings, settings risk-reward ratio.
    The percentage trailing stop replaces every other exit manager.
    """
    return replace(
        manual_parameters(settings),
        profile=RiskProfile.IGNITION,
        use_partial_take_profit=False,
        use_auto_breakeven=False,
        use_adaptive_trailing_stop=False,
        use_ignition_trailing_stop=settings.use_ignition_trailing_stop,
    )


def scalper_parameters(settings: BotSettings) -> TradeParameters:
    """Range market: tight fixed stop, quick target"""
    return replace(
        manual_parameters(settings),
        profile=RiskProfile.SCALPER,
        risk_reward_ratio=Decimal('0.75'),
        use_atr_stop_loss=False,
        stop_loss_pct=Decimal('2.0'),
        use_partial_take_profit=False,
        use_auto_breakeven=False,
        use_adaptive_trailing_stop=False,
    )


def volatility_hunter_parameters(settings: BotSettings) -> TradeParameters:
    """Volatile market: wide ATR stop, breakeven and trailing"""
    return replace(
        manual_parameters(settings),
        profile=RiskProfile.VOLATILITY_HUNTER,
        risk_reward_ratio=Decimal('3.0'),
        use_atr_stop_loss=True,
        atr_multiplier=Decimal('2.0'),
        use_partial_take_profit=False,
        use_auto_breakeven=True,
        use_adaptive_trailing_stop=True,
    )


def sniper_parameters(settings: BotSettings) -> TradeParameters:
    """Trending market: full exit management, far target"""
    return replace(
        manual_parameters(settings),
        profile=RiskProfile.SNIPER,
        risk_reward_ratio=Decimal('5.0'),
        use_atr_stop_loss=True,
        atr_multiplier=Decimal('1.5'),
        use_partial_take_profit=True,
        use_auto_breakeven=True,
        use_adaptive_trailing_stop=True,
    )


def select_profile(
    settings: BotSettings,
    strategy_type: Optional[StrategyType],
    adx: Optional[float],
    atr_pct: Optional[float]
) -> RiskProfile:
    """
    Pick the risk profile for a signal

    Range check wins over the volatility check. A missing ADX skips the range
    rule, a missing ATR% skips the volatile rule.
    """
    if strategy_type == StrategyType.IGNITION:
        return RiskProfile.IGNITION

    if not settings.use_dynamic_profile_selector:
        return RiskProfile.MANUAL

    if adx is not None and adx < settings.adx_threshold_range:
        return RiskProfile.SCALPER

    if atr_pct is not None and atr_pct > settings.atr_pct_threshold_volatile:
        return RiskProfile.VOLATILITY_HUNTER

    return RiskProfile.SNIPER


PROFILE_BUILDERS = {
    RiskProfile.SNIPER: sniper_parameters,
    RiskProfile.SCALPER: scalper_parameters,
    RiskProfile.VOLATILITY_HUNTER: volatility_hunter_parameters,
    RiskProfile.IGNITION: ignition_parameters,
    RiskProfile.MANUAL: manual_parameters,
}


def resolve_trade_parameters(signal: Signal, settings: BotSettings) -> TradeParameters:
    """Resolve the full parameter set a position opened on this signal will use"""
    adx = signal.indicators.get('adx_15m')
    atr_pct = signal.indicators.get('atr_pct_15m')
    profile = select_profile(settings, signal.strategy_type, adx, atr_pct)

    if profile == RiskProfile.SCALPER:
        logger.info(f"[{signal.symbol}] Range market (ADX: {adx:.1f}), using {profile.value} profile")
    elif profile == RiskProfile.VOLATILITY_HUNTER:
        logger.info(f"[{signal.symbol}] Volatile market (ATR: {atr_pct:.2f}%), using {profile.value} profile")
    elif profile == RiskProfile.SNIPER:
        logger.info(f"[{signal.symbol}] Trending market, using {profile.value} profile")
    else:
        logger.debug(f"[{signal.symbol}] Using {profile.value} profile")

    return PROFILE_BUILDERS[profile](settings)
