"""
Strategy evaluators

Three independent evaluators run on the latest per-timeframe aggregates:

- Precision: 4h uptrend + 15m Bollinger squeeze (watch), then a 1m breakout
  with volume/OBV/CVD confirmation
- Momentum: 4h uptrend + strong 15m impulse candle confirmed on 5m
- Ignition: 4h uptrend + abnormal 1m price and volume spike

Each returns a StrategyResult (candidate tier + condition checklist) or None
when it has no candidate. Missing data never fails an evaluator.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from config.settings import BotSettings
from core.models import SignalScore, StrategyType

logger = logging.getLogger(__name__)

PRECISION_VOLUME_MULTIPLE = 1.5

Aggregates = Mapping[str, Dict]


@dataclass
class StrategyResult:
    strategy_type: StrategyType
    score: SignalScore
    conditions: Dict[str, bool] = field(default_factory=dict)


def _is_true(value) -> bool:
    return value is True or (value is not None and bool(value))


def has_uptrend(aggregates: Aggregates) -> bool:
    """4h close above EMA50"""
    return _is_true(aggregates.get('4h', {}).get('price_above_ema50_4h'))


def safety_filters(aggregates: Aggregates, settings: BotSettings) -> Dict[str, bool]:
    """
    Shared RSI filters of Precision and Momentum. A disabled filter is
    always satisfied; an enabled filter without data is not.
    """
    rsi_1h = aggregates.get('1h', {}).get('rsi_1h')
    rsi_15m = aggregates.get('15m', {}).get('rsi_15m')

    safety = True
    if settings.use_rsi_safety_filter:
        safety = rsi_1h is not None and rsi_1h < settings.rsi_overbought_threshold

    rsi_mtf = True
    if settings.use_rsi_mtf_filter:
        rsi_mtf = rsi_15m is not None and rsi_15m < settings.rsi_15m_overbought_threshold

    return {'safety': safety, 'rsi_mtf': rsi_mtf}


def evaluate_precision(aggregates: Aggregates, settings: BotSettings) -> StrategyResult:
    """Squeeze/breakout strategy; always returns a result (HOLD at worst)"""
    filters = safety_filters(aggregates, settings)
    conditions = {
        'trend': has_uptrend(aggregates),
        'squeeze': _is_true(aggregates.get('15m', {}).get('is_in_squeeze_15m')),
        'breakout': False,
        'volume': False,
        'obv': False,
        'cvd_5m_trending_up': False,
        **filters,
    }
    result = StrategyResult(StrategyType.PRECISION, SignalScore.HOLD, conditions)

    if not (conditions['trend'] and conditions['squeeze']):
        return result

    result.score = SignalScore.COMPRESSION

    m1 = aggregates.get('1m') or {}
    last_close = m1.get('last_close_1m')
    ema9 = m1.get('ema9_1m')
    if last_close is None or ema9 is None:
        # Watch tier until the 1m window is usable
        return result

    conditions['breakout'] = last_close > ema9

    if settings.use_volume_confirmation:
        last_volume = m1.get('last_volume_1m')
        volume_avg = m1.get('volume_avg_1m')
        conditions['volume'] = (
            last_volume is not None and volume_avg is not None
            and last_volume > volume_avg * PRECISION_VOLUME_MULTIPLE
        )
    else:
        conditions['volume'] = True

    if settings.use_obv_validation:
        slope = m1.get('obv_slope_1m')
        conditions['obv'] = slope is not None and slope > 0
    else:
        conditions['obv'] = True

    if settings.use_cvd_filter:
        conditions['cvd_5m_trending_up'] = _is_true(aggregates.get('5m', {}).get('cvd_trending_up_5m'))
    else:
        conditions['cvd_5m_trending_up'] = True

    if all(conditions.values()):
        result.score = (
            SignalScore.PENDING_CONFIRMATION if settings.use_mtf_validation
            else SignalScore.STRONG_BUY
        )

    return result


def evaluate_momentum(aggregates: Aggregates, settings: BotSettings) -> Optional[StrategyResult]:
    """Impulse/continuation strategy"""
    if not settings.use_momentum_strategy:
        return None

    m15 = aggregates.get('15m') or {}
    body_ratio = m15.get('body_ratio_15m')
    volume_ratio = m15.get('volume_ratio_15m')

    impulse = (
        _is_true(m15.get('is_bullish_15m'))
        and body_ratio is not None and body_ratio >= settings.momentum_body_ratio_min
        and volume_ratio is not None and volume_ratio >= settings.momentum_volume_multiple
    )

    conditions = {
        'trend': has_uptrend(aggregates),
        'impulse_15m': impulse,
        'confirmation_5m': _is_true(aggregates.get('5m', {}).get('momentum_confirmed_5m')),
        **safety_filters(aggregates, settings),
    }

    if not all(conditions.values()):
        return None

    return StrategyResult(StrategyType.MOMENTUM, SignalScore.MOMENTUM_BUY, conditions)


def evaluate_ignition(aggregates: Aggregates, settings: BotSettings) -> Optional[StrategyResult]:
    """Anomaly spike strategy; bypasses the RSI safety filters"""
    if not settings.use_ignition_strategy:
        return None

    m1 = aggregates.get('1m') or {}
    last_close = m1.get('last_close_1m')
    prev_close = m1.get('prev_close_1m')
    last_volume = m1.get('last_volume_1m')
    volume_avg = m1.get('volume_avg_1m')

    if None in (last_close, prev_close, last_volume, volume_avg) or not prev_close:
        return None

    spike_pct = (last_close - prev_close) / prev_close * 100

    conditions = {
        'trend': has_uptrend(aggregates),
        'price_spike': spike_pct >= settings.ignition_price_spike_pct,
        'volume_spike': last_volume >= volume_avg * settings.ignition_volume_multiple,
    }

    if not all(conditions.values()):
        return None

    logger.info(f"🔥 Ignition spike: +{spike_pct:.2f}% on {last_volume / volume_avg if volume_avg else 0:.1f}x volume")
    return StrategyResult(StrategyType.IGNITION, SignalScore.IGNITION_DETECTED, conditions)
