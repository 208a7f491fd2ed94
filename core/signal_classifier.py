"""
Signal Classifier

Runs the strategy evaluators over the latest aggregates of one symbol and
keeps the highest-priority candidate:

    IGNITION_DETECTED > MOMENTUM_BUY > STRONG_BUY / PENDING_CONFIRMATION
    > COMPRESSION > HOLD
"""
import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional

from core.bot_state import BotState
from core.models import Signal, SignalScore
from core.strategies import (
    StrategyResult, evaluate_ignition, evaluate_momentum, evaluate_precision
)
from core.trade_parameters import select_profile
from utils.datetime_helpers import now_utc
from utils.decimal_utils import to_decimal

logger = logging.getLogger(__name__)

REQUIRED_TIMEFRAMES = ('15m', '1h', '4h')


class SignalClassifier:
    """Scores a symbol into one strategy signal per evaluation pass"""

    def __init__(self, state: BotState):
        self.state = state

    def classify(self, symbol: str, aggregates: Mapping[str, Dict]) -> Optional[Signal]:
        """
        Args:
            symbol: Trading pair
            aggregates: timeframe -> indicator aggregate (see core.indicators)

        Returns:
            Signal, or None when a required timeframe has no opinion yet
        """
        missing = [tf for tf in REQUIRED_TIMEFRAMES if not aggregates.get(tf)]
        if missing:
            logger.debug(f"[{symbol}] No signal, insufficient data for {missing}")
            return None

        # Read once so a concurrent settings replacement never splits a pass
        settings = self.state.settings

        candidates = [
            evaluate_ignition(aggregates, settings),
            evaluate_momentum(aggregates, settings),
            evaluate_precision(aggregates, settings),
        ]
        winner: StrategyResult = max(
            (c for c in candidates if c is not None),
            key=lambda c: c.score.value
        )

        indicators = {}
        for timeframe in ('1m', '5m', '15m', '1h', '4h'):
            indicators.update(aggregates.get(timeframe) or {})

        price = self._resolve_price(symbol, indicators)
        if price is None:
            logger.debug(f"[{symbol}] No signal, no price available")
            return None

        profile = select_profile(
            settings,
            winner.strategy_type,
            indicators.get('adx_15m'),
            indicators.get('atr_pct_15m'),
        )

        signal = Signal(
            symbol=symbol,
            score=winner.score,
            price=price,
            strategy_type=winner.strategy_type,
            conditions=dict(winner.conditions),
            indicators=indicators,
            profile_name=profile.value,
            created_at=now_utc(),
        )

        if signal.score != SignalScore.HOLD:
            logger.info(
                f"🎯 [{symbol}] {signal.score.name} ({signal.score.value}) "
                f"strategy={winner.strategy_type.value} profile={profile.value} "
                f"conditions={signal.conditions_met_count}/{len(signal.conditions)}"
            )

        return signal

    def _resolve_price(self, symbol: str, indicators: Dict) -> Optional[Decimal]:
        """Latest tick, else last 1m close, else last 15m close"""
        cached = self.state.latest_price(symbol)
        if cached is not None:
            return cached

        for key in ('last_close_1m', 'last_close_15m'):
            if indicators.get(key) is not None:
                return to_decimal(indicators[key])

        return None
