"""
Pytest configuration and shared fixtures for all tests
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock, patch

# Add project root to path
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import BotSettings
from core.bot_state import BotState, Position, TradingMode
from core.lock_manager import LockManager
from core.models import Candle, ExecutionResult, Signal, SignalScore, StrategyType
from core.position_manager import PositionManager
from core.trade_parameters import ignition_parameters, manual_parameters

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Mutable clock patched over now_utc()"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    """Freeze time for the position manager and classifier"""
    c = Clock()
    with patch('core.position_manager.now_utc', c), \
            patch('core.market_data.now_utc', c), \
            patch('core.signal_classifier.now_utc', c):
        yield c


@pytest.fixture
def settings() -> BotSettings:
    return BotSettings()


@pytest.fixture
def state(settings) -> BotState:
    return BotState.from_settings(settings)


@pytest.fixture
def store() -> AsyncMock:
    """State store mock"""
    store = AsyncMock()
    store.save = AsyncMock(return_value=True)
    return store


@pytest.fixture
def event_router() -> AsyncMock:
    router = AsyncMock()
    router.emit = AsyncMock()
    return router


@pytest.fixture
def executor() -> MagicMock:
    """Order execution collaborator that fills at 100"""
    executor = MagicMock()
    executor.get_step_size = MagicMock(return_value=Decimal('0.001'))
    executor.place_market_order = AsyncMock(
        return_value=ExecutionResult(executed_price=Decimal('100'), executed_quantity=Decimal('2'))
    )
    return executor


@pytest.fixture
def position_manager(state, store, event_router) -> PositionManager:
    return PositionManager(
        state=state,
        lock_manager=LockManager(default_timeout=1.0),
        store=store,
        event_router=event_router,
    )


@pytest.fixture
def make_signal():
    """Signal factory"""

    def _make(symbol: str = 'BTCUSDT',
              score: SignalScore = SignalScore.STRONG_BUY,
              price='100',
              strategy_type: StrategyType = StrategyType.PRECISION,
              **indicators) -> Signal:
        return Signal(
            symbol=symbol,
            score=score,
            price=Decimal(str(price)),
            strategy_type=strategy_type,
            conditions={'trend': True},
            indicators=dict(indicators),
            created_at=T0,
        )

    return _make


@pytest.fixture
def make_position(state):
    """Open position factory, appended to the state"""

    def _make(symbol: str = 'BTCUSDT',
              entry='100',
              quantity='2',
              stop='98',
              target='106',
              strategy_type: str = 'PRECISION',
              params=None,
              mode: TradingMode = TradingMode.VIRTUAL,
              atr: Optional[float] = None) -> Position:
        entry = Decimal(str(entry))
        quantity = Decimal(str(quantity))
        stop = Decimal(str(stop))
        if params is None:
            params = (ignition_parameters(state.settings) if strategy_type == 'IGNITION'
                      else manual_parameters(state.settings))
        position = Position(
            id=state.next_trade_id(),
            symbol=symbol,
            entry_price=entry,
            average_entry_price=entry,
            quantity=quantity,
            target_quantity=quantity,
            entry_time=T0,
            total_cost_usd=entry * quantity,
            stop_loss=stop,
            take_profit=Decimal(str(target)),
            initial_risk_per_unit=entry - stop,
            highest_price_since_entry=entry,
            strategy_type=strategy_type,
            active_profile=params.name,
            trade_params=params,
            mode=mode,
            entry_snapshot={'indicators': {'atr_15m': atr}},
        )
        state.active_positions.append(position)
        state.balance -= position.total_cost_usd
        return position

    return _make


def make_candles(closes: List[float],
                 volumes: Optional[List[float]] = None,
                 start_ms: int = 1_700_000_000_000,
                 step_ms: int = 60_000,
                 spread: float = 0.002) -> List[Candle]:
    """Candles whose open is the previous close; high/low a fixed spread around the body"""
    volumes = volumes or [100.0] * len(closes)
    candles = []
    prev_close = closes[0]
    for i, (close, volume) in enumerate(zip(closes, volumes)):
        open_ = prev_close
        high = max(open_, close) * (1 + spread)
        low = min(open_, close) * (1 - spread)
        candles.append(Candle(
            open_time=start_ms + i * step_ms,
            open=open_, high=high, low=low, close=close, volume=volume
        ))
        prev_close = close
    return candles


@pytest.fixture
def candle_factory():
    return make_candles


@pytest.fixture
def scenario_a_aggregates():
    """
    Uptrend on 4h, 15m squeeze, 1m breakout above EMA9 on 2x volume with
    rising OBV and CVD, RSI filters passing
    """
    return {
        '1m': {
            'ema9_1m': 99.5,
            'volume_avg_1m': 100.0,
            'obv_slope_1m': 50.0,
            'last_close_1m': 100.0,
            'prev_close_1m': 99.8,
            'last_volume_1m': 200.0,
        },
        '5m': {
            'cvd_slope_5m': 10.0,
            'cvd_trending_up_5m': True,
            'volume_avg_5m': 100.0,
            'momentum_confirmed_5m': False,
        },
        '15m': {
            'bollinger_bands_15m': {'upper': 101.0, 'middle': 100.0, 'lower': 99.0, 'width_pct': 2.0},
            'bb_width_pct_15m': 2.0,
            'is_in_squeeze_15m': True,
            'rsi_15m': 55.0,
            'adx_15m': 25.0,
            'atr_15m': 1.0,
            'atr_pct_15m': 1.0,
            'last_close_15m': 100.0,
            'body_ratio_15m': 0.3,
            'volume_ratio_15m': 1.0,
            'is_bullish_15m': True,
        },
        '1h': {'rsi_1h': 60.0},
        '4h': {'ema50_4h': 90.0, 'last_close_4h': 100.0, 'price_above_ema50_4h': True},
    }
