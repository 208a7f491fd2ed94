"""
Market data handling

CandleStore keeps one CandleWindow per (symbol, timeframe), hydrated from
exchange history on first use. MarketDataHandler receives feed events and
drives the cycle:

    closed candle -> aggregates -> classifier -> (gate) -> position manager
    price tick    -> price cache -> gate eviction -> exit check
"""
import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Protocol, List, Tuple, Union

from core.bot_state import BotState
from core.confirmation_gate import ConfirmationGate
from core.event_router import EventRouter, EventType
from core.indicators import CandleWindow, TIMEFRAMES, aggregate
from core.models import Candle, PriceTick, Signal, SignalScore
from core.position_manager import PositionManager
from core.signal_classifier import SignalClassifier
from utils.datetime_helpers import ensure_utc, now_utc
from utils.decimal_utils import to_decimal

logger = logging.getLogger(__name__)


class CandleSource(Protocol):
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> List[Candle]:
        ...


class CandleStore:
    """Bounded candle windows per (symbol, timeframe)"""

    def __init__(self, source: Optional[CandleSource] = None, history_limit: int = 200):
        self.source = source
        self.history_limit = history_limit
        self._windows: Dict[Tuple[str, str], CandleWindow] = {}
        self._hydrated: set = set()

    def window(self, symbol: str, timeframe: str) -> CandleWindow:
        key = (symbol, timeframe)
        if key not in self._windows:
            self._windows[key] = CandleWindow()
        return self._windows[key]

    async def hydrate(self, symbol: str, timeframe: str) -> int:
        """Load exchange history into an empty window once"""
        key = (symbol, timeframe)
        if key in self._hydrated or self.source is None:
            return 0
        self._hydrated.add(key)

        try:
            candles = await self.source.fetch_candles(symbol, timeframe, self.history_limit)
        except Exception as e:
            self._hydrated.discard(key)
            logger.warning(f"⚠️ Failed to hydrate {symbol} {timeframe}: {e}")
            return 0

        added = self.window(symbol, timeframe).extend(candles)
        logger.debug(f"Hydrated {symbol} {timeframe} with {added} candles")
        return added

    async def hydrate_symbol(self, symbol: str):
        for timeframe in TIMEFRAMES:
            await self.hydrate(symbol, timeframe)

    async def add(self, symbol: str, timeframe: str, candle: Candle) -> bool:
        """Append a closed candle; False when it is a duplicate or out of order"""
        await self.hydrate(symbol, timeframe)
        return self.window(symbol, timeframe).append(candle)

    def aggregates(self, symbol: str) -> Dict[str, Dict]:
        return {
            timeframe: aggregate(self.window(symbol, timeframe).to_list(), timeframe)
            for timeframe in TIMEFRAMES
        }


class MarketDataHandler:
    """Glue between the market feed and the decision engine"""

    def __init__(self,
                 state: BotState,
                 candles: CandleStore,
                 position_manager: PositionManager,
                 classifier: Optional[SignalClassifier] = None,
                 gate: Optional[ConfirmationGate] = None,
                 event_router: Optional[EventRouter] = None):
        self.state = state
        self.candles = candles
        self.position_manager = position_manager
        self.classifier = classifier or SignalClassifier(state)
        self.gate = gate or ConfirmationGate(state)
        self.event_router = event_router
        self.latest_signals: Dict[str, Signal] = {}

    async def on_price(self, symbol: str, price: Union[Decimal, float, str], ts: Optional[datetime] = None):
        """Price tick: update cache, expire confirmations, check exits"""
        self.state.price_cache[symbol] = PriceTick(price=to_decimal(price), timestamp=ensure_utc(ts) or now_utc())
        self.gate.evict_stale(now_utc())

        if not self.state.has_position(symbol):
            return

        try:
            await self.position_manager.check_symbol(symbol)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ Dropped price update for {symbol}: lock timeout")

    async def on_closed_candle(self, symbol: str, timeframe: str, candle: Candle) -> Optional[Signal]:
        """Closed candle: resolve confirmations on 5m, then re-classify the symbol"""
        if not await self.candles.add(symbol, timeframe, candle):
            logger.debug(f"Ignored stale {timeframe} candle for {symbol} at {candle.open_time}")
            return None

        if timeframe == '5m':
            self.gate.evict_stale(now_utc())
            confirmed = self.gate.resolve(symbol, candle)
            if confirmed is not None:
                await self._dispatch(confirmed)

        signal = self.classifier.classify(symbol, self.candles.aggregates(symbol))
        if signal is None:
            return None

        self.latest_signals[symbol] = signal
        if self.event_router:
            await self.event_router.emit(EventType.SIGNAL_UPDATED, signal.to_dict())

        if signal.score == SignalScore.PENDING_CONFIRMATION and self.state.settings.use_mtf_validation:
            self.gate.hold(signal, now_utc())
        elif signal.is_actionable:
            await self._dispatch(signal)

        return signal

    async def _dispatch(self, signal: Signal):
        try:
            await self.position_manager.process_signal(signal)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ Dropped {signal.score.name} signal for {signal.symbol}: lock timeout")
