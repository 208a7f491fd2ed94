"""
Polling market data feed over the exchange adapter

Delivers price ticks and closed-candle events to the MarketDataHandler.
Candles are delivered once, oldest first, per (symbol, timeframe).
"""
import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

from core.exchange_manager import ExchangeManager
from core.indicators import TIMEFRAMES, TIMEFRAME_MINUTES
from core.market_data import MarketDataHandler
from utils.datetime_helpers import now_utc

logger = logging.getLogger(__name__)

# Candles fetched per poll; more than one so a slow cycle never skips a bar
CANDLE_POLL_LIMIT = 3


class MarketFeed:

    def __init__(self,
                 exchange: ExchangeManager,
                 handler: MarketDataHandler,
                 symbols: List[str],
                 poll_interval: float = 5.0):
        self.exchange = exchange
        self.handler = handler
        self.symbols = list(symbols)
        self.poll_interval = poll_interval

        self._last_open_time: Dict[Tuple[str, str], int] = {}
        self._next_candle_check: Dict[str, float] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self.stats = {
            'cycles': 0,
            'price_updates': 0,
            'candles_delivered': 0,
            'errors': 0,
        }

    async def start(self):
        """Hydrate candle windows, then start polling in the background"""
        for symbol in self.symbols:
            await self.handler.candles.hydrate_symbol(symbol)
            for timeframe in TIMEFRAMES:
                last = self.handler.candles.window(symbol, timeframe).last
                if last is not None:
                    self._last_open_time[(symbol, timeframe)] = last.open_time

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"📡 Market feed started for {len(self.symbols)} symbols (every {self.poll_interval}s)")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Market feed stopped")

    async def _run(self):
        while self._running:
            started = time.monotonic()
            await self.poll_once()
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.poll_interval - elapsed))

    async def poll_once(self):
        """One polling cycle: candles first, then prices"""
        self.stats['cycles'] += 1

        for timeframe in TIMEFRAMES:
            if not self._candle_check_due(timeframe):
                continue
            for symbol in self.symbols:
                try:
                    await self._poll_candles(symbol, timeframe)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.stats['errors'] += 1
                    logger.error(f"Error polling {timeframe} candles for {symbol}: {e}")

        try:
            prices = await self.exchange.fetch_prices(self.symbols)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"Error polling prices: {e}")
            return

        ts = now_utc()
        for symbol, price in prices.items():
            try:
                await self.handler.on_price(symbol, price, ts)
                self.stats['price_updates'] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats['errors'] += 1
                logger.error(f"Error handling price for {symbol}: {e}")

    def _candle_check_due(self, timeframe: str) -> bool:
        """Poll a timeframe only after its next bar boundary has passed"""
        now = time.time()
        if now < self._next_candle_check.get(timeframe, 0):
            return False
        period = TIMEFRAME_MINUTES[timeframe] * 60
        self._next_candle_check[timeframe] = (now // period + 1) * period
        return True

    async def _poll_candles(self, symbol: str, timeframe: str):
        key = (symbol, timeframe)
        candles = await self.exchange.fetch_candles(symbol, timeframe, CANDLE_POLL_LIMIT)
        last_seen = self._last_open_time.get(key, 0)

        for candle in candles:
            if candle.open_time <= last_seen:
                continue
            await self.handler.on_closed_candle(symbol, timeframe, candle)
            self._last_open_time[key] = candle.open_time
            last_seen = candle.open_time
            self.stats['candles_delivered'] += 1
