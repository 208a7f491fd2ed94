"""
Exchange adapter using CCXT

Covers what the engine needs from an exchange: closed candles, ticker
snapshots, symbol step sizes and spot market orders.
"""
import ccxt.async_support as ccxt
import logging
import time
from typing import Dict, List, Optional, Sequence, Set
from decimal import Decimal

from config.settings import ExchangeConfig
from core.indicators import TIMEFRAME_MINUTES
from core.models import Candle, ExecutionResult
from utils.decimal_utils import safe_decimal, to_decimal

logger = logging.getLogger(__name__)


def normalize_symbol(symbol: str) -> str:
    """
    Normalize symbol format for consistent comparison
    Converts exchange format 'BTC/USDT' or 'BTC/USDT:USDT' to 'BTCUSDT'
    """
    return symbol.split(':')[0].replace('/', '')


class ExchangeManager:
    """
    Spot exchange interface using CCXT
    Inspired by Freqtrade's exchange implementation
    """

    def __init__(self, config: ExchangeConfig):
        """
        Initialize exchange with configuration

        Args:
            config: Exchange configuration (keys optional for public data)
        """
        self.name = config.name.lower()
        self.config = config

        exchange_class = getattr(ccxt, self.name)
        exchange_options = {
            'enableRateLimit': config.rate_limit,
            'options': {
                'defaultType': 'spot',
                'adjustForTimeDifference': True,
            }
        }
        if config.has_credentials:
            exchange_options['apiKey'] = config.api_key
            exchange_options['secret'] = config.api_secret

        self.exchange = exchange_class(exchange_options)

        if config.testnet:
            self.exchange.set_sandbox_mode(True)

        # Market information cache
        self.markets: Dict = {}
        self._symbol_map: Dict[str, str] = {}
        self._unavailable: Set[str] = set()

        logger.info(f"Exchange {self.name} initialized {'(TESTNET)' if config.testnet else ''}")

    async def initialize(self):
        """Load markets and validate connection"""
        try:
            self.markets = await self.exchange.load_markets()
            self._symbol_map = {
                normalize_symbol(market_symbol): market_symbol
                for market_symbol, market in self.markets.items()
                if market.get('spot', True)
            }
            logger.info(f"Loaded {len(self.markets)} markets from {self.name}")

            if self.config.has_credentials:
                await self.exchange.fetch_balance()
                logger.info(f"Connection to {self.name} verified")

            return True
        except Exception as e:
            logger.error(f"Failed to initialize {self.name}: {e}")
            raise

    async def close(self):
        """Close exchange connection"""
        await self.exchange.close()

    def find_exchange_symbol(self, symbol: str) -> Optional[str]:
        """
        Convert engine format ('BTCUSDT') to exchange format ('BTC/USDT')

        Returns:
            Exchange symbol or None if the market is unknown
        """
        if symbol in self.markets:
            return symbol
        return self._symbol_map.get(normalize_symbol(symbol))

    def _require_symbol(self, symbol: str) -> str:
        exchange_symbol = self.find_exchange_symbol(symbol)
        if not exchange_symbol:
            raise ValueError(f"Symbol {symbol} not available on {self.name}")
        return exchange_symbol

    # ============== Market data ==============

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> List[Candle]:
        """
        Fetch closed candles, oldest first

        The still-forming last bar returned by the exchange is dropped.
        """
        ohlcv = await self.exchange.fetch_ohlcv(self._require_symbol(symbol), timeframe, limit=limit + 1)
        period_ms = TIMEFRAME_MINUTES[timeframe] * 60 * 1000
        now_ms = int(time.time() * 1000)

        candles = [
            Candle.from_ohlcv(row) for row in ohlcv
            if row[0] + period_ms <= now_ms
        ]
        return candles[-limit:]

    async def fetch_prices(self, symbols: Sequence[str]) -> Dict[str, Decimal]:
        """
        Last traded price per engine symbol

        Symbols the exchange does not list are skipped and warned about once.
        """
        exchange_symbols = {}
        for symbol in symbols:
            exchange_symbol = self.find_exchange_symbol(symbol)
            if exchange_symbol:
                exchange_symbols[exchange_symbol] = symbol
            elif symbol not in self._unavailable:
                self._unavailable.add(symbol)
                logger.warning(f"⚠️ {symbol} not available on {self.name}, skipping prices")
        if not exchange_symbols:
            return {}

        tickers = await self.exchange.fetch_tickers(list(exchange_symbols))

        prices = {}
        for exchange_symbol, ticker in tickers.items():
            symbol = exchange_symbols.get(exchange_symbol)
            price = safe_decimal(ticker.get('last'), default=None, field_name=f"{exchange_symbol}.last")
            if symbol and price and price > 0:
                prices[symbol] = price
        return prices

    # ============== Trading rules ==============

    def get_step_size(self, symbol: str) -> Optional[Decimal]:
        """Quantity step size from the LOT_SIZE filter, None when unknown"""
        exchange_symbol = self.find_exchange_symbol(symbol)
        market = self.markets.get(exchange_symbol) if exchange_symbol else None
        if not market:
            return None

        # For Binance: parse stepSize from LOT_SIZE filter
        for f in market.get('info', {}).get('filters', []):
            if f.get('filterType') == 'LOT_SIZE':
                step = safe_decimal(f.get('stepSize'), default=None, field_name='stepSize')
                if step and step > 0:
                    return step

        # Fallback to CCXT precision (a step size in tick-size precision mode)
        precision = market.get('precision', {}).get('amount')
        if precision is None:
            return None
        step = to_decimal(precision)
        if step >= 1 and step == step.to_integral_value() and step != 1:
            # Decimal-places precision mode: 3 -> 0.001
            return Decimal(1).scaleb(-int(step))
        return step

    # ============== Orders ==============

    async def place_market_order(self, symbol: str, side: str, quantity: Decimal) -> ExecutionResult:
        """
        Place a spot market order

        Raises:
            ccxt.BaseError / ValueError: order rejected or not filled
        """
        exchange_symbol = self._require_symbol(symbol)
        try:
            order = await self.exchange.create_market_order(
                symbol=exchange_symbol,
                side=side.lower(),
                amount=float(quantity)
            )
        except ccxt.BaseError as e:
            logger.error(f"Market order failed for {symbol}: {e}")
            raise

        filled = safe_decimal(order.get('filled'), default=None, field_name='filled')
        average = safe_decimal(order.get('average'), default=None, field_name='average')
        if average is None:
            cost = safe_decimal(order.get('cost'), default=None, field_name='cost')
            if cost and filled:
                average = cost / filled

        if not filled or not average:
            raise ValueError(f"Market order for {symbol} returned no fill: {order.get('status')}")

        logger.info(f"✅ {side.upper()} {filled} {symbol} filled at {average} (order {order.get('id')})")
        return ExecutionResult(
            executed_price=average,
            executed_quantity=filled,
            order_id=order.get('id'),
        )
