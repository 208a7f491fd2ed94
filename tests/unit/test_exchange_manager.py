"""
Tests for the CCXT exchange adapter (no network)
"""
import time
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import ExchangeConfig
from core.exchange_manager import ExchangeManager, normalize_symbol

MARKETS = {
    'BTC/USDT': {
        'spot': True,
        'info': {'filters': [{'filterType': 'LOT_SIZE', 'stepSize': '0.00001000'}]},
        'precision': {'amount': 0.00001},
    },
    'ETH/USDT': {
        'spot': True,
        'info': {},
        'precision': {'amount': 4},
    },
    'SOL/USDT': {
        'spot': True,
        'info': {},
        'precision': {'amount': 0.01},
    },
}


@pytest.fixture
def manager():
    manager = ExchangeManager(ExchangeConfig())
    manager.exchange = MagicMock()
    manager.exchange.load_markets = AsyncMock(return_value=MARKETS)
    manager.exchange.fetch_balance = AsyncMock()
    return manager


@pytest.fixture
async def ready(manager):
    await manager.initialize()
    return manager


@pytest.mark.parametrize('raw,expected', [
    ('BTC/USDT', 'BTCUSDT'),
    ('BTC/USDT:USDT', 'BTCUSDT'),
    ('BTCUSDT', 'BTCUSDT'),
])
def test_normalize_symbol(raw, expected):
    assert normalize_symbol(raw) == expected


async def test_initialize_without_keys_skips_balance(ready):
    assert ready.find_exchange_symbol('BTCUSDT') == 'BTC/USDT'
    assert ready.find_exchange_symbol('BTC/USDT') == 'BTC/USDT'
    assert ready.find_exchange_symbol('DOGEUSDT') is None
    ready.exchange.fetch_balance.assert_not_awaited()


class TestStepSize:

    async def test_lot_size_filter(self, ready):
        assert ready.get_step_size('BTCUSDT') == Decimal('0.00001')

    async def test_decimal_places_precision(self, ready):
        assert ready.get_step_size('ETHUSDT') == Decimal('0.0001')

    async def test_tick_size_precision(self, ready):
        assert ready.get_step_size('SOLUSDT') == Decimal('0.01')

    async def test_unknown_symbol(self, ready):
        assert ready.get_step_size('DOGEUSDT') is None


async def test_fetch_candles_drops_forming_bar(ready):
    minute = 60_000
    # Last bar opened 30s ago, so it is still forming
    forming = int(time.time() * 1000) - minute // 2
    ready.exchange.fetch_ohlcv = AsyncMock(return_value=[
        [forming - 3 * minute, 1, 2, 0.5, 1.5, 10],
        [forming - 2 * minute, 1.5, 2, 1, 1.8, 12],
        [forming - minute, 1.8, 2.1, 1.7, 2.0, 9],
        [forming, 2.0, 2.2, 1.9, 2.1, 3],
    ])

    candles = await ready.fetch_candles('BTCUSDT', '1m', limit=2)

    ready.exchange.fetch_ohlcv.assert_awaited_once_with('BTC/USDT', '1m', limit=3)
    assert [c.open_time for c in candles] == [forming - 2 * minute, forming - minute]
    assert candles[-1].close == 2.0


async def test_fetch_prices(ready):
    ready.exchange.fetch_tickers = AsyncMock(return_value={
        'BTC/USDT': {'last': 43000.5},
        'ETH/USDT': {'last': None},
    })

    prices = await ready.fetch_prices(['BTCUSDT', 'ETHUSDT'])

    assert prices == {'BTCUSDT': Decimal('43000.5')}


async def test_unknown_symbol_skipped(ready, caplog):
    ready.exchange.fetch_tickers = AsyncMock(return_value={'BTC/USDT': {'last': 43000.5}})

    for _ in range(2):
        prices = await ready.fetch_prices(['DOGEUSDT', 'BTCUSDT'])
        assert prices == {'BTCUSDT': Decimal('43000.5')}

    ready.exchange.fetch_tickers.assert_awaited_with(['BTC/USDT'])
    assert sum('DOGEUSDT' in r.message for r in caplog.records) == 1


async def test_only_unknown_symbols(ready):
    ready.exchange.fetch_tickers = AsyncMock()

    assert await ready.fetch_prices(['DOGEUSDT']) == {}
    ready.exchange.fetch_tickers.assert_not_awaited()


async def test_unknown_symbol_candles_rejected(ready):
    with pytest.raises(ValueError):
        await ready.fetch_candles('DOGEUSDT', '1m')


class TestMarketOrders:

    async def test_fill_from_average(self, ready):
        ready.exchange.create_market_order = AsyncMock(return_value={
            'id': '42', 'filled': 0.5, 'average': 43000.0, 'status': 'closed'
        })

        result = await ready.place_market_order('BTCUSDT', 'BUY', Decimal('0.5'))

        ready.exchange.create_market_order.assert_awaited_once_with(symbol='BTC/USDT', side='buy', amount=0.5)
        assert result.executed_price == Decimal('43000.0')
        assert result.executed_quantity == Decimal('0.5')
        assert result.order_id == '42'

    async def test_fill_from_cost(self, ready):
        ready.exchange.create_market_order = AsyncMock(return_value={
            'id': '43', 'filled': 2, 'average': None, 'cost': 201, 'status': 'closed'
        })

        result = await ready.place_market_order('ETHUSDT', 'SELL', Decimal('2'))

        assert result.executed_price == Decimal('100.5')

    async def test_no_fill_raises(self, ready):
        ready.exchange.create_market_order = AsyncMock(return_value={
            'id': '44', 'filled': 0, 'average': None, 'status': 'expired'
        })

        with pytest.raises(ValueError):
            await ready.place_market_order('BTCUSDT', 'BUY', Decimal('1'))
