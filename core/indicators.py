"""
Indicator Aggregator

Turns a bounded OHLCV window of one (symbol, timeframe) into a flat dict of
named indicator values. Indicator primitives come from pandas_ta.

An empty dict means "no opinion": not enough candles for that timeframe.
"""
import logging
import math
from collections import deque
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
import pandas_ta as ta

from core.models import Candle

logger = logging.getLogger(__name__)

WINDOW_CAPACITY = 201

TIMEFRAMES = ('1m', '5m', '15m', '1h', '4h')

MIN_CANDLES = {
    '1m': 21,
    '5m': 21,
    '15m': 50,
    '1h': 21,
    '4h': 51,
}

TIMEFRAME_MINUTES = {
    '1m': 1,
    '5m': 5,
    '15m': 15,
    '1h': 60,
    '4h': 240,
}

SQUEEZE_PERCENTILE = 0.25


class CandleWindow:
    """
    Fixed-capacity, oldest-first FIFO of closed candles

    Candles whose open_time is not newer than the last stored one are
    ignored, so replays and out-of-order events never corrupt the window.
    """

    def __init__(self, capacity: int = WINDOW_CAPACITY):
        self._candles: deque = deque(maxlen=capacity)

    def append(self, candle: Candle) -> bool:
        if self._candles and candle.open_time <= self._candles[-1].open_time:
            return False
        self._candles.append(candle)
        return True

    def extend(self, candles: Iterable[Candle]) -> int:
        return sum(1 for c in sorted(candles, key=lambda c: c.open_time) if self.append(c))

    @property
    def last(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def to_list(self) -> List[Candle]:
        return list(self._candles)

    def __len__(self) -> int:
        return len(self._candles)


def candles_to_df(candles: Iterable[Candle]) -> pd.DataFrame:
    """Convert candles to pandas DataFrame with DatetimeIndex"""
    df = pd.DataFrame(
        [(c.open_time, c.open, c.high, c.low, c.close, c.volume) for c in candles],
        columns=['timestamp', 'open', 'high', 'low', 'close', 'volume']
    )

    # DatetimeIndex is required by some pandas_ta indicators
    df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms')
    df = df.set_index('timestamp')
    df = df.sort_index()

    df = df.astype({
        'open': float,
        'high': float,
        'low': float,
        'close': float,
        'volume': float
    })
    return df


def _last(series: Optional[pd.Series], offset: int = 1) -> Optional[float]:
    """Value at position -offset, None when missing or NaN"""
    if series is None or len(series) < offset:
        return None
    value = series.iloc[-offset]
    if value is None or pd.isna(value):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _column(frame: Optional[pd.DataFrame], prefix: str) -> Optional[pd.Series]:
    # pandas_ta column suffixes differ between releases (BBL_20_2.0 vs BBL_20_2.0_2.0)
    if frame is None:
        return None
    for name in frame.columns:
        if name.startswith(prefix):
            return frame[name]
    return None


def squeeze_state(widths: pd.Series) -> bool:
    """
    Current Bollinger width is a squeeze when it is at or below the 25th
    percentile of the earlier widths in the same window
    """
    widths = widths.dropna()
    if len(widths) < 2:
        return False

    current = float(widths.iloc[-1])
    history = np.sort(widths.iloc[:-1].to_numpy(dtype=float))
    threshold = history[int(math.floor(len(history) * SQUEEZE_PERCENTILE))]
    return current <= threshold


def _analyze_1m(df: pd.DataFrame) -> Dict:
    ema9 = ta.ema(df['close'], length=9)
    volume_avg = ta.sma(df['volume'], length=20)
    obv = ta.obv(df['close'], df['volume'])

    obv_last = _last(obv)
    obv_prev = _last(obv, 2)

    return {
        'ema9_1m': _last(ema9),
        'volume_avg_1m': _last(volume_avg),
        'obv_slope_1m': (obv_last - obv_prev) if obv_last is not None and obv_prev is not None else None,
        'last_close_1m': _last(df['close']),
        'prev_close_1m': _last(df['close'], 2),
        'last_volume_1m': _last(df['volume']),
    }


def cvd(frame: pd.DataFrame) -> float:
    """Cumulative volume delta: + volume on bullish bars, - on bearish bars"""
    direction = np.sign(frame['close'].to_numpy() - frame['open'].to_numpy())
    return float((direction * frame['volume'].to_numpy()).sum())


def _analyze_5m(df: pd.DataFrame) -> Dict:
    slope = cvd(df.iloc[-5:]) - cvd(df.iloc[-10:-5])
    volume_avg = _last(ta.sma(df['volume'], length=20))
    last = df.iloc[-1]

    confirmed = bool(
        last['close'] > last['open']
        and volume_avg is not None
        and last['volume'] > volume_avg
    )

    return {
        'cvd_slope_5m': slope,
        'cvd_trending_up_5m': slope > 0,
        'volume_avg_5m': volume_avg,
        'momentum_confirmed_5m': confirmed,
    }


def _analyze_15m(df: pd.DataFrame) -> Dict:
    close = df['close']
    last_close = _last(close)

    bbands = ta.bbands(close, length=20, std=2)
    upper = _column(bbands, 'BBU_')
    middle = _column(bbands, 'BBM_')
    lower = _column(bbands, 'BBL_')

    bollinger = None
    width_pct = None
    in_squeeze = False
    if upper is not None and middle is not None and lower is not None:
        widths = (upper - lower) / middle.replace(0, np.nan) * 100
        width_pct = _last(widths)
        in_squeeze = squeeze_state(widths)
        bollinger = {
            'upper': _last(upper),
            'middle': _last(middle),
            'lower': _last(lower),
            'width_pct': width_pct,
        }

    adx = _column(ta.adx(df['high'], df['low'], close, length=14), 'ADX_')
    atr = _last(ta.atr(df['high'], df['low'], close, length=14))

    last = df.iloc[-1]
    candle_range = float(last['high'] - last['low'])
    body_ratio = abs(float(last['close'] - last['open'])) / candle_range if candle_range > 0 else 0.0
    volume_avg = _last(ta.sma(df['volume'], length=20))
    volume_ratio = float(last['volume']) / volume_avg if volume_avg else None

    return {
        'bollinger_bands_15m': bollinger,
        'bb_width_pct_15m': width_pct,
        'is_in_squeeze_15m': in_squeeze,
        'rsi_15m': _last(ta.rsi(close, length=14)),
        'adx_15m': _last(adx),
        'atr_15m': atr,
        'atr_pct_15m': (atr / last_close * 100) if atr is not None and last_close else None,
        'last_close_15m': last_close,
        'body_ratio_15m': body_ratio,
        'volume_ratio_15m': volume_ratio,
        'is_bullish_15m': bool(last['close'] > last['open']),
    }


def _analyze_1h(df: pd.DataFrame) -> Dict:
    return {'rsi_1h': _last(ta.rsi(df['close'], length=14))}


def _analyze_4h(df: pd.DataFrame) -> Dict:
    ema50 = _last(ta.ema(df['close'], length=50))
    last_close = _last(df['close'])
    return {
        'ema50_4h': ema50,
        'last_close_4h': last_close,
        'price_above_ema50_4h': (last_close > ema50) if ema50 is not None and last_close is not None else None,
    }


_ANALYZERS = {
    '1m': _analyze_1m,
    '5m': _analyze_5m,
    '15m': _analyze_15m,
    '1h': _analyze_1h,
    '4h': _analyze_4h,
}


def aggregate(candles: List[Candle], timeframe: str) -> Dict:
    """
    Compute the indicator aggregate of one timeframe

    Args:
        candles: Closed candles, oldest first
        timeframe: One of TIMEFRAMES

    Returns:
        Flat dict of indicator values, {} when there are too few candles
    """
    if timeframe not in _ANALYZERS:
        raise ValueError(f"Unsupported timeframe: {timeframe}")

    if len(candles) < MIN_CANDLES[timeframe]:
        logger.debug(f"Insufficient {timeframe} data: {len(candles)} < {MIN_CANDLES[timeframe]} candles")
        return {}

    df = candles_to_df(candles)
    return _ANALYZERS[timeframe](df)
