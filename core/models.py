"""
Market data and signal value objects shared by the classification engine
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from utils.datetime_helpers import to_iso


@dataclass(frozen=True)
class Candle:
    """Closed OHLCV bar. open_time is the exchange epoch in milliseconds."""
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @classmethod
    def from_ohlcv(cls, row: List) -> 'Candle':
        """ccxt OHLCV row: [timestamp, open, high, low, close, volume]"""
        return cls(
            open_time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5] or 0)
        )


@dataclass
class PriceTick:
    """Latest known price for a symbol"""
    price: Decimal
    timestamp: datetime


@dataclass
class ExecutionResult:
    """Fill reported by the order execution collaborator"""
    executed_price: Decimal
    executed_quantity: Decimal
    order_id: Optional[str] = None


class SignalScore(Enum):
    """
    Signal tiers, ordered by priority

    The numeric value is the score shown to clients; the name is the label.
    """
    HOLD = 50
    COMPRESSION = 70
    PENDING_CONFIRMATION = 80
    STRONG_BUY = 85
    MOMENTUM_BUY = 90
    IGNITION_DETECTED = 100

    @property
    def is_actionable(self) -> bool:
        return self in ACTIONABLE_SCORES


ACTIONABLE_SCORES = frozenset({
    SignalScore.STRONG_BUY,
    SignalScore.MOMENTUM_BUY,
    SignalScore.IGNITION_DETECTED,
})


class StrategyType(Enum):
    PRECISION = 'PRECISION'
    MOMENTUM = 'MOMENTUM'
    IGNITION = 'IGNITION'


@dataclass
class Signal:
    """Classifier output for one symbol at one point in time"""
    symbol: str
    score: SignalScore
    price: Decimal
    strategy_type: Optional[StrategyType] = None
    conditions: Dict[str, bool] = field(default_factory=dict)
    indicators: Dict[str, Any] = field(default_factory=dict)
    profile_name: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def conditions_met_count(self) -> int:
        return sum(1 for met in self.conditions.values() if met)

    @property
    def is_actionable(self) -> bool:
        return self.score.is_actionable

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'score': self.score.value,
            'score_label': self.score.name,
            'price': str(self.price),
            'strategy_type': self.strategy_type.value if self.strategy_type else None,
            'conditions': dict(self.conditions),
            'conditions_met_count': self.conditions_met_count,
            'profile': self.profile_name,
            'created_at': to_iso(self.created_at),
        }
