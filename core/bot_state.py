"""
Engine state container

One BotState is owned by the process and handed explicitly to every component
that reads or mutates it. Only PositionManager mutates positions and balance.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from config.settings import BotSettings
from core.models import PriceTick, Signal
from core.trade_parameters import TradeParameters
from utils.datetime_helpers import to_iso, parse_iso
from utils.decimal_utils import safe_decimal

logger = logging.getLogger(__name__)


class TradingMode(Enum):
    VIRTUAL = 'VIRTUAL'
    REAL_PAPER = 'REAL_PAPER'
    REAL_LIVE = 'REAL_LIVE'


class PositionStatus(Enum):
    FILLED = 'FILLED'
    CLOSED = 'CLOSED'


def _dec(value: Any) -> Optional[Decimal]:
    return safe_decimal(value, default=None)


@dataclass
class Position:
    """Long spot position managed through its whole lifecycle"""
    id: int
    symbol: str

    # Entry facts
    entry_price: Decimal
    average_entry_price: Decimal
    quantity: Decimal
    target_quantity: Decimal
    entry_time: datetime
    total_cost_usd: Decimal

    # Risk state
    stop_loss: Decimal
    take_profit: Decimal
    initial_risk_per_unit: Decimal
    highest_price_since_entry: Decimal
    strategy_type: Optional[str] = None
    active_profile: Optional[str] = None
    trade_params: Optional[TradeParameters] = None
    breakeven_applied: bool = False
    partial_tp_done: bool = False
    realized_partial_pnl: Decimal = Decimal('0')

    status: PositionStatus = PositionStatus.FILLED
    mode: TradingMode = TradingMode.VIRTUAL
    entry_snapshot: Dict[str, Any] = field(default_factory=dict)

    # Exit facts, set once at close
    exit_price: Optional[Decimal] = None
    exit_time: Optional[datetime] = None
    pnl: Decimal = Decimal('0')
    pnl_pct: Decimal = Decimal('0')
    exit_reason: Optional[str] = None

    def r_multiple(self, price: Decimal) -> Decimal:
        """Profit of price over entry measured in initial risk units"""
        if self.initial_risk_per_unit <= 0:
            return Decimal('0')
        return (price - self.average_entry_price) / self.initial_risk_per_unit

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'side': 'BUY',
            'entry_price': str(self.entry_price),
            'average_entry_price': str(self.average_entry_price),
            'quantity': str(self.quantity),
            'target_quantity': str(self.target_quantity),
            'entry_time': to_iso(self.entry_time),
            'total_cost_usd': str(self.total_cost_usd),
            'stop_loss': str(self.stop_loss),
            'take_profit': str(self.take_profit),
            'initial_risk_per_unit': str(self.initial_risk_per_unit),
            'highest_price_since_entry': str(self.highest_price_since_entry),
            'strategy_type': self.strategy_type,
            'active_profile': self.active_profile,
            'trade_params': self.trade_params.to_dict() if self.trade_params else None,
            'breakeven_applied': self.breakeven_applied,
            'partial_tp_done': self.partial_tp_done,
            'realized_partial_pnl': str(self.realized_partial_pnl),
            'status': self.status.value,
            'mode': self.mode.value,
            'entry_snapshot': self.entry_snapshot,
            'exit_price': str(self.exit_price) if self.exit_price is not None else None,
            'exit_time': to_iso(self.exit_time),
            'pnl': str(self.pnl),
            'pnl_pct': str(self.pnl_pct),
            'exit_reason': self.exit_reason,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Position':
        params = data.get('trade_params')
        return cls(
            id=int(data['id']),
            symbol=data['symbol'],
            entry_price=_dec(data['entry_price']),
            average_entry_price=_dec(data.get('average_entry_price', data['entry_price'])),
            quantity=_dec(data['quantity']),
            target_quantity=_dec(data.get('target_quantity', data['quantity'])),
            entry_time=parse_iso(data.get('entry_time')),
            total_cost_usd=_dec(data['total_cost_usd']),
            stop_loss=_dec(data['stop_loss']),
            take_profit=_dec(data['take_profit']),
            initial_risk_per_unit=_dec(data.get('initial_risk_per_unit')) or Decimal('0'),
            highest_price_since_entry=_dec(data.get('highest_price_since_entry', data['entry_price'])),
            strategy_type=data.get('strategy_type'),
            active_profile=data.get('active_profile'),
            trade_params=TradeParameters.from_dict(params) if params else None,
            breakeven_applied=bool(data.get('breakeven_applied', False)),
            partial_tp_done=bool(data.get('partial_tp_done', False)),
            realized_partial_pnl=_dec(data.get('realized_partial_pnl')) or Decimal('0'),
            status=PositionStatus(data.get('status', 'FILLED')),
            mode=TradingMode(data.get('mode', 'VIRTUAL')),
            entry_snapshot=data.get('entry_snapshot') or {},
            exit_price=_dec(data.get('exit_price')),
            exit_time=parse_iso(data.get('exit_time')),
            pnl=_dec(data.get('pnl')) or Decimal('0'),
            pnl_pct=_dec(data.get('pnl_pct')) or Decimal('0'),
            exit_reason=data.get('exit_reason'),
        )


@dataclass
class PendingConfirmation:
    """Signal waiting for the next 5m close"""
    signal: Signal
    created_at: datetime


@dataclass
class BotState:
    settings: BotSettings = field(default_factory=BotSettings)
    balance: Decimal = Decimal('10000')
    active_positions: List[Position] = field(default_factory=list)
    trade_history: List[Position] = field(default_factory=list)
    pending_confirmation: Dict[str, PendingConfirmation] = field(default_factory=dict)
    recently_lost_symbols: Dict[str, datetime] = field(default_factory=dict)
    price_cache: Dict[str, PriceTick] = field(default_factory=dict)
    trade_id_counter: int = 1
    is_running: bool = True
    trading_mode: TradingMode = TradingMode.VIRTUAL

    @classmethod
    def from_settings(cls, settings: BotSettings) -> 'BotState':
        return cls(
            settings=settings,
            balance=settings.initial_virtual_balance,
            trading_mode=TradingMode(settings.trading_mode),
        )

    def replace_settings(self, settings: BotSettings):
        """Swap settings wholesale; the next evaluation pass sees the new object"""
        self.settings = settings
        logger.info("Settings replaced")

    def next_trade_id(self) -> int:
        trade_id = self.trade_id_counter
        self.trade_id_counter += 1
        return trade_id

    def get_position(self, symbol: str) -> Optional[Position]:
        for position in self.active_positions:
            if position.symbol == symbol:
                return position
        return None

    def find_position_by_id(self, trade_id: int) -> Optional[Position]:
        for position in self.active_positions:
            if position.id == trade_id:
                return position
        return None

    def has_position(self, symbol: str) -> bool:
        return self.get_position(symbol) is not None

    def latest_price(self, symbol: str) -> Optional[Decimal]:
        tick = self.price_cache.get(symbol)
        return tick.price if tick else None

    def start_cooldown(self, symbol: str, now: datetime, hours: int):
        self.recently_lost_symbols[symbol] = now + timedelta(hours=hours)

    def is_in_cooldown(self, symbol: str, now: datetime) -> bool:
        """True while now < expiry; expired entries are purged here"""
        expiry = self.recently_lost_symbols.get(symbol)
        if expiry is None:
            return False
        if now >= expiry:
            del self.recently_lost_symbols[symbol]
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Persisted part of the state (settings are saved separately)"""
        return {
            'balance': str(self.balance),
            'active_positions': [p.to_dict() for p in self.active_positions],
            'trade_history': [p.to_dict() for p in self.trade_history],
            'recently_lost_symbols': {
                symbol: to_iso(expiry) for symbol, expiry in self.recently_lost_symbols.items()
            },
            'trade_id_counter': self.trade_id_counter,
            'is_running': self.is_running,
            'trading_mode': self.trading_mode.value,
        }

    def restore(self, data: Mapping[str, Any]):
        """
        Load persisted fields in place, keeping settings and caches

        Everything is parsed before the first assignment, so a corrupt
        payload raises and leaves the state untouched.
        """
        balance = _dec(data.get('balance')) or self.balance
        active = [Position.from_dict(p) for p in data.get('active_positions', [])]
        history = [Position.from_dict(p) for p in data.get('trade_history', [])]
        cooldowns = {
            symbol: parse_iso(expiry)
            for symbol, expiry in data.get('recently_lost_symbols', {}).items()
            if expiry
        }
        counter = int(data.get('trade_id_counter', self.trade_id_counter))
        mode = TradingMode(data['trading_mode']) if data.get('trading_mode') else self.trading_mode

        self.balance = balance
        self.active_positions = active
        self.trade_history = history
        self.recently_lost_symbols = cooldowns
        self.trade_id_counter = counter
        self.is_running = bool(data.get('is_running', self.is_running))
        self.trading_mode = mode

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], settings: Optional[BotSettings] = None) -> 'BotState':
        state = cls.from_settings(settings or BotSettings())
        state.restore(data)
        return state
