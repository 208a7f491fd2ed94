"""
Position Manager - position and risk lifecycle

Turns actionable signals into sized positions, evaluates exits on every price
update and settles PnL on close.

    signal -> gates -> trade parameters -> sizing/stop/target
           -> (REAL_LIVE) market BUY -> FILLED
    tick   -> partial TP / breakeven / trailing -> stop or target -> CLOSED

All mutations of one symbol run under its LockManager lock. Only
REAL_LIVE positions send orders to the execution collaborator; VIRTUAL and
REAL_PAPER fill at the signal price.
"""
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, Set, Union

from core.bot_state import BotState, Position, PositionStatus, TradingMode
from core.event_router import EventRouter, EventType
from core.lock_manager import LockManager
from core.models import ExecutionResult, Signal, SignalScore, StrategyType
from core.trade_parameters import TradeParameters, manual_parameters, resolve_trade_parameters
from utils.datetime_helpers import now_utc
from utils.decimal_utils import format_quantity, safe_divide, to_decimal

logger = logging.getLogger(__name__)

HUNDRED = Decimal('100')

# Indicator values copied to the position for later exit management
SNAPSHOT_INDICATORS = ('atr_15m', 'atr_pct_15m', 'adx_15m', 'rsi_1h', 'rsi_15m')


class OrderExecutor(Protocol):
    async def place_market_order(self, symbol: str, side: str, quantity: Decimal) -> ExecutionResult:
        ...

    def get_step_size(self, symbol: str) -> Optional[Decimal]:
        ...


class StateStoreProtocol(Protocol):
    async def save(self, kind: str) -> bool:
        ...


@dataclass
class EntryPlan:
    """Sized entry for a signal, before execution"""
    symbol: str
    price: Decimal
    quantity: Decimal
    stop_loss: Decimal
    take_profit: Decimal
    risk_per_unit: Decimal
    position_size_pct: Decimal
    params: TradeParameters


@dataclass
class CloseResult:
    success: bool
    message: str
    position: Optional[Position] = None


class PositionManager:
    """
    Central position management system
    Handles opening, monitoring, and closing positions
    """

    def __init__(self,
                 state: BotState,
                 lock_manager: Optional[LockManager] = None,
                 store: Optional[StateStoreProtocol] = None,
                 event_router: Optional[EventRouter] = None,
                 executor: Optional[OrderExecutor] = None):
        """Initialize position manager"""
        self.state = state
        self.lock_manager = lock_manager or LockManager()
        self.store = store
        self.event_router = event_router
        self.executor = executor

        # Symbols with an open in flight; they count against MAX_OPEN_POSITIONS
        self._opening: Set[str] = set()

        self.stats = {
            'signals_received': 0,
            'signals_rejected': 0,
            'positions_opened': 0,
            'positions_closed': 0,
            'open_failures': 0,
            'close_order_failures': 0,
        }

    # ============== Entry ==============

    def _rejection_reason(self, signal: Signal) -> Optional[str]:
        """First failing portfolio gate, None when the signal may be sized"""
        settings = self.state.settings
        symbol = signal.symbol

        if not self.state.is_running:
            return "bot paused"

        if not signal.is_actionable:
            return f"score {signal.score.name} not actionable"

        open_count = len(self.state.active_positions) + len(self._opening)
        if open_count >= settings.max_open_positions:
            return f"max open positions reached ({open_count}/{settings.max_open_positions})"

        if self.state.has_position(symbol) or symbol in self._opening:
            return "position already open"

        if self.state.is_in_cooldown(symbol, now_utc()):
            return f"in loss cooldown until {self.state.recently_lost_symbols[symbol].isoformat()}"

        return None

    def evaluate_signal(self, signal: Signal) -> Optional[EntryPlan]:
        """
        Size an actionable signal and place its stop and target

        Returns:
            EntryPlan, or None when the computed risk is invalid
        """
        settings = self.state.settings
        symbol = signal.symbol
        price = to_decimal(signal.price)

        if price <= 0:
            logger.warning(f"⚠️ Invalid price {price} for {symbol}, trade cancelled")
            return None

        params = resolve_trade_parameters(signal, settings)

        size_pct = settings.position_size_pct
        if settings.use_dynamic_position_sizing and signal.score == SignalScore.STRONG_BUY:
            size_pct = settings.strong_buy_position_size_pct

        notional = self.state.balance * size_pct / HUNDRED
        quantity = notional / price
        if quantity <= 0:
            logger.warning(f"⚠️ Computed quantity {quantity} for {symbol} is not positive, trade cancelled")
            return None

        atr = signal.indicators.get('atr_15m')
        if params.use_atr_stop_loss and atr:
            stop_loss = price - to_decimal(atr) * params.atr_multiplier
        else:
            stop_loss = price * (1 - params.stop_loss_pct / HUNDRED)

        risk_per_unit = price - stop_loss
        if risk_per_unit <= 0:
            logger.warning(
                f"⚠️ Invalid risk calculation for {symbol} "
                f"(price={price}, stop={stop_loss}), trade cancelled"
            )
            return None

        # For IGNITION this is a placeholder target, the trailing stop manages the exit
        take_profit = price + risk_per_unit * params.risk_reward_ratio

        return EntryPlan(
            symbol=symbol,
            price=price,
            quantity=quantity,
            stop_loss=stop_loss,
            take_profit=take_profit,
            risk_per_unit=risk_per_unit,
            position_size_pct=size_pct,
            params=params,
        )

    async def process_signal(self, signal: Signal) -> Optional[Position]:
        """
        Open a position for the signal if every gate passes

        Raises:
            asyncio.TimeoutError: symbol lock could not be acquired
        """
        self.stats['signals_received'] += 1

        # Gates and in-flight reservation happen before the first await
        reason = self._rejection_reason(signal)
        if reason:
            self.stats['signals_rejected'] += 1
            logger.debug(f"[{signal.symbol}] Signal {signal.score.name} rejected: {reason}")
            return None

        symbol = signal.symbol
        self._opening.add(symbol)
        try:
            async with self.lock_manager.acquire_lock(symbol, 'open_position'):
                if self.state.has_position(symbol):
                    return None

                plan = self.evaluate_signal(signal)
                if plan is None:
                    self.stats['signals_rejected'] += 1
                    return None

                logger.info(
                    f"🎯 Signal [{signal.score.name}] for {symbol} with profile [{plan.params.name}], "
                    f"size {plan.position_size_pct}%"
                )
                return await self._open_position(signal, plan)
        finally:
            self._opening.discard(symbol)

    async def _open_position(self, signal: Signal, plan: EntryPlan) -> Optional[Position]:
        """Execute the plan; on execution failure nothing is mutated"""
        symbol = plan.symbol
        mode = self.state.trading_mode
        entry_price = plan.price
        quantity = plan.quantity

        if mode == TradingMode.REAL_LIVE and self.executor:
            order_quantity = format_quantity(quantity, self.executor.get_step_size(symbol))
            logger.info(f"📤 Opening REAL position for {symbol}: BUY {order_quantity}")
            try:
                result = await self.executor.place_market_order(symbol, 'BUY', order_quantity)
            except Exception as e:
                self.stats['open_failures'] += 1
                logger.error(f"❌ Failed to open REAL position for {symbol}: {e}")
                return None

            entry_price = to_decimal(result.executed_price)
            quantity = to_decimal(result.executed_quantity)
            if entry_price <= 0 or quantity <= 0:
                self.stats['open_failures'] += 1
                logger.error(f"❌ Empty fill for {symbol}: price={entry_price} qty={quantity}")
                return None

        total_cost = entry_price * quantity
        snapshot = signal.to_dict()
        snapshot['indicators'] = {
            key: signal.indicators.get(key) for key in SNAPSHOT_INDICATORS
        }

        position = Position(
            id=self.state.next_trade_id(),
            symbol=symbol,
            entry_price=entry_price,
            average_entry_price=entry_price,
            quantity=quantity,
            target_quantity=quantity,
            entry_time=now_utc(),
            total_cost_usd=total_cost,
            stop_loss=plan.stop_loss,
            take_profit=plan.take_profit,
            initial_risk_per_unit=plan.risk_per_unit,
            highest_price_since_entry=entry_price,
            strategy_type=signal.strategy_type.value if signal.strategy_type else None,
            active_profile=plan.params.name,
            trade_params=plan.params,
            status=PositionStatus.FILLED,
            mode=mode,
            entry_snapshot=snapshot,
        )

        self.state.balance -= total_cost
        self.state.active_positions.append(position)
        self.stats['positions_opened'] += 1

        logger.info(
            f"✅ Position {mode.value} opened for {symbol}: qty={quantity}, entry={entry_price}, "
            f"SL={plan.stop_loss}, TP={plan.take_profit}, "
            f"strategy={position.strategy_type}, profile={plan.params.name}"
        )

        await self._persist()
        await self._emit(EventType.POSITION_OPENED, position.to_dict())
        await self._emit(EventType.POSITIONS_UPDATED, {'count': len(self.state.active_positions)})
        return position

    # ============== Monitoring ==============

    async def check_symbol(self, symbol: str):
        """Evaluate exits of the symbol's position against the latest cached price"""
        if not self.state.has_position(symbol):
            return

        async with self.lock_manager.acquire_lock(symbol, 'check_position'):
            position = self.state.get_position(symbol)
            if position is None:
                return

            # Read at check time, not when the update was scheduled
            price = self.state.latest_price(symbol)
            if price is None:
                return

            await self._evaluate_position(position, price)

    async def check_all_positions(self):
        """Run the exit check for every active position, paused or not"""
        for symbol in [p.symbol for p in self.state.active_positions]:
            try:
                await self.check_symbol(symbol)
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ Skipped exit check for {symbol}: lock timeout")

    async def _evaluate_position(self, position: Position, price: Decimal):
        """Exit-management pass for one position; caller holds the symbol lock"""
        price = to_decimal(price)
        if price > position.highest_price_since_entry:
            position.highest_price_since_entry = price

        params = position.trade_params or manual_parameters(self.state.settings)

        if position.strategy_type == StrategyType.IGNITION.value:
            if params.use_ignition_trailing_stop:
                trail = position.highest_price_since_entry * (1 - params.ignition_trailing_stop_pct / HUNDRED)
                if trail > position.stop_loss:
                    position.stop_loss = trail
                    logger.debug(f"📈 {position.symbol} ignition trailing stop raised to {trail}")

            if price <= position.stop_loss:
                logger.info(f"🛑 Stop loss hit for {position.symbol} at {position.stop_loss}")
                await self._close_position(position, position.stop_loss, 'STOP_LOSS')
            return

        if params.use_partial_take_profit and not position.partial_tp_done:
            await self._apply_partial_take_profit(position, price, params)

        if params.use_auto_breakeven and not position.breakeven_applied:
            self._apply_breakeven(position, price, params)

        if params.use_adaptive_trailing_stop:
            self._apply_adaptive_trailing(position, params)

        if price <= position.stop_loss:
            logger.info(f"🛑 Stop loss hit for {position.symbol} at {position.stop_loss}")
            await self._close_position(position, position.stop_loss, 'STOP_LOSS')
        elif price >= position.take_profit:
            logger.info(f"🎯 Take profit hit for {position.symbol} at {position.take_profit}")
            await self._close_position(position, position.take_profit, 'TAKE_PROFIT')

    def _apply_breakeven(self, position: Position, price: Decimal, params: TradeParameters):
        if position.r_multiple(price) < params.breakeven_trigger_r:
            return

        breakeven = position.average_entry_price
        if params.adjust_breakeven_for_fees:
            # Round trip: entry fee + exit fee
            breakeven = breakeven * (1 + 2 * params.transaction_fee_pct / HUNDRED)

        if breakeven >= price:
            # Stop never goes above the market; retried on a later tick
            return

        position.breakeven_applied = True
        if breakeven > position.stop_loss:
            position.stop_loss = breakeven
            logger.info(f"🛡️ {position.symbol} stop moved to breakeven {breakeven}")

    def _apply_adaptive_trailing(self, position: Position, params: TradeParameters):
        """
        ATR trailing stop below the highest price, engaged once breakeven is
        reached. The multiplier tightens after the peak passes the threshold R.
        """
        peak = position.highest_price_since_entry
        peak_r = position.r_multiple(peak)

        if params.use_auto_breakeven:
            if not position.breakeven_applied:
                return
        elif peak_r < params.breakeven_trigger_r:
            return

        atr = position.entry_snapshot.get('indicators', {}).get('atr_15m')
        if atr:
            unit = to_decimal(atr)
        else:
            # No ATR at entry: trail by the initial stop distance
            unit = position.initial_risk_per_unit / params.atr_multiplier

        multiplier = params.atr_multiplier
        if peak_r >= params.trailing_stop_tighten_threshold_r:
            multiplier = max(
                multiplier - params.trailing_stop_tighten_multiplier_reduction,
                Decimal('0')
            )

        trail = peak - unit * multiplier
        if trail > position.stop_loss:
            position.stop_loss = trail
            logger.debug(f"📈 {position.symbol} trailing stop raised to {trail} (x{multiplier})")

    async def _apply_partial_take_profit(self, position: Position, price: Decimal, params: TradeParameters):
        avg = position.average_entry_price
        gain_pct = (price - avg) / avg * HUNDRED if avg > 0 else Decimal('0')
        if gain_pct < params.partial_tp_trigger_pct:
            return

        position.partial_tp_done = True
        sell_quantity = position.quantity * params.partial_tp_sell_qty_pct / HUNDRED
        exit_price = price

        if position.mode == TradingMode.REAL_LIVE and self.executor:
            sell_quantity = format_quantity(sell_quantity, self.executor.get_step_size(position.symbol))
            if sell_quantity <= 0 or sell_quantity >= position.quantity:
                logger.warning(f"⚠️ Partial take profit skipped for {position.symbol}: quantity {sell_quantity}")
                return
            try:
                result = await self.executor.place_market_order(position.symbol, 'SELL', sell_quantity)
            except Exception as e:
                logger.error(f"❌ Partial take profit order failed for {position.symbol}: {e}")
                return
            exit_price = to_decimal(result.executed_price)
            sell_quantity = to_decimal(result.executed_quantity)

        if sell_quantity <= 0 or sell_quantity >= position.quantity:
            logger.warning(f"⚠️ Partial take profit skipped for {position.symbol}: quantity {sell_quantity}")
            return

        released_cost = position.total_cost_usd * sell_quantity / position.quantity
        realized = (exit_price - avg) * sell_quantity

        position.quantity -= sell_quantity
        position.total_cost_usd -= released_cost
        position.realized_partial_pnl += realized
        self.state.balance += released_cost + realized

        logger.info(
            f"💰 Partial take profit for {position.symbol}: sold {sell_quantity} at {exit_price}, "
            f"realized ${realized:.2f}, remaining {position.quantity}"
        )

        await self._persist()
        await self._emit(EventType.POSITIONS_UPDATED, {'count': len(self.state.active_positions)})

    # ============== Exit ==============

    async def close_position(self, symbol: str, exit_price: Decimal, reason: str = 'MANUAL') -> Optional[Position]:
        """Close the symbol's position at exit_price under its lock"""
        async with self.lock_manager.acquire_lock(symbol, 'close_position'):
            position = self.state.get_position(symbol)
            if position is None:
                return None
            return await self._close_position(position, to_decimal(exit_price), reason)

    async def _close_position(self, position: Position, exit_price: Decimal, reason: str) -> Optional[Position]:
        """Settle PnL and move the position to history; caller holds the symbol lock"""
        index = next(
            (i for i, p in enumerate(self.state.active_positions) if p.id == position.id),
            None
        )
        if index is None:
            return None

        closed = self.state.active_positions.pop(index)
        now = now_utc()

        closed.exit_price = exit_price
        closed.exit_time = now
        closed.status = PositionStatus.CLOSED
        closed.exit_reason = reason

        pnl = (exit_price - closed.average_entry_price) * closed.quantity
        closed.pnl = pnl
        closed.pnl_pct = pnl / closed.total_cost_usd * HUNDRED if closed.total_cost_usd else Decimal('0')

        if closed.mode == TradingMode.REAL_LIVE and self.executor:
            order_quantity = format_quantity(closed.quantity, self.executor.get_step_size(closed.symbol))
            try:
                logger.info(f"📤 Closing REAL position for {closed.symbol}: SELL {order_quantity}")
                await self.executor.place_market_order(closed.symbol, 'SELL', order_quantity)
            except Exception as e:
                # Local close proceeds, the exchange position needs manual attention
                self.stats['close_order_failures'] += 1
                logger.error(f"❌ Failed to close REAL position for {closed.symbol}: {e}")

        self.state.balance += closed.total_cost_usd + pnl
        self.state.trade_history.append(closed)
        self.stats['positions_closed'] += 1

        if pnl < 0:
            hours = self.state.settings.loss_cooldown_hours
            self.state.start_cooldown(closed.symbol, now, hours)
            logger.info(f"⏸️ {closed.symbol} in loss cooldown for {hours}h")

        logger.info(
            f"{'✅' if pnl >= 0 else '❌'} Position closed for {closed.symbol} ({reason}). "
            f"PnL: ${pnl:.2f} ({closed.pnl_pct:.2f}%). New balance: ${self.state.balance:.2f}"
        )

        await self._persist()
        await self._emit(EventType.POSITION_CLOSED, closed.to_dict())
        await self._emit(EventType.POSITIONS_UPDATED, {'count': len(self.state.active_positions)})
        return closed

    async def manual_close(self, trade_id: int, price: Optional[Union[Decimal, str, float]] = None) -> CloseResult:
        """
        Close a position by id

        Uses the given price, else the last cached price, else the average
        entry price.
        """
        position = self.state.find_position_by_id(trade_id)
        if position is None:
            return CloseResult(success=False, message=f"Position {trade_id} not found")

        async with self.lock_manager.acquire_lock(position.symbol, 'manual_close'):
            position = self.state.find_position_by_id(trade_id)
            if position is None:
                return CloseResult(success=False, message=f"Position {trade_id} not found")

            if price is not None:
                exit_price = to_decimal(price)
            else:
                exit_price = self.state.latest_price(position.symbol) or position.average_entry_price

            closed = await self._close_position(position, exit_price, 'MANUAL')

        return CloseResult(success=True, message='Position closed', position=closed)

    # ============== Administration ==============

    def get_statistics(self) -> Dict[str, Any]:
        """Performance summary over the closed trades"""
        history = self.state.trade_history
        winners = [p for p in history if p.pnl > 0]
        losers = [p for p in history if p.pnl < 0]
        total_pnl = sum((p.pnl + p.realized_partial_pnl for p in history), Decimal('0'))
        count = Decimal(len(history))
        avg_pnl_pct = safe_divide(sum((p.pnl_pct for p in history), Decimal('0')), count)

        return {
            'total_trades': len(history),
            'winning_trades': len(winners),
            'losing_trades': len(losers),
            'win_rate': safe_divide(Decimal(len(winners)), count) * HUNDRED,
            'total_pnl': total_pnl,
            'avg_pnl_pct': avg_pnl_pct,
            'balance': self.state.balance,
            'open_positions': len(self.state.active_positions),
            **self.stats,
        }

    async def pause(self):
        self.state.is_running = False
        logger.info("⏸️ Bot paused, no new positions will be opened")
        await self._persist()
        await self._emit(EventType.BOT_STATUS_CHANGED, {'is_running': False})

    async def resume(self):
        self.state.is_running = True
        logger.info("▶️ Bot resumed")
        await self._persist()
        await self._emit(EventType.BOT_STATUS_CHANGED, {'is_running': True})

    async def set_trading_mode(self, mode: Union[TradingMode, str]):
        """Switch mode for future opens; open positions keep the mode they were opened in"""
        mode = TradingMode(mode.value if isinstance(mode, TradingMode) else str(mode).upper())
        if mode == TradingMode.REAL_LIVE and self.executor is None:
            raise ValueError("REAL_LIVE requires an order executor")

        self.state.trading_mode = mode
        logger.warning(f"⚠️ Trading mode set to {mode.value}")
        await self._persist()
        await self._emit(EventType.TRADING_MODE_CHANGED, {'mode': mode.value})

    async def clear_data(self):
        """Reset positions, history, counters and balance"""
        self.state.active_positions.clear()
        self.state.trade_history.clear()
        self.state.recently_lost_symbols.clear()
        self.state.trade_id_counter = 1
        self.state.balance = self.state.settings.initial_virtual_balance
        logger.warning(f"⚠️ Trading data cleared, balance reset to {self.state.balance}")
        await self._persist()
        await self._emit(EventType.POSITIONS_UPDATED, {'count': 0})

    # ============== Collaborators ==============

    async def _persist(self):
        if self.store is None:
            return
        try:
            await self.store.save('state')
        except Exception as e:
            logger.error(f"❌ Failed to persist state: {e}")

    async def _emit(self, event_name: str, data: Dict):
        if self.event_router is None:
            return
        try:
            await self.event_router.emit(event_name, data)
        except Exception as e:
            logger.error(f"Error emitting '{event_name}': {e}")
