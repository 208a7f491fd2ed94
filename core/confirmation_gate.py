"""
Confirmation Gate

Holds PENDING_CONFIRMATION signals until the next 5m candle closes:
bullish close promotes the signal to STRONG_BUY, anything else discards it.
Entries older than CONFIRMATION_TIMEOUT_CANDLES x 5m are evicted.

Per symbol: NONE -> PENDING -> RESOLVED(accept|reject) -> NONE
"""
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

from core.bot_state import BotState, PendingConfirmation
from core.models import Candle, Signal, SignalScore

logger = logging.getLogger(__name__)

CONFIRMATION_CANDLE_MINUTES = 5


class ConfirmationGate:

    def __init__(self, state: BotState):
        self.state = state

    @property
    def timeout(self) -> timedelta:
        return timedelta(
            minutes=CONFIRMATION_CANDLE_MINUTES * self.state.settings.confirmation_timeout_candles
        )

    def hold(self, signal: Signal, now: datetime):
        """Store (or replace) the pending entry of the signal's symbol"""
        self.state.pending_confirmation[signal.symbol] = PendingConfirmation(signal=signal, created_at=now)
        logger.info(f"⏳ [{signal.symbol}] Signal pending 5m confirmation")

    def is_pending(self, symbol: str) -> bool:
        return symbol in self.state.pending_confirmation

    def resolve(self, symbol: str, candle_5m: Candle) -> Optional[Signal]:
        """
        Resolve the pending entry on a closed 5m candle

        The entry is popped before anything else so a confirmation can fire
        at most once. No entry is a no-op.

        Returns:
            The signal promoted to STRONG_BUY, or None
        """
        entry = self.state.pending_confirmation.pop(symbol, None)
        if entry is None:
            return None

        if candle_5m.is_bullish:
            logger.info(f"✅ [{symbol}] 5m confirmation passed, promoting to STRONG_BUY")
            return replace(entry.signal, score=SignalScore.STRONG_BUY)

        logger.info(f"❌ [{symbol}] 5m confirmation failed (close {candle_5m.close} <= open {candle_5m.open})")
        return None

    def evict_stale(self, now: datetime) -> List[str]:
        """Drop entries older than the confirmation timeout"""
        cutoff = now - self.timeout
        stale = [
            symbol for symbol, entry in self.state.pending_confirmation.items()
            if entry.created_at <= cutoff
        ]
        for symbol in stale:
            del self.state.pending_confirmation[symbol]
            logger.info(f"⌛ [{symbol}] Pending confirmation expired")
        return stale
