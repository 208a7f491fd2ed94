"""
In-process broadcast of engine events
Inspired by Node.js EventEmitter pattern
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List
from dataclasses import dataclass
from collections import defaultdict
from datetime import datetime

from utils.datetime_helpers import now_utc

logger = logging.getLogger(__name__)


class EventType:
    """Event names emitted by the engine"""
    POSITIONS_UPDATED = 'positions.updated'
    POSITION_OPENED = 'position.opened'
    POSITION_CLOSED = 'position.closed'
    SIGNAL_UPDATED = 'signal.updated'
    PRICE_UPDATED = 'price.updated'
    BOT_STATUS_CHANGED = 'bot.status_changed'
    TRADING_MODE_CHANGED = 'bot.trading_mode_changed'
    ERROR = 'error'


@dataclass
class Event:
    """Event data structure"""
    name: str
    data: Dict[str, Any]
    timestamp: datetime = None

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = now_utc()


class EventRouter:
    """
    Central event routing system

    emit() is fire-and-forget for the caller: a failing handler is logged
    and counted, never propagated.
    """

    def __init__(self):
        """Initialize event router"""
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)

        # Statistics
        self.stats = {
            'events_processed': 0,
            'events_failed': 0,
            'handlers_registered': 0
        }

        logger.info("EventRouter initialized")

    def on(self, event_name: str):
        """
        Decorator to register event handler

        Usage:
            @router.on('positions.updated')
            async def handle_positions(data):
                pass
        """

        def decorator(func: Callable):
            self.add_handler(event_name, func)
            return func

        return decorator

    def add_handler(self, event_name: str, handler: Callable):
        """Add event handler ('*' receives every event)"""
        self._handlers[event_name].append(handler)
        self.stats['handlers_registered'] += 1
        logger.debug(f"Handler registered for '{event_name}'")

    def remove_handler(self, event_name: str, handler: Callable):
        """Remove event handler"""
        if handler in self._handlers.get(event_name, []):
            self._handlers[event_name].remove(handler)

    async def emit(self, event_name: str, data: Dict = None):
        """
        Deliver an event to its handlers

        Args:
            event_name: Name of the event
            data: Event data dictionary
        """
        event = Event(name=event_name, data=data or {})
        handlers = list(self._handlers.get(event.name, [])) + list(self._handlers.get('*', []))

        tasks = []
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    tasks.append(handler(event.data))
                else:
                    handler(event.data)
            except Exception as e:
                self._record_failure(event, e)

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    self._record_failure(event, result)

        self.stats['events_processed'] += 1

    def _record_failure(self, event: Event, error: Exception):
        logger.error(f"Error handling event '{event.name}': {error}")
        self.stats['events_failed'] += 1

    def get_stats(self) -> Dict:
        """Get router statistics"""
        return {
            **self.stats,
            'handlers': {
                event: len(handlers)
                for event, handlers in self._handlers.items()
            }
        }
