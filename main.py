"""
Signal Engine Application
Entry point and orchestration
"""
import asyncio
import logging
import signal
import sys
from typing import Optional
import argparse

from config.settings import Config, TRADING_MODES
from core.bot_state import BotState, TradingMode
from core.confirmation_gate import ConfirmationGate
from core.event_router import EventRouter, EventType
from core.exchange_manager import ExchangeManager
from core.lock_manager import LockManager
from core.market_data import CandleStore, MarketDataHandler
from core.market_feed import MarketFeed
from core.position_manager import PositionManager
from core.signal_classifier import SignalClassifier
from database.state_store import StateStore, KIND_SETTINGS, KIND_STATE
from utils.logger import setup_trading_logger

logger = logging.getLogger(__name__)

MONITOR_INTERVAL_SECONDS = 60


class TradingBot:
    """
    Main application
    Coordinates all components around one BotState
    """

    def __init__(self, args: argparse.Namespace, config: Optional[Config] = None):
        """Initialize trading bot"""
        self.args = args
        self.config = config or Config(args.env_file)

        if args.symbols:
            self.config.feed.symbols = [s.strip().upper() for s in args.symbols.split(',') if s.strip()]

        self.state = BotState.from_settings(self.config.settings)
        self.lock_manager = LockManager()
        self.event_router = EventRouter()
        self.store = StateStore(self.state, self.config.storage.data_dir)
        self.exchange = ExchangeManager(self.config.exchange)

        self.position_manager = PositionManager(
            state=self.state,
            lock_manager=self.lock_manager,
            store=self.store,
            event_router=self.event_router,
            executor=self.exchange,
        )
        self.candles = CandleStore(self.exchange, self.config.feed.candle_history_limit)
        self.handler = MarketDataHandler(
            state=self.state,
            candles=self.candles,
            position_manager=self.position_manager,
            classifier=SignalClassifier(self.state),
            gate=ConfirmationGate(self.state),
            event_router=self.event_router,
        )
        self.feed = MarketFeed(
            exchange=self.exchange,
            handler=self.handler,
            symbols=self.config.feed.symbols,
            poll_interval=self.config.feed.poll_interval_seconds,
        )

        # Control
        self.running = False
        self.shutdown_event = asyncio.Event()

        self._register_event_handlers()
        logger.info(f"Signal engine initializing for {len(self.config.feed.symbols)} symbols")

    async def initialize(self):
        """Restore persisted data and connect to the exchange"""
        logger.info("=" * 80)
        logger.info("SIGNAL ENGINE INITIALIZATION")
        logger.info("=" * 80)

        await self.store.load(KIND_SETTINGS)
        await self.store.load(KIND_STATE)

        if self.args.reset:
            await self.position_manager.clear_data()

        if self.args.mode:
            self.state.trading_mode = TradingMode(self.args.mode)

        if self.state.trading_mode == TradingMode.REAL_LIVE and not self.config.exchange.has_credentials:
            raise RuntimeError("REAL_LIVE mode requires exchange API keys")

        await self.exchange.initialize()
        await self.store.save(KIND_SETTINGS)

        self._log_initial_state()

    def _register_event_handlers(self):
        """Log-only handlers; external broadcasters subscribe the same way"""

        @self.event_router.on(EventType.POSITION_OPENED)
        async def handle_position_opened(data):
            logger.info(f"📈 Position opened: #{data['id']} {data['symbol']} ({data['active_profile']})")

        @self.event_router.on(EventType.POSITION_CLOSED)
        async def handle_position_closed(data):
            logger.info(f"📉 Position closed: #{data['id']} {data['symbol']} pnl={data['pnl']} ({data['exit_reason']})")

    def _log_initial_state(self):
        stats = self.position_manager.get_statistics()
        logger.info(f"Mode: {self.state.trading_mode.value} | running={self.state.is_running}")
        logger.info(f"Balance: ${stats['balance']:.2f} | Open positions: {stats['open_positions']}")
        logger.info(f"Closed trades: {stats['total_trades']} | Win rate: {stats['win_rate']:.1f}%")
        logger.info(f"Symbols: {', '.join(self.config.feed.symbols)}")

    async def start(self):
        """Run until a shutdown signal arrives"""
        self.running = True
        await self.feed.start()
        monitor_task = asyncio.create_task(self._monitor_loop())

        logger.info("🚀 Signal engine running")
        try:
            await self.shutdown_event.wait()
        finally:
            monitor_task.cancel()
            try:
                await monitor_task
            except asyncio.CancelledError:
                pass
            await self.cleanup()

    async def _monitor_loop(self):
        """Periodic exit check and summary"""
        while self.running:
            try:
                await asyncio.sleep(MONITOR_INTERVAL_SECONDS)
                await self.position_manager.check_all_positions()

                stats = self.position_manager.get_statistics()
                logger.info(
                    f"📊 Positions: {stats['open_positions']} | "
                    f"Balance: ${stats['balance']:.2f} | "
                    f"PnL: ${stats['total_pnl']:.2f} | "
                    f"Win Rate: {stats['win_rate']:.1f}%"
                )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Monitor loop error: {e}")

    async def cleanup(self):
        """Clean up resources"""
        logger.info("Cleaning up resources...")

        await self.feed.stop()
        await self.store.save(KIND_STATE)
        await self.store.save(KIND_SETTINGS)

        try:
            await self.exchange.close()
        except Exception as e:
            logger.error(f"Failed to close exchange: {e}")

        logger.info("✅ Cleanup complete")

    def handle_shutdown(self, signum, frame):
        """Handle shutdown signal"""
        logger.info(f"Received signal {signum}")
        self.running = False
        self.shutdown_event.set()


async def async_main(bot: TradingBot):
    """Async main function"""
    await bot.initialize()
    await bot.start()


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Multi-strategy crypto signal engine')
    parser.add_argument(
        '--mode',
        choices=TRADING_MODES,
        help='Override the trading mode (default: persisted or TRADING_MODE from .env)'
    )
    parser.add_argument(
        '--symbols',
        help='Comma separated symbols, overrides SYMBOLS from .env'
    )
    parser.add_argument(
        '--env-file',
        default=None,
        help='Path to the .env file'
    )
    parser.add_argument(
        '--reset',
        action='store_true',
        help='Clear positions and trade history before starting'
    )

    args = parser.parse_args()

    config = Config(args.env_file)
    setup_trading_logger(config.log_level, config.log_file)

    if not config.validate():
        logger.critical("Configuration validation failed")
        sys.exit(1)

    bot = TradingBot(args, config)

    # Setup signal handlers
    signal.signal(signal.SIGINT, bot.handle_shutdown)
    signal.signal(signal.SIGTERM, bot.handle_shutdown)

    try:
        logger.info("🚀 Starting signal engine")
        asyncio.run(async_main(bot))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
