"""
Signal Engine Configuration
ALL settings from .env file ONLY - persisted overrides go through the state store
"""
import os
import logging
from dataclasses import dataclass, field, fields, asdict, replace
from typing import Any, Dict, List, Mapping, Optional
from decimal import Decimal
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

TRADING_MODES = ('VIRTUAL', 'REAL_PAPER', 'REAL_LIVE')


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes', 'on')


@dataclass
class ExchangeConfig:
    """Exchange configuration from .env ONLY"""
    name: str = 'binance'
    api_key: str = ''
    api_secret: str = ''
    testnet: bool = False
    rate_limit: bool = True

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)


@dataclass
class BotSettings:
    """
    Strategy and risk parameters

    Field names map 1:1 to upper-case .env keys (POSITION_SIZE_PCT -> position_size_pct).
    Immutable during an evaluation pass; replaced wholesale via BotState.replace_settings().
    """
    # Capital & portfolio
    initial_virtual_balance: Decimal = Decimal('10000')
    max_open_positions: int = 5
    trading_mode: str = 'VIRTUAL'

    # Position sizing
    position_size_pct: Decimal = Decimal('2.0')
    use_dynamic_position_sizing: bool = False
    strong_buy_position_size_pct: Decimal = Decimal('3.0')

    # Manual risk parameters (MANUAL / IGNITION profiles)
    risk_reward_ratio: Decimal = Decimal('4.0')
    stop_loss_pct: Decimal = Decimal('2.0')
    use_atr_stop_loss: bool = True
    atr_multiplier: Decimal = Decimal('1.5')
    loss_cooldown_hours: int = 4

    # Exit management
    use_auto_breakeven: bool = True
    breakeven_trigger_r: Decimal = Decimal('1.0')
    adjust_breakeven_for_fees: bool = True
    transaction_fee_pct: Decimal = Decimal('0.1')
    use_partial_take_profit: bool = False
    partial_tp_trigger_pct: Decimal = Decimal('0.8')
    partial_tp_sell_qty_pct: Decimal = Decimal('50')
    use_adaptive_trailing_stop: bool = True
    trailing_stop_tighten_threshold_r: Decimal = Decimal('1.0')
    trailing_stop_tighten_multiplier_reduction: Decimal = Decimal('0.3')

    # Adaptive profile selector
    use_dynamic_profile_selector: bool = True
    adx_threshold_range: float = 20.0
    atr_pct_threshold_volatile: float = 5.0

    # Safety filters
    use_rsi_safety_filter: bool = True
    rsi_overbought_threshold: float = 75.0
    use_rsi_mtf_filter: bool = False
    rsi_15m_overbought_threshold: float = 70.0

    # Precision strategy triggers
    use_volume_confirmation: bool = True
    use_obv_validation: bool = True
    use_cvd_filter: bool = False
    use_mtf_validation: bool = False
    confirmation_timeout_candles: int = 3

    # Momentum strategy
    use_momentum_strategy: bool = True
    momentum_body_ratio_min: float = 0.7
    momentum_volume_multiple: float = 2.0

    # Ignition strategy
    use_ignition_strategy: bool = False
    ignition_price_spike_pct: float = 5.0
    ignition_volume_multiple: float = 10.0
    use_ignition_trailing_stop: bool = True
    ignition_trailing_stop_pct: Decimal = Decimal('1.5')

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation (Decimals as strings)"""
        data = asdict(self)
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in data.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'BotSettings':
        """Build settings from a persisted dict; unknown keys are ignored"""
        return apply_overrides(cls(), data)

    def merged(self, overrides: Mapping[str, Any]) -> 'BotSettings':
        """New settings object with overrides applied (self is untouched)"""
        return apply_overrides(self, overrides)


def _coerce(field_type: Any, value: Any) -> Any:
    if field_type is Decimal:
        return Decimal(str(value))
    if field_type is bool:
        return _parse_bool(value)
    if field_type is int:
        return int(float(value))
    if field_type is float:
        return float(value)
    return str(value)


def apply_overrides(settings: BotSettings, source: Mapping[str, Any]) -> BotSettings:
    """
    Return a copy of settings with values from source applied

    Keys are matched case-insensitively, so both .env style (POSITION_SIZE_PCT)
    and persisted style (position_size_pct) work.
    """
    normalized = {str(k).lower(): v for k, v in source.items()}
    changes = {}
    for f in fields(settings):
        if f.name not in normalized:
            continue
        raw = normalized[f.name]
        if raw is None or raw == '':
            continue
        try:
            changes[f.name] = _coerce(f.type, raw)
        except (ValueError, ArithmeticError) as e:
            logger.warning(f"⚠️ Ignoring invalid value for {f.name.upper()}={raw!r}: {e}")
    return replace(settings, **changes)


@dataclass
class StorageConfig:
    """State store location"""
    data_dir: str = 'data'


@dataclass
class FeedConfig:
    """Market data feed parameters"""
    symbols: List[str] = field(default_factory=lambda: ['BTCUSDT', 'ETHUSDT'])
    poll_interval_seconds: int = 5
    candle_history_limit: int = 200


class Config:
    """
    Main configuration class
    ONLY reads from .env file - NO YAML configs!
    """

    def __init__(self, env_file: Optional[str] = None):
        """Initialize configuration from .env ONLY"""
        load_dotenv(env_file, override=True)

        self.exchange = self._init_exchange()
        self.settings = self._init_settings()
        self.storage = self._init_storage()
        self.feed = self._init_feed()

        # System settings
        self.environment = os.getenv('ENVIRONMENT', 'production')
        self.log_level = os.getenv('LOG_LEVEL', 'INFO')
        self.log_file = os.getenv('LOG_FILE', 'logs/signal_engine.log')

        logger.info("Configuration loaded from .env file ONLY")
        logger.info(f"Environment: {self.environment}")

    def _init_exchange(self) -> ExchangeConfig:
        """Initialize exchange configuration from .env ONLY"""
        config = ExchangeConfig()

        if val := os.getenv('EXCHANGE_NAME'):
            config.name = val.lower()
        if val := os.getenv('BINANCE_API_KEY'):
            config.api_key = val
        if val := os.getenv('BINANCE_API_SECRET'):
            config.api_secret = val
        if val := os.getenv('BINANCE_TESTNET'):
            config.testnet = _parse_bool(val)

        if config.has_credentials:
            logger.info(f"Exchange configured: {config.name} testnet={config.testnet}")
            logger.info(f"API Key (first 4 chars): {config.api_key[:4]}...")
        else:
            logger.warning("No exchange API keys found in .env file - public data only")

        return config

    def _init_settings(self) -> BotSettings:
        """Initialize strategy/risk settings from .env ONLY"""
        env = {f.name.upper(): os.getenv(f.name.upper()) for f in fields(BotSettings)}
        settings = apply_overrides(BotSettings(), {k: v for k, v in env.items() if v is not None})

        logger.info(
            f"Settings loaded: mode={settings.trading_mode}, "
            f"max_positions={settings.max_open_positions}, size={settings.position_size_pct}%"
        )
        logger.info(
            f"Strategies: precision=ON, momentum={'ON' if settings.use_momentum_strategy else 'OFF'}, "
            f"ignition={'ON' if settings.use_ignition_strategy else 'OFF'}, "
            f"mtf_validation={'ON' if settings.use_mtf_validation else 'OFF'}"
        )
        logger.info(
            f"Profile selector: {'DYNAMIC' if settings.use_dynamic_profile_selector else 'MANUAL'} "
            f"(adx_range<{settings.adx_threshold_range}, atr_volatile>{settings.atr_pct_threshold_volatile}%)"
        )
        return settings

    def _init_storage(self) -> StorageConfig:
        config = StorageConfig()
        if val := os.getenv('DATA_DIR'):
            config.data_dir = val
        return config

    def _init_feed(self) -> FeedConfig:
        config = FeedConfig()
        if val := os.getenv('SYMBOLS'):
            config.symbols = [s.strip().upper() for s in val.split(',') if s.strip()]
        if val := os.getenv('FEED_POLL_INTERVAL_SECONDS'):
            config.poll_interval_seconds = int(val)
        if val := os.getenv('CANDLE_HISTORY_LIMIT'):
            config.candle_history_limit = int(val)
        return config

    def validate(self) -> bool:
        """Validate configuration"""
        settings = self.settings

        if settings.trading_mode not in TRADING_MODES:
            logger.error(f"Invalid TRADING_MODE={settings.trading_mode}, expected one of {TRADING_MODES}")
            return False

        if settings.trading_mode == 'REAL_LIVE' and not self.exchange.has_credentials:
            logger.error("REAL_LIVE mode requires BINANCE_API_KEY and BINANCE_API_SECRET in .env")
            return False

        if settings.position_size_pct <= 0:
            logger.error("Invalid position size!")
            return False

        if settings.stop_loss_pct <= 0:
            logger.error("Invalid stop loss percentage!")
            return False

        if settings.max_open_positions <= 0:
            logger.error("MAX_OPEN_POSITIONS must be positive!")
            return False

        if not self.feed.symbols:
            logger.error("No SYMBOLS configured!")
            return False

        logger.info("✅ Configuration validated successfully")
        return True


_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the process-wide configuration"""
    global _config
    if _config is None:
        _config = Config()
    return _config
