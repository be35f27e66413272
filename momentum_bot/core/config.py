"""
Load configuration from config.yaml and .env. API keys only from env.
"""

from __future__ import annotations
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from momentum_bot.core.errors import ConfigError

DEFAULT_WEIGHTS = {
    "rsi": "0.20",
    "macd": "0.20",
    "ema": "0.25",
    "bollinger": "0.15",
    "stochastic": "0.20",
}

# EMA200 plus the in-progress bucket.
MIN_WINDOW = 201


def _env_path(project_root: Optional[Path] = None) -> Path:
    root = project_root or Path(__file__).resolve().parents[2]
    return root / ".env"


def load_dotenv_if_exists(project_root: Optional[Path] = None) -> None:
    """Load .env from project root if present."""
    path = _env_path(project_root)
    if path.exists():
        load_dotenv(path)


def _to_decimal(value: Any, key: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ConfigError(f"{key}: not a number: {value!r}")


def load_config(config_path: Optional[Path] = None, project_root: Optional[Path] = None) -> "Config":
    """Load config.yaml and overlay with env. Returns Config."""
    load_dotenv_if_exists(project_root)
    root = project_root or Path(__file__).resolve().parents[2]
    path = config_path or root / "config.yaml"
    data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    def env(key: str, default: str = "") -> str:
        return os.getenv(key, default).strip()

    def env_bool(key: str, default: bool = False) -> bool:
        return os.getenv(key, str(default)).lower() in ("true", "1", "yes")

    def env_int(key: str, default: int = 0) -> int:
        try:
            return int(os.getenv(key, str(default)))
        except ValueError:
            return default

    def env_decimal(key: str, default: Any) -> Decimal:
        return _to_decimal(os.getenv(key, str(default)), key)

    api = data.get("api", {})
    trading = data.get("trading", {})
    strategy = data.get("strategy", {})
    lifecycle = data.get("lifecycle", {})
    risk = data.get("risk", {})
    quality = data.get("data_quality", {})
    scheduler = data.get("scheduler", {})
    telegram = data.get("telegram", {})
    logging_cfg = data.get("logging", {})

    use_testnet = env_bool("USE_TESTNET", api.get("use_testnet", True))
    # Prefer dedicated testnet/mainnet keys so both can live in .env and USE_TESTNET switches
    if use_testnet:
        binance_api_key = env("BINANCE_TESTNET_API_KEY") or env("BINANCE_API_KEY")
        binance_api_secret = env("BINANCE_TESTNET_API_SECRET") or env("BINANCE_API_SECRET")
    else:
        binance_api_key = env("BINANCE_MAINNET_API_KEY") or env("BINANCE_API_KEY")
        binance_api_secret = env("BINANCE_MAINNET_API_SECRET") or env("BINANCE_API_SECRET")

    instruments_env = env("INSTRUMENTS")
    if instruments_env:
        instruments = [s.strip().upper() for s in instruments_env.split(",") if s.strip()]
    else:
        instruments = [str(s).upper() for s in trading.get("instruments", ["BTCUSDT", "ETHUSDT"])]

    position_sizes = {
        str(k).upper(): _to_decimal(v, f"position_sizes.{k}")
        for k, v in (trading.get("position_sizes") or {}).items()
    }
    history_symbols = {str(k).upper(): str(v).upper() for k, v in (trading.get("history_symbols") or {}).items()}
    weights_raw = {**DEFAULT_WEIGHTS, **(strategy.get("momentum_weights") or {})}
    momentum_weights = {k: _to_decimal(v, f"momentum_weights.{k}") for k, v in weights_raw.items()}

    take_profit = strategy.get("take_profit_percent", "1.3")
    return Config(
        binance_api_key=binance_api_key,
        binance_api_secret=binance_api_secret,
        use_testnet=use_testnet,
        # Trading
        instruments=instruments,
        position_sizes=position_sizes,
        history_symbols=history_symbols,
        leverage=env_int("LEVERAGE", trading.get("leverage", 5)),
        trading_mode=env("TRADING_MODE", trading.get("trading_mode", "paper")).lower(),
        timeframe=env("TIMEFRAME", trading.get("timeframe", "5m")),
        history_count=int(trading.get("history_count", 300)),
        window_size=int(trading.get("window_size", 300)),
        # Strategy
        ema_fast=int(strategy.get("ema_fast", 20)),
        ema_mid=int(strategy.get("ema_mid", 50)),
        ema_slow=int(strategy.get("ema_slow", 200)),
        volume_window=int(strategy.get("volume_window", 20)),
        volume_multiplier=env_decimal("VOLUME_MULTIPLIER", strategy.get("volume_multiplier", "1.5")),
        momentum_threshold=env_decimal("MOMENTUM_THRESHOLD", strategy.get("momentum_threshold", "0.60")),
        structure_lookback=int(strategy.get("structure_lookback", 10)),
        stop_loss_percent=env_decimal("STOP_LOSS_PERCENT", strategy.get("stop_loss_percent", "5")),
        take_profit_percent=_to_decimal(take_profit, "take_profit_percent") if take_profit is not None else None,
        momentum_weights=momentum_weights,
        # Lifecycle
        trailing_stop_percent=env_decimal("TRAILING_STOP_PERCENT", lifecycle.get("trailing_stop_percent", "5")),
        take_profit_close_percent=_to_decimal(lifecycle.get("take_profit_close_percent", "100"), "take_profit_close_percent"),
        loss_cooldown_minutes=int(lifecycle.get("loss_cooldown_minutes", 20)),
        failed_order_cooldown_minutes=int(lifecycle.get("failed_order_cooldown_minutes", 5)),
        new_position_grace_seconds=int(lifecycle.get("new_position_grace_seconds", 30)),
        monitor_stale_seconds=int(lifecycle.get("monitor_stale_seconds", 60)),
        lock_timeout_seconds=float(lifecycle.get("lock_timeout_seconds", 2.0)),
        state_file=Path(env("STATE_FILE", lifecycle.get("state_file", "data/trailing_stops.json"))),
        # Risk
        max_daily_loss_usd=env_decimal("MAX_DAILY_LOSS_USD", risk.get("max_daily_loss_usd", "50")),
        max_positions=env_int("MAX_POSITIONS", risk.get("max_positions", 3)),
        # Data quality
        max_gap_buckets=int(quality.get("max_gap_buckets", 3)),
        max_sample_age_buckets=int(quality.get("max_sample_age_buckets", 3)),
        # Scheduler
        decision_interval_seconds=float(scheduler.get("decision_interval_seconds", 5)),
        monitor_interval_seconds=float(scheduler.get("monitor_interval_seconds", 5)),
        sweep_interval_seconds=float(scheduler.get("sweep_interval_seconds", 60)),
        history_refresh_seconds=float(scheduler.get("history_refresh_seconds", 3600)),
        # Telegram
        telegram_bot_token=env("TELEGRAM_BOT_TOKEN", telegram.get("bot_token", "")),
        telegram_chat_id=env("TELEGRAM_CHAT_ID", telegram.get("chat_id", "")),
        # Logging
        log_level=logging_cfg.get("level", "INFO"),
        log_dir=Path(logging_cfg.get("log_dir", "logs")),
        log_file=logging_cfg.get("log_file", "momentum_bot.log"),
    )


class Config:
    """Unified configuration. Treat as immutable after load; call validate() at startup."""

    __slots__ = (
        "binance_api_key", "binance_api_secret", "use_testnet",
        "instruments", "position_sizes", "history_symbols", "leverage", "trading_mode",
        "timeframe", "history_count", "window_size",
        "ema_fast", "ema_mid", "ema_slow", "volume_window", "volume_multiplier",
        "momentum_threshold", "structure_lookback", "stop_loss_percent", "take_profit_percent",
        "momentum_weights",
        "trailing_stop_percent", "take_profit_close_percent", "loss_cooldown_minutes",
        "failed_order_cooldown_minutes", "new_position_grace_seconds", "monitor_stale_seconds",
        "lock_timeout_seconds", "state_file",
        "max_daily_loss_usd", "max_positions",
        "max_gap_buckets", "max_sample_age_buckets",
        "decision_interval_seconds", "monitor_interval_seconds", "sweep_interval_seconds",
        "history_refresh_seconds",
        "telegram_bot_token", "telegram_chat_id",
        "log_level", "log_dir", "log_file",
    )

    def __init__(
        self,
        binance_api_key: str = "",
        binance_api_secret: str = "",
        use_testnet: bool = True,
        instruments: Optional[list[str]] = None,
        position_sizes: Optional[dict[str, Decimal]] = None,
        history_symbols: Optional[dict[str, str]] = None,
        leverage: int = 5,
        trading_mode: str = "paper",
        timeframe: str = "5m",
        history_count: int = 300,
        window_size: int = 300,
        ema_fast: int = 20,
        ema_mid: int = 50,
        ema_slow: int = 200,
        volume_window: int = 20,
        volume_multiplier: Decimal = Decimal("1.5"),
        momentum_threshold: Decimal = Decimal("0.60"),
        structure_lookback: int = 10,
        stop_loss_percent: Decimal = Decimal("5"),
        take_profit_percent: Optional[Decimal] = Decimal("1.3"),
        momentum_weights: Optional[dict[str, Decimal]] = None,
        trailing_stop_percent: Decimal = Decimal("5"),
        take_profit_close_percent: Decimal = Decimal("100"),
        loss_cooldown_minutes: int = 20,
        failed_order_cooldown_minutes: int = 5,
        new_position_grace_seconds: int = 30,
        monitor_stale_seconds: int = 60,
        lock_timeout_seconds: float = 2.0,
        state_file: Optional[Path] = None,
        max_daily_loss_usd: Decimal = Decimal("50"),
        max_positions: int = 3,
        max_gap_buckets: int = 3,
        max_sample_age_buckets: int = 3,
        decision_interval_seconds: float = 5.0,
        monitor_interval_seconds: float = 5.0,
        sweep_interval_seconds: float = 60.0,
        history_refresh_seconds: float = 3600.0,
        telegram_bot_token: str = "",
        telegram_chat_id: str = "",
        log_level: str = "INFO",
        log_dir: Optional[Path] = None,
        log_file: str = "momentum_bot.log",
    ):
        self.binance_api_key = binance_api_key
        self.binance_api_secret = binance_api_secret
        self.use_testnet = use_testnet
        self.instruments = list(instruments) if instruments else []
        self.position_sizes = dict(position_sizes or {})
        self.history_symbols = dict(history_symbols or {})
        self.leverage = leverage
        self.trading_mode = trading_mode
        self.timeframe = timeframe
        self.history_count = history_count
        self.window_size = window_size
        self.ema_fast = ema_fast
        self.ema_mid = ema_mid
        self.ema_slow = ema_slow
        self.volume_window = volume_window
        self.volume_multiplier = volume_multiplier
        self.momentum_threshold = momentum_threshold
        self.structure_lookback = structure_lookback
        self.stop_loss_percent = stop_loss_percent
        self.take_profit_percent = take_profit_percent
        self.momentum_weights = momentum_weights or {k: Decimal(v) for k, v in DEFAULT_WEIGHTS.items()}
        self.trailing_stop_percent = trailing_stop_percent
        self.take_profit_close_percent = take_profit_close_percent
        self.loss_cooldown_minutes = loss_cooldown_minutes
        self.failed_order_cooldown_minutes = failed_order_cooldown_minutes
        self.new_position_grace_seconds = new_position_grace_seconds
        self.monitor_stale_seconds = monitor_stale_seconds
        self.lock_timeout_seconds = lock_timeout_seconds
        self.state_file = Path(state_file) if state_file else Path("data/trailing_stops.json")
        self.max_daily_loss_usd = max_daily_loss_usd
        self.max_positions = max_positions
        self.max_gap_buckets = max_gap_buckets
        self.max_sample_age_buckets = max_sample_age_buckets
        self.decision_interval_seconds = decision_interval_seconds
        self.monitor_interval_seconds = monitor_interval_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.history_refresh_seconds = history_refresh_seconds
        self.telegram_bot_token = telegram_bot_token
        self.telegram_chat_id = telegram_chat_id
        self.log_level = log_level
        self.log_dir = Path(log_dir) if log_dir else Path("logs")
        self.log_file = log_file

    @property
    def is_live(self) -> bool:
        return self.trading_mode == "live"

    def validate(self) -> "Config":
        """Fail fast on anything the engine would otherwise have to guess about."""
        if not self.instruments:
            raise ConfigError("no instruments configured")
        if len(set(self.instruments)) != len(self.instruments):
            raise ConfigError("duplicate instruments configured")
        missing = [s for s in self.instruments if s not in self.position_sizes]
        if missing:
            raise ConfigError(f"position_sizes missing for: {', '.join(missing)}")
        for symbol in self.instruments:
            if self.position_sizes[symbol] <= 0:
                raise ConfigError(f"position_sizes.{symbol} must be positive")
        if self.trading_mode not in ("live", "paper"):
            raise ConfigError(f"trading_mode must be live or paper, got {self.trading_mode!r}")
        if sum(self.momentum_weights.values(), Decimal(0)) != Decimal(1):
            raise ConfigError("momentum_weights must sum to 1.0")
        if any(w < 0 for w in self.momentum_weights.values()):
            raise ConfigError("momentum_weights must be non-negative")
        positive = {
            "volume_multiplier": self.volume_multiplier,
            "stop_loss_percent": self.stop_loss_percent,
            "trailing_stop_percent": self.trailing_stop_percent,
            "take_profit_close_percent": self.take_profit_close_percent,
            "max_daily_loss_usd": self.max_daily_loss_usd,
            "leverage": self.leverage,
            "max_positions": self.max_positions,
            "decision_interval_seconds": self.decision_interval_seconds,
            "monitor_interval_seconds": self.monitor_interval_seconds,
            "sweep_interval_seconds": self.sweep_interval_seconds,
            "history_refresh_seconds": self.history_refresh_seconds,
            "lock_timeout_seconds": self.lock_timeout_seconds,
        }
        for key, value in positive.items():
            if value <= 0:
                raise ConfigError(f"{key} must be positive")
        if self.take_profit_percent is not None and self.take_profit_percent <= 0:
            raise ConfigError("take_profit_percent must be positive when set")
        if self.take_profit_close_percent > 100:
            raise ConfigError("take_profit_close_percent cannot exceed 100")
        if not (0 <= self.momentum_threshold <= 1):
            raise ConfigError("momentum_threshold must be within [0, 1]")
        if not (self.ema_fast < self.ema_mid < self.ema_slow):
            raise ConfigError("EMA periods must satisfy fast < mid < slow")
        if self.window_size < max(MIN_WINDOW, self.ema_slow + 1):
            raise ConfigError(f"window_size must be at least {max(MIN_WINDOW, self.ema_slow + 1)}")
        return self

    def history_symbol(self, instrument: str) -> str:
        """Symbol used by the reference feed; defaults to the instrument itself."""
        return self.history_symbols.get(instrument, instrument)
