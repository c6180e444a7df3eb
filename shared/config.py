"""
Centralized Configuration Management
Handles settlement engine settings, database and Redis connections, and logging
"""

import logging
import os
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

from pydantic import AliasChoices, Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseSettings):
    """Database configuration for the ledger store"""
    url: str = Field(
        default="postgresql+asyncpg://localhost:5432/ledger",
        validation_alias=AliasChoices("DATABASE_URL", "DB_URL"),
        description="Database connection URL",
    )

    # Connection pool settings
    pool_size: int = Field(default=10, ge=1, le=100)
    max_overflow: int = Field(default=20, ge=0, le=200)
    pool_pre_ping: bool = Field(default=True, description="Enable connection health checks")
    pool_recycle: int = Field(default=3600, description="Connection recycle time (seconds)")
    echo: bool = Field(default=False, description="Enable SQL query logging")

    # Transaction consistency
    isolation_level: Optional[str] = Field(default="REPEATABLE READ", description="Isolation level for settlement transactions")
    synchronous_commit: str = Field(default="on", description="Commit durability required before a transaction is acknowledged")
    target_session_attrs: str = Field(default="read-write", description="Only connect to a writable primary")

    command_timeout: int = Field(default=60, description="Command timeout (seconds)")
    application_name: str = Field(default="settlement_engine")

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )

    @computed_field
    @property
    def processed_url(self) -> str:
        """Database URL with an async driver"""
        url = str(self.url)
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        return url


class RedisConfig(BaseSettings):
    """Redis pub/sub configuration"""
    url: str = "redis://localhost:6379"
    quote_channel: str = "forex.quote"
    trade_action_channel: str = "forex.trade.action"
    decode_responses: bool = True
    socket_connect_timeout: int = 30
    socket_timeout: Optional[int] = None
    health_check_interval: int = 30
    poll_timeout: float = Field(default=1.0, gt=0, description="Seconds to wait for a message per poll")

    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")


class SettlementConfig(BaseSettings):
    """Settlement engine configuration"""
    contract_multiplier: float = Field(default=100000.0, gt=0, description="Notional currency amount per lot")
    batch_size: int = Field(default=1000, ge=1, description="Maximum pending operations per bulk submission")
    ticker_separator: str = Field(default="/", description="Stripped from quote tickers, e.g. EUR/USD")

    # Dispatcher retry policy for transient storage errors
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=10.0, ge=0)

    # Intake backpressure
    max_in_flight: int = Field(default=1000, ge=1, description="Events settling concurrently before intake waits")

    model_config = SettingsConfigDict(env_prefix="SETTLEMENT_", extra="ignore")


class LoggingConfig(BaseSettings):
    """Logging configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(funcName)s() - %(message)s"
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    enable_console: bool = True
    enable_file: bool = True
    # LOG_LOGGER_LEVELS='{"settlement": "DEBUG"}'
    logger_levels: Dict[str, str] = Field(default_factory=lambda: {
        "sqlalchemy.engine": "WARNING",
        "redis": "WARNING",
    })

    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")


class AppSettings(BaseSettings):
    """Main application settings"""

    # Environment
    environment: str = "development"
    debug: bool = False

    # Application info
    app_name: str = "Settlement Engine"
    app_version: str = "1.0.0"

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed_envs:
            raise ValueError(f"Environment must be one of: {allowed_envs}")
        return v.lower()


@lru_cache()
def get_settings() -> AppSettings:
    """Get cached application settings"""
    return AppSettings()


def load_environment(project_root: Optional[Path] = None) -> Optional[Path]:
    """
    Load ``.env.<APP_ENV>`` (APP_ENV defaults to ``dev``) from the project root.

    Returns the file that was loaded, or None when it does not exist. Call before
    the first ``get_settings()``; variables already set in the process win.
    """
    root = project_root or Path(__file__).resolve().parent.parent
    env_file = root / f".env.{os.getenv('APP_ENV', 'dev')}"
    if load_dotenv(env_file):
        return env_file
    return None


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name!r}")
    return level


def setup_logging(settings: Optional[AppSettings] = None) -> List[logging.Handler]:
    """
    Route every logger through the root handlers and apply per-logger levels.

    Settlement modules log under ``settlement.*`` and ``shared.*``;
    ``logger_levels={"settlement": "DEBUG"}`` turns on per-step detail for them alone.
    """
    if settings is None:
        settings = get_settings()
    logging_config = settings.logging
    root_level = _level(logging_config.level)
    formatter = logging.Formatter(logging_config.format)

    handlers: List[logging.Handler] = []
    if logging_config.enable_console:
        handlers.append(logging.StreamHandler())
    if logging_config.enable_file and logging_config.file_path:
        Path(logging_config.file_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            logging_config.file_path,
            maxBytes=logging_config.max_file_size,
            backupCount=logging_config.backup_count
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name, level in logging_config.logger_levels.items():
        logging.getLogger(name).setLevel(_level(level))

    logger.debug(f"Logging configured at {logging_config.level} with {len(handlers)} handlers")
    return handlers
