# ==============================================
# Configuration Management
# ==============================================
#
# PURPOSE:
#   Load and validate all configuration from environment
#   variables / .env file. Provides typed config objects
#   to all other modules.
#
# CLASSES:
# --------
# - MySQLConfig (dataclass)
#     host: str                    (default "localhost")
#     port: int                    (default 3306)
#     user: str                    (default "root")
#     password: str                (default "root")
#     database: str                (default "loyalty_store")
#     pool_size: int               (default 5)
#     pool_timeout_seconds: float  (default 30.0)
#     connect_timeout: int         (default 10)
#
# - MongoConfig (dataclass)
#     uri: str | None              (default None)
#     host: str | None             (default None)
#     port: int                    (default 27017)
#     user: str | None             (default None)
#     password: str | None         (default None)
#     database: str                (default "loyalty_store")
#     server_selection_timeout_ms: int (default 5000)
#
#   No uri and no host means "no credentials": the document
#   adapter starts in degraded (in-memory) mode.
#
# - HybridConfig (dataclass)
#     max_workers: int                         (default 8)
#     default_timeout_seconds: float | None    (default None)
#     migration_batch_limit: int               (default 10000)
#
# - LoggingConfig (dataclass)
#     level: str                   (default "INFO")
#     format: str                  ("console" or "json")
#
# - AppConfig (dataclass)
#     mysql, mongo, hybrid, logging
#
# FUNCTION:
# ---------
# - get_config() -> AppConfig
#     Load .env using python-dotenv, construct AppConfig.
#     Returns the same singleton on repeated calls.
#
# - reset_config() -> None
#     Drop the singleton (tests, CLI re-reads).
#
# ==============================================

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


@dataclass
class MySQLConfig:
    """MySQL database configuration."""
    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str = "root"
    database: str = "loyalty_store"
    pool_size: int = 5
    pool_timeout_seconds: float = 30.0
    connect_timeout: int = 10


@dataclass
class MongoConfig:
    """MongoDB database configuration."""
    uri: Optional[str] = None
    host: Optional[str] = None
    port: int = 27017
    user: Optional[str] = None
    password: Optional[str] = None
    database: str = "loyalty_store"
    server_selection_timeout_ms: int = 5000

    @property
    def is_configured(self) -> bool:
        return bool(self.uri or self.host)

    def connection_uri(self) -> Optional[str]:
        """Build the mongodb:// URI, or None when nothing is configured."""
        if self.uri:
            return self.uri
        if not self.host:
            return None
        if self.user and self.password:
            return f"mongodb://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"
        return f"mongodb://{self.host}:{self.port}/{self.database}"


@dataclass
class HybridConfig:
    """Mediator tuning: worker threads, deadlines, migration cap."""
    max_workers: int = 8
    default_timeout_seconds: Optional[float] = None
    migration_batch_limit: int = 10000


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "console"


@dataclass
class AppConfig:
    """Main application configuration."""
    mysql: MySQLConfig = field(default_factory=MySQLConfig)
    mongo: MongoConfig = field(default_factory=MongoConfig)
    hybrid: HybridConfig = field(default_factory=HybridConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Singleton instance
_config_instance: Optional[AppConfig] = None


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


def get_config() -> AppConfig:
    """
    Load configuration from environment variables / .env file.
    Returns the same singleton instance on repeated calls.

    Returns:
        AppConfig: Application configuration
    """
    global _config_instance

    if _config_instance is not None:
        return _config_instance

    # Load .env file from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(dotenv_path=env_path)

    mysql_config = MySQLConfig(
        host=os.getenv("MYSQL_HOST", "localhost"),
        port=int(os.getenv("MYSQL_PORT", "3306")),
        user=os.getenv("MYSQL_USER", "root"),
        password=os.getenv("MYSQL_PASSWORD", "root"),
        database=os.getenv("MYSQL_DATABASE", "loyalty_store"),
        pool_size=int(os.getenv("MYSQL_POOL_SIZE", "5")),
        pool_timeout_seconds=float(os.getenv("MYSQL_POOL_TIMEOUT", "30")),
        connect_timeout=int(os.getenv("MYSQL_CONNECT_TIMEOUT", "10")),
    )

    mongo_config = MongoConfig(
        uri=os.getenv("MONGO_URI") or None,
        host=os.getenv("MONGO_HOST") or None,
        port=int(os.getenv("MONGO_PORT", "27017")),
        user=os.getenv("MONGO_USER") or None,
        password=os.getenv("MONGO_PASSWORD") or None,
        database=os.getenv("MONGO_DATABASE", "loyalty_store"),
        server_selection_timeout_ms=int(os.getenv("MONGO_SERVER_SELECTION_TIMEOUT_MS", "5000")),
    )

    hybrid_config = HybridConfig(
        max_workers=int(os.getenv("HYBRID_MAX_WORKERS", "8")),
        default_timeout_seconds=_optional_float("HYBRID_TIMEOUT_SECONDS"),
        migration_batch_limit=int(os.getenv("MIGRATION_BATCH_LIMIT", "10000")),
    )

    logging_config = LoggingConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format=os.getenv("LOG_FORMAT", "console"),
    )

    _config_instance = AppConfig(
        mysql=mysql_config,
        mongo=mongo_config,
        hybrid=hybrid_config,
        logging=logging_config,
    )

    return _config_instance


def reset_config() -> None:
    """Forget the cached configuration so the next get_config() re-reads env."""
    global _config_instance
    _config_instance = None
