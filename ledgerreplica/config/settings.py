"""
Configuration settings for LedgerReplica.

This module provides the configuration management for the replica pipeline. It defines
settings for the distributor connection, collector identity, storage backend, block
indexing, receipt processing switches and downstream fan-out.

The configuration supports multiple environments (development, production, testing) and
provides validation mechanisms to catch inconsistent block parameters before a sync run.
"""

import logging
import os
from typing import Dict, Any, List


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Replica configuration settings"""

    VERSION = "0.3.0"
    FRAMEWORK_NAME = "ledgerreplica"

    # Distributor settings
    DISTRIBUTOR_URL = os.getenv("DISTRIBUTOR_URL", "http://127.0.0.1:6100")
    DISTRIBUTOR_TIMEOUT_SECONDS = float(os.getenv("DISTRIBUTOR_TIMEOUT_SECONDS", "45"))
    DISTRIBUTOR_PUBLIC_KEY = os.getenv("DISTRIBUTOR_PUBLIC_KEY", "")

    # Collector identity (Ed25519, hex encoded)
    COLLECTOR_PUBLIC_KEY = os.getenv("COLLECTOR_PUBLIC_KEY", "")
    COLLECTOR_SECRET_KEY = os.getenv("COLLECTOR_SECRET_KEY", "")

    # Storage settings
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "sql")  # sql, memory
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///ledgerreplica.db")

    # Block indexing settings
    BLOCK_INDEXING_ENABLED = _env_bool("BLOCK_INDEXING_ENABLED", True)
    CYCLE_DURATION_SECONDS = int(os.getenv("CYCLE_DURATION_SECONDS", "60"))
    BLOCK_PRODUCTION_RATE = int(os.getenv("BLOCK_PRODUCTION_RATE", "6"))  # seconds per block
    INIT_BLOCK_NUMBER = int(os.getenv("INIT_BLOCK_NUMBER", "0"))
    BLOCK_QUERY_DELAY_SECONDS = int(os.getenv("BLOCK_QUERY_DELAY_SECONDS", "60"))

    # Receipt / original tx processing switches
    INDEX_RECEIPT = _env_bool("INDEX_RECEIPT", True)
    INDEX_ORIGINAL_TX_DATA = _env_bool("INDEX_ORIGINAL_TX_DATA", True)
    DECODE_CONTRACT_INFO = _env_bool("DECODE_CONTRACT_INFO", False)
    DECODE_TOKEN_TRANSFER = _env_bool("DECODE_TOKEN_TRANSFER", True)
    SAVE_ACCOUNT_HISTORY_STATE = _env_bool("SAVE_ACCOUNT_HISTORY_STATE", True)
    STORE_RECEIPT_BEFORE_STATES = _env_bool("STORE_RECEIPT_BEFORE_STATES", True)
    ENABLE_ACCOUNT_ENTRIES = _env_bool("ENABLE_ACCOUNT_ENTRIES", False)

    # Reconciliation settings
    DEDUP_RETENTION_SECONDS = int(os.getenv("DEDUP_RETENTION_SECONDS", "300"))  # 5 minutes
    COMPARE_CYCLE_WINDOW = int(os.getenv("COMPARE_CYCLE_WINDOW", "10"))

    # Downstream fan-out and live feed (ZeroMQ)
    ENABLE_LOG_PUBLISHER = _env_bool("ENABLE_LOG_PUBLISHER", False)
    LOG_PUBLISHER_ADDRESS = os.getenv("LOG_PUBLISHER_ADDRESS", "tcp://127.0.0.1:4444")
    LIVE_FEED_ADDRESS = os.getenv("LIVE_FEED_ADDRESS", "")

    # EVM JSON-RPC endpoint used to resolve contract metadata
    EVM_RPC_URL = os.getenv("EVM_RPC_URL", "")

    # Logging settings
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def blocks_per_cycle(cls) -> int:
        """Number of synthetic blocks produced per cycle."""
        return cls.CYCLE_DURATION_SECONDS // cls.BLOCK_PRODUCTION_RATE

    @classmethod
    def get_storage_config(cls) -> Dict[str, Any]:
        """Get storage configuration"""
        return {
            "backend": cls.STORAGE_BACKEND,
            "database_url": cls.DATABASE_URL,
        }

    @classmethod
    def get_block_config(cls) -> Dict[str, Any]:
        """Get block indexing configuration"""
        return {
            "enabled": cls.BLOCK_INDEXING_ENABLED,
            "cycle_duration_seconds": cls.CYCLE_DURATION_SECONDS,
            "block_production_rate": cls.BLOCK_PRODUCTION_RATE,
            "init_block_number": cls.INIT_BLOCK_NUMBER,
            "blocks_per_cycle": cls.blocks_per_cycle(),
            "query_delay_seconds": cls.BLOCK_QUERY_DELAY_SECONDS,
        }

    @classmethod
    def get_distributor_config(cls) -> Dict[str, Any]:
        """Get distributor configuration"""
        return {
            "url": cls.DISTRIBUTOR_URL,
            "timeout": cls.DISTRIBUTOR_TIMEOUT_SECONDS,
            "public_key": cls.DISTRIBUTOR_PUBLIC_KEY,
        }

    @classmethod
    def validate_config(cls) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []

        if cls.BLOCK_PRODUCTION_RATE <= 0:
            errors.append("BLOCK_PRODUCTION_RATE must be positive")
        elif cls.CYCLE_DURATION_SECONDS % cls.BLOCK_PRODUCTION_RATE != 0:
            errors.append("CYCLE_DURATION_SECONDS must be a multiple of BLOCK_PRODUCTION_RATE")

        if cls.CYCLE_DURATION_SECONDS <= 0:
            errors.append("CYCLE_DURATION_SECONDS must be positive")

        if cls.INIT_BLOCK_NUMBER < 0:
            errors.append("INIT_BLOCK_NUMBER must not be negative")

        if cls.STORAGE_BACKEND not in ["sql", "memory"]:
            errors.append("STORAGE_BACKEND must be one of: sql, memory")

        if cls.DISTRIBUTOR_TIMEOUT_SECONDS <= 0:
            errors.append("DISTRIBUTOR_TIMEOUT_SECONDS must be positive")

        if cls.COMPARE_CYCLE_WINDOW <= 0:
            errors.append("COMPARE_CYCLE_WINDOW must be positive")

        if not cls.COLLECTOR_SECRET_KEY:
            errors.append("COLLECTOR_SECRET_KEY is required to sign distributor requests")

        return errors


# Environment-specific settings
class DevelopmentSettings(Settings):
    """Development environment settings"""
    LOG_LEVEL = "DEBUG"


class ProductionSettings(Settings):
    """Production environment settings"""
    LOG_LEVEL = "WARNING"
    DECODE_CONTRACT_INFO = _env_bool("DECODE_CONTRACT_INFO", True)


class TestingSettings(Settings):
    """Testing environment settings"""
    LOG_LEVEL = "DEBUG"
    STORAGE_BACKEND = "memory"
    DATABASE_URL = "sqlite:///:memory:"
    CYCLE_DURATION_SECONDS = 60
    BLOCK_PRODUCTION_RATE = 1
    INIT_BLOCK_NUMBER = 0
    ENABLE_LOG_PUBLISHER = False
    DECODE_CONTRACT_INFO = False


# Get settings based on environment
def get_settings() -> Settings:
    """Get settings based on environment variable"""
    env = os.getenv("LEDGER_REPLICA_ENV", "development").lower()

    if env == "production":
        return ProductionSettings()
    elif env == "testing":
        return TestingSettings()
    else:
        return DevelopmentSettings()


def configure_logging(config: Settings = None) -> None:
    """Apply LOG_LEVEL and LOG_FORMAT to the root logger."""
    config = config or settings
    logging.basicConfig(level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO),
                        format=config.LOG_FORMAT)


# Global settings instance
settings = get_settings()
