"""
Transaction Indexer Configuration
Environment-driven configuration for the block crawler and its storage
"""

import os
from typing import Any, Dict, List


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """Base configuration"""

    # Node Configuration
    # -------------------------------------------------------------------------
    # Development fallback defaults only. Point NODE_RPC_URL / NODE_API_URL at
    # the node serving decoded block payloads and the published checksums.
    # -------------------------------------------------------------------------
    NODE_RPC_URL = os.getenv("NODE_RPC_URL", "http://localhost:26657")
    NODE_API_URL = os.getenv("NODE_API_URL", "http://localhost:1317")
    REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "10"))
    NODE_RETRY_COUNT = int(os.getenv("NODE_RETRY_COUNT", "3"))

    # Chain Configuration
    NATIVE_ADDRESS_PREFIX = os.getenv("NATIVE_ADDRESS_PREFIX", "tnam1")
    MASP_ADDRESS = os.getenv(
        "MASP_ADDRESS", "tnam1pcqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqzmefah"
    )
    # Protocol accounts that can originate IBC packets without an inner tx,
    # on top of those recognized by their address encoding
    INTERNAL_ADDRESSES = _split_csv(
        os.getenv(
            "INTERNAL_ADDRESSES", "tnam1pgqqyqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqkhgajr"
        )
    )

    # Database Configuration
    # DATABASE_URL selects PostgreSQL (asyncpg); otherwise SQLite at DB_PATH
    DATABASE_URL = os.getenv("DATABASE_URL", "")
    DB_PATH = os.getenv("INDEXER_DB_PATH", "./indexer.db")

    # Crawler Configuration
    CRAWLER_NAME = os.getenv("CRAWLER_NAME", "transactions")
    START_HEIGHT = int(os.getenv("START_HEIGHT", "1"))
    POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "5"))
    RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "1"))
    RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "60"))
    RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "0"))  # 0 = forever
    # Keep raw node payloads so reindexing replays from the store
    CACHE_BLOCK_PAYLOADS = os.getenv("CACHE_BLOCK_PAYLOADS", "true").lower() == "true"

    # Checksums Configuration
    CHECKSUMS_REFRESH_INTERVAL = int(os.getenv("CHECKSUMS_REFRESH_INTERVAL", "600"))
    CHECKSUMS_FALLBACK_PATH = os.getenv("CHECKSUMS_FALLBACK_PATH", "")

    # Logging Configuration
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def to_dict(cls) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            key: getattr(cls, key)
            for key in dir(cls)
            if key.isupper() and not callable(getattr(cls, key))
        }

    @classmethod
    def uses_postgres(cls) -> bool:
        return cls.DATABASE_URL.startswith(("postgres://", "postgresql://"))

    @classmethod
    def validate(cls) -> None:
        """Validate configuration"""
        errors = []

        if not cls.NODE_RPC_URL:
            errors.append("NODE_RPC_URL is required")

        if not cls.CRAWLER_NAME:
            errors.append("CRAWLER_NAME is required")

        if cls.START_HEIGHT < 1:
            errors.append("START_HEIGHT must be at least 1")

        if cls.RETRY_BASE_DELAY <= 0 or cls.RETRY_MAX_DELAY < cls.RETRY_BASE_DELAY:
            errors.append("RETRY_MAX_DELAY must be >= RETRY_BASE_DELAY > 0")

        if cls.RETRY_MAX_ATTEMPTS < 0:
            errors.append("RETRY_MAX_ATTEMPTS must not be negative")

        if cls.DATABASE_URL and not cls.uses_postgres():
            errors.append("DATABASE_URL must be a postgres:// or postgresql:// URL")

        if errors:
            raise ValueError(f"Configuration validation failed: {', '.join(errors)}")


class DevelopmentConfig(Config):
    """Development configuration"""

    DB_PATH = os.getenv("INDEXER_DB_PATH", "./indexer-dev.db")
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production configuration"""

    LOG_LEVEL = "WARNING"


class TestConfig(Config):
    """Test configuration"""

    DB_PATH = ":memory:"
    DATABASE_URL = ""
    NODE_RPC_URL = "http://localhost:26657"
    POLL_INTERVAL = 0.01
    RETRY_BASE_DELAY = 0.01
    RETRY_MAX_DELAY = 0.05
    RETRY_MAX_ATTEMPTS = 3


# Environment-based configuration selection
ENV_CONFIGS = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "test": TestConfig,
}


def get_config() -> Config:
    """Get configuration based on environment"""
    env = os.getenv("INDEXER_ENV", "development")
    config_class = ENV_CONFIGS.get(env, DevelopmentConfig)
    config_class.validate()
    return config_class


# Export current configuration
config = get_config()
