"""
Configuration Tests
"""

import pytest

from config import Config, ENV_CONFIGS, TestConfig as IndexerTestConfig


class TestConfiguration:
    """Test configuration loading"""

    def test_config_import(self):
        """Test that configuration can be imported"""
        from config import config

        assert config.CRAWLER_NAME
        assert config.NATIVE_ADDRESS_PREFIX == "tnam1"
        assert config.NODE_RPC_URL is not None

    def test_config_validation(self):
        """Should not raise any errors with default config"""
        Config.validate()

    def test_test_config(self):
        assert IndexerTestConfig.DB_PATH == ":memory:"
        assert not IndexerTestConfig.uses_postgres()
        assert ENV_CONFIGS["test"] is IndexerTestConfig

    def test_postgres_detection(self):
        class Settings(Config):
            DATABASE_URL = "postgres://indexer@db/indexer"

        assert Settings.uses_postgres()

    def test_invalid_database_url(self):
        class Settings(Config):
            DATABASE_URL = "mysql://indexer@db/indexer"

        with pytest.raises(ValueError):
            Settings.validate()

    def test_invalid_retry_delays(self):
        class Settings(Config):
            RETRY_BASE_DELAY = 10
            RETRY_MAX_DELAY = 1

        with pytest.raises(ValueError):
            Settings.validate()

    def test_to_dict(self):
        settings = Config.to_dict()
        assert "POLL_INTERVAL" in settings
        assert "validate" not in settings
