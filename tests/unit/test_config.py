# tests/unit/test_config.py
"""Unit tests for the environment-driven configuration."""

import os
from typing import Dict
from unittest.mock import patch

import pytest

from estuary_sync.config import Config
from estuary_sync.exceptions import ConfigError


def test_config_reads_environment() -> None:
    """
    Tests that the configuration is assembled from environment variables.

    Arrange:
        - Set the required variables plus a few optional overrides.
    Act:
        - Build a `Config`.
    Assert:
        - Values are taken from the environment, defaults fill the rest and
          the trailing slash of the node URL is removed.
    """
    env: Dict[str, str] = {
        "ESTUARY_DATABASE_URL": "postgresql://localhost/db",
        "ESTUARY_STAGING_BUCKET": "staging",
        "ESTUARY_STAGING_ENDPOINT_URL": "http://localhost:9000",
        "ESTUARY_OPENSEARCH_NODE": "https://search.example.com/",
        "ESTUARY_OPENSEARCH_SIGV4": "true",
        "ESTUARY_DB_COMMAND_TIMEOUT_S": "30",
    }
    with patch.dict(os.environ, env, clear=True):
        config: Config = Config()

    assert config.source.dsn == "postgresql://localhost/db"
    assert config.source.table == "pageseeker_response_opensearch"
    assert config.source.command_timeout_s == 30
    assert config.staging.as_boto_dict() == {
        "region_name": "ap-southeast-1",
        "endpoint_url": "http://localhost:9000",
    }
    assert config.search.node == "https://search.example.com"
    assert config.search.sigv4 is True
    assert config.search.verify_ssl is False
    assert config.app.records_per_file == 100


def test_config_rejects_non_integer_values() -> None:
    env: Dict[str, str] = {
        "ESTUARY_DATABASE_URL": "postgresql://localhost/db",
        "ESTUARY_DB_COMMAND_TIMEOUT_S": "soon",
    }
    with patch.dict(os.environ, env, clear=True):
        with pytest.raises(ConfigError, match="must be an integer"):
            Config()
