# src/estuary_sync/config.py
"""
Configuration for the estuary-sync pipeline.

This module centralizes all configuration, loading connection details from
environment variables and providing typed dataclasses for use throughout
the application.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from estuary_sync.exceptions import ConfigError
from estuary_sync.retry import RetryPolicy


def _get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Retrieves a required environment variable.

    Args:
        name (str): The name of the environment variable.
        default (str, optional): The default value if the variable is not set.

    Returns:
        str: The value of the environment variable.
    """
    value: Optional[str] = os.environ.get(name, default)
    if not value:
        raise ConfigError(f"Environment variable '{name}' must be set.")
    return value


def _get_env_flag(name: str, default: bool) -> bool:
    """Reads a boolean environment variable ("true"/"1"/"yes" are truthy)."""
    value: Optional[str] = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_env_int(name: str, default: int) -> int:
    """Reads an integer environment variable."""
    value: str = os.environ.get(name) or str(default)
    try:
        return int(value)
    except ValueError as e:
        raise ConfigError(
            f"Environment variable '{name}' must be an integer, got '{value}'."
        ) from e


@dataclass(frozen=True)
class SourceConfig:
    """
    Represents the connection and naming details of the source table.

    Attributes:
        dsn (str): The PostgreSQL Data Source Name.
        schema (str): Schema holding the source table.
        table (str): The source table name.
        sync_column (str): Boolean column flagging rows already indexed.
        command_timeout_s (int): Per-query timeout in seconds.
    """

    dsn: str
    schema: str = "api"
    table: str = "pageseeker_response_opensearch"
    sync_column: str = "opensearch_sync"
    command_timeout_s: int = 600


@dataclass(frozen=True)
class S3Config:
    """
    Represents the configuration for the S3-compatible staging bucket.

    Attributes:
        bucket (str): The bucket name.
        region (str): The AWS region.
        endpoint_url (str, optional): A custom S3 endpoint URL.
        access_key_id (str, optional): A static access key ID.
        secret_access_key (str, optional): A static secret access key.
        max_attempts (int): botocore retry budget for each S3 call.
    """

    bucket: str
    region: str = "ap-southeast-1"
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    max_attempts: int = 5

    def as_boto_dict(self) -> Dict[str, str]:
        """
        Returns the configuration as a dictionary suitable for aiobotocore clients.

        Unset values are omitted so that botocore falls back to its default
        endpoint resolution and credential provider chain.

        Returns:
            Dict[str, str]: A dictionary of client parameters.
        """
        params: Dict[str, str] = {"region_name": self.region}
        if self.endpoint_url:
            params["endpoint_url"] = self.endpoint_url
        if self.access_key_id and self.secret_access_key:
            params["aws_access_key_id"] = self.access_key_id
            params["aws_secret_access_key"] = self.secret_access_key
        return params


@dataclass(frozen=True)
class OpenSearchConfig:
    """
    Represents the configuration of the destination search index.

    Attributes:
        node (str): Base URL of the OpenSearch cluster.
        index (str): Name of the destination index.
        sigv4 (bool): Whether requests are signed with AWS SigV4.
        region (str): Region used for SigV4 signing.
        verify_ssl (bool): Whether TLS certificates are verified.
        timeout_s (float): Request timeout in seconds.
    """

    node: str
    index: str = "pageseeker_response_opensearch"
    sigv4: bool = False
    region: str = "ap-southeast-1"
    verify_ssl: bool = False
    timeout_s: float = 300.0


@dataclass(frozen=True)
class AppConfig:
    """
    Defines the pipeline's operational parameters.

    Attributes:
        records_per_file (int): Page size when staging source rows.
        initial_batch_size (int): Upper bound of the batch-size probe.
        max_payload_bytes (int): Size ceiling of a single bulk request body.
        bulk_retry (RetryPolicy): Retry policy for a single bulk window.
        mark_batch_size (int): Number of ids per mark-as-synced update.
        max_resync_attempts (int): Resync cycles allowed after a failed verification.
        sample_size (int): Documents fetched for the verification sample.
        duplicate_check_size (int): Buckets requested by the duplicate check.
        staging_prefix (str): Key prefix of staged record blobs.
        log_prefix (str): Key prefix of manifests, checkpoint logs and summaries.
        format_version (str): Version tag written into every JSON artifact.
    """

    records_per_file: int = 100
    initial_batch_size: int = 25
    max_payload_bytes: int = 2 * 1024 * 1024
    bulk_retry: RetryPolicy = field(default_factory=RetryPolicy)
    mark_batch_size: int = 1000
    max_resync_attempts: int = 3
    sample_size: int = 5
    duplicate_check_size: int = 10
    staging_prefix: str = "unsynced_"
    log_prefix: str = "log/"
    format_version: str = "SYNC_SYSTEM_V1"


def source_config_from_env() -> SourceConfig:
    """
    Reads only the source database settings from the environment.

    Returns:
        SourceConfig: The source settings.

    Raises:
        ConfigError: If `ESTUARY_DATABASE_URL` is not set.
    """
    return SourceConfig(
        dsn=_get_env_var("ESTUARY_DATABASE_URL"),
        schema=_get_env_var("ESTUARY_SOURCE_SCHEMA", "api"),
        table=_get_env_var("ESTUARY_SOURCE_TABLE", "pageseeker_response_opensearch"),
        sync_column=_get_env_var("ESTUARY_SOURCE_SYNC_COLUMN", "opensearch_sync"),
        command_timeout_s=_get_env_int("ESTUARY_DB_COMMAND_TIMEOUT_S", 600),
    )


def _staging_from_env() -> S3Config:
    return S3Config(
        bucket=_get_env_var("ESTUARY_STAGING_BUCKET"),
        region=_get_env_var("ESTUARY_STAGING_REGION", "ap-southeast-1"),
        endpoint_url=os.environ.get("ESTUARY_STAGING_ENDPOINT_URL") or None,
        access_key_id=os.environ.get("ESTUARY_STAGING_ACCESS_KEY_ID") or None,
        secret_access_key=os.environ.get("ESTUARY_STAGING_SECRET_ACCESS_KEY") or None,
    )


def _search_from_env() -> OpenSearchConfig:
    region: str = os.environ.get("ESTUARY_OPENSEARCH_REGION") or _get_env_var(
        "ESTUARY_STAGING_REGION", "ap-southeast-1"
    )
    return OpenSearchConfig(
        node=_get_env_var("ESTUARY_OPENSEARCH_NODE").rstrip("/"),
        index=_get_env_var("ESTUARY_OPENSEARCH_INDEX", "pageseeker_response_opensearch"),
        sigv4=_get_env_flag("ESTUARY_OPENSEARCH_SIGV4", False),
        region=region,
        verify_ssl=_get_env_flag("ESTUARY_OPENSEARCH_VERIFY_SSL", False),
        timeout_s=float(_get_env_int("ESTUARY_OPENSEARCH_TIMEOUT_S", 300)),
    )


@dataclass(frozen=True)
class Config:
    """
    Top-level configuration container for the entire application.

    Attributes:
        source (SourceConfig): Configuration for the source database.
        staging (S3Config): Configuration for the staging bucket.
        search (OpenSearchConfig): Configuration for the destination index.
        app (AppConfig): General pipeline settings.
    """

    source: SourceConfig = field(default_factory=source_config_from_env)
    staging: S3Config = field(default_factory=_staging_from_env)
    search: OpenSearchConfig = field(default_factory=_search_from_env)
    app: AppConfig = field(default_factory=AppConfig)
