# src/estuary_sync/staging.py
"""
The S3 staging bucket and the layout of the objects kept in it.

Staged record blobs live at the bucket root (`unsynced_0001.jsonl`, ...),
while manifests, checkpoint logs, cleanup records and run summaries are
JSON documents under the log namespace (`log/`). The janitor relies on this
split to know what it may delete.
"""

import io
import json
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

import polars as pl
from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig

from estuary_sync.config import AppConfig, S3Config
from estuary_sync.exceptions import StagingError
from estuary_sync.models import RECORD_FIELDS, Record

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client
    from types_aiobotocore_s3.paginator import ListObjectsV2Paginator
    from types_aiobotocore_s3.type_defs import (
        GetObjectOutputTypeDef,
        ListObjectsV2OutputTypeDef,
    )

logger: logging.Logger = logging.getLogger(__name__)

BLOB_SCHEMA: Dict[str, Any] = {
    "id": pl.Int64,
    **{name: pl.Utf8 for name in RECORD_FIELDS[1:]},
}


def encode_records(records: List[Record]) -> bytes:
    """
    Serializes records as newline-delimited JSON, one record per line.

    Args:
        records (List[Record]): The records of one staged blob.

    Returns:
        bytes: The UTF-8 encoded JSONL body.
    """
    df: pl.DataFrame = pl.DataFrame(
        [record.to_document() for record in records], schema=BLOB_SCHEMA
    )
    buffer: io.BytesIO = io.BytesIO()
    df.write_ndjson(buffer)
    return buffer.getvalue()


def decode_records(body: bytes) -> List[Record]:
    """
    Parses a staged JSONL blob back into records.

    Args:
        body (bytes): The raw blob content.

    Returns:
        List[Record]: The records in file order.
    """
    if not body.strip():
        return []
    try:
        df: pl.DataFrame = pl.read_ndjson(io.BytesIO(body), schema=BLOB_SCHEMA)
    except pl.exceptions.PolarsError as e:
        raise StagingError(f"Malformed staged blob: {e}") from e
    return [Record.from_mapping(row) for row in df.to_dicts()]


@dataclass(frozen=True)
class StagedObject:
    """
    A single entry of a bucket listing.

    Attributes:
        key (str): The object key.
        last_modified (datetime): Last modification time reported by S3.
    """

    key: str
    last_modified: datetime


@dataclass(frozen=True)
class StagingLayout:
    """
    Naming rules for every object the pipeline writes to the staging bucket.

    Attributes:
        staging_prefix (str): Prefix of staged record blobs.
        log_prefix (str): Prefix of the log namespace.
    """

    staging_prefix: str = "unsynced_"
    log_prefix: str = "log/"

    @classmethod
    def from_app_config(cls, app_config: AppConfig) -> "StagingLayout":
        return cls(
            staging_prefix=app_config.staging_prefix,
            log_prefix=app_config.log_prefix,
        )

    def blob_key(self, sequence: int) -> str:
        """Key of the staged blob with the given 1-based sequence number."""
        return f"{self.staging_prefix}{sequence:04d}.jsonl"

    @property
    def manifest_prefix(self) -> str:
        return f"{self.log_prefix}download_summary_"

    def manifest_key(self, timestamp: str) -> str:
        return f"{self.manifest_prefix}{timestamp}.json"

    def checkpoint_prefix(self, workflow_id: Optional[str] = None) -> str:
        """
        Listing prefix for checkpoint logs.

        Args:
            workflow_id (str, optional): Restrict to one workflow's logs.

        Returns:
            str: The prefix, covering all checkpoint logs without a workflow id.
        """
        base: str = f"{self.log_prefix}sync_log_ids_"
        return f"{base}{workflow_id}_" if workflow_id else base

    def checkpoint_key(self, workflow_id: Optional[str], timestamp: str) -> str:
        return f"{self.checkpoint_prefix(workflow_id)}{timestamp}.json"

    def summary_key(self, timestamp: str) -> str:
        return f"{self.log_prefix}sync_log_{timestamp}.json"

    def cleanup_key(self, timestamp: str) -> str:
        return f"{self.log_prefix}cleanup_log_{timestamp}.json"

    def is_retained(self, key: str) -> bool:
        """Whether the janitor must keep the object (summaries and logs)."""
        return key.startswith(self.log_prefix) or "summary" in key


class StagingStore:
    """
    A thin asynchronous key-value view over the staging bucket.

    Usage:
        async with StagingStore(config.staging) as staging:
            await staging.put_json("log/example.json", {"ok": True})
    """

    def __init__(self, config: S3Config) -> None:
        """
        Initializes the store without opening a client.

        Args:
            config (S3Config): The bucket configuration.
        """
        self._config: S3Config = config
        self._session: AioSession = get_session()
        self._exit_stack: Optional[AsyncExitStack] = None
        self._client: Optional["S3Client"] = None

    @property
    def bucket(self) -> str:
        return self._config.bucket

    async def __aenter__(self) -> "StagingStore":
        boto_config: BotoConfig = BotoConfig(
            signature_version="s3v4",
            connect_timeout=60,
            read_timeout=300,
            retries={"max_attempts": self._config.max_attempts, "mode": "standard"},
        )
        self._exit_stack = AsyncExitStack()
        self._client = await self._exit_stack.enter_async_context(
            self._session.create_client(
                "s3", **self._config.as_boto_dict(), config=boto_config
            )
        )
        logger.debug(f"S3 client opened for bucket '{self.bucket}'.")
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._exit_stack:
            await self._exit_stack.aclose()
        self._exit_stack = None
        self._client = None

    def _s3(self) -> "S3Client":
        if self._client is None:
            raise StagingError("Staging store is not open.")
        return self._client

    async def put_bytes(
        self, key: str, body: bytes, content_type: str = "application/json"
    ) -> None:
        """
        Uploads an object, replacing any existing object with the same key.

        Args:
            key (str): The destination key.
            body (bytes): The object content.
            content_type (str): The MIME type stored with the object.
        """
        await self._s3().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentLength=len(body),
            ContentType=content_type,
        )
        logger.debug(f"Uploaded 's3://{self.bucket}/{key}' ({len(body)} bytes).")

    async def put_json(self, key: str, payload: Dict[str, Any]) -> None:
        body: bytes = json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")
        await self.put_bytes(key, body)

    async def get_bytes(self, key: str) -> bytes:
        """
        Downloads an object fully into memory.

        Args:
            key (str): The object key.

        Returns:
            bytes: The object content.
        """
        response: "GetObjectOutputTypeDef" = await self._s3().get_object(
            Bucket=self.bucket, Key=key
        )
        return await response["Body"].read()

    async def get_json(self, key: str) -> Dict[str, Any]:
        body: bytes = await self.get_bytes(key)
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise StagingError(f"Object '{key}' is not valid JSON: {e}") from e

    async def delete(self, key: str) -> None:
        await self._s3().delete_object(Bucket=self.bucket, Key=key)
        logger.debug(f"Deleted 's3://{self.bucket}/{key}'.")

    async def list_objects(self, prefix: str = "") -> AsyncIterator[StagedObject]:
        """
        Lists objects under a prefix, following pagination transparently.

        Args:
            prefix (str): Key prefix to filter on, empty for the whole bucket.

        Yields:
            StagedObject: Each listed object in key order.
        """
        paginator: "ListObjectsV2Paginator" = self._s3().get_paginator(
            "list_objects_v2"
        )
        pages: AsyncIterator["ListObjectsV2OutputTypeDef"] = paginator.paginate(
            Bucket=self.bucket, Prefix=prefix
        )
        async for page in pages:
            for obj in page.get("Contents", []):
                yield StagedObject(key=obj["Key"], last_modified=obj["LastModified"])


async def collect_objects(store: StagingStore, prefix: str = "") -> List[StagedObject]:
    """Drains `store.list_objects(prefix)` into a list."""
    return [obj async for obj in store.list_objects(prefix)]

