# src/estuary_sync/writer.py
"""
Stages not-yet-synced source rows into the staging bucket.

Rows are read page by page in ascending identifier order and every page is
written as its own JSONL blob right away, so a crash loses at most the page
in flight. The manifest is only written after the terminating empty page.
"""

import logging
from typing import List

from estuary_sync.config import AppConfig
from estuary_sync.models import (
    DownloadResult,
    Manifest,
    Record,
    isoformat_z,
    key_timestamp,
    utc_now,
)
from estuary_sync.source import PostgresSource
from estuary_sync.staging import StagingLayout, StagingStore, encode_records

logger: logging.Logger = logging.getLogger(__name__)


class StagingWriter:
    """Copies unsynced source rows into fixed-size staged blobs."""

    def __init__(
        self,
        source: PostgresSource,
        staging: StagingStore,
        app_config: AppConfig,
    ) -> None:
        """
        Args:
            source (PostgresSource): The source table adapter.
            staging (StagingStore): The staging bucket.
            app_config (AppConfig): Pipeline settings.
        """
        self._source: PostgresSource = source
        self._staging: StagingStore = staging
        self._config: AppConfig = app_config
        self._layout: StagingLayout = StagingLayout.from_app_config(app_config)

    async def download(self) -> DownloadResult:
        """
        Stages every unsynced row and records a manifest of the run.

        Any source or storage error propagates; in that case no manifest is
        written and the blobs written so far are picked up by the next sync.

        Returns:
            DownloadResult: Totals, staged blob keys and the manifest key.
        """
        page_size: int = self._config.records_per_file
        logger.info(f"Staging unsynced records ({page_size} records per file)...")

        total_records: int = 0
        last_id: int = 0
        files: List[str] = []

        while True:
            records: List[Record] = await self._source.fetch_unsynced(
                after_id=last_id, limit=page_size
            )
            if not records:
                logger.info("No more records to fetch.")
                break

            key: str = self._layout.blob_key(len(files) + 1)
            await self._staging.put_bytes(
                key, encode_records(records), content_type="application/x-ndjson"
            )
            files.append(key)
            total_records += len(records)
            last_id = records[-1].id
            logger.info(
                f"Staged '{key}': {total_records:,} records in {len(files)} "
                f"file(s), last id {last_id}."
            )

        manifest: Manifest = Manifest(
            total_records=total_records,
            files=files,
            records_per_file=page_size,
            bucket=self._staging.bucket,
            downloaded_at=isoformat_z(utc_now()),
            version=self._config.format_version,
        )
        manifest_key: str = self._layout.manifest_key(key_timestamp())
        await self._staging.put_json(manifest_key, manifest.to_json())
        logger.info(
            f"Download finished: {total_records:,} records across {len(files)} "
            f"file(s). Manifest saved to '{manifest_key}'."
        )

        return DownloadResult(
            success=True,
            total_records=total_records,
            file_count=len(files),
            files=files,
            manifest_key=manifest_key,
        )
