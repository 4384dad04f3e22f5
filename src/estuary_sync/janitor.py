# src/estuary_sync/janitor.py
"""Bounds staging bucket growth by deleting everything but summaries and logs."""

import logging
from typing import List

from botocore.exceptions import BotoCoreError, ClientError

from estuary_sync.config import AppConfig
from estuary_sync.models import CleanResult, isoformat_z, key_timestamp, utc_now
from estuary_sync.staging import (
    StagedObject,
    StagingLayout,
    StagingStore,
    collect_objects,
)

logger: logging.Logger = logging.getLogger(__name__)


class Janitor:
    """Removes leftover staged blobs and records what was cleaned."""

    def __init__(self, staging: StagingStore, app_config: AppConfig) -> None:
        self._staging: StagingStore = staging
        self._config: AppConfig = app_config
        self._layout: StagingLayout = StagingLayout.from_app_config(app_config)

    async def clean(self) -> CleanResult:
        """
        Deletes every object outside the log namespace that is not a summary.

        A failed delete is logged and counted without stopping the loop.
        Listing failures propagate.

        Returns:
            CleanResult: Listing, deletion and retention totals.
        """
        logger.info(f"Cleaning staging bucket '{self._staging.bucket}'...")
        objects: List[StagedObject] = await collect_objects(self._staging)

        to_keep: List[StagedObject] = [
            obj for obj in objects if self._layout.is_retained(obj.key)
        ]
        to_delete: List[StagedObject] = [
            obj for obj in objects if not self._layout.is_retained(obj.key)
        ]
        logger.info(
            f"Found {len(objects)} object(s): keeping {len(to_keep)}, "
            f"deleting {len(to_delete)}."
        )

        deleted: int = 0
        failed: int = 0
        for obj in to_delete:
            try:
                await self._staging.delete(obj.key)
            except (ClientError, BotoCoreError) as e:
                failed += 1
                logger.error(f"Failed to delete '{obj.key}': {e}")
                continue
            deleted += 1
            if deleted % 100 == 0:
                logger.info(f"Deleted {deleted}/{len(to_delete)} objects")

        cleanup_key: str = self._layout.cleanup_key(key_timestamp())
        await self._staging.put_json(
            cleanup_key,
            {
                "cleanedAt": isoformat_z(utc_now()),
                "totalFiles": len(objects),
                "filesDeleted": deleted,
                "filesKept": len(to_keep),
                "failedDeletes": failed,
                "keptFiles": [obj.key for obj in to_keep],
                "version": self._config.format_version,
            },
        )
        logger.info(
            f"Deleted {deleted} object(s), {failed} failure(s). "
            f"Cleanup log saved to '{cleanup_key}'."
        )

        return CleanResult(
            success=True,
            total_files=len(objects),
            files_deleted=deleted,
            files_kept=len(to_keep),
            failed_deletes=failed,
        )
