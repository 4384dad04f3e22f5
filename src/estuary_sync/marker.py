# src/estuary_sync/marker.py
"""
Marks indexed records as synced at the source.

The identifiers to mark are the union of every checkpoint log written for
the workflow. Reading all logs (rather than only the newest) covers the case
where indexing ran more than once, and the set union means an identifier
attempted in several logs is still marked only once.
"""

import asyncio
import logging
from typing import List, Optional, Set, Tuple

import asyncpg

from estuary_sync.config import AppConfig
from estuary_sync.exceptions import NoCheckpointLogsError, SourceError
from estuary_sync.models import CheckpointLog, MarkResult
from estuary_sync.source import PostgresSource
from estuary_sync.staging import (
    StagedObject,
    StagingLayout,
    StagingStore,
    collect_objects,
)

logger: logging.Logger = logging.getLogger(__name__)


class CommitMarker:
    """Flags checkpointed identifiers as synced in batched updates."""

    def __init__(
        self,
        source: PostgresSource,
        staging: StagingStore,
        app_config: AppConfig,
    ) -> None:
        self._source: PostgresSource = source
        self._staging: StagingStore = staging
        self._config: AppConfig = app_config
        self._layout: StagingLayout = StagingLayout.from_app_config(app_config)

    async def collect_ids(
        self, workflow_id: Optional[str] = None
    ) -> Tuple[Set[int], List[str]]:
        """
        Reads every checkpoint log of the workflow and unions their ids.

        Args:
            workflow_id (str, optional): Workflow whose logs are read; all
                checkpoint logs are read when omitted.

        Returns:
            Tuple[Set[int], List[str]]: The identifiers and the log keys read,
                in creation order.

        Raises:
            NoCheckpointLogsError: If no checkpoint log matches.
        """
        prefix: str = self._layout.checkpoint_prefix(workflow_id)
        logger.info(f"Looking for checkpoint logs with prefix: {prefix}")
        logs: List[StagedObject] = await collect_objects(self._staging, prefix)
        if not logs:
            raise NoCheckpointLogsError(
                f"No checkpoint logs found under '{prefix}'."
            )

        logs.sort(key=lambda obj: (obj.last_modified, obj.key))
        logger.info(f"Found {len(logs)} checkpoint log(s).")

        ids: Set[int] = set()
        for log_obj in logs:
            checkpoint: CheckpointLog = CheckpointLog.from_json(
                await self._staging.get_json(log_obj.key)
            )
            ids.update(checkpoint.synced_ids)
            logger.debug(
                f"  {log_obj.key}: {len(checkpoint.synced_ids)} ids "
                f"(timestamp: {checkpoint.timestamp})"
            )
        logger.info(f"Total unique IDs from all logs: {len(ids):,}")
        return ids, [obj.key for obj in logs]

    async def mark(self, workflow_id: Optional[str] = None) -> MarkResult:
        """
        Marks every checkpointed identifier as synced, batch by batch.

        A failing batch is logged and skipped; the remaining batches are
        still attempted.

        Args:
            workflow_id (str, optional): Workflow whose checkpoint logs are used.

        Returns:
            MarkResult: Identifier totals, rows actually changed and the
                number of failed batches.

        Raises:
            NoCheckpointLogsError: If no checkpoint log matches.
        """
        ids: Set[int]
        log_files: List[str]
        ids, log_files = await self.collect_ids(workflow_id)

        ordered: List[int] = sorted(ids)
        batch_size: int = self._config.mark_batch_size
        total_updated: int = 0
        rows_changed: int = 0
        failed_batches: int = 0

        logger.info(f"Updating {len(ordered):,} records in the source...")
        for start in range(0, len(ordered), batch_size):
            batch: List[int] = ordered[start : start + batch_size]
            try:
                rows_changed += await self._source.mark_synced(batch)
            except (
                asyncpg.PostgresError,
                asyncpg.InterfaceError,
                asyncio.TimeoutError,
                SourceError,
                OSError,
            ) as e:
                failed_batches += 1
                logger.error(
                    f"Error updating batch {start + 1}-{start + len(batch)}: {e}"
                )
                continue
            total_updated += len(batch)
            logger.info(
                f"Progress: {total_updated:,}/{len(ordered):,} records "
                f"({total_updated / len(ordered):.1%})"
            )

        logger.info(
            f"Mark as synced completed: {total_updated:,} records updated "
            f"({rows_changed:,} newly flagged)."
        )
        return MarkResult(
            success=True,
            total_ids=len(ordered),
            total_updated=total_updated,
            rows_changed=rows_changed,
            failed_batches=failed_batches,
            log_files=log_files,
        )
