# src/estuary_sync/indexer.py
"""
Adaptive bulk indexing of staged blobs into the destination index.

For every blob the indexer first probes for the largest batch whose `_bulk`
body still fits under the payload ceiling, then sends the blob window by
window. Partial failures are accounted per document, and a window whose
request fails as a whole is retried once before it is given up on. A blob is
only removed from staging when every one of its records was confirmed.
"""

import logging
from typing import Any, Dict, List, Optional, Set

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
)

from estuary_sync.config import AppConfig
from estuary_sync.exceptions import IndexRequestError
from estuary_sync.models import (
    BlobSyncResult,
    CheckpointLog,
    Record,
    SyncResult,
    isoformat_z,
    key_timestamp,
    utc_now,
)
from estuary_sync.search import OpenSearchIndex, build_bulk_payload
from estuary_sync.staging import (
    StagedObject,
    StagingLayout,
    StagingStore,
    collect_objects,
    decode_records,
)

logger: logging.Logger = logging.getLogger(__name__)


def count_confirmed(response: Dict[str, Any], window_size: int) -> int:
    """
    Counts the documents a bulk response confirms as indexed.

    Args:
        response (Dict[str, Any]): The parsed `_bulk` response.
        window_size (int): Number of documents sent in the request.

    Returns:
        int: `window_size` if the response reports no errors, otherwise the
            number of items whose status lies in the 2xx range.
    """
    if not response.get("errors"):
        return window_size
    confirmed: int = 0
    for item in response.get("items") or []:
        action: Optional[Dict[str, Any]] = (
            item.get("index") or item.get("create") or item.get("update")
        )
        if action and 200 <= int(action.get("status", 0)) < 300:
            confirmed += 1
    return confirmed


class BulkIndexer:
    """Pushes staged blobs into the index and checkpoints what was attempted."""

    def __init__(
        self,
        index: OpenSearchIndex,
        staging: StagingStore,
        app_config: AppConfig,
    ) -> None:
        """
        Args:
            index (OpenSearchIndex): The destination index.
            staging (StagingStore): The staging bucket holding the blobs.
            app_config (AppConfig): Pipeline settings.
        """
        self._index: OpenSearchIndex = index
        self._staging: StagingStore = staging
        self._config: AppConfig = app_config
        self._layout: StagingLayout = StagingLayout.from_app_config(app_config)

    def probe_batch_size(self, records: List[Record]) -> int:
        """
        Finds the largest batch whose bulk body fits under the payload ceiling.

        Candidates grow one record at a time from the head of the blob, up to
        `initial_batch_size` or the blob length. Records of one blob are
        assumed to be of similar size, so the probe runs once per blob.

        Args:
            records (List[Record]): The records of one blob.

        Returns:
            int: The selected batch size, at least 1.
        """
        ceiling: int = min(self._config.initial_batch_size, len(records))
        batch_size: int = 1
        for candidate in range(1, ceiling + 1):
            payload_bytes: int = len(
                build_bulk_payload(self._index.name, records[:candidate])
            )
            if payload_bytes > self._config.max_payload_bytes:
                break
            batch_size = candidate
        return batch_size

    async def _index_window(self, window: List[Record]) -> int:
        """
        Sends one bulk window under the retry policy.

        Args:
            window (List[Record]): The records of the window.

        Returns:
            int: Number of documents confirmed, 0 if every attempt failed.
        """
        payload: bytes = build_bulk_payload(self._index.name, window)
        try:
            response: Dict[str, Any] = await self._config.bulk_retry.run(
                lambda: self._index.bulk(payload),
                retry_on=(IndexRequestError,),
                description=f"Bulk request of {len(window)} record(s)",
            )
        except IndexRequestError:
            return 0

        confirmed: int = count_confirmed(response, len(window))
        if confirmed < len(window):
            logger.warning(
                f"Batch partial: {confirmed} ok, {len(window) - confirmed} failed."
            )
        return confirmed

    async def index_records(self, records: List[Record]) -> int:
        """
        Indexes records sequentially in windows of the probed batch size.

        Args:
            records (List[Record]): The records of one blob.

        Returns:
            int: Number of records confirmed indexed.
        """
        if not records:
            return 0
        batch_size: int = self.probe_batch_size(records)
        logger.debug(f"Using batch size: {batch_size} records")

        confirmed: int = 0
        for start in range(0, len(records), batch_size):
            confirmed += await self._index_window(records[start : start + batch_size])
        return confirmed

    async def sync_blob(self, key: str) -> BlobSyncResult:
        """
        Indexes a single staged blob and deletes it once fully confirmed.

        Args:
            key (str): Key of the staged blob.

        Returns:
            BlobSyncResult: Confirmed counts and the identifiers attempted.
                A blob that cannot be read or parsed yields `success=False`
                and no identifiers.
        """
        logger.debug(f"Syncing file: {key}")
        try:
            records: List[Record] = decode_records(await self._staging.get_bytes(key))
            synced: int = await self.index_records(records)
            logger.info(f"Synced {synced}/{len(records)} records from '{key}'.")

            deleted: bool = False
            if synced >= len(records):
                await self._staging.delete(key)
                deleted = True
                logger.debug(f"Deleted file: {key}")
            else:
                logger.warning(
                    f"Keeping file '{key}' "
                    f"({len(records) - synced} records not synced)."
                )

            return BlobSyncResult(
                success=True,
                key=key,
                record_count=len(records),
                synced_records=synced,
                attempted_ids=[record.id for record in records],
                deleted=deleted,
            )
        except Exception as e:
            logger.exception(f"Failed to sync file '{key}'")
            return BlobSyncResult(success=False, key=key, error=str(e))

    async def sync_all(self, workflow_id: Optional[str] = None) -> SyncResult:
        """
        Indexes every staged blob and writes a checkpoint log for the attempt.

        Args:
            workflow_id (str, optional): Tag written into the checkpoint log key.

        Returns:
            SyncResult: File and record totals and the checkpoint log key.
        """
        logger.info("Starting sync from staging to the search index...")
        try:
            await self._index.ensure_index()

            blobs: List[StagedObject] = await collect_objects(
                self._staging, self._layout.staging_prefix
            )
            if not blobs:
                logger.info("No files to sync.")
                return SyncResult(success=True)
            blobs.sort(key=lambda obj: obj.key)
            logger.info(f"Found {len(blobs)} file(s) to sync.")

            total_synced: int = 0
            success_count: int = 0
            attempted_ids: Set[int] = set()

            progress: Progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeRemainingColumn(),
                transient=True,
            )
            with progress:
                task_id: TaskID = progress.add_task("Indexing...", total=len(blobs))
                for blob in blobs:
                    result: BlobSyncResult = await self.sync_blob(blob.key)
                    if result.success:
                        total_synced += result.synced_records
                        success_count += 1
                        attempted_ids.update(result.attempted_ids)
                    progress.update(task_id, advance=1)

            checkpoint_key: Optional[str] = None
            if attempted_ids:
                checkpoint_key = await self._write_checkpoint(
                    workflow_id, attempted_ids
                )

            logger.info(
                f"Sync completed: {success_count}/{len(blobs)} file(s), "
                f"{total_synced:,} record(s) indexed."
            )
            return SyncResult(
                success=True,
                synced_files=success_count,
                total_files=len(blobs),
                total_records=total_synced,
                synced_ids_count=len(attempted_ids),
                checkpoint_key=checkpoint_key,
            )
        except Exception as e:
            logger.exception("Sync failed")
            return SyncResult(success=False, error=str(e))

    async def _write_checkpoint(
        self, workflow_id: Optional[str], attempted_ids: Set[int]
    ) -> str:
        """
        Persists the attempted identifiers as a new, never rewritten log.

        Args:
            workflow_id (str, optional): The workflow the attempt belongs to.
            attempted_ids (Set[int]): Identifiers to record.

        Returns:
            str: The key of the checkpoint log.
        """
        checkpoint: CheckpointLog = CheckpointLog(
            timestamp=isoformat_z(utc_now()),
            workflow_id=workflow_id,
            synced_ids=sorted(attempted_ids),
        )
        key: str = self._layout.checkpoint_key(workflow_id, key_timestamp())
        await self._staging.put_json(key, checkpoint.to_json())
        logger.info(
            f"Checkpoint log with {len(attempted_ids):,} id(s) saved to '{key}'."
        )
        return key
