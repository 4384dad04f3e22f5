# src/estuary_sync/reconciler.py
"""
Verification of the index against the most recent staging manifest.

The verdict combines a duplicate check on the identifier field with a
comparison of the document count against the manifest's expected count.
Nothing in here raises: any failure is folded into the returned result.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from estuary_sync.config import AppConfig
from estuary_sync.exceptions import IndexRequestError
from estuary_sync.models import Manifest, VerificationResult
from estuary_sync.search import OpenSearchIndex
from estuary_sync.staging import (
    StagedObject,
    StagingLayout,
    StagingStore,
    collect_objects,
)

logger: logging.Logger = logging.getLogger(__name__)


def evaluate_counts(expected: Optional[int], actual: int) -> VerificationResult:
    """
    Compares the expected record count with the index document count.

    Args:
        expected (int, optional): Records staged by the latest download, or
            None if no manifest could be read.
        actual (int): Documents currently in the index.

    Returns:
        VerificationResult: The verdict, with `missing` set when documents
            are absent.
    """
    if expected is None:
        return VerificationResult(success=True, total_records=actual)

    missing: int = expected - actual
    if missing == 0:
        logger.info("All records synced successfully!")
        return VerificationResult(
            success=True, total_records=actual, expected_records=expected, missing=0
        )
    if missing > 0:
        logger.warning(f"Missing {missing:,} records.")
        return VerificationResult(
            success=False,
            total_records=actual,
            expected_records=expected,
            missing=missing,
        )

    if expected == 0:
        logger.info("No new data to sync, existing records are from previous runs.")
    else:
        logger.info(
            "Data accumulated from multiple runs, this is normal. "
            f"Total in index: {actual:,}, new this run: {expected:,}."
        )
    return VerificationResult(
        success=True, total_records=actual, expected_records=expected, missing=0
    )


class Reconciler:
    """Checks document count and identifier uniqueness of the index."""

    def __init__(
        self,
        index: OpenSearchIndex,
        staging: StagingStore,
        app_config: AppConfig,
    ) -> None:
        self._index: OpenSearchIndex = index
        self._staging: StagingStore = staging
        self._config: AppConfig = app_config
        self._layout: StagingLayout = StagingLayout.from_app_config(app_config)

    async def verify(self) -> VerificationResult:
        """
        Runs the integrity checks.

        Returns:
            VerificationResult: Pass/fail plus the diagnostic counts. An
                unreachable index yields `success=False` with `error` set.
        """
        logger.info("Testing sync integrity...")
        try:
            try:
                await self._index.refresh()
            except IndexRequestError as e:
                logger.warning(f"Could not refresh index before counting: {e}")

            actual: int = await self._index.count()
            logger.info(f"Index records: {actual:,}")

            await self._log_sample()

            duplicates: List[Dict[str, Any]] = await self._index.duplicate_ids(
                self._config.duplicate_check_size
            )
            if duplicates:
                logger.warning(f"Found {len(duplicates)} duplicate IDs.")
                return VerificationResult(
                    success=False, total_records=actual, duplicates=len(duplicates)
                )
            logger.info("No duplicates found.")
        except Exception as e:
            logger.error(f"Test failed: {e}")
            return VerificationResult(success=False, error=str(e))

        manifest_key: Optional[str]
        manifest: Optional[Manifest]
        manifest_key, manifest = await self._latest_manifest()
        if manifest is None:
            return VerificationResult(success=True, total_records=actual)

        logger.info(
            f"Expected records: {manifest.total_records:,} (from {manifest_key})"
        )
        result: VerificationResult = evaluate_counts(manifest.total_records, actual)
        result.manifest_key = manifest_key
        return result

    async def _log_sample(self) -> None:
        sample: List[Dict[str, Any]] = await self._index.sample(
            self._config.sample_size
        )
        if not sample:
            return
        logger.info("Sample records:")
        for doc in sample:
            name: str = str(doc.get("ad_name") or "")[:50]
            logger.info(
                f"   ID: {doc.get('id')}, Ad ID: {doc.get('ad_id')}, Name: {name}"
            )

    async def _latest_manifest(self) -> Tuple[Optional[str], Optional[Manifest]]:
        """
        Loads the most recently modified manifest.

        Returns:
            Tuple[Optional[str], Optional[Manifest]]: The key and manifest, or
                (None, None) when none exists or it cannot be read.
        """
        try:
            manifests: List[StagedObject] = await collect_objects(
                self._staging, self._layout.manifest_prefix
            )
            if not manifests:
                logger.warning("Could not find a download summary in the log folder.")
                return None, None
            latest: StagedObject = max(
                manifests, key=lambda obj: (obj.last_modified, obj.key)
            )
            return latest.key, Manifest.from_json(
                await self._staging.get_json(latest.key)
            )
        except Exception as e:
            logger.warning(f"Could not read download summary from log folder: {e}")
            return None, None
