# src/estuary_sync/pipeline.py
"""
Core orchestration logic for the estuary-sync pipeline.

A run walks through DOWNLOAD → SYNC → TEST → MARK → CLEAN → LOG. A failing
TEST is answered with a bounded number of RESYNC → TEST cycles; a TEST that
still fails afterwards does not stop the run, which then continues with a
degraded-confidence flag. Any stage may end the run in FAILED. Every run,
successful or not, attempts to persist exactly one run summary.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from estuary_sync.config import AppConfig, Config
from estuary_sync.exceptions import NoCheckpointLogsError
from estuary_sync.indexer import BulkIndexer
from estuary_sync.janitor import Janitor
from estuary_sync.marker import CommitMarker
from estuary_sync.models import (
    CleanResult,
    DownloadResult,
    MarkResult,
    SyncResult,
    VerificationResult,
    isoformat_z,
    key_timestamp,
    new_workflow_id,
    utc_now,
)
from estuary_sync.reconciler import Reconciler
from estuary_sync.search import OpenSearchIndex
from estuary_sync.source import PostgresSource
from estuary_sync.staging import StagingLayout, StagingStore
from estuary_sync.writer import StagingWriter

logger: logging.Logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """States of the orchestration state machine."""

    DOWNLOAD = "download"
    SYNC = "sync"
    TEST = "test"
    RESYNC = "resync"
    MARK = "mark"
    CLEAN = "clean"
    LOG = "log"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RunOutcome:
    """
    The externally observable result of one orchestration run.

    Attributes:
        success (bool): Whether the run ended in DONE.
        stage (Stage): The terminal state, DONE or FAILED.
        failed_step (Stage, optional): The stage that failed the run.
        error (str, optional): Description of the failure.
        resync_attempts (int): RESYNC cycles used.
        degraded (bool): Whether the run finished with a failing verification.
        summary (Dict[str, Any]): The run summary document.
        summary_key (str, optional): Where the summary was persisted, if it was.
    """

    success: bool
    stage: Stage
    failed_step: Optional[Stage] = None
    error: Optional[str] = None
    resync_attempts: int = 0
    degraded: bool = False
    summary: Dict[str, Any] = field(default_factory=dict)
    summary_key: Optional[str] = None


@dataclass(frozen=True)
class Collaborators:
    """The three external systems a run talks to, opened once per run."""

    source: PostgresSource
    staging: StagingStore
    index: OpenSearchIndex


@asynccontextmanager
async def open_collaborators(config: Config) -> AsyncIterator[Collaborators]:
    """
    Opens the source, staging and index clients for the duration of a run.

    Args:
        config (Config): The application configuration.

    Yields:
        Collaborators: The opened clients.
    """
    async with (
        PostgresSource(config.source) as source,
        StagingStore(config.staging) as staging,
        OpenSearchIndex(config.search) as index,
    ):
        yield Collaborators(source=source, staging=staging, index=index)


class SyncOrchestrator:
    """Sequences the pipeline stages and owns the run's success contract."""

    def __init__(
        self,
        collaborators: Collaborators,
        app_config: AppConfig,
        workflow_id: Optional[str] = None,
    ) -> None:
        """
        Wires every stage to the shared collaborators.

        Args:
            collaborators (Collaborators): Opened source, staging and index clients.
            app_config (AppConfig): Pipeline settings.
            workflow_id (str, optional): Identifier tagging this run's
                checkpoint logs, generated when omitted.
        """
        self._config: AppConfig = app_config
        self._staging: StagingStore = collaborators.staging
        self._layout: StagingLayout = StagingLayout.from_app_config(app_config)
        self.workflow_id: str = workflow_id or new_workflow_id()
        self.stage: Stage = Stage.DOWNLOAD

        self.writer: StagingWriter = StagingWriter(
            collaborators.source, collaborators.staging, app_config
        )
        self.indexer: BulkIndexer = BulkIndexer(
            collaborators.index, collaborators.staging, app_config
        )
        self.reconciler: Reconciler = Reconciler(
            collaborators.index, collaborators.staging, app_config
        )
        self.marker: CommitMarker = CommitMarker(
            collaborators.source, collaborators.staging, app_config
        )
        self.janitor: Janitor = Janitor(collaborators.staging, app_config)

        self._summary: Dict[str, Any] = {}
        self._started_monotonic: float = 0.0

    def _enter(self, stage: Stage) -> None:
        logger.debug(f"Orchestrator: {self.stage.value} -> {stage.value}")
        self.stage = stage

    async def run(self) -> RunOutcome:
        """
        Executes the full pipeline once.

        Returns:
            RunOutcome: The terminal state and the run summary.
        """
        self._started_monotonic = time.monotonic()
        self._summary = {
            "workflowId": self.workflow_id,
            "startTime": isoformat_z(utc_now()),
        }
        logger.info(f"Starting complete sync orchestration [workflow: {self.workflow_id}]")
        logger.info("Plan: Download → Sync → Test → Mark → Clean → Log")

        # DOWNLOAD
        self._enter(Stage.DOWNLOAD)
        try:
            download: DownloadResult = await self.writer.download()
        except Exception as e:
            logger.exception("Download failed")
            return await self._fail(Stage.DOWNLOAD, str(e))
        self._summary["download"] = download.to_dict()
        if not download.success:
            return await self._fail(Stage.DOWNLOAD, "Download failed")

        # SYNC
        self._enter(Stage.SYNC)
        sync: SyncResult = await self._sync()
        self._summary["sync"] = sync.to_dict()
        if not sync.success:
            return await self._fail(Stage.SYNC, sync.error or "Sync failed")

        # TEST, with bounded RESYNC cycles
        self._enter(Stage.TEST)
        verification: VerificationResult = await self.reconciler.verify()
        self._summary["initialTest"] = verification.to_dict()
        resync_attempts: int = 0
        max_attempts: int = self._config.max_resync_attempts
        while not verification.success and resync_attempts < max_attempts:
            resync_attempts += 1
            self._enter(Stage.RESYNC)
            logger.warning(
                f"Test failed, re-syncing (attempt {resync_attempts}/{max_attempts})..."
            )
            resync: SyncResult = await self._sync()
            self._summary[f"resync{resync_attempts}"] = resync.to_dict()
            if not resync.success:
                logger.error(f"Re-sync attempt {resync_attempts} failed.")
                if resync_attempts >= max_attempts:
                    self._summary["resyncAttempts"] = resync_attempts
                    return await self._fail(
                        Stage.RESYNC, "Re-sync failed after max retries"
                    )
                continue
            self._enter(Stage.TEST)
            verification = await self.reconciler.verify()

        degraded: bool = not verification.success
        self._summary["test"] = verification.to_dict()
        self._summary["resyncAttempts"] = resync_attempts
        self._summary["degraded"] = degraded
        if degraded:
            if verification.missing:
                logger.critical(
                    f"{verification.missing:,} records are still missing from the "
                    f"index after {resync_attempts} re-sync attempt(s)."
                )
            logger.warning(
                "Test still failing after retries, continuing with the mark step."
            )

        # MARK
        self._enter(Stage.MARK)
        try:
            mark: MarkResult = await self.marker.mark(self.workflow_id)
        except NoCheckpointLogsError as e:
            if download.total_records != 0:
                logger.error(f"Mark as synced failed: {e}")
                return await self._fail(Stage.MARK, str(e))
            logger.info("No new records were staged, nothing to mark as synced.")
            mark = MarkResult(success=True)
        except Exception as e:
            logger.exception("Mark as synced failed")
            return await self._fail(Stage.MARK, str(e))
        self._summary["mark"] = mark.to_dict()

        # CLEAN
        self._enter(Stage.CLEAN)
        try:
            clean: CleanResult = await self.janitor.clean()
        except Exception as e:
            logger.exception("Clean failed")
            return await self._fail(Stage.CLEAN, str(e))
        self._summary["clean"] = clean.to_dict()

        # LOG
        self._enter(Stage.LOG)
        self._summary["success"] = True
        summary_key: Optional[str] = await self._persist_summary()
        self._enter(Stage.DONE)

        logger.info("Complete orchestration finished!")
        logger.info(f"   Downloaded: {download.total_records:,} records")
        logger.info(f"   Synced: {sync.total_records:,} records")
        logger.info(f"   Test: {'PASSED' if verification.success else 'FAILED'}")
        logger.info(f"   Marked: {mark.total_updated:,} records")
        logger.info(f"   Cleaned: {clean.files_deleted:,} files")
        logger.info(f"   Duration: {self._summary['durationMs'] / 1000:.0f} seconds")

        return RunOutcome(
            success=True,
            stage=Stage.DONE,
            resync_attempts=resync_attempts,
            degraded=degraded,
            summary=self._summary,
            summary_key=summary_key,
        )

    async def _sync(self) -> SyncResult:
        """Runs one sync attempt, turning unexpected errors into a failed result."""
        try:
            return await self.indexer.sync_all(self.workflow_id)
        except Exception as e:
            logger.exception("Sync failed")
            return SyncResult(success=False, error=str(e))

    async def _fail(self, step: Stage, error: str) -> RunOutcome:
        """
        Moves the run to FAILED and persists the partial summary.

        Args:
            step (Stage): The stage that failed.
            error (str): Description of the failure.

        Returns:
            RunOutcome: The failed outcome.
        """
        logger.error(f"Orchestration failed at step '{step.value}': {error}")
        self._summary.update({"success": False, "failedStep": step.value, "error": error})
        self._enter(Stage.FAILED)
        summary_key: Optional[str] = await self._persist_summary()
        return RunOutcome(
            success=False,
            stage=Stage.FAILED,
            failed_step=step,
            error=error,
            resync_attempts=int(self._summary.get("resyncAttempts", 0)),
            degraded=bool(self._summary.get("degraded", False)),
            summary=self._summary,
            summary_key=summary_key,
        )

    async def _persist_summary(self) -> Optional[str]:
        """
        Writes the run summary. Best effort: failures are only logged.

        Returns:
            str, optional: The summary key, or None if it could not be written.
        """
        self._summary["endTime"] = isoformat_z(utc_now())
        self._summary["durationMs"] = int(
            (time.monotonic() - self._started_monotonic) * 1000
        )
        key: str = self._layout.summary_key(key_timestamp())
        document: Dict[str, Any] = {
            "timestamp": isoformat_z(utc_now()),
            "summary": self._summary,
            "version": self._config.format_version,
            "mode": "orchestration",
        }
        try:
            await self._staging.put_json(key, document)
        except Exception as e:
            logger.error(f"Could not save run summary to '{key}': {e}")
            return None
        logger.info(f"Run summary saved: {key}")
        return key


class EstuarySyncPipeline:
    """Opens the collaborators and runs the orchestrator from start to finish."""

    def __init__(self, config: Config, workflow_id: Optional[str] = None) -> None:
        """
        Initializes the pipeline with the given configuration.

        Args:
            config (Config): The application configuration.
            workflow_id (str, optional): Workflow identifier to use for the run.
        """
        self._config: Config = config
        self._workflow_id: Optional[str] = workflow_id

    async def run(self) -> RunOutcome:
        """
        Executes the full synchronization pipeline.

        Returns:
            RunOutcome: The terminal state and the run summary.
        """
        async with open_collaborators(self._config) as collaborators:
            orchestrator: SyncOrchestrator = SyncOrchestrator(
                collaborators, self._config.app, self._workflow_id
            )
            return await orchestrator.run()
