# src/estuary_sync/cli.py
"""Command-line interface for the estuary-sync tool."""

import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Optional

import click
from dotenv import load_dotenv
from rich.logging import RichHandler

from estuary_sync.config import AppConfig, Config, SourceConfig, source_config_from_env
from estuary_sync.exceptions import EstuarySyncError
from estuary_sync.models import StageResult

logger: logging.Logger = logging.getLogger(__name__)

_log_level_option = click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set the logging level.",
    show_default=True,
)

_workflow_option = click.option(
    "--workflow-id",
    default=None,
    help="Workflow identifier tagging the checkpoint logs.",
)


def setup_logging(level: str) -> None:
    """Configure rich-based logging for the application."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # Silence noisy loggers
    for logger_name in [
        "botocore",
        "aiobotocore",
        "httpx",
        "httpcore",
        "asyncpg",
        "urllib3",
    ]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def _execute(log_level: str, main: Callable[[], Awaitable[bool]]) -> None:
    """
    Runs an async entry point and maps its outcome to the process exit code.

    Args:
        log_level (str): The logging level to configure.
        main (Callable[[], Awaitable[bool]]): Entry point returning whether it
            succeeded.
    """
    load_dotenv()
    setup_logging(log_level)

    try:
        succeeded: bool = asyncio.run(main())
    except EstuarySyncError as e:
        logger.critical(f"A critical application error occurred: {e}")
        sys.exit(1)
    except Exception:
        logger.critical(
            "An unexpected error caused the application to fail:", exc_info=True
        )
        sys.exit(1)

    if not succeeded:
        logger.critical("❌ Run failed.")
        sys.exit(1)
    logger.info("✅ Run completed successfully.")


def _echo_result(result: StageResult) -> None:
    click.echo(json.dumps(result.to_dict(), indent=2))


async def _run_stage(
    stage: Callable[[Any], Awaitable[StageResult]], config: Config
) -> bool:
    """
    Opens the collaborators, runs a single stage and prints its result.

    Args:
        stage (Callable[[Any], Awaitable[StageResult]]): Receives the opened
            collaborators and returns the stage result.
        config (Config): The application configuration.

    Returns:
        bool: Whether the stage succeeded.
    """
    # Lazily import to keep the CLI fast
    from estuary_sync.pipeline import open_collaborators

    async with open_collaborators(config) as collaborators:
        result: StageResult = await stage(collaborators)
    _echo_result(result)
    return result.success


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
def cli() -> None:
    """
    A staged, verifiable Postgres to OpenSearch synchronizer.

    Unsynced rows are staged as JSONL files in an S3 bucket, bulk indexed
    into OpenSearch, verified against the staging manifest and only then
    flagged as synced at the source.

    Connection details must be set via environment variables.
    See the .env.example file for required variables.
    """


@cli.command()
@click.option(
    "--records-per-file",
    type=click.IntRange(min=1),
    default=100,
    help="Number of source rows written to each staged file.",
    show_default=True,
)
@click.option(
    "--max-resync-attempts",
    type=click.IntRange(min=0),
    default=3,
    help="Re-sync cycles allowed after a failed verification.",
    show_default=True,
)
@_workflow_option
@_log_level_option
def run(**kwargs: Any) -> None:
    """Run the full download, sync, test, mark and clean pipeline."""

    async def main() -> bool:
        # Lazily import to avoid circular dependency and keep CLI fast
        from estuary_sync.pipeline import EstuarySyncPipeline, RunOutcome

        app_config: AppConfig = AppConfig(
            records_per_file=kwargs["records_per_file"],
            max_resync_attempts=kwargs["max_resync_attempts"],
        )
        config: Config = Config(app=app_config)
        pipeline: EstuarySyncPipeline = EstuarySyncPipeline(
            config, kwargs["workflow_id"]
        )
        outcome: RunOutcome = await pipeline.run()
        if outcome.degraded:
            logger.warning("Run finished with a failing verification.")
        return outcome.success

    _execute(kwargs["log_level"], main)


@cli.command()
@_log_level_option
def pending(log_level: str) -> None:
    """Print the number of source rows not yet synced."""

    async def main() -> bool:
        from estuary_sync.source import PostgresSource

        source_config: SourceConfig = source_config_from_env()
        async with PostgresSource(source_config) as source:
            count: int = await source.count_unsynced()
        click.echo(json.dumps({"pending": count}))
        return True

    _execute(log_level, main)


@cli.command()
@click.option(
    "--records-per-file",
    type=click.IntRange(min=1),
    default=100,
    help="Number of source rows written to each staged file.",
    show_default=True,
)
@_log_level_option
def download(records_per_file: int, log_level: str) -> None:
    """Stage unsynced source rows into the bucket."""

    async def main() -> bool:
        from estuary_sync.writer import StagingWriter

        config: Config = Config(app=AppConfig(records_per_file=records_per_file))
        return await _run_stage(
            lambda c: StagingWriter(c.source, c.staging, config.app).download(),
            config,
        )

    _execute(log_level, main)


@cli.command()
@_workflow_option
@_log_level_option
def sync(workflow_id: Optional[str], log_level: str) -> None:
    """Index every staged file into OpenSearch."""

    async def main() -> bool:
        from estuary_sync.indexer import BulkIndexer

        config: Config = Config()
        return await _run_stage(
            lambda c: BulkIndexer(c.index, c.staging, config.app).sync_all(
                workflow_id
            ),
            config,
        )

    _execute(log_level, main)


@cli.command()
@_log_level_option
def verify(log_level: str) -> None:
    """Check index count and id uniqueness against the latest manifest."""

    async def main() -> bool:
        from estuary_sync.reconciler import Reconciler

        config: Config = Config()
        return await _run_stage(
            lambda c: Reconciler(c.index, c.staging, config.app).verify(), config
        )

    _execute(log_level, main)


@cli.command()
@_workflow_option
@_log_level_option
def mark(workflow_id: Optional[str], log_level: str) -> None:
    """Flag every checkpointed id as synced at the source."""

    async def main() -> bool:
        from estuary_sync.marker import CommitMarker

        config: Config = Config()
        return await _run_stage(
            lambda c: CommitMarker(c.source, c.staging, config.app).mark(workflow_id),
            config,
        )

    _execute(log_level, main)


@cli.command()
@_log_level_option
def clean(log_level: str) -> None:
    """Delete staged files, keeping summaries and logs."""

    async def main() -> bool:
        from estuary_sync.janitor import Janitor

        config: Config = Config()
        return await _run_stage(
            lambda c: Janitor(c.staging, config.app).clean(), config
        )

    _execute(log_level, main)


if __name__ == "__main__":
    cli()
