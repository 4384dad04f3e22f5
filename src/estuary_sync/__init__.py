# src/estuary_sync/__init__.py
"""
estuary-sync: A staged and verifiable Postgres to OpenSearch synchronizer.

This package copies rows that are not yet flagged as synced from a Postgres
table into an S3-compatible staging bucket, bulk indexes them into
OpenSearch, verifies the index against the staging manifest and finally
flags the indexed rows as synced at the source.

The primary entry point for programmatic use is the `EstuarySyncPipeline` class.
"""

from typing import List

from estuary_sync.pipeline import EstuarySyncPipeline, RunOutcome, Stage

__all__: List[str] = ["EstuarySyncPipeline", "RunOutcome", "Stage"]
