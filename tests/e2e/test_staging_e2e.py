# tests/e2e/test_staging_e2e.py
"""
End-to-end tests of the staging side of the pipeline.

These tests run the staging store, the writer, the indexer and the janitor
against a live, Docker-based MinIO service. The source table and the index
are the in-memory fakes shared with the unit tests.
"""

from typing import Any, Callable, Dict, List

import pytest

from estuary_sync.config import AppConfig, S3Config
from estuary_sync.indexer import BulkIndexer
from estuary_sync.janitor import Janitor
from estuary_sync.marker import CommitMarker
from estuary_sync.models import (
    CleanResult,
    DownloadResult,
    MarkResult,
    Record,
    SyncResult,
)
from estuary_sync.staging import StagedObject, StagingStore, collect_objects
from estuary_sync.writer import StagingWriter

pytestmark = pytest.mark.e2e


@pytest.mark.asyncio
async def test_store_put_list_get_delete(staging_config: S3Config) -> None:
    """
    Tests the basic object operations of the staging store.

    Arrange:
        - An empty staging bucket.
    Act:
        - Put JSON and raw objects, list them, read one back, delete one.
    Assert:
        - Listings respect the prefix and reflect the deletion.
        - JSON round-trips through the bucket.

    Args:
        staging_config (S3Config): Configuration of the isolated bucket.
    """
    async with StagingStore(staging_config) as store:
        await store.put_json("log/a.json", {"hello": "world"})
        await store.put_bytes("unsynced_0001.jsonl", b'{"id": 1}\n')

        everything: List[StagedObject] = await collect_objects(store)
        logs: List[StagedObject] = await collect_objects(store, "log/")
        payload: Dict[str, Any] = await store.get_json("log/a.json")
        await store.delete("unsynced_0001.jsonl")
        remaining: List[StagedObject] = await collect_objects(store)

    assert [obj.key for obj in everything] == ["log/a.json", "unsynced_0001.jsonl"]
    assert [obj.key for obj in logs] == ["log/a.json"]
    assert payload == {"hello": "world"}
    assert [obj.key for obj in remaining] == ["log/a.json"]


@pytest.mark.asyncio
async def test_stage_index_mark_and_clean(
    staging_config: S3Config,
    fake_source: Any,
    fake_index: Any,
    app_config: AppConfig,
    record_factory: Callable[[int, int], List[Record]],
) -> None:
    """
    Tests the staging lifecycle of a run against a real bucket.

    Arrange:
        - 250 unsynced rows; the index rejects id 120 once.
    Act:
        - Download, sync, mark, then clean.
    Assert:
        - Three blobs are staged and only the fully indexed ones are deleted.
        - Every staged row is marked from the checkpoint log.
        - Cleaning removes the retained blob but keeps everything under `log/`.

    Args:
        staging_config (S3Config): Configuration of the isolated bucket.
        fake_source (Any): The fake source table.
        fake_index (Any): The fake destination index.
        app_config (AppConfig): Pipeline settings.
        record_factory (Callable[[int, int], List[Record]]): Record builder.
    """
    fake_source.seed(record_factory(1, 250))
    fake_index.reject_ids = {120}

    async with StagingStore(staging_config) as store:
        download: DownloadResult = await StagingWriter(
            fake_source, store, app_config
        ).download()
        sync: SyncResult = await BulkIndexer(fake_index, store, app_config).sync_all(
            "e2e"
        )
        blobs_after_sync: List[StagedObject] = await collect_objects(
            store, "unsynced_"
        )
        mark: MarkResult = await CommitMarker(fake_source, store, app_config).mark(
            "e2e"
        )
        clean: CleanResult = await Janitor(store, app_config).clean()
        remaining: List[StagedObject] = await collect_objects(store)

    assert download.file_count == 3
    assert sync.total_records == 249
    assert [obj.key for obj in blobs_after_sync] == ["unsynced_0002.jsonl"]
    assert mark.total_updated == 250
    assert clean.files_deleted == 1
    assert all(obj.key.startswith("log/") for obj in remaining)
