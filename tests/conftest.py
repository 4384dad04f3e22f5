# tests/conftest.py
"""
Pytest configuration and fixtures shared by the estuary-sync test suites.

The unit tests never touch real services. Instead they receive in-memory
stand-ins for the three collaborators of a run:
- `FakeSource` mimics the source table and its synced flag.
- `FakeStagingStore` mimics the staging bucket, including listing order and
  modification times.
- `FakeIndex` mimics the destination index and its `_bulk` semantics,
  including per-document rejections and whole-request failures.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Set

import pytest
from botocore.exceptions import ClientError

from estuary_sync.config import AppConfig
from estuary_sync.exceptions import IndexRequestError, SourceError, StagingError
from estuary_sync.models import Record
from estuary_sync.pipeline import Collaborators
from estuary_sync.retry import RetryPolicy
from estuary_sync.staging import StagedObject


def make_record(record_id: int) -> Record:
    """
    Builds a deterministic record for the given identifier.

    Args:
        record_id (int): The record identifier.

    Returns:
        Record: A record with every field populated.
    """
    return Record(
        id=record_id,
        keyword=f"keyword-{record_id % 7}",
        ad_id=f"ad-{record_id}",
        ad_name=f"Ad number {record_id}",
        ad_caption=f"Caption for ad {record_id}",
        ad_risk_reason="none",
        collected_at="2026-01-01T00:00:00.000Z",
    )


class FakeSource:
    """An in-memory source table keyed by identifier."""

    def __init__(self, records: Sequence[Record] = ()) -> None:
        self.records: Dict[int, Record] = {record.id: record for record in records}
        self.synced: Dict[int, bool] = {record.id: False for record in records}
        self.fetch_calls: int = 0
        self.mark_calls: List[List[int]] = []
        self.fail_mark_calls: Set[int] = set()
        self.mark_errors: Dict[int, BaseException] = {}
        self.fail_fetch_after: Optional[int] = None

    def seed(self, records: Sequence[Record]) -> None:
        """Adds unsynced rows to the table."""
        for record in records:
            self.records[record.id] = record
            self.synced[record.id] = False

    async def fetch_unsynced(self, after_id: int, limit: int) -> List[Record]:
        self.fetch_calls += 1
        if self.fail_fetch_after is not None and self.fetch_calls > self.fail_fetch_after:
            raise SourceError("connection reset by peer")
        ids: List[int] = sorted(
            record_id
            for record_id, synced in self.synced.items()
            if not synced and record_id > after_id
        )
        return [self.records[record_id] for record_id in ids[:limit]]

    async def mark_synced(self, ids: Sequence[int]) -> int:
        call_index: int = len(self.mark_calls)
        self.mark_calls.append(list(ids))
        if call_index in self.mark_errors:
            raise self.mark_errors[call_index]
        if call_index in self.fail_mark_calls:
            raise SourceError("deadlock detected")
        changed: int = 0
        for record_id in ids:
            if record_id in self.synced and not self.synced[record_id]:
                self.synced[record_id] = True
                changed += 1
        return changed

    async def count_unsynced(self) -> int:
        return sum(1 for synced in self.synced.values() if not synced)


class FakeStagingStore:
    """An in-memory bucket whose objects get strictly increasing timestamps."""

    def __init__(self, bucket: str = "test-staging") -> None:
        self._bucket: str = bucket
        self.objects: Dict[str, bytes] = {}
        self.modified: Dict[str, datetime] = {}
        self.failing_deletes: Set[str] = set()
        self.failing_put_prefixes: Set[str] = set()
        self._clock: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)

    @property
    def bucket(self) -> str:
        return self._bucket

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def seed(self, key: str, body: bytes) -> None:
        """Places an object in the bucket without going through the API."""
        self.objects[key] = body
        self.modified[key] = self._tick()

    def seed_json(self, key: str, payload: Dict[str, Any]) -> None:
        self.seed(key, json.dumps(payload).encode("utf-8"))

    def read_json(self, key: str) -> Dict[str, Any]:
        return json.loads(self.objects[key])

    def keys_with_prefix(self, prefix: str) -> List[str]:
        return sorted(key for key in self.objects if key.startswith(prefix))

    async def put_bytes(
        self, key: str, body: bytes, content_type: str = "application/json"
    ) -> None:
        if any(key.startswith(prefix) for prefix in self.failing_put_prefixes):
            raise ClientError(
                {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}},
                "PutObject",
            )
        self.seed(key, body)

    async def put_json(self, key: str, payload: Dict[str, Any]) -> None:
        await self.put_bytes(key, json.dumps(payload, indent=2).encode("utf-8"))

    async def get_bytes(self, key: str) -> bytes:
        if key not in self.objects:
            raise ClientError(
                {"Error": {"Code": "NoSuchKey", "Message": "Not Found"}}, "GetObject"
            )
        return self.objects[key]

    async def get_json(self, key: str) -> Dict[str, Any]:
        try:
            return json.loads(await self.get_bytes(key))
        except json.JSONDecodeError as e:
            raise StagingError(f"Object '{key}' is not valid JSON: {e}") from e

    async def delete(self, key: str) -> None:
        if key in self.failing_deletes:
            raise ClientError(
                {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}},
                "DeleteObject",
            )
        self.objects.pop(key, None)
        self.modified.pop(key, None)

    async def list_objects(self, prefix: str = "") -> AsyncIterator[StagedObject]:
        for key in self.keys_with_prefix(prefix):
            yield StagedObject(key=key, last_modified=self.modified[key])


class FakeIndex:
    """
    An in-memory index honouring the `_bulk` contract.

    Attributes:
        docs (Dict[str, Dict[str, Any]]): Stored documents by `_id`.
        reject_ids (Set[int]): Identifiers rejected with a 400 item status.
        reject_once (bool): Whether rejected identifiers succeed on resend.
        bulk_failures (List[Exception]): Errors raised by the next bulk calls,
            consumed one per call.
        count_offset (int): Added to the real document count.
        duplicates (List[Dict[str, Any]]): Buckets returned by `duplicate_ids`.
    """

    def __init__(self, name: str = "test-index") -> None:
        self._name: str = name
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.reject_ids: Set[int] = set()
        self.reject_once: bool = False
        self.bulk_failures: List[Exception] = []
        self.bulk_calls: int = 0
        self.ensure_calls: int = 0
        self.refresh_calls: int = 0
        self.count_offset: int = 0
        self.count_error: Optional[Exception] = None
        self.duplicates: List[Dict[str, Any]] = []

    @property
    def name(self) -> str:
        return self._name

    async def ensure_index(self) -> bool:
        self.ensure_calls += 1
        return True

    async def bulk(self, payload: bytes) -> Dict[str, Any]:
        self.bulk_calls += 1
        if self.bulk_failures:
            raise self.bulk_failures.pop(0)

        lines: List[str] = payload.decode("utf-8").strip().split("\n")
        items: List[Dict[str, Any]] = []
        errors: bool = False
        for action_line, doc_line in zip(lines[::2], lines[1::2]):
            action: Dict[str, Any] = json.loads(action_line)["index"]
            doc: Dict[str, Any] = json.loads(doc_line)
            if doc["id"] in self.reject_ids:
                errors = True
                items.append({"index": {"_id": action["_id"], "status": 400}})
                if self.reject_once:
                    self.reject_ids.discard(doc["id"])
                continue
            self.docs[action["_id"]] = doc
            items.append({"index": {"_id": action["_id"], "status": 201}})
        return {"took": 1, "errors": errors, "items": items}

    async def refresh(self) -> None:
        self.refresh_calls += 1

    async def count(self) -> int:
        if self.count_error is not None:
            raise self.count_error
        return len(self.docs) + self.count_offset

    async def sample(self, size: int) -> List[Dict[str, Any]]:
        return [self.docs[key] for key in sorted(self.docs, key=int)[:size]]

    async def duplicate_ids(self, size: int) -> List[Dict[str, Any]]:
        return self.duplicates[:size]


# --- Fixtures ---
@pytest.fixture(scope="function")
def record_factory() -> Callable[[int, int], List[Record]]:
    """
    Provide a factory producing consecutive records.

    Returns:
        Callable[[int, int], List[Record]]: Given a first id and a count,
            returns the records `first .. first + count - 1`.
    """

    def _creator(first: int, count: int) -> List[Record]:
        return [make_record(record_id) for record_id in range(first, first + count)]

    return _creator


@pytest.fixture(scope="function")
def app_config() -> AppConfig:
    """
    Provide pipeline settings with small pages and no retry backoff.

    Returns:
        AppConfig: Settings suitable for fast unit tests.
    """
    return AppConfig(
        records_per_file=100,
        bulk_retry=RetryPolicy(max_attempts=2, backoff_s=0.0),
    )


@pytest.fixture(scope="function")
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture(scope="function")
def fake_staging() -> FakeStagingStore:
    return FakeStagingStore()


@pytest.fixture(scope="function")
def fake_index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture(scope="function")
def collaborators(
    fake_source: FakeSource, fake_staging: FakeStagingStore, fake_index: FakeIndex
) -> Collaborators:
    """
    Bundle the three fakes the way a real run receives its clients.

    Args:
        fake_source (FakeSource): The fake source table.
        fake_staging (FakeStagingStore): The fake staging bucket.
        fake_index (FakeIndex): The fake destination index.

    Returns:
        Collaborators: The bundled fakes.
    """
    return Collaborators(source=fake_source, staging=fake_staging, index=fake_index)  # type: ignore[arg-type]


@pytest.fixture(scope="function")
def index_error() -> Callable[[str], IndexRequestError]:
    """Provide a factory for whole-request bulk failures."""

    def _creator(message: str = "HTTP 503") -> IndexRequestError:
        return IndexRequestError(message, status_code=503)

    return _creator
