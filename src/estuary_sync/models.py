# src/estuary_sync/models.py
"""
Data shapes shared across the pipeline stages.

Records travel from the source table through staged JSONL blobs into the
index; manifests, checkpoint logs and run summaries are JSON documents kept
under the log namespace of the staging bucket. Stage results are plain
dataclasses whose `to_dict` output is embedded verbatim in the run summary.
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

_BASE36_DIGITS: str = "0123456789abcdefghijklmnopqrstuvwxyz"

RECORD_FIELDS: List[str] = [
    "id",
    "keyword",
    "ad_id",
    "ad_name",
    "ad_caption",
    "ad_risk_reason",
    "collected_at",
]


def utc_now() -> datetime:
    """Returns the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def isoformat_z(moment: datetime) -> str:
    """
    Formats a datetime as ISO-8601 with millisecond precision and a `Z` suffix.

    Args:
        moment (datetime): An aware datetime.

    Returns:
        str: A string such as `2026-10-19T08:15:02.123Z`.
    """
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def key_timestamp(moment: Optional[datetime] = None) -> str:
    """
    Renders a timestamp that is safe to embed in an object key.

    Args:
        moment (datetime, optional): The instant to render, defaults to now.

    Returns:
        str: The ISO-8601 instant with `:` and `.` replaced by `-`.
    """
    rendered: str = isoformat_z(moment or utc_now())
    return rendered.replace(":", "-").replace(".", "-")


def new_workflow_id(epoch_ms: Optional[int] = None) -> str:
    """
    Builds a short, time-ordered workflow identifier.

    Args:
        epoch_ms (int, optional): Milliseconds since the epoch, defaults to now.

    Returns:
        str: The base-36 rendering of the epoch milliseconds.
    """
    value: int = epoch_ms if epoch_ms is not None else int(time.time() * 1000)
    if value == 0:
        return "0"
    digits: List[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def _json_value(value: Any) -> Any:
    """Converts database values into JSON-friendly scalars."""
    if isinstance(value, datetime):
        return isoformat_z(value) if value.tzinfo else value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class Record:
    """
    A single source row, immutable once staged.

    Attributes:
        id (int): Unique, monotonically increasing source identifier.
        keyword (str, optional): Search keyword the ad was collected for.
        ad_id (str, optional): Identifier of the ad.
        ad_name (str, optional): Display name of the ad.
        ad_caption (str, optional): Caption text of the ad.
        ad_risk_reason (str, optional): Free-text risk assessment.
        collected_at (str, optional): ISO-8601 collection timestamp.
    """

    id: int
    keyword: Optional[str] = None
    ad_id: Optional[str] = None
    ad_name: Optional[str] = None
    ad_caption: Optional[str] = None
    ad_risk_reason: Optional[str] = None
    collected_at: Optional[str] = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "Record":
        """
        Builds a record from a database row or a parsed JSON object.

        Args:
            row (Mapping[str, Any]): A mapping holding at least an `id`.

        Returns:
            Record: The record, with unknown keys ignored.
        """
        values: Dict[str, Any] = {
            name: _json_value(row[name]) for name in RECORD_FIELDS if name in row
        }
        values["id"] = int(values["id"])
        for name in RECORD_FIELDS[1:]:
            if values.get(name) is not None:
                values[name] = str(values[name])
        return cls(**values)

    def to_document(self) -> Dict[str, Any]:
        """Returns the JSON document that is staged and indexed."""
        return asdict(self)


@dataclass(frozen=True)
class Manifest:
    """
    Summary of one staging run, used as the reconciliation baseline.

    Attributes:
        total_records (int): Number of records staged in the run.
        files (List[str]): Keys of the staged blobs, in write order.
        records_per_file (int): Page size used while staging.
        bucket (str): Staging bucket name.
        downloaded_at (str): ISO-8601 completion time of the run.
        version (str): Format version tag.
    """

    total_records: int
    files: List[str]
    records_per_file: int
    bucket: str
    downloaded_at: str
    version: str

    def to_json(self) -> Dict[str, Any]:
        return {
            "totalRecords": self.total_records,
            "downloadedAt": self.downloaded_at,
            "s3Bucket": self.bucket,
            "s3Files": list(self.files),
            "fileCount": len(self.files),
            "recordsPerFile": self.records_per_file,
            "version": self.version,
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Manifest":
        return cls(
            total_records=int(payload["totalRecords"]),
            files=list(payload.get("s3Files") or []),
            records_per_file=int(payload.get("recordsPerFile") or 0),
            bucket=str(payload.get("s3Bucket") or ""),
            downloaded_at=str(payload.get("downloadedAt") or ""),
            version=str(payload.get("version") or ""),
        )


@dataclass(frozen=True)
class CheckpointLog:
    """
    The identifiers attempted during one sync attempt. Never rewritten.

    Attributes:
        timestamp (str): ISO-8601 time the log was written.
        workflow_id (str, optional): Workflow the attempt belonged to.
        synced_ids (List[int]): Identifiers folded into the checkpoint.
    """

    timestamp: str
    workflow_id: Optional[str]
    synced_ids: List[int]

    def to_json(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "workflowId": self.workflow_id,
            "totalIds": len(self.synced_ids),
            "syncedIds": list(self.synced_ids),
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "CheckpointLog":
        return cls(
            timestamp=str(payload.get("timestamp") or ""),
            workflow_id=payload.get("workflowId"),
            synced_ids=[int(i) for i in payload.get("syncedIds") or []],
        )


@dataclass
class StageResult:
    """Base class of all stage results; serialises to a summary-friendly dict."""

    success: bool

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class DownloadResult(StageResult):
    total_records: int = 0
    file_count: int = 0
    files: List[str] = field(default_factory=list)
    manifest_key: Optional[str] = None


@dataclass
class BlobSyncResult(StageResult):
    """Outcome of indexing one staged blob."""

    key: str = ""
    record_count: int = 0
    synced_records: int = 0
    attempted_ids: List[int] = field(default_factory=list)
    deleted: bool = False
    error: Optional[str] = None


@dataclass
class SyncResult(StageResult):
    synced_files: int = 0
    total_files: int = 0
    total_records: int = 0
    synced_ids_count: int = 0
    checkpoint_key: Optional[str] = None
    error: Optional[str] = None


@dataclass
class VerificationResult(StageResult):
    """
    Verdict of the reconciler.

    `missing` is set when fewer documents than expected were found,
    `duplicates` when identifiers occur more than once in the index, and
    `expected_records` stays None when no manifest could be read.
    """

    total_records: Optional[int] = None
    expected_records: Optional[int] = None
    missing: Optional[int] = None
    duplicates: Optional[int] = None
    manifest_key: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MarkResult(StageResult):
    total_ids: int = 0
    total_updated: int = 0
    rows_changed: int = 0
    failed_batches: int = 0
    log_files: List[str] = field(default_factory=list)


@dataclass
class CleanResult(StageResult):
    total_files: int = 0
    files_deleted: int = 0
    files_kept: int = 0
    failed_deletes: int = 0
