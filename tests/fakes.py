"""In-memory stand-ins for the database, S3 and post-processing seams."""

from pathlib import Path
from typing import Dict, List, Optional

from migration.phase_log import PhaseLogEntry, PhaseLogSink
from migration.plan import DataSourcePlan
from migration.stager import FeedStager
from migration.staging import BadRowsTable, StagingTable, WarnRowsTable


class FakeStager(FeedStager):
    """Records every batch instead of writing to PostgreSQL."""

    def __init__(self, load_number: int = 42):
        self.load_number = load_number
        self.issued: List[int] = []
        self.batches: List[Dict[str, object]] = []

    def get_load_number(self, data_source_code: str) -> int:
        self.issued.append(self.load_number)
        return self.load_number

    def bulk_load(self, staged: StagingTable, bad_rows: BadRowsTable, location: str,
                  bad_rows_location: str, warn_rows: Optional[WarnRowsTable] = None,
                  warn_rows_location: str = "") -> None:
        self.batches.append({
            "staged": staged.records,
            "bad_rows": bad_rows.records,
            "warn_rows": warn_rows.records if warn_rows is not None else [],
            "location": location,
            "bad_rows_location": bad_rows_location,
            "warn_rows_location": warn_rows_location,
        })

    @property
    def staged_records(self) -> List[dict]:
        return [record for batch in self.batches for record in batch["staged"]]

    @property
    def bad_records(self) -> List[dict]:
        return [record for batch in self.batches for record in batch["bad_rows"]]

    @property
    def warn_records(self) -> List[dict]:
        return [record for batch in self.batches for record in batch["warn_rows"]]


class FakeSink(PhaseLogSink):
    def __init__(self, fail_writes: bool = False, fail_fetches: bool = False,
                 fetched: Optional[List[PhaseLogEntry]] = None):
        self.fail_writes = fail_writes
        self.fail_fetches = fail_fetches
        self.fetched = fetched
        self.written: List[PhaseLogEntry] = []
        self.fetch_calls: List[int] = []

    def write(self, entry: PhaseLogEntry) -> None:
        if self.fail_writes:
            raise ConnectionError("sink unavailable")
        self.written.append(entry)

    def fetch(self, load_number: int) -> List[PhaseLogEntry]:
        self.fetch_calls.append(load_number)
        if self.fail_fetches:
            raise ConnectionError("sink unavailable")
        if self.fetched is not None:
            return list(self.fetched)
        return [entry for entry in self.written if entry.load_number == load_number]


class FakeS3Client:
    """Captures uploads, including the file content at upload time."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.uploads: List[Dict[str, str]] = []

    def upload_file(self, filename: str, bucket: str, key: str) -> None:
        if self.error is not None:
            self.uploads.append({"filename": filename, "bucket": bucket, "key": key, "content": ""})
            raise self.error
        self.uploads.append({
            "filename": filename,
            "bucket": bucket,
            "key": key,
            "content": Path(filename).read_text(encoding="utf-8"),
        })


class RecordingPostProcessor:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[tuple] = []

    def post_process(self, load_number: int, plan: DataSourcePlan) -> None:
        self.calls.append((load_number, plan.code))
        if self.error is not None:
            raise self.error
