"""
Phase Logging

Progress history for each load. Every entry goes to an in-process list first and is
then written to a durable sink on a best-effort basis: a sink failure is reported to
the logging channel and never fails the load.

A load's history is read back from the sink when possible, since other components may
have written entries for the same load, and from the in-process list otherwise.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import List, Optional

from psycopg2 import sql

from db.connection import DatabaseConnection
from migration.errors import PlanConfigurationError
from migration.plan import MAX_DATA_SOURCE_CODE_LENGTH, ComponentDescriptor

logger = logging.getLogger(__name__)

NO_LOAD_NUMBER = -1
UNKNOWN_PHASE = -1


class DataMigrationPhase(IntEnum):
    AcquiringResources = 1
    ManagingExternalFeeds = 10
    ProcessingRows = 20
    CompletedBulkCopy = 30
    PostProcessingStarted = 1000
    OutboundBadRowsFileWritten = 30010
    OutboundPhaseLogFileWritten = 30020
    OutboundBadRowsFileUploaded = 30200
    OutboundPhaseLogFileUploaded = 30300
    ExportFailed = 39000
    LoadHalted = 99000


@dataclass(frozen=True)
class PhaseLogEntry:
    """
    One step of a load's history. Never modified after creation.

    A None load_number means the step happened before a load number existed; such
    entries are kept for diagnostics but never returned as part of a load's history.
    """

    log_source: int
    phase: int
    description: str
    data_source_code: Optional[str] = None
    load_number: Optional[int] = None
    number_of_records: Optional[int] = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.data_source_code is not None and len(self.data_source_code) > MAX_DATA_SOURCE_CODE_LENGTH:
            raise ValueError(
                f"data_source_code '{self.data_source_code}' exceeds {MAX_DATA_SOURCE_CODE_LENGTH} characters"
            )

    @property
    def sort_key(self):
        return (self.log_source, self.phase)


class PhaseLogSink(ABC):
    """Durable store for phase log entries."""

    @abstractmethod
    def write(self, entry: PhaseLogEntry) -> None:
        """Persist one entry."""

    @abstractmethod
    def fetch(self, load_number: int) -> List[PhaseLogEntry]:
        """All stored entries for a load, ordered by recording time."""


class SqlPhaseLogSink(PhaseLogSink):
    """
    Phase log table in PostgreSQL.

    Columns: LogSource, DataSourceCode, LoadNumber, Phase, NumberOfRecords,
    Description, RecordDate.
    """

    COLUMNS = ["LogSource", "DataSourceCode", "LoadNumber", "Phase", "NumberOfRecords", "Description", "RecordDate"]

    def __init__(self, table_name: str):
        self.table_name = table_name
        self._table = sql.Identifier(*table_name.split("."))

    def write(self, entry: PhaseLogEntry) -> None:
        query = sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values})").format(
            table=self._table,
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in self.COLUMNS),
            values=sql.SQL(", ").join(sql.Placeholder() for _ in self.COLUMNS),
        )
        DatabaseConnection.execute_update(query, (
            entry.log_source,
            entry.data_source_code,
            entry.load_number,
            entry.phase,
            entry.number_of_records,
            entry.description,
            entry.recorded_at,
        ))

    def fetch(self, load_number: int) -> List[PhaseLogEntry]:
        query = sql.SQL("SELECT {columns} FROM {table} WHERE {load} = %s ORDER BY {recorded}").format(
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in self.COLUMNS),
            table=self._table,
            load=sql.Identifier("LoadNumber"),
            recorded=sql.Identifier("RecordDate"),
        )
        rows = DatabaseConnection.execute_query(query, (load_number,))
        return [
            PhaseLogEntry(
                log_source=row["LogSource"],
                phase=row["Phase"] if row["Phase"] is not None else UNKNOWN_PHASE,
                description=row["Description"] or "",
                data_source_code=row["DataSourceCode"],
                load_number=load_number,
                number_of_records=row["NumberOfRecords"],
                recorded_at=row["RecordDate"],
            )
            for row in rows
        ]

    def __repr__(self) -> str:
        return f"SqlPhaseLogSink({self.table_name!r})"


class PhaseLogger:
    """
    Thread-safe phase logger shared by every data source in a run.
    """

    def __init__(self, sink: Optional[PhaseLogSink] = None):
        self.sink = sink
        self._entries: List[PhaseLogEntry] = []
        self._lock = threading.Lock()

    def log(self, entry: PhaseLogEntry) -> None:
        """Record an entry. Never raises because of the sink."""
        with self._lock:
            self._entries.append(entry)

        logger.debug(entry.description)

        if self.sink is None:
            return
        try:
            self.sink.write(entry)
        except Exception as e:
            logger.error(f"Failed to write phase log entry to {self.sink!r}: {e}")

    def get_load_entries(self, load_number: int) -> List[PhaseLogEntry]:
        """
        History of one load, ordered by (log_source, phase).

        Entries fetched from the sink replace the cached entries of this load only.
        When the sink cannot be read, the cached entries are returned instead.
        """
        if self.sink is not None and load_number != NO_LOAD_NUMBER:
            try:
                fetched = self.sink.fetch(load_number)
            except Exception as e:
                logger.error(f"Failed to read phase log for load {load_number} from {self.sink!r}: {e}")
            else:
                with self._lock:
                    others = [entry for entry in self._entries if entry.load_number != load_number]
                    self._entries = others + list(fetched)

        with self._lock:
            history = [
                entry for entry in self._entries
                if entry.load_number is not None and entry.load_number == load_number
            ]
        return sorted(history, key=lambda e: e.sort_key)

    def entries(self) -> List[PhaseLogEntry]:
        """Snapshot of every cached entry, including those without a load number."""
        with self._lock:
            return list(self._entries)


PHASE_LOGGER_KINDS = ("sql", "memory")


def build_phase_logger(descriptor: Optional[ComponentDescriptor]) -> PhaseLogger:
    """
    Build the phase logger a data source plan declares.

    Raises:
        PlanConfigurationError: If the kind is unknown or tableName is missing for sql
    """
    if descriptor is None or descriptor.kind == "memory":
        return PhaseLogger()
    if descriptor.kind == "sql":
        return PhaseLogger(SqlPhaseLogSink(descriptor.properties.require("tableName")))
    raise PlanConfigurationError(
        f"Unknown phase logger kind '{descriptor.kind}' for {descriptor.name}; "
        f"expected one of {list(PHASE_LOGGER_KINDS)}"
    )
