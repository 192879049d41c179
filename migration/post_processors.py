"""
Post-Processors

Run after a load is staged. The outbound feeds export a load's bad rows and phase log
as tab-separated files and upload them to
``<files_location>/outbound/<UTC timestamp>/<load number>/<file name>``.

Every export works in its own temporary directory, which is removed whether or not the
upload succeeds. A failed upload is recorded in the phase log and raised as ExportError.
"""

import logging
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

import pandas as pd
from psycopg2 import sql

from db.connection import DatabaseConnection
from migration.errors import ExportError, PlanConfigurationError
from migration.phase_log import DataMigrationPhase, PhaseLogEntry, PhaseLogger
from migration.plan import ComponentDescriptor, DataSourcePlan
from migration.properties import PropertyBlock
from migration.s3 import combine_uri, create_s3_client, upload_file

logger = logging.getLogger(__name__)

LOG_SOURCE = 3
OUTBOUND_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

BAD_ROWS_HEADER = ["LoadNumber", "DataSourceCode", "RowNumber", "DestinationColumn", "Reason", "ForeignId", "RowData"]
PHASE_LOG_HEADER = ["LogSource", "DataSourceCode", "LoadNumber", "Phase", "NumberOfRecords", "Description",
                    "RecordDate"]


class PostProcessor(ABC):
    """A step run against an already-staged load."""

    def __init__(self, properties: Optional[PropertyBlock], phase_logger: PhaseLogger):
        self.properties = properties if properties is not None else PropertyBlock(owner=type(self).__name__)
        self.phase_logger = phase_logger

    @abstractmethod
    def post_process(self, load_number: int, plan: DataSourcePlan) -> None:
        """Run against load ``load_number`` of ``plan``."""


class SqlBadRowsReader:
    """Reads one load's bad rows back from the bad-rows table."""

    def __init__(self, table_name: str = "bad_rows"):
        self.table_name = table_name

    def __call__(self, load_number: int) -> pd.DataFrame:
        query = sql.SQL("SELECT * FROM {table} WHERE {load} = %s ORDER BY {row}").format(
            table=sql.Identifier(*self.table_name.split(".")),
            load=sql.Identifier("LoadNum"),
            row=sql.Identifier("RowNumber"),
        )
        rows = DatabaseConnection.execute_query(query, (load_number,))
        return pd.DataFrame(rows)


class OutboundFeed(PostProcessor):
    """
    Writes one tab-separated file for a load and uploads it.

    Subclasses provide the file name, the rows and the phases to record.
    """

    file_name: str = ""
    header: List[str] = []
    written_phase: DataMigrationPhase
    uploaded_phase: DataMigrationPhase

    def __init__(self, properties: Optional[PropertyBlock], phase_logger: PhaseLogger, s3_client: Any = None,
                 settings: Any = None):
        super().__init__(properties, phase_logger)
        self._s3_client = s3_client
        self.settings = settings

    @property
    def s3_client(self) -> Any:
        if self._s3_client is None:
            self._s3_client = create_s3_client(self.settings)
        return self._s3_client

    @abstractmethod
    def build_frame(self, load_number: int, plan: DataSourcePlan) -> pd.DataFrame:
        """Rows to export, with ``header`` as columns."""

    def _log(self, plan: DataSourcePlan, load_number: int, phase: DataMigrationPhase, description: str,
             number_of_records: Optional[int] = None) -> None:
        self.phase_logger.log(PhaseLogEntry(
            log_source=LOG_SOURCE,
            phase=phase,
            description=description,
            data_source_code=plan.code,
            load_number=load_number,
            number_of_records=number_of_records,
        ))

    def post_process(self, load_number: int, plan: DataSourcePlan) -> None:
        utc_now = datetime.now(timezone.utc)
        working_dir = Path(tempfile.mkdtemp(prefix=f"outbound-{plan.code}-"))
        try:
            local_file, record_count = self.write_file(load_number, plan, working_dir)
            self._log(plan, load_number, self.written_phase,
                      f"{self.file_name} written with {record_count} records", record_count)

            uri = combine_uri(
                plan.files_location,
                "outbound",
                utc_now.strftime(OUTBOUND_TIMESTAMP_FORMAT),
                str(load_number),
                self.file_name,
            )
            try:
                upload_file(self.s3_client, local_file, uri)
            except ExportError as e:
                logger.error(f"Export of {self.file_name} for load {load_number} failed: {e}")
                self._log(plan, load_number, DataMigrationPhase.ExportFailed,
                          f"Export of {self.file_name} to {uri} failed: {e}")
                raise
            self._log(plan, load_number, self.uploaded_phase, f"{self.file_name} uploaded to {uri}")
        finally:
            shutil.rmtree(working_dir, ignore_errors=True)

    def write_file(self, load_number: int, plan: DataSourcePlan, working_dir: Path) -> Tuple[Path, int]:
        """
        Write the export file into ``working_dir``.

        Returns:
            Tuple of (file path, number of records written)
        """
        started = time.monotonic()
        df = self.build_frame(load_number, plan).reindex(columns=self.header)
        path = working_dir / self.file_name
        df.to_csv(path, sep="\t", index=False, na_rep="", encoding="utf-8", lineterminator="\n")
        count = len(df)
        logger.debug(f"Wrote {self.file_name} ({count} rows) in {time.monotonic() - started:.2f} seconds")
        return path, count


class BadRowsOutboundFeed(OutboundFeed):
    """
    Exports a load's bad rows as BadRows.txt.

    Properties:
        tableName: bad-rows table to read from (default bad_rows)
    """

    file_name = "BadRows.txt"
    header = BAD_ROWS_HEADER
    written_phase = DataMigrationPhase.OutboundBadRowsFileWritten
    uploaded_phase = DataMigrationPhase.OutboundBadRowsFileUploaded

    def __init__(self, properties: Optional[PropertyBlock], phase_logger: PhaseLogger, s3_client: Any = None,
                 settings: Any = None, bad_rows_reader=None):
        super().__init__(properties, phase_logger, s3_client, settings)
        self.bad_rows_reader = bad_rows_reader or SqlBadRowsReader(self.properties.get("tableName", "bad_rows"))

    def build_frame(self, load_number: int, plan: DataSourcePlan) -> pd.DataFrame:
        df = self.bad_rows_reader(load_number)
        if df.empty:
            return pd.DataFrame(columns=self.header)
        df = df.rename(columns={"LoadNum": "LoadNumber", "DestColumn": "DestinationColumn"}).reindex(columns=self.header)
        df["LoadNumber"] = load_number
        # rows rejected after staging carry no raw data
        df["RowData"] = df["RowData"].where(pd.notna(df["RowData"]), "null")
        return df


class PhaseLogOutboundFeed(OutboundFeed):
    """Exports a load's phase log history as PhaseLog.txt."""

    file_name = "PhaseLog.txt"
    header = PHASE_LOG_HEADER
    written_phase = DataMigrationPhase.OutboundPhaseLogFileWritten
    uploaded_phase = DataMigrationPhase.OutboundPhaseLogFileUploaded

    def build_frame(self, load_number: int, plan: DataSourcePlan) -> pd.DataFrame:
        entries = self.phase_logger.get_load_entries(load_number)
        return pd.DataFrame(
            [
                [e.log_source, e.data_source_code, e.load_number, int(e.phase), e.number_of_records,
                 e.description, e.recorded_at.isoformat()]
                for e in entries
            ],
            columns=self.header,
            dtype=object,
        )


POST_PROCESSOR_KINDS = {
    "badRowsOutbound": BadRowsOutboundFeed,
    "phaseLogOutbound": PhaseLogOutboundFeed,
}


def build_post_processors(
    descriptors: Iterable[ComponentDescriptor],
    phase_logger: PhaseLogger,
    s3_client: Any = None,
    settings: Any = None,
) -> List[PostProcessor]:
    """
    Instantiate a data source's post-processors in declared order.

    Raises:
        PlanConfigurationError: If a descriptor names an unknown kind
    """
    post_processors = []
    for descriptor in descriptors:
        cls = POST_PROCESSOR_KINDS.get(descriptor.kind)
        if cls is None:
            raise PlanConfigurationError(
                f"Unknown post-processor kind '{descriptor.kind}' for {descriptor.name}; "
                f"expected one of {sorted(POST_PROCESSOR_KINDS)}"
            )
        post_processors.append(cls(descriptor.properties, phase_logger, s3_client=s3_client, settings=settings))
    return post_processors
