"""
Feed Processor

Runs one data source's load: allocates the load number, reads each feed file, runs the
plan-level row tests, sends every surviving row through the row processor and flushes
staged, bad and warned rows to the stager in batches. Post-processing (outbound
exports) runs afterwards against the staged load.

A bad row never stops the load. Configuration errors, resolver bugs and staging
failures do, and propagate to the engine.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from migration.errors import FeedAccessError, RowRejection
from migration.parsers import build_parser
from migration.phase_log import DataMigrationPhase, PhaseLogEntry, PhaseLogger
from migration.plan import DataSourcePlan, FeedFilePlan
from migration.registry import ComponentRegistry
from migration.row_processor import RowProcessor
from migration.stager import FeedStager
from migration.staging import LITMUS_TEST_FAILURE, BadRowsTable, StagingTable, WarnRowsTable, staging_columns

logger = logging.getLogger(__name__)

LOG_SOURCE = 1


class LoadState(Enum):
    NotStarted = "NotStarted"
    Downloaded = "Downloaded"
    Transformed = "Transformed"
    Staged = "Staged"
    PostProcessed = "PostProcessed"
    Complete = "Complete"


@dataclass
class FeedFileResult:
    """Row counts for one feed file of a load."""

    file_name: str
    total_rows: int = 0
    staged_rows: int = 0
    rejected_rows: int = 0
    warned_rows: int = 0


@dataclass
class FeedFileState:
    file_name: str
    state: LoadState = LoadState.NotStarted
    result: Optional[FeedFileResult] = None
    history: List[LoadState] = field(default_factory=lambda: [LoadState.NotStarted])

    def advance(self, state: LoadState) -> None:
        self.state = state
        self.history.append(state)


class FeedProcessor:
    """
    Processes the feed files of one data source plan.

    Args:
        plan: Data source plan to load
        registry: Frozen, validated component registry for this load
        stager: Destination for staged and bad rows
        phase_logger: Shared phase logger
        row_processor: Defaults to a RowProcessor over ``registry``
        batch_size: Rows buffered before each flush to the stager
        post_processors: Run in order by ``post_process``
    """

    def __init__(
        self,
        plan: DataSourcePlan,
        registry: ComponentRegistry,
        stager: FeedStager,
        phase_logger: PhaseLogger,
        row_processor: Optional[RowProcessor] = None,
        batch_size: int = 1000,
        post_processors: Sequence = (),
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.plan = plan
        self.registry = registry
        self.stager = stager
        self.phase_logger = phase_logger
        self.row_processor = row_processor or RowProcessor(registry)
        self.batch_size = batch_size
        self.post_processors = list(post_processors)
        self.states: Dict[str, FeedFileState] = {
            f.file_name: FeedFileState(f.file_name) for f in plan.feed_files
        }
        self.results: List[FeedFileResult] = []
        self.load_number: Optional[int] = None

    def _log(self, phase: DataMigrationPhase, description: str, load_number: Optional[int] = None,
             number_of_records: Optional[int] = None) -> None:
        self.phase_logger.log(PhaseLogEntry(
            log_source=LOG_SOURCE,
            phase=phase,
            description=description,
            data_source_code=self.plan.code,
            load_number=load_number,
            number_of_records=number_of_records,
        ))

    def mark_downloaded(self) -> None:
        for state in self.states.values():
            state.advance(LoadState.Downloaded)

    def process(self, local_files: Dict[str, Path]) -> int:
        """
        Load every feed file of the plan.

        Args:
            local_files: Feed file name to local path, as produced by feed access

        Returns:
            The load number allocated for this load

        Raises:
            FeedAccessError: If a feed file has no local path or cannot be read
            StagingError: If a batch cannot be written
            ResolverError: If a resolver fails with an unexpected exception
        """
        load_number = self.stager.get_load_number(self.plan.code)
        self.load_number = load_number
        logger.info(f"Processing {self.plan.code} as load {load_number}")

        for feed_file in self.plan.feed_files:
            path = local_files.get(feed_file.file_name)
            if path is None:
                raise FeedAccessError(f"No local file for {feed_file.file_name} in {self.plan.code}")
            state = self.states[feed_file.file_name]
            if state.state == LoadState.NotStarted:
                state.advance(LoadState.Downloaded)

            result = self._process_file(load_number, feed_file, Path(path), state)
            self.results.append(result)

        return load_number

    def _process_file(self, load_number: int, feed_file: FeedFilePlan, path: Path,
                      state: FeedFileState) -> FeedFileResult:
        code = self.plan.code
        result = FeedFileResult(feed_file.file_name)
        staged = StagingTable(staging_columns(feed_file.destination_columns))
        bad_rows = BadRowsTable(code)
        warn_rows = WarnRowsTable(code)
        started = time.monotonic()

        self._log(DataMigrationPhase.ProcessingRows, f"Starting processing of file {path}", load_number)

        with build_parser(feed_file.parser) as parser:
            parser.open(path)
            for row_number, raw_row in parser.rows(feed_file.skip_lines):
                result.total_rows += 1
                rejection = self._check_row(load_number, feed_file, row_number, raw_row, warn_rows, result)
                if rejection is None:
                    rejection = self._process_row(load_number, feed_file, row_number, raw_row, staged)
                if rejection is not None:
                    foreign_id = self.row_processor.compute_foreign_id(
                        load_number, code, row_number, feed_file, raw_row
                    )
                    rejection = rejection.with_foreign_id(foreign_id)
                    logger.info(f"Rejected row - {rejection}")
                    bad_rows.add(rejection, raw_row)
                    result.rejected_rows += 1

                if len(staged) + len(bad_rows) + len(warn_rows) >= self.batch_size:
                    result.staged_rows += self._flush(feed_file, staged, bad_rows, warn_rows)

        state.advance(LoadState.Transformed)
        result.staged_rows += self._flush(feed_file, staged, bad_rows, warn_rows)
        state.advance(LoadState.Staged)
        state.result = result

        elapsed = time.monotonic() - started
        self._log(
            DataMigrationPhase.CompletedBulkCopy,
            f"DataSourceCode {code}, file {feed_file.file_name} took {elapsed:.2f} seconds to process "
            f"and copy to staging: {result.total_rows} rows, {result.staged_rows} staged, "
            f"{result.rejected_rows} rejected, {result.warned_rows} warned",
            load_number,
            number_of_records=result.staged_rows,
        )
        return result

    def _check_row(self, load_number: int, feed_file: FeedFilePlan, row_number: int, raw_row: List[str],
                   warn_rows: WarnRowsTable, result: FeedFileResult) -> Optional[RowRejection]:
        """Run the plan-level litmus tests, then the warning tests, against the raw row."""
        code = self.plan.code
        failures = self.row_processor.run_row_tests(
            load_number, code, feed_file.litmus_tests, raw_row, stop_at_first=True
        )
        if failures:
            return RowRejection(load_number, row_number, LITMUS_TEST_FAILURE, failures[0])

        warnings = self.row_processor.run_row_tests(load_number, code, feed_file.warning_tests, raw_row)
        if warnings:
            foreign_id = self.row_processor.compute_foreign_id(load_number, code, row_number, feed_file, raw_row)
            logger.info(f"Row {row_number} of {feed_file.file_name} warned: {'; '.join(warnings)}")
            warn_rows.add_warnings(load_number, row_number, warnings, foreign_id, raw_row)
            result.warned_rows += 1
        return None

    def _process_row(self, load_number: int, feed_file: FeedFilePlan, row_number: int,
                     raw_row: List[str], staged: StagingTable) -> Optional[RowRejection]:
        outcome = self.row_processor.transform_row(
            load_number, self.plan.code, row_number, feed_file, raw_row
        )
        if isinstance(outcome, RowRejection):
            return outcome
        return self.row_processor.add_row_to_table(
            feed_file, load_number, self.plan.code, outcome, staged, row_number=row_number
        )

    def _flush(self, feed_file: FeedFilePlan, staged: StagingTable, bad_rows: BadRowsTable,
               warn_rows: WarnRowsTable) -> int:
        if not len(staged) and not len(bad_rows) and not len(warn_rows):
            return 0
        count = len(staged)
        self.stager.bulk_load(
            staged, bad_rows, feed_file.staging_location, feed_file.bad_rows_location,
            warn_rows=warn_rows, warn_rows_location=feed_file.warn_rows_location,
        )
        logger.debug(
            f"Flushed {count} staged, {len(bad_rows)} bad and {len(warn_rows)} warn rows for {feed_file.file_name}"
        )
        staged.clear()
        bad_rows.clear()
        warn_rows.clear()
        return count

    def post_process(self, load_number: int) -> None:
        """
        Run the plan's post-processors against a staged load. No-op when the plan
        turns post-processing off.

        Raises:
            ExportError: If a post-processor cannot transfer its artifact
        """
        if not self.plan.post_process:
            logger.info(f"Post-processing disabled for {self.plan.code}")
            return

        self._log(
            DataMigrationPhase.PostProcessingStarted,
            f"Post-processing load {load_number} with {len(self.post_processors)} post-processors",
            load_number,
        )
        for post_processor in self.post_processors:
            post_processor.post_process(load_number, self.plan)

        for state in self.states.values():
            state.advance(LoadState.PostProcessed)

    def mark_complete(self) -> None:
        for state in self.states.values():
            state.advance(LoadState.Complete)
