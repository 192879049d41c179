"""
Migration Engine

Coordinates a migration run across the plan's data sources:
- Build and validate each load's components (fatal for that load on error)
- Fetch feed files unless downloading is skipped
- Transform and stage every feed file
- Run post-processors (outbound exports)
- Publish monitoring data for operations
"""

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from config.settings import Settings
from db.connection import DatabaseConnection
from migration.errors import PlanConfigurationError
from migration.feed_access import FeedAccessor, LocalFeedAccessor, resolve_local_files
from migration.feed_processor import FeedProcessor
from migration.monitoring import FileSystemMonitoringPublisher
from migration.phase_log import (
    NO_LOAD_NUMBER,
    DataMigrationPhase,
    PhaseLogEntry,
    PhaseLogger,
    SqlPhaseLogSink,
    build_phase_logger,
)
from migration.plan import DataSourcePlan, MigrationPlan
from migration.plan_loader import load_plan
from migration.post_processors import build_post_processors
from migration.registry import ComponentRegistry, build_load_context
from migration.stager import FeedStager, SqlFeedStager

logger = logging.getLogger(__name__)

LOG_SOURCE = 1


class MigrationEngine:
    """
    Runs the loads described by a migration plan.

    Every data source is an independent unit of work: a failure in one is logged,
    recorded in its phase log and published, and the engine moves on to the next.
    """

    def __init__(
        self,
        settings: Any,
        plan: MigrationPlan,
        data_source_code: Optional[str] = None,
        no_download: bool = False,
        post_process_only_load_number: Optional[int] = None,
        feed_accessor: Optional[FeedAccessor] = None,
        stager: Optional[FeedStager] = None,
        phase_logger: Optional[PhaseLogger] = None,
        publisher: Optional[FileSystemMonitoringPublisher] = None,
        s3_client: Any = None,
        initialize_database: bool = True,
    ):
        """
        Initialize the migration engine.

        Args:
            settings: Configuration object (database, locations, batch size)
            plan: Migration plan to run
            data_source_code: Restrict the run to this data source
            no_download: Process feed files already in the working directory
            post_process_only_load_number: Only re-run post-processing for this load
            feed_accessor: Defaults to LocalFeedAccessor over LOCAL_FEED_ROOT
            stager: Defaults to SqlFeedStager
            phase_logger: Shared phase logger; defaults to the one each data source declares
            publisher: Defaults to FileSystemMonitoringPublisher over MONITORING_ROOT
            s3_client: boto3 client for outbound exports; created on first use when omitted
            initialize_database: Open the connection pool for the duration of run()
        """
        self.settings = settings
        self.plan = plan
        self.data_source_code = data_source_code
        self.no_download = no_download
        self.post_process_only_load_number = post_process_only_load_number
        self.feed_accessor = feed_accessor or LocalFeedAccessor(settings.LOCAL_FEED_ROOT)
        self.stager = stager or SqlFeedStager(
            bad_rows_table=settings.BAD_ROWS_TABLE, warn_rows_table=settings.WARN_ROWS_TABLE
        )
        self.phase_logger = phase_logger
        self.publisher = publisher or FileSystemMonitoringPublisher(settings.MONITORING_ROOT)
        self.s3_client = s3_client
        self.initialize_database = initialize_database
        self.results: Dict[str, bool] = {}
        self._phase_loggers: Dict[str, PhaseLogger] = {}

    def run(self) -> bool:
        """
        Execute the run.

        Returns:
            True if every selected data source completed, False otherwise
        """
        started = time.monotonic()
        try:
            logger.info("=" * 60)
            logger.info("Starting Migration Run")
            logger.info("=" * 60)

            if self.post_process_only_load_number is not None and not self.data_source_code:
                raise PlanConfigurationError("Post-process-only mode requires a data source code")

            data_sources = self.plan.selected(self.data_source_code)

            if self.initialize_database:
                self._initialize_database()

            for data_source in data_sources:
                if self.post_process_only_load_number is not None:
                    self.results[data_source.code] = self._post_process_only(data_source)
                else:
                    self.results[data_source.code] = self._process_data_source(data_source)

            self._log_summary(time.monotonic() - started)
            return all(self.results.values())

        except Exception as e:
            logger.error(f"Migration run failed: {e}", exc_info=True)
            return False

        finally:
            if self.initialize_database:
                DatabaseConnection.close_all()

    def _initialize_database(self) -> None:
        """Initialize database connection pool."""
        logger.info("Initializing database connection...")
        DatabaseConnection.initialize(
            host=self.settings.DB_HOST,
            port=self.settings.DB_PORT,
            database=self.settings.DB_NAME,
            user=self.settings.DB_USER,
            password=self.settings.DB_PASSWORD,
            min_connections=1,
            max_connections=5,
        )
        logger.info("Database connection established")

    def _phase_logger_for(self, data_source: DataSourcePlan) -> PhaseLogger:
        if self.phase_logger is not None:
            return self.phase_logger
        if data_source.code not in self._phase_loggers:
            if data_source.phase_logger is None:
                phase_logger = PhaseLogger(SqlPhaseLogSink(self.settings.PHASE_LOG_TABLE))
            else:
                phase_logger = build_phase_logger(data_source.phase_logger)
            self._phase_loggers[data_source.code] = phase_logger
        return self._phase_loggers[data_source.code]

    def _log(self, phase_logger: PhaseLogger, data_source: DataSourcePlan, phase: DataMigrationPhase,
             description: str, load_number: int = NO_LOAD_NUMBER) -> None:
        phase_logger.log(PhaseLogEntry(
            log_source=LOG_SOURCE,
            phase=phase,
            description=description,
            data_source_code=data_source.code,
            load_number=None if load_number == NO_LOAD_NUMBER else load_number,
        ))

    def _build_processor(self, data_source: DataSourcePlan, phase_logger: PhaseLogger,
                         registry: ComponentRegistry) -> FeedProcessor:
        post_processors = build_post_processors(
            data_source.post_processors, phase_logger, s3_client=self.s3_client, settings=self.settings
        )
        return FeedProcessor(
            data_source,
            registry,
            self.stager,
            phase_logger,
            batch_size=self.settings.XFORM_ROWS_BATCH_SIZE,
            post_processors=post_processors,
        )

    def _halt(self, phase_logger: PhaseLogger, data_source: DataSourcePlan, load_number: int,
              error: Exception) -> bool:
        logger.error(f"Load for {data_source.code} halted: {error}", exc_info=True)
        self._log(phase_logger, data_source, DataMigrationPhase.LoadHalted,
                  f"Load halted for {data_source.code}: {error}", load_number)
        self.publisher.publish_failure(data_source, phase_logger.get_load_entries(load_number), error)
        return False

    def _process_data_source(self, data_source: DataSourcePlan) -> bool:
        """
        Run one data source's load end to end.

        Returns:
            True when the load completed or there was nothing to do
        """
        load_number = NO_LOAD_NUMBER
        phase_logger = self._phase_logger_for(data_source)

        try:
            self._log(phase_logger, data_source, DataMigrationPhase.AcquiringResources,
                      f"Acquiring resources for {data_source.code}")
            registry = build_load_context(self.plan, data_source)
            processor = self._build_processor(data_source, phase_logger, registry)
        except Exception as e:
            # plan errors and reference data that cannot be loaded halt this load only
            return self._halt(phase_logger, data_source, load_number, e)

        try:
            do_work = self.no_download or self.feed_accessor.needs_to_process(data_source)
            if not do_work:
                logger.info(f"No work to do for {data_source.code}")
                return True

            working_dir = self._working_dir(data_source)
            if self.no_download:
                local_files = resolve_local_files(data_source, working_dir)
            else:
                local_files = self.feed_accessor.fetch(data_source, working_dir)
            processor.mark_downloaded()

            self._log(phase_logger, data_source, DataMigrationPhase.ManagingExternalFeeds,
                      f"Feed access for {data_source.code} determined we have work to do")

            load_number = processor.process(local_files)
            processor.post_process(load_number)
            processor.mark_complete()

            for result in processor.results:
                logger.info(
                    f"{data_source.code} {result.file_name}: {result.total_rows} rows, "
                    f"{result.staged_rows} staged, {result.rejected_rows} rejected"
                )
            self.publisher.publish_success(data_source, phase_logger.get_load_entries(load_number))
            return True

        except Exception as e:
            if processor.load_number is not None:
                load_number = processor.load_number
            return self._halt(phase_logger, data_source, load_number, e)

    def _post_process_only(self, data_source: DataSourcePlan) -> bool:
        load_number = self.post_process_only_load_number
        phase_logger = self._phase_logger_for(data_source)
        try:
            processor = self._build_processor(data_source, phase_logger, ComponentRegistry().freeze())
            processor.post_process(load_number)
            self.publisher.publish_success(data_source, phase_logger.get_load_entries(load_number))
            return True
        except Exception as e:
            logger.error(f"Post-processing only for load {load_number} failed: {e}", exc_info=True)
            self.publisher.publish_failure(data_source, phase_logger.get_load_entries(load_number), e)
            return False

    def _working_dir(self, data_source: DataSourcePlan) -> Path:
        root = self.plan.local_file_root or Path(self.settings.LOCAL_FEED_ROOT)
        return Path(root) / data_source.code

    def _log_summary(self, duration: float) -> None:
        logger.info(f"Duration: {duration:.2f} seconds")
        for code, success in self.results.items():
            logger.info(f"{code}: {'completed' if success else 'FAILED'}")


def setup_logging(log_file: str = "logs/migration.log", level: str = "INFO") -> None:
    """
    Configure logging for the migration engine.

    Args:
        log_file: Path to log file
        level: Console log level
    """
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File handler
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run plan-driven feed migrations.")
    parser.add_argument("--plan", help="Path to the migration plan (defaults to PLAN_PATH)")
    parser.add_argument("--data-source", dest="data_source", help="Only process this data source code")
    parser.add_argument("--no-download", dest="no_download", action="store_true",
                        help="Process feed files already in the working directory")
    parser.add_argument("--post-process-only", dest="post_process_only", type=int, metavar="LOAD_NUMBER",
                        help="Only re-run post-processing for an already-staged load")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the migration engine."""
    args = parse_args(argv)
    settings = Settings(validate=False)
    setup_logging(settings.LOG_FILE, settings.LOG_LEVEL)

    try:
        settings = Settings()
        plan = load_plan(args.plan or settings.PLAN_PATH)
        engine = MigrationEngine(
            settings,
            plan,
            data_source_code=args.data_source,
            no_download=args.no_download,
            post_process_only_load_number=args.post_process_only,
        )
        success = engine.run()
        sys.exit(0 if success else 1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
