"""Unit tests for phase logging."""

import itertools
import threading

import pytest

from fakes import FakeSink
from migration.errors import PlanConfigurationError
from migration.phase_log import (
    DataMigrationPhase,
    PhaseLogEntry,
    PhaseLogger,
    SqlPhaseLogSink,
    build_phase_logger,
)
from migration.plan import ComponentDescriptor
from migration.properties import PropertyBlock


def _entry(phase, load_number=42, log_source=1, description="step") -> PhaseLogEntry:
    return PhaseLogEntry(log_source=log_source, phase=phase, description=description,
                         data_source_code="ACME", load_number=load_number)


def test_sink_failure_never_fails_the_load() -> None:
    """Write and read failures fall back to the in-process cache."""
    logger = PhaseLogger(FakeSink(fail_writes=True, fail_fetches=True))

    logger.log(_entry(DataMigrationPhase.ProcessingRows))

    assert [e.phase for e in logger.get_load_entries(42)] == [DataMigrationPhase.ProcessingRows]


HISTORY = [
    (3, DataMigrationPhase.OutboundBadRowsFileWritten),
    (1, DataMigrationPhase.CompletedBulkCopy),
    (1, DataMigrationPhase.ProcessingRows),
]


@pytest.mark.parametrize("order", list(itertools.permutations(HISTORY)))
def test_load_entries_are_sorted_by_source_and_phase(order) -> None:
    """A load's history is ordered by (log_source, phase) whatever the logging order."""
    logger = PhaseLogger()
    for log_source, phase in order:
        logger.log(_entry(phase, log_source=log_source))

    entries = logger.get_load_entries(42)

    assert [(e.log_source, e.phase) for e in entries] == [
        (1, DataMigrationPhase.ProcessingRows),
        (1, DataMigrationPhase.CompletedBulkCopy),
        (3, DataMigrationPhase.OutboundBadRowsFileWritten),
    ]


def test_concurrent_logging_and_reading_keeps_every_entry() -> None:
    """Threads may log and read a load's history at the same time."""
    logger = PhaseLogger(FakeSink())
    errors = []

    def work(worker: int) -> None:
        try:
            for i in range(500):
                logger.log(_entry(DataMigrationPhase.ProcessingRows, description=f"{worker}-{i}"))
                logger.get_load_entries(42)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=work, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(logger.get_load_entries(42)) == 2000
    assert len({e.description for e in logger.entries()}) == 2000


def test_entries_without_load_number_are_excluded() -> None:
    """Entries logged before a load number existed never belong to a load's history."""
    logger = PhaseLogger()
    logger.log(_entry(DataMigrationPhase.AcquiringResources, load_number=None))
    logger.log(_entry(DataMigrationPhase.ProcessingRows, load_number=7))

    assert [e.load_number for e in logger.get_load_entries(7)] == [7]
    assert len(logger.entries()) == 2


def test_no_load_number_skips_the_sink() -> None:
    """Asking for load -1 never queries the sink."""
    sink = FakeSink()
    logger = PhaseLogger(sink)

    assert logger.get_load_entries(-1) == []
    assert sink.fetch_calls == []


def test_sink_fetch_replaces_only_that_loads_entries() -> None:
    """Entries fetched from the sink replace the cached slice of the same load."""
    stored = _entry(DataMigrationPhase.CompletedBulkCopy, load_number=1, description="from sink")
    sink = FakeSink(fetched=[stored])
    logger = PhaseLogger(sink)
    logger.log(_entry(DataMigrationPhase.ProcessingRows, load_number=1, description="cached"))
    logger.log(_entry(DataMigrationPhase.ProcessingRows, load_number=2, description="other load"))

    history = logger.get_load_entries(1)

    assert [e.description for e in history] == ["from sink"]
    assert sorted(e.description for e in logger.entries()) == ["from sink", "other load"]


def test_entry_rejects_long_data_source_code() -> None:
    """Data source codes longer than 30 characters are invalid."""
    with pytest.raises(ValueError):
        PhaseLogEntry(log_source=1, phase=1, description="x", data_source_code="X" * 31)


def test_build_phase_logger_kinds() -> None:
    """The plan picks an in-memory or SQL-backed phase logger."""
    assert build_phase_logger(None).sink is None
    assert build_phase_logger(ComponentDescriptor("log", "memory")).sink is None

    sql_logger = build_phase_logger(
        ComponentDescriptor("log", "sql", PropertyBlock.from_mapping({"tableName": "ops.phase_log"}))
    )
    assert isinstance(sql_logger.sink, SqlPhaseLogSink) and sql_logger.sink.table_name == "ops.phase_log"

    with pytest.raises(PlanConfigurationError, match="tableName"):
        build_phase_logger(ComponentDescriptor("log", "sql"))
    with pytest.raises(PlanConfigurationError, match="Unknown phase logger kind"):
        build_phase_logger(ComponentDescriptor("log", "kafka"))


def test_sql_sink_writes_every_column(monkeypatch) -> None:
    """The SQL sink inserts one row per entry with all seven columns."""
    calls = []
    monkeypatch.setattr("migration.phase_log.DatabaseConnection.execute_update",
                        lambda query, params=None: calls.append(params) or 1)

    SqlPhaseLogSink("data_migration_phase_log").write(_entry(DataMigrationPhase.LoadHalted))

    params = calls[0]
    assert len(params) == 7 and params[:4] == (1, "ACME", 42, DataMigrationPhase.LoadHalted)


def test_sql_sink_fetch_builds_entries(monkeypatch) -> None:
    """Rows read back from the sink become phase log entries for the load."""
    rows = [{"LogSource": 1, "DataSourceCode": "ACME", "LoadNumber": 42, "Phase": None, "NumberOfRecords": 3,
             "Description": None, "RecordDate": _entry(1).recorded_at}]
    monkeypatch.setattr("migration.phase_log.DatabaseConnection.execute_query", lambda query, params=None: rows)

    entries = SqlPhaseLogSink("data_migration_phase_log").fetch(42)

    assert entries[0].phase == -1 and entries[0].description == "" and entries[0].number_of_records == 3
