"""
Migration Plan Model

Declarative description of how each data source's feed files map onto staging columns.
Plans are built once per run and shared read-only across every row of a load.

Hierarchy:
- MigrationPlan: global components plus one DataSourcePlan per data source code
- DataSourcePlan: feed files, per-source components, phase logger, post-processors
- FeedFilePlan: parser, staging locations, row tests, ordered column mappings
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from migration.errors import PlanConfigurationError
from migration.properties import PropertyBlock

MAX_DATA_SOURCE_CODE_LENGTH = 30
DEFAULT_FOREIGN_ID_LENGTH = 100
SUPPORTED_TYPES = ("string", "int", "long", "float", "double", "bool", "datetime")


@dataclass(frozen=True)
class CopyMapping:
    """Copy one raw column into the destination column."""

    dest: str
    source_index: int
    type: str = "string"

    @property
    def source_indexes(self) -> Tuple[int, ...]:
        return (self.source_index,)


@dataclass(frozen=True)
class ConstantMapping:
    """Write the same configured value for every row."""

    dest: str
    value: str
    type: str = "string"

    @property
    def source_indexes(self) -> Tuple[int, ...]:
        return ()


@dataclass(frozen=True)
class TransformMapping:
    """
    Compute the destination value with a named method resolver.

    An optional litmus test gates the method; a false result skips the column.
    An optional post-row processor runs after the whole row is built, but only
    when this mapping was applied.
    """

    dest: str
    method: str
    source_indexes: Tuple[int, ...] = ()
    litmus_test: Optional[str] = None
    post_processor: Optional[str] = None
    type: str = "string"


ColumnMapping = Union[CopyMapping, ConstantMapping, TransformMapping]


@dataclass(frozen=True)
class ForeignIdDescriptor:
    """How to derive the originator's row identifier recorded with a bad row."""

    mapping: ColumnMapping
    length: int = DEFAULT_FOREIGN_ID_LENGTH


@dataclass(frozen=True)
class RowTest:
    """
    A litmus test run against the raw row before any mapping.

    As a plan-level litmus test a false result rejects the row with ``reason``; as a
    warning test it copies the row to the warn rows and processing continues.
    """

    test: str
    source_indexes: Tuple[int, ...] = ()
    reason: str = ""


@dataclass(frozen=True)
class ComponentDescriptor:
    """
    A named component declared in a plan.

    ``kind`` picks one implementation from the engine's closed set of built-ins;
    ``properties`` configure it.
    """

    name: str
    kind: str
    properties: PropertyBlock = field(default_factory=PropertyBlock)


@dataclass(frozen=True)
class FeedFilePlan:
    file_name: str
    mappings: Tuple[ColumnMapping, ...]
    staging_location: str = ""
    bad_rows_location: str = ""
    skip_lines: int = 0
    parser: Optional[ComponentDescriptor] = None
    foreign_id: Optional[ForeignIdDescriptor] = None
    post_row_processors: Tuple[str, ...] = ()
    litmus_tests: Tuple[RowTest, ...] = ()
    warning_tests: Tuple[RowTest, ...] = ()
    warn_rows_location: str = ""
    properties: PropertyBlock = field(default_factory=PropertyBlock)

    def __post_init__(self):
        seen = set()
        for mapping in self.mappings:
            if mapping.type not in SUPPORTED_TYPES:
                raise PlanConfigurationError(
                    f"Feed file {self.file_name}: column {mapping.dest} has unsupported type '{mapping.type}'"
                )
            key = mapping.dest.lower()
            if key in seen:
                raise PlanConfigurationError(
                    f"Feed file {self.file_name}: destination column {mapping.dest} is mapped twice"
                )
            seen.add(key)
        if self.skip_lines < 0:
            raise PlanConfigurationError(f"Feed file {self.file_name}: skip_lines cannot be negative")

    @property
    def destination_columns(self) -> List[str]:
        return [mapping.dest for mapping in self.mappings]

    def _transforms(self) -> List[TransformMapping]:
        mappings = list(self.mappings)
        if self.foreign_id is not None:
            mappings.append(self.foreign_id.mapping)
        return [m for m in mappings if isinstance(m, TransformMapping)]

    @property
    def required_methods(self) -> List[str]:
        return _unique(m.method for m in self._transforms())

    @property
    def required_litmus_tests(self) -> List[str]:
        gated = [m.litmus_test for m in self._transforms() if m.litmus_test]
        row_tests = [t.test for t in self.litmus_tests + self.warning_tests]
        return _unique(gated + row_tests)

    @property
    def required_post_row_processors(self) -> List[str]:
        mapped = (m.post_processor for m in self.mappings
                  if isinstance(m, TransformMapping) and m.post_processor)
        return _unique(list(self.post_row_processors) + list(mapped))


@dataclass(frozen=True)
class DataSourcePlan:
    code: str
    feed_files: Tuple[FeedFilePlan, ...]
    lookups: Tuple[ComponentDescriptor, ...] = ()
    existences: Tuple[ComponentDescriptor, ...] = ()
    resolvers: Tuple[ComponentDescriptor, ...] = ()
    phase_logger: Optional[ComponentDescriptor] = None
    post_processors: Tuple[ComponentDescriptor, ...] = ()
    files_location: str = ""
    post_process: bool = True
    properties: PropertyBlock = field(default_factory=PropertyBlock)

    def __post_init__(self):
        if not self.code or len(self.code) > MAX_DATA_SOURCE_CODE_LENGTH:
            raise PlanConfigurationError(
                f"Data source code '{self.code}' must be 1-{MAX_DATA_SOURCE_CODE_LENGTH} characters"
            )


@dataclass(frozen=True)
class MigrationPlan:
    data_sources: Tuple[DataSourcePlan, ...]
    lookups: Tuple[ComponentDescriptor, ...] = ()
    existences: Tuple[ComponentDescriptor, ...] = ()
    resolvers: Tuple[ComponentDescriptor, ...] = ()
    local_file_root: Optional[Path] = None

    def data_source(self, code: str) -> DataSourcePlan:
        """
        Find a data source plan by code (case-insensitive).

        Raises:
            PlanConfigurationError: If no data source has that code
        """
        for plan in self.data_sources:
            if plan.code.lower() == code.lower():
                return plan
        raise PlanConfigurationError(f"No data source plan for {code}")

    def selected(self, code: Optional[str] = None) -> Tuple[DataSourcePlan, ...]:
        """Every data source plan, or only the one for ``code`` when given."""
        if not code:
            return self.data_sources
        return (self.data_source(code),)

    def component_descriptors(self, data_source: DataSourcePlan) -> Dict[str, List[ComponentDescriptor]]:
        """Global descriptors followed by the data source's own, grouped by component family."""
        return {
            "lookups": list(self.lookups) + list(data_source.lookups),
            "existences": list(self.existences) + list(data_source.existences),
            "resolvers": list(self.resolvers) + list(data_source.resolvers),
        }


def _unique(names) -> List[str]:
    result: List[str] = []
    for name in names:
        if name not in result:
            result.append(name)
    return result
