"""
Row Processor

Turns one parsed feed row into a destination column map by applying the feed file
plan's mappings in order, then converts the map to typed values and appends it to the
staging table.

Bad data never raises here: every data failure comes back as a RowRejection naming a
single destination column, and the feed processor decides what to do with it.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd

from migration.errors import MigrationError, ResolverError, RowRejection
from migration.plan import ColumnMapping, ConstantMapping, CopyMapping, FeedFilePlan, RowTest, TransformMapping
from migration.properties import parse_bool
from migration.registry import ComponentRegistry
from migration.resolvers import Resolver, ResolverContext
from migration.staging import DATA_SOURCE_COLUMN, LOAD_NUMBER_COLUMN, StagingTable

logger = logging.getLogger(__name__)

TRUNCATED_MARKER = "...(TRUNCATED)..."

ColumnMap = Dict[str, Optional[str]]
TransformResult = Union[ColumnMap, RowRejection]


class _MappingFailure(Exception):
    """Carries a data failure for one mapping out of the value computation."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RowProcessor:
    """
    Applies feed file plans to raw rows using a frozen component registry.
    """

    def __init__(self, registry: ComponentRegistry):
        self.registry = registry
        self._contexts: Dict[Tuple[int, str], ResolverContext] = {}

    def _context(self, load_number: int, data_source_code: str) -> ResolverContext:
        key = (load_number, data_source_code)
        context = self._contexts.get(key)
        if context is None:
            context = self.registry.context_for(load_number, data_source_code)
            self._contexts[key] = context
        return context

    # -- transformation ------------------------------------------------------

    def transform_row(
        self,
        load_number: int,
        data_source_code: str,
        row_number: int,
        plan: FeedFilePlan,
        raw_row: Sequence[str],
    ) -> TransformResult:
        """
        Build the destination column map for one raw row.

        Args:
            load_number: Load the row belongs to
            data_source_code: Data source being processed
            row_number: 1-based physical row number in the feed file
            plan: Feed file plan whose mappings are applied in order
            raw_row: Positional values produced by the parser

        Returns:
            Column map holding exactly the columns not skipped by a litmus test,
            or a RowRejection attributed to one destination column

        Raises:
            ResolverError: If a resolver raises instead of returning a rejection
        """
        context = self._context(load_number, data_source_code)
        values: ColumnMap = {}
        applied = set()

        for mapping in plan.mappings:
            try:
                skipped, value = self._compute(context, mapping, raw_row)
            except _MappingFailure as failure:
                return RowRejection(load_number, row_number, mapping.dest, failure.reason)
            if skipped:
                continue
            values[mapping.dest] = value
            applied.add(mapping.dest)

        for name in self._post_row_processors_to_run(plan, applied):
            processor = self.registry.post_row_processors[name]
            failure = _invoke(processor, lambda: processor.process(context, values))
            if failure is not None:
                dest_column, reason = failure
                return RowRejection(load_number, row_number, dest_column, reason)

        return values

    def run_row_tests(
        self,
        load_number: int,
        data_source_code: str,
        tests: Sequence[RowTest],
        raw_row: Sequence[str],
        stop_at_first: bool = False,
    ) -> List[str]:
        """
        Run plan-level litmus or warning tests against a raw row.

        A source index outside the row fails the test with the out-of-range reason.

        Returns:
            Reasons of the tests that failed, in plan order
        """
        context = self._context(load_number, data_source_code)
        failures = []
        for row_test in tests:
            try:
                args = _source_values(row_test, raw_row) or [""]
            except _MappingFailure as failure:
                failures.append(failure.reason)
            else:
                litmus = self.registry.litmus_tests[row_test.test]
                if not _invoke(litmus, lambda: litmus.test(context, args)):
                    failures.append(row_test.reason)
            if failures and stop_at_first:
                break
        return failures

    def compute_foreign_id(
        self,
        load_number: int,
        data_source_code: str,
        row_number: int,
        plan: FeedFilePlan,
        raw_row: Sequence[str],
    ) -> Optional[str]:
        """
        Derive the originator's identifier recorded alongside a bad row.

        A failure never rejects the row; its reason becomes the identifier instead.

        Returns:
            Identifier truncated to the descriptor's length, or None when the plan has none
        """
        descriptor = plan.foreign_id
        if descriptor is None:
            return None

        context = self._context(load_number, data_source_code)
        try:
            skipped, value = self._compute(context, descriptor.mapping, raw_row)
        except _MappingFailure as failure:
            return failure.reason
        except ResolverError as e:
            logger.warning(f"Row {row_number}: foreign id could not be computed: {e}")
            return str(e)

        if skipped or value is None:
            return None
        return truncate_foreign_id(value, descriptor.length)

    def _compute(
        self, context: ResolverContext, mapping: ColumnMapping, raw_row: Sequence[str]
    ) -> Tuple[bool, Optional[str]]:
        """Return (skipped, value) for one mapping, raising _MappingFailure on bad data."""
        if isinstance(mapping, ConstantMapping):
            return False, mapping.value

        args = _source_values(mapping, raw_row)

        if isinstance(mapping, CopyMapping):
            return False, args[0]

        if not isinstance(mapping, TransformMapping):
            raise TypeError(f"Unsupported column mapping {mapping!r}")

        if not mapping.source_indexes:
            args = [""]

        if mapping.litmus_test:
            litmus = self.registry.litmus_tests[mapping.litmus_test]
            if not _invoke(litmus, lambda: litmus.test(context, args)):
                return True, None

        method = self.registry.methods[mapping.method]
        value, error = _invoke(method, lambda: method.resolve(context, args))
        if error is not None:
            raise _MappingFailure(error)
        return False, value

    def _post_row_processors_to_run(self, plan: FeedFilePlan, applied: set) -> List[str]:
        gated = {}
        for mapping in plan.mappings:
            if isinstance(mapping, TransformMapping) and mapping.post_processor:
                gated.setdefault(mapping.post_processor, []).append(mapping.dest)

        names = []
        for name in plan.required_post_row_processors:
            if name in plan.post_row_processors or any(dest in applied for dest in gated.get(name, [])):
                names.append(name)
        return names

    # -- staging -------------------------------------------------------------

    def add_row_to_table(
        self,
        plan: FeedFilePlan,
        load_number: int,
        data_source_code: str,
        column_map: ColumnMap,
        table: StagingTable,
        row_number: int = 0,
    ) -> Optional[RowRejection]:
        """
        Convert a transformed row to its declared column types and append it to the table.

        Blank and NULL values, and columns a litmus test skipped, are stored as None.
        Once the row is in the table its post-row processors are told to commit it.

        Returns:
            None on success, or a RowRejection for the first column that does not
            convert (the table is left untouched)
        """
        record = {LOAD_NUMBER_COLUMN: load_number, DATA_SOURCE_COLUMN: data_source_code}
        for mapping in plan.mappings:
            raw = column_map.get(mapping.dest)
            try:
                record[mapping.dest] = convert_value(raw, mapping.type)
            except ValueError as e:
                return RowRejection(load_number, row_number, mapping.dest, str(e))

        table.append(record)
        self._commit(plan, load_number, data_source_code, column_map)
        return None

    def _commit(self, plan: FeedFilePlan, load_number: int, data_source_code: str, column_map: ColumnMap) -> None:
        context = self._context(load_number, data_source_code)
        applied = {mapping.dest for mapping in plan.mappings if mapping.dest in column_map}
        for name in self._post_row_processors_to_run(plan, applied):
            processor = self.registry.post_row_processors[name]
            _invoke(processor, lambda: processor.commit(context, column_map))


def _source_values(mapping: Union[ColumnMapping, RowTest], raw_row: Sequence[str]) -> List[str]:
    values = []
    for index in mapping.source_indexes:
        if index < 0 or index >= len(raw_row):
            raise _MappingFailure(
                f"source column out of range: index {index} requested, row has {len(raw_row)} columns"
            )
        value = raw_row[index]
        values.append("" if value is None else str(value).strip())
    return values


def _invoke(resolver: Resolver, call: Callable):
    try:
        return call()
    except MigrationError:
        raise
    except Exception as e:
        raise ResolverError(f"Resolver {resolver.name} raised {type(e).__name__}: {e}") from e


def truncate_foreign_id(value: str, length: int) -> str:
    if len(value) <= length:
        return value
    if length <= len(TRUNCATED_MARKER):
        return value[:length]
    return value[:length - len(TRUNCATED_MARKER)] + TRUNCATED_MARKER


def convert_value(value: Optional[str], column_type: str):
    """
    Convert a transformed string to a staging value.

    Raises:
        ValueError: If the value cannot be parsed as ``column_type``
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.upper() == "NULL":
        return None

    try:
        if column_type in ("int", "long"):
            return int(text)
        if column_type in ("float", "double"):
            return float(text)
        if column_type == "bool":
            parsed = parse_bool(text)
            if parsed is None:
                raise ValueError(text)
            return parsed
        if column_type == "datetime":
            return _parse_datetime(text)
    except ValueError:
        raise ValueError(f"Value {text} not parseable as {column_type}") from None
    return text


def _parse_datetime(text: str) -> datetime:
    parsed = pd.to_datetime(text, errors="coerce")
    if pd.isna(parsed):
        raise ValueError(text)
    return parsed.to_pydatetime()
