"""Unit tests for row transformation and staging conversion."""

from datetime import datetime

import pytest

from migration.errors import ResolverError, RowRejection
from migration.plan import (
    ComponentDescriptor,
    ConstantMapping,
    CopyMapping,
    FeedFilePlan,
    ForeignIdDescriptor,
    RowTest,
    TransformMapping,
)
from migration.properties import PropertyBlock
from migration.registry import ComponentRegistry
from migration.resolvers import MethodResolver
from migration.row_processor import TRUNCATED_MARKER, RowProcessor, convert_value, truncate_foreign_id
from migration.staging import StagingTable, staging_columns


class ExplodingMethod(MethodResolver):
    kind = "explode"

    def resolve(self, context, args):
        raise KeyError("missing")


def _registry() -> ComponentRegistry:
    registry = ComponentRegistry.with_builtins()
    registry.register_descriptor(
        ComponentDescriptor("strictUpper", "toUpper", PropertyBlock.from_mapping({"rejectEmpty": "true"}))
    )
    registry.register_descriptor(
        ComponentDescriptor("emailCopy", "copyColumn",
                            PropertyBlock.from_mapping({"source": "Email", "target": "ContactEmail"}))
    )
    registry.register_descriptor(
        ComponentDescriptor("requireEmail", "requireColumns", PropertyBlock.from_mapping({"columns": "Email"}))
    )
    registry.register_method("explode", ExplodingMethod())
    return registry.freeze()


def _plan(*extra, **overrides) -> FeedFilePlan:
    values = dict(
        file_name="members.csv",
        mappings=(
            CopyMapping("Name", 0),
            ConstantMapping("Country", "US"),
            TransformMapping("Code", "strictUpper", (1,)),
        ) + tuple(extra),
    )
    values.update(overrides)
    return FeedFilePlan(**values)


@pytest.fixture
def processor() -> RowProcessor:
    return RowProcessor(_registry())


def test_copy_constant_and_transform(processor) -> None:
    """A clean row maps to copied, constant and transformed values."""
    result = processor.transform_row(42, "ACME", 2, _plan(), ["Ann", "ok"])

    assert result == {"Name": "Ann", "Country": "US", "Code": "OK"}


def test_source_values_are_trimmed(processor) -> None:
    """Raw values are trimmed before mapping."""
    assert processor.transform_row(42, "ACME", 2, _plan(), ["  Ann ", " ok "])["Name"] == "Ann"


def test_method_failure_rejects_row_on_destination_column(processor) -> None:
    """A method's error reason becomes the row rejection for that column."""
    result = processor.transform_row(42, "ACME", 3, _plan(), ["Ann", ""])

    assert result == RowRejection(42, 3, "Code", "value is required")


def test_false_litmus_test_skips_column(processor) -> None:
    """A false litmus test leaves the column out without rejecting the row."""
    plan = _plan(TransformMapping("Email", "validateEmail", (2,), litmus_test="notBlank"))

    result = processor.transform_row(42, "ACME", 2, plan, ["Ann", "ok", ""])

    assert "Email" not in result and result["Code"] == "OK"


def test_short_row_is_rejected_with_out_of_range_reason(processor) -> None:
    """Referencing a missing source column rejects the row on that destination."""
    result = processor.transform_row(42, "ACME", 4, _plan(), ["Ann"])

    assert isinstance(result, RowRejection)
    assert result.dest_column == "Code"
    assert result.reason == "source column out of range: index 1 requested, row has 1 columns"


def test_transform_without_sources_gets_one_blank_argument(processor) -> None:
    """A transform with no source columns is called with a single blank argument."""
    plan = _plan(TransformMapping("Load", "useLoadNumber"), TransformMapping("Blank", "trim"))

    result = processor.transform_row(42, "ACME", 2, plan, ["Ann", "ok"])

    assert result["Load"] == "42" and result["Blank"] == ""


def test_mapping_post_processor_runs_only_when_mapping_applied(processor) -> None:
    """A mapping's post-row processor is skipped when its litmus test skipped the mapping."""
    plan = _plan(TransformMapping("Email", "validateEmail", (2,), litmus_test="notBlank", post_processor="emailCopy"))

    applied = processor.transform_row(42, "ACME", 2, plan, ["Ann", "ok", "Ann@Example.com"])
    skipped = processor.transform_row(42, "ACME", 3, plan, ["Ann", "ok", ""])

    assert applied["ContactEmail"] == "ann@example.com"
    assert "ContactEmail" not in skipped


def test_plan_level_post_processor_rejection_names_its_column(processor) -> None:
    """A post-row processor failure is attributed to the column it returns."""
    plan = _plan(
        TransformMapping("Email", "validateEmail", (2,), litmus_test="notBlank"),
        post_row_processors=("requireEmail",),
    )

    result = processor.transform_row(42, "ACME", 5, plan, ["Ann", "ok", ""])

    assert result == RowRejection(42, 5, "Email", "required column Email is blank")


def test_resolver_exception_is_wrapped(processor) -> None:
    """A resolver that raises signals a bug and stops the load."""
    plan = _plan(TransformMapping("Boom", "explode", (0,)))

    with pytest.raises(ResolverError, match="explode raised KeyError"):
        processor.transform_row(42, "ACME", 2, plan, ["Ann", "ok"])


def test_foreign_id_is_truncated_to_length(processor) -> None:
    """Long foreign ids are cut to the configured length with a marker."""
    plan = _plan(foreign_id=ForeignIdDescriptor(CopyMapping("MemberId", 0), length=30))

    foreign_id = processor.compute_foreign_id(42, "ACME", 2, plan, ["M" * 80, "ok"])

    assert len(foreign_id) == 30 and foreign_id.endswith(TRUNCATED_MARKER)


def test_foreign_id_failure_reason_becomes_the_id(processor) -> None:
    """A foreign id that cannot be computed is recorded as the failure reason."""
    plan = _plan(foreign_id=ForeignIdDescriptor(TransformMapping("MemberId", "strictUpper", (0,))))

    assert processor.compute_foreign_id(42, "ACME", 2, plan, ["", "ok"]) == "value is required"
    assert processor.compute_foreign_id(42, "ACME", 2, _plan(), ["x", "ok"]) is None


def test_truncate_foreign_id_short_values_untouched() -> None:
    """Values within the limit are returned unchanged."""
    assert truncate_foreign_id("M-1", 100) == "M-1"
    assert truncate_foreign_id("abcdefghij", 5) == "abcde"


def test_add_row_to_table_converts_types() -> None:
    """Transformed rows are converted to their declared types and stamped with the load."""
    plan = FeedFilePlan(
        file_name="members.csv",
        mappings=(
            CopyMapping("Name", 0),
            CopyMapping("Points", 1, type="int"),
            CopyMapping("Active", 2, type="bool"),
            CopyMapping("JoinedOn", 3, type="datetime"),
            CopyMapping("Score", 4, type="double"),
        ),
    )
    table = StagingTable(staging_columns(plan.destination_columns))
    processor = RowProcessor(ComponentRegistry().freeze())

    rejection = processor.add_row_to_table(
        plan, 42, "ACME",
        {"Name": "Ann", "Points": "12", "Active": "yes", "JoinedOn": "2024-03-15", "Score": "NULL"},
        table,
    )

    assert rejection is None
    assert table.records == [{
        "LoadNum": 42, "DataSourceCode": "ACME", "Name": "Ann", "Points": 12, "Active": True,
        "JoinedOn": datetime(2024, 3, 15), "Score": None,
    }]


def test_add_row_to_table_rejects_unconvertible_value() -> None:
    """A value that does not convert rejects the row and leaves the table untouched."""
    plan = FeedFilePlan(file_name="members.csv", mappings=(CopyMapping("Points", 0, type="int"),))
    table = StagingTable(staging_columns(plan.destination_columns))
    processor = RowProcessor(ComponentRegistry().freeze())

    rejection = processor.add_row_to_table(plan, 42, "ACME", {"Points": "twelve"}, table, row_number=9)

    assert rejection == RowRejection(42, 9, "Points", "Value twelve not parseable as int")
    assert len(table) == 0


def test_skipped_columns_are_stored_as_none() -> None:
    """Columns a litmus test skipped are staged as None."""
    plan = FeedFilePlan(file_name="members.csv", mappings=(CopyMapping("Name", 0), CopyMapping("Email", 1)))
    table = StagingTable(staging_columns(plan.destination_columns))

    RowProcessor(ComponentRegistry().freeze()).add_row_to_table(plan, 1, "ACME", {"Name": "Ann"}, table)

    assert table.records[0]["Email"] is None


@pytest.mark.parametrize("value,column_type,expected", [
    ("", "int", None),
    ("null", "string", None),
    ("3.5", "float", 3.5),
    ("N", "bool", False),
    (" text ", "string", "text"),
])
def test_convert_value(value: str, column_type: str, expected) -> None:
    """convert_value handles blanks, NULL and each supported type."""
    assert convert_value(value, column_type) == expected


def test_convert_value_rejects_bad_bool() -> None:
    """Unrecognized booleans do not convert."""
    with pytest.raises(ValueError, match="not parseable as bool"):
        convert_value("perhaps", "bool")


def test_declared_column_derived_by_post_row_processor_is_staged() -> None:
    """A post-row processor's value reaches staging through its declared destination column."""
    registry = ComponentRegistry.with_builtins()
    registry.register_descriptor(ComponentDescriptor(
        "fullName", "concatColumns", PropertyBlock.from_mapping({"target": "FullName", "sources": "First,Last"})
    ))
    plan = FeedFilePlan(
        file_name="members.csv",
        mappings=(CopyMapping("First", 0), CopyMapping("Last", 1), ConstantMapping("FullName", "")),
        post_row_processors=("fullName",),
    )
    processor = RowProcessor(registry.freeze())
    table = StagingTable(staging_columns(plan.destination_columns))

    column_map = processor.transform_row(42, "ACME", 2, plan, ["Ann", "Lee"])
    processor.add_row_to_table(plan, 42, "ACME", column_map, table)

    assert table.records[0]["FullName"] == "Ann Lee"


def test_run_row_tests_collects_failed_reasons(processor) -> None:
    """Row tests report every failure in plan order, or only the first when asked."""
    tests = (
        RowTest("notBlank", (0,), "missing id"),
        RowTest("validEmail", (1,), "bad email"),
        RowTest("notBlank", (5,), "unused"),
    )

    assert processor.run_row_tests(42, "ACME", tests, ["", "nope"]) == [
        "missing id",
        "bad email",
        "source column out of range: index 5 requested, row has 2 columns",
    ]
    assert processor.run_row_tests(42, "ACME", tests, ["", "nope"], stop_at_first=True) == ["missing id"]
    assert processor.run_row_tests(42, "ACME", tests[:2], ["M-1", "a@b.co"]) == []
