"""Unit tests for YAML plan loading."""

from pathlib import Path

import pytest

from migration.errors import PlanConfigurationError
from migration.plan import ConstantMapping, CopyMapping, RowTest, TransformMapping
from migration.plan_loader import load_plan, plan_from_dict

SAMPLE_PLAN = Path(__file__).resolve().parents[2] / "plans" / "migration_plan.yaml"


def _plan_dict(mappings) -> dict:
    return {
        "dataSources": [{
            "code": "ACME",
            "feedFiles": [{"fileName": "members.csv", "mappings": mappings}],
        }],
    }


def test_mapping_variants_are_detected() -> None:
    """method, value and source keys select transform, constant and copy mappings."""
    plan = plan_from_dict(_plan_dict([
        {"dest": "Name", "source": 0},
        {"dest": "Country", "value": "US"},
        {"dest": "Code", "method": "toUpper", "sources": [1, 2], "litmusTest": "notBlank", "type": "string"},
    ]))

    mappings = plan.data_sources[0].feed_files[0].mappings

    assert mappings[0] == CopyMapping("Name", 0)
    assert mappings[1] == ConstantMapping("Country", "US")
    assert mappings[2] == TransformMapping("Code", "toUpper", (1, 2), litmus_test="notBlank")


def test_single_source_is_accepted_for_transform() -> None:
    """A scalar sources value should be treated as a one-element list."""
    plan = plan_from_dict(_plan_dict([{"dest": "Code", "method": "trim", "sources": 3}]))

    assert plan.data_sources[0].feed_files[0].mappings[0].source_indexes == (3,)


@pytest.mark.parametrize("mapping,message", [
    ({"source": 0}, "missing dest"),
    ({"dest": "Name"}, "must have a method, a value or a source"),
    ({"dest": "Name", "source": "first"}, "expected an integer"),
    ({"dest": "Name", "source": True}, "expected an integer"),
    ({"dest": "Name", "source": 0, "litmusTest": "notBlank"}, "unknown keys"),
])
def test_malformed_mappings_name_the_node(mapping: dict, message: str) -> None:
    """Structural errors should raise PlanConfigurationError with a descriptive message."""
    with pytest.raises(PlanConfigurationError, match=message):
        plan_from_dict(_plan_dict([mapping]))


def test_plan_without_data_sources_is_rejected() -> None:
    """A plan must declare at least one data source."""
    with pytest.raises(PlanConfigurationError, match="no dataSources"):
        plan_from_dict({"lookups": []})


def test_descriptor_name_defaults_to_kind() -> None:
    """Descriptors without a name are registered under their kind."""
    data = _plan_dict([{"dest": "Name", "source": 0}])
    data["resolvers"] = [{"kind": "toUpper", "properties": {"rejectEmpty": True}}]

    plan = plan_from_dict(data)

    assert plan.resolvers[0].name == "toUpper"
    assert plan.resolvers[0].properties.get_bool("rejectEmpty") is True


def test_load_plan_reads_yaml_file(tmp_path) -> None:
    """load_plan should build the model from a YAML file on disk."""
    path = tmp_path / "plan.yaml"
    path.write_text(
        "localFileRoot: work\n"
        "dataSources:\n"
        "  - code: ACME\n"
        "    postProcess: false\n"
        "    feedFiles:\n"
        "      - fileName: members.csv\n"
        "        skipLines: 1\n"
        "        mappings:\n"
        "          - {dest: Name, source: 0}\n",
        encoding="utf-8",
    )

    plan = load_plan(path)

    assert plan.local_file_root == Path("work")
    assert plan.data_sources[0].post_process is False
    assert plan.data_sources[0].feed_files[0].skip_lines == 1


def test_load_plan_wraps_yaml_and_io_errors(tmp_path) -> None:
    """Unreadable or invalid plan files are configuration errors."""
    bad = tmp_path / "bad.yaml"
    bad.write_text("dataSources: [\n", encoding="utf-8")

    with pytest.raises(PlanConfigurationError, match="Invalid YAML"):
        load_plan(bad)
    with pytest.raises(PlanConfigurationError, match="Cannot read plan file"):
        load_plan(tmp_path / "missing.yaml")


def test_sample_plan_loads() -> None:
    """The example plan shipped with the repository should load cleanly."""
    plan = load_plan(SAMPLE_PLAN)
    acme = plan.data_source("ACME")

    assert [d.kind for d in acme.post_processors] == ["badRowsOutbound", "phaseLogOutbound"]
    assert acme.feed_files[0].required_post_row_processors == ["uniqueMember"]
    assert acme.feed_files[0].foreign_id.length == 100
    assert acme.feed_files[0].litmus_tests == (RowTest("notBlank", (0,), "missing member id"),)
    assert acme.feed_files[0].warn_rows_location == "warn_rows"


def test_row_tests_are_loaded() -> None:
    """Plan-level litmus and warning tests keep their sources and reasons."""
    data = _plan_dict([{"dest": "Name", "source": 0}])
    feed_file = data["dataSources"][0]["feedFiles"][0]
    feed_file["litmusTests"] = [{"test": "notBlank", "sources": [0], "reason": "missing name"}]
    feed_file["warningTests"] = [{"test": "validEmail", "sources": 2}]
    feed_file["warnRowsLocation"] = "acme.warn_rows"

    loaded = plan_from_dict(data).data_sources[0].feed_files[0]

    assert loaded.litmus_tests == (RowTest("notBlank", (0,), "missing name"),)
    assert loaded.warning_tests == (RowTest("validEmail", (2,), "failed validEmail"),)
    assert loaded.warn_rows_location == "acme.warn_rows"
    assert loaded.required_litmus_tests == ["notBlank", "validEmail"]


def test_row_test_without_name_is_rejected() -> None:
    """A row test must name the litmus test it runs."""
    data = _plan_dict([{"dest": "Name", "source": 0}])
    data["dataSources"][0]["feedFiles"][0]["warningTests"] = [{"sources": [0], "reason": "x"}]

    with pytest.raises(PlanConfigurationError, match=r"warningTests\[0\]: missing test"):
        plan_from_dict(data)
