"""
Plan Loader

Builds a MigrationPlan from a YAML document:

    localFileRoot: feeds
    lookups:
      - {name: countries, kind: plan, properties: {US: United States}}
    resolvers:
      - {name: toUpper, kind: toUpper, properties: {rejectEmpty: true}}
    dataSources:
      - code: ACME
        filesLocation: s3://bucket/acme
        phaseLogger: {kind: sql, properties: {tableName: data_migration_phase_log}}
        postProcessors:
          - {name: badRows, kind: badRowsOutbound}
        feedFiles:
          - fileName: members.csv
            stagingLocation: stage_members
            skipLines: 1
            parser: {kind: csv}
            foreignId: {mapping: {dest: MemberId, source: 0}, length: 100}
            litmusTests:
              - {test: notBlank, sources: [0], reason: missing member id}
            warningTests:
              - {test: validEmail, sources: [2], reason: questionable email}
            mappings:
              - {dest: Name, source: 0}                        # copy
              - {dest: Country, value: US}                      # constant
              - {dest: Code, method: toUpper, sources: [1]}     # transform

A mapping is a transform when it names a method, a constant when it has a value and a
copy when it has a single source. Malformed nodes raise PlanConfigurationError naming
the offending node.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

import yaml

from migration.errors import PlanConfigurationError
from migration.plan import (
    ColumnMapping,
    ComponentDescriptor,
    ConstantMapping,
    CopyMapping,
    DataSourcePlan,
    DEFAULT_FOREIGN_ID_LENGTH,
    FeedFilePlan,
    ForeignIdDescriptor,
    MigrationPlan,
    RowTest,
    TransformMapping,
)
from migration.properties import PropertyBlock, parse_bool

logger = logging.getLogger(__name__)

COPY_KEYS = {"dest", "source", "type"}
CONSTANT_KEYS = {"dest", "value", "type"}
TRANSFORM_KEYS = {"dest", "method", "sources", "litmusTest", "postProcessor", "type"}
ROW_TEST_KEYS = {"test", "sources", "reason"}


def load_plan(path: Union[str, Path]) -> MigrationPlan:
    """
    Read and build a migration plan from a YAML file.

    Raises:
        PlanConfigurationError: If the file cannot be read or the plan is malformed
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise PlanConfigurationError(f"Cannot read plan file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise PlanConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise PlanConfigurationError(f"Plan file {path} must contain a mapping at the top level")

    plan = plan_from_dict(data)
    logger.info(f"Loaded plan {path} with {len(plan.data_sources)} data sources")
    return plan


def plan_from_dict(data: Dict[str, Any]) -> MigrationPlan:
    """Build a migration plan from an already-parsed mapping."""
    data_sources = tuple(
        _data_source(node, f"dataSources[{i}]")
        for i, node in enumerate(_list(data, "dataSources", "plan"))
    )
    if not data_sources:
        raise PlanConfigurationError("Plan declares no dataSources")

    root = data.get("localFileRoot")
    return MigrationPlan(
        data_sources=data_sources,
        lookups=_descriptors(data, "lookups", "plan"),
        existences=_descriptors(data, "existences", "plan"),
        resolvers=_descriptors(data, "resolvers", "plan"),
        local_file_root=Path(root) if root else None,
    )


def _data_source(node: Any, where: str) -> DataSourcePlan:
    node = _mapping(node, where)
    code = str(node.get("code") or "").strip()
    if not code:
        raise PlanConfigurationError(f"{where}: missing code")
    where = f"dataSource {code}"

    phase_logger = node.get("phaseLogger")
    post_process = parse_bool(node.get("postProcess", True))
    if post_process is None:
        raise PlanConfigurationError(f"{where}: postProcess must be a boolean")

    return DataSourcePlan(
        code=code,
        feed_files=tuple(
            _feed_file(f, f"{where} feedFiles[{i}]")
            for i, f in enumerate(_list(node, "feedFiles", where))
        ),
        lookups=_descriptors(node, "lookups", where),
        existences=_descriptors(node, "existences", where),
        resolvers=_descriptors(node, "resolvers", where),
        phase_logger=_descriptor(phase_logger, f"{where} phaseLogger") if phase_logger else None,
        post_processors=_descriptors(node, "postProcessors", where),
        files_location=str(node.get("filesLocation") or ""),
        post_process=post_process,
        properties=PropertyBlock.from_mapping(node.get("properties"), owner=where),
    )


def _feed_file(node: Any, where: str) -> FeedFilePlan:
    node = _mapping(node, where)
    file_name = str(node.get("fileName") or "").strip()
    if not file_name:
        raise PlanConfigurationError(f"{where}: missing fileName")
    where = f"feed file {file_name}"

    mappings = tuple(
        _column_mapping(m, f"{where} mappings[{i}]")
        for i, m in enumerate(_list(node, "mappings", where))
    )

    foreign_id = None
    if node.get("foreignId"):
        fid = _mapping(node["foreignId"], f"{where} foreignId")
        foreign_id = ForeignIdDescriptor(
            mapping=_column_mapping(fid.get("mapping"), f"{where} foreignId.mapping"),
            length=_int(fid.get("length", DEFAULT_FOREIGN_ID_LENGTH), f"{where} foreignId.length"),
        )

    parser = node.get("parser")
    return FeedFilePlan(
        file_name=file_name,
        mappings=mappings,
        staging_location=str(node.get("stagingLocation") or ""),
        bad_rows_location=str(node.get("badRowsLocation") or ""),
        skip_lines=_int(node.get("skipLines", 0), f"{where} skipLines"),
        parser=_descriptor(parser, f"{where} parser") if parser else None,
        foreign_id=foreign_id,
        post_row_processors=tuple(str(n) for n in (node.get("postRowProcessors") or [])),
        litmus_tests=_row_tests(node, "litmusTests", where),
        warning_tests=_row_tests(node, "warningTests", where),
        warn_rows_location=str(node.get("warnRowsLocation") or ""),
        properties=PropertyBlock.from_mapping(node.get("properties"), owner=where),
    )


def _row_tests(node: Dict[str, Any], key: str, where: str) -> Tuple[RowTest, ...]:
    tests = []
    for i, entry in enumerate(_list(node, key, where)):
        test_where = f"{where} {key}[{i}]"
        entry = _mapping(entry, test_where)
        _check_keys(entry, ROW_TEST_KEYS, test_where)
        name = str(entry.get("test") or "").strip()
        if not name:
            raise PlanConfigurationError(f"{test_where}: missing test")
        tests.append(RowTest(
            test=name,
            source_indexes=tuple(_int(s, f"{test_where} sources") for s in _sources(entry)),
            reason=str(entry.get("reason") or f"failed {name}"),
        ))
    return tuple(tests)


def _column_mapping(node: Any, where: str) -> ColumnMapping:
    node = _mapping(node, where)
    dest = str(node.get("dest") or "").strip()
    if not dest:
        raise PlanConfigurationError(f"{where}: missing dest")
    where = f"{where} ({dest})"
    column_type = str(node.get("type") or "string")

    if "method" in node:
        _check_keys(node, TRANSFORM_KEYS, where)
        return TransformMapping(
            dest=dest,
            method=str(node["method"]),
            source_indexes=tuple(_int(s, f"{where} sources") for s in _sources(node)),
            litmus_test=str(node["litmusTest"]) if node.get("litmusTest") else None,
            post_processor=str(node["postProcessor"]) if node.get("postProcessor") else None,
            type=column_type,
        )
    if "value" in node:
        _check_keys(node, CONSTANT_KEYS, where)
        value = node["value"]
        return ConstantMapping(dest=dest, value="" if value is None else str(value), type=column_type)
    if "source" in node:
        _check_keys(node, COPY_KEYS, where)
        return CopyMapping(dest=dest, source_index=_int(node["source"], f"{where} source"), type=column_type)

    raise PlanConfigurationError(f"{where}: mapping must have a method, a value or a source")


def _sources(node: Dict[str, Any]) -> List[Any]:
    sources = node.get("sources", [])
    if not isinstance(sources, list):
        sources = [sources]
    return sources


def _descriptors(node: Dict[str, Any], key: str, where: str) -> Tuple[ComponentDescriptor, ...]:
    return tuple(
        _descriptor(d, f"{where} {key}[{i}]")
        for i, d in enumerate(_list(node, key, where))
    )


def _descriptor(node: Any, where: str) -> ComponentDescriptor:
    node = _mapping(node, where)
    kind = str(node.get("kind") or "").strip()
    if not kind:
        raise PlanConfigurationError(f"{where}: missing kind")
    name = str(node.get("name") or kind).strip()
    return ComponentDescriptor(
        name=name,
        kind=kind,
        properties=PropertyBlock.from_mapping(node.get("properties"), owner=name),
    )


def _check_keys(node: Dict[str, Any], allowed: set, where: str) -> None:
    unknown = sorted(set(node) - allowed)
    if unknown:
        raise PlanConfigurationError(f"{where}: unknown keys {unknown}")


def _mapping(node: Any, where: str) -> Dict[str, Any]:
    if not isinstance(node, dict):
        raise PlanConfigurationError(f"{where}: expected a mapping, got {type(node).__name__}")
    return node


def _list(node: Dict[str, Any], key: str, where: str) -> List[Any]:
    value = node.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise PlanConfigurationError(f"{where}: {key} must be a list")
    return value


def _int(value: Any, where: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise PlanConfigurationError(f"{where}: expected an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise PlanConfigurationError(f"{where}: expected an integer, got {value!r}") from None

