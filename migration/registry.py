"""
Component Registry

Name -> instance maps for every capability a load can use: methods, litmus tests,
post-row processors, lookups and existence checks.

A registry is built once per load from the closed set of built-in resolvers plus the
components the plan declares, validated against every feed file plan before the first
row is read, and frozen for the rest of the load. A name that does not resolve is a
configuration error that stops the load; it never surfaces row by row.
"""

import logging
from typing import Dict, Iterable, List, Optional

from migration.errors import PlanConfigurationError
from migration.lookups import Existence, Lookup, build_existences, build_lookups
from migration.plan import ComponentDescriptor, DataSourcePlan, FeedFilePlan, MigrationPlan
from migration.resolvers import (
    BUILTIN_LITMUS_TESTS,
    BUILTIN_METHODS,
    BUILTIN_POST_ROW_PROCESSORS,
    LitmusTest,
    MethodResolver,
    PostRowProcessor,
    Resolver,
    ResolverContext,
)

logger = logging.getLogger(__name__)

RESOLVER_FAMILIES = (
    (BUILTIN_METHODS, "methods"),
    (BUILTIN_LITMUS_TESTS, "litmus_tests"),
    (BUILTIN_POST_ROW_PROCESSORS, "post_row_processors"),
)


class ComponentRegistry:
    """Per-load registry of named capabilities."""

    def __init__(self):
        self.methods: Dict[str, MethodResolver] = {}
        self.litmus_tests: Dict[str, LitmusTest] = {}
        self.post_row_processors: Dict[str, PostRowProcessor] = {}
        self.lookups: Dict[str, Lookup] = {}
        self.existences: Dict[str, Existence] = {}
        self._frozen = False

    @classmethod
    def with_builtins(cls) -> "ComponentRegistry":
        """Registry holding every built-in resolver that runs without configuration."""
        registry = cls()
        for kinds, family in RESOLVER_FAMILIES:
            target = getattr(registry, family)
            for kind, resolver_cls in kinds.items():
                if not resolver_cls.needs_configuration:
                    target[kind] = resolver_cls()
        return registry

    # -- registration ------------------------------------------------------

    def _check_open(self) -> None:
        if self._frozen:
            raise PlanConfigurationError("Registry is frozen; register components before the load starts")

    def register_method(self, name: str, resolver: MethodResolver) -> None:
        self._check_open()
        self.methods[name] = resolver

    def register_litmus_test(self, name: str, resolver: LitmusTest) -> None:
        self._check_open()
        self.litmus_tests[name] = resolver

    def register_post_row_processor(self, name: str, resolver: PostRowProcessor) -> None:
        self._check_open()
        self.post_row_processors[name] = resolver

    def register_lookup(self, name: str, lookup: Lookup) -> None:
        self._check_open()
        self.lookups[name] = lookup

    def register_existence(self, name: str, existence: Existence) -> None:
        self._check_open()
        self.existences[name] = existence

    def register_descriptor(self, descriptor: ComponentDescriptor) -> Resolver:
        """
        Instantiate and register a plan-declared resolver.

        The descriptor's kind selects the implementation; its name is what mappings refer to.

        Raises:
            PlanConfigurationError: If the kind is unknown or its properties are invalid
        """
        self._check_open()
        for kinds, family in RESOLVER_FAMILIES:
            resolver_cls = kinds.get(descriptor.kind)
            if resolver_cls is not None:
                resolver = resolver_cls(descriptor.name, descriptor.properties)
                getattr(self, family)[descriptor.name] = resolver
                return resolver
        known = sorted(set(BUILTIN_METHODS) | set(BUILTIN_LITMUS_TESTS) | set(BUILTIN_POST_ROW_PROCESSORS))
        raise PlanConfigurationError(
            f"Unknown resolver kind '{descriptor.kind}' for {descriptor.name}; expected one of {known}"
        )

    # -- validation ----------------------------------------------------------

    def missing_for(self, plan: FeedFilePlan) -> List[str]:
        """Every name the feed file plan needs that is not registered."""
        missing = []
        missing += [f"method '{n}'" for n in plan.required_methods if n not in self.methods]
        missing += [f"litmus test '{n}'" for n in plan.required_litmus_tests if n not in self.litmus_tests]
        missing += [f"post-row processor '{n}'" for n in plan.required_post_row_processors
                    if n not in self.post_row_processors]

        used: List[Resolver] = []
        used += [self.methods[n] for n in plan.required_methods if n in self.methods]
        used += [self.litmus_tests[n] for n in plan.required_litmus_tests if n in self.litmus_tests]
        used += [self.post_row_processors[n] for n in plan.required_post_row_processors
                 if n in self.post_row_processors]
        for resolver in used:
            missing += [f"lookup '{n}' (used by {resolver.name})"
                        for n in resolver.required_lookups() if n not in self.lookups]
            missing += [f"existence '{n}' (used by {resolver.name})"
                        for n in resolver.required_existences() if n not in self.existences]

        destinations = set(plan.destination_columns)
        for name in plan.required_post_row_processors:
            processor = self.post_row_processors.get(name)
            if processor is None:
                continue
            missing += [f"destination column '{c}' (written by {name})"
                        for c in processor.derived_columns() if c not in destinations]
        return missing

    def validate(self, plans: Iterable[FeedFilePlan]) -> None:
        """
        Check that every referenced capability resolves.

        Raises:
            PlanConfigurationError: Listing every unresolved name, per feed file
        """
        problems = []
        for plan in plans:
            missing = self.missing_for(plan)
            if missing:
                problems.append(f"{plan.file_name}: {', '.join(missing)}")
        if problems:
            raise PlanConfigurationError("Unregistered plan references - " + "; ".join(problems))

    def freeze(self) -> "ComponentRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def context_for(self, load_number: int, data_source_code: str) -> ResolverContext:
        return ResolverContext(
            load_number=load_number,
            data_source_code=data_source_code,
            lookups=dict(self.lookups),
            existences=dict(self.existences),
        )


def build_load_context(
    migration_plan: MigrationPlan,
    data_source: DataSourcePlan,
    extra_methods: Optional[Dict[str, MethodResolver]] = None,
    extra_litmus_tests: Optional[Dict[str, LitmusTest]] = None,
    extra_post_row_processors: Optional[Dict[str, PostRowProcessor]] = None,
) -> ComponentRegistry:
    """
    Build, validate and freeze the registry for one data source's load.

    Global components come first; a data source component with the same name
    overrides the global one for this load only.

    Raises:
        PlanConfigurationError: If any descriptor is invalid or any reference is unregistered
    """
    descriptors = migration_plan.component_descriptors(data_source)

    registry = ComponentRegistry.with_builtins()
    for name, lookup in build_lookups(descriptors["lookups"]).items():
        registry.register_lookup(name, lookup)
    for name, existence in build_existences(descriptors["existences"]).items():
        registry.register_existence(name, existence)
    for descriptor in descriptors["resolvers"]:
        registry.register_descriptor(descriptor)

    for name, resolver in (extra_methods or {}).items():
        registry.register_method(name, resolver)
    for name, resolver in (extra_litmus_tests or {}).items():
        registry.register_litmus_test(name, resolver)
    for name, resolver in (extra_post_row_processors or {}).items():
        registry.register_post_row_processor(name, resolver)

    registry.validate(data_source.feed_files)
    logger.info(
        f"Registry for {data_source.code}: {len(registry.methods)} methods, "
        f"{len(registry.litmus_tests)} litmus tests, {len(registry.post_row_processors)} "
        f"post-row processors, {len(registry.lookups)} lookups, {len(registry.existences)} existences"
    )
    return registry.freeze()
