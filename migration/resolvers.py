"""
Resolvers

Named, pluggable units that the row processor calls while building a row:

- MethodResolver: computes one destination value from N source values
- LitmusTest: decides whether a transform runs at all
- PostRowProcessor: adjusts the finished row (derived columns, cross-column checks)

Methods and post-row processors report bad data by returning a reason, in the same
(value, error) shape used throughout the engine. Raising is reserved for bugs.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Mapping, Optional, Tuple

import pandas as pd

from migration.errors import PlanConfigurationError
from migration.lookups import Existence, Lookup
from migration.properties import PropertyBlock

logger = logging.getLogger(__name__)

MethodResult = Tuple[Optional[str], Optional[str]]
PostRowFailure = Tuple[str, str]


@dataclass(frozen=True)
class ResolverContext:
    """Load-scoped state handed to every resolver call."""

    load_number: int
    data_source_code: str
    lookups: Mapping[str, Lookup] = field(default_factory=dict)
    existences: Mapping[str, Existence] = field(default_factory=dict)

    def lookup(self, name: str) -> Lookup:
        return self.lookups[name]

    def existence(self, name: str) -> Existence:
        return self.existences[name]


class Resolver(ABC):
    """Common configuration plumbing for all resolver kinds."""

    kind: str = ""
    # kinds that cannot run without descriptor properties are only available when declared
    needs_configuration = False

    def __init__(self, name: Optional[str] = None, properties: Optional[PropertyBlock] = None):
        self.name = name or self.kind
        self.properties = properties if properties is not None else PropertyBlock(owner=self.name)
        self.configure(self.properties)

    def configure(self, properties: PropertyBlock) -> None:
        """Read settings from the descriptor properties. Raise PlanConfigurationError on bad values."""

    def required_lookups(self) -> List[str]:
        return []

    def required_existences(self) -> List[str]:
        return []

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class MethodResolver(Resolver):
    @abstractmethod
    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        """
        Compute a destination value.

        Returns:
            Tuple of (value, error_reason); exactly one of them is None
        """


class LitmusTest(Resolver):
    @abstractmethod
    def test(self, context: ResolverContext, args: List[str]) -> bool:
        """Return True when the gated transform should run."""


class PostRowProcessor(Resolver):
    @abstractmethod
    def process(self, context: ResolverContext, row: Dict[str, Optional[str]]) -> Optional[PostRowFailure]:
        """
        Adjust the transformed row in place.

        Returns:
            None on success, or (destination_column, reason) to reject the row
        """

    def commit(self, context: ResolverContext, row: Dict[str, Optional[str]]) -> None:
        """Called once the row has been added to the staging table."""

    def derived_columns(self) -> List[str]:
        """Destination columns this processor writes."""
        return []


# ---------------------------------------------------------------------------
# Methods
# ---------------------------------------------------------------------------

EMAIL_REGEX = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
MAX_EMAIL_LENGTH = 50


def _first(args: List[str]) -> str:
    return args[0] if args else ""


class ToUpperMethod(MethodResolver):
    """Upper-cases the first argument. With rejectEmpty, blank input rejects the row."""

    kind = "toUpper"

    def configure(self, properties: PropertyBlock) -> None:
        self.reject_empty = properties.get_bool("rejectEmpty")

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        value = _first(args)
        if self.reject_empty and not value.strip():
            return None, "value is required"
        return value.upper(), None


class TrimMethod(MethodResolver):
    """Collapses runs of whitespace inside the value."""

    kind = "trim"

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        return " ".join(_first(args).split()), None


class LookupMethod(MethodResolver):
    """
    Replaces the value with its entry in a named lookup.

    Properties:
        lookup: name of the lookup (required)
        onMiss: reject (default), default, or passThrough
        default: value used when onMiss is default
    """

    kind = "lookup"
    needs_configuration = True
    MISS_POLICIES = ("reject", "default", "passThrough")

    def configure(self, properties: PropertyBlock) -> None:
        self.lookup_name = properties.require("lookup")
        self.on_miss = properties.get("onMiss", "reject")
        if self.on_miss not in self.MISS_POLICIES:
            raise PlanConfigurationError(
                f"Resolver {self.name}: onMiss must be one of {self.MISS_POLICIES}, got '{self.on_miss}'"
            )
        self.default = properties.get("default", "")

    def required_lookups(self) -> List[str]:
        return [self.lookup_name]

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        key = _first(args)
        value = context.lookup(self.lookup_name).get(key)
        if value is not None:
            return value, None
        if self.on_miss == "default":
            return self.default, None
        if self.on_miss == "passThrough":
            return key, None
        return None, f"key '{key}' not found in lookup {self.lookup_name}"


class ExistsInMethod(MethodResolver):
    """
    Passes the value through only if it exists in a named existence check.

    Properties:
        existence: name of the existence check (required)
        rejectIfMissing: defaults to true; when false a missing value becomes blank
    """

    kind = "existsIn"
    needs_configuration = True

    def configure(self, properties: PropertyBlock) -> None:
        self.existence_name = properties.require("existence")
        self.reject_if_missing = properties.get_bool("rejectIfMissing", default=True)

    def required_existences(self) -> List[str]:
        return [self.existence_name]

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        value = _first(args)
        if context.existence(self.existence_name).exists(value):
            return value, None
        if self.reject_if_missing:
            return None, f"'{value}' does not exist in {self.existence_name}"
        return "", None


class ValidateEmailMethod(MethodResolver):
    """Lower-cases and validates an email address."""

    kind = "validateEmail"

    def configure(self, properties: PropertyBlock) -> None:
        self.allow_blank = properties.get_bool("allowBlank")

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        value = _first(args).strip().lower()
        if not value:
            return ("", None) if self.allow_blank else (None, "email is required")
        if len(value) > MAX_EMAIL_LENGTH:
            return None, f"email exceeds maximum length of {MAX_EMAIL_LENGTH} characters"
        if not EMAIL_REGEX.match(value):
            return None, f"invalid email format: {value}"
        return value, None


class ConcatMethod(MethodResolver):
    """Joins the non-blank arguments, e.g. first and last name into a full name."""

    kind = "concat"

    def configure(self, properties: PropertyBlock) -> None:
        self.separator = properties.as_dict().get("separator", " ")

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        return self.separator.join(arg for arg in args if arg.strip()), None


class ParseIntMethod(MethodResolver):
    kind = "parseInt"

    def configure(self, properties: PropertyBlock) -> None:
        self.allow_blank = properties.get_bool("allowBlank")

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        value = _first(args).strip()
        if not value:
            return ("", None) if self.allow_blank else (None, "integer value is required")
        try:
            return str(int(value)), None
        except ValueError:
            return None, f"'{value}' is not a valid integer"


class ParseDecimalMethod(MethodResolver):
    kind = "parseDecimal"

    def configure(self, properties: PropertyBlock) -> None:
        self.allow_blank = properties.get_bool("allowBlank")

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        value = _first(args).strip().replace(",", "")
        if not value:
            return ("", None) if self.allow_blank else (None, "decimal value is required")
        try:
            number = Decimal(value)
        except InvalidOperation:
            return None, f"'{value}' is not a valid decimal"
        if not number.is_finite():
            return None, f"'{value}' is not a valid decimal"
        return str(number), None


class ValidateDateMethod(MethodResolver):
    """
    Normalizes a date to ISO format; blanks pass through as blank.

    Properties:
        formats: comma-separated strptime formats tried in order; when absent,
                 pandas infers the format
    """

    kind = "validateDate"

    def configure(self, properties: PropertyBlock) -> None:
        self.formats = properties.get_list("formats")

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        value = _first(args).strip()
        if not value:
            return "", None
        if self.formats:
            for fmt in self.formats:
                try:
                    return datetime.strptime(value, fmt).isoformat(), None
                except ValueError:
                    continue
            return None, f"'{value}' does not match any of {self.formats}"
        parsed = pd.to_datetime(value, errors="coerce")
        if pd.isna(parsed):
            return None, f"'{value}' is not a valid date"
        return parsed.to_pydatetime().isoformat(), None


class UnixTimeToDateMethod(MethodResolver):
    """Converts seconds since the epoch to an ISO UTC timestamp; non-numeric input becomes blank."""

    kind = "unixTimeToDate"

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        try:
            stamp = datetime.fromtimestamp(float(_first(args)), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return "", None
        return stamp.isoformat(), None


class UseLoadNumberMethod(MethodResolver):
    kind = "useLoadNumber"

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        return str(context.load_number), None


class DefaultIfBlankMethod(MethodResolver):
    kind = "defaultIfBlank"
    needs_configuration = True

    def configure(self, properties: PropertyBlock) -> None:
        self.default = properties.require("default")

    def resolve(self, context: ResolverContext, args: List[str]) -> MethodResult:
        value = _first(args)
        return (value if value.strip() else self.default), None


# ---------------------------------------------------------------------------
# Litmus tests
# ---------------------------------------------------------------------------

class NotBlankTest(LitmusTest):
    kind = "notBlank"

    def test(self, context: ResolverContext, args: List[str]) -> bool:
        return bool(args) and all(arg.strip() for arg in args)


class ValidEmailTest(LitmusTest):
    kind = "validEmail"

    def test(self, context: ResolverContext, args: List[str]) -> bool:
        value = _first(args).strip()
        return len(value) <= MAX_EMAIL_LENGTH and bool(EMAIL_REGEX.match(value))


class MatchesPatternTest(LitmusTest):
    kind = "matchesPattern"
    needs_configuration = True

    def configure(self, properties: PropertyBlock) -> None:
        pattern = properties.require("pattern")
        try:
            self.pattern = re.compile(pattern)
        except re.error as e:
            raise PlanConfigurationError(f"Litmus test {self.name}: bad pattern '{pattern}': {e}") from e

    def test(self, context: ResolverContext, args: List[str]) -> bool:
        return bool(self.pattern.fullmatch(_first(args)))


class LookupHasKeyTest(LitmusTest):
    kind = "lookupHasKey"
    needs_configuration = True

    def configure(self, properties: PropertyBlock) -> None:
        self.lookup_name = properties.require("lookup")

    def required_lookups(self) -> List[str]:
        return [self.lookup_name]

    def test(self, context: ResolverContext, args: List[str]) -> bool:
        return context.lookup(self.lookup_name).contains(_first(args))


# ---------------------------------------------------------------------------
# Post-row processors
# ---------------------------------------------------------------------------

class ConcatColumnsProcessor(PostRowProcessor):
    """Derives ``target`` from the non-blank values of ``sources``."""

    kind = "concatColumns"
    needs_configuration = True

    def configure(self, properties: PropertyBlock) -> None:
        self.target = properties.require("target")
        self.sources = properties.get_list("sources", required=True)
        self.separator = properties.as_dict().get("separator", " ")

    def derived_columns(self) -> List[str]:
        return [self.target]

    def process(self, context: ResolverContext, row: Dict[str, Optional[str]]) -> Optional[PostRowFailure]:
        parts = [row.get(source) or "" for source in self.sources]
        row[self.target] = self.separator.join(part for part in parts if part.strip())
        return None


class RequireColumnsProcessor(PostRowProcessor):
    """Rejects rows where any of ``columns`` ended up absent or blank."""

    kind = "requireColumns"
    needs_configuration = True

    def configure(self, properties: PropertyBlock) -> None:
        self.columns = properties.get_list("columns", required=True)

    def process(self, context: ResolverContext, row: Dict[str, Optional[str]]) -> Optional[PostRowFailure]:
        for column in self.columns:
            value = row.get(column)
            if value is None or not str(value).strip():
                return column, f"required column {column} is blank"
        return None


class UniqueWithinFeedProcessor(PostRowProcessor):
    """
    First writer wins: the first staged row carrying a value is kept, later ones are rejected.
    A value is only claimed once its row reaches the staging table.

    Properties:
        column: destination column to check
        existence: existence check that accumulates the values seen
    """

    kind = "uniqueWithinFeed"
    needs_configuration = True

    def configure(self, properties: PropertyBlock) -> None:
        self.column = properties.require("column")
        self.existence_name = properties.require("existence")

    def required_existences(self) -> List[str]:
        return [self.existence_name]

    def process(self, context: ResolverContext, row: Dict[str, Optional[str]]) -> Optional[PostRowFailure]:
        value = row.get(self.column)
        if value is None or not str(value).strip():
            return None
        if context.existence(self.existence_name).exists(value):
            return self.column, f"'{value}' already seen in this feed"
        return None

    def commit(self, context: ResolverContext, row: Dict[str, Optional[str]]) -> None:
        value = row.get(self.column)
        if value is not None and str(value).strip():
            context.existence(self.existence_name).add(value)


class CopyColumnProcessor(PostRowProcessor):
    kind = "copyColumn"
    needs_configuration = True

    def configure(self, properties: PropertyBlock) -> None:
        self.source = properties.require("source")
        self.target = properties.require("target")

    def process(self, context: ResolverContext, row: Dict[str, Optional[str]]) -> Optional[PostRowFailure]:
        if self.source in row:
            row[self.target] = row[self.source]
        return None

    def derived_columns(self) -> List[str]:
        return [self.target]


BUILTIN_METHODS = {cls.kind: cls for cls in (
    ToUpperMethod,
    TrimMethod,
    LookupMethod,
    ExistsInMethod,
    ValidateEmailMethod,
    ConcatMethod,
    ParseIntMethod,
    ParseDecimalMethod,
    ValidateDateMethod,
    UnixTimeToDateMethod,
    UseLoadNumberMethod,
    DefaultIfBlankMethod,
)}

BUILTIN_LITMUS_TESTS = {cls.kind: cls for cls in (
    NotBlankTest,
    ValidEmailTest,
    MatchesPatternTest,
    LookupHasKeyTest,
)}

BUILTIN_POST_ROW_PROCESSORS = {cls.kind: cls for cls in (
    ConcatColumnsProcessor,
    RequireColumnsProcessor,
    UniqueWithinFeedProcessor,
    CopyColumnProcessor,
)}
