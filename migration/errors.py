"""
Error Taxonomy

Row rejections are ordinary values: they travel back to the feed processor as results
and exclude one row from staging. Everything else here is an exception that stops a
load (configuration, resolver bugs) or is reported to the caller (staging, export,
feed access).
"""

from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class RowRejection:
    """
    A row that cannot be staged.

    Only one destination column is ever attributed, even when several source
    columns fed the failing transform.
    """

    load_number: int
    row_number: int
    dest_column: str
    reason: str
    foreign_id: Optional[str] = None

    def with_foreign_id(self, foreign_id: Optional[str]) -> "RowRejection":
        return replace(self, foreign_id=foreign_id)

    def __str__(self) -> str:
        return (
            f"load {self.load_number}, row {self.row_number}, "
            f"column {self.dest_column}: {self.reason}"
        )


class MigrationError(Exception):
    """Base class for engine errors."""


class PlanConfigurationError(MigrationError):
    """A plan references something that is not registered or is malformed. Fatal for the load."""


class ResolverError(MigrationError):
    """A resolver raised instead of returning a rejection; this is a bug in the resolver."""


class StagingError(MigrationError):
    """Staged or bad rows could not be written."""


class FeedAccessError(MigrationError):
    """Feed files could not be located or fetched."""


class ExportError(MigrationError):
    """An outbound artifact could not be transferred."""
