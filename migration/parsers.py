"""
Feed File Parsers

Read a feed file as positional string rows. Parsers know nothing about plans beyond
their own descriptor properties; the feed processor applies skip_lines and mappings.
"""

import csv
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from migration.errors import FeedAccessError, PlanConfigurationError
from migration.plan import ComponentDescriptor
from migration.properties import PropertyBlock

logger = logging.getLogger(__name__)

ParsedRow = Tuple[int, List[str]]


class Parser(ABC):
    """
    Positional row reader used as a context manager:

        with build_parser(descriptor) as parser:
            parser.open(path)
            for row_number, values in parser.rows():
                ...
    """

    def __init__(self, properties: Optional[PropertyBlock] = None):
        self.properties = properties if properties is not None else PropertyBlock(owner="parser")

    @abstractmethod
    def open(self, path: Union[str, Path]) -> None:
        """Open the file for reading."""

    @abstractmethod
    def rows(self, skip_lines: int = 0) -> Iterator[ParsedRow]:
        """
        Yield (row_number, values) for every record after the first ``skip_lines``.

        Row numbers are 1-based and count the skipped records, so they match the
        record's position in the file.
        """

    @abstractmethod
    def close(self) -> None:
        """Release the file handle."""

    def __enter__(self) -> "Parser":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class DelimitedParser(Parser):
    """
    Delimited text parser. Rows keep exactly the cells present in the file, so a
    short row surfaces later as an out-of-range rejection rather than padded blanks.

    Properties:
        delimiter: single character; defaults to the kind's delimiter
        encoding: file encoding, default utf-8
    """

    default_delimiter = ","

    def __init__(self, properties: Optional[PropertyBlock] = None):
        super().__init__(properties)
        self.delimiter = self.properties.as_dict().get("delimiter") or self.default_delimiter
        if self.delimiter == "\\t":
            self.delimiter = "\t"
        if len(self.delimiter) != 1:
            raise PlanConfigurationError(f"Parser delimiter must be a single character, got '{self.delimiter}'")
        self.encoding = self.properties.get("encoding", "utf-8")
        self._file = None
        self.path: Optional[Path] = None

    def open(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        try:
            self._file = open(self.path, encoding=self.encoding, newline="")
        except OSError as e:
            raise FeedAccessError(f"Error opening feed file {self.path}: {e}") from e
        logger.debug(f"Opened {self.path} with delimiter {self.delimiter!r}")

    def rows(self, skip_lines: int = 0) -> Iterator[ParsedRow]:
        if self._file is None:
            raise FeedAccessError("Parser is not open")

        reader = csv.reader(self._file, delimiter=self.delimiter)
        row_number = 0
        try:
            for values in reader:
                row_number += 1
                if row_number <= skip_lines:
                    continue
                # csv.reader returns [] for blank lines
                if not values:
                    continue
                yield row_number, values
        except csv.Error as e:
            raise FeedAccessError(f"{self.path}: parse error at line {reader.line_num}: {e}") from e

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


class TabDelimitedParser(DelimitedParser):
    default_delimiter = "\t"


PARSER_KINDS = {
    "csv": DelimitedParser,
    "tab": TabDelimitedParser,
}


def build_parser(descriptor: Optional[ComponentDescriptor]) -> Parser:
    """
    Instantiate the parser a feed file plan declares; files without one are read as CSV.

    Raises:
        PlanConfigurationError: If the parser kind is unknown
    """
    if descriptor is None:
        return DelimitedParser()
    parser_cls = PARSER_KINDS.get(descriptor.kind)
    if parser_cls is None:
        raise PlanConfigurationError(
            f"Unknown parser kind '{descriptor.kind}'; expected one of {sorted(PARSER_KINDS)}"
        )
    return parser_cls(descriptor.properties)
