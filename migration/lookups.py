"""
Reference Data: Lookups and Existence Checks

A Lookup maps a raw key to a resolved value (e.g. country code to surrogate id).
An Existence check answers whether a referenced entity is known.

Both are configured per data source and queried by resolvers, never by the row
processor directly. A lookup miss is ordinary data: ``get`` returns None and the
calling resolver decides whether that rejects the row.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional, Set

import pandas as pd

from db.connection import DatabaseConnection
from migration.errors import PlanConfigurationError
from migration.plan import ComponentDescriptor
from migration.properties import PropertyBlock

logger = logging.getLogger(__name__)

LOG_EVERY_ROWS = 10000


def _normalize(key: Optional[str]) -> str:
    return "" if key is None else str(key).strip().lower()


class Lookup(ABC):
    """Case-insensitive key to value reference data."""

    def __init__(self, name: str, properties: PropertyBlock):
        self.name = name
        self.properties = properties
        self._values: Dict[str, str] = {}
        self.load()

    @abstractmethod
    def load(self) -> None:
        """Populate the lookup from its configured source."""

    def add(self, key: str, value: str) -> bool:
        """
        Add an entry. The first value seen for a key wins.

        Returns:
            True if the key was new
        """
        normalized = _normalize(key)
        if not normalized:
            return False
        if normalized in self._values:
            logger.warning(f"Lookup {self.name}: key '{key}' appears more than once, ignoring")
            return False
        self._values[normalized] = "" if value is None else str(value).strip()
        return True

    def get(self, key: str) -> Optional[str]:
        return self._values.get(_normalize(key))

    def contains(self, key: str) -> bool:
        return _normalize(key) in self._values

    def __len__(self) -> int:
        return len(self._values)


class PlanLookup(Lookup):
    """Entries listed directly in the plan: every property is a key/value pair."""

    def load(self) -> None:
        for key, value in self.properties.items():
            self.add(key, value)


class SqlQueryLookup(Lookup):
    """
    Entries read from a SQL query.

    Properties:
        queryText: SELECT statement to run
        keyName: column holding the key
        valueName: column holding the value
    """

    def load(self) -> None:
        query = self.properties.require("queryText")
        key_name = self.properties.require("keyName")
        value_name = self.properties.require("valueName")

        logger.debug(f"Lookup {self.name}: running query {query}")
        rows = DatabaseConnection.execute_query(query)
        for count, row in enumerate(rows, 1):
            key = row.get(key_name)
            if key is None or not str(key).strip():
                continue
            value = row.get(value_name)
            self.add(str(key), "" if value is None else str(value))
            if count % LOG_EVERY_ROWS == 0:
                logger.debug(f"Lookup {self.name}: loaded {count} rows")
        logger.info(f"Lookup {self.name} loaded {len(self)} entries")


class CsvFileLookup(Lookup):
    """
    Entries read from a delimited file.

    Properties:
        path: file to read
        keyColumn / valueColumn: header names of the key and value columns
        delimiter: optional, defaults to comma
    """

    def load(self) -> None:
        path = self.properties.require("path")
        key_column = self.properties.require("keyColumn")
        value_column = self.properties.require("valueColumn")
        delimiter = self.properties.get("delimiter", ",")

        df = pd.read_csv(path, sep=delimiter, dtype=str, keep_default_na=False)
        missing = [c for c in (key_column, value_column) if c not in df.columns]
        if missing:
            raise PlanConfigurationError(
                f"Lookup {self.name}: columns {missing} not found in {path}"
            )
        for key, value in zip(df[key_column], df[value_column]):
            self.add(key, value)
        logger.info(f"Lookup {self.name} loaded {len(self)} entries from {path}")


class Existence(ABC):
    """
    Case-insensitive membership set.

    It can grow during a load (``add``), which makes an empty existence usable as a
    first-writer-wins de-duplication set.
    """

    def __init__(self, name: str, properties: PropertyBlock):
        self.name = name
        self.properties = properties
        self._values: Set[str] = set()
        self._lock = threading.Lock()
        self.load()

    @abstractmethod
    def load(self) -> None:
        """Populate the initial members."""

    def add(self, value: str) -> bool:
        """
        Add a member.

        Returns:
            True if the value was not already present
        """
        normalized = _normalize(value)
        with self._lock:
            if normalized in self._values:
                return False
            self._values.add(normalized)
            return True

    def exists(self, value: str) -> bool:
        normalized = _normalize(value)
        with self._lock:
            return normalized in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)


class PlanExistence(Existence):
    """Members listed in the plan as property values. May be empty."""

    def load(self) -> None:
        for _, value in self.properties.items():
            self.add(value)


class SqlQueryExistence(Existence):
    """
    Members read from a SQL query.

    Properties:
        queryText: SELECT statement to run
        itemName: column holding the member value
    """

    def load(self) -> None:
        query = self.properties.require("queryText")
        item_name = self.properties.require("itemName")

        rows = DatabaseConnection.execute_query(query)
        for row in rows:
            item = row.get(item_name)
            self.add("" if item is None else str(item))
        logger.info(f"Existence {self.name} loaded {len(self)} members")


LOOKUP_KINDS = {
    "plan": PlanLookup,
    "sql": SqlQueryLookup,
    "csv": CsvFileLookup,
}

EXISTENCE_KINDS = {
    "plan": PlanExistence,
    "sql": SqlQueryExistence,
}


def build_lookups(descriptors: Iterable[ComponentDescriptor]) -> Dict[str, Lookup]:
    """
    Instantiate lookups from plan descriptors. Later descriptors override earlier ones.

    Raises:
        PlanConfigurationError: If a descriptor names an unknown kind
    """
    return {d.name: _instantiate(d, LOOKUP_KINDS, "lookup") for d in descriptors}


def build_existences(descriptors: Iterable[ComponentDescriptor]) -> Dict[str, Existence]:
    return {d.name: _instantiate(d, EXISTENCE_KINDS, "existence") for d in descriptors}


def _instantiate(descriptor: ComponentDescriptor, kinds: dict, family: str):
    cls = kinds.get(descriptor.kind)
    if cls is None:
        raise PlanConfigurationError(
            f"Unknown {family} kind '{descriptor.kind}' for {descriptor.name}; "
            f"expected one of {sorted(kinds)}"
        )
    return cls(descriptor.name, descriptor.properties)
