"""
Feed Staging

Issues load numbers and writes converted, rejected and warned rows to their staging
tables. The feed processor flushes to the stager once per batch.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import pandas as pd
from psycopg2 import sql

from db.connection import DatabaseConnection
from migration.errors import StagingError
from migration.properties import PropertyBlock
from migration.staging import BadRowsTable, StagingTable, WarnRowsTable

logger = logging.getLogger(__name__)


class FeedStager(ABC):
    """Destination for staged rows and bad rows."""

    @abstractmethod
    def get_load_number(self, data_source_code: str) -> int:
        """Allocate a new, unique load number."""

    @abstractmethod
    def bulk_load(
        self,
        staged: StagingTable,
        bad_rows: BadRowsTable,
        location: str,
        bad_rows_location: str,
        warn_rows: Optional[WarnRowsTable] = None,
        warn_rows_location: str = "",
    ) -> None:
        """
        Write one batch. Blank bad and warn row locations fall back to the stager's default tables.

        Raises:
            StagingError: If any table cannot be written
        """


class SqlFeedStager(FeedStager):
    """
    PostgreSQL stager.

    Properties:
        loadNumberTable: table whose identity column issues load numbers (default load_num)
        pageSize: rows per generated INSERT statement (default 500)
    """

    def __init__(self, properties: Optional[PropertyBlock] = None, bad_rows_table: str = "bad_rows",
                 warn_rows_table: str = "warn_rows"):
        self.properties = properties if properties is not None else PropertyBlock(owner="stager")
        self.load_number_table = self.properties.get("loadNumberTable", "load_num")
        self.page_size = self.properties.get_int("pageSize", default=500)
        self.default_bad_rows_table = bad_rows_table
        self.default_warn_rows_table = warn_rows_table

    def get_load_number(self, data_source_code: str) -> int:
        query = sql.SQL("INSERT INTO {table} DEFAULT VALUES RETURNING {column}").format(
            table=_identifier(self.load_number_table),
            column=sql.Identifier("LoadNum"),
        )
        try:
            load_number = DatabaseConnection.execute_returning(query)
        except Exception as e:
            raise StagingError(f"Could not obtain a load number for {data_source_code}: {e}") from e
        if load_number is None:
            raise StagingError(f"{self.load_number_table} returned no load number for {data_source_code}")
        logger.info(f"Obtained load number {load_number} for {data_source_code}")
        return int(load_number)

    def bulk_load(
        self,
        staged: StagingTable,
        bad_rows: BadRowsTable,
        location: str,
        bad_rows_location: str,
        warn_rows: Optional[WarnRowsTable] = None,
        warn_rows_location: str = "",
    ) -> None:
        if len(staged) and not location:
            raise StagingError("Cannot stage rows: feed file plan has no staging location")
        self._insert_frame(staged.to_frame(), location)
        self._insert_frame(bad_rows.to_frame(), bad_rows_location or self.default_bad_rows_table)
        if warn_rows is not None:
            self._insert_frame(warn_rows.to_frame(), warn_rows_location or self.default_warn_rows_table)

    def _insert_frame(self, df: pd.DataFrame, table_name: str) -> int:
        if df.empty:
            return 0

        columns: List[str] = list(df.columns)
        query = sql.SQL("INSERT INTO {table} ({columns}) VALUES %s").format(
            table=_identifier(table_name),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        )
        rows = [tuple(record) for record in df.itertuples(index=False, name=None)]
        try:
            inserted = DatabaseConnection.execute_values(query, rows, page_size=self.page_size)
        except Exception as e:
            raise StagingError(f"Failed to insert {len(rows)} rows into {table_name}: {e}") from e
        logger.debug(f"Inserted {inserted} rows into {table_name}")
        return inserted


def _identifier(name: str) -> sql.Identifier:
    """Identifier for an optionally schema-qualified table name."""
    return sql.Identifier(*name.split("."))
