"""
Staging Buffers

In-memory, append-only tables that collect converted rows, rejected rows and warned
rows between bulk loads. The feed processor owns one of each per feed file and flushes
them every batch.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from migration.errors import RowRejection

LOAD_NUMBER_COLUMN = "LoadNum"
DATA_SOURCE_COLUMN = "DataSourceCode"

# DestColumn values for rows caught by plan-level row tests
LITMUS_TEST_FAILURE = "LitmusTestFailure"
WARN_TEST_FAILURE = "WarnTestFailure"

BAD_ROW_COLUMNS = [
    LOAD_NUMBER_COLUMN,
    DATA_SOURCE_COLUMN,
    "RowNumber",
    "DestColumn",
    "Reason",
    "ForeignId",
    "RowData",
]


class StagingTable:
    """Ordered buffer of records sharing one column schema."""

    def __init__(self, columns: Sequence[str]):
        self.columns: List[str] = list(columns)
        self._records: List[Dict[str, Any]] = []

    def append(self, record: Dict[str, Any]) -> None:
        self._records.append({column: record.get(column) for column in self.columns})

    def __len__(self) -> int:
        return len(self._records)

    def clear(self) -> None:
        self._records = []

    @property
    def records(self) -> List[Dict[str, Any]]:
        return list(self._records)

    def to_frame(self) -> pd.DataFrame:
        """DataFrame with the declared columns in order; absent values are None."""
        df = pd.DataFrame.from_records(self._records, columns=self.columns)
        return df.astype(object).where(pd.notna(df), None)


class BadRowsTable(StagingTable):
    """Rejected rows with the reason and the raw values they arrived with."""

    def __init__(self, data_source_code: str):
        super().__init__(BAD_ROW_COLUMNS)
        self.data_source_code = data_source_code

    def add(self, rejection: RowRejection, raw_row: Optional[Sequence[str]]) -> None:
        self.append({
            LOAD_NUMBER_COLUMN: rejection.load_number,
            DATA_SOURCE_COLUMN: self.data_source_code,
            "RowNumber": rejection.row_number,
            "DestColumn": rejection.dest_column,
            "Reason": rejection.reason,
            "ForeignId": rejection.foreign_id,
            "RowData": json.dumps(list(raw_row or [])),
        })


class WarnRowsTable(BadRowsTable):
    """Rows that tripped a warning test but were still processed, one record per warning."""

    def add_warnings(self, load_number: int, row_number: int, reasons: Sequence[str],
                     foreign_id: Optional[str], raw_row: Optional[Sequence[str]]) -> None:
        for reason in reasons:
            self.add(RowRejection(load_number, row_number, WARN_TEST_FAILURE, reason, foreign_id), raw_row)


def staging_columns(destination_columns: Sequence[str]) -> List[str]:
    """Staging schema: load bookkeeping columns followed by the plan's destination columns."""
    return [LOAD_NUMBER_COLUMN, DATA_SOURCE_COLUMN] + list(destination_columns)
