"""
Record store contract and the in-process implementation.

Every method is a single atomic step against one row or one table. Engines
build their workflows out of these steps and never rely on a read staying
fresh between two calls; anything that must hold across a read and a write is
expressed as a guarded ``update`` or a bounded ``adjust``.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel

from .errors import DuplicateRowError, MultipleRowsError, StoreUnavailableError

logger = logging.getLogger(__name__)


TABLES = (
    "orders",
    "order_claims",
    "rewards",
    "reward_purchases",
    "students",
    "point_overrides",
)

UNIQUE_KEYS = {
    "students": ("name", "student_group"),
}


def to_row(model: BaseModel) -> dict:
    row = model.model_dump()
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in row.items()}


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class LedgerStore(ABC):
    @abstractmethod
    def insert(self, table: str, row: dict) -> dict:
        """Insert a row and return it. Raises DuplicateRowError on a unique key clash."""

    @abstractmethod
    def get(self, table: str, row_id: UUID) -> Optional[dict]:
        pass

    @abstractmethod
    def select(
        self,
        table: str,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict]:
        pass

    @abstractmethod
    def update(
        self,
        table: str,
        row_id: UUID,
        values: dict,
        expect: Optional[dict] = None,
    ) -> Optional[dict]:
        """
        Apply ``values`` to one row if every ``expect`` column still holds the
        given value. Returns the updated row, or None when the row is missing
        or a precondition failed.
        """

    @abstractmethod
    def adjust(
        self,
        table: str,
        row_id: UUID,
        column: str,
        delta: int,
        minimum: Optional[int] = None,
        maximum_column: Optional[str] = None,
        expect: Optional[dict] = None,
    ) -> Optional[dict]:
        """
        Atomically add ``delta`` to a numeric column. The change is refused
        (None is returned) when the result would drop below ``minimum`` or rise
        above the row's own ``maximum_column``.
        """

    @abstractmethod
    def delete(self, table: str, row_id: UUID) -> bool:
        pass

    def single(self, table: str, **filters) -> Optional[dict]:
        rows = self.select(table, filters)
        if len(rows) > 1:
            raise MultipleRowsError(f"{len(rows)} rows in {table} match {filters}")
        return rows[0] if rows else None


class InMemoryStorage(LedgerStore):
    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._lock = threading.Lock()
        self.tables: dict[str, dict[UUID, dict]] = {name: {} for name in TABLES}

    @contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=self.timeout):
            logger.warning("In-memory store lock not acquired within %.1fs", self.timeout)
            raise StoreUnavailableError(f"Store did not respond within {self.timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    def _table(self, table: str) -> dict[UUID, dict]:
        try:
            return self.tables[table]
        except KeyError:
            raise ValueError(f"Unknown table {table}") from None

    @staticmethod
    def _matches(row: dict, filters: Optional[dict]) -> bool:
        if not filters:
            return True
        return all(row.get(k) == _plain(v) for k, v in filters.items())

    def insert(self, table: str, row: dict) -> dict:
        row = {k: _plain(v) for k, v in row.items()}
        with self._locked():
            rows = self._table(table)
            if row["id"] in rows:
                raise DuplicateRowError(f"{table} already has a row with id {row['id']}")
            unique = UNIQUE_KEYS.get(table)
            if unique:
                key = {col: row.get(col) for col in unique}
                if any(self._matches(existing, key) for existing in rows.values()):
                    raise DuplicateRowError(f"{table} already has a row for {key}")
            rows[row["id"]] = row
            return deepcopy(row)

    def get(self, table: str, row_id: UUID) -> Optional[dict]:
        with self._locked():
            row = self._table(table).get(row_id)
            return deepcopy(row) if row is not None else None

    def select(
        self,
        table: str,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict]:
        with self._locked():
            rows = [deepcopy(r) for r in self._table(table).values() if self._matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: r[order_by], reverse=descending)
        return rows

    def update(
        self,
        table: str,
        row_id: UUID,
        values: dict,
        expect: Optional[dict] = None,
    ) -> Optional[dict]:
        with self._locked():
            row = self._table(table).get(row_id)
            if row is None or not self._matches(row, expect):
                return None
            row.update({k: _plain(v) for k, v in values.items()})
            return deepcopy(row)

    def adjust(
        self,
        table: str,
        row_id: UUID,
        column: str,
        delta: int,
        minimum: Optional[int] = None,
        maximum_column: Optional[str] = None,
        expect: Optional[dict] = None,
    ) -> Optional[dict]:
        with self._locked():
            row = self._table(table).get(row_id)
            if row is None or not self._matches(row, expect):
                return None
            new_value = row[column] + delta
            if minimum is not None and new_value < minimum:
                return None
            if maximum_column is not None and new_value > row[maximum_column]:
                return None
            row[column] = new_value
            return deepcopy(row)

    def delete(self, table: str, row_id: UUID) -> bool:
        with self._locked():
            return self._table(table).pop(row_id, None) is not None
