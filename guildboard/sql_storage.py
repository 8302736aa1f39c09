"""
SQL-backed record store built on SQLAlchemy Core.

Guarded updates and bounded adjustments compile to a single
``UPDATE ... WHERE`` statement, so the database performs the check and the
write in one step, e.g. ``UPDATE students SET total_points = total_points - :amt
WHERE id = :id AND total_points - :amt >= 0``.
"""

import logging
from contextlib import contextmanager
from typing import Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.pool import StaticPool

from .errors import DuplicateRowError, InvalidInputError, StoreUnavailableError
from .storage import LedgerStore, _plain

logger = logging.getLogger(__name__)


metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("title", String(200), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("rank", String(2), nullable=False),
    Column("max_slots", Integer, nullable=False),
    Column("taken_slots", Integer, nullable=False, default=0),
    Column("reward_points", Integer, nullable=False),
    Column("status", String(16), nullable=False, default="open"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("max_slots >= 1", name="ck_orders_max_slots"),
    CheckConstraint("taken_slots >= 0 AND taken_slots <= max_slots", name="ck_orders_taken_slots"),
    CheckConstraint("status IN ('open', 'completed')", name="ck_orders_status"),
)

order_claims = Table(
    "order_claims",
    metadata,
    Column("id", Uuid, primary_key=True),
    # No foreign key: claims outlive deleted orders
    Column("order_id", Uuid, nullable=False, index=True),
    Column("student_name", String(200), nullable=False),
    Column("student_group", String(100), nullable=False),
    Column("comment", Text, nullable=False, default=""),
    Column("status", String(16), nullable=False, default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("order_title", String(200)),
    Column("order_reward_points", Integer),
    CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="ck_order_claims_status"),
)

rewards = Table(
    "rewards",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("title", String(200), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("price", Integer, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("price > 0", name="ck_rewards_price"),
)

reward_purchases = Table(
    "reward_purchases",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("reward_id", Uuid, nullable=False, index=True),
    Column("student_name", String(200), nullable=False),
    Column("student_group", String(100), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("total_price", Integer, nullable=False),
    Column("comment", Text, nullable=False, default=""),
    Column("status", String(16), nullable=False, default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("reward_title", String(200)),
    CheckConstraint("quantity >= 1 AND quantity <= 10", name="ck_reward_purchases_quantity"),
    CheckConstraint(
        "status IN ('pending', 'approved', 'rejected', 'delivered')",
        name="ck_reward_purchases_status",
    ),
)

students = Table(
    "students",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("name", String(200), nullable=False),
    Column("student_group", String(100), nullable=False),
    Column("total_points", Integer, nullable=False, default=0),
    UniqueConstraint("name", "student_group", name="uq_students_name_group"),
    CheckConstraint("total_points >= 0", name="ck_students_total_points"),
)

point_overrides = Table(
    "point_overrides",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("student_id", Uuid, nullable=False, index=True),
    Column("previous_total", Integer, nullable=False),
    Column("new_total", Integer, nullable=False),
    Column("performed_by", String(200)),
    Column("reason", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


def build_engine(url: str, timeout: float = 5.0) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": timeout}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # A private in-memory database only lives as long as its connection
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_timeout=timeout, pool_pre_ping=True)


class SqlStorage(LedgerStore):
    def __init__(self, engine: Engine, create_tables: bool = True):
        self.engine = engine
        if create_tables:
            metadata.create_all(self.engine)

    @classmethod
    def from_url(cls, url: str, timeout: float = 5.0) -> "SqlStorage":
        return cls(build_engine(url, timeout))

    @contextmanager
    def _begin(self, on_conflict=InvalidInputError):
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as e:
            raise on_conflict(str(e.orig)) from e
        except DBAPIError as e:
            logger.warning("Database call failed: %s", e.orig)
            raise StoreUnavailableError(f"Database unavailable: {e.orig}") from e

    @staticmethod
    def _table(table: str) -> Table:
        try:
            return metadata.tables[table]
        except KeyError:
            raise ValueError(f"Unknown table {table}") from None

    @staticmethod
    def _where(t: Table, filters: Optional[dict]) -> list:
        return [t.c[k] == _plain(v) for k, v in (filters or {}).items()]

    @staticmethod
    def _fetch(conn: Connection, t: Table, row_id: UUID) -> Optional[dict]:
        row = conn.execute(select(t).where(t.c.id == row_id)).first()
        return dict(row._mapping) if row is not None else None

    def insert(self, table: str, row: dict) -> dict:
        t = self._table(table)
        with self._begin(on_conflict=DuplicateRowError) as conn:
            conn.execute(insert(t).values({k: _plain(v) for k, v in row.items()}))
            return self._fetch(conn, t, row["id"])

    def get(self, table: str, row_id: UUID) -> Optional[dict]:
        t = self._table(table)
        with self._begin() as conn:
            return self._fetch(conn, t, row_id)

    def select(
        self,
        table: str,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict]:
        t = self._table(table)
        stmt = select(t)
        if filters:
            stmt = stmt.where(*self._where(t, filters))
        if order_by:
            stmt = stmt.order_by(t.c[order_by].desc() if descending else t.c[order_by].asc())
        with self._begin() as conn:
            return [dict(r._mapping) for r in conn.execute(stmt)]

    def update(
        self,
        table: str,
        row_id: UUID,
        values: dict,
        expect: Optional[dict] = None,
    ) -> Optional[dict]:
        t = self._table(table)
        stmt = (
            update(t)
            .where(t.c.id == row_id, *self._where(t, expect))
            .values({k: _plain(v) for k, v in values.items()})
        )
        with self._begin() as conn:
            if conn.execute(stmt).rowcount == 0:
                return None
            return self._fetch(conn, t, row_id)

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
        t = self._table(table)
        target = t.c[column] + delta
        conditions = [t.c.id == row_id, *self._where(t, expect)]
        if minimum is not None:
            conditions.append(target >= minimum)
        if maximum_column is not None:
            conditions.append(target <= t.c[maximum_column])
        stmt = update(t).where(*conditions).values({column: target})
        with self._begin() as conn:
            if conn.execute(stmt).rowcount == 0:
                return None
            return self._fetch(conn, t, row_id)

    def delete(self, table: str, row_id: UUID) -> bool:
        t = self._table(table)
        with self._begin() as conn:
            return conn.execute(delete(t).where(t.c.id == row_id)).rowcount > 0
