from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    create_engine,
    false,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from expense_manager.errors import StorageFailure, ValidationFailed
from expense_manager.store import (
    CATEGORIES,
    EXPENSES,
    INCOMES,
    PROJECTS,
    SUBCATEGORIES,
    USERS,
    Query,
    Record,
    check_kind,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("email", String(255), unique=True, nullable=False),
    Column("password_hash", String(255), nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("type", String(20), nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_by", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

subcategories = Table(
    "subcategories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="SET NULL")),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_by", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

projects = Table(
    "projects",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("start_date", Date),
    Column("end_date", Date),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("owner_id", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)


def _transaction_table(name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_id", Integer, ForeignKey("users.id", ondelete="SET NULL")),
        Column("date", Date, nullable=False),
        Column("amount", Numeric(12, 2), nullable=False),
        Column("remarks", Text),
        Column("category_id", Integer, ForeignKey("categories.id", ondelete="SET NULL")),
        Column("subcategory_id", Integer, ForeignKey("subcategories.id", ondelete="SET NULL")),
        Column("project_id", Integer, ForeignKey("projects.id", ondelete="SET NULL")),
        Column("created_at", DateTime, nullable=False, server_default=func.now()),
        Column("updated_at", DateTime),
    )


expenses = _transaction_table("expenses")
incomes = _transaction_table("incomes")

TABLES: dict[str, Table] = {
    USERS: users,
    CATEGORIES: categories,
    SUBCATEGORIES: subcategories,
    PROJECTS: projects,
    EXPENSES: expenses,
    INCOMES: incomes,
}


class SqlStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str | URL) -> "SqlStore":
        connect_args = {}
        if str(database_url).startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        return cls(create_engine(database_url, connect_args=connect_args, pool_pre_ping=True))

    def init_schema(self) -> None:
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            logger.exception("Failed to create schema")
            raise StorageFailure("Database error.") from exc

    def get(self, kind: str, record_id: int) -> Record | None:
        table = _table(kind)
        with self._begin() as conn:
            row = conn.execute(select(table).where(table.c.id == record_id)).mappings().first()
        return dict(row) if row else None

    def find(self, kind: str, query: Query | None = None) -> list[Record]:
        table = _table(kind)
        query = query or Query()
        stmt = select(table).where(*_conditions(table, query))
        order_columns = [table.c[name] for name in query.order_by]
        if query.descending:
            stmt = stmt.order_by(*[column.desc() for column in order_columns])
        else:
            stmt = stmt.order_by(*[column.asc() for column in order_columns])
        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        if query.offset:
            stmt = stmt.offset(query.offset)
        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [dict(row) for row in rows]

    def count(self, kind: str, query: Query | None = None) -> int:
        table = _table(kind)
        query = query or Query()
        stmt = select(func.count()).select_from(table).where(*_conditions(table, query))
        with self._begin() as conn:
            total = conn.execute(stmt).scalar_one()
        return int(total or 0)

    def insert(self, kind: str, values: Mapping[str, Any]) -> Record:
        table = _table(kind)
        with self._begin() as conn:
            result = conn.execute(insert(table).values(**values))
            record_id = result.inserted_primary_key[0]
            row = conn.execute(select(table).where(table.c.id == record_id)).mappings().first()
        if not row:
            raise StorageFailure(f"Failed to create {kind}.")
        return dict(row)

    def update(self, kind: str, record_id: int, values: Mapping[str, Any]) -> Record | None:
        table = _table(kind)
        with self._begin() as conn:
            exists = conn.execute(select(table.c.id).where(table.c.id == record_id)).first()
            if not exists:
                return None
            conn.execute(update(table).where(table.c.id == record_id).values(**values))
            row = conn.execute(select(table).where(table.c.id == record_id)).mappings().first()
        return dict(row) if row else None

    def delete(self, kind: str, record_id: int) -> bool:
        table = _table(kind)
        with self._begin() as conn:
            deleted = conn.execute(table.delete().where(table.c.id == record_id)).rowcount
        return deleted > 0

    def detach(self, kind: str, field_name: str, value: int) -> int:
        table = _table(kind)
        column = table.c[field_name]
        with self._begin() as conn:
            detached = conn.execute(update(table).where(column == value).values({field_name: None})).rowcount
        return detached

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise ValidationFailed("Record conflicts with an existing entry.") from exc
        except SQLAlchemyError as exc:
            logger.exception("Database query failed")
            raise StorageFailure("Database error.") from exc


def _table(kind: str) -> Table:
    return TABLES[check_kind(kind)]


def _conditions(table: Table, query: Query) -> list:
    conditions = []
    for name, expected in query.filters.items():
        column = table.c[name]
        conditions.append(column.is_(None) if expected is None else column == expected)
    if query.search is not None:
        clauses = [
            table.c[name].icontains(query.search.term, autoescape=True)
            for name in query.search.fields
        ]
        for name, ids in query.search.related.items():
            if ids:
                clauses.append(table.c[name].in_(sorted(ids)))
        conditions.append(or_(*clauses) if clauses else false())
    return conditions
