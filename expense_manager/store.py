from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

USERS = "user"
CATEGORIES = "category"
SUBCATEGORIES = "subcategory"
PROJECTS = "project"
EXPENSES = "expense"
INCOMES = "income"

KINDS = (USERS, CATEGORIES, SUBCATEGORIES, PROJECTS, EXPENSES, INCOMES)
TRANSACTION_KINDS = (EXPENSES, INCOMES)

DATE_FIELDS = {"date", "start_date", "end_date"}
DATETIME_FIELDS = {"created_at", "updated_at"}
DECIMAL_FIELDS = {"amount"}

Record = dict[str, Any]


@dataclass(frozen=True)
class SearchClause:
    """Case-insensitive substring match over text fields.

    ``related`` maps an id field to the ids whose related rows matched the
    term elsewhere (for example expenses whose category name matches).
    """

    term: str
    fields: tuple[str, ...]
    related: Mapping[str, frozenset[int]] = field(default_factory=dict)


@dataclass(frozen=True)
class Query:
    filters: Mapping[str, Any] = field(default_factory=dict)
    search: SearchClause | None = None
    order_by: tuple[str, ...] = ("id",)
    descending: bool = False
    limit: int | None = None
    offset: int = 0


class Store(Protocol):
    def init_schema(self) -> None: ...

    def get(self, kind: str, record_id: int) -> Record | None: ...

    def find(self, kind: str, query: Query | None = None) -> list[Record]: ...

    def count(self, kind: str, query: Query | None = None) -> int: ...

    def insert(self, kind: str, values: Mapping[str, Any]) -> Record: ...

    def update(self, kind: str, record_id: int, values: Mapping[str, Any]) -> Record | None: ...

    def delete(self, kind: str, record_id: int) -> bool: ...

    def detach(self, kind: str, field_name: str, value: int) -> int: ...


def check_kind(kind: str) -> str:
    if kind not in KINDS:
        raise ValueError(f"Unknown record kind: {kind}")
    return kind


def matches(record: Mapping[str, Any], query: Query) -> bool:
    for name, expected in query.filters.items():
        if record.get(name) != expected:
            return False
    if query.search is None:
        return True
    needle = query.search.term.lower()
    for name in query.search.fields:
        value = record.get(name)
        if value is not None and needle in str(value).lower():
            return True
    for name, ids in query.search.related.items():
        if record.get(name) in ids:
            return True
    return False


def apply_query(records: list[Record], query: Query) -> list[Record]:
    selected = [record for record in records if matches(record, query)]
    selected.sort(
        key=lambda record: tuple(
            (record.get(name) is not None, record.get(name)) for name in query.order_by
        ),
        reverse=query.descending,
    )
    if query.offset:
        selected = selected[query.offset:]
    if query.limit is not None:
        selected = selected[: query.limit]
    return selected
