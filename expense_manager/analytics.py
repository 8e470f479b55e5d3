from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Optional

ZERO = Decimal("0")
UNCATEGORIZED = "Uncategorized"


@dataclass(frozen=True)
class Entry:
    amount: Decimal
    date: date
    category_id: Optional[int] = None
    project_id: Optional[int] = None


@dataclass(frozen=True)
class ProjectRef:
    id: int
    name: str


@dataclass(frozen=True)
class DashboardStats:
    total_expenses: Decimal
    total_incomes: Decimal
    balance: Decimal
    monthly_expenses: Decimal
    monthly_incomes: Decimal
    monthly_balance: Decimal
    expense_count: int
    income_count: int


@dataclass(frozen=True)
class CategoryTotal:
    category_id: Optional[int]
    category_name: str
    total: Decimal
    count: int
    percentage: Decimal


@dataclass(frozen=True)
class MonthBucket:
    month: str
    year: int
    month_key: str
    expenses: Decimal
    incomes: Decimal
    balance: Decimal


@dataclass(frozen=True)
class ProjectTotals:
    project_id: int
    project_name: str
    total_expenses: Decimal
    total_incomes: Decimal
    balance: Decimal
    expense_count: int
    income_count: int


def dashboard_stats(
    expenses: Iterable[Entry],
    incomes: Iterable[Entry],
    today: date,
) -> DashboardStats:
    expenses = list(expenses)
    incomes = list(incomes)
    current = month_start(today)
    total_expenses = _sum(expenses)
    total_incomes = _sum(incomes)
    monthly_expenses = _sum(entry for entry in expenses if month_start(entry.date) == current)
    monthly_incomes = _sum(entry for entry in incomes if month_start(entry.date) == current)
    return DashboardStats(
        total_expenses=total_expenses,
        total_incomes=total_incomes,
        balance=total_incomes - total_expenses,
        monthly_expenses=monthly_expenses,
        monthly_incomes=monthly_incomes,
        monthly_balance=monthly_incomes - monthly_expenses,
        expense_count=len(expenses),
        income_count=len(incomes),
    )


def category_breakdown(
    entries: Iterable[Entry],
    category_names: Mapping[int, str],
) -> list[CategoryTotal]:
    totals: dict[Optional[int], Decimal] = {}
    counts: dict[Optional[int], int] = {}
    for entry in entries:
        key = entry.category_id if entry.category_id in category_names else None
        totals[key] = totals.get(key, ZERO) + _coerce_amount(entry.amount)
        counts[key] = counts.get(key, 0) + 1

    grand_total = sum(totals.values(), ZERO)
    if grand_total <= ZERO:
        return []

    results: list[CategoryTotal] = []
    for key, total in sorted(totals.items(), key=lambda item: item[1], reverse=True):
        if total <= ZERO:
            continue
        results.append(
            CategoryTotal(
                category_id=key,
                category_name=category_names[key] if key is not None else UNCATEGORIZED,
                total=total,
                count=counts[key],
                percentage=(total / grand_total * Decimal("100")).quantize(Decimal("0.01")),
            )
        )
    return results


def monthly_trends(
    expenses: Iterable[Entry],
    incomes: Iterable[Entry],
    months: int,
    today: date,
) -> list[MonthBucket]:
    if months < 1:
        raise ValueError("months must be at least 1.")
    end_month = month_start(today)
    window = iter_months(shift_month(end_month, -(months - 1)), end_month)
    expense_totals = _totals_by_month(expenses)
    income_totals = _totals_by_month(incomes)

    buckets: list[MonthBucket] = []
    for month in window:
        expense_total = expense_totals.get(month, ZERO)
        income_total = income_totals.get(month, ZERO)
        buckets.append(
            MonthBucket(
                month=month.strftime("%b"),
                year=month.year,
                month_key=month.strftime("%Y-%m"),
                expenses=expense_total,
                incomes=income_total,
                balance=income_total - expense_total,
            )
        )
    return buckets


def project_breakdown(
    projects: Iterable[ProjectRef],
    expenses: Iterable[Entry],
    incomes: Iterable[Entry],
) -> list[ProjectTotals]:
    expense_totals, expense_counts = _totals_by_project(expenses)
    income_totals, income_counts = _totals_by_project(incomes)
    results: list[ProjectTotals] = []
    for project in projects:
        total_expenses = expense_totals.get(project.id, ZERO)
        total_incomes = income_totals.get(project.id, ZERO)
        results.append(
            ProjectTotals(
                project_id=project.id,
                project_name=project.name,
                total_expenses=total_expenses,
                total_incomes=total_incomes,
                balance=total_incomes - total_expenses,
                expense_count=expense_counts.get(project.id, 0),
                income_count=income_counts.get(project.id, 0),
            )
        )
    return results


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def iter_months(start_value: date, end_value: date) -> list[date]:
    months: list[date] = []
    cursor = month_start(start_value)
    end_month = month_start(end_value)
    while cursor <= end_month:
        months.append(cursor)
        cursor = shift_month(cursor, 1)
    return months


def _totals_by_month(entries: Iterable[Entry]) -> dict[date, Decimal]:
    totals: dict[date, Decimal] = {}
    for entry in entries:
        key = month_start(entry.date)
        totals[key] = totals.get(key, ZERO) + _coerce_amount(entry.amount)
    return totals


def _totals_by_project(entries: Iterable[Entry]) -> tuple[dict[int, Decimal], dict[int, int]]:
    totals: dict[int, Decimal] = {}
    counts: dict[int, int] = {}
    for entry in entries:
        if entry.project_id is None:
            continue
        totals[entry.project_id] = totals.get(entry.project_id, ZERO) + _coerce_amount(entry.amount)
        counts[entry.project_id] = counts.get(entry.project_id, 0) + 1
    return totals, counts


def _sum(entries: Iterable[Entry]) -> Decimal:
    total = ZERO
    for entry in entries:
        total += _coerce_amount(entry.amount)
    return total


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
