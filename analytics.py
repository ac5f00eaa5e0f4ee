"""Aggregations behind the analytics endpoints.

All amounts come in as integer cents and leave as decimal amounts, so sums
and differences stay exact and only ratios are rounded.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Mapping, Optional

from money import cents_to_amount, round2
from models import TransactionType

DAY_NAMES = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)

MONTH_NAMES = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


@dataclass(frozen=True)
class CategoryTotal:
    id: int
    name: str
    color: Optional[str]
    amount_cents: int
    transaction_count: int


@dataclass(frozen=True)
class LedgerEntry:
    date: date
    created_at: datetime
    type: TransactionType
    amount_cents: int


def savings_rate(income_cents: int, expense_cents: int) -> float:
    if income_cents <= 0:
        return 0.0
    return round2((income_cents - expense_cents) / income_cents * 100)


def build_overview(totals: Mapping[TransactionType, int]) -> dict[str, float]:
    income = int(totals.get(TransactionType.income, 0) or 0)
    expenses = int(totals.get(TransactionType.expense, 0) or 0)
    return {
        "totalIncome": cents_to_amount(income),
        "totalExpenses": cents_to_amount(expenses),
        "netIncome": cents_to_amount(income - expenses),
        "savingsRate": savings_rate(income, expenses),
    }


def shares_of_total(amounts: list[int]) -> list[float]:
    """Split 100% across ``amounts`` in hundredths of a percent.

    Largest-remainder rounding: every share is floored to a basis point and
    the leftover points go to the largest remainders, so the shares always
    add up to exactly 100.00.
    """
    total = sum(amounts)
    if total <= 0:
        return [0.0] * len(amounts)
    points = [amount * 10_000 // total for amount in amounts]
    remainders = [amount * 10_000 % total for amount in amounts]
    leftover = 10_000 - sum(points)
    by_remainder = sorted(range(len(amounts)), key=lambda i: (-remainders[i], i))
    for i in by_remainder[:leftover]:
        points[i] += 1
    return [p / 100 for p in points]


def build_category_breakdown(rows: Iterable[CategoryTotal]) -> dict[str, object]:
    included = [row for row in rows if row.amount_cents > 0]
    included.sort(key=lambda r: (-r.amount_cents, r.name))
    total = sum(row.amount_cents for row in included)
    shares = shares_of_total([row.amount_cents for row in included])
    categories = []
    for row, percentage in zip(included, shares):
        categories.append(
            {
                "id": row.id,
                "name": row.name,
                "color": row.color,
                "amount": cents_to_amount(row.amount_cents),
                "transactionCount": row.transaction_count,
                "percentage": percentage,
            }
        )
    return {"categories": categories, "totalExpenses": cents_to_amount(total)}


def build_monthly_trends(
    year: int, months: int, entries: Iterable[LedgerEntry]
) -> dict[str, object]:
    if not 1 <= months <= 12:
        raise ValueError("months must be between 1 and 12")
    income: dict[int, int] = defaultdict(int)
    expenses: dict[int, int] = defaultdict(int)
    for entry in entries:
        if entry.date.year != year:
            continue
        bucket = income if entry.type == TransactionType.income else expenses
        bucket[entry.date.month] += entry.amount_cents

    out = []
    for month in range(1, months + 1):
        month_income = income.get(month, 0)
        month_expenses = expenses.get(month, 0)
        out.append(
            {
                "month": f"{year:04d}-{month:02d}",
                "monthName": MONTH_NAMES[month - 1],
                "income": cents_to_amount(month_income),
                "expenses": cents_to_amount(month_expenses),
                "net": cents_to_amount(month_income - month_expenses),
            }
        )
    return {"year": year, "months": out}


def day_of_week(d: date) -> int:
    # Sunday is 0
    return (d.weekday() + 1) % 7


def build_spending_patterns(entries: Iterable[LedgerEntry]) -> dict[str, object]:
    groups: dict[tuple[int, int, str], list[int]] = defaultdict(lambda: [0, 0])
    for entry in entries:
        key = (day_of_week(entry.date), entry.created_at.hour, entry.type.value)
        acc = groups[key]
        acc[0] += entry.amount_cents
        acc[1] += 1

    patterns = []
    for (dow, hour, kind), (total, count) in sorted(groups.items()):
        patterns.append(
            {
                "dayOfWeek": dow,
                "dayName": DAY_NAMES[dow],
                "hourOfDay": hour,
                "type": kind,
                "avgAmount": round2(total / count / 100),
                "transactionCount": count,
            }
        )
    return {"patterns": patterns}
