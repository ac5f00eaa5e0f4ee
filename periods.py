from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import InvalidRangeError


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def as_dict(self) -> dict[str, str]:
        return {"startDate": self.start.isoformat(), "endDate": self.end.isoformat()}


def parse_iso_date(value: str, field: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidRangeError(f"Invalid date format for {field}") from exc


def resolve_range(
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> DateRange:
    """Resolve ``start_date``/``end_date`` query values into an inclusive range.

    Missing bounds default to the current month so far: the first of the
    month through ``today``.
    """
    today = today or date.today()
    start_date = parse_iso_date(start, "start_date") if start else today.replace(day=1)
    end_date = parse_iso_date(end, "end_date") if end else today
    if start_date > end_date:
        raise InvalidRangeError("Start date cannot be after end date")
    return DateRange(start_date, end_date)


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution
