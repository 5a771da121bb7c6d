from dataclasses import dataclass
from typing import Optional

from errors import InvalidInput
from models import SpendingPeriod


@dataclass(frozen=True)
class PeriodKey:
    year: int
    month: Optional[int] = None


def resolve_spending_period(period: Optional[str]) -> SpendingPeriod:
    if isinstance(period, SpendingPeriod):
        return period
    value = (period or "").strip().lower()
    try:
        return SpendingPeriod(value)
    except ValueError as exc:
        raise InvalidInput(
            f"Invalid period '{period}'. Use monthly or yearly"
        ) from exc


def most_recent_first(key: PeriodKey) -> tuple[int, int]:
    # yearly keys carry no month and sort as month 0
    return (-key.year, -(key.month or 0))
