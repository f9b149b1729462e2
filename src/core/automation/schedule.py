import calendar
from datetime import date, timedelta
from typing import Optional

from src.core.automation.models import Frequency


def js_weekday(value: date) -> int:
    """Weekday with Sunday as 0, matching `TriggerConfig.day_of_week`."""
    return (value.weekday() + 1) % 7


def with_day(year: int, month: int, day: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def add_months(value: date, months: int, *, anchor_day: Optional[int] = None) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    return with_day(year, month, anchor_day or value.day)


def next_execution_date(
    *,
    frequency: Frequency,
    reference: date,
    anchor: date,
    day_of_month: Optional[int] = None,
    day_of_week: Optional[int] = None,
    inclusive: bool = False,
) -> date:
    """
    Next scheduled date after `reference` for the given frequency.

    Dates are calendar dates only. `anchor` supplies the default day of month
    (the rule start date). With `inclusive=True` a candidate equal to `reference`
    is accepted, which is how a rule becomes due on its first eligible day.
    Month arithmetic clamps to the last day of shorter months.
    """
    if frequency == "Daily":
        return reference if inclusive else reference + timedelta(days=1)

    if frequency == "Weekly":
        days_until = (day_of_week or 0) - js_weekday(reference)
        if days_until == 0 and inclusive:
            return reference
        if days_until <= 0:
            days_until += 7
        return reference + timedelta(days=days_until)

    target_day = day_of_month or anchor.day
    candidate = with_day(reference.year, reference.month, target_day)

    if frequency == "Monthly":
        if _elapsed(candidate, reference, inclusive=inclusive):
            candidate = add_months(candidate, 1, anchor_day=target_day)
        return candidate

    if frequency == "Quarterly":
        candidate = add_months(candidate, 3, anchor_day=target_day)
        if _elapsed(candidate, reference, inclusive=inclusive):
            candidate = add_months(candidate, 3, anchor_day=target_day)
        return candidate

    raise ValueError(f"UNSUPPORTED_FREQUENCY:{frequency}")


def initial_execution_date(
    *,
    frequency: Frequency,
    start_date: date,
    today: date,
    day_of_month: Optional[int] = None,
    day_of_week: Optional[int] = None,
) -> date:
    return next_execution_date(
        frequency=frequency,
        reference=max(today, start_date),
        anchor=start_date,
        day_of_month=day_of_month,
        day_of_week=day_of_week,
        inclusive=True,
    )


def _elapsed(candidate: date, reference: date, *, inclusive: bool) -> bool:
    if inclusive:
        return candidate < reference
    return candidate <= reference
