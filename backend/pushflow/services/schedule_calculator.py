"""Schedule calculator - next occurrence of a repeat rule.

Pure: the result depends only on the arguments. Returning None ends a repeat
chain, either because the rule does not repeat or because the next
occurrence would fall after the configured end date.

Conventions:
- all datetimes are naive UTC; the anchor's time of day is kept
- days of week are 0 = Sunday .. 6 = Saturday, weeks start on Sunday
- a monthly day beyond the target month's length is clamped to its last day
"""
import calendar
from datetime import date, datetime, timedelta
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError
from ..models.notification_schedule import RepeatRule
from ..schemas.jobs import RepeatConfig
from ..utils.time_utils import as_naive_utc


def sunday_weekday(day: Union[date, datetime]) -> int:
    """Day of week with Sunday as 0."""
    return (day.weekday() + 1) % 7


def _week_start(day: date) -> date:
    return day - timedelta(days=sunday_weekday(day))


def _coerce_rule(rule) -> RepeatRule:
    if rule is None:
        return RepeatRule.NONE
    if isinstance(rule, RepeatRule):
        return rule
    if rule == "once":
        return RepeatRule.NONE
    try:
        return RepeatRule(rule)
    except ValueError:
        raise ValidationError(f"Unknown repeat rule: {rule}", field="repeat") from None


def _coerce_config(config) -> RepeatConfig:
    if config is None:
        return RepeatConfig()
    if isinstance(config, RepeatConfig):
        return config
    try:
        return RepeatConfig.model_validate(config)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid repeat config: {e}", field="repeat_config") from e


def _next_daily(anchor: datetime, floor: datetime, interval: int) -> datetime:
    step = timedelta(days=interval)
    return anchor + step * ((floor - anchor) // step + 1)


def _next_weekly(anchor: datetime, floor: datetime, interval: int, days_of_week: list[int]) -> datetime:
    anchor_week = _week_start(anchor.date())
    day = floor.date()
    # One full interval cycle plus a week always contains a match
    for _ in range(7 * interval + 7):
        candidate = datetime.combine(day, anchor.time())
        weeks_from_anchor = (_week_start(day) - anchor_week).days // 7
        if (
            candidate > floor
            and sunday_weekday(day) in days_of_week
            and weeks_from_anchor % interval == 0
        ):
            return candidate
        day += timedelta(days=1)
    raise ValidationError("Weekly rule has no matching day", field="repeat_config")


def _clamped(year: int, month: int, day_of_month: int, anchor: datetime) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return datetime.combine(date(year, month, min(day_of_month, last_day)), anchor.time())


def _next_monthly(anchor: datetime, floor: datetime, interval: int, day_of_month: int) -> datetime:
    anchor_index = anchor.year * 12 + anchor.month - 1
    floor_index = floor.year * 12 + floor.month - 1
    # Start one step before the floor's month; earlier steps cannot qualify
    step = max(0, (floor_index - anchor_index) // interval - 1)
    while True:
        year, month = divmod(anchor_index + step * interval, 12)
        candidate = _clamped(year, month + 1, day_of_month, anchor)
        if candidate > floor:
            return candidate
        step += 1


def next_occurrence(
    anchor: datetime,
    rule,
    config=None,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """Compute the next run of a repeat rule strictly after ``anchor`` and ``now``.

    Args:
        anchor: Time of the occurrence just processed (or the first scheduled time)
        rule: RepeatRule or its value ("none"/"once", "daily", "weekly", "monthly")
        config: RepeatConfig, a dict of its fields, or None
        now: Evaluation time; defaults to ``anchor``

    Returns:
        The next occurrence, or None when the chain ends

    Raises:
        ValidationError: unknown rule or malformed config
    """
    rule = _coerce_rule(rule)
    config = _coerce_config(config)
    if rule == RepeatRule.NONE:
        return None

    anchor = as_naive_utc(anchor)
    now = as_naive_utc(now) if now is not None else anchor
    floor = max(anchor, now)
    interval = config.interval or 1

    if rule == RepeatRule.DAILY:
        result = _next_daily(anchor, floor, interval)
    elif rule == RepeatRule.WEEKLY:
        days = config.days_of_week or [sunday_weekday(anchor)]
        result = _next_weekly(anchor, floor, interval, days)
    else:
        result = _next_monthly(anchor, floor, interval, config.day_of_month or anchor.day)

    if config.end_date is not None and result > config.end_date:
        return None
    return result


def pin_anchor_day(anchor: datetime, rule, config=None) -> Optional[RepeatConfig]:
    """Fix a monthly rule's day of month to the first occurrence's day.

    Chains re-anchor on each occurrence, so without a stored day a clamped
    month (31st -> 28th) would carry the shorter day into every later month.
    Other rules and configs that already name a day are returned unchanged.
    """
    rule = _coerce_rule(rule)
    config = _coerce_config(config) if config is not None else None
    if rule != RepeatRule.MONTHLY or (config is not None and config.day_of_month):
        return config
    return (config or RepeatConfig()).model_copy(update={"day_of_month": as_naive_utc(anchor).day})
