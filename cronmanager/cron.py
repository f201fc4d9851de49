"""
Cron expression handling.

Validates the classic 5-field grammar (minute, hour, day-of-month, month,
day-of-week) and computes trigger instants with croniter. A candidate minute
only fires when all five fields match: day-of-month and day-of-week are
intersected, never unioned.

Each field is a comma-separated list of items. An item is `*`, a literal,
or a range `a-b`, optionally followed by a step (`*/15`, `1-30/5`).
Months and weekdays also accept three-letter English names.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone, tzinfo
from typing import FrozenSet, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from apscheduler.triggers.base import BaseTrigger
from croniter import croniter, CroniterBadCronError, CroniterBadDateError

from cronmanager.errors import InvalidScheduleError

logger = logging.getLogger(__name__)

MONTH_NAMES = {
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'may': 5, 'jun': 6,
    'jul': 7, 'aug': 8, 'sep': 9, 'oct': 10, 'nov': 11, 'dec': 12
}
WEEKDAY_NAMES = {
    'sun': 0, 'mon': 1, 'tue': 2, 'wed': 3, 'thu': 4, 'fri': 5, 'sat': 6
}

# Longest possible length of each month, leap years included
_MAX_MONTH_DAYS = {
    1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30,
    7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31
}


@dataclass(frozen=True)
class _FieldSpec:
    name: str
    low: int
    high: int
    names: Optional[dict] = None


FIELD_SPECS = (
    _FieldSpec('minute', 0, 59),
    _FieldSpec('hour', 0, 23),
    _FieldSpec('day of month', 1, 31),
    _FieldSpec('month', 1, 12, MONTH_NAMES),
    _FieldSpec('day of week', 0, 7, WEEKDAY_NAMES),
)


@dataclass(frozen=True)
class CronExpression:
    """
    A validated 5-field cron expression.

    Attributes:
        expression: The expression as given (whitespace normalized)
        fields: Allowed values per field; day-of-week 7 is folded into 0
        wildcards: Which fields were a bare `*`
    """
    expression: str
    fields: Tuple[FrozenSet[int], ...]
    wildcards: Tuple[bool, ...]

    @property
    def minutes(self) -> FrozenSet[int]:
        return self.fields[0]

    @property
    def hours(self) -> FrozenSet[int]:
        return self.fields[1]

    @property
    def days_of_month(self) -> FrozenSet[int]:
        return self.fields[2]

    @property
    def months(self) -> FrozenSet[int]:
        return self.fields[3]

    @property
    def days_of_week(self) -> FrozenSet[int]:
        return self.fields[4]

    @property
    def canonical(self) -> str:
        """Expression rewritten with explicit numeric lists, as fed to croniter."""
        parts = []
        for values, wildcard in zip(self.fields, self.wildcards):
            if wildcard:
                parts.append('*')
            else:
                parts.append(','.join(str(v) for v in sorted(values)))
        return ' '.join(parts)

    def matches(self, moment: datetime) -> bool:
        """Check whether a moment (minute resolution) satisfies all five fields."""
        weekday = (moment.weekday() + 1) % 7  # cron counts Sunday as 0
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.day in self.days_of_month
            and moment.month in self.months
            and weekday in self.days_of_week
        )

    def __str__(self):
        return self.expression


def parse_cron(expression: str) -> CronExpression:
    """
    Parse and validate a 5-field cron expression.

    Args:
        expression: Cron expression (e.g., "*/5 9-17 * * mon-fri")

    Returns:
        CronExpression with the expanded field values

    Raises:
        InvalidScheduleError: If the expression is malformed or can never fire
    """
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidScheduleError(str(expression), "expression is empty")

    parts = expression.split()
    if len(parts) != 5:
        raise InvalidScheduleError(
            expression, f"expected 5 fields, got {len(parts)}"
        )

    fields = []
    wildcards = []
    for text, spec in zip(parts, FIELD_SPECS):
        values = _expand_field(expression, text, spec)
        if spec.name == 'day of week':
            values = {v % 7 for v in values}
        fields.append(frozenset(values))
        wildcards.append(text == '*')

    cron = CronExpression(
        expression=' '.join(parts),
        fields=tuple(fields),
        wildcards=tuple(wildcards)
    )

    if not any(day <= _MAX_MONTH_DAYS[month]
               for day in cron.days_of_month for month in cron.months):
        raise InvalidScheduleError(
            expression, "day of month never occurs in the selected months"
        )

    return cron


def _expand_field(expression: str, text: str, spec: _FieldSpec) -> set:
    """Expand one field into the set of values it allows."""
    values = set()
    for item in text.split(','):
        if not item:
            raise InvalidScheduleError(
                expression, f"empty list item in {spec.name} field '{text}'"
            )

        base, _, step_text = item.partition('/')
        step = 1
        if step_text or item.endswith('/'):
            if not step_text.isdigit() or int(step_text) == 0:
                raise InvalidScheduleError(
                    expression, f"invalid step '{step_text}' in {spec.name} field"
                )
            step = int(step_text)

        if base == '*':
            low, high = spec.low, spec.high
        elif '-' in base:
            start_text, _, end_text = base.partition('-')
            low = _parse_value(expression, start_text, spec)
            high = _parse_value(expression, end_text, spec)
            if low > high:
                raise InvalidScheduleError(
                    expression, f"range '{base}' is inverted in {spec.name} field"
                )
        else:
            if step_text:
                raise InvalidScheduleError(
                    expression,
                    f"step '{item}' in {spec.name} field needs '*' or a range"
                )
            low = high = _parse_value(expression, base, spec)

        values.update(range(low, high + 1, step))

    return values


def _parse_value(expression: str, token: str, spec: _FieldSpec) -> int:
    if spec.names and token.lower() in spec.names:
        return spec.names[token.lower()]
    if not token.isdigit():
        raise InvalidScheduleError(
            expression, f"unparsable token '{token}' in {spec.name} field"
        )
    value = int(token)
    if value < spec.low or value > spec.high:
        raise InvalidScheduleError(
            expression,
            f"{spec.name} value {value} out of range {spec.low}-{spec.high}"
        )
    return value


def is_valid(expression: str) -> bool:
    try:
        parse_cron(expression)
    except InvalidScheduleError:
        return False
    return True


def resolve_timezone(tz: Union[str, tzinfo, None]) -> tzinfo:
    """Turn an IANA name (or None for UTC) into a tzinfo."""
    if tz is None:
        return dt_timezone.utc
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def next_trigger(
    expression: Union[str, CronExpression],
    now: Optional[datetime] = None,
    tz: Union[str, tzinfo, None] = None
) -> datetime:
    """
    Compute the earliest instant strictly after `now` matching all five fields.

    Args:
        expression: Cron expression or an already parsed CronExpression
        now: Reference time. Naive values are taken to be in `tz`.
        tz: Reference time zone the expression is evaluated in (default: UTC)

    Returns:
        Timezone-aware datetime in `tz`

    Raises:
        InvalidScheduleError: If the expression is malformed or never fires
    """
    cron = expression if isinstance(expression, CronExpression) else parse_cron(expression)
    zone = resolve_timezone(tz)

    if now is None:
        now = datetime.now(zone)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=zone)
    else:
        now = now.astimezone(zone)

    try:
        result = croniter(cron.canonical, now, day_or=False).get_next(datetime)
        while result <= now:
            result = croniter(cron.canonical, result, day_or=False).get_next(datetime)
    except (CroniterBadCronError, CroniterBadDateError) as e:
        raise InvalidScheduleError(cron.expression, f"no matching time found: {e}") from e

    return result


def upcoming_triggers(
    expression: Union[str, CronExpression],
    count: int,
    now: Optional[datetime] = None,
    tz: Union[str, tzinfo, None] = None
) -> List[datetime]:
    """Return the next `count` trigger instants after `now`."""
    cron = expression if isinstance(expression, CronExpression) else parse_cron(expression)
    times = []
    moment = now
    for _ in range(count):
        moment = next_trigger(cron, moment, tz)
        times.append(moment)
    return times


def humanize(expression: str) -> str:
    """Convert a cron expression to a short human-readable description."""
    parts = expression.split()
    if len(parts) != 5:
        return expression

    minute, hour, day, month, dow = parts

    if expression == "* * * * *" or expression == "*/1 * * * *":
        return "Every minute"
    if minute.startswith("*/") and hour == day == month == dow == "*":
        return f"Every {minute[2:]} minutes"
    if minute.isdigit() and hour == day == month == dow == "*":
        return f"Hourly at :{int(minute):02d}"
    if minute.isdigit() and hour.isdigit() and day == month == dow == "*":
        return f"Daily at {int(hour):02d}:{int(minute):02d}"
    if minute.isdigit() and hour.isdigit() and day == month == "*" and dow.isdigit():
        names = {v: k.capitalize() for k, v in WEEKDAY_NAMES.items()}
        return f"Weekly on {names.get(int(dow) % 7)} at {int(hour):02d}:{int(minute):02d}"
    if minute.isdigit() and hour.isdigit() and day.isdigit() and month == dow == "*":
        return f"Monthly on day {day} at {int(hour):02d}:{int(minute):02d}"

    return expression


class CronExpressionTrigger(BaseTrigger):
    """
    APScheduler trigger driven by a validated 5-field cron expression.

    APScheduler's own CronTrigger numbers weekdays from Monday, so crontab
    strings are evaluated through croniter instead.
    """

    def __init__(self, expression: Union[str, CronExpression], timezone: Union[str, tzinfo, None] = None):
        self.cron = expression if isinstance(expression, CronExpression) else parse_cron(expression)
        self.timezone = resolve_timezone(timezone)

    def get_next_fire_time(self, previous_fire_time, now):
        base = now if previous_fire_time is None else max(previous_fire_time, now)
        try:
            return next_trigger(self.cron, base, self.timezone)
        except InvalidScheduleError as e:
            logger.error(f"Trigger '{self.cron}' has no next fire time: {e}")
            return None

    def __str__(self):
        return f"cron[{self.cron.expression}]"

    def __repr__(self):
        return f"<CronExpressionTrigger (expression='{self.cron.expression}', timezone='{self.timezone}')>"
