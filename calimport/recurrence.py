from __future__ import annotations

from datetime import date, datetime, time, timezone, tzinfo
from typing import Any

from icalendar import vRecur

from calimport.models import DAY, MONTH, WEEK, YEAR, RepeatRule

RRULE_PREFIX = "RRULE:"

FREQUENCY_SECONDS = {
    "DAILY": DAY,
    "WEEKLY": WEEK,
    "MONTHLY": MONTH,
    "YEARLY": YEAR,
}

WEEKDAY_BITS = {
    "MO": 1,
    "TU": 2,
    "WE": 4,
    "TH": 8,
    "FR": 16,
    "SA": 32,
    "SU": 64,
}

# Monthly rule masks.
REPEAT_SAME_DAY = 1
REPEAT_ORDER_WEEKDAY_USE_LAST = 2
REPEAT_LAST_DAY = 3
REPEAT_ORDER_WEEKDAY = 4


def _first(rule: vRecur, key: str) -> Any:
    values = rule.get(key) or []
    return values[0] if values else None


def _weekday_mask(values: list[Any]) -> int:
    mask = 0
    for value in values:
        code = str(value).strip().upper()[-2:]
        if code not in WEEKDAY_BITS:
            raise ValueError(f"Unknown BYDAY value: {value}")
        mask |= WEEKDAY_BITS[code]
    return mask


def _until_seconds(value: date | datetime, tz: tzinfo) -> int:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=tz)
        return int(value.timestamp())
    return int(datetime.combine(value, time.min, tzinfo=tz).timestamp())


def parse_repeat_rule(fragment: str, start_ts: int, tz: tzinfo = timezone.utc) -> RepeatRule:
    """Translate an RRULE body such as ``FREQ=WEEKLY;COUNT=5`` into a RepeatRule.

    ``start_ts`` supplies the weekday for weekly rules without BYDAY. COUNT
    limits are stored negated, UNTIL limits as epoch seconds.
    """
    text = fragment.strip()
    if not text:
        return RepeatRule()
    rule = vRecur.from_ical(text)

    frequency = str(_first(rule, "FREQ") or "").upper()
    if frequency not in FREQUENCY_SECONDS:
        raise ValueError(f"Unsupported recurrence frequency: {frequency or '<missing>'}")
    interval = FREQUENCY_SECONDS[frequency]
    rule_mask = 0
    limit = 0

    if frequency == "WEEKLY":
        start_weekday = datetime.fromtimestamp(start_ts, tz).weekday()
        rule_mask = 1 << start_weekday
    elif frequency == "MONTHLY":
        rule_mask = REPEAT_SAME_DAY

    multiplier = _first(rule, "INTERVAL")
    if multiplier is not None:
        interval *= max(1, int(multiplier))

    count = _first(rule, "COUNT")
    until = _first(rule, "UNTIL")
    if count is not None:
        limit = -int(count)
    elif until is not None:
        limit = _until_seconds(until, tz)

    by_day = list(rule.get("BYDAY") or [])
    if by_day:
        if frequency == "WEEKLY":
            rule_mask = _weekday_mask(by_day)
        elif frequency == "MONTHLY":
            if str(by_day[0]).startswith("-1"):
                rule_mask = REPEAT_ORDER_WEEKDAY_USE_LAST
            else:
                rule_mask = REPEAT_ORDER_WEEKDAY

    by_month_day = _first(rule, "BYMONTHDAY")
    if frequency == "MONTHLY" and by_month_day is not None and int(by_month_day) == -1:
        rule_mask = REPEAT_LAST_DAY

    return RepeatRule(interval=interval, limit=limit, rule_mask=rule_mask)
