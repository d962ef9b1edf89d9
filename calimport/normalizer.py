from __future__ import annotations

from datetime import datetime, time, timezone, tzinfo
from typing import Callable

from calimport.models import (
    DAY,
    FLAG_ALL_DAY,
    POPUP,
    REMINDER_OFF,
    REMINDER_SLOTS,
    EventBoundary,
    EventDate,
    NormalizedFields,
    RemoteEventRecord,
    ReminderOverride,
    RepeatRule,
)
from calimport.recurrence import RRULE_PREFIX, parse_repeat_rule

RecurrenceParser = Callable[[str, int, tzinfo], RepeatRule]

# All-day boundaries are anchored at 01:00 local time, not midnight.
ALL_DAY_ANCHOR = time(hour=1)


def boundary_seconds(boundary: EventBoundary, tz: tzinfo) -> int:
    if isinstance(boundary, EventDate):
        return int(datetime.combine(boundary.value, ALL_DAY_ANCHOR, tzinfo=tz).timestamp())
    return int(boundary.value.timestamp())


def recurrence_fragment(recurrence: tuple[str, ...]) -> str | None:
    if not recurrence:
        return None
    raw = recurrence[0].strip().strip('"')
    if not raw.startswith(RRULE_PREFIX):
        return None
    return raw[len(RRULE_PREFIX) :]


def popup_reminders(overrides: tuple[ReminderOverride, ...]) -> tuple[int, int, int]:
    minutes = [item.minutes for item in overrides if item.method == POPUP][:REMINDER_SLOTS]
    minutes += [REMINDER_OFF] * (REMINDER_SLOTS - len(minutes))
    return minutes[0], minutes[1], minutes[2]


def normalize(
    remote: RemoteEventRecord,
    tz: tzinfo = timezone.utc,
    recurrence_parser: RecurrenceParser = parse_repeat_rule,
) -> NormalizedFields:
    if remote.start is None or remote.end is None:
        raise ValueError(f"event {remote.import_id} is missing start or end")

    flags = 0
    if isinstance(remote.start, EventDate):
        flags |= FLAG_ALL_DAY
    start_ts = boundary_seconds(remote.start, tz)
    end_ts = boundary_seconds(remote.end, tz)

    # The feed's all-day end date is exclusive.
    if flags & FLAG_ALL_DAY and end_ts > start_ts:
        end_ts -= DAY
    end_ts = max(end_ts, start_ts)

    fragment = recurrence_fragment(remote.recurrence)
    repeat_rule = recurrence_parser(fragment, start_ts, tz) if fragment is not None else RepeatRule()

    return NormalizedFields(
        start_ts=start_ts,
        end_ts=end_ts,
        flags=flags,
        reminders=popup_reminders(remote.reminder_overrides),
        repeat_rule=repeat_rule,
    )
