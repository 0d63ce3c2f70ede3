"""Recurrence evaluation for backup schedules.

Three grammars are accepted:

* five-field cron, optionally prefixed with ``CRON_TZ=<zone>`` or ``TZ=<zone>``
  (``?`` is read as ``*`` in the day fields);
* presets such as ``@daily`` or ``@weekly``, with the same optional prefix;
* fixed intervals, ``@every <duration>`` using Go duration syntax
  (``10s``, ``1h30m``, ``1.5h``).

Evaluation is pure: no clock reads, no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from decimal import Decimal, InvalidOperation
import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadDateError, croniter

PRESET_EXPRESSIONS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_EVERY_PREFIX = "@every"
_TIMEZONE_PREFIXES = ("CRON_TZ=", "TZ=")
_DURATION_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_DURATION_UNITS_IN_SECONDS = {
    "ns": Decimal("0.000000001"),
    "us": Decimal("0.000001"),
    "µs": Decimal("0.000001"),
    "μs": Decimal("0.000001"),
    "ms": Decimal("0.001"),
    "s": Decimal(1),
    "m": Decimal(60),
    "h": Decimal(3600),
}


class InvalidScheduleError(ValueError):
    """Raised when a schedule expression matches none of the supported grammars."""


@dataclass(frozen=True)
class Schedule:
    expression: str
    kind: str
    timezone: tzinfo = UTC
    cron_expression: str | None = None
    interval: timedelta | None = None


def parse_schedule(expression: str) -> Schedule:
    raw = (expression or "").strip()
    if not raw:
        raise InvalidScheduleError("schedule expression is empty")

    timezone: tzinfo = UTC
    body = raw
    for prefix in _TIMEZONE_PREFIXES:
        if body.startswith(prefix):
            zone_name, _, body = body[len(prefix) :].partition(" ")
            timezone = _load_timezone(zone_name, expression=raw)
            body = body.strip()
            break

    if body.startswith(_EVERY_PREFIX):
        # A timezone prefix is accepted on intervals but has no effect.
        interval = parse_go_duration(body[len(_EVERY_PREFIX) :].strip())
        return Schedule(expression=raw, kind="interval", interval=_round_interval(interval))

    if body.startswith("@"):
        cron_expression = PRESET_EXPRESSIONS.get(body.lower())
        if cron_expression is None:
            raise InvalidScheduleError(f"unrecognized schedule preset '{body}' in '{raw}'")
        return Schedule(expression=raw, kind="preset", timezone=timezone, cron_expression=cron_expression)

    fields = body.split()
    if len(fields) != 5:
        raise InvalidScheduleError(f"cron schedule '{raw}' must have exactly 5 fields, found {len(fields)}")
    cron_expression = " ".join(field.replace("?", "*") for field in fields)
    if not croniter.is_valid(cron_expression):
        raise InvalidScheduleError(f"cron schedule '{raw}' is not a valid expression")
    return Schedule(expression=raw, kind="cron", timezone=timezone, cron_expression=cron_expression)


def next_due(schedule: str | Schedule, reference_time: datetime) -> datetime:
    parsed = schedule if isinstance(schedule, Schedule) else parse_schedule(schedule)
    reference = _as_utc(reference_time)

    if parsed.interval is not None:
        return reference.replace(microsecond=0) + parsed.interval

    assert parsed.cron_expression is not None
    iterator = croniter(parsed.cron_expression, reference.astimezone(parsed.timezone))
    try:
        candidate = _as_utc(iterator.get_next(datetime))
        while candidate <= reference:
            candidate = _as_utc(iterator.get_next(datetime))
    except CroniterBadDateError as error:
        raise InvalidScheduleError(f"cron schedule '{parsed.expression}' never fires: {error}") from error
    return candidate


def is_due(schedule: str | Schedule, last_run_or_creation_time: datetime, now: datetime) -> bool:
    return _as_utc(now) >= next_due(schedule, last_run_or_creation_time)


def upcoming(schedule: str | Schedule, reference_time: datetime, count: int) -> list[datetime]:
    if count <= 0:
        return []

    parsed = schedule if isinstance(schedule, Schedule) else parse_schedule(schedule)
    times: list[datetime] = []
    reference = reference_time
    for _ in range(count):
        reference = next_due(parsed, reference)
        times.append(reference)
    return times


def parse_go_duration(value: str) -> timedelta:
    text = value.strip()
    if not text:
        raise InvalidScheduleError("interval duration is empty")
    if text == "0":
        return timedelta(0)

    total = Decimal(0)
    position = 0
    while position < len(text):
        match = _DURATION_COMPONENT.match(text, position)
        if match is None:
            raise InvalidScheduleError(f"invalid interval duration '{value}'")
        try:
            amount = Decimal(match.group(1))
        except InvalidOperation as error:
            raise InvalidScheduleError(f"invalid interval duration '{value}'") from error
        total += amount * _DURATION_UNITS_IN_SECONDS[match.group(2)]
        position = match.end()

    return timedelta(seconds=float(total))


def _round_interval(interval: timedelta) -> timedelta:
    # Intervals run on whole seconds, never faster than once a second.
    seconds = int(interval.total_seconds())
    return timedelta(seconds=max(1, seconds))


def _load_timezone(zone_name: str, *, expression: str) -> tzinfo:
    if not zone_name:
        raise InvalidScheduleError(f"schedule '{expression}' has an empty timezone prefix")
    if zone_name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError) as error:
        raise InvalidScheduleError(f"unknown timezone '{zone_name}' in schedule '{expression}'") from error


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
