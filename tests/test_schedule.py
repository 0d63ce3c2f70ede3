from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from nerdy_solr_backup_manager.schedule import (
    InvalidScheduleError,
    is_due,
    next_due,
    parse_go_duration,
    parse_schedule,
    upcoming,
)


def _at(hour: int = 10, minute: int = 0, second: int = 0, *, day: int = 4, month: int = 3) -> datetime:
    return datetime(2026, month, day, hour, minute, second, tzinfo=UTC)


def test_next_due_with_standard_cron_returns_next_matching_minute() -> None:
    assert next_due("0 6 * * *", _at(5)) == _at(6)


def test_next_due_with_reference_on_cron_match_returns_strictly_later_time() -> None:
    assert next_due("0 * * * *", _at(10)) == _at(11)


def test_next_due_with_cron_tz_prefix_evaluates_in_that_timezone() -> None:
    # 06:00 in Seoul (UTC+9) is 21:00 UTC on the previous day.
    reference = datetime(2026, 1, 1, 0, 0, tzinfo=UTC)

    assert next_due("CRON_TZ=Asia/Seoul 0 6 * * ?", reference) == datetime(2026, 1, 1, 21, 0, tzinfo=UTC)


def test_next_due_with_tz_prefix_and_preset_evaluates_in_that_timezone() -> None:
    reference = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    assert next_due("TZ=America/New_York @daily", reference) == datetime(2026, 1, 2, 5, 0, tzinfo=UTC)


def test_next_due_with_daily_preset_returns_next_midnight() -> None:
    assert next_due("@daily", _at(12)) == datetime(2026, 3, 5, 0, 0, tzinfo=UTC)


def test_next_due_with_weekly_preset_returns_next_sunday() -> None:
    # 2026-03-04 is a Wednesday.
    assert next_due("@weekly", _at(12)) == datetime(2026, 3, 8, 0, 0, tzinfo=UTC)


def test_next_due_with_yearly_preset_returns_new_year() -> None:
    assert next_due("@yearly", _at(12)) == datetime(2027, 1, 1, 0, 0, tzinfo=UTC)


def test_next_due_with_every_interval_adds_duration_to_whole_second() -> None:
    reference = _at(10).replace(microsecond=500_000)

    assert next_due("@every 10s", reference) == _at(10, 0, 10)


def test_next_due_with_compound_interval_adds_full_duration() -> None:
    assert next_due("@every 1h30m", _at(10)) == _at(11, 30)


def test_next_due_with_sub_second_interval_uses_one_second_minimum() -> None:
    assert next_due("@every 500ms", _at(10)) == _at(10, 0, 1)


def test_next_due_with_naive_reference_treats_it_as_utc() -> None:
    assert next_due("@every 1m", datetime(2026, 3, 4, 10, 0)) == _at(10, 1)


@pytest.mark.parametrize(
    "schedule",
    ["*/7 * * * *", "CRON_TZ=Europe/Berlin 30 2 * * 1-5", "@hourly", "@monthly", "@every 45s", "@every 2h15m"],
)
def test_upcoming_with_valid_schedule_returns_strictly_increasing_times(schedule: str) -> None:
    times = upcoming(schedule, _at(10), 12)

    assert len(times) == 12
    assert times[0] > _at(10)
    assert all(later > earlier for earlier, later in zip(times, times[1:]))


def test_upcoming_with_non_positive_count_returns_empty_list() -> None:
    assert upcoming("@daily", _at(10), 0) == []


def test_is_due_with_now_equal_to_trigger_time_counts_as_due() -> None:
    assert is_due("@every 10s", _at(10), _at(10, 0, 10))


def test_is_due_with_now_before_trigger_time_is_not_due() -> None:
    assert not is_due("@every 10s", _at(10), _at(10, 0, 9))


@pytest.mark.parametrize(
    "schedule",
    [
        "",
        "not a schedule",
        "* * * *",
        "0 0 * * * *",
        "61 * * * *",
        "@fortnightly",
        "@every",
        "@every 10x",
        "@every ten seconds",
        "CRON_TZ=Mars/Olympus_Mons 0 6 * * *",
        "CRON_TZ= 0 6 * * *",
    ],
)
def test_parse_schedule_with_unsupported_expression_raises_invalid_schedule_error(schedule: str) -> None:
    with pytest.raises(InvalidScheduleError):
        parse_schedule(schedule)


def test_next_due_with_invalid_expression_raises_invalid_schedule_error() -> None:
    with pytest.raises(InvalidScheduleError, match="must have exactly 5 fields"):
        next_due("every day please", _at(10))


def test_parse_schedule_with_question_mark_day_field_reads_it_as_wildcard() -> None:
    schedule = parse_schedule("0 6 ? * *")

    assert schedule.kind == "cron"
    assert schedule.cron_expression == "0 6 * * *"


def test_parse_schedule_with_interval_records_interval_kind() -> None:
    schedule = parse_schedule("@every 10h30m")

    assert schedule.kind == "interval"
    assert schedule.interval == timedelta(hours=10, minutes=30)


def test_parse_go_duration_with_fractional_hours_returns_exact_duration() -> None:
    assert parse_go_duration("1.5h") == timedelta(minutes=90)
    assert parse_go_duration("0") == timedelta(0)
    assert parse_go_duration("2m30s") == timedelta(seconds=150)


def test_next_due_with_cron_that_never_fires_raises_invalid_schedule_error() -> None:
    # February never has a 30th day.
    with pytest.raises(InvalidScheduleError, match="never fires"):
        next_due("0 0 30 2 *", _at(10))


@pytest.mark.parametrize("prefix", ["CRON_TZ=Asia/Seoul", "TZ=America/New_York"])
def test_next_due_with_timezone_prefixed_interval_ignores_the_timezone(prefix: str) -> None:
    schedule = parse_schedule(f"{prefix} @every 1h")

    assert schedule.kind == "interval"
    assert next_due(schedule, _at(10)) == _at(11)
