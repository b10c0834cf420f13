from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from overseer import cron
from overseer.errors import ConfigurationError, InvalidExpression

UTC = timezone.utc


def _at(hour: int, minute: int, second: int = 0, day: int = 1) -> datetime:
    return datetime(2024, 1, day, hour, minute, second, tzinfo=UTC)


def test_every_five_minutes_due_only_on_matching_minute() -> None:
    expr = "*/5 * * * *"
    assert not cron.is_due(expr, _at(10, 3), None)
    assert cron.is_due(expr, _at(10, 5), None)
    assert cron.is_due(expr, _at(10, 5, 42), None)


def test_same_minute_never_fires_twice() -> None:
    expr = "*/5 * * * *"
    assert not cron.is_due(expr, _at(10, 5), _at(10, 5))
    assert not cron.is_due(expr, _at(10, 5, 59), _at(10, 5, 1))
    assert cron.is_due(expr, _at(10, 10), _at(10, 5))


def test_next_fire_after_is_strictly_later() -> None:
    expr = "*/5 * * * *"
    assert cron.next_fire_after(expr, _at(10, 3, 30)) == _at(10, 5)
    assert cron.next_fire_after(expr, _at(10, 5)) == _at(10, 10)


def test_next_fire_after_is_monotone() -> None:
    expr = "*/15 9-17 * * 1-5"
    base = datetime(2024, 3, 1, 6, 0, tzinfo=UTC)
    previous = None
    for step in range(300):
        start = base + timedelta(minutes=7 * step)
        fire = cron.next_fire_after(expr, start)
        assert fire is not None
        assert fire > start
        if previous is not None:
            assert fire >= previous
        previous = fire


def test_day_of_week_zero_and_seven_are_sunday() -> None:
    # 2024-01-01 is a Monday.
    monday = _at(0, 0)
    sunday_noon = datetime(2024, 1, 7, 12, 0, tzinfo=UTC)
    assert cron.next_fire_after("0 12 * * 0", monday) == sunday_noon
    assert cron.next_fire_after("0 12 * * 7", monday) == sunday_noon
    assert cron.next_fire_after("0 12 * * sun", monday) == sunday_noon


def test_named_tokens_and_macros_normalize() -> None:
    assert cron.validate_expression("0 9 * jan mon-fri") == "0 9 * 1 1-5"
    assert cron.validate_expression("@hourly") == "0 * * * *"
    assert cron.validate_expression("  */10 * * * *  ") == "*/10 * * * *"


def test_naive_datetimes_are_treated_as_utc() -> None:
    naive = datetime(2024, 1, 1, 10, 5)
    assert cron.is_due("5 10 * * *", naive, None)
    assert cron.next_fire_after("0 11 * * *", naive) == _at(11, 0)


@pytest.mark.parametrize(
    "expr",
    [
        "",
        "* * * *",
        "* * * * * *",
        "61 * * * *",
        "* 24 * * *",
        "*/0 * * * *",
        "5-1 * * * *",
        "* * * * funday",
        "* * 0 * *",
        "a,b * * * *",
    ],
)
def test_invalid_expressions_rejected(expr: str) -> None:
    with pytest.raises(InvalidExpression):
        cron.validate_expression(expr)


def test_invalid_expression_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="must have 5 fields"):
        cron.validate_expression("* * *")


def test_fires_between_window() -> None:
    fires = cron.fires_between("*/20 * * * *", _at(10, 0), _at(11, 0))
    assert fires == [_at(10, 20), _at(10, 40), _at(11, 0)]


def test_fires_between_warns_when_truncated(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("WARNING", logger="overseer.cron"):
        fires = cron.fires_between("* * * * *", _at(10, 0), _at(11, 0), limit=5)
    assert fires == [_at(10, minute) for minute in range(1, 6)]
    assert "stopped after 5 fire times" in caplog.text

    caplog.clear()
    with caplog.at_level("WARNING", logger="overseer.cron"):
        fires = cron.fires_between("*/20 * * * *", _at(10, 0), _at(11, 0), limit=3)
    assert len(fires) == 3
    assert caplog.text == ""


def test_next_fire_times_count() -> None:
    runs = cron.next_fire_times("0 0 * * *", 3, _at(12, 0))
    assert runs == [
        datetime(2024, 1, 2, tzinfo=UTC),
        datetime(2024, 1, 3, tzinfo=UTC),
        datetime(2024, 1, 4, tzinfo=UTC),
    ]
