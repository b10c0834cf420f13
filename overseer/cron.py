"""
Cron evaluation in UTC.

Standard 5-field grammar: minute, hour, day-of-month, month, day-of-week.
Each field accepts ``*``, single values, ranges ``a-b``, steps ``*/n`` and
``a-b/n``, and comma separated lists of those. Months accept ``jan``-``dec``
(or full names); days of week accept ``sun``-``sat``.

Day-of-week numbering: 0 = Sunday, 1 = Monday ... 6 = Saturday; 7 is also
accepted as Sunday. When both day-of-month and day-of-week are restricted a
minute matches if either matches (classic cron semantics).

Naive datetimes are treated as UTC. No timezone conversion happens here.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from croniter import CroniterError, croniter

from .errors import InvalidExpression
from .models import UTC, ensure_aware_utc

logger = logging.getLogger("overseer.cron")

CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")

FIELD_BOUNDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 7),
)

DAY_NAME_TO_CRON: Dict[str, int] = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
MONTH_NAME_TO_NUM: Dict[str, int] = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}
# Accept both full names and the usual three letter abbreviations.
DAY_TOKENS = {**DAY_NAME_TO_CRON, **{name[:3]: num for name, num in DAY_NAME_TO_CRON.items()}}
MONTH_TOKENS = {**MONTH_NAME_TO_NUM, **{name[:3]: num for name, num in MONTH_NAME_TO_NUM.items()}}

MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

PREVIEW_LIMIT = 500


def _replace_named_tokens(raw: str, mapping: Dict[str, int], field_name: str, expr: str) -> str:
    def repl(match: "re.Match[str]") -> str:
        token = match.group(0).lower()
        if token not in mapping:
            raise InvalidExpression(f'Error: Invalid token "{token}" in {field_name} of cron "{expr}".')
        return str(mapping[token])

    return re.sub(r"[A-Za-z]+", repl, raw)


def _validate_range_or_single(token: str, field_name: str, expr: str, min_value: int, max_value: int) -> None:
    if token == "*":
        return
    if "-" in token:
        left, right = token.split("-", 1)
        if not left.isdigit() or not right.isdigit():
            raise InvalidExpression(f'Error: Invalid range "{token}" in {field_name} of cron "{expr}".')
        start = int(left)
        end = int(right)
        if start > end:
            raise InvalidExpression(f'Error: Invalid range "{token}" in {field_name} of cron "{expr}".')
        if start < min_value or end > max_value:
            raise InvalidExpression(
                f'Error: Range "{token}" out of bounds {min_value}-{max_value} in {field_name} of cron "{expr}".'
            )
        return
    if not token.isdigit():
        raise InvalidExpression(f'Error: Invalid token "{token}" in {field_name} of cron "{expr}".')
    value = int(token)
    if value < min_value or value > max_value:
        raise InvalidExpression(
            f'Error: Value "{value}" out of bounds {min_value}-{max_value} in {field_name} of cron "{expr}".'
        )


def _validate_field(token: str, field_name: str, expr: str, min_value: int, max_value: int) -> None:
    if not CRON_FIELD_RE.match(token):
        raise InvalidExpression(f'Error: Invalid cron token "{token}" in {field_name} of cron "{expr}".')
    for part in token.split(","):
        if not part:
            raise InvalidExpression(f'Error: Empty list item in {field_name} of cron "{expr}".')
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise InvalidExpression(f'Error: Invalid step "{part}" in {field_name} of cron "{expr}".')
            if int(step_str) > (max_value - min_value + 1):
                raise InvalidExpression(f'Error: Step "{step_str}" too large in {field_name} of cron "{expr}".')
            _validate_range_or_single(base, field_name, expr, min_value, max_value)
            continue
        _validate_range_or_single(part, field_name, expr, min_value, max_value)


def validate_expression(expr: object) -> str:
    """Validate ``expr`` and return its normalized numeric form."""
    if not isinstance(expr, str) or not expr.strip():
        raise InvalidExpression("Error: cron expression must be a non-empty string.")
    raw = expr.strip()
    raw = MACROS.get(raw.lower(), raw)
    fields = raw.split()
    if len(fields) != 5:
        raise InvalidExpression(f'Error: cron "{expr}" must have 5 fields, got {len(fields)}.')

    normalized: List[str] = []
    for token, (field_name, min_value, max_value) in zip(fields, FIELD_BOUNDS):
        if field_name == "month":
            token = _replace_named_tokens(token, MONTH_TOKENS, field_name, expr)
        elif field_name == "day_of_week":
            token = _replace_named_tokens(token, DAY_TOKENS, field_name, expr)
        _validate_field(token, field_name, expr, min_value, max_value)
        normalized.append(token)

    result = " ".join(normalized)
    try:
        croniter(result, datetime(2000, 1, 1, tzinfo=UTC))
    except (CroniterError, ValueError, KeyError) as exc:
        raise InvalidExpression(f'Error: Invalid cron "{expr}": {exc}') from exc
    return result


def floor_minute(value: datetime) -> datetime:
    return ensure_aware_utc(value).replace(second=0, microsecond=0)


def next_fire_after(expr: str, from_: datetime) -> Optional[datetime]:
    """First matching minute strictly after ``from_``; None if it never fires."""
    normalized = validate_expression(expr)
    start = ensure_aware_utc(from_)
    try:
        nxt = croniter(normalized, start).get_next(datetime)
    except CroniterError:
        return None
    return ensure_aware_utc(nxt)


def matches(expr: str, at: datetime) -> bool:
    normalized = validate_expression(expr)
    return bool(croniter.match(normalized, floor_minute(at)))


def is_due(expr: str, now: datetime, last_fired: Optional[datetime]) -> bool:
    """True if the minute containing ``now`` matches and has not fired yet."""
    minute = floor_minute(now)
    if last_fired is not None and floor_minute(last_fired) >= minute:
        return False
    return matches(expr, minute)


def fires_between(expr: str, start: datetime, end: datetime, limit: int = PREVIEW_LIMIT) -> List[datetime]:
    """Fire times in ``(start, end]``, at most ``limit`` of them."""
    start = ensure_aware_utc(start)
    end = ensure_aware_utc(end)
    fires: List[datetime] = []
    cursor = start
    while len(fires) < limit:
        nxt = next_fire_after(expr, cursor)
        if nxt is None or nxt > end:
            break
        fires.append(nxt)
        cursor = nxt
    else:
        nxt = next_fire_after(expr, cursor)
        if nxt is not None and nxt <= end:
            logger.warning("Preview of cron \"%s\" stopped after %s fire times before %s.", expr, limit, end.isoformat())
    return fires


def next_fire_times(expr: str, count: int, now: datetime) -> List[datetime]:
    runs: List[datetime] = []
    cursor = ensure_aware_utc(now)
    while len(runs) < count:
        nxt = next_fire_after(expr, cursor)
        if nxt is None:
            break
        runs.append(nxt)
        cursor = nxt + timedelta(seconds=1)
    return runs
