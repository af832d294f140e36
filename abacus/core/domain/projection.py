"""Completeness flags and projections for daily usage charts.

Providers report with lag (Claude Code around a day, Cursor an hour or two),
so the trailing days of a series are partial. ``apply_projections`` marks
those days and fills in estimates:

* today with partial data is extrapolated by elapsed time;
* a day with no data yet gets the historical average for that tool.

``projected`` keeps the raw value behind an estimate: ``0`` means the
displayed number is a historical average, ``> 0`` means it was scaled up
from that partial value.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Mapping, Optional, Sequence

from .schemas import DailyUsage, ToolCompleteness

MIN_SAME_WEEKDAY_SAMPLES = 2
MIN_HOURS_FOR_PROJECTION = 1.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _hours_elapsed(now: datetime) -> float:
    return now.hour + now.minute / 60


def historical_average(
    series: Sequence[DailyUsage],
    tool: str,
    last_data_date: Optional[date],
    today: date,
    weekday: Optional[int] = None,
) -> float:
    """Mean of complete, nonzero days; same-weekday mean when enough samples exist."""
    if last_data_date is None:
        return 0.0

    complete = [
        d for d in series
        if d.date <= last_data_date and d.date != today and d.totals.get(tool, 0) > 0
    ]
    if not complete:
        return 0.0

    if weekday is not None:
        same_day = [d for d in complete if d.date.weekday() == weekday]
        if len(same_day) >= MIN_SAME_WEEKDAY_SAMPLES:
            return sum(d.totals[tool] for d in same_day) / len(same_day)

    return sum(d.totals[tool] for d in complete) / len(complete)


def apply_projections(
    series: Sequence[DailyUsage],
    completeness: Mapping[str, ToolCompleteness],
    today: date,
    *,
    now: Optional[datetime] = None,
) -> list[DailyUsage]:
    """Return a new series with incomplete days flagged and estimated.

    ``completeness`` maps every charted tool to its last date with data;
    tools missing from it are treated as never having reported.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    tools = sorted({t for d in series for t in d.totals} | set(completeness))

    out: list[DailyUsage] = []
    for day in series:
        is_today = day.date == today
        incomplete_tools = {t for t in tools if _is_incomplete(completeness, t, day.date)}
        if not is_today and not incomplete_tools:
            out.append(day.model_copy())
            continue

        result = day.model_copy(update={"is_incomplete": True, "totals": dict(day.totals)})

        factor = 1.0
        if is_today:
            hours = _hours_elapsed(now)
            if hours < MIN_HOURS_FOR_PROJECTION:
                out.append(result)
                continue
            factor = hours / 24

        projected: dict[str, int] = {}
        for tool in tools:
            if not is_today and tool not in incomplete_tools:
                continue
            current = day.totals.get(tool, 0)
            avg = historical_average(
                series, tool, _last_date(completeness, tool), today, weekday=day.date.weekday(),
            )
            if is_today and current > 0:
                projected[tool] = current
                result.totals[tool] = _round_half_up(current / factor)
            elif current == 0 and avg > 0:
                projected[tool] = 0
                result.totals[tool] = _round_half_up(avg)

        if projected:
            result.projected = projected
        out.append(result)

    return out


def _last_date(completeness: Mapping[str, ToolCompleteness], tool: str) -> Optional[date]:
    entry = completeness.get(tool)
    return entry.last_data_date if entry else None


def _is_incomplete(completeness: Mapping[str, ToolCompleteness], tool: str, day: date) -> bool:
    last = _last_date(completeness, tool)
    return last is None or day > last


def has_incomplete_data(series: Sequence[DailyUsage]) -> bool:
    return any(d.is_incomplete for d in series)


def has_projected_data(series: Sequence[DailyUsage]) -> bool:
    return any(d.projected for d in series)


def has_estimated_data(series: Sequence[DailyUsage]) -> bool:
    return any(v == 0 for d in series if d.projected for v in d.projected.values())


def has_extrapolated_data(series: Sequence[DailyUsage]) -> bool:
    return any(v > 0 for d in series if d.projected for v in d.projected.values())
