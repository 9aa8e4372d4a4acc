"""Narrative time: an absolute datetime at the start, elapsed deltas after."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import Any, Optional

from narrative_tracker.extractors.base import StageContext, build_prompt, default_time, run_stage
from narrative_tracker.schemas.state import NarrativeDateTime
from narrative_tracker.state.chapters import format_date_time
from narrative_tracker.utils.json_extractor import as_int, is_object

SYSTEM_PROMPT = "You are a time analysis agent for roleplay. Return only valid JSON."

DATETIME_EXAMPLE = {"year": 2024, "month": 11, "day": 15, "hour": 17, "minute": 15}
DELTA_EXAMPLE = {"days": 0, "hours": 0, "minutes": 25}


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def normalize_datetime(year: int, month: int, day: int, hour: int, minute: int, second: int = 0) -> NarrativeDateTime:
    """Clamp every field into range and recompute the day of week."""
    year = _clamp(year, 1, 9999)
    month = _clamp(month, 1, 12)
    day = _clamp(day, 1, calendar.monthrange(year, month)[1])
    hour = _clamp(hour, 0, 23)
    minute = _clamp(minute, 0, 59)
    second = _clamp(second, 0, 59)
    return _from_datetime(datetime(year, month, day, hour, minute, second))


def _from_datetime(dt: datetime) -> NarrativeDateTime:
    return NarrativeDateTime(
        year=dt.year, month=dt.month, day=dt.day,
        hour=dt.hour, minute=dt.minute, second=dt.second,
        day_of_week=dt.strftime("%A"),
    )


def parse_datetime(data: Any) -> NarrativeDateTime:
    fallback = default_time()
    if not is_object(data):
        return normalize_datetime(fallback.year, fallback.month, fallback.day, fallback.hour, fallback.minute)
    return normalize_datetime(
        as_int(data.get("year"), fallback.year),
        as_int(data.get("month"), fallback.month),
        as_int(data.get("day"), fallback.day),
        as_int(data.get("hour"), fallback.hour),
        as_int(data.get("minute"), fallback.minute),
        as_int(data.get("second"), 0),
    )


def apply_time_delta(previous: NarrativeDateTime, data: Any) -> NarrativeDateTime:
    """Advance *previous* by the elapsed days/hours/minutes in *data*.

    Time never runs backwards: negative parts count as zero.
    """
    if not is_object(data):
        data = {}
    elapsed = timedelta(
        days=max(0, as_int(data.get("days"), 0)),
        hours=max(0, as_int(data.get("hours"), 0)),
        minutes=max(0, as_int(data.get("minutes"), 0)),
    )
    start = normalize_datetime(
        previous.year, previous.month, previous.day,
        previous.hour, previous.minute, previous.second,
    )
    base = datetime(start.year, start.month, start.day, start.hour, start.minute, start.second)
    try:
        return _from_datetime(base + elapsed)
    except OverflowError:
        return start


async def extract_time(
    ctx: StageContext,
    *,
    is_initial: bool,
    messages: str,
    previous: Optional[NarrativeDateTime],
) -> NarrativeDateTime:
    if is_initial or previous is None:
        prompt = build_prompt(
            SYSTEM_PROMPT,
            "Determine the narrative date and time when this scene takes place. "
            "Use 24-hour hours and always provide every field.",
            {"scene_opening": messages},
            DATETIME_EXAMPLE,
        )
        data = await run_stage(ctx, "time", "time_datetime", prompt)
        return parse_datetime(data)

    prompt = build_prompt(
        SYSTEM_PROMPT,
        "Determine how much narrative time passes within these messages. "
        "Pure dialogue is 1-2 minutes; return zeros when no time passed.",
        {"current_time": format_date_time(previous), "messages": messages},
        DELTA_EXAMPLE,
    )
    data = await run_stage(ctx, "time", "time_delta", prompt)
    return apply_time_delta(previous, data)
