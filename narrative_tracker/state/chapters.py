"""
Chapter Boundary Detector and Archivist helpers.

``check_chapter_boundary`` owns the exact detection rule: a location change
is an inequality of the (area, place) pair compared case-insensitively, a time
jump is an elapsed narrative delta of at least the threshold. The summarising
call that can veto a boundary lives in ``extractors.extract_chapter``.
"""

from __future__ import annotations

import dataclasses
from typing import Optional, Sequence

from narrative_tracker.schemas.state import (
    BoundaryReason,
    Chapter,
    ChapterOutcomes,
    LocationState,
    NarrativeDateTime,
    TimeRange,
    TimestampedEvent,
)

DEFAULT_TIME_THRESHOLD_MINUTES = 60

_MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


@dataclasses.dataclass
class LocationChange:
    from_location: str
    to_location: str


@dataclasses.dataclass
class TimeJump:
    minutes: int


@dataclasses.dataclass
class BoundaryCheck:
    triggered: bool
    reason: Optional[BoundaryReason] = None
    location_change: Optional[LocationChange] = None
    time_jump: Optional[TimeJump] = None


# ---------------------------------------------------------------------------
# Time arithmetic
# ---------------------------------------------------------------------------

def _approximate_minutes(dt: NarrativeDateTime) -> int:
    # 30-day months and 365-day years; tolerant of impossible dates
    days = dt.year * 365 + (dt.month - 1) * 30 + (dt.day - 1)
    return (days * 24 + dt.hour) * 60 + dt.minute


def get_time_delta_minutes(start: NarrativeDateTime, end: NarrativeDateTime) -> int:
    """Narrative minutes from *start* to *end*; negative when *end* is earlier."""
    return _approximate_minutes(end) - _approximate_minutes(start)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_time_elapsed(minutes: int) -> str:
    """``90`` -> ``"1 hour, 30 minutes"``; ``9 * 1440`` -> ``"1 week, 2 days"``."""
    minutes = abs(minutes)
    if minutes < 60:
        return _plural(minutes, "minute")

    hours, rest_minutes = divmod(minutes, 60)
    if hours < 24:
        text = _plural(hours, "hour")
        return f"{text}, {_plural(rest_minutes, 'minute')}" if rest_minutes else text

    days, rest_hours = divmod(hours, 24)
    if days < 7:
        text = _plural(days, "day")
        return f"{text}, {_plural(rest_hours, 'hour')}" if rest_hours else text

    weeks, rest_days = divmod(days, 7)
    text = _plural(weeks, "week")
    return f"{text}, {_plural(rest_days, 'day')}" if rest_days else text


def format_date_time(dt: NarrativeDateTime) -> str:
    """``Saturday, June 15, 2024 at 9:30 AM``."""
    hour12 = dt.hour % 12 or 12
    am_pm = "AM" if dt.hour < 12 else "PM"
    month = _MONTH_NAMES[dt.month - 1]
    return f"{dt.day_of_week}, {month} {dt.day}, {dt.year} at {hour12}:{dt.minute:02d} {am_pm}"


# ---------------------------------------------------------------------------
# Boundary detection
# ---------------------------------------------------------------------------

def _location_label(location: LocationState) -> str:
    return f"{location.area} - {location.place}"


def check_chapter_boundary(
    previous_location: Optional[LocationState],
    current_location: Optional[LocationState],
    previous_time: Optional[NarrativeDateTime],
    current_time: Optional[NarrativeDateTime],
    threshold_minutes: int = DEFAULT_TIME_THRESHOLD_MINUTES,
) -> BoundaryCheck:
    location_change = None
    if previous_location is not None and current_location is not None:
        same_area = previous_location.area.lower() == current_location.area.lower()
        same_place = previous_location.place.lower() == current_location.place.lower()
        if not (same_area and same_place):
            location_change = LocationChange(
                from_location=_location_label(previous_location),
                to_location=_location_label(current_location),
            )

    time_jump = None
    if previous_time is not None and current_time is not None:
        delta = get_time_delta_minutes(previous_time, current_time)
        if delta >= threshold_minutes:
            time_jump = TimeJump(minutes=delta)

    if location_change and time_jump:
        reason = BoundaryReason.both
    elif location_change:
        reason = BoundaryReason.location_change
    elif time_jump:
        reason = BoundaryReason.time_jump
    else:
        return BoundaryCheck(triggered=False)

    return BoundaryCheck(
        triggered=True,
        reason=reason,
        location_change=location_change,
        time_jump=time_jump,
    )


# ---------------------------------------------------------------------------
# Chapter records
# ---------------------------------------------------------------------------

def create_empty_outcomes() -> ChapterOutcomes:
    return ChapterOutcomes()


def create_empty_chapter(index: int) -> Chapter:
    return Chapter(index=index, title=f"Chapter {index + 1}")


def finalize_chapter(
    chapter: Chapter,
    events: Sequence[TimestampedEvent],
    start: NarrativeDateTime,
    end: NarrativeDateTime,
    primary_location: str,
) -> Chapter:
    """Freeze the open ledger into *chapter* with its time range and location."""
    return chapter.model_copy(update={
        "time_range": TimeRange(start=start, end=end),
        "primary_location": primary_location,
        "events": [e.model_copy(deep=True) for e in events],
    })
