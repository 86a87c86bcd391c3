"""
Interval algebra over half-open ``[start, end)`` time ranges.

Pure functions shared by slot generation and booking admission.
"""

from typing import Iterable, List, Optional

from pendulum import DateTime

from .models import TimeRange


def overlaps(a: TimeRange, b: TimeRange) -> bool:
    """``a.start < b.end and b.start < a.end``; touching ranges do not overlap."""
    return a.start < b.end and b.start < a.end


def covers(outer: TimeRange, inner: TimeRange) -> bool:
    """Check if ``inner`` lies entirely within ``outer``."""
    return outer.start <= inner.start and inner.end <= outer.end


def apply_buffer(time_range: TimeRange, buffer_minutes: int) -> TimeRange:
    """
    Extend the end of an existing booking's range by the buffer.

    The buffer is a cool-down after a booking; it never pads the time before it.
    """
    if buffer_minutes <= 0:
        return time_range
    return TimeRange(start=time_range.start, end=time_range.end.add(minutes=buffer_minutes))


def clip(
    time_range: TimeRange,
    min_bound: DateTime,
    max_bound: DateTime
) -> Optional[TimeRange]:
    """
    Clip a time range to fit within bounds.
    Returns None if the range is completely outside bounds.
    """
    if time_range.end <= min_bound or time_range.start >= max_bound:
        return None

    return TimeRange(start=max(time_range.start, min_bound), end=min(time_range.end, max_bound))


def subtract_all(base: TimeRange, exclusions: Iterable[TimeRange]) -> List[TimeRange]:
    """
    Return the parts of ``base`` not covered by any exclusion.

    Example:
    Base: 09:00 - 17:00
    Exclusions: [10:00-11:00, 14:00-15:00]
    Result: [09:00-10:00, 11:00-14:00, 15:00-17:00]

    Exclusions may overlap each other or extend past ``base``. Empty leftovers
    are dropped rather than returned as zero-length ranges.
    """
    free_ranges: List[TimeRange] = []
    current_start = base.start

    for excluded in sorted(exclusions, key=lambda r: r.start):
        clipped = clip(excluded, base.start, base.end)
        if clipped is None:
            continue

        # Free time before this exclusion
        if current_start < clipped.start:
            free_ranges.append(TimeRange(start=current_start, end=clipped.start))

        current_start = max(current_start, clipped.end)

    if current_start < base.end:
        free_ranges.append(TimeRange(start=current_start, end=base.end))

    return free_ranges


def merge(ranges: Iterable[TimeRange]) -> List[TimeRange]:
    """
    Merge overlapping or adjacent time ranges.

    Example: [09:00-10:00, 10:00-11:00] -> [09:00-11:00]
    """
    sorted_ranges = sorted(ranges, key=lambda r: r.start)
    if not sorted_ranges:
        return []

    merged: List[TimeRange] = [sorted_ranges[0]]

    for current in sorted_ranges[1:]:
        last = merged[-1]
        if current.start <= last.end:
            merged[-1] = TimeRange(start=last.start, end=max(last.end, current.end))
        else:
            merged.append(current)

    return merged
