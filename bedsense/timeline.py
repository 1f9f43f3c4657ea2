"""Gap-filled 24-hour activity timeline for one bed and day."""

from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from fractions import Fraction
from typing import Callable, Iterable, Sequence

from bedsense.config import TIMELINE_START_HOUR
from bedsense.events import EventKind, RestlessnessLevel, SensorEvent

TIMELINE_HOURS = 24
TIMELINE_MINUTES = TIMELINE_HOURS * 60

# Slivers shorter than this are folded into the neighbouring segment
MIN_SEGMENT_MINUTES = 0.1


class SegmentKind(str, Enum):
    HIGH_RESTLESSNESS = "high_restlessness"
    LIGHT_RESTLESSNESS = "light_restlessness"
    RESTING = "resting"
    OUT_OF_BED = "out_of_bed"
    GAP = "gap"

    @property
    def label(self) -> str:
        return _SEGMENT_LABELS[self]


_SEGMENT_LABELS = {
    SegmentKind.HIGH_RESTLESSNESS: "High Restlessness",
    SegmentKind.LIGHT_RESTLESSNESS: "Light Restlessness",
    SegmentKind.RESTING: "Resting",
    SegmentKind.OUT_OF_BED: "Out of Bed",
    SegmentKind.GAP: "No Data / Gap",
}

_RESTLESSNESS_SEGMENTS = {
    RestlessnessLevel.HIGH: SegmentKind.HIGH_RESTLESSNESS,
    RestlessnessLevel.MEDIUM: SegmentKind.LIGHT_RESTLESSNESS,
    RestlessnessLevel.LOW: SegmentKind.RESTING,
}


@dataclass(frozen=True)
class TimelineSegment:
    kind: SegmentKind
    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def duration_minutes(self) -> Fraction:
        """Exact length in minutes; segments of a window always add up to TIMELINE_MINUTES."""
        return Fraction(self.duration // timedelta(microseconds=1), 60_000_000)

    @property
    def label(self) -> str:
        return self.kind.label


# Decides whether an absent reading stands, given its clamped interval and the
# other events in the window. Returning False renders the interval as resting.
AbsencePolicy = Callable[[SensorEvent, datetime, datetime, Sequence[SensorEvent]], bool]


def favor_occupancy(
    event: SensorEvent,
    start: datetime,
    end: datetime,
    window_events: Sequence[SensorEvent],
) -> bool:
    """Absence stands only if no concurrent in-bed reading overlaps it."""
    return not any(
        other is not event and other.is_in_bed and other.start < end and other.end > start
        for other in window_events
    )


def trust_absence(
    event: SensorEvent,
    start: datetime,
    end: datetime,
    window_events: Sequence[SensorEvent],
) -> bool:
    """Absence always stands, whatever other sensors report."""
    return True


def _minutes(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60


def timeline_window(day: date, start_hour: int = TIMELINE_START_HOUR) -> tuple[datetime, datetime]:
    """The 24-hour window for a day: previous evening at start_hour to this day at start_hour."""
    window_start = datetime.combine(day - timedelta(days=1), time(hour=start_hour))
    return window_start, window_start + timedelta(hours=TIMELINE_HOURS)


def classify_event(
    event: SensorEvent,
    start: datetime,
    end: datetime,
    window_events: Sequence[SensorEvent],
    absence_policy: AbsencePolicy = favor_occupancy,
) -> SegmentKind:
    """Map an event (clamped to [start, end)) onto a timeline segment kind."""
    if event.kind is EventKind.RESTLESSNESS:
        return _RESTLESSNESS_SEGMENTS[event.value]  # type: ignore[index]
    if event.is_absent and absence_policy(event, start, end, window_events):
        return SegmentKind.OUT_OF_BED
    return SegmentKind.RESTING


def build_timeline(
    day: date,
    events: Iterable[SensorEvent],
    bed_id: str | None = None,
    start_hour: int = TIMELINE_START_HOUR,
    absence_policy: AbsencePolicy = favor_occupancy,
) -> list[TimelineSegment]:
    """Build the activity timeline for a day's 24-hour window.

    Events are clamped to the window and laid out in start order. Where an event
    overlaps an already placed segment only its uncovered tail is placed, so the
    result never overlaps. Uncovered stretches become gap segments.

    Args:
        day: Day whose window (previous evening to this evening) is requested.
        events: Events for any period; those not intersecting the window are ignored.
        bed_id: If given, only this bed's events are used.
        start_hour: Hour the window opens on the previous day.
        absence_policy: Resolves absent readings that conflict with in-bed readings.

    Returns:
        Chronological, contiguous segments covering exactly the window.
    """
    window_start, window_end = timeline_window(day, start_hour)
    window_events = sorted(
        (
            e for e in events
            if (bed_id is None or e.bed_id == bed_id) and e.start < window_end and e.end > window_start
        ),
        key=lambda e: e.start,
    )

    segments: list[TimelineSegment] = []
    cursor = window_start

    for event in window_events:
        clamped_start = max(event.start, window_start)
        clamped_end = min(event.end, window_end)
        if clamped_end <= cursor:
            continue  # already covered

        segment_start = max(clamped_start, cursor)
        if _minutes(segment_start, clamped_end) < MIN_SEGMENT_MINUTES:
            continue

        if segment_start > cursor:
            if _minutes(cursor, segment_start) >= MIN_SEGMENT_MINUTES:
                segments.append(TimelineSegment(SegmentKind.GAP, cursor, segment_start))
            else:
                segment_start = cursor

        kind = classify_event(event, clamped_start, clamped_end, window_events, absence_policy)
        segments.append(TimelineSegment(kind, segment_start, clamped_end))
        cursor = clamped_end

    if cursor < window_end:
        if segments and _minutes(cursor, window_end) < MIN_SEGMENT_MINUTES:
            segments[-1] = replace(segments[-1], end=window_end)
        else:
            segments.append(TimelineSegment(SegmentKind.GAP, cursor, window_end))

    return segments
