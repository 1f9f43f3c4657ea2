"""Bed sensor analytics module. No I/O, every function returns fresh structures."""

import calendar
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from enum import Enum
from functools import reduce
from typing import Iterable, Mapping, Optional, Sequence
import pandas as pd
import numpy as np

from bedsense.config import DEFAULT_RANGE_DAYS, HIGH_RESTLESS_PERCENT_THRESHOLD, SHORT_SLEEP_HOURS
from bedsense.events import EventKind, RepositionValue, RestlessnessLevel, SensorEvent, events_to_dataframe

# Only these levels count toward restless time; "low" is kept for the timeline only
COUNTED_RESTLESS_LEVELS = (RestlessnessLevel.MEDIUM, RestlessnessLevel.HIGH)

# Days with more high-restlessness minutes than this are reported in the text summary
HIGH_RESTLESS_MINUTES_FLAG = 60

# Calendar tiles with more exits than this are marked for attention
EXITS_ATTENTION_THRESHOLD = 2

# In-bed hour bands used for calendar colouring
SHORT_IN_BED_HOURS = 6.0
LONG_IN_BED_HOURS = 10.0


@dataclass(frozen=True)
class DailyMetrics:
    """Metrics for one (bed, calendar day).

    Percent and hour fields keep full precision; round only for display.
    """
    day: date
    in_bed_minutes: int
    repositions: int
    exits: int
    restless_minutes_by_level: dict[RestlessnessLevel, int]
    restless_minutes: int = 0
    restless_percent: float = 0.0
    longest_continuous_sleep_hours: float = 0.0

    @property
    def in_bed_hours(self) -> float:
        return self.in_bed_minutes / 60


@dataclass(frozen=True)
class _DayAccumulator:
    """Running counters for the daily fold."""
    in_bed_minutes: int = 0
    repositions: int = 0
    exits: int = 0
    restless_medium_minutes: int = 0
    restless_high_minutes: int = 0
    occupied: bool = False


def duration_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, truncated toward zero."""
    return int((end - start).total_seconds() / 60)


def sort_events(events: Iterable[SensorEvent]) -> list[SensorEvent]:
    """Return a new list ordered by start time; ties keep their input order."""
    return sorted(events, key=lambda e: e.start)


def group_events_by_day(
    events: Iterable[SensorEvent],
    bed_id: str | None = None,
) -> dict[date, list[SensorEvent]]:
    """Group events by the calendar day they start on.

    Args:
        events: Events for any number of beds.
        bed_id: If given, only this bed's events are kept. None keeps all beds.

    Returns:
        Dict ordered by day. Days without events for the bed are absent.
    """
    by_day: dict[date, list[SensorEvent]] = {}
    for event in events:
        if bed_id is not None and event.bed_id != bed_id:
            continue
        by_day.setdefault(event.start.date(), []).append(event)
    return dict(sorted(by_day.items()))


def _fold_event(acc: _DayAccumulator, event: SensorEvent) -> _DayAccumulator:
    minutes = duration_minutes(event.start, event.end)

    if event.kind is EventKind.PRESENCE:
        if event.is_in_bed:
            return replace(acc, in_bed_minutes=acc.in_bed_minutes + minutes, occupied=True)
        # Absent reading: an exit only if the patient was in bed right before it
        return replace(acc, exits=acc.exits + (1 if acc.occupied else 0), occupied=False)

    if event.kind is EventKind.REPOSITION:
        if event.value is RepositionValue.OCCURRED:
            return replace(acc, repositions=acc.repositions + 1)
        return acc

    if event.value is RestlessnessLevel.MEDIUM:
        return replace(acc, restless_medium_minutes=acc.restless_medium_minutes + minutes)
    if event.value is RestlessnessLevel.HIGH:
        return replace(acc, restless_high_minutes=acc.restless_high_minutes + minutes)
    return acc


def aggregate_day(day: date, events: Sequence[SensorEvent]) -> DailyMetrics:
    """Reduce one day's events (already bed-filtered) into raw counters.

    The derived fields (restless percent, longest sleep) are left at their
    defaults; see enrich_metrics.
    """
    acc = reduce(_fold_event, sort_events(events), _DayAccumulator())
    return DailyMetrics(
        day=day,
        in_bed_minutes=acc.in_bed_minutes,
        repositions=acc.repositions,
        exits=acc.exits,
        restless_minutes_by_level={
            RestlessnessLevel.MEDIUM: acc.restless_medium_minutes,
            RestlessnessLevel.HIGH: acc.restless_high_minutes,
        },
    )


def aggregate_daily(
    events: Iterable[SensorEvent],
    bed_id: str | None = None,
) -> dict[date, DailyMetrics]:
    """Raw per-day counters for one bed (or all beds when bed_id is None)."""
    return {
        day: aggregate_day(day, day_events)
        for day, day_events in group_events_by_day(events, bed_id).items()
    }


def is_interruption(event: SensorEvent) -> bool:
    """An absent reading or high restlessness breaks continuous sleep."""
    return event.is_absent or (
        event.kind is EventKind.RESTLESSNESS and event.value is RestlessnessLevel.HIGH
    )


def longest_continuous_sleep_minutes(events: Sequence[SensorEvent]) -> int:
    """Longest span of a day's events not broken by an interruption.

    A segment opens at the first non-interrupting event and closes at the start
    of the next interruption. When a gap separates two events the segment is
    measured up to the end of the earlier one; it is only closed if the event
    after the gap is itself an interruption, otherwise it carries on across the gap.

    Args:
        events: One day's events for one bed, in any order.

    Returns:
        Longest segment in whole minutes, 0 if there is none.
    """
    ordered = sort_events(events)
    if not ordered:
        return 0

    longest = 0
    sleep_start: datetime | None = None if is_interruption(ordered[0]) else ordered[0].start

    for i, event in enumerate(ordered):
        next_event = ordered[i + 1] if i + 1 < len(ordered) else None

        if is_interruption(event):
            if sleep_start is not None:
                longest = max(longest, duration_minutes(sleep_start, event.start))
                sleep_start = None
            continue

        if sleep_start is None:
            sleep_start = event.start

        if next_event is None:
            longest = max(longest, duration_minutes(sleep_start, event.end))
        elif next_event.start > event.end:
            longest = max(longest, duration_minutes(sleep_start, event.end))
            if is_interruption(next_event):
                sleep_start = None

    return longest


def longest_continuous_sleep_hours(events: Sequence[SensorEvent]) -> float:
    """Longest continuous sleep in hours (unrounded)."""
    return longest_continuous_sleep_minutes(events) / 60


def enrich_metrics(metrics: DailyMetrics, day_events: Sequence[SensorEvent]) -> DailyMetrics:
    """Derive restless percent and longest continuous sleep for one day.

    Restless percent is not clamped: overlapping sensors can report more
    restless minutes than in-bed minutes, giving values above 100.
    """
    restless_minutes = sum(metrics.restless_minutes_by_level.get(level, 0) for level in COUNTED_RESTLESS_LEVELS)
    restless_percent = (
        100 * restless_minutes / metrics.in_bed_minutes if metrics.in_bed_minutes > 0 else 0.0
    )
    return replace(
        metrics,
        restless_minutes=restless_minutes,
        restless_percent=restless_percent,
        longest_continuous_sleep_hours=longest_continuous_sleep_hours(day_events),
    )


def compute_daily_metrics(
    events: Iterable[SensorEvent],
    bed_id: str | None = None,
) -> dict[date, DailyMetrics]:
    """Aggregate and enrich every day that has events for the bed."""
    return {
        day: enrich_metrics(aggregate_day(day, day_events), day_events)
        for day, day_events in group_events_by_day(events, bed_id).items()
    }


@dataclass
class DayExtreme:
    """A day singled out by some metric."""
    day: date
    value: float


@dataclass
class RangeSummary:
    """Aggregate metrics over the days with data in a closed date range."""
    start_date: date
    end_date: date
    day_count: int
    average_hours_in_bed: float
    average_repositions: float
    average_exits: float
    average_restless_percent: float
    median_longest_sleep_hours: float
    longest_in_bed: DayExtreme
    shortest_in_bed: DayExtreme
    most_repositions: DayExtreme
    shortest_continuous_sleep: DayExtreme
    exit_days: int
    short_sleep_days: int
    high_restlessness_days: int


@dataclass
class TrendStatistics:
    """Population mean and one-sigma band of a per-day series."""
    mean: float
    std: float
    upper_band: float
    lower_band: float


@dataclass
class TrendData:
    """Per-day series over every day of a range, zero-filled where there is no data."""
    days: list[date]
    hours_in_bed: list[float]
    repositions: list[int]
    exits: list[int]
    restless_percent: list[float]
    hours_in_bed_stats: TrendStatistics
    repositions_stats: TrendStatistics


def metrics_in_range(
    daily: Mapping[date, DailyMetrics],
    start_date: date,
    end_date: date,
) -> list[DailyMetrics]:
    """Days with data inside [start_date, end_date], in day order."""
    return [daily[day] for day in sorted(daily) if start_date <= day <= end_date]


def summarize_range(
    daily: Mapping[date, DailyMetrics],
    start_date: date,
    end_date: date,
    short_sleep_hours: float = SHORT_SLEEP_HOURS,
) -> Optional[RangeSummary]:
    """Compute averages, median and extremes over a closed date range.

    Days without data are excluded from every denominator.

    Returns:
        RangeSummary, or None when no day in the range has data.
    """
    days = metrics_in_range(daily, start_date, end_date)
    if not days:
        return None

    hours = np.array([m.in_bed_hours for m in days], dtype=np.float64)
    repositions = np.array([m.repositions for m in days], dtype=np.float64)
    exits = np.array([m.exits for m in days], dtype=np.float64)
    restless_percent = np.array([m.restless_percent for m in days], dtype=np.float64)
    longest_sleep = np.array([m.longest_continuous_sleep_hours for m in days], dtype=np.float64)

    # max/min keep the earliest day on ties
    longest_in_bed = max(days, key=lambda m: m.in_bed_minutes)
    shortest_in_bed = min(days, key=lambda m: m.in_bed_minutes)
    most_repositions = max(days, key=lambda m: m.repositions)
    shortest_sleep = min(days, key=lambda m: m.longest_continuous_sleep_hours)

    return RangeSummary(
        start_date=start_date,
        end_date=end_date,
        day_count=len(days),
        average_hours_in_bed=float(np.mean(hours)),
        average_repositions=float(np.mean(repositions)),
        average_exits=float(np.mean(exits)),
        average_restless_percent=float(np.mean(restless_percent)),
        median_longest_sleep_hours=float(np.median(longest_sleep)),
        longest_in_bed=DayExtreme(longest_in_bed.day, longest_in_bed.in_bed_hours),
        shortest_in_bed=DayExtreme(shortest_in_bed.day, shortest_in_bed.in_bed_hours),
        most_repositions=DayExtreme(most_repositions.day, most_repositions.repositions),
        shortest_continuous_sleep=DayExtreme(shortest_sleep.day, shortest_sleep.longest_continuous_sleep_hours),
        exit_days=sum(1 for m in days if m.exits > 0),
        short_sleep_days=sum(1 for m in days if m.longest_continuous_sleep_hours < short_sleep_hours),
        high_restlessness_days=sum(
            1 for m in days
            if m.restless_minutes_by_level.get(RestlessnessLevel.HIGH, 0) > HIGH_RESTLESS_MINUTES_FLAG
        ),
    )


def trend_statistics(values: Sequence[float]) -> TrendStatistics:
    """Population mean and standard deviation (divide by N), band clamped at 0."""
    if len(values) == 0:
        return TrendStatistics(mean=0.0, std=0.0, upper_band=0.0, lower_band=0.0)
    arr = np.asarray(values, dtype=np.float64)
    mean = float(np.mean(arr))
    std = float(np.std(arr))  # ddof=0
    return TrendStatistics(
        mean=mean,
        std=std,
        upper_band=mean + std,
        lower_band=max(0.0, mean - std),
    )


def compute_trends(
    daily: Mapping[date, DailyMetrics],
    start_date: date,
    end_date: date,
) -> Optional[TrendData]:
    """Build per-day series for trend charts.

    Every calendar day in the range gets an entry; days without data count as 0.

    Returns:
        TrendData, or None if the range spans one day or less.
    """
    days = list(pd.date_range(start=start_date, end=end_date, freq="D").date)
    if len(days) <= 1:
        return None

    hours: list[float] = []
    repositions: list[int] = []
    exits: list[int] = []
    restless_percent: list[float] = []
    for day in days:
        metrics = daily.get(day)
        hours.append(metrics.in_bed_hours if metrics else 0.0)
        repositions.append(metrics.repositions if metrics else 0)
        exits.append(metrics.exits if metrics else 0)
        restless_percent.append(metrics.restless_percent if metrics else 0.0)

    return TrendData(
        days=days,
        hours_in_bed=hours,
        repositions=repositions,
        exits=exits,
        restless_percent=restless_percent,
        hours_in_bed_stats=trend_statistics(hours),
        repositions_stats=trend_statistics(repositions),
    )


def _short_date(day: date) -> str:
    return f"{day:%b} {day.day}"


def describe_range(summary: RangeSummary, short_sleep_hours: float = SHORT_SLEEP_HOURS) -> str:
    """Plain-language summary of a range, as shown above the calendar."""
    sentences = [
        f"Over {summary.day_count} days analysed "
        f"({_short_date(summary.start_date)} to {_short_date(summary.end_date)}), "
        f"the average time in bed was {summary.average_hours_in_bed:.1f} hours/day "
        f"({summary.average_restless_percent:.1f}% restless) with "
        f"{summary.average_repositions:.1f} repositions/night and "
        f"{summary.average_exits:.1f} exits/night. "
        f"Median longest continuous sleep was {summary.median_longest_sleep_hours:.1f} hours.",
        f"Longest time in bed: {summary.longest_in_bed.value:.1f}h on {_short_date(summary.longest_in_bed.day)}.",
        f"Shortest time: {summary.shortest_in_bed.value:.1f}h on {_short_date(summary.shortest_in_bed.day)}.",
        f"Most repositions: {int(summary.most_repositions.value)} on {_short_date(summary.most_repositions.day)}.",
    ]
    if summary.exit_days > 0:
        sentences.append(f"Bed exits occurred on {summary.exit_days} day(s).")
    if summary.short_sleep_days > 0:
        sentences.append(
            f"{summary.short_sleep_days} night(s) had less than {short_sleep_hours:g} hours of continuous sleep."
        )
    sentences.append(
        f"Shortest continuous sleep: {summary.shortest_continuous_sleep.value:.1f}h "
        f"on {_short_date(summary.shortest_continuous_sleep.day)}."
    )
    return " ".join(sentences)


class InBedBand(str, Enum):
    """Calendar colour band for hours in bed."""
    SHORT = "short"    # < 6h
    NORMAL = "normal"  # < 10h
    LONG = "long"


@dataclass
class DayFlags:
    """Calendar tile markers for one day."""
    day: date
    in_bed_band: InBedBand
    has_exit: bool
    short_sleep: bool
    high_restlessness: bool
    needs_attention: bool


def classify_day(
    metrics: DailyMetrics,
    high_restless_percent_threshold: float = HIGH_RESTLESS_PERCENT_THRESHOLD,
    short_sleep_hours: float = SHORT_SLEEP_HOURS,
) -> DayFlags:
    """Flag a day for the calendar view."""
    hours = metrics.in_bed_hours
    if hours < SHORT_IN_BED_HOURS:
        band = InBedBand.SHORT
    elif hours < LONG_IN_BED_HOURS:
        band = InBedBand.NORMAL
    else:
        band = InBedBand.LONG

    high_restlessness = metrics.restless_percent > high_restless_percent_threshold
    return DayFlags(
        day=metrics.day,
        in_bed_band=band,
        has_exit=metrics.exits > 0,
        short_sleep=metrics.longest_continuous_sleep_hours < short_sleep_hours,
        high_restlessness=high_restlessness,
        needs_attention=high_restlessness or metrics.exits > EXITS_ATTENTION_THRESHOLD,
    )


def data_extent(events: Iterable[SensorEvent]) -> Optional[tuple[date, date]]:
    """First and last event start day, or None for no events."""
    df = events_to_dataframe(events)
    if df.empty:
        return None
    return df["day"].min(), df["day"].max()


def default_date_range(
    events: Iterable[SensorEvent],
    days: int = DEFAULT_RANGE_DAYS,
) -> Optional[tuple[date, date]]:
    """The last `days` days of data, not reaching before the first event."""
    extent = data_extent(events)
    if extent is None:
        return None
    first, last = extent
    return max(last - timedelta(days=days), first), last


def last_days_range(events: Iterable[SensorEvent], days: int) -> Optional[tuple[date, date]]:
    """Preset range covering the last `days` calendar days of data (inclusive)."""
    extent = data_extent(events)
    if extent is None:
        return None
    _, last = extent
    return last - timedelta(days=days - 1), last


def month_range(events: Iterable[SensorEvent], year: int, month: int) -> Optional[tuple[date, date]]:
    """A calendar month clamped to the extent of the data.

    The result can be empty (start after end) when the month holds no data.
    """
    extent = data_extent(events)
    if extent is None:
        return None
    first, last = extent
    month_start = date(year, month, 1)
    month_end = date(year, month, calendar.monthrange(year, month)[1])
    return max(month_start, first), min(month_end, last)
