"""In-memory event set with per-day results memoised by (version, bed, day)."""

import logging
from datetime import date
from typing import Iterable, Optional

from bedsense.analytics import DailyMetrics, aggregate_day, enrich_metrics, group_events_by_day
from bedsense.events import SensorEvent, bed_names
from bedsense.timeline import AbsencePolicy, TimelineSegment, build_timeline, favor_occupancy

logger = logging.getLogger(__name__)

CacheKey = tuple[int, Optional[str], date]


class NoEventsLoadedError(Exception):
    """Raised when results are requested before any events were loaded."""
    pass


class UnknownBedError(Exception):
    """Raised when a bed filter names a bed with no events."""
    pass


class EventStore:
    """Holds the current event set and memoises per-day computations.

    Each load bumps `version`. Cache keys include the version, so results for a
    previous event set are never served; they are dropped on load anyway.
    """

    def __init__(
        self,
        events: Iterable[SensorEvent] = (),
        source_name: str = "",
        absence_policy: AbsencePolicy = favor_occupancy,
    ):
        self.version = 0
        self.source_name = ""
        self.absence_policy = absence_policy
        self._events: tuple[SensorEvent, ...] = ()
        self._beds: list[str] = []
        self._metrics_cache: dict[CacheKey, DailyMetrics] = {}
        self._timeline_cache: dict[CacheKey, list[TimelineSegment]] = {}

        events = tuple(events)
        if events:
            self.load(events, source_name)

    @property
    def events(self) -> tuple[SensorEvent, ...]:
        return self._events

    @property
    def beds(self) -> list[str]:
        return list(self._beds)

    @property
    def cache_size(self) -> int:
        return len(self._metrics_cache) + len(self._timeline_cache)

    def load(self, events: Iterable[SensorEvent], source_name: str = "") -> int:
        """Replace the event set. Returns the new version."""
        self._events = tuple(events)
        self._beds = bed_names(self._events)
        self.source_name = source_name
        self.version += 1
        self._metrics_cache.clear()
        self._timeline_cache.clear()
        logger.info(
            f"Loaded {len(self._events)} events for {len(self._beds)} beds "
            f"from {source_name or 'memory'} (version {self.version})"
        )
        return self.version

    def check_bed(self, bed_id: str | None) -> None:
        """Raise unless events are loaded and the bed (if given) is known."""
        if not self._events:
            raise NoEventsLoadedError("No events loaded")
        if bed_id is not None and bed_id not in self._beds:
            raise UnknownBedError(f"Unknown bed: {bed_id}")

    def daily_metrics(self, bed_id: str | None = None) -> dict[date, DailyMetrics]:
        """Enriched metrics for every day with events for the bed."""
        self.check_bed(bed_id)
        result: dict[date, DailyMetrics] = {}
        for day, day_events in group_events_by_day(self._events, bed_id).items():
            key = (self.version, bed_id, day)
            metrics = self._metrics_cache.get(key)
            if metrics is None:
                metrics = enrich_metrics(aggregate_day(day, day_events), day_events)
                self._metrics_cache[key] = metrics
            result[day] = metrics
        return result

    def timeline(self, day: date, bed_id: str | None = None) -> list[TimelineSegment]:
        """Activity timeline for the window ending on `day`."""
        self.check_bed(bed_id)
        key = (self.version, bed_id, day)
        segments = self._timeline_cache.get(key)
        if segments is None:
            segments = build_timeline(day, self._events, bed_id, absence_policy=self.absence_policy)
            self._timeline_cache[key] = segments
        return list(segments)
