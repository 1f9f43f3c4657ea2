import argparse
import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query
from pydantic import BaseModel

# Configure logging to match uvicorn's format
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:     %(name)s - %(message)s",
)

from bedsense.config import EVENTS_CSV_PATH, HIGH_RESTLESS_PERCENT_THRESHOLD
from bedsense.events import InvalidEventFileError, load_events_csv, parse_events_csv
from bedsense.store import EventStore, NoEventsLoadedError, UnknownBedError
from bedsense.analytics import (
    DailyMetrics,
    DayFlags,
    RangeSummary,
    TrendData,
    TrendStatistics,
    classify_day,
    compute_trends,
    default_date_range,
    describe_range,
    last_days_range,
    metrics_in_range,
    month_range,
    summarize_range,
)
from bedsense.timeline import TIMELINE_MINUTES, TimelineSegment, timeline_window

logger = logging.getLogger(__name__)

analytics_router = APIRouter(prefix="/analytics", tags=["analytics"])

# Global event store, filled at startup or through POST /events
event_store = EventStore()


class EventsUploadRequest(BaseModel):
    """Request body for replacing the loaded event set."""
    csv_text: str
    source_name: str = "upload"


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    # Environment variable takes precedence, then CLI arg
    parser = argparse.ArgumentParser(description="BedSense analytics API")
    parser.add_argument(
        "--events-csv",
        type=str,
        default=EVENTS_CSV_PATH,
        help="CSV export of bed sensor events to load at startup",
    )
    # Use parse_known_args to ignore uvicorn's arguments when running with uvicorn
    args, _ = parser.parse_known_args()
    if os.environ.get("EVENTS_CSV_PATH"):
        args.events_csv = os.environ["EVENTS_CSV_PATH"]
    return args


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    args = parse_args()
    if args.events_csv:
        event_store.load(load_events_csv(args.events_csv), source_name=args.events_csv)
    else:
        logger.info("No events file configured, waiting for POST /events")
    yield


app = FastAPI(
    title="BedSense API",
    description="""
## BedSense API

Daily metrics and activity timelines from bed sensor events.

### Features
- **Daily metrics**: time in bed, exits, repositions, restlessness and longest continuous sleep
- **Range summary**: averages, median longest sleep, extremes and trend statistics
- **Timeline**: gap-filled 24-hour activity timeline (18:00 to 18:00)

### Loading data
Configure via `--events-csv` flag or `EVENTS_CSV_PATH` environment variable,
or post CSV text to `/events`.
    """,
    version="0.1.0",
    lifespan=lifespan,
)


def _resolve_range(start_date: Optional[date], end_date: Optional[date]) -> tuple[date, date]:
    """Fill missing range bounds from the default range of the loaded data."""
    if start_date is None or end_date is None:
        default = default_date_range(event_store.events)
        if default is None:
            raise NoEventsLoadedError("No events loaded")
        start_date = start_date or default[0]
        end_date = end_date or default[1]
    if start_date > end_date:
        raise ValueError(f"start_date {start_date} is after end_date {end_date}")
    return start_date, end_date


def _format_daily(metrics: DailyMetrics) -> dict:
    return {
        "day": str(metrics.day),
        "in_bed_minutes": metrics.in_bed_minutes,
        "in_bed_hours": round(metrics.in_bed_hours, 1),
        "repositions": metrics.repositions,
        "exits": metrics.exits,
        "restless_minutes_by_level": {
            level.value: minutes for level, minutes in metrics.restless_minutes_by_level.items()
        },
        "restless_minutes": metrics.restless_minutes,
        "restless_percent": round(metrics.restless_percent, 1),
        "longest_continuous_sleep_hours": round(metrics.longest_continuous_sleep_hours, 1),
    }


def _format_summary(summary: RangeSummary) -> dict:
    return {
        "start_date": str(summary.start_date),
        "end_date": str(summary.end_date),
        "days": summary.day_count,
        "average_hours_in_bed": round(summary.average_hours_in_bed, 1),
        "average_repositions": round(summary.average_repositions, 1),
        "average_exits": round(summary.average_exits, 1),
        "average_restless_percent": round(summary.average_restless_percent, 1),
        "median_longest_sleep_hours": round(summary.median_longest_sleep_hours, 1),
        "longest_in_bed": {"day": str(summary.longest_in_bed.day), "hours": round(summary.longest_in_bed.value, 1)},
        "shortest_in_bed": {"day": str(summary.shortest_in_bed.day), "hours": round(summary.shortest_in_bed.value, 1)},
        "most_repositions": {"day": str(summary.most_repositions.day), "count": int(summary.most_repositions.value)},
        "shortest_continuous_sleep": {
            "day": str(summary.shortest_continuous_sleep.day),
            "hours": round(summary.shortest_continuous_sleep.value, 1),
        },
        "exit_days": summary.exit_days,
        "short_sleep_days": summary.short_sleep_days,
        "high_restlessness_days": summary.high_restlessness_days,
    }


def _format_stats(stats: TrendStatistics) -> dict:
    return {
        "mean": round(stats.mean, 3),
        "std": round(stats.std, 3),
        "upper_band": round(stats.upper_band, 3),
        "lower_band": round(stats.lower_band, 3),
    }


def _format_trends(trends: TrendData) -> dict:
    return {
        "days": [str(day) for day in trends.days],
        "hours_in_bed": [round(h, 2) for h in trends.hours_in_bed],
        "repositions": trends.repositions,
        "exits": trends.exits,
        "restless_percent": [round(p, 1) for p in trends.restless_percent],
        "hours_in_bed_stats": _format_stats(trends.hours_in_bed_stats),
        "repositions_stats": _format_stats(trends.repositions_stats),
    }


def _format_flags(flags: DayFlags) -> dict:
    return {
        "day": str(flags.day),
        "in_bed_band": flags.in_bed_band.value,
        "has_exit": flags.has_exit,
        "short_sleep": flags.short_sleep,
        "high_restlessness": flags.high_restlessness,
        "needs_attention": flags.needs_attention,
    }


def _format_segment(segment: TimelineSegment) -> dict:
    return {
        "kind": segment.kind.value,
        "label": segment.label,
        "start": segment.start.isoformat(),
        "end": segment.end.isoformat(),
        "duration_minutes": round(float(segment.duration_minutes), 2),
    }


def _range_or_none(bounds: Optional[tuple[date, date]]) -> Optional[dict]:
    if bounds is None or bounds[0] > bounds[1]:
        return None
    return {"start_date": str(bounds[0]), "end_date": str(bounds[1])}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "message": "BedSense API",
        "events_loaded": len(event_store.events),
        "version": event_store.version,
    }


@app.post("/events")
async def upload_events(request: EventsUploadRequest):
    """
    Replace the loaded event set with the events in a CSV export.

    Expected columns: bed_name, type, value, start_at, end_at.
    Invalid rows are dropped; a file with no valid rows is rejected.
    """
    try:
        events = parse_events_csv(request.csv_text)
    except InvalidEventFileError as e:
        raise HTTPException(status_code=400, detail=str(e))

    version = event_store.load(events, source_name=request.source_name)
    return {
        "events_loaded": len(events),
        "beds": event_store.beds,
        "version": version,
        "default_range": _range_or_none(default_date_range(events)),
    }


@app.get("/beds")
async def beds():
    """List the beds present in the loaded events."""
    return {"beds": event_store.beds}


@app.get("/ranges")
async def preset_ranges():
    """
    Preset date ranges over the loaded data.

    Month presets are relative to today and clamped to the data extent;
    a preset with no overlap with the data is null.
    """
    if not event_store.events:
        raise HTTPException(status_code=404, detail="No events loaded")

    events = event_store.events
    today = date.today()
    last_month_year, last_month = (today.year - 1, 12) if today.month == 1 else (today.year, today.month - 1)
    return {
        "default": _range_or_none(default_date_range(events)),
        "last_7_days": _range_or_none(last_days_range(events, 7)),
        "last_14_days": _range_or_none(last_days_range(events, 14)),
        "last_30_days": _range_or_none(last_days_range(events, 30)),
        "this_month": _range_or_none(month_range(events, today.year, today.month)),
        "last_month": _range_or_none(month_range(events, last_month_year, last_month)),
    }


@analytics_router.get("/daily")
async def daily_analytics(
    bed: Optional[str] = Query(None, description="Bed name, defaults to all beds"),
    start_date: Optional[date] = Query(None, description="Start date (YYYY-MM-DD), defaults to 30 days before the last event"),
    end_date: Optional[date] = Query(None, description="End date (YYYY-MM-DD), defaults to the last event day"),
):
    """
    Get per-day metrics.

    Days without events for the bed are omitted.
    """
    try:
        start_date, end_date = _resolve_range(start_date, end_date)
        daily = event_store.daily_metrics(bed)
        return {
            "bed": bed,
            "start_date": str(start_date),
            "end_date": str(end_date),
            "days": [_format_daily(m) for m in metrics_in_range(daily, start_date, end_date)],
        }
    except (NoEventsLoadedError, UnknownBedError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Daily analytics failed")
        raise HTTPException(status_code=500, detail=str(e))


@analytics_router.get("/summary")
async def summary_analytics(
    bed: Optional[str] = Query(None, description="Bed name, defaults to all beds"),
    start_date: Optional[date] = Query(None, description="Start date (YYYY-MM-DD), defaults to 30 days before the last event"),
    end_date: Optional[date] = Query(None, description="End date (YYYY-MM-DD), defaults to the last event day"),
):
    """
    Get the range summary, its textual description and trend series.

    `summary` and `text` are null when no day in the range has data;
    `trends` is null for a single-day range.
    """
    try:
        start_date, end_date = _resolve_range(start_date, end_date)
        daily = event_store.daily_metrics(bed)
        summary = summarize_range(daily, start_date, end_date)
        trends = compute_trends(daily, start_date, end_date)
        return {
            "bed": bed,
            "start_date": str(start_date),
            "end_date": str(end_date),
            "summary": _format_summary(summary) if summary else None,
            "text": describe_range(summary) if summary else None,
            "trends": _format_trends(trends) if trends else None,
        }
    except (NoEventsLoadedError, UnknownBedError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Summary analytics failed")
        raise HTTPException(status_code=500, detail=str(e))


@analytics_router.get("/calendar")
async def calendar_analytics(
    bed: Optional[str] = Query(None, description="Bed name, defaults to all beds"),
    start_date: Optional[date] = Query(None, description="Start date (YYYY-MM-DD), defaults to 30 days before the last event"),
    end_date: Optional[date] = Query(None, description="End date (YYYY-MM-DD), defaults to the last event day"),
    threshold: float = Query(HIGH_RESTLESS_PERCENT_THRESHOLD, ge=0, description="High restlessness threshold in %"),
):
    """
    Get calendar tile flags for every day with data in the range.
    """
    try:
        start_date, end_date = _resolve_range(start_date, end_date)
        daily = event_store.daily_metrics(bed)
        return {
            "bed": bed,
            "start_date": str(start_date),
            "end_date": str(end_date),
            "threshold": threshold,
            "days": [
                _format_flags(classify_day(m, threshold))
                for m in metrics_in_range(daily, start_date, end_date)
            ],
        }
    except (NoEventsLoadedError, UnknownBedError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Calendar analytics failed")
        raise HTTPException(status_code=500, detail=str(e))


@analytics_router.get("/timeline/{day}")
async def timeline_analytics(
    day: date,
    bed: Optional[str] = Query(None, description="Bed name, defaults to all beds"),
):
    """
    Get the activity timeline for the 24 hours ending at 18:00 on `day`.

    Segments are contiguous and cover the whole window; uncovered time is `gap`.
    """
    try:
        segments = event_store.timeline(day, bed)
        window_start, window_end = timeline_window(day)
        return {
            "bed": bed,
            "day": str(day),
            "window_start": window_start.isoformat(),
            "window_end": window_end.isoformat(),
            "window_minutes": TIMELINE_MINUTES,
            "segments": [_format_segment(s) for s in segments],
        }
    except (NoEventsLoadedError, UnknownBedError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.exception("Timeline failed")
        raise HTTPException(status_code=500, detail=str(e))


app.include_router(analytics_router)
