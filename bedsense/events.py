"""Bed sensor event records and their normalization from raw CSV rows."""

import io
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, Union

import pandas as pd

from bedsense.config import EVENTS_TIMEZONE

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("bed_name", "type", "value", "start_at", "end_at")


class EventKind(str, Enum):
    """Sensor channel an event was recorded on."""
    PRESENCE = "presence"
    RESTLESSNESS = "restlessness"
    REPOSITION = "reposition"


class PresenceValue(str, Enum):
    ABSENT = "absent"
    PRESENT = "present"
    PRESENT_VARIANT_A = "present_variant_a"
    PRESENT_VARIANT_B = "present_variant_b"

    @property
    def in_bed(self) -> bool:
        return self is not PresenceValue.ABSENT


class RestlessnessLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RepositionValue(str, Enum):
    NONE = "none"
    OCCURRED = "occurred"


EventValue = Union[PresenceValue, RestlessnessLevel, RepositionValue]


class InvalidEventError(ValueError):
    """Raised when a single raw record cannot be normalized into a SensorEvent."""
    pass


class InvalidEventFileError(ValueError):
    """Raised when an event file has no usable rows or lacks required columns."""
    pass


# Source kind discriminators. "patient_detection" is what the bed export writes.
_KIND_ALIASES: dict[str, EventKind] = {
    "patient_detection": EventKind.PRESENCE,
    "presence": EventKind.PRESENCE,
    "restlessness": EventKind.RESTLESSNESS,
    "reposition": EventKind.REPOSITION,
}

# Numeric codes as written by the sensor export, per channel
_VALUE_CODES: dict[EventKind, dict[int, EventValue]] = {
    EventKind.PRESENCE: {
        0: PresenceValue.ABSENT,
        1: PresenceValue.PRESENT,
        2: PresenceValue.PRESENT_VARIANT_A,
        4: PresenceValue.PRESENT_VARIANT_B,
    },
    EventKind.RESTLESSNESS: {
        1: RestlessnessLevel.LOW,
        2: RestlessnessLevel.MEDIUM,
        3: RestlessnessLevel.HIGH,
    },
    EventKind.REPOSITION: {
        0: RepositionValue.NONE,
        1: RepositionValue.OCCURRED,
    },
}

_VALUE_ENUMS: dict[EventKind, type[Enum]] = {
    EventKind.PRESENCE: PresenceValue,
    EventKind.RESTLESSNESS: RestlessnessLevel,
    EventKind.REPOSITION: RepositionValue,
}


@dataclass(frozen=True)
class SensorEvent:
    """One recorded interval for one bed."""
    bed_id: str
    kind: EventKind
    value: EventValue
    start: datetime
    end: datetime

    @property
    def is_in_bed(self) -> bool:
        """True for a presence reading claiming the bed is occupied."""
        return self.kind is EventKind.PRESENCE and self.value is not PresenceValue.ABSENT

    @property
    def is_absent(self) -> bool:
        return self.kind is EventKind.PRESENCE and self.value is PresenceValue.ABSENT


def normalize_kind(raw: object) -> EventKind:
    """Map a raw type discriminator onto EventKind."""
    if isinstance(raw, EventKind):
        return raw
    key = str(raw).strip().lower()
    try:
        return _KIND_ALIASES[key]
    except KeyError:
        raise InvalidEventError(f"Unknown event type: {raw!r}") from None


def normalize_value(kind: EventKind, raw: object) -> EventValue:
    """Map a raw value code onto the closed enum for its channel.

    Accepts numeric codes in any of the shapes a CSV reader hands back
    ("1", 1, 1.0) as well as the enum member names ("present", "high").

    Raises:
        InvalidEventError: If the code is not known for this channel.
    """
    enum_type = _VALUE_ENUMS[kind]
    if isinstance(raw, enum_type):
        return raw  # type: ignore[return-value]

    text = str(raw).strip().lower()
    try:
        code = int(float(text))
    except (ValueError, OverflowError):
        code = None

    if code is not None and float(text) == code:
        value = _VALUE_CODES[kind].get(code)
        if value is not None:
            return value
    else:
        try:
            return enum_type(text)  # type: ignore[return-value]
        except ValueError:
            pass

    raise InvalidEventError(f"Unknown {kind.value} value: {raw!r}")


def make_event(bed_id: object, kind: object, value: object, start: datetime, end: datetime) -> SensorEvent:
    """Build a validated SensorEvent from loosely typed fields."""
    if start > end:
        raise InvalidEventError(f"Event starts after it ends: {start} > {end}")
    event_kind = normalize_kind(kind)
    return SensorEvent(
        bed_id=str(bed_id),
        kind=event_kind,
        value=normalize_value(event_kind, value),
        start=start,
        end=end,
    )


def _to_wall_clock(column: pd.Series, tz: str) -> pd.Series:
    """Parse ISO 8601 strings into naive wall-clock timestamps in `tz`.

    Unparseable entries become NaT.
    """
    # utc=True lets offset-aware and naive strings coexist; naive ones are read as UTC
    # and, with the default zone, come back unchanged.
    parsed = pd.to_datetime(column, errors="coerce", utc=True, format="ISO8601")
    return parsed.dt.tz_convert(tz).dt.tz_localize(None)


def parse_events_frame(df: pd.DataFrame, tz: str = EVENTS_TIMEZONE) -> list[SensorEvent]:
    """Normalize a raw events DataFrame into SensorEvents.

    Rows with invalid timestamps, reversed intervals, or unknown kind/value codes
    are dropped and counted.

    Raises:
        InvalidEventFileError: If a required column is missing or no row survives.
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise InvalidEventFileError(f"Missing required columns: {', '.join(missing)}")

    starts = _to_wall_clock(df["start_at"], tz)
    ends = _to_wall_clock(df["end_at"], tz)
    valid_mask = starts.notna() & ends.notna() & (starts <= ends)

    events: list[SensorEvent] = []
    rejected = int((~valid_mask).sum())
    for bed, kind, value, start, end in zip(
        df["bed_name"][valid_mask],
        df["type"][valid_mask],
        df["value"][valid_mask],
        starts[valid_mask],
        ends[valid_mask],
    ):
        try:
            events.append(make_event(bed, kind, value, start.to_pydatetime(), end.to_pydatetime()))
        except InvalidEventError as e:
            logger.debug(f"Dropping event row: {e}")
            rejected += 1

    if rejected:
        logger.warning(f"Dropped {rejected} invalid event rows")
    if not events:
        raise InvalidEventFileError(
            "No valid data rows found. Check 'start_at' and 'end_at' columns and date formats."
        )

    logger.info(f"Parsed {len(events)} events")
    return events


def parse_events_csv(text: str, tz: str = EVENTS_TIMEZONE) -> list[SensorEvent]:
    """Parse CSV text with bed_name, type, value, start_at, end_at columns."""
    try:
        df = pd.read_csv(io.StringIO(text), dtype=str, skip_blank_lines=True)
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
        raise InvalidEventFileError(f"Could not read CSV: {e}") from e
    return parse_events_frame(df, tz)


def load_events_csv(path: Path | str, tz: str = EVENTS_TIMEZONE) -> list[SensorEvent]:
    """Load and normalize an events CSV file from disk."""
    return parse_events_csv(Path(path).read_text(), tz)


def events_to_dataframe(events: Iterable[SensorEvent]) -> pd.DataFrame:
    """Convert events to a DataFrame, one row per event."""
    records = []
    for event in events:
        records.append({
            "bed_id": event.bed_id,
            "kind": event.kind.value,
            "value": event.value.value,
            "start": event.start,
            "end": event.end,
            "day": event.start.date(),
        })
    return pd.DataFrame(records, columns=["bed_id", "kind", "value", "start", "end", "day"])


def bed_names(events: Iterable[SensorEvent]) -> list[str]:
    """Sorted unique bed identifiers."""
    return sorted({event.bed_id for event in events})
