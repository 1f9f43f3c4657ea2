import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Event file loaded at startup (optional, events can also be posted to /events)
EVENTS_CSV_PATH = os.getenv("EVENTS_CSV_PATH", "")

# Offset-aware timestamps are converted to this zone; naive ones are taken as-is
EVENTS_TIMEZONE = os.getenv("EVENTS_TIMEZONE", "UTC")

# Detail timeline runs from this hour on the previous evening for 24 hours
TIMELINE_START_HOUR = int(os.getenv("TIMELINE_START_HOUR", "18"))

# Calendar / summary thresholds
HIGH_RESTLESS_PERCENT_THRESHOLD = float(os.getenv("HIGH_RESTLESS_PERCENT_THRESHOLD", "20"))
SHORT_SLEEP_HOURS = float(os.getenv("SHORT_SLEEP_HOURS", "3"))
DEFAULT_RANGE_DAYS = int(os.getenv("DEFAULT_RANGE_DAYS", "30"))

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent
SAMPLE_EVENTS_CSV = PROJECT_ROOT / "tests" / "fixtures" / "bed_events_sample.csv"
