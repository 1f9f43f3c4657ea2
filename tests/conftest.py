"""Pytest configuration and shared fixtures for tests."""

from pathlib import Path

import pytest

from bedsense.events import SensorEvent, load_events_csv

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def sample_csv_path() -> Path:
    """Path to the sample bed events export."""
    return FIXTURES_DIR / "bed_events_sample.csv"


@pytest.fixture
def sample_csv_text(sample_csv_path: Path) -> str:
    """Contents of the sample bed events export."""
    return sample_csv_path.read_text()


@pytest.fixture
def sample_events(sample_csv_path: Path) -> list[SensorEvent]:
    """Normalized events from the sample export."""
    return load_events_csv(sample_csv_path)
