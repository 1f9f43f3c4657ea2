#!/usr/bin/env python3
"""
Script to post a bed events CSV export to the running server and print
the range summary and the timeline of the last day.

Requires the server to be running (uvicorn bedsense.main:app).
Usage: upload_events.py [path/to/export.csv] [bed name]
"""

import json
import sys
from pathlib import Path

import httpx

from bedsense.config import SAMPLE_EVENTS_CSV


def post_events(base_url: str, csv_path: Path) -> dict:
    """Replace the server's event set with the given CSV file."""
    print(f"Uploading {csv_path}...", end=" ", flush=True)
    try:
        response = httpx.post(
            f"{base_url}/events",
            json={"csv_text": csv_path.read_text(), "source_name": csv_path.name},
            timeout=60.0,
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        print(f"HTTP error: {e.response.status_code}")
        if e.response.status_code == 400:
            print(e.response.json().get("detail"))
            sys.exit(1)
        raise
    except httpx.ConnectError:
        print("Connection error. Is the server running? Try 'uvicorn bedsense.main:app' first.")
        sys.exit(1)

    data = response.json()
    print(f"loaded {data['events_loaded']} events for {len(data['beds'])} beds")
    return data


def main():
    base_url = "http://localhost:8000"
    csv_path = Path(sys.argv[1]) if len(sys.argv) > 1 else SAMPLE_EVENTS_CSV

    upload = post_events(base_url, csv_path)
    bed = sys.argv[2] if len(sys.argv) > 2 else upload["beds"][0]
    default_range = upload["default_range"]
    print(f"Bed: {bed}, range {default_range['start_date']} to {default_range['end_date']}")
    print()

    print("=== Summary ===")
    summary = httpx.get(f"{base_url}/analytics/summary", params={"bed": bed}, timeout=60.0).json()
    print(summary["text"])
    print(json.dumps(summary["summary"], indent=2))
    print()

    print(f"=== Timeline for {default_range['end_date']} ===")
    timeline = httpx.get(
        f"{base_url}/analytics/timeline/{default_range['end_date']}",
        params={"bed": bed},
        timeout=60.0,
    ).json()
    for segment in timeline["segments"]:
        print(f"{segment['start']} - {segment['end']}  {segment['label']:<20} {segment['duration_minutes']:>7.1f} min")
    print()

    print("Done!")


if __name__ == "__main__":
    main()
