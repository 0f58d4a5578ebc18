from __future__ import annotations

import json
from typing import Any


def parse_sse_events(payload_text: str) -> list[dict[str, Any]]:
    """Split an event-stream body into ``{"event", "data"}`` dicts; comment lines are skipped."""
    events: list[dict[str, Any]] = []
    current: dict[str, Any] = {}
    for raw_line in payload_text.splitlines():
        line = raw_line.strip("\r")
        if line.startswith(":"):
            continue
        if line.startswith("event: "):
            current["event"] = line[7:]
        elif line.startswith("data: "):
            current["data"] = line[6:]
        elif line == "" and current:
            events.append(current)
            current = {}
    if current:
        events.append(current)
    return events


def snapshot_items(events: list[dict[str, Any]]) -> list[list[dict[str, Any]]]:
    return [json.loads(event["data"])["items"] for event in events if event.get("event") == "snapshot"]
