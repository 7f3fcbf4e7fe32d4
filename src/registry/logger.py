"""JSONL event logger - append-only trail of registry activity"""

from __future__ import annotations

import json
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class EventLogger:
    """Append-only event log.

    Every event gets a monotonic 'sequence' and a UTC timestamp. Recent
    events are kept in memory for get_recent_events(); when output_file is
    set, each event is also appended to that file as one JSON line.
    """

    output_path: Path | None
    _recent: deque[dict[str, Any]]
    _sequence: int

    def __init__(
        self,
        output_file: str | None = None,
        default_recent: int = 50,
        max_retained: int = 1000,
    ) -> None:
        """Initialize the event logger.

        Args:
            output_file: JSONL file to append to; None keeps events in memory only
            default_recent: Events returned by get_recent_events() with no argument
            max_retained: Cap on events held in memory
        """
        self.default_recent = default_recent
        self._recent = deque(maxlen=max_retained)
        self._sequence = 0
        if output_file:
            self.output_path = Path(output_file)
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            # Clear existing log on init (new run)
            self.output_path.write_text("")
        else:
            self.output_path = None

    @property
    def sequence(self) -> int:
        """Sequence number of the most recent event (0 before any)."""
        return self._sequence

    def log(self, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
        """Record an event and return it."""
        self._sequence += 1
        event: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sequence": self._sequence,
            "event_type": event_type,
            **data,
        }
        self._recent.append(event)
        if self.output_path is not None:
            with open(self.output_path, "a") as f:
                f.write(json.dumps(event) + "\n")
        return event

    def get_recent_events(self, n: int | None = None) -> list[dict[str, Any]]:
        """Most recent events, oldest first."""
        count = self.default_recent if n is None else n
        if count <= 0:
            return []
        return list(self._recent)[-count:]

    def read_events(self) -> list[dict[str, Any]]:
        """Every event in the JSONL file. Empty when logging to memory only."""
        if self.output_path is None or not self.output_path.exists():
            return []
        events = []
        with open(self.output_path) as f:
            for line in f:
                line = line.strip()
                if line:
                    events.append(json.loads(line))
        return events
