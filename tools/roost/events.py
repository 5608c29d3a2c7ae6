"""Append-only JSONL event log for account activity.

Events never carry password material. Write failures are logged and dropped
so that a full disk cannot block logins.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class EventLog:
    """Append-only JSONL log of account events (registrations, logins, logouts)."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def record(self, event_type: str, **details: Any) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            event = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event_type": event_type,
                **details,
            }
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event, ensure_ascii=True, default=str) + "\n")
        except OSError as e:
            logger.warning(f"Could not write event {event_type}: {e}")

    def read(self, event_type: str | None = None) -> list[dict[str, Any]]:
        """Return logged events, oldest first, optionally filtered by type."""
        if not self.path.exists():
            return []

        events = []
        with self.path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type:
                    continue
                events.append(event)
        return events
