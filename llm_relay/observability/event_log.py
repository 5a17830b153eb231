"""Routing event log: records routing events to JSONL with a ring buffer."""

import json
import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class RoutingEventLog:
    """Structured event logger with optional JSONL persistence and an in-memory ring buffer."""

    def __init__(self, path: Optional[str] = None, buffer_size: int = 1000):
        self._path = Path(path).expanduser() if path else None
        self._buffer: deque = deque(maxlen=buffer_size)
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    def log_event(
        self,
        event_type: str,
        source: str,
        duration_ms: Optional[float] = None,
        **metadata: Any,
    ) -> Dict[str, Any]:
        """Log a structured routing event."""
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "source": source,
        }
        if duration_ms is not None:
            entry["duration_ms"] = duration_ms
        if metadata:
            entry["metadata"] = metadata

        self._buffer.append(entry)

        if self._path is not None:
            try:
                with open(self._path, "a") as f:
                    f.write(json.dumps(entry, default=str) + "\n")
            except OSError:
                logger.exception("Failed to write routing event to %s", self._path)

        return entry

    def get_recent(self, limit: int = 100, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get recent events from the ring buffer, oldest first."""
        events = [e for e in self._buffer if event_type is None or e["event_type"] == event_type]
        if limit <= 0:
            return []
        return events[-limit:]

    def get_summary(self, hours: float = 1.0) -> Dict[str, int]:
        """Count events by type within a time window."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        counts: Dict[str, int] = {}
        for entry in self._buffer:
            ts = datetime.fromisoformat(entry["timestamp"])
            if ts >= cutoff:
                et = entry.get("event_type", "unknown")
                counts[et] = counts.get(et, 0) + 1
        return counts

    def __len__(self) -> int:
        return len(self._buffer)
