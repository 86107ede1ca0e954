"""Telemetry and scheduler status for egg_tracker."""
from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics tracked."""
    POLL = "poll"
    FETCH_ERROR = "fetch_error"
    NOTIFICATION = "notification"
    STORAGE = "storage"
    COMMAND_USAGE = "command_usage"
    ERROR_RATE = "error_rate"
    PERFORMANCE = "performance"
    SYSTEM_EVENT = "system_event"


@dataclass
class MetricEvent:
    """Individual metric event."""
    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SchedulerStatus:
    """Timestamps of the latest scheduler rounds, shown by ``ping``."""

    last_query: int = 0
    last_subscribe_query: int = 0
    poll_rounds: int = 0
    subscribe_rounds: int = 0

    def mark_query(self, now: int) -> None:
        self.last_query = int(now)
        self.poll_rounds += 1

    def mark_subscribe_query(self, now: int) -> None:
        self.last_subscribe_query = int(now)
        self.subscribe_rounds += 1


class TelemetryCollector:
    """Collects and stores telemetry data for egg_tracker."""

    def __init__(self, db_path: Optional[Path] = None, *, flush_interval: float = 60.0, buffer_size: int = 100):
        """Initialize telemetry collector with database storage."""
        self.db_path = db_path or Path("telemetry.db")
        self._init_database()
        self._start_time = time.time()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = flush_interval
        self._buffer_size = buffer_size
        self._last_flush = time.time()

    def _init_database(self):
        """Initialize telemetry database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    metric_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value REAL NOT NULL,
                    tags TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_name
                ON metrics(metric_type, name)
            """)
            conn.commit()

    def track_poll(self, ei: str, success: bool, duration_ms: Optional[float] = None):
        """Track a single account fetch."""
        metadata = {"duration_ms": duration_ms} if duration_ms is not None else {}
        self.record(
            MetricType.POLL,
            "account_fetch",
            1.0,
            tags={"ei": ei, "success": str(success)},
            metadata=metadata,
        )

    def track_fetch_error(self, target: str, kind: str, detail: str = ""):
        """Track a failed remote query by error kind."""
        self.record(
            MetricType.FETCH_ERROR,
            kind,
            1.0,
            tags={"target": target},
            metadata={"detail": detail[:200]},
        )

    def track_notification(self, channel: str, delivered: bool, count: int = 1):
        """Track outgoing chat notifications."""
        self.record(
            MetricType.NOTIFICATION,
            channel,
            float(count),
            tags={"delivered": str(delivered)},
        )

    def track_storage_drop(self, command: str):
        """Track a storage command that was dropped."""
        self.record(MetricType.STORAGE, command, 1.0, tags={"outcome": "dropped"})

    def track_command(self, command_name: str, chat_id: int, success: bool = True):
        """Track chat command usage."""
        self.record(
            MetricType.COMMAND_USAGE,
            command_name,
            1.0,
            tags={"chat_id": str(chat_id), "success": str(success)},
        )

    def track_error(
        self,
        error_type: str,
        command: Optional[str] = None,
        chat_id: Optional[int] = None,
        error_details: Optional[str] = None
    ):
        """Track errors raised while handling chat commands."""
        tags = {}
        if command:
            tags["command"] = command
        if chat_id is not None:
            tags["chat_id"] = str(chat_id)

        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {}
        )

    def track_system_event(self, event: str, source: Optional[str] = None, reason: Optional[str] = None):
        """Track lifecycle events such as start and shutdown."""
        tags = {}
        if source:
            tags["source"] = source
        metadata = {"reason": reason} if reason else {}
        self.record(MetricType.SYSTEM_EVENT, event, 1.0, tags=tags, metadata=metadata)

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {}
        )

        self._metrics_buffer.append(event)

        # Auto-flush if buffer is getting large or enough time has passed
        if len(self._metrics_buffer) >= self._buffer_size or \
           time.time() - self._last_flush > self._flush_interval:
            self.flush()

    def flush(self):
        """Flush buffered metrics to database."""
        if not self._metrics_buffer:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                for event in self._metrics_buffer:
                    conn.execute("""
                        INSERT INTO metrics
                        (timestamp, metric_type, name, value, tags, metadata)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (
                        event.timestamp,
                        event.metric_type.value,
                        event.name,
                        event.value,
                        json.dumps(event.tags),
                        json.dumps(event.metadata)
                    ))
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to flush metrics: {e}")
            return

        logger.debug(f"Flushed {len(self._metrics_buffer)} metrics to database")
        self._metrics_buffer.clear()
        self._last_flush = time.time()

    def get_summary(self, hours: int = 24) -> Dict[str, Dict[str, float]]:
        """Totals per metric type and name for the last N hours."""
        self.flush()
        start_time = time.time() - (hours * 3600)
        query = """
            SELECT metric_type, name, SUM(value)
            FROM metrics
            WHERE timestamp >= ?
            GROUP BY metric_type, name
        """
        summary: Dict[str, Dict[str, float]] = {}
        with sqlite3.connect(self.db_path) as conn:
            for metric_type, name, total in conn.execute(query, (start_time,)).fetchall():
                summary.setdefault(metric_type, {})[name] = total
        return summary

    def get_error_summary(self, hours: int = 24) -> Dict[str, int]:
        """Get fetch error counts by kind for the last N hours."""
        self.flush()
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT name, COUNT(*) as error_count
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
            ORDER BY error_count DESC
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.FETCH_ERROR.value,
                start_time
            ])
            return {row[0]: row[1] for row in cursor.fetchall()}

    def uptime(self) -> float:
        return time.time() - self._start_time

    def cleanup_old_data(self, days_to_keep: int = 30):
        """Clean up old telemetry data."""
        cutoff_time = time.time() - (days_to_keep * 86400)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM metrics WHERE timestamp < ?",
                (cutoff_time,)
            )
            deleted = cursor.rowcount
            conn.commit()

        logger.info(f"Cleaned up {deleted} old metric events")
        return deleted


# Singleton instance
_telemetry: Optional[TelemetryCollector] = None


def configure_telemetry(db_path: Path) -> TelemetryCollector:
    """Replace the singleton with a collector writing to ``db_path``."""
    global _telemetry
    _telemetry = TelemetryCollector(db_path)
    return _telemetry


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector()
    return _telemetry


__all__ = [
    "MetricEvent",
    "MetricType",
    "SchedulerStatus",
    "TelemetryCollector",
    "configure_telemetry",
    "get_telemetry",
]
