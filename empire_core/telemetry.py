"""Telemetry for the job scheduler and modifier engine."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _get_env_float(env_key: str, default: float) -> float:
    """Return a float environment variable with a fallback."""

    value = os.getenv(env_key)
    if value is None:
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


class MetricType(Enum):
    """Types of metrics tracked."""
    JOB_STATE = "job_state"
    QUEUE_DEPTH = "queue_depth"
    CACHE = "cache"
    ERROR_RATE = "error_rate"
    PERFORMANCE = "performance"
    SYSTEM_EVENT = "system_event"
    ECONOMY_BALANCE = "economy_balance"


@dataclass
class MetricEvent:
    """Individual metric event."""
    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetryCollector:
    """Collects and stores telemetry data for the empire core."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize telemetry collector with database storage."""
        self.db_path = db_path or Path("telemetry.db")
        self._init_database()
        self._metrics_buffer: List[MetricEvent] = []
        self._buffer_lock = threading.Lock()
        self._flush_interval = 60  # seconds
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

    def track_job_outcome(
        self,
        kind: str,
        outcome: str,
        *,
        duration_ms: Optional[float] = None,
        retries: int = 0,
    ) -> None:
        """Record a dispatched job finishing, failing, or being reaped."""

        metadata: Dict[str, Any] = {"retries": retries}
        if duration_ms is not None:
            metadata["duration_ms"] = float(duration_ms)
        self.record(
            MetricType.JOB_STATE,
            kind,
            1.0,
            tags={"outcome": outcome},
            metadata=metadata,
        )

    def track_queue_snapshot(
        self,
        *,
        event: str,
        pending_count: int,
        oldest_pending_seconds: Optional[float],
        max_pending: float = 50.0,
        max_age_hours: float = 1.0,
    ) -> Dict[str, Optional[str]]:
        """Record the pending backlog and return any alert messages.

        Environment variables override the configured thresholds.
        """

        metadata: Dict[str, Any] = {"pending_count": pending_count}
        if oldest_pending_seconds is not None:
            metadata["oldest_pending_seconds"] = float(oldest_pending_seconds)

        self.record(
            MetricType.QUEUE_DEPTH,
            "jobs",
            float(pending_count),
            tags={"event": event},
            metadata=metadata,
        )

        pending_threshold = _get_env_float("EMPIRE_ALERT_MAX_PENDING_JOBS", max_pending)
        age_threshold_hours = _get_env_float("EMPIRE_ALERT_MAX_JOB_AGE_HOURS", max_age_hours)

        pending_message: Optional[str] = None
        stale_message: Optional[str] = None

        if pending_threshold > 0 and pending_count >= pending_threshold:
            pending_message = (
                f"Job backlog at {pending_count} pending (threshold {pending_threshold:.0f})."
            )
            self.track_system_event("alert_job_backlog_pending", reason=pending_message)

        if (
            oldest_pending_seconds is not None
            and age_threshold_hours > 0
            and (oldest_pending_seconds / 3600.0) >= age_threshold_hours
        ):
            hours = oldest_pending_seconds / 3600.0
            stale_message = (
                f"Oldest due job has waited {hours:.1f}h "
                f"(threshold {age_threshold_hours:.1f}h)."
            )
            self.track_system_event("alert_job_backlog_stale", reason=stale_message)

        return {"pending_alert": pending_message, "stale_alert": stale_message}

    def track_cache_lookup(self, *, hit: bool) -> None:
        self.record(MetricType.CACHE, "modifier_cache", 1.0, tags={"hit": str(hit)})

    def track_error(
        self,
        error_type: str,
        *,
        context: Optional[str] = None,
        error_details: Optional[str] = None,
    ) -> None:
        """Track errors and failures."""
        tags = {"context": context} if context else {}
        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {},
        )

    def track_system_event(
        self,
        event: str,
        *,
        source: str = "dispatcher",
        reason: Optional[str] = None,
    ) -> None:
        self.record(
            MetricType.SYSTEM_EVENT,
            event,
            1.0,
            tags={"source": source},
            metadata={"reason": reason} if reason else {},
        )

    def track_performance(
        self,
        operation: str,
        duration_ms: float,
        tags: Optional[Dict[str, str]] = None,
    ) -> None:
        """Track performance metrics."""
        self.record(
            MetricType.PERFORMANCE,
            operation,
            duration_ms,
            tags=tags or {},
            metadata={"unit": "milliseconds"},
        )

    def track_production(
        self,
        subject_id: str,
        resource: str,
        credited: float,
        *,
        discarded: float = 0.0,
        multiplier: float = 1.0,
    ) -> None:
        """Track resource production credited to a subject."""
        self.record(
            MetricType.ECONOMY_BALANCE,
            f"production_{resource}",
            float(credited),
            tags={"subject_id": subject_id, "resource": resource},
            metadata={"discarded": float(discarded), "multiplier": float(multiplier)},
        )

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {},
        )
        with self._buffer_lock:
            self._metrics_buffer.append(event)
            should_flush = (
                len(self._metrics_buffer) >= 100
                or time.time() - self._last_flush > self._flush_interval
            )
        if should_flush:
            self.flush()

    def flush(self) -> None:
        """Flush buffered metrics to database."""
        with self._buffer_lock:
            pending = list(self._metrics_buffer)
            self._metrics_buffer.clear()
            self._last_flush = time.time()
        if not pending:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.executemany(
                    """
                    INSERT INTO metrics
                    (timestamp, metric_type, name, value, tags, metadata)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            event.timestamp,
                            event.metric_type.value,
                            event.name,
                            event.value,
                            json.dumps(event.tags),
                            json.dumps(event.metadata),
                        )
                        for event in pending
                    ],
                )
                conn.commit()
            logger.debug("Flushed %d metrics to database", len(pending))
        except sqlite3.Error as exc:
            logger.error("Failed to flush metrics: %s", exc)

    def get_job_outcome_summary(self, hours: int = 24) -> Dict[str, Dict[str, int]]:
        """Count job outcomes per kind over the last ``hours``."""

        self.flush()
        start_time = time.time() - (hours * 3600)
        summary: Dict[str, Dict[str, int]] = {}
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                SELECT name, json_extract(tags, '$.outcome') AS outcome, COUNT(*)
                FROM metrics
                WHERE metric_type = ? AND timestamp >= ?
                GROUP BY name, outcome
                """,
                (MetricType.JOB_STATE.value, start_time),
            )
            for kind, outcome, count in cursor.fetchall():
                summary.setdefault(kind, {})[outcome or "unknown"] = int(count)
        return summary

    def get_cache_hit_rate(self, hours: int = 24) -> Optional[float]:
        self.flush()
        start_time = time.time() - (hours * 3600)
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT
                    SUM(CASE WHEN json_extract(tags, '$.hit') = 'True' THEN 1 ELSE 0 END),
                    COUNT(*)
                FROM metrics
                WHERE metric_type = ? AND timestamp >= ?
                """,
                (MetricType.CACHE.value, start_time),
            ).fetchone()
        if not row or not row[1]:
            return None
        return float(row[0] or 0) / float(row[1])

    def get_system_events(self, hours: int = 24, limit: int = 20) -> List[Dict[str, Any]]:
        self.flush()
        start_time = time.time() - (hours * 3600)
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT timestamp, name, tags, metadata
                FROM metrics
                WHERE metric_type = ? AND timestamp >= ?
                ORDER BY timestamp DESC
                LIMIT ?
                """,
                (MetricType.SYSTEM_EVENT.value, start_time, limit),
            ).fetchall()
        return [
            {
                "timestamp": row[0],
                "event": row[1],
                "source": json.loads(row[2] or "{}").get("source"),
                "reason": json.loads(row[3] or "{}").get("reason"),
            }
            for row in rows
        ]

    def cleanup_old_data(self, days_to_keep: int = 30) -> int:
        """Clean up old telemetry data."""
        cutoff_time = time.time() - (days_to_keep * 86400)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM metrics WHERE timestamp < ?", (cutoff_time,))
            deleted = cursor.rowcount
            conn.commit()

        logger.info("Cleaned up %d old metric events", deleted)
        return deleted


# Singleton instance
_telemetry: Optional[TelemetryCollector] = None
_telemetry_lock = threading.Lock()


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    with _telemetry_lock:
        if _telemetry is None:
            db_path = os.getenv("EMPIRE_TELEMETRY_DB")
            _telemetry = TelemetryCollector(Path(db_path) if db_path else None)
        return _telemetry


def reset_telemetry() -> None:
    """Flush and drop the singleton so the next call re-reads the environment."""
    global _telemetry
    with _telemetry_lock:
        if _telemetry is not None:
            _telemetry.flush()
        _telemetry = None


class track_duration:
    """Context manager for tracking operation duration."""

    def __init__(self, operation: str, tags: Optional[Dict[str, str]] = None):
        self.operation = operation
        self.tags = tags or {}
        self.start_time = 0.0

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000
        telemetry = get_telemetry()
        telemetry.track_performance(self.operation, duration_ms, self.tags)
        if exc_type:
            telemetry.track_error(
                exc_type.__name__,
                context=self.operation,
                error_details=str(exc_val),
            )


__all__ = [
    "MetricEvent",
    "MetricType",
    "TelemetryCollector",
    "get_telemetry",
    "reset_telemetry",
    "track_duration",
]
