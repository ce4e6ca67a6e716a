"""
Performance Monitoring and Background Tasks

Collects query and broadcast timings for the metrics endpoint and runs the
periodic maintenance workers alongside the FastAPI application: SSE
heartbeats, retention cleanup of inactive owners, and memory tracking.
"""

import asyncio
import functools
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import psutil

# Monitoring configuration
METRICS_HISTORY_SIZE = 1000  # Keep last 1000 data points for trending
RETENTION_CLEANUP_INTERVAL = 24 * 60 * 60
MEMORY_MONITORING_INTERVAL = 60
SLOW_QUERY_MS = 50

logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetric:
    """Single performance measurement with timestamp."""
    timestamp: datetime
    value: float
    operation: str


class PerformanceMonitor:
    """
    Tracks recent database and broadcast timings.

    Features:
    - Query execution time tracking with slow query warnings
    - Per-connection SSE broadcast latency
    - Process memory and CPU sampling via psutil
    """

    def __init__(self):
        self.query_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.broadcast_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.heartbeats_sent = 0
        self.owners_purged = 0
        self.last_heartbeat: Optional[datetime] = None
        self.last_retention_run: Optional[datetime] = None
        self.start_time = datetime.now(timezone.utc)

    def record_query_time(self, operation: str, duration_ms: float):
        self.query_times.append(PerformanceMetric(
            timestamp=datetime.now(timezone.utc),
            value=duration_ms,
            operation=operation
        ))
        if duration_ms > SLOW_QUERY_MS:
            logger.warning(f"Slow query detected: {operation} took {duration_ms:.2f}ms")

    def record_broadcast_time(self, connection_count: int, duration_ms: float):
        """
        Record SSE broadcast performance.

        Args:
            connection_count: Number of connections broadcasted to
            duration_ms: Total broadcast duration in milliseconds
        """
        per_connection_ms = duration_ms / max(connection_count, 1)
        self.broadcast_times.append(PerformanceMetric(
            timestamp=datetime.now(timezone.utc),
            value=per_connection_ms,
            operation=f"broadcast_to_{connection_count}_connections"
        ))

    def get_average_query_time(self) -> float:
        if not self.query_times:
            return 0.0
        return sum(m.value for m in self.query_times) / len(self.query_times)

    def get_average_broadcast_time(self) -> float:
        if not self.broadcast_times:
            return 0.0
        return sum(m.value for m in self.broadcast_times) / len(self.broadcast_times)

    def get_memory_usage_mb(self) -> float:
        try:
            return psutil.Process().memory_info().rss / (1024 * 1024)
        except psutil.Error as e:
            logger.warning(f"Failed to get memory usage: {e}")
            return 0.0

    def get_cpu_usage_percent(self) -> float:
        try:
            return psutil.cpu_percent(interval=None)
        except psutil.Error as e:
            logger.warning(f"Failed to get CPU usage: {e}")
            return 0.0

    def get_metrics(self, hub) -> Dict[str, Any]:
        """Snapshot for the metrics endpoint."""
        uptime = datetime.now(timezone.utc) - self.start_time
        return {
            "connections": {
                "active": hub.connection_count(),
                "heartbeats_sent": self.heartbeats_sent,
                "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
                "avg_broadcast_ms_per_connection": round(self.get_average_broadcast_time(), 3),
            },
            "database": {
                "avg_query_ms": round(self.get_average_query_time(), 3),
                "samples": len(self.query_times),
            },
            "retention": {
                "owners_purged": self.owners_purged,
                "last_run": self.last_retention_run.isoformat() if self.last_retention_run else None,
            },
            "system": {
                "memory_usage_mb": round(self.get_memory_usage_mb(), 2),
                "cpu_usage_percent": self.get_cpu_usage_percent(),
                "uptime_seconds": int(uptime.total_seconds()),
            },
        }


# Global performance monitor instance
performance_monitor = PerformanceMonitor()


def timed_query(operation: str):
    """Decorator recording the wall time of a database method."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                performance_monitor.record_query_time(
                    operation, (time.perf_counter() - start_time) * 1000
                )
        return wrapper
    return decorator


class BackgroundTasks:
    """
    Background task management for periodic maintenance.

    Heartbeats keep idle SSE streams alive across proxies and are the only
    way dead connections get detected.
    """

    def __init__(self):
        self.tasks: List[asyncio.Task] = []
        self.shutdown_event = asyncio.Event()

    async def start_background_tasks(self, database, hub, attachments,
                                     heartbeat_interval: float, retention_days: int):
        logger.info("Starting background tasks...")
        self.shutdown_event = asyncio.Event()

        self.tasks.append(asyncio.create_task(
            self._heartbeat_worker(hub, heartbeat_interval)
        ))
        self.tasks.append(asyncio.create_task(
            self._retention_worker(database, attachments, retention_days)
        ))
        self.tasks.append(asyncio.create_task(
            self._memory_monitoring_worker()
        ))
        logger.info(f"Started {len(self.tasks)} background tasks")

    async def stop_background_tasks(self):
        """Stop all background tasks gracefully."""
        logger.info("Stopping background tasks...")
        self.shutdown_event.set()

        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self.tasks, return_exceptions=True),
                    timeout=10.0
                )
                logger.info("All background tasks stopped")
            except asyncio.TimeoutError:
                logger.warning("Background task shutdown timeout")
        self.tasks = []

    async def _wait_or_shutdown(self, interval: float) -> bool:
        """Sleep for interval; True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
            return True
        except asyncio.TimeoutError:
            return False

    async def _heartbeat_worker(self, hub, interval: float):
        logger.info(f"Heartbeat worker started (every {interval}s)")
        while not await self._wait_or_shutdown(interval):
            try:
                sent = await asyncio.to_thread(hub.heartbeat)
                performance_monitor.heartbeats_sent += sent
                performance_monitor.last_heartbeat = datetime.now(timezone.utc)
            except Exception as e:
                logger.error(f"Heartbeat worker error: {e}")

    async def _retention_worker(self, database, attachments, retention_days: int):
        logger.info(f"Retention worker started ({retention_days} days)")
        while not await self._wait_or_shutdown(RETENTION_CLEANUP_INTERVAL):
            try:
                await asyncio.to_thread(purge_inactive_owners, database, attachments, retention_days)
            except Exception as e:
                logger.error(f"Retention worker error: {e}")

    async def _memory_monitoring_worker(self):
        logger.info("Memory monitoring worker started")
        memory_history = deque(maxlen=60)

        while not await self._wait_or_shutdown(MEMORY_MONITORING_INTERVAL):
            current_memory = performance_monitor.get_memory_usage_mb()
            memory_history.append(current_memory)

            if len(memory_history) >= 30:
                avg_recent = sum(list(memory_history)[-10:]) / 10
                avg_older = sum(list(memory_history)[-30:-10]) / 20
                growth_rate = (avg_recent - avg_older) / avg_older * 100 if avg_older else 0.0
                if growth_rate > 20:
                    logger.warning(
                        f"Potential memory leak detected: {growth_rate:.1f}% growth "
                        f"(current: {current_memory:.1f}MB)"
                    )

            if len(memory_history) % 15 == 0:
                logger.info(f"Memory usage: {current_memory:.1f}MB")


def purge_inactive_owners(database, attachments, retention_days: int) -> int:
    """
    Delete every owner inactive for longer than retention_days, with their
    boards and attachment folders. Failures for one owner do not stop the rest.

    Returns:
        Number of owners deleted
    """
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    purged = 0
    for uid in database.list_inactive_owners(cutoff):
        try:
            task_ids = database.delete_owner(uid)
            attachments.delete_task_folders(task_ids)
            purged += 1
            logger.info(f"Deleted inactive user data for uid={uid}")
        except Exception as e:
            logger.warning(f"Retention cleanup failed for uid={uid}: {e}")

    performance_monitor.owners_purged += purged
    performance_monitor.last_retention_run = datetime.now(timezone.utc)
    return purged


# Global background task manager
background_tasks = BackgroundTasks()
