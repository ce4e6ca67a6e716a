"""
Tests for performance metrics, retention cleanup and background workers.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from taskboard.database import format_timestamp
from taskboard.monitoring import (
    BackgroundTasks, PerformanceMonitor, performance_monitor, purge_inactive_owners, timed_query,
)

from conftest import OWNER


def age_owner(db, uid, days):
    stale = format_timestamp(datetime.now(timezone.utc) - timedelta(days=days))
    db._connection.execute("UPDATE owners SET last_active_at = ? WHERE uid = ?", (stale, uid))


class TestPerformanceMonitor:

    def test_averages(self):
        monitor = PerformanceMonitor()
        monitor.record_query_time("a", 10.0)
        monitor.record_query_time("b", 20.0)
        monitor.record_broadcast_time(4, 8.0)

        assert monitor.get_average_query_time() == 15.0
        assert monitor.get_average_broadcast_time() == 2.0

    def test_metrics_snapshot(self, hub):
        hub.subscribe_board(1)
        metrics = PerformanceMonitor().get_metrics(hub)

        assert metrics["connections"]["active"] == 1
        assert metrics["retention"]["last_run"] is None
        assert metrics["system"]["memory_usage_mb"] > 0

    def test_timed_query_records(self):
        @timed_query("unit_operation")
        def operation():
            return 42

        assert operation() == 42
        assert performance_monitor.query_times[-1].operation == "unit_operation"


class TestRetention:

    def test_purges_only_stale_owners(self, db, store, board):
        db.touch_owner("fresh")
        task_id = board["tasks"][0]["id"]
        store.save(task_id, "a.txt", b"a")
        age_owner(db, OWNER, 120)

        purged = purge_inactive_owners(db, store, retention_days=90)

        assert purged == 1
        assert db.get_owner(OWNER) is None
        assert db.get_owner("fresh") is not None
        assert store.list_files(task_id) == []
        assert performance_monitor.last_retention_run is not None

    def test_nothing_to_purge(self, db, store):
        db.touch_owner("fresh")
        assert purge_inactive_owners(db, store, retention_days=90) == 0


class TestBackgroundTasks:

    def test_heartbeat_worker_pings_subscribers(self, db, store, hub):
        connection = hub.subscribe_board(1)
        connection.drain()
        tasks = BackgroundTasks()
        sent_before = performance_monitor.heartbeats_sent

        async def run():
            await tasks.start_background_tasks(db, hub, store, heartbeat_interval=0.02, retention_days=90)
            await asyncio.sleep(0.1)
            await tasks.stop_background_tasks()

        asyncio.run(run())

        assert tasks.tasks == []
        assert performance_monitor.heartbeats_sent > sent_before
        assert len(connection.drain()) >= 1
