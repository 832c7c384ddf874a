#!/usr/bin/env python3
"""
Health Monitor for Birthday Scheduler

This module provides health checks, metrics, and operator visibility for the
birthday scheduler. Deliveries that exhausted their retries stay FAILED and
are never retried automatically; this is where they surface for alerting.
"""

import json
import logging
import os
import sqlite3
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import psutil

from scheduler import DeliveryPolicy, resolve_timezone, utc_now

logger = logging.getLogger(__name__)

# ============================================================================
# HEALTH CHECK DATA STRUCTURES
# ============================================================================

@dataclass
class HealthStatus:
    """Overall health status of the scheduler system"""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    database_connected: bool
    last_successful_run: Optional[str]
    pending_deliveries: int
    exhausted_deliveries: int
    failure_rate_24h: float
    issues: List[str]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return asdict(self)

@dataclass
class SystemMetrics:
    """Detailed system metrics for monitoring"""
    timestamp: str

    # Directory
    total_people: int
    invalid_timezones: int

    # Delivery outcomes
    attempts_24h: int
    sent_24h: int
    failed_24h: int
    exhausted_deliveries: int
    avg_attempts_per_sent: float

    # Scheduler runs
    runs_24h: int
    failed_runs_24h: int
    conflicts_24h: int

    # Resources
    db_size_mb: float
    process_rss_mb: float
    process_cpu_percent: float

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return asdict(self)

# ============================================================================
# HEALTH MONITOR CLASS
# ============================================================================

class HealthMonitor:
    """Health monitoring and metrics collection for the birthday scheduler"""

    def __init__(self, db_path: str, policy: Optional[DeliveryPolicy] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.db_path = db_path
        self.policy = policy or DeliveryPolicy()
        self.clock = clock or utc_now
        self.start_time = self.clock()

    def _cutoff_24h(self) -> str:
        return (self.clock() - timedelta(days=1)).astimezone(timezone.utc).isoformat()

    def get_health_status(self) -> HealthStatus:
        """Get current health status of the system"""
        issues = []

        db_connected = self.check_db_connection()
        if not db_connected:
            issues.append("Database connection failed")

        last_run = self.get_last_successful_run()
        if last_run:
            run_age = self.clock() - datetime.fromisoformat(last_run)
            if run_age > timedelta(hours=2):
                issues.append(f"Last successful run was {run_age.total_seconds() / 3600:.1f} hours ago")
        else:
            issues.append("No successful runs found")

        exhausted = self.count_exhausted_deliveries()
        if exhausted > 0:
            issues.append(f"{exhausted} birthday messages exhausted their retries")

        failure_rate = self.calculate_failure_rate_24h()
        if failure_rate > 0.05:
            issues.append(f"High delivery failure rate: {failure_rate:.2%}")

        if not db_connected:
            status = "unhealthy"
        elif issues:
            status = "degraded"
        else:
            status = "healthy"

        return HealthStatus(
            status=status,
            timestamp=self.clock().isoformat(),
            database_connected=db_connected,
            last_successful_run=last_run,
            pending_deliveries=self.count_pending_deliveries(),
            exhausted_deliveries=exhausted,
            failure_rate_24h=failure_rate,
            issues=issues
        )

    def get_metrics(self) -> SystemMetrics:
        """Get detailed system metrics"""
        process = psutil.Process()
        sent_24h = self._count_records("status = 'SENT' AND sent_at >= ?", (self._cutoff_24h(),))

        return SystemMetrics(
            timestamp=self.clock().isoformat(),
            total_people=self._get_total_people(),
            invalid_timezones=self.count_invalid_timezones(),
            attempts_24h=self._count_records("last_attempt_at >= ?", (self._cutoff_24h(),)),
            sent_24h=sent_24h,
            failed_24h=self._count_records("status = 'FAILED' AND last_attempt_at >= ?", (self._cutoff_24h(),)),
            exhausted_deliveries=self.count_exhausted_deliveries(),
            avg_attempts_per_sent=self._get_avg_attempts_per_sent(),
            runs_24h=self._count_checkpoints("1 = 1"),
            failed_runs_24h=self._count_checkpoints("status = 'failed'"),
            conflicts_24h=self._sum_checkpoint_conflicts(),
            db_size_mb=self._get_db_size_mb(),
            process_rss_mb=process.memory_info().rss / (1024 * 1024),
            process_cpu_percent=process.cpu_percent(interval=None)
        )

    def check_db_connection(self) -> bool:
        """Check if database connection is working"""
        try:
            with sqlite3.connect(self.db_path, timeout=5) as conn:
                conn.execute("SELECT 1 FROM delivery_records LIMIT 1").fetchall()
                return True
        except sqlite3.Error as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    def get_last_successful_run(self) -> Optional[str]:
        """Get timestamp of last successful scheduler pass"""
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute("""
                    SELECT completed_at FROM scheduler_checkpoints
                    WHERE status = 'completed'
                    ORDER BY completed_at DESC
                    LIMIT 1
                """).fetchone()
                return row[0] if row else None
        except sqlite3.Error as e:
            logger.error(f"Error checking last successful run: {e}")
            return None

    def count_pending_deliveries(self) -> int:
        """PENDING records for the current year"""
        return self._count_records("status = 'PENDING' AND occurrence_year = ?", (self.clock().year,))

    def count_exhausted_deliveries(self) -> int:
        return self._count_records("status = 'FAILED' AND attempt_count >= ?", (self.policy.max_retries,))

    def get_exhausted_deliveries(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Deliveries in terminal FAILED state, newest first, for operator follow-up"""
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.row_factory = sqlite3.Row
                cursor = conn.execute("""
                    SELECT r.id AS record_id, r.person_id, p.first_name, p.last_name, p.email,
                           p.location, r.occurrence_year, r.occurrence_month, r.occurrence_day,
                           r.attempt_count, r.last_attempt_at, r.last_error
                    FROM delivery_records r
                    JOIN people p ON p.id = r.person_id
                    WHERE r.status = 'FAILED' AND r.attempt_count >= ?
                    ORDER BY r.last_attempt_at DESC
                    LIMIT ?
                """, (self.policy.max_retries, limit))
                return [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logger.error(f"Error listing exhausted deliveries: {e}")
            return []

    def calculate_failure_rate_24h(self) -> float:
        """Share of records attempted in the last 24 hours that are currently FAILED"""
        cutoff = self._cutoff_24h()
        attempted = self._count_records("last_attempt_at >= ?", (cutoff,))
        if attempted == 0:
            return 0.0
        failed = self._count_records("status = 'FAILED' AND last_attempt_at >= ?", (cutoff,))
        return failed / attempted

    def count_invalid_timezones(self) -> int:
        """People whose timezone falls back to UTC"""
        try:
            with sqlite3.connect(self.db_path) as conn:
                locations = [row[0] for row in conn.execute("SELECT location FROM people").fetchall()]
        except sqlite3.Error as e:
            logger.error(f"Error reading people timezones: {e}")
            return 0
        return sum(1 for location in locations if resolve_timezone(location)[1])

    def _count_records(self, where: str, params: tuple = ()) -> int:
        try:
            with sqlite3.connect(self.db_path) as conn:
                return conn.execute(f"SELECT COUNT(*) FROM delivery_records WHERE {where}", params).fetchone()[0]
        except sqlite3.Error as e:
            logger.error(f"Error counting delivery records: {e}")
            return 0

    def _count_checkpoints(self, where: str) -> int:
        try:
            with sqlite3.connect(self.db_path) as conn:
                return conn.execute(
                    f"SELECT COUNT(*) FROM scheduler_checkpoints WHERE run_timestamp >= ? AND {where}",
                    (self._cutoff_24h(),)
                ).fetchone()[0]
        except sqlite3.Error:
            return 0

    def _sum_checkpoint_conflicts(self) -> int:
        try:
            with sqlite3.connect(self.db_path) as conn:
                return conn.execute("""
                    SELECT COALESCE(SUM(conflicts), 0) FROM scheduler_checkpoints
                    WHERE run_timestamp >= ?
                """, (self._cutoff_24h(),)).fetchone()[0]
        except sqlite3.Error:
            return 0

    def _get_total_people(self) -> int:
        try:
            with sqlite3.connect(self.db_path) as conn:
                return conn.execute("SELECT COUNT(*) FROM people").fetchone()[0]
        except sqlite3.Error:
            return 0

    def _get_avg_attempts_per_sent(self) -> float:
        try:
            with sqlite3.connect(self.db_path) as conn:
                value = conn.execute("""
                    SELECT AVG(attempt_count) FROM delivery_records WHERE status = 'SENT'
                """).fetchone()[0]
                return float(value) if value is not None else 0.0
        except sqlite3.Error:
            return 0.0

    def _get_db_size_mb(self) -> float:
        try:
            return os.path.getsize(self.db_path) / (1024 * 1024)
        except OSError:
            return 0.0

    def get_system_summary(self) -> Dict[str, Any]:
        """Get a comprehensive system summary"""
        now = self.clock()
        return {
            "health_status": self.get_health_status().to_dict(),
            "metrics": self.get_metrics().to_dict(),
            "system_info": {
                "uptime_seconds": (now - self.start_time).total_seconds(),
                "database_path": self.db_path,
                "monitoring_timestamp": now.isoformat()
            }
        }

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def main():
    """Main entry point for health monitoring"""
    import argparse

    parser = argparse.ArgumentParser(description='Birthday Scheduler Health Monitor')
    parser.add_argument('--db', required=True, help='SQLite database path')
    parser.add_argument('--max-retries', type=int, default=5, help='Retry cap used by the scheduler')
    parser.add_argument('--health', action='store_true', help='Show health status')
    parser.add_argument('--metrics', action='store_true', help='Show detailed metrics')
    parser.add_argument('--summary', action='store_true', help='Show complete system summary')
    parser.add_argument('--exhausted', action='store_true', help='List deliveries that exhausted their retries')
    parser.add_argument('--json', action='store_true', help='Output in JSON format')

    args = parser.parse_args()

    monitor = HealthMonitor(args.db, DeliveryPolicy(max_retries=args.max_retries))

    if args.exhausted:
        data: Any = monitor.get_exhausted_deliveries()
    elif args.health:
        data = monitor.get_health_status().to_dict()
    elif args.metrics:
        data = monitor.get_metrics().to_dict()
    else:
        data = monitor.get_system_summary()

    if args.json:
        print(json.dumps(data, indent=2))
        return

    if args.exhausted:
        if not data:
            print("No exhausted deliveries")
        for item in data:
            print(f"Record {item['record_id']}: {item['first_name']} {item['last_name']} <{item['email']}> "
                  f"{item['occurrence_year']}-{item['occurrence_month']:02d}-{item['occurrence_day']:02d} "
                  f"after {item['attempt_count']} attempts: {item['last_error']}")
        return

    if args.health or not args.metrics:
        health = data if args.health else data['health_status']
        print(f"System Status: {health['status'].upper()}")
        print(f"Database Connected: {health['database_connected']}")
        print(f"Last Successful Run: {health['last_successful_run'] or 'Never'}")
        print(f"Pending Deliveries: {health['pending_deliveries']}")
        print(f"Exhausted Deliveries: {health['exhausted_deliveries']}")
        print(f"Failure Rate (24h): {health['failure_rate_24h']:.2%}")
        if health['issues']:
            print("Issues:")
            for issue in health['issues']:
                print(f"  - {issue}")

    if args.metrics or not args.health:
        metrics = data if args.metrics else data['metrics']
        print(f"\nSystem Metrics (as of {metrics['timestamp']}):")
        print(f"Total People: {metrics['total_people']:,}")
        print(f"Invalid Timezones: {metrics['invalid_timezones']:,}")
        print(f"Attempts (24h): {metrics['attempts_24h']:,}")
        print(f"Sent (24h): {metrics['sent_24h']:,}")
        print(f"Failed (24h): {metrics['failed_24h']:,}")
        print(f"Database Size: {metrics['db_size_mb']:.1f} MB")
        print(f"Process Memory: {metrics['process_rss_mb']:.1f} MB")

if __name__ == '__main__':
    main()
