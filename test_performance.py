#!/usr/bin/env python3
"""
Performance Test Suite for the Birthday Dispatch Scheduler

Validates that a full tick stays fast over a large directory:
- Detection across many timezones is linear in the number of people
- Only people with a birthday today get a delivery record
- Repeated ticks over an already-processed day never re-dispatch
- Memory usage remains reasonable
"""

import os
import shutil
import sqlite3
import sys
import tempfile
import time
import unittest
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path

import psutil

# Add project root to path
sys.path.append(str(Path(__file__).parent))

from dispatch_client import DispatchResult
from scheduler import BirthdayScheduler, DatabaseManager, SchedulingConfig, find_occurring_today

TIMEZONES = ["UTC", "Asia/Tokyo", "America/New_York", "Europe/London", "Australia/Melbourne",
             "Asia/Kolkata", "America/Los_Angeles", "Invalid/Zone"]


def birthday_for(i):
    # 12 months x 28 days, so every 336 people cover each (month, day) once
    return date(1970 + i % 40, (i % 12) + 1, (i // 12) % 28 + 1)


class CountingClient:
    def __init__(self):
        self.sent = 0

    def send(self, full_name, email, correlation_id):
        self.sent += 1
        return DispatchResult(success=True, status_code=200)


class PerformanceTestBase(unittest.TestCase):
    """Base class for performance tests"""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.test_db_path = os.path.join(self.temp_dir, "perf_test.db")
        self.db_manager = DatabaseManager(self.test_db_path)
        self.config = SchedulingConfig()
        self.client = CountingClient()
        self.now = datetime(2024, 5, 15, 9, 0, tzinfo=timezone.utc)
        self.process = psutil.Process()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    @contextmanager
    def measure_performance(self, operation_name):
        """Context manager to measure performance metrics"""
        start_time = time.time()
        start_memory = self.process.memory_info().rss / 1024 / 1024  # MB
        try:
            yield
        finally:
            duration = time.time() - start_time
            end_memory = self.process.memory_info().rss / 1024 / 1024  # MB
            print(f"\n📊 PERFORMANCE METRICS - {operation_name}")
            print(f"   Duration: {duration:.3f} seconds")
            print(f"   Memory delta: {end_memory - start_memory:+.2f} MB")
            print(f"   Peak memory: {end_memory:.2f} MB")

    def create_large_people_dataset(self, count=2000, timezones=("UTC",)):
        """Bulk insert people with birthdays spread over the year"""
        people = []
        for i in range(count):
            birthday = birthday_for(i)
            people.append((f"PerfTest{i}", f"Person{i}", f"perf{i}@test.com",
                           birthday.isoformat(), timezones[i % len(timezones)]))

        with sqlite3.connect(self.test_db_path) as conn:
            conn.executemany("""
                INSERT INTO people (first_name, last_name, email, birthday, location)
                VALUES (?, ?, ?, ?, ?)
            """, people)

        print(f"✓ Created {count} test people across {len(timezones)} timezones")
        return count

    def make_scheduler(self):
        return BirthdayScheduler(self.db_manager, dispatch_client=self.client,
                                 config=self.config, clock=lambda: self.now)

    def count_records(self):
        with sqlite3.connect(self.test_db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM delivery_records").fetchone()[0]


class TestTickPerformance(PerformanceTestBase):

    def test_full_tick_over_large_directory(self):
        count = self.create_large_people_dataset(2000)
        expected = sum(1 for i in range(count) if (birthday_for(i).month, birthday_for(i).day) == (5, 15))
        self.assertGreater(expected, 0)

        with self.measure_performance("Full tick (2000 people, UTC)"):
            summary = self.make_scheduler().run_tick()

        self.assertEqual(summary.people_considered, count)
        self.assertEqual(summary.occurrences, expected)
        self.assertEqual(self.count_records(), expected)
        self.assertEqual(self.client.sent, expected)
        self.assertEqual(summary.errors, 0)

    def test_repeated_ticks_do_not_redispatch(self):
        self.create_large_people_dataset(2000)
        scheduler = self.make_scheduler()
        scheduler.run_tick()
        first_pass_sent = self.client.sent

        with self.measure_performance("Second tick over processed day"):
            summary = scheduler.run_tick()

        self.assertEqual(summary.attempts, 0)
        self.assertEqual(summary.skipped, first_pass_sent)
        self.assertEqual(self.client.sent, first_pass_sent)

    def test_parallel_tick_matches_serial_results(self):
        count = self.create_large_people_dataset(2000)
        expected = sum(1 for i in range(count) if (birthday_for(i).month, birthday_for(i).day) == (5, 15))
        self.assertGreater(expected, 0)
        self.config.driver.max_workers = 8

        with self.measure_performance("Parallel tick (8 workers)"):
            summary = self.make_scheduler().run_tick()

        self.assertEqual(summary.sent, expected)
        self.assertEqual(self.count_records(), expected)

    def test_detection_across_timezones(self):
        self.create_large_people_dataset(5000, TIMEZONES)
        people = self.db_manager.list_people()

        start_time = time.time()
        with self.assertLogs('scheduler', level='WARNING'):
            for hour in range(24):
                find_occurring_today(people, self.now.replace(hour=hour))
        duration = time.time() - start_time

        print(f"   24 hourly detections over {len(people)} people: {duration:.3f}s")
        self.assertLess(duration, 60.0)


if __name__ == '__main__':
    unittest.main(verbosity=2)
