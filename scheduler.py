#!/usr/bin/env python3
"""
Birthday Dispatch Scheduler - Annual Event Delivery Engine

This scheduler sends exactly one birthday message per person per calendar
occurrence, as close as possible to a fixed local hour in each person's home
timezone, with bounded automatic retry on delivery failure and a recovery
sweep that catches up on occurrences missed during downtime.

Both entry points (the hourly tick and the recovery sweep) route every
(person, occurrence) pair through the same decision function, and every
attempt is claimed with a conditional update on the delivery record so that
concurrent evaluators never double-send.
"""

import calendar
import logging
import os
import sqlite3
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, date, timedelta, timezone, tzinfo
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from tqdm import tqdm

from dispatch_client import DispatchClient, DispatchConfig, DispatchResult

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

FALLBACK_TIMEZONE = "UTC"

# ============================================================================
# DOMAIN VOCABULARY
# ============================================================================

class DeliveryStatus(Enum):
    """Delivery record status values"""
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"

class Decision(Enum):
    """What the decision engine wants done with an occurrence right now"""
    CREATE = "create"
    SEND = "send"
    WAIT = "wait"
    RETRY = "retry"
    GIVE_UP = "give_up"
    SKIP = "skip"

class LeapDayPolicy(Enum):
    """How a Feb 29 birthday is observed in a non-leap year"""
    SKIP = "skip"
    FEB28 = "feb28"
    MAR1 = "mar1"

# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DeliveryPolicy:
    """When an occurrence is due and how hard to retry it"""
    target_local_hour: int = 9
    max_retries: int = 5
    retry_interval_minutes: int = 60
    leap_day_policy: LeapDayPolicy = LeapDayPolicy.SKIP

    @property
    def retry_interval(self) -> timedelta:
        return timedelta(minutes=self.retry_interval_minutes)

    def validate(self):
        if not 0 <= self.target_local_hour <= 23:
            raise ValueError(f"target_local_hour must be between 0 and 23, got {self.target_local_hour}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.retry_interval_minutes < 0:
            raise ValueError(f"retry_interval_minutes must be >= 0, got {self.retry_interval_minutes}")

@dataclass
class DriverConfig:
    """Periodic trigger and recovery sweep settings"""
    tick_minute: int = 0
    recovery_on_startup: bool = True
    recovery_interval_minutes: int = 60  # 0 disables the periodic safety-net sweep
    recovery_lookback_days: int = 0  # days after the birthday a missed send may still go out
    max_workers: int = 1

    def validate(self):
        if not 0 <= self.tick_minute <= 59:
            raise ValueError(f"tick_minute must be between 0 and 59, got {self.tick_minute}")
        if self.recovery_interval_minutes < 0:
            raise ValueError("recovery_interval_minutes must be >= 0")
        if self.recovery_lookback_days < 0:
            raise ValueError("recovery_lookback_days must be >= 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")

@dataclass
class SchedulingConfig:
    """Overall scheduler configuration"""
    delivery: DeliveryPolicy = field(default_factory=DeliveryPolicy)
    driver: DriverConfig = field(default_factory=DriverConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'SchedulingConfig':
        """Load configuration from YAML file"""
        config = cls()
        if Path(yaml_path).exists():
            with open(yaml_path, 'r') as f:
                data = yaml.safe_load(f) or {}

            if 'delivery' in data:
                delivery = data['delivery'] or {}
                try:
                    leap_policy = LeapDayPolicy(delivery.get('leap_day_policy', config.delivery.leap_day_policy.value))
                except ValueError:
                    raise ValueError(f"Unknown leap_day_policy: {delivery.get('leap_day_policy')}")
                config.delivery = DeliveryPolicy(
                    target_local_hour=int(delivery.get('target_local_hour', 9)),
                    max_retries=int(delivery.get('max_retries', 5)),
                    retry_interval_minutes=int(delivery.get('retry_interval_minutes', 60)),
                    leap_day_policy=leap_policy
                )

            if 'scheduler' in data:
                driver = data['scheduler'] or {}
                config.driver = DriverConfig(
                    tick_minute=int(driver.get('tick_minute', 0)),
                    recovery_on_startup=bool(driver.get('recovery_on_startup', True)),
                    recovery_interval_minutes=int(driver.get('recovery_interval_minutes', 60)),
                    recovery_lookback_days=int(driver.get('recovery_lookback_days', 0)),
                    max_workers=int(driver.get('max_workers', 1))
                )

            if 'dispatch' in data:
                dispatch = data['dispatch'] or {}
                defaults = DispatchConfig()
                config.dispatch = DispatchConfig(
                    base_url=dispatch.get('base_url', defaults.base_url),
                    endpoint=dispatch.get('endpoint', defaults.endpoint),
                    timeout_seconds=float(dispatch.get('timeout_seconds', defaults.timeout_seconds)),
                    message_template=dispatch.get('message_template', defaults.message_template)
                )
        else:
            logger.warning(f"Config file {yaml_path} not found, using defaults")

        config.apply_env_overrides()
        config.validate()
        return config

    def apply_env_overrides(self):
        base_url = os.getenv("EMAIL_API_BASE_URL")
        if base_url:
            self.dispatch.base_url = base_url

    def validate(self):
        self.delivery.validate()
        self.driver.validate()
        if self.dispatch.timeout_seconds <= 0:
            raise ValueError("dispatch timeout_seconds must be > 0")

# ============================================================================
# DOMAIN MODELS
# ============================================================================

EventDate = Union[date, datetime]

def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp into an aware UTC datetime"""
    if not value:
        return None
    return to_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))

def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_utc(value).isoformat()

def parse_event_date(value: Union[str, date]) -> EventDate:
    """Parse a stored birthday.

    A plain 'YYYY-MM-DD' value is a calendar date. Anything carrying a
    time-of-day is an instant and is projected into the person's timezone
    when matched.
    """
    if isinstance(value, date):
        return value
    value = value.strip()
    if len(value) == 10:
        return date.fromisoformat(value)
    return datetime.fromisoformat(value.replace('Z', '+00:00'))

@dataclass
class Person:
    """A tracked contact, read-only to the scheduler"""
    id: int
    first_name: str
    last_name: str
    email: str
    birthday: EventDate
    location: str = FALLBACK_TIMEZONE

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> Optional['Person']:
        """Create person from database row with validation"""
        try:
            return cls(
                id=row['id'],
                first_name=row.get('first_name') or '',
                last_name=row.get('last_name') or '',
                email=row['email'],
                birthday=parse_event_date(row['birthday']),
                location=row.get('location') or FALLBACK_TIMEZONE
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Invalid person data for ID {row.get('id')}: {e}")
            return None

@dataclass
class DeliveryRecord:
    """Idempotency and retry state for one occurrence of one person's birthday"""
    id: int
    person_id: int
    occurrence_month: int
    occurrence_day: int
    occurrence_year: int
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None
    version: int = 0

    @property
    def occurrence_date(self) -> date:
        return date(self.occurrence_year, self.occurrence_month, self.occurrence_day)

    @property
    def correlation_id(self) -> str:
        return f"birthday-{self.id}"

    @property
    def in_flight(self) -> bool:
        """An attempt was claimed but its outcome never recorded"""
        return self.status == DeliveryStatus.PENDING and self.attempt_count > 0

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'DeliveryRecord':
        return cls(
            id=row['id'],
            person_id=row['person_id'],
            occurrence_month=row['occurrence_month'],
            occurrence_day=row['occurrence_day'],
            occurrence_year=row['occurrence_year'],
            status=DeliveryStatus(row['status']),
            attempt_count=row['attempt_count'],
            last_attempt_at=parse_timestamp(row['last_attempt_at']),
            sent_at=parse_timestamp(row['sent_at']),
            last_error=row['last_error'],
            version=row['version']
        )

# ============================================================================
# CLOCK & TIMEZONE RESOLVER
# ============================================================================

@dataclass(frozen=True)
class LocalTime:
    """Calendar fields of an instant as seen in one timezone"""
    year: int
    month: int
    day: int
    hour: int
    degraded: bool = False

    @property
    def local_date(self) -> date:
        return date(self.year, self.month, self.day)

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def to_utc(instant: datetime) -> datetime:
    """Normalize an instant to aware UTC; naive values are taken as UTC"""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)

@lru_cache(maxsize=1024)
def resolve_timezone(timezone_id: Optional[str]) -> Tuple[tzinfo, bool]:
    """Return (zone, degraded). Unresolvable ids map to UTC with degraded=True."""
    try:
        return ZoneInfo(timezone_id), False
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError):
        return timezone.utc, True

def localize(instant: datetime, timezone_id: Optional[str]) -> LocalTime:
    """Project an instant onto calendar fields in the given timezone.

    Never raises for a bad timezone id; the fallback zone is used and the
    degradation is logged.
    """
    zone, degraded = resolve_timezone(timezone_id)
    if degraded:
        logger.warning(f"Invalid timezone '{timezone_id}', evaluating against {FALLBACK_TIMEZONE}")
    local = to_utc(instant).astimezone(zone)
    return LocalTime(local.year, local.month, local.day, local.hour, degraded)

# ============================================================================
# OCCURRENCE DETECTOR
# ============================================================================

@dataclass
class Occurrence:
    """A person whose birthday is being observed on a given local day"""
    person: Person
    month: int
    day: int
    year: int
    local_time: LocalTime
    record: Optional[DeliveryRecord] = None

def event_month_day(person: Person) -> Tuple[int, int]:
    """Month/day of the stored birthday as seen in the person's timezone"""
    birthday = person.birthday
    if isinstance(birthday, datetime):
        zone, _ = resolve_timezone(person.location)
        local = to_utc(birthday).astimezone(zone)
        return local.month, local.day
    return birthday.month, birthday.day

def observed_month_day(month: int, day: int, year: int,
                       policy: LeapDayPolicy = LeapDayPolicy.SKIP) -> Optional[Tuple[int, int]]:
    """Calendar day on which a birthday is observed in the given year, or None"""
    if (month, day) != (2, 29) or calendar.isleap(year):
        return month, day
    if policy == LeapDayPolicy.FEB28:
        return 2, 28
    if policy == LeapDayPolicy.MAR1:
        return 3, 1
    return None

def occurrence_for(person: Person, now_utc: datetime,
                   policy: LeapDayPolicy = LeapDayPolicy.SKIP) -> Optional[Occurrence]:
    local_now = localize(now_utc, person.location)
    month, day = event_month_day(person)
    observed = observed_month_day(month, day, local_now.year, policy)
    if observed is None or observed != (local_now.month, local_now.day):
        return None
    return Occurrence(person, observed[0], observed[1], local_now.year, local_now)

def find_occurring_today(people: List[Person], now_utc: datetime,
                         policy: LeapDayPolicy = LeapDayPolicy.SKIP) -> List[Occurrence]:
    """Filter people down to those whose birthday is today in their own timezone"""
    occurrences = []
    for person in people:
        occurrence = occurrence_for(person, now_utc, policy)
        if occurrence:
            occurrences.append(occurrence)
    return occurrences

# ============================================================================
# DELIVERY DECISION ENGINE
# ============================================================================

def decide(record: Optional[DeliveryRecord], local_hour: int, now: datetime,
           policy: DeliveryPolicy) -> Decision:
    """Single decision function shared by the tick and the recovery sweep.

    A PENDING record that already has an attempt counted is treated like a
    FAILED one: its previous attempt may still be in flight, so it waits out
    the retry interval before trying again, or before being given up on once
    the cap is reached.
    """
    if record is None:
        return Decision.CREATE

    if record.status == DeliveryStatus.SENT:
        return Decision.SKIP

    if record.status == DeliveryStatus.PENDING and not record.in_flight:
        if local_hour == policy.target_local_hour:
            return Decision.SEND
        return Decision.WAIT

    interval_elapsed = (record.last_attempt_at is None
                        or to_utc(now) - record.last_attempt_at >= policy.retry_interval)

    if record.in_flight and not interval_elapsed:
        return Decision.WAIT

    if record.attempt_count >= policy.max_retries:
        return Decision.GIVE_UP

    return Decision.RETRY if interval_elapsed else Decision.WAIT

# ============================================================================
# DATABASE MANAGER - PEOPLE DIRECTORY AND DELIVERY RECORD STORE
# ============================================================================

class DatabaseManager:
    """Manages all database operations for the scheduler"""

    RECORD_FIELDS = ('status', 'attempt_count', 'last_attempt_at', 'sent_at', 'last_error')
    CHECKPOINT_FIELDS = ('people_considered', 'occurrences', 'attempts', 'sent', 'failed',
                         'conflicts', 'errors', 'error_message')

    def __init__(self, db_path: str, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self._ensure_schema()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self):
        """Ensure all required tables and indexes exist"""
        with self._connection() as conn:
            conn.execute("PRAGMA foreign_keys = ON")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS people (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    birthday TEXT NOT NULL,
                    location TEXT NOT NULL DEFAULT 'UTC',
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS delivery_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    person_id INTEGER NOT NULL,
                    occurrence_month INTEGER NOT NULL,
                    occurrence_day INTEGER NOT NULL,
                    occurrence_year INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at TEXT,
                    sent_at TEXT,
                    last_error TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT,
                    UNIQUE(person_id, occurrence_month, occurrence_day, occurrence_year),
                    FOREIGN KEY (person_id) REFERENCES people(id)
                )
            """)

            # Scheduler checkpoints for audit and health monitoring
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduler_checkpoints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    scheduler_run_id TEXT UNIQUE NOT NULL,
                    run_type TEXT NOT NULL,
                    run_timestamp TEXT NOT NULL,
                    people_considered INTEGER DEFAULT 0,
                    occurrences INTEGER DEFAULT 0,
                    attempts INTEGER DEFAULT 0,
                    sent INTEGER DEFAULT 0,
                    failed INTEGER DEFAULT 0,
                    conflicts INTEGER DEFAULT 0,
                    errors INTEGER DEFAULT 0,
                    status TEXT NOT NULL,
                    error_message TEXT,
                    completed_at TEXT
                )
            """)

            indexes = [
                "CREATE INDEX IF NOT EXISTS idx_records_outstanding ON delivery_records(occurrence_year, status, attempt_count)",
                "CREATE INDEX IF NOT EXISTS idx_records_last_attempt ON delivery_records(last_attempt_at)",
                "CREATE INDEX IF NOT EXISTS idx_checkpoints_timestamp ON scheduler_checkpoints(run_timestamp)",
            ]
            for index_sql in indexes:
                try:
                    conn.execute(index_sql)
                except sqlite3.OperationalError as e:
                    logger.warning(f"Could not create index: {e}")

    def execute_with_retry(self, operation: Callable[[], Any], max_attempts: int = 3, backoff_base: int = 2):
        """Execute database operation with retry and exponential backoff"""
        for attempt in range(max_attempts):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                if attempt == max_attempts - 1:
                    logger.error(f"Database operation failed after {max_attempts} attempts: {e}")
                    raise
                sleep_time = backoff_base ** attempt
                logger.warning(f"Database retry {attempt + 1}/{max_attempts} after {sleep_time}s: {e}")
                time.sleep(sleep_time)

    # ------------------------------------------------------------------
    # People directory
    # ------------------------------------------------------------------

    def add_person(self, first_name: str, last_name: str, email: str,
                   birthday: Union[str, date], location: str = FALLBACK_TIMEZONE) -> int:
        """Insert a person; used for seeding and tests, the scheduler never writes people"""
        stored_birthday = birthday.isoformat() if isinstance(birthday, date) else birthday
        with self._connection() as conn:
            cursor = conn.execute("""
                INSERT INTO people (first_name, last_name, email, birthday, location)
                VALUES (?, ?, ?, ?, ?)
            """, (first_name, last_name, email, stored_birthday, location))
            return cursor.lastrowid

    def list_people(self) -> List[Person]:
        """Return every valid person in the directory"""
        with self._connection() as conn:
            cursor = conn.execute("""
                SELECT id, first_name, last_name, email, birthday, location
                FROM people
                ORDER BY id
            """)
            people = []
            for row in cursor.fetchall():
                person = Person.from_db_row(dict(row))
                if person:
                    people.append(person)
            return people

    def get_total_people_count(self) -> int:
        with self._connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM people").fetchone()[0]

    # ------------------------------------------------------------------
    # Delivery records
    # ------------------------------------------------------------------

    def find_record(self, person_id: int, month: int, day: int, year: int) -> Optional[DeliveryRecord]:
        with self._connection() as conn:
            row = conn.execute("""
                SELECT * FROM delivery_records
                WHERE person_id = ? AND occurrence_month = ?
                AND occurrence_day = ? AND occurrence_year = ?
            """, (person_id, month, day, year)).fetchone()
            return DeliveryRecord.from_db_row(dict(row)) if row else None

    def get_record(self, record_id: int) -> Optional[DeliveryRecord]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM delivery_records WHERE id = ?", (record_id,)).fetchone()
            return DeliveryRecord.from_db_row(dict(row)) if row else None

    def create_record(self, person_id: int, month: int, day: int, year: int,
                      now: Optional[datetime] = None) -> Tuple[DeliveryRecord, bool]:
        """Create the PENDING record for an occurrence if it does not exist yet.

        Returns (record, created). Concurrent creators converge on the same row
        through the unique occurrence key.
        """
        created_at = format_timestamp(now or utc_now())

        def _create():
            with self._connection() as conn:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO delivery_records
                    (person_id, occurrence_month, occurrence_day, occurrence_year,
                     status, attempt_count, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 0, 0, ?, ?)
                """, (person_id, month, day, year, DeliveryStatus.PENDING.value, created_at, created_at))
                return cursor.rowcount == 1

        created = self.execute_with_retry(_create)
        record = self.find_record(person_id, month, day, year)
        if record is None:
            raise RuntimeError(f"Delivery record for person {person_id} on {year}-{month:02d}-{day:02d} vanished after insert")
        return record, created

    def update_record(self, record_id: int, expected_version: int, fields: Dict[str, Any],
                      now: Optional[datetime] = None) -> bool:
        """Apply fields only if the row still has expected_version.

        Returns False on a version conflict, meaning another evaluator changed
        the record since it was read.
        """
        unknown = set(fields) - set(self.RECORD_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update delivery record fields: {sorted(unknown)}")

        set_clauses = []
        params: List[Any] = []
        for key, value in fields.items():
            if isinstance(value, DeliveryStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = format_timestamp(value)
            set_clauses.append(f"{key} = ?")
            params.append(value)
        set_clauses.append("version = version + 1")
        set_clauses.append("updated_at = ?")
        params.append(format_timestamp(now or utc_now()))
        params.extend([record_id, expected_version])

        def _update():
            with self._connection() as conn:
                cursor = conn.execute(
                    f"UPDATE delivery_records SET {', '.join(set_clauses)} WHERE id = ? AND version = ?",
                    params
                )
                return cursor.rowcount == 1

        return self.execute_with_retry(_update)

    def find_outstanding_records(self, year: int, max_retries: int) -> List[Tuple[DeliveryRecord, Person]]:
        """PENDING and under-cap FAILED records for a year, joined to their person"""
        with self._connection() as conn:
            cursor = conn.execute("""
                SELECT r.*, p.first_name, p.last_name, p.email, p.birthday, p.location
                FROM delivery_records r
                JOIN people p ON p.id = r.person_id
                WHERE r.occurrence_year = ?
                AND (
                    r.status = 'PENDING'
                    OR (r.status = 'FAILED' AND r.attempt_count < ?)
                )
                ORDER BY r.id
            """, (year, max_retries))

            backlog = []
            for row in cursor.fetchall():
                row_dict = dict(row)
                person = Person.from_db_row({
                    'id': row_dict['person_id'],
                    'first_name': row_dict['first_name'],
                    'last_name': row_dict['last_name'],
                    'email': row_dict['email'],
                    'birthday': row_dict['birthday'],
                    'location': row_dict['location'],
                })
                if person:
                    backlog.append((DeliveryRecord.from_db_row(row_dict), person))
            return backlog

    # ------------------------------------------------------------------
    # Run checkpoints
    # ------------------------------------------------------------------

    def create_checkpoint(self, scheduler_run_id: str, run_type: str, run_timestamp: datetime) -> int:
        """Create a scheduler checkpoint for audit and monitoring"""
        def _create():
            with self._connection() as conn:
                cursor = conn.execute("""
                    INSERT INTO scheduler_checkpoints
                    (scheduler_run_id, run_type, run_timestamp, status)
                    VALUES (?, ?, ?, 'started')
                """, (scheduler_run_id, run_type, format_timestamp(run_timestamp)))
                return cursor.lastrowid

        return self.execute_with_retry(_create)

    def update_checkpoint(self, checkpoint_id: int, status: str, now: Optional[datetime] = None, **kwargs):
        """Update checkpoint with completion status and counts"""
        unknown = set(kwargs) - set(self.CHECKPOINT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown checkpoint fields: {sorted(unknown)}")

        set_clauses = ['status = ?']
        params: List[Any] = [status]
        for key, value in kwargs.items():
            set_clauses.append(f"{key} = ?")
            params.append(value)
        if status in ('completed', 'failed'):
            set_clauses.append('completed_at = ?')
            params.append(format_timestamp(now or utc_now()))
        params.append(checkpoint_id)

        def _update():
            with self._connection() as conn:
                conn.execute(f"UPDATE scheduler_checkpoints SET {', '.join(set_clauses)} WHERE id = ?", params)

        self.execute_with_retry(_update)

# ============================================================================
# SCHEDULER DRIVER
# ============================================================================

@dataclass
class Evaluation:
    """Outcome of evaluating one occurrence"""
    person_id: int
    decision: Decision
    record_id: Optional[int] = None
    created: bool = False
    dispatched: bool = False
    delivered: bool = False
    conflict: bool = False

@dataclass
class PassSummary:
    """Counters for one tick or recovery pass"""
    run_type: str
    run_id: str
    people_considered: int = 0
    occurrences: int = 0
    created: int = 0
    attempts: int = 0
    sent: int = 0
    failed: int = 0
    waiting: int = 0
    exhausted: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0

    def add(self, evaluation: Evaluation):
        if evaluation.created:
            self.created += 1
        if evaluation.conflict:
            self.conflicts += 1
        elif evaluation.dispatched:
            self.attempts += 1
            if evaluation.delivered:
                self.sent += 1
            else:
                self.failed += 1
        elif evaluation.decision == Decision.WAIT:
            self.waiting += 1
        elif evaluation.decision == Decision.GIVE_UP:
            self.exhausted += 1
        elif evaluation.decision == Decision.SKIP:
            self.skipped += 1

    def checkpoint_fields(self) -> Dict[str, int]:
        return {
            'people_considered': self.people_considered,
            'occurrences': self.occurrences,
            'attempts': self.attempts,
            'sent': self.sent,
            'failed': self.failed,
            'conflicts': self.conflicts,
            'errors': self.errors,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

class BirthdayScheduler:
    """Process-wide scheduler with an explicit start/stop lifecycle.

    Dependencies are injected: the store (delivery records and checkpoints),
    the directory (anything with list_people()), the dispatch client and the
    clock. A DatabaseManager serves as both store and directory.
    """

    TICK_JOB_ID = "birthday_tick"
    RECOVERY_JOB_ID = "birthday_recovery"

    def __init__(self, store: DatabaseManager, directory: Optional[Any] = None,
                 dispatch_client: Optional[Any] = None,
                 config: Optional[SchedulingConfig] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or SchedulingConfig()
        self.store = store
        self.directory = directory or store
        self.dispatch_client = dispatch_client or DispatchClient(self.config.dispatch)
        self.clock = clock or utc_now
        self._lock = threading.Lock()
        self._background: Optional[BackgroundScheduler] = None

    @property
    def policy(self) -> DeliveryPolicy:
        return self.config.delivery

    # ------------------------------------------------------------------
    # Shared evaluation path
    # ------------------------------------------------------------------

    def evaluate_occurrence(self, occurrence: Occurrence, now: datetime) -> Evaluation:
        """Consult or create the delivery record and act on the decision"""
        person = occurrence.person
        local_hour = occurrence.local_time.hour
        record = occurrence.record
        created = False

        if record is None:
            record = self.store.find_record(person.id, occurrence.month, occurrence.day, occurrence.year)

        decision = decide(record, local_hour, now, self.policy)
        if decision == Decision.CREATE:
            record, created = self.store.create_record(
                person.id, occurrence.month, occurrence.day, occurrence.year, now
            )
            if created:
                logger.info(f"Created delivery record {record.id} for {person.full_name} "
                            f"({occurrence.year}-{occurrence.month:02d}-{occurrence.day:02d})")
            decision = decide(record, local_hour, now, self.policy)

        evaluation = Evaluation(person_id=person.id, decision=decision, record_id=record.id, created=created)

        if decision in (Decision.SEND, Decision.RETRY):
            self._attempt_delivery(person, record, now, evaluation)
        elif decision == Decision.WAIT:
            if record.status == DeliveryStatus.PENDING and not record.in_flight:
                logger.debug(f"{person.full_name} has a birthday today but local hour in "
                             f"{person.location} is {local_hour}. Waiting for {self.policy.target_local_hour}:00.")
            else:
                logger.debug(f"Waiting for retry interval on record {record.id} for {person.full_name}")
        elif decision == Decision.GIVE_UP:
            if record.in_flight:
                self._close_abandoned_attempt(person, record, now, evaluation)
            logger.warning(f"Max retries reached for {person.full_name}'s birthday message "
                           f"(record {record.id}, attempts {record.attempt_count}). Status: FAILED.")
        elif decision == Decision.SKIP:
            logger.debug(f"Birthday message already SENT for {person.full_name} (record {record.id})")

        return evaluation

    def _close_abandoned_attempt(self, person: Person, record: DeliveryRecord, now: datetime,
                                 evaluation: Evaluation):
        """Mark a capped record FAILED when its last attempt never reported back"""
        closed = self.store.update_record(record.id, record.version, {
            'status': DeliveryStatus.FAILED,
            'last_error': record.last_error or "attempt outcome unknown",
        }, now=now)
        if not closed:
            logger.warning(f"Delivery record {record.id} for {person.full_name} was updated concurrently; "
                           f"leaving it to the other evaluator")
            evaluation.conflict = True

    def _attempt_delivery(self, person: Person, record: DeliveryRecord, now: datetime,
                          evaluation: Evaluation):
        """Claim an attempt on the record, dispatch, then record the outcome"""
        attempt = record.attempt_count + 1
        claimed = self.store.update_record(record.id, record.version, {
            'attempt_count': attempt,
            'last_attempt_at': now,
        }, now=now)
        if not claimed:
            logger.warning(f"Delivery record {record.id} for {person.full_name} was updated concurrently; "
                           f"leaving it to the other evaluator")
            evaluation.conflict = True
            return

        logger.info(f"Sending birthday message to {person.full_name} "
                    f"(record {record.id}, status {record.status.value}, attempt {attempt}/{self.policy.max_retries})")
        try:
            result = self.dispatch_client.send(person.full_name, person.email, record.correlation_id)
        except Exception as e:
            result = DispatchResult(success=False, error=str(e) or e.__class__.__name__)

        evaluation.dispatched = True
        evaluation.delivered = result.success

        if result.success:
            fields = {'status': DeliveryStatus.SENT, 'sent_at': now, 'last_error': None}
            logger.info(f"Successfully sent birthday message to {person.full_name} (record {record.id})")
        else:
            fields = {'status': DeliveryStatus.FAILED, 'last_error': result.error or "Unknown error"}
            logger.warning(f"Failed to send birthday message to {person.full_name} "
                           f"(record {record.id}, attempt {attempt}): {result.error}")

        if not self.store.update_record(record.id, record.version + 1, fields, now=now):
            logger.error(f"Could not record dispatch outcome on delivery record {record.id}; "
                         f"the attempt stays counted")

    def _evaluate_batch(self, occurrences: List[Occurrence], now: datetime,
                        summary: PassSummary, show_progress: bool = False):
        """Evaluate occurrences independently; one failure never stops the pass"""
        def _safe_evaluate(occurrence: Occurrence) -> Optional[Evaluation]:
            try:
                return self.evaluate_occurrence(occurrence, now)
            except Exception as e:
                logger.error(f"Evaluation failed for person {occurrence.person.id}: {e}")
                return None

        max_workers = self.config.driver.max_workers
        if max_workers > 1 and len(occurrences) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                results = list(tqdm(pool.map(_safe_evaluate, occurrences), total=len(occurrences),
                                    desc=summary.run_type, disable=not show_progress))
        else:
            results = [_safe_evaluate(o) for o in tqdm(occurrences, desc=summary.run_type,
                                                        disable=not show_progress)]

        for evaluation in results:
            if evaluation is None:
                summary.errors += 1
            else:
                summary.add(evaluation)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _run_pass(self, run_type: str, now: Optional[datetime],
                  collect: Callable[[datetime, PassSummary], List[Occurrence]],
                  show_progress: bool) -> PassSummary:
        now = to_utc(now or self.clock())
        summary = PassSummary(run_type=run_type, run_id=str(uuid.uuid4()))
        checkpoint_id = self.store.create_checkpoint(summary.run_id, run_type, now)

        try:
            occurrences = collect(now, summary)
            summary.occurrences = len(occurrences)
            self._evaluate_batch(occurrences, now, summary, show_progress)
            self.store.update_checkpoint(checkpoint_id, 'completed', now=to_utc(self.clock()),
                                         **summary.checkpoint_fields())
        except Exception as e:
            self.store.update_checkpoint(checkpoint_id, 'failed', now=to_utc(self.clock()),
                                         error_message=str(e), **summary.checkpoint_fields())
            logger.error(f"Birthday {run_type} pass failed: {e}")
            raise

        logger.info(f"Birthday {run_type} pass finished: {summary.occurrences} occurrences, "
                    f"{summary.attempts} attempts ({summary.sent} sent, {summary.failed} failed), "
                    f"{summary.waiting} waiting, {summary.exhausted} exhausted, "
                    f"{summary.conflicts} conflicts, {summary.errors} errors")
        return summary

    def run_tick(self, now: Optional[datetime] = None, show_progress: bool = False) -> PassSummary:
        """Periodic pass: scan every person for a birthday today, locally"""
        def _collect(now_utc: datetime, summary: PassSummary) -> List[Occurrence]:
            logger.info("Starting birthday message processing...")
            people = self.directory.list_people()
            summary.people_considered = len(people)
            return find_occurring_today(people, now_utc, self.policy.leap_day_policy)

        return self._run_pass('tick', now, _collect, show_progress)

    def run_recovery_sweep(self, now: Optional[datetime] = None, show_progress: bool = False) -> PassSummary:
        """Catch-up pass over outstanding delivery records.

        Trusts existing records as the backlog instead of re-deriving birthdays,
        limited to occurrences at most recovery_lookback_days old in the
        person's local calendar.
        """
        def _collect(now_utc: datetime, summary: PassSummary) -> List[Occurrence]:
            logger.info("Starting recovery check for unsent birthday messages...")
            lookback = self.config.driver.recovery_lookback_days
            years = sorted({
                (now_utc - timedelta(days=lookback + 1)).year,
                now_utc.year,
                (now_utc + timedelta(days=1)).year,
            })

            backlog: List[Tuple[DeliveryRecord, Person]] = []
            for year in years:
                backlog.extend(self.store.find_outstanding_records(year, self.policy.max_retries))
            summary.people_considered = len(backlog)

            occurrences = []
            for record, person in backlog:
                local_now = localize(now_utc, person.location)
                age_days = (local_now.local_date - record.occurrence_date).days
                if 0 <= age_days <= lookback:
                    occurrences.append(Occurrence(
                        person=person,
                        month=record.occurrence_month,
                        day=record.occurrence_day,
                        year=record.occurrence_year,
                        local_time=local_now,
                        record=record
                    ))
                else:
                    logger.debug(f"Skipping recovery for record {record.id} ({person.full_name}): "
                                 f"occurrence {record.occurrence_date} outside the recovery window")

            if not occurrences:
                logger.info("No unsent messages found for recovery.")
            else:
                logger.info(f"Found {len(occurrences)} unsent messages to attempt recovery.")
            return occurrences

        return self._run_pass('recovery', now, _collect, show_progress)

    # ------------------------------------------------------------------
    # Service lifecycle
    # ------------------------------------------------------------------

    def _run_job(self, job: Callable[[], PassSummary]):
        try:
            job()
        except Exception as e:
            logger.error(f"Scheduled birthday job failed: {e}")

    @property
    def running(self) -> bool:
        return self._background is not None and self._background.running

    def start(self):
        """Run the startup recovery sweep, then start the hourly tick"""
        with self._lock:
            if self._background is not None:
                logger.info("Birthday scheduler already running")
                return

            if self.config.driver.recovery_on_startup:
                logger.info("Running initial recovery check...")
                self._run_job(self.run_recovery_sweep)

            background = BackgroundScheduler(timezone="UTC")
            background.add_job(
                self._run_job, CronTrigger(minute=self.config.driver.tick_minute, timezone="UTC"),
                args=[self.run_tick], id=self.TICK_JOB_ID, max_instances=1, coalesce=True
            )
            if self.config.driver.recovery_interval_minutes > 0:
                background.add_job(
                    self._run_job, IntervalTrigger(minutes=self.config.driver.recovery_interval_minutes),
                    args=[self.run_recovery_sweep], id=self.RECOVERY_JOB_ID, max_instances=1, coalesce=True
                )
            background.start()
            self._background = background
            logger.info(f"Birthday scheduler started (tick at minute {self.config.driver.tick_minute} "
                        f"of every hour, UTC)")

    def stop(self, wait: bool = True):
        with self._lock:
            if self._background is None:
                return
            self._background.shutdown(wait=wait)
            self._background = None
            logger.info("Birthday scheduler stopped")

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def main():
    """Main entry point for the scheduler"""
    import argparse

    parser = argparse.ArgumentParser(description='Birthday Message Scheduler')
    parser.add_argument('--db', required=True, help='SQLite database path')
    parser.add_argument('--config', help='Configuration YAML path')
    parser.add_argument('--tick', action='store_true', help='Run one periodic pass over all people')
    parser.add_argument('--recover', action='store_true', help='Run one recovery sweep over outstanding records')
    parser.add_argument('--serve', action='store_true', help='Run as a service until interrupted')
    parser.add_argument('--add-person', nargs=5, metavar=('FIRST', 'LAST', 'EMAIL', 'BIRTHDAY', 'TIMEZONE'),
                        help='Add a person to the directory')
    parser.add_argument('--progress', action='store_true', help='Show a progress bar during passes')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    config = SchedulingConfig.from_yaml(args.config) if args.config else SchedulingConfig()
    db_manager = DatabaseManager(args.db)
    scheduler = BirthdayScheduler(db_manager, config=config)

    if args.add_person:
        first_name, last_name, email, birthday, location = args.add_person
        person_id = db_manager.add_person(first_name, last_name, email, birthday, location)
        print(f"Added person {person_id}: {first_name} {last_name} ({location})")
    elif args.tick:
        summary = scheduler.run_tick(show_progress=args.progress)
        print(f"Tick complete: {summary.attempts} attempts, {summary.sent} sent, {summary.failed} failed")
    elif args.recover:
        summary = scheduler.run_recovery_sweep(show_progress=args.progress)
        print(f"Recovery complete: {summary.attempts} attempts, {summary.sent} sent, {summary.failed} failed")
    elif args.serve:
        scheduler.start()
        try:
            while True:
                time.sleep(1)
        except (KeyboardInterrupt, SystemExit):
            scheduler.stop()
    else:
        print("Please specify --tick, --recover, --serve or --add-person")

if __name__ == '__main__':
    main()
