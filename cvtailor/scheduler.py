"""
Cron-style recurring jobs, independent of any broker.

``CronSchedule`` parses standard five-field expressions and computes the next
fire time after a given instant. ``Scheduler`` keeps recurring registrations
and, on ``tick(now)``, enqueues whatever is due through any object exposing
the queue ``enqueue`` contract. Job ids are derived from the registration name
and the fire time, so several processes ticking the same slot enqueue once.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from cvtailor.queue_backend import JobOptions

logger = logging.getLogger(__name__)

_FIELD_BOUNDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 6),
)
_ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
# Bounded search: every valid expression fires at least once in about four
# years (Feb 29 on a given weekday is the worst case).
_MAX_SEARCH_DAYS = 366 * 5


def _parse_field(raw: str, name: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            raise ValueError(f"empty {name} field item")
        step = 1
        if "/" in part:
            part, step_raw = part.split("/", 1)
            if not step_raw.isdigit() or int(step_raw) < 1:
                raise ValueError(f"invalid {name} step: {step_raw}")
            step = int(step_raw)
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_raw, end_raw = part.split("-", 1)
            if not start_raw.isdigit() or not end_raw.isdigit():
                raise ValueError(f"invalid {name} range: {part}")
            start, end = int(start_raw), int(end_raw)
        elif part.isdigit():
            start = int(part)
            end = high if step > 1 else start
        else:
            raise ValueError(f"invalid {name} value: {part}")
        if name == "day_of_week":
            # 7 is an accepted spelling of Sunday
            if start == 7 and end == 7:
                start = end = 0
            elif end == 7:
                values.add(0)
                end = 6
        if start < low or end > high or start > end:
            raise ValueError(f"{name} out of range: {part}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    dom_restricted: bool
    dow_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronSchedule":
        text = _ALIASES.get(expression.strip().lower(), expression.strip())
        parts = text.split()
        if len(parts) != 5:
            raise ValueError(f"cron expression needs 5 fields: {expression!r}")
        parsed = [_parse_field(raw, name, low, high) for raw, (name, low, high) in zip(parts, _FIELD_BOUNDS)]
        return cls(
            expression=expression,
            minutes=parsed[0],
            hours=parsed[1],
            days_of_month=parsed[2],
            months=parsed[3],
            days_of_week=parsed[4],
            dom_restricted=parts[2] != "*",
            dow_restricted=parts[4] != "*",
        )

    def _day_matches(self, dt: datetime) -> bool:
        if dt.month not in self.months:
            return False
        dom_ok = dt.day in self.days_of_month
        dow_ok = (dt.isoweekday() % 7) in self.days_of_week
        # Classic cron: when both day fields are restricted, either may match.
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def matches(self, dt: datetime) -> bool:
        return self._day_matches(dt) and dt.hour in self.hours and dt.minute in self.minutes

    def next_fire_time(self, after: datetime) -> datetime:
        """First matching minute strictly after ``after`` (naive values are taken as UTC)."""
        if after.tzinfo is None:
            after = after.replace(tzinfo=UTC)
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        day = candidate.replace(hour=0, minute=0)
        hours = sorted(self.hours)
        minutes = sorted(self.minutes)
        for _ in range(_MAX_SEARCH_DAYS):
            if self._day_matches(day):
                for hour in hours:
                    for minute in minutes:
                        fire = day.replace(hour=hour, minute=minute)
                        if fire >= candidate:
                            return fire
            day = day + timedelta(days=1)
        raise ValueError(f"cron expression never fires: {self.expression!r}")


@dataclass
class RecurringJob:
    name: str
    queue_name: str
    schedule: CronSchedule
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 10
    max_attempts: int = 1
    next_run_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "queue_name": self.queue_name,
            "cron": self.schedule.expression,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
        }


class Scheduler:
    def __init__(self, *, queue_backend: Any) -> None:
        self.queue_backend = queue_backend
        self._lock = threading.RLock()
        self._jobs: dict[str, RecurringJob] = {}

    def register(
        self,
        *,
        name: str,
        cron: str,
        queue_name: str,
        payload: dict[str, Any] | None = None,
        priority: int = 10,
        max_attempts: int = 1,
        now: datetime | None = None,
    ) -> RecurringJob:
        schedule = CronSchedule.parse(cron)
        reference = now or datetime.now(UTC)
        job = RecurringJob(
            name=name,
            queue_name=queue_name,
            schedule=schedule,
            payload=dict(payload or {}),
            priority=priority,
            max_attempts=max_attempts,
            next_run_at=schedule.next_fire_time(reference),
        )
        with self._lock:
            self._jobs[name] = job
        logger.info("recurring_job_registered name=%s cron=%s next_run_at=%s", name, cron, job.next_run_at)
        return job

    def jobs(self) -> list[RecurringJob]:
        with self._lock:
            return list(self._jobs.values())

    def next_fire_time(self, now: datetime) -> datetime | None:
        """Earliest fire time across registrations, or None when nothing is registered."""
        with self._lock:
            times = [job.schedule.next_fire_time(now) for job in self._jobs.values()]
        return min(times) if times else None

    def tick(self, now: datetime | None = None) -> list[str]:
        """Enqueue every registration due at ``now``; returns the enqueued job ids."""
        current = now or datetime.now(UTC)
        enqueued: list[str] = []
        with self._lock:
            for job in self._jobs.values():
                if job.next_run_at is None or job.next_run_at > current:
                    continue
                fire_at = job.next_run_at
                job_id = f"repeat:{job.name}:{int(fire_at.timestamp())}"
                self.queue_backend.enqueue(
                    queue_name=job.queue_name,
                    payload={**job.payload, "recurring": job.name, "scheduled_for": fire_at.isoformat()},
                    options=JobOptions(priority=job.priority, max_attempts=job.max_attempts, job_id=job_id),
                )
                enqueued.append(job_id)
                # skip slots missed while the process was down
                job.next_run_at = job.schedule.next_fire_time(max(current, fire_at))
                logger.info("recurring_job_enqueued name=%s job_id=%s next_run_at=%s", job.name, job_id, job.next_run_at)
        return enqueued
