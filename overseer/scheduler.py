"""
Cron-driven scheduler loop.

The loop only dispatches: each due schedule hands its template to the run
coordinator, which executes on its own thread, so a slow run never delays
the next tick. Each schedule keeps a cursor that is advanced before dispatch,
so a fire time is handled once even if dispatch itself fails, and a fire time
that falls between two ticks is picked up by the later one.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from . import cron
from .coordinator import TRIGGER_MANUAL, TRIGGER_SCHEDULE, RunCoordinator
from .errors import ConfigurationError
from .models import JobRun, JobTemplate, RunStatus, Schedule, ensure_aware_utc, utc_now

logger = logging.getLogger("overseer.scheduler")

DEFAULT_TICK_SECONDS = 30

TemplatesProvider = Callable[[], Mapping[str, JobTemplate]]
Clock = Callable[[], datetime]


@dataclass(frozen=True)
class ScheduleSnapshot:
    schedules: Tuple[Schedule, ...] = ()

    def get(self, schedule_id: str) -> Optional[Schedule]:
        for schedule in self.schedules:
            if schedule.id == schedule_id:
                return schedule
        return None


@dataclass(frozen=True)
class ScheduleStats:
    schedule_id: str
    last_run_id: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_status: Optional[RunStatus] = None
    success_count: int = 0
    failure_count: int = 0

    @property
    def success_rate(self) -> Optional[float]:
        total = self.success_count + self.failure_count
        if total == 0:
            return None
        return self.success_count / total


@dataclass(frozen=True)
class UpcomingFire:
    at: datetime
    schedule_id: str
    template_id: str
    cron: str


class SchedulerLoop:
    def __init__(
        self,
        coordinator: RunCoordinator,
        templates: TemplatesProvider,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        clock: Clock = utc_now,
        refresh: Optional[Callable[[], Any]] = None,
    ):
        if tick_seconds <= 0:
            raise ValueError("tick_seconds must be > 0")
        self.coordinator = coordinator
        self._templates = templates
        self.tick_seconds = tick_seconds
        self.clock = clock
        self.refresh = refresh
        self._snapshot = ScheduleSnapshot()
        self._last_fired: Dict[str, datetime] = {}
        # Per schedule: every fire time at or before the cursor has been handled.
        self._cursor: Dict[str, datetime] = {}
        self._stats: Dict[str, ScheduleStats] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._serving: Optional[threading.Event] = None

    @property
    def snapshot(self) -> ScheduleSnapshot:
        with self._lock:
            return self._snapshot

    def templates(self) -> Mapping[str, JobTemplate]:
        return self._templates()

    def last_fired(self, schedule_id: str) -> Optional[datetime]:
        with self._lock:
            return self._last_fired.get(schedule_id)

    def _check(self, schedule: Schedule, templates: Mapping[str, JobTemplate]) -> Schedule:
        if schedule.template_id not in templates:
            raise ConfigurationError(
                f'Error: schedule "{schedule.id}" references unknown template "{schedule.template_id}".'
            )
        try:
            expression = cron.validate_expression(schedule.cron)
        except ConfigurationError as exc:
            raise type(exc)(f'Error: schedule "{schedule.id}": {str(exc).replace("Error: ", "", 1)}') from exc
        if expression != schedule.cron:
            schedule = Schedule(schedule.id, schedule.template_id, expression, schedule.enabled)
        return schedule

    def reload_schedules(self, schedules: Iterable[Schedule]) -> List[ConfigurationError]:
        """Swap in a new schedule set; invalid entries are rejected and returned."""
        templates = self.templates()
        accepted: List[Schedule] = []
        errors: List[ConfigurationError] = []
        seen: set = set()
        for schedule in schedules:
            try:
                if schedule.id in seen:
                    raise ConfigurationError(f'Error: Duplicate schedule id "{schedule.id}".')
                accepted.append(self._check(schedule, templates))
                seen.add(schedule.id)
            except ConfigurationError as exc:
                logger.error("Rejected schedule %s: %s", schedule.id, str(exc))
                errors.append(exc)

        snapshot = ScheduleSnapshot(tuple(accepted))
        with self._lock:
            self._snapshot = snapshot
            self._last_fired = {key: value for key, value in self._last_fired.items() if key in seen}
            self._cursor = {key: value for key, value in self._cursor.items() if key in seen}
            self._stats = {key: value for key, value in self._stats.items() if key in seen}
        logger.info("Loaded %s schedule(s) (%s rejected).", len(accepted), len(errors))
        return errors

    def _claim(self, schedule: Schedule, now: datetime) -> Optional[datetime]:
        """Return the fire time owed at ``now``, if any, and mark it handled.

        Fire times missed between two ticks collapse into a single dispatch.
        A schedule seen for the first time only owes the current minute.
        """
        with self._lock:
            cursor = self._cursor.get(schedule.id)
            if cursor is None:
                cursor = cron.floor_minute(now) - timedelta(minutes=1)
            due = cron.next_fire_after(schedule.cron, cron.floor_minute(cursor))
            self._cursor[schedule.id] = max(cursor, now)
            if due is None or due > now:
                return None
            self._last_fired[schedule.id] = due
            return due

    def next_due(self, schedule_id: str) -> Optional[datetime]:
        schedule = self.snapshot.get(schedule_id)
        if schedule is None or not schedule.enabled:
            return None
        with self._lock:
            cursor = self._cursor.get(schedule_id)
        if cursor is None:
            cursor = cron.floor_minute(self.clock()) - timedelta(minutes=1)
        return cron.next_fire_after(schedule.cron, cron.floor_minute(cursor))

    def record_finished(self, run: JobRun) -> None:
        """Run-finished hook: keeps last status and success/failure counts per schedule."""
        if run.schedule_id is None:
            return
        succeeded = run.status is RunStatus.SUCCEEDED
        with self._lock:
            if self._snapshot.get(run.schedule_id) is None:
                return
            current = self._stats.get(run.schedule_id) or ScheduleStats(run.schedule_id)
            self._stats[run.schedule_id] = ScheduleStats(
                schedule_id=run.schedule_id,
                last_run_id=run.id,
                last_run_at=run.finished_at,
                last_status=run.status,
                success_count=current.success_count + (1 if succeeded else 0),
                failure_count=current.failure_count + (0 if succeeded else 1),
            )

    def stats(self, schedule_id: str) -> ScheduleStats:
        with self._lock:
            return self._stats.get(schedule_id) or ScheduleStats(schedule_id)

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Dispatch every schedule due at ``now``; returns the started run ids."""
        now = ensure_aware_utc(now or self.clock())
        snapshot = self.snapshot
        templates = self.templates()
        started: List[str] = []
        for schedule in snapshot.schedules:
            if not schedule.enabled:
                continue
            try:
                due = self._claim(schedule, now)
                if due is None:
                    continue
                template = templates.get(schedule.template_id)
                if template is None:
                    raise ConfigurationError(
                        f'Error: schedule "{schedule.id}" references unknown template "{schedule.template_id}".'
                    )
                handle = self.coordinator.start(template, trigger=TRIGGER_SCHEDULE, schedule_id=schedule.id)
                logger.info(
                    "[%s] Dispatched by schedule %s (%s, due %s)", handle.run_id, schedule.id, schedule.cron, due.isoformat()
                )
                started.append(handle.run_id)
            except Exception as exc:
                logger.error("Schedule %s failed to dispatch: %s", schedule.id, str(exc))
        return started

    def run_now(self, template_id: str, overrides: Optional[Mapping[str, Any]] = None) -> str:
        template = self.templates().get(template_id)
        if template is None:
            raise ConfigurationError(f'Error: Unknown template "{template_id}".')
        handle = self.coordinator.start(template, trigger=TRIGGER_MANUAL, overrides=overrides)
        logger.info("[%s] Manual run of %s requested.", handle.run_id, template_id)
        return handle.run_id

    def list_due_in_next(self, duration: timedelta, now: Optional[datetime] = None) -> List[UpcomingFire]:
        now = ensure_aware_utc(now or self.clock())
        end = now + duration
        upcoming: List[UpcomingFire] = []
        for schedule in self.snapshot.schedules:
            if not schedule.enabled:
                continue
            for at in cron.fires_between(schedule.cron, now, end):
                upcoming.append(UpcomingFire(at, schedule.id, schedule.template_id, schedule.cron))
        upcoming.sort(key=lambda fire: (fire.at, fire.schedule_id))
        return upcoming

    def _refresh(self) -> None:
        if self.refresh is None:
            return
        try:
            self.refresh()
        except Exception as exc:
            logger.error("Configuration refresh failed; keeping previous schedules: %s", str(exc))

    def serve_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or self._stop
        self._serving = stop_event
        logger.info(
            "Scheduler started with %s schedule(s), tick_seconds=%s",
            len(self.snapshot.schedules),
            self.tick_seconds,
        )
        while not stop_event.is_set() and not self._stop.is_set():
            self._refresh()
            self.tick()
            stop_event.wait(self.tick_seconds)
        logger.info("Scheduler stopped.")

    def stop(self) -> None:
        self._stop.set()
        if self._serving is not None:
            self._serving.set()
