from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from .config import ConfigSnapshot, ConfigStore
from .coordinator import RunCoordinator, RunStore
from .errors import ConfigurationError
from .executor import CommandExecutor
from .jobtypes import JobTypeRegistry, default_registry
from .models import JobRun, Schedule, utc_now
from .notify import DeliveryReport, NotificationEngine
from .scheduler import Clock, ScheduleStats, SchedulerLoop, UpcomingFire
from .transport import LocalTransport, SshTransport, TransportSet

logger = logging.getLogger("overseer.service")


class Overseer:
    """Wires configuration, executor, coordinator, scheduler and notifications together.

    Settings (concurrency, output limits, ssh options) are fixed at
    construction; ``apply`` swaps targets, templates, schedules, channels and
    policies.
    """

    def __init__(
        self,
        snapshot: ConfigSnapshot,
        registry: Optional[JobTypeRegistry] = None,
        transports: Optional[TransportSet] = None,
        clock: Clock = utc_now,
        store: Optional[ConfigStore] = None,
    ):
        settings = snapshot.settings
        self.settings = settings
        self.config_store = store
        self._snapshot = snapshot
        self._lock = threading.Lock()

        self.executor = CommandExecutor(
            registry=registry or default_registry(),
            transports=transports or TransportSet(LocalTransport(), SshTransport(settings.ssh)),
            output_limit=settings.output_limit_bytes,
            grace_seconds=settings.cancel_grace_seconds,
        )
        self.notifications = NotificationEngine(snapshot.channels, policies=lambda: self.snapshot.policies)
        self.coordinator = RunCoordinator(
            self.executor,
            lambda: self.snapshot.targets,
            store=RunStore(settings.history_size, settings.run_log),
            max_workers=settings.max_concurrency,
        )
        self.scheduler = SchedulerLoop(
            self.coordinator,
            lambda: self.snapshot.templates,
            tick_seconds=settings.tick_seconds,
            clock=clock,
            refresh=self.refresh_if_changed if store is not None else None,
        )
        self.coordinator.add_finished_hook(self.scheduler.record_finished)
        self.coordinator.add_finished_hook(self.notifications)
        self.scheduler.reload_schedules(snapshot.schedules)

    @classmethod
    def from_config(cls, path: Path, registry: Optional[JobTypeRegistry] = None, **kwargs: Any) -> "Overseer":
        store = ConfigStore(path, registry=registry)
        return cls(store.load_lenient(), registry=store.registry, store=store, **kwargs)

    @property
    def snapshot(self) -> ConfigSnapshot:
        with self._lock:
            return self._snapshot

    def apply(self, snapshot: ConfigSnapshot) -> List[ConfigurationError]:
        if snapshot.settings != self.settings:
            logger.warning("Changes under settings take effect after a restart.")
        with self._lock:
            self._snapshot = snapshot
        self.notifications.reload(snapshot.channels, lambda: self.snapshot.policies)
        return self.scheduler.reload_schedules(snapshot.schedules)

    def refresh_if_changed(self) -> bool:
        if self.config_store is None or not self.config_store.changed():
            return False
        logger.info("Configuration changed; reloading %s", self.config_store.path)
        self.apply(self.config_store.load_lenient())
        return True

    def reload(self) -> List[ConfigurationError]:
        if self.config_store is None:
            raise ConfigurationError("Error: no configuration file to reload from.")
        return self.apply(self.config_store.load_lenient())

    def trigger_run_now(self, template_id: str, overrides: Optional[Mapping[str, Any]] = None) -> str:
        return self.scheduler.run_now(template_id, overrides)

    def get_run(self, run_id: str) -> Optional[JobRun]:
        return self.coordinator.get_run(run_id)

    def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Optional[JobRun]:
        return self.coordinator.wait(run_id, timeout)

    def cancel_run(self, run_id: str) -> bool:
        return self.coordinator.cancel(run_id)

    def reload_schedules(self, schedules: Iterable[Schedule]) -> List[ConfigurationError]:
        return self.scheduler.reload_schedules(schedules)

    def list_due_in_next(self, duration: timedelta, now: Optional[datetime] = None) -> List[UpcomingFire]:
        return self.scheduler.list_due_in_next(duration, now)

    def schedule_stats(self, schedule_id: str) -> ScheduleStats:
        return self.scheduler.stats(schedule_id)

    def get_deliveries(self, run_id: Optional[str] = None) -> List[DeliveryReport]:
        return self.notifications.deliveries(run_id)

    def serve_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        self.scheduler.serve_forever(stop_event)

    def shutdown(self, cancel: bool = False, timeout: float = 30.0) -> None:
        self.scheduler.stop()
        self.coordinator.shutdown(cancel=cancel, timeout=timeout)
        self.executor.transports.close()
