"""
Run coordination: target resolution, bounded fan-out, aggregation.

Lifecycle of a run: pending -> running -> one of succeeded, partially_failed,
failed, timed_out, cancelled. A run is finalized only once every dispatched
invocation has reported a terminal TargetResult.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from .executor import CommandExecutor
from .models import (
    JobRun,
    JobTemplate,
    RunStatus,
    Target,
    TargetResult,
    TargetStatus,
    sorted_results,
    utc_now,
)
from .targets import resolve

logger = logging.getLogger("overseer.coordinator")

DEFAULT_MAX_WORKERS = 8
DEFAULT_HISTORY_SIZE = 500

TRIGGER_SCHEDULE = "schedule"
TRIGGER_MANUAL = "manual"

# Outcome classes used by the decision table.
OK = "succeeded"
TIMEOUT = "timed_out"
FAIL = "failed"
CANCEL = "cancelled"

OUTCOME_CLASS: Dict[TargetStatus, str] = {
    TargetStatus.SUCCEEDED: OK,
    TargetStatus.TIMED_OUT: TIMEOUT,
    TargetStatus.FAILED: FAIL,
    TargetStatus.CONNECTION_ERROR: FAIL,
    TargetStatus.CANCELLED: CANCEL,
}

# (succeeded present, timed_out present, failed present, cancelled present) -> run status
DECISION_TABLE: Dict[Tuple[bool, bool, bool, bool], RunStatus] = {
    (False, False, False, False): RunStatus.SUCCEEDED,
    (True, False, False, False): RunStatus.SUCCEEDED,
    (False, True, False, False): RunStatus.TIMED_OUT,
    (False, False, True, False): RunStatus.FAILED,
    (False, True, True, False): RunStatus.FAILED,
    (True, True, False, False): RunStatus.PARTIALLY_FAILED,
    (True, False, True, False): RunStatus.PARTIALLY_FAILED,
    (True, True, True, False): RunStatus.PARTIALLY_FAILED,
    (False, False, False, True): RunStatus.CANCELLED,
    (True, False, False, True): RunStatus.CANCELLED,
    (False, True, False, True): RunStatus.CANCELLED,
    (False, False, True, True): RunStatus.CANCELLED,
    (False, True, True, True): RunStatus.CANCELLED,
    (True, True, False, True): RunStatus.CANCELLED,
    (True, False, True, True): RunStatus.CANCELLED,
    (True, True, True, True): RunStatus.CANCELLED,
}


def aggregate_status(statuses: Iterable[TargetStatus], cancel_requested: bool = False) -> RunStatus:
    """Overall run status from per-target statuses; see DECISION_TABLE."""
    classes: FrozenSet[str] = frozenset()
    for status in statuses:
        if status not in OUTCOME_CLASS:
            raise ValueError(f"Cannot aggregate a run with a {status.value} target result.")
        classes |= {OUTCOME_CLASS[status]}
    key = (OK in classes, TIMEOUT in classes, FAIL in classes, CANCEL in classes or cancel_requested)
    return DECISION_TABLE[key]


class RunStore:
    """Bounded in-memory history of finished runs, optionally appended to a JSON Lines file."""

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE, log_path: Optional[Path] = None):
        self.history_size = max(1, history_size)
        self.log_path = log_path
        self._runs: "OrderedDict[str, JobRun]" = OrderedDict()
        self._lock = threading.Lock()

    def save(self, run: JobRun) -> None:
        with self._lock:
            self._runs[run.id] = run
            self._runs.move_to_end(run.id)
            while len(self._runs) > self.history_size:
                self._runs.popitem(last=False)
        if self.log_path is not None:
            self._append(run)

    def _append(self, run: JobRun) -> None:
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(run.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:
            logger.warning("Failed to append run %s to %s: %s", run.id, self.log_path, str(exc))

    def get(self, run_id: str) -> Optional[JobRun]:
        with self._lock:
            return self._runs.get(run_id)

    def recent(self, limit: int = 20) -> List[JobRun]:
        with self._lock:
            runs = list(self._runs.values())
        return list(reversed(runs[-limit:]))


class _RunContext:
    def __init__(self, run: JobRun):
        self._run = run
        self._results: Dict[str, TargetResult] = {}
        self.cancel_event = threading.Event()
        self.done = threading.Event()
        self._lock = threading.Lock()

    @property
    def run_id(self) -> str:
        return self._run.id

    def snapshot(self) -> JobRun:
        with self._lock:
            return self._run

    def update(self, **changes: Any) -> JobRun:
        with self._lock:
            self._run = replace(self._run, **changes)
            return self._run

    def seed(self, targets: List[Target]) -> None:
        with self._lock:
            self._results = {
                target.id: TargetResult(target_id=target.id, status=TargetStatus.PENDING, tags=target.tags)
                for target in targets
            }
            self._run = replace(self._run, results=sorted_results(list(self._results.values())))

    def record(self, result: TargetResult) -> None:
        with self._lock:
            self._results[result.target_id] = result
            self._run = replace(self._run, results=sorted_results(list(self._results.values())))

    def results(self) -> List[TargetResult]:
        with self._lock:
            return list(self._results.values())


class RunHandle:
    def __init__(self, context: _RunContext):
        self._context = context

    @property
    def run_id(self) -> str:
        return self._context.run_id

    def wait(self, timeout: Optional[float] = None) -> Optional[JobRun]:
        if not self._context.done.wait(timeout):
            return None
        return self._context.snapshot()

    def snapshot(self) -> JobRun:
        return self._context.snapshot()


DirectorySource = Union[Mapping[str, Target], Callable[[], Mapping[str, Target]]]
FinishedHook = Callable[[JobRun], None]


class RunCoordinator:
    def __init__(
        self,
        executor: CommandExecutor,
        directory: DirectorySource,
        store: Optional[RunStore] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        on_finished: Iterable[FinishedHook] = (),
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.executor = executor
        self._directory = directory
        self.store = store or RunStore()
        self.max_workers = max_workers
        self._hooks: List[FinishedHook] = list(on_finished)
        self._active: Dict[str, _RunContext] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def add_finished_hook(self, hook: FinishedHook) -> None:
        self._hooks.append(hook)

    def directory(self) -> Mapping[str, Target]:
        if callable(self._directory):
            return self._directory()
        return self._directory

    def start(
        self,
        template: JobTemplate,
        trigger: str = TRIGGER_MANUAL,
        overrides: Optional[Mapping[str, Any]] = None,
        schedule_id: Optional[str] = None,
    ) -> RunHandle:
        """Create a pending run and execute it on a background thread."""
        context = self._create(template, trigger, overrides, schedule_id)
        thread = threading.Thread(
            target=self._execute,
            args=(context, template),
            daemon=True,
            name=f"overseer-run-{context.run_id}",
        )
        with self._lock:
            self._threads[context.run_id] = thread
        thread.start()
        return RunHandle(context)

    def run(
        self,
        template: JobTemplate,
        trigger: str = TRIGGER_MANUAL,
        overrides: Optional[Mapping[str, Any]] = None,
        schedule_id: Optional[str] = None,
    ) -> JobRun:
        """Blocking equivalent of ``start(...).wait()``."""
        context = self._create(template, trigger, overrides, schedule_id)
        self._execute(context, template)
        return context.snapshot()

    def _create(
        self,
        template: JobTemplate,
        trigger: str,
        overrides: Optional[Mapping[str, Any]],
        schedule_id: Optional[str],
    ) -> _RunContext:
        created = utc_now()
        run_id = f"{template.id}-{created.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"
        parameters = {**template.parameters, **dict(overrides or {})}
        run = JobRun(
            id=run_id,
            template_id=template.id,
            template_name=template.display_name,
            job_type=template.job_type,
            parameters=parameters,
            trigger=trigger,
            schedule_id=schedule_id,
        )
        context = _RunContext(run)
        with self._lock:
            self._active[run_id] = context
        return context

    def cancel(self, run_id: str) -> bool:
        with self._lock:
            context = self._active.get(run_id)
        if context is None:
            return False
        logger.info("[%s] Cancellation requested.", run_id)
        context.cancel_event.set()
        return True

    def get_run(self, run_id: str) -> Optional[JobRun]:
        with self._lock:
            context = self._active.get(run_id)
        if context is not None:
            return context.snapshot()
        return self.store.get(run_id)

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[JobRun]:
        """Block until ``run_id`` finishes; None if it is unknown or still running at ``timeout``."""
        with self._lock:
            context = self._active.get(run_id)
        if context is None:
            return self.store.get(run_id)
        if not context.done.wait(timeout):
            return None
        return context.snapshot()

    def active_run_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._active)

    def shutdown(self, cancel: bool = False, timeout: float = 30.0) -> None:
        with self._lock:
            contexts = list(self._active.values())
            threads = list(self._threads.values())
        if cancel:
            for context in contexts:
                context.cancel_event.set()
        for thread in threads:
            thread.join(timeout=timeout)
        still_running = self.active_run_ids()
        if still_running:
            logger.warning("Shutdown timeout reached with %s run(s) still active.", len(still_running))

    def _execute(self, context: _RunContext, template: JobTemplate) -> None:
        run = context.update(status=RunStatus.RUNNING, started_at=utc_now())
        error: Optional[str] = None
        status: RunStatus
        try:
            targets = resolve(template.selector, self.directory())
            logger.info(
                "[%s] Starting %s (%s, trigger=%s) on %s target(s)",
                run.id,
                template.display_name,
                template.job_type,
                run.trigger,
                len(targets),
            )
            context.seed(targets)
            if targets and not context.cancel_event.is_set():
                self._fan_out(context, template, run.parameters, targets)
            results = self._settle(context)
            status = aggregate_status((result.status for result in results), context.cancel_event.is_set())
        except Exception as exc:
            logger.exception("[%s] Run aborted: %s", run.id, exc)
            error = str(exc)
            self._settle(context)
            status = RunStatus.CANCELLED if context.cancel_event.is_set() else RunStatus.FAILED

        final = context.update(status=status, finished_at=utc_now(), error=error)
        self._log_summary(final)
        self._finalize(context, final)

    def _fan_out(
        self,
        context: _RunContext,
        template: JobTemplate,
        parameters: Mapping[str, Any],
        targets: List[Target],
    ) -> None:
        workers = min(self.max_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="overseer-target") as pool:
            futures = [pool.submit(self._run_target, context, template, parameters, target) for target in targets]
            for future in as_completed(futures):
                context.record(future.result())

    def _run_target(
        self,
        context: _RunContext,
        template: JobTemplate,
        parameters: Mapping[str, Any],
        target: Target,
    ) -> TargetResult:
        run_id = context.run_id
        attempt = 1
        try:
            if not context.cancel_event.is_set():
                context.record(TargetResult(target_id=target.id, status=TargetStatus.RUNNING, tags=target.tags))
            while True:
                result = self.executor.execute(
                    template.job_type,
                    parameters,
                    target,
                    template.timeout_seconds,
                    cancel_event=context.cancel_event,
                )
                if context.cancel_event.is_set() or not template.retry.should_retry(result.status, attempt):
                    break
                logger.warning(
                    "[%s] %s on %s: %s (attempt %s/%s); retrying in %.1fs",
                    run_id,
                    template.display_name,
                    target.id,
                    result.status.value,
                    attempt,
                    template.retry.attempts,
                    template.retry.delay_seconds,
                )
                if context.cancel_event.wait(template.retry.delay_seconds):
                    break
                attempt += 1
        except Exception as exc:  # pragma: no cover
            logger.exception("[%s] Unexpected error on %s", run_id, target.id)
            result = TargetResult(
                target_id=target.id,
                status=TargetStatus.FAILED,
                exit_code=-2,
                error=str(exc),
                tags=target.tags,
            )
        result = replace(result, attempts=attempt)
        self._log_target(run_id, target, result)
        return result

    def _settle(self, context: _RunContext) -> List[TargetResult]:
        # Anything not terminal at this point was never executed.
        for result in context.results():
            if not result.status.is_terminal:
                context.record(
                    replace(
                        result,
                        status=TargetStatus.CANCELLED,
                        error="Not executed; run ended before this target completed.",
                    )
                )
        return context.results()

    def _finalize(self, context: _RunContext, run: JobRun) -> None:
        try:
            self.store.save(run)
        except Exception as exc:  # pragma: no cover
            logger.error("[%s] Failed to persist run: %s", run.id, str(exc))
        with self._lock:
            self._active.pop(run.id, None)
        context.done.set()
        # Waiters are released before hooks run.
        for hook in self._hooks:
            try:
                hook(run)
            except Exception as exc:
                logger.error("[%s] Run finished hook failed: %s", run.id, str(exc))
        with self._lock:
            self._threads.pop(run.id, None)

    def _log_target(self, run_id: str, target: Target, result: TargetResult) -> None:
        if result.status is TargetStatus.SUCCEEDED:
            logger.info(
                "[%s] %s succeeded (%.2fs)",
                run_id,
                target.display(),
                result.duration_seconds,
            )
            return
        logger.error(
            "[%s] %s %s (code=%s, duration=%.2fs): %s",
            run_id,
            target.display(),
            result.status.value,
            result.exit_code,
            result.duration_seconds,
            result.error or "",
        )

    def _log_summary(self, run: JobRun) -> None:
        level = logging.INFO if run.status is RunStatus.SUCCEEDED else logging.WARNING
        logger.log(
            level,
            "[%s] Run %s finished with status=%s in %.2fs (%s target(s))",
            run.id,
            run.template_name,
            run.status.value,
            run.duration_seconds or 0.0,
            len(run.results),
        )
