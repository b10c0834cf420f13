from __future__ import annotations

import itertools
import json
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from overseer.coordinator import DECISION_TABLE, RunCoordinator, RunStore, aggregate_status
from overseer.models import (
    AllTargets,
    ByTag,
    JobRun,
    JobTemplate,
    Local,
    RetryPolicy,
    RunStatus,
    Target,
    TargetResult,
    TargetStatus,
)
from overseer.targets import TargetDirectory

TERMINAL = [
    TargetStatus.SUCCEEDED,
    TargetStatus.FAILED,
    TargetStatus.TIMED_OUT,
    TargetStatus.CONNECTION_ERROR,
    TargetStatus.CANCELLED,
]


class ScriptedExecutor:
    """Returns queued statuses per target; targets listed in ``block`` wait for cancellation."""

    def __init__(self, outcomes: Dict[str, List[TargetStatus]], block: frozenset = frozenset()):
        self.outcomes = {key: list(value) for key, value in outcomes.items()}
        self.block = block
        self.calls: List[str] = []
        self.in_flight = 0
        self._lock = threading.Lock()

    def execute(self, job_type, parameters, target, timeout, cancel_event: Optional[threading.Event] = None):
        with self._lock:
            self.calls.append(target.id)
        if target.id in self.block:
            with self._lock:
                self.in_flight += 1
            cancel_event.wait(10)
            return TargetResult(target.id, TargetStatus.CANCELLED, exit_code=-3, tags=target.tags)
        with self._lock:
            queue = self.outcomes.get(target.id) or [TargetStatus.SUCCEEDED]
            status = queue.pop(0) if len(queue) > 1 else queue[0]
        exit_code = 0 if status is TargetStatus.SUCCEEDED else 1
        return TargetResult(target.id, status, exit_code=exit_code, output=f"out-{target.id}", tags=target.tags)


def _directory(*ids: str, tags: frozenset = frozenset({"web"})) -> TargetDirectory:
    return TargetDirectory([Target(target_id, Local(), tags) for target_id in ids])


def _template(**overrides) -> JobTemplate:
    values = dict(id="check", job_type="command", selector=AllTargets(), parameters={"command": "true"})
    values.update(overrides)
    return JobTemplate(**values)


def _statuses(run: JobRun) -> Dict[str, TargetStatus]:
    return {result.target_id: result.status for result in run.results}


def test_decision_table_covers_every_combination() -> None:
    assert len(DECISION_TABLE) == 16
    assert set(DECISION_TABLE) == set(itertools.product([False, True], repeat=4))


def test_aggregation_is_total_and_order_independent() -> None:
    for size in range(0, 4):
        for combo in itertools.combinations_with_replacement(TERMINAL, size):
            for cancel_requested in (False, True):
                expected = aggregate_status(combo, cancel_requested)
                assert expected.is_terminal
                for permutation in itertools.permutations(combo):
                    assert aggregate_status(permutation, cancel_requested) is expected


@pytest.mark.parametrize(
    "statuses, expected",
    [
        ([], RunStatus.SUCCEEDED),
        ([TargetStatus.SUCCEEDED] * 3, RunStatus.SUCCEEDED),
        ([TargetStatus.TIMED_OUT] * 3, RunStatus.TIMED_OUT),
        ([TargetStatus.SUCCEEDED, TargetStatus.TIMED_OUT, TargetStatus.TIMED_OUT], RunStatus.PARTIALLY_FAILED),
        ([TargetStatus.FAILED, TargetStatus.CONNECTION_ERROR], RunStatus.FAILED),
        ([TargetStatus.TIMED_OUT, TargetStatus.FAILED], RunStatus.FAILED),
        ([TargetStatus.SUCCEEDED, TargetStatus.TIMED_OUT, TargetStatus.FAILED], RunStatus.PARTIALLY_FAILED),
        ([TargetStatus.SUCCEEDED, TargetStatus.CANCELLED], RunStatus.CANCELLED),
    ],
)
def test_aggregation_examples(statuses: List[TargetStatus], expected: RunStatus) -> None:
    assert aggregate_status(statuses) is expected


def test_cancel_request_forces_cancelled() -> None:
    assert aggregate_status([TargetStatus.SUCCEEDED], cancel_requested=True) is RunStatus.CANCELLED


def test_aggregation_rejects_non_terminal() -> None:
    with pytest.raises(ValueError):
        aggregate_status([TargetStatus.SUCCEEDED, TargetStatus.RUNNING])


def test_zero_targets_succeeds_with_empty_results() -> None:
    executor = ScriptedExecutor({})
    coordinator = RunCoordinator(executor, _directory("a"), max_workers=2)
    run = coordinator.run(_template(selector=ByTag(frozenset({"db"}))))
    assert run.status is RunStatus.SUCCEEDED
    assert run.results == ()
    assert executor.calls == []
    assert run.finished_at is not None


def test_mixed_outcomes_keep_per_target_kinds() -> None:
    executor = ScriptedExecutor(
        {
            "a": [TargetStatus.SUCCEEDED],
            "b": [TargetStatus.TIMED_OUT],
            "c": [TargetStatus.FAILED],
        }
    )
    coordinator = RunCoordinator(executor, _directory("a", "b", "c"), max_workers=3)
    run = coordinator.run(_template())
    assert run.status is RunStatus.PARTIALLY_FAILED
    assert _statuses(run) == {
        "a": TargetStatus.SUCCEEDED,
        "b": TargetStatus.TIMED_OUT,
        "c": TargetStatus.FAILED,
    }
    assert [result.target_id for result in run.results] == ["a", "b", "c"]


def test_all_timeouts_is_timed_out() -> None:
    executor = ScriptedExecutor({key: [TargetStatus.TIMED_OUT] for key in "abc"})
    run = RunCoordinator(executor, _directory("a", "b", "c")).run(_template())
    assert run.status is RunStatus.TIMED_OUT


def test_parallelism_is_bounded() -> None:
    peak = {"value": 0, "current": 0}
    lock = threading.Lock()

    class SlowExecutor:
        def execute(self, job_type, parameters, target, timeout, cancel_event=None):
            with lock:
                peak["current"] += 1
                peak["value"] = max(peak["value"], peak["current"])
            time.sleep(0.05)
            with lock:
                peak["current"] -= 1
            return TargetResult(target.id, TargetStatus.SUCCEEDED, exit_code=0)

    ids = [f"t{idx}" for idx in range(8)]
    run = RunCoordinator(SlowExecutor(), _directory(*ids), max_workers=3).run(_template())
    assert run.status is RunStatus.SUCCEEDED
    assert len(run.results) == 8
    assert 1 <= peak["value"] <= 3


def test_cancel_with_in_flight_targets() -> None:
    executor = ScriptedExecutor({}, block=frozenset({"d", "e"}))
    coordinator = RunCoordinator(executor, _directory("a", "b", "c", "d", "e"), max_workers=5)
    handle = coordinator.start(_template())

    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        snapshot = handle.snapshot()
        done = sum(1 for result in snapshot.results if result.status is TargetStatus.SUCCEEDED)
        if executor.in_flight == 2 and done == 3:
            break
        time.sleep(0.01)
    assert executor.in_flight == 2

    assert coordinator.cancel(handle.run_id)
    run = handle.wait(timeout=10)
    assert run is not None
    assert run.status is RunStatus.CANCELLED
    assert _statuses(run) == {
        "a": TargetStatus.SUCCEEDED,
        "b": TargetStatus.SUCCEEDED,
        "c": TargetStatus.SUCCEEDED,
        "d": TargetStatus.CANCELLED,
        "e": TargetStatus.CANCELLED,
    }
    assert coordinator.cancel(handle.run_id) is False


def test_retry_policy_retries_selected_statuses() -> None:
    executor = ScriptedExecutor({"a": [TargetStatus.CONNECTION_ERROR, TargetStatus.SUCCEEDED]})
    retry = RetryPolicy(attempts=3, delay_seconds=0, retry_on=frozenset({TargetStatus.CONNECTION_ERROR}))
    run = RunCoordinator(executor, _directory("a")).run(_template(retry=retry))
    assert run.status is RunStatus.SUCCEEDED
    assert run.results[0].attempts == 2
    assert executor.calls == ["a", "a"]


def test_no_retry_by_default() -> None:
    executor = ScriptedExecutor({"a": [TargetStatus.CONNECTION_ERROR, TargetStatus.SUCCEEDED]})
    run = RunCoordinator(executor, _directory("a")).run(_template())
    assert run.status is RunStatus.FAILED
    assert executor.calls == ["a"]


def test_overrides_merge_into_parameters() -> None:
    run = RunCoordinator(ScriptedExecutor({}), _directory("a")).run(
        _template(parameters={"command": "true", "level": "1"}), overrides={"level": "2"}
    )
    assert run.parameters == {"command": "true", "level": "2"}


def test_parameters_cannot_be_edited_after_construction() -> None:
    source = {"command": "true"}
    template = _template(parameters=source)
    source["command"] = "rm -rf /tmp/x"
    assert template.parameters == {"command": "true"}
    with pytest.raises(TypeError):
        template.parameters["command"] = "false"

    run = RunCoordinator(ScriptedExecutor({}), _directory("a")).run(template)
    with pytest.raises(TypeError):
        run.parameters["extra"] = "1"
    assert run.to_dict()["parameters"] == {"command": "true"}


def test_resolution_failure_produces_failed_run() -> None:
    def broken_directory():
        raise RuntimeError("inventory unavailable")

    run = RunCoordinator(ScriptedExecutor({}), broken_directory).run(_template())
    assert run.status is RunStatus.FAILED
    assert "inventory unavailable" in (run.error or "")


def test_finished_hooks_run_once_and_failures_are_contained() -> None:
    seen: List[JobRun] = []

    def broken_hook(run: JobRun) -> None:
        raise RuntimeError("hook exploded")

    coordinator = RunCoordinator(ScriptedExecutor({}), _directory("a"), on_finished=[broken_hook, seen.append])
    handle = coordinator.start(_template())
    run = handle.wait(timeout=5)
    assert run is not None and run.status is RunStatus.SUCCEEDED
    coordinator.shutdown(timeout=5)
    assert [item.id for item in seen] == [handle.run_id]
    assert coordinator.get_run(handle.run_id) == run
    assert coordinator.active_run_ids() == []


def test_slow_finished_hook_does_not_delay_wait() -> None:
    release = threading.Event()
    delivered: List[str] = []

    def slow_hook(run: JobRun) -> None:
        release.wait(10)
        delivered.append(run.id)

    coordinator = RunCoordinator(ScriptedExecutor({}), _directory("a"), on_finished=[slow_hook])
    handle = coordinator.start(_template())
    run = handle.wait(timeout=2)
    assert run is not None and run.status is RunStatus.SUCCEEDED
    assert delivered == []
    assert coordinator.cancel(handle.run_id) is False

    release.set()
    coordinator.shutdown(timeout=5)
    assert delivered == [handle.run_id]


def test_run_store_appends_json_lines(tmp_path: Path) -> None:
    log_path = tmp_path / "runs" / "runs.jsonl"
    coordinator = RunCoordinator(ScriptedExecutor({}), _directory("a", "b"), store=RunStore(10, log_path))
    run = coordinator.run(_template())
    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    payload = json.loads(lines[0])
    assert payload["id"] == run.id
    assert payload["status"] == "succeeded"
    assert [item["target_id"] for item in payload["results"]] == ["a", "b"]


def test_run_store_history_is_bounded() -> None:
    coordinator = RunCoordinator(ScriptedExecutor({}), _directory("a"), store=RunStore(history_size=2))
    runs = [coordinator.run(_template()) for _ in range(3)]
    assert coordinator.get_run(runs[0].id) is None
    assert [run.id for run in coordinator.store.recent()] == [runs[2].id, runs[1].id]


def test_wait_by_run_id() -> None:
    coordinator = RunCoordinator(ScriptedExecutor({}), _directory("a"))
    handle = coordinator.start(_template(), trigger="schedule", schedule_id="every-minute")
    run = coordinator.wait(handle.run_id, timeout=5)
    assert run is not None
    assert run.trigger == "schedule"
    assert run.schedule_id == "every-minute"
    assert coordinator.wait("missing", timeout=0.1) is None
