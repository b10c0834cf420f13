from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

UTC = timezone.utc


class TargetStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CONNECTION_ERROR = "connection_error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (TargetStatus.PENDING, TargetStatus.RUNNING)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)


class Severity(IntEnum):
    INFO = 1
    WARNING = 2
    ERROR = 3

    @classmethod
    def parse(cls, value: str) -> "Severity":
        return cls[value.strip().upper()]

    @property
    def label(self) -> str:
        return self.name.lower()


# Execution modes


@dataclass(frozen=True)
class Local:
    pass


@dataclass(frozen=True)
class Remote:
    host: str
    user: Optional[str] = None
    port: int = 22
    identity_file: Optional[str] = None
    options: Tuple[str, ...] = ()

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def display(self) -> str:
        if self.port != 22:
            return f"{self.destination}:{self.port}"
        return self.destination


ExecutionMode = Union[Local, Remote]


@dataclass(frozen=True)
class Target:
    id: str
    mode: ExecutionMode = field(default_factory=Local)
    tags: FrozenSet[str] = frozenset()
    enabled: bool = True

    @property
    def is_local(self) -> bool:
        return isinstance(self.mode, Local)

    def display(self) -> str:
        if isinstance(self.mode, Remote):
            return f"{self.id} ({self.mode.display()})"
        return f"{self.id} (local)"


# Target selectors


@dataclass(frozen=True)
class AllTargets:
    kind = "all"


@dataclass(frozen=True)
class ByTag:
    tags: FrozenSet[str]
    kind = "tags"


@dataclass(frozen=True)
class Explicit:
    target_ids: FrozenSet[str]
    kind = "explicit"


@dataclass(frozen=True)
class LocalOnly:
    kind = "local"


TargetSelector = Union[AllTargets, ByTag, Explicit, LocalOnly]


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 1
    delay_seconds: float = 0.0
    retry_on: FrozenSet[TargetStatus] = frozenset()

    def should_retry(self, status: TargetStatus, attempt: int) -> bool:
        return attempt < self.attempts and status in self.retry_on


NO_RETRY = RetryPolicy()


def read_only(mapping: Mapping[str, Any]) -> Mapping[str, Any]:
    """Shallow read-only copy of ``mapping``."""
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class JobTemplate:
    id: str
    job_type: str
    selector: TargetSelector
    parameters: Mapping[str, Any] = field(default_factory=dict)
    name: str = ""
    timeout_seconds: int = 3600
    retry: RetryPolicy = NO_RETRY

    def __post_init__(self):
        object.__setattr__(self, "parameters", read_only(self.parameters))

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class Schedule:
    id: str
    template_id: str
    cron: str
    enabled: bool = True


@dataclass(frozen=True)
class TargetResult:
    target_id: str
    status: TargetStatus
    exit_code: Optional[int] = None
    output: str = ""
    duration_seconds: float = 0.0
    error: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "output": self.output,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
            "tags": sorted(self.tags),
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class JobRun:
    id: str
    template_id: Optional[str]
    template_name: str
    job_type: str
    parameters: Mapping[str, Any]
    trigger: str
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    results: Tuple[TargetResult, ...] = ()
    schedule_id: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "parameters", read_only(self.parameters))

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def target_tags(self) -> FrozenSet[str]:
        tags: set = set()
        for result in self.results:
            tags.update(result.tags)
        return frozenset(tags)

    @property
    def target_ids(self) -> FrozenSet[str]:
        return frozenset(result.target_id for result in self.results)

    def count(self, *statuses: TargetStatus) -> int:
        return sum(1 for result in self.results if result.status in statuses)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "template_name": self.template_name,
            "job_type": self.job_type,
            "parameters": dict(self.parameters),
            "trigger": self.trigger,
            "schedule_id": self.schedule_id,
            "status": self.status.value,
            "error": self.error,
            "started_at": self.started_at.astimezone(UTC).isoformat() if self.started_at else None,
            "finished_at": self.finished_at.astimezone(UTC).isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(frozen=True)
class NotificationPolicy:
    id: str
    channels: Tuple[str, ...]
    name: str = ""
    enabled: bool = True
    job_types: FrozenSet[str] = frozenset()
    target_tags: FrozenSet[str] = frozenset()
    target_ids: FrozenSet[str] = frozenset()
    statuses: FrozenSet[RunStatus] = frozenset()
    min_severity: Severity = Severity.INFO
    max_per_window: Optional[int] = None
    window_seconds: int = 3600
    title_template: Optional[str] = None
    body_template: Optional[str] = None


@dataclass(frozen=True)
class NotificationMessage:
    title: str
    body: str
    severity: Severity
    run_id: str
    policy_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "severity": self.severity.label,
            "runId": self.run_id,
            "policyId": self.policy_id,
            "metadata": self.metadata,
        }


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def sorted_results(results: List[TargetResult]) -> Tuple[TargetResult, ...]:
    return tuple(sorted(results, key=lambda result: result.target_id))
