"""
Notification policy evaluation, rate limiting and message templating.

Template variables available to ``title_template`` / ``body_template``:

    run_id, job_name, job_type, template_id, schedule_id, trigger,
    status, severity, total_targets, success_count, failure_count,
    timeout_count, connection_error_count, cancelled_count,
    started_at, finished_at, duration_seconds, error,
    results  (list of: target_id, status, exit_code, duration_seconds,
              output_snippet, error)

Templates use Jinja2 syntax (``{{ status }}``, ``{% for r in results %}``).
Undefined variables render as ``<missing:name>``. A template that fails to
parse or render falls back to a fixed plain-text message so the alert still
goes out; the failure is reported on the notification.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from jinja2 import ChainableUndefined, Environment, TemplateError

from .channels import Channel
from .errors import ChannelDeliveryError, TemplateRenderError
from .models import (
    JobRun,
    NotificationMessage,
    NotificationPolicy,
    RunStatus,
    Severity,
    TargetStatus,
    UTC,
    utc_now,
)

logger = logging.getLogger("overseer.notify")

OUTPUT_SNIPPET_CHARS = 500
DEFAULT_DELIVERY_HISTORY = 200

DEFAULT_TITLE_TEMPLATE = "[{{ status }}] {{ job_name }} on {{ total_targets }} target(s)"
DEFAULT_BODY_TEMPLATE = """Job: {{ job_name }} ({{ job_type }})
Status: {{ status }} (severity {{ severity }})
Targets: {{ total_targets }} ({{ success_count }} succeeded, {{ failure_count }} failed, {{ timeout_count }} timed out, {{ cancelled_count }} cancelled)
Duration: {{ duration_seconds }}s
Started: {{ started_at }}
Finished: {{ finished_at }}
{% for result in results %}
- {{ result.target_id }}: {{ result.status }} (exit={{ result.exit_code }})
{% endfor %}"""

SEVERITY_BY_STATUS: Dict[RunStatus, Severity] = {
    RunStatus.SUCCEEDED: Severity.INFO,
    RunStatus.PARTIALLY_FAILED: Severity.WARNING,
    RunStatus.CANCELLED: Severity.WARNING,
    RunStatus.FAILED: Severity.ERROR,
    RunStatus.TIMED_OUT: Severity.ERROR,
}


def severity_for(status: RunStatus) -> Severity:
    try:
        return SEVERITY_BY_STATUS[status]
    except KeyError:
        raise ValueError(f"Run status {status.value} has no severity; run is not finished.") from None


def policy_matches(policy: NotificationPolicy, run: JobRun) -> bool:
    if not policy.enabled:
        return False
    if policy.job_types and run.job_type not in policy.job_types:
        return False
    if policy.target_tags and not (policy.target_tags & run.target_tags):
        return False
    if policy.target_ids and not (policy.target_ids & run.target_ids):
        return False
    if policy.statuses and run.status not in policy.statuses:
        return False
    return severity_for(run.status) >= policy.min_severity


class RateLimiter:
    """Sliding-window counters keyed by policy id; safe across threads."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def try_acquire(self, key: str, limit: Optional[int], window_seconds: float) -> bool:
        if limit is None:
            return True
        now = self._clock()
        with self._lock:
            events = self._events.setdefault(key, deque())
            cutoff = now - window_seconds
            while events and events[0] <= cutoff:
                events.popleft()
            if len(events) >= limit:
                return False
            events.append(now)
            return True

    def count(self, key: str, window_seconds: float) -> int:
        cutoff = self._clock() - window_seconds
        with self._lock:
            return sum(1 for stamp in self._events.get(key, ()) if stamp > cutoff)


class PlaceholderUndefined(ChainableUndefined):
    __slots__ = ()

    def __str__(self) -> str:
        return f"<missing:{self._undefined_name}>"


@dataclass(frozen=True)
class RenderResult:
    text: str
    error: Optional[TemplateRenderError] = None


def _iso(value: Any) -> str:
    return value.astimezone(UTC).isoformat() if value is not None else ""


def build_context(run: JobRun) -> Dict[str, Any]:
    failure = (TargetStatus.FAILED, TargetStatus.CONNECTION_ERROR)
    duration = run.duration_seconds
    return {
        "run_id": run.id,
        "job_name": run.template_name,
        "job_type": run.job_type,
        "template_id": run.template_id or "",
        "schedule_id": run.schedule_id or "",
        "trigger": run.trigger,
        "status": run.status.value,
        "severity": severity_for(run.status).label,
        "total_targets": len(run.results),
        "success_count": run.count(TargetStatus.SUCCEEDED),
        "failure_count": run.count(*failure),
        "timeout_count": run.count(TargetStatus.TIMED_OUT),
        "connection_error_count": run.count(TargetStatus.CONNECTION_ERROR),
        "cancelled_count": run.count(TargetStatus.CANCELLED),
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
        "duration_seconds": round(duration, 2) if duration is not None else "",
        "error": run.error or "",
        "results": [
            {
                "target_id": result.target_id,
                "status": result.status.value,
                "exit_code": result.exit_code,
                "duration_seconds": round(result.duration_seconds, 2),
                "output_snippet": result.output[:OUTPUT_SNIPPET_CHARS],
                "error": result.error or "",
            }
            for result in run.results
        ],
    }


def degraded_message(context: Mapping[str, Any]) -> str:
    return (
        f"[{context.get('status', 'unknown')}] {context.get('job_name', 'job')}: "
        f"{context.get('success_count', 0)}/{context.get('total_targets', 0)} target(s) succeeded "
        f"(run {context.get('run_id', '?')})"
    )


class TemplateRenderer:
    def __init__(self) -> None:
        self._env = Environment(
            undefined=PlaceholderUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._cache: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _compile(self, source: str) -> Any:
        with self._lock:
            template = self._cache.get(source)
        if template is None:
            template = self._env.from_string(source)
            with self._lock:
                self._cache[source] = template
        return template

    def render(self, source: str, context: Mapping[str, Any]) -> RenderResult:
        try:
            return RenderResult(text=self._compile(source).render(**context))
        except TemplateError as exc:
            error = TemplateRenderError(f"Template error: {exc}")
        except Exception as exc:
            error = TemplateRenderError(f"Template rendering failed: {exc.__class__.__name__}: {exc}")
        return RenderResult(text=degraded_message(context), error=error)


@dataclass(frozen=True)
class Notification:
    channel: str
    message: NotificationMessage
    render_errors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DeliveryReport:
    channel: str
    policy_id: str
    run_id: str
    delivered: bool
    error: Optional[str] = None
    at: datetime = field(default_factory=utc_now)


PolicySource = Callable[[], Sequence[NotificationPolicy]]


class NotificationEngine:
    def __init__(
        self,
        channels: Mapping[str, Channel],
        limiter: Optional[RateLimiter] = None,
        renderer: Optional[TemplateRenderer] = None,
        policies: Optional[PolicySource] = None,
        history_size: int = DEFAULT_DELIVERY_HISTORY,
    ):
        self._channels = dict(channels)
        self._history: Deque[DeliveryReport] = deque(maxlen=history_size)
        self._policies = policies or (lambda: ())
        self.limiter = limiter or RateLimiter()
        self.renderer = renderer or TemplateRenderer()
        self._lock = threading.Lock()

    def reload(self, channels: Mapping[str, Channel], policies: PolicySource) -> None:
        with self._lock:
            self._channels = dict(channels)
            self._policies = policies

    def evaluate(self, run: JobRun, policies: Iterable[NotificationPolicy]) -> List[Notification]:
        if not run.status.is_terminal:
            raise ValueError(f"Run {run.id} is not finished (status={run.status.value}).")
        severity = severity_for(run.status)
        context = build_context(run)
        notifications: List[Notification] = []
        for policy in policies:
            if not policy_matches(policy, run):
                continue
            if not self.limiter.try_acquire(policy.id, policy.max_per_window, policy.window_seconds):
                logger.info(
                    "[%s] Policy %s reached %s notification(s) per %ss; suppressed.",
                    run.id,
                    policy.id,
                    policy.max_per_window,
                    policy.window_seconds,
                )
                continue
            title = self.renderer.render(policy.title_template or DEFAULT_TITLE_TEMPLATE, context)
            body = self.renderer.render(policy.body_template or DEFAULT_BODY_TEMPLATE, context)
            errors = tuple(str(result.error) for result in (title, body) if result.error is not None)
            for error in errors:
                logger.warning("[%s] Policy %s: %s", run.id, policy.id, error)
            message = NotificationMessage(
                title=title.text,
                body=body.text,
                severity=severity,
                run_id=run.id,
                policy_id=policy.id,
                metadata={"status": run.status.value, "job_type": run.job_type},
            )
            for channel_name in policy.channels:
                notifications.append(Notification(channel=channel_name, message=message, render_errors=errors))
        return notifications

    def dispatch(self, notifications: Iterable[Notification]) -> List[DeliveryReport]:
        with self._lock:
            channels = self._channels
        reports: List[DeliveryReport] = []
        for notification in notifications:
            message = notification.message
            channel = channels.get(notification.channel)
            if channel is None:
                logger.warning("[%s] Unknown notification channel %s.", message.run_id, notification.channel)
                reports.append(
                    DeliveryReport(notification.channel, message.policy_id, message.run_id, False, "unknown channel")
                )
                continue
            try:
                channel.send(message)
            except ChannelDeliveryError as exc:
                logger.warning("[%s] Channel %s failed: %s", message.run_id, notification.channel, str(exc))
                reports.append(DeliveryReport(notification.channel, message.policy_id, message.run_id, False, str(exc)))
                continue
            except Exception as exc:
                logger.error("[%s] Channel %s raised unexpectedly: %s", message.run_id, notification.channel, str(exc))
                reports.append(DeliveryReport(notification.channel, message.policy_id, message.run_id, False, str(exc)))
                continue
            reports.append(DeliveryReport(notification.channel, message.policy_id, message.run_id, True))
        with self._lock:
            self._history.extend(reports)
        return reports

    def deliveries(self, run_id: Optional[str] = None) -> List[DeliveryReport]:
        """Most recent delivery attempts first, optionally for one run."""
        with self._lock:
            history = list(self._history)
        history.reverse()
        if run_id is None:
            return history
        return [report for report in history if report.run_id == run_id]

    def notify(self, run: JobRun, policies: Optional[Iterable[NotificationPolicy]] = None) -> List[DeliveryReport]:
        if policies is None:
            with self._lock:
                policies = list(self._policies())
        notifications = self.evaluate(run, policies)
        if not notifications:
            logger.debug("[%s] No notification policies matched.", run.id)
            return []
        reports = self.dispatch(notifications)
        sent = sum(1 for report in reports if report.delivered)
        logger.info("[%s] Sent %s/%s notification(s).", run.id, sent, len(reports))
        return reports

    def __call__(self, run: JobRun) -> None:
        self.notify(run)
