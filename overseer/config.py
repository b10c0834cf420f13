"""
YAML configuration loading.

Example document::

    version: 1
    settings:
      tick_seconds: 30
      max_concurrency: 8
      run_log: logs/runs.jsonl
      ssh:
        connect_timeout: 10
    targets:
      - id: web-1
        host: web1.example.com
        user: deploy
        tags: [web, prod]
      - id: localhost
        local: true
    templates:
      - id: disk-check
        job_type: shell
        targets: {tags: [web]}
        parameters:
          script: df -h /
        timeout: 120
    schedules:
      - id: disk-check-5m
        template: disk-check
        cron: "*/5 * * * *"
    channels:
      - name: ops-log
        type: log
    policies:
      - id: failures
        channels: [ops-log]
        min_severity: warning
        max_per_window: 1

Relative paths are resolved against the directory holding the config file.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import yaml

from . import cron
from .channels import Channel, LogChannel, WebhookChannel
from .errors import ConfigurationError
from .executor import DEFAULT_GRACE_SECONDS, DEFAULT_OUTPUT_LIMIT
from .jobtypes import JobTypeRegistry, default_registry
from .models import (
    NO_RETRY,
    AllTargets,
    ByTag,
    Explicit,
    JobTemplate,
    Local,
    LocalOnly,
    NotificationPolicy,
    Remote,
    RetryPolicy,
    RunStatus,
    Schedule,
    Severity,
    Target,
    TargetSelector,
    TargetStatus,
)
from .targets import IMPLICIT_LOCAL_ID, TargetDirectory, validate_selector
from .transport import DEFAULT_CONNECT_TIMEOUT, DEFAULT_CONTROL_PERSIST, SshSettings

logger = logging.getLogger("overseer.config")

DEFAULT_TICK_SECONDS = 30
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_HISTORY_SIZE = 500
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_WINDOW_SECONDS = 3600

TOP_LEVEL_KEYS = {"version", "settings", "targets", "templates", "schedules", "channels", "policies"}
SETTINGS_KEYS = {
    "tick_seconds",
    "max_concurrency",
    "output_limit_bytes",
    "cancel_grace_seconds",
    "history_size",
    "run_log",
    "log_file",
    "ssh",
}
SSH_KEYS = {"binary", "connect_timeout", "control_persist", "control_dir", "options"}
TARGET_KEYS = {"id", "local", "host", "user", "port", "identity_file", "ssh_options", "tags", "enabled"}
TEMPLATE_KEYS = {"id", "name", "job_type", "targets", "parameters", "timeout", "retry"}
RETRY_KEYS = {"attempts", "delay_seconds", "on"}
SCHEDULE_KEYS = {"id", "template", "cron", "enabled"}
CHANNEL_KEYS = {"name", "type", "url", "headers", "timeout", "logger"}
POLICY_KEYS = {
    "id",
    "name",
    "enabled",
    "channels",
    "job_types",
    "target_tags",
    "target_ids",
    "statuses",
    "min_severity",
    "max_per_window",
    "window_seconds",
    "title_template",
    "body_template",
}


@dataclass(frozen=True)
class Settings:
    tick_seconds: int = DEFAULT_TICK_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    output_limit_bytes: int = DEFAULT_OUTPUT_LIMIT
    cancel_grace_seconds: float = DEFAULT_GRACE_SECONDS
    history_size: int = DEFAULT_HISTORY_SIZE
    run_log: Optional[Path] = None
    log_file: Optional[Path] = None
    ssh: SshSettings = field(default_factory=SshSettings)


@dataclass(frozen=True)
class ConfigSnapshot:
    settings: Settings
    targets: TargetDirectory
    templates: Dict[str, JobTemplate]
    schedules: Tuple[Schedule, ...] = ()
    policies: Tuple[NotificationPolicy, ...] = ()
    channels: Dict[str, Channel] = field(default_factory=dict)
    schedule_errors: Tuple[str, ...] = ()


# Field helpers


def ensure_mapping(value: Any, field_path: str, allow_none: bool = True) -> Dict[str, Any]:
    if value is None and allow_none:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Error: {field_path} must be a mapping.")
    return value


def ensure_list(value: Any, field_path: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError(f"Error: {field_path} must be a list.")
    return value


def ensure_keys(raw: Dict[str, Any], allowed: Set[str], field_path: str) -> None:
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigurationError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigurationError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigurationError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigurationError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_float(value: Any, field_path: str, default: float, minimum: float = 0.0) -> float:
    if value is None:
        return default
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigurationError(f"Error: {field_path} must be a number.")
    if value < minimum:
        raise ConfigurationError(f"Error: {field_path} must be >= {minimum:g}.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_optional_str(value: Any, field_path: str) -> Optional[str]:
    if value is None:
        return None
    return ensure_str(value, field_path)


def ensure_str_list(value: Any, field_path: str) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    items = ensure_list(value, field_path)
    return tuple(ensure_str(item, f"{field_path}[{idx}]") for idx, item in enumerate(items))


def _resolve_path(value: Any, config_dir: Path, field_path: str) -> Optional[Path]:
    if value is None:
        return None
    raw = Path(ensure_str(value, field_path)).expanduser()
    return (raw if raw.is_absolute() else config_dir / raw).resolve()


def _located(exc: ConfigurationError, field_path: str) -> str:
    message = str(exc)
    if message.startswith("Error: "):
        message = message[len("Error: "):]
    return f"Error: {field_path}: {message}"


# Sections


def parse_settings(raw: Any, config_dir: Path, field_path: str = "settings") -> Settings:
    data = ensure_mapping(raw, field_path)
    ensure_keys(data, SETTINGS_KEYS, field_path)

    ssh_path = f"{field_path}.ssh"
    ssh_raw = ensure_mapping(data.get("ssh"), ssh_path)
    ensure_keys(ssh_raw, SSH_KEYS, ssh_path)
    control_persist = ssh_raw.get("control_persist", DEFAULT_CONTROL_PERSIST)
    if control_persist is False:
        control_persist = None
    elif control_persist is not None:
        control_persist = ensure_str(str(control_persist), f"{ssh_path}.control_persist")
    ssh = SshSettings(
        binary=ensure_str(ssh_raw.get("binary", "ssh"), f"{ssh_path}.binary"),
        connect_timeout=ensure_int(
            ssh_raw.get("connect_timeout"), f"{ssh_path}.connect_timeout", DEFAULT_CONNECT_TIMEOUT
        ),
        control_persist=control_persist,
        control_dir=_resolve_path(ssh_raw.get("control_dir"), config_dir, f"{ssh_path}.control_dir"),
        extra_options=ensure_str_list(ssh_raw.get("options"), f"{ssh_path}.options"),
    )

    return Settings(
        tick_seconds=ensure_int(data.get("tick_seconds"), f"{field_path}.tick_seconds", DEFAULT_TICK_SECONDS),
        max_concurrency=ensure_int(
            data.get("max_concurrency"), f"{field_path}.max_concurrency", DEFAULT_MAX_CONCURRENCY
        ),
        output_limit_bytes=ensure_int(
            data.get("output_limit_bytes"), f"{field_path}.output_limit_bytes", DEFAULT_OUTPUT_LIMIT, 0
        ),
        cancel_grace_seconds=ensure_float(
            data.get("cancel_grace_seconds"), f"{field_path}.cancel_grace_seconds", DEFAULT_GRACE_SECONDS
        ),
        history_size=ensure_int(data.get("history_size"), f"{field_path}.history_size", DEFAULT_HISTORY_SIZE),
        run_log=_resolve_path(data.get("run_log"), config_dir, f"{field_path}.run_log"),
        log_file=_resolve_path(data.get("log_file"), config_dir, f"{field_path}.log_file"),
        ssh=ssh,
    )


def parse_target(raw: Any, field_path: str) -> Target:
    data = ensure_mapping(raw, field_path, allow_none=False)
    ensure_keys(data, TARGET_KEYS, field_path)
    target_id = ensure_str(data.get("id"), f"{field_path}.id")
    is_local = ensure_bool(data.get("local"), f"{field_path}.local", "host" not in data)
    remote_keys = sorted({"host", "user", "port", "identity_file", "ssh_options"} & set(data))

    if is_local:
        if remote_keys:
            raise ConfigurationError(f"Error: {field_path} is local but sets {remote_keys}.")
        mode: Any = Local()
    else:
        mode = Remote(
            host=ensure_str(data.get("host"), f"{field_path}.host"),
            user=ensure_optional_str(data.get("user"), f"{field_path}.user"),
            port=ensure_int(data.get("port"), f"{field_path}.port", 22),
            identity_file=ensure_optional_str(data.get("identity_file"), f"{field_path}.identity_file"),
            options=ensure_str_list(data.get("ssh_options"), f"{field_path}.ssh_options"),
        )
        if mode.port > 65535:
            raise ConfigurationError(f"Error: {field_path}.port must be <= 65535.")

    return Target(
        id=target_id,
        mode=mode,
        tags=frozenset(ensure_str_list(data.get("tags"), f"{field_path}.tags")),
        enabled=ensure_bool(data.get("enabled"), f"{field_path}.enabled", True),
    )


def parse_selector(raw: Any, field_path: str) -> TargetSelector:
    if raw is None or raw == "all":
        return AllTargets()
    if raw == "local":
        return LocalOnly()
    if isinstance(raw, str):
        raise ConfigurationError(f'Error: {field_path} must be "all", "local" or a mapping, got "{raw}".')
    data = ensure_mapping(raw, field_path, allow_none=False)
    ensure_keys(data, {"tags", "ids"}, field_path)
    if len(data) != 1:
        raise ConfigurationError(f"Error: {field_path} must set exactly one of tags or ids.")
    if "tags" in data:
        selector: TargetSelector = ByTag(frozenset(ensure_str_list(data["tags"], f"{field_path}.tags")))
    else:
        selector = Explicit(frozenset(ensure_str_list(data["ids"], f"{field_path}.ids")))
    return selector


def parse_retry(raw: Any, field_path: str) -> RetryPolicy:
    if raw is None:
        return NO_RETRY
    data = ensure_mapping(raw, field_path, allow_none=False)
    ensure_keys(data, RETRY_KEYS, field_path)
    retry_on: Set[TargetStatus] = set()
    for idx, value in enumerate(ensure_str_list(data.get("on", ["connection_error"]), f"{field_path}.on")):
        try:
            status = TargetStatus(value)
        except ValueError:
            status = None
        if status is None or status in (TargetStatus.PENDING, TargetStatus.RUNNING, TargetStatus.SUCCEEDED):
            raise ConfigurationError(
                f'Error: {field_path}.on[{idx}] must be one of failed, timed_out, connection_error, got "{value}".'
            )
        if status is TargetStatus.CANCELLED:
            raise ConfigurationError(f"Error: {field_path}.on[{idx}] cannot retry cancelled targets.")
        retry_on.add(status)
    return RetryPolicy(
        attempts=ensure_int(data.get("attempts"), f"{field_path}.attempts", 1),
        delay_seconds=ensure_float(data.get("delay_seconds"), f"{field_path}.delay_seconds", 0.0),
        retry_on=frozenset(retry_on),
    )


def parse_template(
    raw: Any,
    field_path: str,
    directory: TargetDirectory,
    registry: JobTypeRegistry,
) -> JobTemplate:
    data = ensure_mapping(raw, field_path, allow_none=False)
    ensure_keys(data, TEMPLATE_KEYS, field_path)
    template_id = ensure_str(data.get("id"), f"{field_path}.id")
    job_type_name = ensure_str(data.get("job_type"), f"{field_path}.job_type")
    try:
        job_type = registry.get(job_type_name)
    except ConfigurationError as exc:
        raise type(exc)(_located(exc, f"{field_path}.job_type")) from exc
    parameters = ensure_mapping(data.get("parameters"), f"{field_path}.parameters")
    job_type.validate(parameters, f"{field_path}.parameters")

    selector = parse_selector(data.get("targets"), f"{field_path}.targets")
    try:
        validate_selector(selector, directory)
    except ConfigurationError as exc:
        raise ConfigurationError(_located(exc, f"{field_path}.targets")) from exc

    return JobTemplate(
        id=template_id,
        job_type=job_type_name,
        selector=selector,
        parameters=dict(parameters),
        name=ensure_optional_str(data.get("name"), f"{field_path}.name") or "",
        timeout_seconds=ensure_int(data.get("timeout"), f"{field_path}.timeout", DEFAULT_TIMEOUT_SECONDS),
        retry=parse_retry(data.get("retry"), f"{field_path}.retry"),
    )


def parse_schedule(raw: Any, field_path: str, templates: Dict[str, JobTemplate]) -> Schedule:
    data = ensure_mapping(raw, field_path, allow_none=False)
    ensure_keys(data, SCHEDULE_KEYS, field_path)
    schedule_id = ensure_str(data.get("id"), f"{field_path}.id")
    template_id = ensure_str(data.get("template"), f"{field_path}.template")
    if template_id not in templates:
        raise ConfigurationError(f'Error: {field_path}.template references unknown template "{template_id}".')
    try:
        expression = cron.validate_expression(data.get("cron"))
    except ConfigurationError as exc:
        raise type(exc)(_located(exc, f"{field_path}.cron")) from exc
    return Schedule(
        id=schedule_id,
        template_id=template_id,
        cron=expression,
        enabled=ensure_bool(data.get("enabled"), f"{field_path}.enabled", True),
    )


def parse_channel(raw: Any, field_path: str) -> Channel:
    data = ensure_mapping(raw, field_path, allow_none=False)
    ensure_keys(data, CHANNEL_KEYS, field_path)
    name = ensure_str(data.get("name"), f"{field_path}.name")
    kind = ensure_str(data.get("type", "log"), f"{field_path}.type").lower()
    if kind == "log":
        logger_name = ensure_optional_str(data.get("logger"), f"{field_path}.logger")
        return LogChannel(name, logger_name or "overseer.alerts")
    if kind == "webhook":
        url = ensure_str(data.get("url"), f"{field_path}.url")
        if not url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Error: {field_path}.url must start with http:// or https://.")
        headers_raw = ensure_mapping(data.get("headers"), f"{field_path}.headers")
        headers = {
            ensure_str(key, f"{field_path}.headers"): ensure_str(str(value), f"{field_path}.headers.{key}")
            for key, value in headers_raw.items()
        }
        timeout = ensure_float(data.get("timeout"), f"{field_path}.timeout", 10.0, 0.1)
        return WebhookChannel(name, url, headers=headers, timeout=timeout)
    raise ConfigurationError(f'Error: {field_path}.type must be one of [\'log\', \'webhook\'], got "{kind}".')


def parse_policy(
    raw: Any, field_path: str, channel_names: Set[str], target_names: Optional[Set[str]] = None
) -> NotificationPolicy:
    data = ensure_mapping(raw, field_path, allow_none=False)
    ensure_keys(data, POLICY_KEYS, field_path)
    policy_id = ensure_str(data.get("id"), f"{field_path}.id")

    channels = ensure_str_list(data.get("channels"), f"{field_path}.channels")
    if not channels:
        raise ConfigurationError(f"Error: {field_path}.channels must name at least one channel.")
    unknown = sorted(set(channels) - channel_names)
    if unknown:
        raise ConfigurationError(f"Error: {field_path}.channels references unknown channels: {unknown}.")

    target_ids = frozenset(ensure_str_list(data.get("target_ids"), f"{field_path}.target_ids"))
    if target_names is not None:
        unknown = sorted(target_ids - target_names - {IMPLICIT_LOCAL_ID})
        if unknown:
            raise ConfigurationError(f"Error: {field_path}.target_ids references unknown targets: {unknown}.")

    statuses: Set[RunStatus] = set()
    for idx, value in enumerate(ensure_str_list(data.get("statuses"), f"{field_path}.statuses")):
        try:
            status = RunStatus(value)
        except ValueError:
            status = None
        if status is None or not status.is_terminal:
            raise ConfigurationError(f'Error: {field_path}.statuses[{idx}] is not a final run status: "{value}".')
        statuses.add(status)

    min_severity_raw = data.get("min_severity", "info")
    try:
        min_severity = Severity.parse(ensure_str(min_severity_raw, f"{field_path}.min_severity"))
    except KeyError:
        raise ConfigurationError(
            f'Error: {field_path}.min_severity must be one of info, warning, error, got "{min_severity_raw}".'
        ) from None

    max_per_window = data.get("max_per_window")
    if max_per_window is not None:
        max_per_window = ensure_int(max_per_window, f"{field_path}.max_per_window", 1)

    return NotificationPolicy(
        id=policy_id,
        channels=channels,
        name=ensure_optional_str(data.get("name"), f"{field_path}.name") or "",
        enabled=ensure_bool(data.get("enabled"), f"{field_path}.enabled", True),
        job_types=frozenset(ensure_str_list(data.get("job_types"), f"{field_path}.job_types")),
        target_tags=frozenset(ensure_str_list(data.get("target_tags"), f"{field_path}.target_tags")),
        target_ids=target_ids,
        statuses=frozenset(statuses),
        min_severity=min_severity,
        max_per_window=max_per_window,
        window_seconds=ensure_int(data.get("window_seconds"), f"{field_path}.window_seconds", DEFAULT_WINDOW_SECONDS),
        title_template=ensure_optional_str(data.get("title_template"), f"{field_path}.title_template"),
        body_template=ensure_optional_str(data.get("body_template"), f"{field_path}.body_template"),
    )


def _unique(items: List[Any], key: str, label: str) -> None:
    seen: Set[str] = set()
    for item in items:
        value = getattr(item, key)
        if value in seen:
            raise ConfigurationError(f'Error: Duplicate {label} "{value}".')
        seen.add(value)


def load_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigurationError(f"Error: Config file not found: {config_path}")
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError("Error: Top-level config must be a mapping.")
    return payload


def parse_config(
    payload: Dict[str, Any],
    config_dir: Path,
    registry: Optional[JobTypeRegistry] = None,
    lenient: bool = False,
) -> ConfigSnapshot:
    """Build a snapshot from a parsed YAML mapping.

    With ``lenient`` set, an invalid schedule is dropped and its error kept on
    ``schedule_errors`` instead of failing the whole document. Every other
    section is always strict.
    """
    registry = registry or default_registry()
    unknown_top = set(payload.keys()) - TOP_LEVEL_KEYS
    if unknown_top:
        raise ConfigurationError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")
    version = payload.get("version", 1)
    if version != 1:
        raise ConfigurationError(f"Error: version must be 1, got {version!r}.")

    settings = parse_settings(payload.get("settings"), config_dir)

    targets = [parse_target(raw, f"targets[{idx}]") for idx, raw in enumerate(ensure_list(payload.get("targets"), "targets"))]
    directory = TargetDirectory(targets)

    templates: Dict[str, JobTemplate] = {}
    for idx, raw in enumerate(ensure_list(payload.get("templates"), "templates")):
        template = parse_template(raw, f"templates[{idx}]", directory, registry)
        if template.id in templates:
            raise ConfigurationError(f'Error: Duplicate template id "{template.id}".')
        templates[template.id] = template

    schedules: List[Schedule] = []
    schedule_errors: List[str] = []
    seen_schedules: Set[str] = set()
    for idx, raw in enumerate(ensure_list(payload.get("schedules"), "schedules")):
        try:
            schedule = parse_schedule(raw, f"schedules[{idx}]", templates)
            if schedule.id in seen_schedules:
                raise ConfigurationError(f'Error: Duplicate schedule id "{schedule.id}".')
        except ConfigurationError as exc:
            if not lenient:
                raise
            schedule_errors.append(str(exc))
            continue
        seen_schedules.add(schedule.id)
        schedules.append(schedule)

    channels = [parse_channel(raw, f"channels[{idx}]") for idx, raw in enumerate(ensure_list(payload.get("channels"), "channels"))]
    _unique(channels, "name", "channel name")
    channel_map = {channel.name: channel for channel in channels}

    policies = [
        parse_policy(raw, f"policies[{idx}]", set(channel_map), set(directory))
        for idx, raw in enumerate(ensure_list(payload.get("policies"), "policies"))
    ]
    _unique(policies, "id", "policy id")

    return ConfigSnapshot(
        settings=settings,
        targets=directory,
        templates=templates,
        schedules=tuple(schedules),
        policies=tuple(policies),
        channels=channel_map,
        schedule_errors=tuple(schedule_errors),
    )


class ConfigStore:
    """File-backed configuration with change detection for hot reload."""

    def __init__(self, path: Path, registry: Optional[JobTypeRegistry] = None):
        self.path = Path(path).resolve()
        self.registry = registry or default_registry()
        self._mtime: Optional[int] = None

    def _current_mtime(self) -> Optional[int]:
        try:
            return self.path.stat().st_mtime_ns
        except OSError:
            return None

    def _load(self, lenient: bool) -> ConfigSnapshot:
        mtime = self._current_mtime()
        snapshot = parse_config(load_payload(self.path), self.path.parent, self.registry, lenient=lenient)
        self._mtime = mtime
        for error in snapshot.schedule_errors:
            logger.error("Rejected schedule in %s: %s", self.path, error)
        return snapshot

    def load(self) -> ConfigSnapshot:
        return self._load(lenient=False)

    def load_lenient(self) -> ConfigSnapshot:
        return self._load(lenient=True)

    def changed(self) -> bool:
        return self._current_mtime() != self._mtime
