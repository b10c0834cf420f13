from __future__ import annotations

import copy
import os
from pathlib import Path

import pytest
import yaml

from overseer.channels import LogChannel, WebhookChannel
from overseer.config import ConfigStore
from overseer.errors import ConfigurationError, InvalidExpression, UnknownJobType
from overseer.models import (
    AllTargets,
    ByTag,
    Explicit,
    Local,
    LocalOnly,
    Remote,
    RunStatus,
    Severity,
    TargetStatus,
)

BASE_CONFIG = {
    "version": 1,
    "settings": {
        "tick_seconds": 15,
        "max_concurrency": 4,
        "run_log": "logs/runs.jsonl",
        "ssh": {"connect_timeout": 5, "control_persist": False},
    },
    "targets": [
        {"id": "box", "local": True, "tags": ["local"]},
        {"id": "web-1", "host": "web1.example.com", "user": "deploy", "port": 2222, "tags": ["web", "prod"]},
        {"id": "db-1", "host": "db1.example.com", "tags": "db"},
    ],
    "templates": [
        {
            "id": "disk",
            "job_type": "shell",
            "targets": {"tags": ["web", "db"]},
            "parameters": {"script": "df -h /"},
            "timeout": 60,
            "retry": {"attempts": 2, "delay_seconds": 1.5, "on": ["connection_error", "timed_out"]},
        },
        {"id": "uptime", "job_type": "command", "targets": "all", "parameters": {"command": "uptime"}},
        {"id": "local-only", "job_type": "command", "targets": "local", "parameters": {"command": "true"}},
        {"id": "pinned", "job_type": "command", "targets": {"ids": ["web-1"]}, "parameters": {"command": "true"}},
    ],
    "schedules": [
        {"id": "disk-weekdays", "template": "disk", "cron": "0 9 * * mon-fri"},
        {"id": "uptime-5m", "template": "uptime", "cron": "*/5 * * * *", "enabled": False},
    ],
    "channels": [
        {"name": "ops-log", "type": "log"},
        {"name": "hook", "type": "webhook", "url": "https://hooks.example.com/x", "headers": {"X-Token": "t"}},
    ],
    "policies": [
        {
            "id": "failures",
            "channels": ["ops-log", "hook"],
            "statuses": ["failed", "timed_out"],
            "min_severity": "warning",
            "max_per_window": 1,
            "target_tags": ["prod"],
            "title_template": "{{ job_name }} {{ status }}",
        }
    ],
}


def _write_config(tmp_path: Path, config: dict) -> Path:
    path = tmp_path / "overseer.yaml"
    path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return path


def _config(**sections: object) -> dict:
    config = copy.deepcopy(BASE_CONFIG)
    config.update(sections)
    return config


def test_full_config_parses(tmp_path: Path) -> None:
    snapshot = ConfigStore(_write_config(tmp_path, _config())).load()

    settings = snapshot.settings
    assert settings.tick_seconds == 15
    assert settings.max_concurrency == 4
    assert settings.output_limit_bytes == 65536
    assert settings.run_log == (tmp_path / "logs" / "runs.jsonl").resolve()
    assert settings.ssh.connect_timeout == 5
    assert settings.ssh.control_persist is None

    targets = snapshot.targets
    assert isinstance(targets["box"].mode, Local)
    assert targets["web-1"].mode == Remote("web1.example.com", user="deploy", port=2222)
    assert targets["db-1"].tags == frozenset({"db"})

    templates = snapshot.templates
    assert templates["disk"].selector == ByTag(frozenset({"web", "db"}))
    assert templates["disk"].timeout_seconds == 60
    assert templates["disk"].retry.attempts == 2
    assert templates["disk"].retry.retry_on == frozenset({TargetStatus.CONNECTION_ERROR, TargetStatus.TIMED_OUT})
    assert templates["uptime"].selector == AllTargets()
    assert templates["uptime"].timeout_seconds == 3600
    assert templates["local-only"].selector == LocalOnly()
    assert templates["pinned"].selector == Explicit(frozenset({"web-1"}))

    assert [(s.id, s.cron, s.enabled) for s in snapshot.schedules] == [
        ("disk-weekdays", "0 9 * * 1-5", True),
        ("uptime-5m", "*/5 * * * *", False),
    ]

    assert isinstance(snapshot.channels["ops-log"], LogChannel)
    assert isinstance(snapshot.channels["hook"], WebhookChannel)
    policy = snapshot.policies[0]
    assert policy.channels == ("ops-log", "hook")
    assert policy.statuses == frozenset({RunStatus.FAILED, RunStatus.TIMED_OUT})
    assert policy.min_severity is Severity.WARNING
    assert policy.max_per_window == 1
    assert policy.window_seconds == 3600


def test_empty_document_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "overseer.yaml"
    path.write_text("", encoding="utf-8")
    snapshot = ConfigStore(path).load()
    assert snapshot.settings.tick_seconds == 30
    assert len(snapshot.targets) == 0
    assert snapshot.templates == {}


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="Config file not found"):
        ConfigStore(tmp_path / "nope.yaml").load()


def test_unknown_top_level_key(tmp_path: Path) -> None:
    path = _write_config(tmp_path, _config(jobs=[]))
    with pytest.raises(ConfigurationError, match=r"Unknown top-level keys: \['jobs'\]"):
        ConfigStore(path).load()


def test_unknown_template_key(tmp_path: Path) -> None:
    config = _config()
    config["templates"][0]["schedule"] = "daily"
    with pytest.raises(ConfigurationError, match=r"Unknown keys in templates\[0\]"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_unknown_job_type(tmp_path: Path) -> None:
    config = _config()
    config["templates"][1]["job_type"] = "docker"
    with pytest.raises(UnknownJobType, match=r"templates\[1\]\.job_type"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_missing_job_parameters(tmp_path: Path) -> None:
    config = _config()
    config["templates"][0]["parameters"] = {}
    with pytest.raises(ConfigurationError, match=r"templates\[0\]\.parameters\.script must be a non-empty string"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_empty_tag_selector(tmp_path: Path) -> None:
    config = _config()
    config["templates"][0]["targets"] = {"tags": []}
    with pytest.raises(ConfigurationError, match="at least one tag"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_explicit_selector_unknown_target(tmp_path: Path) -> None:
    config = _config()
    config["templates"][3]["targets"] = {"ids": ["web-9"]}
    with pytest.raises(ConfigurationError, match="unknown targets"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_duplicate_ids(tmp_path: Path) -> None:
    config = _config()
    config["targets"].append({"id": "box", "local": True})
    with pytest.raises(ConfigurationError, match='Duplicate target id "box"'):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_local_target_with_host_rejected(tmp_path: Path) -> None:
    config = _config()
    config["targets"][0]["host"] = "example.com"
    with pytest.raises(ConfigurationError, match=r"targets\[0\] is local"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_invalid_cron_strict(tmp_path: Path) -> None:
    config = _config()
    config["schedules"][0]["cron"] = "0 25 * * *"
    with pytest.raises(InvalidExpression, match=r"schedules\[0\]\.cron"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_invalid_schedules_isolated_in_lenient_mode(tmp_path: Path) -> None:
    config = _config()
    config["schedules"].append({"id": "broken", "template": "disk", "cron": "nope"})
    config["schedules"].append({"id": "orphan", "template": "ghost", "cron": "* * * * *"})
    snapshot = ConfigStore(_write_config(tmp_path, config)).load_lenient()
    assert [schedule.id for schedule in snapshot.schedules] == ["disk-weekdays", "uptime-5m"]
    assert len(snapshot.schedule_errors) == 2
    assert "schedules[2].cron" in snapshot.schedule_errors[0]
    assert "unknown template" in snapshot.schedule_errors[1]


def test_policy_unknown_channel(tmp_path: Path) -> None:
    config = _config()
    config["policies"][0]["channels"] = ["pager"]
    with pytest.raises(ConfigurationError, match=r"unknown channels: \['pager'\]"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_policy_target_ids(tmp_path: Path) -> None:
    config = _config()
    config["policies"][0]["target_ids"] = ["web-1", "localhost"]
    policy = ConfigStore(_write_config(tmp_path, config)).load().policies[0]
    assert policy.target_ids == frozenset({"web-1", "localhost"})

    config["policies"][0]["target_ids"] = ["web-9"]
    with pytest.raises(ConfigurationError, match=r"policies\[0\].target_ids references unknown targets: \['web-9'\]"):
        ConfigStore(_write_config(tmp_path, config)).load()


@pytest.mark.parametrize(
    "field, value, message",
    [
        ("statuses", ["running"], "not a final run status"),
        ("min_severity", "critical", "must be one of info, warning, error"),
        ("max_per_window", 0, "must be >= 1"),
        ("enabled", "yes", "must be true or false"),
    ],
)
def test_policy_field_validation(tmp_path: Path, field: str, value: object, message: str) -> None:
    config = _config()
    config["policies"][0][field] = value
    with pytest.raises(ConfigurationError, match=message):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_webhook_url_validated(tmp_path: Path) -> None:
    config = _config()
    config["channels"][1]["url"] = "ftp://example.com"
    with pytest.raises(ConfigurationError, match="must start with http"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_settings_validation(tmp_path: Path) -> None:
    config = _config()
    config["settings"]["tick_seconds"] = 0
    with pytest.raises(ConfigurationError, match=r"settings\.tick_seconds must be >= 1"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_retry_cannot_target_cancelled(tmp_path: Path) -> None:
    config = _config()
    config["templates"][0]["retry"]["on"] = ["cancelled"]
    with pytest.raises(ConfigurationError, match="cannot retry cancelled"):
        ConfigStore(_write_config(tmp_path, config)).load()


def test_changed_tracks_file_modification(tmp_path: Path) -> None:
    path = _write_config(tmp_path, _config())
    store = ConfigStore(path)
    assert store.changed()
    store.load()
    assert not store.changed()

    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 2_000_000_000))
    assert store.changed()
    store.load_lenient()
    assert not store.changed()
