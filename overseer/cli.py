from __future__ import annotations

import argparse
import logging
import signal
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import ConfigStore
from .errors import OverseerError
from .log import setup_logging
from .models import RunStatus, Target, utc_now
from .service import Overseer

logger = logging.getLogger("overseer")

DEFAULT_CONFIG = "overseer.yaml"
DEFAULT_PREVIEW_MINUTES = 60
INTERRUPTED_EXIT_CODE = 130


def parse_params(raw: Optional[List[str]]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for item in raw or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise OverseerError(f'--param expects KEY=VALUE, got "{item}".')
        params[key.strip()] = value
    return params


def _selector_text(selector: Any) -> str:
    if selector.kind == "tags":
        return f"tags={','.join(sorted(selector.tags))}"
    if selector.kind == "explicit":
        return f"ids={','.join(sorted(selector.target_ids))}"
    return selector.kind


def _target_text(target: Target) -> str:
    tags = ",".join(sorted(target.tags)) or "-"
    state = "" if target.enabled else " (disabled)"
    return f"- {target.display()} tags={tags}{state}"


def command_validate(config_path: Path) -> int:
    snapshot = ConfigStore(config_path).load()
    print(f"Config valid: {config_path}")
    print(f"Targets: {len(snapshot.targets)}")
    for target in snapshot.targets.values():
        print(_target_text(target))
    print(f"Templates: {len(snapshot.templates)}")
    for template in snapshot.templates.values():
        print(
            f"- {template.id}: {template.job_type} on {_selector_text(template.selector)}"
            f" | timeout={template.timeout_seconds}s"
        )
    print(f"Schedules: {len(snapshot.schedules)}")
    for schedule in snapshot.schedules:
        print(f"- {schedule.id}: {schedule.cron} -> {schedule.template_id} (enabled={schedule.enabled})")
    print(f"Policies: {len(snapshot.policies)} | Channels: {len(snapshot.channels)}")
    return 0


def command_preview(config_path: Path, within_minutes: int) -> int:
    overseer = Overseer(ConfigStore(config_path).load())
    now = utc_now()
    upcoming = overseer.list_due_in_next(timedelta(minutes=within_minutes), now)
    print(f"Runs due in the next {within_minutes} minute(s) from {now.replace(microsecond=0).isoformat()}:")
    if not upcoming:
        print("- none")
    for fire in upcoming:
        print(f"- {fire.at.isoformat()} {fire.schedule_id} -> {fire.template_id} ({fire.cron})")
    return 0


def command_run(config_path: Path, template_id: str, params: Dict[str, str]) -> int:
    snapshot = ConfigStore(config_path).load()
    if snapshot.settings.log_file:
        setup_logging(snapshot.settings.log_file, logger.level)
    overseer = Overseer(snapshot)
    run_id = overseer.trigger_run_now(template_id, params)
    try:
        run = overseer.wait_for_run(run_id)
    except KeyboardInterrupt:
        logger.info("[%s] Interrupted; cancelling run.", run_id)
        overseer.cancel_run(run_id)
        overseer.wait_for_run(run_id, timeout=overseer.settings.cancel_grace_seconds + 5)
        return INTERRUPTED_EXIT_CODE
    finally:
        overseer.shutdown()

    if run is None:
        raise OverseerError(f"Run {run_id} did not report a result.")
    print(f"Run {run.id}: {run.status.value}")
    for result in run.results:
        print(f"- {result.target_id}: {result.status.value} (exit={result.exit_code}, {result.duration_seconds:.2f}s)")
        if result.output:
            for line in result.output.rstrip().splitlines():
                print(f"    {line}")
    return 0 if run.status is RunStatus.SUCCEEDED else 1


def command_daemon(config_path: Path, tick_seconds: Optional[int]) -> int:
    overseer = Overseer.from_config(config_path)
    if overseer.settings.log_file:
        setup_logging(overseer.settings.log_file, logger.level)
    if tick_seconds is not None:
        overseer.scheduler.tick_seconds = tick_seconds

    stop_event = threading.Event()
    reload_requested = threading.Event()

    def refresh() -> None:
        if reload_requested.is_set():
            reload_requested.clear()
            logger.info("SIGHUP received; reloading %s", config_path)
            overseer.reload()
            return
        overseer.refresh_if_changed()

    def on_sighup(signum: int, frame: Any) -> None:
        reload_requested.set()

    def on_sigterm(signum: int, frame: Any) -> None:
        logger.info("Termination requested.")
        stop_event.set()

    overseer.scheduler.refresh = refresh
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, on_sighup)
    signal.signal(signal.SIGTERM, on_sigterm)

    try:
        overseer.serve_forever(stop_event)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        overseer.shutdown(cancel=True)
        return INTERRUPTED_EXIT_CODE
    overseer.shutdown(cancel=True)
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="overseer",
        description="Cron-scheduled command runner for local and SSH targets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to overseer YAML config (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate config and list what it defines")
    validate_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")

    preview_parser = subparsers.add_parser("preview", help="List scheduled runs due soon")
    preview_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    preview_parser.add_argument(
        "--within",
        type=int,
        default=DEFAULT_PREVIEW_MINUTES,
        metavar="MINUTES",
        help=f"Preview window in minutes (default: {DEFAULT_PREVIEW_MINUTES})",
    )

    run_parser = subparsers.add_parser("run", help="Run one template now and wait for it")
    run_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    run_parser.add_argument("template", help="Template id")
    run_parser.add_argument(
        "--param",
        action="append",
        metavar="KEY=VALUE",
        help="Override a template parameter (repeatable)",
    )

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler loop")
    daemon_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    daemon_parser.add_argument(
        "--tick-seconds",
        type=int,
        help="Override settings.tick_seconds",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.within <= 0:
                raise OverseerError("--within must be >= 1")
            return command_preview(config_path, args.within)
        if args.command == "run":
            return command_run(config_path, args.template, parse_params(args.param))
        if args.command == "daemon":
            if args.tick_seconds is not None and args.tick_seconds <= 0:
                raise OverseerError("--tick-seconds must be >= 1")
            return command_daemon(config_path, args.tick_seconds)
        raise OverseerError(f"Unsupported command: {args.command}")
    except OverseerError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
