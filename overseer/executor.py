from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import Any, Mapping, Optional, Tuple

from .errors import ConfigurationError, TargetError
from .jobtypes import JobTypeRegistry, default_registry
from .models import Target, TargetResult, TargetStatus
from .transport import BoundedBuffer, TransportSet, drain, terminate_process

logger = logging.getLogger("overseer.executor")

DEFAULT_OUTPUT_LIMIT = 64 * 1024
DEFAULT_GRACE_SECONDS = 5.0
POLL_SECONDS = 0.1

TIMEOUT_EXIT_CODE = -1
SPAWN_ERROR_EXIT_CODE = -2
CANCELLED_EXIT_CODE = -3


def status_for_error(exc: BaseException) -> TargetStatus:
    if isinstance(exc, TargetError):
        return TargetStatus(exc.status)
    return TargetStatus.FAILED


class CommandExecutor:
    """Runs one job invocation against one target.

    ``execute`` never raises for per-target problems: unreachable targets,
    non-zero exits, timeouts and cancellation all come back as a
    ``TargetResult`` with a distinct status. It never retries.
    """

    def __init__(
        self,
        registry: Optional[JobTypeRegistry] = None,
        transports: Optional[TransportSet] = None,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ):
        self.registry = registry or default_registry()
        self.transports = transports or TransportSet()
        self.output_limit = output_limit
        self.grace_seconds = grace_seconds

    def execute(
        self,
        job_type: str,
        parameters: Mapping[str, Any],
        target: Target,
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> TargetResult:
        cancel_event = cancel_event or threading.Event()
        started = time.monotonic()

        if cancel_event.is_set():
            return self._result(target, TargetStatus.CANCELLED, CANCELLED_EXIT_CODE, started, error="Cancelled before start.")

        try:
            command = self.registry.get(job_type).build_command(parameters, target)
            transport = self.transports.for_target(target)
            proc = transport.spawn(command, target)
        except TargetError as exc:
            return self._result(target, status_for_error(exc), SPAWN_ERROR_EXIT_CODE, started, error=str(exc))
        except ConfigurationError as exc:
            return self._result(target, TargetStatus.FAILED, SPAWN_ERROR_EXIT_CODE, started, error=str(exc))
        except Exception as exc:  # pragma: no cover
            logger.exception("Unexpected error preparing %s on %s", job_type, target.id)
            return self._result(target, TargetStatus.FAILED, SPAWN_ERROR_EXIT_CODE, started, error=str(exc))

        logger.debug("Started %s on %s (pid=%s): %s", job_type, target.id, proc.pid, command.display())
        stdout = BoundedBuffer(self.output_limit)
        stderr = BoundedBuffer(self.output_limit)
        readers = [drain(proc.stdout, stdout), drain(proc.stderr, stderr)]

        status, exit_code, error = self._wait(proc, started + timeout, cancel_event, timeout)
        for reader in readers:
            reader.join(timeout=self.grace_seconds)

        if status is None:
            status = transport.classify_exit(exit_code)
            if status is TargetStatus.CONNECTION_ERROR:
                error = f"Unable to reach {target.display()} (exit={exit_code})."
            elif status is TargetStatus.FAILED:
                error = f"Command exited with code {exit_code}."

        return self._result(
            target,
            status,
            exit_code,
            started,
            output=_combine(stdout, stderr),
            error=error,
        )

    def _wait(
        self,
        proc: "subprocess.Popen[bytes]",
        deadline: float,
        cancel_event: threading.Event,
        timeout: float,
    ) -> Tuple[Optional[TargetStatus], int, Optional[str]]:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                terminate_process(proc, self.grace_seconds)
                return TargetStatus.TIMED_OUT, TIMEOUT_EXIT_CODE, f"Timed out after {timeout:g} seconds."
            if cancel_event.is_set():
                terminate_process(proc, self.grace_seconds)
                return TargetStatus.CANCELLED, CANCELLED_EXIT_CODE, "Cancelled while running."
            try:
                returncode = proc.wait(timeout=min(POLL_SECONDS, remaining))
            except subprocess.TimeoutExpired:
                continue
            return None, returncode, None

    def _result(
        self,
        target: Target,
        status: TargetStatus,
        exit_code: int,
        started: float,
        output: str = "",
        error: Optional[str] = None,
    ) -> TargetResult:
        return TargetResult(
            target_id=target.id,
            status=status,
            exit_code=exit_code,
            output=output,
            duration_seconds=time.monotonic() - started,
            error=error,
            tags=target.tags,
        )


def _combine(stdout: BoundedBuffer, stderr: BoundedBuffer) -> str:
    out = stdout.text()
    err = stderr.text()
    if not err:
        return out
    if not out:
        return f"[stderr]\n{err}"
    return f"{out.rstrip()}\n[stderr]\n{err}"
