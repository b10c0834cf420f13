"""
Process transports for local and SSH-remote targets.

Remote execution shells out to the system ``ssh`` client rather than an SSH
library. Connections to the same host are multiplexed through an OpenSSH
control master so a run touching a host several times opens it once.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Dict, List, Mapping, Optional, Tuple

from .errors import ConnectionError, ExecutionError
from .models import Local, Remote, Target, TargetStatus

logger = logging.getLogger("overseer.transport")

SSH_CONNECTION_FAILURE = 255
DEFAULT_CONNECT_TIMEOUT = 10
DEFAULT_CONTROL_PERSIST = "60s"
TRUNCATION_MARKER = "\n[... truncated {dropped} bytes ...]"


@dataclass(frozen=True)
class Command:
    argv: Tuple[str, ...]
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    def display(self) -> str:
        return shlex.join(self.argv)

    def remote_string(self) -> str:
        remote = shlex.join(self.argv)
        if self.env:
            assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in sorted(self.env.items()))
            remote = f"env {assignments} {remote}"
        if self.cwd:
            remote = f"cd {shlex.quote(self.cwd)} && {remote}"
        return remote


class BoundedBuffer:
    """Keeps the first ``limit`` bytes written and counts the rest."""

    def __init__(self, limit: int):
        self.limit = max(0, limit)
        self._data = bytearray()
        self.dropped = 0
        self._lock = threading.Lock()

    def write(self, chunk: bytes) -> None:
        with self._lock:
            room = self.limit - len(self._data)
            if room > 0:
                self._data.extend(chunk[:room])
            if len(chunk) > room:
                self.dropped += len(chunk) - max(room, 0)

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def text(self) -> str:
        with self._lock:
            body = bytes(self._data).decode("utf-8", errors="replace")
            if self.dropped:
                body += TRUNCATION_MARKER.format(dropped=self.dropped)
            return body


def drain(stream: Optional[IO[bytes]], buffer: BoundedBuffer, chunk_size: int = 8192) -> threading.Thread:
    def reader() -> None:
        if stream is None:
            return
        try:
            for chunk in iter(lambda: stream.read(chunk_size), b""):
                buffer.write(chunk)
        except (OSError, ValueError):
            # Pipe closed underneath us after a kill.
            pass
        finally:
            try:
                stream.close()
            except OSError:
                pass

    thread = threading.Thread(target=reader, daemon=True, name="overseer-output-reader")
    thread.start()
    return thread


def terminate_process(proc: "subprocess.Popen[bytes]", grace_seconds: float) -> None:
    """SIGTERM the process group, then SIGKILL after ``grace_seconds``."""
    if proc.poll() is not None:
        return
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace_seconds)
        return
    except subprocess.TimeoutExpired:
        pass
    _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
    try:
        proc.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.error("Process %s did not exit after SIGKILL.", proc.pid)


def _signal_group(proc: "subprocess.Popen[bytes]", sig: int) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:  # pragma: no cover - non-POSIX
            proc.send_signal(sig)
    except ProcessLookupError:
        pass
    except PermissionError as exc:
        logger.warning("Unable to signal process %s: %s", proc.pid, str(exc))


class Transport:
    name = "base"

    def spawn(self, command: Command, target: Target) -> "subprocess.Popen[bytes]":
        raise NotImplementedError

    def classify_exit(self, returncode: int) -> TargetStatus:
        return TargetStatus.SUCCEEDED if returncode == 0 else TargetStatus.FAILED

    def close(self) -> None:
        return None


def _popen(argv: List[str], env: Optional[Mapping[str, str]], cwd: Optional[str]) -> "subprocess.Popen[bytes]":
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update({key: value for key, value in env.items() if value is not None})
    return subprocess.Popen(
        argv,
        cwd=cwd,
        env=full_env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )


class LocalTransport(Transport):
    name = "local"

    def spawn(self, command: Command, target: Target) -> "subprocess.Popen[bytes]":
        if not command.argv:
            raise ExecutionError("Error: empty command.")
        try:
            return _popen(list(command.argv), command.env, command.cwd)
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise ConnectionError(f"Unable to start {command.argv[0]} on {target.id}: {exc}") from exc


@dataclass(frozen=True)
class SshSettings:
    binary: str = "ssh"
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT
    control_persist: Optional[str] = DEFAULT_CONTROL_PERSIST
    control_dir: Optional[Path] = None
    strict_host_key_checking: str = "accept-new"
    extra_options: Tuple[str, ...] = ()


class SshTransport(Transport):
    name = "ssh"

    def __init__(self, settings: Optional[SshSettings] = None):
        self.settings = settings or SshSettings()
        self._control_dir_ready = False
        self._lock = threading.Lock()

    def _control_dir(self) -> Path:
        control_dir = self.settings.control_dir or Path(tempfile.gettempdir()) / "overseer-ssh"
        with self._lock:
            if not self._control_dir_ready:
                control_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
                self._control_dir_ready = True
        return control_dir

    def build_argv(self, command: Command, remote: Remote) -> List[str]:
        settings = self.settings
        argv = [
            settings.binary,
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={settings.connect_timeout}",
            "-o",
            f"StrictHostKeyChecking={settings.strict_host_key_checking}",
        ]
        if settings.control_persist:
            argv += [
                "-o",
                "ControlMaster=auto",
                "-o",
                f"ControlPath={self._control_dir() / '%C'}",
                "-o",
                f"ControlPersist={settings.control_persist}",
            ]
        if remote.port != 22:
            argv += ["-p", str(remote.port)]
        if remote.identity_file:
            argv += ["-i", remote.identity_file]
        for option in (*settings.extra_options, *remote.options):
            argv += ["-o", option]
        argv += [remote.destination, "--", command.remote_string()]
        return argv

    def spawn(self, command: Command, target: Target) -> "subprocess.Popen[bytes]":
        if not isinstance(target.mode, Remote):
            raise ConnectionError(f"Target {target.id} has no remote connection descriptor.")
        if not command.argv:
            raise ExecutionError("Error: empty command.")
        argv = self.build_argv(command, target.mode)
        logger.debug("ssh argv for %s: %s", target.id, shlex.join(argv))
        try:
            return _popen(argv, None, None)
        except (FileNotFoundError, PermissionError) as exc:
            raise ConnectionError(f"Unable to start ssh client for {target.id}: {exc}") from exc

    def classify_exit(self, returncode: int) -> TargetStatus:
        if returncode == SSH_CONNECTION_FAILURE:
            return TargetStatus.CONNECTION_ERROR
        return super().classify_exit(returncode)

    def close(self) -> None:
        # Control masters exit on their own after ControlPersist.
        return None


@dataclass
class TransportSet:
    local: Transport = field(default_factory=LocalTransport)
    remote: Transport = field(default_factory=SshTransport)

    def for_target(self, target: Target) -> Transport:
        if isinstance(target.mode, Local):
            return self.local
        return self.remote

    def close(self) -> None:
        self.local.close()
        self.remote.close()
