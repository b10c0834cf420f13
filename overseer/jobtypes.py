"""
Job-type registry.

A job type turns a template's opaque parameter map into a ``Command`` for one
target. The coordinator and executor only ever see the ``JobType`` interface,
looked up by its string identifier.
"""

from __future__ import annotations

import re
import shlex
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ConfigurationError, UnknownJobType
from .models import Target
from .transport import Command

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}")


def substitute(text: str, variables: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left verbatim."""

    def repl(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return str(variables[key])

    return PLACEHOLDER_RE.sub(repl, text)


def _variables(parameters: Mapping[str, Any], target: Target) -> Dict[str, Any]:
    variables: Dict[str, Any] = {
        key: value for key, value in parameters.items() if isinstance(value, (str, int, float, bool))
    }
    variables.setdefault("target_id", target.id)
    return variables


def parse_args(raw: Any, field_path: str) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        # Support shell-style arg strings for convenience in YAML.
        return shlex.split(raw)
    if isinstance(raw, (list, tuple)):
        args: List[str] = []
        for idx, arg in enumerate(raw):
            if not isinstance(arg, (str, int, float, bool)):
                raise ConfigurationError(
                    f"Error: {field_path}[{idx}] must be scalar value convertible to string."
                )
            args.append(str(arg))
        return args
    raise ConfigurationError(f"Error: {field_path} must be a list or shell-style string.")


def parse_env(raw: Any, field_path: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Error: {field_path} must be a mapping.")
    env: Dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not isinstance(value, (str, int, float, bool)):
            raise ConfigurationError(f"Error: {field_path} must map strings to scalars.")
        env[key] = str(value)
    return env


class JobType:
    name = "base"
    required: Tuple[str, ...] = ()

    def validate(self, parameters: Mapping[str, Any], field_path: str = "parameters") -> None:
        for key in self.required:
            value = parameters.get(key)
            if not isinstance(value, str) or not value.strip():
                raise ConfigurationError(f"Error: {field_path}.{key} must be a non-empty string.")
        parse_env(parameters.get("env"), f"{field_path}.env")
        cwd = parameters.get("cwd")
        if cwd is not None and (not isinstance(cwd, str) or not cwd.strip()):
            raise ConfigurationError(f"Error: {field_path}.cwd must be a non-empty string.")

    def build_command(self, parameters: Mapping[str, Any], target: Target) -> Command:
        raise NotImplementedError

    def _command(self, argv: Iterable[str], parameters: Mapping[str, Any], target: Target) -> Command:
        variables = _variables(parameters, target)
        env = {key: substitute(value, variables) for key, value in parse_env(parameters.get("env"), "env").items()}
        cwd = parameters.get("cwd")
        return Command(
            argv=tuple(substitute(arg, variables) for arg in argv),
            env=env,
            cwd=substitute(cwd, variables) if cwd else None,
        )


class CommandJobType(JobType):
    """Runs ``command`` with ``args``; ``{{param}}`` placeholders are filled from parameters."""

    name = "command"
    required = ("command",)

    def validate(self, parameters: Mapping[str, Any], field_path: str = "parameters") -> None:
        super().validate(parameters, field_path)
        parse_args(parameters.get("args"), f"{field_path}.args")

    def build_command(self, parameters: Mapping[str, Any], target: Target) -> Command:
        argv = shlex.split(str(parameters["command"])) + parse_args(parameters.get("args"), "args")
        return self._command(argv, parameters, target)


class ShellJobType(JobType):
    name = "shell"
    required = ("script",)

    def build_command(self, parameters: Mapping[str, Any], target: Target) -> Command:
        shell = str(parameters.get("shell") or "sh")
        return self._command([shell, "-c", str(parameters["script"])], parameters, target)


class JobTypeRegistry:
    def __init__(self, job_types: Iterable[JobType] = ()):
        self._job_types: Dict[str, JobType] = {}
        for job_type in job_types:
            self.register(job_type)

    def register(self, job_type: JobType, name: Optional[str] = None) -> JobType:
        key = name or job_type.name
        if not key or not isinstance(key, str):
            raise ConfigurationError("Error: job type name must be a non-empty string.")
        self._job_types[key] = job_type
        return job_type

    def get(self, name: str) -> JobType:
        try:
            return self._job_types[name]
        except KeyError:
            raise UnknownJobType(
                f'Error: Unknown job type "{name}"; known: {sorted(self._job_types)}.'
            ) from None

    def __contains__(self, name: object) -> bool:
        return name in self._job_types

    def names(self) -> List[str]:
        return sorted(self._job_types)


def default_registry() -> JobTypeRegistry:
    return JobTypeRegistry([CommandJobType(), ShellJobType()])
