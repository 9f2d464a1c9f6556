"""Runtime provider variants and their shared vocabulary.

A provider is plain data: a :class:`RuntimeKind` tag, the capability flags
the supervisor consults, and the backend options from ``lucee.json``. The
per-kind behaviour lives in handler functions registered in
:mod:`luceectl.providers` and is dispatched by tag.
"""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..certs import KeystorePaths
from ..instance_config import EffectiveConfig, RuntimeConfig
from ..settings import AppSettings
from ..state.registry import PortAssignment
from ..templates import TemplateEngine


class RuntimeValidationError(RuntimeError):
    """Raised when a runtime backend is missing, misconfigured or incompatible."""


class RuntimeCommandError(RuntimeError):
    """Raised when a runtime tool exits unsuccessfully."""


class RuntimeKind(str, Enum):
    """Supported runtime backends."""

    EXPRESS = "lucee-express"
    TOMCAT = "tomcat"
    DOCKER = "docker"
    JETTY = "jetty"


@dataclass(frozen=True)
class RuntimeCapabilities:
    """Behaviour flags the supervisor and previewer rely on."""

    supports_url_rewrite: bool
    supports_live_pid_tracking: bool
    supports_shutdown_port: bool
    container_based: bool


CAPABILITIES: dict[RuntimeKind, RuntimeCapabilities] = {
    RuntimeKind.EXPRESS: RuntimeCapabilities(True, True, True, False),
    RuntimeKind.TOMCAT: RuntimeCapabilities(True, True, True, False),
    RuntimeKind.DOCKER: RuntimeCapabilities(False, False, False, True),
    RuntimeKind.JETTY: RuntimeCapabilities(False, True, True, False),
}


@dataclass(frozen=True)
class RuntimeProvider:
    """A runtime backend selected by ``runtime.type``."""

    kind: RuntimeKind
    capabilities: RuntimeCapabilities
    options: Mapping[str, object] = field(default_factory=dict)

    @classmethod
    def for_kind(
        cls,
        kind: str | RuntimeKind,
        options: Mapping[str, object] | None = None,
    ) -> RuntimeProvider:
        """Return the provider for *kind* or raise :class:`RuntimeValidationError`."""
        try:
            resolved = RuntimeKind(kind)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in RuntimeKind)
            raise RuntimeValidationError(
                f"Unknown runtime type '{kind}'. Allowed: {allowed}."
            ) from exc
        return cls(kind=resolved, capabilities=CAPABILITIES[resolved], options=dict(options or {}))

    @classmethod
    def from_config(cls, runtime: RuntimeConfig) -> RuntimeProvider:
        """Return the provider declared by a ``runtime`` block."""
        return cls.for_kind(runtime.type, runtime.options)

    def option(self, key: str) -> str | None:
        """Return a non-empty string option or ``None``."""
        value = self.options.get(key)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def url_rewrite(self, config: EffectiveConfig) -> tuple[bool, str | None]:
        """Return whether rewrite rules are applied for *config*, plus a warning.

        The warning is set when ``urlRewrite`` is requested but this backend
        cannot honour it.
        """
        requested = config.url_rewrite.enabled and config.enable_lucee
        if not requested:
            return False, None
        if self.capabilities.supports_url_rewrite:
            return True, None
        return False, (
            f"URL rewriting is not supported on the {self.kind.value} runtime; "
            "urlRewrite is ignored."
        )


@dataclass(frozen=True)
class MaterializeContext:
    """Everything a handler needs to prepare an instance for launch."""

    name: str
    config: EffectiveConfig
    ports: PortAssignment
    instance_dir: Path
    settings: AppSettings
    templates: TemplateEngine
    keystore: KeystorePaths | None = None
    environ: Mapping[str, str] = field(default_factory=dict)
    url_rewrite: bool = False


@dataclass(frozen=True)
class RunnableInstance:
    """A prepared launch: what to execute, where, and with which environment."""

    command: tuple[str, ...]
    env: dict[str, str]
    cwd: Path
    log_file: Path
    container_name: str | None = None
    warnings: tuple[str, ...] = ()
    changed: tuple[Path, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "command": list(self.command),
            "cwd": str(self.cwd),
            "log_file": str(self.log_file),
            "container_name": self.container_name,
            "warnings": list(self.warnings),
            "changed": [str(path) for path in self.changed],
        }


def run_tool(
    args: Sequence[str],
    *,
    error_prefix: str,
    guidance: str = "",
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run an external runtime tool and return the completed process."""
    try:
        result = subprocess.run(  # noqa: S603, S607
            list(args),
            capture_output=True,
            text=True,
            check=False,
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        message = f"{args[0]} not found: {exc}."
        raise RuntimeValidationError(f"{message} {guidance}".strip()) from exc
    except subprocess.TimeoutExpired as exc:
        raise RuntimeCommandError(f"{error_prefix} timed out after {timeout}s.") from exc
    if check and result.returncode != 0:
        stdout = result.stdout or ""
        stderr = result.stderr or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise RuntimeCommandError(f"{error_prefix} failed (exit {result.returncode}): {message}")
    return result


def lucee_major(version: str) -> int | None:
    """Return the major component of a Lucee version string, if numeric."""
    head = version.strip().split(".", 1)[0]
    return int(head) if head.isdigit() else None


__all__ = [
    "CAPABILITIES",
    "MaterializeContext",
    "RunnableInstance",
    "RuntimeCapabilities",
    "RuntimeCommandError",
    "RuntimeKind",
    "RuntimeProvider",
    "RuntimeValidationError",
    "lucee_major",
    "run_tool",
]
