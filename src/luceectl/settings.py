"""Application settings loader for luceectl.

Settings are layered in the following order (later wins):

1. Built-in defaults.
2. ``<home>/settings.yml`` (or an override path).
3. Environment variables prefixed with ``LUCEECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export LUCEECTL_PORTS__BIND_HOST=127.0.0.1
    export LUCEECTL_SUPERVISOR__START_TIMEOUT=60

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The home directory itself is selected by ``LUCEECTL_HOME``
(default ``~/.luceectl``); every other path defaults to a child of it.

These settings describe the tool, not a project. Per-project server
configuration lives in ``lucee.json`` and is handled by
:mod:`luceectl.instance_config`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load luceectl settings. Install with "
        "`pip install luceectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "LUCEECTL_"
HOME_ENV_VAR = f"{ENV_PREFIX}HOME"
SETTINGS_ENV_VAR = f"{ENV_PREFIX}SETTINGS_FILE"
ACTIVE_ENV_VAR = f"{ENV_PREFIX}ENV"
RESERVED_ENV_KEYS = {HOME_ENV_VAR, SETTINGS_ENV_VAR, ACTIVE_ENV_VAR}

ALLOWED_CERT_GENERATORS = {"auto", "keytool", "cryptography"}


class SettingsError(RuntimeError):
    """Raised when settings parsing fails."""


@dataclass(frozen=True)
class PortRangesConfig:
    """Port search ranges and the interface used for bind probes."""

    http_range: tuple[int, int] = (8000, 8999)
    shutdown_range: tuple[int, int] = (9000, 9999)
    jmx_range: tuple[int, int] = (8000, 8999)
    https_range: tuple[int, int] = (8400, 8499)
    bind_host: str = "0.0.0.0"  # noqa: S104 - probe every interface like the JVM does

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "http_range": list(self.http_range),
            "shutdown_range": list(self.shutdown_range),
            "jmx_range": list(self.jmx_range),
            "https_range": list(self.https_range),
            "bind_host": self.bind_host,
        }


@dataclass(frozen=True)
class SupervisorConfig:
    """Bounded waits applied by the process supervisor."""

    start_timeout: float = 30.0
    stop_timeout: float = 10.0
    poll_interval: float = 0.25

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "start_timeout": self.start_timeout,
            "stop_timeout": self.stop_timeout,
            "poll_interval": self.poll_interval,
        }


@dataclass(frozen=True)
class CertificateSettings:
    """Self-signed keystore generation preferences."""

    generator: str = "auto"
    keytool_bin: str = "keytool"
    validity_days: int = 825

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "generator": self.generator,
            "keytool_bin": self.keytool_bin,
            "validity_days": self.validity_days,
        }


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime backend defaults (download locations, tool binaries)."""

    express_url: str = "https://cdn.lucee.org/lucee-express-{version}.zip"
    lucee_jar_url: str = "https://cdn.lucee.org/lucee-{version}.jar"
    download_timeout: float = 120.0
    docker_bin: str = "docker"
    docker_image: str = "lucee/lucee:latest"
    java_bin: str = "java"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "express_url": self.express_url,
            "lucee_jar_url": self.lucee_jar_url,
            "download_timeout": self.download_timeout,
            "docker_bin": self.docker_bin,
            "docker_image": self.docker_image,
            "java_bin": self.java_bin,
        }


@dataclass(frozen=True)
class AppSettings:
    """Resolved settings values for luceectl."""

    settings_file: Path
    home: Path
    servers_dir: Path
    express_dir: Path
    logs_dir: Path
    run_dir: Path
    templates_dir: Path
    lock_timeout: float
    default_environment: str | None
    ports: PortRangesConfig
    supervisor: SupervisorConfig
    tls: CertificateSettings
    runtime: RuntimeSettings

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the settings."""
        return {
            "settings_file": str(self.settings_file),
            "home": str(self.home),
            "servers_dir": str(self.servers_dir),
            "express_dir": str(self.express_dir),
            "logs_dir": str(self.logs_dir),
            "run_dir": str(self.run_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "default_environment": self.default_environment,
            "ports": self.ports.to_dict(),
            "supervisor": self.supervisor.to_dict(),
            "tls": self.tls.to_dict(),
            "runtime": self.runtime.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "home": "~/.luceectl",
    "servers_dir": None,  # derived from home when absent
    "express_dir": None,
    "logs_dir": None,
    "run_dir": None,
    "templates_dir": None,
    "lock_timeout": 30.0,
    "default_environment": None,
    "ports": {
        "http_range": [8000, 8999],
        "shutdown_range": [9000, 9999],
        "jmx_range": [8000, 8999],
        "https_range": [8400, 8499],
        "bind_host": "0.0.0.0",  # noqa: S104
    },
    "supervisor": {
        "start_timeout": 30.0,
        "stop_timeout": 10.0,
        "poll_interval": 0.25,
    },
    "tls": {
        "generator": "auto",
        "keytool_bin": "keytool",
        "validity_days": 825,
    },
    "runtime": {
        "express_url": "https://cdn.lucee.org/lucee-express-{version}.zip",
        "lucee_jar_url": "https://cdn.lucee.org/lucee-{version}.jar",
        "download_timeout": 120.0,
        "docker_bin": "docker",
        "docker_image": "lucee/lucee:latest",
        "java_bin": "java",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_settings(
    settings_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppSettings:
    """Load and merge settings sources into an :class:`AppSettings`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    if HOME_ENV_VAR in resolved_env and resolved_env[HOME_ENV_VAR].strip():
        merged["home"] = resolved_env[HOME_ENV_VAR].strip()
    home = _to_path(merged["home"])

    settings_path = _determine_settings_path(home, settings_file, resolved_env)

    file_values = _load_yaml_file(settings_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    active_env = resolved_env.get(ACTIVE_ENV_VAR, "").strip()
    if active_env:
        merged["default_environment"] = active_env

    _validate_structure(merged)

    return _build_settings(merged, settings_path)


def _determine_settings_path(
    home: Path,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if SETTINGS_ENV_VAR in env:
        return Path(env[SETTINGS_ENV_VAR]).expanduser()
    return home / "settings.yml"


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise SettingsError(f"Failed to parse settings file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise SettingsError(f"Settings file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise SettingsError(f"Unknown settings keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise SettingsError(f"Unknown {section} settings keys: {joined}.")

    tls = _as_dict(raw.get("tls"), "tls")
    generator = tls.get("generator")
    if generator is not None and str(generator) not in ALLOWED_CERT_GENERATORS:
        allowed = ", ".join(sorted(ALLOWED_CERT_GENERATORS))
        raise SettingsError(
            f"Unsupported certificate generator '{generator}'. Allowed: {allowed}."
        )


def _build_settings(raw: Mapping[str, object], settings_path: Path) -> AppSettings:
    home = _to_path(raw.get("home"))

    def _derived(key: str, child: str) -> Path:
        value = raw.get(key)
        return _to_path(value) if value else home / child

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    defaults = PortRangesConfig()
    ports = PortRangesConfig(
        http_range=_expect_range(ports_mapping.get("http_range"), "ports.http_range",
                                 default=defaults.http_range),
        shutdown_range=_expect_range(ports_mapping.get("shutdown_range"),
                                     "ports.shutdown_range", default=defaults.shutdown_range),
        jmx_range=_expect_range(ports_mapping.get("jmx_range"), "ports.jmx_range",
                                default=defaults.jmx_range),
        https_range=_expect_range(ports_mapping.get("https_range"), "ports.https_range",
                                  default=defaults.https_range),
        bind_host=str(ports_mapping.get("bind_host", defaults.bind_host)),
    )

    supervisor_mapping = _as_dict(raw.get("supervisor"), "supervisor")
    supervisor = SupervisorConfig(
        start_timeout=_expect_positive_float(
            supervisor_mapping.get("start_timeout"), "supervisor.start_timeout", default=30.0
        ),
        stop_timeout=_expect_positive_float(
            supervisor_mapping.get("stop_timeout"), "supervisor.stop_timeout", default=10.0
        ),
        poll_interval=_expect_positive_float(
            supervisor_mapping.get("poll_interval"), "supervisor.poll_interval", default=0.25
        ),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    validity_days = _expect_int(tls_mapping.get("validity_days"), "tls.validity_days",
                                default=825)
    if validity_days <= 0:
        raise SettingsError("tls.validity_days must be greater than zero.")
    tls = CertificateSettings(
        generator=str(tls_mapping.get("generator", "auto")),
        keytool_bin=str(tls_mapping.get("keytool_bin", "keytool")),
        validity_days=validity_days,
    )

    runtime_mapping = _as_dict(raw.get("runtime"), "runtime")
    runtime_defaults = RuntimeSettings()
    runtime = RuntimeSettings(
        express_url=str(runtime_mapping.get("express_url", runtime_defaults.express_url)),
        lucee_jar_url=str(runtime_mapping.get("lucee_jar_url", runtime_defaults.lucee_jar_url)),
        download_timeout=_expect_positive_float(
            runtime_mapping.get("download_timeout"), "runtime.download_timeout",
            default=runtime_defaults.download_timeout,
        ),
        docker_bin=str(runtime_mapping.get("docker_bin", runtime_defaults.docker_bin)),
        docker_image=str(runtime_mapping.get("docker_image", runtime_defaults.docker_image)),
        java_bin=str(runtime_mapping.get("java_bin", runtime_defaults.java_bin)),
    )

    default_env = raw.get("default_environment")
    return AppSettings(
        settings_file=settings_path,
        home=home,
        servers_dir=_derived("servers_dir", "servers"),
        express_dir=_derived("express_dir", "express"),
        logs_dir=_derived("logs_dir", "logs"),
        run_dir=_derived("run_dir", "run"),
        templates_dir=_derived("templates_dir", "templates"),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout",
                                            default=30.0),
        default_environment=str(default_env).strip() or None if default_env else None,
        ports=ports,
        supervisor=supervisor,
        tls=tls,
        runtime=runtime,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise SettingsError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise SettingsError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise SettingsError(f"Cannot convert value {value!r} to Path.")


def _expect_range(value: object | None, label: str, *, default: tuple[int, int]) -> tuple[int, int]:
    if value is None:
        return default
    if isinstance(value, str):
        parts: list[object] = [part.strip() for part in value.split("-", 1)]
    elif isinstance(value, (list, tuple)):
        parts = list(value)
    else:
        raise SettingsError(f"Expected {label} to be a [start, end] pair. Got {value!r}.")
    if len(parts) != 2:
        raise SettingsError(f"Expected {label} to be a [start, end] pair. Got {value!r}.")
    start = _expect_int(parts[0], f"{label}[0]", default=default[0])
    end = _expect_int(parts[1], f"{label}[1]", default=default[1])
    if not 1 <= start <= end <= 65535:
        raise SettingsError(f"{label} must satisfy 1 <= start <= end <= 65535. Got {value!r}.")
    return (start, end)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise SettingsError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise SettingsError(f"Invalid integer for {label}: {value!r}.") from exc
    raise SettingsError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise SettingsError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise SettingsError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise SettingsError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise SettingsError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise SettingsError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise SettingsError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ACTIVE_ENV_VAR",
    "AppSettings",
    "CertificateSettings",
    "HOME_ENV_VAR",
    "PortRangesConfig",
    "RuntimeSettings",
    "SettingsError",
    "SupervisorConfig",
    "load_settings",
]
