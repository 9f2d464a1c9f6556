"""Project configuration (``lucee.json``) resolution.

:class:`ConfigLoader` turns the user-authored, commented JSON file into an
immutable :class:`EffectiveConfig`:

1. parse the raw file (comments allowed),
2. substitute variables (``.env`` > environment > inline default),
3. merge ``configurationFile`` (base) with inline ``configuration``,
4. merge the requested ``environments.<key>`` block, re-read from disk,
5. apply defaults centrally so partial blocks never lose a feature,
6. apply one-shot :class:`StartOverrides` from the command line.

Precedence is strictly increasing: defaults < ``configurationFile`` < inline
``configuration`` < environment override < start overrides.
"""
from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from . import jsonc
from .jsonc import ConfigError, ConfigParseError
from .variables import VariableResolver

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "lucee.json"
DEFAULT_ENV_KEY = "_default"
PROTECTED_ZONES: frozenset[tuple[str, ...]] = frozenset({("configuration",)})
RUNTIME_TYPES = ("lucee-express", "tomcat", "docker", "jetty")

DEFAULTS: dict[str, object] = {
    "version": "6.2.2.91",
    "port": 8080,
    "webroot": "./",
    "host": "localhost",
    "monitoring": {"enabled": True, "jmx": {"port": 8999}},
    "jvm": {"maxMemory": "512m", "minMemory": "128m", "additionalArgs": []},
    "urlRewrite": {"enabled": True, "routerFile": "index.cfm"},
    "admin": {"enabled": True},
    "https": {"enabled": False, "port": 8443},
    "enableLucee": True,
    "enableREST": False,
    "openBrowser": True,
    "agents": {},
    "runtime": {"type": "lucee-express"},
}


def deep_merge(base: Mapping[str, object], override: Mapping[str, object]) -> dict[str, object]:
    """Return a new mapping with *override* merged onto *base*.

    Keys holding mappings on both sides are merged recursively; any other
    override value (lists included) replaces the base value outright. Neither
    input is mutated.
    """
    result: dict[str, object] = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in override.items():
        existing = result.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            result[key] = deep_merge(existing, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ----------------------------------------------------------------------
# Effective configuration model
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class MonitoringConfig:
    """JMX monitoring settings."""

    enabled: bool = True
    jmx_port: int = 8999


@dataclass(frozen=True)
class JvmConfig:
    """Heap sizing and extra JVM arguments."""

    max_memory: str = "512m"
    min_memory: str = "128m"
    additional_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class UrlRewriteConfig:
    """Front-controller URL rewriting."""

    enabled: bool = True
    router_file: str = "index.cfm"


@dataclass(frozen=True)
class AdminConfig:
    """Lucee administrator exposure."""

    enabled: bool = True
    password: str | None = None


@dataclass(frozen=True)
class HttpsConfig:
    """HTTPS connector settings."""

    enabled: bool = False
    port: int = 8443
    redirect: bool = False


@dataclass(frozen=True)
class AgentConfig:
    """A named java agent that contributes JVM arguments when enabled."""

    agent_id: str
    enabled: bool = False
    jvm_args: tuple[str, ...] = ()
    description: str | None = None


@dataclass(frozen=True)
class RuntimeConfig:
    """Runtime backend discriminator and its provider-specific options."""

    type: str = "lucee-express"
    options: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class EffectiveConfig:
    """Fully resolved configuration for one instance and one invocation."""

    name: str
    project_dir: Path
    version: str = "6.2.2.91"
    port: int = 8080
    shutdown_port: int | None = None
    webroot: str = "./"
    host: str = "localhost"
    monitoring: MonitoringConfig = MonitoringConfig()
    jvm: JvmConfig = JvmConfig()
    url_rewrite: UrlRewriteConfig = UrlRewriteConfig()
    admin: AdminConfig = AdminConfig()
    https: HttpsConfig = HttpsConfig()
    enable_lucee: bool = True
    enable_rest: bool = False
    open_browser: bool = True
    agents: tuple[AgentConfig, ...] = ()
    runtime: RuntimeConfig = RuntimeConfig()
    configuration: dict[str, object] | None = None
    environment: str | None = None

    @property
    def webroot_path(self) -> Path:
        """Return the absolute webroot directory."""
        candidate = Path(self.webroot).expanduser()
        if not candidate.is_absolute():
            candidate = self.project_dir / candidate
        return Path(os.path.normpath(candidate))

    @property
    def agent_jvm_args(self) -> list[str]:
        """Return JVM arguments contributed by enabled agents."""
        args: list[str] = []
        for agent in self.agents:
            if agent.enabled:
                args.extend(agent.jvm_args)
        return args

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json``-shaped representation used for snapshots."""
        return {
            "name": self.name,
            "version": self.version,
            "port": self.port,
            "shutdownPort": self.shutdown_port,
            "webroot": self.webroot,
            "host": self.host,
            "monitoring": {
                "enabled": self.monitoring.enabled,
                "jmx": {"port": self.monitoring.jmx_port},
            },
            "jvm": {
                "maxMemory": self.jvm.max_memory,
                "minMemory": self.jvm.min_memory,
                "additionalArgs": list(self.jvm.additional_args),
            },
            "urlRewrite": {
                "enabled": self.url_rewrite.enabled,
                "routerFile": self.url_rewrite.router_file,
            },
            "admin": {"enabled": self.admin.enabled, "password": self.admin.password},
            "https": {
                "enabled": self.https.enabled,
                "port": self.https.port,
                "redirect": self.https.redirect,
            },
            "enableLucee": self.enable_lucee,
            "enableREST": self.enable_rest,
            "openBrowser": self.open_browser,
            "agents": {
                agent.agent_id: {
                    "enabled": agent.enabled,
                    "jvmArgs": list(agent.jvm_args),
                    "description": agent.description,
                }
                for agent in self.agents
            },
            "runtime": {"type": self.runtime.type, **copy.deepcopy(self.runtime.options)},
            "configuration": copy.deepcopy(self.configuration),
            "environment": self.environment,
        }

    def to_json(self) -> str:
        """Return a stable JSON rendering of :meth:`to_dict`."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    def get(self, key: str) -> object:
        """Return the value addressed by a dotted *key* (``jvm.maxMemory``)."""
        return get_value(self.to_dict(), key)

    @classmethod
    def from_dict(cls, data: Mapping[str, object], project_dir: Path) -> EffectiveConfig:
        """Rebuild a configuration from :meth:`to_dict` output."""
        return _build_effective(
            deep_merge(DEFAULTS, data),
            project_dir=project_dir,
            environment=_optional_str(data.get("environment")),
        )


@dataclass(frozen=True)
class StartOverrides:
    """One-shot values from the ``start`` command line.

    Overrides are applied after the environment layer and are never written
    back to ``lucee.json``. Agent selection works on the agents declared in
    the file: ``agents`` replaces the enabled set, ``no_agents`` clears it,
    and ``enable_agents``/``disable_agents`` adjust it.
    """

    name: str | None = None
    port: int | None = None
    version: str | None = None
    webroot: str | None = None
    agents: tuple[str, ...] | None = None
    no_agents: bool = False
    enable_agents: tuple[str, ...] = ()
    disable_agents: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        """Return True when nothing would change."""
        return self == StartOverrides()

    def to_dict(self) -> dict[str, object]:
        """Return the overrides that are set, for operation logs."""
        data: dict[str, object] = {
            "name": self.name,
            "port": self.port,
            "version": self.version,
            "webroot": self.webroot,
            "agents": list(self.agents) if self.agents is not None else None,
            "no_agents": self.no_agents or None,
            "enable_agents": list(self.enable_agents) or None,
            "disable_agents": list(self.disable_agents) or None,
        }
        return {key: value for key, value in data.items() if value is not None}

    def apply(self, config: EffectiveConfig) -> EffectiveConfig:
        """Return *config* with these overrides applied."""
        if self.empty:
            return config
        changes: dict[str, object] = {}
        if self.name is not None:
            name = self.name.strip()
            if not name:
                raise ConfigError("--name must not be empty.")
            changes["name"] = name
        if self.port is not None:
            changes["port"] = _expect_port(self.port, "--port", default=config.port)
        if self.version is not None:
            version = self.version.strip()
            if not version:
                raise ConfigError("--version must not be empty.")
            changes["version"] = version
        if self.webroot is not None and self.webroot.strip():
            changes["webroot"] = self.webroot.strip()
        changes["agents"] = self._select_agents(config.agents)
        return replace(config, **changes)  # type: ignore[arg-type]

    def _select_agents(self, agents: tuple[AgentConfig, ...]) -> tuple[AgentConfig, ...]:
        known = {agent.agent_id for agent in agents}
        requested = set(self.agents or ()) | set(self.enable_agents) | set(self.disable_agents)
        unknown = sorted(requested - known)
        if unknown:
            defined = ", ".join(sorted(known)) or "(none)"
            raise ConfigError(
                f"Unknown agent(s): {', '.join(unknown)}. Agents defined in lucee.json: {defined}."
            )

        if self.no_agents:
            active: set[str] = set()
        elif self.agents is not None:
            active = set(self.agents)
        else:
            active = {agent.agent_id for agent in agents if agent.enabled}
            active |= set(self.enable_agents)
            active -= set(self.disable_agents)
        return tuple(replace(agent, enabled=agent.agent_id in active) for agent in agents)


# ----------------------------------------------------------------------
# Loader
# ----------------------------------------------------------------------
@dataclass(slots=True)
class ConfigLoader:
    """Resolve ``lucee.json`` in *project_dir* into an :class:`EffectiveConfig`."""

    project_dir: Path
    config_name: str = DEFAULT_CONFIG_NAME
    environ: Mapping[str, str] | None = None
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Normalise the project directory."""
        self.project_dir = Path(self.project_dir).expanduser().resolve()

    @property
    def config_path(self) -> Path:
        """Return the path of the project configuration file."""
        return self.project_dir / self.config_name

    def raw_bytes(self) -> bytes:
        """Return the raw configuration bytes (empty when missing)."""
        try:
            return self.config_path.read_bytes()
        except FileNotFoundError:
            return b""

    def read_raw(self) -> dict[str, object]:
        """Parse the configuration file without substitution or defaults."""
        if not self.config_path.exists():
            return {}
        return jsonc.load(self.config_path)

    def environments(self) -> list[str]:
        """Return the environment keys declared in the configuration file."""
        envs = self.read_raw().get("environments")
        return sorted(envs.keys()) if isinstance(envs, Mapping) else []

    def resolve(
        self,
        env_key: str | None = None,
        overrides: StartOverrides | None = None,
    ) -> EffectiveConfig:
        """Return the effective configuration, optionally for *env_key*.

        :attr:`warnings` only holds the messages of the latest call.
        """
        self.warnings.clear()
        environment = _normalize_env_key(env_key)
        resolver = VariableResolver.for_project(self.project_dir, self.environ)

        raw = self.read_raw()
        raw.pop("environments", None)
        base = _as_dict(resolver.resolve_tree(raw, protected=PROTECTED_ZONES), "config")

        embedded = self._embedded_configuration(base, resolver)
        base.pop("configurationFile", None)
        if embedded is not None:
            base["configuration"] = embedded

        merged = base
        if environment is not None:
            merged = deep_merge(base, self._environment_override(environment, resolver))

        for name in resolver.unresolved:
            self.warnings.append(
                f"Variable '{name}' is not defined in .env or the environment; left unresolved."
            )

        resolved = deep_merge(DEFAULTS, merged)
        if not resolved.get("name"):
            resolved["name"] = self.project_dir.name
        config = _build_effective(resolved, project_dir=self.project_dir, environment=environment)
        return overrides.apply(config) if overrides is not None else config

    def write_raw(self, data: Mapping[str, object]) -> None:
        """Atomically write *data* to the configuration file as JSON."""
        path = self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
                handle.write("\n")
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Internal helpers -------------------------------------------------
    def _embedded_configuration(
        self,
        base: Mapping[str, object],
        resolver: VariableResolver,
    ) -> dict[str, object] | None:
        file_ref = base.get("configurationFile")
        inline = base.get("configuration")
        if file_ref in (None, "") and inline is None:
            return None

        file_tree: dict[str, object] = {}
        if file_ref not in (None, ""):
            file_path = Path(str(file_ref)).expanduser()
            if not file_path.is_absolute():
                file_path = self.project_dir / file_path
            if file_path.exists():
                loaded = jsonc.load(file_path)
                file_tree = _as_dict(
                    resolver.resolve_tree(loaded, protected=frozenset({()})),
                    "configurationFile",
                )
            else:
                LOGGER.warning("configurationFile %s does not exist; ignoring it.", file_path)
                self.warnings.append(f"configurationFile {file_path} does not exist; ignored.")

        inline_tree = _as_dict(inline, "configuration") if inline is not None else {}
        return deep_merge(file_tree, inline_tree)

    def _environment_override(
        self,
        environment: str,
        resolver: VariableResolver,
    ) -> dict[str, object]:
        # Re-read the file so the override applies to the on-disk source.
        fresh = self.read_raw()
        envs = fresh.get("environments")
        envs_map = envs if isinstance(envs, Mapping) else {}
        if environment not in envs_map:
            available = ", ".join(sorted(str(key) for key in envs_map)) or "(none)"
            raise ConfigError(
                f"Environment '{environment}' is not defined in {self.config_name}. "
                f"Available environments: {available}."
            )
        override = _as_dict(envs_map[environment], f"environments.{environment}")
        override.pop("environments", None)
        return _as_dict(
            resolver.resolve_tree(override, protected=PROTECTED_ZONES),
            f"environments.{environment}",
        )


def resolve(
    path: Path,
    env_key: str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: StartOverrides | None = None,
) -> EffectiveConfig:
    """Resolve the configuration at *path* (a project directory or config file)."""
    target = Path(path).expanduser()
    if target.is_file():
        return ConfigLoader(target.parent, target.name, environ).resolve(env_key, overrides)
    return ConfigLoader(target, DEFAULT_CONFIG_NAME, environ).resolve(env_key, overrides)


# ----------------------------------------------------------------------
# Dotted key helpers used by ``config get`` / ``config set``
# ----------------------------------------------------------------------
def get_value(tree: Mapping[str, object], key: str) -> object:
    """Return the value at dotted *key* or raise :class:`ConfigError`."""
    current: object = tree
    for segment in _split_key(key):
        if not isinstance(current, Mapping) or segment not in current:
            raise ConfigError(f"Configuration key '{key}' is not set.")
        current = current[segment]
    return current


def set_value(tree: Mapping[str, object], key: str, raw_value: str) -> dict[str, object]:
    """Return a copy of *tree* with dotted *key* set to the coerced *raw_value*."""
    segments = _split_key(key)
    result = deep_merge(tree, {})
    current: dict[str, object] = result
    for segment in segments[:-1]:
        child = current.get(segment)
        if child is None:
            child = {}
            current[segment] = child
        elif not isinstance(child, dict):
            raise ConfigError(f"Cannot set '{key}': '{segment}' is not an object.")
        current = child
    current[segments[-1]] = coerce_value(raw_value)
    return result


def coerce_value(raw: str) -> object:
    """Coerce a CLI string into a JSON scalar (numbers, booleans, null)."""
    text = raw.strip()
    if not text:
        return ""
    try:
        parsed = yaml.safe_load(text)
    except yaml.YAMLError:
        return text
    if isinstance(parsed, (bool, int, float)) or parsed is None:
        return parsed
    return text


def _split_key(key: str) -> list[str]:
    segments = [segment.strip() for segment in key.split(".")]
    if not key.strip() or any(not segment for segment in segments):
        raise ConfigError(f"Invalid configuration key '{key}'.")
    return segments


# ----------------------------------------------------------------------
# Builders and validators
# ----------------------------------------------------------------------
def _build_effective(
    raw: Mapping[str, object],
    *,
    project_dir: Path,
    environment: str | None,
) -> EffectiveConfig:
    name = str(raw.get("name") or project_dir.name).strip()
    if not name or "/" in name:
        raise ConfigError(f"Invalid server name {name!r}.")

    version = str(raw.get("version") or "").strip()
    if not version:
        raise ConfigError("version must be a non-empty string.")

    port = _expect_port(raw.get("port"), "port", default=8080)
    shutdown_raw = raw.get("shutdownPort")
    shutdown_port = _expect_port(shutdown_raw, "shutdownPort", default=0) if shutdown_raw else None

    monitoring_map = _as_dict(raw.get("monitoring"), "monitoring")
    jmx_map = _as_dict(monitoring_map.get("jmx"), "monitoring.jmx")
    monitoring = MonitoringConfig(
        enabled=_expect_bool(monitoring_map.get("enabled"), "monitoring.enabled", default=True),
        jmx_port=_expect_port(jmx_map.get("port"), "monitoring.jmx.port", default=8999),
    )

    jvm_map = _as_dict(raw.get("jvm"), "jvm")
    jvm = JvmConfig(
        max_memory=str(jvm_map.get("maxMemory") or "512m"),
        min_memory=str(jvm_map.get("minMemory") or "128m"),
        additional_args=_expect_str_tuple(jvm_map.get("additionalArgs"), "jvm.additionalArgs"),
    )

    rewrite_map = _as_dict(raw.get("urlRewrite"), "urlRewrite")
    url_rewrite = UrlRewriteConfig(
        enabled=_expect_bool(rewrite_map.get("enabled"), "urlRewrite.enabled", default=True),
        router_file=str(rewrite_map.get("routerFile") or "index.cfm"),
    )

    admin_map = _as_dict(raw.get("admin"), "admin")
    admin = AdminConfig(
        enabled=_expect_bool(admin_map.get("enabled"), "admin.enabled", default=True),
        password=_optional_str(admin_map.get("password")),
    )

    https_map = _as_dict(raw.get("https"), "https")
    https_enabled = _expect_bool(https_map.get("enabled"), "https.enabled", default=False)
    https = HttpsConfig(
        enabled=https_enabled,
        port=_expect_port(https_map.get("port"), "https.port", default=8443),
        redirect=_expect_bool(https_map.get("redirect"), "https.redirect", default=https_enabled),
    )

    agents_map = _as_dict(raw.get("agents"), "agents")
    agents: list[AgentConfig] = []
    for agent_id, agent_raw in agents_map.items():
        agent_map = _as_dict(agent_raw, f"agents.{agent_id}")
        agents.append(
            AgentConfig(
                agent_id=agent_id,
                enabled=_expect_bool(agent_map.get("enabled"), f"agents.{agent_id}.enabled",
                                     default=False),
                jvm_args=_expect_str_tuple(agent_map.get("jvmArgs"), f"agents.{agent_id}.jvmArgs"),
                description=_optional_str(agent_map.get("description")),
            )
        )

    runtime_map = _as_dict(raw.get("runtime"), "runtime")
    runtime_type = str(runtime_map.get("type") or "lucee-express").strip()
    if runtime_type not in RUNTIME_TYPES:
        allowed = ", ".join(RUNTIME_TYPES)
        raise ConfigError(f"Unsupported runtime.type '{runtime_type}'. Allowed: {allowed}.")
    runtime = RuntimeConfig(
        type=runtime_type,
        options={key: value for key, value in runtime_map.items() if key != "type"},
    )

    configuration_raw = raw.get("configuration")
    configuration = (
        _as_dict(configuration_raw, "configuration") if configuration_raw is not None else None
    )

    return EffectiveConfig(
        name=name,
        project_dir=project_dir,
        version=version,
        port=port,
        shutdown_port=shutdown_port,
        webroot=str(raw.get("webroot") or "./"),
        host=str(raw.get("host") or "localhost"),
        monitoring=monitoring,
        jvm=jvm,
        url_rewrite=url_rewrite,
        admin=admin,
        https=https,
        enable_lucee=_expect_bool(raw.get("enableLucee"), "enableLucee", default=True),
        enable_rest=_expect_bool(raw.get("enableREST"), "enableREST", default=False),
        open_browser=_expect_bool(raw.get("openBrowser"), "openBrowser", default=True),
        agents=tuple(agents),
        runtime=runtime,
        configuration=configuration,
        environment=environment,
    )


def _normalize_env_key(env_key: str | None) -> str | None:
    if env_key is None:
        return None
    stripped = env_key.strip()
    if not stripped or stripped == DEFAULT_ENV_KEY:
        return None
    return stripped


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a port number. Got boolean {value!r}.")
    if isinstance(value, int):
        port = value
    elif isinstance(value, str):
        try:
            port = int(value.strip(), 10)
        except ValueError as exc:
            raise ConfigError(f"Invalid port for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be a port number. Got {type(value).__name__}.")
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str_tuple(value: object | None, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part for part in value.split() if part)
    if isinstance(value, list):
        return tuple(str(item) for item in value)
    raise ConfigError(f"Expected {label} to be a list of strings. Got {type(value).__name__}.")


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be an object. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Object {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AdminConfig",
    "AgentConfig",
    "ConfigError",
    "ConfigLoader",
    "ConfigParseError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_ENV_KEY",
    "EffectiveConfig",
    "HttpsConfig",
    "JvmConfig",
    "MonitoringConfig",
    "RuntimeConfig",
    "StartOverrides",
    "UrlRewriteConfig",
    "coerce_value",
    "deep_merge",
    "get_value",
    "resolve",
    "set_value",
]
