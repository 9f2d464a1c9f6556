"""Project configuration (lucee.json) resolution tests."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from luceectl.instance_config import (
    ConfigError,
    ConfigLoader,
    ConfigParseError,
    EffectiveConfig,
    StartOverrides,
    coerce_value,
    deep_merge,
    get_value,
    resolve,
    set_value,
)


def _write(project: Path, payload: object, name: str = "lucee.json") -> Path:
    path = project / name
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


def test_defaults_apply_to_minimal_config(tmp_path: Path) -> None:
    """A nearly empty file resolves with central defaults."""
    project = tmp_path / "shop"
    project.mkdir()
    _write(project, {})

    config = ConfigLoader(project, environ={}).resolve()

    assert config.name == "shop"
    assert config.port == 8080
    assert config.shutdown_port is None
    assert config.jvm.max_memory == "512m"
    assert config.monitoring.jmx_port == 8999
    assert config.url_rewrite.enabled is True
    assert config.https.enabled is False
    assert config.runtime.type == "lucee-express"
    assert config.environment is None
    assert config.webroot_path == project.resolve()


def test_comments_and_variables(tmp_path: Path) -> None:
    """JSONC comments are allowed and placeholders expand from .env first."""
    (tmp_path / "lucee.json").write_text(
        """{
  // server name
  "name": "app",
  "port": "${HTTP_PORT:-8090}",
  "host": "#env:APP_HOST#",
  "jvm": {"maxMemory": "${HEAP}"}
}""",
        encoding="utf-8",
    )
    (tmp_path / ".env").write_text("APP_HOST=app.local\n", encoding="utf-8")

    loader = ConfigLoader(tmp_path, environ={"APP_HOST": "ignored", "HEAP": "1g"})
    config = loader.resolve()

    assert config.port == 8090
    assert config.host == "app.local"
    assert config.jvm.max_memory == "1g"
    assert loader.warnings == []


def test_unresolved_variables_warn(tmp_path: Path) -> None:
    """Placeholders with no value are kept and reported as warnings."""
    _write(tmp_path, {"name": "app", "jvm": {"maxMemory": "${NOPE}"}})

    loader = ConfigLoader(tmp_path, environ={})
    config = loader.resolve()

    assert config.jvm.max_memory == "${NOPE}"
    assert any("NOPE" in warning for warning in loader.warnings)


def test_parse_error_propagates(tmp_path: Path) -> None:
    """Malformed files raise ConfigParseError with a location."""
    (tmp_path / "lucee.json").write_text('{"port": 8080,}', encoding="utf-8")

    with pytest.raises(ConfigParseError) as excinfo:
        ConfigLoader(tmp_path, environ={}).resolve()

    assert excinfo.value.line == 1


def test_configuration_file_is_base_and_inline_wins(tmp_path: Path) -> None:
    """configurationFile loads first; inline configuration overrides it key by key."""
    _write(
        tmp_path,
        {
            "name": "app",
            "configurationFile": "cfconfig.json",
            "configuration": {"inspectTemplate": "never", "datasources": {"main": {"host": "b"}}},
        },
    )
    _write(
        tmp_path,
        {
            "inspectTemplate": "always",
            "requestTimeout": "0,0,0,50",
            "datasources": {"main": {"host": "a", "port": 3306}},
        },
        name="cfconfig.json",
    )

    config = ConfigLoader(tmp_path, environ={}).resolve()

    assert config.configuration == {
        "inspectTemplate": "never",
        "requestTimeout": "0,0,0,50",
        "datasources": {"main": {"host": "b", "port": 3306}},
    }


def test_missing_configuration_file_warns(tmp_path: Path) -> None:
    """A missing configurationFile is ignored with a warning."""
    _write(tmp_path, {"name": "app", "configurationFile": "absent.json"})

    loader = ConfigLoader(tmp_path, environ={})
    config = loader.resolve()

    assert config.configuration == {}
    assert any("absent.json" in warning for warning in loader.warnings)


def test_warnings_reset_between_resolves(tmp_path: Path) -> None:
    """Resolving twice reports each warning once."""
    _write(tmp_path, {"name": "app", "configurationFile": "absent.json"})
    loader = ConfigLoader(tmp_path, environ={})

    loader.resolve()
    loader.resolve()

    assert len([warning for warning in loader.warnings if "absent.json" in warning]) == 1

    _write(tmp_path, {"name": "app"})
    loader.resolve()
    assert loader.warnings == []


def test_configuration_keeps_legacy_placeholders(tmp_path: Path) -> None:
    """${VAR} inside configuration is left for Lucee while #env: expands."""
    _write(
        tmp_path,
        {
            "name": "app",
            "port": "${PORT}",
            "configuration": {"dsn": "${DB_HOST}", "user": "#env:DB_USER#"},
        },
    )

    environ = {"PORT": "8100", "DB_HOST": "x", "DB_USER": "u"}
    config = ConfigLoader(tmp_path, environ=environ).resolve()

    assert config.port == 8100
    assert config.configuration == {"dsn": "${DB_HOST}", "user": "u"}


def test_environment_override_merges_onto_base(tmp_path: Path) -> None:
    """Partial environment overrides keep base values they do not mention."""
    _write(
        tmp_path,
        {
            "name": "app",
            "port": 8080,
            "jvm": {"maxMemory": "512m", "minMemory": "256m"},
            "monitoring": {"enabled": True, "jmx": {"port": 9010}},
            "environments": {"prod": {"port": 80, "jvm": {"maxMemory": "2g"}}},
        },
    )

    config = ConfigLoader(tmp_path, environ={}).resolve("prod")

    assert config.environment == "prod"
    assert config.port == 80
    assert config.jvm.max_memory == "2g"
    assert config.jvm.min_memory == "256m"
    assert config.monitoring.jmx_port == 9010


def test_environment_override_rereads_file(tmp_path: Path) -> None:
    """Environment overrides come from the file on disk at resolve time."""
    path = _write(tmp_path, {"name": "app", "environments": {"dev": {"port": 8100}}})
    loader = ConfigLoader(tmp_path, environ={})
    assert loader.resolve("dev").port == 8100

    path.write_text(
        json.dumps({"name": "app", "environments": {"dev": {"port": 8200}}}), encoding="utf-8"
    )

    assert loader.resolve("dev").port == 8200


def test_unknown_environment_lists_available(tmp_path: Path) -> None:
    """Requesting an undefined environment names the available keys."""
    _write(tmp_path, {"name": "app", "environments": {"dev": {}, "prod": {}}})

    with pytest.raises(ConfigError, match="Available environments: dev, prod"):
        ConfigLoader(tmp_path, environ={}).resolve("staging")


def test_default_env_key_means_no_override(tmp_path: Path) -> None:
    """'_default' resolves the base configuration."""
    _write(tmp_path, {"name": "app", "environments": {"prod": {"port": 80}}})

    config = ConfigLoader(tmp_path, environ={}).resolve("_default")

    assert config.port == 8080
    assert config.environment is None


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"port": 70000}, "port must be between"),
        ({"port": True}, "boolean"),
        ({"runtime": {"type": "weblogic"}}, "Unsupported runtime.type"),
        ({"https": {"enabled": "maybe"}}, "https.enabled"),
        ({"jvm": "big"}, "Expected jvm to be an object"),
        ({"name": "a/b"}, "Invalid server name"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, payload: dict[str, object], message: str) -> None:
    """Validation errors are raised as ConfigError."""
    _write(tmp_path, payload)

    with pytest.raises(ConfigError, match=message):
        ConfigLoader(tmp_path, environ={}).resolve()


def test_runtime_options_and_agents(tmp_path: Path) -> None:
    """Runtime options pass through and enabled agents contribute JVM args."""
    _write(
        tmp_path,
        {
            "name": "app",
            "runtime": {"type": "tomcat", "catalinaHome": "/opt/tomcat"},
            "agents": {
                "luceedebug": {"enabled": True, "jvmArgs": ["-javaagent:/x.jar"]},
                "off": {"enabled": False, "jvmArgs": ["-Dno=1"]},
            },
        },
    )

    config = ConfigLoader(tmp_path, environ={}).resolve()

    assert config.runtime.type == "tomcat"
    assert config.runtime.options == {"catalinaHome": "/opt/tomcat"}
    assert config.agent_jvm_args == ["-javaagent:/x.jar"]


def test_snapshot_round_trip_preserves_effective_config(tmp_path: Path) -> None:
    """from_dict(to_dict()) rebuilds an equal configuration."""
    _write(
        tmp_path,
        {
            "name": "app",
            "port": 8181,
            "https": {"enabled": True, "port": 8543},
            "configuration": {"a": {"b": 1}},
            "environments": {"prod": {"host": "prod.local"}},
        },
    )
    config = ConfigLoader(tmp_path, environ={}).resolve("prod")

    rebuilt = EffectiveConfig.from_dict(config.to_dict(), tmp_path.resolve())

    assert rebuilt == config


def test_module_level_resolve_accepts_file_or_directory(tmp_path: Path) -> None:
    """resolve() takes a project directory or an explicit config file."""
    _write(tmp_path, {"name": "dir-config"})
    _write(tmp_path, {"name": "alt-config"}, name="alt.json")

    assert resolve(tmp_path, environ={}).name == "dir-config"
    assert resolve(tmp_path / "alt.json", environ={}).name == "alt-config"


# ----------------------------------------------------------------------
# deep_merge
# ----------------------------------------------------------------------
def test_deep_merge_recurses_and_override_wins() -> None:
    """Objects merge recursively; arrays and scalars are replaced."""
    base = {"a": {"b": 1, "c": [1, 2]}, "d": "x"}
    override = {"a": {"c": [3], "e": True}, "d": None}

    merged = deep_merge(base, override)

    assert merged == {"a": {"b": 1, "c": [3], "e": True}, "d": None}
    assert base == {"a": {"b": 1, "c": [1, 2]}, "d": "x"}
    assert override == {"a": {"c": [3], "e": True}, "d": None}


def test_deep_merge_identity_and_idempotence() -> None:
    """Merging with {} or with itself yields an equal object."""
    tree = {"a": {"b": {"c": 1}}, "list": [1, {"x": 2}], "s": "v"}

    assert deep_merge(tree, {}) == tree
    assert deep_merge({}, tree) == tree
    assert deep_merge(tree, tree) == tree
    once = deep_merge(tree, {"a": {"b": {"d": 2}}})
    assert deep_merge(once, {"a": {"b": {"d": 2}}}) == once


def test_deep_merge_result_is_independent() -> None:
    """Mutating the result never touches the inputs."""
    base = {"a": {"b": [1]}}

    merged = deep_merge(base, {})
    merged["a"]["b"].append(2)  # type: ignore[index,union-attr]

    assert base == {"a": {"b": [1]}}


# ----------------------------------------------------------------------
# get / set helpers
# ----------------------------------------------------------------------
def test_get_and_set_value() -> None:
    """Dotted keys read and write nested values with typed coercion."""
    tree = {"jvm": {"maxMemory": "512m"}}

    updated = set_value(tree, "jvm.maxMemory", "1g")
    updated = set_value(updated, "monitoring.jmx.port", "9100")

    assert get_value(updated, "jvm.maxMemory") == "1g"
    assert get_value(updated, "monitoring.jmx.port") == 9100
    assert tree == {"jvm": {"maxMemory": "512m"}}
    with pytest.raises(ConfigError, match="is not set"):
        get_value(updated, "nope.key")
    with pytest.raises(ConfigError, match="not an object"):
        set_value(updated, "jvm.maxMemory.deep", "1")
    with pytest.raises(ConfigError, match="Invalid configuration key"):
        set_value(updated, "a..b", "1")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("8080", 8080),
        ("true", True),
        ("false", False),
        ("null", None),
        ("1.5", 1.5),
        ("512m", "512m"),
        ("[1, 2]", "[1, 2]"),
        ("", ""),
    ],
)
def test_coerce_value(raw: str, expected: object) -> None:
    """CLI strings coerce to JSON scalars only."""
    assert coerce_value(raw) == expected


# ----------------------------------------------------------------------
# Start overrides
# ----------------------------------------------------------------------
AGENTS = {
    "luceedebug": {"enabled": True, "jvmArgs": ["-javaagent:/debug.jar"]},
    "profiler": {"enabled": False, "jvmArgs": ["-javaagent:/profiler.jar"]},
    "apm": {"enabled": False, "jvmArgs": ["-javaagent:/apm.jar"]},
}


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Start overrides are applied after the environment block."""
    _write(
        tmp_path,
        {
            "name": "app",
            "port": 8080,
            "webroot": "./www",
            "environments": {"prod": {"port": 80, "version": "6.1.0.1"}},
        },
    )
    overrides = StartOverrides(name="demo", port=8181, version="7.0.0.1", webroot="./public")

    config = ConfigLoader(tmp_path, environ={}).resolve("prod", overrides)

    assert config.environment == "prod"
    assert config.name == "demo"
    assert config.port == 8181
    assert config.version == "7.0.0.1"
    assert config.webroot_path == (tmp_path / "public").resolve()


def test_overrides_leave_config_file_untouched(tmp_path: Path) -> None:
    """Overrides are one-shot and never written back."""
    path = _write(tmp_path, {"name": "app", "port": 8080})
    before = path.read_bytes()

    ConfigLoader(tmp_path, environ={}).resolve(None, StartOverrides(port=9999))

    assert path.read_bytes() == before
    assert ConfigLoader(tmp_path, environ={}).resolve().port == 8080


def test_empty_overrides_change_nothing(tmp_path: Path) -> None:
    """Default overrides resolve to the same configuration."""
    _write(tmp_path, {"name": "app", "agents": AGENTS})
    loader = ConfigLoader(tmp_path, environ={})

    assert StartOverrides().empty is True
    assert StartOverrides().to_dict() == {}
    assert loader.resolve(None, StartOverrides()) == loader.resolve()


@pytest.mark.parametrize(
    ("overrides", "expected"),
    [
        (StartOverrides(), ["-javaagent:/debug.jar"]),
        (StartOverrides(agents=("profiler",)), ["-javaagent:/profiler.jar"]),
        (StartOverrides(no_agents=True, enable_agents=("apm",)), []),
        (
            StartOverrides(enable_agents=("apm",), disable_agents=("luceedebug",)),
            ["-javaagent:/apm.jar"],
        ),
        (
            StartOverrides(agents=("profiler", "apm"), disable_agents=("apm",)),
            ["-javaagent:/profiler.jar", "-javaagent:/apm.jar"],
        ),
    ],
)
def test_agent_selection(tmp_path: Path, overrides: StartOverrides, expected: list[str]) -> None:
    """--agents replaces, --no-agents clears, enable/disable adjust the file's set."""
    _write(tmp_path, {"name": "app", "agents": AGENTS})

    config = ConfigLoader(tmp_path, environ={}).resolve(None, overrides)

    assert config.agent_jvm_args == expected


def test_unknown_agent_is_rejected(tmp_path: Path) -> None:
    """Selecting an agent lucee.json does not define names the defined ones."""
    _write(tmp_path, {"name": "app", "agents": AGENTS})

    with pytest.raises(ConfigError, match="Unknown agent\\(s\\): nope.*apm, luceedebug, profiler"):
        ConfigLoader(tmp_path, environ={}).resolve(None, StartOverrides(enable_agents=("nope",)))


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        (StartOverrides(port=70000), "between 1 and 65535"),
        (StartOverrides(name="  "), "--name must not be empty"),
        (StartOverrides(version=""), "--version must not be empty"),
    ],
)
def test_invalid_overrides_raise(
    tmp_path: Path, overrides: StartOverrides, message: str
) -> None:
    """Bad override values are configuration errors."""
    _write(tmp_path, {"name": "app"})

    with pytest.raises(ConfigError, match=message):
        ConfigLoader(tmp_path, environ={}).resolve(None, overrides)
