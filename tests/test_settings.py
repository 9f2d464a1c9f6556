"""Application settings loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from luceectl.settings import AppSettings, SettingsError, load_settings


def test_load_settings_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply and every directory derives from the home directory."""
    settings = load_settings(env={"LUCEECTL_HOME": str(tmp_path / "home")})

    assert isinstance(settings, AppSettings)
    home = tmp_path / "home"
    assert settings.home == home
    assert settings.settings_file == home / "settings.yml"
    assert settings.servers_dir == home / "servers"
    assert settings.express_dir == home / "express"
    assert settings.run_dir == home / "run"
    assert settings.logs_dir == home / "logs"
    assert settings.lock_timeout == 30.0
    assert settings.ports.http_range == (8000, 8999)
    assert settings.ports.shutdown_range == (9000, 9999)
    assert settings.supervisor.start_timeout == 30.0
    assert settings.supervisor.stop_timeout == 10.0
    assert settings.tls.generator == "auto"
    assert settings.default_environment is None


def test_load_settings_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from settings.yml beneath the home directory."""
    home = tmp_path / "home"
    home.mkdir()
    (home / "settings.yml").write_text(
        "lock_timeout: 5\n"
        "ports:\n"
        "  http_range: [8100, 8199]\n"
        "  bind_host: 127.0.0.1\n"
        "supervisor:\n"
        "  start_timeout: 60\n"
        "tls:\n"
        "  generator: cryptography\n",
        encoding="utf-8",
    )

    settings = load_settings(env={"LUCEECTL_HOME": str(home)})

    assert settings.lock_timeout == 5.0
    assert settings.ports.http_range == (8100, 8199)
    assert settings.ports.bind_host == "127.0.0.1"
    assert settings.supervisor.start_timeout == 60.0
    assert settings.tls.generator == "cryptography"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """LUCEECTL_* variables override file values and nest on double underscores."""
    home = tmp_path / "home"
    home.mkdir()
    (home / "settings.yml").write_text("supervisor:\n  stop_timeout: 3\n", encoding="utf-8")
    env = {
        "LUCEECTL_HOME": str(home),
        "LUCEECTL_SUPERVISOR__STOP_TIMEOUT": "7",
        "LUCEECTL_PORTS__SHUTDOWN_RANGE": "9100-9199",
        "LUCEECTL_ENV": "prod",
    }

    settings = load_settings(env=env)

    assert settings.supervisor.stop_timeout == 7.0
    assert settings.ports.shutdown_range == (9100, 9199)
    assert settings.default_environment == "prod"


def test_programmatic_overrides_win(tmp_path: Path) -> None:
    """Overrides passed by the CLI beat environment values."""
    env = {"LUCEECTL_HOME": str(tmp_path), "LUCEECTL_LOCK_TIMEOUT": "12"}

    settings = load_settings(env=env, overrides={"lock_timeout": 2.5})

    assert settings.lock_timeout == 2.5


def test_explicit_settings_file(tmp_path: Path) -> None:
    """An explicit settings path replaces <home>/settings.yml."""
    custom = tmp_path / "custom.yml"
    custom.write_text(f"servers_dir: {tmp_path / 'srv'}\n", encoding="utf-8")

    settings = load_settings(custom, env={"LUCEECTL_HOME": str(tmp_path / "home")})

    assert settings.settings_file == custom
    assert settings.servers_dir == tmp_path / "srv"


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    """Unknown top-level and section keys raise SettingsError."""
    home = tmp_path / "home"
    home.mkdir()
    (home / "settings.yml").write_text("bogus: 1\n", encoding="utf-8")
    with pytest.raises(SettingsError, match="Unknown settings keys: bogus"):
        load_settings(env={"LUCEECTL_HOME": str(home)})

    (home / "settings.yml").write_text("ports:\n  base: 1\n", encoding="utf-8")
    with pytest.raises(SettingsError, match="Unknown ports settings keys: base"):
        load_settings(env={"LUCEECTL_HOME": str(home)})


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("ports:\n  http_range: [9000, 8000]\n", "ports.http_range"),
        ("supervisor:\n  start_timeout: 0\n", "supervisor.start_timeout"),
        ("tls:\n  generator: openssl\n", "Unsupported certificate generator"),
        ("tls:\n  validity_days: -1\n", "tls.validity_days"),
        ("- not\n- a mapping\n", "must contain a mapping"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, body: str, message: str) -> None:
    """Malformed values surface as SettingsError with the offending key."""
    home = tmp_path / "home"
    home.mkdir()
    (home / "settings.yml").write_text(body, encoding="utf-8")

    with pytest.raises(SettingsError, match=message):
        load_settings(env={"LUCEECTL_HOME": str(home)})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """to_dict renders paths as strings and ranges as lists."""
    settings = load_settings(env={"LUCEECTL_HOME": str(tmp_path)})

    data = settings.to_dict()

    assert data["home"] == str(tmp_path)
    assert data["ports"]["http_range"] == [8000, 8999]  # type: ignore[index]
    assert data["runtime"]["docker_bin"] == "docker"  # type: ignore[index]
