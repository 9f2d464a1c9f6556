"""Tests for the luceectl command line interface."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from luceectl import __version__
from luceectl.cli import app, exit_code_for
from luceectl.exit_codes import ExitCode
from luceectl.lockfile import LockViolationError
from luceectl.ports import PortConflictError
from luceectl.providers import RuntimeValidationError
from luceectl.state import StateRegistryError

runner = CliRunner()


def _env(tmp_path: Path) -> dict[str, str]:
    return {"LUCEECTL_HOME": str(tmp_path / "home"), "LUCEECTL_ENV": ""}


def _project(tmp_path: Path, payload: dict[str, object]) -> Path:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    (project / "lucee.json").write_text(json.dumps(payload), encoding="utf-8")
    return project


def _invoke(tmp_path: Path, project: Path, *args: str):
    return runner.invoke(app, ["--project", str(project), *args], env=_env(tmp_path))


def _flat(output: str) -> str:
    """Collapse Rich line wrapping so messages can be matched."""
    return " ".join(output.split())


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _last_operation(tmp_path: Path) -> dict[str, object]:
    lines = (tmp_path / "home" / "logs" / "operations.jsonl").read_text(
        encoding="utf-8"
    ).splitlines()
    return json.loads(lines[-1])


SHOP = {
    "name": "shop",
    "port": 8080,
    "environments": {"prod": {"port": 8200, "jvm": {"maxMemory": "2g"}}},
}


def test_version_flag(tmp_path: Path) -> None:
    """--version prints the package version and logs the operation."""
    result = runner.invoke(app, ["--version"], env=_env(tmp_path))

    assert result.exit_code == 0
    assert f"luceectl {__version__}" in result.stdout
    assert _last_operation(tmp_path)["command"] == "root --version"


def test_exit_code_mapping() -> None:
    """Domain errors map onto the documented exit codes."""
    assert exit_code_for(PortConflictError("busy", port=8080)) is ExitCode.CONFLICT
    assert exit_code_for(LockViolationError("locked")) is ExitCode.CONFLICT
    assert exit_code_for(RuntimeValidationError("missing")) is ExitCode.ENVIRONMENT
    assert exit_code_for(StateRegistryError("bad")) is ExitCode.VALIDATION
    assert exit_code_for(ValueError("other")) is ExitCode.VALIDATION


# ----------------------------------------------------------------------
# start
# ----------------------------------------------------------------------
def test_start_dry_run_writes_nothing(tmp_path: Path) -> None:
    """A dry run prints the plan and leaves no instance behind."""
    project = _project(tmp_path, SHOP)

    result = _invoke(tmp_path, project, "start", "--dry-run")

    assert result.exit_code == 0, result.stdout
    output = _flat(result.stdout)
    assert "Instance 'shop' would start on port" in output
    assert "Effective configuration" in output
    assert not (tmp_path / "home" / "servers").exists()
    operation = _last_operation(tmp_path)
    assert operation["command"] == "start"
    assert operation["result"]["status"] == "success"  # type: ignore[index]


def test_start_include_all_json(tmp_path: Path) -> None:
    """Preview flags imply a dry run and emit every section as JSON."""
    project = _project(tmp_path, {**SHOP, "https": {"enabled": True, "redirect": True}})

    result = _invoke(tmp_path, project, "start", "--env", "prod", "--include-all", "--json")

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["name"] == "shop"
    assert payload["environment"] == "prod"
    assert payload["effective_config"]["jvm"]["maxMemory"] == "2g"  # type: ignore[index]
    names = [section["name"] for section in payload["sections"]]  # type: ignore[union-attr]
    assert names == ["lucee", "tomcat-server", "tomcat-web", "https-keystore", "https-redirect"]
    assert not (tmp_path / "home" / "servers").exists()


def test_start_dry_run_reports_lock_drift(tmp_path: Path) -> None:
    """Editing a locked environment shows how to refresh the lock."""
    project = _project(tmp_path, SHOP)
    assert _invoke(tmp_path, project, "lock", "--env", "prod").exit_code == 0
    _project(tmp_path, {**SHOP, "environments": {"prod": {"port": 8300}}})

    result = _invoke(tmp_path, project, "start", "--env=prod", "--dry-run", "--json")

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["effective_config"]["port"] == 8200  # type: ignore[index]
    assert any(
        "luceectl lock --env=prod --update" in warning
        for warning in payload["warnings"]  # type: ignore[union-attr]
    )


def test_start_invalid_config_is_validation_error(tmp_path: Path) -> None:
    """Malformed lucee.json fails with exit code 2."""
    project = tmp_path / "project"
    project.mkdir()
    (project / "lucee.json").write_text('{"port": ', encoding="utf-8")

    result = _invoke(tmp_path, project, "start", "--dry-run")

    assert result.exit_code == int(ExitCode.VALIDATION)
    assert _last_operation(tmp_path)["result"]["rc"] == 2  # type: ignore[index]


def test_start_missing_catalina_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A tomcat runtime without CATALINA_HOME is an environment error."""
    monkeypatch.delenv("CATALINA_HOME", raising=False)
    project = _project(tmp_path, {"name": "shop", "runtime": {"type": "tomcat"}})

    result = _invoke(tmp_path, project, "start")

    assert result.exit_code == int(ExitCode.ENVIRONMENT)
    assert "CATALINA_HOME" in _flat(result.stdout)

    listing = _invoke(tmp_path, project, "list", "--json")
    payload = _extract_json(listing.stdout)
    [record] = payload["instances"]  # type: ignore[misc]
    assert record["name"] == "shop"
    assert record["state"] == "failed"
    assert record["running"] is False


# ----------------------------------------------------------------------
# Instance commands
# ----------------------------------------------------------------------
def test_list_without_instances(tmp_path: Path) -> None:
    """An empty registry renders a placeholder row or an empty JSON list."""
    project = _project(tmp_path, SHOP)

    table = _invoke(tmp_path, project, "list")
    assert table.exit_code == 0
    assert "(none)" in table.stdout

    as_json = _invoke(tmp_path, project, "list", "--json")
    assert _extract_json(as_json.stdout) == {"instances": []}


@pytest.mark.parametrize("command", ["stop", "status", "restart"])
def test_commands_without_instance(tmp_path: Path, command: str) -> None:
    """Commands that need an instance explain how to find one."""
    project = _project(tmp_path, SHOP)

    result = _invoke(tmp_path, project, command)

    assert result.exit_code == int(ExitCode.VALIDATION)
    assert "No instance has been started from" in _flat(result.stdout)


def test_stop_unknown_instance(tmp_path: Path) -> None:
    """Naming an unregistered instance is a validation error."""
    project = _project(tmp_path, SHOP)

    result = _invoke(tmp_path, project, "stop", "ghost")

    assert result.exit_code == int(ExitCode.VALIDATION)


def test_stop_all_dry_run(tmp_path: Path) -> None:
    """--all --dry-run lists nothing when no instance exists."""
    project = _project(tmp_path, SHOP)

    result = _invoke(tmp_path, project, "stop", "--all", "--dry-run")

    assert result.exit_code == 0
    assert "Would stop: (none)." in _flat(result.stdout)


# ----------------------------------------------------------------------
# lock / unlock / config
# ----------------------------------------------------------------------
def test_lock_unlock_cycle(tmp_path: Path) -> None:
    """Locking writes lucee-lock.json, relocking conflicts and unlock releases."""
    project = _project(tmp_path, SHOP)

    locked = _invoke(tmp_path, project, "lock", "--env", "prod")
    assert locked.exit_code == 0, locked.stdout
    assert "Locked environment 'prod' in lucee-lock.json." in _flat(locked.stdout)
    document = json.loads((project / "lucee-lock.json").read_text(encoding="utf-8"))
    assert "prod" in document["serverLocks"]

    again = _invoke(tmp_path, project, "lock", "--env", "prod")
    assert again.exit_code == int(ExitCode.CONFLICT)
    assert "--update" in _flat(again.stdout)

    assert _invoke(tmp_path, project, "lock", "--env", "prod", "--update").exit_code == 0

    status = _invoke(tmp_path, project, "lock", "--status", "--json")
    rows = _extract_json(status.stdout)["locks"]
    assert [row["environment"] for row in rows] == ["prod"]  # type: ignore[union-attr]

    released = _invoke(tmp_path, project, "unlock", "--env", "prod")
    assert "Unlocked environment 'prod'." in _flat(released.stdout)
    idle = _invoke(tmp_path, project, "unlock", "--env", "prod")
    assert "Environment 'prod' was not locked." in _flat(idle.stdout)


def test_lock_dry_run_does_not_write(tmp_path: Path) -> None:
    """lock --dry-run shows the snapshot without creating the lock file."""
    project = _project(tmp_path, SHOP)

    result = _invoke(tmp_path, project, "lock", "--env", "prod", "--dry-run", "--json")

    assert result.exit_code == 0
    assert _extract_json(result.stdout)["port"] == 8200
    assert not (project / "lucee-lock.json").exists()


def test_config_get_effective_and_raw(tmp_path: Path) -> None:
    """config get reads merged values by default and the file with --raw."""
    project = _project(tmp_path, SHOP)

    effective = _invoke(tmp_path, project, "config", "get", "jvm.maxMemory", "--env", "prod")
    assert effective.stdout.strip() == "2g"

    default = _invoke(tmp_path, project, "config", "get", "jvm.maxMemory", "--json")
    assert _extract_json(default.stdout) == {"key": "jvm.maxMemory", "value": "512m"}

    missing = _invoke(tmp_path, project, "config", "get", "jvm.maxMemory", "--raw")
    assert missing.exit_code == int(ExitCode.VALIDATION)


def test_config_set_writes_typed_value(tmp_path: Path) -> None:
    """config set coerces numbers and preserves the rest of the file."""
    project = _project(tmp_path, SHOP)

    result = _invoke(tmp_path, project, "config", "set", "monitoring.jmx.port", "9100")

    assert result.exit_code == 0, result.stdout
    data = json.loads((project / "lucee.json").read_text(encoding="utf-8"))
    assert data["monitoring"] == {"jmx": {"port": 9100}}
    assert data["environments"] == SHOP["environments"]


def test_config_set_refused_while_locked(tmp_path: Path) -> None:
    """Writes are refused with exit 5 while any environment is locked."""
    project = _project(tmp_path, SHOP)
    assert _invoke(tmp_path, project, "lock", "--env", "prod").exit_code == 0
    before = (project / "lucee.json").read_bytes()

    result = _invoke(tmp_path, project, "config", "set", "port", "9000")

    assert result.exit_code == int(ExitCode.CONFLICT)
    assert "locked for environment(s): prod" in _flat(result.stdout)
    assert (project / "lucee.json").read_bytes() == before

    preview = _invoke(tmp_path, project, "config", "set", "port", "9000", "--dry-run")
    assert preview.exit_code == 0
    assert (project / "lucee.json").read_bytes() == before


# ----------------------------------------------------------------------
# prune
# ----------------------------------------------------------------------
def _failed_instance(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.delenv("CATALINA_HOME", raising=False)
    project = _project(tmp_path, {"name": "shop", "runtime": {"type": "tomcat"}})
    assert _invoke(tmp_path, project, "start").exit_code == int(ExitCode.ENVIRONMENT)
    return project


def test_prune_asks_for_confirmation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Declining the prompt keeps the stopped instance."""
    project = _failed_instance(tmp_path, monkeypatch)

    result = runner.invoke(
        app, ["--project", str(project), "prune"], env=_env(tmp_path), input="n\n"
    )

    assert result.exit_code == 0
    assert "Prune cancelled." in result.stdout
    assert (tmp_path / "home" / "servers" / "shop").exists()
    assert _last_operation(tmp_path)["result"]["status"] == "warning"  # type: ignore[index]


def test_prune_force_skips_prompt(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """--force removes stopped instances without prompting."""
    project = _failed_instance(tmp_path, monkeypatch)

    result = _invoke(tmp_path, project, "prune", "--force")

    assert result.exit_code == 0, result.stdout
    assert "Pruned 'shop'." in _flat(result.stdout)
    assert not (tmp_path / "home" / "servers" / "shop").exists()


# ----------------------------------------------------------------------
# start overrides
# ----------------------------------------------------------------------
AGENT_SHOP = {
    **SHOP,
    "agents": {
        "luceedebug": {"enabled": True, "jvmArgs": ["-javaagent:/debug.jar"]},
        "profiler": {"enabled": False, "jvmArgs": ["-javaagent:/profiler.jar"]},
    },
}


def test_start_overrides_reach_the_plan(tmp_path: Path) -> None:
    """Override options change this start only and are logged."""
    project = _project(tmp_path, AGENT_SHOP)
    before = (project / "lucee.json").read_bytes()

    result = _invoke(
        tmp_path,
        project,
        "start",
        "--env",
        "prod",
        "--dry-run",
        "--json",
        "--name",
        "demo",
        "--port",
        "8300",
        "--version",
        "7.0.0.1",
        "--webroot",
        "public",
        "--enable-agent",
        "profiler",
        "--disable-agent",
        "luceedebug",
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    config = payload["effective_config"]
    assert payload["name"] == "demo"
    assert config["port"] == 8300  # type: ignore[index]
    assert config["version"] == "7.0.0.1"  # type: ignore[index]
    assert config["webroot"] == "public"  # type: ignore[index]
    assert config["jvm"]["maxMemory"] == "2g"  # type: ignore[index]
    agents = config["agents"]  # type: ignore[index]
    assert agents["profiler"]["enabled"] is True
    assert agents["luceedebug"]["enabled"] is False
    assert (project / "lucee.json").read_bytes() == before
    args = _last_operation(tmp_path)["args"]
    assert args["overrides"]["port"] == 8300  # type: ignore[index]


def test_start_no_agents_and_agent_list(tmp_path: Path) -> None:
    """--no-agents clears every agent and --agents replaces the enabled set."""
    project = _project(tmp_path, AGENT_SHOP)

    cleared = _invoke(tmp_path, project, "start", "--dry-run", "--json", "--no-agents")
    listed = _invoke(tmp_path, project, "start", "--dry-run", "--json", "--agents", "profiler")

    assert cleared.exit_code == 0, cleared.stdout
    agents = _extract_json(cleared.stdout)["effective_config"]["agents"]  # type: ignore[index]
    assert not any(agent["enabled"] for agent in agents.values())
    assert listed.exit_code == 0, listed.stdout
    agents = _extract_json(listed.stdout)["effective_config"]["agents"]  # type: ignore[index]
    assert {key for key, agent in agents.items() if agent["enabled"]} == {"profiler"}


def test_start_unknown_agent_is_validation_error(tmp_path: Path) -> None:
    """Selecting an undefined agent fails with exit code 2."""
    project = _project(tmp_path, AGENT_SHOP)

    result = _invoke(tmp_path, project, "start", "--dry-run", "--enable-agent", "nope")

    assert result.exit_code == int(ExitCode.VALIDATION)
    assert "Unknown agent(s): nope" in _flat(result.stdout)


def test_start_sandbox_rejects_dry_run(tmp_path: Path) -> None:
    """--sandbox cannot be previewed."""
    project = _project(tmp_path, SHOP)

    result = _invoke(tmp_path, project, "start", "--sandbox", "--include-lucee")

    assert result.exit_code == int(ExitCode.VALIDATION)
    assert "--sandbox cannot be combined" in _flat(result.stdout)
    assert not (tmp_path / "home" / "servers").exists()


def test_stop_removes_sandbox_instance(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A sandbox instance disappears from the registry once stopped."""
    monkeypatch.delenv("CATALINA_HOME", raising=False)
    project = _project(tmp_path, {"name": "shop", "runtime": {"type": "tomcat"}})
    started = _invoke(tmp_path, project, "start", "--sandbox")
    assert started.exit_code == int(ExitCode.ENVIRONMENT)
    assert (tmp_path / "home" / "servers" / "shop-sandbox").exists()

    result = _invoke(tmp_path, project, "stop", "shop-sandbox")

    assert result.exit_code == 0, result.stdout
    assert "Sandbox instance 'shop-sandbox' removed." in _flat(result.stdout)
    assert not (tmp_path / "home" / "servers" / "shop-sandbox").exists()


# ----------------------------------------------------------------------
# config set and comments
# ----------------------------------------------------------------------
def test_config_set_warns_when_comments_are_dropped(tmp_path: Path) -> None:
    """Rewriting a commented lucee.json says the comments are gone."""
    project = tmp_path / "project"
    project.mkdir()
    (project / "lucee.json").write_text(
        '{\n  // dev server\n  "name": "shop",\n  "port": 8080\n}\n', encoding="utf-8"
    )

    result = _invoke(tmp_path, project, "config", "set", "port", "9000")

    assert result.exit_code == 0, result.stdout
    assert "Comments in lucee.json are not preserved" in _flat(result.stdout)
    assert "//" not in (project / "lucee.json").read_text(encoding="utf-8")
    assert _last_operation(tmp_path)["result"]["warnings"]  # type: ignore[index]

    plain = _invoke(tmp_path, project, "config", "set", "port", "9001")
    assert "not preserved" not in _flat(plain.stdout)


def test_config_set_help_mentions_comments(tmp_path: Path) -> None:
    """The command help documents that comments are not kept."""
    result = runner.invoke(app, ["config", "set", "--help"], env=_env(tmp_path))

    assert result.exit_code == 0
    assert "comments in lucee.json are not preserved" in _flat(result.stdout)
