"""Tests for the structured operation logger."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from luceectl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_writes_single_record(tmp_path: Path) -> None:
    """A completed scope appends one JSON line with steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("start", args={"env": "prod"}, target={"kind": "project"}) as op:
        op.set_lock_wait_ms(12)
        op.add_step("ports.assign", detail="8080")
        op.success("Instance started.", changed=3, warnings=["drift"])

    (record,) = _records(logger)
    assert record["command"] == "start"
    assert record["args"] == {"env": "prod"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"] == [{"name": "ports.assign", "status": "success", "detail": "8080"}]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == 3
    assert result["warnings"] == ["drift"]


def test_exception_marks_operation_failed(tmp_path: Path) -> None:
    """An exception escaping the scope is recorded as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("stop"):
            raise ValueError("boom")

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]


def test_scope_without_result_defaults_to_success(tmp_path: Path) -> None:
    """Scopes closed without an explicit result are recorded as successes."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("list"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_context_values_are_sanitised(tmp_path: Path) -> None:
    """Paths and arbitrary objects become JSON-safe strings."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("status", args={"path": Path("/srv/app")}) as op:
        op.warning("warned", context={"path": Path("/tmp/x"), "obj": Custom(), "n": [1, Path("a")]})

    (record,) = _records(logger)
    assert record["args"] == {"path": "/srv/app"}
    result = record["result"]
    assert isinstance(result, dict)
    assert result["warnings"] == ["warned"]
    assert result["context"] == {"path": "/tmp/x", "obj": "<custom>", "n": [1, "a"]}


def test_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The logger disables itself when the log directory cannot be created."""
    log_dir = tmp_path / "logs"
    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo") as op:
        op.success("done", changed=0)


def test_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures disable the logger instead of failing the command."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log_path
    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("demo") as op:
        op.success("done", changed=0)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)
