"""Template engine tests."""
from __future__ import annotations

import stat
from pathlib import Path

import pytest

from luceectl.templates import TemplateEngine, TemplateError, write_if_changed


def test_builtin_templates_render() -> None:
    """Built-in templates render with their expected context."""
    engine = TemplateEngine.with_overrides(None)

    rendered = engine.render_to_string(
        "tomcat/setenv.sh.j2", {"name": "demo", "catalina_opts": "-Xmx512m"}
    )

    assert rendered.startswith("#!/bin/sh")
    assert 'BASE_CATALINA_OPTS="-Xmx512m"' in rendered
    assert "server 'demo'" in rendered


def test_override_directory_shadows_builtin(tmp_path: Path) -> None:
    """Templates under the override directory win over packaged ones."""
    override = tmp_path / "templates" / "tomcat"
    override.mkdir(parents=True)
    (override / "setenv.sh.j2").write_text("custom {{ name }}\n", encoding="utf-8")

    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    assert engine.render_to_string("tomcat/setenv.sh.j2", {"name": "x"}) == "custom x\n"
    assert engine.has_template("tomcat/server.xml.j2")


def test_missing_template_raises() -> None:
    """Unknown templates raise TemplateError."""
    engine = TemplateEngine.with_overrides(None)

    assert engine.has_template("nope.j2") is False
    with pytest.raises(TemplateError):
        engine.render_to_string("nope.j2", {})


def test_render_to_path_reports_changes(tmp_path: Path) -> None:
    """render_to_path returns False when the rendered content is unchanged."""
    engine = TemplateEngine.with_overrides(None)
    target = tmp_path / "bin" / "setenv.sh"
    context = {"name": "demo", "catalina_opts": ""}

    assert engine.render_to_path("tomcat/setenv.sh.j2", target, context, mode=0o755) is True
    assert stat.S_IMODE(target.stat().st_mode) == 0o755
    assert engine.render_to_path("tomcat/setenv.sh.j2", target, context, mode=0o755) is False


def test_write_if_changed_keeps_mtime_for_identical_content(tmp_path: Path) -> None:
    """Identical content leaves the file untouched."""
    target = tmp_path / "file.txt"
    assert write_if_changed(target, "hello") is True
    before = target.stat().st_mtime_ns

    assert write_if_changed(target, "hello") is False
    assert target.stat().st_mtime_ns == before

    assert write_if_changed(target, "changed") is True
    assert target.read_text(encoding="utf-8") == "changed"
    assert list(tmp_path.iterdir()) == [target]
