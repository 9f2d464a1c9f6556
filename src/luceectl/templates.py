"""Jinja2 template rendering for generated instance artifacts."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateNotFound,
)


class TemplateError(RuntimeError):
    """Raised when a template cannot be located or rendered."""


@dataclass(slots=True)
class TemplateEngine:
    """Render built-in templates, allowing a directory of overrides to shadow them."""

    environment: Environment
    override_dir: Path | None = None

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine whose lookups consult *override_dir* first."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("luceectl", "templates"))
        environment = Environment(  # noqa: S701 - renders config files, not HTML
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        return cls(environment=environment, override_dir=override_dir)

    def has_template(self, name: str) -> bool:
        """Return True when *name* resolves to a template."""
        try:
            self.environment.get_template(name)
        except TemplateNotFound:
            return False
        return True

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self.environment.get_template(name)
        except TemplateNotFound as exc:
            raise TemplateError(f"Template '{name}' not found.") from exc
        return template.render(**dict(context))

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int | None = None,
    ) -> bool:
        """Render *name* into *destination*; return True when the file changed."""
        content = self.render_to_string(name, context)
        return write_if_changed(destination, content, mode=mode)


def write_if_changed(destination: Path, content: str, *, mode: int | None = None) -> bool:
    """Atomically write *content* to *destination* unless it already matches."""
    if destination.exists():
        try:
            current = destination.read_text(encoding="utf-8")
        except OSError:
            current = None
        if current == content:
            if mode is not None and (destination.stat().st_mode & 0o777) != mode:
                destination.chmod(mode)
            return False

    target_mode = mode
    if target_mode is None:
        target_mode = destination.stat().st_mode & 0o777 if destination.exists() else 0o644

    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, target_mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["TemplateEngine", "TemplateError", "write_if_changed"]
