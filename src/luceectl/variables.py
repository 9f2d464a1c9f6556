"""Variable substitution for project configuration values.

Two placeholder syntaxes are recognised in string values:

* ``${VAR}`` / ``${VAR:-default}`` (legacy)
* ``#env:VAR#`` / ``#env:VAR:-default#``

Lookups consult the project ``.env`` file first, then the process
environment, then the inline default. Placeholders that resolve nowhere are
left untouched and reported through :attr:`VariableResolver.unresolved`.

Inside *protected* subtrees only the ``#env:`` form is expanded so that
``${VAR}`` tokens reach Lucee verbatim.
"""
from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path

LOGGER = logging.getLogger(__name__)

DOTENV_NAME = ".env"

_LEGACY_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_.]*)(?::-([^}]*))?\}")
_ENV_PATTERN = re.compile(r"#env:([A-Za-z_][A-Za-z0-9_.]*)(?::-([^#]*))?#")


def load_dotenv(path: Path) -> dict[str, str]:
    """Parse a ``.env`` file into a mapping (missing file yields ``{}``)."""
    if not path.is_file():
        return {}
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        if key:
            values[key] = value
    return values


class VariableResolver:
    """Expand placeholders using ``.env`` values, the environment and defaults."""

    def __init__(
        self,
        dotenv: Mapping[str, str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Capture the lookup sources; ``environ`` defaults to ``os.environ``."""
        self.dotenv = dict(dotenv or {})
        self.environ = dict(os.environ if environ is None else environ)
        self.unresolved: list[str] = []

    @classmethod
    def for_project(
        cls,
        project_dir: Path,
        environ: Mapping[str, str] | None = None,
    ) -> VariableResolver:
        """Return a resolver reading ``<project_dir>/.env``."""
        return cls(load_dotenv(project_dir / DOTENV_NAME), environ)

    def lookup(self, name: str, default: str | None = None) -> str | None:
        """Return the value for *name* following the documented precedence."""
        if name in self.dotenv:
            return self.dotenv[name]
        if name in self.environ:
            return self.environ[name]
        return default

    def substitute(self, value: str, *, protected: bool = False) -> str:
        """Return *value* with placeholders expanded."""
        result = _ENV_PATTERN.sub(self._replace, value)
        if not protected:
            result = _LEGACY_PATTERN.sub(self._replace, result)
        return result

    def resolve_tree(
        self,
        tree: object,
        *,
        protected: frozenset[tuple[str, ...]] = frozenset(),
        _path: tuple[str, ...] = (),
        _inside: bool = False,
    ) -> object:
        """Return a copy of *tree* with every string value substituted."""
        inside = _inside or _path in protected
        if isinstance(tree, str):
            return self.substitute(tree, protected=inside)
        if isinstance(tree, Mapping):
            return {
                key: self.resolve_tree(
                    item, protected=protected, _path=(*_path, str(key)), _inside=inside
                )
                for key, item in tree.items()
            }
        if isinstance(tree, list):
            return [
                self.resolve_tree(item, protected=protected, _path=_path, _inside=inside)
                for item in tree
            ]
        return tree

    def _replace(self, match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        value = self.lookup(name, default)
        if value is None:
            if name not in self.unresolved:
                self.unresolved.append(name)
                LOGGER.warning("Unresolved variable '%s' left in configuration.", name)
            return match.group(0)
        return value


__all__ = ["DOTENV_NAME", "VariableResolver", "load_dotenv"]
