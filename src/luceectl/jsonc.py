"""Parsing for JSON documents that carry ``//`` and ``/* */`` comments.

Comments are blanked out (newlines kept) before the text is handed to the
standard :mod:`json` decoder, so decoder errors still point at the right line
and column of the original file.
"""
from __future__ import annotations

import json
from pathlib import Path


class ConfigError(RuntimeError):
    """Raised when project configuration cannot be resolved."""


class ConfigParseError(ConfigError):
    """Raised when a configuration document is syntactically malformed."""

    def __init__(self, message: str, *, path: Path | None, line: int, column: int) -> None:
        """Record the location of the syntax error."""
        self.path = path
        self.line = line
        self.column = column
        self.reason = message
        where = f"{path}:" if path is not None else ""
        super().__init__(f"{where}{line}:{column}: {message}")


def strip_comments(text: str, *, path: Path | None = None) -> str:
    """Return *text* with comments outside string literals replaced by spaces."""
    out: list[str] = []
    index = 0
    length = len(text)
    in_string = False
    while index < length:
        char = text[index]
        if in_string:
            out.append(char)
            if char == "\\" and index + 1 < length:
                out.append(text[index + 1])
                index += 2
                continue
            if char == '"':
                in_string = False
            index += 1
            continue

        if char == '"':
            in_string = True
            out.append(char)
            index += 1
            continue

        nxt = text[index + 1] if index + 1 < length else ""
        if char == "/" and nxt == "/":
            end = text.find("\n", index)
            end = length if end == -1 else end
            out.append(" " * (end - index))
            index = end
            continue
        if char == "/" and nxt == "*":
            end = text.find("*/", index + 2)
            if end == -1:
                line, column = _position(text, index)
                raise ConfigParseError(
                    "Unterminated block comment", path=path, line=line, column=column
                )
            span = text[index : end + 2]
            out.append("".join("\n" if c == "\n" else " " for c in span))
            index = end + 2
            continue

        out.append(char)
        index += 1
    return "".join(out)


def loads(text: str, *, path: Path | None = None) -> dict[str, object]:
    """Parse a commented JSON object."""
    cleaned = strip_comments(text, path=path)
    if not cleaned.strip():
        return {}
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ConfigParseError(exc.msg, path=path, line=exc.lineno, column=exc.colno) from exc
    if not isinstance(data, dict):
        raise ConfigParseError(
            "Top-level value must be a JSON object", path=path, line=1, column=1
        )
    return data


def load(path: Path) -> dict[str, object]:
    """Read and parse the commented JSON file at *path*."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Unable to read {path}: {exc}") from exc
    return loads(text, path=path)


def _position(text: str, index: int) -> tuple[int, int]:
    line = text.count("\n", 0, index) + 1
    last_newline = text.rfind("\n", 0, index)
    return line, index - last_newline


__all__ = ["ConfigError", "ConfigParseError", "load", "loads", "strip_comments"]
