"""On-disk registry of luceectl server instances.

Every instance owns ``<servers_dir>/<name>/`` and its ``instance.yml`` record.
The registry is a repository object: each call reads or writes the files on
demand, nothing is cached between calls. Records survive while the server is
stopped so their ports stay reserved until ``prune`` removes them.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage luceectl state. Install with `pip install luceectl`."
    ) from exc

LOGGER = logging.getLogger(__name__)

RECORD_FILE = "instance.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


class InstanceState(str, Enum):
    """Lifecycle states tracked for each instance."""

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class PortAssignment:
    """Ports reserved by one instance."""

    http: int
    shutdown: int
    jmx: int | None = None
    https: int | None = None

    def values(self) -> set[int]:
        """Return every reserved port."""
        return {port for port in (self.http, self.shutdown, self.jmx, self.https) if port}

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"http": self.http, "shutdown": self.shutdown, "jmx": self.jmx, "https": self.https}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PortAssignment:
        """Build an assignment from its serialised form."""
        try:
            return cls(
                http=int(data["http"]),  # type: ignore[arg-type]
                shutdown=int(data["shutdown"]),  # type: ignore[arg-type]
                jmx=_optional_int(data.get("jmx")),
                https=_optional_int(data.get("https")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StateRegistryError(f"Invalid port assignment: {dict(data)!r}") from exc


@dataclass(frozen=True)
class InstanceRecord:
    """Persisted description of a server instance."""

    name: str
    directory: Path
    ports: PortAssignment
    runtime_type: str = "lucee-express"
    project_dir: Path | None = None
    environment: str | None = None
    state: InstanceState = InstanceState.CREATED
    pid: int | None = None
    container_id: str | None = None
    host: str = "localhost"
    log_file: Path | None = None
    sandbox: bool = False
    updated_at: str = field(default_factory=lambda: _now())

    def to_dict(self) -> dict[str, object]:
        """Return the YAML representation."""
        return {
            "name": self.name,
            "directory": str(self.directory),
            "project_dir": str(self.project_dir) if self.project_dir else None,
            "environment": self.environment,
            "runtime_type": self.runtime_type,
            "host": self.host,
            "ports": self.ports.to_dict(),
            "state": self.state.value,
            "pid": self.pid,
            "container_id": self.container_id,
            "log_file": str(self.log_file) if self.log_file else None,
            "sandbox": self.sandbox,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> InstanceRecord:
        """Build a record from its YAML representation."""
        name = str(data.get("name") or "").strip()
        if not name:
            raise StateRegistryError("Instance record missing 'name'.")
        ports_raw = data.get("ports")
        if not isinstance(ports_raw, Mapping):
            raise StateRegistryError(f"Instance '{name}' has no port assignment.")
        try:
            state = InstanceState(str(data.get("state") or InstanceState.CREATED.value))
        except ValueError as exc:
            raise StateRegistryError(
                f"Instance '{name}' has unknown state {data.get('state')!r}."
            ) from exc
        project_dir = data.get("project_dir")
        log_file = data.get("log_file")
        container_id = data.get("container_id")
        environment = data.get("environment")
        return cls(
            name=name,
            directory=Path(str(data.get("directory") or "")),
            ports=PortAssignment.from_dict(ports_raw),
            runtime_type=str(data.get("runtime_type") or "lucee-express"),
            project_dir=Path(str(project_dir)) if project_dir else None,
            environment=str(environment) if environment else None,
            state=state,
            pid=_optional_int(data.get("pid")),
            container_id=str(container_id) if container_id else None,
            host=str(data.get("host") or "localhost"),
            log_file=Path(str(log_file)) if log_file else None,
            sandbox=bool(data.get("sandbox", False)),
            updated_at=str(data.get("updated_at") or _now()),
        )


@dataclass(frozen=True)
class InstanceRegistry:
    """Repository over ``<servers_dir>/<name>/instance.yml`` records."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def instance_dir(self, name: str) -> Path:
        """Return the directory owned by instance *name*."""
        _validate_name(name)
        return self.root / name

    def record_path(self, name: str) -> Path:
        """Return the record file for instance *name*."""
        return self.instance_dir(name) / RECORD_FILE

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, name: str) -> InstanceRecord | None:
        """Return the record for *name* or ``None`` when unknown."""
        path = self.record_path(name)
        if not path.exists():
            return None
        return InstanceRecord.from_dict(self._load(path))

    def require(self, name: str) -> InstanceRecord:
        """Return the record for *name* or raise :class:`StateRegistryError`."""
        record = self.get(name)
        if record is None:
            raise StateRegistryError(f"Instance '{name}' not found in registry.")
        return record

    def list_records(self) -> list[InstanceRecord]:
        """Return every readable record sorted by name."""
        return list(self._iter_records())

    def find_by_project(self, project_dir: Path) -> list[InstanceRecord]:
        """Return records created from *project_dir*."""
        target = Path(project_dir).expanduser().resolve()
        return [record for record in self._iter_records() if record.project_dir == target]

    def claimed_ports(self, *, exclude: str | None = None) -> set[int]:
        """Return every port reserved by records other than *exclude*."""
        claimed: set[int] = set()
        for record in self._iter_records():
            if record.name != exclude:
                claimed |= record.ports.values()
        return claimed

    def port_owner(self, port: int, *, exclude: str | None = None) -> str | None:
        """Return the name of the instance reserving *port*."""
        for record in self._iter_records():
            if record.name != exclude and port in record.ports.values():
                return record.name
        return None

    def unique_name(self, base: str, project_dir: Path) -> str:
        """Return *base*, suffixed when another project already uses it."""
        target = Path(project_dir).expanduser().resolve()
        candidate = base
        counter = 2
        while True:
            existing = self.get(candidate)
            if existing is None or existing.project_dir == target:
                return candidate
            candidate = f"{base}-{counter}"
            counter += 1

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def write(self, record: InstanceRecord) -> None:
        """Atomically persist *record*."""
        directory = self.instance_dir(record.name)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / RECORD_FILE
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{RECORD_FILE}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(record.to_dict(), handle, sort_keys=False)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def update(self, name: str, **changes: object) -> InstanceRecord:
        """Apply *changes* to the stored record and return the new version."""
        current = self.require(name)
        updated = replace(current, updated_at=_now(), **changes)  # type: ignore[arg-type]
        self.write(updated)
        return updated

    def remove(self, name: str) -> None:
        """Delete the instance directory for *name*."""
        directory = self.instance_dir(name)
        if not directory.exists():
            raise StateRegistryError(f"Instance '{name}' not found in registry.")
        shutil.rmtree(directory)

    # ------------------------------------------------------------------
    def _iter_records(self) -> Iterator[InstanceRecord]:
        if not self.root.is_dir():
            return
        for child in sorted(self.root.iterdir()):
            path = child / RECORD_FILE
            if not path.is_file():
                continue
            try:
                yield InstanceRecord.from_dict(self._load(path))
            except StateRegistryError as exc:
                LOGGER.warning("Skipping unreadable instance record %s: %s", path, exc)

    @staticmethod
    def _load(path: Path) -> Mapping[str, object]:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise StateRegistryError(f"Failed to read instance record {path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise StateRegistryError(f"Instance record {path} must contain a mapping.")
        return data


def _validate_name(name: str) -> None:
    if not name or name in {".", ".."} or "/" in name or "\\" in name:
        raise StateRegistryError(f"Invalid instance name {name!r}.")


def _optional_int(value: object | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise StateRegistryError(f"Expected an integer, got {value!r}.") from exc


def _now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


__all__ = [
    "InstanceRecord",
    "InstanceRegistry",
    "InstanceState",
    "PortAssignment",
    "StateRegistryError",
]
