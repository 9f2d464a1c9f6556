"""Per-environment configuration snapshots stored in ``lucee-lock.json``.

A lock freezes the effective configuration of one environment so later
starts reuse it verbatim even when ``lucee.json`` changes. Unlocking keeps
the entry for auditing and only flips ``locked`` to ``false``.
"""
from __future__ import annotations

import hashlib
import json
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .instance_config import (
    DEFAULT_ENV_KEY,
    ConfigError,
    ConfigLoader,
    EffectiveConfig,
    StartOverrides,
)

LOCK_FILE_NAME = "lucee-lock.json"
LOCKFILE_VERSION = 1


class AlreadyLockedError(RuntimeError):
    """Raised when locking an environment that already holds an active lock."""


class LockViolationError(RuntimeError):
    """Raised when a write to ``lucee.json`` is attempted while locks are active."""


@dataclass(frozen=True)
class LockEntry:
    """Snapshot of one environment's effective configuration."""

    environment: str
    locked: bool
    config_file: str
    config_hash: str
    effective_config: dict[str, object]
    locked_at: str

    def to_dict(self) -> dict[str, object]:
        """Return the on-disk representation."""
        return {
            "environment": self.environment,
            "locked": self.locked,
            "configFile": self.config_file,
            "configHash": self.config_hash,
            "effectiveConfig": self.effective_config,
            "lockedAt": self.locked_at,
        }

    @classmethod
    def from_dict(cls, key: str, data: Mapping[str, object]) -> LockEntry:
        """Build an entry from its on-disk representation."""
        snapshot = data.get("effectiveConfig")
        return cls(
            environment=str(data.get("environment") or key),
            locked=bool(data.get("locked", False)),
            config_file=str(data.get("configFile") or ""),
            config_hash=str(data.get("configHash") or ""),
            effective_config=dict(snapshot) if isinstance(snapshot, Mapping) else {},
            locked_at=str(data.get("lockedAt") or ""),
        )


@dataclass(frozen=True)
class DriftWarning:
    """The live configuration no longer matches a locked snapshot."""

    environment: str
    locked_hash: str
    current_hash: str

    @property
    def message(self) -> str:
        """Return a human readable description with remedies."""
        flag = _env_flag(self.environment)
        return (
            f"Configuration drift detected for environment '{self.environment}': "
            f"{LOCK_FILE_NAME} was locked from hash {self.locked_hash[:12]} but the current "
            f"file hashes to {self.current_hash[:12]}. Using the locked snapshot. Run "
            f"'luceectl lock{flag} --update' to refresh it or "
            f"'luceectl unlock{flag}' to use the live file."
        )


def hash_bytes(payload: bytes) -> str:
    """Return the SHA-256 hex digest of *payload*."""
    return hashlib.sha256(payload).hexdigest()


class LockManager:
    """Read and write ``lucee-lock.json`` beside the project configuration."""

    def __init__(self, loader: ConfigLoader) -> None:
        """Bind the manager to the loader of the project it guards."""
        self.loader = loader
        self.path = loader.project_dir / LOCK_FILE_NAME

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def entries(self) -> dict[str, LockEntry]:
        """Return every stored entry keyed by environment."""
        document = self._read()
        raw_locks = document.get("serverLocks")
        if not isinstance(raw_locks, Mapping):
            return {}
        return {
            str(key): LockEntry.from_dict(str(key), value)
            for key, value in raw_locks.items()
            if isinstance(value, Mapping)
        }

    def active_environments(self) -> list[str]:
        """Return environment keys whose lock is active."""
        return sorted(key for key, entry in self.entries().items() if entry.locked)

    def status(self) -> list[dict[str, object]]:
        """Return a summary row per stored entry for display."""
        current_hash = hash_bytes(self.loader.raw_bytes())
        rows: list[dict[str, object]] = []
        for key, entry in sorted(self.entries().items()):
            rows.append(
                {
                    "environment": key,
                    "locked": entry.locked,
                    "locked_at": entry.locked_at,
                    "config_file": entry.config_file,
                    "drift": entry.locked and entry.config_hash != current_hash,
                }
            )
        return rows

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def lock(self, env_key: str | None = None, *, update: bool = False) -> LockEntry:
        """Capture the effective configuration for *env_key*."""
        key = _entry_key(env_key)
        existing = self.entries().get(key)
        if existing is not None and existing.locked and not update:
            flag = _env_flag(key)
            raise AlreadyLockedError(
                f"Environment '{key}' is already locked in {LOCK_FILE_NAME}. "
                f"Run 'luceectl lock{flag} --update' to refresh the snapshot or "
                f"'luceectl unlock{flag}' to release it."
            )

        raw = self.loader.raw_bytes()
        if not raw:
            raise ConfigError(f"Cannot lock: {self.loader.config_path} does not exist.")
        effective = self.loader.resolve(None if key == DEFAULT_ENV_KEY else key)
        entry = LockEntry(
            environment=key,
            locked=True,
            config_file=self.loader.config_name,
            config_hash=hash_bytes(raw),
            effective_config=effective.to_dict(),
            locked_at=_now(),
        )
        self._store(key, entry)
        return entry

    def unlock(self, env_key: str | None = None) -> bool:
        """Deactivate the lock for *env_key*; return True if one was active."""
        key = _entry_key(env_key)
        existing = self.entries().get(key)
        if existing is None or not existing.locked:
            return False
        self._store(
            key,
            LockEntry(
                environment=existing.environment,
                locked=False,
                config_file=existing.config_file,
                config_hash=existing.config_hash,
                effective_config=existing.effective_config,
                locked_at=existing.locked_at,
            ),
        )
        return True

    def resolve_for_start(
        self,
        env_key: str | None = None,
        overrides: StartOverrides | None = None,
    ) -> tuple[EffectiveConfig, DriftWarning | None]:
        """Return the locked snapshot when active, otherwise a fresh resolution.

        *overrides* apply on top of either source.
        """
        key = _entry_key(env_key)
        entry = self.entries().get(key)
        if entry is None or not entry.locked:
            env = None if key == DEFAULT_ENV_KEY else key
            return self.loader.resolve(env, overrides), None

        config = EffectiveConfig.from_dict(entry.effective_config, self.loader.project_dir)
        if overrides is not None:
            config = overrides.apply(config)
        current_hash = hash_bytes(self.loader.raw_bytes())
        drift = None
        if current_hash != entry.config_hash:
            drift = DriftWarning(
                environment=key,
                locked_hash=entry.config_hash,
                current_hash=current_hash,
            )
        return config, drift

    def ensure_writable(self, *, dry_run: bool = False) -> None:
        """Refuse configuration writes while any environment is locked."""
        if dry_run:
            return
        active = self.active_environments()
        if not active:
            return
        joined = ", ".join(active)
        raise LockViolationError(
            f"{self.loader.config_name} is locked for environment(s): {joined}. "
            "Run 'luceectl lock --env=<env> --update' after editing, or "
            "'luceectl unlock --env=<env>' to release the lock first."
        )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    def _read(self) -> dict[str, object]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Failed to parse {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{self.path} must contain a JSON object.")
        return data

    def _store(self, key: str, entry: LockEntry) -> None:
        document = self._read()
        locks = document.get("serverLocks")
        locks_map = dict(locks) if isinstance(locks, Mapping) else {}
        locks_map[key] = entry.to_dict()
        payload = {
            "lockfileVersion": LOCKFILE_VERSION,
            "generatedAt": _now(),
            "serverLocks": locks_map,
        }

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)


def _entry_key(env_key: str | None) -> str:
    if env_key is None or not env_key.strip():
        return DEFAULT_ENV_KEY
    return env_key.strip()


def _env_flag(key: str) -> str:
    return "" if key == DEFAULT_ENV_KEY else f" --env={key}"


def _now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


__all__ = [
    "AlreadyLockedError",
    "DriftWarning",
    "LOCK_FILE_NAME",
    "LockEntry",
    "LockManager",
    "LockViolationError",
    "hash_bytes",
]
