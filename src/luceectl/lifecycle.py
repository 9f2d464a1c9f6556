"""Orchestrate ``start``/``stop``/``restart`` across the engine components.

``start`` runs the pipeline in order: configuration (through the lock
manager so locked snapshots win), port assignment, keystore provisioning,
artifact generation via the runtime provider, then the supervised launch.
:meth:`InstanceLifecycle.plan` performs the read-only first half and is
shared with the dry-run previewer.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from .certs import CertificateManager, KeystorePaths
from .instance_config import DEFAULT_CONFIG_NAME, ConfigLoader, EffectiveConfig, StartOverrides
from .lockfile import DriftWarning, LockManager
from .ports import PortAllocator
from .providers import (
    MaterializeContext,
    RunnableInstance,
    RuntimeKind,
    RuntimeProvider,
    materialize,
)
from .settings import AppSettings
from .state.registry import (
    InstanceRecord,
    InstanceRegistry,
    InstanceState,
    PortAssignment,
    StateRegistryError,
)
from .supervisor import ProcessSupervisor
from .templates import TemplateEngine, write_if_changed

LOGGER = logging.getLogger(__name__)

PROJECT_MARKER = ".project-path"
ENVIRONMENT_MARKER = ".environment"
TLS_RUNTIMES = {RuntimeKind.EXPRESS, RuntimeKind.TOMCAT}


class InstanceAlreadyRunningError(RuntimeError):
    """Raised when starting an instance that is already running."""


@dataclass(frozen=True)
class InstancePlan:
    """Read-only resolution of what ``start`` would launch."""

    name: str
    instance_dir: Path
    config: EffectiveConfig
    ports: PortAssignment
    provider: RuntimeProvider
    existing: InstanceRecord | None
    drift: DriftWarning | None
    warnings: tuple[str, ...]
    url_rewrite: bool = False
    sandbox: bool = False

    @property
    def uses_tls(self) -> bool:
        """Return True when a keystore is provisioned for this plan."""
        return self.config.https.enabled and self.provider.kind in TLS_RUNTIMES


@dataclass(frozen=True)
class StartResult:
    """Outcome of a successful start."""

    record: InstanceRecord
    plan: InstancePlan
    runnable: RunnableInstance
    keystore: KeystorePaths | None

    @property
    def warnings(self) -> list[str]:
        """Return configuration, drift and runtime warnings together."""
        messages = list(self.plan.warnings)
        if self.plan.drift is not None:
            messages.append(self.plan.drift.message)
        messages.extend(self.runnable.warnings)
        return messages


class InstanceLifecycle:
    """Start, stop and restart instances defined by project directories."""

    def __init__(
        self,
        *,
        settings: AppSettings,
        registry: InstanceRegistry,
        allocator: PortAllocator,
        certificates: CertificateManager,
        supervisor: ProcessSupervisor,
        templates: TemplateEngine,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Bind the lifecycle to the shared engine components."""
        self.settings = settings
        self.registry = registry
        self.allocator = allocator
        self.certificates = certificates
        self.supervisor = supervisor
        self.templates = templates
        self.environ = dict(os.environ if environ is None else environ)

    def loader(self, project_dir: Path, config_name: str = DEFAULT_CONFIG_NAME) -> ConfigLoader:
        """Return a loader for *project_dir* sharing this lifecycle's environment."""
        return ConfigLoader(Path(project_dir), config_name, self.environ)

    # ------------------------------------------------------------------
    def plan(
        self,
        project_dir: Path,
        env_key: str | None = None,
        *,
        config_name: str = DEFAULT_CONFIG_NAME,
        overrides: StartOverrides | None = None,
        sandbox: bool = False,
    ) -> InstancePlan:
        """Resolve configuration, instance name and ports without writing anything.

        Sandbox instances get a separate ``<name>-sandbox`` instance unless
        *overrides* names one explicitly.
        """
        loader = self.loader(project_dir, config_name)
        config, drift = LockManager(loader).resolve_for_start(env_key, overrides)
        if sandbox and (overrides is None or overrides.name is None):
            config = replace(config, name=f"{config.name}-sandbox")
        provider = RuntimeProvider.from_config(config.runtime)
        name = self.registry.unique_name(config.name, loader.project_dir)
        existing = self.registry.get(name)
        if sandbox and existing is not None and not existing.sandbox:
            raise StateRegistryError(
                f"Instance '{name}' already exists and is not a sandbox; choose another --name."
            )
        ports = self.allocator.assign(config, self.registry, name)
        url_rewrite, rewrite_warning = provider.url_rewrite(config)
        warnings = list(loader.warnings)
        if rewrite_warning:
            warnings.append(rewrite_warning)
        return InstancePlan(
            name=name,
            instance_dir=self.registry.instance_dir(name),
            config=config,
            ports=ports,
            provider=provider,
            existing=existing,
            drift=drift,
            warnings=tuple(warnings),
            url_rewrite=url_rewrite,
            sandbox=sandbox,
        )

    def start(
        self,
        project_dir: Path,
        env_key: str | None = None,
        *,
        config_name: str = DEFAULT_CONFIG_NAME,
        overrides: StartOverrides | None = None,
        sandbox: bool = False,
    ) -> StartResult:
        """Start the instance defined by *project_dir*.

        A *sandbox* instance is removed from the registry when it is stopped.
        """
        plan = self.plan(
            project_dir, env_key, config_name=config_name, overrides=overrides, sandbox=sandbox
        )
        if plan.drift is not None:
            LOGGER.warning(plan.drift.message)
        existing = plan.existing
        if existing is not None and self.supervisor.status(existing).running:
            raise InstanceAlreadyRunningError(
                f"Instance '{plan.name}' is already running on port {existing.ports.http}. "
                f"Run 'luceectl stop {plan.name}' or 'luceectl restart {plan.name}'."
            )

        self.allocator.check_bindable(
            plan.ports,
            owner_of=lambda port: self.registry.port_owner(port, exclude=plan.name),
        )
        record = self._persist_record(plan)
        self._write_markers(plan)

        keystore = None
        if plan.uses_tls:
            keystore = self.certificates.ensure_keystore(plan.instance_dir, plan.config.host)

        context = MaterializeContext(
            name=plan.name,
            config=plan.config,
            ports=plan.ports,
            instance_dir=plan.instance_dir,
            settings=self.settings,
            templates=self.templates,
            keystore=keystore,
            environ=self.environ,
            url_rewrite=plan.url_rewrite,
        )
        try:
            runnable = materialize(plan.provider, context)
        except Exception:
            self.registry.update(plan.name, state=InstanceState.FAILED)
            raise
        record = self.supervisor.start(record, runnable)
        return StartResult(record=record, plan=plan, runnable=runnable, keystore=keystore)

    def stop(self, name: str) -> InstanceRecord:
        """Stop instance *name*."""
        return self.supervisor.stop(self.registry.require(name))

    def restart(self, name: str) -> StartResult:
        """Stop *name* and start it again from its project directory."""
        record = self.registry.require(name)
        if record.sandbox:
            raise StateRegistryError(
                f"Instance '{name}' is a sandbox and is removed when stopped; start it again "
                "with 'luceectl start --sandbox'."
            )
        if record.project_dir is None:
            raise StateRegistryError(
                f"Instance '{name}' has no recorded project directory; start it from the "
                "project with 'luceectl start'."
            )
        self.supervisor.stop(record)
        return self.start(record.project_dir, record.environment)

    # ------------------------------------------------------------------
    def _persist_record(self, plan: InstancePlan) -> InstanceRecord:
        project_dir = plan.config.project_dir.expanduser().resolve()
        if plan.existing is None:
            record = InstanceRecord(
                name=plan.name,
                directory=plan.instance_dir,
                ports=plan.ports,
                runtime_type=plan.provider.kind.value,
                project_dir=project_dir,
                environment=plan.config.environment,
                host=plan.config.host,
                sandbox=plan.sandbox,
            )
        else:
            record = replace(
                plan.existing,
                ports=plan.ports,
                runtime_type=plan.provider.kind.value,
                project_dir=project_dir,
                environment=plan.config.environment,
                host=plan.config.host,
                pid=None,
                sandbox=plan.sandbox,
            )
        self.registry.write(record)
        return record

    def _write_markers(self, plan: InstancePlan) -> None:
        directory = plan.instance_dir
        write_if_changed(directory / PROJECT_MARKER, str(plan.config.project_dir.resolve()))
        marker = directory / ENVIRONMENT_MARKER
        if plan.config.environment:
            write_if_changed(marker, plan.config.environment)
        else:
            marker.unlink(missing_ok=True)


__all__ = [
    "InstanceAlreadyRunningError",
    "InstanceLifecycle",
    "InstancePlan",
    "StartResult",
]
