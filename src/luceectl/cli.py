"""Typer-powered command line interface for ``luceectl``.

Commands operate on the project in the current directory (or ``--project``)
and on the instance registry beneath ``LUCEECTL_HOME``. Every command records
a structured operation in ``<logs>/operations.jsonl``; mutating commands take
advisory locks first so concurrent invocations do not interleave.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from . import __version__, jsonc
from .artifacts import ArtifactError
from .certs import CertificateError, CertificateManager, CertificateToolingMissingError
from .exit_codes import ExitCode
from .instance_config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    ConfigLoader,
    StartOverrides,
    get_value,
    set_value,
)
from .lifecycle import InstanceAlreadyRunningError, InstanceLifecycle, StartResult
from .locking import AdvisoryLocks, LockTimeoutError
from .lockfile import AlreadyLockedError, LockManager, LockViolationError
from .logging import OperationScope, StructuredLogger
from .ports import PortAllocator, PortConflictError, PortExhaustedError
from .preview import (
    SECTION_KEYSTORE,
    SECTION_LUCEE,
    SECTION_REDIRECT,
    SECTION_SERVER_XML,
    SECTION_WEB_XML,
    DryRunPreviewer,
    PreviewReport,
)
from .providers import DockerClient, DownloadError, RuntimeCommandError, RuntimeValidationError
from .settings import AppSettings, SettingsError, load_settings
from .state import InstanceRecord, InstanceRegistry, StateRegistryError
from .supervisor import ProcessStartTimeoutError, ProcessStopTimeoutError, ProcessSupervisor
from .templates import TemplateEngine, TemplateError

console = Console()

PROJECT_OPTION = typer.Option(
    None,
    "--project",
    "-p",
    file_okay=False,
    help="Project directory containing lucee.json (defaults to the current directory).",
)
CONFIG_NAME_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    help="Name of the project configuration file.",
)
SETTINGS_FILE_OPTION = typer.Option(
    None,
    "--settings-file",
    dir_okay=False,
    help="Override the path to luceectl's settings.yml.",
)
ENV_OPTION = typer.Option(
    None,
    "--env",
    "-e",
    help="Environment from lucee.json 'environments' to apply (defaults to LUCEECTL_ENV).",
)
DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Report the actions that would be taken without applying changes.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit structured JSON instead of human-readable output.",
)
NAME_ARGUMENT = typer.Argument(
    None,
    help="Instance name (defaults to the instance started from the project directory).",
)

# Checked in order; conflicts first so subclasses of broader errors map correctly.
ERROR_EXIT_CODES: tuple[tuple[tuple[type[Exception], ...], ExitCode], ...] = (
    (
        (
            PortConflictError,
            PortExhaustedError,
            AlreadyLockedError,
            LockViolationError,
            LockTimeoutError,
            InstanceAlreadyRunningError,
        ),
        ExitCode.CONFLICT,
    ),
    (
        (ProcessStartTimeoutError, ProcessStopTimeoutError, RuntimeCommandError, CertificateError),
        ExitCode.PROVIDER,
    ),
    (
        (CertificateToolingMissingError, RuntimeValidationError, DownloadError),
        ExitCode.ENVIRONMENT,
    ),
    (
        (ConfigError, SettingsError, ArtifactError, StateRegistryError, TemplateError),
        ExitCode.VALIDATION,
    ),
)
HANDLED_ERRORS: tuple[type[Exception], ...] = tuple(
    error for errors, _ in ERROR_EXIT_CODES for error in errors
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Local Lucee server manager.

        Resolves lucee.json into an effective configuration, assigns
        conflict-free ports, generates Tomcat/Jetty configuration and
        supervises the server process for each project.
        """
    ).strip(),
)
config_app = typer.Typer(help="Read and edit the project's lucee.json.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    settings: AppSettings
    project_dir: Path
    config_name: str
    registry: InstanceRegistry
    locks: AdvisoryLocks
    logger: StructuredLogger
    templates: TemplateEngine
    allocator: PortAllocator
    certificates: CertificateManager
    supervisor: ProcessSupervisor
    lifecycle: InstanceLifecycle
    previewer: DryRunPreviewer

    def loader(self) -> ConfigLoader:
        """Return a loader for the active project."""
        return self.lifecycle.loader(self.project_dir, self.config_name)


def _ensure_runtime(
    ctx: typer.Context,
    project: Path | None = None,
    config_name: str = DEFAULT_CONFIG_NAME,
    settings_file: Path | None = None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        settings = load_settings(settings_file, overrides=overrides)
    except SettingsError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    registry = InstanceRegistry(settings.servers_dir)
    templates = TemplateEngine.with_overrides(settings.templates_dir)
    allocator = PortAllocator(settings.ports)
    certificates = CertificateManager(settings.tls)
    supervisor = ProcessSupervisor(
        registry,
        settings.supervisor,
        docker=DockerClient(settings.runtime.docker_bin),
    )
    lifecycle = InstanceLifecycle(
        settings=settings,
        registry=registry,
        allocator=allocator,
        certificates=certificates,
        supervisor=supervisor,
        templates=templates,
    )
    runtime = RuntimeContext(
        settings=settings,
        project_dir=(project or Path.cwd()).expanduser().resolve(),
        config_name=config_name,
        registry=registry,
        locks=AdvisoryLocks(settings.run_dir, settings.lock_timeout),
        logger=StructuredLogger(settings.logs_dir),
        templates=templates,
        allocator=allocator,
        certificates=certificates,
        supervisor=supervisor,
        lifecycle=lifecycle,
        previewer=DryRunPreviewer(lifecycle),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the luceectl version and exit.",
    ),
    project: Path | None = PROJECT_OPTION,
    config_name: str = CONFIG_NAME_OPTION,
    settings_file: Path | None = SETTINGS_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, project, config_name, settings_file, lock_timeout)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"luceectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: Exception) -> NoReturn:
    """Terminate the command with the exit code registered for *exc*."""
    _command_error(op, str(exc) or exc.__class__.__name__, rc=int(exit_code_for(exc)))


def exit_code_for(exc: Exception) -> ExitCode:
    """Return the CLI exit code for a domain error."""
    for errors, code in ERROR_EXIT_CODES:
        if isinstance(exc, errors):
            return code
    return ExitCode.VALIDATION


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _print_warnings(warnings: Sequence[str]) -> None:
    for message in warnings:
        console.print(f"[yellow]Warning:[/yellow] {message}")


def _environment(runtime: RuntimeContext, env: str | None) -> str | None:
    if env and env.strip():
        return env.strip()
    return runtime.settings.default_environment


def _resolve_records(
    runtime: RuntimeContext,
    op: OperationScope,
    name: str | None,
) -> list[InstanceRecord]:
    """Return the named instance, or the instances started from the project."""
    try:
        if name:
            return [runtime.registry.require(name)]
        records = runtime.registry.find_by_project(runtime.project_dir)
    except StateRegistryError as exc:
        _fail(op, exc)
    if not records:
        _command_error(
            op,
            f"No instance has been started from {runtime.project_dir}. Pass an instance "
            "name or run 'luceectl list' to see registered instances.",
            rc=int(ExitCode.VALIDATION),
        )
    return records


def _instance_url(record: InstanceRecord) -> str:
    return f"http://{record.host}:{record.ports.http}/"


# ----------------------------------------------------------------------
# start
# ----------------------------------------------------------------------
def _agent_ids(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _requested_sections(
    *,
    lucee: bool,
    server: bool,
    web: bool,
    keystore: bool,
    redirect: bool,
    everything: bool,
) -> list[str]:
    if everything:
        return ["all"]
    flags = (
        (lucee, SECTION_LUCEE),
        (server, SECTION_SERVER_XML),
        (web, SECTION_WEB_XML),
        (keystore, SECTION_KEYSTORE),
        (redirect, SECTION_REDIRECT),
    )
    return [section for enabled, section in flags if enabled]


def _render_preview(report: PreviewReport, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=report.to_dict())
        return
    table = Table(show_header=False)
    table.add_row("Instance", report.name)
    table.add_row("Environment", report.environment or "(default)")
    table.add_row("Runtime", report.runtime)
    table.add_row("Directory", str(report.instance_dir))
    for label, port in report.ports.items():
        if port:
            table.add_row(f"{label.upper()} port", str(port))
    console.print(table)
    _print_warnings(report.warnings)
    console.print("[bold]Effective configuration[/bold]")
    console.print(
        Syntax(json.dumps(report.effective_config, indent=2, sort_keys=True), "json")
    )
    for section in report.sections:
        console.print(f"[bold]{section.title}[/bold]")
        console.print(Syntax(section.content, section.language))


def _report_started(result: StartResult, *, json_output: bool) -> None:
    record = result.record
    if json_output:
        console.print_json(
            data={
                "instance": record.to_dict(),
                "warnings": result.warnings,
                "changed": [str(path) for path in result.runnable.changed],
            }
        )
        return
    _print_warnings(result.warnings)
    ident = f"container {record.container_id[:12]}" if record.container_id else f"pid {record.pid}"
    console.print(
        f"[green]Instance '{record.name}' running at {_instance_url(record)} ({ident}).[/green]"
    )
    if result.keystore is not None and record.ports.https:
        console.print(f"HTTPS: https://{record.host}:{record.ports.https}/")
    if record.sandbox:
        console.print("Sandbox instance; it is removed from the registry when stopped.")


@app.command()
def start(
    ctx: typer.Context,
    env: str | None = ENV_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    include_lucee: bool = typer.Option(
        False, "--include-lucee", help="Preview the generated .CFConfig.json."
    ),
    include_tomcat_server: bool = typer.Option(
        False, "--include-tomcat-server", help="Preview the patched server.xml."
    ),
    include_tomcat_web: bool = typer.Option(
        False, "--include-tomcat-web", help="Preview the patched web.xml."
    ),
    include_https_keystore: bool = typer.Option(
        False, "--include-https-keystore-plan", help="Preview the HTTPS keystore plan."
    ),
    include_https_redirect: bool = typer.Option(
        False, "--include-https-redirect-rules", help="Preview the generated rewrite rules."
    ),
    include_all: bool = typer.Option(
        False, "--include-all", help="Preview every generated artifact."
    ),
    no_open: bool = typer.Option(
        False, "--no-open", help="Do not open a browser even when openBrowser is set."
    ),
    name: str | None = typer.Option(None, "--name", "-n", help="Override the instance name."),
    port: int | None = typer.Option(
        None, "--port", min=1, max=65535, help="Override the HTTP port for this start."
    ),
    version: str | None = typer.Option(
        None, "--version", help="Override the Lucee version for this start."
    ),
    webroot: str | None = typer.Option(
        None, "--webroot", help="Override the webroot (relative to the project directory)."
    ),
    sandbox: bool = typer.Option(
        False,
        "--sandbox",
        help="Start a transient instance that is removed from the registry when stopped.",
    ),
    agents: str | None = typer.Option(
        None, "--agents", help="Comma-separated agent ids to enable instead of lucee.json's."
    ),
    no_agents: bool = typer.Option(False, "--no-agents", help="Disable every agent."),
    enable_agent: list[str] | None = typer.Option(
        None, "--enable-agent", help="Enable an agent defined in lucee.json (repeatable)."
    ),
    disable_agent: list[str] | None = typer.Option(
        None, "--disable-agent", help="Disable an agent defined in lucee.json (repeatable)."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Start the server defined by the project's lucee.json.

    Override options apply to this start only and are never written to lucee.json.
    """
    runtime = _get_runtime(ctx)
    env_key = _environment(runtime, env)
    overrides = StartOverrides(
        name=name,
        port=port,
        version=version,
        webroot=webroot,
        agents=_agent_ids(agents) if agents is not None else None,
        no_agents=no_agents,
        enable_agents=tuple(enable_agent or ()),
        disable_agents=tuple(disable_agent or ()),
    )
    sections = _requested_sections(
        lucee=include_lucee,
        server=include_tomcat_server,
        web=include_tomcat_web,
        keystore=include_https_keystore,
        redirect=include_https_redirect,
        everything=include_all,
    )
    with runtime.logger.operation(
        "start",
        args={
            "env": env_key,
            "dry_run": dry_run,
            "sections": sections,
            "json": json_output,
            "sandbox": sandbox,
            "overrides": overrides.to_dict(),
        },
        target={"kind": "project", "path": str(runtime.project_dir)},
    ) as op:
        if sandbox and (dry_run or sections):
            _command_error(
                op,
                "--sandbox cannot be combined with --dry-run or the --include-* previews.",
                rc=int(ExitCode.VALIDATION),
            )
        # Preview flags imply a dry run.
        if dry_run or sections:
            try:
                report = runtime.previewer.preview(
                    runtime.project_dir,
                    env_key,
                    sections,
                    config_name=runtime.config_name,
                    overrides=overrides,
                )
            except HANDLED_ERRORS as exc:
                _fail(op, exc)
            op.add_step("start.preview", status="skipped", detail="dry-run")
            _render_preview(report, json_output=json_output)
            summary = f"Instance '{report.name}' would start on port {report.ports['http']}."
            if json_output:
                op.success("Dry run complete.", changed=0, context={"name": report.name})
            else:
                _dry_run_complete(op, summary, context={"name": report.name})
            return

        try:
            with runtime.locks.mutate_instances([]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.lifecycle.start(
                    runtime.project_dir,
                    env_key,
                    config_name=runtime.config_name,
                    overrides=overrides,
                    sandbox=sandbox,
                )
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        op.add_step("config.resolve", detail=result.plan.config.environment or "_default")
        op.add_step("ports.assign", detail=json.dumps(result.plan.ports.to_dict()))
        if result.keystore is not None:
            op.add_step(
                "certs.keystore",
                detail="created" if result.keystore.created else "reused",
            )
        op.add_step("runtime.materialize", detail=f"{len(result.runnable.changed)} file(s) changed")
        op.add_step("supervisor.start", detail=f"state={result.record.state.value}")

        _report_started(result, json_output=json_output)
        if result.plan.config.open_browser and not (no_open or json_output):
            typer.launch(_instance_url(result.record))
        op.success(
            "Instance started.",
            changed=len(result.runnable.changed) + 1,
            warnings=result.warnings,
            context={"name": result.record.name, "ports": result.record.ports.to_dict()},
        )


# ----------------------------------------------------------------------
# stop / restart / status / list / prune
# ----------------------------------------------------------------------
@app.command()
def stop(
    ctx: typer.Context,
    name: str | None = NAME_ARGUMENT,
    all_instances: bool = typer.Option(
        False, "--all", help="Stop every registered instance."
    ),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Stop an instance (or every instance with --all)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"name": name, "all": all_instances, "dry_run": dry_run},
        target={"kind": "instance", "name": name or ("*" if all_instances else None)},
    ) as op:
        if all_instances:
            records = runtime.registry.list_records()
        else:
            records = _resolve_records(runtime, op, name)
        names = [record.name for record in records]

        if dry_run:
            op.add_step("supervisor.stop", status="skipped", detail="dry-run")
            listed = ", ".join(names) or "(none)"
            _dry_run_complete(op, f"Would stop: {listed}.", context={"instances": names})
            return

        try:
            with runtime.locks.mutate_instances(names) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                summary = runtime.supervisor.stop_all(records)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)

        for stopped in summary.stopped:
            console.print(f"[yellow]Instance '{stopped}' stopped.[/yellow]")
        for idle in summary.already_stopped:
            console.print(f"Instance '{idle}' was not running.")
        for removed in summary.removed:
            console.print(f"Sandbox instance '{removed}' removed.")
        if not summary.ok:
            errors = [f"{failed}: {reason}" for failed, reason in summary.failures.items()]
            _command_error(
                op,
                f"Failed to stop {len(summary.failures)} instance(s).",
                rc=int(ExitCode.PROVIDER),
                errors=errors,
            )
        op.success(
            "Instances stopped.",
            changed=len(summary.stopped),
            context=summary.to_dict(),
        )


@app.command()
def restart(
    ctx: typer.Context,
    name: str | None = NAME_ARGUMENT,
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop an instance and start it again from its project directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restart",
        args={"name": name, "dry_run": dry_run},
        target={"kind": "instance", "name": name},
    ) as op:
        record = _resolve_records(runtime, op, name)[0]
        if dry_run:
            op.add_step("supervisor.stop", status="skipped", detail="dry-run")
            op.add_step("supervisor.start", status="skipped", detail="dry-run")
            _dry_run_complete(op, f"Instance '{record.name}' would be restarted.")
            return

        try:
            with runtime.locks.mutate_instances([record.name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.lifecycle.restart(record.name)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        op.add_step("supervisor.stop")
        op.add_step("supervisor.start", detail=f"state={result.record.state.value}")
        _report_started(result, json_output=json_output)
        op.success("Instance restarted.", changed=2, warnings=result.warnings)


@app.command()
def status(
    ctx: typer.Context,
    name: str | None = NAME_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether an instance is actually serving requests."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        records = _resolve_records(runtime, op, name)
        statuses = [runtime.supervisor.status(record) for record in records]
        if json_output:
            console.print_json(data={"instances": [item.to_dict() for item in statuses]})
            op.success("Reported instance status as JSON.", changed=0)
            return

        for record, info in zip(records, statuses, strict=True):
            table = Table(show_header=False, title=record.name)
            table.add_row("Running", "[green]yes[/green]" if info.running else "[red]no[/red]")
            table.add_row("State", info.state.value)
            table.add_row("Runtime", record.runtime_type)
            table.add_row("URL", _instance_url(record))
            table.add_row("Ports", json.dumps(record.ports.to_dict()))
            if record.project_dir is not None:
                table.add_row("Project", str(record.project_dir))
            if record.environment:
                table.add_row("Environment", record.environment)
            if info.detail:
                table.add_row("Detail", info.detail)
            console.print(table)
        op.success("Reported instance status.", changed=0)


@app.command("list")
def list_instances(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered instances and their observed state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        try:
            records = runtime.registry.list_records()
        except StateRegistryError as exc:
            _fail(op, exc)
        rows = []
        for record in records:
            payload = record.to_dict()
            payload["running"] = runtime.supervisor.status(record).running
            rows.append(payload)

        if json_output:
            console.print_json(data={"instances": rows})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Runtime")
        table.add_column("HTTP")
        table.add_column("Shutdown")
        table.add_column("State")
        table.add_column("Project")
        if not records:
            table.add_row("(none)", "", "", "", "", "")
        for record, row in zip(records, rows, strict=True):
            state = record.state.value
            if row["running"]:
                state = f"[green]{state}[/green]"
            table.add_row(
                record.name,
                record.runtime_type,
                str(record.ports.http),
                str(record.ports.shutdown),
                state,
                str(record.project_dir or ""),
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@app.command()
def prune(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None, help="Instance to prune (defaults to every stopped instance)."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Do not ask for confirmation before removing."
    ),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Remove instance directories that are no longer running.

    Running instances are never pruned; stop them first.
    """
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "prune",
        args={"name": name, "force": force, "dry_run": dry_run},
        target={"kind": "instance", "name": name or "*"},
    ) as op:
        if name:
            records = _resolve_records(runtime, op, name)
        else:
            records = runtime.registry.list_records()
        candidates = [
            record.name for record in records if not runtime.supervisor.status(record).running
        ]
        listed = ", ".join(candidates) or "(none)"

        if dry_run:
            op.add_step("supervisor.prune", status="skipped", detail="dry-run")
            _dry_run_complete(op, f"Would prune: {listed}.", context={"instances": candidates})
            return

        if candidates and not force:
            confirmed = typer.confirm(f"Remove stopped instance(s) {listed}?", default=False)
            if not confirmed:
                console.print("[yellow]Prune cancelled.[/yellow]")
                op.warning("Prune cancelled by operator.", warnings=["user-cancelled"])
                return

        try:
            with runtime.locks.mutate_instances([record.name for record in records]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                summary = runtime.supervisor.prune(records)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        for pruned in summary.pruned:
            console.print(f"[yellow]Pruned '{pruned}'.[/yellow]")
        for skipped in summary.skipped:
            console.print(f"Skipped '{skipped}' (running; stop it first).")
        op.success("Prune complete.", changed=len(summary.pruned), context=summary.to_dict())


# ----------------------------------------------------------------------
# lock / unlock
# ----------------------------------------------------------------------
@app.command()
def lock(
    ctx: typer.Context,
    env: str | None = ENV_OPTION,
    update: bool = typer.Option(
        False, "--update", help="Refresh an existing lock from the current lucee.json."
    ),
    show_status: bool = typer.Option(
        False, "--status", help="Show the lock state of every environment instead of locking."
    ),
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Snapshot the effective configuration into lucee-lock.json."""
    runtime = _get_runtime(ctx)
    env_key = _environment(runtime, env)
    manager = LockManager(runtime.loader())
    with runtime.logger.operation(
        "lock",
        args={"env": env_key, "update": update, "status": show_status, "dry_run": dry_run},
        target={"kind": "project", "path": str(runtime.project_dir)},
    ) as op:
        if show_status:
            try:
                rows = manager.status()
            except HANDLED_ERRORS as exc:
                _fail(op, exc)
            if json_output:
                console.print_json(data={"locks": rows})
            else:
                table = Table(show_header=True, header_style="bold magenta")
                table.add_column("Environment", style="bold")
                table.add_column("Locked")
                table.add_column("Locked at")
                table.add_column("Drift")
                if not rows:
                    table.add_row("(none)", "", "", "")
                for row in rows:
                    table.add_row(
                        str(row["environment"]),
                        "yes" if row["locked"] else "no",
                        str(row.get("locked_at") or ""),
                        "[yellow]yes[/yellow]" if row.get("drift") else "no",
                    )
                console.print(table)
            op.success("Reported lock status.", changed=0)
            return

        if dry_run:
            try:
                config = runtime.loader().resolve(env_key)
            except HANDLED_ERRORS as exc:
                _fail(op, exc)
            if json_output:
                console.print_json(data=config.to_dict())
            else:
                console.print(Syntax(config.to_json(), "json"))
            _dry_run_complete(
                op,
                f"Environment '{env_key or '_default'}' would be locked.",
                context={"env": env_key},
            )
            return

        try:
            with runtime.locks.mutate_instances([]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                entry = manager.lock(env_key, update=update)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=entry.to_dict())
        else:
            console.print(
                f"[green]Locked environment '{entry.environment}' in "
                f"{manager.path.name}.[/green]"
            )
        op.success("Configuration locked.", changed=1, context={"env": entry.environment})


@app.command()
def unlock(
    ctx: typer.Context,
    env: str | None = ENV_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Release the lock for an environment (the snapshot is kept for audit)."""
    runtime = _get_runtime(ctx)
    env_key = _environment(runtime, env)
    manager = LockManager(runtime.loader())
    label = env_key or "_default"
    with runtime.logger.operation(
        "unlock",
        args={"env": env_key, "dry_run": dry_run},
        target={"kind": "project", "path": str(runtime.project_dir)},
    ) as op:
        if dry_run:
            _dry_run_complete(op, f"Environment '{label}' would be unlocked.")
            return
        try:
            with runtime.locks.mutate_instances([]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                released = manager.unlock(env_key)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        if released:
            console.print(f"[yellow]Unlocked environment '{label}'.[/yellow]")
            op.success("Configuration unlocked.", changed=1)
        else:
            console.print(f"Environment '{label}' was not locked.")
            op.success("Nothing to unlock.", changed=0)


# ----------------------------------------------------------------------
# config get / set
# ----------------------------------------------------------------------
@config_app.command("get")
def config_get(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Dotted key, e.g. jvm.maxMemory."),
    env: str | None = ENV_OPTION,
    raw: bool = typer.Option(
        False, "--raw", help="Read lucee.json as written instead of the effective value."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Print a configuration value."""
    runtime = _get_runtime(ctx)
    env_key = _environment(runtime, env)
    with runtime.logger.operation(
        "config get",
        args={"key": key, "env": env_key, "raw": raw},
        target={"kind": "config", "path": str(runtime.project_dir)},
    ) as op:
        loader = runtime.loader()
        try:
            value = get_value(loader.read_raw(), key) if raw else loader.resolve(env_key).get(key)
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"key": key, "value": value})
        elif isinstance(value, (dict, list)):
            console.print(Syntax(json.dumps(value, indent=2, sort_keys=True), "json"))
        else:
            console.print("" if value is None else str(value), markup=False)
        op.success("Reported configuration value.", changed=0)


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Dotted key, e.g. jvm.maxMemory."),
    value: str = typer.Argument(..., help="New value (numbers, true/false and null are typed)."),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Write a value into lucee.json (refused while any environment is locked).

    The file is rewritten as plain JSON: comments in lucee.json are not preserved.
    """
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config set",
        args={"key": key, "value": value, "dry_run": dry_run},
        target={"kind": "config", "path": str(runtime.project_dir)},
    ) as op:
        loader = runtime.loader()
        try:
            LockManager(loader).ensure_writable(dry_run=dry_run)
            updated = set_value(loader.read_raw(), key, value)
            source = loader.raw_bytes().decode("utf-8", errors="replace")
            drops_comments = jsonc.strip_comments(source) != source
        except HANDLED_ERRORS as exc:
            _fail(op, exc)
        new_value = get_value(updated, key)
        warnings: list[str] = []
        if drops_comments:
            warnings.append(f"Comments in {loader.config_name} are not preserved by config set.")
        if dry_run:
            _dry_run_complete(
                op,
                f"{key} would be set to {json.dumps(new_value)} in {loader.config_name}.",
                context={"key": key},
            )
            return
        try:
            loader.write_raw(updated)
        except OSError as exc:
            _command_error(op, f"Failed to write {loader.config_path}: {exc}", rc=2)
        _print_warnings(warnings)
        console.print(f"[green]Set {key} = {json.dumps(new_value)}[/green]")
        op.success(
            "Configuration updated.", changed=1, warnings=warnings, context={"key": key}
        )


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "exit_code_for", "main"]
