"""Docker runtime: run the project inside a Lucee container image."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..artifacts import build_cfconfig
from ..templates import write_if_changed
from .runtime import (
    MaterializeContext,
    RunnableInstance,
    RuntimeCommandError,
    RuntimeProvider,
    RuntimeValidationError,
    run_tool,
)

LOGGER = logging.getLogger(__name__)

CONTAINER_HTTP_PORT = 8080
CONTAINER_WEBROOT = "/var/www"
CONTAINER_LOGS = "/usr/local/tomcat/logs"
CONTAINER_CFCONFIG = "/opt/lucee/server/lucee-server/context/.CFConfig.json"
CONTAINER_PREFIX = "luceectl-"

DOCKER_GUIDANCE = (
    "Install Docker and make sure the daemon is running (Docker Desktop, or "
    "'sudo systemctl start docker'), or set runtime.docker_bin in settings.yml."
)


@dataclass(frozen=True)
class DockerClient:
    """Thin wrapper over the docker CLI."""

    docker_bin: str = "docker"

    def check_daemon(self) -> str:
        """Return the daemon version or raise :class:`RuntimeValidationError`."""
        try:
            result = run_tool(
                [self.docker_bin, "info", "--format", "{{.ServerVersion}}"],
                error_prefix="docker info",
                guidance=DOCKER_GUIDANCE,
                timeout=30,
            )
        except RuntimeCommandError as exc:
            raise RuntimeValidationError(
                f"Docker daemon is not reachable: {exc}. {DOCKER_GUIDANCE}"
            ) from exc
        return (result.stdout or "").strip()

    def container_state(self, name: str) -> str | None:
        """Return the container's state (``running``, ``exited`` ...) or ``None``."""
        result = run_tool(
            [self.docker_bin, "inspect", "--format", "{{.State.Status}}", name],
            error_prefix=f"docker inspect {name}",
            guidance=DOCKER_GUIDANCE,
            check=False,
            timeout=30,
        )
        if result.returncode != 0:
            return None
        return (result.stdout or "").strip() or None

    def run(self, args: list[str]) -> str:
        """Run a detached container and return its id."""
        result = run_tool(args, error_prefix="docker run", guidance=DOCKER_GUIDANCE)
        return (result.stdout or "").strip().splitlines()[-1] if result.stdout else ""

    def stop(self, name: str, *, timeout: float = 10.0) -> None:
        """Stop container *name*, letting docker escalate after *timeout* seconds."""
        run_tool(
            [self.docker_bin, "stop", "--time", str(int(timeout)), name],
            error_prefix=f"docker stop {name}",
            guidance=DOCKER_GUIDANCE,
        )

    def remove(self, name: str) -> None:
        """Force-remove container *name* when it exists."""
        if self.container_state(name) is None:
            return
        run_tool(
            [self.docker_bin, "rm", "--force", name],
            error_prefix=f"docker rm {name}",
            guidance=DOCKER_GUIDANCE,
        )


def container_name(provider: RuntimeProvider, instance_name: str) -> str:
    """Return ``runtime.containerName`` or ``luceectl-<instance>``."""
    return provider.option("containerName") or f"{CONTAINER_PREFIX}{instance_name}"


def materialize(provider: RuntimeProvider, context: MaterializeContext) -> RunnableInstance:
    """Prepare a ``docker run`` invocation for the instance."""
    client = DockerClient(context.settings.runtime.docker_bin)
    client.check_daemon()

    name = container_name(provider, context.name)
    state = client.container_state(name)
    if state == "running":
        raise RuntimeValidationError(
            f"Container '{name}' is already running. Run 'luceectl stop {context.name}' "
            f"or 'docker stop {name}' first."
        )
    if state is not None:
        LOGGER.info("Removing stale container %s (%s).", name, state)
        client.remove(name)

    config = context.config
    logs_dir = context.instance_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    image = provider.option("image") or context.settings.runtime.docker_image

    args = [
        context.settings.runtime.docker_bin,
        "run",
        "--detach",
        "--name", name,
        "--publish", f"{context.ports.http}:{CONTAINER_HTTP_PORT}",
        "--volume", f"{config.webroot_path}:{CONTAINER_WEBROOT}",
        "--volume", f"{logs_dir}:{CONTAINER_LOGS}",
    ]
    changed: list[Path] = []
    cfconfig = build_cfconfig(config)
    if cfconfig is not None:
        target = context.instance_dir / "lucee-server" / "context" / ".CFConfig.json"
        if write_if_changed(target, cfconfig):
            changed.append(target)
        args.extend(["--volume", f"{target}:{CONTAINER_CFCONFIG}:ro"])
    if config.admin.password:
        args.extend(["--env", f"LUCEE_ADMIN_PASSWORD={config.admin.password}"])
    if config.jvm.additional_args or config.agent_jvm_args:
        opts = " ".join([*config.jvm.additional_args, *config.agent_jvm_args])
        args.extend(["--env", f"LUCEE_JAVA_OPTS={opts}"])
    args.append(image)

    warnings: list[str] = []
    if config.https.enabled:
        warnings.append("HTTPS is not configured for the docker runtime; only HTTP is published.")

    return RunnableInstance(
        command=tuple(args),
        env={},
        cwd=context.instance_dir,
        log_file=logs_dir / "docker.out",
        container_name=name,
        warnings=tuple(warnings),
        changed=tuple(changed),
    )


__all__ = ["DockerClient", "container_name", "materialize"]
