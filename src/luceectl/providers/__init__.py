"""Runtime providers for luceectl.

Handlers are looked up by :class:`RuntimeKind` in :data:`HANDLERS`; adding a
backend means adding a module with a ``materialize`` function and an entry
here.
"""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from . import docker, express, jetty, tomcat
from .docker import DockerClient
from .downloads import DownloadError
from .runtime import (
    CAPABILITIES,
    MaterializeContext,
    RunnableInstance,
    RuntimeCapabilities,
    RuntimeCommandError,
    RuntimeKind,
    RuntimeProvider,
    RuntimeValidationError,
)

Handler = Callable[[RuntimeProvider, MaterializeContext], RunnableInstance]

HANDLERS: dict[RuntimeKind, Handler] = {
    RuntimeKind.EXPRESS: express.materialize,
    RuntimeKind.TOMCAT: tomcat.materialize,
    RuntimeKind.DOCKER: docker.materialize,
    RuntimeKind.JETTY: jetty.materialize,
}

TOMCAT_SHUTDOWN_COMMAND = b"SHUTDOWN"


def materialize(provider: RuntimeProvider, context: MaterializeContext) -> RunnableInstance:
    """Prepare *context* for launch with the handler registered for *provider*."""
    return HANDLERS[provider.kind](provider, context)


def capabilities_for(runtime_type: str) -> RuntimeCapabilities:
    """Return the capability flags for a persisted ``runtime_type``."""
    return RuntimeProvider.for_kind(runtime_type).capabilities


def shutdown_command(runtime_type: str, instance_dir: Path) -> bytes | None:
    """Return the payload that asks a server to stop through its shutdown port."""
    kind = RuntimeKind(runtime_type)
    if kind in (RuntimeKind.EXPRESS, RuntimeKind.TOMCAT):
        return TOMCAT_SHUTDOWN_COMMAND
    if kind is RuntimeKind.JETTY:
        key = jetty.read_stop_key(instance_dir)
        return f"{key}\r\nstop\r\n".encode() if key else None
    return None


__all__ = [
    "CAPABILITIES",
    "DockerClient",
    "DownloadError",
    "HANDLERS",
    "MaterializeContext",
    "RunnableInstance",
    "RuntimeCapabilities",
    "RuntimeCommandError",
    "RuntimeKind",
    "RuntimeProvider",
    "RuntimeValidationError",
    "capabilities_for",
    "materialize",
    "shutdown_command",
]
