"""Port allocation across every known luceectl instance.

Ports reserved by any record in the instance registry are never handed to
another instance, whether or not the owner is running. Candidates must also
pass a live bind probe. The probe and the real bind by the server happen at
different times, so :meth:`PortAllocator.check_bindable` re-probes right
before launch.
"""
from __future__ import annotations

import socket
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from .instance_config import EffectiveConfig
from .settings import PortRangesConfig
from .state.registry import InstanceRegistry, PortAssignment


class PortConflictError(RuntimeError):
    """Raised when a required port is owned by another instance or process."""

    def __init__(self, message: str, *, port: int, owner: str | None = None) -> None:
        """Record the conflicting port and its owning instance (if known)."""
        super().__init__(message)
        self.port = port
        self.owner = owner


class PortExhaustedError(RuntimeError):
    """Raised when no free port remains in a search range."""


def is_port_free(port: int, host: str = "0.0.0.0") -> bool:  # noqa: S104
    """Return True when *port* can be bound on *host* right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


@dataclass(slots=True)
class PortAllocator:
    """Choose http, shutdown, jmx and https ports for an instance."""

    ranges: PortRangesConfig = field(default_factory=PortRangesConfig)
    probe: Callable[[int, str], bool] = is_port_free

    # ------------------------------------------------------------------
    # Primitive searches
    # ------------------------------------------------------------------
    def allocate(
        self,
        preferred: int | None,
        port_range: tuple[int, int],
        avoid: set[int] | frozenset[int] = frozenset(),
    ) -> int:
        """Return *preferred* when usable, else the next usable port in *port_range*."""
        for candidate in _candidates(preferred, port_range):
            if candidate not in avoid and self._bindable(candidate):
                return candidate
        low, high = port_range
        raise PortExhaustedError(
            f"No free port available in range {low}-{high}"
            + (f" (preferred {preferred})." if preferred else ".")
        )

    def derive_shutdown(
        self,
        http: int,
        explicit: int | None = None,
        avoid: set[int] | frozenset[int] = frozenset(),
        *,
        owner_of: Callable[[int], str | None] | None = None,
    ) -> int:
        """Return the shutdown port for an instance listening on *http*."""
        if explicit is not None:
            if explicit == http:
                raise PortConflictError(
                    f"shutdownPort {explicit} is the same as the HTTP port. "
                    "Choose a different shutdownPort in lucee.json.",
                    port=explicit,
                )
            self._require_free(explicit, "Shutdown", avoid, owner_of)
            return explicit

        default = http + 1000
        if default <= 65535 and default not in avoid and self._bindable(default):
            return default
        return self.allocate(None, self.ranges.shutdown_range, set(avoid) | {http})

    def derive_jmx(
        self,
        preferred: int,
        avoid: set[int] | frozenset[int] = frozenset(),
    ) -> int:
        """Return the JMX port, avoiding the chosen http/shutdown ports in *avoid*."""
        return self.allocate(preferred, self.ranges.jmx_range, avoid)

    def derive_https(
        self,
        preferred: int,
        avoid: set[int] | frozenset[int] = frozenset(),
    ) -> int:
        """Return the HTTPS port, avoiding every port in *avoid*."""
        return self.allocate(preferred, self.ranges.https_range, avoid)

    # ------------------------------------------------------------------
    # Instance-level assignment
    # ------------------------------------------------------------------
    def assign(
        self,
        config: EffectiveConfig,
        registry: InstanceRegistry,
        name: str,
    ) -> PortAssignment:
        """Return a collision-free assignment for instance *name*."""
        avoid = registry.claimed_ports(exclude=name)

        def owner_of(port: int) -> str | None:
            return registry.port_owner(port, exclude=name)

        http = self.allocate(config.port, self.ranges.http_range, avoid)
        shutdown = self.derive_shutdown(
            http, config.shutdown_port, avoid | {http}, owner_of=owner_of
        )
        taken = avoid | {http, shutdown}

        jmx = None
        if config.monitoring.enabled:
            jmx = self.derive_jmx(config.monitoring.jmx_port, taken)
            taken = taken | {jmx}

        https = None
        if config.https.enabled:
            https = self.derive_https(config.https.port, taken)

        return PortAssignment(http=http, shutdown=shutdown, jmx=jmx, https=https)

    def check_bindable(
        self,
        assignment: PortAssignment,
        *,
        owner_of: Callable[[int], str | None] | None = None,
    ) -> None:
        """Re-probe every assigned port immediately before launch."""
        labels = (
            ("HTTP", assignment.http),
            ("Shutdown", assignment.shutdown),
            ("JMX", assignment.jmx),
            ("HTTPS", assignment.https),
        )
        for label, port in labels:
            if port:
                self._require_free(port, label, frozenset(), owner_of)

    # ------------------------------------------------------------------
    def _bindable(self, port: int) -> bool:
        return self.probe(port, self.ranges.bind_host)

    def _require_free(
        self,
        port: int,
        label: str,
        avoid: set[int] | frozenset[int],
        owner_of: Callable[[int], str | None] | None,
    ) -> None:
        owner = owner_of(port) if owner_of is not None else None
        if owner is not None or port in avoid:
            who = f"luceectl instance '{owner}'" if owner else "another luceectl instance"
            remedy = f"luceectl stop {owner}" if owner else "luceectl list"
            raise PortConflictError(
                f"{label} port {port} is reserved by {who}. "
                f"Use '{remedy}' or change the port in lucee.json.",
                port=port,
                owner=owner,
            )
        if not self._bindable(port):
            raise PortConflictError(
                f"{label} port {port} is already in use by another process. "
                f"Use 'lsof -i :{port}' to see what is using it, or change the port "
                "in lucee.json.",
                port=port,
            )


def _candidates(preferred: int | None, port_range: tuple[int, int]) -> Iterator[int]:
    low, high = port_range
    seen: set[int] = set()
    if preferred is not None and 1 <= preferred <= 65535:
        seen.add(preferred)
        yield preferred
    start = preferred + 1 if preferred is not None and low <= preferred <= high else low
    span = high - low + 1
    for offset in range(span):
        candidate = low + (start - low + offset) % span
        if candidate not in seen:
            yield candidate


__all__ = ["PortAllocator", "PortConflictError", "PortExhaustedError", "is_port_free"]
