"""Port allocation tests."""
from __future__ import annotations

import socket
from dataclasses import replace
from pathlib import Path

import pytest

from luceectl.instance_config import EffectiveConfig, HttpsConfig, MonitoringConfig
from luceectl.ports import PortAllocator, PortConflictError, PortExhaustedError, is_port_free
from luceectl.settings import PortRangesConfig
from luceectl.state import InstanceRecord, InstanceRegistry, PortAssignment


def _allocator(busy: set[int] | None = None, **ranges: object) -> PortAllocator:
    occupied = busy or set()
    return PortAllocator(
        PortRangesConfig(**ranges),  # type: ignore[arg-type]
        probe=lambda port, host: port not in occupied,
    )


def _config(tmp_path: Path, name: str = "app", **changes: object) -> EffectiveConfig:
    base = EffectiveConfig(name=name, project_dir=tmp_path / name)
    return replace(base, **changes)  # type: ignore[arg-type]


def _register(registry: InstanceRegistry, name: str, ports: PortAssignment, project: Path) -> None:
    registry.write(
        InstanceRecord(
            name=name,
            directory=registry.instance_dir(name),
            ports=ports,
            project_dir=project.resolve(),
        )
    )


def test_preferred_port_is_used_when_free() -> None:
    """The configured port wins when nothing else claims it."""
    assert _allocator().allocate(8080, (8000, 8999)) == 8080


def test_allocation_scans_forward_past_busy_ports() -> None:
    """Busy or avoided candidates are skipped in ascending order."""
    allocator = _allocator(busy={8080, 8081})

    assert allocator.allocate(8080, (8000, 8999), avoid={8082}) == 8083


def test_allocation_wraps_within_range() -> None:
    """The search wraps to the start of the range after its end."""
    allocator = _allocator(busy={8999})

    assert allocator.allocate(8999, (8000, 8999)) == 8000


def test_exhausted_range_raises() -> None:
    """A range with no usable port raises PortExhaustedError."""
    allocator = _allocator(busy={9000, 9001})

    with pytest.raises(PortExhaustedError, match="9000-9001"):
        allocator.allocate(None, (9000, 9001))


@pytest.mark.parametrize("http", [8080, 8123, 8500])
def test_shutdown_defaults_to_http_plus_thousand(http: int) -> None:
    """The shutdown port is http + 1000 when that port is free."""
    assert _allocator().derive_shutdown(http) == http + 1000


def test_shutdown_falls_back_to_range() -> None:
    """When http + 1000 is busy the shutdown range is searched."""
    allocator = _allocator(busy={9080})

    port = allocator.derive_shutdown(8080)

    assert port != 9080
    assert 9000 <= port <= 9999


def test_explicit_shutdown_port_conflicts_raise() -> None:
    """An explicit shutdownPort that is taken is reported, not moved."""
    allocator = _allocator(busy={9500})

    with pytest.raises(PortConflictError) as excinfo:
        allocator.derive_shutdown(8080, 9500)
    assert excinfo.value.port == 9500
    assert "lsof -i :9500" in str(excinfo.value)

    with pytest.raises(PortConflictError, match="same as the HTTP port"):
        allocator.derive_shutdown(8080, 8080)

    with pytest.raises(PortConflictError) as owned:
        allocator.derive_shutdown(8080, 9600, owner_of=lambda port: "other")
    assert owned.value.owner == "other"
    assert "luceectl stop other" in str(owned.value)


def test_two_projects_with_same_port_get_distinct_assignments(tmp_path: Path) -> None:
    """A second project asking for 8080 receives 8081/9081."""
    registry = InstanceRegistry(tmp_path / "servers")
    allocator = _allocator()

    first = allocator.assign(_config(tmp_path, "one"), registry, "one")
    assert (first.http, first.shutdown) == (8080, 9080)
    _register(registry, "one", first, tmp_path / "one")

    second = allocator.assign(_config(tmp_path, "two"), registry, "two")

    assert (second.http, second.shutdown) == (8081, 9081)
    assert not first.values() & second.values()


def test_stopped_instances_keep_their_ports(tmp_path: Path) -> None:
    """Ports of a registered but stopped instance are never reassigned."""
    registry = InstanceRegistry(tmp_path / "servers")
    _register(registry, "old", PortAssignment(http=8080, shutdown=9080, jmx=8999), tmp_path / "old")

    assignment = _allocator().assign(_config(tmp_path, "new"), registry, "new")

    assert assignment.http == 8081
    assert assignment.jmx not in {8080, 9080, 8999}


def test_instance_reuses_its_own_ports(tmp_path: Path) -> None:
    """An instance's own record does not block its ports."""
    registry = InstanceRegistry(tmp_path / "servers")
    ports = PortAssignment(http=8080, shutdown=9080, jmx=8999)
    _register(registry, "app", ports, tmp_path / "app")

    assert _allocator().assign(_config(tmp_path), registry, "app") == ports


def test_https_and_jmx_are_optional(tmp_path: Path) -> None:
    """JMX follows monitoring.enabled and HTTPS follows https.enabled."""
    registry = InstanceRegistry(tmp_path / "servers")
    config = _config(
        tmp_path,
        monitoring=MonitoringConfig(enabled=False),
        https=HttpsConfig(enabled=True, port=8443),
    )

    assignment = _allocator().assign(config, registry, "app")

    assert assignment.jmx is None
    assert assignment.https == 8443


def test_many_projects_never_share_ports(tmp_path: Path) -> None:
    """Sequential assignments across projects stay pairwise disjoint."""
    registry = InstanceRegistry(tmp_path / "servers")
    allocator = _allocator(busy={8082})
    seen: set[int] = set()
    for index in range(6):
        name = f"p{index}"
        assignment = allocator.assign(_config(tmp_path, name), registry, name)
        assert not assignment.values() & seen
        seen |= assignment.values()
        _register(registry, name, assignment, tmp_path / name)


def test_check_bindable_reports_owner(tmp_path: Path) -> None:
    """The pre-launch re-probe names the owning instance or the busy port."""
    assignment = PortAssignment(http=8080, shutdown=9080)

    with pytest.raises(PortConflictError, match="luceectl instance 'other'"):
        _allocator().check_bindable(assignment, owner_of=lambda port: "other")
    with pytest.raises(PortConflictError, match="HTTP port 8080 is already in use"):
        _allocator(busy={8080}).check_bindable(assignment)
    _allocator().check_bindable(assignment, owner_of=lambda port: None)


def test_is_port_free_detects_listener() -> None:
    """A listening socket makes its port unavailable."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]

        assert is_port_free(port, "127.0.0.1") is False
